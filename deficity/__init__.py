"""
deficity - Ledger synchronization engine for an on-chain city builder

Keeps a client's grid of buildings consistent with a smart-contract ledger:
tentative placements, tracked transactions and periodic reconciliation
against the canonical building list.

Usage:
    import asyncio
    from deficity import CitySession, SimulatedChain, SyncConfig

    async def main():
        chain = SimulatedChain()
        owner = "0xA11CE00000000000000000000000000000000001"
        config = SyncConfig(poll_interval=0.01, refresh_interval=0)

        async with CitySession(owner, chain, chain.signer_for(owner), config=config) as city:
            hall = city.submit_placement(6, 6, "townhall")
            await city.wait(hall)

            bank = city.submit_placement(3, 3, "bank")
            outcome = await city.wait(bank)
            print(outcome.state, city.current_grid().occupant(3, 3))

    asyncio.run(main())
"""

# Core types
from .core import (
    Building,
    PendingPlacement,
    WalletAsset,
    UserStats,
    Receipt,
    TokenInfo,
    ContractCall,
    BuildingType,
    LifecycleState,
    FailureReason,
    LedgerReader,
    Signer,
    SyncError,
    OccupiedCellError,
    ValidationError,
    UserRejected,
    NetworkError,
    RevertedTransaction,
    TransactionTimedOut,
    StaleReconciliation,
    TransactionCancelled,
    UnknownIntent,
    create_town_hall_call,
    create_building_call,
    move_building_call,
    deposit_call,
    withdraw_call,
    harvest_call,
    building_from_abi,
    user_stats_from_abi,
    NATIVE_ASSET_ADDRESS,
    DEFAULT_GRID_SIZE,
    RAY,
    SECONDS_PER_YEAR,
)

# Configuration
from .config import SyncConfig, DEFAULT_TOKENS

# Geometry
from .coordinates import CoordinateTransform, in_bounds, center_cell

# Pricing
from .pricing_source import (
    PricingSource,
    StaticPricingSource,
    FallbackPricingSource,
    DEFAULT_FALLBACK_PRICES,
)

# Balances
from .balances import (
    BalanceAggregator,
    BalanceFetch,
    PortfolioValue,
    normalize,
    to_raw,
    aggregate,
    compound_apy,
    ray_rate_to_apy,
    yield_per_day,
    building_level,
)

# Grid state
from .grid_store import (
    GridStateStore,
    GridSnapshot,
    ReconcileDiff,
    Anomaly,
    Discard,
)

# Transactions
from .tracker import TransactionLifecycleTracker, TrackerOutcome, Transition

# Reconciliation
from .reconciler import ChainStateReconciler, ReconcileReport, Notice
from .snapshot_cache import SnapshotCache

# Session
from .session import CitySession, IntentHandle

# Simulation
from .simulated_chain import SimulatedChain, ChainSigner


__all__ = [
    # Core
    'Building', 'PendingPlacement', 'WalletAsset', 'UserStats', 'Receipt',
    'TokenInfo', 'ContractCall', 'BuildingType', 'LifecycleState', 'FailureReason',
    'LedgerReader', 'Signer',
    'SyncError', 'OccupiedCellError', 'ValidationError', 'UserRejected',
    'NetworkError', 'RevertedTransaction', 'TransactionTimedOut',
    'StaleReconciliation', 'TransactionCancelled', 'UnknownIntent',
    'create_town_hall_call', 'create_building_call', 'move_building_call',
    'deposit_call', 'withdraw_call', 'harvest_call',
    'building_from_abi', 'user_stats_from_abi',
    'NATIVE_ASSET_ADDRESS', 'DEFAULT_GRID_SIZE', 'RAY', 'SECONDS_PER_YEAR',
    # Configuration
    'SyncConfig', 'DEFAULT_TOKENS',
    # Geometry
    'CoordinateTransform', 'in_bounds', 'center_cell',
    # Pricing
    'PricingSource', 'StaticPricingSource', 'FallbackPricingSource',
    'DEFAULT_FALLBACK_PRICES',
    # Balances
    'BalanceAggregator', 'BalanceFetch', 'PortfolioValue', 'normalize', 'to_raw',
    'aggregate', 'compound_apy', 'ray_rate_to_apy', 'yield_per_day', 'building_level',
    # Grid state
    'GridStateStore', 'GridSnapshot', 'ReconcileDiff', 'Anomaly', 'Discard',
    # Transactions
    'TransactionLifecycleTracker', 'TrackerOutcome', 'Transition',
    # Reconciliation
    'ChainStateReconciler', 'ReconcileReport', 'Notice', 'SnapshotCache',
    # Session
    'CitySession', 'IntentHandle',
    # Simulation
    'SimulatedChain', 'ChainSigner',
]

__version__ = '1.0.0'
