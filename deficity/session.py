"""
session.py - Per-account engine instance

CitySession wires one GridStateStore, one ChainStateReconciler, the balance
aggregator and the transaction trackers of a single account, and exposes the
operations a rendering layer needs:

    async with CitySession(owner, reader, signer) as city:
        handle = city.submit_placement(3, 4, "bank")
        city.tracker_status(handle)        # LifecycleState, any time
        outcome = await city.wait(handle)   # TrackerOutcome
        city.current_grid()                 # GridSnapshot

A session is created at login and closed at logout; nothing is shared
between sessions through module state.
"""

from __future__ import annotations
import asyncio
import itertools
from dataclasses import dataclass
import logging
from typing import Dict, List, Optional, Sequence, Union, assert_never

from .balances import BalanceAggregator, PortfolioValue
from .config import DEFAULT_TOKENS, SyncConfig
from .core import (
    BuildingType, CORE_ASSET_SYMBOL, ContractCall, FailureReason, LedgerReader, LifecycleState,
    NATIVE_ASSET_ADDRESS, Signer, SyncError, TokenInfo, UnknownIntent,
    UserStats, ValidationError, WalletAsset, create_building_call,
    create_town_hall_call, deposit_call, harvest_call, move_building_call,
    withdraw_call,
)
from .grid_store import GridSnapshot, GridStateStore
from .pricing_source import PricingSource
from .reconciler import ChainStateReconciler, Notice, ReconcileReport
from .snapshot_cache import SnapshotCache
from .tracker import TrackerOutcome, TransactionLifecycleTracker


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IntentHandle:
    """Opaque reference to a submitted intent."""
    local_id: str
    intent_id: str


class CitySession:
    """
    The synchronization engine for one account.

    Args:
        owner: Account address
        reader: Ledger read collaborator
        signer: Signing collaborator for `owner`
        config: Engine tunables
        pricing: Price source for portfolio_value()
        tokens: Assets whose balances are tracked
        cache: Snapshot cache used to avoid a blank grid at start

    Raises:
        ValueError: If `pricing` quotes in another currency than config.valuation_currency
    """

    # Finished intents kept for tracker_status(); older ones are forgotten
    MAX_FINISHED_INTENTS = 64

    def __init__(
        self,
        owner: str,
        reader: LedgerReader,
        signer: Signer,
        *,
        config: Optional[SyncConfig] = None,
        pricing: Optional[PricingSource] = None,
        tokens: Sequence[TokenInfo] = DEFAULT_TOKENS,
        cache: Optional[SnapshotCache] = None,
    ):
        self.owner = owner
        self.config = config or SyncConfig()
        if pricing is not None and pricing.base_currency != self.config.valuation_currency:
            raise ValueError(
                f"Pricing quoted in {pricing.base_currency}, "
                f"expected {self.config.valuation_currency}"
            )
        self._reader = reader
        self._signer = signer
        self._cache = cache
        self.tokens = tuple(tokens)
        self.store = GridStateStore(self.config.grid_size, owner=owner)
        self.balances = BalanceAggregator(self.tokens, pricing, self.config.reference_symbol)
        self.reconciler = ChainStateReconciler(
            reader, self.store, owner,
            config=self.config, balances=self.balances, cache=cache,
        )
        self._trackers: Dict[str, TransactionLifecycleTracker] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._intent_ids = itertools.count(1)
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> ReconcileReport:
        """Show cached buildings, run the first reconciliation and start the timer."""
        if self._closed:
            raise SyncError("Session is closed")
        if self._cache is not None:
            cached = self._cache.load(self.owner)
            if cached:
                self.store.load_provisional(cached)
        report = await self.reconciler.reconcile("startup")
        self.reconciler.start_polling()
        self._started = True
        return report

    async def close(self) -> None:
        """
        Tear the session down (logout).

        Aborts every running tracker, stops the timer and drops the store.
        Submitted transactions are not recalled.
        """
        if self._closed:
            return
        self._closed = True
        for tracker in self._trackers.values():
            tracker.abort()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.reconciler.stop_polling()
        self.store.clear()
        logger.debug("Session of %s closed", self.owner)

    async def __aenter__(self) -> CitySession:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise SyncError("Session is closed")

    # ------------------------------------------------------------------
    # Reads for the rendering layer
    # ------------------------------------------------------------------

    def current_grid(self) -> GridSnapshot:
        return self.store.snapshot()

    def current_balances(self) -> List[WalletAsset]:
        return list(self.reconciler.assets)

    def current_stats(self) -> UserStats:
        return self.reconciler.stats

    def portfolio_value(self) -> PortfolioValue:
        """Value current balances; unpriced assets count as zero (see PortfolioValue.unpriced)."""
        return self.balances.aggregate(self.current_balances())

    def notices(self) -> List[Notice]:
        """Placements removed by reconciliation since the session started."""
        return self.reconciler.notices

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def submit_placement(
        self,
        x: int,
        y: int,
        building_type: Union[BuildingType, str],
        *,
        asset: Optional[str] = None,
        amount: int = 0,
        metadata: bytes = b"",
        timeout: Optional[float] = None,
    ) -> IntentHandle:
        """
        Claim (x, y) and start tracking the ledger write that places the building.

        Must be called from inside the running event loop. Validation and
        occupancy errors are raised here, before any network call.

        Raises:
            ValidationError: Unknown type or asset, bad coordinates, a second
                town hall, or a building before the town hall
            OccupiedCellError: The cell is already claimed
        """
        self._ensure_open()
        building_type = BuildingType.parse(building_type)
        call = self._placement_call(x, y, building_type, asset, amount, metadata)
        placement = self.store.place_tentative(x, y, building_type)
        return self._track(placement.local_id, call, timeout)

    def _placement_call(self, x: int, y: int, building_type: BuildingType,
                        asset: Optional[str], amount: int, metadata: bytes) -> ContractCall:
        if building_type is BuildingType.TOWN_HALL:
            if self.store.has_town_hall():
                raise ValidationError("This city already has a town hall")
            return create_town_hall_call(x, y)
        elif (building_type is BuildingType.BANK or building_type is BuildingType.SHOP
              or building_type is BuildingType.LOTTERY or building_type is BuildingType.BORROW):
            if not self.store.has_town_hall():
                raise ValidationError("Place a town hall before other buildings")
            return create_building_call(x, y, building_type, self._asset_address(asset),
                                        amount, metadata)
        else:
            assert_never(building_type)

    def _asset_address(self, symbol: Optional[str]) -> str:
        if symbol is None:
            return NATIVE_ASSET_ADDRESS
        for token in self.tokens:
            if token.symbol == symbol:
                return token.address
        raise ValidationError(f"Unknown asset {symbol!r}")

    def submit_move(self, building_id: int, x: int, y: int,
                    *, timeout: Optional[float] = None) -> IntentHandle:
        """Claim (x, y) for an existing building and track the move."""
        self._ensure_open()
        call = move_building_call(building_id, x, y)
        placement = self.store.place_tentative_move(building_id, x, y)
        return self._track(placement.local_id, call, timeout)

    def submit_deposit(self, building_id: int, amount: int,
                       *, timeout: Optional[float] = None) -> IntentHandle:
        """
        Track a deposit of `amount` (raw units of the building's asset).

        Funds writes claim no cell; stats and balances are refreshed once
        the write confirms or reverts.

        Raises:
            ValidationError: Unknown or removed building, or a non-positive amount
        """
        return self._submit_funds(deposit_call, building_id, amount, timeout)

    def submit_withdraw(self, building_id: int, amount: int,
                        *, timeout: Optional[float] = None) -> IntentHandle:
        return self._submit_funds(withdraw_call, building_id, amount, timeout)

    def submit_harvest(self, building_id: int, amount: int,
                       *, timeout: Optional[float] = None) -> IntentHandle:
        return self._submit_funds(harvest_call, building_id, amount, timeout)

    def _submit_funds(self, build, building_id: int, amount: int,
                      timeout: Optional[float]) -> IntentHandle:
        self._ensure_open()
        building = self.store.get_building(building_id)
        if building is None or not building.active:
            raise ValidationError(f"No active building #{building_id}")
        if building.asset == CORE_ASSET_SYMBOL:
            asset = NATIVE_ASSET_ADDRESS
        else:
            asset = self._asset_address(building.asset)
        call = build(building_id, amount, asset)
        return self._track(f"intent-{next(self._intent_ids)}", call, timeout, tied=False)

    def _track(self, key: str, call: ContractCall, timeout: Optional[float],
               tied: bool = True) -> IntentHandle:
        tracker = TransactionLifecycleTracker(
            call, self._signer, self._reader,
            config=self.config, store=self.store if tied else None,
            local_id=key if tied else None, timeout=timeout,
        )
        self._prune()
        self._trackers[key] = tracker
        self._tasks[key] = asyncio.get_running_loop().create_task(self._drive(key, tracker))
        return IntentHandle(key, call.intent_id)

    def _prune(self) -> None:
        finished = [key for key, task in self._tasks.items() if task.done()]
        for key in finished[:max(0, len(finished) - self.MAX_FINISHED_INTENTS)]:
            del self._tasks[key]
            del self._trackers[key]

    async def _drive(self, key: str, tracker: TransactionLifecycleTracker) -> TrackerOutcome:
        outcome = await tracker.run()
        # A confirmed write or a revert both mean the ledger moved on
        if self._closed or not (outcome.ok or outcome.reason is FailureReason.REVERTED_TRANSACTION):
            return outcome
        try:
            await self.reconciler.reconcile(f"{outcome.state.value}:{key}")
        except Exception:
            logger.exception("Reconcile after %s failed; keeping its outcome", key)
        return outcome

    def _tracker(self, handle: IntentHandle) -> TransactionLifecycleTracker:
        tracker = self._trackers.get(handle.local_id)
        if tracker is None:
            raise UnknownIntent(f"No intent {handle.local_id} in this session")
        return tracker

    def tracker_status(self, handle: IntentHandle) -> LifecycleState:
        return self._tracker(handle).state

    def tracker(self, handle: IntentHandle) -> TransactionLifecycleTracker:
        return self._tracker(handle)

    async def wait(self, handle: IntentHandle) -> TrackerOutcome:
        """
        Wait until the intent reaches a terminal state.

        For confirmed or reverted intents this also waits for the
        reconciliation the outcome triggered. Only the most recent
        MAX_FINISHED_INTENTS finished intents can be waited on.
        """
        self._tracker(handle)
        return await asyncio.shield(self._tasks[handle.local_id])

    def abort(self, handle: IntentHandle) -> bool:
        """Stop tracking an intent and drop its placement (the transaction is not recalled)."""
        return self._tracker(handle).abort()

    async def refresh(self) -> ReconcileReport:
        """Reconcile now (manual refresh)."""
        self._ensure_open()
        return await self.reconciler.reconcile("manual")

    def __repr__(self):
        state = "closed" if self._closed else ("open" if self._started else "new")
        return f"CitySession({self.owner}, {state}, {len(self._trackers)} intents)"
