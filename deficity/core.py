"""
Core types and pure functions for the city synchronization engine.

This module provides the foundational data structures and protocols:
1. Closed enumerations: BuildingType, LifecycleState, FailureReason
2. Immutable data structures: Building, PendingPlacement, WalletAsset, UserStats,
   Receipt, TokenInfo, ContractCall
3. Exceptions: SyncError and the error taxonomy shared by every component
4. Protocols: LedgerReader and Signer, the two ledger collaborators
5. Contract-call builders and ABI record decoders

All functions in this module are pure. Nothing here performs I/O or holds
mutable state; the stateful components live in grid_store, tracker and reconciler.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
import hashlib
from typing import (
    Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple,
    runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Balances arrive as uint256 integers (up to 78 digits). Converting them into
# Decimal quantities and multiplying by prices must not lose digits of the
# integer part, so the global context carries more precision than a uint256.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_SYNC_DECIMAL_CONTEXT = getcontext()
_SYNC_DECIMAL_CONTEXT.prec = 96
_SYNC_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Sentinel contract address used for the chain's native asset.
NATIVE_ASSET_ADDRESS = "0x0000000000000000000000000000000000000000"

# Symbol reported for buildings whose asset is not a known token.
CORE_ASSET_SYMBOL = "CORE"

# Side length of the square city grid.
DEFAULT_GRID_SIZE = 13

# Lending-protocol rate conventions.
RAY = 10 ** 27
SECONDS_PER_YEAR = 31_536_000

# Ledger write functions this engine knows how to track.
FN_CREATE_TOWN_HALL = "createTownHall"
FN_CREATE_BUILDING = "createBuilding"
FN_MOVE_BUILDING = "moveBuilding"
FN_DEPOSIT = "deposit"
FN_WITHDRAW = "withdraw"
FN_HARVEST = "harvest"

# Writes that change the grid, and writes that only move funds of a building.
GRID_FUNCTIONS = frozenset({FN_CREATE_TOWN_HALL, FN_CREATE_BUILDING, FN_MOVE_BUILDING})
FUNDS_FUNCTIONS = frozenset({FN_DEPOSIT, FN_WITHDRAW, FN_HARVEST})
WRITE_FUNCTIONS = GRID_FUNCTIONS | FUNDS_FUNCTIONS


# ============================================================================
# TYPE ALIASES
# ============================================================================

# A grid coordinate (x, y).
Cell = Tuple[int, int]


# ============================================================================
# ENUMS
# ============================================================================

class BuildingType(Enum):
    """
    Closed set of building kinds known to the ledger.

    Values are the tags stored on-ledger. Consumers branch over every member
    and close the branch with typing.assert_never so that adding a member
    is a type-checking error until every consumer handles it.
    """
    TOWN_HALL = "townhall"
    BANK = "bank"
    SHOP = "shop"
    LOTTERY = "lottery"
    BORROW = "borrow"

    @classmethod
    def parse(cls, tag: Any) -> BuildingType:
        """
        Resolve a ledger or UI tag into a BuildingType.

        Accepts members unchanged, ledger tags case-insensitively, and the
        legacy UI spelling "town-hall".

        Raises:
            ValidationError: If the tag names no known building type
        """
        if isinstance(tag, cls):
            return tag
        if not isinstance(tag, str):
            raise ValidationError(f"Building type must be a string, got {type(tag).__name__}")
        normalized = tag.strip().lower().replace("-", "").replace("_", "")
        for member in cls:
            if member.value == normalized:
                return member
        raise ValidationError(f"Unknown building type {tag!r}")

    @property
    def placeable(self) -> bool:
        """True for types placed through createBuilding (everything but the town hall)."""
        return self is not BuildingType.TOWN_HALL


class LifecycleState(Enum):
    """
    States of a tracked intent.

    CREATED -> SUBMITTED -> CONFIRMING -> {CONFIRMED, FAILED, TIMED_OUT}

    TIMED_OUT is terminal for the tracker but not for the outcome: the
    transaction may still be included later.
    """
    CREATED = "created"
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleState.CONFIRMED, LifecycleState.FAILED, LifecycleState.TIMED_OUT)


class FailureReason(Enum):
    """Why an intent or a tentative placement did not end up confirmed."""
    USER_REJECTED = "user_rejected"
    VALIDATION_ERROR = "validation_error"
    NETWORK_ERROR = "network_error"
    REVERTED_TRANSACTION = "reverted_transaction"
    TIMED_OUT = "timed_out"
    STALE_RECONCILIATION = "stale_reconciliation"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UNEXPECTED_ERROR = "unexpected_error"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class SyncError(Exception):
    """Base exception for all synchronization-engine errors."""
    pass


class OccupiedCellError(SyncError):
    """Raised when a tentative placement targets a cell that is already claimed."""

    def __init__(self, x: int, y: int, occupant: Any):
        self.x = x
        self.y = y
        self.occupant = occupant
        super().__init__(f"Cell ({x}, {y}) is occupied by {occupant!r}")


class ValidationError(SyncError):
    """Raised for a malformed intent (bad coordinates, unknown type, bad amount). Not retried."""
    pass


class UserRejected(SyncError):
    """Raised by a signer when the user declines to sign. Not retried automatically."""
    pass


class NetworkError(SyncError):
    """Raised by a ledger collaborator for a transient transport failure. Retried with backoff."""
    pass


class RevertedTransaction(SyncError):
    """The ledger included the transaction and rejected it."""

    def __init__(self, message: str, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(message)


class TransactionTimedOut(SyncError):
    """The outcome of a submitted transaction is unknown. Do not assume failure."""
    pass


class StaleReconciliation(SyncError):
    """Local speculative state was invalidated by a canonical ledger read."""
    pass


class TransactionCancelled(SyncError):
    """The caller stopped tracking an intent before it reached an outcome."""
    pass


class UnknownIntent(SyncError):
    """Raised when an intent handle does not belong to the session."""
    pass


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

def _check_coordinate(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValidationError(f"{name} must be non-negative, got {value}")


@dataclass(frozen=True, slots=True)
class Building:
    """
    A confirmed building, as read from the ledger.

    Immutable once confirmed except for `active`, which the ledger sets to
    False on removal. Identity across reads is `building_id`, never the
    coordinates: a building that moved is the same building.

    Attributes:
        building_id: Ledger-assigned identifier (monotonically increasing)
        owner: Owner account address
        smart_account: Address of the owner's smart account
        building_type: Closed building kind
        asset: Asset symbol associated with the building ("CORE" if none)
        amount: Raw integer amount in the asset's smallest unit
        placed_at: Ledger timestamp of placement (seconds)
        x, y: Grid coordinates
        active: False once the building has been removed
        metadata: Free-form bytes attached on-ledger
    """
    building_id: int
    owner: str
    smart_account: str
    building_type: BuildingType
    asset: str
    amount: int
    placed_at: int
    x: int
    y: int
    active: bool = True
    metadata: bytes = b""

    def __post_init__(self):
        if isinstance(self.building_id, bool) or not isinstance(self.building_id, int):
            raise ValidationError(f"building_id must be an int, got {type(self.building_id).__name__}")
        if self.building_id < 0:
            raise ValidationError(f"building_id must be non-negative, got {self.building_id}")
        if not isinstance(self.building_type, BuildingType):
            object.__setattr__(self, 'building_type', BuildingType.parse(self.building_type))
        _check_coordinate("x", self.x)
        _check_coordinate("y", self.y)
        if self.amount < 0:
            raise ValidationError(f"amount must be non-negative, got {self.amount}")

    @property
    def cell(self) -> Cell:
        return (self.x, self.y)

    def deactivated(self) -> Building:
        """Return a copy marked as removed."""
        return replace(self, active=False)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation (used by the snapshot cache)."""
        return {
            'building_id': self.building_id,
            'owner': self.owner,
            'smart_account': self.smart_account,
            'building_type': self.building_type.value,
            'asset': self.asset,
            'amount': str(self.amount),
            'placed_at': self.placed_at,
            'x': self.x,
            'y': self.y,
            'active': self.active,
            'metadata': self.metadata.hex(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Building:
        """Inverse of to_dict()."""
        return cls(
            building_id=int(data['building_id']),
            owner=data['owner'],
            smart_account=data['smart_account'],
            building_type=BuildingType.parse(data['building_type']),
            asset=data['asset'],
            amount=int(data['amount']),
            placed_at=int(data['placed_at']),
            x=int(data['x']),
            y=int(data['y']),
            active=bool(data['active']),
            metadata=bytes.fromhex(data.get('metadata', '')),
        )

    def __repr__(self) -> str:
        state = "" if self.active else ", inactive"
        return f"Building(#{self.building_id} {self.building_type.value} @({self.x},{self.y}){state})"


@dataclass(frozen=True, slots=True)
class PendingPlacement:
    """
    A local, speculative claim on a grid cell awaiting ledger confirmation.

    Never persisted. Superseded by a Building on confirmation or removed on
    terminal failure.

    Attributes:
        local_id: Identifier assigned by the store
        x, y: Target coordinates
        building_type: Kind of building being placed
        submitted_at: When the intent was registered
        tx_id: Transaction identifier once the network accepted the call
        status: Lifecycle state of the underlying intent
        building_id: Ledger id of the building created, once a receipt reports it
        moves_building_id: Set when this entry is a pending move of an existing building
        baseline_building_id: Highest confirmed building id known at creation
    """
    local_id: str
    x: int
    y: int
    building_type: BuildingType
    submitted_at: datetime
    tx_id: Optional[str] = None
    status: LifecycleState = LifecycleState.CREATED
    building_id: Optional[int] = None
    moves_building_id: Optional[int] = None
    baseline_building_id: int = 0

    @property
    def cell(self) -> Cell:
        return (self.x, self.y)

    @property
    def is_move(self) -> bool:
        return self.moves_building_id is not None

    def __repr__(self) -> str:
        kind = f"move #{self.moves_building_id}" if self.is_move else self.building_type.value
        return f"PendingPlacement({self.local_id} {kind} @({self.x},{self.y}) {self.status.value})"


@dataclass(frozen=True, slots=True)
class TokenInfo:
    """Static description of an asset the city tracks balances for."""
    symbol: str
    decimals: int
    address: str
    is_native: bool = False

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("TokenInfo symbol cannot be empty")
        if self.decimals < 0:
            raise ValueError(f"TokenInfo decimals must be non-negative, got {self.decimals}")


@dataclass(frozen=True, slots=True)
class WalletAsset:
    """
    A balance, normalized for display and valuation.

    Derived on every balance fetch and never mutated in place.

    Attributes:
        symbol: Asset symbol
        balance: Human-decimal balance string (exact, no float rounding)
        decimals: Decimal count of the asset
        address: Token contract address, or NATIVE_ASSET_ADDRESS for the native asset
        is_native: True for the chain's native asset
    """
    symbol: str
    balance: str
    decimals: int
    address: str
    is_native: bool = False

    @property
    def quantity(self) -> Decimal:
        return Decimal(self.balance)


@dataclass(frozen=True, slots=True)
class UserStats:
    """
    Read-only mirror of the ledger's per-user aggregates.

    Replaced wholesale on each fetch; never partially merged.
    """
    total_deposited: int = 0
    total_withdrawn: int = 0
    total_harvested: int = 0
    building_count: int = 0
    city_created_at: int = 0

    @classmethod
    def empty(cls) -> UserStats:
        return cls()


@dataclass(frozen=True, slots=True)
class Receipt:
    """
    Inclusion record of a transaction.

    Attributes:
        tx_id: Transaction identifier
        success: False if the ledger executed and reverted the call
        block_number: Block the transaction was included in
        revert_reason: Decoded revert reason, when available
        building_id: Building id decoded from the BuildingPlaced log, if any
    """
    tx_id: str
    success: bool
    block_number: int
    revert_reason: Optional[str] = None
    building_id: Optional[int] = None


# ============================================================================
# CONTRACT CALLS
# ============================================================================

def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a call argument for hashing.

    Semantically equal arguments always serialize identically, so equal calls
    hash to the same intent_id.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, int):
        return f"I:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, (bytes, bytearray)):
        return f"B:{bytes(value).hex()}"
    if isinstance(value, Decimal):
        return f"D:{value.normalize()}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(item) for item in value) + "]"
    return f"R:{value!r}"


def _compute_intent_id(function: str, args: Tuple[Any, ...]) -> str:
    content = f"{function}|{_canonicalize(args)}"
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class ContractCall:
    """
    An intended ledger write, before it is signed.

    Attributes:
        function: Ledger function name (one of WRITE_FUNCTIONS)
        args: Positional arguments in ABI order
        intent_id: Content hash of function and args (auto-computed)
    """
    function: str
    args: Tuple[Any, ...]
    intent_id: str = field(default="")

    def __post_init__(self):
        if self.function not in WRITE_FUNCTIONS:
            raise ValidationError(f"Unsupported ledger function {self.function!r}")
        if not isinstance(self.args, tuple):
            object.__setattr__(self, 'args', tuple(self.args))
        if not self.intent_id:
            object.__setattr__(self, 'intent_id', _compute_intent_id(self.function, self.args))

    def __repr__(self) -> str:
        rendered = ", ".join(_canonicalize(a).split(":", 1)[-1] for a in self.args)
        return f"ContractCall({self.function}({rendered}))"


def create_town_hall_call(x: int, y: int) -> ContractCall:
    """Build the call that opens a city: creates the smart account and its town hall."""
    _check_coordinate("x", x)
    _check_coordinate("y", y)
    return ContractCall(FN_CREATE_TOWN_HALL, (x, y))


def create_building_call(
    x: int,
    y: int,
    building_type: BuildingType,
    asset_address: str = NATIVE_ASSET_ADDRESS,
    amount: int = 0,
    metadata: bytes = b"",
) -> ContractCall:
    """
    Build a createBuilding call.

    Args:
        x, y: Target cell
        building_type: Any placeable BuildingType
        asset_address: Token contract address (native sentinel by default)
        amount: Raw integer amount deposited with the building
        metadata: Free-form bytes stored with the building

    Raises:
        ValidationError: For the town hall, negative coordinates or a negative amount
    """
    building_type = BuildingType.parse(building_type)
    if not building_type.placeable:
        raise ValidationError("The town hall is created with create_town_hall_call()")
    _check_coordinate("x", x)
    _check_coordinate("y", y)
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValidationError(f"amount must be a non-negative int, got {amount!r}")
    return ContractCall(
        FN_CREATE_BUILDING,
        (x, y, building_type.value, asset_address, amount, bytes(metadata)),
    )


def move_building_call(building_id: int, x: int, y: int) -> ContractCall:
    """Build a moveBuilding call; the building keeps its ledger id."""
    _check_coordinate("x", x)
    _check_coordinate("y", y)
    return ContractCall(FN_MOVE_BUILDING, (building_id, x, y))


def _funds_call(function: str, building_id: int, asset_address: str, amount: int) -> ContractCall:
    if isinstance(building_id, bool) or not isinstance(building_id, int) or building_id <= 0:
        raise ValidationError(f"building_id must be a positive int, got {building_id!r}")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"amount must be a positive int, got {amount!r}")
    return ContractCall(function, (building_id, asset_address, amount))


def deposit_call(building_id: int, amount: int,
                 asset_address: str = NATIVE_ASSET_ADDRESS) -> ContractCall:
    """Build a deposit of `amount` (raw units) into an existing building."""
    return _funds_call(FN_DEPOSIT, building_id, asset_address, amount)


def withdraw_call(building_id: int, amount: int,
                  asset_address: str = NATIVE_ASSET_ADDRESS) -> ContractCall:
    """Build a withdrawal of principal from a building back to the smart account."""
    return _funds_call(FN_WITHDRAW, building_id, asset_address, amount)


def harvest_call(building_id: int, amount: int,
                 asset_address: str = NATIVE_ASSET_ADDRESS) -> ContractCall:
    """
    Build a harvest of accrued yield from a building.

    The building's principal is unchanged; only the harvested total grows.
    """
    return _funds_call(FN_HARVEST, building_id, asset_address, amount)


# ============================================================================
# ABI DECODING
# ============================================================================

def asset_symbol_for(address: str, tokens: Sequence[TokenInfo]) -> str:
    """Map a token address to its symbol; unknown addresses map to CORE_ASSET_SYMBOL."""
    lowered = (address or "").lower()
    for token in tokens:
        if token.address.lower() == lowered and not token.is_native:
            return token.symbol
    return CORE_ASSET_SYMBOL


def building_from_abi(record: Mapping[str, Any], tokens: Sequence[TokenInfo] = ()) -> Building:
    """
    Decode one element of getUserBuildings() into a Building.

    The record uses the ledger's field names (id, smartWallet, buildingType,
    coordinateX, ...). Integer fields may arrive as ints or numeric strings.
    """
    metadata = record.get('metadata') or b""
    if isinstance(metadata, str):
        metadata = bytes.fromhex(metadata[2:] if metadata.startswith("0x") else metadata)
    return Building(
        building_id=int(record['id']),
        owner=record['owner'],
        smart_account=record['smartWallet'],
        building_type=BuildingType.parse(record['buildingType']),
        asset=asset_symbol_for(record.get('asset', NATIVE_ASSET_ADDRESS), tokens),
        amount=int(record.get('amount', 0)),
        placed_at=int(record.get('placedAt', 0)),
        x=int(record['coordinateX']),
        y=int(record['coordinateY']),
        active=bool(record.get('active', True)),
        metadata=bytes(metadata),
    )


def user_stats_from_abi(record: Mapping[str, Any]) -> UserStats:
    """Decode getUserStats() into UserStats."""
    return UserStats(
        total_deposited=int(record.get('totalDeposited', 0)),
        total_withdrawn=int(record.get('totalWithdrawn', 0)),
        total_harvested=int(record.get('totalHarvested', 0)),
        building_count=int(record.get('buildingCount', 0)),
        city_created_at=int(record.get('cityCreatedAt', 0)),
    )


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerReader(Protocol):
    """
    Side-effect-free reads against the ledger.

    Every method is a suspension point. Implementations raise NetworkError
    for transient transport failures; everything else is a programming error.
    """

    async def fetch_user_buildings(self, owner: str) -> List[Building]:
        """Return every building recorded for owner, active or not."""
        ...

    async def fetch_user_stats(self, owner: str) -> UserStats:
        ...

    async def has_account(self, owner: str) -> bool:
        """Return True once owner has a smart account (i.e. a town hall)."""
        ...

    async def fetch_account(self, owner: str) -> Optional[str]:
        """Return the smart-account address of owner, or None."""
        ...

    async def fetch_native_balance(self, address: str) -> int:
        ...

    async def fetch_token_balance(self, token_address: str, address: str) -> int:
        ...

    async def fetch_receipt(self, tx_id: str) -> Optional[Receipt]:
        """Return the receipt once the transaction is included, None before."""
        ...


@runtime_checkable
class Signer(Protocol):
    """
    Account/signing collaborator.

    send() returns the transaction identifier once the network accepted the
    call. It raises UserRejected when the user declines, ValidationError when
    local policy rejects the call, and NetworkError for transport failures.
    """

    async def send(self, call: ContractCall) -> str:
        ...
