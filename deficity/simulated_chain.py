"""
simulated_chain.py - In-memory ledger for demos and tests

SimulatedChain behaves like the city contract behind a JSON-RPC node:

- per-owner grids, with on-ledger occupancy enforcement
  (revert "GridPositionOccupied")
- one smart account per owner, created with the town hall
  (revert "WalletAlreadyRegistered" on a second one, "NoSmartWallet"
  for buildings before it exists)
- monotonically increasing building ids; a move keeps the id
- deposits, withdrawals and harvests move funds between a building and
  the smart account and update the per-user totals
- a mempool: transactions are included by mine(), or at once with auto_mine
- scripted failures: signer rejections, read failures, forced reverts

It implements the LedgerReader protocol directly; signer_for(owner)
returns a Signer bound to one owner.
"""

from __future__ import annotations
import asyncio
from collections import deque
from dataclasses import dataclass
import hashlib
import logging
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from .config import DEFAULT_TOKENS
from .core import (
    Building, BuildingType, Cell, ContractCall, DEFAULT_GRID_SIZE,
    FN_CREATE_BUILDING, FN_CREATE_TOWN_HALL, FN_DEPOSIT, FN_HARVEST,
    FN_MOVE_BUILDING, FN_WITHDRAW,
    NATIVE_ASSET_ADDRESS, NetworkError, Receipt, TokenInfo, UserStats,
    building_from_abi, user_stats_from_abi,
)


logger = logging.getLogger(__name__)


REVERT_OCCUPIED = "GridPositionOccupied"
REVERT_WALLET_EXISTS = "WalletAlreadyRegistered"
REVERT_NO_WALLET = "NoSmartWallet"
REVERT_NOT_FOUND = "BuildingNotFound"
REVERT_OUT_OF_BOUNDS = "InvalidCoordinates"
REVERT_INSUFFICIENT_BALANCE = "InsufficientBalance"
REVERT_INSUFFICIENT_DEPOSIT = "InsufficientDeposit"
REVERT_ASSET_MISMATCH = "AssetMismatch"

BLOCK_TIME = 2


def _address(seed: str) -> str:
    return "0x" + hashlib.sha256(seed.encode()).hexdigest()[:40]


@dataclass
class _MempoolEntry:
    tx_id: str
    owner: str
    call: ContractCall


class ChainSigner:
    """Signer bound to one owner of a SimulatedChain."""

    def __init__(self, chain: SimulatedChain, owner: str):
        self.chain = chain
        self.owner = owner

    async def send(self, call: ContractCall) -> str:
        await asyncio.sleep(0)
        return self.chain.submit(self.owner, call)

    def __repr__(self):
        return f"ChainSigner({self.owner})"


class SimulatedChain:
    """
    In-memory city ledger.

    Args:
        auto_mine: Include every transaction as soon as it is submitted
        tokens: Token table used to map asset addresses to symbols
        grid_size: Coordinates outside the grid revert
        genesis_time: Timestamp of block 0
    """

    def __init__(self, *, auto_mine: bool = True, tokens: Sequence[TokenInfo] = DEFAULT_TOKENS,
                 grid_size: int = DEFAULT_GRID_SIZE, genesis_time: int = 1_700_000_000):
        self.auto_mine = auto_mine
        self.tokens = tuple(tokens)
        self.grid_size = grid_size
        self.block_number = 0
        self.timestamp = genesis_time

        self._accounts: Dict[str, str] = {}
        self._records: Dict[int, dict] = {}
        self._grids: Dict[str, Dict[Cell, int]] = {}
        self._stats: Dict[str, dict] = {}
        self._native: Dict[str, int] = {}
        self._token_balances: Dict[Tuple[str, str], int] = {}
        self._next_building_id = 1
        self._nonce = 0

        self._mempool: List[_MempoolEntry] = []
        self._receipts: Dict[str, Receipt] = {}

        self._send_failures: Deque[Exception] = deque()
        self._read_failures: Dict[str, int] = {}
        self._forced_reverts: Deque[str] = deque()
        self.calls: List[str] = []

    # ------------------------------------------------------------------
    # Scripting
    # ------------------------------------------------------------------

    def fail_next_sends(self, *errors: Exception) -> None:
        """The next len(errors) send() calls raise these errors, in order."""
        self._send_failures.extend(errors)

    def fail_next_reads(self, count: int, method: str = "*") -> None:
        """The next `count` calls of reader `method` ("*" for any) raise NetworkError."""
        self._read_failures[method] = self._read_failures.get(method, 0) + count

    def revert_next(self, reason: str = "execution reverted") -> None:
        """The next transaction included reverts with `reason`."""
        self._forced_reverts.append(reason)

    def fund(self, address: str, native: int = 0, tokens: Optional[Dict[str, int]] = None) -> None:
        """Credit raw balances: native in wei, tokens keyed by symbol."""
        key = address.lower()
        self._native[key] = self._native.get(key, 0) + native
        for symbol, amount in (tokens or {}).items():
            token = self._token(symbol)
            pair = (token.address.lower(), key)
            self._token_balances[pair] = self._token_balances.get(pair, 0) + amount

    def _token(self, symbol: str) -> TokenInfo:
        for token in self.tokens:
            if token.symbol == symbol:
                return token
        raise KeyError(f"Unknown token {symbol}")

    def signer_for(self, owner: str) -> ChainSigner:
        return ChainSigner(self, owner)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def submit(self, owner: str, call: ContractCall) -> str:
        """Accept `call` into the mempool and return its transaction id."""
        if self._send_failures:
            raise self._send_failures.popleft()
        tx_id = self._new_tx_id(owner, call)
        self._mempool.append(_MempoolEntry(tx_id, owner, call))
        logger.debug("tx %s accepted: %r", tx_id[:10], call)
        if self.auto_mine:
            self.mine()
        return tx_id

    @property
    def pending_transactions(self) -> List[str]:
        return [entry.tx_id for entry in self._mempool]

    def mine(self, max_transactions: Optional[int] = None) -> List[Receipt]:
        """Include mempool transactions in submission order, one block per call."""
        if not self._mempool:
            return []
        count = len(self._mempool) if max_transactions is None else max_transactions
        batch, self._mempool = self._mempool[:count], self._mempool[count:]
        self.block_number += 1
        self.timestamp += BLOCK_TIME
        receipts = []
        for entry in batch:
            receipt = self._execute(entry)
            self._receipts[entry.tx_id] = receipt
            receipts.append(receipt)
        return receipts

    def execute_now(self, owner: str, call: ContractCall) -> Receipt:
        """
        Include `call` in a block of its own, ahead of the mempool.

        Models a transaction sent by another session or client that the
        ledger orders before everything this client has pending.
        """
        tx_id = self._new_tx_id(owner, call)
        self.block_number += 1
        self.timestamp += BLOCK_TIME
        receipt = self._execute(_MempoolEntry(tx_id, owner, call))
        self._receipts[tx_id] = receipt
        return receipt

    def _new_tx_id(self, owner: str, call: ContractCall) -> str:
        self._nonce += 1
        return "0x" + hashlib.sha256(f"{owner}:{self._nonce}:{call.intent_id}".encode()).hexdigest()

    def _execute(self, entry: _MempoolEntry) -> Receipt:
        if self._forced_reverts:
            return self._revert(entry, self._forced_reverts.popleft())
        owner = entry.owner.lower()
        args = entry.call.args
        function = entry.call.function

        if function == FN_CREATE_TOWN_HALL:
            x, y = args
            if owner in self._accounts:
                return self._revert(entry, REVERT_WALLET_EXISTS)
            failure = self._check_cell(owner, x, y)
            if failure:
                return self._revert(entry, failure)
            self._accounts[owner] = _address(f"smart-account:{owner}")
            self._stats[owner] = {'cityCreatedAt': self.timestamp}
            building_id = self._place(entry.owner, BuildingType.TOWN_HALL.value, x, y,
                                      NATIVE_ASSET_ADDRESS, 0, b"")
        elif function == FN_CREATE_BUILDING:
            x, y, tag, asset, amount, metadata = args
            if owner not in self._accounts:
                return self._revert(entry, REVERT_NO_WALLET)
            failure = self._check_cell(owner, x, y)
            if failure:
                return self._revert(entry, failure)
            building_id = self._place(entry.owner, tag, x, y, asset, amount, metadata)
            stats = self._stats[owner]
            stats['totalDeposited'] = stats.get('totalDeposited', 0) + amount
        elif function == FN_MOVE_BUILDING:
            building_id, x, y = args
            record = self._records.get(building_id)
            if record is None or record['owner'].lower() != owner or not record['active']:
                return self._revert(entry, REVERT_NOT_FOUND)
            failure = self._check_cell(owner, x, y)
            if failure:
                return self._revert(entry, failure)
            grid = self._grids[owner]
            del grid[(record['coordinateX'], record['coordinateY'])]
            record['coordinateX'], record['coordinateY'] = x, y
            grid[(x, y)] = building_id
        elif function in (FN_DEPOSIT, FN_WITHDRAW, FN_HARVEST):
            failure = self._move_funds(owner, function, *args)
            if failure:
                return self._revert(entry, failure)
            logger.debug("tx %s included in block %d (%s on #%d)",
                         entry.tx_id[:10], self.block_number, function, args[0])
            return Receipt(entry.tx_id, True, self.block_number)
        else:
            return self._revert(entry, f"unknown function {function}")

        logger.debug("tx %s included in block %d (building #%d)",
                     entry.tx_id[:10], self.block_number, building_id)
        return Receipt(entry.tx_id, True, self.block_number, building_id=building_id)

    def _move_funds(self, owner: str, function: str, building_id: int,
                    asset: str, amount: int) -> Optional[str]:
        """Apply a deposit, withdrawal or harvest; return a revert reason on failure."""
        record = self._records.get(building_id)
        if record is None or record['owner'].lower() != owner or not record['active']:
            return REVERT_NOT_FOUND
        if record['asset'].lower() != asset.lower():
            return REVERT_ASSET_MISMATCH
        account = self._accounts[owner]
        stats = self._stats[owner]
        if function == FN_DEPOSIT:
            if self._balance(asset, account) < amount:
                return REVERT_INSUFFICIENT_BALANCE
            self._credit(asset, account, -amount)
            record['amount'] += amount
            stats['totalDeposited'] = stats.get('totalDeposited', 0) + amount
        elif function == FN_WITHDRAW:
            if record['amount'] < amount:
                return REVERT_INSUFFICIENT_DEPOSIT
            record['amount'] -= amount
            self._credit(asset, account, amount)
            stats['totalWithdrawn'] = stats.get('totalWithdrawn', 0) + amount
        else:
            # Yield comes from the lending protocol, not from the principal
            self._credit(asset, account, amount)
            stats['totalHarvested'] = stats.get('totalHarvested', 0) + amount
        return None

    def _balance(self, asset: str, address: str) -> int:
        if asset.lower() == NATIVE_ASSET_ADDRESS:
            return self._native.get(address.lower(), 0)
        return self._token_balances.get((asset.lower(), address.lower()), 0)

    def _credit(self, asset: str, address: str, amount: int) -> None:
        if asset.lower() == NATIVE_ASSET_ADDRESS:
            key = address.lower()
            self._native[key] = self._native.get(key, 0) + amount
        else:
            pair = (asset.lower(), address.lower())
            self._token_balances[pair] = self._token_balances.get(pair, 0) + amount

    def _revert(self, entry: _MempoolEntry, reason: str) -> Receipt:
        logger.debug("tx %s reverted: %s", entry.tx_id[:10], reason)
        return Receipt(entry.tx_id, False, self.block_number, revert_reason=reason)

    def _check_cell(self, owner: str, x: int, y: int) -> Optional[str]:
        if not (0 <= x < self.grid_size and 0 <= y < self.grid_size):
            return REVERT_OUT_OF_BOUNDS
        if (x, y) in self._grids.get(owner, {}):
            return REVERT_OCCUPIED
        return None

    def _place(self, owner: str, tag: str, x: int, y: int, asset: str,
               amount: int, metadata: bytes) -> int:
        building_id = self._next_building_id
        self._next_building_id += 1
        key = owner.lower()
        self._records[building_id] = {
            'id': building_id,
            'owner': owner,
            'smartWallet': self._accounts[key],
            'buildingType': tag,
            'asset': asset,
            'amount': amount,
            'placedAt': self.timestamp,
            'coordinateX': x,
            'coordinateY': y,
            'active': True,
            'metadata': metadata,
        }
        self._grids.setdefault(key, {})[(x, y)] = building_id
        stats = self._stats.setdefault(key, {})
        stats['buildingCount'] = stats.get('buildingCount', 0) + 1
        return building_id

    def remove_building(self, building_id: int) -> None:
        """Deactivate a building (an admin action outside any session)."""
        record = self._records[building_id]
        if record['active']:
            record['active'] = False
            key = record['owner'].lower()
            del self._grids[key][(record['coordinateX'], record['coordinateY'])]
            self._stats[key]['buildingCount'] -= 1

    def erase_building(self, building_id: int) -> None:
        """Drop a building from history entirely, as a reorganization would."""
        record = self._records.pop(building_id)
        grid = self._grids.get(record['owner'].lower(), {})
        cell = (record['coordinateX'], record['coordinateY'])
        if grid.get(cell) == building_id:
            del grid[cell]

    # ------------------------------------------------------------------
    # LedgerReader
    # ------------------------------------------------------------------

    async def _read(self, method: str) -> None:
        self.calls.append(method)
        await asyncio.sleep(0)
        for key in (method, "*"):
            if self._read_failures.get(key, 0) > 0:
                self._read_failures[key] -= 1
                raise NetworkError(f"{method}: connection reset")

    async def fetch_user_buildings(self, owner: str) -> List[Building]:
        await self._read("fetch_user_buildings")
        key = owner.lower()
        records = [r for r in self._records.values() if r['owner'].lower() == key]
        return [building_from_abi(r, self.tokens) for r in sorted(records, key=lambda r: r['id'])]

    async def fetch_user_stats(self, owner: str) -> UserStats:
        await self._read("fetch_user_stats")
        return user_stats_from_abi(self._stats.get(owner.lower(), {}))

    async def has_account(self, owner: str) -> bool:
        await self._read("has_account")
        return owner.lower() in self._accounts

    async def fetch_account(self, owner: str) -> Optional[str]:
        await self._read("fetch_account")
        return self._accounts.get(owner.lower())

    async def fetch_native_balance(self, address: str) -> int:
        await self._read("fetch_native_balance")
        return self._native.get(address.lower(), 0)

    async def fetch_token_balance(self, token_address: str, address: str) -> int:
        await self._read("fetch_token_balance")
        return self._token_balances.get((token_address.lower(), address.lower()), 0)

    async def fetch_receipt(self, tx_id: str) -> Optional[Receipt]:
        await self._read("fetch_receipt")
        return self._receipts.get(tx_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def account_of(self, owner: str) -> Optional[str]:
        return self._accounts.get(owner.lower())

    def buildings_of(self, owner: str) -> List[Building]:
        key = owner.lower()
        return [building_from_abi(r, self.tokens) for r in
                sorted(self._records.values(), key=lambda r: r['id']) if r['owner'].lower() == key]

    def __repr__(self):
        return (f"SimulatedChain(block={self.block_number}, {len(self._records)} buildings, "
                f"{len(self._mempool)} pending tx)")
