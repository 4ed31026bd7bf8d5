"""
reconciler.py - Merging canonical ledger state into the local model

ChainStateReconciler fetches the account's buildings, stats and balances and
applies them to a GridStateStore. A pass is triggered after a confirmation,
on demand, or by a low-frequency timer.

Failure isolation:
- If the building list cannot be read, the pass reports the error and the
  store is left untouched.
- Anything else (account lookup, one receipt, stats, one token balance,
  the cache) fails on its own; the rest of the pass still runs.

Concurrency: at most one pass runs at a time. Triggers arriving while a pass
runs share a single follow-up pass, so a confirmation seen mid-pass is never
lost to a read that started before it.
"""

from __future__ import annotations
import asyncio
import contextlib
from dataclasses import dataclass
import logging
from typing import List, Optional, Set, Tuple

from .balances import BalanceAggregator
from .config import SyncConfig
from .core import (
    FailureReason, LedgerReader, LifecycleState, SyncError,
    UserStats, WalletAsset,
)
from .grid_store import Anomaly, Discard, GridStateStore, ReconcileDiff
from .snapshot_cache import SnapshotCache


logger = logging.getLogger(__name__)


# Pending entries whose transaction was accepted but whose receipt is not yet known
_UNRESOLVED = (LifecycleState.SUBMITTED, LifecycleState.CONFIRMING, LifecycleState.TIMED_OUT)

# Failures of one read: transport errors, and records the decoders refuse
_READ_ERRORS = (SyncError, ValueError)


@dataclass(frozen=True, slots=True)
class Notice:
    """A user-facing note about a placement that silently went away."""
    local_id: str
    reason: FailureReason
    detail: str


@dataclass(frozen=True, slots=True)
class ReconcileReport:
    """
    Result of one reconciliation pass.

    Attributes:
        trigger: What started the pass ("startup", "manual", "timer", ...)
        ok: False if the canonical building read failed (store untouched)
        diff: Changes applied to the store
        stats: Stats read in this pass (None if the read failed)
        assets: Balances read in this pass
        errors: Per-item failures, e.g. "balance:USDC: timeout"
        notices: Placements discarded by this pass
    """
    trigger: str
    ok: bool
    diff: Optional[ReconcileDiff] = None
    stats: Optional[UserStats] = None
    assets: Tuple[WalletAsset, ...] = ()
    errors: Tuple[str, ...] = ()
    notices: Tuple[Notice, ...] = ()

    @property
    def anomalies(self) -> Tuple[Anomaly, ...]:
        return self.diff.anomalies if self.diff is not None else ()


class ChainStateReconciler:
    """
    Keeps one account's store, stats and balances in line with the ledger.

    Args:
        reader: Ledger read collaborator
        store: Store to reconcile
        owner: Account address
        config: Supplies refresh_interval and pending_ttl
        balances: Reads balances of the account's smart account (optional)
        cache: Receives every successfully read building list (optional)
    """

    def __init__(
        self,
        reader: LedgerReader,
        store: GridStateStore,
        owner: str,
        *,
        config: Optional[SyncConfig] = None,
        balances: Optional[BalanceAggregator] = None,
        cache: Optional[SnapshotCache] = None,
    ):
        self._reader = reader
        self._store = store
        self.owner = owner
        self._config = config or SyncConfig()
        self._balances = balances
        self._cache = cache

        self._stats = UserStats.empty()
        self._assets: Tuple[WalletAsset, ...] = ()
        self._account: Optional[str] = None
        self._notices: List[Notice] = []
        self.last_report: Optional[ReconcileReport] = None
        self.passes = 0

        self._lock = asyncio.Lock()
        self._queued: Optional[asyncio.Future] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def stats(self) -> UserStats:
        return self._stats

    @property
    def assets(self) -> Tuple[WalletAsset, ...]:
        return self._assets

    @property
    def account(self) -> Optional[str]:
        """Smart-account address, once known."""
        return self._account

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    def clear_notices(self) -> None:
        self._notices.clear()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def reconcile(self, trigger: str = "manual") -> ReconcileReport:
        """
        Run a reconciliation pass, or join the one already queued.

        Never raises for ledger failures: inspect the returned report.
        """
        if self._queued is None:
            self._queued = asyncio.ensure_future(self._queued_pass(trigger))
        return await asyncio.shield(self._queued)

    async def _queued_pass(self, trigger: str) -> ReconcileReport:
        async with self._lock:
            # From here on, new triggers queue a fresh pass behind this one
            self._queued = None
            return await self._run_pass(trigger)

    async def _run_pass(self, trigger: str) -> ReconcileReport:
        self.passes += 1
        errors: List[str] = []
        logger.debug("Reconciling %s (%s)", self.owner, trigger)

        try:
            has_account = await self._reader.has_account(self.owner)
            buildings = await self._reader.fetch_user_buildings(self.owner) if has_account else []
        except _READ_ERRORS as exc:
            logger.warning("Reconcile (%s) aborted, building read failed: %s", trigger, exc)
            report = ReconcileReport(trigger, ok=False, errors=(f"buildings: {exc}",))
            self.last_report = report
            return report

        if has_account and self._account is None:
            try:
                self._account = await self._reader.fetch_account(self.owner)
            except _READ_ERRORS as exc:
                errors.append(f"account: {exc}")

        notices: List[Notice] = []
        not_included: Set[str] = set()
        notices.extend(await self._resolve_receipts(errors, not_included))

        diff = self._store.replace_confirmed(buildings, not_included)
        stale: List[Discard] = list(diff.discarded)
        stale.extend(self._store.expire_stale(self._config.pending_ttl))
        notices.extend(Notice(d.local_id, d.reason, d.detail) for d in stale)

        stats: Optional[UserStats] = None
        try:
            stats = await self._reader.fetch_user_stats(self.owner) if has_account else UserStats.empty()
            self._stats = stats
        except _READ_ERRORS as exc:
            logger.warning("Keeping previous stats, read failed: %s", exc)
            errors.append(f"stats: {exc}")

        if self._balances is not None and self._account is not None:
            fetched = await self._balances.fetch_assets(self._reader, self._account)
            self._assets = fetched.assets
            errors.extend(f"balance:{symbol}: {err}" for symbol, err in fetched.errors.items())

        if self._cache is not None:
            try:
                self._cache.save(self.owner, self._store.confirmed())
            except SyncError as exc:
                logger.warning("Snapshot cache not updated: %s", exc)
                errors.append(f"cache: {exc}")

        self._notices.extend(notices)
        report = ReconcileReport(
            trigger=trigger,
            ok=True,
            diff=diff,
            stats=stats,
            assets=self._assets,
            errors=tuple(errors),
            notices=tuple(notices),
        )
        self.last_report = report
        if diff.changed or errors:
            logger.info("Reconcile (%s): +%d moved=%d promoted=%d discarded=%d errors=%d",
                        trigger, len(diff.added), len(diff.moved), len(diff.promoted),
                        len(stale), len(errors))
        return report

    async def _resolve_receipts(self, errors: List[str], not_included: Set[str]) -> List[Notice]:
        """
        Look up receipts of accepted transactions whose outcome is unknown.

        A success teaches the store which building id the placement created;
        a revert discards the placement. A missing receipt means the
        transaction was not included when the buildings were read, so its
        placement is added to `not_included`. Each lookup fails on its own.
        """
        notices: List[Notice] = []
        candidates = [p for p in self._store.pending()
                      if p.tx_id is not None and p.building_id is None and p.status in _UNRESOLVED]
        for placement in candidates:
            try:
                receipt = await self._reader.fetch_receipt(placement.tx_id)
            except _READ_ERRORS as exc:
                errors.append(f"receipt:{placement.local_id}: {exc}")
                continue
            if receipt is None:
                not_included.add(placement.local_id)
                continue
            if receipt.success:
                if receipt.building_id is not None:
                    self._store.record_building_id(placement.local_id, receipt.building_id)
                if placement.status is LifecycleState.TIMED_OUT:
                    self._store.mark_confirmed(placement.local_id)
            else:
                record = self._store.discard(placement.local_id, FailureReason.REVERTED_TRANSACTION,
                                             receipt.revert_reason or "execution reverted")
                if record is not None:
                    notices.append(Notice(record.local_id, record.reason, record.detail))
        return notices

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start_polling(self) -> bool:
        """Start the periodic pass. No-op if disabled (refresh_interval=0) or running."""
        if self._config.refresh_interval <= 0 or self.polling:
            return False
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        return True

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.refresh_interval)
            try:
                await self.reconcile("timer")
            except Exception:
                logger.exception("Periodic reconcile of %s failed", self.owner)

    def __repr__(self):
        return f"ChainStateReconciler({self.owner}, passes={self.passes})"
