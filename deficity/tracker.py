"""
tracker.py - Per-intent transaction lifecycle state machine

    CREATED --send ok--> SUBMITTED --> CONFIRMING --receipt ok--> CONFIRMED
       |                                   |------reverted-----> FAILED
       |--rejected / invalid / retries---> FAILED
                                           |------deadline-----> TIMED_OUT

CREATED is entered in the constructor, before any network call. Every
await in run() is a suspension point; transitions of one tracker are
strictly sequential. run() never raises: every path, including unexpected
errors, resolves to a TrackerOutcome the caller inspects.

abort() stops tracking. A transaction the network already accepted is
NOT recalled; only local tracking and the tentative placement are dropped.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .config import SyncConfig
from .core import (
    ContractCall, FailureReason, LedgerReader, LifecycleState, NetworkError,
    Receipt, RevertedTransaction, Signer, StaleReconciliation, SyncError,
    TransactionCancelled, TransactionTimedOut, UserRejected, ValidationError,
)
from .grid_store import GridStateStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Transition:
    """One entry of a tracker's history (`at` is event-loop time)."""
    state: LifecycleState
    at: float
    detail: str = ""


@dataclass(frozen=True, slots=True)
class TrackerOutcome:
    """
    Terminal result of a tracked intent.

    Attributes:
        local_id: Tentative placement the intent belongs to (None if untied)
        state: CONFIRMED, FAILED or TIMED_OUT
        reason: Why the intent did not confirm (None when CONFIRMED)
        tx_id: Transaction id, if the network accepted the call
        receipt: Inclusion receipt, if one was observed
        detail: Human-readable explanation (revert reason, last error)
    """
    local_id: Optional[str]
    state: LifecycleState
    reason: Optional[FailureReason] = None
    tx_id: Optional[str] = None
    receipt: Optional[Receipt] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.state is LifecycleState.CONFIRMED

    def raise_for_status(self) -> None:
        """Raise the exception matching a non-confirmed outcome; no-op when confirmed."""
        if self.ok:
            return
        reason = self.reason
        message = self.detail or (reason.value if reason else self.state.value)
        if reason is FailureReason.USER_REJECTED:
            raise UserRejected(message)
        if reason is FailureReason.VALIDATION_ERROR:
            raise ValidationError(message)
        if reason is FailureReason.NETWORK_ERROR:
            raise NetworkError(message)
        if reason is FailureReason.REVERTED_TRANSACTION:
            raise RevertedTransaction(message, self.receipt.revert_reason if self.receipt else None)
        if reason in (FailureReason.TIMED_OUT, FailureReason.EXPIRED):
            raise TransactionTimedOut(message)
        if reason is FailureReason.STALE_RECONCILIATION:
            raise StaleReconciliation(message)
        if reason is FailureReason.CANCELLED:
            raise TransactionCancelled(message)
        raise SyncError(message)


class TransactionLifecycleTracker:
    """
    Submits one ContractCall and follows it to a terminal state.

    When tied to a GridStateStore placement (store and local_id), the
    tracker keeps the placement's status current and discards it on
    failure or abort. A confirmed or timed-out placement keeps its claim
    until reconciliation promotes or expires it.

    Args:
        call: Ledger write to submit
        signer: Signs and broadcasts the call
        reader: Polled for the receipt
        config: Poll interval, retry bounds and default deadline
        store: Store holding the tentative placement (optional)
        local_id: Placement id inside `store` (optional)
        timeout: Per-intent deadline in seconds (defaults to config.confirmation_timeout)
        sleep: Awaitable delay used between polls (injectable for tests)
    """

    def __init__(
        self,
        call: ContractCall,
        signer: Signer,
        reader: LedgerReader,
        *,
        config: Optional[SyncConfig] = None,
        store: Optional[GridStateStore] = None,
        local_id: Optional[str] = None,
        timeout: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.call = call
        self.local_id = local_id
        self._signer = signer
        self._reader = reader
        self._config = config or SyncConfig()
        self._store = store
        self.timeout = self._config.confirmation_timeout if timeout is None else timeout
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        self._sleep_fn = sleep or asyncio.sleep

        self._state = LifecycleState.CREATED
        self._reason: Optional[FailureReason] = None
        self._tx_id: Optional[str] = None
        self._receipt: Optional[Receipt] = None
        self._detail = ""
        self._history: List[Transition] = [Transition(LifecycleState.CREATED, self._now())]
        self._abort = asyncio.Event()
        self._running = False
        self._outcome: Optional[TrackerOutcome] = None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def reason(self) -> Optional[FailureReason]:
        return self._reason

    @property
    def tx_id(self) -> Optional[str]:
        return self._tx_id

    @property
    def receipt(self) -> Optional[Receipt]:
        return self._receipt

    @property
    def history(self) -> Tuple[Transition, ...]:
        return tuple(self._history)

    @property
    def outcome(self) -> Optional[TrackerOutcome]:
        return self._outcome

    @property
    def done(self) -> bool:
        return self._outcome is not None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def abort(self) -> bool:
        """
        Stop tracking this intent.

        Returns:
            False if the tracker already reached a terminal state
        """
        if self._state.is_terminal:
            return False
        self._abort.set()
        if not self._running:
            self._finish_failed(FailureReason.CANCELLED, "aborted before submission")
        return True

    async def run(self) -> TrackerOutcome:
        """Drive the intent to a terminal state. Never raises (except on task cancellation)."""
        if self._outcome is not None:
            return self._outcome
        if self._running:
            raise RuntimeError("Tracker is already running")
        self._running = True
        try:
            tx_id = await self._submit()
            if tx_id is not None:
                await self._confirm(tx_id)
        except asyncio.CancelledError:
            self._finish_failed(FailureReason.CANCELLED, "tracking task cancelled")
            raise
        except Exception as exc:
            logger.exception("Unexpected error tracking %r", self.call)
            self._finish_failed(FailureReason.UNEXPECTED_ERROR, f"{type(exc).__name__}: {exc}")
        finally:
            self._running = False
        return self._outcome

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _submit(self) -> Optional[str]:
        attempt = 0
        while True:
            attempt += 1
            try:
                aborted, tx_id = await self._until_aborted(self._signer.send(self.call))
            except UserRejected as exc:
                self._finish_failed(FailureReason.USER_REJECTED, str(exc))
                return None
            except ValidationError as exc:
                self._finish_failed(FailureReason.VALIDATION_ERROR, str(exc))
                return None
            except NetworkError as exc:
                if attempt >= self._config.max_submit_attempts:
                    logger.warning("Giving up on %r after %d attempts: %s", self.call, attempt, exc)
                    self._finish_failed(FailureReason.NETWORK_ERROR, str(exc))
                    return None
                delay = self._config.backoff_delay(attempt)
                logger.debug("Submit attempt %d of %r failed (%s); retrying in %.3fs",
                             attempt, self.call, exc, delay)
                if await self._pause(delay):
                    self._finish_failed(FailureReason.CANCELLED, "aborted during submission")
                    return None
                continue
            if aborted:
                self._finish_failed(FailureReason.CANCELLED, "aborted during submission")
                return None
            break

        self._tx_id = tx_id
        self._transition(LifecycleState.SUBMITTED, tx_id)
        if self._store is not None and self.local_id is not None:
            self._store.mark_submitted(self.local_id, tx_id)
        return tx_id

    async def _confirm(self, tx_id: str) -> None:
        self._transition(LifecycleState.CONFIRMING)
        if self._store is not None and self.local_id is not None:
            self._store.mark_confirming(self.local_id)

        deadline = self._now() + self.timeout
        errors = 0
        while True:
            try:
                aborted, receipt = await self._until_aborted(self._reader.fetch_receipt(tx_id))
            except NetworkError as exc:
                errors += 1
                if errors > self._config.max_poll_errors:
                    self._finish_timed_out(f"{errors} consecutive receipt polls failed: {exc}")
                    return
                delay = self._config.backoff_delay(errors)
                logger.debug("Receipt poll for %s failed (%s); retrying in %.3fs", tx_id, exc, delay)
            else:
                if aborted:
                    self._finish_failed(FailureReason.CANCELLED, "aborted while confirming")
                    return
                if receipt is not None:
                    self._settle(receipt)
                    return
                errors = 0
                delay = self._config.poll_interval

            remaining = deadline - self._now()
            if remaining <= 0:
                self._finish_timed_out(f"not included within {self.timeout:g}s")
                return
            if await self._pause(min(delay, remaining)):
                self._finish_failed(FailureReason.CANCELLED, "aborted while confirming")
                return

    def _settle(self, receipt: Receipt) -> None:
        self._receipt = receipt
        if receipt.success:
            self._finish(LifecycleState.CONFIRMED, None, f"block {receipt.block_number}")
            if self._store is not None and self.local_id is not None:
                self._store.mark_confirmed(self.local_id, receipt.building_id)
            logger.info("%r confirmed in block %d", self.call, receipt.block_number)
        else:
            self._finish_failed(FailureReason.REVERTED_TRANSACTION,
                                receipt.revert_reason or "execution reverted")

    # ------------------------------------------------------------------
    # Suspension helpers
    # ------------------------------------------------------------------

    async def _until_aborted(self, awaitable: Awaitable[Any]) -> Tuple[bool, Any]:
        """
        Await `awaitable` unless abort() is called first.

        Returns (aborted, result). Exceptions of `awaitable` propagate.
        """
        if self._abort.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return True, None
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._abort.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return False, work.result()
        work.cancel()
        return True, None

    async def _pause(self, delay: float) -> bool:
        """Sleep for `delay` seconds; True if aborted meanwhile."""
        if self._abort.is_set():
            return True
        aborted, _ = await self._until_aborted(self._sleep_fn(delay))
        return aborted or self._abort.is_set()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _now() -> float:
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return 0.0

    def _transition(self, state: LifecycleState, detail: str = "") -> None:
        logger.debug("%s: %s -> %s %s", self.local_id or self.call.intent_id,
                     self._state.value, state.value, detail)
        self._state = state
        self._history.append(Transition(state, self._now(), detail))

    def _finish(self, state: LifecycleState, reason: Optional[FailureReason], detail: str) -> None:
        self._reason = reason
        self._detail = detail
        self._transition(state, detail)
        self._outcome = TrackerOutcome(
            local_id=self.local_id,
            state=state,
            reason=reason,
            tx_id=self._tx_id,
            receipt=self._receipt,
            detail=detail,
        )

    def _finish_failed(self, reason: FailureReason, detail: str) -> None:
        if self._state.is_terminal:
            return
        self._finish(LifecycleState.FAILED, reason, detail)
        if reason is not FailureReason.CANCELLED:
            logger.info("%r failed (%s): %s", self.call, reason.value, detail)
        if self._store is not None and self.local_id is not None:
            self._store.discard(self.local_id, reason, detail)

    def _finish_timed_out(self, detail: str) -> None:
        logger.warning("%r timed out (tx %s): %s", self.call, self._tx_id, detail)
        self._finish(LifecycleState.TIMED_OUT, FailureReason.TIMED_OUT, detail)
        if self._store is not None and self.local_id is not None:
            self._store.mark_timed_out(self.local_id)

    def __repr__(self):
        return f"TransactionLifecycleTracker({self.call!r}, state={self._state.value})"
