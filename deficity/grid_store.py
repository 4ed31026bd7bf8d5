"""
grid_store.py - Authoritative in-memory model of grid occupancy

GridStateStore holds the confirmed buildings read from the ledger and the
tentative placements this client has registered, and guarantees:

    OCCUPANCY INVARIANT: for every cell (x, y), at most one of
    {active confirmed Building, PendingPlacement} claims it.

The invariant is checked in place_tentative() / place_tentative_move() and
re-established by replace_confirmed(). Every other mutator only removes an
entry from one side before adding to the other at the same cell.

All mutators are synchronous, so none can be interleaved by another
coroutine. A guard additionally refuses re-entrant mutation (e.g. from a
listener), and replace_confirmed() computes its result before committing
any of it.

An inverted index (cell -> occupant) gives O(1) query().
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import itertools
import logging
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple, Union

from .core import (
    Building, BuildingType, Cell, DEFAULT_GRID_SIZE, FailureReason,
    LifecycleState, OccupiedCellError, PendingPlacement, ValidationError,
)
from .coordinates import in_bounds


logger = logging.getLogger(__name__)


Occupant = Union[Building, PendingPlacement]
Listener = Callable[["GridStateStore"], None]


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class GridSnapshot:
    """Immutable view of the grid for rendering and interaction gating."""
    grid_size: int
    cells: Dict[Cell, Occupant]
    buildings: Tuple[Building, ...]
    pending: Tuple[PendingPlacement, ...]
    provisional: bool = False
    revision: int = 0

    def occupant(self, x: int, y: int) -> Optional[Occupant]:
        return self.cells.get((x, y))

    def is_free(self, x: int, y: int) -> bool:
        return in_bounds(x, y, self.grid_size) and (x, y) not in self.cells


@dataclass(frozen=True, slots=True)
class Anomaly:
    """
    Something in a canonical read that a consistent ledger would not produce.

    kind is one of: "disappeared", "duplicate_cell", "duplicate_id",
    "out_of_bounds", "foreign_owner".
    """
    kind: str
    building_id: int
    detail: str


@dataclass(frozen=True, slots=True)
class Discard:
    """A tentative placement removed without being promoted."""
    local_id: str
    reason: FailureReason
    cell: Cell
    detail: str = ""


@dataclass(frozen=True, slots=True)
class ReconcileDiff:
    """What one replace_confirmed() call changed."""
    added: Tuple[int, ...] = ()
    moved: Tuple[int, ...] = ()
    deactivated: Tuple[int, ...] = ()
    disappeared: Tuple[int, ...] = ()
    promoted: Tuple[str, ...] = ()
    discarded: Tuple[Discard, ...] = ()
    anomalies: Tuple[Anomaly, ...] = ()

    @property
    def changed(self) -> bool:
        return any((self.added, self.moved, self.deactivated, self.disappeared,
                    self.promoted, self.discarded))


# ============================================================================
# STORE
# ============================================================================

class GridStateStore:
    """
    Occupancy model for one account's N x N grid.

    One instance per session; pass it explicitly to the components that
    need it. There is no module-level store.

    Args:
        grid_size: Side length of the grid
        owner: Account whose buildings this store mirrors. When set, buildings
            of any other owner in a canonical read are reported as anomalies.
        clock: Returns the current aware datetime (injectable for tests)
    """

    def __init__(self, grid_size: int = DEFAULT_GRID_SIZE, owner: Optional[str] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        if grid_size < 1:
            raise ValueError(f"grid_size must be positive, got {grid_size}")
        self.grid_size = grid_size
        self.owner = owner
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # Every building of the last canonical read, active or not, by id
        self._buildings: Dict[int, Building] = {}
        self._pending: Dict[str, PendingPlacement] = {}
        # Inverted index: cell -> the single occupant claiming it
        self._cells: Dict[Cell, Occupant] = {}

        self._local_ids = itertools.count(1)
        self._provisional = False
        self._canonical_loaded = False
        self._mutating = False
        self._listeners: List[Listener] = []
        self.revision = 0

    # ------------------------------------------------------------------
    # Listeners and mutation guard
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        """Call `listener(store)` after every mutation. Listeners must not mutate."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        if self._mutating:
            raise RuntimeError("GridStateStore is already being mutated (re-entrant call)")
        self._mutating = True
        try:
            yield
        finally:
            self._mutating = False

    def _commit(self) -> None:
        # Runs inside _mutation(), so a listener that tries to mutate raises.
        self.revision += 1
        for listener in list(self._listeners):
            listener(self)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def provisional(self) -> bool:
        """True while the confirmed set comes from the snapshot cache."""
        return self._provisional

    def query(self, x: int, y: int) -> Optional[Occupant]:
        """Return the occupant of (x, y), or None. O(1)."""
        return self._cells.get((x, y))

    def get_pending(self, local_id: str) -> Optional[PendingPlacement]:
        return self._pending.get(local_id)

    def get_building(self, building_id: int) -> Optional[Building]:
        return self._buildings.get(building_id)

    def pending(self) -> List[PendingPlacement]:
        return sorted(self._pending.values(), key=lambda p: _local_order(p.local_id))

    def confirmed(self) -> List[Building]:
        """Every building of the last canonical read, active or not, by id."""
        return [self._buildings[i] for i in sorted(self._buildings)]

    def has_town_hall(self) -> bool:
        """True if a town hall is confirmed or pending."""
        if any(b.active and b.building_type is BuildingType.TOWN_HALL
               for b in self._buildings.values()):
            return True
        return any(p.building_type is BuildingType.TOWN_HALL and not p.is_move
                   for p in self._pending.values())

    def snapshot(self) -> GridSnapshot:
        return GridSnapshot(
            grid_size=self.grid_size,
            cells=dict(self._cells),
            buildings=tuple(b for b in self.confirmed() if b.active),
            pending=tuple(self.pending()),
            provisional=self._provisional,
            revision=self.revision,
        )

    def occupancy_violations(self) -> List[Cell]:
        """
        Recompute occupancy from scratch and return every over-claimed cell.

        Independent of the index; an empty list means the invariant holds.
        Buildings the ledger itself put on one cell count as a single
        confirmed claim (replace_confirmed reports them as duplicate_cell).
        """
        counts: Dict[Cell, int] = {}
        for cell in {b.cell for b in self._buildings.values() if b.active}:
            counts[cell] = 1
        for p in self._pending.values():
            counts[p.cell] = counts.get(p.cell, 0) + 1
        return sorted(cell for cell, n in counts.items() if n > 1)

    # ------------------------------------------------------------------
    # Tentative placements
    # ------------------------------------------------------------------

    def _check_free(self, x: int, y: int) -> None:
        if isinstance(x, bool) or isinstance(y, bool) or not isinstance(x, int) or not isinstance(y, int):
            raise ValidationError(f"Coordinates must be ints, got ({x!r}, {y!r})")
        if not in_bounds(x, y, self.grid_size):
            raise ValidationError(f"({x}, {y}) is outside the {self.grid_size}x{self.grid_size} grid")
        occupant = self._cells.get((x, y))
        if occupant is not None:
            raise OccupiedCellError(x, y, occupant)

    def _new_local_id(self) -> str:
        return f"pending-{next(self._local_ids)}"

    def _baseline(self) -> int:
        return max(self._buildings, default=0)

    def place_tentative(self, x: int, y: int,
                        building_type: Union[BuildingType, str]) -> PendingPlacement:
        """
        Claim (x, y) for a new building.

        Returns:
            The PendingPlacement, in state CREATED

        Raises:
            ValidationError: Unknown type or coordinates outside the grid
            OccupiedCellError: The cell is already claimed (store unchanged)
        """
        building_type = BuildingType.parse(building_type)
        with self._mutation():
            self._check_free(x, y)
            placement = PendingPlacement(
                local_id=self._new_local_id(),
                x=x,
                y=y,
                building_type=building_type,
                submitted_at=self._clock(),
                baseline_building_id=self._baseline(),
            )
            self._pending[placement.local_id] = placement
            self._cells[placement.cell] = placement
            logger.debug("Tentative %s", placement)
            self._commit()
        return placement

    def place_tentative_move(self, building_id: int, x: int, y: int) -> PendingPlacement:
        """
        Claim (x, y) as the destination of an existing building.

        The building keeps its current cell until the move is confirmed.

        Raises:
            ValidationError: Unknown or inactive building, a move already
                pending for it, or a target equal to its current cell
            OccupiedCellError: The target is already claimed
        """
        with self._mutation():
            building = self._buildings.get(building_id)
            if building is None or not building.active:
                raise ValidationError(f"No active building #{building_id} to move")
            if building.cell == (x, y):
                raise ValidationError(f"Building #{building_id} is already at ({x}, {y})")
            if any(p.moves_building_id == building_id for p in self._pending.values()):
                raise ValidationError(f"A move of building #{building_id} is already pending")
            self._check_free(x, y)
            placement = PendingPlacement(
                local_id=self._new_local_id(),
                x=x,
                y=y,
                building_type=building.building_type,
                submitted_at=self._clock(),
                moves_building_id=building_id,
                baseline_building_id=self._baseline(),
            )
            self._pending[placement.local_id] = placement
            self._cells[placement.cell] = placement
            logger.debug("Tentative %s", placement)
            self._commit()
        return placement

    def _update_pending(self, local_id: str, **changes) -> bool:
        with self._mutation():
            placement = self._pending.get(local_id)
            if placement is None:
                logger.debug("Ignoring update of unknown placement %s", local_id)
                return False
            updated = replace(placement, **changes)
            if updated == placement:
                return True
            self._pending[local_id] = updated
            self._cells[updated.cell] = updated
            self._commit()
        return True

    def mark_submitted(self, local_id: str, tx_id: str) -> bool:
        """Record that the network accepted the call for `local_id`."""
        return self._update_pending(local_id, tx_id=tx_id, status=LifecycleState.SUBMITTED)

    def mark_confirming(self, local_id: str) -> bool:
        return self._update_pending(local_id, status=LifecycleState.CONFIRMING)

    def mark_confirmed(self, local_id: str, building_id: Optional[int] = None) -> bool:
        """
        Record a successful receipt.

        The entry keeps its claim until a canonical read shows the building,
        at which point replace_confirmed() promotes it.
        """
        changes = {'status': LifecycleState.CONFIRMED}
        if building_id is not None:
            changes['building_id'] = building_id
        return self._update_pending(local_id, **changes)

    def mark_timed_out(self, local_id: str) -> bool:
        """Outcome unknown: the entry keeps its claim until promoted or expired."""
        return self._update_pending(local_id, status=LifecycleState.TIMED_OUT)

    def record_building_id(self, local_id: str, building_id: int) -> bool:
        return self._update_pending(local_id, building_id=building_id)

    def promote(self, local_id: str, building: Building) -> bool:
        """
        Replace a tentative placement with its confirmed building.

        Unknown local ids (already promoted or discarded) are logged and
        ignored.

        Returns:
            True if a placement was promoted

        Raises:
            ValidationError: If the building is not at the placement's cell
        """
        with self._mutation():
            placement = self._pending.get(local_id)
            if placement is None:
                logger.info("promote(%s): no such placement (already promoted or discarded)", local_id)
                return False
            if building.cell != placement.cell:
                raise ValidationError(
                    f"Building #{building.building_id} at {building.cell} does not match "
                    f"placement {local_id} at {placement.cell}"
                )
            del self._pending[local_id]
            del self._cells[placement.cell]
            previous = self._buildings.get(building.building_id)
            if previous is not None and self._cells.get(previous.cell) is previous:
                del self._cells[previous.cell]
            self._buildings[building.building_id] = building
            if building.active:
                self._cells[building.cell] = building
            logger.info("Promoted %s to %r", local_id, building)
            self._commit()
        return True

    def discard(self, local_id: str, reason: FailureReason, detail: str = "") -> Optional[Discard]:
        """
        Remove a tentative placement without installing a building.

        Returns:
            The Discard record, or None if local_id is unknown
        """
        with self._mutation():
            placement = self._pending.pop(local_id, None)
            if placement is None:
                logger.debug("discard(%s): no such placement", local_id)
                return None
            if self._cells.get(placement.cell) is placement:
                del self._cells[placement.cell]
            logger.info("Discarded %s (%s) %s", local_id, reason.value, detail)
            self._commit()
        return Discard(local_id, reason, placement.cell, detail)

    def expire_stale(self, max_age: float) -> List[Discard]:
        """
        Discard timed-out placements older than `max_age` seconds as EXPIRED.

        Only TIMED_OUT entries expire: any other status still has a tracker
        that will settle it.
        """
        cutoff = self._clock() - timedelta(seconds=max_age)
        stale = [p.local_id for p in self.pending()
                 if p.status is LifecycleState.TIMED_OUT and p.submitted_at <= cutoff]
        expired = []
        for local_id in stale:
            record = self.discard(local_id, FailureReason.EXPIRED,
                                  f"no confirmation within {max_age:g}s")
            if record is not None:
                expired.append(record)
        return expired

    def clear(self) -> None:
        """Drop all state (session teardown)."""
        with self._mutation():
            self._buildings = {}
            self._pending = {}
            self._cells = {}
            self._provisional = False
            self._canonical_loaded = False
            self._commit()

    # ------------------------------------------------------------------
    # Canonical state
    # ------------------------------------------------------------------

    def load_provisional(self, buildings: Iterable[Building]) -> bool:
        """
        Install cached buildings so the grid is not blank before the first read.

        Ignored once a canonical read has been applied. The next
        replace_confirmed() supersedes whatever this installed. Cached
        buildings on cells a pending placement already claims are skipped.
        """
        if self._canonical_loaded:
            return False
        claimed = {p.cell for p in self._pending.values()}
        kept = []
        for b in buildings:
            if b.active and b.cell in claimed:
                logger.debug("Not showing cached %r: cell claimed by a pending placement", b)
                continue
            kept.append(b)
        self._apply(kept, provisional=True)
        return True

    def replace_confirmed(self, buildings: Iterable[Building],
                          not_included: Iterable[str] = ()) -> ReconcileDiff:
        """
        Replace the confirmed set with a fresh canonical read.

        Ledger order wins. Pending placements are then settled against the
        new set:
        - a placement whose cell now holds the building it created (matched
          by receipt building id, or for unresolved receipts by type and a
          building id newer than anything known when it was made) is promoted;
        - a placement listed in `not_included` had its receipt looked up
          after `buildings` was read and it was not yet included, so no
          building in this read can be its own;
        - a placement whose cell holds any other building is discarded as
          STALE_RECONCILIATION;
        - a pending move is promoted once its building appears at the
          target, and discarded if the building is gone or the target was
          taken by another building;
        - everything else keeps its claim.

        Calling it twice with the same list leaves the store as after the
        first call.

        Returns:
            ReconcileDiff describing the changes and any anomalies
        """
        return self._apply(list(buildings), provisional=False, not_included=frozenset(not_included))

    def _apply(self, incoming: List[Building], provisional: bool,
               not_included: FrozenSet[str] = frozenset()) -> ReconcileDiff:
        with self._mutation():
            anomalies: List[Anomaly] = []

            # --- Phase 1: validate the read (nothing is committed yet) ---
            new_buildings: Dict[int, Building] = {}
            for b in incoming:
                if self.owner is not None and b.owner.lower() != self.owner.lower():
                    anomalies.append(Anomaly("foreign_owner", b.building_id,
                                             f"owned by {b.owner}"))
                    continue
                if not in_bounds(b.x, b.y, self.grid_size):
                    anomalies.append(Anomaly("out_of_bounds", b.building_id,
                                             f"at ({b.x}, {b.y})"))
                    continue
                if b.building_id in new_buildings:
                    anomalies.append(Anomaly("duplicate_id", b.building_id,
                                             "listed twice; keeping the later record"))
                new_buildings[b.building_id] = b

            # Highest id wins a doubly-claimed cell
            confirmed_cells: Dict[Cell, Building] = {}
            for building_id in sorted(new_buildings):
                b = new_buildings[building_id]
                if not b.active:
                    continue
                loser = confirmed_cells.get(b.cell)
                if loser is not None:
                    anomalies.append(Anomaly(
                        "duplicate_cell", loser.building_id,
                        f"shares ({b.x}, {b.y}) with #{b.building_id}; newer building kept",
                    ))
                confirmed_cells[b.cell] = b

            # --- Phase 2: diff against the previous read ---
            old = self._buildings
            added = tuple(i for i in sorted(new_buildings) if i not in old)
            moved = tuple(i for i in sorted(new_buildings)
                          if i in old and old[i].cell != new_buildings[i].cell)
            deactivated = tuple(i for i in sorted(new_buildings)
                                if i in old and old[i].active and not new_buildings[i].active)
            disappeared = tuple(i for i in sorted(old) if i not in new_buildings)
            if not self._provisional:
                for i in disappeared:
                    anomalies.append(Anomaly("disappeared", i,
                                             f"{old[i]!r} missing from the latest read"))

            # --- Phase 3: settle pending placements ---
            claimed_ids = {p.building_id for p in self._pending.values()
                           if p.building_id is not None}
            new_pending: Dict[str, PendingPlacement] = {}
            promoted: List[str] = []
            discarded: List[Discard] = []
            if provisional:
                new_pending = dict(self._pending)
            else:
                for p in self.pending():
                    verdict, detail = self._settle(p, new_buildings, confirmed_cells, claimed_ids,
                                                   p.local_id in not_included)
                    if verdict == "promote":
                        promoted.append(p.local_id)
                    elif verdict == "discard":
                        discarded.append(Discard(p.local_id, FailureReason.STALE_RECONCILIATION,
                                                 p.cell, detail))
                    else:
                        new_pending[p.local_id] = p

            # --- Phase 4: commit ---
            new_cells: Dict[Cell, Occupant] = dict(confirmed_cells)
            for p in new_pending.values():
                new_cells[p.cell] = p

            diff = ReconcileDiff(
                added=added,
                moved=moved,
                deactivated=deactivated,
                disappeared=disappeared,
                promoted=tuple(promoted),
                discarded=tuple(discarded),
                anomalies=tuple(anomalies),
            )
            changed = (new_buildings != self._buildings or new_pending != self._pending
                       or provisional != self._provisional)
            self._buildings = new_buildings
            self._pending = new_pending
            self._cells = new_cells
            self._provisional = provisional
            if not provisional:
                self._canonical_loaded = True

            for anomaly in anomalies:
                logger.warning("Ledger anomaly (%s) on building #%d: %s",
                               anomaly.kind, anomaly.building_id, anomaly.detail)
            for record in discarded:
                logger.warning("Discarded %s at %s as stale: %s",
                               record.local_id, record.cell, record.detail)
            if promoted:
                logger.info("Promoted %s", ", ".join(promoted))
            if changed:
                self._commit()
        return diff

    def _settle(self, p: PendingPlacement, buildings: Dict[int, Building],
                cells: Dict[Cell, Building], claimed_ids, not_included: bool) -> Tuple[str, str]:
        occupant = cells.get(p.cell)

        if p.is_move:
            target = buildings.get(p.moves_building_id)
            if target is None or not target.active:
                return "discard", f"building #{p.moves_building_id} no longer exists"
            if target.cell == p.cell:
                return "promote", ""
            if occupant is not None:
                return "discard", f"target taken by #{occupant.building_id}"
            return "keep", ""

        if occupant is None:
            return "keep", ""
        if self._corresponds(p, occupant, claimed_ids, not_included):
            return "promote", ""
        return "discard", f"cell claimed by #{occupant.building_id}"

    @staticmethod
    def _corresponds(p: PendingPlacement, b: Building, claimed_ids, not_included: bool) -> bool:
        """Is `b` the building that placement `p` created?"""
        if p.building_id is not None:
            return b.building_id == p.building_id
        if p.tx_id is None:
            # Never accepted by the network, so it cannot have landed
            return False
        if not_included:
            return False
        if b.building_id in claimed_ids:
            return False
        return b.building_type is p.building_type and b.building_id > p.baseline_building_id

    def __repr__(self):
        active = sum(1 for b in self._buildings.values() if b.active)
        return (f"GridStateStore({self.grid_size}x{self.grid_size}, {active} buildings, "
                f"{len(self._pending)} pending)")


def _local_order(local_id: str) -> Tuple[int, str]:
    prefix, _, number = local_id.rpartition("-")
    return (int(number), prefix) if number.isdigit() else (0, local_id)
