"""
Atomicity Conformance Tests

INVARIANT: A rejected operation leaves no trace.

    ∀ store S, ∀ operation op:
        op raises ⟹ snapshot(S) after op = snapshot(S) before op

Covers refused placements and moves, and promotions that do not match
their placement. A failed canonical read never reaches the store at all
(see the reconciler tests).
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from deficity import GridStateStore, OccupiedCellError, SyncError
from tests.helpers import OWNER, make_building


GRID = 5

coords = st.integers(min_value=-2, max_value=GRID + 2)


def city():
    store = GridStateStore(GRID, owner=OWNER)
    store.replace_confirmed([make_building(1, 2, 2, "townhall"), make_building(2, 0, 0)])
    store.place_tentative(4, 4, "shop")
    return store


class TestAtomicityProperties:

    @given(coords, coords, st.sampled_from(["bank", "casino", "shop"]))
    @settings(max_examples=50)
    def test_refused_placement_changes_nothing(self, x, y, kind):
        """
        PROPERTY: place_tentative either succeeds or leaves the store as it was.
        """
        store = city()
        before = store.snapshot()
        try:
            store.place_tentative(x, y, kind)
        except SyncError:
            assert store.snapshot() == before
        else:
            assert store.revision == before.revision + 1

    @given(st.integers(min_value=0, max_value=4), coords, coords)
    @settings(max_examples=50)
    def test_refused_move_changes_nothing(self, building_id, x, y):
        """
        PROPERTY: place_tentative_move either succeeds or leaves the store as it was.
        """
        store = city()
        before = store.snapshot()
        try:
            store.place_tentative_move(building_id, x, y)
        except SyncError:
            assert store.snapshot() == before

    @given(coords, coords)
    @settings(max_examples=50)
    def test_mismatched_promotion_changes_nothing(self, x, y):
        """
        PROPERTY: Promoting a building at the wrong cell is refused atomically.
        """
        store = city()
        [pending] = store.pending()
        if (x, y) == pending.cell or not (0 <= x < GRID and 0 <= y < GRID):
            return
        before = store.snapshot()
        with pytest.raises(SyncError):
            store.promote(pending.local_id, make_building(9, x, y))
        assert store.snapshot() == before


class TestAtomicityExamples:

    def test_occupied_error_names_occupant(self):
        store = city()
        with pytest.raises(OccupiedCellError) as info:
            store.place_tentative(2, 2, "bank")
        assert info.value.occupant.building_id == 1
