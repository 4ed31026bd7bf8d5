"""
Idempotency Conformance Tests

INVARIANT: Applying the same canonical read twice changes nothing the second time.

    ∀ store S, ∀ building list B:
        replace_confirmed(B); replace_confirmed(B)
        ⟹ state after second call = state after first call
           and the second diff reports no changes

This makes reconciliation safe to retry and to run from several triggers.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from deficity import GridStateStore, OccupiedCellError
from tests.helpers import OWNER, OTHER_OWNER, make_building


GRID = 6

coords = st.integers(min_value=0, max_value=GRID + 1)
buildings = st.lists(
    st.tuples(
        st.integers(min_value=1, max_value=10),
        coords,
        coords,
        st.sampled_from(["bank", "shop", "lottery", "borrow", "townhall"]),
        st.booleans(),
        st.sampled_from([OWNER, OWNER, OTHER_OWNER]),
    ),
    max_size=12,
)
placements = st.lists(
    st.tuples(st.integers(0, GRID - 1), st.integers(0, GRID - 1),
              st.sampled_from(["bank", "shop"]), st.booleans()),
    max_size=8,
)


def build(specs):
    return [make_building(i, x, y, kind, owner=owner, active=active)
            for i, x, y, kind, active, owner in specs]


def seeded_store(pending_specs):
    store = GridStateStore(GRID, owner=OWNER)
    for n, (x, y, kind, submitted) in enumerate(pending_specs):
        try:
            p = store.place_tentative(x, y, kind)
        except OccupiedCellError:
            continue
        if submitted:
            store.mark_submitted(p.local_id, f"0x{n:04x}")
    return store


class TestIdempotencyProperties:
    """Property-based idempotency tests."""

    @given(buildings, placements)
    @settings(max_examples=50)
    def test_second_replace_is_noop(self, specs, pending_specs):
        """
        PROPERTY: replace_confirmed(B) twice equals replace_confirmed(B) once.
        """
        store = seeded_store(pending_specs)
        store.replace_confirmed(build(specs))
        after_first = store.snapshot()

        diff = store.replace_confirmed(build(specs))

        assert store.snapshot() == after_first
        assert not diff.changed
        assert diff.promoted == ()
        assert diff.discarded == ()

    @given(buildings)
    @settings(max_examples=50)
    def test_replace_order_independent_of_listing_order(self, specs):
        """
        PROPERTY: The resulting grid does not depend on the order the ledger lists buildings.

        Duplicate ids are excluded: for those the later record wins by definition.
        """
        unique = list({spec[0]: spec for spec in specs}.values())
        a = GridStateStore(GRID, owner=OWNER)
        b = GridStateStore(GRID, owner=OWNER)
        a.replace_confirmed(build(unique))
        b.replace_confirmed(build(list(reversed(unique))))
        assert a.snapshot().cells == b.snapshot().cells

    @given(buildings)
    @settings(max_examples=50)
    def test_provisional_then_canonical_equals_canonical(self, specs):
        """
        PROPERTY: A cached grid leaves no trace once the canonical read lands.
        """
        cached = GridStateStore(GRID, owner=OWNER)
        cached.load_provisional(build(specs[::2]))
        cached.replace_confirmed(build(specs))

        fresh = GridStateStore(GRID, owner=OWNER)
        fresh.replace_confirmed(build(specs))

        assert cached.snapshot().cells == fresh.snapshot().cells
        assert cached.confirmed() == fresh.confirmed()
        assert not cached.provisional


class TestIdempotencyExamples:

    def test_revision_stable_on_repeat(self):
        store = GridStateStore(GRID, owner=OWNER)
        hall = [make_building(1, 3, 3, "townhall")]
        store.replace_confirmed(hall)
        revision = store.revision
        store.replace_confirmed(hall)
        assert store.revision == revision
