"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the city synchronization engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. occupancy.py - At most one claim per grid cell
2. atomicity.py - Rejected operations leave no trace
3. idempotency.py - Re-applying a canonical read changes nothing
4. determinism.py - Intent identity and geometry are pure functions
5. round_trip.py - Balance normalization is exact
6. lifecycle.py - Trackers walk the lifecycle to one terminal state

These tests use hypothesis for property-based testing.
"""
