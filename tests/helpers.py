"""
helpers.py - Test helpers shared by unit, functional and conformance tests
"""

from datetime import datetime, timedelta, timezone

from deficity import Building, BuildingType


OWNER = "0xA11CE00000000000000000000000000000000001"
OTHER_OWNER = "0xB0B0000000000000000000000000000000000002"
SMART_ACCOUNT = "0x5A5A000000000000000000000000000000000003"


def make_building(building_id: int, x: int, y: int, building_type="bank",
                  owner: str = OWNER, active: bool = True, **kwargs) -> Building:
    """Create a confirmed building for testing."""
    return Building(
        building_id=building_id,
        owner=owner,
        smart_account=kwargs.pop('smart_account', SMART_ACCOUNT),
        building_type=BuildingType.parse(building_type),
        asset=kwargs.pop('asset', "ETH"),
        amount=kwargs.pop('amount', 0),
        placed_at=kwargs.pop('placed_at', 1_700_000_000 + building_id),
        x=x,
        y=y,
        active=active,
        **kwargs
    )


class FakeClock:
    """Clock whose time only moves when told to."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)
