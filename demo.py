#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Learn the Sync Engine Step by Step

A walk through the synchronization engine against an in-memory ledger.
Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-2: Foundation    - Sessions, the town hall, tentative placements
  3-4: Failure modes - Occupied cells, reverted transactions
  5-6: Reality check - Another session racing for a cell, slow confirmations
  7:   Balances      - Normalization and portfolio value

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
import logging
import sys

from deficity import (
    CitySession, SimulatedChain, StaticPricingSource, SyncConfig,
    OccupiedCellError, create_building_call, BuildingType,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    owner: str = "0xA11CE00000000000000000000000000000000001"
    town_hall: tuple = (6, 6)
    eth_price: Decimal = Decimal("3000")
    native_funding: int = 1_500_000_000_000_000_000    # 1.5 ETH
    usdc_funding: int = 1_000_000_000                   # 1000 USDC


CONFIG = DemoConfig()
QUICK_MODE = "--quick" in sys.argv

ENGINE_CONFIG = SyncConfig(
    poll_interval=0.05,
    confirmation_timeout=0.5,
    backoff_base=0.01,
    backoff_cap=0.1,
    refresh_interval=0,
)


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def draw_grid(city: CitySession):
    """Print the grid: upper case = confirmed, lower case = pending, '.' = free."""
    grid = city.current_grid()
    for y in range(grid.grid_size):
        row = []
        for x in range(grid.grid_size):
            occupant = grid.occupant(x, y)
            if occupant is None:
                row.append(".")
            elif hasattr(occupant, "local_id"):
                row.append(occupant.building_type.value[0])
            else:
                row.append(occupant.building_type.value[0].upper())
        print("    " + " ".join(row))


# ============================================================================
# STEPS
# ============================================================================

async def step_01_town_hall(city: CitySession):
    step_header(1, "Opening a City",
        "See a placement go CREATED -> SUBMITTED -> CONFIRMING -> CONFIRMED.")
    handle = city.submit_placement(*CONFIG.town_hall, "townhall")
    print(f"Right after submit: {city.tracker_status(handle).value}")
    draw_grid(city)
    outcome = await city.wait(handle)
    print(f"\nOutcome: {outcome.state.value} (tx {outcome.tx_id[:12]}...)")
    for transition in city.tracker(handle).history:
        print(f"  -> {transition.state.value:<11} {transition.detail[:40]}")
    draw_grid(city)


async def step_02_buildings(city: CitySession):
    step_header(2, "Placing Buildings",
        "Several intents can be confirming at once; each claims its own cell.")
    handles = [city.submit_placement(x, y, kind) for x, y, kind in
               [(3, 3, "bank"), (9, 3, "shop"), (3, 9, "lottery")]]
    draw_grid(city)
    for outcome in await asyncio.gather(*(city.wait(h) for h in handles)):
        print(f"  {outcome.local_id}: {outcome.state.value}")
    draw_grid(city)


async def step_03_occupied(city: CitySession):
    step_header(3, "Occupied Cells",
        "A claimed cell is rejected locally, before any network call.")
    try:
        city.submit_placement(3, 3, "bank")
    except OccupiedCellError as exc:
        print(f"Rejected: {exc}")


async def step_04_revert(city: CitySession, chain: SimulatedChain):
    step_header(4, "Reverted Transactions",
        "A transaction the ledger rejects ends FAILED and its placement is discarded.")
    chain.revert_next("InsufficientDeposit")
    handle = city.submit_placement(9, 9, "borrow")
    outcome = await city.wait(handle)
    print(f"Outcome: {outcome.state.value} / {outcome.reason.value}: {outcome.detail}")
    print(f"Cell (9, 9) now: {city.current_grid().occupant(9, 9)}")


async def step_05_race(city: CitySession, chain: SimulatedChain):
    step_header(5, "Racing Another Session",
        "When another session wins a cell, our pending claim is discarded as stale.")
    chain.auto_mine = False
    handle = city.submit_placement(5, 5, "shop")
    await asyncio.sleep(0.01)
    # The same owner, from another device, gets a bank at (5, 5) included first
    chain.execute_now(CONFIG.owner, create_building_call(5, 5, BuildingType.BANK))
    report = await city.refresh()
    for notice in report.notices:
        print(f"Notice: {notice.local_id} {notice.reason.value}: {notice.detail}")
    print(f"Cell (5, 5) now: {city.current_grid().occupant(5, 5)}")
    chain.mine()
    chain.auto_mine = True
    outcome = await city.wait(handle)
    print(f"Our shop's transaction: {outcome.state.value} / {outcome.reason.value}: {outcome.detail}")


async def step_06_timeout(city: CitySession, chain: SimulatedChain):
    step_header(6, "Slow Confirmations",
        "TIMED_OUT means 'unknown', not 'failed': the claim stays until the ledger decides.")
    chain.auto_mine = False
    handle = city.submit_placement(1, 11, "bank", timeout=0.2)
    outcome = await city.wait(handle)
    print(f"Tracker: {outcome.state.value}; cell (1, 11): {city.current_grid().occupant(1, 11)}")
    chain.mine()
    chain.auto_mine = True
    await city.refresh()
    print(f"After the block and a refresh: {city.current_grid().occupant(1, 11)}")


async def step_07_balances(city: CitySession, chain: SimulatedChain):
    step_header(7, "Balances",
        "Raw integers become exact decimals; unpriced assets count as zero.")
    account = chain.account_of(CONFIG.owner)
    chain.fund(account, native=CONFIG.native_funding, tokens={"USDC": CONFIG.usdc_funding})
    await city.refresh()
    for asset in city.current_balances():
        print(f"  {asset.symbol:<5} {asset.balance}")
    value = city.portfolio_value()
    print(f"\nTotal: {value.total_value} USD = {value.total_value_in_reference} {value.reference_symbol}")
    stats = city.current_stats()
    print(f"Buildings on ledger: {stats.building_count}")


async def run_tutorial():
    chain = SimulatedChain()
    pricing = StaticPricingSource({"ETH": CONFIG.eth_price, "USDC": Decimal("1")})
    async with CitySession(CONFIG.owner, chain, chain.signer_for(CONFIG.owner),
                           config=ENGINE_CONFIG, pricing=pricing) as city:
        await step_01_town_hall(city)
        wait_for_enter()
        await step_02_buildings(city)
        wait_for_enter()
        await step_03_occupied(city)
        wait_for_enter()
        await step_04_revert(city, chain)
        wait_for_enter()
        await step_05_race(city, chain)
        wait_for_enter()
        await step_06_timeout(city, chain)
        wait_for_enter()
        await step_07_balances(city, chain)


def main():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    asyncio.run(run_tutorial())
    print("\nDone.")


if __name__ == "__main__":
    main()
