"""
test_simulated_chain.py - Unit tests for the in-memory ledger

Tests:
- Town hall and smart-account creation
- Occupancy, bounds and ordering reverts
- Deposits, withdrawals and harvests
- Mempool and mining
- Scripted failures
- Reader methods
"""

import asyncio
import pytest

from deficity import (
    BuildingType, NetworkError, SimulatedChain, UserRejected,
    create_building_call, create_town_hall_call, deposit_call, harvest_call,
    move_building_call, withdraw_call,
)
from tests.helpers import OTHER_OWNER, OWNER


class TestCityCreation:

    def test_town_hall_creates_account(self, chain):
        receipt = chain.execute_now(OWNER, create_town_hall_call(6, 6))
        assert receipt.success
        assert receipt.building_id == 1
        assert chain.account_of(OWNER) is not None

    def test_second_town_hall_reverts(self, city_chain):
        receipt = city_chain.execute_now(OWNER, create_town_hall_call(1, 1))
        assert not receipt.success
        assert receipt.revert_reason == "WalletAlreadyRegistered"

    def test_building_before_town_hall_reverts(self, chain):
        receipt = chain.execute_now(OWNER, create_building_call(1, 1, BuildingType.BANK))
        assert receipt.revert_reason == "NoSmartWallet"


class TestPlacement:

    def test_ids_increase(self, city_chain):
        a = city_chain.execute_now(OWNER, create_building_call(1, 1, BuildingType.BANK))
        b = city_chain.execute_now(OWNER, create_building_call(2, 2, BuildingType.SHOP))
        assert (a.building_id, b.building_id) == (2, 3)

    def test_occupied_cell_reverts(self, city_chain):
        receipt = city_chain.execute_now(OWNER, create_building_call(6, 6, BuildingType.BANK))
        assert receipt.revert_reason == "GridPositionOccupied"

    def test_out_of_bounds_reverts(self, city_chain):
        receipt = city_chain.execute_now(OWNER, create_building_call(13, 0, BuildingType.BANK))
        assert receipt.revert_reason == "InvalidCoordinates"

    def test_grids_are_per_owner(self, city_chain):
        city_chain.execute_now(OTHER_OWNER, create_town_hall_call(6, 6))
        assert len(city_chain.buildings_of(OTHER_OWNER)) == 1

    def test_move_keeps_id(self, city_chain):
        city_chain.execute_now(OWNER, create_building_call(1, 1, BuildingType.BANK))
        receipt = city_chain.execute_now(OWNER, move_building_call(2, 4, 4))
        assert receipt.success
        moved = [b for b in city_chain.buildings_of(OWNER) if b.building_id == 2][0]
        assert moved.cell == (4, 4)
        # Old cell is free again
        assert city_chain.execute_now(OWNER, create_building_call(1, 1, BuildingType.SHOP)).success

    def test_move_someone_elses_building_reverts(self, city_chain):
        city_chain.execute_now(OTHER_OWNER, create_town_hall_call(6, 6))
        receipt = city_chain.execute_now(OTHER_OWNER, move_building_call(1, 0, 0))
        assert receipt.revert_reason == "BuildingNotFound"

    def test_deposit_tracked_in_stats(self, city_chain):
        city_chain.execute_now(OWNER, create_building_call(
            1, 1, BuildingType.BANK, amount=5 * 10 ** 17))
        stats = asyncio.run(city_chain.fetch_user_stats(OWNER))
        assert stats.total_deposited == 5 * 10 ** 17
        assert stats.building_count == 2

    def test_remove_building(self, city_chain):
        city_chain.execute_now(OWNER, create_building_call(1, 1, BuildingType.BANK))
        city_chain.remove_building(2)
        removed = city_chain.buildings_of(OWNER)[1]
        assert not removed.active


class TestFunds:

    @pytest.fixture
    def bank_chain(self, city_chain):
        """OWNER has a native-asset bank (#2) and 1 ETH in the smart account."""
        city_chain.execute_now(OWNER, create_building_call(1, 1, BuildingType.BANK))
        city_chain.fund(city_chain.account_of(OWNER), native=10 ** 18)
        return city_chain

    def stats(self, chain):
        return asyncio.run(chain.fetch_user_stats(OWNER))

    def native(self, chain):
        return asyncio.run(chain.fetch_native_balance(chain.account_of(OWNER)))

    def test_deposit_moves_funds_into_building(self, bank_chain):
        receipt = bank_chain.execute_now(OWNER, deposit_call(2, 4 * 10 ** 17))
        assert receipt.success
        assert receipt.building_id is None
        assert bank_chain.buildings_of(OWNER)[1].amount == 4 * 10 ** 17
        assert self.native(bank_chain) == 6 * 10 ** 17
        assert self.stats(bank_chain).total_deposited == 4 * 10 ** 17

    def test_deposit_beyond_balance_reverts(self, bank_chain):
        receipt = bank_chain.execute_now(OWNER, deposit_call(2, 2 * 10 ** 18))
        assert receipt.revert_reason == "InsufficientBalance"
        assert self.native(bank_chain) == 10 ** 18

    def test_withdraw(self, bank_chain):
        bank_chain.execute_now(OWNER, deposit_call(2, 4 * 10 ** 17))
        receipt = bank_chain.execute_now(OWNER, withdraw_call(2, 10 ** 17))
        assert receipt.success
        assert bank_chain.buildings_of(OWNER)[1].amount == 3 * 10 ** 17
        assert self.native(bank_chain) == 7 * 10 ** 17
        assert self.stats(bank_chain).total_withdrawn == 10 ** 17

    def test_withdraw_more_than_deposited_reverts(self, bank_chain):
        receipt = bank_chain.execute_now(OWNER, withdraw_call(2, 1))
        assert receipt.revert_reason == "InsufficientDeposit"

    def test_harvest_leaves_principal(self, bank_chain):
        bank_chain.execute_now(OWNER, deposit_call(2, 4 * 10 ** 17))
        bank_chain.execute_now(OWNER, harvest_call(2, 10 ** 16))
        assert bank_chain.buildings_of(OWNER)[1].amount == 4 * 10 ** 17
        assert self.native(bank_chain) == 6 * 10 ** 17 + 10 ** 16
        assert self.stats(bank_chain).total_harvested == 10 ** 16

    def test_wrong_asset_reverts(self, bank_chain):
        usdc = bank_chain.tokens[1]
        receipt = bank_chain.execute_now(OWNER, deposit_call(2, 1, usdc.address))
        assert receipt.revert_reason == "AssetMismatch"

    def test_unknown_building_reverts(self, bank_chain):
        receipt = bank_chain.execute_now(OWNER, deposit_call(9, 1))
        assert receipt.revert_reason == "BuildingNotFound"


class TestMempool:

    def test_manual_mining(self):
        chain = SimulatedChain(auto_mine=False)
        signer = chain.signer_for(OWNER)
        tx_id = asyncio.run(signer.send(create_town_hall_call(6, 6)))
        assert chain.pending_transactions == [tx_id]
        assert asyncio.run(chain.fetch_receipt(tx_id)) is None

        [receipt] = chain.mine()
        assert receipt.success
        assert chain.block_number == 1
        assert asyncio.run(chain.fetch_receipt(tx_id)) == receipt

    def test_execute_now_jumps_the_queue(self):
        chain = SimulatedChain(auto_mine=False)
        chain.execute_now(OWNER, create_town_hall_call(6, 6))
        tx_id = chain.submit(OWNER, create_building_call(5, 5, BuildingType.SHOP))
        chain.execute_now(OWNER, create_building_call(5, 5, BuildingType.BANK))
        [receipt] = chain.mine()
        assert receipt.tx_id == tx_id
        assert receipt.revert_reason == "GridPositionOccupied"

    def test_mine_limits_batch(self):
        chain = SimulatedChain(auto_mine=False)
        chain.execute_now(OWNER, create_town_hall_call(6, 6))
        chain.submit(OWNER, create_building_call(1, 1, BuildingType.BANK))
        chain.submit(OWNER, create_building_call(2, 2, BuildingType.BANK))
        assert len(chain.mine(max_transactions=1)) == 1
        assert len(chain.pending_transactions) == 1


class TestScriptedFailures:

    def test_fail_next_sends(self, city_chain):
        city_chain.fail_next_sends(UserRejected("declined"))
        signer = city_chain.signer_for(OWNER)
        with pytest.raises(UserRejected):
            asyncio.run(signer.send(create_building_call(1, 1, BuildingType.BANK)))
        # Only the next send fails
        assert asyncio.run(signer.send(create_building_call(1, 1, BuildingType.BANK)))

    def test_fail_next_reads_by_method(self, city_chain):
        city_chain.fail_next_reads(1, "fetch_user_stats")
        assert asyncio.run(city_chain.fetch_user_buildings(OWNER))
        with pytest.raises(NetworkError):
            asyncio.run(city_chain.fetch_user_stats(OWNER))
        asyncio.run(city_chain.fetch_user_stats(OWNER))

    def test_revert_next(self, city_chain):
        city_chain.revert_next("InsufficientDeposit")
        receipt = city_chain.execute_now(OWNER, create_building_call(1, 1, BuildingType.BANK))
        assert receipt.revert_reason == "InsufficientDeposit"
        assert len(city_chain.buildings_of(OWNER)) == 1


class TestReader:

    def test_balances(self, city_chain):
        account = city_chain.account_of(OWNER)
        city_chain.fund(account, native=10 ** 18, tokens={'USDC': 2_500_000_000})
        usdc = city_chain.tokens[1]

        async def read():
            return (await city_chain.fetch_native_balance(account),
                    await city_chain.fetch_token_balance(usdc.address, account))

        assert asyncio.run(read()) == (10 ** 18, 2_500_000_000)

    def test_has_account(self, city_chain):
        assert asyncio.run(city_chain.has_account(OWNER.lower()))
        assert not asyncio.run(city_chain.has_account(OTHER_OWNER))

    def test_buildings_decoded(self, city_chain):
        [hall] = asyncio.run(city_chain.fetch_user_buildings(OWNER))
        assert hall.building_type is BuildingType.TOWN_HALL
        assert hall.asset == "CORE"
        assert hall.cell == (6, 6)

    def test_calls_recorded(self, city_chain):
        asyncio.run(city_chain.has_account(OWNER))
        assert city_chain.calls == ["has_account"]
