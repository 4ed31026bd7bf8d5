"""
fake_ledger.py - Scripted ledger collaborators for tracker tests

SimulatedChain covers realistic behaviour; these fakes give exact control
over what each individual send() and receipt poll returns.
"""

import asyncio
from typing import Any, List, Optional

from deficity import ContractCall, Receipt, UserStats


class ScriptedSigner:
    """
    Signer replaying a script: each entry is a tx id to return or an
    exception to raise. When the script runs out, send() blocks until
    released (an intent waiting for a signature).
    """

    def __init__(self, *script: Any):
        self.script: List[Any] = list(script)
        self.sent: List[ContractCall] = []
        self.release = asyncio.Event()

    async def send(self, call: ContractCall) -> str:
        self.sent.append(call)
        await asyncio.sleep(0)
        if not self.script:
            await self.release.wait()
            return "0xlate"
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class ScriptedReader:
    """
    Reader whose fetch_receipt() replays a script of None / Receipt /
    exception. After the script ends the last None-or-Receipt repeats.
    """

    def __init__(self, *receipts: Any):
        self.receipts: List[Any] = list(receipts)
        self.polls = 0
        self._last: Optional[Receipt] = None

    async def fetch_receipt(self, tx_id: str) -> Optional[Receipt]:
        self.polls += 1
        await asyncio.sleep(0)
        if not self.receipts:
            return self._last
        item = self.receipts.pop(0)
        if isinstance(item, BaseException):
            raise item
        self._last = item
        return item

    async def fetch_user_buildings(self, owner: str):
        return []

    async def fetch_user_stats(self, owner: str):
        return UserStats.empty()

    async def has_account(self, owner: str):
        return False

    async def fetch_account(self, owner: str):
        return None

    async def fetch_native_balance(self, address: str):
        return 0

    async def fetch_token_balance(self, token_address: str, address: str):
        return 0


def ok_receipt(tx_id: str = "0xabc", building_id: Optional[int] = 7, block: int = 10) -> Receipt:
    return Receipt(tx_id, True, block, building_id=building_id)


def reverted_receipt(tx_id: str = "0xabc", reason: str = "GridPositionOccupied") -> Receipt:
    return Receipt(tx_id, False, 10, revert_reason=reason)
