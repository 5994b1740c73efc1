"""
In-memory chain client and mock JSON-RPC node shared by the test modules.
"""
from __future__ import annotations

import json
from typing import Dict, Iterable, List, Optional, Sequence

import httpx
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from stake_o_matic.addresses import STAKE_PROGRAM_ID
from stake_o_matic.classifier import EpochSchedule
from stake_o_matic.errors import RPCError
from stake_o_matic.rpc import (
    AccountInfo,
    EpochInfo,
    RecentBlockhash,
    SignatureStatus,
    ValidatorRecord,
)


SHARED_BLOCKHASH = Hash(bytes([7] * 32))


class FakeChainClient:
    """Implements the chain client surface in memory and records every call."""

    def __init__(
        self,
        epoch_info: Optional[EpochInfo] = None,
        epoch_schedule: Optional[EpochSchedule] = None,
        minimum_ledger_slot: int = 0,
        blocks: Iterable[int] = (),
        leader_schedule: Optional[Dict[str, List[int]]] = None,
        vote_accounts: Sequence[ValidatorRecord] = (),
        authority_balance: int = 10_000_000_000,
        lamports_per_signature: int = 5_000,
        blockhash_validity: Sequence[bool] = (),
        pending_rounds: int = 0,
        rejected_accounts: Iterable[Pubkey] = (),
        failing_accounts: Iterable[Pubkey] = (),
    ) -> None:
        self.epoch_info = epoch_info or EpochInfo(epoch=10, absolute_slot=1_000_000, slot_index=0, slots_in_epoch=100_000)
        self.epoch_schedule = epoch_schedule or EpochSchedule(slots_per_epoch=100_000)
        self.minimum_ledger_slot = minimum_ledger_slot
        self.blocks = sorted(blocks)
        self.leader_schedule = leader_schedule or {}
        self.vote_accounts = list(vote_accounts)
        self.accounts: Dict[Pubkey, AccountInfo] = {}
        self.authority_balance = authority_balance
        self.lamports_per_signature = lamports_per_signature
        self.blockhash_validity = list(blockhash_validity)
        self.pending_rounds = pending_rounds
        self.rejected_accounts = set(rejected_accounts)
        self.failing_accounts = set(failing_accounts)
        self.sent: List[Transaction] = []
        self.status_calls = 0
        self.validity_calls = 0
        self._sent_accounts: Dict[Signature, List[Pubkey]] = {}

    def add_stake_account(self, address: Pubkey, lamports: int, state: str = "delegated") -> None:
        self.accounts[address] = AccountInfo(address=address, lamports=lamports, owner=STAKE_PROGRAM_ID, state=state)

    async def get_epoch_info(self) -> EpochInfo:
        return self.epoch_info

    async def get_epoch_schedule(self) -> EpochSchedule:
        return self.epoch_schedule

    async def get_minimum_ledger_slot(self) -> int:
        return self.minimum_ledger_slot

    async def get_blocks(self, start_slot: int, end_slot: int) -> List[int]:
        return [slot for slot in self.blocks if start_slot <= slot <= end_slot]

    async def get_leader_schedule(self, slot: int) -> Dict[str, List[int]]:
        return self.leader_schedule

    async def get_vote_accounts(self) -> List[ValidatorRecord]:
        return list(self.vote_accounts)

    async def get_account_info(self, address: Pubkey) -> Optional[AccountInfo]:
        return self.accounts.get(address)

    async def get_balance(self, address: Pubkey) -> int:
        return self.authority_balance

    async def get_recent_blockhash(self, payer: Pubkey) -> RecentBlockhash:
        return RecentBlockhash(
            blockhash=SHARED_BLOCKHASH,
            last_valid_block_height=150,
            lamports_per_signature=self.lamports_per_signature,
        )

    async def send_transaction(self, transaction: Transaction) -> Signature:
        account_keys = list(transaction.message.account_keys)
        if self.rejected_accounts.intersection(account_keys):
            raise RPCError("RPC error on method sendTransaction: Transaction simulation failed")
        self.sent.append(transaction)
        signature = transaction.signatures[0]
        self._sent_accounts[signature] = account_keys
        return signature

    async def get_signature_statuses(self, signatures: Sequence[Signature]) -> List[Optional[SignatureStatus]]:
        self.status_calls += 1
        statuses: List[Optional[SignatureStatus]] = []
        for signature in signatures:
            if self.status_calls <= self.pending_rounds:
                statuses.append(SignatureStatus(slot=1, confirmations=1, err=None, confirmation_status="confirmed"))
                continue
            failed = self.failing_accounts.intersection(self._sent_accounts.get(signature, []))
            err = {"InstructionError": [0, "Custom"]} if failed else None
            statuses.append(SignatureStatus(slot=2, confirmations=None, err=err, confirmation_status="finalized"))
        return statuses

    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        self.validity_calls += 1
        if self.blockhash_validity:
            return self.blockhash_validity.pop(0)
        return True


class RecordingNode:
    """JSON-RPC node for ``httpx.MockTransport``: answers from a method -> handler map and records every request.

    A handler returns either the response fields (``result`` or ``error``) or a
    complete ``httpx.Response``.
    """

    def __init__(self, handlers):
        self.handlers = handlers
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append((payload["method"], payload["params"]))
        outcome = self.handlers[payload["method"]](payload["params"])
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], **outcome})
