"""Unsigned stake transactions built from policy actions."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import AllocateWithSeedParams, allocate_with_seed
from solders.sysvar import CLOCK, STAKE_HISTORY
from solders.transaction import Transaction

from stake_o_matic.addresses import STAKE_PROGRAM_ID, StakeAccountDescriptor
from stake_o_matic.config import Config, lamports_to_sol
from stake_o_matic.policy import Action, ActionKind


STAKE_CONFIG_ID = Pubkey.from_string("StakeConfig11111111111111111111111111111111")
STAKE_STATE_SIZE = 200

# StakeInstruction variant indexes
DELEGATE_STAKE = 2
SPLIT = 3
DEACTIVATE = 5


@dataclass(frozen=True)
class TransactionIntent:
    instructions: Tuple[Instruction, ...]
    payer: Pubkey
    memo: str

    def message(self, blockhash: Hash) -> Message:
        return Message.new_with_blockhash(list(self.instructions), self.payer, blockhash)

    def sign(self, authority: Keypair, blockhash: Hash) -> Transaction:
        return Transaction([authority], self.message(blockhash), blockhash)

    @property
    def required_signatures(self) -> int:
        return Message(list(self.instructions), self.payer).header.num_required_signatures


def split_with_seed_instructions(
    source: Pubkey,
    authority: Pubkey,
    lamports: int,
    account: StakeAccountDescriptor,
) -> List[Instruction]:
    allocate = allocate_with_seed(
        AllocateWithSeedParams(
            address=account.address,
            base=account.authority,
            seed=account.seed,
            space=STAKE_STATE_SIZE,
            owner=STAKE_PROGRAM_ID,
        )
    )
    split = Instruction(
        STAKE_PROGRAM_ID,
        struct.pack("<IQ", SPLIT, lamports),
        [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(account.address, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )
    return [allocate, split]


def delegate_stake_instruction(stake: Pubkey, authority: Pubkey, vote: Pubkey) -> Instruction:
    return Instruction(
        STAKE_PROGRAM_ID,
        struct.pack("<I", DELEGATE_STAKE),
        [
            AccountMeta(stake, is_signer=False, is_writable=True),
            AccountMeta(vote, is_signer=False, is_writable=False),
            AccountMeta(CLOCK, is_signer=False, is_writable=False),
            AccountMeta(STAKE_HISTORY, is_signer=False, is_writable=False),
            AccountMeta(STAKE_CONFIG_ID, is_signer=False, is_writable=False),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )


def deactivate_stake_instruction(stake: Pubkey, authority: Pubkey) -> Instruction:
    return Instruction(
        STAKE_PROGRAM_ID,
        struct.pack("<I", DEACTIVATE),
        [
            AccountMeta(stake, is_signer=False, is_writable=True),
            AccountMeta(CLOCK, is_signer=False, is_writable=False),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )


def describe_action(action: Action) -> str:
    identity = action.validator.identity
    address = action.account.address if action.account else None
    sol = lamports_to_sol(action.amount)
    if action.kind.creates:
        return (
            f"Creating {action.account.kind.value} stake account for validator {identity} with {sol} SOL, "
            f"{action.reason} ({address})"
        )
    if action.kind in (ActionKind.DELEGATE_BASELINE, ActionKind.DELEGATE_BONUS):
        return f"Validator {identity} {action.reason}, adding {sol} SOL stake ({address})"
    if action.kind in (ActionKind.DEACTIVATE_BASELINE, ActionKind.DEACTIVATE_BONUS):
        return f"Validator {identity} {action.reason}, removing {sol} SOL stake ({address})"
    return f"Validator {identity} {action.reason}, no stake change"


def build_transaction(action: Action, config: Config) -> Optional[TransactionIntent]:
    if action.kind is ActionKind.NOOP:
        return None

    authority = config.authority
    stake = action.account.address
    if action.kind.creates:
        instructions = split_with_seed_instructions(config.source_stake_address, authority, action.amount, action.account)
    elif action.kind in (ActionKind.DELEGATE_BASELINE, ActionKind.DELEGATE_BONUS):
        instructions = [delegate_stake_instruction(stake, authority, action.validator.vote_key)]
    else:
        instructions = [deactivate_stake_instruction(stake, authority)]

    return TransactionIntent(instructions=tuple(instructions), payer=authority, memo=describe_action(action))


def build_transactions(actions: Sequence[Action], config: Config) -> List[TransactionIntent]:
    intents: List[TransactionIntent] = []
    for action in actions:
        intent = build_transaction(action, config)
        if intent is not None:
            intents.append(intent)
    return intents
