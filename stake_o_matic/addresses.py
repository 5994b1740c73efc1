"""Seed-derived stake account addresses.

Every whitelisted validator owns two stake accounts derived from the
authorized staker and the validator's vote account. The seed is cut to
``MAX_SEED_LENGTH`` bytes, so two vote keys sharing a 32 character (baseline)
or 30 character (bonus) prefix would map to the same address. Base58 vote keys
are 43-44 characters and such a collision is treated as an accepted risk;
widening the seed would orphan every account already on chain.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from solders.pubkey import Pubkey


STAKE_PROGRAM_ID = Pubkey.from_string("Stake11111111111111111111111111111111111111")
MAX_SEED_LENGTH = 32
BONUS_SEED_PREFIX = "A{"


class StakeKind(str, Enum):
    BASELINE = "baseline"
    BONUS = "bonus"


@dataclass(frozen=True)
class StakeAccountDescriptor:
    authority: Pubkey
    seed: str
    address: Pubkey
    kind: StakeKind


def derive(authority: Pubkey, seed: str) -> Pubkey:
    if len(seed.encode("utf-8")) > MAX_SEED_LENGTH:
        raise ValueError(f"Seed exceeds {MAX_SEED_LENGTH} bytes: {seed!r}")
    return Pubkey.create_with_seed(authority, seed, STAKE_PROGRAM_ID)


def baseline_seed(vote_key: Pubkey) -> str:
    return str(vote_key)[:MAX_SEED_LENGTH]


def bonus_seed(vote_key: Pubkey) -> str:
    return f"{BONUS_SEED_PREFIX}{vote_key}"[:MAX_SEED_LENGTH]


def stake_account_descriptors(
    authority: Pubkey, vote_key: Pubkey
) -> Tuple[StakeAccountDescriptor, StakeAccountDescriptor]:
    """Return the (baseline, bonus) stake account descriptors for a vote account."""
    descriptors = []
    for kind, seed in ((StakeKind.BASELINE, baseline_seed(vote_key)), (StakeKind.BONUS, bonus_seed(vote_key))):
        descriptors.append(
            StakeAccountDescriptor(authority=authority, seed=seed, address=derive(authority, seed), kind=kind)
        )
    return descriptors[0], descriptors[1]
