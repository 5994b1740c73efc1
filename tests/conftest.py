"""
Project-wide pytest fixtures. The in-memory chain client lives in tests.common.
"""
from __future__ import annotations

from typing import Sequence

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from stake_o_matic.config import Config
from stake_o_matic.rpc import ValidatorRecord


@pytest.fixture
def authority() -> Keypair:
    return Keypair()


@pytest.fixture
def source_stake_address() -> Pubkey:
    return Pubkey.new_unique()


@pytest.fixture
def make_config(authority: Keypair, source_stake_address: Pubkey):
    """Factory for a run configuration with fast polling and small stake amounts."""

    def _make_config(whitelist: Sequence[Pubkey] = (), **overrides) -> Config:
        values = dict(
            json_rpc_url="http://127.0.0.1:8899",
            source_stake_address=source_stake_address,
            authorized_staker=authority,
            whitelist=tuple(whitelist),
            dry_run=False,
            baseline_stake_amount=600,
            bonus_stake_amount=50,
            poll_interval_seconds=0.0,
        )
        values.update(overrides)
        return Config(**values)

    return _make_config


@pytest.fixture
def make_validator():
    def _make_validator(root_slot: int = 1_000_000, delinquent: bool = False) -> ValidatorRecord:
        return ValidatorRecord(
            identity=Pubkey.new_unique(),
            vote_key=Pubkey.new_unique(),
            root_slot=root_slot,
            delinquent=delinquent,
        )

    return _make_validator
