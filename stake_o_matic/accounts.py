"""Observed state of the stake accounts a run manages."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable

from solders.pubkey import Pubkey

from stake_o_matic.addresses import STAKE_PROGRAM_ID
from stake_o_matic.errors import SourceStakeStateError

if TYPE_CHECKING:
    from stake_o_matic.rpc import SolanaRPCClient


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObservedStakeAccount:
    address: Pubkey
    balance: int = 0
    exists: bool = False


async def read_stake_account(client: "SolanaRPCClient", address: Pubkey) -> ObservedStakeAccount:
    account = await client.get_account_info(address)
    if account is None:
        return ObservedStakeAccount(address=address)
    if account.owner != STAKE_PROGRAM_ID:
        logger.warning("not a stake account (owned by %s): %s", account.owner, address)
        return ObservedStakeAccount(address=address)
    return ObservedStakeAccount(address=address, balance=account.lamports, exists=True)


async def read_stake_accounts(
    client: "SolanaRPCClient", addresses: Iterable[Pubkey]
) -> Dict[Pubkey, ObservedStakeAccount]:
    observed: Dict[Pubkey, ObservedStakeAccount] = {}
    for address in addresses:
        if address not in observed:
            observed[address] = await read_stake_account(client, address)
    return observed


async def read_source_stake_account(client: "SolanaRPCClient", address: Pubkey) -> ObservedStakeAccount:
    """Return the source stake account, which must be an initialized, undelegated stake account."""
    account = await client.get_account_info(address)
    if account is None:
        raise SourceStakeStateError(f"Source stake account {address} does not exist")
    if account.owner != STAKE_PROGRAM_ID:
        raise SourceStakeStateError(f"not a stake account (owned by {account.owner}): {address}")
    if account.state != "initialized":
        raise SourceStakeStateError(
            f"Source stake account {address} is not in the initialized state: {account.state}"
        )
    return ObservedStakeAccount(address=address, balance=account.lamports, exists=True)
