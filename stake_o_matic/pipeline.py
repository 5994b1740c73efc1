"""Transaction execution pipeline.

A batch shares one recent blockhash. Every transaction moves from Unsent to
Pending on submission (or straight to FinalizedFailure when the node rejects
it) and from Pending to a finalized state by polling signature statuses. When
the shared blockhash expires, every transaction still Pending is failed and
polling stops.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature

from stake_o_matic.config import Config, lamports_to_sol
from stake_o_matic.errors import InsufficientFundsError, RPCError
from stake_o_matic.policy import StakePlan
from stake_o_matic.transactions import TransactionIntent, build_transactions

if TYPE_CHECKING:
    from stake_o_matic.rpc import SolanaRPCClient


EXPIRED_REASON = "expired"

logger = logging.getLogger(__name__)


class SubmissionStatus(str, Enum):
    UNSENT = "unsent"
    PENDING = "pending"
    FINALIZED_SUCCESS = "finalized-success"
    FINALIZED_FAILURE = "finalized-failure"

    @property
    def finalized(self) -> bool:
        return self in (SubmissionStatus.FINALIZED_SUCCESS, SubmissionStatus.FINALIZED_FAILURE)


@dataclass
class SubmissionRecord:
    memo: str
    signature: Optional[Signature] = None
    status: SubmissionStatus = SubmissionStatus.UNSENT
    reason: Optional[str] = None

    def finalize(self, success: bool, reason: Optional[str] = None) -> None:
        self.status = SubmissionStatus.FINALIZED_SUCCESS if success else SubmissionStatus.FINALIZED_FAILURE
        self.reason = reason


@dataclass
class BatchOutcome:
    records: List[SubmissionRecord] = field(default_factory=list)
    review_required: bool = False

    @property
    def confirmations(self) -> List[Tuple[bool, str]]:
        return [
            (record.status is SubmissionStatus.FINALIZED_SUCCESS, record.memo)
            for record in self.records
            if record.status.finalized
        ]

    @property
    def failed(self) -> bool:
        return any(record.status is SubmissionStatus.FINALIZED_FAILURE for record in self.records)


@dataclass
class PipelineOutcome:
    create: BatchOutcome
    delegate: Optional[BatchOutcome] = None

    @property
    def review_required(self) -> bool:
        return self.create.review_required or bool(self.delegate and self.delegate.review_required)


async def _submit(
    client: "SolanaRPCClient",
    intent: TransactionIntent,
    authority: Keypair,
    blockhash: Hash,
) -> SubmissionRecord:
    record = SubmissionRecord(memo=intent.memo)
    transaction = intent.sign(authority, blockhash)
    logger.info("Sending transaction: %s", transaction.signatures[0])
    try:
        record.signature = await client.send_transaction(transaction)
    except RPCError as exc:
        logger.error("Failed to send transaction: %s", exc)
        record.finalize(False, str(exc))
    else:
        record.status = SubmissionStatus.PENDING
    return record


async def transact(
    client: "SolanaRPCClient",
    intents: Sequence[TransactionIntent],
    authority: Keypair,
    dry_run: bool,
    poll_interval_seconds: float = 2.0,
) -> BatchOutcome:
    recent = await client.get_recent_blockhash(authority.pubkey())
    logger.info("Using blockhash %s, valid until block height %d", recent.blockhash, recent.last_valid_block_height)

    authority_balance = await client.get_balance(authority.pubkey())
    logger.info("Authorized staker balance: %s SOL", lamports_to_sol(authority_balance))

    required_fee = sum(recent.lamports_per_signature * intent.required_signatures for intent in intents)
    logger.info("Required fee: %s SOL", lamports_to_sol(required_fee))
    if required_fee > authority_balance:
        raise InsufficientFundsError("Authorized staker has insufficient funds")

    logger.info("%d transactions to send", len(intents))
    if not intents:
        return BatchOutcome()
    if dry_run:
        logger.warning("--confirm flag not provided, exiting before sending transactions")
        return BatchOutcome(
            records=[SubmissionRecord(memo=intent.memo) for intent in intents],
            review_required=True,
        )

    records = list(
        await asyncio.gather(*(_submit(client, intent, authority, recent.blockhash) for intent in intents))
    )
    finalized = [record for record in records if record.status.finalized]
    pending = [record for record in records if record.status is SubmissionStatus.PENDING]

    while pending:
        logger.info("%d pending transactions, %d finalized transactions", len(pending), len(finalized))
        await asyncio.sleep(poll_interval_seconds)

        if not await client.is_blockhash_valid(recent.blockhash):
            logger.error("Blockhash %s expired", recent.blockhash)
            for record in pending:
                record.finalize(False, EXPIRED_REASON)
                finalized.append(record)
            break

        statuses = await client.get_signature_statuses([record.signature for record in pending])
        still_pending: List[SubmissionRecord] = []
        for record, status in zip(pending, statuses):
            logger.debug("%s - %s", record.signature, status)
            if status is not None and status.finalized:
                record.finalize(status.err is None, None if status.err is None else str(status.err))
                finalized.append(record)
                continue
            still_pending.append(record)
        pending = still_pending

    return BatchOutcome(records=finalized)


def log_confirmations(outcome: BatchOutcome) -> None:
    for success, memo in outcome.confirmations:
        if success:
            logger.info("OK - %s", memo)
        else:
            logger.error("FAILED - %s", memo)


async def run_batches(client: "SolanaRPCClient", plan: StakePlan, config: Config) -> PipelineOutcome:
    """Create missing stake accounts, then delegate or deactivate.

    The delegate batch is only attempted once every create transaction
    finalized successfully.
    """
    create_intents = build_transactions(plan.create_actions, config)
    delegate_intents = build_transactions(plan.delegate_actions, config)

    create = BatchOutcome()
    if create_intents:
        create = await transact(
            client, create_intents, config.authorized_staker, config.dry_run, config.poll_interval_seconds
        )
        log_confirmations(create)
        if create.review_required:
            return PipelineOutcome(create=create)
        if create.failed:
            logger.error("Failed to create one or more stake accounts.  Unable to continue")
            return PipelineOutcome(create=create)

    # TODO: filter out delegate transactions that the stake program would reject, such as
    #       re-delegating a stake account that is already delegated to the same vote account
    delegate = await transact(
        client, delegate_intents, config.authorized_staker, config.dry_run, config.poll_interval_seconds
    )
    log_confirmations(delegate)
    return PipelineOutcome(create=create, delegate=delegate)
