"""Run sequencing and process exit status."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from stake_o_matic.accounts import read_source_stake_account, read_stake_accounts
from stake_o_matic.addresses import stake_account_descriptors
from stake_o_matic.classifier import fetch_block_production
from stake_o_matic.config import Config, lamports_to_sol, load_config
from stake_o_matic.errors import BatchFailedError, StakeOMaticError
from stake_o_matic.metrics import ValidatorStatusReporter
from stake_o_matic.pipeline import PipelineOutcome, run_batches
from stake_o_matic.policy import StakePlan, build_stake_plan, ensure_source_funding, select_whitelisted_validators
from stake_o_matic.report import build_validator_rows, render_console_output, write_json_output
from stake_o_matic.rpc import SolanaRPCClient

if TYPE_CHECKING:
    from stake_o_matic.rpc import EpochInfo


logger = logging.getLogger("stake_o_matic")


@dataclass
class RunResult:
    epoch_info: "EpochInfo"
    plan: StakePlan
    outcome: PipelineOutcome

    @property
    def review_required(self) -> bool:
        return self.outcome.review_required


async def execute(config: Config, client: SolanaRPCClient, reporter: ValidatorStatusReporter) -> RunResult:
    epoch_info = await client.get_epoch_info()
    last_epoch = epoch_info.epoch - 1
    logger.info(
        "Epoch %d: slot %d of %d (absolute slot %d)",
        epoch_info.epoch,
        epoch_info.slot_index,
        epoch_info.slots_in_epoch,
        epoch_info.absolute_slot,
    )

    source = await read_source_stake_account(client, config.source_stake_address)
    logger.info("stake account balance: %s SOL", lamports_to_sol(source.balance))

    epoch_schedule = await client.get_epoch_schedule()
    window = epoch_schedule.window(last_epoch)
    logger.info("last epoch %d: slots %d to %d", window.epoch, window.first_slot, window.last_slot)

    classification = await fetch_block_production(client, window, config.quality_block_producer_percentage)
    logger.debug("quality_block_producers: %s", sorted(str(identity) for identity in classification.quality))
    logger.debug("poor_block_producers: %s", sorted(str(identity) for identity in classification.poor))

    validators = select_whitelisted_validators(await client.get_vote_accounts(), config.whitelist)
    addresses = [
        descriptor.address
        for validator in validators
        for descriptor in stake_account_descriptors(config.authority, validator.vote_key)
    ]
    observed = await read_stake_accounts(client, addresses)

    plan = build_stake_plan(config, validators, epoch_info.absolute_slot, classification, observed)
    reporter.report_plan(plan, config.cluster_name, epoch_info.absolute_slot, config.dry_run)
    rows = build_validator_rows(plan, epoch_info.absolute_slot)
    render_console_output(rows, plan)

    ensure_source_funding(plan, source.balance)

    outcome = await run_batches(client, plan, config)

    if config.report_json is not None:
        context: Dict[str, Any] = {
            "json_rpc_url": config.json_rpc_url,
            "cluster": config.cluster_name,
            "generated_at": datetime.now(tz=timezone.utc).isoformat(),
            "epoch": last_epoch,
            "current_epoch": epoch_info.epoch,
            "slot_index": epoch_info.slot_index,
            "slots_in_epoch": epoch_info.slots_in_epoch,
            "absolute_slot": epoch_info.absolute_slot,
            "dry_run": config.dry_run,
            "review_required": outcome.review_required,
        }
        write_json_output(config.report_json, context, rows, outcome)

    if outcome.create.failed:
        raise BatchFailedError("Failed to create one or more stake accounts")
    return RunResult(epoch_info=epoch_info, plan=plan, outcome=outcome)


async def run(config: Config) -> RunResult:
    logger.info("RPC URL: %s", config.json_rpc_url)
    reporter = ValidatorStatusReporter(config.metrics_pushgateway)
    try:
        async with SolanaRPCClient(
            config.json_rpc_url,
            concurrency_limit=config.concurrency_limit,
            timeout=config.rpc_timeout_seconds,
            max_attempts=config.rpc_max_attempts,
        ) as client:
            return await execute(config, client, reporter)
    finally:
        reporter.flush()


def main(argv: Optional[Sequence[str]] = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        config = load_config(argv)
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
        result = asyncio.run(run(config))
    except StakeOMaticError as exc:
        logger.error("Fatal error: %s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        logger.warning("Execution interrupted by user")
        raise SystemExit(130) from None

    if result.review_required:
        logger.warning("Review the planned transactions above and re-run with --confirm to submit them")
