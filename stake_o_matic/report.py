"""Run summary rendering."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from stake_o_matic.config import lamports_to_sol
from stake_o_matic.pipeline import PipelineOutcome
from stake_o_matic.policy import StakePlan


logger = logging.getLogger(__name__)


def build_validator_rows(plan: StakePlan, current_slot: int) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for decision in plan.decisions:
        validator = decision.validator
        rows.append(
            {
                "identity": str(validator.identity),
                "vote_account": str(validator.vote_key),
                "root_slot": validator.root_slot,
                "slots_behind": current_slot - validator.root_slot,
                "liveness": decision.liveness.value,
                "reported_delinquent": validator.delinquent,
                "quality": decision.quality,
                "ok": decision.ok,
                "actions": [action.kind.value for action in decision.actions],
            }
        )
    return rows


def render_console_output(rows: List[Dict[str, Any]], plan: StakePlan) -> None:
    if not rows:
        logger.warning("No whitelisted validators to display")
        return

    validator_df = pd.DataFrame(rows)
    validator_df["actions"] = validator_df["actions"].apply(lambda value: ", ".join(value))
    display_columns = ["identity", "root_slot", "slots_behind", "liveness", "quality", "actions"]
    logger.info("Validator Summary:\n%s", validator_df[display_columns].to_string(index=False, justify="center"))
    logger.info(
        "%d create and %d delegate transactions planned, %s SOL required from the source stake account",
        len(plan.create_actions),
        len(plan.delegate_actions),
        lamports_to_sol(plan.source_lamports_required),
    )


def write_json_output(
    output_path: Path,
    context: Dict[str, Any],
    rows: List[Dict[str, Any]],
    outcome: Optional[PipelineOutcome],
) -> None:
    transactions: List[Dict[str, Any]] = []
    if outcome is not None:
        for stage, batch in (("create", outcome.create), ("delegate", outcome.delegate)):
            if batch is None:
                continue
            for record in batch.records:
                transactions.append(
                    {
                        "stage": stage,
                        "memo": record.memo,
                        "signature": str(record.signature) if record.signature else None,
                        "status": record.status.value,
                        "reason": record.reason,
                    }
                )
    payload = {
        "metadata": context,
        "validators": rows,
        "transactions": transactions,
    }
    output_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    logger.info("Wrote JSON report to %s", output_path)
