"""Per-validator status datapoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from prometheus_client import CollectorRegistry, Gauge, push_to_gateway

from stake_o_matic.policy import StakePlan


METRICS_JOB = "stake-o-matic"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidatorStatus:
    cluster: str
    id: str
    slot: int
    ok: bool


class ValidatorStatusReporter:
    """Records one ``validator-status`` datapoint per validator and run."""

    def __init__(self, pushgateway: Optional[str] = None) -> None:
        self._pushgateway = pushgateway
        self._registry = CollectorRegistry()
        self._ok = Gauge(
            "stake_o_matic_validator_status_ok",
            "1 when the validator is current or within its delinquency grace period",
            ["cluster", "id"],
            registry=self._registry,
        )
        self._slot = Gauge(
            "stake_o_matic_validator_status_slot",
            "Slot at which the validator status was evaluated",
            ["cluster", "id"],
            registry=self._registry,
        )
        self.datapoints: List[ValidatorStatus] = []

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def report(self, cluster: str, identity: str, slot: int, ok: bool) -> None:
        datapoint = ValidatorStatus(cluster=cluster, id=identity, slot=slot, ok=ok)
        self.datapoints.append(datapoint)
        self._ok.labels(cluster=cluster, id=identity).set(1 if ok else 0)
        self._slot.labels(cluster=cluster, id=identity).set(slot)
        logger.info("validator-status cluster=%s id=%s slot=%d ok=%s", cluster, identity, slot, ok)

    def report_plan(self, plan: StakePlan, cluster: str, slot: int, dry_run: bool) -> None:
        # Delinquent validators are always reported; healthy ones only on live runs.
        for decision in plan.decisions:
            if decision.ok and dry_run:
                continue
            self.report(cluster, str(decision.validator.identity), slot, decision.ok)

    def flush(self) -> None:
        if not self._pushgateway or not self.datapoints:
            return
        try:
            push_to_gateway(self._pushgateway, job=METRICS_JOB, registry=self._registry)
        except OSError as exc:
            logger.warning("Failed to push metrics to %s: %s", self._pushgateway, exc)
