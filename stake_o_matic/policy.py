"""Stake policy engine.

Turns the block production classification, the observed stake accounts and
validator liveness into the ordered list of actions a run has to submit. The
engine performs no I/O: the same inputs always produce the same plan, in
whitelist order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from solders.pubkey import Pubkey

from stake_o_matic.accounts import ObservedStakeAccount
from stake_o_matic.addresses import StakeAccountDescriptor, StakeKind, stake_account_descriptors
from stake_o_matic.classifier import BlockProducerClassification
from stake_o_matic.config import Config, lamports_to_sol
from stake_o_matic.errors import BalanceMismatchError, InsufficientFundsError
from stake_o_matic.rpc import ValidatorRecord


# A validator whose root slot is less than this many slots behind the current
# slot is current. Not configurable, unlike the delinquency grace distance.
CURRENT_SLOT_TOLERANCE = 256

logger = logging.getLogger(__name__)


class Liveness(str, Enum):
    CURRENT = "current"
    GRACE = "grace"
    DELINQUENT = "delinquent"


class ActionKind(str, Enum):
    CREATE_BASELINE = "create-baseline"
    CREATE_BONUS = "create-bonus"
    DELEGATE_BASELINE = "delegate-baseline"
    DELEGATE_BONUS = "delegate-bonus"
    DEACTIVATE_BASELINE = "deactivate-baseline"
    DEACTIVATE_BONUS = "deactivate-bonus"
    NOOP = "noop"

    @property
    def creates(self) -> bool:
        return self in (ActionKind.CREATE_BASELINE, ActionKind.CREATE_BONUS)


CREATE_KINDS = {StakeKind.BASELINE: ActionKind.CREATE_BASELINE, StakeKind.BONUS: ActionKind.CREATE_BONUS}


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    validator: ValidatorRecord
    account: Optional[StakeAccountDescriptor]
    amount: int
    reason: str


@dataclass(frozen=True)
class ValidatorDecision:
    validator: ValidatorRecord
    liveness: Liveness
    quality: bool
    actions: Tuple[Action, ...]

    @property
    def ok(self) -> bool:
        return self.liveness is not Liveness.DELINQUENT


@dataclass(frozen=True)
class StakePlan:
    create_actions: Tuple[Action, ...]
    delegate_actions: Tuple[Action, ...]
    decisions: Tuple[ValidatorDecision, ...]
    source_lamports_required: int

    @property
    def actions(self) -> Tuple[Action, ...]:
        return self.create_actions + self.delegate_actions


def classify_liveness(root_slot: int, current_slot: int, delinquent_grace_slot_distance: int) -> Liveness:
    if root_slot > current_slot - CURRENT_SLOT_TOLERANCE:
        return Liveness.CURRENT
    if root_slot < max(current_slot - delinquent_grace_slot_distance, 0):
        return Liveness.DELINQUENT
    return Liveness.GRACE


def select_whitelisted_validators(
    validators: Iterable[ValidatorRecord], whitelist: Sequence[Pubkey]
) -> List[ValidatorRecord]:
    by_identity: Dict[Pubkey, List[ValidatorRecord]] = {}
    for validator in validators:
        by_identity.setdefault(validator.identity, []).append(validator)

    selected: List[ValidatorRecord] = []
    for identity in whitelist:
        records = by_identity.get(identity)
        if not records:
            logger.warning("Whitelisted validator %s has no vote account", identity)
            continue
        selected.extend(records)
    return selected


def _check_existing_balance(validator: ValidatorRecord, observed: ObservedStakeAccount, expected: int) -> None:
    if observed.balance != expected:
        raise BalanceMismatchError(
            f"Unexpected balance in stake account {observed.address} of validator {validator.identity}: "
            f"{observed.balance}, expected {expected}"
        )


def _bonus_reason(validator: ValidatorRecord, classification: BlockProducerClassification, percentage: int) -> str:
    epoch = classification.window.epoch
    if validator.identity in classification.quality:
        return f"produced a block in over {percentage}% of their slots during epoch {epoch}"
    if validator.identity in classification.poor:
        return f"produced a block in less than {percentage}% of their slots during epoch {epoch}"
    return f"had no leader slots to evaluate during epoch {epoch}"


def build_stake_plan(
    config: Config,
    validators: Sequence[ValidatorRecord],
    current_slot: int,
    classification: BlockProducerClassification,
    observed: Mapping[Pubkey, ObservedStakeAccount],
) -> StakePlan:
    """Decide the actions for every whitelisted validator.

    Raises ``BalanceMismatchError`` when an existing stake account does not hold
    exactly its configured amount; no plan is produced in that case.
    """
    amounts = {StakeKind.BASELINE: config.baseline_stake_amount, StakeKind.BONUS: config.bonus_stake_amount}
    percentage = config.quality_block_producer_percentage

    create_actions: List[Action] = []
    delegate_actions: List[Action] = []
    decisions: List[ValidatorDecision] = []
    required = 0

    for validator in validators:
        baseline, bonus = stake_account_descriptors(config.authority, validator.vote_key)
        validator_actions: List[Action] = []

        for descriptor in (baseline, bonus):
            amount = amounts[descriptor.kind]
            state = observed.get(descriptor.address) or ObservedStakeAccount(address=descriptor.address)
            if state.exists:
                _check_existing_balance(validator, state, amount)
                continue
            required += amount
            action = Action(
                kind=CREATE_KINDS[descriptor.kind],
                validator=validator,
                account=descriptor,
                amount=amount,
                reason="stake account does not exist",
            )
            create_actions.append(action)
            validator_actions.append(action)

        liveness = classify_liveness(validator.root_slot, current_slot, config.delinquent_grace_slot_distance)
        quality = validator.identity in classification.quality
        if liveness is Liveness.CURRENT:
            stake_actions = [
                Action(ActionKind.DELEGATE_BASELINE, validator, baseline, amounts[StakeKind.BASELINE], "is current"),
                Action(
                    ActionKind.DELEGATE_BONUS if quality else ActionKind.DEACTIVATE_BONUS,
                    validator,
                    bonus,
                    amounts[StakeKind.BONUS],
                    _bonus_reason(validator, classification, percentage),
                ),
            ]
        elif liveness is Liveness.DELINQUENT:
            stake_actions = [
                Action(ActionKind.DEACTIVATE_BASELINE, validator, baseline, amounts[StakeKind.BASELINE], "is delinquent"),
                Action(ActionKind.DEACTIVATE_BONUS, validator, bonus, amounts[StakeKind.BONUS], "is delinquent"),
            ]
        else:
            stake_actions = [
                Action(
                    ActionKind.NOOP,
                    validator,
                    None,
                    0,
                    f"is {current_slot - validator.root_slot} slots behind but within the delinquency grace period",
                )
            ]

        delegate_actions.extend(action for action in stake_actions if action.kind is not ActionKind.NOOP)
        validator_actions.extend(stake_actions)
        decisions.append(
            ValidatorDecision(validator=validator, liveness=liveness, quality=quality, actions=tuple(validator_actions))
        )

    return StakePlan(
        create_actions=tuple(create_actions),
        delegate_actions=tuple(delegate_actions),
        decisions=tuple(decisions),
        source_lamports_required=required,
    )


def ensure_source_funding(plan: StakePlan, source_balance: int) -> None:
    """Raise ``InsufficientFundsError`` unless the source stake account can fund every create action."""
    if not plan.create_actions:
        logger.info("All stake accounts exist")
        return
    logger.info(
        "%s SOL is required to create %d stake accounts",
        lamports_to_sol(plan.source_lamports_required),
        len(plan.create_actions),
    )
    if source_balance < plan.source_lamports_required:
        raise InsufficientFundsError(
            f"Source stake account has insufficient balance: {lamports_to_sol(source_balance)} SOL, "
            f"but {lamports_to_sol(plan.source_lamports_required)} SOL is required"
        )
