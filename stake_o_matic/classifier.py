"""Block production classification over a completed epoch."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Mapping, Sequence

from solders.pubkey import Pubkey

from stake_o_matic.errors import HistoryUnavailableError

if TYPE_CHECKING:
    from stake_o_matic.rpc import SolanaRPCClient


MINIMUM_SLOTS_PER_EPOCH = 32
DEFAULT_QUALITY_BLOCK_PRODUCER_PERCENTAGE = 75

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EpochWindow:
    epoch: int
    first_slot: int
    last_slot: int


@dataclass(frozen=True)
class EpochSchedule:
    slots_per_epoch: int
    first_normal_epoch: int = 0
    first_normal_slot: int = 0
    warmup: bool = False

    @property
    def _warmup_epochs(self) -> int:
        # Without warmup every epoch has slots_per_epoch slots.
        return self.first_normal_epoch if self.warmup else 0

    def slots_in_epoch(self, epoch: int) -> int:
        if epoch < self._warmup_epochs:
            return MINIMUM_SLOTS_PER_EPOCH * 2**epoch
        return self.slots_per_epoch

    def first_slot_in_epoch(self, epoch: int) -> int:
        if epoch <= self._warmup_epochs:
            return (2**epoch - 1) * MINIMUM_SLOTS_PER_EPOCH
        return (epoch - self.first_normal_epoch) * self.slots_per_epoch + self.first_normal_slot

    def last_slot_in_epoch(self, epoch: int) -> int:
        return self.first_slot_in_epoch(epoch) + self.slots_in_epoch(epoch) - 1

    def window(self, epoch: int) -> EpochWindow:
        if epoch < 0:
            raise HistoryUnavailableError("No completed epoch to evaluate block production for")
        return EpochWindow(epoch=epoch, first_slot=self.first_slot_in_epoch(epoch), last_slot=self.last_slot_in_epoch(epoch))



@dataclass(frozen=True)
class BlockProductionStats:
    identity: str
    assigned_slots: int
    produced_blocks: int

    @property
    def evaluated(self) -> bool:
        return self.assigned_slots > 0

    @property
    def production_percentage(self) -> int:
        if not self.assigned_slots:
            return 0
        return self.produced_blocks * 100 // self.assigned_slots


@dataclass(frozen=True)
class BlockProducerClassification:
    window: EpochWindow
    quality: FrozenSet[Pubkey] = frozenset()
    poor: FrozenSet[Pubkey] = frozenset()
    stats: Sequence[BlockProductionStats] = field(default_factory=tuple)


def evaluated_first_slot(window: EpochWindow, minimum_ledger_slot: int) -> int:
    first_slot = max(window.first_slot, minimum_ledger_slot)
    if first_slot >= window.last_slot:
        raise HistoryUnavailableError(
            f"Minimum ledger slot is newer than the last epoch: {minimum_ledger_slot} > {window.last_slot}"
        )
    return first_slot


def classify_block_producers(
    window: EpochWindow,
    leader_schedule: Mapping[str, Iterable[int]],
    confirmed_slots: Iterable[int],
    minimum_ledger_slot: int,
    quality_percentage: int = DEFAULT_QUALITY_BLOCK_PRODUCER_PERCENTAGE,
) -> BlockProducerClassification:
    """Split the leaders of ``window`` into quality and poor block producers.

    Only slots still held by the ledger are evaluated. A validator is a quality
    producer when it produced a block in strictly more than
    ``quality_percentage`` percent of its evaluated leader slots; validators
    without an evaluated slot are left out of both sets.
    """
    first_slot = evaluated_first_slot(window, minimum_ledger_slot)
    confirmed = set(confirmed_slots)

    quality = set()
    poor = set()
    stats: List[BlockProductionStats] = []
    for identity, relative_slots in leader_schedule.items():
        assigned = 0
        produced = 0
        for relative_slot in relative_slots:
            slot = window.first_slot + relative_slot
            if slot >= first_slot:
                assigned += 1
                if slot in confirmed:
                    produced += 1
        entry = BlockProductionStats(identity=identity, assigned_slots=assigned, produced_blocks=produced)
        stats.append(entry)
        logger.debug("Validator %s produced %d blocks in %d slots", identity, produced, assigned)
        if not entry.evaluated:
            continue
        if entry.production_percentage > quality_percentage:
            quality.add(Pubkey.from_string(identity))
        else:
            poor.add(Pubkey.from_string(identity))

    return BlockProducerClassification(window=window, quality=frozenset(quality), poor=frozenset(poor), stats=tuple(stats))


async def fetch_block_production(
    client: "SolanaRPCClient",
    window: EpochWindow,
    quality_percentage: int = DEFAULT_QUALITY_BLOCK_PRODUCER_PERCENTAGE,
) -> BlockProducerClassification:
    minimum_ledger_slot = await client.get_minimum_ledger_slot()
    first_slot = evaluated_first_slot(window, minimum_ledger_slot)
    confirmed_slots = await client.get_blocks(first_slot, window.last_slot)
    leader_schedule = await client.get_leader_schedule(first_slot)
    classification = classify_block_producers(
        window,
        leader_schedule,
        confirmed_slots,
        minimum_ledger_slot,
        quality_percentage,
    )
    logger.info(
        "Epoch %d: %d quality and %d poor block producers",
        window.epoch,
        len(classification.quality),
        len(classification.poor),
    )
    return classification
