import logging
from typing import Tuple

from app.config import REQUIRED_IMAGES_PER_STAGE
from app.errors import InvalidStageError
from app.models.provenance import STAGE_NAMES, BatchProvenance

logger = logging.getLogger(__name__)


def check_stage(stage_number) -> int:
    if isinstance(stage_number, bool) or not isinstance(stage_number, int) or stage_number not in STAGE_NAMES:
        raise InvalidStageError(f"Invalid stage number: {stage_number!r}")
    return stage_number


class StageEvidenceAggregator:
    """
    Per-batch count of independently verified images per stage.

    A batch is eligible only when every one of the seven stages has reached
    the floor on its own; surplus images in one stage never make up for a
    missing stage elsewhere.
    """

    def __init__(self, store, required_per_stage: int = REQUIRED_IMAGES_PER_STAGE):
        self.store = store
        self.required_per_stage = required_per_stage

    async def record_verified(
        self, batch_id: str, stage_number: int, content_hash: str, transaction_id: str
    ) -> Tuple[BatchProvenance, bool]:
        check_stage(stage_number)
        batch, added = await self.store.add_evidence(batch_id, stage_number, content_hash, transaction_id)
        if added:
            logger.info(
                "batch %s stage %s now at %s verified images",
                batch_id, stage_number, batch.stage_counts[stage_number],
            )
        else:
            logger.info("batch %s already counts image %s", batch_id, content_hash[:12])
        return batch, added

    async def is_eligible(self, batch_id: str) -> bool:
        batch = await self.store.get(batch_id)
        return bool(batch) and batch.is_eligible(self.required_per_stage)
