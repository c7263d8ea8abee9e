"""
Batch certification state machine.

    COLLECTING --(every stage at the floor)--> ELIGIBLE --(ledger ack)--> CERTIFIED

Each verified image is written to the ledger before any aggregate state is
touched, then counted, then the batch is re-evaluated. Everything that
mutates one batch runs under that batch's lock, and the certified flag is
only flipped after the ledger has acknowledged the certificate. A minted
certificate that could not be published stays pending on the batch and is
re-sent with the same id on the next event or an explicit publish.
"""
import asyncio
import logging
from typing import Dict, Optional, Tuple

from pydantic import BaseModel

from app.aggregator import StageEvidenceAggregator, check_stage
from app.config import CERTIFICATE_VERIFY_BASE_URL, LEDGER_TIMEOUT
from app.errors import BatchNotFoundError, LedgerUnavailableError
from app.fingerprint import certificate_digest
from app.locks import LockTable
from app.models.provenance import (
    BatchProvenance,
    BatchState,
    Certificate,
    CertificateIssuedEvent,
    utcnow,
)
from utils.logging_config import audit_log

logger = logging.getLogger(__name__)


class CertificationOutcome(BaseModel):
    batch_id: str
    stage_number: Optional[int] = None
    transaction_id: Optional[str] = None
    duplicate: bool = False
    counted: bool = False
    state: BatchState
    stage_counts: Dict[int, int]
    certificate: Optional[Certificate] = None
    certificate_issued_now: bool = False
    certificate_pending: bool = False


class CertificationStateMachine:
    def __init__(
        self,
        ledger,
        store,
        notifier=None,
        aggregator: Optional[StageEvidenceAggregator] = None,
        locks: Optional[LockTable] = None,
        ledger_timeout: float = LEDGER_TIMEOUT,
        verify_base_url: str = CERTIFICATE_VERIFY_BASE_URL,
    ):
        self.ledger = ledger
        self.store = store
        self.notifier = notifier
        self.aggregator = aggregator or StageEvidenceAggregator(store)
        self.locks = locks or LockTable()
        self.ledger_timeout = ledger_timeout
        self.verify_base_url = verify_base_url

    async def _ledger_call(self, coro):
        try:
            return await asyncio.wait_for(coro, self.ledger_timeout)
        except asyncio.TimeoutError as e:
            raise LedgerUnavailableError(f"ledger did not answer within {self.ledger_timeout}s") from e

    def mint(self, batch: BatchProvenance) -> Certificate:
        issued_at = utcnow()
        certificate_id = f"CERT-{batch.batch_id}-{int(issued_at.timestamp() * 1000)}"
        transaction_ids = batch.transaction_ids
        return Certificate(
            certificate_id=certificate_id,
            batch_id=batch.batch_id,
            certificate_hash=certificate_digest(batch.batch_id, transaction_ids),
            stages_snapshot=dict(batch.stage_counts),
            transaction_ids=transaction_ids,
            issued_at=issued_at,
            qr_target_url=f"{self.verify_base_url.rstrip('/')}/{certificate_id}",
        )

    async def on_verified_image(self, batch_id: str, stage_number: int, content_hash: str) -> CertificationOutcome:
        check_stage(stage_number)
        async with self.locks.hold(batch_id):
            # 1. ledger first; a failure here leaves no trace in the aggregate
            receipt = await self._ledger_call(
                self.ledger.record_verified_image(content_hash, batch_id, stage_number)
            )
            record = receipt.record
            audit_log.ledger_record(batch_id, content_hash, record.transaction_id, receipt.duplicate)

            # 2. aggregate
            if record.batch_id != batch_id or record.stage_number != stage_number:
                logger.warning(
                    "image %s already on ledger for batch %s stage %s, not counted for batch %s stage %s",
                    content_hash[:12], record.batch_id, record.stage_number, batch_id, stage_number,
                )
                batch = await self.store.get(batch_id) or BatchProvenance(batch_id=batch_id)
                counted = False
            else:
                batch, counted = await self.aggregator.record_verified(
                    batch_id, stage_number, content_hash, record.transaction_id,
                )

            # 3. eligibility, on every event
            certificate, issued_now, pending = await self._evaluate(batch)

        return CertificationOutcome(
            batch_id=batch_id,
            stage_number=stage_number,
            transaction_id=record.transaction_id,
            duplicate=receipt.duplicate,
            counted=counted,
            state=BatchState.CERTIFIED if certificate else batch.state(self.aggregator.required_per_stage),
            stage_counts=batch.stage_counts,
            certificate=certificate,
            certificate_issued_now=issued_now,
            certificate_pending=pending,
        )

    async def publish_pending_certificate(self, batch_id: str) -> CertificationOutcome:
        async with self.locks.hold(batch_id):
            batch = await self.store.get(batch_id)
            if batch is None:
                raise BatchNotFoundError(f"Batch {batch_id} not found")
            certificate, issued_now, pending = await self._evaluate(batch)

        return CertificationOutcome(
            batch_id=batch_id,
            state=BatchState.CERTIFIED if certificate else batch.state(self.aggregator.required_per_stage),
            stage_counts=batch.stage_counts,
            certificate=certificate,
            certificate_issued_now=issued_now,
            certificate_pending=pending,
        )

    async def _evaluate(self, batch: BatchProvenance) -> Tuple[Optional[Certificate], bool, bool]:
        """Returns (certificate, issued by this call, left pending)."""
        if batch.certificate_issued:
            return batch.certificate, False, False
        if not batch.is_eligible(self.aggregator.required_per_stage):
            return None, False, False

        candidate = batch.pending_certificate or self.mint(batch)
        # first minted certificate wins; later writers reuse its id
        certificate = await self.store.set_pending_certificate(batch.batch_id, candidate)
        if certificate is None:
            return await self._current_certificate(batch.batch_id), False, False

        try:
            receipt = await self._ledger_call(self.ledger.record_certificate(certificate))
        except LedgerUnavailableError as e:
            audit_log.certificate_pending(batch.batch_id, certificate.certificate_id, str(e))
            return None, False, True

        if not await self.store.mark_certified(batch.batch_id, certificate, receipt.transaction_id):
            return await self._current_certificate(batch.batch_id), False, False

        audit_log.certificate_issued(batch.batch_id, certificate.certificate_id, receipt.transaction_id)
        await self._emit(batch, certificate)
        return certificate, True, False

    async def _current_certificate(self, batch_id: str) -> Optional[Certificate]:
        current = await self.store.get(batch_id)
        return current.certificate if current else None

    async def _emit(self, batch: BatchProvenance, certificate: Certificate):
        if self.notifier is None:
            return
        event = CertificateIssuedEvent(
            batch_id=batch.batch_id,
            certificate_id=certificate.certificate_id,
            qr_target_url=certificate.qr_target_url,
        )
        try:
            await self.notifier.certificate_issued(event, farmer_id=batch.farmer_id)
        except Exception:
            # the certificate is already on the ledger; delivery is retried downstream
            logger.exception("failed to write certificate notification for batch %s", batch.batch_id)
