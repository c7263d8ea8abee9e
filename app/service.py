"""
Inbound operations of the provenance core.

`ProvenanceService` is what the routers call. It owns no state of its own:
routing decisions come from the policy engine, counts and certificates from
the certification state machine, and review records from the validation
store.
"""
import logging
import uuid
from typing import List, Optional

from app import config
from app.aggregator import check_stage
from app.blockchain_client import InMemoryLedger, LedgerBridgeClient
from app.certification import CertificationOutcome, CertificationStateMachine
from app.database import (
    InMemoryBatchStore,
    InMemoryValidationStore,
    MongoBatchStore,
    MongoValidationStore,
    get_database,
)
from app.errors import (
    BatchNotFoundError,
    CertificateNotFoundError,
    EmptyPayloadError,
    ReviewConflictError,
    ReviewNotFoundError,
)
from app.fingerprint import certificate_digest
from app.locks import LockTable
from app.models.provenance import (
    STAGE_NAMES,
    BatchProvenance,
    ImageSubmission,
    ReviewStatus,
    ValidationAction,
    ValidationRecord,
    ValidationResult,
    VerifiedMethod,
)
from app.models.public import (
    AppealOutcome,
    BatchStatus,
    HumanDecisionOutcome,
    PendingReview,
    PublicCertificateDetails,
    PublishOutcome,
    StageProgress,
    StageSnapshot,
    ValidationStats,
    VerifiedCounts,
)
from app.policy import ValidationPolicyEngine
from ml.inference import AuthenticityOracle
from utils.logging_config import audit_log
from utils.notify import Notifier

logger = logging.getLogger(__name__)


DEFAULT_APPEAL_REASON = "Farmer disputes the decision"


def new_image_ref() -> str:
    return f"IMG-{uuid.uuid4().hex[:12].upper()}"


class ProvenanceService:
    def __init__(
        self,
        policy: ValidationPolicyEngine,
        certifier: CertificationStateMachine,
        validations,
    ):
        self.policy = policy
        self.certifier = certifier
        self.validations = validations
        self.review_locks = LockTable()

    @property
    def batches(self):
        return self.certifier.store

    @property
    def required_per_stage(self) -> int:
        return self.certifier.aggregator.required_per_stage

    # =====================================================
    # SUBMISSION
    # =====================================================

    async def submit_image(
        self, batch_id: str, stage_number: int, image_bytes: bytes, mime_type: Optional[str] = None
    ) -> ValidationResult:
        check_stage(stage_number)
        if not image_bytes:
            raise EmptyPayloadError()
        submission = ImageSubmission(
            batch_id=batch_id, stage_number=stage_number, content=image_bytes, mime_type=mime_type,
        )

        result, oracle_score = await self.policy.evaluate(submission.content, submission.mime_type)
        result = result.model_copy(update={"image_ref": new_image_ref()})

        record = ValidationRecord(
            image_ref=result.image_ref,
            batch_id=batch_id,
            stage_number=stage_number,
            result=result,
            oracle_fallback=bool(oracle_score and oracle_score.fallback),
        )

        if result.action == ValidationAction.AUTO_APPROVE:
            # a ledger failure propagates before anything is persisted
            outcome = await self.certifier.on_verified_image(batch_id, stage_number, result.content_hash)
            record.verified_method = VerifiedMethod.AUTO_APPROVE
            record.transaction_id = outcome.transaction_id
        elif result.action == ValidationAction.FLAG_FOR_HUMAN:
            record.review_status = ReviewStatus.PENDING

        await self.validations.save(record)
        audit_log.validation_decision(
            batch_id,
            stage_number,
            result.content_hash,
            result.action.value,
            result.authenticity_score,
            result.visual_quality_score,
        )
        return result

    # =====================================================
    # HUMAN REVIEW
    # =====================================================

    async def record_human_decision(
        self,
        batch_id: str,
        stage_number: int,
        image_ref: str,
        approved: bool,
        reviewer_id: str,
        reason: Optional[str] = None,
    ) -> HumanDecisionOutcome:
        check_stage(stage_number)
        async with self.review_locks.hold(image_ref):
            record = await self.validations.get(image_ref)
            if record is None:
                raise ReviewNotFoundError(f"No validation record {image_ref}")
            if record.batch_id != batch_id or record.stage_number != stage_number:
                raise ReviewConflictError(
                    f"{image_ref} belongs to batch {record.batch_id} stage {record.stage_number}"
                )
            if record.review_status != ReviewStatus.PENDING:
                raise ReviewConflictError(f"{image_ref} is {record.review_status.value}, not pending review")

            outcome: Optional[CertificationOutcome] = None
            if approved:
                outcome = await self.certifier.on_verified_image(
                    batch_id, stage_number, record.result.content_hash,
                )
                resolved = await self.validations.resolve(
                    image_ref,
                    ReviewStatus.APPROVED,
                    reviewer_id,
                    reason,
                    verified_method=VerifiedMethod.EXPERT_APPROVED,
                    transaction_id=outcome.transaction_id,
                )
            else:
                resolved = await self.validations.resolve(image_ref, ReviewStatus.REJECTED, reviewer_id, reason)

            if resolved is None:
                raise ReviewConflictError(f"{image_ref} was resolved concurrently")

        audit_log.human_decision(image_ref, batch_id, reviewer_id, approved)
        return HumanDecisionOutcome(
            image_ref=image_ref,
            batch_id=batch_id,
            stage_number=stage_number,
            review_status=resolved.review_status,
            reviewer_id=reviewer_id,
            transaction_id=resolved.transaction_id,
            batch_state=outcome.state if outcome else None,
            certificate_id=outcome.certificate.certificate_id if outcome and outcome.certificate else None,
        )

    async def appeal(self, image_ref: str, farmer_id: str, reason: Optional[str] = None) -> AppealOutcome:
        """
        Farmer dispute of an AUTO_REJECT. The record goes back into the
        expert queue as PENDING and counts nothing until a reviewer approves it.
        Structural rejections are final; each record can be appealed once.
        """
        reason = reason or DEFAULT_APPEAL_REASON
        async with self.review_locks.hold(image_ref):
            record = await self.validations.get(image_ref)
            if record is None:
                raise ReviewNotFoundError(f"No validation record {image_ref}")
            if record.result.action != ValidationAction.AUTO_REJECT:
                raise ReviewConflictError(f"{image_ref} was not rejected ({record.result.action.value})")
            if not (record.result.format_valid and record.result.integrity_valid):
                raise ReviewConflictError(f"{image_ref} failed basic validation and cannot be appealed")

            batch = await self.batches.get(record.batch_id)
            if batch is not None and batch.farmer_id and batch.farmer_id != farmer_id:
                raise ReviewConflictError(f"{image_ref} belongs to another farmer's batch")

            opened = await self.validations.open_appeal(image_ref, farmer_id, reason)
            if opened is None:
                raise ReviewConflictError(f"{image_ref} was already appealed or reviewed")

        audit_log.appeal_filed(image_ref, opened.batch_id, farmer_id, reason)
        return AppealOutcome(
            image_ref=image_ref,
            batch_id=opened.batch_id,
            stage_number=opened.stage_number,
            review_status=opened.review_status,
            appeal_reason=opened.appeal_reason,
            appealed_by=opened.appealed_by,
            appealed_at=opened.appealed_at,
        )

    async def list_pending_reviews(self, limit: int = 50) -> List[PendingReview]:
        records = await self.validations.list_pending(limit)
        return [
            PendingReview(
                image_ref=r.image_ref,
                batch_id=r.batch_id,
                stage_number=r.stage_number,
                stage_name=STAGE_NAMES[r.stage_number],
                result=r.result,
                oracle_fallback=r.oracle_fallback,
                appeal_reason=r.appeal_reason,
                created_at=r.created_at,
            )
            for r in records
        ]

    # =====================================================
    # STATS
    # =====================================================

    async def validation_stats(self) -> ValidationStats:
        records = await self.validations.all()
        stats = ValidationStats(total_validations=len(records))
        scores = []

        for r in records:
            action = r.result.action
            if action == ValidationAction.AUTO_APPROVE:
                stats.auto_approved += 1
            elif action == ValidationAction.AUTO_REJECT:
                stats.auto_rejected += 1
            else:
                stats.flagged_for_human += 1

            if r.review_status == ReviewStatus.PENDING:
                stats.pending_reviews += 1
            if r.appeal_reason is not None:
                stats.appeals += 1
            if r.oracle_fallback:
                stats.oracle_fallbacks += 1
            elif r.result.model_used is not None:
                scores.append(r.result.authenticity_score)

        if scores:
            stats.average_fake_score = round(sum(scores) / len(scores), 4)

        verified = VerifiedCounts()
        for r in records:
            if r.verified_method == VerifiedMethod.AUTO_APPROVE:
                verified.auto_approved += 1
            elif r.verified_method == VerifiedMethod.EXPERT_APPROVED:
                verified.expert_approved += 1
        verified.total = verified.auto_approved + verified.expert_approved
        stats.verified = verified
        return stats

    # =====================================================
    # BATCHES
    # =====================================================

    async def register_batch(
        self, batch_id: str, farmer_id: str, crop_type: str, quantity: float
    ) -> BatchStatus:
        batch = await self.batches.register(batch_id, farmer_id, crop_type, quantity)
        logger.info("registered batch %s for farmer %s", batch_id, farmer_id)
        return self._status(batch)

    async def batch_status(self, batch_id: str) -> BatchStatus:
        batch = await self.batches.get(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return self._status(batch)

    def _status(self, batch: BatchProvenance) -> BatchStatus:
        required = self.required_per_stage
        stages = [
            StageProgress(
                stage_number=n,
                stage_name=name,
                verified_images=batch.stage_counts.get(n, 0),
                required=required,
                complete=batch.stage_counts.get(n, 0) >= required,
            )
            for n, name in STAGE_NAMES.items()
        ]
        return BatchStatus(
            batch_id=batch.batch_id,
            farmer_id=batch.farmer_id,
            crop_type=batch.crop_type,
            quantity=batch.quantity,
            state=batch.state(required),
            stages=stages,
            missing_stages=batch.missing_stages(required),
            certificate_id=batch.certificate_id,
            certificate_pending=batch.pending_certificate is not None,
        )

    async def publish_pending_certificate(self, batch_id: str) -> PublishOutcome:
        outcome = await self.certifier.publish_pending_certificate(batch_id)
        return PublishOutcome(
            batch_id=batch_id,
            state=outcome.state,
            certificate=outcome.certificate,
            published_now=outcome.certificate_issued_now,
            certificate_pending=outcome.certificate_pending,
        )

    # =====================================================
    # PUBLIC VERIFY
    # =====================================================

    async def verify_certificate(self, certificate_id: str) -> PublicCertificateDetails:
        batch = await self.batches.find_by_certificate(certificate_id)
        if batch is None or batch.certificate is None:
            raise CertificateNotFoundError(f"Certificate {certificate_id} not found")

        cert = batch.certificate
        recomputed = certificate_digest(cert.batch_id, cert.transaction_ids)
        if recomputed != cert.certificate_hash:
            logger.warning("certificate %s hash mismatch", certificate_id)

        return PublicCertificateDetails(
            certificateId=cert.certificate_id,
            batchId=cert.batch_id,
            cropType=batch.crop_type,
            farmerId=batch.farmer_id,
            quantity=batch.quantity,
            issuedAt=cert.issued_at,
            certificateHash=cert.certificate_hash,
            hashValid=recomputed == cert.certificate_hash,
            ledgerTransactionId=batch.certificate_transaction_id,
            blockchainTransactions=cert.transaction_ids,
            stages=[
                StageSnapshot(stage_number=n, stage_name=name, verified_images=cert.stages_snapshot.get(n, 0))
                for n, name in STAGE_NAMES.items()
            ],
            qrTargetUrl=cert.qr_target_url,
        )


# =====================================================
# WIRING
# =====================================================

def build_service(
    store_backend: str = config.STORE_BACKEND,
    ledger_backend: str = config.LEDGER_BACKEND,
) -> ProvenanceService:
    if store_backend == "memory":
        batches, validations, notifier = InMemoryBatchStore(), InMemoryValidationStore(), Notifier()
    else:
        db = get_database()
        batches = MongoBatchStore(db["batches"])
        validations = MongoValidationStore(db["validations"])
        notifier = Notifier(db["notifications"])

    ledger = InMemoryLedger() if ledger_backend == "memory" else LedgerBridgeClient()

    certifier = CertificationStateMachine(ledger=ledger, store=batches, notifier=notifier)
    logger.info("provenance service wired: store=%s ledger=%s", store_backend, ledger_backend)
    return ProvenanceService(
        policy=ValidationPolicyEngine(AuthenticityOracle()),
        certifier=certifier,
        validations=validations,
    )
