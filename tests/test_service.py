import asyncio

import pytest

from app.errors import (
    BatchNotFoundError,
    CertificateNotFoundError,
    EmptyPayloadError,
    InvalidStageError,
    LedgerUnavailableError,
    ReviewConflictError,
    ReviewNotFoundError,
)
from app.models.provenance import BatchState, ReviewStatus, ValidationAction, VerifiedMethod

from tests.helpers import jpeg


def submit(service, batch_id, stage, content, mime="image/jpeg"):
    return asyncio.run(service.submit_image(batch_id, stage, content, mime))


def test_corrupted_upload_never_reaches_oracle(service, oracle, validations, batches):
    result = submit(service, "B1", 1, b"\xff\xd8\xff")

    assert result.action == ValidationAction.AUTO_REJECT
    assert not result.format_valid
    assert oracle.calls == 0

    records = asyncio.run(validations.all())
    assert len(records) == 1
    assert records[0].review_status == ReviewStatus.NOT_REQUIRED
    assert asyncio.run(batches.get("B1")) is None


@pytest.mark.parametrize("stage", [0, 8])
def test_invalid_stage_is_rejected_before_anything_runs(service, oracle, validations, stage):
    with pytest.raises(InvalidStageError):
        submit(service, "B1", stage, jpeg("a"))
    assert oracle.calls == 0
    assert asyncio.run(validations.all()) == []


def test_empty_payload(service, validations):
    with pytest.raises(EmptyPayloadError):
        submit(service, "B1", 1, b"")
    assert asyncio.run(validations.all()) == []


def test_clean_image_is_counted(service, validations):
    result = submit(service, "B1", 2, jpeg("clean"))

    assert result.action == ValidationAction.AUTO_APPROVE
    assert result.image_ref.startswith("IMG-")

    record = asyncio.run(validations.get(result.image_ref))
    assert record.verified_method == VerifiedMethod.AUTO_APPROVE
    assert record.transaction_id.startswith("TX-")

    status = asyncio.run(service.batch_status("B1"))
    assert status.stages[1].verified_images == 1
    assert status.state == BatchState.COLLECTING
    assert status.missing_stages[2] == 1


def test_fake_image_is_rejected_and_not_counted(service, oracle, batches):
    oracle.probability = 0.97
    result = submit(service, "B1", 1, jpeg("gan"))

    assert result.action == ValidationAction.AUTO_REJECT
    assert asyncio.run(batches.get("B1")) is None


def test_oracle_outage_routes_to_human(service, oracle, batches):
    oracle.fallback = True
    result = submit(service, "B1", 1, jpeg("a"))

    assert result.action == ValidationAction.FLAG_FOR_HUMAN
    assert result.requires_human_review
    assert asyncio.run(batches.get("B1")) is None

    pending = asyncio.run(service.list_pending_reviews())
    assert [p.image_ref for p in pending] == [result.image_ref]
    assert pending[0].oracle_fallback
    assert pending[0].stage_name == "Land Preparation"


def test_ledger_outage_on_approval_persists_nothing(service, ledger, validations):
    ledger.images_down = True
    with pytest.raises(LedgerUnavailableError):
        submit(service, "B1", 1, jpeg("a"))
    assert asyncio.run(validations.all()) == []


def test_human_approval_feeds_aggregator(service, oracle):
    oracle.probability = 0.5
    flagged = submit(service, "B1", 5, jpeg("blurry"))

    outcome = asyncio.run(service.record_human_decision(
        "B1", 5, flagged.image_ref, approved=True, reviewer_id="rev-1", reason="leaf visible",
    ))

    assert outcome.review_status == ReviewStatus.APPROVED
    assert outcome.transaction_id.startswith("TX-")
    assert outcome.batch_state == BatchState.COLLECTING
    assert asyncio.run(service.batch_status("B1")).stages[4].verified_images == 1
    assert asyncio.run(service.list_pending_reviews()) == []

    with pytest.raises(ReviewConflictError):
        asyncio.run(service.record_human_decision("B1", 5, flagged.image_ref, True, "rev-2"))


def test_human_rejection_never_counts(service, oracle, batches):
    oracle.probability = 0.5
    flagged = submit(service, "B1", 5, jpeg("blurry"))

    outcome = asyncio.run(service.record_human_decision("B1", 5, flagged.image_ref, False, "rev-1", "wrong crop"))

    assert outcome.review_status == ReviewStatus.REJECTED
    assert outcome.transaction_id is None
    assert asyncio.run(batches.get("B1")) is None


def test_decision_must_match_flagged_image(service, oracle):
    oracle.probability = 0.5
    flagged = submit(service, "B1", 5, jpeg("blurry"))

    with pytest.raises(ReviewConflictError):
        asyncio.run(service.record_human_decision("B2", 5, flagged.image_ref, True, "rev-1"))
    with pytest.raises(ReviewConflictError):
        asyncio.run(service.record_human_decision("B1", 6, flagged.image_ref, True, "rev-1"))
    with pytest.raises(ReviewNotFoundError):
        asyncio.run(service.record_human_decision("B1", 5, "IMG-NOPE", True, "rev-1"))


def test_auto_approved_image_cannot_be_reviewed(service):
    approved = submit(service, "B1", 1, jpeg("clean"))
    with pytest.raises(ReviewConflictError):
        asyncio.run(service.record_human_decision("B1", 1, approved.image_ref, True, "rev-1"))


def test_full_batch_certifies_and_verifies(service, oracle):
    asyncio.run(service.register_batch("B1", "farmer-7", "Tomato", 120.0))
    oracle.probability = 0.5
    flagged = submit(service, "B1", 7, jpeg("7-flagged"))
    oracle.probability = 0.05
    for stage in range(1, 7):
        for i in range(2):
            submit(service, "B1", stage, jpeg(f"{stage}-{i}"))
    submit(service, "B1", 7, jpeg("7-0"))

    outcome = asyncio.run(service.record_human_decision("B1", 7, flagged.image_ref, True, "rev-1"))
    assert outcome.batch_state == BatchState.CERTIFIED
    assert outcome.certificate_id

    status = asyncio.run(service.batch_status("B1"))
    assert status.state == BatchState.CERTIFIED
    assert status.farmer_id == "farmer-7"
    assert status.missing_stages == {}

    details = asyncio.run(service.verify_certificate(outcome.certificate_id))
    assert details.hashValid
    assert details.cropType == "Tomato"
    assert details.ledgerTransactionId
    assert [s.verified_images for s in details.stages] == [2] * 7
    assert details.stages[6].stage_name == "Packaging"


def test_notification_goes_to_registered_farmer(service, notifier):
    asyncio.run(service.register_batch("B1", "farmer-7", "Rice", 40))
    for stage in range(1, 8):
        for i in range(2):
            submit(service, "B1", stage, jpeg(f"{stage}-{i}"))

    assert len(notifier.sent) == 1
    assert notifier.sent[0]["user_id"] == "farmer-7"
    assert notifier.sent[0]["role"] == "Farmer"


def test_register_does_not_touch_counts(service):
    submit(service, "B1", 1, jpeg("a"))
    status = asyncio.run(service.register_batch("B1", "farmer-1", "Wheat", 10))
    assert status.stages[0].verified_images == 1
    assert status.crop_type == "Wheat"


def test_lookups_for_unknown_ids(service):
    with pytest.raises(BatchNotFoundError):
        asyncio.run(service.batch_status("missing"))
    with pytest.raises(CertificateNotFoundError):
        asyncio.run(service.verify_certificate("CERT-missing"))


def test_validation_stats_exclude_fail_safe_scores(service, oracle):
    oracle.probability = 0.1
    submit(service, "B1", 1, jpeg("a"))
    oracle.probability = 0.5
    flagged = submit(service, "B1", 1, jpeg("b"))
    oracle.fallback = True
    submit(service, "B1", 1, jpeg("c"))
    submit(service, "B1", 1, b"junk")
    asyncio.run(service.record_human_decision("B1", 1, flagged.image_ref, True, "rev-1"))

    stats = asyncio.run(service.validation_stats())

    assert stats.total_validations == 4
    assert stats.auto_approved == 1
    assert stats.auto_rejected == 1
    assert stats.flagged_for_human == 2
    assert stats.pending_reviews == 1
    assert stats.oracle_fallbacks == 1
    assert stats.average_fake_score == pytest.approx(0.3)
    assert stats.verified.auto_approved == 1
    assert stats.verified.expert_approved == 1
    assert stats.verified.total == 2


def test_appealed_rejection_counts_once_a_reviewer_approves(service, oracle):
    oracle.probability = 0.97
    rejected = submit(service, "B1", 3, jpeg("shadowy"))
    assert rejected.action == ValidationAction.AUTO_REJECT

    appeal = asyncio.run(service.appeal(rejected.image_ref, "farmer-1", "photo taken at dusk"))
    assert appeal.review_status == ReviewStatus.PENDING
    assert appeal.appeal_reason == "photo taken at dusk"
    assert appeal.appealed_by == "farmer-1"

    pending = asyncio.run(service.list_pending_reviews())
    assert [p.image_ref for p in pending] == [rejected.image_ref]
    assert pending[0].appeal_reason == "photo taken at dusk"

    outcome = asyncio.run(service.record_human_decision("B1", 3, rejected.image_ref, True, "rev-1"))
    assert outcome.transaction_id.startswith("TX-")
    assert asyncio.run(service.batch_status("B1")).stages[2].verified_images == 1

    stats = asyncio.run(service.validation_stats())
    assert stats.appeals == 1
    assert stats.verified.expert_approved == 1


def test_unresolved_appeal_is_not_counted(service, oracle, batches):
    oracle.probability = 0.97
    rejected = submit(service, "B1", 3, jpeg("shadowy"))

    appeal = asyncio.run(service.appeal(rejected.image_ref, "farmer-1"))

    assert appeal.appeal_reason == "Farmer disputes the decision"
    assert asyncio.run(batches.get("B1")) is None
    assert asyncio.run(service.validation_stats()).pending_reviews == 1


def test_structural_rejection_cannot_be_appealed(service, validations):
    rejected = submit(service, "B1", 1, b"junk")

    with pytest.raises(ReviewConflictError):
        asyncio.run(service.appeal(rejected.image_ref, "farmer-1"))
    assert asyncio.run(validations.get(rejected.image_ref)).review_status == ReviewStatus.NOT_REQUIRED


def test_each_rejection_is_appealed_once(service, oracle):
    oracle.probability = 0.97
    rejected = submit(service, "B1", 3, jpeg("shadowy"))
    asyncio.run(service.appeal(rejected.image_ref, "farmer-1"))

    with pytest.raises(ReviewConflictError):
        asyncio.run(service.appeal(rejected.image_ref, "farmer-1"))

    asyncio.run(service.record_human_decision("B1", 3, rejected.image_ref, False, "rev-1", "generated"))
    with pytest.raises(ReviewConflictError):
        asyncio.run(service.appeal(rejected.image_ref, "farmer-1"))


def test_only_rejections_can_be_appealed(service, oracle):
    approved = submit(service, "B1", 1, jpeg("clean"))
    oracle.probability = 0.5
    flagged = submit(service, "B1", 1, jpeg("unsure"))

    for image_ref in (approved.image_ref, flagged.image_ref):
        with pytest.raises(ReviewConflictError):
            asyncio.run(service.appeal(image_ref, "farmer-1"))
    with pytest.raises(ReviewNotFoundError):
        asyncio.run(service.appeal("IMG-NOPE", "farmer-1"))


def test_appeal_must_come_from_batch_owner(service, oracle):
    asyncio.run(service.register_batch("B1", "farmer-1", "Maize", 500))
    oracle.probability = 0.97
    rejected = submit(service, "B1", 3, jpeg("shadowy"))

    with pytest.raises(ReviewConflictError):
        asyncio.run(service.appeal(rejected.image_ref, "farmer-2"))
    assert asyncio.run(service.appeal(rejected.image_ref, "farmer-1")).appealed_by == "farmer-1"
