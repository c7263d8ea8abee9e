"""
Persistence for batch provenance and validation records.

Two interchangeable backends: MongoDB through motor for deployments and a
process-local store for tests and single-node runs. Both expose the same
conditional-update semantics, so the at-most-one certificate guarantee does
not depend on which one is wired in.
"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument

from app.config import MONGO_DB, MONGO_URI
from app.models.provenance import (
    BatchProvenance,
    Certificate,
    EvidenceEntry,
    ReviewStatus,
    ValidationAction,
    ValidationRecord,
    VerifiedMethod,
    empty_stage_counts,
    utcnow,
)

# ==============================
# MongoDB Connection
# ==============================

_client: Optional[AsyncIOMotorClient] = None


def get_database():
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(MONGO_URI)
    return _client[MONGO_DB]


def _to_doc(model) -> dict:
    # json mode turns the int stage keys into the string keys BSON requires
    return model.model_dump(mode="json")


def _strip_id(doc: dict | None) -> dict | None:
    if not doc:
        return None
    new_doc = dict(doc)
    new_doc.pop("_id", None)
    return new_doc


# ==============================
# BATCH PROVENANCE
# ==============================

class InMemoryBatchStore:
    def __init__(self):
        self._batches: Dict[str, BatchProvenance] = {}

    # each method completes without awaiting, so it is atomic on the event loop

    def _get_or_create(self, batch_id: str) -> BatchProvenance:
        batch = self._batches.get(batch_id)
        if batch is None:
            batch = BatchProvenance(batch_id=batch_id)
            self._batches[batch_id] = batch
        return batch

    async def get(self, batch_id: str) -> Optional[BatchProvenance]:
        batch = self._batches.get(batch_id)
        return batch.model_copy(deep=True) if batch else None

    async def register(self, batch_id: str, farmer_id: str, crop_type: str, quantity: float) -> BatchProvenance:
        batch = self._get_or_create(batch_id)
        batch.farmer_id = farmer_id
        batch.crop_type = crop_type
        batch.quantity = quantity
        return batch.model_copy(deep=True)

    async def add_evidence(
        self, batch_id: str, stage_number: int, content_hash: str, transaction_id: str
    ) -> Tuple[BatchProvenance, bool]:
        batch = self._get_or_create(batch_id)
        if batch.has_evidence(content_hash):
            return batch.model_copy(deep=True), False
        batch.evidence.append(EvidenceEntry(
            content_hash=content_hash, stage_number=stage_number, transaction_id=transaction_id,
        ))
        batch.stage_counts[stage_number] = batch.stage_counts.get(stage_number, 0) + 1
        return batch.model_copy(deep=True), True

    async def set_pending_certificate(self, batch_id: str, certificate: Certificate) -> Optional[Certificate]:
        batch = self._get_or_create(batch_id)
        if batch.certificate_issued:
            return None
        if batch.pending_certificate is None:
            batch.pending_certificate = certificate
        return batch.pending_certificate

    async def mark_certified(self, batch_id: str, certificate: Certificate, transaction_id: str) -> bool:
        batch = self._batches.get(batch_id)
        if batch is None or batch.certificate_issued:
            return False
        batch.certificate_issued = True
        batch.certificate_id = certificate.certificate_id
        batch.certificate = certificate
        batch.certificate_transaction_id = transaction_id
        batch.pending_certificate = None
        return True

    async def find_by_certificate(self, certificate_id: str) -> Optional[BatchProvenance]:
        for batch in self._batches.values():
            if batch.certificate_id == certificate_id:
                return batch.model_copy(deep=True)
        return None


class MongoBatchStore:
    def __init__(self, collection=None):
        self.col = collection if collection is not None else get_database()["batches"]

    async def ensure_indexes(self):
        await self.col.create_index("batch_id", unique=True)
        await self.col.create_index("certificate_id", unique=True, sparse=True)

    def _new_document_defaults(self, batch_id: str) -> dict:
        doc = _to_doc(BatchProvenance(batch_id=batch_id))
        for key in ("batch_id", "farmer_id", "crop_type", "quantity", "certificate_id"):
            doc.pop(key, None)
        return doc

    async def _ensure(self, batch_id: str):
        await self.col.update_one(
            {"batch_id": batch_id},
            {"$setOnInsert": self._new_document_defaults(batch_id)},
            upsert=True,
        )

    async def get(self, batch_id: str) -> Optional[BatchProvenance]:
        doc = _strip_id(await self.col.find_one({"batch_id": batch_id}))
        return BatchProvenance.model_validate(doc) if doc else None

    async def register(self, batch_id: str, farmer_id: str, crop_type: str, quantity: float) -> BatchProvenance:
        defaults = self._new_document_defaults(batch_id)
        doc = await self.col.find_one_and_update(
            {"batch_id": batch_id},
            {
                "$set": {"farmer_id": farmer_id, "crop_type": crop_type, "quantity": quantity},
                "$setOnInsert": defaults,
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return BatchProvenance.model_validate(_strip_id(doc))

    async def add_evidence(
        self, batch_id: str, stage_number: int, content_hash: str, transaction_id: str
    ) -> Tuple[BatchProvenance, bool]:
        await self._ensure(batch_id)
        entry = _to_doc(EvidenceEntry(
            content_hash=content_hash, stage_number=stage_number, transaction_id=transaction_id,
        ))
        # the $ne guard makes the increment idempotent per content hash
        doc = await self.col.find_one_and_update(
            {"batch_id": batch_id, "evidence.content_hash": {"$ne": content_hash}},
            {"$inc": {f"stage_counts.{stage_number}": 1}, "$push": {"evidence": entry}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return await self.get(batch_id), False
        return BatchProvenance.model_validate(_strip_id(doc)), True

    async def set_pending_certificate(self, batch_id: str, certificate: Certificate) -> Optional[Certificate]:
        doc = await self.col.find_one_and_update(
            {"batch_id": batch_id, "certificate_issued": False, "pending_certificate": None},
            {"$set": {"pending_certificate": _to_doc(certificate)}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            doc = await self.col.find_one({"batch_id": batch_id})
        if not doc or doc.get("certificate_issued"):
            return None
        return BatchProvenance.model_validate(_strip_id(doc)).pending_certificate

    async def mark_certified(self, batch_id: str, certificate: Certificate, transaction_id: str) -> bool:
        # atomic flip: only one writer can move certificate_issued false -> true
        result = await self.col.update_one(
            {"batch_id": batch_id, "certificate_issued": False},
            {"$set": {
                "certificate_issued": True,
                "certificate_id": certificate.certificate_id,
                "certificate": _to_doc(certificate),
                "certificate_transaction_id": transaction_id,
                "pending_certificate": None,
            }},
        )
        return result.modified_count == 1

    async def find_by_certificate(self, certificate_id: str) -> Optional[BatchProvenance]:
        doc = _strip_id(await self.col.find_one({"certificate_id": certificate_id}))
        return BatchProvenance.model_validate(doc) if doc else None


# ==============================
# VALIDATION RECORDS / REVIEW QUEUE
# ==============================

def _resolution_fields(
    status: ReviewStatus,
    reviewer_id: str,
    reason: Optional[str],
    verified_method: Optional[VerifiedMethod],
    transaction_id: Optional[str],
    reviewed_at: datetime,
) -> dict:
    return {
        "review_status": status,
        "reviewer_id": reviewer_id,
        "review_reason": reason,
        "verified_method": verified_method,
        "transaction_id": transaction_id,
        "reviewed_at": reviewed_at,
    }


def _appealable(record: ValidationRecord) -> bool:
    return (
        record.result.action == ValidationAction.AUTO_REJECT
        and record.review_status == ReviewStatus.NOT_REQUIRED
        and record.appeal_reason is None
    )


class InMemoryValidationStore:
    def __init__(self):
        self._records: Dict[str, ValidationRecord] = {}

    async def save(self, record: ValidationRecord) -> ValidationRecord:
        self._records[record.image_ref] = record.model_copy(deep=True)
        return record

    async def get(self, image_ref: str) -> Optional[ValidationRecord]:
        record = self._records.get(image_ref)
        return record.model_copy(deep=True) if record else None

    async def resolve(
        self,
        image_ref: str,
        status: ReviewStatus,
        reviewer_id: str,
        reason: Optional[str] = None,
        verified_method: Optional[VerifiedMethod] = None,
        transaction_id: Optional[str] = None,
    ) -> Optional[ValidationRecord]:
        record = self._records.get(image_ref)
        if record is None or record.review_status != ReviewStatus.PENDING:
            return None
        updated = record.model_copy(update=_resolution_fields(
            status, reviewer_id, reason, verified_method, transaction_id, utcnow(),
        ))
        self._records[image_ref] = updated
        return updated.model_copy(deep=True)

    async def open_appeal(self, image_ref: str, farmer_id: str, reason: str) -> Optional[ValidationRecord]:
        record = self._records.get(image_ref)
        if record is None or not _appealable(record):
            return None
        updated = record.model_copy(update={
            "review_status": ReviewStatus.PENDING,
            "appeal_reason": reason,
            "appealed_by": farmer_id,
            "appealed_at": utcnow(),
        })
        self._records[image_ref] = updated
        return updated.model_copy(deep=True)

    async def list_pending(self, limit: int = 50) -> List[ValidationRecord]:
        pending = [r for r in self._records.values() if r.review_status == ReviewStatus.PENDING]
        pending.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in pending[:limit]]

    async def all(self) -> List[ValidationRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]


class MongoValidationStore:
    def __init__(self, collection=None):
        self.col = collection if collection is not None else get_database()["validations"]

    async def ensure_indexes(self):
        await self.col.create_index("image_ref", unique=True)
        await self.col.create_index([("review_status", 1), ("created_at", -1)])

    async def save(self, record: ValidationRecord) -> ValidationRecord:
        await self.col.insert_one(_to_doc(record))
        return record

    async def get(self, image_ref: str) -> Optional[ValidationRecord]:
        doc = _strip_id(await self.col.find_one({"image_ref": image_ref}))
        return ValidationRecord.model_validate(doc) if doc else None

    async def resolve(
        self,
        image_ref: str,
        status: ReviewStatus,
        reviewer_id: str,
        reason: Optional[str] = None,
        verified_method: Optional[VerifiedMethod] = None,
        transaction_id: Optional[str] = None,
    ) -> Optional[ValidationRecord]:
        fields = _resolution_fields(status, reviewer_id, reason, verified_method, transaction_id, utcnow())
        fields = {
            k: (v.value if hasattr(v, "value") else v.isoformat() if isinstance(v, datetime) else v)
            for k, v in fields.items()
        }
        doc = await self.col.find_one_and_update(
            {"image_ref": image_ref, "review_status": ReviewStatus.PENDING.value},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return ValidationRecord.model_validate(_strip_id(doc)) if doc else None

    async def open_appeal(self, image_ref: str, farmer_id: str, reason: str) -> Optional[ValidationRecord]:
        # one appeal per record: only an untouched AUTO_REJECT can be reopened
        doc = await self.col.find_one_and_update(
            {
                "image_ref": image_ref,
                "result.action": ValidationAction.AUTO_REJECT.value,
                "review_status": ReviewStatus.NOT_REQUIRED.value,
                "appeal_reason": None,
            },
            {"$set": {
                "review_status": ReviewStatus.PENDING.value,
                "appeal_reason": reason,
                "appealed_by": farmer_id,
                "appealed_at": utcnow().isoformat(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        return ValidationRecord.model_validate(_strip_id(doc)) if doc else None

    async def list_pending(self, limit: int = 50) -> List[ValidationRecord]:
        cursor = self.col.find({"review_status": ReviewStatus.PENDING.value}).sort("created_at", -1).limit(limit)
        return [ValidationRecord.model_validate(_strip_id(d)) async for d in cursor]

    async def all(self) -> List[ValidationRecord]:
        return [ValidationRecord.model_validate(_strip_id(d)) async for d in self.col.find()]
