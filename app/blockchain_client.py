"""
Ledger recording adapter.

The ledger is an append-only, idempotent key-value log: verified images are
keyed by content hash, certificates by certificate id. Writing the same key
twice returns the original transaction instead of appending a new one.
"""
import logging
import uuid
from typing import Dict, Optional, Tuple

import httpx
from pydantic import BaseModel

from app.config import LEDGER_BRIDGE_URL, LEDGER_TIMEOUT
from app.errors import LedgerUnavailableError
from app.models.provenance import STAGE_NAMES, Certificate, LedgerReceipt, LedgerRecord

logger = logging.getLogger(__name__)


class ImageReceipt(BaseModel):
    record: LedgerRecord
    duplicate: bool = False


def new_transaction_id() -> str:
    return f"TX-{uuid.uuid4().hex}"


class LedgerBridgeClient:
    """Talks to the ledger bridge process over HTTP."""

    def __init__(
        self,
        base_url: str = LEDGER_BRIDGE_URL,
        timeout: float = LEDGER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(f"{self.base_url}{path}", json=payload)
            # 409 carries the already-recorded transaction
            if resp.status_code != 409:
                resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as e:
            logger.error("ledger bridge %s timed out: %s", path, e)
            raise LedgerUnavailableError(f"ledger bridge timed out on {path}") from e
        except httpx.HTTPError as e:
            logger.error("ledger bridge %s failed: %s", path, e)
            raise LedgerUnavailableError(f"ledger bridge failed on {path}: {e}") from e
        except ValueError as e:
            raise LedgerUnavailableError(f"ledger bridge returned a non-JSON body on {path}") from e

        if not body.get("transactionId"):
            raise LedgerUnavailableError(f"ledger bridge did not return a transaction id on {path}")
        body["duplicate"] = bool(body.get("duplicate")) or resp.status_code == 409
        return body

    async def record_verified_image(self, content_hash: str, batch_id: str, stage_number: int) -> ImageReceipt:
        body = await self._post("/record-image", {
            "contentHash": content_hash,
            "batchId": batch_id,
            "stageNumber": stage_number,
            "stageName": STAGE_NAMES[stage_number],
        })
        fields = {
            "batch_id": body.get("batchId", batch_id),
            "stage_number": body.get("stageNumber", stage_number),
            "content_hash": content_hash,
            "transaction_id": body["transactionId"],
        }
        recorded_at = body.get("recordedAt") or body.get("timestamp")
        if recorded_at:
            fields["recorded_at"] = recorded_at
        return ImageReceipt(record=LedgerRecord(**fields), duplicate=body["duplicate"])

    async def record_certificate(self, certificate: Certificate) -> LedgerReceipt:
        body = await self._post("/record-certificate", certificate.model_dump(mode="json"))
        return LedgerReceipt(transaction_id=body["transactionId"], duplicate=body["duplicate"])


class InMemoryLedger:
    """Process-local ledger with the same idempotency contract as the bridge."""

    def __init__(self):
        self.images: Dict[str, LedgerRecord] = {}
        self.certificates: Dict[str, Tuple[str, Certificate]] = {}

    # no awaits between lookup and insert, so each write is atomic on the loop

    async def record_verified_image(self, content_hash: str, batch_id: str, stage_number: int) -> ImageReceipt:
        existing = self.images.get(content_hash)
        if existing:
            return ImageReceipt(record=existing, duplicate=True)
        record = LedgerRecord(
            batch_id=batch_id,
            stage_number=stage_number,
            content_hash=content_hash,
            transaction_id=new_transaction_id(),
        )
        self.images[content_hash] = record
        return ImageReceipt(record=record)

    async def record_certificate(self, certificate: Certificate) -> LedgerReceipt:
        existing = self.certificates.get(certificate.certificate_id)
        if existing:
            return LedgerReceipt(transaction_id=existing[0], duplicate=True)
        tx_id = new_transaction_id()
        self.certificates[certificate.certificate_id] = (tx_id, certificate)
        return LedgerReceipt(transaction_id=tx_id)
