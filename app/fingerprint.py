import hashlib
import json
from typing import Iterable


def fingerprint(image_bytes: bytes) -> str:
    """SHA-256 of the raw image bytes, hex encoded. Doubles as the ledger key."""
    return hashlib.sha256(image_bytes).hexdigest()


def certificate_digest(batch_id: str, transaction_ids: Iterable[str]) -> str:
    """Digest over the batch id and the ledger transactions a certificate subsumes."""
    payload = json.dumps(
        {"batchId": batch_id, "blockchainTransactions": list(transaction_ids)},
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
