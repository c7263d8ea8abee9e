import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from app.blockchain_client import InMemoryLedger, LedgerBridgeClient
from app.errors import LedgerUnavailableError
from app.models.provenance import Certificate


def make_client(handler):
    return LedgerBridgeClient(base_url="http://bridge.test/", timeout=1.0, transport=httpx.MockTransport(handler))


def make_certificate():
    return Certificate(
        certificate_id="CERT-B1-1",
        batch_id="B1",
        certificate_hash="ab" * 32,
        stages_snapshot={s: 2 for s in range(1, 8)},
        transaction_ids=["TX-1", "TX-2"],
        issued_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
        qr_target_url="https://krishibarosa.com/verify/CERT-B1-1",
    )


def test_record_verified_image_posts_hash_and_stage():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        assert request.url.path == "/record-image"
        return httpx.Response(200, json={"transactionId": "TX-abc", "timestamp": "2024-03-01T10:00:00Z"})

    receipt = asyncio.run(make_client(handler).record_verified_image("f00d", "B1", 3))

    assert seen == [{"contentHash": "f00d", "batchId": "B1", "stageNumber": 3, "stageName": "Irrigation"}]
    assert receipt.record.transaction_id == "TX-abc"
    assert receipt.record.batch_id == "B1"
    assert receipt.record.recorded_at.year == 2024
    assert not receipt.duplicate


def test_conflict_returns_original_transaction():
    def handler(request):
        return httpx.Response(409, json={"transactionId": "TX-first", "batchId": "B0", "stageNumber": 1})

    receipt = asyncio.run(make_client(handler).record_verified_image("f00d", "B1", 3))

    assert receipt.duplicate
    assert receipt.record.transaction_id == "TX-first"
    assert receipt.record.batch_id == "B0"
    assert receipt.record.stage_number == 1


def test_record_certificate_sends_full_certificate():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"transactionId": "TX-cert", "duplicate": False})

    receipt = asyncio.run(make_client(handler).record_certificate(make_certificate()))

    assert receipt.transaction_id == "TX-cert"
    assert seen[0]["certificate_id"] == "CERT-B1-1"
    assert seen[0]["transaction_ids"] == ["TX-1", "TX-2"]


@pytest.mark.parametrize("handler", [
    lambda request: httpx.Response(500, json={"error": "peer down"}),
    lambda request: httpx.Response(200, text="<html>gateway</html>"),
    lambda request: httpx.Response(200, json={"status": "ok"}),
])
def test_bridge_failures_are_retryable(handler):
    with pytest.raises(LedgerUnavailableError) as exc_info:
        asyncio.run(make_client(handler).record_verified_image("f00d", "B1", 1))
    assert exc_info.value.retryable
    assert exc_info.value.status_code == 503


def test_bridge_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(LedgerUnavailableError):
        asyncio.run(make_client(handler).record_certificate(make_certificate()))


def test_in_memory_ledger_is_idempotent():
    ledger = InMemoryLedger()

    async def scenario():
        first = await ledger.record_verified_image("f00d", "B1", 1)
        again = await ledger.record_verified_image("f00d", "B2", 4)
        cert_first = await ledger.record_certificate(make_certificate())
        cert_again = await ledger.record_certificate(make_certificate())
        return first, again, cert_first, cert_again

    first, again, cert_first, cert_again = asyncio.run(scenario())

    assert again.duplicate and not first.duplicate
    assert again.record == first.record
    assert cert_again.transaction_id == cert_first.transaction_id
    assert len(ledger.images) == 1
    assert len(ledger.certificates) == 1
