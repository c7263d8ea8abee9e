from app.blockchain_client import InMemoryLedger
from app.errors import LedgerUnavailableError
from app.models.provenance import OracleScore
from utils.jwt import create_token


class ScriptedOracle:
    """Answers every call with whatever score the test set last."""

    def __init__(self, probability=0.05, model="umm-maybe/AI-image-detector"):
        self.probability = probability
        self.model = model
        self.fallback = False
        self.calls = 0

    async def score(self, image_bytes):
        self.calls += 1
        if self.fallback:
            return OracleScore(fake_probability=0.5, model_used="fail-safe", fallback=True)
        return OracleScore(fake_probability=self.probability, model_used=self.model)


class FlakyLedger(InMemoryLedger):
    """In-memory ledger whose writes can be switched off per key type."""

    def __init__(self):
        super().__init__()
        self.images_down = False
        self.certificates_down = False

    async def record_verified_image(self, content_hash, batch_id, stage_number):
        if self.images_down:
            raise LedgerUnavailableError("bridge refused connection")
        return await super().record_verified_image(content_hash, batch_id, stage_number)

    async def record_certificate(self, certificate):
        if self.certificates_down:
            raise LedgerUnavailableError("bridge refused connection")
        return await super().record_certificate(certificate)


def jpeg(tag: str, size: int = 60 * 1024) -> bytes:
    """JPEG-signed payload, unique per tag, large enough for full visual quality."""
    head = b"\xff\xd8\xff\xe0" + tag.encode()
    return head + b"\x11" * (size - len(head))


def auth_headers(user_id="rev-1", role="Reviewer") -> dict:
    return {"Authorization": f"Bearer {create_token({'id': user_id, 'role': role})}"}
