"""
Authenticity oracle client.

Asks a hosted image classifier how likely an upload is AI-generated or
otherwise synthetic. A primary model is tried first and a secondary model
with the same label contract second. When both are unreachable the client
answers with a neutral score so the policy routes the image to a human
instead of approving or rejecting it blind.
"""
import asyncio
import logging
import math
import re
from typing import List, Optional

import httpx

from app.config import (
    HF_API_URL,
    HUGGINGFACE_API_TOKEN,
    ORACLE_FAIL_SAFE,
    ORACLE_FALLBACK_MODEL,
    ORACLE_NEUTRAL_SCORE,
    ORACLE_PRIMARY_MODEL,
    ORACLE_TIMEOUT,
)
from app.errors import OracleUnavailableError
from app.models.provenance import OracleScore
from utils.logging_config import audit_log

logger = logging.getLogger(__name__)

FAKE_LABEL_TOKENS = {"artificial", "ai", "fake", "deepfake", "synthetic", "generated"}
FAIL_SAFE_MODEL = "fail-safe"


class OracleCallError(Exception):
    """One model call produced no usable classification."""


def fake_probability(predictions: List[dict]) -> float:
    """
    Sum of the scores whose label names a synthetic/fake class, clamped to [0, 1].

    Raises OracleCallError when a score is missing, non-numeric or not finite.
    """
    total = 0.0
    for item in predictions:
        try:
            score = float(item.get("score"))
        except (TypeError, ValueError) as e:
            raise OracleCallError(f"unusable score {item.get('score')!r} for label {item.get('label')!r}") from e
        if not math.isfinite(score):
            raise OracleCallError(f"non-finite score for label {item.get('label')!r}")
        tokens = set(re.split(r"[^a-z]+", str(item.get("label", "")).lower()))
        if tokens & FAKE_LABEL_TOKENS:
            total += score
    return max(0.0, min(1.0, total))


class AuthenticityOracle:
    def __init__(
        self,
        api_url: str = HF_API_URL,
        api_token: Optional[str] = HUGGINGFACE_API_TOKEN,
        primary_model: str = ORACLE_PRIMARY_MODEL,
        fallback_model: Optional[str] = ORACLE_FALLBACK_MODEL,
        timeout: float = ORACLE_TIMEOUT,
        fail_safe: bool = ORACLE_FAIL_SAFE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.models = [m for m in (primary_model, fallback_model) if m]
        self.timeout = timeout
        self.fail_safe = fail_safe
        self.transport = transport

    async def _classify(self, model: str, image_bytes: bytes) -> List[dict]:
        headers = {"Content-Type": "application/octet-stream"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(f"{self.api_url}/{model}", headers=headers, content=image_bytes)

        if resp.status_code == 503:
            raise OracleCallError(f"{model} is loading")
        if resp.status_code != 200:
            raise OracleCallError(f"{model} returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            raise OracleCallError(f"{model} returned a non-JSON body") from e

        # some endpoints wrap the label list one level deeper
        if isinstance(body, list) and body and isinstance(body[0], list):
            body = body[0]
        if not isinstance(body, list) or not all(isinstance(item, dict) for item in body):
            raise OracleCallError(f"{model} returned an unexpected payload")
        return body

    async def score(self, image_bytes: bytes) -> OracleScore:
        failures = []
        for model in self.models:
            try:
                predictions = await asyncio.wait_for(self._classify(model, image_bytes), self.timeout)
                probability = fake_probability(predictions)
            except asyncio.TimeoutError:
                failures.append(f"{model}: timed out after {self.timeout}s")
                logger.warning("oracle model %s timed out", model)
                continue
            except (httpx.HTTPError, OracleCallError) as e:
                failures.append(f"{model}: {e}")
                logger.warning("oracle model %s failed: %s", model, e)
                continue

            logger.debug("oracle %s fake probability %.4f", model, probability)
            return OracleScore(fake_probability=probability, model_used=model)

        audit_log.oracle_fallback(failures=failures, fail_safe=self.fail_safe)
        if not self.fail_safe:
            raise OracleUnavailableError("; ".join(failures))
        return OracleScore(fake_probability=ORACLE_NEUTRAL_SCORE, model_used=FAIL_SAFE_MODEL, fallback=True)
