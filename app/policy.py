"""
Validation policy engine.

Combines the structural checks, the authenticity oracle and the quality
heuristic into exactly one routing action. Rules are evaluated in order and
the first match wins:

    1. format or integrity failure          -> AUTO_REJECT
    2. authenticity score  > FAKE_AUTO_REJECT  -> AUTO_REJECT
    3. authenticity score  < FAKE_AUTO_APPROVE
       and visual quality  > VISUAL_QUALITY_HIGH -> AUTO_APPROVE
    4. anything else                        -> FLAG_FOR_HUMAN

All comparisons are strict.
"""
import logging
from typing import Optional, Tuple

from app import image_checks
from app.config import FAKE_AUTO_APPROVE, FAKE_AUTO_REJECT, VISUAL_QUALITY_HIGH, VISUAL_QUALITY_LOW
from app.fingerprint import fingerprint
from app.models.provenance import ImageCheckResult, OracleScore, ValidationAction, ValidationResult

logger = logging.getLogger(__name__)

SKIPPED_SCORING_ISSUE = "Skipped authenticity scoring due to format/integrity issues"


def decide(
    checks: ImageCheckResult,
    authenticity_score: float,
    visual_quality_score: int,
    content_hash: str = "",
    model_used: Optional[str] = None,
    file_size: int = 0,
) -> ValidationResult:
    issues = list(checks.issues)
    fake_pct = authenticity_score * 100

    if not checks.format_valid or not checks.integrity_valid:
        issues.append(SKIPPED_SCORING_ISSUE)
        action = ValidationAction.AUTO_REJECT
        reason = f"Failed basic validation: {', '.join(checks.issues)}"
    elif authenticity_score > FAKE_AUTO_REJECT:
        issues.append(f"AI-generated/fake image detected with {fake_pct:.1f}% confidence")
        action = ValidationAction.AUTO_REJECT
        reason = f"Likely synthetic/fake image, confidence {fake_pct:.1f}%"
    elif authenticity_score < FAKE_AUTO_APPROVE and visual_quality_score > VISUAL_QUALITY_HIGH:
        action = ValidationAction.AUTO_APPROVE
        reason = f"All checks passed: fake image score {fake_pct:.1f}%, visual quality {visual_quality_score}/100"
    else:
        action = ValidationAction.FLAG_FOR_HUMAN
        reason = (
            f"Uncertain results - requires human review: fake image score {fake_pct:.1f}%, "
            f"visual quality {visual_quality_score}/100"
        )

    if visual_quality_score < VISUAL_QUALITY_LOW:
        issues.append(f"Low visual quality score: {visual_quality_score}/100")

    return ValidationResult(
        format_valid=checks.format_valid,
        integrity_valid=checks.integrity_valid,
        content_hash=content_hash,
        authenticity_score=authenticity_score,
        visual_quality_score=visual_quality_score,
        action=action,
        reason=reason,
        requires_human_review=action == ValidationAction.FLAG_FOR_HUMAN,
        issues=issues,
        model_used=model_used,
        file_size=file_size,
    )


class ValidationPolicyEngine:
    """Runs the leaf checks for one upload and routes it."""

    def __init__(self, oracle):
        self.oracle = oracle

    async def evaluate(self, image_bytes: bytes, mime_type: Optional[str] = None) -> Tuple[ValidationResult, Optional[OracleScore]]:
        content_hash = fingerprint(image_bytes)
        checks = image_checks.validate(image_bytes, mime_type)
        quality = image_checks.visual_quality_score(image_bytes)

        oracle_score = None
        authenticity = 0.0
        if checks.format_valid and checks.integrity_valid:
            oracle_score = await self.oracle.score(image_bytes)
            authenticity = oracle_score.fake_probability
        else:
            logger.info("skipping authenticity scoring for %s", content_hash[:12])

        result = decide(
            checks,
            authenticity,
            quality,
            content_hash=content_hash,
            model_used=oracle_score.model_used if oracle_score else None,
            file_size=len(image_bytes),
        )
        return result, oracle_score
