"""
Structural checks on raw upload bytes.

No decoding and no network calls: size bounds, declared type, magic-number
signature and a null-byte corruption heuristic. Anything subtler is left to
the authenticity oracle and, failing that, to a human reviewer.
"""
import logging
from typing import List, Optional

from app.config import MAX_IMAGE_SIZE, MIN_IMAGE_SIZE, SUPPORTED_MIME_TYPES
from app.models.provenance import ImageCheckResult

logger = logging.getLogger(__name__)

# hex prefixes of the first four bytes
MAGIC_SIGNATURES = {
    "ffd8ff": "JPEG",
    "89504e47": "PNG",
    "52494646": "WebP",  # RIFF container
}

NULL_BYTE_RATIO_LIMIT = 0.5

SMALL_FILE_PENALTY_BELOW = 50 * 1024
LARGE_FILE_PENALTY_ABOVE = 5 * 1024 * 1024


def validate_format(image_bytes: bytes, mime_type: Optional[str] = None) -> List[str]:
    issues = []
    size = len(image_bytes)

    if size > MAX_IMAGE_SIZE:
        issues.append(f"File too large: {size / 1024 / 1024:.2f}MB (max {MAX_IMAGE_SIZE // (1024 * 1024)}MB)")
    if size < MIN_IMAGE_SIZE:
        issues.append(f"File too small: {size / 1024:.2f}KB (min {MIN_IMAGE_SIZE // 1024}KB)")

    if mime_type and mime_type.lower() not in SUPPORTED_MIME_TYPES:
        issues.append(f"Unsupported format: {mime_type}. Allowed: JPEG, PNG, WebP")

    signature = image_bytes[:4].hex()
    if not any(signature.startswith(magic) for magic in MAGIC_SIGNATURES):
        issues.append("Invalid file signature - may be corrupted or not a real image")

    return issues


def check_integrity(image_bytes: bytes) -> List[str]:
    if not image_bytes:
        return ["Empty file"]

    issues = []
    null_ratio = image_bytes.count(0) / len(image_bytes)
    if null_ratio > NULL_BYTE_RATIO_LIMIT:
        issues.append(f"High ratio of null bytes ({null_ratio:.0%}) - possible corruption")
    return issues


def validate(image_bytes: bytes, mime_type: Optional[str] = None) -> ImageCheckResult:
    format_issues = validate_format(image_bytes, mime_type)
    integrity_issues = check_integrity(image_bytes)
    if format_issues or integrity_issues:
        logger.info("image checks failed: %s", "; ".join(format_issues + integrity_issues))
    return ImageCheckResult(
        format_valid=not format_issues,
        integrity_valid=not integrity_issues,
        format_issues=format_issues,
        integrity_issues=integrity_issues,
    )


def visual_quality_score(image_bytes: bytes) -> int:
    """
    File-size proxy for image quality, 0..100.

    Smaller (or truncated) payloads never score higher than larger ones up
    to the 5MB mark; a real quality metric can replace this as long as the
    range holds.
    """
    score = 100
    size = len(image_bytes)
    if size < SMALL_FILE_PENALTY_BELOW:
        score -= 30
    if size > LARGE_FILE_PENALTY_ABOVE:
        score -= 10
    return max(0, min(100, score))
