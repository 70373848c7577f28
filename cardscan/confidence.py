"""
Confidence heuristics shared by the recognition and quality-check stages.

Most OCR backends either expose no confidence at all or one that is not
comparable across engines, so element confidence is estimated from the
shape of the recognized text.
"""

import re
from typing import Iterable, List, Optional

NO_TEXT_CONFIDENCE = 0.1
BASE_CONFIDENCE = 0.8
MIN_ELEMENT_CONFIDENCE = 0.1
MAX_ELEMENT_CONFIDENCE = 1.0

SUSPICIOUS_CHARS = ("|", "\\", "/", "_", "~", "`")

_LETTER = re.compile(r"[A-Za-z\u4e00-\u9fff]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9\u4e00-\u9fff\s]")


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp a confidence into [low, high]."""
    return max(low, min(high, value))


def estimate_element_confidence(text: str) -> float:
    """
    Estimate how trustworthy one recognized text element is.

    Args:
        text: A single recognized element (usually a word)

    Returns:
        Confidence in [0.1, 1.0]
    """
    if not text:
        return MIN_ELEMENT_CONFIDENCE

    confidence = BASE_CONFIDENCE

    if len(text) >= 5:
        confidence += 0.1
    elif len(text) <= 2:
        confidence -= 0.2

    suspicious = sum(text.count(char) for char in SUSPICIOUS_CHARS)
    confidence -= suspicious * 0.1

    if _LETTER.search(text) and _DIGIT.search(text):
        confidence += 0.05

    return clamp(confidence, MIN_ELEMENT_CONFIDENCE, MAX_ELEMENT_CONFIDENCE)


def aggregate_confidence(element_confidences: Iterable[float]) -> float:
    """Mean of element confidences, or the no-text floor when there are none."""
    values = list(element_confidences)
    if not values:
        return NO_TEXT_CONFIDENCE
    return clamp(sum(values) / len(values))


def quality_warnings(raw_text: str, min_text_length: Optional[int] = None) -> List[str]:
    """
    Flag recognized text that looks like a poor scan.

    Args:
        raw_text: Full recognized text
        min_text_length: Optional minimum number of characters expected

    Returns:
        Human-readable warnings, empty when nothing looks wrong
    """
    warnings = []
    text = raw_text.strip()

    if min_text_length is not None and len(text) < min_text_length:
        warnings.append("Text quality may be poor: recognized text is too short")

    if not text:
        return warnings

    digits = len(_DIGIT.findall(text))
    if digits / len(text) > 0.7:
        warnings.append("Text quality may be poor: too many digit characters")

    specials = len(_SPECIAL.findall(text))
    if specials / len(text) > 0.3:
        warnings.append("Text quality may be poor: too many special characters")

    return warnings
