"""
Content safety checks for image payloads, OCR text sent to the AI service,
and values coming back from it.
"""

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

PAYLOAD_SCAN_BYTES = 1000

# Executable or script content smuggled into an image file
PAYLOAD_PATTERNS = [
    re.compile(r"<script[^>]*>", re.IGNORECASE),
    re.compile(r"<iframe[^>]*>", re.IGNORECASE),
    re.compile(r"javascript:\s*alert\s*\(", re.IGNORECASE),
    re.compile(r"<svg[^>]*onload", re.IGNORECASE),
    re.compile(r"<\?php", re.IGNORECASE),
    re.compile(r"\beval\s*\(", re.IGNORECASE),
    re.compile(r"\bshell_exec\b", re.IGNORECASE),
    re.compile(r"\bbase64_decode\b", re.IGNORECASE),
    re.compile(r"document\.cookie", re.IGNORECASE),
    re.compile(r"window\.location", re.IGNORECASE),
]

# Prompt/markup injection in recognized text
INJECTION_PATTERNS = [
    re.compile(r"<script[^>]*>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"<[^>]*?\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"<!DOCTYPE.*?>", re.IGNORECASE),
    re.compile(r"<\?xml", re.IGNORECASE),
    re.compile(r"DROP\s+TABLE", re.IGNORECASE),
    re.compile(r"UNION.*?SELECT", re.IGNORECASE | re.DOTALL),
]

_HTML_TAG = re.compile(r"<[^>]*>")
_JAVASCRIPT = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"(?:^|(?<=[\s<\"';]))on\w+\s*=", re.IGNORECASE)

SECRET_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"\bAIza[0-9A-Za-z_\-]{20,}"),
    re.compile(r"(bearer\s+)[\w\-.]+", re.IGNORECASE),
    re.compile(r"((?:api[_-]?key|key|token)\s*[:=]\s*)[\w\-]+", re.IGNORECASE),
]


def scan_payload(image_bytes: bytes, limit: int = PAYLOAD_SCAN_BYTES) -> Optional[str]:
    """
    Scan a bounded prefix of an image payload for embedded script content.

    Args:
        image_bytes: Raw image bytes
        limit: Number of leading bytes to inspect

    Returns:
        The matched pattern source, or None when the prefix looks clean
    """
    prefix = image_bytes[:limit].decode("latin-1")
    for pattern in PAYLOAD_PATTERNS:
        if pattern.search(prefix):
            logger.warning(f"Image payload matched unsafe pattern: {pattern.pattern}")
            return pattern.pattern
    return None


def find_injection(text: str) -> Optional[str]:
    """Return the first injection pattern found in text, if any."""
    for pattern in INJECTION_PATTERNS:
        if pattern.search(text):
            return pattern.pattern
    return None


def sanitize_field(value) -> Optional[str]:
    """
    Clean a single value returned by the AI service.

    Strips HTML tags, ``javascript:`` and inline event handlers. Empty
    results collapse to None.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(item) for item in value if item)
    text = str(value).strip()
    if not text:
        return None

    text = _HTML_TAG.sub("", text)
    text = _JAVASCRIPT.sub("", text)
    text = _EVENT_HANDLER.sub("", text)
    text = text.strip()

    return text or None


def mask_secrets(text: str) -> str:
    """Replace anything that looks like a credential with asterisks."""
    masked = text
    for pattern in SECRET_PATTERNS:
        if pattern.groups:
            masked = pattern.sub(lambda m: m.group(1) + "***", masked)
        else:
            masked = pattern.sub("***", masked)
    return masked
