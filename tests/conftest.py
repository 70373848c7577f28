"""
Shared fixtures: encoded card images and a scriptable OCR backend.
"""

import time

import cv2
import numpy as np
import pytest

from cardscan.models import EngineInfo
from cardscan.ocr import OCRBackend


def encode_image(ext: str = ".jpg", width: int = 400, height: int = 200, label: str = "John Doe") -> bytes:
    """Encode a white card with one line of black text."""
    img = np.full((height, width, 3), 255, dtype=np.uint8)
    cv2.putText(img, label, (20, height // 2), cv2.FONT_HERSHEY_SIMPLEX, 1.2, (0, 0, 0), 2)
    ok, encoded = cv2.imencode(ext, img)
    assert ok
    return encoded.tobytes()


def text_lines(*texts, confidence=None):
    """Backend output for the given texts, one line each, top to bottom."""
    return [
        (((0, i * 20), (100, i * 20), (100, i * 20 + 15), (0, i * 20 + 15)), text, confidence)
        for i, text in enumerate(texts)
    ]


class FakeBackend(OCRBackend):
    """OCR backend returning canned lines, optionally slow or broken."""

    def __init__(self, engine_id="fake", lines=None, error=None, delay=0.0, available=True):
        self.engine_id = engine_id
        self.lines = lines if lines is not None else []
        self.error = error
        self.delay = delay
        self.available = available
        self.calls = 0

    @property
    def info(self) -> EngineInfo:
        return EngineInfo(
            id=self.engine_id,
            name=f"Fake {self.engine_id}",
            version="test",
            supported_languages=("en",),
            is_available=self.available,
        )

    def read_lines(self, image_bytes):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.lines)


@pytest.fixture
def jpeg_bytes():
    """A small JPEG business card."""
    return encode_image(".jpg")


@pytest.fixture
def png_bytes():
    """A small PNG business card."""
    return encode_image(".png")
