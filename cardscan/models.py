"""
Value objects passed between pipeline stages.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import InputValidationError

MAX_IMAGE_BYTES = 20 * 1024 * 1024


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class ContactSource(str, Enum):
    """Which stage produced the final contact."""
    AI = "ai"
    LOCAL = "local"
    MANUAL = "manual"


@dataclass(frozen=True)
class DetectedLine:
    text: str
    bounding_box: Tuple[Tuple[float, float], ...] = ()
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "bounding_box": [list(point) for point in self.bounding_box],
            "confidence": round(self.confidence, 4),
        }


@dataclass(frozen=True)
class RecognitionResult:
    """What an OCR engine saw in one image.

    Never mutated after creation. A user edit of the text produces a new
    result with a new id so the engine output stays auditable.
    """
    raw_text: str
    confidence: float
    engine_id: str
    detected_lines: Tuple[DetectedLine, ...] = ()
    image_width: int = 0
    image_height: int = 0
    engine_version: str = ""
    processing_time_ms: int = 0
    processed_at: datetime = field(default_factory=datetime.utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        object.__setattr__(self, "confidence", _clamp(float(self.confidence)))
        object.__setattr__(self, "processing_time_ms", max(0, int(self.processing_time_ms)))
        object.__setattr__(self, "detected_lines", tuple(self.detected_lines))

    def with_edited_text(self, text: str) -> "RecognitionResult":
        """Return a copy carrying user-corrected text."""
        return replace(self, raw_text=text, id=uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "raw_text": self.raw_text,
            "detected_lines": [line.to_dict() for line in self.detected_lines],
            "confidence": round(self.confidence, 4),
            "image_width": self.image_width,
            "image_height": self.image_height,
            "engine_id": self.engine_id,
            "engine_version": self.engine_version,
            "processed_at": self.processed_at.isoformat(),
            "processing_time_ms": self.processing_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecognitionResult":
        lines = tuple(
            DetectedLine(
                text=line["text"],
                bounding_box=tuple(tuple(point) for point in line.get("bounding_box", [])),
                confidence=line.get("confidence", 0.0),
            )
            for line in data.get("detected_lines", [])
        )
        return cls(
            id=data["id"],
            raw_text=data["raw_text"],
            detected_lines=lines,
            confidence=data["confidence"],
            image_width=data.get("image_width", 0),
            image_height=data.get("image_height", 0),
            engine_id=data["engine_id"],
            engine_version=data.get("engine_version", ""),
            processed_at=datetime.fromisoformat(data["processed_at"]),
            processing_time_ms=data.get("processing_time_ms", 0),
        )


CONTACT_FIELDS = (
    "name", "company", "job_title", "phone", "mobile",
    "email", "address", "website", "notes",
)


@dataclass
class ExtractedContact:
    """Structured contact data parsed from recognized text."""
    source: ContactSource
    name: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    notes: Optional[str] = None
    confidence: float = 0.0
    parsed_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        self.confidence = _clamp(float(self.confidence))

    @classmethod
    def manual(cls) -> "ExtractedContact":
        """Empty placeholder the user fills in by hand."""
        return cls(source=ContactSource.MANUAL, confidence=0.0)

    def filled_fields(self) -> List[str]:
        return [name for name in CONTACT_FIELDS if getattr(self, name)]

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in CONTACT_FIELDS}
        data.update({
            "confidence": round(self.confidence, 2),
            "source": self.source.value,
            "parsed_at": self.parsed_at.isoformat(),
        })
        return data


@dataclass(frozen=True)
class EngineHealth:
    engine_id: str
    is_healthy: bool
    last_error: Optional[str] = None
    response_time_ms: int = 0
    checked_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine_id": self.engine_id,
            "is_healthy": self.is_healthy,
            "last_error": self.last_error,
            "response_time_ms": self.response_time_ms,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass(frozen=True)
class EngineInfo:
    id: str
    name: str
    version: str
    supported_languages: Tuple[str, ...] = ()
    is_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "supported_languages": list(self.supported_languages),
            "is_available": self.is_available,
        }


@dataclass
class ProcessingOptions:
    """Per-job knobs for preprocessing, recognition and acceptance.

    Attributes:
        min_dimension: Smallest allowed output side in pixels
        max_dimension: Largest allowed output side in pixels
        target_width: Width of the box the image is fitted into
        target_height: Height of the box the image is fitted into
        contrast: -100..100, mapped to a multiplicative factor
        brightness: -100..100, mapped to an additive offset
        confidence_threshold: Below this a low-confidence warning is attached
        timeout_ms: Hard deadline for one recognition call
        max_image_bytes: Largest accepted input payload
    """
    min_dimension: int = 32
    max_dimension: int = 4000
    target_width: Optional[int] = 2000
    target_height: Optional[int] = 2000
    grayscale: bool = True
    contrast: int = 10
    brightness: int = 5
    denoise: bool = True
    sharpen: bool = True
    enable_preprocessing: bool = True
    confidence_threshold: float = 0.7
    timeout_ms: int = 30000
    max_image_bytes: int = MAX_IMAGE_BYTES
    min_text_length: Optional[int] = None
    validate_quality: bool = True
    save_result: bool = False
    use_cache: bool = True

    def validate(self) -> "ProcessingOptions":
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise InputValidationError(
                f"confidence_threshold must be within [0, 1], got {self.confidence_threshold}",
                field="confidence_threshold",
                user_message="Confidence threshold must be between 0.0 and 1.0",
            )
        for name in ("contrast", "brightness"):
            value = getattr(self, name)
            if not -100 <= value <= 100:
                raise InputValidationError(
                    f"{name} must be within [-100, 100], got {value}",
                    field=name,
                    user_message=f"{name.capitalize()} must be between -100 and 100",
                )
        if self.timeout_ms < 1000:
            raise InputValidationError(
                f"timeout_ms must be at least 1000, got {self.timeout_ms}",
                field="timeout_ms",
                user_message="Processing timeout cannot be less than 1 second",
            )
        if self.min_dimension <= 0 or self.min_dimension > self.max_dimension:
            raise InputValidationError(
                f"invalid dimension bounds {self.min_dimension}..{self.max_dimension}",
                field="min_dimension",
            )
        if self.max_image_bytes <= 0:
            raise InputValidationError("max_image_bytes must be positive", field="max_image_bytes")
        return self


@dataclass(frozen=True)
class ParseHints:
    language: Optional[str] = None
    country: Optional[str] = None
    card_type: Optional[str] = None
    industry: Optional[str] = None


@dataclass
class ServiceStatus:
    available: bool
    quota_remaining: Optional[int] = None
    quota_reset_at: Optional[datetime] = None
    response_time_ms: int = 0
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "quota_remaining": self.quota_remaining,
            "quota_reset_at": self.quota_reset_at.isoformat() if self.quota_reset_at else None,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class BatchFailure:
    index: int
    error: Exception
    original_input: Any = None

    def to_dict(self) -> Dict[str, Any]:
        message = getattr(self.error, "user_message", None) or str(self.error)
        return {
            "index": self.index,
            "error": message,
            "error_type": type(self.error).__name__,
        }


@dataclass
class ExtractBatchResult:
    successful: List[ExtractedContact] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)
