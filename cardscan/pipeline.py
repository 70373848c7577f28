"""
Business Card Extraction Pipeline
Image validation, OCR, AI-assisted parsing and local fallback for one card or a batch

FALLBACK ORDER:
1. AI extraction when a key is configured and the service answers its status probe
2. Local pattern parsing when AI is unavailable or fails
3. An empty manual contact when the local result is too weak to trust
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .cache import InMemoryHistoryStore
from .confidence import quality_warnings
from .exceptions import CardScanError, InputValidationError, PipelineError, SecurityRejected
from .extractor import StructuredExtractor
from .models import BatchFailure, ExtractedContact, ParseHints, ProcessingOptions, RecognitionResult, ServiceStatus
from .ocr import TextRecognitionEngine
from .parser import LocalPatternExtractor
from .security import find_injection

logger = logging.getLogger(__name__)

LOCAL_MIN_CONFIDENCE = 0.3
DEFAULT_BATCH_CONCURRENCY = 3
STATUS_TTL_SECONDS = 30


class JobState(str, Enum):
    IDLE = "idle"
    PREPROCESSING = "preprocessing"
    RECOGNIZING = "recognizing"
    RECOGNIZED = "recognized"
    EXTRACTING = "extracting"
    DONE = "done"
    ERROR = "error"


TRANSITIONS = {
    JobState.IDLE: {JobState.PREPROCESSING, JobState.EXTRACTING, JobState.ERROR},
    JobState.PREPROCESSING: {JobState.RECOGNIZING, JobState.ERROR},
    JobState.RECOGNIZING: {JobState.RECOGNIZED, JobState.ERROR},
    JobState.RECOGNIZED: {JobState.EXTRACTING, JobState.ERROR},
    JobState.EXTRACTING: {JobState.DONE, JobState.ERROR},
    JobState.DONE: set(),
    JobState.ERROR: set(),
}


class ProcessingJob:
    """State of one card moving through the pipeline."""

    def __init__(self):
        self.id = uuid.uuid4().hex
        self.state = JobState.IDLE
        self.history: List[JobState] = [JobState.IDLE]

    def advance(self, new_state: JobState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise PipelineError(
                f"Invalid job transition {self.state.value} -> {new_state.value}",
                stage=self.state.value,
            )
        logger.debug(f"Job {self.id[:8]}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def fail(self) -> None:
        if self.state not in (JobState.DONE, JobState.ERROR):
            self.advance(JobState.ERROR)


@dataclass
class ProcessingMetrics:
    total_ms: int = 0
    preprocessing_ms: int = 0
    recognition_ms: int = 0
    extraction_ms: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_ms": self.total_ms,
            "preprocessing_ms": self.preprocessing_ms,
            "recognition_ms": self.recognition_ms,
            "extraction_ms": self.extraction_ms,
        }


@dataclass
class ExtractionOutcome:
    """Everything produced for one card."""
    contact: ExtractedContact
    state: JobState
    recognition: Optional[RecognitionResult] = None
    warnings: List[str] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    ai_error: Optional[CardScanError] = None
    metrics: ProcessingMetrics = field(default_factory=ProcessingMetrics)
    job_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "contact": self.contact.to_dict(),
            "recognition": self.recognition.to_dict() if self.recognition else None,
            "warnings": list(self.warnings),
            "steps": list(self.steps),
            "ai_error": self.ai_error.to_dict() if self.ai_error else None,
            "metrics": self.metrics.to_dict(),
        }


@dataclass
class BatchOutcome:
    successful: List[Tuple[int, ExtractionOutcome]] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": len(self.successful) + len(self.failed),
            "successful": len(self.successful),
            "failed": len(self.failed),
            "results": [dict(outcome.to_dict(), index=index) for index, outcome in self.successful],
            "errors": [failure.to_dict() for failure in self.failed],
        }


def _ms_since(start: float) -> int:
    return int((time.time() - start) * 1000)


class ExtractionOrchestrator:
    """Complete pipeline for processing business cards.

    Decides per card whether the AI extractor, the local parser or a manual
    placeholder produces the final contact.
    """

    def __init__(
        self,
        engine: TextRecognitionEngine,
        extractor: Optional[StructuredExtractor] = None,
        local_extractor: Optional[LocalPatternExtractor] = None,
        history: Optional[InMemoryHistoryStore] = None,
        local_min_confidence: float = LOCAL_MIN_CONFIDENCE,
        batch_concurrency: int = DEFAULT_BATCH_CONCURRENCY,
        default_options: Optional[ProcessingOptions] = None,
        status_ttl: float = STATUS_TTL_SECONDS
    ):
        self.engine = engine
        self.extractor = extractor
        self.local_extractor = local_extractor or LocalPatternExtractor()
        self.history_store = history
        self.local_min_confidence = local_min_confidence
        self.batch_concurrency = max(1, batch_concurrency)
        self.default_options = default_options or ProcessingOptions()
        self.status_ttl = status_ttl

        self._status: Optional[ServiceStatus] = None
        self._status_at = 0.0
        self._status_lock = threading.Lock()

        logger.info(
            f"ExtractionOrchestrator initialized (engine={engine.current_engine().id}, "
            f"ai={extractor.provider if extractor else None})"
        )

    # ======================================================
    # SINGLE IMAGE
    # ======================================================

    def process_image(
        self,
        image_bytes: bytes,
        options: Optional[ProcessingOptions] = None,
        hints: Optional[ParseHints] = None
    ) -> ExtractionOutcome:
        """
        Process a business card image.

        Args:
            image_bytes: JPEG or PNG bytes
            options: Processing options (defaults from configuration)
            hints: Optional language/region hints for AI extraction

        Returns:
            ExtractionOutcome

        Raises:
            InputValidationError: Bad options or image
            SecurityRejected: Unsafe image or text content
            RecognitionUnavailable: OCR timed out or crashed
            PipelineError: Anything unexpected
        """
        options = (options or self.default_options).validate()
        job = ProcessingJob()
        metrics = ProcessingMetrics()
        start = time.time()

        try:
            job.advance(JobState.PREPROCESSING)
            self.engine.validate(image_bytes, options)

            job.advance(JobState.RECOGNIZING)
            timings: Dict[str, int] = {}
            recognition = self.engine.recognize(image_bytes, options, timings)
            metrics.preprocessing_ms = timings.get("preprocessing_ms", 0)
            metrics.recognition_ms = timings.get("recognition_ms", 0)
            job.advance(JobState.RECOGNIZED)

            warnings = self._quality_check(recognition, options)

            job.advance(JobState.EXTRACTING)
            extraction_start = time.time()
            steps = ["preprocessing" if options.enable_preprocessing else "preprocessing_skipped", "recognition"]
            contact, ai_error = self._extract_contact(recognition.raw_text, hints, steps, warnings)
            metrics.extraction_ms = _ms_since(extraction_start)

            if options.save_result and self.history_store is not None:
                self.history_store.save(recognition)
                steps.append("saved")

            job.advance(JobState.DONE)
        except CardScanError:
            job.fail()
            raise
        except Exception as e:
            stage = job.state.value
            job.fail()
            logger.exception("Pipeline error")
            raise PipelineError(f"Unexpected failure during {stage}", stage=stage, original_error=e) from e

        metrics.total_ms = _ms_since(start)
        logger.info(f"Total processing time: {metrics.total_ms}ms ({contact.source.value})")

        return ExtractionOutcome(
            contact=contact,
            state=job.state,
            recognition=recognition,
            warnings=warnings,
            steps=steps,
            ai_error=ai_error,
            metrics=metrics,
            job_id=job.id,
        )

    def process_text(self, raw_text: str, hints: Optional[ParseHints] = None) -> ExtractionOutcome:
        """Run the extraction steps on text the caller already has."""
        if raw_text is None or not raw_text.strip():
            raise InputValidationError("card text is empty", field="text", user_message="Text to parse is empty")

        job = ProcessingJob()
        metrics = ProcessingMetrics()
        start = time.time()
        warnings: List[str] = []
        steps: List[str] = []

        try:
            job.advance(JobState.EXTRACTING)
            contact, ai_error = self._extract_contact(raw_text, hints, steps, warnings)
            job.advance(JobState.DONE)
        except CardScanError:
            job.fail()
            raise
        except Exception as e:
            job.fail()
            logger.exception("Pipeline error")
            raise PipelineError("Unexpected failure during extraction", stage="extracting", original_error=e) from e

        metrics.extraction_ms = metrics.total_ms = _ms_since(start)
        return ExtractionOutcome(
            contact=contact,
            state=job.state,
            warnings=warnings,
            steps=steps,
            ai_error=ai_error,
            metrics=metrics,
            job_id=job.id,
        )

    # ======================================================
    # DECISIONS
    # ======================================================

    def _quality_check(self, recognition: RecognitionResult, options: ProcessingOptions) -> List[str]:
        warnings = []
        if recognition.confidence < options.confidence_threshold:
            warnings.append(
                f"Low recognition confidence ({recognition.confidence:.0%} < "
                f"{options.confidence_threshold:.0%})"
            )
        if options.validate_quality:
            warnings.extend(quality_warnings(recognition.raw_text, options.min_text_length))
        for warning in warnings:
            logger.info(warning)
        return warnings

    def ai_available(self) -> bool:
        """True when a key is configured and the service answers its status probe."""
        if self.extractor is None or not self.extractor.is_configured():
            return False
        return self.ai_status().available

    def ai_status(self) -> ServiceStatus:
        if self.extractor is None:
            return ServiceStatus(available=False, error="AI extraction disabled")

        with self._status_lock:
            fresh = self._status is not None and time.time() - self._status_at < self.status_ttl
            if not fresh:
                try:
                    self._status = self.extractor.service_status()
                except Exception as e:
                    logger.warning(f"AI status probe failed: {e}")
                    self._status = ServiceStatus(available=False, error=str(e))
                self._status_at = time.time()
            return self._status

    def _extract_contact(
        self,
        raw_text: str,
        hints: Optional[ParseHints],
        steps: List[str],
        warnings: List[str]
    ) -> Tuple[ExtractedContact, Optional[CardScanError]]:
        matched = find_injection(raw_text)
        if matched:
            raise SecurityRejected(f"card text matched injection pattern {matched}", stage="extraction")

        ai_error = None
        if self.ai_available():
            try:
                contact = self.extractor.extract(raw_text, hints)
                steps.append("ai_extraction")
                return contact, None
            except SecurityRejected:
                raise
            except CardScanError as e:
                logger.warning(f"AI extraction failed, using local parser: {e}")
                ai_error = e
            except Exception as e:
                logger.exception("AI extraction crashed, using local parser")
                ai_error = PipelineError("AI extraction crashed", stage="extraction", original_error=e)
            warnings.append(f"AI extraction failed: {ai_error.user_message}")
            steps.append("ai_failed")
        else:
            steps.append("ai_skipped")

        local = self.local_extractor.extract(raw_text)
        steps.append("local_extraction")

        if local.confidence > self.local_min_confidence and (local.name or local.company):
            return local, ai_error

        logger.info(f"Local result too weak ({local.confidence:.2f}), returning manual placeholder")
        warnings.append("Could not extract contact details automatically, please enter them manually")
        steps.append("manual")
        return ExtractedContact.manual(), ai_error

    # ======================================================
    # BATCH
    # ======================================================

    def process_batch(
        self,
        images: List[bytes],
        options: Optional[ProcessingOptions] = None,
        hints: Optional[ParseHints] = None,
        concurrency: Optional[int] = None
    ) -> BatchOutcome:
        """
        Process several images with bounded concurrency.

        Per-item failures are collected, never raised.
        """
        workers = max(1, concurrency or self.batch_concurrency)
        outcome = BatchOutcome()

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="card") as executor:
            futures = [
                (index, image, executor.submit(self.process_image, image, options, hints))
                for index, image in enumerate(images)
            ]
            for index, image, future in futures:
                try:
                    outcome.successful.append((index, future.result()))
                except CardScanError as e:
                    logger.warning(f"Batch item {index} failed: {e.message}")
                    outcome.failed.append(BatchFailure(index=index, error=e, original_input=image))
                except Exception as e:
                    logger.exception(f"Batch item {index} crashed")
                    wrapped = PipelineError("Unexpected batch failure", stage="batch", original_error=e)
                    outcome.failed.append(BatchFailure(index=index, error=wrapped, original_input=image))

        logger.info(f"Batch complete: {len(outcome.successful)} succeeded, {len(outcome.failed)} failed")
        return outcome

    # ======================================================
    # STATUS / HISTORY
    # ======================================================

    def get_status(self) -> Dict[str, Any]:
        """Get pipeline status information."""
        status = {
            "ocr_engine": self.engine.current_engine().to_dict(),
            "engines": [info.to_dict() for info in self.engine.list_engines()],
            "ai_provider": self.extractor.provider if self.extractor else None,
            "ai_configured": bool(self.extractor and self.extractor.is_configured()),
            "ai_service": self.ai_status().to_dict(),
            "local_min_confidence": self.local_min_confidence,
            "batch_concurrency": self.batch_concurrency,
            "recognition": self.engine.statistics(),
        }
        if self.history_store is not None:
            status["history"] = self.history_store.statistics()
        return status

    def engine_health(self, probe: bool = False) -> Dict[str, Any]:
        """Latest health per engine, optionally probing each one first."""
        if probe:
            for info in self.engine.list_engines():
                self.engine.health_check(info.id)
        snapshot = self.engine.health.snapshot()
        return {
            info.id: (snapshot[info.id].to_dict() if info.id in snapshot else None)
            for info in self.engine.list_engines()
        }

    def _require_history(self) -> InMemoryHistoryStore:
        if self.history_store is None:
            raise InputValidationError("history is disabled", user_message="Result history is not enabled")
        return self.history_store

    def history(self, limit: Optional[int] = None) -> List[RecognitionResult]:
        return self._require_history().list(limit)

    def get_result(self, result_id: str) -> Optional[RecognitionResult]:
        return self._require_history().get(result_id)

    def delete_result(self, result_id: str) -> bool:
        return self._require_history().delete(result_id)

    def cleanup_old_results(self, days: int = 30) -> int:
        return self._require_history().purge_older_than(days)
