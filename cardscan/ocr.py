"""
Text recognition: pluggable OCR backends behind a single engine facade.
"""

import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .cache import ResultCache, fingerprint
from .confidence import aggregate_confidence, clamp, estimate_element_confidence
from .exceptions import CardScanError, InputValidationError, RecognitionUnavailable, SecurityRejected
from .health import EngineHealthRegistry
from .models import DetectedLine, EngineHealth, EngineInfo, ProcessingOptions, RecognitionResult
from .preprocessing import ImagePreprocessor
from .security import scan_payload

logger = logging.getLogger(__name__)

# (bounding box, text, native confidence or None)
RawLine = Tuple[Sequence, str, Optional[float]]

PROBE_TIMEOUT_MS = 30000


class OCRBackend(ABC):
    """A single OCR implementation."""

    @property
    @abstractmethod
    def info(self) -> EngineInfo:
        """Describe this backend."""

    @abstractmethod
    def read_lines(self, image_bytes: bytes) -> List[RawLine]:
        """
        Recognize text lines in an encoded image.

        Args:
            image_bytes: PNG or JPEG bytes

        Returns:
            Lines ordered top to bottom. Confidence is None when the backend
            has no native score for the line.
        """


class EasyOCRBackend(OCRBackend):
    """OCR backend built on an EasyOCR reader."""

    VERSION = "1"

    def __init__(
        self,
        languages: List[str] = None,
        gpu: bool = False,
        model_dir: Optional[str] = None,
        min_confidence: float = 0.15
    ):
        """
        Args:
            languages: EasyOCR language codes
            gpu: Use GPU for OCR
            model_dir: Directory for model storage
            min_confidence: Lines below this native confidence are dropped
        """
        self.languages = languages or ["en"]
        self.gpu = gpu
        self.model_dir = model_dir
        self.min_confidence = min_confidence
        self._reader = None
        self._reader_lock = threading.Lock()

    @property
    def info(self) -> EngineInfo:
        return EngineInfo(
            id="easyocr",
            name="EasyOCR",
            version=self.VERSION,
            supported_languages=tuple(self.languages),
            is_available=True,
        )

    @property
    def reader(self):
        """EasyOCR reader, created on first use."""
        with self._reader_lock:
            if self._reader is None:
                import easyocr

                logger.info(f"Initializing EasyOCR with languages: {self.languages}")
                kwargs = {"gpu": self.gpu, "verbose": False}
                if self.model_dir:
                    kwargs["model_storage_directory"] = self.model_dir
                self._reader = easyocr.Reader(self.languages, **kwargs)
                logger.info("EasyOCR initialized successfully")
            return self._reader

    @staticmethod
    def correct_text(text: str) -> str:
        """Fix the l/1 and o/0 confusions EasyOCR makes inside words."""
        text = re.sub(r"([a-zA-Z])1([a-zA-Z])", r"\1l\2", text)
        text = re.sub(r"([a-zA-Z])11([a-zA-Z])", r"\1ll\2", text)
        text = re.sub(r"([a-zA-Z])0([a-zA-Z])", r"\1o\2", text)
        text = re.sub(r"\.c[o0]m\b", ".com", text, flags=re.IGNORECASE)
        return " ".join(text.split())

    def read_lines(self, image_bytes: bytes) -> List[RawLine]:
        img = cv2.imdecode(np.frombuffer(image_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
        if img is None:
            raise ValueError("Could not decode image for OCR")

        results = self.reader.readtext(img, detail=1, paragraph=False)

        # Top to bottom by the top-left corner
        results = sorted(results, key=lambda r: r[0][0][1])

        lines = []
        for bbox, text, confidence in results:
            text = self.correct_text(text.strip())
            if not text or confidence < self.min_confidence:
                continue
            box = tuple((float(x), float(y)) for x, y in bbox)
            lines.append((box, text, float(confidence)))
        return lines


def blank_probe_image(width: int = 200, height: int = 100) -> bytes:
    """White PNG used to probe backend health."""
    ok, encoded = cv2.imencode(".png", np.full((height, width), 255, dtype=np.uint8))
    if not ok:
        raise RuntimeError("failed to encode probe image")
    return encoded.tobytes()


def build_lines(raw_lines: List[RawLine]) -> Tuple[Tuple[DetectedLine, ...], float]:
    """
    Turn backend output into DetectedLines and the overall confidence.

    Elements are the whitespace tokens of each line. Lines with a native
    confidence contribute it once per token; other tokens are scored with
    the text heuristic.
    """
    lines = []
    elements: List[float] = []

    for bbox, text, native in raw_lines:
        tokens = text.split()
        if not tokens:
            continue

        if native is not None:
            line_confidence = clamp(float(native))
            elements.extend([line_confidence] * len(tokens))
        else:
            scores = [estimate_element_confidence(token) for token in tokens]
            line_confidence = sum(scores) / len(scores)
            elements.extend(scores)

        lines.append(DetectedLine(text=text, bounding_box=tuple(bbox or ()), confidence=line_confidence))

    return tuple(lines), aggregate_confidence(elements)


class TextRecognitionEngine:
    """
    Validates images, runs the selected OCR backend under a deadline, and
    keeps engine health and the result cache up to date.
    """

    def __init__(
        self,
        backends: List[OCRBackend],
        default_engine: Optional[str] = None,
        cache: Optional[ResultCache] = None,
        health: Optional[EngineHealthRegistry] = None,
        preprocessor: Optional[ImagePreprocessor] = None
    ):
        if not backends:
            raise ValueError("At least one OCR backend is required")

        self._backends: Dict[str, OCRBackend] = {}
        for backend in backends:
            self._backends[backend.info.id] = backend

        self._selected = default_engine or backends[0].info.id
        if self._selected not in self._backends:
            raise InputValidationError(f"Unknown OCR engine: {self._selected}", field="engine")

        self.cache = cache
        self.health = health or EngineHealthRegistry()
        self.preprocessor = preprocessor or ImagePreprocessor()

        self._stats_lock = threading.Lock()
        self._stats = {
            "recognitions": 0,
            "failures": 0,
            "cache_hits": 0,
            "fallbacks": 0,
            "total_time_ms": 0,
        }

        logger.info(f"TextRecognitionEngine initialized with engines: {list(self._backends)}")

    # ======================================================
    # ENGINE REGISTRY
    # ======================================================

    def list_engines(self) -> List[EngineInfo]:
        return [backend.info for backend in self._backends.values()]

    def select_engine(self, engine_id: str) -> EngineInfo:
        if engine_id not in self._backends:
            raise InputValidationError(
                f"Unknown OCR engine: {engine_id}",
                field="engine",
                user_message=f"OCR engine '{engine_id}' is not available",
            )
        self._selected = engine_id
        logger.info(f"Selected OCR engine: {engine_id}")
        return self._backends[engine_id].info

    def current_engine(self) -> EngineInfo:
        return self._backends[self._selected].info

    # ======================================================
    # VALIDATION / PREPROCESSING
    # ======================================================

    def validate(self, image_bytes: bytes, options: Optional[ProcessingOptions] = None) -> str:
        """Format and size checks followed by the payload content scan."""
        options = options or ProcessingOptions()
        image_format = self.preprocessor.validate(image_bytes, options)

        matched = scan_payload(image_bytes)
        if matched:
            raise SecurityRejected(f"Image payload matched unsafe pattern {matched}", stage="validation")
        return image_format

    def preprocess(self, image_bytes: bytes, options: Optional[ProcessingOptions] = None) -> bytes:
        options = options or ProcessingOptions()
        self.validate(image_bytes, options)
        return self.preprocessor.preprocess(image_bytes, options)

    # ======================================================
    # RECOGNITION
    # ======================================================

    def recognize(
        self,
        image_bytes: bytes,
        options: Optional[ProcessingOptions] = None,
        timings: Optional[Dict[str, int]] = None
    ) -> RecognitionResult:
        """
        Recognize the text on a card image.

        Args:
            image_bytes: Original JPEG or PNG bytes
            options: Processing options
            timings: Optional dict filled with preprocessing_ms/recognition_ms

        Returns:
            RecognitionResult

        Raises:
            InputValidationError: Empty, oversize or non JPEG/PNG payload
            SecurityRejected: Unsafe content in the payload
            RecognitionUnavailable: Every tried backend timed out or failed
        """
        options = options or ProcessingOptions()
        timings = timings if timings is not None else {}

        self.validate(image_bytes, options)

        key = self._cache_key(image_bytes, options)
        if options.use_cache:
            cached = self._cache_get(key)
            if cached is not None:
                with self._stats_lock:
                    self._stats["cache_hits"] += 1
                logger.info(f"Using cached recognition result {cached.id}")
                timings.setdefault("preprocessing_ms", 0)
                timings.setdefault("recognition_ms", 0)
                return cached

        start = time.time()
        if options.enable_preprocessing:
            processed = self.preprocessor.preprocess(image_bytes, options)
        else:
            processed = image_bytes
        timings["preprocessing_ms"] = int((time.time() - start) * 1000)

        start = time.time()
        try:
            result = self._recognize_with_fallback(processed, options)
        finally:
            timings["recognition_ms"] = int((time.time() - start) * 1000)

        if options.use_cache:
            self._cache_put(key, result)

        return result

    def _recognize_with_fallback(self, image_bytes: bytes, options: ProcessingOptions) -> RecognitionResult:
        primary = self._selected
        try:
            return self._run_backend(primary, image_bytes, options)
        except RecognitionUnavailable as e:
            fallback = self._next_engine(primary)
            if fallback is None:
                raise
            logger.warning(f"Engine {primary} unavailable ({e.message}), falling back to {fallback}")
            with self._stats_lock:
                self._stats["fallbacks"] += 1
            return self._run_backend(fallback, image_bytes, options)

    def _next_engine(self, engine_id: str) -> Optional[str]:
        ids = list(self._backends)
        start = ids.index(engine_id)
        for candidate in ids[start + 1:] + ids[:start]:
            backend = self._backends[candidate]
            if backend.info.is_available and self.health.is_healthy(candidate):
                return candidate
        return None

    def _run_backend(self, engine_id: str, image_bytes: bytes, options: ProcessingOptions) -> RecognitionResult:
        backend = self._backends[engine_id]
        start = time.time()

        try:
            raw_lines = self._call_with_deadline(backend, image_bytes, options.timeout_ms)
        except FutureTimeout:
            elapsed = int((time.time() - start) * 1000)
            self.health.mark_unhealthy(engine_id, f"timed out after {elapsed}ms", elapsed)
            self._record_failure()
            raise RecognitionUnavailable(
                f"OCR engine {engine_id} timed out",
                elapsed_ms=elapsed,
                engine_id=engine_id,
                stage="recognition",
            )
        except CardScanError as e:
            elapsed = int((time.time() - start) * 1000)
            self.health.mark_unhealthy(engine_id, e.message, elapsed)
            self._record_failure()
            raise
        except Exception as e:
            elapsed = int((time.time() - start) * 1000)
            self.health.mark_unhealthy(engine_id, str(e), elapsed)
            self._record_failure()
            raise RecognitionUnavailable(
                f"OCR engine {engine_id} failed",
                elapsed_ms=elapsed,
                engine_id=engine_id,
                stage="recognition",
                original_error=e,
            ) from e

        elapsed = int((time.time() - start) * 1000)
        detected, confidence = build_lines(raw_lines)
        width, height = self.preprocessor.image_size(image_bytes)

        result = RecognitionResult(
            raw_text="\n".join(line.text for line in detected),
            detected_lines=detected,
            confidence=confidence,
            image_width=width,
            image_height=height,
            engine_id=engine_id,
            engine_version=backend.info.version,
            processing_time_ms=elapsed,
        )

        self.health.mark_healthy(engine_id, elapsed)
        with self._stats_lock:
            self._stats["recognitions"] += 1
            self._stats["total_time_ms"] += elapsed

        logger.info(f"Extracted {len(detected)} lines with {confidence:.2%} confidence using {engine_id}")
        return result

    @staticmethod
    def _call_with_deadline(backend: OCRBackend, image_bytes: bytes, timeout_ms: int) -> List[RawLine]:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ocr")
        try:
            future = executor.submit(backend.read_lines, image_bytes)
            return future.result(timeout=timeout_ms / 1000)
        finally:
            # A timed out worker is abandoned, not joined
            executor.shutdown(wait=False)

    def _record_failure(self) -> None:
        with self._stats_lock:
            self._stats["failures"] += 1

    # ======================================================
    # CACHE
    # ======================================================

    def _cache_key(self, image_bytes: bytes, options: ProcessingOptions) -> str:
        """Image fingerprint scoped to the selected engine and the output-affecting options."""
        info = self._backends[self._selected].info
        if options.enable_preprocessing:
            transform = (
                f"{options.min_dimension}x{options.max_dimension}:"
                f"{options.target_width}x{options.target_height}:"
                f"g{int(options.grayscale)}c{options.contrast}b{options.brightness}"
                f"d{int(options.denoise)}s{int(options.sharpen)}"
            )
        else:
            transform = "raw"
        return f"{fingerprint(image_bytes)}:{info.id}:{info.version}:{transform}"

    def _cache_get(self, key: str) -> Optional[RecognitionResult]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed: {e}")
            return None

    def _cache_put(self, key: str, result: RecognitionResult) -> None:
        if self.cache is None:
            return
        try:
            self.cache.put(key, result)
        except Exception as e:
            logger.warning(f"Cache write failed: {e}")

    # ======================================================
    # HEALTH / STATUS
    # ======================================================

    def health_check(self, engine_id: Optional[str] = None) -> EngineHealth:
        """Probe a backend with a blank image and record the outcome."""
        engine_id = engine_id or self._selected
        if engine_id not in self._backends:
            raise InputValidationError(f"Unknown OCR engine: {engine_id}", field="engine")

        backend = self._backends[engine_id]
        start = time.time()
        try:
            self._call_with_deadline(backend, blank_probe_image(), PROBE_TIMEOUT_MS)
        except FutureTimeout:
            elapsed = int((time.time() - start) * 1000)
            return self.health.mark_unhealthy(engine_id, "health probe timed out", elapsed)
        except Exception as e:
            elapsed = int((time.time() - start) * 1000)
            return self.health.mark_unhealthy(engine_id, str(e), elapsed)

        return self.health.mark_healthy(engine_id, int((time.time() - start) * 1000))

    def statistics(self) -> Dict:
        with self._stats_lock:
            stats = dict(self._stats)

        runs = stats["recognitions"]
        stats["average_time_ms"] = int(stats["total_time_ms"] / runs) if runs else 0
        stats["selected_engine"] = self._selected
        stats["engines"] = {
            engine_id: (record.to_dict() if record else None)
            for engine_id, record in ((eid, self.health.get(eid)) for eid in self._backends)
        }
        if self.cache is not None:
            stats["cache"] = self.cache.statistics()
        return stats
