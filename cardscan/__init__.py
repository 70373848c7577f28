"""
Business card extraction pipeline: OCR, AI-assisted parsing and local fallback.
"""

import logging
from typing import Optional

from .cache import InMemoryHistoryStore, ResultCache, fingerprint
from .credentials import CredentialStore, EnvCredentialStore
from .exceptions import (
    CardScanError,
    ExtractionUnavailable,
    ImageTooLarge,
    InputValidationError,
    PipelineError,
    QuotaExceeded,
    RateLimited,
    RecognitionUnavailable,
    SecurityRejected,
    UnsupportedImageFormat,
)
from .extractor import StructuredExtractor
from .health import EngineHealthRegistry
from .llm import ChatCompletionTransport, GeminiTransport, LLMTransport
from .models import (
    ContactSource,
    ExtractedContact,
    ParseHints,
    ProcessingOptions,
    RecognitionResult,
)
from .ocr import EasyOCRBackend, OCRBackend, TextRecognitionEngine
from .parser import LocalPatternExtractor
from .pipeline import BatchOutcome, ExtractionOrchestrator, ExtractionOutcome, JobState
from .preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


def build_transport(config) -> Optional[LLMTransport]:
    """Pick the AI transport named by config.AI_PROVIDER."""
    provider = (config.AI_PROVIDER or "none").lower()
    if provider == "openai":
        return ChatCompletionTransport(
            base_url=config.OPENAI_BASE_URL,
            model=config.OPENAI_MODEL,
            timeout=config.AI_TIMEOUT,
        )
    if provider == "gemini":
        return GeminiTransport(model=config.GEMINI_MODEL, timeout=config.AI_TIMEOUT)
    if provider != "none":
        logger.warning(f"Unknown AI provider '{provider}', AI extraction disabled")
    return None


def build_pipeline(config, backends=None, credentials=None) -> ExtractionOrchestrator:
    """
    Wire an orchestrator from a Config class.

    Args:
        config: Config class (see config.py)
        backends: Optional OCR backends, defaults to an EasyOCR backend
        credentials: Optional credential store, defaults to the environment
            with the keys loaded by the config as overrides

    Returns:
        ExtractionOrchestrator
    """
    if backends is None:
        backends = [EasyOCRBackend(
            languages=config.OCR_LANGUAGES,
            gpu=config.OCR_GPU,
            model_dir=config.OCR_MODEL_DIR,
        )]

    if credentials is None:
        credentials = EnvCredentialStore({
            "OPENAI_API_KEY": config.OPENAI_API_KEY,
            "GOOGLE_API_KEY": config.GOOGLE_API_KEY,
        })

    engine = TextRecognitionEngine(
        backends,
        default_engine=config.OCR_ENGINE if config.OCR_ENGINE in {b.info.id for b in backends} else None,
        cache=ResultCache(max_entries=config.CACHE_MAX_ENTRIES, ttl_hours=config.CACHE_TTL_HOURS),
        health=EngineHealthRegistry(),
    )

    transport = build_transport(config)
    extractor = StructuredExtractor(transport, credentials) if transport else None

    options = ProcessingOptions(
        confidence_threshold=config.CONFIDENCE_THRESHOLD,
        timeout_ms=config.OCR_TIMEOUT_MS,
        max_image_bytes=config.MAX_IMAGE_MB * 1024 * 1024,
    ).validate()

    return ExtractionOrchestrator(
        engine,
        extractor=extractor,
        local_extractor=LocalPatternExtractor(),
        history=InMemoryHistoryStore() if config.HISTORY_ENABLED else None,
        local_min_confidence=config.LOCAL_MIN_CONFIDENCE,
        batch_concurrency=config.BATCH_CONCURRENCY,
        default_options=options,
    )


__all__ = [
    "build_pipeline",
    "build_transport",
    "CardScanError",
    "ChatCompletionTransport",
    "ContactSource",
    "CredentialStore",
    "EasyOCRBackend",
    "EngineHealthRegistry",
    "EnvCredentialStore",
    "ExtractedContact",
    "ExtractionOrchestrator",
    "ExtractionOutcome",
    "ExtractionUnavailable",
    "BatchOutcome",
    "fingerprint",
    "GeminiTransport",
    "ImagePreprocessor",
    "ImageTooLarge",
    "InMemoryHistoryStore",
    "InputValidationError",
    "JobState",
    "LocalPatternExtractor",
    "OCRBackend",
    "ParseHints",
    "PipelineError",
    "ProcessingOptions",
    "QuotaExceeded",
    "RateLimited",
    "RecognitionResult",
    "RecognitionUnavailable",
    "ResultCache",
    "SecurityRejected",
    "StructuredExtractor",
    "TextRecognitionEngine",
    "UnsupportedImageFormat",
]
