"""
Tests for the extraction orchestrator.

Covers the AI / local / manual fallback order, batch isolation and the
job state machine.
"""

import threading
from datetime import datetime
from unittest.mock import Mock, patch

import pytest

from cardscan import build_pipeline, build_transport
from cardscan.cache import InMemoryHistoryStore, ResultCache
from cardscan.credentials import EnvCredentialStore
from cardscan.exceptions import (
    ExtractionUnavailable,
    InputValidationError,
    PipelineError,
    QuotaExceeded,
    RecognitionUnavailable,
    SecurityRejected,
    UnsupportedImageFormat,
)
from cardscan.extractor import StructuredExtractor
from cardscan.llm import ChatCompletionTransport, GeminiTransport
from cardscan.models import ContactSource, ExtractedContact, ProcessingOptions, ServiceStatus
from cardscan.ocr import TextRecognitionEngine
from cardscan.pipeline import ExtractionOrchestrator, JobState, ProcessingJob
from config import TestingConfig

from conftest import FakeBackend, encode_image, text_lines

CARD_LINES = ("ABC Corp", "John Doe", "john@abc.com")


def make_orchestrator(lines=CARD_LINES, extractor=None, history=None, backend=None):
    backend = backend or FakeBackend(lines=text_lines(*lines))
    engine = TextRecognitionEngine([backend], cache=ResultCache())
    return ExtractionOrchestrator(engine, extractor=extractor, history=history)


def mock_extractor(**kwargs):
    """Configured extractor whose service answers its status probe."""
    extractor = Mock(spec=StructuredExtractor)
    extractor.provider = "openai"
    extractor.is_configured.return_value = True
    extractor.service_status.return_value = ServiceStatus(available=True)
    for name, value in kwargs.items():
        setattr(extractor.extract, name, value)
    return extractor


class CountingBackend(FakeBackend):
    """Fake backend recording the peak number of simultaneous reads."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def read_lines(self, image_bytes):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            return super().read_lines(image_bytes)
        finally:
            with self._lock:
                self.active -= 1


class TestProcessingJob:
    """Test cases for the job state machine."""

    def test_happy_path(self):
        """Image jobs walk every stage in order."""
        job = ProcessingJob()
        for state in (JobState.PREPROCESSING, JobState.RECOGNIZING, JobState.RECOGNIZED,
                      JobState.EXTRACTING, JobState.DONE):
            job.advance(state)

        assert job.state == JobState.DONE
        assert job.history[0] == JobState.IDLE

    def test_invalid_transition(self):
        """Skipping recognition is not allowed."""
        job = ProcessingJob()
        job.advance(JobState.PREPROCESSING)

        with pytest.raises(PipelineError):
            job.advance(JobState.DONE)

    def test_fail_from_any_active_state(self):
        job = ProcessingJob()
        job.advance(JobState.PREPROCESSING)
        job.fail()

        assert job.state == JobState.ERROR

    def test_terminal_states(self):
        """Done jobs stay done."""
        job = ProcessingJob()
        job.advance(JobState.EXTRACTING)
        job.advance(JobState.DONE)
        job.fail()

        assert job.state == JobState.DONE


class TestExtractionOrchestrator:
    """Test cases for ExtractionOrchestrator."""

    def test_invalid_image(self):
        """A 5-byte buffer fails validation before OCR runs."""
        backend = FakeBackend(lines=text_lines(*CARD_LINES))
        orchestrator = make_orchestrator(backend=backend)

        with pytest.raises(UnsupportedImageFormat) as exc_info:
            orchestrator.process_image(b"\x01\x02\x03\x04\x05")

        assert exc_info.value.user_message == "image data invalid"
        assert backend.calls == 0

    def test_local_fallback_without_key(self, jpeg_bytes):
        """No AI key means local parsing."""
        extractor = StructuredExtractor(ChatCompletionTransport(), EnvCredentialStore({"OPENAI_API_KEY": None}))
        orchestrator = make_orchestrator(extractor=extractor)

        outcome = orchestrator.process_image(jpeg_bytes)

        assert outcome.state == JobState.DONE
        assert outcome.contact.source == ContactSource.LOCAL
        assert outcome.contact.email == "john@abc.com"
        assert outcome.contact.name == "John Doe"
        assert outcome.contact.company == "ABC Corp"
        assert outcome.steps == ["preprocessing", "recognition", "ai_skipped", "local_extraction"]
        assert outcome.ai_error is None
        assert outcome.recognition.raw_text == "ABC Corp\nJohn Doe\njohn@abc.com"

    def test_ai_extraction(self, jpeg_bytes):
        """AI output is used when the service is available."""
        ai_contact = ExtractedContact(source=ContactSource.AI, name="John Doe", confidence=0.95)
        extractor = mock_extractor(return_value=ai_contact)
        orchestrator = make_orchestrator(extractor=extractor)

        outcome = orchestrator.process_image(jpeg_bytes)

        assert outcome.contact is ai_contact
        assert "ai_extraction" in outcome.steps
        extractor.extract.assert_called_once()

    def test_quota_exceeded_falls_back_to_local(self, jpeg_bytes):
        """Quota errors are reported and the local parser takes over."""
        extractor = mock_extractor(side_effect=QuotaExceeded("quota used up"))
        orchestrator = make_orchestrator(extractor=extractor)

        outcome = orchestrator.process_image(jpeg_bytes)

        assert outcome.contact.source == ContactSource.LOCAL
        assert isinstance(outcome.ai_error, QuotaExceeded)
        assert outcome.ai_error.reset_time > datetime.utcnow()
        assert "ai_failed" in outcome.steps
        assert any("AI extraction failed" in w for w in outcome.warnings)

    @patch("cardscan.llm.requests.get")
    @patch("cardscan.llm.requests.post")
    def test_quota_from_provider_response(self, mock_post, mock_get, jpeg_bytes):
        """A 429 quota answer from the provider ends in a local contact."""
        mock_get.return_value = Mock(status_code=200, headers={})
        quota = Mock(status_code=429, headers={}, text="")
        quota.json.return_value = {"error": {"code": "quota_exceeded"}}
        mock_post.return_value = quota

        extractor = StructuredExtractor(
            ChatCompletionTransport(), EnvCredentialStore({"OPENAI_API_KEY": "sk-test-0123456789"})
        )
        orchestrator = make_orchestrator(extractor=extractor)

        outcome = orchestrator.process_image(jpeg_bytes)

        assert outcome.contact.source == ContactSource.LOCAL
        assert isinstance(outcome.ai_error, QuotaExceeded)
        assert outcome.to_dict()["ai_error"]["type"] == "QuotaExceeded"

    def test_unavailable_service_skips_ai(self, jpeg_bytes):
        """A failed status probe means AI is never called."""
        extractor = mock_extractor()
        extractor.service_status.return_value = ServiceStatus(available=False, error="down")
        orchestrator = make_orchestrator(extractor=extractor)

        outcome = orchestrator.process_image(jpeg_bytes)

        assert outcome.contact.source == ContactSource.LOCAL
        extractor.extract.assert_not_called()

    def test_crashing_status_probe_falls_back_to_local(self):
        """A status probe that raises counts as unavailable."""
        extractor = mock_extractor()
        extractor.service_status.side_effect = RuntimeError("probe crashed")
        orchestrator = make_orchestrator(extractor=extractor)

        outcome = orchestrator.process_text("ABC Corp\nJohn Doe\njohn@abc.com")

        assert outcome.contact.source == ContactSource.LOCAL
        assert outcome.contact.email == "john@abc.com"
        extractor.extract.assert_not_called()
        assert orchestrator.ai_status().error == "probe crashed"

    def test_status_probe_cached(self):
        """The status probe is reused within its TTL."""
        extractor = mock_extractor(side_effect=ExtractionUnavailable("down"))
        orchestrator = make_orchestrator(extractor=extractor)

        orchestrator.process_text("John Doe")
        orchestrator.process_text("Jane Roe")

        assert extractor.service_status.call_count == 1

    def test_manual_placeholder(self, jpeg_bytes):
        """Weak local results become an empty manual contact."""
        orchestrator = make_orchestrator(lines=("?? ## !!",))

        outcome = orchestrator.process_image(jpeg_bytes)

        assert outcome.contact.source == ContactSource.MANUAL
        assert outcome.contact.confidence == 0.0
        assert outcome.steps[-1] == "manual"
        assert any("manually" in w for w in outcome.warnings)

    def test_blank_card(self, jpeg_bytes):
        """No text yields a low-confidence warning and a manual contact."""
        orchestrator = make_orchestrator(lines=())

        outcome = orchestrator.process_image(jpeg_bytes)

        assert outcome.recognition.confidence == 0.1
        assert outcome.contact.source == ContactSource.MANUAL
        assert any("Low recognition confidence" in w for w in outcome.warnings)

    def test_never_ai_when_unavailable(self):
        """Without an AI extractor no outcome is ever sourced from AI."""
        orchestrator = make_orchestrator()
        texts = ["ABC Corp\nJohn Doe", "Jane Smith\njane@x.io", "?? ##", "王小明\n台灣科技股份有限公司"]

        for text in texts:
            assert orchestrator.process_text(text).contact.source != ContactSource.AI

    def test_injection_in_recognized_text(self, jpeg_bytes):
        """Unsafe OCR text is rejected even with AI disabled."""
        orchestrator = make_orchestrator(lines=("John Doe", "<script>alert(1)</script>"))

        with pytest.raises(SecurityRejected):
            orchestrator.process_image(jpeg_bytes)

    def test_security_rejection_from_ai_propagates(self, jpeg_bytes):
        """SecurityRejected is never downgraded to a fallback."""
        extractor = mock_extractor(side_effect=SecurityRejected("unsafe"))
        orchestrator = make_orchestrator(extractor=extractor)

        with pytest.raises(SecurityRejected):
            orchestrator.process_image(jpeg_bytes)

    def test_unexpected_ai_error_is_absorbed(self, jpeg_bytes):
        """Unexpected AI crashes fall back like typed failures."""
        extractor = mock_extractor(side_effect=KeyError("boom"))
        orchestrator = make_orchestrator(extractor=extractor)

        outcome = orchestrator.process_image(jpeg_bytes)

        assert outcome.contact.source == ContactSource.LOCAL
        assert isinstance(outcome.ai_error, PipelineError)

    def test_recognition_failure_propagates(self, jpeg_bytes):
        """OCR failures are raised to the caller."""
        orchestrator = make_orchestrator(backend=FakeBackend(error=RuntimeError("crash")))

        with pytest.raises(RecognitionUnavailable):
            orchestrator.process_image(jpeg_bytes)

    def test_invalid_options(self, jpeg_bytes):
        """Option ranges are checked up front."""
        orchestrator = make_orchestrator()

        with pytest.raises(InputValidationError) as exc_info:
            orchestrator.process_image(jpeg_bytes, ProcessingOptions(confidence_threshold=1.5))

        assert exc_info.value.field == "confidence_threshold"

    def test_preprocessing_skipped(self, jpeg_bytes):
        orchestrator = make_orchestrator()

        outcome = orchestrator.process_image(jpeg_bytes, ProcessingOptions(enable_preprocessing=False))

        assert outcome.steps[0] == "preprocessing_skipped"

    def test_save_result(self, jpeg_bytes):
        """save_result stores the recognition in history."""
        orchestrator = make_orchestrator(history=InMemoryHistoryStore())

        outcome = orchestrator.process_image(jpeg_bytes, ProcessingOptions(save_result=True))

        assert "saved" in outcome.steps
        assert orchestrator.get_result(outcome.recognition.id) is outcome.recognition
        assert len(orchestrator.history()) == 1
        assert orchestrator.delete_result(outcome.recognition.id) is True
        assert orchestrator.history() == []

    def test_history_disabled(self):
        orchestrator = make_orchestrator()

        with pytest.raises(InputValidationError):
            orchestrator.history()

    def test_process_text_empty(self):
        with pytest.raises(InputValidationError):
            make_orchestrator().process_text("  ")

    def test_outcome_to_dict(self, jpeg_bytes):
        """Outcomes serialize for the API."""
        data = make_orchestrator().process_image(jpeg_bytes).to_dict()

        assert data["state"] == "done"
        assert data["contact"]["source"] == "local"
        assert data["contact"]["confidence"] == 0.58
        assert data["ai_error"] is None
        assert set(data["metrics"]) == {"total_ms", "preprocessing_ms", "recognition_ms", "extraction_ms"}

    def test_get_status(self):
        status = make_orchestrator().get_status()

        assert status["ocr_engine"]["id"] == "fake"
        assert status["ai_configured"] is False
        assert status["ai_service"]["available"] is False

    def test_engine_health_probe(self):
        health = make_orchestrator().engine_health(probe=True)

        assert health["fake"]["is_healthy"] is True


class TestBatchProcessing:
    """Test cases for batch processing."""

    def test_failures_isolated(self):
        """One bad image does not affect the others."""
        orchestrator = make_orchestrator()
        images = [encode_image(".jpg", label=f"Card {i}") for i in range(5)]
        images[3] = b"\x00\x01\x02\x03\x04"

        outcome = orchestrator.process_batch(images)

        assert len(outcome.successful) == 4
        assert [index for index, _ in outcome.successful] == [0, 1, 2, 4]
        assert len(outcome.failed) == 1
        assert outcome.failed[0].index == 3
        assert isinstance(outcome.failed[0].error, InputValidationError)

    def test_concurrency_bounded(self):
        """Extra items queue behind the default limit of three workers."""
        backend = CountingBackend(lines=text_lines(*CARD_LINES), delay=0.1)
        orchestrator = make_orchestrator(backend=backend)
        images = [encode_image(".jpg", label=f"Card {i}") for i in range(8)]

        outcome = orchestrator.process_batch(images)

        assert orchestrator.batch_concurrency == 3
        assert len(outcome.successful) == 8
        assert outcome.failed == []
        assert 1 <= backend.peak <= 3

    def test_explicit_concurrency(self):
        backend = CountingBackend(lines=text_lines(*CARD_LINES), delay=0.05)
        orchestrator = make_orchestrator(backend=backend)
        images = [encode_image(".png", label=f"Card {i}") for i in range(4)]

        outcome = orchestrator.process_batch(images, concurrency=1)

        assert len(outcome.successful) == 4
        assert backend.peak == 1

    def test_batch_to_dict(self):
        orchestrator = make_orchestrator()
        outcome = orchestrator.process_batch([encode_image(".png"), b""], concurrency=1)

        data = outcome.to_dict()

        assert data["total"] == 2
        assert data["successful"] == 1
        assert data["results"][0]["index"] == 0
        assert data["errors"][0]["index"] == 1


class TestBuildPipeline:
    """Test cases for wiring from configuration."""

    def test_testing_config(self):
        """The testing config runs without AI and with history."""
        orchestrator = build_pipeline(TestingConfig, backends=[FakeBackend(lines=text_lines(*CARD_LINES))])

        assert orchestrator.extractor is None
        assert orchestrator.history_store is not None
        assert orchestrator.engine.current_engine().id == "fake"

    def test_openai_transport(self):
        config = Mock(AI_PROVIDER="openai", OPENAI_BASE_URL="https://api.openai.com/v1",
                      OPENAI_MODEL="gpt-4o-mini", AI_TIMEOUT=10)
        transport = build_transport(config)

        assert isinstance(transport, ChatCompletionTransport)
        assert transport.model == "gpt-4o-mini"

    def test_gemini_transport(self):
        config = Mock(AI_PROVIDER="gemini", GEMINI_MODEL="gemini-2.5-flash", AI_TIMEOUT=10)
        assert isinstance(build_transport(config), GeminiTransport)

    def test_unknown_provider(self):
        assert build_transport(Mock(AI_PROVIDER="watson")) is None
