"""
Tests for Flask API routes.

Tests the REST API endpoints.
"""

import io
import json
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from app import create_app
from cardscan import build_pipeline
from cardscan.exceptions import (
    ImageTooLarge,
    InputValidationError,
    QuotaExceeded,
    RateLimited,
    RecognitionUnavailable,
    SecurityRejected,
    UnsupportedImageFormat,
)
from cardscan.models import ContactSource, ExtractedContact, ProcessingOptions
from cardscan.pipeline import ExtractionOutcome, JobState
from config import TestingConfig

from conftest import FakeBackend, encode_image, text_lines


def make_outcome():
    contact = ExtractedContact(
        source=ContactSource.LOCAL,
        name="John Doe",
        company="ABC Corp",
        email="john@abc.com",
        confidence=0.58,
    )
    return ExtractionOutcome(contact=contact, state=JobState.DONE, steps=["recognition"])


class TestAPIRoutes:
    """Test cases for API routes."""

    @pytest.fixture
    def app(self):
        """Create test Flask app."""
        app = create_app("testing")
        app.config["TESTING"] = True
        return app

    @pytest.fixture
    def client(self, app):
        """Create test client."""
        return app.test_client()

    @pytest.fixture
    def mock_pipeline(self):
        """Pipeline mock with configured default options."""
        pipeline = Mock()
        pipeline.default_options = ProcessingOptions()
        with patch("api.routes.get_pipeline", return_value=pipeline):
            yield pipeline

    def upload(self, client, image_bytes=b"\xff\xd8\xff\xe0card", filename="card.jpg", query=""):
        return client.post(
            f"/api/process{query}",
            data={"file": (io.BytesIO(image_bytes), filename)},
            content_type="multipart/form-data",
        )

    def test_root_endpoint(self, client):
        """Test root endpoint returns API info."""
        response = client.get("/")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert "name" in data
        assert "version" in data
        assert "endpoints" in data

    def test_health_check(self, client):
        """Test health check endpoint."""
        response = client.get("/api/health")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["success"] is True
        assert data["status"] == "healthy"

    def test_status_endpoint(self, client, mock_pipeline):
        """Test status endpoint."""
        mock_pipeline.get_status.return_value = {"ocr_engine": {"id": "easyocr"}}

        response = client.get("/api/status")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["success"] is True
        assert data["data"]["pipeline_status"]["ocr_engine"]["id"] == "easyocr"
        assert "api_keys_configured" in data["data"]

    def test_process_no_file(self, client):
        """Test process endpoint without file."""
        response = client.post("/api/process")

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data["success"] is False
        assert "No file" in data["error"]

    def test_process_invalid_extension(self, client):
        """Test process endpoint with invalid file type."""
        response = self.upload(client, b"test", filename="card.gif")

        assert response.status_code == 400
        assert "not allowed" in json.loads(response.data)["error"]

    def test_process_success(self, client, mock_pipeline):
        """Test successful processing."""
        mock_pipeline.process_image.return_value = make_outcome()

        response = self.upload(client)

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["success"] is True
        assert data["data"]["contact"]["name"] == "John Doe"
        assert data["data"]["contact"]["source"] == "local"

    def test_process_passes_options(self, client, mock_pipeline):
        """Query parameters become processing options and hints."""
        mock_pipeline.process_image.return_value = make_outcome()

        self.upload(client, query="?preprocess=false&contrast=20&save=true&language=zh-TW")

        image_bytes, options, hints = mock_pipeline.process_image.call_args[0]
        assert image_bytes == b"\xff\xd8\xff\xe0card"
        assert options.enable_preprocessing is False
        assert options.contrast == 20
        assert options.save_result is True
        assert hints.language == "zh-TW"

    def test_process_bad_option(self, client, mock_pipeline):
        """Out of range options are rejected with the field name."""
        response = self.upload(client, query="?contrast=500")

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data["field"] == "contrast"
        mock_pipeline.process_image.assert_not_called()

    def test_process_non_numeric_option(self, client, mock_pipeline):
        response = self.upload(client, query="?threshold=high")

        assert response.status_code == 400
        assert json.loads(response.data)["field"] == "threshold"

    @pytest.mark.parametrize("error, status", [
        (UnsupportedImageFormat("bad header"), 400),
        (InputValidationError("bad input"), 400),
        (ImageTooLarge(30 * 1024 * 1024, 20 * 1024 * 1024), 413),
        (SecurityRejected("script in payload"), 422),
        (RecognitionUnavailable("timed out", elapsed_ms=30000), 503),
    ])
    def test_error_mapping(self, client, mock_pipeline, error, status):
        """Pipeline failures map onto HTTP statuses with a safe message."""
        mock_pipeline.process_image.side_effect = error

        response = self.upload(client)

        assert response.status_code == status
        data = json.loads(response.data)
        assert data["success"] is False
        assert data["error"] == error.user_message
        assert data["error_type"] == type(error).__name__

    def test_rate_limited(self, client, mock_pipeline):
        """Rate limits answer 429 with Retry-After."""
        mock_pipeline.process_image.side_effect = RateLimited("slow down", retry_after=timedelta(seconds=30))

        response = self.upload(client)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"

    def test_quota_exceeded(self, client, mock_pipeline):
        mock_pipeline.process_image.side_effect = QuotaExceeded("quota")

        response = self.upload(client)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 3500

    def test_unexpected_error(self, client, mock_pipeline):
        """Unexpected errors never leak details."""
        mock_pipeline.process_image.side_effect = RuntimeError("secret internals")

        response = self.upload(client)

        assert response.status_code == 500
        assert "secret internals" not in response.get_data(as_text=True)

    def test_parse_text_no_text(self, client):
        """Test parse-text endpoint without text."""
        response = client.post("/api/parse-text", json={})

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data["success"] is False

    def test_parse_text_success(self, client, mock_pipeline):
        """Test successful text parsing."""
        mock_pipeline.process_text.return_value = make_outcome()

        response = client.post("/api/parse-text", json={"text": "John Doe\nABC Corp", "country": "US"})

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["data"]["contact"]["company"] == "ABC Corp"
        text, hints = mock_pipeline.process_text.call_args[0]
        assert hints.country == "US"

    def test_batch_no_files(self, client):
        """Test batch endpoint without files."""
        response = client.post("/api/batch")

        assert response.status_code == 400

    def test_batch_too_many_files(self, client):
        files = [(io.BytesIO(b"x"), f"card{i}.jpg") for i in range(TestingConfig.MAX_BATCH_FILES + 1)]

        response = client.post("/api/batch", data={"files": files}, content_type="multipart/form-data")

        assert response.status_code == 400
        assert "Too many files" in json.loads(response.data)["error"]

    def test_engines(self, client, mock_pipeline):
        """Engine listing shows the selected engine."""
        info = Mock()
        info.to_dict.return_value = {"id": "easyocr"}
        mock_pipeline.engine.current_engine.return_value = info
        mock_pipeline.engine.list_engines.return_value = [info]

        response = client.get("/api/engines")

        data = json.loads(response.data)
        assert data["data"]["current"]["id"] == "easyocr"
        assert len(data["data"]["engines"]) == 1

    def test_select_engine_missing(self, client):
        response = client.post("/api/engines/select", json={})

        assert response.status_code == 400

    def test_select_unknown_engine(self, client, mock_pipeline):
        mock_pipeline.engine.select_engine.side_effect = InputValidationError(
            "Unknown OCR engine: tesseract", field="engine"
        )

        response = client.post("/api/engines/select", json={"engine": "tesseract"})

        assert response.status_code == 400
        assert json.loads(response.data)["field"] == "engine"

    def test_history_not_found(self, client, mock_pipeline):
        mock_pipeline.get_result.return_value = None

        response = client.get("/api/history/abc123")

        assert response.status_code == 404

    def test_history_delete_not_found(self, client, mock_pipeline):
        mock_pipeline.delete_result.return_value = False

        response = client.delete("/api/history/abc123")

        assert response.status_code == 404

    def test_history_cleanup(self, client, mock_pipeline):
        mock_pipeline.cleanup_old_results.return_value = 3

        response = client.post("/api/history/cleanup?days=7")

        assert json.loads(response.data)["data"]["removed"] == 3
        mock_pipeline.cleanup_old_results.assert_called_once_with(7)


class TestAPIWithPipeline:
    """End-to-end requests against a real pipeline and a fake OCR backend."""

    @pytest.fixture
    def client(self):
        pipeline = build_pipeline(
            TestingConfig,
            backends=[FakeBackend(lines=text_lines("ABC Corp", "John Doe", "john@abc.com"))],
        )
        app = create_app("testing")
        with patch("api.routes.get_pipeline", return_value=pipeline):
            yield app.test_client()

    def test_process_and_history(self, client):
        """A saved result can be listed, fetched and deleted."""
        response = client.post(
            "/api/process?save=true",
            data={"file": (io.BytesIO(encode_image(".jpg")), "card.jpg")},
            content_type="multipart/form-data",
        )

        assert response.status_code == 200
        data = json.loads(response.data)["data"]
        assert data["contact"]["email"] == "john@abc.com"
        assert data["contact"]["source"] == "local"
        result_id = data["recognition"]["id"]

        listing = json.loads(client.get("/api/history").data)["data"]
        assert listing["count"] == 1

        assert client.get(f"/api/history/{result_id}").status_code == 200
        assert client.delete(f"/api/history/{result_id}").status_code == 200
        assert client.get(f"/api/history/{result_id}").status_code == 404

    def test_invalid_image(self, client):
        """A truncated upload is a 400 with the safe message."""
        response = client.post(
            "/api/process",
            data={"file": (io.BytesIO(b"\x00\x01\x02\x03\x04"), "card.jpg")},
            content_type="multipart/form-data",
        )

        assert response.status_code == 400
        assert json.loads(response.data)["error"] == "image data invalid"

    def test_batch(self, client):
        """Batch responses carry per-file results and errors."""
        files = [
            (io.BytesIO(encode_image(".jpg", label="One")), "one.jpg"),
            (io.BytesIO(b"broken"), "two.jpg"),
            (io.BytesIO(encode_image(".png", label="Three")), "three.png"),
        ]

        response = client.post("/api/batch", data={"files": files}, content_type="multipart/form-data")

        assert response.status_code == 200
        data = json.loads(response.data)["data"]
        assert data["successful"] == 2
        assert data["errors"][0]["index"] == 1
        assert data["errors"][0]["filename"] == "two.jpg"

    def test_parse_text(self, client):
        response = client.post("/api/parse-text", json={"text": "ABC Corp\nJohn Doe\njohn@abc.com"})

        data = json.loads(response.data)["data"]
        assert data["contact"]["name"] == "John Doe"
        assert data["state"] == "done"

    def test_parse_text_injection(self, client):
        response = client.post("/api/parse-text", json={"text": "<script>alert(1)</script>"})

        assert response.status_code == 422

    def test_engine_health(self, client):
        response = client.get("/api/engines/health?probe=true")

        data = json.loads(response.data)["data"]
        assert data["fake"]["is_healthy"] is True
