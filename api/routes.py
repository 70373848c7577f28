"""
API routes for the Business Card Extraction API.

Flask REST API endpoints exposing the extraction pipeline.
"""

import logging
from datetime import datetime
from typing import Optional

from flask import Blueprint, current_app, jsonify, request

from cardscan import build_pipeline
from cardscan.exceptions import (
    CardScanError,
    ImageTooLarge,
    InputValidationError,
    QuotaExceeded,
    RateLimited,
    RecognitionUnavailable,
    SecurityRejected,
)
from cardscan.models import ParseHints, ProcessingOptions
from cardscan.pipeline import ExtractionOrchestrator
from config import Config

logger = logging.getLogger(__name__)

# Create Blueprint
api_bp = Blueprint("api", __name__, url_prefix="/api")

# Pipeline instance (lazy initialization)
_pipeline: Optional[ExtractionOrchestrator] = None


def get_pipeline() -> ExtractionOrchestrator:
    """Get or create pipeline instance.

    Returns:
        ExtractionOrchestrator instance
    """
    global _pipeline

    if _pipeline is None:
        config_class = current_app.config.get("CARD_API_CONFIG_CLASS", Config)
        _pipeline = build_pipeline(config_class)
        logger.info(f"Pipeline initialized with AI provider: {config_class.AI_PROVIDER}")

    return _pipeline


def allowed_file(filename: str) -> bool:
    """Check if file extension is allowed.

    Args:
        filename: Name of the file

    Returns:
        True if allowed, False otherwise
    """
    return Config.is_allowed_file(filename)


def _error_response(error: CardScanError):
    """Map a pipeline failure onto an HTTP status and JSON body."""
    headers = {}

    if isinstance(error, SecurityRejected):
        status = 422
    elif isinstance(error, ImageTooLarge):
        status = 413
    elif isinstance(error, InputValidationError):
        status = 400
    elif isinstance(error, RateLimited):
        status = 429
        headers["Retry-After"] = str(int(error.retry_after.total_seconds()))
    elif isinstance(error, QuotaExceeded):
        status = 429
        seconds = (error.reset_time - datetime.utcnow()).total_seconds()
        headers["Retry-After"] = str(max(0, int(seconds)))
    elif isinstance(error, RecognitionUnavailable):
        status = 503
    else:
        status = 500

    if status >= 500:
        logger.error(f"Request failed: {error}")
    else:
        logger.warning(f"Request rejected: {error}")

    body = {"success": False, "error": error.user_message, "error_type": type(error).__name__}
    if getattr(error, "field", None):
        body["field"] = error.field
    return jsonify(body), status, headers


def _unexpected_response(error: Exception, action: str):
    logger.error(f"Error {action}: {str(error)}", exc_info=True)
    return jsonify({
        "success": False,
        "error": "An unexpected error occurred"
    }), 500


def _arg_bool(name: str, default: bool) -> bool:
    value = request.args.get(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _arg_number(name: str, cast, default):
    value = request.args.get(name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise InputValidationError(
            f"query parameter {name}={value!r} is not a number",
            field=name,
            user_message=f"Parameter '{name}' must be a number",
        )


def _options_from_request() -> ProcessingOptions:
    """Build ProcessingOptions from query parameters over the configured defaults."""
    defaults = get_pipeline().default_options
    options = ProcessingOptions(
        min_dimension=defaults.min_dimension,
        max_dimension=defaults.max_dimension,
        target_width=_arg_number("width", int, defaults.target_width),
        target_height=_arg_number("height", int, defaults.target_height),
        grayscale=_arg_bool("grayscale", defaults.grayscale),
        contrast=_arg_number("contrast", int, defaults.contrast),
        brightness=_arg_number("brightness", int, defaults.brightness),
        denoise=_arg_bool("denoise", defaults.denoise),
        sharpen=_arg_bool("sharpen", defaults.sharpen),
        enable_preprocessing=_arg_bool("preprocess", defaults.enable_preprocessing),
        confidence_threshold=_arg_number("threshold", float, defaults.confidence_threshold),
        timeout_ms=defaults.timeout_ms,
        max_image_bytes=defaults.max_image_bytes,
        min_text_length=_arg_number("min_text_length", int, defaults.min_text_length),
        validate_quality=_arg_bool("validate_quality", defaults.validate_quality),
        save_result=_arg_bool("save", defaults.save_result),
        use_cache=_arg_bool("use_cache", defaults.use_cache),
    )
    return options.validate()


def _hints_from(source) -> Optional[ParseHints]:
    hints = ParseHints(
        language=source.get("language"),
        country=source.get("country"),
        card_type=source.get("card_type"),
        industry=source.get("industry"),
    )
    return hints if any(vars(hints).values()) else None


@api_bp.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint.

    Returns:
        JSON with health status
    """
    return jsonify({
        "success": True,
        "status": "healthy",
        "message": "Business Card Extraction API is running",
        "version": "1.0.0"
    }), 200


@api_bp.route("/status", methods=["GET"])
def get_status():
    """Get API and pipeline status.

    Returns:
        JSON with status information
    """
    try:
        pipeline = get_pipeline()
        status = pipeline.get_status()

        return jsonify({
            "success": True,
            "data": {
                "api_status": "running",
                "pipeline_status": status,
                "api_keys_configured": Config.get_api_status()
            }
        }), 200

    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "getting status")


@api_bp.route("/engines", methods=["GET"])
def list_engines():
    """List registered OCR engines and the selected one."""
    try:
        pipeline = get_pipeline()
        return jsonify({
            "success": True,
            "data": {
                "current": pipeline.engine.current_engine().to_dict(),
                "engines": [info.to_dict() for info in pipeline.engine.list_engines()]
            }
        }), 200
    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "listing engines")


@api_bp.route("/engines/select", methods=["POST"])
def select_engine():
    """Select the OCR engine used for new jobs.

    Expects:
        - JSON body with 'engine' field
    """
    data = request.get_json(silent=True)

    if not data or not data.get("engine"):
        return jsonify({
            "success": False,
            "error": "No engine provided. Send JSON with 'engine' field."
        }), 400

    try:
        info = get_pipeline().engine.select_engine(data["engine"])
        return jsonify({"success": True, "data": info.to_dict()}), 200
    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "selecting engine")


@api_bp.route("/engines/health", methods=["GET"])
def engines_health():
    """Latest health per engine. Query param probe=true runs a fresh probe."""
    try:
        health = get_pipeline().engine_health(probe=_arg_bool("probe", False))
        return jsonify({"success": True, "data": health}), 200
    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "checking engine health")


@api_bp.route("/process", methods=["POST"])
def process_single():
    """Process a single business card image.

    Expects:
        - multipart/form-data with 'file' field
        - Optional query params: preprocess, contrast, brightness, width,
          height, threshold, save, use_cache, language, country

    Returns:
        JSON with the extracted contact, recognition result and warnings
    """
    # Check if file is present
    if "file" not in request.files:
        return jsonify({
            "success": False,
            "error": "No file provided. Use 'file' field in form-data."
        }), 400

    file = request.files["file"]

    if file.filename == "":
        return jsonify({
            "success": False,
            "error": "No file selected"
        }), 400

    if not allowed_file(file.filename):
        return jsonify({
            "success": False,
            "error": f"File type not allowed. Allowed: {', '.join(sorted(Config.ALLOWED_EXTENSIONS))}"
        }), 400

    try:
        options = _options_from_request()
        image_bytes = file.read()

        logger.info(f"Processing uploaded file: {file.filename} ({len(image_bytes)} bytes)")

        outcome = get_pipeline().process_image(image_bytes, options, _hints_from(request.args))

        return jsonify({
            "success": True,
            "data": outcome.to_dict()
        }), 200

    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "processing file")


@api_bp.route("/batch", methods=["POST"])
def process_batch():
    """Process several business card images.

    Failed items are reported per file; the request itself succeeds.
    """
    if "files" not in request.files:
        return jsonify({
            "success": False,
            "error": "No files provided"
        }), 400

    files = [f for f in request.files.getlist("files") if f.filename]

    if not files:
        return jsonify({
            "success": False,
            "error": "No files selected"
        }), 400

    if len(files) > Config.MAX_BATCH_FILES:
        return jsonify({
            "success": False,
            "error": f"Too many files. Maximum per batch: {Config.MAX_BATCH_FILES}"
        }), 400

    rejected = [f.filename for f in files if not allowed_file(f.filename)]
    if rejected:
        return jsonify({
            "success": False,
            "error": f"File type not allowed: {', '.join(rejected)}"
        }), 400

    try:
        options = _options_from_request()
        images = [f.read() for f in files]
        concurrency = _arg_number("concurrency", int, None)

        logger.info(f"Processing batch of {len(images)} files")

        outcome = get_pipeline().process_batch(images, options, _hints_from(request.args), concurrency)
        data = outcome.to_dict()

        for item in data["results"] + data["errors"]:
            item["filename"] = files[item["index"]].filename

        return jsonify({
            "success": True,
            "data": data
        }), 200

    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "processing batch")


@api_bp.route("/parse-text", methods=["POST"])
def parse_text():
    """Parse raw text (skip OCR).

    Expects:
        - JSON body with 'text' field, optional 'language' and 'country'

    Returns:
        JSON with parsed contact data
    """
    data = request.get_json(silent=True)

    if not data or "text" not in data:
        return jsonify({
            "success": False,
            "error": "No text provided. Send JSON with 'text' field."
        }), 400

    try:
        outcome = get_pipeline().process_text(data["text"], _hints_from(data))

        return jsonify({
            "success": True,
            "data": outcome.to_dict()
        }), 200

    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "parsing text")


@api_bp.route("/history", methods=["GET"])
def list_history():
    """List saved recognition results, newest first."""
    try:
        limit = _arg_number("limit", int, None)
        results = get_pipeline().history(limit)
        return jsonify({
            "success": True,
            "data": {
                "count": len(results),
                "results": [r.to_dict() for r in results]
            }
        }), 200
    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "listing history")


@api_bp.route("/history/cleanup", methods=["POST"])
def cleanup_history():
    """Delete saved results older than ?days= (default 30)."""
    try:
        removed = get_pipeline().cleanup_old_results(_arg_number("days", int, 30))
        return jsonify({"success": True, "data": {"removed": removed}}), 200
    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "cleaning history")


@api_bp.route("/history/<result_id>", methods=["GET", "DELETE"])
def history_item(result_id: str):
    """Fetch or delete one saved recognition result."""
    try:
        pipeline = get_pipeline()

        if request.method == "DELETE":
            if not pipeline.delete_result(result_id):
                return jsonify({"success": False, "error": "Result not found"}), 404
            return jsonify({"success": True, "data": {"deleted": result_id}}), 200

        result = pipeline.get_result(result_id)
        if result is None:
            return jsonify({"success": False, "error": "Result not found"}), 404
        return jsonify({"success": True, "data": result.to_dict()}), 200

    except CardScanError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected_response(e, "reading history")


# Error handlers
@api_bp.errorhandler(400)
def bad_request(error):
    """Handle 400 errors."""
    return jsonify({
        "success": False,
        "error": "Bad request"
    }), 400


@api_bp.errorhandler(404)
def not_found(error):
    """Handle 404 errors."""
    return jsonify({
        "success": False,
        "error": "Resource not found"
    }), 404


@api_bp.errorhandler(500)
def internal_error(error):
    """Handle 500 errors."""
    return jsonify({
        "success": False,
        "error": "Internal server error"
    }), 500
