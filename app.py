"""
Business Card Extraction API - Flask Application Entry Point.

Extracts structured contact data from business card images using OCR,
AI-assisted parsing and an offline fallback parser.
"""

import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS

from config import Config, get_config
from api.routes import api_bp

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format=Config.LOG_FORMAT
)
logger = logging.getLogger(__name__)

API_INFO = {
    "name": "Business Card Extraction API",
    "version": "1.0.0",
    "description": "Extract structured contact data from business card images",
    "endpoints": {
        "health": "GET /api/health",
        "status": "GET /api/status",
        "engines": "GET /api/engines",
        "select_engine": "POST /api/engines/select",
        "engine_health": "GET /api/engines/health",
        "process_single": "POST /api/process",
        "process_batch": "POST /api/batch",
        "parse_text": "POST /api/parse-text",
        "history": "GET /api/history",
        "history_item": "GET|DELETE /api/history/<id>",
        "history_cleanup": "POST /api/history/cleanup"
    }
}


def create_app(config_name: str = None) -> Flask:
    """Application factory for creating Flask app.

    Args:
        config_name: Configuration name (development, production, testing)

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    # Load configuration
    config_class = get_config(config_name)
    config_class.init_app(app)
    app.config["CARD_API_CONFIG_CLASS"] = config_class

    # Enable CORS
    CORS(app, resources={
        r"/api/*": {
            "origins": "*",
            "methods": ["GET", "POST", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization"]
        }
    })

    # Register blueprints
    app.register_blueprint(api_bp)

    @app.route("/")
    def index():
        """API information at the root."""
        return jsonify(API_INFO)

    @app.route("/api/info")
    def api_info():
        """API information endpoint."""
        return jsonify(API_INFO)

    # Favicon handler (prevents 404 errors from browsers)
    @app.route("/favicon.ico")
    def favicon():
        """Return empty response for favicon requests."""
        return "", 204

    # Global error handlers
    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 errors."""
        return jsonify({
            "success": False,
            "error": "Not found"
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        """Handle 405 errors."""
        return jsonify({
            "success": False,
            "error": "Method not allowed"
        }), 405

    @app.errorhandler(413)
    def request_entity_too_large(error):
        """Handle request too large errors."""
        return jsonify({
            "success": False,
            "error": f"Request too large. Maximum size: {config_class.MAX_CONTENT_LENGTH // (1024*1024)}MB"
        }), 413

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 errors."""
        logger.error(f"Internal error: {str(error)}")
        return jsonify({
            "success": False,
            "error": "Internal server error"
        }), 500

    @app.errorhandler(Exception)
    def handle_exception(error):
        """Handle uncaught exceptions."""
        if hasattr(error, "code") and error.code == 404:
            return not_found(error)
        logger.error(f"Uncaught exception: {str(error)}", exc_info=True)
        return jsonify({
            "success": False,
            "error": "An unexpected error occurred"
        }), 500

    logger.info(f"Application created with config: {config_class.__name__}")

    return app


if __name__ == "__main__":
    # Get port from environment or default to 5000
    port = int(os.getenv("PORT", 5000))
    debug = os.getenv("CARD_API_DEBUG", "True").lower() == "true"

    logger.info(f"Starting server on port {port}, debug={debug}")

    create_app().run(
        host="0.0.0.0",
        port=port,
        debug=debug
    )
