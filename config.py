"""
Configuration management for the Business Card Extraction API.

Handles environment variables, AI provider keys, and pipeline settings.
"""

import os
import logging
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    """Application configuration class.

    Attributes:
        DEBUG: Enable debug mode
        TESTING: Enable testing mode
        SECRET_KEY: Flask secret key
        MAX_CONTENT_LENGTH: Maximum request size, covers batch uploads
        MAX_IMAGE_MB: Maximum size of a single card image
        ALLOWED_EXTENSIONS: Allowed image file extensions
        AI_PROVIDER: openai, gemini or none
    """

    # Flask Settings
    DEBUG: bool = _env_bool("CARD_API_DEBUG")
    TESTING: bool = _env_bool("CARD_API_TESTING")
    SECRET_KEY: str = os.getenv("CARD_API_SECRET_KEY", "dev-secret-key-change-in-production")

    # Upload Settings
    MAX_IMAGE_MB: int = int(os.getenv("CARD_API_MAX_IMAGE_MB", "20"))
    MAX_BATCH_FILES: int = int(os.getenv("CARD_API_MAX_BATCH_FILES", "20"))
    MAX_CONTENT_LENGTH: int = int(os.getenv("CARD_API_MAX_UPLOAD_MB", "100")) * 1024 * 1024
    ALLOWED_EXTENSIONS: set = {"png", "jpg", "jpeg"}

    # OCR Settings
    OCR_ENGINE: str = os.getenv("CARD_API_OCR_ENGINE", "easyocr")
    OCR_LANGUAGES: List[str] = _env_list("CARD_API_OCR_LANGUAGES", "en")
    OCR_GPU: bool = _env_bool("CARD_API_OCR_GPU")
    OCR_MODEL_DIR: Optional[str] = os.getenv("CARD_API_OCR_MODEL_DIR")
    OCR_TIMEOUT_MS: int = int(os.getenv("CARD_API_OCR_TIMEOUT_MS", "30000"))

    # Acceptance thresholds
    CONFIDENCE_THRESHOLD: float = float(os.getenv("CARD_API_CONFIDENCE_THRESHOLD", "0.7"))
    LOCAL_MIN_CONFIDENCE: float = float(os.getenv("CARD_API_LOCAL_MIN_CONFIDENCE", "0.3"))

    # Batch processing
    BATCH_CONCURRENCY: int = int(os.getenv("CARD_API_BATCH_CONCURRENCY", "3"))

    # Recognition cache and history
    CACHE_MAX_ENTRIES: int = int(os.getenv("CARD_API_CACHE_MAX_ENTRIES", "100"))
    CACHE_TTL_HOURS: float = float(os.getenv("CARD_API_CACHE_TTL_HOURS", "24"))
    HISTORY_ENABLED: bool = _env_bool("CARD_API_HISTORY_ENABLED", "True")

    # AI extraction
    AI_PROVIDER: str = os.getenv("CARD_API_AI_PROVIDER", "openai").lower()
    AI_TIMEOUT: float = float(os.getenv("CARD_API_AI_TIMEOUT", "30"))
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
    GOOGLE_API_KEY: Optional[str] = os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

    # Logging
    LOG_LEVEL: str = os.getenv("CARD_API_LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def init_app(cls, app) -> None:
        """Initialize Flask app with configuration.

        Args:
            app: Flask application instance
        """
        app.config.from_object(cls)

        # Configure logging
        logging.basicConfig(
            level=getattr(logging, cls.LOG_LEVEL.upper()),
            format=cls.LOG_FORMAT
        )

        logger.info("Configuration initialized successfully")

    @classmethod
    def is_allowed_file(cls, filename: str) -> bool:
        """Check if file extension is allowed.

        Args:
            filename: Name of the file to check

        Returns:
            True if file extension is allowed, False otherwise
        """
        return "." in filename and \
            filename.rsplit(".", 1)[1].lower() in cls.ALLOWED_EXTENSIONS

    @classmethod
    def get_api_status(cls) -> dict:
        """Get status of configured AI keys.

        Returns:
            Dictionary with key availability, never the keys themselves
        """
        return {
            "ai_provider": cls.AI_PROVIDER,
            "openai_api": cls.OPENAI_API_KEY is not None,
            "gemini_api": cls.GOOGLE_API_KEY is not None,
        }


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    LOG_LEVEL = "INFO"


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    DEBUG = True
    LOG_LEVEL = "DEBUG"
    AI_PROVIDER = "none"
    HISTORY_ENABLED = True


# Configuration mapping
config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": DevelopmentConfig
}


def get_config(config_name: Optional[str] = None) -> Config:
    """Get configuration class by name.

    Args:
        config_name: Configuration name (development, production, testing)

    Returns:
        Configuration class
    """
    if config_name is None:
        config_name = os.getenv("CARD_API_ENV", "development")
    return config_by_name.get(config_name, DevelopmentConfig)
