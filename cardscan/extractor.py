"""
AI-assisted structured extraction of contact fields from recognized card text.
"""

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional

from .confidence import clamp
from .credentials import CredentialStore, EnvCredentialStore
from .exceptions import (
    CardScanError,
    ExtractionUnavailable,
    InputValidationError,
    PipelineError,
    SecurityRejected,
)
from .llm import LLMTransport
from .models import BatchFailure, ContactSource, ExtractBatchResult, ExtractedContact, ParseHints, ServiceStatus
from .security import find_injection, sanitize_field

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 10000

PHONE_PATTERN = re.compile(r"^[+]?[\d\s\-()]{7,}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Model output key -> contact attribute
RESPONSE_FIELDS = {
    "name": "name",
    "company": "company",
    "jobTitle": "job_title",
    "phone": "phone",
    "mobile": "mobile",
    "email": "email",
    "address": "address",
    "website": "website",
}


def validate_phone(value: Optional[str]) -> Optional[str]:
    if not value or not PHONE_PATTERN.match(value):
        return None
    if sum(ch.isdigit() for ch in value) < 7:
        return None
    return value


def validate_email(value: Optional[str]) -> Optional[str]:
    if not value or not EMAIL_PATTERN.match(value):
        return None
    return value


def parse_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return clamp(number)


class StructuredExtractor:
    """Turns raw card text into an ExtractedContact with a hosted model."""

    def __init__(
        self,
        transport: Optional[LLMTransport] = None,
        credentials: Optional[CredentialStore] = None,
        max_text_length: int = MAX_TEXT_LENGTH
    ):
        self.transport = transport
        self.credentials = credentials or EnvCredentialStore()
        self.max_text_length = max_text_length

    @property
    def provider(self) -> Optional[str]:
        return self.transport.provider if self.transport else None

    def _api_key(self) -> Optional[str]:
        if self.transport is None:
            return None
        return self.credentials.get_secret(self.transport.secret_name)

    def is_configured(self) -> bool:
        return self._api_key() is not None

    # ======================================================
    # PROMPTS
    # ======================================================

    def _build_system_prompt(self, hints: Optional[ParseHints]) -> str:
        language = (hints.language if hints and hints.language else None) or "English"
        country = (hints.country if hints and hints.country else None) or "unspecified"
        prompt = (
            "You are an expert at reading business cards. Convert the card text you are given "
            "into a single JSON object with exactly these fields: name, company, jobTitle, phone, "
            "mobile, email, address, website, confidence.\n"
            "Rules:\n"
            "- Use null for any field that is not on the card. Never invent information.\n"
            "- phone is the office or landline number, mobile is the cell phone number.\n"
            "- Keep phone numbers readable and drop stray symbols.\n"
            "- email must be a valid address.\n"
            "- confidence is a number between 0 and 1 describing how sure you are.\n"
            "- Return only the JSON object, no commentary.\n"
            f"Preferred language: {language}\n"
            f"Country/region: {country}"
        )
        if hints and hints.industry:
            prompt += f"\nIndustry: {hints.industry}"
        if hints and hints.card_type:
            prompt += f"\nCard type: {hints.card_type}"
        return prompt

    def _build_user_prompt(self, raw_text: str) -> str:
        return (
            "Parse the following business card text:\n\n"
            f"{raw_text}\n\n"
            "Reply with the JSON object only."
        )

    # ======================================================
    # EXTRACTION
    # ======================================================

    def validate_text(self, raw_text: str) -> str:
        """
        Reject text that must never reach the model.

        Raises:
            InputValidationError: Empty or longer than max_text_length
            SecurityRejected: Script, markup or SQL injection patterns
        """
        if raw_text is None or not raw_text.strip():
            raise InputValidationError("card text is empty", field="text",
                                       user_message="Text to parse is empty")

        if len(raw_text) > self.max_text_length:
            raise InputValidationError(
                f"card text has {len(raw_text)} characters, limit is {self.max_text_length}",
                field="text",
                user_message=f"Text is too long (maximum {self.max_text_length} characters)",
            )

        matched = find_injection(raw_text)
        if matched:
            raise SecurityRejected(f"card text matched injection pattern {matched}", stage="extraction")

        return raw_text

    def extract(self, raw_text: str, hints: Optional[ParseHints] = None) -> ExtractedContact:
        """
        Extract contact fields with the configured model.

        Args:
            raw_text: Recognized card text
            hints: Optional language/region hints

        Returns:
            ExtractedContact with source ``ai``

        Raises:
            InputValidationError, SecurityRejected: Text rejected before the call
            QuotaExceeded, RateLimited, ExtractionUnavailable: Model unusable
        """
        self.validate_text(raw_text)

        api_key = self._api_key()
        if api_key is None:
            raise ExtractionUnavailable(
                "AI service is not configured",
                user_message="AI service is not configured",
                stage="extraction",
            )

        logger.info(f"Calling {self.transport.provider} for structured extraction ({len(raw_text)} chars)")
        content = self.transport.complete(
            self._build_system_prompt(hints),
            self._build_user_prompt(raw_text),
            api_key,
        )

        contact = self._parse_response(content)
        logger.info(f"AI extracted fields: {contact.filled_fields()} ({contact.confidence:.0%})")
        return contact

    def _parse_response(self, content: str) -> ExtractedContact:
        try:
            data = json.loads(content)
        except (TypeError, ValueError) as e:
            raise ExtractionUnavailable(
                "AI response was not valid JSON",
                user_message="Failed to parse AI response",
                stage="extraction",
                original_error=e,
            ) from e

        if not isinstance(data, dict):
            raise ExtractionUnavailable(
                f"AI response was a {type(data).__name__}, expected an object",
                user_message="Failed to parse AI response",
                stage="extraction",
            )

        return self._sanitize_and_validate(data)

    @staticmethod
    def _sanitize_and_validate(data: Dict[str, Any]) -> ExtractedContact:
        fields = {attr: sanitize_field(data.get(key)) for key, attr in RESPONSE_FIELDS.items()}

        # Accept snake_case from models that ignore the schema
        if fields["job_title"] is None:
            fields["job_title"] = sanitize_field(data.get("job_title"))

        fields["phone"] = validate_phone(fields["phone"])
        fields["mobile"] = validate_phone(fields["mobile"])
        fields["email"] = validate_email(fields["email"])

        return ExtractedContact(
            source=ContactSource.AI,
            confidence=parse_confidence(data.get("confidence")),
            **fields
        )

    def extract_batch(self, texts: List[str], hints: Optional[ParseHints] = None) -> ExtractBatchResult:
        """Extract each text independently; one failure never aborts the rest."""
        result = ExtractBatchResult()
        for index, text in enumerate(texts):
            try:
                result.successful.append(self.extract(text, hints))
            except CardScanError as e:
                logger.warning(f"Batch item {index} failed: {e.message}")
                result.failed.append(BatchFailure(index=index, error=e, original_input=text))
            except Exception as e:
                logger.error(f"Batch item {index} failed unexpectedly: {e}")
                error = PipelineError(
                    "Unexpected failure during extraction", stage="extraction", original_error=e
                )
                result.failed.append(BatchFailure(index=index, error=error, original_input=text))
        return result

    def service_status(self) -> ServiceStatus:
        api_key = self._api_key()
        if api_key is None:
            return ServiceStatus(available=False, error="API key not configured")
        return self.transport.status(api_key)
