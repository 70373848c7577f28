"""
Transports that carry an extraction prompt to a hosted language model and
bring back its JSON answer.

Both transports map provider failures onto the same typed errors so the
extractor does not care which service it talks to.
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import requests
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .exceptions import ExtractionUnavailable, QuotaExceeded, RateLimited
from .models import ServiceStatus
from .security import mask_secrets

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
QUOTA_CODES = ("quota_exceeded", "insufficient_quota")


def _parse_retry_after(value: Optional[str]) -> Optional[timedelta]:
    if not value:
        return None
    try:
        return timedelta(seconds=max(0, int(float(value))))
    except ValueError:
        return None


def _parse_reset_duration(value: Optional[str]) -> Optional[datetime]:
    """Parse rate-limit reset headers such as "1s", "6m0s" or "20ms"."""
    if not value:
        return None
    match = re.fullmatch(r"(?:(\d+)h)?(?:(\d+)m(?!s))?(?:(\d+(?:\.\d+)?)s)?(?:(\d+)ms)?", value.strip())
    if not match or not any(match.groups()):
        return None
    hours, minutes, seconds, millis = match.groups()
    delta = timedelta(
        hours=int(hours or 0),
        minutes=int(minutes or 0),
        seconds=float(seconds or 0),
        milliseconds=int(millis or 0),
    )
    return datetime.utcnow() + delta


class LLMTransport(ABC):
    """One hosted model endpoint."""

    provider: str = ""
    secret_name: str = ""

    @abstractmethod
    def complete(self, system_prompt: str, user_prompt: str, api_key: str) -> str:
        """
        Send the prompts and return the raw JSON text of the first answer.

        Raises:
            QuotaExceeded: Provider quota used up
            RateLimited: Too many requests
            ExtractionUnavailable: Timeout, network or provider failure
        """

    @abstractmethod
    def status(self, api_key: str) -> ServiceStatus:
        """Probe the provider without spending an extraction."""


class ChatCompletionTransport(LLMTransport):
    """OpenAI compatible ``/chat/completions`` endpoint over requests."""

    provider = "openai"
    secret_name = "OPENAI_API_KEY"

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-3.5-turbo",
        timeout: float = DEFAULT_TIMEOUT,
        temperature: float = 0.1,
        max_tokens: int = 1000
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout: Tuple[float, float] = (timeout, timeout)
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def complete(self, system_prompt: str, user_prompt: str, api_key: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }

        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(api_key),
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ExtractionUnavailable(
                "chat completion request timed out",
                user_message="AI service request timed out",
                stage="extraction",
                original_error=e,
            ) from e
        except requests.exceptions.RequestException as e:
            raise ExtractionUnavailable(
                mask_secrets(f"chat completion request failed: {e}"), stage="extraction"
            ) from e

        if response.status_code == 429:
            raise self._rate_limit_error(response)

        if response.status_code >= 400:
            raise ExtractionUnavailable(
                mask_secrets(f"chat completion returned HTTP {response.status_code}: {response.text[:200]}"),
                stage="extraction",
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionUnavailable(
                "chat completion response had no usable content",
                user_message="AI service returned an invalid response",
                stage="extraction",
                original_error=e,
            ) from e

        if not isinstance(content, str) or not content.strip():
            raise ExtractionUnavailable(
                "chat completion returned empty content",
                user_message="AI service returned an invalid response",
                stage="extraction",
            )
        return content

    @staticmethod
    def _rate_limit_error(response) -> ExtractionUnavailable:
        code = None
        try:
            error = response.json().get("error") or {}
            if isinstance(error, dict):
                code = error.get("code") or error.get("type")
        except ValueError:
            pass

        if code in QUOTA_CODES:
            return QuotaExceeded(f"chat completion quota exceeded ({code})", stage="extraction")

        retry_after = _parse_retry_after(response.headers.get("Retry-After"))
        return RateLimited("chat completion rate limited", retry_after=retry_after, stage="extraction")

    def status(self, api_key: str) -> ServiceStatus:
        start = time.time()
        try:
            response = requests.get(
                f"{self.base_url}/models",
                headers=self._headers(api_key),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            return ServiceStatus(
                available=False,
                error=mask_secrets(f"Service check failed: {e}"),
                response_time_ms=int((time.time() - start) * 1000),
            )

        elapsed = int((time.time() - start) * 1000)
        remaining = response.headers.get("x-ratelimit-remaining-requests")
        reset_at = _parse_reset_duration(response.headers.get("x-ratelimit-reset-requests"))

        if response.status_code >= 400:
            return ServiceStatus(
                available=False,
                error=f"Service check failed: HTTP {response.status_code}",
                response_time_ms=elapsed,
            )

        return ServiceStatus(
            available=True,
            quota_remaining=int(remaining) if remaining and remaining.isdigit() else None,
            quota_reset_at=reset_at or datetime.utcnow() + timedelta(hours=1),
            response_time_ms=elapsed,
        )


class GeminiTransport(LLMTransport):
    """Gemini models through the google-genai client."""

    provider = "gemini"
    secret_name = "GOOGLE_API_KEY"

    def __init__(
        self,
        model: str = "gemini-2.5-flash",
        timeout: float = DEFAULT_TIMEOUT,
        temperature: float = 0.1,
        max_tokens: int = 1000
    ):
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._clients: Dict[str, genai.Client] = {}

    def _client(self, api_key: str) -> genai.Client:
        client = self._clients.get(api_key)
        if client is None:
            client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(timeout=int(self.timeout * 1000)),
            )
            self._clients[api_key] = client
        return client

    def complete(self, system_prompt: str, user_prompt: str, api_key: str) -> str:
        try:
            response = self._client(api_key).models.generate_content(
                model=self.model,
                contents=[
                    types.Content(
                        role="user",
                        parts=[types.Part.from_text(text=user_prompt)]
                    )
                ],
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=self.temperature,
                    max_output_tokens=self.max_tokens,
                    response_mime_type="application/json",
                )
            )
        except genai_errors.APIError as e:
            raise self._api_error(e) from e
        except Exception as e:
            if isinstance(e, TimeoutError) or "timeout" in type(e).__name__.lower():
                raise ExtractionUnavailable(
                    "Gemini request timed out",
                    user_message="AI service request timed out",
                    stage="extraction",
                    original_error=e,
                ) from e
            raise ExtractionUnavailable(
                mask_secrets(f"Gemini request failed: {e}"), stage="extraction"
            ) from e

        text = response.text
        if not text or not text.strip():
            raise ExtractionUnavailable(
                "Gemini returned empty content",
                user_message="AI service returned an invalid response",
                stage="extraction",
            )
        return text

    @staticmethod
    def _api_error(error: genai_errors.APIError) -> ExtractionUnavailable:
        message = mask_secrets(str(getattr(error, "message", None) or error))
        if error.code == 429:
            status = str(getattr(error, "status", "") or "")
            if status == "RESOURCE_EXHAUSTED" and "quota" in message.lower():
                return QuotaExceeded(f"Gemini quota exceeded: {message}", stage="extraction")
            return RateLimited(f"Gemini rate limited: {message}", stage="extraction")
        return ExtractionUnavailable(f"Gemini returned HTTP {error.code}: {message}", stage="extraction")

    def status(self, api_key: str) -> ServiceStatus:
        start = time.time()
        try:
            self._client(api_key).models.get(model=self.model)
        except Exception as e:
            return ServiceStatus(
                available=False,
                error=mask_secrets(f"Service check failed: {e}"),
                response_time_ms=int((time.time() - start) * 1000),
            )
        return ServiceStatus(available=True, response_time_ms=int((time.time() - start) * 1000))
