"""LLM provider base class with shared retry logic."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

import httpx

from ..types import LLMProviderError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 2.0, 4.0]


class BaseProvider(ABC):
    """Abstract base for LLM providers used by the tagger and summarizer.

    Subclasses supply the endpoint, headers, payload and response shape;
    ``complete()`` owns the retry loop. 429 and 5xx responses, as well as
    transport errors, are retried with backoff; any other non-200 status
    raises immediately.
    """

    _timeout: float = 60.0

    def __init__(self, model: str = "", temperature: float = 0.3, max_retries: int = MAX_RETRIES) -> None:
        self.model = model
        self.temperature = temperature
        self.max_retries = max_retries
        self.last_usage: dict = {}

    @abstractmethod
    def _provider_name(self) -> str: ...

    @abstractmethod
    def _get_url(self) -> str: ...

    @abstractmethod
    def _get_headers(self) -> dict: ...

    @abstractmethod
    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict: ...

    @abstractmethod
    def _extract_text(self, data: dict) -> str: ...

    def _error(self, message: str, status_code: int | None = None) -> LLMProviderError:
        return LLMProviderError(message, provider=self._provider_name(), status_code=status_code)

    def _backoff(self, attempt: int) -> None:
        if attempt < self.max_retries - 1:
            delay = RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)]
            logger.debug("%s: retrying in %.1fs (attempt %d)", self._provider_name(), delay, attempt + 1)
            time.sleep(delay)

    def complete(self, system: str, user: str, max_tokens: int) -> str:
        """Send a completion request with automatic retry on transient errors."""
        url = self._get_url()
        headers = self._get_headers()
        payload = self._build_payload(system, user, max_tokens)

        last_error: LLMProviderError | None = None

        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(url, headers=headers, json=payload)
            except httpx.HTTPError as e:
                last_error = self._error(f"HTTP error: {e}")
                logger.warning("%s request failed: %s", self._provider_name(), e)
                self._backoff(attempt)
                continue

            if response.status_code == 200:
                data = response.json()
                self.last_usage = data.get("usage", {}) or {}
                return self._extract_text(data)

            error = self._error(
                f"HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
            if response.status_code == 429 or response.status_code >= 500:
                last_error = error
                logger.warning("%s returned HTTP %d", self._provider_name(), response.status_code)
                self._backoff(attempt)
                continue
            raise error

        raise last_error or self._error("Max retries exceeded")
