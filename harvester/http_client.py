"""HTTP utilities for fetching remote feed pages."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable

import httpx

from .config import FetchConfig

LOGGER = logging.getLogger(__name__)


def normalize_https_url(url: str) -> str:
    """Return ``url`` as an absolute HTTPS URL."""

    cleaned = (url or "").strip()
    if not cleaned:
        raise ValueError("URL must not be empty")
    if cleaned.startswith("//"):
        return f"https:{cleaned}"
    lowered = cleaned.lower()
    if lowered.startswith("http://"):
        return "https://" + cleaned[len("http://"):]
    if lowered.startswith("https://"):
        return "https://" + cleaned[len("https://"):]
    return f"https://{cleaned}"


class HttpFetcher:
    """Rate-limit aware HTTP client with rotating browser identities.

    Every call either returns data or ``None``; network failures, exhausted
    retries and ``404`` responses are never raised to the caller.
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        *,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or FetchConfig()
        if not self._config.user_agents:
            raise ValueError("At least one user agent is required")
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None
        self._sleep = sleep or time.sleep
        self._random = rng or random.Random()

    def _build_client(self) -> httpx.Client:
        kwargs: dict[str, object] = {
            "timeout": self._config.request_timeout,
            "follow_redirects": True,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def _identity_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self._random.choice(self._config.user_agents),
            "Accept-Language": self._config.accept_language,
            "Referer": self._config.referer,
        }

    def backoff_delay(self, status_code: int | None, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""

        factor = self._config.error_backoff
        if status_code == httpx.codes.TOO_MANY_REQUESTS:
            factor = self._config.rate_limit_backoff
        return factor * attempt * attempt

    def fetch(
        self,
        url: str,
        *,
        max_attempts: int | None = None,
        min_delay: float | None = None,
    ) -> httpx.Response | None:
        target = normalize_https_url(url)
        attempts = max(1, int(max_attempts if max_attempts is not None else self._config.max_attempts))
        delay = self._config.min_delay if min_delay is None else max(0.0, min_delay)

        for attempt in range(1, attempts + 1):
            LOGGER.debug("[Attempt %d] Fetching %s", attempt, target)
            status_code: int | None = None
            try:
                response = self._client.get(target, headers=self._identity_headers())
            except httpx.HTTPError as exc:
                LOGGER.warning(
                    "Request error for %s (attempt %d/%d): %s", target, attempt, attempts, exc
                )
            else:
                if response.is_success:
                    self._sleep(delay + self._random.uniform(0.0, self._config.jitter))
                    return response
                status_code = response.status_code
                if status_code == httpx.codes.NOT_FOUND:
                    LOGGER.info("Resource not found: %s", target)
                    return None
                LOGGER.warning(
                    "Unexpected status %d for %s (attempt %d/%d)", status_code, target, attempt, attempts
                )

            if attempt == attempts:
                break
            wait_for = self.backoff_delay(status_code, attempt)
            if status_code == httpx.codes.TOO_MANY_REQUESTS:
                LOGGER.info("Rate limited on %s; waiting %.1fs before retrying", target, wait_for)
            self._sleep(wait_for)

        LOGGER.warning("Giving up on %s after %d attempts", target, attempts)
        return None

    def fetch_json(
        self,
        url: str,
        *,
        max_attempts: int | None = None,
        min_delay: float | None = None,
    ) -> Any | None:
        response = self.fetch(url, max_attempts=max_attempts, min_delay=min_delay)
        if response is None:
            return None
        try:
            return response.json()
        except ValueError as exc:
            LOGGER.warning("Invalid JSON payload from %s: %s", url, exc)
            return None

    def fetch_text(
        self,
        url: str,
        *,
        max_attempts: int | None = None,
        min_delay: float | None = None,
    ) -> str | None:
        response = self.fetch(url, max_attempts=max_attempts, min_delay=min_delay)
        if response is None:
            return None
        return response.text

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()


__all__ = ["HttpFetcher", "normalize_https_url"]
