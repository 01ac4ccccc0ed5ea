"""
guildmmr.ingest.errors — Battleboard API Error Taxonomy
========================================================

* Transient (network failure, 5xx, 429) — ``is_retryable=True``; the client
  retries these with backoff before surfacing them.
* Validation (response doesn't match the expected shape) — never retried.
* Anything else (4xx other than 429) — terminal.
"""

from __future__ import annotations


class AlbionAPIError(Exception):
    """Failure talking to the upstream battleboard API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        is_retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.is_retryable = is_retryable

    @classmethod
    def from_status(cls, status_code: int, url: str) -> AlbionAPIError:
        return cls(
            f"HTTP {status_code} from {url}",
            status_code=status_code,
            is_retryable=status_code >= 500,
        )


class RateLimitError(AlbionAPIError):
    """HTTP 429.  ``retry_after`` carries the server's hint in seconds."""

    def __init__(self, url: str, retry_after: float | None = None) -> None:
        super().__init__(
            f"Rate limited by {url}",
            status_code=429,
            retry_after=retry_after,
            is_retryable=True,
        )


class ResponseValidationError(AlbionAPIError):
    """The response body didn't match its schema.  Never retried."""

    def __init__(self, url: str, detail: str) -> None:
        super().__init__(
            f"Invalid response from {url}: {detail}",
            is_retryable=False,
        )
        self.detail = detail
