"""
Error taxonomy for book_feed.

- ConnectionError: transport open/send failure; handled by the reconnect policy
- TimeoutError: connection handshake or REST request exceeded its deadline
- ProtocolError: inbound payload not structured data or missing fields
- ValidationError: structurally valid but suspect book (crossed, stale, one-sided)
- HTTPError: non-2xx REST response

The names shadow the builtins they refine; import the module
(``from book_feed import errors``) rather than the names.
"""

from __future__ import annotations

import time
from typing import Any


class FeedError(Exception):
    """Base class for every error raised or published by book_feed."""

    category = "feed"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Flatten for structured logging."""
        return {
            "error": type(self).__name__,
            "category": self.category,
            "message": self.message,
            "timestamp": self.timestamp,
            "cause": repr(self.cause) if self.cause else None,
        }


class ConnectionError(FeedError):
    category = "connection"

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["code"] = self.code
        return data


class TimeoutError(FeedError):
    category = "timeout"

    def __init__(
        self,
        message: str,
        *,
        timeout: float | None = None,
        status: int = 408,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.timeout = timeout
        self.status = status


class ProtocolError(FeedError):
    category = "protocol"

    def __init__(
        self,
        message: str,
        *,
        raw: str | bytes | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.raw = raw


class ValidationError(FeedError):
    category = "validation"

    def __init__(
        self,
        message: str,
        *,
        symbol: str | None = None,
        issues: list[str] | None = None,
        warnings: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.symbol = symbol
        self.issues = list(issues or [])
        self.warnings = list(warnings or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(symbol=self.symbol, issues=self.issues, warnings=self.warnings)
        return data


class HTTPError(FeedError):
    category = "http"

    def __init__(
        self,
        message: str,
        *,
        status: int,
        body: Any = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.url = url

    @property
    def retryable(self) -> bool:
        """5xx responses are retried; 4xx are terminal."""
        return self.status >= 500

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(status=self.status, url=self.url)
        return data
