"""Error taxonomy of the chat orchestration layer.

Controllers translate these into ``ErrorResponse`` payloads; nothing here
knows about HTTP.
"""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for errors surfaced to the calling layer."""

    def __init__(
        self,
        message: str,
        *,
        remaining_total: int | None = None,
        remaining_today: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.remaining_total = remaining_total
        self.remaining_today = remaining_today


class QuotaExceeded(OrchestrationError):
    def __init__(
        self,
        reason: str,
        message: str,
        *,
        remaining_total: int | None = None,
        remaining_today: int | None = None,
        wait_seconds: int | None = None,
    ) -> None:
        super().__init__(
            message,
            remaining_total=remaining_total,
            remaining_today=remaining_today,
        )
        self.reason = reason
        self.wait_seconds = wait_seconds


class FreeTierExpired(QuotaExceeded):
    def __init__(self, days_expired: int, message: str) -> None:
        super().__init__(
            "FreeTierExpired",
            message,
            remaining_total=0,
            remaining_today=0,
        )
        self.days_expired = days_expired


class ProviderChainExhausted(OrchestrationError):
    """Every provider in the chain failed or returned empty text."""

    def __init__(
        self,
        attempted: list[str],
        configured: list[str],
        *,
        remaining_total: int | None = None,
        remaining_today: int | None = None,
    ) -> None:
        super().__init__(
            "AI service is temporarily unavailable. Please try again.",
            remaining_total=remaining_total,
            remaining_today=remaining_today,
        )
        self.attempted = list(attempted)
        self.configured = list(configured)


class StoreUnavailable(OrchestrationError):
    def __init__(self, message: str = "Usage store unavailable") -> None:
        super().__init__(message)


class InvalidInput(OrchestrationError):
    pass


__all__ = [
    "OrchestrationError",
    "QuotaExceeded",
    "FreeTierExpired",
    "ProviderChainExhausted",
    "StoreUnavailable",
    "InvalidInput",
]
