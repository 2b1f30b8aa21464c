from __future__ import annotations


class WalletError(Exception):
    """Base class for domain errors raised inside the wallet core."""


class ValidationError(WalletError):
    """Input or configuration rejected before any I/O happens."""


class SourceError(WalletError):
    """The historical-data source failed or answered with an unknown error shape."""

    INVALID_API_KEY = "invalid_api_key"
    RATE_LIMIT = "rate_limit"
    HTTP_ERROR = "http_error"
    UNKNOWN = "unknown"

    def __init__(self, message: str, kind: str = UNKNOWN, details: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.kind in {self.RATE_LIMIT, self.HTTP_ERROR}


class RangeUnreachable(WalletError):
    """The page budget ran out before the requested window was covered."""
