"""Marketplace error types."""

from __future__ import annotations


class MarketplaceError(Exception):
    """The marketplace answered, but not with success."""

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class ReleaseRejectedError(MarketplaceError):
    """The release call was explicitly refused (bad code, wrong state, ...)."""
