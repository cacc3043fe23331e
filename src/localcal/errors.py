"""Exception hierarchy for sync operations.

All provider and persistence failures are connection-scoped: the orchestrator
catches them per connection and records an outcome instead of aborting a batch.
"""

from __future__ import annotations

__all__ = [
    "ConfigError",
    "LocalcalError",
    "MalformedProviderPayload",
    "PersistenceFailure",
    "ProviderAuthExpired",
    "ProviderError",
    "ProviderUnavailable",
]


class LocalcalError(RuntimeError):
    """Base exception for sync engine errors."""


class ProviderError(LocalcalError):
    """Base exception for failures fetching from an external calendar provider."""


class ProviderUnavailable(ProviderError):
    """Transient failure: network error, timeout, or non-success HTTP status.

    Eligible for retry on the next scheduled run.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (status {self.status_code})"
        return base


class ProviderAuthExpired(ProviderError):
    """The stored credential is invalid or expired; the connection needs re-authorization."""


class MalformedProviderPayload(ProviderError):
    """The provider answered successfully but with a shape we cannot normalize."""


class PersistenceFailure(LocalcalError):
    """Writing a changeset or connection state to storage failed."""


class ConfigError(ValueError):
    """Invalid configuration."""
