"""
Error taxonomy.

We separate error types so callers can react correctly.
Example:
ConfigError blocks before any control plane call is made.
CollectionError is transient and the read is retried.
AuthError is permanent and surfaced without retry.
ApplyError carries a retryable flag decided at the adapter boundary.
PartialRegionFailure describes a region where some clusters failed.
"""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for all reconciler exceptions."""


class ConfigError(ReconcilerError):
    """Raised when the layered desired state cannot be merged or validated."""


class CollectionError(ReconcilerError):
    """Raised on transient control plane errors. Always retryable."""

    retryable = True


class AuthError(ReconcilerError):
    """Raised when credentials are missing, expired, or denied. Never retried."""

    retryable = False


class ApplyError(ReconcilerError):
    """
    Raised when a single operation cannot be applied.

    retryable
    True for throttling, timeouts and resources busy with another update.
    False for invalid requests, immutable field changes and missing targets.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class PartialRegionFailure(ReconcilerError):
    """One or more clusters in a region failed. Other regions are unaffected."""

    def __init__(self, region: str, clusters: list[str]) -> None:
        self.region = region
        self.clusters = sorted(set(clusters))
        super().__init__(f"region {region} has failed clusters: {', '.join(self.clusters)}")


def is_retryable(exc: BaseException) -> bool:
    """Return True when exc belongs to the retryable class of failures."""
    return isinstance(exc, ReconcilerError) and bool(getattr(exc, "retryable", False))
