"""
Error taxonomy for drift detection and reconciliation.

Only ConfigurationError is meant to reach the process level. Everything else
is caught either at the workload boundary (Reconciler.reconcile) or at the
tick boundary (PollScheduler.run) and turned into an outcome or a log entry.
"""

from typing import Optional


class SwarmPatrolError(Exception):
    """Base class for all swarm-patrol errors."""
    pass


class ConfigurationError(SwarmPatrolError):
    """Missing or invalid startup configuration. Fatal before the poll loop starts."""
    pass


class MalformedReferenceError(SwarmPatrolError, ValueError):
    """Image reference string could not be parsed."""

    def __init__(self, raw: str, reason: str):
        super().__init__(f"Malformed image reference '{raw}': {reason}")
        self.raw = raw
        self.reason = reason


class EnumerationError(SwarmPatrolError):
    """Listing services/containers failed. Aborts the current tick only."""
    pass


class RegistryError(SwarmPatrolError):
    """Registry interaction failed (transport errors and timeouts included)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class AuthenticationError(RegistryError):
    """Token endpoint rejected the credential or returned an unusable body."""
    pass


class ManifestNotFoundError(RegistryError):
    """Manifest request for a tag or digest returned a non-success status."""
    pass


class DigestHeaderMissingError(RegistryError):
    """Manifest response carried no usable Docker-Content-Digest header."""
    pass


class DigestMismatchError(RegistryError):
    """Manifest requested by digest came back under a different digest."""
    pass


class UpdateSubmissionError(SwarmPatrolError):
    """The orchestrator refused a service update."""

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.service = service


class FallbackFailure(UpdateSubmissionError):
    """The tag-only fallback update failed as well. Retried next tick."""
    pass


class ShutdownRequested(SwarmPatrolError):
    """Stop signal fired while an abortable operation was in flight."""
    pass
