"""
Shared types for drift detection and reconciliation.

Dataclasses and enums passed between the discovery, registry, updater and
reconciler layers so they agree on a single vocabulary.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict

from updates.image_ref import ImageReference

# Token prefixes GitHub uses for personal access tokens (classic and fine-grained)
PAT_PREFIXES = ("ghp_", "github_pat_")


class WorkloadKind(Enum):
    """What kind of orchestration unit a workload is."""
    SERVICE = "service"
    CONTAINER = "container"


class ReconciliationOutcome(Enum):
    """Per-workload result of one reconciliation pass."""
    NO_DRIFT = "no_drift"
    UPDATED = "updated"
    UPDATED_UNVERIFIED = "updated_unverified"
    UPDATED_WITH_FALLBACK = "updated_with_fallback"
    UPDATE_FAILED = "update_failed"
    DIGEST_RESOLUTION_FAILED = "digest_resolution_failed"
    MANUAL_ACTION_REQUIRED = "manual_action_required"


class RolloutVerification(Enum):
    """How the bounded wait for rollout convergence ended."""
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RegistryCredential:
    """
    Registry credential resolved once from configuration.

    The token is either a GitHub personal access token (exchanged for a
    scoped bearer token on every resolution) or an already usable bearer
    token.
    """
    owner: str
    username: str
    token: str = field(repr=False)

    @property
    def is_personal_access_token(self) -> bool:
        return self.token.startswith(PAT_PREFIXES)

    def as_auth_config(self) -> Dict[str, str]:
        """Docker SDK auth_config dict for pulls and logins."""
        return {"username": self.username, "password": self.token}


@dataclass(frozen=True)
class ManagedWorkload:
    """
    Snapshot of one orchestration-managed unit, taken during enumeration.

    `version` is the Swarm optimistic-concurrency index for services (None
    for containers). It is only valid for a single mutating call; the updater
    re-inspects the service before every update.
    """
    id: str
    name: str
    kind: WorkloadKind
    image: ImageReference
    version: Optional[int] = None

    @property
    def is_service(self) -> bool:
        return self.kind is WorkloadKind.SERVICE


@dataclass
class ReconciliationResult:
    """
    Result of reconciling a single workload.

    Returned by the Reconciler to the scheduler, which only logs and counts
    results; nothing is persisted.
    """
    workload: ManagedWorkload
    outcome: ReconciliationOutcome
    latest_digest: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome in (
            ReconciliationOutcome.NO_DRIFT,
            ReconciliationOutcome.UPDATED,
            ReconciliationOutcome.UPDATED_WITH_FALLBACK,
        )

    @classmethod
    def up_to_date(cls, workload: ManagedWorkload, digest: str) -> 'ReconciliationResult':
        return cls(workload=workload, outcome=ReconciliationOutcome.NO_DRIFT, latest_digest=digest)

    @classmethod
    def failure(
        cls,
        workload: ManagedWorkload,
        outcome: ReconciliationOutcome,
        error_message: str,
        latest_digest: Optional[str] = None
    ) -> 'ReconciliationResult':
        return cls(
            workload=workload,
            outcome=outcome,
            latest_digest=latest_digest,
            error_message=error_message
        )
