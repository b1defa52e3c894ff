"""
Reconciler

Per-workload state machine run once per poll tick:

    ResolveDigest ──failure──────────────▶ DIGEST_RESOLUTION_FAILED
        │
    CompareDigest ──no drift─────────────▶ NO_DRIFT (task cross-check, warn only)
        │ drift
        ├── standalone ──────────────────▶ MANUAL_ACTION_REQUIRED
        │
    PullImage (best effort)
        │
    ApplyUpdate ──refused──▶ FallbackByTag ──ok──▶ UPDATED_WITH_FALLBACK
        │ accepted                   └──failed──▶ UPDATE_FAILED
    VerifyRollout ──converged────────────▶ UPDATED
        ├──stopped────▶ UPDATED_UNVERIFIED
        └──timed out──▶ FallbackByTag (not re-verified)

At most one fallback is attempted per workload per tick. Anything that
failed is retried on the next tick.
"""

import asyncio
import logging
from typing import Dict

from updates.drift import has_drift
from updates.errors import FallbackFailure, RegistryError, ShutdownRequested, UpdateSubmissionError
from updates.registry_adapter import RegistryAdapter
from updates.service_updater import SwarmServiceUpdater
from updates.types import (
    ManagedWorkload,
    ReconciliationOutcome,
    ReconciliationResult,
    RolloutVerification,
)
from utils.cancellation import run_unless_stopped

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Converges one workload at a time to the digest published for its tag.

    reconcile() is the isolation boundary: per-workload errors become a
    ReconciliationResult and never reach the scheduler. Only
    ShutdownRequested escapes, to end the pass.
    """

    def __init__(
        self,
        registry: RegistryAdapter,
        updater: SwarmServiceUpdater,
        stop_event: asyncio.Event
    ):
        self.registry = registry
        self.updater = updater
        self.stop_event = stop_event
        # Last registry digest seen per workload id, for logging only
        self._last_seen_digest: Dict[str, str] = {}

    async def reconcile(self, workload: ManagedWorkload) -> ReconciliationResult:
        """
        Run one reconciliation pass for a workload.

        Raises:
            ShutdownRequested: stop signal fired during digest resolution
        """
        try:
            latest_digest = await run_unless_stopped(
                self.stop_event,
                self.registry.resolve_latest_digest(workload.image)
            )
        except ShutdownRequested:
            raise
        except RegistryError as e:
            logger.error(f"Failed to resolve digest for {workload.name} ({workload.image.tag_reference}): {e}")
            return ReconciliationResult.failure(
                workload, ReconciliationOutcome.DIGEST_RESOLUTION_FAILED, str(e)
            )
        except Exception as e:
            logger.error(f"Unexpected error resolving digest for {workload.name}: {e}", exc_info=True)
            return ReconciliationResult.failure(
                workload, ReconciliationOutcome.DIGEST_RESOLUTION_FAILED, str(e)
            )

        self._note_digest(workload, latest_digest)

        if not has_drift(workload.image, latest_digest):
            logger.info(f"No update needed for {workload.kind.value} {workload.name}")
            if workload.is_service:
                await self._cross_check_tasks(workload, latest_digest)
            return ReconciliationResult.up_to_date(workload, latest_digest)

        current = workload.image.digest or "unpinned"
        if not workload.is_service:
            logger.info(
                f"Container {workload.name} has updates available. "
                f"Current: {current}, Latest: {latest_digest}"
            )
            logger.warning(
                f"Automatic container updates are not supported, manual action required "
                f"for container {workload.name}"
            )
            return ReconciliationResult(
                workload=workload,
                outcome=ReconciliationOutcome.MANUAL_ACTION_REQUIRED,
                latest_digest=latest_digest,
            )

        logger.info(f"Updating service {workload.name} from {current} to digest {latest_digest}")
        try:
            return await self.apply_update(workload, latest_digest)
        except FallbackFailure as e:
            logger.error(f"Update of service {workload.name} failed, retrying next poll: {e}")
            return ReconciliationResult.failure(
                workload, ReconciliationOutcome.UPDATE_FAILED, str(e), latest_digest=latest_digest
            )
        except ShutdownRequested:
            raise
        except Exception as e:
            logger.error(f"Unexpected error updating service {workload.name}: {e}", exc_info=True)
            return ReconciliationResult.failure(
                workload, ReconciliationOutcome.UPDATE_FAILED, str(e), latest_digest=latest_digest
            )

    async def apply_update(self, workload: ManagedWorkload, digest: str) -> ReconciliationResult:
        """
        Pull, update, verify and fall back for a drifted service.

        Raises:
            FallbackFailure: the digest update did not stick and the tag-only
                fallback failed too
        """
        await self.updater.pull_image(workload.image)

        try:
            await self.updater.update_to_digest(workload, digest)
        except UpdateSubmissionError as e:
            logger.warning(f"Digest update refused for service {workload.name}, falling back to tag: {e}")
            await self._fallback_by_tag(workload)
            return ReconciliationResult(
                workload=workload,
                outcome=ReconciliationOutcome.UPDATED_WITH_FALLBACK,
                latest_digest=digest,
                error_message=str(e),
            )

        verification = await self.updater.wait_for_rollout(workload, digest)

        if verification is RolloutVerification.CONVERGED:
            return ReconciliationResult(
                workload=workload,
                outcome=ReconciliationOutcome.UPDATED,
                latest_digest=digest,
            )

        if verification is RolloutVerification.CANCELLED:
            # Spec was accepted but convergence is unknown; no fallback starts on shutdown
            logger.warning(f"Rollout of service {workload.name} not verified before shutdown")
            return ReconciliationResult(
                workload=workload,
                outcome=ReconciliationOutcome.UPDATED_UNVERIFIED,
                latest_digest=digest,
                error_message="Rollout verification interrupted by shutdown",
            )

        logger.warning(
            f"Service {workload.name} did not converge on {digest}, "
            f"re-applying {workload.image.tag_reference} without digest"
        )
        await self._fallback_by_tag(workload)
        return ReconciliationResult(
            workload=workload,
            outcome=ReconciliationOutcome.UPDATED_WITH_FALLBACK,
            latest_digest=digest,
            error_message="Rollout verification timed out",
        )

    async def _fallback_by_tag(self, workload: ManagedWorkload):
        """Submit the single tag-only fallback, unless shutdown was requested."""
        if self.stop_event.is_set():
            raise ShutdownRequested(f"Stop requested before fallback for service {workload.name}")
        await self.updater.update_by_tag(workload)

    async def _cross_check_tasks(self, workload: ManagedWorkload, digest: str):
        """Warn when the spec is pinned to the digest but no running task uses it."""
        try:
            running = await self.updater.is_running_digest(workload, digest)
        except Exception as e:
            logger.debug(f"Could not cross-check tasks for service {workload.name}: {e}")
            return

        if running is False:
            logger.warning(
                f"Service {workload.name} is pinned to {digest[:19]}... but no running task "
                f"reports it; a previous update may not have converged"
            )

    def _note_digest(self, workload: ManagedWorkload, digest: str):
        previous = self._last_seen_digest.get(workload.id)
        if previous and previous != digest:
            logger.info(
                f"Registry digest for {workload.image.tag_reference} changed since last check: "
                f"{previous[:19]}... → {digest[:19]}..."
            )
        self._last_seen_digest[workload.id] = digest
