"""
Swarm Service Updater

Mutation primitives used by the reconciler for clustered workloads:
- Best-effort image pull on the manager node
- Digest-pinned service update with an update-marker label
- Tag-only fallback update with a distinct marker label
- Bounded wait for rollout convergence, observed through running tasks

Every mutating call re-inspects the service first. The Swarm version index
is single-use: a successful update advances it, so a stale one makes the
next update fail.
"""

import asyncio
import copy
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import docker

from updates.errors import FallbackFailure, ShutdownRequested, UpdateSubmissionError
from updates.image_ref import ImageReference
from updates.types import ManagedWorkload, RegistryCredential, RolloutVerification
from utils.async_docker import async_docker_call
from utils.cancellation import run_unless_stopped, sleep_or_stop

logger = logging.getLogger(__name__)

# Container-spec labels; a changing value forces Swarm to roll the tasks
UPDATE_MARKER_LABEL = "swarm-patrol.updated-at"
FALLBACK_MARKER_LABEL = "swarm-patrol.fallback-at"

DEFAULT_VERIFY_TIMEOUT = 120
DEFAULT_VERIFY_INTERVAL = 5


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SwarmServiceUpdater:
    """
    Applies image updates to Swarm services via the Docker SDK.

    Used only in clustered mode. Standalone containers are never mutated.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        credential: RegistryCredential,
        stop_event: asyncio.Event,
        verify_timeout: float = DEFAULT_VERIFY_TIMEOUT,
        verify_interval: float = DEFAULT_VERIFY_INTERVAL
    ):
        """
        Initialize service updater.

        Args:
            client: Docker client connected to a Swarm manager
            credential: Registry credential, used for image pulls
            stop_event: Shared stop signal; cuts the rollout wait short
            verify_timeout: Seconds to wait for a running task on the new digest
            verify_interval: Seconds between task checks
        """
        self.client = client
        self.credential = credential
        self.stop_event = stop_event
        self.verify_timeout = verify_timeout
        self.verify_interval = verify_interval

    async def pull_image(self, ref: ImageReference) -> bool:
        """
        Pull repo:tag on this node, best effort.

        A failed pull does not stop the update: the image may already be
        cached on the nodes that will run the tasks.

        Returns:
            True if the pull succeeded
        """
        try:
            logger.info(f"Pulling image {ref.tag_reference}")
            await async_docker_call(
                self.client.images.pull,
                ref.repository,
                tag=ref.tag,
                auth_config=self.credential.as_auth_config()
            )
            logger.debug(f"Successfully pulled image {ref.tag_reference}")
            return True
        except Exception as e:
            logger.warning(f"Failed to pull image {ref.tag_reference}, continuing with update: {e}")
            return False

    async def update_to_digest(self, workload: ManagedWorkload, digest: str) -> None:
        """
        Pin the service to `repo:tag@digest`.

        Raises:
            UpdateSubmissionError: inspect or update call failed
        """
        image = str(workload.image.with_digest(digest))
        await self._submit_update(workload, image, UPDATE_MARKER_LABEL)
        logger.info(f"Updated service {workload.name} to digest {digest}")

    async def update_by_tag(self, workload: ManagedWorkload) -> None:
        """
        Point the service at `repo:tag` with no digest.

        Used when the digest-pinned update was refused or never converged.
        Not verified afterwards.

        Raises:
            FallbackFailure: inspect or update call failed
        """
        image = workload.image.tag_reference
        try:
            await self._submit_update(workload, image, FALLBACK_MARKER_LABEL)
        except UpdateSubmissionError as e:
            raise FallbackFailure(
                f"Tag-only fallback for service {workload.name} failed: {e.message}",
                service=workload.name
            ) from e
        logger.info(f"Applied tag-only fallback for service {workload.name} ({image})")

    async def _inspect_service(self, workload: ManagedWorkload) -> Tuple[int, Dict[str, Any]]:
        """Read the current version index and spec of a service."""
        attrs = await async_docker_call(self.client.api.inspect_service, workload.id)
        return attrs["Version"]["Index"], attrs["Spec"]

    async def _submit_update(self, workload: ManagedWorkload, image: str, marker_label: str) -> None:
        try:
            # Always a fresh version: the one from enumeration may already be spent
            version, spec = await self._inspect_service(workload)
            if workload.version is not None and version != workload.version:
                logger.debug(f"Service {workload.name} moved from version {workload.version} to {version} since enumeration")

            task_template = copy.deepcopy(spec.get("TaskTemplate") or {})
            container_spec = task_template.setdefault("ContainerSpec", {})
            container_spec["Image"] = image
            labels = dict(container_spec.get("Labels") or {})
            labels[marker_label] = _utc_timestamp()
            container_spec["Labels"] = labels

            logger.debug(f"Submitting update for service {workload.name} at version {version}: {image}")
            response = await async_docker_call(
                self.client.api.update_service,
                workload.id,
                version,
                task_template=task_template,
                fetch_current_spec=True
            )
        except Exception as e:
            raise UpdateSubmissionError(
                f"Update of service {workload.name} to {image} failed: {e}",
                service=workload.name
            ) from e

        for warning in (response or {}).get("Warnings") or []:
            logger.warning(f"Service {workload.name} update warning: {warning}")

    async def running_task_images(self, workload: ManagedWorkload) -> List[str]:
        """Images of the service's tasks that are actually in the running state."""
        tasks = await async_docker_call(
            self.client.api.tasks,
            filters={"service": workload.name, "desired-state": "running"}
        )
        images = []
        for task in tasks or []:
            if task.get("Status", {}).get("State") != "running":
                continue
            image = task.get("Spec", {}).get("ContainerSpec", {}).get("Image")
            if image:
                images.append(image)
        return images

    async def is_running_digest(self, workload: ManagedWorkload, digest: str) -> Optional[bool]:
        """
        Check whether any running task reports `digest` in its image.

        Returns:
            True/False, or None when the service has no running tasks
        """
        images = await self.running_task_images(workload)
        if not images:
            return None
        return any(digest in image for image in images)

    async def wait_for_rollout(self, workload: ManagedWorkload, digest: str) -> RolloutVerification:
        """
        Wait until a running task of the service runs `digest`.

        Swarm only accepts the new spec synchronously; scheduling new tasks
        happens afterwards. Polls every verify_interval seconds for at most
        verify_timeout seconds (plus one interval for a slow task listing) and
        returns promptly when the stop signal fires, even mid-listing.
        """
        deadline = time.monotonic() + self.verify_timeout
        logger.info(f"Waiting for service {workload.name} to converge on {digest[:19]}... (timeout: {self.verify_timeout}s)")

        while True:
            # A hung task listing must not outlive the wait by more than one interval
            poll_timeout = max(deadline - time.monotonic(), self.verify_interval)
            try:
                running = await asyncio.wait_for(
                    run_unless_stopped(self.stop_event, self.is_running_digest(workload, digest)),
                    timeout=poll_timeout
                )
                if running:
                    logger.info(f"Service {workload.name} is running digest {digest[:19]}...")
                    return RolloutVerification.CONVERGED
            except ShutdownRequested:
                logger.info(f"Stop requested while listing tasks for service {workload.name}")
                return RolloutVerification.CANCELLED
            except asyncio.TimeoutError:
                logger.warning(f"Listing tasks for service {workload.name} timed out after {poll_timeout:.0f}s")
            except Exception as e:
                logger.warning(f"Error listing tasks for service {workload.name}: {e}")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Service {workload.name} did not converge on {digest[:19]}... within {self.verify_timeout}s")
                return RolloutVerification.TIMED_OUT

            if await sleep_or_stop(self.stop_event, min(self.verify_interval, remaining)):
                logger.info(f"Stop requested while waiting for service {workload.name} to converge")
                return RolloutVerification.CANCELLED
