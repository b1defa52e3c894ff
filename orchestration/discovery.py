"""
Workload Discovery

Lists the workloads swarm-patrol manages: Swarm services on a manager node,
running containers otherwise. Only images under the configured registry
namespace (e.g. "ghcr.io/acme") are returned.
"""

import logging
from typing import Any, List, Optional

import docker

from orchestration.mode import OrchestrationMode
from updates.errors import EnumerationError, MalformedReferenceError
from updates.image_ref import parse_image_reference
from updates.types import ManagedWorkload, WorkloadKind
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)


def in_namespace(repository: str, namespace: str) -> bool:
    """Case-insensitive match of a repository against the namespace, on a path boundary."""
    prefix = namespace.rstrip("/").lower() + "/"
    return repository.lower().startswith(prefix)


def _service_image(attrs: dict) -> Optional[str]:
    return (
        attrs.get("Spec", {})
        .get("TaskTemplate", {})
        .get("ContainerSpec", {})
        .get("Image")
    )


class WorkloadDiscovery:
    """
    Enumerates managed workloads on every poll tick.

    Nothing is cached between calls; each call reflects the engine state at
    that moment.
    """

    def __init__(self, client: docker.DockerClient, namespace: str):
        self.client = client
        self.namespace = namespace

    async def list_workloads(self, mode: OrchestrationMode) -> List[ManagedWorkload]:
        """
        List workloads for the given mode, filtered to the namespace.

        Raises:
            EnumerationError: the Docker list call failed
        """
        if mode is OrchestrationMode.CLUSTERED:
            workloads = await self._list_services()
        else:
            workloads = await self._list_containers()

        logger.debug(f"Discovered {len(workloads)} managed {mode.value} workload(s) under {self.namespace}")
        return workloads

    async def _list_services(self) -> List[ManagedWorkload]:
        try:
            services = await async_docker_call(self.client.services.list)
        except Exception as e:
            raise EnumerationError(f"Failed to list services: {e}") from e

        workloads = []
        for service in services:
            attrs = service.attrs or {}
            image = _service_image(attrs)
            workload = self._build_workload(
                workload_id=service.id,
                name=attrs.get("Spec", {}).get("Name") or service.id[:12],
                kind=WorkloadKind.SERVICE,
                image=image,
                version=attrs.get("Version", {}).get("Index"),
            )
            if workload:
                workloads.append(workload)
        return workloads

    async def _list_containers(self) -> List[ManagedWorkload]:
        try:
            # Running containers only; stopped ones are history, not workloads
            containers = await async_docker_call(self.client.containers.list)
        except Exception as e:
            raise EnumerationError(f"Failed to list containers: {e}") from e

        workloads = []
        for container in containers:
            attrs = container.attrs or {}
            image = attrs.get("Config", {}).get("Image")
            workload = self._build_workload(
                workload_id=container.id,
                name=container.name or container.id[:12],
                kind=WorkloadKind.CONTAINER,
                image=image,
            )
            if workload:
                workloads.append(workload)
        return workloads

    def _build_workload(
        self,
        workload_id: str,
        name: str,
        kind: WorkloadKind,
        image: Optional[str],
        version: Any = None
    ) -> Optional[ManagedWorkload]:
        if not image or not in_namespace(image, self.namespace):
            return None

        try:
            ref = parse_image_reference(image)
        except MalformedReferenceError as e:
            logger.warning(f"Skipping {kind.value} {name}: {e}")
            return None

        # The raw string matched, but make sure the parsed repository does too
        if not in_namespace(ref.repository, self.namespace):
            return None

        return ManagedWorkload(
            id=workload_id,
            name=name,
            kind=kind,
            image=ref,
            version=int(version) if version is not None else None,
        )
