"""
Orchestration mode detection.

A capability probe, run once at startup: if the engine can answer a Swarm
inspect we are on a manager node and can update services, otherwise we fall
back to watching standalone containers.
"""

import logging
from enum import Enum

import docker

from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)


class OrchestrationMode(Enum):
    CLUSTERED = "clustered"
    STANDALONE = "standalone"


async def detect_mode(client: docker.DockerClient) -> OrchestrationMode:
    """
    Detect whether the Docker engine is a Swarm manager.

    Any failure (not part of a swarm, worker node, daemon error) means
    standalone. The probe never raises.
    """
    try:
        await async_docker_call(client.api.inspect_swarm)
    except Exception as e:
        logger.debug(f"Swarm inspect failed, assuming standalone mode: {e}")
        return OrchestrationMode.STANDALONE
    return OrchestrationMode.CLUSTERED
