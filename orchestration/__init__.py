"""
Orchestration Module

Talks to the Docker engine to find out how it is running (Swarm manager or
standalone) and which workloads are managed by swarm-patrol.
"""

from orchestration.mode import OrchestrationMode, detect_mode
from orchestration.discovery import WorkloadDiscovery

__all__ = [
    'OrchestrationMode',
    'detect_mode',
    'WorkloadDiscovery',
]
