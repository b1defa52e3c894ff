"""
Updates Module

Image drift detection and reconciliation.

Architecture:
- RegistryAdapter: resolves tag -> digest against the registry
- Reconciler: per-workload update/verify/fallback state machine
- SwarmServiceUpdater: Docker SDK mutations for Swarm services
- PollScheduler (updates.scheduler): runs a reconciliation pass per tick
"""

from updates.image_ref import ImageReference, parse_image_reference, format_image_reference
from updates.registry_adapter import RegistryAdapter
from updates.reconciler import Reconciler
from updates.service_updater import SwarmServiceUpdater
from updates.types import (
    ManagedWorkload,
    ReconciliationOutcome,
    ReconciliationResult,
    RegistryCredential,
    RolloutVerification,
    WorkloadKind,
)

__all__ = [
    'ImageReference',
    'parse_image_reference',
    'format_image_reference',
    'RegistryAdapter',
    'Reconciler',
    'SwarmServiceUpdater',
    'ManagedWorkload',
    'ReconciliationOutcome',
    'ReconciliationResult',
    'RegistryCredential',
    'RolloutVerification',
    'WorkloadKind',
]
