"""
Poll Scheduler

Drives one reconciliation pass over all managed workloads per tick, then
sleeps for the poll interval. Owns the stop signal: stop() wakes the sleep,
cuts the rollout wait short, aborts in-flight registry calls and prevents a
new tick or workload from starting. An in-flight Docker update call is left
to finish.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from orchestration.discovery import WorkloadDiscovery
from orchestration.mode import OrchestrationMode
from updates.errors import EnumerationError, ShutdownRequested
from updates.reconciler import Reconciler
from updates.types import ReconciliationOutcome, ReconciliationResult
from utils.cancellation import sleep_or_stop

logger = logging.getLogger(__name__)

_STAT_KEYS = {
    ReconciliationOutcome.NO_DRIFT: "up_to_date",
    ReconciliationOutcome.UPDATED: "updated",
    ReconciliationOutcome.UPDATED_UNVERIFIED: "unverified",
    ReconciliationOutcome.UPDATED_WITH_FALLBACK: "fallback",
    ReconciliationOutcome.UPDATE_FAILED: "failed",
    ReconciliationOutcome.DIGEST_RESOLUTION_FAILED: "failed",
    ReconciliationOutcome.MANUAL_ACTION_REQUIRED: "manual",
}


class PollScheduler:
    """
    Runs reconciliation ticks at a fixed interval until stopped.

    Workloads within a tick are processed strictly one after another; the
    next workload starts only after the previous one's update, verification
    and fallback have finished.
    """

    def __init__(
        self,
        discovery: WorkloadDiscovery,
        reconciler: Reconciler,
        mode: OrchestrationMode,
        interval: float,
        stop_event: Optional[asyncio.Event] = None
    ):
        self.discovery = discovery
        self.reconciler = reconciler
        self.mode = mode
        self.interval = interval
        self.stop_event = stop_event or asyncio.Event()
        self.last_results: List[ReconciliationResult] = []

    def stop(self):
        """Request shutdown. Safe to call from a signal handler."""
        if not self.stop_event.is_set():
            logger.info("Stop requested, finishing current step")
        self.stop_event.set()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    async def run(self):
        """Main loop: tick, sleep, repeat until stopped."""
        logger.info(f"Poller started (mode: {self.mode.value}, interval: {self.interval}s)")

        while not self.stopped:
            try:
                await self.run_tick()
            except ShutdownRequested:
                logger.info("Tick interrupted by shutdown")
                break
            except EnumerationError as e:
                logger.error(f"Polling error, retrying next tick: {e}")
            except Exception as e:
                logger.error(f"Polling error: {e}", exc_info=True)

            if await sleep_or_stop(self.stop_event, self.interval):
                break

        logger.info("Poller stopping")

    async def run_tick(self) -> Dict[str, int]:
        """
        Run one pass over all managed workloads.

        Returns:
            Dict with keys: total, up_to_date, updated, unverified, fallback,
            failed, manual, skipped

        Raises:
            EnumerationError: workloads could not be listed
            ShutdownRequested: stop signal fired during a registry call
        """
        stats = {
            "total": 0,
            "up_to_date": 0,
            "updated": 0,
            "unverified": 0,
            "fallback": 0,
            "failed": 0,
            "manual": 0,
            "skipped": 0,
        }
        self.last_results = []

        workloads = await self.discovery.list_workloads(self.mode)
        stats["total"] = len(workloads)
        logger.info(f"Found {len(workloads)} workload(s) to check")

        for index, workload in enumerate(workloads):
            if self.stopped:
                stats["skipped"] += len(workloads) - index
                logger.info(f"Stop requested, skipping {len(workloads) - index} remaining workload(s)")
                break

            result = await self.reconciler.reconcile(workload)
            self.last_results.append(result)
            stats[_STAT_KEYS[result.outcome]] += 1

        logger.info(f"Poll tick complete: {stats}")
        return stats
