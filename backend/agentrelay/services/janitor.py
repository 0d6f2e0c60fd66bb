"""SessionJanitor: periodic reconciliation of sessions, quota slots and workers.

Runs as an asyncio.Task started in the application lifespan. Each pass:
  1. deletes ledger records idle past the timeout (keyed on lastActivityAt)
  2. deletes ended records past the completed-session retention
  3. releases quota slots for reaped sessions, for slots whose lease expired,
     and for slots with no ledger record behind them
  4. shuts down workers that have been idle past the timeout

Sessions whose worker is mid-turn are skipped by every step.

Failures in one pass are logged and the loop keeps going.
"""

import asyncio
from datetime import datetime

import structlog

from agentrelay.quota.tracker import QuotaTracker
from agentrelay.sessions.ledger import SessionLedger
from agentrelay.worker.registry import WorkerRegistry

logger = structlog.get_logger(__name__)


class SessionJanitor:
    def __init__(
        self,
        ledger: SessionLedger,
        quota: QuotaTracker,
        registry: WorkerRegistry,
        interval: float = 300.0,
    ) -> None:
        self.ledger = ledger
        self.quota = quota
        self.registry = registry
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def run_once(self, now: datetime | None = None) -> dict[str, int]:
        """One reconciliation pass. Returns counts per action for logging and tests."""
        busy = self.registry.busy_sessions()
        idle = await self.ledger.sweep_idle(now, keep=busy)
        completed = await self.ledger.cleanup_completed(now, keep=busy)

        for session_id in idle + completed:
            await self.quota.end_session(session_id)
            self.registry.shutdown(session_id)

        expired_slots = await self.quota.reap_stale(keep=busy)

        orphaned = 0
        for session_id in await self.quota.active_sessions():
            if session_id not in busy and await self.ledger.get(session_id) is None:
                await self.quota.end_session(session_id)
                orphaned += 1

        idle_workers = self.registry.reap_idle(self.ledger.idle_timeout)

        summary = {
            "idle_sessions": len(idle),
            "completed_sessions": len(completed),
            "expired_slots": expired_slots,
            "orphaned_slots": orphaned,
            "idle_workers": len(idle_workers),
        }
        if any(summary.values()):
            logger.info("janitor_pass_complete", **summary)
        return summary

    async def run(self) -> None:
        """Loop forever. Intended to run as ``asyncio.create_task(janitor.run())``."""
        logger.info("janitor_started", interval_seconds=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception as exc:
                logger.warning("janitor_pass_failed", error=str(exc), error_type=type(exc).__name__)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="session-janitor")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
