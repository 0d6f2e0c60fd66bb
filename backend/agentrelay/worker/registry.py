"""Router from session id to that session's ComputeWorker."""

import asyncio
import time
from collections.abc import Callable

import structlog

from agentrelay.sse.streamer import SSEStreamer
from agentrelay.worker.compute import ComputeWorker, worker_name
from agentrelay.worker.schemas import TurnRequest

logger = structlog.get_logger(__name__)


class WorkerRegistry:
    """Holds one ComputeWorker per session, created on first dispatch.

    Workers are keyed by ``interactive-{session_id}`` and never reused for
    another session.
    """

    def __init__(self, factory: Callable[[str], ComputeWorker]):
        self._factory = factory
        self._workers: dict[str, ComputeWorker] = {}
        self._shutdowns: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._workers)

    def get(self, session_id: str) -> ComputeWorker | None:
        return self._workers.get(worker_name(session_id))

    def get_or_create(self, session_id: str) -> ComputeWorker:
        name = worker_name(session_id)
        worker = self._workers.get(name)
        if worker is None:
            worker = self._factory(session_id)
            self._workers[name] = worker
            logger.info("worker_created", session_id=session_id, worker=name)
        return worker

    async def dispatch(self, request: TurnRequest) -> SSEStreamer:
        """Hand a turn to the session's worker.

        Raises:
            SessionBusyError: the worker is mid-turn
        """
        return await self.get_or_create(request.session_id).dispatch(request)

    def busy_sessions(self) -> set[str]:
        """Session ids whose worker is mid-turn."""
        return {w.session_id for w in self._workers.values() if w.busy}

    def shutdown(self, session_id: str) -> None:
        """Forget the worker and tear it down in the background.

        Not awaited. A busy worker stays registered until its turn ends, so a
        follow-up request gets a busy error instead of a second worker.
        """
        name = worker_name(session_id)
        worker = self._workers.get(name)
        if worker is None:
            return
        if not worker.busy:
            del self._workers[name]
        task = asyncio.create_task(self._teardown(name, worker))
        self._shutdowns.add(task)
        task.add_done_callback(self._shutdowns.discard)

    async def _teardown(self, name: str, worker: ComputeWorker) -> None:
        try:
            while worker.busy:
                await worker.wait_idle()
            if self._workers.get(name) is worker:
                del self._workers[name]
            await worker.teardown()
            logger.info("worker_shutdown", worker=worker.name)
        except Exception as exc:
            logger.warning("worker_shutdown_failed", worker=worker.name, error=str(exc))

    def reap_idle(self, idle_seconds: float) -> list[str]:
        """Shut down workers idle for longer than ``idle_seconds``. Returns their session ids."""
        cutoff = time.monotonic() - idle_seconds
        idle = [w.session_id for w in self._workers.values() if not w.busy and w.last_used < cutoff]
        for session_id in idle:
            self.shutdown(session_id)
        return idle

    async def close(self) -> None:
        """Tear down every worker (application shutdown)."""
        for session_id in [w.session_id for w in self._workers.values()]:
            self.shutdown(session_id)
        if self._shutdowns:
            await asyncio.gather(*self._shutdowns, return_exceptions=True)
