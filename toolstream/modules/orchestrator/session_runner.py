"""
Session Runner - many agent sessions at once

Sessions run concurrently under AGENT_MAX_CONCURRENT_SESSIONS. Each one can
be cancelled by id (user abort); SESSION_HARD_TIMEOUT cancels it otherwise.

Usage:
    runner = SessionRunner(controller)
    session_id = runner.submit("Create src/App.tsx")
    result = await runner.wait(session_id)
"""

from typing import Dict, List, Optional
import asyncio
import uuid

from toolstream.core.config import settings
from toolstream.core.logging_config import logger
from toolstream.modules.orchestrator.goals import Goal
from toolstream.modules.orchestrator.loop_controller import LoopController, SessionResult


class SessionRunner:

    def __init__(
        self,
        controller: LoopController,
        max_concurrent: Optional[int] = None,
        hard_timeout: Optional[float] = None,
        max_results: Optional[int] = None,
    ):
        self.controller = controller
        self.max_concurrent = max_concurrent or settings.AGENT_MAX_CONCURRENT_SESSIONS
        self.hard_timeout = settings.SESSION_HARD_TIMEOUT if hard_timeout is None else hard_timeout
        self.max_results = max_results or settings.SESSION_RESULTS_RETAINED
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        # Unfinished sessions only; a task removes itself when it ends
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        # Insertion ordered, so the first key is the oldest result
        self._results: Dict[str, SessionResult] = {}
        self._active = 0

    @property
    def active_count(self) -> int:
        """Sessions currently holding a slot"""
        return self._active

    @property
    def pending_count(self) -> int:
        """Sessions submitted and not yet finished"""
        return len(self._tasks)

    @property
    def results(self) -> Dict[str, SessionResult]:
        return dict(self._results)

    def submit(self, request: str, goals: Optional[List[Goal]] = None) -> str:
        """Schedule a session; returns its id immediately"""
        session_id = str(uuid.uuid4())
        cancel_event = asyncio.Event()
        self._cancel_events[session_id] = cancel_event
        self._tasks[session_id] = asyncio.create_task(
            self._run(session_id, request, goals, cancel_event),
            name=f"runner-{session_id[:8]}",
        )
        logger.info(f"[SessionRunner] Submitted session {session_id}")
        return session_id

    async def _run(
        self,
        session_id: str,
        request: str,
        goals: Optional[List[Goal]],
        cancel_event: asyncio.Event,
    ) -> SessionResult:
        try:
            async with self._semaphore:
                self._active += 1
                try:
                    result = await self.controller.run(
                        request,
                        goals=goals,
                        cancel_event=cancel_event,
                        hard_timeout=self.hard_timeout,
                        session_id=session_id,
                    )
                finally:
                    self._active -= 1
                    self._cancel_events.pop(session_id, None)
            self._store_result(session_id, result)
            return result
        finally:
            self._tasks.pop(session_id, None)

    def _store_result(self, session_id: str, result: SessionResult) -> None:
        self._results[session_id] = result
        while len(self._results) > self.max_results:
            evicted = next(iter(self._results))
            del self._results[evicted]
            logger.debug(f"[SessionRunner] Dropped result of {evicted}")

    def cancel(self, session_id: str) -> bool:
        """
        Request cancellation of a running or queued session.

        Returns:
            False if the session is unknown or already finished
        """
        event = self._cancel_events.get(session_id)
        if event is None or event.is_set():
            return False
        logger.info(f"[SessionRunner] Cancel requested for {session_id}")
        event.set()
        return True

    async def wait(self, session_id: str) -> SessionResult:
        """
        Result of a session, waiting for it if it is still running.

        Raises:
            KeyError: unknown session, or its result was already dropped
        """
        if session_id in self._results:
            return self._results[session_id]
        task = self._tasks.get(session_id)
        if task is None:
            raise KeyError(session_id)
        return await task

    async def run_all(self, requests: List[str]) -> List[SessionResult]:
        """Submit every request and wait for all of them, in request order"""
        tasks = [self._tasks[self.submit(r)] for r in requests]
        return list(await asyncio.gather(*tasks))

    async def shutdown(self) -> None:
        """Cancel everything still running and wait for it to terminate"""
        for session_id in list(self._cancel_events):
            self.cancel(session_id)
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
