"""
Hosting QueueControllers for the Streamlit app.

Streamlit reruns the script on every interaction, so controllers live on a
private asyncio loop in a daemon thread. One EventLoopThread serves the
whole process; ControllerRegistry keeps one BackgroundController per browser
session and releases sessions that stop checking in. Mutating calls are
marshalled onto the loop; snapshot and status reads return immutable objects.
"""

import asyncio
import threading
import time
from typing import Any, Coroutine, Dict, List, Optional

from labsupply.config import Settings
from labsupply.extraction import ExtractionClient
from labsupply.logger import get_logger
from labsupply.models import ControllerStatus, ImageUpload, WorkItem
from labsupply.queue import QueueController
from labsupply.queue.controller import Extractor
from labsupply.queue.state import Snapshot

logger = get_logger("labsupply.app.runner")


class EventLoopThread:
    """An asyncio event loop running forever on a daemon thread."""

    def __init__(self, name: str = "queue-controller-loop", call_timeout: float = 10.0):
        self.call_timeout = call_timeout
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    @property
    def running(self) -> bool:
        return self.thread.is_alive() and not self.loop.is_closed()

    def call(self, coro: Coroutine[Any, Any, Any]) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout=self.call_timeout)

    def shutdown(self) -> None:
        if not self.running:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=self.call_timeout)
        if self.thread.is_alive():
            logger.warning("Event loop thread %s did not stop within %ss", self.thread.name, self.call_timeout)
            return
        self.loop.close()
        logger.info("Event loop thread %s stopped", self.thread.name)


class BackgroundController:
    """
    A QueueController driven from another thread.

    Without *loop_thread* the controller gets a loop of its own, which
    shutdown() stops and joins; with one, shutdown() only stops the
    controller and leaves the shared loop running.
    """

    def __init__(
        self,
        settings: Settings,
        extractor: Optional[Extractor] = None,
        call_timeout: float = 10.0,
        loop_thread: Optional[EventLoopThread] = None,
    ):
        if extractor is None:
            extractor = ExtractionClient().extract
        self._owns_loop = loop_thread is None
        self._loop_thread = loop_thread or EventLoopThread(call_timeout=call_timeout)
        self.controller = QueueController.from_settings(extractor, settings)
        self.last_seen = time.monotonic()
        self.closed = False
        self._loop_thread.call(self.controller.start())

    @property
    def loop_thread(self) -> EventLoopThread:
        return self._loop_thread

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    async def _submit(self, uploads: List[ImageUpload]) -> List[WorkItem]:
        return self.controller.submit(uploads)

    async def _delete(self, item_id: str) -> bool:
        return self.controller.delete(item_id)

    async def _cancel(self, item_id: str) -> bool:
        return self.controller.cancel(item_id)

    def submit(self, uploads: List[ImageUpload]) -> List[WorkItem]:
        return self._loop_thread.call(self._submit(uploads))

    def delete(self, item_id: str) -> bool:
        return self._loop_thread.call(self._delete(item_id))

    def cancel(self, item_id: str) -> bool:
        return self._loop_thread.call(self._cancel(item_id))

    def snapshot(self) -> Snapshot:
        return self.controller.queue.snapshot()

    def status(self) -> ControllerStatus:
        return self.controller.status()

    def shutdown(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if self._loop_thread.running:
                self._loop_thread.call(self.controller.stop())
        finally:
            if self._owns_loop:
                self._loop_thread.shutdown()
            logger.info("Background controller shut down")


class ControllerRegistry:
    """
    One shared event loop thread, one BackgroundController per session.

    Sessions call get() on every rerun; reap_idle() shuts down controllers
    not seen for *idle_seconds*, dropping their queued images.
    """

    def __init__(
        self,
        settings: Settings,
        extractor: Optional[Extractor] = None,
        idle_seconds: float = 1800.0,
        call_timeout: float = 10.0,
    ):
        self.settings = settings
        self.idle_seconds = idle_seconds
        # One client for every session; its HTTP pool is bound to the shared loop
        self._extractor = extractor or ExtractionClient().extract
        self.loop_thread = EventLoopThread(call_timeout=call_timeout)
        self._sessions: Dict[str, BackgroundController] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, session_id: str) -> BackgroundController:
        with self._lock:
            controller = self._sessions.get(session_id)
            if controller is None or controller.closed:
                controller = BackgroundController(
                    self.settings,
                    extractor=self._extractor,
                    call_timeout=self.loop_thread.call_timeout,
                    loop_thread=self.loop_thread,
                )
                self._sessions[session_id] = controller
                logger.info("Started controller for session %s (sessions=%d)", session_id, len(self._sessions))
            controller.touch()
            return controller

    def release(self, session_id: str) -> bool:
        with self._lock:
            controller = self._sessions.pop(session_id, None)
        if controller is None:
            return False
        controller.shutdown()
        logger.info("Released controller for session %s", session_id)
        return True

    def reap_idle(self, now: Optional[float] = None) -> List[str]:
        """Release every session idle longer than idle_seconds; returns their ids."""
        now = time.monotonic() if now is None else now
        with self._lock:
            stale = [sid for sid, c in self._sessions.items() if now - c.last_seen > self.idle_seconds]
        for session_id in stale:
            self.release(session_id)
        return stale

    def shutdown(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.release(session_id)
        self.loop_thread.shutdown()
