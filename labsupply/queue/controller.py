"""
QueueController: event-driven dispatcher for label extractions.

Handles:
- bounded admission (at most ``concurrency_limit`` requests in flight)
- cooldown after every ``pause_threshold`` finished requests
- per-request timeout and cancellation
- per-item error recovery

Every change of the work queue and every pause tick posts an event; the
run loop reacts to each event by recomputing the dispatch decision.
"""

from __future__ import annotations

import asyncio
from functools import partial
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from labsupply.config import Settings
from labsupply.errors import ExtractionError
from labsupply.logger import get_logger
from labsupply.models import ControllerStatus, ExtractedFields, ImageUpload, ItemStatus, WorkItem
from labsupply.queue.state import Snapshot, WorkQueue
from labsupply.queue.throttle import DispatchWindow

logger = get_logger(__name__)

Extractor = Callable[[ImageUpload], Awaitable[ExtractedFields]]


class ControllerEvent(str, Enum):
    ITEMS_CHANGED = "items_changed"
    PAUSE_TICK = "pause_tick"
    STOP = "stop"


class QueueController:
    """
    Drives queued work items through extraction on one asyncio event loop.

    ``extractor`` is any coroutine function taking an ImageUpload and
    returning ExtractedFields; ``ExtractionClient.extract`` in production.
    """

    def __init__(
        self,
        extractor: Extractor,
        queue: Optional[WorkQueue] = None,
        *,
        concurrency_limit: int = 2,
        pause_threshold: int = 8,
        pause_duration: int = 70,
        tick_seconds: float = 1.0,
        request_timeout: Optional[float] = 120.0,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if request_timeout is not None and request_timeout <= 0:
            raise ValueError("request_timeout must be > 0, or None for no limit")
        self._extractor = extractor
        self.queue = queue or WorkQueue()
        self.concurrency_limit = concurrency_limit
        self.tick_seconds = tick_seconds
        self.request_timeout = request_timeout
        self.window = DispatchWindow(pause_threshold, pause_duration)

        self._events: Optional[asyncio.Queue] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._pause_task: Optional[asyncio.Task] = None
        self._inflight: Dict[str, asyncio.Task] = {}
        self._idle: Optional[asyncio.Event] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._stopping = False
        self.total_completed = 0

    @classmethod
    def from_settings(cls, extractor: Extractor, settings: Settings, queue: Optional[WorkQueue] = None) -> "QueueController":
        return cls(
            extractor,
            queue,
            concurrency_limit=settings.CONCURRENCY_LIMIT,
            pause_threshold=settings.PAUSE_THRESHOLD,
            pause_duration=settings.PAUSE_DURATION,
            tick_seconds=settings.PAUSE_TICK_SECONDS,
            request_timeout=settings.EXTRACTION_TIMEOUT,
        )

    # -- lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Start the dispatch loop on the running event loop."""
        if self.running:
            return
        self._stopping = False
        self._events = asyncio.Queue()
        self._idle = asyncio.Event()
        self._unsubscribe = self.queue.subscribe(self._on_items_changed)
        self._loop_task = asyncio.create_task(self._run(), name="queue-controller")
        if self.window.paused:
            self._pause_task = asyncio.create_task(self._run_pause(), name="queue-pause")
        self._post(ControllerEvent.ITEMS_CHANGED)
        logger.info(
            "Queue controller started | concurrency=%d | pause_threshold=%d | pause_duration=%d | timeout=%s",
            self.concurrency_limit,
            self.window.threshold,
            self.window.duration,
            self.request_timeout,
        )

    async def stop(self) -> None:
        """Cancel in-flight extractions and the pause timer, then end the loop."""
        if not self.running:
            return
        self._stopping = True
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if self._pause_task is not None:
            self._pause_task.cancel()
            tasks.append(self._pause_task)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._idle.set()

        self._post(ControllerEvent.STOP)
        await self._loop_task
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        logger.info("Queue controller stopped")

    async def run_until_idle(self) -> None:
        """Wait until nothing is queued and no extraction is in flight."""
        if not self.running:
            await self.start()
        await self._idle.wait()

    # -- operations ----------------------------------------------------------

    def submit(self, uploads: Iterable[ImageUpload]) -> List[WorkItem]:
        items = self.queue.enqueue(uploads)
        if items and self._idle is not None:
            self._idle.clear()
        return items

    def delete(self, item_id: str) -> bool:
        """
        Remove an item. An extraction already in flight keeps running and
        its result is discarded when it arrives.
        """
        return self.queue.delete(item_id)

    def cancel(self, item_id: str) -> bool:
        """Cancel the in-flight extraction for *item_id*; the item becomes ``error``."""
        task = self._inflight.get(item_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def status(self) -> ControllerStatus:
        counts = self.queue.counts()
        return ControllerStatus(
            paused=self.window.paused,
            countdown=self.window.countdown,
            in_flight=len(self._inflight),
            queued=counts[ItemStatus.QUEUED],
            loading=counts[ItemStatus.LOADING],
            done=counts[ItemStatus.DONE],
            error=counts[ItemStatus.ERROR],
            window_dispatched=self.window.dispatched,
            window_completed=self.window.completed,
        )

    # -- event loop ----------------------------------------------------------

    def _on_items_changed(self, _snapshot: Snapshot) -> None:
        self._post(ControllerEvent.ITEMS_CHANGED)

    def _post(self, event: ControllerEvent) -> None:
        if self._events is not None:
            self._events.put_nowait(event)

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            if event is ControllerEvent.STOP:
                break
            self._dispatch()

    def _dispatch(self) -> None:
        if self._stopping:
            return
        queued = self.queue.by_status(ItemStatus.QUEUED)
        slots = self.window.slots(self.concurrency_limit, len(self._inflight))

        for item in queued[:slots]:
            if self.queue.mark_loading(item.id) is None:
                continue
            self.window.record_dispatch()
            task = asyncio.create_task(self._extract(item), name=f"extract-{item.id}")
            task.add_done_callback(partial(self._on_task_done, item))
            self._inflight[item.id] = task
            logger.info(
                "Dispatched %s | in_flight=%d | window=%d/%s",
                item.filename,
                len(self._inflight),
                self.window.dispatched,
                self.window.threshold or "-",
            )

        if not self._inflight and not self.queue.by_status(ItemStatus.QUEUED):
            self._idle.set()
        else:
            self._idle.clear()

    async def _extract(self, item: WorkItem) -> None:
        try:
            fields = await asyncio.wait_for(self._extractor(item.image), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            logger.error("Extraction timed out for %s after %ss", item.filename, self.request_timeout)
            self._finish_error(item, f"Extraction timed out after {self.request_timeout:g}s")
        except asyncio.CancelledError:
            logger.warning("Extraction cancelled for %s", item.filename)
            self._finish_error(item, "Extraction cancelled")
            raise
        except ExtractionError as exc:
            logger.error("Extraction failed for %s: %s", item.filename, exc)
            self._finish_error(item, str(exc))
        except Exception as exc:
            logger.error("Unexpected extraction failure for %s: %s", item.filename, exc, exc_info=True)
            self._finish_error(item, f"{type(exc).__name__}: {exc}")
        else:
            if self.queue.mark_done(item.id, fields) is None:
                logger.info("Discarding result for deleted item %s", item.filename)
            else:
                logger.info("Extraction done for %s", item.filename)
        finally:
            self._complete(item)

    def _on_task_done(self, item: WorkItem, _task: asyncio.Task) -> None:
        # task cancelled before its coroutine ever ran
        if item.id in self._inflight:
            self._finish_error(item, "Extraction cancelled")
            self._complete(item)

    def _finish_error(self, item: WorkItem, message: str) -> None:
        if self.queue.mark_error(item.id, message) is None:
            logger.info("Discarding error for deleted item %s", item.filename)

    def _complete(self, item: WorkItem) -> None:
        self._inflight.pop(item.id, None)
        self.total_completed += 1
        if self.window.record_completion() and not self._stopping:
            self._pause_task = asyncio.create_task(self._run_pause(), name="queue-pause")
        # a deleted item's completion does not change the queue, wake the loop explicitly
        self._post(ControllerEvent.ITEMS_CHANGED)

    async def _run_pause(self) -> None:
        while self.window.paused:
            await asyncio.sleep(self.tick_seconds)
            self.window.tick()
            self._post(ControllerEvent.PAUSE_TICK)
