"""
Queue layer: copy-on-write work item state, rate-limit window and the dispatcher.
"""

from labsupply.queue.controller import ControllerEvent, QueueController
from labsupply.queue.state import WorkQueue
from labsupply.queue.throttle import DispatchWindow

__all__ = [
    "ControllerEvent",
    "DispatchWindow",
    "QueueController",
    "WorkQueue",
]
