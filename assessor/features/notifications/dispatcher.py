"""Fire-and-forget notification hand-off.

Delivery (email, in-app) belongs to other services. Sinks registered here
receive events after the enrollment has been saved; a failing sink is logged
and never reaches the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from assessor.common.utils import current_timestamp

logger = logging.getLogger("notifications")

ASSESSMENT_PASSED = "assessment_passed"
ASSESSMENT_FAILED = "assessment_failed"
CERTIFICATE_ISSUED = "certificate_issued"
ESSAY_REVIEW_REQUESTED = "essay_review_requested"
ESSAY_GRADED = "essay_graded"


@dataclass
class NotificationEvent:
    kind: str
    enrollment_id: str
    student_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=current_timestamp)


NotificationSink = Callable[[NotificationEvent], Awaitable[None]]


async def log_sink(event: NotificationEvent) -> None:
    logger.info(
        "notification kind=%s enrollment_id=%s student_id=%s",
        event.kind,
        event.enrollment_id,
        event.student_id,
    )


class NotificationDispatcher:
    def __init__(self, sinks: Optional[List[NotificationSink]] = None) -> None:
        self._sinks: List[NotificationSink] = list(sinks) if sinks is not None else [log_sink]
        self._pending: Set[asyncio.Task] = set()

    def register(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    async def _deliver(self, sink: NotificationSink, event: NotificationEvent) -> None:
        try:
            await sink(event)
        except Exception:
            logger.exception("notification sink failed kind=%s enrollment_id=%s", event.kind, event.enrollment_id)

    def dispatch(self, event: NotificationEvent) -> None:
        """Schedule delivery on the running loop and return immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("no running loop; dropping notification kind=%s", event.kind)
            return
        for sink in self._sinks:
            task = loop.create_task(self._deliver(sink, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


__all__ = [
    "ASSESSMENT_FAILED",
    "ASSESSMENT_PASSED",
    "CERTIFICATE_ISSUED",
    "ESSAY_GRADED",
    "ESSAY_REVIEW_REQUESTED",
    "NotificationDispatcher",
    "NotificationEvent",
    "get_notification_dispatcher",
    "log_sink",
]
