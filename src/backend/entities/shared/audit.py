"""
Fire-and-forget dispatch of audit events.

Events are handed to the ``AuditSink`` on background tasks so a slow or
failing sink can never delay or fail the primary operation.
"""

import asyncio
import logging
import time
from typing import Any

from entities.shared.protocols import AuditSink

logger = logging.getLogger(__name__)


class AuditDispatcher:
    """Schedules ``AuditSink.record`` calls without awaiting them.

    Args:
        sink: Destination for audit events.
    """

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink
        self._background_tasks: set[asyncio.Task[None]] = set()

    def dispatch(self, event_name: str, **payload: Any) -> None:
        """Queue one event for delivery and return immediately.

        Outside a running event loop the event is dropped with a warning.

        Args:
            event_name: Event kind, e.g. ``classification``.
            **payload: Event fields.
        """
        event = {"event": event_name, "timestamp": time.time(), **payload}
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError:
            logger.warning("No running event loop; dropping audit event %s", event_name)
            return
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _deliver(self, event: dict[str, Any]) -> None:
        """Background delivery. Errors are logged but never propagated."""
        try:
            await self._sink.record(event)
        except Exception:
            logger.warning("Audit sink failed for event %s", event.get("event"), exc_info=True)

    async def drain(self) -> None:
        """Wait for every in-flight event. Used at shutdown and in tests."""
        pending = list(self._background_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._background_tasks)
