"""
REALTIME NOTIFICATIONS

Fire-and-forget publishing of record events to per-user channels.

RULES:
- Publishing must NOT block or fail the write that triggered it
- Payload building and delivery errors are logged, never raised
- The transport is pluggable; without one, events are only logged
"""

from typing import Optional, Dict, Any, Callable, Awaitable, Set, Union
import asyncio
import logging

logger = logging.getLogger(__name__)

Transport = Callable[[str, str, Dict[str, Any]], Awaitable[None]]
Payload = Union[Dict[str, Any], Callable[[], Dict[str, Any]]]


class NotificationService:
    """Schedules notification delivery on the running event loop"""

    def __init__(self, transport: Optional[Transport] = None):
        self.transport = transport
        self._pending: Set[asyncio.Task] = set()

    def publish(self, channel: str, event: str, payload: Payload):
        """
        Schedule delivery and return immediately.

        `payload` may be a callable; it is then built inside the delivery
        task so serialization failures stay out of the caller.
        """
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(channel, event, payload))
        except RuntimeError:
            logger.warning(f"[NOTIFY] No running loop, dropped {event} on {channel}")
            return None

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, channel: str, event: str, payload: Payload):
        try:
            message = payload() if callable(payload) else payload
            if self.transport is None:
                logger.debug(f"[NOTIFY] {event} on {channel} (no transport configured)")
                return
            await self.transport(channel, event, message)
            logger.debug(f"[NOTIFY] Delivered {event} on {channel}")
        except Exception as e:
            logger.error(f"[NOTIFY] Failed to deliver {event} on {channel}: {str(e)}")

    async def drain(self):
        """Wait for in-flight deliveries (shutdown and tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
