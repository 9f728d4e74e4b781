"""
In-process registry of live push channels (WebSocket connections).

Purpose:
- Map subscriber_id -> set of channel handles (one per device/tab)
- Fan a payload out to every handle of one subscriber
- Drop handles that fail or time out, without affecting the others

Notes:
- Process-local and volatile: on restart every client has to reconnect.
  The persisted notifications table is the source of truth; this is only a
  delivery shortcut on top of it.
- Mutations happen under an asyncio.Lock; sends run outside the lock on a
  snapshot of the handle set so a slow client never blocks registration.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

logger = logging.getLogger(__name__)


class ChannelHandle(Protocol):
    """Anything that can receive a JSON frame (starlette WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class DeliveryReport:
    delivered: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class ChannelRegistry:
    def __init__(self, push_timeout: float = 2.0):
        self.push_timeout = push_timeout
        self._channels: Dict[str, Set[ChannelHandle]] = {}
        self._owners: Dict[ChannelHandle, str] = {}
        self._lock = asyncio.Lock()

    async def register(self, subscriber_id: str, handle: ChannelHandle) -> None:
        async with self._lock:
            previous = self._owners.get(handle)
            if previous is not None and previous != subscriber_id:
                self._discard(previous, handle)
            self._channels.setdefault(subscriber_id, set()).add(handle)
            self._owners[handle] = subscriber_id
        logger.info("Channel registered for %s", subscriber_id)

    async def unregister(self, handle: ChannelHandle) -> bool:
        async with self._lock:
            subscriber_id = self._owners.pop(handle, None)
            if subscriber_id is None:
                return False
            self._discard(subscriber_id, handle)
        logger.info("Channel unregistered for %s", subscriber_id)
        return True

    def _discard(self, subscriber_id: str, handle: ChannelHandle) -> None:
        handles = self._channels.get(subscriber_id)
        if not handles:
            return
        handles.discard(handle)
        if not handles:
            del self._channels[subscriber_id]

    async def channels_for(self, subscriber_id: str) -> Set[ChannelHandle]:
        async with self._lock:
            return set(self._channels.get(subscriber_id, ()))

    async def connection_count(self, subscriber_id: Optional[str] = None) -> int:
        async with self._lock:
            if subscriber_id is not None:
                return len(self._channels.get(subscriber_id, ()))
            return len(self._owners)

    async def push(self, subscriber_id: str, payload: Any) -> DeliveryReport:
        """
        Send payload to every channel of subscriber_id.

        Never raises: each send is bounded by push_timeout, failing handles
        are unregistered and counted in the report.
        """
        report = DeliveryReport()
        handles = await self.channels_for(subscriber_id)
        if not handles:
            return report

        ordered = list(handles)
        results = await asyncio.gather(
            *(self._send_one(h, payload) for h in ordered),
            return_exceptions=True,
        )
        for handle, result in zip(ordered, results):
            if isinstance(result, BaseException):
                report.failed += 1
                report.errors.append(f"{type(result).__name__}: {result}")
                logger.warning("Push to %s failed (%r); dropping channel", subscriber_id, result)
                if await self.unregister(handle):
                    await self._close(handle)
            else:
                report.delivered += 1
        return report

    async def _send_one(self, handle: ChannelHandle, payload: Any) -> None:
        await asyncio.wait_for(handle.send_json(payload), timeout=self.push_timeout)

    async def _close(self, handle: ChannelHandle) -> None:
        try:
            await asyncio.wait_for(handle.close(), timeout=self.push_timeout)
        except Exception as e:
            logger.debug("Ignoring error while closing channel: %s", e)

    async def close_all(self) -> None:
        async with self._lock:
            handles = list(self._owners)
            self._owners.clear()
            self._channels.clear()
        for handle in handles:
            await self._close(handle)
        if handles:
            logger.info("Closed %d live channels", len(handles))
