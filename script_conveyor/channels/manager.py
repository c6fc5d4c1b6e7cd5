"""Push channel manager for live generation progress.

Holds the in-process registry of subscriber sinks keyed by subject or by
job and fans typed events out to them. Nothing here is persisted and no
event history is kept: a late subscriber gets a fresh snapshot instead.
"""

import logging
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

# Event names
RUNNING_STATE = "running_state"
DRAFT_STARTED = "draft_started"
DRAFT_THINKING = "draft_thinking"
DRAFT_COMPLETED = "draft_completed"
EVALUATION_STARTED = "evaluation_started"
EVALUATION_THINKING = "evaluation_thinking"
EVALUATION_COMPLETED = "evaluation_completed"
JOB_COMPLETED = "job_completed"
JOB_ERROR = "job_error"
LIMIT_REACHED = "limit_reached"
STATS = "stats"
CLOSED = "closed"


class Sink(Protocol):
    """Anything that can receive JSON messages; a FastAPI WebSocket fits."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


SnapshotProvider = Callable[[str], Awaitable[list[tuple[str, dict]]]]


def subject_key(subject_id: str) -> str:
    return f"subject:{subject_id}"


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


class ChannelManager:
    """Manages push subscriptions.

    All access happens on the event loop thread. Fan-out iterates over a
    copy of each key's sink list, so sinks may subscribe or drop out while
    a send is awaiting.
    """

    def __init__(self):
        """Initialize the channel manager."""
        self._sinks: dict[str, list[Sink]] = {}
        self._snapshot_provider: SnapshotProvider | None = None

    def set_snapshot_provider(self, provider: SnapshotProvider) -> None:
        """Set the callable that builds the on-connect snapshot for a key.

        Args:
            provider: Async callable returning ``(event, data)`` pairs.
        """
        self._snapshot_provider = provider

    async def subscribe(self, key: str, sink: Sink) -> None:
        """Register a sink and send it the current state of the key.

        A snapshot that ends with a ``closed`` event means the key is
        already finished; every sink under it is closed right away.

        Args:
            key: A ``subject:`` or ``job:`` key.
            sink: The connection to push to. Must already be accepted.
        """
        self._sinks.setdefault(key, []).append(sink)
        logger.debug("Sink subscribed to %s (%d total)", key, len(self._sinks[key]))

        if self._snapshot_provider is None:
            return
        for event, data in await self._snapshot_provider(key):
            if event == CLOSED:
                await self.close_all(key, data)
                return
            if not await self._send(key, sink, event, data):
                break

    def unsubscribe(self, key: str, sink: Sink) -> None:
        """Remove a sink. The key is dropped once its last sink is gone."""
        sinks = self._sinks.get(key)
        if not sinks:
            return
        if sink in sinks:
            sinks.remove(sink)
        if not sinks:
            del self._sinks[key]

    async def emit(self, key: str, event: str, data: dict | None = None) -> int:
        """Send an event to every sink under a key.

        Sinks that fail to receive are pruned; the others still get it.

        Returns:
            Number of sinks the event was delivered to.
        """
        delivered = 0
        for sink in list(self._sinks.get(key, [])):
            if await self._send(key, sink, event, data or {}):
                delivered += 1
        return delivered

    async def close_all(self, key: str, data: dict | None = None) -> None:
        """Send a terminal event and close every connection for a key."""
        sinks = self._sinks.pop(key, [])
        for sink in sinks:
            try:
                await sink.send_json({"event": CLOSED, "data": data or {}})
                await sink.close()
            except Exception as e:
                logger.debug("Error closing sink for %s: %s", key, e)
        if sinks:
            logger.debug("Closed %d sinks for %s", len(sinks), key)

    async def _send(self, key: str, sink: Sink, event: str, data: dict) -> bool:
        try:
            await sink.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.debug("Dropping sink for %s after send failure: %s", key, e)
            self.unsubscribe(key, sink)
            return False

    def is_subscribed(self, key: str, sink: Sink) -> bool:
        return sink in self._sinks.get(key, [])

    def subscriber_count(self, key: str) -> int:
        return len(self._sinks.get(key, []))

    @property
    def connection_count(self) -> int:
        """Get the number of active sinks across all keys."""
        return sum(len(sinks) for sinks in self._sinks.values())
