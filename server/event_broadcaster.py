"""
Auto Mode Event Broadcaster
===========================

Fans auto mode lifecycle events out to connected WebSocket clients.

The broadcaster's publish() method is the event sink handed to
AutoModeService. Lifecycle events (feature start/complete, phase, tool,
loop complete, error) are always delivered. Progress events carry raw
delegate text and can arrive very fast, so they are throttled per feature
(max 20 events/second by default). Throttled text is buffered, not dropped:
it is prepended to the feature's next delivered progress event, or sent as
one combined progress event before any other event for that feature.
Engine status lines (progress with statusLine set) bypass the throttle.

A client whose send fails is dropped; a failing client never blocks the
others or the feature execution that produced the event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Protocol

from autoforge import events

logger = logging.getLogger(__name__)

# Event types subject to throttling
THROTTLED_EVENT_TYPES = frozenset({
    events.EVENT_PROGRESS,
})

# Events after which a feature's throttle window is discarded
TERMINAL_EVENT_TYPES = frozenset({
    events.EVENT_FEATURE_COMPLETE,
    events.EVENT_ERROR,
})

MAX_EVENTS_PER_SECOND = 20
THROTTLE_WINDOW_SECONDS = 1.0


class EventClient(Protocol):
    async def send_json(self, data: Any) -> None: ...


class EventThrottler:
    """
    Throttles events to max N per window per feature id.

    Uses a sliding window of timestamps per feature.

    Attributes:
        max_events_per_second: Maximum events allowed per window per feature
        window_seconds: Length of the sliding window
    """

    def __init__(
        self,
        max_events_per_second: int = MAX_EVENTS_PER_SECOND,
        window_seconds: float = THROTTLE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_events_per_second = max_events_per_second
        self.window_seconds = window_seconds
        self._clock = clock
        self._event_timestamps: dict[str, list[float]] = defaultdict(list)

    def should_throttle(self, feature_id: str) -> bool:
        """
        Check if an event for this feature should be held back.

        Returns:
            True if the event should be buffered, False if it should pass
        """
        now = self._clock()
        cutoff = now - self.window_seconds
        timestamps = [ts for ts in self._event_timestamps[feature_id] if ts > cutoff]
        self._event_timestamps[feature_id] = timestamps

        if len(timestamps) >= self.max_events_per_second:
            logger.debug(
                "Throttling progress for %s: %d events in last %ss",
                feature_id, len(timestamps), self.window_seconds,
            )
            return True

        timestamps.append(now)
        return False

    def clear_feature(self, feature_id: str) -> None:
        self._event_timestamps.pop(feature_id, None)

    def reset(self) -> None:
        self._event_timestamps.clear()


class AutoModeEventBroadcaster:
    """
    Broadcasts auto mode events to every connected client.

    Usage:
        broadcaster = AutoModeEventBroadcaster()
        broadcaster.connect(websocket)

        await service.run_feature(project_dir, feature_id, sink=broadcaster.publish)
    """

    def __init__(self, throttler: EventThrottler | None = None):
        self._clients: set[EventClient] = set()
        self._throttler = throttler or EventThrottler()
        self._pending_text: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def connect(self, client: EventClient) -> None:
        self._clients.add(client)
        logger.debug("Event client connected (%d total)", len(self._clients))

    def disconnect(self, client: EventClient) -> None:
        self._clients.discard(client)
        logger.debug("Event client disconnected (%d total)", len(self._clients))

    async def publish(self, event: dict[str, Any]) -> bool:
        """
        Deliver one event to every client.

        Returns:
            True if the event was sent to at least one client
        """
        event_type = event.get("type")
        feature_id = event.get("featureId")

        if feature_id is not None:
            if event_type in THROTTLED_EVENT_TYPES and not event.get("statusLine"):
                if self._throttler.should_throttle(feature_id):
                    self._pending_text.setdefault(feature_id, []).append(event.get("content", ""))
                    return False
                pending = self._pending_text.pop(feature_id, None)
                if pending:
                    event = {**event, "content": "".join(pending) + event.get("content", "")}
            else:
                await self.flush(feature_id)

            if event_type in TERMINAL_EVENT_TYPES:
                self._throttler.clear_feature(feature_id)

        return await self._send(event)

    async def flush(self, feature_id: str) -> bool:
        """Send a feature's buffered progress text as one progress event."""
        pending = self._pending_text.pop(feature_id, None)
        if not pending:
            return False
        return await self._send(events.progress(feature_id, "".join(pending)))

    async def _send(self, event: dict[str, Any]) -> bool:
        if not self._clients:
            return False

        delivered = False
        async with self._lock:
            for client in list(self._clients):
                try:
                    await client.send_json(event)
                    delivered = True
                except Exception as e:
                    logger.warning("Dropping event client after send failure: %s", e)
                    self._clients.discard(client)

        return delivered

    def reset(self) -> None:
        """Drop all clients, throttle state and buffered text."""
        self._clients.clear()
        self._pending_text.clear()
        self._throttler.reset()
