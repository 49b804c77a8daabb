"""Per-session progress broadcasting.

Delivery is best effort: each subscriber has a bounded buffer and events are
dropped when it is full. Clients that connect late or fall behind should poll
the collection status for the authoritative state.
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional

from hanzicards.models.events import EventType, ProgressEvent

logger = logging.getLogger(__name__)

# Marks the end of a subscription
_CLOSED = None

# A collection that starts work again reopens its session
REOPENING_EVENTS = {EventType.IMPORT_STARTED, EventType.ENRICHMENT_STARTED}


class Subscription:
    """One client's view of a session channel."""

    def __init__(self, publisher: "ProgressPublisher", session_id: str, buffer: int):
        self.publisher = publisher
        self.session_id = session_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=buffer)
        self.dropped = 0
        self.closed = False

    def offer(self, event: Optional[ProgressEvent]) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            if event is _CLOSED:
                # Make room so the close marker always gets through
                self.queue.get_nowait()
                self.queue.put_nowait(event)
            else:
                self.dropped += 1

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        try:
            while True:
                event = await self.queue.get()
                if event is _CLOSED:
                    return
                yield event
        finally:
            self.close()

    def close(self) -> None:
        """Disconnect this client."""
        if not self.closed:
            self.closed = True
            self.publisher._unsubscribe(self)


class ProgressPublisher:
    """Broadcast channel per session id."""

    def __init__(self, buffer: int = 100):
        self.buffer = buffer
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)
        self._closed_sessions: set = set()

    def subscribe(self, session_id: str, collection_id: Optional[str] = None) -> Subscription:
        """Open a subscription. Its first event is always ``connected``."""
        subscription = Subscription(self, session_id, self.buffer)
        subscription.offer(
            ProgressEvent(type=EventType.CONNECTED, session_id=session_id, collection_id=collection_id)
        )
        if session_id in self._closed_sessions:
            # Collection already finished; nothing further will be published
            subscription.offer(_CLOSED)
        else:
            self._subscribers[session_id].append(subscription)
        logger.debug(f"Subscriber connected to session {session_id}")
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.session_id)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.session_id]
        if subscription.dropped:
            logger.info(
                f"Subscriber on session {subscription.session_id} dropped {subscription.dropped} events"
            )

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    def publish(self, event: ProgressEvent) -> int:
        """Deliver ``event`` to every subscriber of its session.

        A terminal event closes the session after delivery.

        Returns:
            Number of subscribers the event was offered to
        """
        if event.type in REOPENING_EVENTS:
            self._closed_sessions.discard(event.session_id)
        subscribers = list(self._subscribers.get(event.session_id, []))
        for subscription in subscribers:
            subscription.offer(event)
        if event.is_terminal:
            self.close_session(event.session_id)
        return len(subscribers)

    def close_session(self, session_id: str) -> None:
        self._closed_sessions.add(session_id)
        for subscription in self._subscribers.pop(session_id, []):
            subscription.offer(_CLOSED)

    def close_all(self) -> None:
        for session_id in list(self._subscribers):
            self.close_session(session_id)


def format_sse(event: ProgressEvent) -> str:
    """Render an event as a Server-Sent-Events frame."""
    payload = {"type": event.type.value, **event.model_dump(mode="json", exclude={"type"})}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
