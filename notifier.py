"""
Event Notifier for the escrow engine.

Fans committed transition events out to:
    - per-transaction channels (realtime subscribers such as WebSocket clients)
    - global observers (risk monitor, staff bot)

Delivery is best-effort and failures never reach the caller of ``publish``.
Observers get a bounded number of attempts (at-least-once); consumers that
must not act twice wrap themselves in an EventDeduplicator. Channel
subscribers get one attempt bounded by ``channel_timeout`` and are dropped
when it fails.
"""

import asyncio
import logging
from collections import defaultdict, OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, MutableMapping, Set

from escrow_models import TransactionEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[TransactionEvent], Awaitable[Any]]


class EventNotifier:
    """
    Publish/subscribe hub keyed by transaction id.

    Args:
        max_attempts: Delivery attempts per observer and event
        retry_delay: Base delay in seconds between attempts (multiplied by attempt number)
        channel_timeout: Seconds a channel subscriber may take to accept an event
    """

    def __init__(self, max_attempts: int = 3, retry_delay: float = 0.5, channel_timeout: float = 5.0):
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.channel_timeout = channel_timeout
        self._channels: MutableMapping[str, Set[EventCallback]] = defaultdict(set)
        self._observers: List[EventCallback] = []
        self._lock = asyncio.Lock()

    async def subscribe(self, transaction_id: str, callback: EventCallback) -> None:
        """Bind a callback to one transaction's channel."""
        async with self._lock:
            self._channels[transaction_id].add(callback)
        logger.debug(f"Subscriber added to channel {transaction_id}")

    async def unsubscribe(self, transaction_id: str, callback: EventCallback) -> None:
        async with self._lock:
            subscribers = self._channels.get(transaction_id)
            if subscribers is None:
                return
            subscribers.discard(callback)
            if not subscribers:
                self._channels.pop(transaction_id, None)
        logger.debug(f"Subscriber removed from channel {transaction_id}")

    def subscriber_count(self, transaction_id: str) -> int:
        return len(self._channels.get(transaction_id, ()))

    def add_observer(self, callback: EventCallback) -> None:
        """Register a callback that receives every event."""
        if callback not in self._observers:
            self._observers.append(callback)

    def remove_observer(self, callback: EventCallback) -> None:
        if callback in self._observers:
            self._observers.remove(callback)

    async def publish(self, event: TransactionEvent) -> int:
        """
        Deliver an event to its channel and to every observer.

        Args:
            event: Committed transition event

        Returns:
            Number of callbacks that accepted the event
        """
        # Snapshot so callbacks may (un)subscribe while we deliver
        async with self._lock:
            subscribers = list(self._channels.get(event.transaction_id, ()))
        observers = list(self._observers)
        targets = len(subscribers) + len(observers)

        if not targets:
            return 0

        results = await asyncio.gather(
            *(self._push(event.transaction_id, cb, event) for cb in subscribers),
            *(self._deliver(cb, event) for cb in observers),
        )
        delivered = sum(1 for ok in results if ok)

        if delivered < targets:
            logger.warning(
                f"Event {event.event_type.value} for {event.transaction_id} "
                f"delivered to {delivered}/{targets} subscribers"
            )
        return delivered

    async def _push(self, transaction_id: str, callback: EventCallback, event: TransactionEvent) -> bool:
        try:
            await asyncio.wait_for(callback(event), timeout=self.channel_timeout)
            return True
        except Exception as e:
            logger.warning(
                f"Dropping subscriber of {transaction_id} after failed push of "
                f"{event.event_type.value}: {e!r}"
            )
        await self.unsubscribe(transaction_id, callback)
        return False

    async def _deliver(self, callback: EventCallback, event: TransactionEvent) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await callback(event)
                return True
            except Exception as e:
                logger.error(
                    f"Delivery of {event.event_type.value} ({event.event_id}) failed "
                    f"on attempt {attempt}/{self.max_attempts}: {e}"
                )
                if attempt < self.max_attempts and self.retry_delay:
                    await asyncio.sleep(self.retry_delay * attempt)
        return False


class EventDeduplicator:
    """
    Drop events already handled by a consumer.

    Keys are ``(transaction_id, event_type, to_status)`` and are kept in a
    bounded LRU so long-running processes do not grow without limit.

    Example:
        >>> dedupe = EventDeduplicator()
        >>> notifier.add_observer(dedupe.wrap(risk_monitor.on_event))
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._seen: 'OrderedDict[tuple, None]' = OrderedDict()

    def seen(self, event: TransactionEvent) -> bool:
        """Return True if the event was seen before; otherwise remember it."""
        key = event.dedupe_key
        if key in self._seen:
            self._seen.move_to_end(key)
            return True

        self._seen[key] = None
        if len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return False

    def forget(self, event: TransactionEvent) -> None:
        self._seen.pop(event.dedupe_key, None)

    def wrap(self, callback: EventCallback) -> EventCallback:
        """Return a callback that skips duplicates and re-arms on failure."""
        async def handler(event: TransactionEvent) -> None:
            if self.seen(event):
                logger.debug(f"Skipping duplicate event {event.dedupe_key}")
                return
            try:
                await callback(event)
            except Exception:
                # Let the notifier retry this delivery
                self.forget(event)
                raise

        return handler


def event_envelope(event: TransactionEvent) -> Dict[str, Any]:
    """JSON-ready message pushed to realtime subscribers."""
    return {
        'event': event.event_type.value,
        'event_id': event.event_id,
        'transaction_id': event.transaction_id,
        'from_status': event.from_status.value,
        'to_status': event.to_status.value,
        'actor_id': event.actor_id,
        'timestamp': event.timestamp.isoformat(),
        'payload': event.payload,
    }
