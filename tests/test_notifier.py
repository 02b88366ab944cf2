"""Tests for event fan-out and deduplication."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from escrow_models import EventType, TransactionEvent, TransactionStatus
from notifier import EventDeduplicator, EventNotifier, event_envelope


def make_event(transaction_id='tx-1', event_type=EventType.SHIPPED, **kwargs) -> TransactionEvent:
    return TransactionEvent(
        transaction_id=transaction_id,
        event_type=event_type,
        from_status=kwargs.pop('from_status', TransactionStatus.DEPOSITED),
        to_status=kwargs.pop('to_status', TransactionStatus.SHIPPING),
        actor_id='seller-1',
        **kwargs
    )


async def test_publish_reaches_channel_and_observers(notifier):
    subscriber = AsyncMock()
    other_channel = AsyncMock()
    observer = AsyncMock()
    await notifier.subscribe('tx-1', subscriber)
    await notifier.subscribe('tx-2', other_channel)
    notifier.add_observer(observer)

    event = make_event()
    delivered = await notifier.publish(event)

    assert delivered == 2
    subscriber.assert_awaited_once_with(event)
    observer.assert_awaited_once_with(event)
    other_channel.assert_not_awaited()


async def test_publish_without_subscribers(notifier):
    assert await notifier.publish(make_event()) == 0


async def test_failing_observer_is_retried_then_given_up(notifier):
    broken = AsyncMock(side_effect=RuntimeError('staff bot down'))
    healthy = AsyncMock()
    notifier.add_observer(broken)
    notifier.add_observer(healthy)

    delivered = await notifier.publish(make_event())

    assert delivered == 1
    assert broken.await_count == 3
    healthy.assert_awaited_once()


async def test_failing_channel_subscriber_is_dropped_without_retry(notifier):
    broken = AsyncMock(side_effect=RuntimeError('socket closed'))
    healthy = AsyncMock()
    await notifier.subscribe('tx-1', broken)
    await notifier.subscribe('tx-1', healthy)

    assert await notifier.publish(make_event()) == 1
    assert broken.await_count == 1
    assert notifier.subscriber_count('tx-1') == 1

    await notifier.publish(make_event(event_type=EventType.COMPLETED))
    assert broken.await_count == 1
    assert healthy.await_count == 2


async def test_stalled_channel_subscriber_does_not_block_publish():
    notifier = EventNotifier(max_attempts=3, retry_delay=0, channel_timeout=0.05)
    stalled = asyncio.Event()

    async def never_reads(event):
        await stalled.wait()

    await notifier.subscribe('tx-1', never_reads)

    delivered = await asyncio.wait_for(notifier.publish(make_event()), timeout=1)

    assert delivered == 0
    assert notifier.subscriber_count('tx-1') == 0



async def test_flaky_subscriber_succeeds_on_retry(notifier):
    flaky = AsyncMock(side_effect=[RuntimeError('busy'), None])
    notifier.add_observer(flaky)

    assert await notifier.publish(make_event()) == 1
    assert flaky.await_count == 2


async def test_unsubscribe(notifier):
    subscriber = AsyncMock()
    await notifier.subscribe('tx-1', subscriber)
    assert notifier.subscriber_count('tx-1') == 1

    await notifier.unsubscribe('tx-1', subscriber)
    await notifier.unsubscribe('tx-unknown', subscriber)

    assert notifier.subscriber_count('tx-1') == 0
    await notifier.publish(make_event())
    subscriber.assert_not_awaited()


async def test_observer_registration_is_idempotent(notifier):
    observer = AsyncMock()
    notifier.add_observer(observer)
    notifier.add_observer(observer)

    await notifier.publish(make_event())
    observer.assert_awaited_once()

    notifier.remove_observer(observer)
    await notifier.publish(make_event())
    observer.assert_awaited_once()


async def test_deduplicator_skips_redelivered_events():
    consumer = AsyncMock()
    handler = EventDeduplicator().wrap(consumer)

    event = make_event()
    await handler(event)
    await handler(event.model_copy(update={'event_id': 'redelivered'}))

    consumer.assert_awaited_once()


async def test_deduplicator_rearms_after_failure():
    consumer = AsyncMock(side_effect=[RuntimeError('db down'), None])
    handler = EventDeduplicator().wrap(consumer)
    event = make_event()

    with pytest.raises(RuntimeError):
        await handler(event)
    await handler(event)

    assert consumer.await_count == 2


async def test_deduplicated_observer_acts_once_under_retries(notifier):
    calls = []

    async def consumer(event):
        calls.append(event.event_id)
        if len(calls) == 1:
            raise RuntimeError('transient')

    notifier.add_observer(EventDeduplicator().wrap(consumer))
    event = make_event()

    await notifier.publish(event)
    await notifier.publish(event)

    assert len(calls) == 2


def test_deduplicator_is_bounded():
    dedupe = EventDeduplicator(max_entries=2)
    first, second, third = (make_event(transaction_id=f'tx-{i}') for i in range(3))

    assert not dedupe.seen(first)
    assert not dedupe.seen(second)
    assert not dedupe.seen(third)

    # Oldest key was evicted
    assert not dedupe.seen(first)
    assert dedupe.seen(third)


def test_event_envelope():
    event = make_event(payload={'dispute_deadline': '2026-01-06T09:00:00+00:00'})

    envelope = event_envelope(event)

    assert envelope['event'] == 'shipped'
    assert envelope['transaction_id'] == 'tx-1'
    assert envelope['from_status'] == 'deposited'
    assert envelope['to_status'] == 'shipping'
    assert envelope['payload'] == {'dispute_deadline': '2026-01-06T09:00:00+00:00'}
    assert envelope['timestamp'] == event.timestamp.isoformat()
