"""Tests for scheduled housekeeping."""

from decimal import Decimal

import pytest

from escrow_automation import EscrowAutomation
from escrow_models import DepositStatus, EventType, TransactionStatus
from tests.conftest import fund_wallet


@pytest.fixture
def automation(service, wallet_service, risk_monitor, config):
    return EscrowAutomation(service, wallet_service, risk_monitor, config=config)


async def test_start_registers_jobs(automation):
    automation.start()

    job_ids = sorted(job.id for job in automation.scheduler.get_jobs())
    assert job_ids == ['cancel_stale_rooms', 'expire_stale_deposits', 'scan_balances']
    assert automation.get_stats()['scheduled_jobs'] == 3

    # Starting twice is harmless
    automation.start()
    assert len(automation.scheduler.get_jobs()) == 3

    automation.stop()
    assert automation.get_stats()['scheduled_jobs'] == 0


async def test_stop_is_idempotent(automation):
    automation.stop()
    automation.start()
    automation.stop()

    assert automation.get_stats()['is_running'] is False


async def test_cancel_stale_rooms(automation, service, store, open_trade, funded_trade, seller, clock):
    stale = await open_trade()
    funded = await funded_trade()
    clock.advance(minutes=20)
    fresh = await service.create_transaction(seller, product_name='Lamp', amount='50000')
    clock.advance(minutes=15)

    cancelled = await automation.cancel_stale_rooms()

    assert cancelled == 1
    assert (await store.get(stale.id)).status == TransactionStatus.CANCELLED
    assert (await store.get(funded.id)).status == TransactionStatus.DEPOSITED
    assert (await store.get(fresh.id)).status == TransactionStatus.PENDING

    events = await store.list_events(stale.id)
    assert events[-1].event_type == EventType.CANCELLED
    assert events[-1].actor_id == 'system'
    assert automation.stats['rooms_cancelled'] == 1


async def test_cancel_stale_rooms_skips_rooms_funded_meanwhile(automation, service, store, open_trade, buyer, clock):
    transaction = await open_trade()
    await fund_wallet(store, buyer.user_id, '100000')
    clock.advance(hours=1)

    original_list_all = store.list_all

    async def list_then_fund(status=None):
        # The room is funded between the scan and the cancel
        rooms = await original_list_all(status)
        await service.deposit(transaction.id, buyer)
        return rooms

    store.list_all = list_then_fund

    assert await automation.cancel_stale_rooms() == 0
    assert (await store.get(transaction.id)).status == TransactionStatus.DEPOSITED


async def test_expire_stale_deposits_job(automation, wallet_service, clock):
    deposit = await wallet_service.create_deposit('buyer-1', '50000')
    clock.advance(minutes=30)

    assert await automation.expire_stale_deposits() == 1
    assert automation.stats['deposits_expired'] == 1

    async with wallet_service.store.atomic() as session:
        assert (await session.get_deposit(deposit.id)).status == DepositStatus.EXPIRED


async def test_scan_balances_job(automation, store):
    await fund_wallet(store, 'mule-1', Decimal('750000'))

    assert await automation.scan_balances() == 1
    assert automation.stats['wallets_frozen'] == 1
    assert 'scan_balances' in automation.stats['last_run']
