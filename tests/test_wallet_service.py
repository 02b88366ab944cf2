"""Tests for deposits, the payment webhook and withdrawals."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from escrow_errors import (
    ConflictError,
    InsufficientFundsError,
    UnauthorizedTransitionError,
    ValidationError,
)
from escrow_models import Actor, DepositStatus, WithdrawalStatus
from tests.conftest import balance_of, fund_wallet
from wallet_service import PaymentWebhookPayload, WalletService


def webhook(content, amount='50000', provider_id=92704, transfer_type='in') -> PaymentWebhookPayload:
    return PaymentWebhookPayload.model_validate({
        'id': provider_id,
        'gateway': 'Vietcombank',
        'transactionDate': '2026-01-05 09:01:00',
        'accountNumber': '0123499999',
        'content': content,
        'transferType': transfer_type,
        'transferAmount': amount,
        'referenceCode': 'MBVCB.3278907687',
    })


async def get_deposit(store, deposit_id):
    async with store.atomic() as session:
        return await session.get_deposit(deposit_id)


# ==================== Deposits ====================

async def test_create_deposit_builds_transfer_code(wallet_service):
    deposit = await wallet_service.create_deposit('buyer-1', '50000')

    assert deposit.status == DepositStatus.PENDING
    assert deposit.transfer_code == 'NAP' + deposit.id.replace('-', '')[:8].upper()
    assert deposit.amount == Decimal('50000')


async def test_create_deposit_enforces_minimum(wallet_service):
    with pytest.raises(ValidationError):
        await wallet_service.create_deposit('buyer-1', '9999')


async def test_sync_actor_follows_staff_roles(wallet_service, store, moderator):
    await fund_wallet(store, moderator.user_id, '70000')

    await wallet_service.sync_actor(moderator)
    assert (await store.get_wallet(moderator.user_id)).is_staff

    await wallet_service.sync_actor(Actor(user_id=moderator.user_id))
    wallet = await store.get_wallet(moderator.user_id)
    assert not wallet.is_staff
    assert wallet.balance == Decimal('70000')


async def test_webhook_credits_once_and_ignores_replay(wallet_service, store):
    deposit = await wallet_service.create_deposit('buyer-1', '50000')
    payload = webhook(f"MBVCB.3278907687.{deposit.transfer_code}.CT tu 0987654321")

    first = await wallet_service.handle_payment_webhook(payload)
    replay = await wallet_service.handle_payment_webhook(payload)

    assert first.credited is True
    assert first.message == "Deposit confirmed"
    assert first.amount == Decimal('50000')
    assert replay.success is True
    assert replay.credited is False
    assert replay.message == "Deposit not found or already processed"
    assert await balance_of(store, 'buyer-1') == Decimal('50000')

    stored = await get_deposit(store, deposit.id)
    assert stored.status == DepositStatus.COMPLETED
    assert stored.credited_amount == Decimal('50000')
    assert stored.provider_tx_id == '92704'
    assert stored.reference == 'MBVCB.3278907687'


async def test_concurrent_webhooks_credit_once(wallet_service, store):
    deposit = await wallet_service.create_deposit('buyer-1', '50000')
    payload = webhook(deposit.transfer_code)

    results = await asyncio.gather(*(wallet_service.handle_payment_webhook(payload) for _ in range(3)))

    assert sum(1 for r in results if r.credited) == 1
    assert all(r.success for r in results)
    assert await balance_of(store, 'buyer-1') == Decimal('50000')


async def test_webhook_matches_lowercase_and_legacy_uuid(wallet_service, store):
    short = await wallet_service.create_deposit('u-short', '20000')
    legacy = await wallet_service.create_deposit('u-legacy', '30000')

    result = await wallet_service.handle_payment_webhook(
        webhook(short.transfer_code.lower(), amount='20000', provider_id=1)
    )
    assert result.credited

    result = await wallet_service.handle_payment_webhook(
        webhook(f"chuyen tien NAP{legacy.id.upper()}", amount='30000', provider_id=2)
    )
    assert result.credited
    assert await balance_of(store, 'u-legacy') == Decimal('30000')


async def test_webhook_credits_reported_amount_within_tolerance(wallet_service, store):
    deposit = await wallet_service.create_deposit('buyer-1', '50000')

    result = await wallet_service.handle_payment_webhook(webhook(deposit.transfer_code, amount='49500'))

    assert result.credited
    assert await balance_of(store, 'buyer-1') == Decimal('49500')


async def test_webhook_rejects_amount_outside_tolerance(wallet_service, store):
    deposit = await wallet_service.create_deposit('buyer-1', '50000')

    result = await wallet_service.handle_payment_webhook(webhook(deposit.transfer_code, amount='5000'))

    assert result.success is False
    assert result.message == "Amount mismatch"
    assert await balance_of(store, 'buyer-1') == Decimal('0')
    assert (await get_deposit(store, deposit.id)).status == DepositStatus.PENDING

    alerts = await store.list_risk_alerts()
    assert [a.alert_type for a in alerts] == ['deposit_amount_mismatch']
    assert alerts[0].metadata['deposit_id'] == deposit.id


@pytest.mark.parametrize('content, transfer_type, message', [
    ('NAP12345678', 'out', "Skipped outgoing transfer"),
    ('tien an trua', 'in', "No deposit ID found"),
    ('NAPdeadbeef', 'in', "Deposit not found or already processed"),
])
async def test_webhook_acknowledges_unmatched_payloads(wallet_service, store, content, transfer_type, message):
    result = await wallet_service.handle_payment_webhook(webhook(content, transfer_type=transfer_type))

    assert result.success is True
    assert result.credited is False
    assert result.message == message
    assert await store.list_risk_alerts() == []


async def test_webhook_falls_back_to_description(wallet_service, store):
    deposit = await wallet_service.create_deposit('buyer-1', '50000')
    payload = webhook(None).model_copy(update={'description': f"BankAPINotify {deposit.transfer_code}"})

    assert (await wallet_service.handle_payment_webhook(payload)).credited


async def test_webhook_notifies_staff(store, config, clock):
    staff_notifier = AsyncMock()
    service = WalletService(store, config=config, staff_notifier=staff_notifier, clock=clock)
    deposit = await service.create_deposit('buyer-1', '50000')

    await service.handle_payment_webhook(webhook(deposit.transfer_code))

    staff_notifier.notify.assert_awaited_once()
    assert staff_notifier.notify.await_args.args[0] == 'deposit'


async def test_expire_stale_deposits(wallet_service, store, clock):
    old = await wallet_service.create_deposit('buyer-1', '50000')
    clock.advance(minutes=10)
    fresh = await wallet_service.create_deposit('buyer-1', '50000')
    clock.advance(minutes=6)

    assert await wallet_service.expire_stale_deposits() == 1

    assert (await get_deposit(store, old.id)).status == DepositStatus.EXPIRED
    assert (await get_deposit(store, fresh.id)).status == DepositStatus.PENDING

    # An expired deposit can no longer be credited
    result = await wallet_service.handle_payment_webhook(webhook(old.transfer_code))
    assert not result.credited


# ==================== Withdrawals ====================

async def test_withdrawal_debits_immediately(wallet_service, store):
    await fund_wallet(store, 'seller-1', '95000')

    withdrawal = await wallet_service.request_withdrawal(
        'seller-1', '60000', 'Vietcombank', '0123456789', 'nguyen van a'
    )

    assert withdrawal.status == WithdrawalStatus.PENDING
    assert withdrawal.account_holder == 'NGUYEN VAN A'
    assert await balance_of(store, 'seller-1') == Decimal('35000')


async def test_withdrawal_validation(wallet_service, store):
    await fund_wallet(store, 'seller-1', '95000')

    with pytest.raises(ValidationError):
        await wallet_service.request_withdrawal('seller-1', '1000', 'VCB', '0123', 'A')
    with pytest.raises(ValidationError):
        await wallet_service.request_withdrawal('seller-1', '60000', 'VCB', '', 'A')
    with pytest.raises(InsufficientFundsError):
        await wallet_service.request_withdrawal('seller-1', '100000', 'VCB', '0123', 'A')

    assert await balance_of(store, 'seller-1') == Decimal('95000')


async def test_reject_withdrawal_returns_funds(wallet_service, store, moderator, seller):
    await fund_wallet(store, 'seller-1', '95000')
    withdrawal = await wallet_service.request_withdrawal('seller-1', '60000', 'VCB', '0123', 'A')

    with pytest.raises(UnauthorizedTransitionError):
        await wallet_service.reject_withdrawal(withdrawal.id, seller)

    rejected = await wallet_service.reject_withdrawal(withdrawal.id, moderator, 'name mismatch')

    assert rejected.status == WithdrawalStatus.REJECTED
    assert rejected.reviewed_by == moderator.user_id
    assert await balance_of(store, 'seller-1') == Decimal('95000')

    with pytest.raises(ConflictError):
        await wallet_service.approve_withdrawal(withdrawal.id, moderator)


async def test_approve_withdrawal_keeps_debit(wallet_service, store, admin):
    await fund_wallet(store, 'seller-1', '95000')
    withdrawal = await wallet_service.request_withdrawal('seller-1', '60000', 'VCB', '0123', 'A')

    approved = await wallet_service.approve_withdrawal(withdrawal.id, admin, 'sent')

    assert approved.status == WithdrawalStatus.COMPLETED
    assert approved.note == 'sent'
    assert await balance_of(store, 'seller-1') == Decimal('35000')


async def test_list_withdrawals_scoped_to_owner(wallet_service, store, moderator, seller, buyer):
    await fund_wallet(store, seller.user_id, '95000')
    await fund_wallet(store, buyer.user_id, '95000')
    await wallet_service.request_withdrawal(seller.user_id, '60000', 'VCB', '0123', 'A')
    await wallet_service.request_withdrawal(buyer.user_id, '60000', 'VCB', '0456', 'B')

    assert len(await wallet_service.list_withdrawals(seller)) == 1
    assert len(await wallet_service.list_withdrawals(moderator)) == 2
    assert len(await wallet_service.list_withdrawals(moderator, status='completed')) == 0
