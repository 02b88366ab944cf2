"""Tests for the Transaction Ledger (in-memory store and shared patch rules)."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import asyncpg
import pytest

from escrow_database import SCHEMA_SQL, PostgresEscrowStore, PostgresSession, apply_transaction_patch
from escrow_errors import (
    ConflictError,
    InsufficientFundsError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    ValidationError,
    WalletFrozenError,
)
from escrow_models import ALLOWED_EDGES, Deposit, Transaction, TransactionStatus, utcnow
from memory_store import InMemoryEscrowStore


def make_transaction(**overrides) -> Transaction:
    fields = dict(
        code='GDTEST0001',
        room_id='ROOM01',
        room_password='123456',
        buyer_id='buyer-1',
        seller_id='seller-1',
        product_name='Desk lamp',
        amount=Decimal('100000'),
        fee_percent=Decimal('5'),
    )
    fields.update(overrides)
    return Transaction(**fields)


# ==================== Patch rules ====================

def test_patch_rejects_stale_status():
    current = make_transaction(status=TransactionStatus.DEPOSITED)

    with pytest.raises(ConflictError) as exc_info:
        apply_transaction_patch(current, {'status': 'shipping'}, TransactionStatus.PENDING)

    assert exc_info.value.expected_status == 'pending'
    assert exc_info.value.actual_status == 'deposited'


def test_patch_rejects_unknown_edge():
    current = make_transaction()

    with pytest.raises(InvalidTransitionError):
        apply_transaction_patch(current, {'status': TransactionStatus.COMPLETED}, TransactionStatus.PENDING)


@pytest.mark.parametrize('field, value', [
    ('id', 'other-id'),
    ('code', 'GDCHANGED1'),
])
def test_patch_rejects_immutable_fields(field, value):
    with pytest.raises(ValidationError):
        apply_transaction_patch(make_transaction(), {field: value}, TransactionStatus.PENDING)


def test_patch_rejects_rewriting_set_once_fields():
    current = make_transaction(status=TransactionStatus.DEPOSITED, deposited_at=utcnow())

    with pytest.raises(ValidationError):
        apply_transaction_patch(
            current, {'deposited_at': current.deposited_at + timedelta(hours=1)}, TransactionStatus.DEPOSITED
        )
    with pytest.raises(ValidationError):
        apply_transaction_patch(current, {'buyer_id': 'someone-else'}, TransactionStatus.DEPOSITED)


def test_patch_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        apply_transaction_patch(make_transaction(), {'colour': 'red'}, TransactionStatus.PENDING)


def test_patch_checks_invariants():
    with pytest.raises(ValidationError):
        apply_transaction_patch(make_transaction(), {'seller_receives': Decimal('100001')}, TransactionStatus.PENDING)


def test_patch_returns_new_record():
    current = make_transaction()

    updated = apply_transaction_patch(current, {'status': 'cancelled'}, TransactionStatus.PENDING)

    assert updated.status == TransactionStatus.CANCELLED
    assert current.status == TransactionStatus.PENDING


def test_patch_locks_details_once_both_parties_joined():
    current = make_transaction()

    with pytest.raises(ValidationError):
        apply_transaction_patch(current, {'amount': Decimal('900000')}, TransactionStatus.PENDING)
    with pytest.raises(ValidationError):
        apply_transaction_patch(current, {'fee_bearer': 'buyer'}, TransactionStatus.PENDING)

    # Unchanged values and non-detail fields still pass
    apply_transaction_patch(current, {'amount': Decimal('100000')}, TransactionStatus.PENDING)
    apply_transaction_patch(current, {'buyer_confirmed': True}, TransactionStatus.PENDING)


def test_patch_allows_joining_seller_to_supply_details():
    current = make_transaction(seller_id=None)

    updated = apply_transaction_patch(
        current, {'seller_id': 'seller-2', 'amount': Decimal('120000')}, TransactionStatus.PENDING
    )

    assert updated.seller_id == 'seller-2'
    assert updated.amount == Decimal('120000')


def test_terminal_states_have_no_outgoing_edges():
    sources = {src for src, _ in ALLOWED_EDGES}
    assert TransactionStatus.COMPLETED not in sources
    assert TransactionStatus.CANCELLED not in sources
    assert TransactionStatus.REFUNDED not in sources


# ==================== In-memory store ====================

async def test_create_and_get():
    store = InMemoryEscrowStore()
    created = await store.create(make_transaction())

    assert await store.get(created.id) == created


async def test_create_rejects_invalid_records():
    store = InMemoryEscrowStore()

    with pytest.raises(ValidationError):
        await store.create(make_transaction(amount=Decimal('0')))
    with pytest.raises(ValidationError):
        await store.create(make_transaction(status=TransactionStatus.DEPOSITED))

    assert await store.list_all() == []


async def test_duplicate_code_conflicts():
    store = InMemoryEscrowStore()
    await store.create(make_transaction())

    with pytest.raises(ConflictError):
        await store.create(make_transaction(room_id='ROOM02'))


async def test_get_missing_raises_not_found():
    with pytest.raises(NotFoundError):
        await InMemoryEscrowStore().get('missing')


async def test_cas_update_conflicts_on_stale_read():
    store = InMemoryEscrowStore()
    created = await store.create(make_transaction())

    await store.update(created.id, {'status': 'deposited'}, TransactionStatus.PENDING)

    with pytest.raises(ConflictError):
        await store.update(created.id, {'status': 'cancelled'}, TransactionStatus.PENDING)

    assert (await store.get(created.id)).status == TransactionStatus.DEPOSITED


async def test_concurrent_cas_updates_single_winner():
    store = InMemoryEscrowStore()
    created = await store.create(make_transaction())

    results = await asyncio.gather(
        store.update(created.id, {'status': 'deposited'}, TransactionStatus.PENDING),
        store.update(created.id, {'status': 'cancelled'}, TransactionStatus.PENDING),
        return_exceptions=True
    )

    assert sum(1 for r in results if isinstance(r, ConflictError)) == 1
    assert sum(1 for r in results if isinstance(r, Transaction)) == 1


async def test_failed_unit_rolls_back_every_write():
    store = InMemoryEscrowStore()
    created = await store.create(make_transaction())
    async with store.atomic() as session:
        await session.credit('buyer-1', Decimal('50'))

    with pytest.raises(InsufficientFundsError):
        async with store.atomic() as session:
            await session.update_transaction(created.id, {'status': 'deposited'}, TransactionStatus.PENDING)
            await session.credit('seller-1', Decimal('10'))
            await session.debit('buyer-1', Decimal('100000'))

    assert (await store.get(created.id)).status == TransactionStatus.PENDING
    assert (await store.get_wallet('buyer-1')).balance == Decimal('50')
    assert (await store.get_wallet('seller-1')).balance == Decimal('0')


async def test_list_for_user_newest_first():
    store = InMemoryEscrowStore()
    now = utcnow()
    older = await store.create(make_transaction(created_at=now - timedelta(hours=1)))
    newer = await store.create(make_transaction(code='GDTEST0002', room_id='ROOM02', created_at=now))
    await store.create(make_transaction(
        code='GDTEST0003', room_id='ROOM03', buyer_id='other', seller_id='another'
    ))

    listed = await store.list_for_user('buyer-1')

    assert [t.id for t in listed] == [newer.id, older.id]


# ==================== Wallets ====================

async def test_debit_requires_funds_and_unfrozen_wallet():
    store = InMemoryEscrowStore()
    async with store.atomic() as session:
        await session.credit('u1', Decimal('1000'))
        assert await session.debit('u1', Decimal('400')) == Decimal('600')

        with pytest.raises(InsufficientFundsError):
            await session.debit('u1', Decimal('601'))
        with pytest.raises(InsufficientFundsError):
            await session.debit('nobody', Decimal('1'))

        await session.freeze_wallet('u1', 'suspicious', utcnow())
        with pytest.raises(WalletFrozenError):
            await session.debit('u1', Decimal('1'))

    wallet = await store.get_wallet('u1')
    assert wallet.is_frozen
    assert wallet.freeze_reason == 'suspicious'
    assert wallet.balance == Decimal('600')


async def test_credit_rejects_negative_amounts():
    store = InMemoryEscrowStore()
    with pytest.raises(ValidationError):
        async with store.atomic() as session:
            await session.credit('u1', Decimal('-5'))


async def test_missing_wallet_reads_as_empty():
    wallet = await InMemoryEscrowStore().get_wallet('ghost')
    assert wallet.balance == Decimal('0')
    assert not wallet.is_frozen


# ==================== Deposits ====================

async def test_deposit_cas_and_unique_provider_id():
    store = InMemoryEscrowStore()
    async with store.atomic() as session:
        first = await session.insert_deposit(Deposit(user_id='u1', amount=Decimal('50000')))
        second = await session.insert_deposit(Deposit(user_id='u2', amount=Decimal('50000')))
        await session.update_deposit(first.id, {'status': 'completed', 'provider_tx_id': 'BANK-1'}, 'pending')

    with pytest.raises(ConflictError):
        async with store.atomic() as session:
            await session.update_deposit(first.id, {'status': 'expired'}, 'pending')

    with pytest.raises(ConflictError):
        async with store.atomic() as session:
            await session.update_deposit(second.id, {'status': 'completed', 'provider_tx_id': 'BANK-1'}, 'pending')

    async with store.atomic() as session:
        assert (await session.get_deposit(second.id)).status.value == 'pending'


# ==================== PostgreSQL store ====================

def test_schema_encodes_allowed_edges():
    assert 'escrow_transactions_guard' in SCHEMA_SQL
    assert "'pending>deposited'" in SCHEMA_SQL
    assert "'disputed>refunded'" in SCHEMA_SQL
    assert "'completed>" not in SCHEMA_SQL
    assert 'CHECK' in SCHEMA_SQL
    assert 'trade details are locked' in SCHEMA_SQL


async def test_postgres_store_requires_connect():
    store = PostgresEscrowStore('postgresql://localhost/escrow')

    with pytest.raises(StoreError):
        async with store.atomic():
            pass


async def test_postgres_duplicate_provider_id_conflicts():
    conn = AsyncMock()
    conn.fetchrow.side_effect = asyncpg.UniqueViolationError('duplicate key value violates unique constraint')
    session = PostgresSession(conn)

    with pytest.raises(ConflictError):
        await session.update_deposit('dep-1', {'status': 'completed', 'provider_tx_id': 'BANK-1'}, 'pending')
