"""
Transaction Ledger for the escrow engine.

Defines the storage contract (EscrowStore / StoreSession) and its PostgreSQL
implementation on asyncpg. Every state change goes through a session opened
with ``store.atomic()``, so a status write and the wallet movement that pays
for it commit or roll back together.

Invariants are enforced twice: in Python before the write (apply_transaction_patch)
and in the schema itself (CHECK constraints plus a BEFORE UPDATE trigger).
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, AsyncIterator, Type

import asyncpg
from pydantic import BaseModel

from escrow_errors import (
    ConflictError,
    InsufficientFundsError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    ValidationError,
    WalletFrozenError,
)
from escrow_models import (
    ALLOWED_EDGES,
    DETAIL_FIELDS,
    Deposit,
    RiskAlert,
    Transaction,
    TransactionEvent,
    TransactionStatus,
    Wallet,
    Withdrawal,
    utcnow,
)

logger = logging.getLogger(__name__)


TRANSACTION_FIELDS = frozenset(Transaction.model_fields)
IMMUTABLE_FIELDS = frozenset({'id', 'code', 'created_at'})
SET_ONCE_FIELDS = frozenset({
    'buyer_id', 'seller_id',
    'deposited_at', 'shipped_at', 'completed_at', 'dispute_at',
})


def apply_transaction_patch(
    current: Transaction,
    patch: Dict[str, Any],
    expected_status: TransactionStatus
) -> Transaction:
    """
    Apply a patch to a transaction under compare-and-swap rules.

    Args:
        current: Stored record
        patch: Field updates
        expected_status: Status the caller read before deciding on the patch

    Returns:
        The updated record (not yet persisted)

    Raises:
        ConflictError: If the stored status no longer equals expected_status
        ValidationError: If the patch breaks an immutability rule or invariant,
            or edits trade details after both parties joined
        InvalidTransitionError: If the patch moves status along an unknown edge
    """
    expected_status = TransactionStatus(expected_status)
    if current.status != expected_status:
        raise ConflictError(
            f"Transaction {current.id} is {current.status.value}, "
            f"expected {expected_status.value}",
            expected_status=expected_status.value,
            actual_status=current.status.value,
        )

    unknown = set(patch) - TRANSACTION_FIELDS
    if unknown:
        raise ValidationError(f"Unknown transaction fields: {sorted(unknown)}")

    for field in IMMUTABLE_FIELDS & set(patch):
        if patch[field] != getattr(current, field):
            raise ValidationError(f"{field} cannot be changed")

    for field in SET_ONCE_FIELDS & set(patch):
        old_value = getattr(current, field)
        if old_value is not None and patch[field] != old_value:
            raise ValidationError(f"{field} is already set and cannot change")

    if current.has_both_parties:
        changed = sorted(f for f in DETAIL_FIELDS & set(patch) if patch[f] != getattr(current, f))
        if changed:
            raise ValidationError(f"Details are locked once both parties have joined: {changed}")

    new_status = TransactionStatus(patch.get('status', current.status))
    if new_status != current.status and (current.status, new_status) not in ALLOWED_EDGES:
        raise InvalidTransitionError(
            f"No edge {current.status.value} -> {new_status.value}"
        )

    update = dict(patch)
    update['status'] = new_status
    update.setdefault('updated_at', utcnow())

    updated = current.model_copy(update=update)
    updated.check_invariants()
    return updated


class StoreSession(ABC):
    """Operations available inside one atomic unit of work."""

    # Transactions
    @abstractmethod
    async def insert_transaction(self, transaction: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Transaction: ...

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: str,
        patch: Dict[str, Any],
        expected_status: TransactionStatus
    ) -> Transaction: ...

    @abstractmethod
    async def list_transactions(
        self,
        user_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        created_before: Optional[datetime] = None
    ) -> List[Transaction]: ...

    @abstractmethod
    async def find_by_room(self, room_id: str) -> Optional[Transaction]: ...

    # Wallets
    @abstractmethod
    async def get_wallet(self, user_id: str) -> Wallet: ...

    @abstractmethod
    async def ensure_wallet(self, user_id: str, is_staff: bool = False) -> Wallet: ...

    @abstractmethod
    async def list_wallets(self) -> List[Wallet]: ...

    @abstractmethod
    async def debit(self, user_id: str, amount: Decimal) -> Decimal: ...

    @abstractmethod
    async def credit(self, user_id: str, amount: Decimal) -> Decimal: ...

    @abstractmethod
    async def freeze_wallet(self, user_id: str, reason: str, frozen_at: datetime) -> None: ...

    # Deposits
    @abstractmethod
    async def insert_deposit(self, deposit: Deposit) -> Deposit: ...

    @abstractmethod
    async def get_deposit(self, deposit_id: str) -> Deposit: ...

    @abstractmethod
    async def list_deposits(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Deposit]: ...

    @abstractmethod
    async def update_deposit(self, deposit_id: str, patch: Dict[str, Any], expected_status: str) -> Deposit: ...

    # Withdrawals
    @abstractmethod
    async def insert_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal: ...

    @abstractmethod
    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal: ...

    @abstractmethod
    async def list_withdrawals(self, status: Optional[str] = None, user_id: Optional[str] = None) -> List[Withdrawal]: ...

    @abstractmethod
    async def update_withdrawal(self, withdrawal_id: str, patch: Dict[str, Any], expected_status: str) -> Withdrawal: ...

    # Risk alerts, timeline and action log
    @abstractmethod
    async def insert_risk_alert(self, alert: RiskAlert) -> RiskAlert: ...

    @abstractmethod
    async def list_risk_alerts(self, unresolved_only: bool = False) -> List[RiskAlert]: ...

    @abstractmethod
    async def append_event(self, event: TransactionEvent) -> None: ...

    @abstractmethod
    async def list_events(self, transaction_id: str) -> List[TransactionEvent]: ...

    @abstractmethod
    async def record_action(self, key: str, action: str, at: datetime) -> None: ...

    @abstractmethod
    async def count_actions(self, key: str, action: str, since: datetime) -> int: ...


class EscrowStore(ABC):
    """
    Transaction Ledger.

    Subclasses provide ``atomic()``; the single-record operations below each
    run in their own unit of work.
    """

    async def connect(self) -> None:
        """Open underlying resources. No-op by default."""

    async def close(self) -> None:
        """Release underlying resources. No-op by default."""

    async def ping(self) -> None:
        """Raise StoreError if the backend is unreachable. No-op by default."""

    @abstractmethod
    def atomic(self) -> 'AsyncIterator[StoreSession]':
        """Async context manager yielding a StoreSession bound to one atomic unit."""

    async def create(self, transaction: Transaction) -> Transaction:
        """
        Persist a new transaction.

        Raises:
            ValidationError: If the record violates an invariant
        """
        transaction.check_invariants()
        if transaction.status != TransactionStatus.PENDING:
            raise ValidationError("New transactions must start as pending")

        async with self.atomic() as session:
            return await session.insert_transaction(transaction)

    async def get(self, transaction_id: str) -> Transaction:
        async with self.atomic() as session:
            return await session.get_transaction(transaction_id)

    async def list_for_user(self, user_id: str) -> List[Transaction]:
        """All transactions where the user is buyer or seller, newest first."""
        async with self.atomic() as session:
            return await session.list_transactions(user_id=user_id)

    async def list_all(self, status: Optional[TransactionStatus] = None) -> List[Transaction]:
        async with self.atomic() as session:
            return await session.list_transactions(status=status)

    async def update(
        self,
        transaction_id: str,
        patch: Dict[str, Any],
        expected_status: TransactionStatus
    ) -> Transaction:
        """Compare-and-swap update of a single transaction."""
        async with self.atomic() as session:
            return await session.update_transaction(transaction_id, patch, expected_status)

    async def get_wallet(self, user_id: str) -> Wallet:
        async with self.atomic() as session:
            return await session.get_wallet(user_id)

    async def list_events(self, transaction_id: str) -> List[TransactionEvent]:
        async with self.atomic() as session:
            return await session.list_events(transaction_id)

    async def list_risk_alerts(self, unresolved_only: bool = False) -> List[RiskAlert]:
        async with self.atomic() as session:
            return await session.list_risk_alerts(unresolved_only)


# ==================== PostgreSQL ====================

def _edge_literals() -> str:
    return ', '.join(
        f"'{src.value}>{dst.value}'" for src, dst in sorted(ALLOWED_EDGES, key=lambda e: (e[0].value, e[1].value))
    )


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS wallets (
    user_id TEXT PRIMARY KEY,
    balance NUMERIC NOT NULL DEFAULT 0,
    is_staff BOOLEAN NOT NULL DEFAULT FALSE,
    is_frozen BOOLEAN NOT NULL DEFAULT FALSE,
    freeze_reason TEXT,
    frozen_at TIMESTAMPTZ,
    CONSTRAINT non_negative_balance CHECK (balance >= 0)
);

CREATE TABLE IF NOT EXISTS escrow_transactions (
    id TEXT PRIMARY KEY,
    code VARCHAR(20) UNIQUE NOT NULL,
    room_id VARCHAR(12) UNIQUE,
    room_password VARCHAR(20),
    buyer_id TEXT,
    seller_id TEXT,
    moderator_id TEXT,
    arbiter_id TEXT,
    product_name TEXT NOT NULL,
    description TEXT,
    category VARCHAR(50) NOT NULL DEFAULT 'other',
    images TEXT[] NOT NULL DEFAULT '{}',
    amount NUMERIC NOT NULL,
    fee_percent NUMERIC NOT NULL DEFAULT 0,
    fee_amount NUMERIC NOT NULL DEFAULT 0,
    fee_bearer VARCHAR(10) NOT NULL DEFAULT 'seller'
        CHECK (fee_bearer IN ('buyer', 'seller', 'split')),
    seller_receives NUMERIC NOT NULL DEFAULT 0,
    buyer_paid NUMERIC NOT NULL DEFAULT 0,
    dispute_window_hours INTEGER NOT NULL DEFAULT 24,
    status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (
        status IN ('pending', 'deposited', 'shipping', 'completed',
                   'disputed', 'cancelled', 'refunded')
    ),
    dispute_reason TEXT,
    buyer_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
    seller_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    deposited_at TIMESTAMPTZ,
    shipped_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    dispute_at TIMESTAMPTZ,
    CONSTRAINT positive_amount CHECK (amount > 0),
    CONSTRAINT fee_percent_range CHECK (fee_percent BETWEEN 0 AND 100),
    CONSTRAINT seller_receives_range CHECK (seller_receives >= 0 AND seller_receives <= amount),
    CONSTRAINT positive_dispute_window CHECK (dispute_window_hours > 0),
    CONSTRAINT distinct_parties CHECK (buyer_id IS NULL OR buyer_id <> seller_id),
    CONSTRAINT completed_after_deposit CHECK (completed_at IS NULL OR deposited_at IS NOT NULL)
);

CREATE OR REPLACE FUNCTION escrow_transactions_guard() RETURNS trigger AS $$
BEGIN
    IF OLD.buyer_id IS NOT NULL AND NEW.buyer_id IS DISTINCT FROM OLD.buyer_id THEN
        RAISE EXCEPTION 'buyer_id is immutable once set';
    END IF;
    IF OLD.seller_id IS NOT NULL AND NEW.seller_id IS DISTINCT FROM OLD.seller_id THEN
        RAISE EXCEPTION 'seller_id is immutable once set';
    END IF;
    IF (OLD.deposited_at IS NOT NULL AND NEW.deposited_at IS DISTINCT FROM OLD.deposited_at)
        OR (OLD.shipped_at IS NOT NULL AND NEW.shipped_at IS DISTINCT FROM OLD.shipped_at)
        OR (OLD.completed_at IS NOT NULL AND NEW.completed_at IS DISTINCT FROM OLD.completed_at)
        OR (OLD.dispute_at IS NOT NULL AND NEW.dispute_at IS DISTINCT FROM OLD.dispute_at) THEN
        RAISE EXCEPTION 'transition timestamps are set once';
    END IF;
    IF OLD.buyer_id IS NOT NULL AND OLD.seller_id IS NOT NULL AND (
        NEW.product_name IS DISTINCT FROM OLD.product_name
        OR NEW.description IS DISTINCT FROM OLD.description
        OR NEW.category IS DISTINCT FROM OLD.category
        OR NEW.images IS DISTINCT FROM OLD.images
        OR NEW.amount IS DISTINCT FROM OLD.amount
        OR NEW.fee_bearer IS DISTINCT FROM OLD.fee_bearer) THEN
        RAISE EXCEPTION 'trade details are locked once both parties have joined';
    END IF;
    IF NEW.status <> OLD.status AND (OLD.status || '>' || NEW.status) NOT IN (__EDGES__) THEN
        RAISE EXCEPTION 'illegal status edge % -> %', OLD.status, NEW.status;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS escrow_transactions_guard ON escrow_transactions;
CREATE TRIGGER escrow_transactions_guard
    BEFORE UPDATE ON escrow_transactions
    FOR EACH ROW EXECUTE FUNCTION escrow_transactions_guard();

CREATE TABLE IF NOT EXISTS transaction_events (
    event_id VARCHAR(32) PRIMARY KEY,
    transaction_id TEXT NOT NULL REFERENCES escrow_transactions(id) ON DELETE CASCADE,
    event_type VARCHAR(30) NOT NULL,
    from_status VARCHAR(20) NOT NULL,
    to_status VARCHAR(20) NOT NULL,
    actor_id TEXT,
    payload JSONB NOT NULL DEFAULT '{}',
    timestamp TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS deposits (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount NUMERIC NOT NULL CHECK (amount > 0),
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'completed', 'expired')),
    transfer_code VARCHAR(50) NOT NULL,
    credited_amount NUMERIC,
    provider_tx_id VARCHAR(100) UNIQUE,
    reference VARCHAR(100),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS withdrawals (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount NUMERIC NOT NULL CHECK (amount > 0),
    bank_name TEXT NOT NULL,
    account_number VARCHAR(50) NOT NULL,
    account_holder TEXT NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'completed', 'rejected')),
    note TEXT,
    reviewed_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    reviewed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS risk_alerts (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    transaction_id TEXT REFERENCES escrow_transactions(id) ON DELETE SET NULL,
    alert_type VARCHAR(50) NOT NULL,
    description TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}',
    is_resolved BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS action_log (
    id BIGSERIAL PRIMARY KEY,
    action_key TEXT NOT NULL,
    action_type VARCHAR(50) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_escrow_transactions_buyer ON escrow_transactions(buyer_id);
CREATE INDEX IF NOT EXISTS idx_escrow_transactions_seller ON escrow_transactions(seller_id);
CREATE INDEX IF NOT EXISTS idx_escrow_transactions_status ON escrow_transactions(status);
CREATE INDEX IF NOT EXISTS idx_escrow_transactions_created_at ON escrow_transactions(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_transaction_events_transaction ON transaction_events(transaction_id);
CREATE INDEX IF NOT EXISTS idx_deposits_status ON deposits(status, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_withdrawals_status ON withdrawals(status);
CREATE INDEX IF NOT EXISTS idx_action_log_lookup ON action_log(action_key, action_type, created_at);
""".replace('__EDGES__', _edge_literals())


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return value


def _to_db(record: BaseModel) -> Dict[str, Any]:
    """Dump a record into asyncpg-friendly values."""
    return {key: _db_value(value) for key, value in record.model_dump().items()}


def _from_row(model: Type[BaseModel], row: asyncpg.Record) -> Any:
    data = dict(row)
    for key in ('payload', 'metadata'):
        if isinstance(data.get(key), str):
            data[key] = json.loads(data[key])
    return model(**data)


class PostgresSession(StoreSession):
    """StoreSession bound to one asyncpg connection inside a transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def _insert(self, table: str, record: BaseModel) -> asyncpg.Record:
        values = _to_db(record)
        columns = list(values)
        placeholders = ', '.join(f'${i}' for i in range(1, len(columns) + 1))
        query = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        return await self.conn.fetchrow(query, *[values[c] for c in columns])

    async def _cas_update(
        self,
        table: str,
        model: Type[BaseModel],
        record_id: str,
        patch: Dict[str, Any],
        expected_status: str
    ) -> Any:
        unknown = set(patch) - set(model.model_fields) - {'id'}
        if unknown or 'id' in patch:
            raise ValidationError(f"Invalid fields for {table}: {sorted(unknown | ({'id'} & set(patch)))}")

        values = {key: _db_value(value) for key, value in patch.items()}
        columns = list(patch)
        assignments = ', '.join(f"{c} = ${i}" for i, c in enumerate(columns, start=3))
        row = await self.conn.fetchrow(
            f"UPDATE {table} SET {assignments} WHERE id = $1 AND status = $2 RETURNING *",
            record_id, str(getattr(expected_status, 'value', expected_status)),
            *[values[c] for c in columns]
        )
        if row is not None:
            return _from_row(model, row)

        current = await self.conn.fetchval(f"SELECT status FROM {table} WHERE id = $1", record_id)
        if current is None:
            raise NotFoundError(f"{table} record not found: {record_id}")
        raise ConflictError(
            f"{table} {record_id} is {current}, expected {expected_status}",
            expected_status=str(expected_status),
            actual_status=current,
        )

    # Transactions

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        try:
            row = await self._insert('escrow_transactions', transaction)
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"Duplicate transaction code or room: {e}")
        return _from_row(Transaction, row)

    async def get_transaction(self, transaction_id: str) -> Transaction:
        row = await self.conn.fetchrow(
            "SELECT * FROM escrow_transactions WHERE id = $1",
            transaction_id
        )
        if not row:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return _from_row(Transaction, row)

    async def update_transaction(
        self,
        transaction_id: str,
        patch: Dict[str, Any],
        expected_status: TransactionStatus
    ) -> Transaction:
        row = await self.conn.fetchrow(
            "SELECT * FROM escrow_transactions WHERE id = $1 FOR UPDATE",
            transaction_id
        )
        if not row:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        updated = apply_transaction_patch(_from_row(Transaction, row), patch, expected_status)
        values = _to_db(updated)
        columns = sorted(set(patch) | {'status', 'updated_at'})
        assignments = ', '.join(f"{c} = ${i}" for i, c in enumerate(columns, start=3))

        row = await self.conn.fetchrow(
            f"""
            UPDATE escrow_transactions
            SET {assignments}
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            transaction_id, TransactionStatus(expected_status).value,
            *[values[c] for c in columns]
        )
        if not row:
            raise ConflictError(f"Transaction {transaction_id} changed concurrently")
        return _from_row(Transaction, row)

    async def list_transactions(
        self,
        user_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        created_before: Optional[datetime] = None
    ) -> List[Transaction]:
        clauses, params = [], []
        if user_id is not None:
            params.append(user_id)
            clauses.append(f"(buyer_id = ${len(params)} OR seller_id = ${len(params)})")
        if status is not None:
            params.append(TransactionStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        if created_before is not None:
            params.append(created_before)
            clauses.append(f"created_at < ${len(params)}")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
        rows = await self.conn.fetch(
            f"SELECT * FROM escrow_transactions {where} ORDER BY created_at DESC",
            *params
        )
        return [_from_row(Transaction, row) for row in rows]

    async def find_by_room(self, room_id: str) -> Optional[Transaction]:
        row = await self.conn.fetchrow(
            "SELECT * FROM escrow_transactions WHERE room_id = $1",
            room_id.upper()
        )
        return _from_row(Transaction, row) if row else None

    # Wallets

    async def get_wallet(self, user_id: str) -> Wallet:
        row = await self.conn.fetchrow("SELECT * FROM wallets WHERE user_id = $1", user_id)
        return _from_row(Wallet, row) if row else Wallet(user_id=user_id)

    async def ensure_wallet(self, user_id: str, is_staff: bool = False) -> Wallet:
        row = await self.conn.fetchrow(
            """
            INSERT INTO wallets (user_id, is_staff) VALUES ($1, $2)
            ON CONFLICT (user_id) DO UPDATE SET is_staff = EXCLUDED.is_staff
            RETURNING *
            """,
            user_id, is_staff
        )
        return _from_row(Wallet, row)

    async def list_wallets(self) -> List[Wallet]:
        rows = await self.conn.fetch("SELECT * FROM wallets ORDER BY user_id")
        return [_from_row(Wallet, row) for row in rows]

    async def debit(self, user_id: str, amount: Decimal) -> Decimal:
        row = await self.conn.fetchrow(
            "SELECT balance, is_frozen FROM wallets WHERE user_id = $1 FOR UPDATE",
            user_id
        )
        if row is None or row['balance'] < amount:
            available = row['balance'] if row else Decimal('0')
            raise InsufficientFundsError(
                f"Wallet {user_id} has {available}, needs {amount}"
            )
        if row['is_frozen']:
            raise WalletFrozenError(f"Wallet {user_id} is frozen")

        return await self.conn.fetchval(
            "UPDATE wallets SET balance = balance - $2 WHERE user_id = $1 RETURNING balance",
            user_id, amount
        )

    async def credit(self, user_id: str, amount: Decimal) -> Decimal:
        if amount < 0:
            raise ValidationError("Credit amount cannot be negative")
        return await self.conn.fetchval(
            """
            INSERT INTO wallets (user_id, balance) VALUES ($1, $2)
            ON CONFLICT (user_id) DO UPDATE SET balance = wallets.balance + EXCLUDED.balance
            RETURNING balance
            """,
            user_id, amount
        )

    async def freeze_wallet(self, user_id: str, reason: str, frozen_at: datetime) -> None:
        await self.conn.execute(
            """
            UPDATE wallets
            SET is_frozen = TRUE, freeze_reason = $2, frozen_at = $3
            WHERE user_id = $1
            """,
            user_id, reason, frozen_at
        )

    # Deposits

    async def insert_deposit(self, deposit: Deposit) -> Deposit:
        return _from_row(Deposit, await self._insert('deposits', deposit))

    async def get_deposit(self, deposit_id: str) -> Deposit:
        row = await self.conn.fetchrow("SELECT * FROM deposits WHERE id = $1", deposit_id)
        if not row:
            raise NotFoundError(f"Deposit not found: {deposit_id}")
        return _from_row(Deposit, row)

    async def list_deposits(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Deposit]:
        clauses, params = [], []
        if status is not None:
            params.append(str(getattr(status, 'value', status)))
            clauses.append(f"status = ${len(params)}")
        if user_id is not None:
            params.append(user_id)
            clauses.append(f"user_id = ${len(params)}")
        if created_before is not None:
            params.append(created_before)
            clauses.append(f"created_at < ${len(params)}")

        query = "SELECT * FROM deposits"
        if clauses:
            query += f" WHERE {' AND '.join(clauses)}"
        query += " ORDER BY created_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"

        rows = await self.conn.fetch(query, *params)
        return [_from_row(Deposit, row) for row in rows]

    async def update_deposit(self, deposit_id: str, patch: Dict[str, Any], expected_status: str) -> Deposit:
        try:
            return await self._cas_update('deposits', Deposit, deposit_id, patch, expected_status)
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"Provider transaction already used: {e}")

    # Withdrawals

    async def insert_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        return _from_row(Withdrawal, await self._insert('withdrawals', withdrawal))

    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        row = await self.conn.fetchrow("SELECT * FROM withdrawals WHERE id = $1", withdrawal_id)
        if not row:
            raise NotFoundError(f"Withdrawal not found: {withdrawal_id}")
        return _from_row(Withdrawal, row)

    async def list_withdrawals(self, status: Optional[str] = None, user_id: Optional[str] = None) -> List[Withdrawal]:
        clauses, params = [], []
        if status is not None:
            params.append(str(getattr(status, 'value', status)))
            clauses.append(f"status = ${len(params)}")
        if user_id is not None:
            params.append(user_id)
            clauses.append(f"user_id = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
        rows = await self.conn.fetch(
            f"SELECT * FROM withdrawals {where} ORDER BY created_at DESC",
            *params
        )
        return [_from_row(Withdrawal, row) for row in rows]

    async def update_withdrawal(self, withdrawal_id: str, patch: Dict[str, Any], expected_status: str) -> Withdrawal:
        return await self._cas_update('withdrawals', Withdrawal, withdrawal_id, patch, expected_status)

    # Risk alerts, timeline and action log

    async def insert_risk_alert(self, alert: RiskAlert) -> RiskAlert:
        return _from_row(RiskAlert, await self._insert('risk_alerts', alert))

    async def list_risk_alerts(self, unresolved_only: bool = False) -> List[RiskAlert]:
        where = "WHERE is_resolved = FALSE" if unresolved_only else ''
        rows = await self.conn.fetch(f"SELECT * FROM risk_alerts {where} ORDER BY created_at DESC")
        return [_from_row(RiskAlert, row) for row in rows]

    async def append_event(self, event: TransactionEvent) -> None:
        await self._insert('transaction_events', event)

    async def list_events(self, transaction_id: str) -> List[TransactionEvent]:
        rows = await self.conn.fetch(
            "SELECT * FROM transaction_events WHERE transaction_id = $1 ORDER BY timestamp",
            transaction_id
        )
        return [_from_row(TransactionEvent, row) for row in rows]

    async def record_action(self, key: str, action: str, at: datetime) -> None:
        await self.conn.execute(
            "INSERT INTO action_log (action_key, action_type, created_at) VALUES ($1, $2, $3)",
            key, action, at
        )

    async def count_actions(self, key: str, action: str, since: datetime) -> int:
        # Held until commit, so a count and the record_action that follows it
        # cannot interleave with another session counting the same key
        await self.conn.execute(
            "SELECT pg_advisory_xact_lock(hashtext($1))",
            f"{action}:{key}"
        )
        return await self.conn.fetchval(
            """
            SELECT COUNT(*) FROM action_log
            WHERE action_key = $1 AND action_type = $2 AND created_at >= $3
            """,
            key, action, since
        )


class PostgresEscrowStore(EscrowStore):
    """Transaction Ledger backed by PostgreSQL through an asyncpg pool."""

    def __init__(
        self,
        database_url: str,
        min_size: int = 2,
        max_size: int = 10
    ):
        """
        Initialize the store.

        Args:
            database_url: PostgreSQL connection URL
            min_size: Minimum pool size
            max_size: Maximum pool size
        """
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """
        Establish connection pool and make sure the schema exists.

        Raises:
            StoreError: If connection or schema creation fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60
            )
            logger.info("Database connection pool established")
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Failed to connect to database: {e}")
            raise StoreError(f"Database connection failed: {e}")

        await self.init_schema()

    async def init_schema(self) -> None:
        if not self.pool:
            raise StoreError("Database not connected. Call connect() first.")

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(SCHEMA_SQL)
            logger.info("Escrow schema created/verified")
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to initialize escrow schema: {e}")
            raise StoreError(f"Escrow schema initialization failed: {e}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    async def ping(self) -> None:
        async with self.atomic() as session:
            await session.conn.fetchval("SELECT 1")

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[StoreSession]:
        if not self.pool:
            raise StoreError("Database not connected. Call connect() first.")

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    yield PostgresSession(conn)
        except (asyncpg.CheckViolationError, asyncpg.exceptions.RaiseError) as e:
            raise ValidationError(f"Rejected by database constraint: {e}")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database operation failed: {e}")
            raise StoreError(f"Database operation failed: {e}")
