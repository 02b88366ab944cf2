"""
In-process Transaction Ledger.

Used when no DATABASE_URL is configured and throughout the test suite.
Units of work are serialized with an asyncio.Lock; a failed unit restores
the snapshot taken when it started, so wallet and status writes roll back
together just as they do in PostgreSQL.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, AsyncIterator

from escrow_database import EscrowStore, StoreSession, apply_transaction_patch
from escrow_errors import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
    WalletFrozenError,
)
from escrow_models import (
    Deposit,
    RiskAlert,
    Transaction,
    TransactionEvent,
    TransactionStatus,
    Wallet,
    Withdrawal,
)

logger = logging.getLogger(__name__)


class _Tables:
    """Plain containers for every record kind."""

    def __init__(self):
        self.transactions: Dict[str, Transaction] = {}
        self.wallets: Dict[str, Wallet] = {}
        self.deposits: Dict[str, Deposit] = {}
        self.withdrawals: Dict[str, Withdrawal] = {}
        self.risk_alerts: List[RiskAlert] = []
        self.events: List[TransactionEvent] = []
        self.actions: List[tuple] = []

    def snapshot(self) -> Dict[str, Any]:
        # Records are immutable values, so shallow copies are enough
        return {name: value.copy() for name, value in vars(self).items()}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)


def _cas(records: Dict[str, Any], kind: str, record_id: str, patch: Dict[str, Any], expected_status) -> Any:
    current = records.get(record_id)
    if current is None:
        raise NotFoundError(f"{kind} not found: {record_id}")

    if 'id' in patch:
        raise ValidationError(f"{kind} id cannot be changed")
    unknown = set(patch) - set(type(current).model_fields)
    if unknown:
        raise ValidationError(f"Unknown {kind} fields: {sorted(unknown)}")

    if current.status != expected_status:
        raise ConflictError(
            f"{kind} {record_id} is {current.status.value}, expected {expected_status}",
            expected_status=str(getattr(expected_status, 'value', expected_status)),
            actual_status=current.status.value,
        )

    updated = type(current).model_validate({**current.model_dump(), **patch})
    records[record_id] = updated
    return updated


class InMemorySession(StoreSession):
    """StoreSession operating directly on the in-process tables."""

    def __init__(self, tables: _Tables):
        self.tables = tables

    # Transactions

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.id in self.tables.transactions:
            raise ConflictError(f"Transaction already exists: {transaction.id}")
        for existing in self.tables.transactions.values():
            if existing.code == transaction.code:
                raise ConflictError(f"Duplicate transaction code: {transaction.code}")
            if transaction.room_id and existing.room_id == transaction.room_id:
                raise ConflictError(f"Duplicate room id: {transaction.room_id}")

        self.tables.transactions[transaction.id] = transaction
        return transaction

    async def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.tables.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    async def update_transaction(
        self,
        transaction_id: str,
        patch: Dict[str, Any],
        expected_status: TransactionStatus
    ) -> Transaction:
        current = await self.get_transaction(transaction_id)
        updated = apply_transaction_patch(current, patch, expected_status)
        self.tables.transactions[transaction_id] = updated
        return updated

    async def list_transactions(
        self,
        user_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        created_before: Optional[datetime] = None
    ) -> List[Transaction]:
        results = []
        for transaction in self.tables.transactions.values():
            if user_id is not None and user_id not in (transaction.buyer_id, transaction.seller_id):
                continue
            if status is not None and transaction.status != status:
                continue
            if created_before is not None and transaction.created_at >= created_before:
                continue
            results.append(transaction)

        results.sort(key=lambda t: t.created_at, reverse=True)
        return results

    async def find_by_room(self, room_id: str) -> Optional[Transaction]:
        room_id = room_id.upper()
        for transaction in self.tables.transactions.values():
            if transaction.room_id == room_id:
                return transaction
        return None

    # Wallets

    async def get_wallet(self, user_id: str) -> Wallet:
        return self.tables.wallets.get(user_id) or Wallet(user_id=user_id)

    async def ensure_wallet(self, user_id: str, is_staff: bool = False) -> Wallet:
        wallet = self.tables.wallets.get(user_id) or Wallet(user_id=user_id)
        wallet = wallet.model_copy(update={'is_staff': is_staff})
        self.tables.wallets[user_id] = wallet
        return wallet

    async def list_wallets(self) -> List[Wallet]:
        return sorted(self.tables.wallets.values(), key=lambda w: w.user_id)

    async def debit(self, user_id: str, amount: Decimal) -> Decimal:
        wallet = self.tables.wallets.get(user_id)
        available = wallet.balance if wallet else Decimal('0')
        if wallet is None or available < amount:
            raise InsufficientFundsError(
                f"Wallet {user_id} has {available}, needs {amount}"
            )
        if wallet.is_frozen:
            raise WalletFrozenError(f"Wallet {user_id} is frozen")

        wallet = wallet.model_copy(update={'balance': wallet.balance - amount})
        self.tables.wallets[user_id] = wallet
        return wallet.balance

    async def credit(self, user_id: str, amount: Decimal) -> Decimal:
        if amount < 0:
            raise ValidationError("Credit amount cannot be negative")
        wallet = self.tables.wallets.get(user_id) or Wallet(user_id=user_id)
        wallet = wallet.model_copy(update={'balance': wallet.balance + amount})
        self.tables.wallets[user_id] = wallet
        return wallet.balance

    async def freeze_wallet(self, user_id: str, reason: str, frozen_at: datetime) -> None:
        wallet = self.tables.wallets.get(user_id)
        if wallet is None:
            return
        self.tables.wallets[user_id] = wallet.model_copy(update={
            'is_frozen': True,
            'freeze_reason': reason,
            'frozen_at': frozen_at,
        })

    # Deposits

    async def insert_deposit(self, deposit: Deposit) -> Deposit:
        self.tables.deposits[deposit.id] = deposit
        return deposit

    async def get_deposit(self, deposit_id: str) -> Deposit:
        deposit = self.tables.deposits.get(deposit_id)
        if deposit is None:
            raise NotFoundError(f"Deposit not found: {deposit_id}")
        return deposit

    async def list_deposits(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Deposit]:
        results = [
            d for d in self.tables.deposits.values()
            if (status is None or d.status == status)
            and (user_id is None or d.user_id == user_id)
            and (created_before is None or d.created_at < created_before)
        ]
        results.sort(key=lambda d: d.created_at, reverse=True)
        return results[:limit] if limit is not None else results

    async def update_deposit(self, deposit_id: str, patch: Dict[str, Any], expected_status: str) -> Deposit:
        if patch.get('provider_tx_id'):
            for other in self.tables.deposits.values():
                if other.id != deposit_id and other.provider_tx_id == patch['provider_tx_id']:
                    raise ConflictError(f"Provider transaction already used: {patch['provider_tx_id']}")
        return _cas(self.tables.deposits, 'Deposit', deposit_id, patch, expected_status)

    # Withdrawals

    async def insert_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        self.tables.withdrawals[withdrawal.id] = withdrawal
        return withdrawal

    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        withdrawal = self.tables.withdrawals.get(withdrawal_id)
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal not found: {withdrawal_id}")
        return withdrawal

    async def list_withdrawals(self, status: Optional[str] = None, user_id: Optional[str] = None) -> List[Withdrawal]:
        results = [
            w for w in self.tables.withdrawals.values()
            if (status is None or w.status == status)
            and (user_id is None or w.user_id == user_id)
        ]
        results.sort(key=lambda w: w.created_at, reverse=True)
        return results

    async def update_withdrawal(self, withdrawal_id: str, patch: Dict[str, Any], expected_status: str) -> Withdrawal:
        return _cas(self.tables.withdrawals, 'Withdrawal', withdrawal_id, patch, expected_status)

    # Risk alerts, timeline and action log

    async def insert_risk_alert(self, alert: RiskAlert) -> RiskAlert:
        self.tables.risk_alerts.append(alert)
        return alert

    async def list_risk_alerts(self, unresolved_only: bool = False) -> List[RiskAlert]:
        alerts = [a for a in self.tables.risk_alerts if not (unresolved_only and a.is_resolved)]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    async def append_event(self, event: TransactionEvent) -> None:
        self.tables.events.append(event)

    async def list_events(self, transaction_id: str) -> List[TransactionEvent]:
        return [e for e in self.tables.events if e.transaction_id == transaction_id]

    async def record_action(self, key: str, action: str, at: datetime) -> None:
        self.tables.actions.append((key, action, at))

    async def count_actions(self, key: str, action: str, since: datetime) -> int:
        return sum(1 for k, a, at in self.tables.actions if k == key and a == action and at >= since)


class InMemoryEscrowStore(EscrowStore):
    """
    EscrowStore kept in process memory.

    Args:
        yield_after_commit: Give other tasks a turn after each unit of work,
            mimicking the I/O suspension a database round trip causes
    """

    def __init__(self, yield_after_commit: bool = True):
        self._tables = _Tables()
        self._lock = asyncio.Lock()
        self.yield_after_commit = yield_after_commit

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[StoreSession]:
        async with self._lock:
            snapshot = self._tables.snapshot()
            try:
                yield InMemorySession(self._tables)
            except BaseException:
                self._tables.restore(snapshot)
                logger.debug("Rolled back in-memory unit of work")
                raise

        if self.yield_after_commit:
            await asyncio.sleep(0)
