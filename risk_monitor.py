"""
Risk Monitoring Module

Observer for transition events plus the periodic balance anomaly scan.

Heuristics:
    - fast_completion: funds released unusually soon after funding
    - dispute_opened: every new dispute is surfaced for staff review
    - balance_anomaly: wallet balance not explained by its deposit,
      withdrawal and trade history; the wallet is frozen
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Callable, Dict, Any

from config import get_config, Config
from escrow_database import EscrowStore, StoreSession
from escrow_models import (
    DepositStatus,
    EventType,
    RiskAlert,
    TransactionEvent,
    TransactionStatus,
    Wallet,
    WithdrawalStatus,
    utcnow,
)
from utils import format_currency, mask_sensitive_data

logger = logging.getLogger(__name__)


# Buyer funds stay spent in these states; refunds return them
FUNDED_STATUSES = frozenset({
    TransactionStatus.DEPOSITED,
    TransactionStatus.SHIPPING,
    TransactionStatus.DISPUTED,
    TransactionStatus.COMPLETED,
})

COMPLETION_EVENTS = frozenset({EventType.COMPLETED, EventType.RESOLVED_RELEASE})


class RiskMonitor:
    """
    Risk heuristics over escrow activity.

    Attributes:
        store: Transaction Ledger
        config: Configuration instance
        staff_notifier: Optional StaffNotifier for alert delivery
        clock: Callable returning the current UTC time
    """

    def __init__(
        self,
        store: EscrowStore,
        config: Optional[Config] = None,
        staff_notifier: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.config = config or get_config()
        self.staff_notifier = staff_notifier
        self.clock = clock or utcnow

    async def on_event(self, event: TransactionEvent) -> None:
        """Observer hook registered with the EventNotifier."""
        if event.event_type in COMPLETION_EVENTS:
            await self._check_fast_completion(event)
        elif event.event_type == EventType.DISPUTED:
            await self.raise_alert(RiskAlert(
                user_id=event.actor_id,
                transaction_id=event.transaction_id,
                alert_type='dispute_opened',
                description=f"Dispute opened: {event.payload.get('reason', 'no reason given')}",
                metadata={'from_status': event.from_status.value},
                created_at=self.clock(),
            ))

    async def _check_fast_completion(self, event: TransactionEvent) -> None:
        transaction = await self.store.get(event.transaction_id)
        if transaction.deposited_at is None or transaction.completed_at is None:
            return

        elapsed = (transaction.completed_at - transaction.deposited_at).total_seconds()
        if elapsed >= self.config.risk_fast_completion_seconds:
            return

        await self.raise_alert(RiskAlert(
            user_id=transaction.seller_id,
            transaction_id=transaction.id,
            alert_type='fast_completion',
            description=(
                f"Transaction {transaction.code} completed {int(elapsed)}s after funding "
                f"({format_currency(transaction.amount)})"
            ),
            metadata={
                'elapsed_seconds': elapsed,
                'buyer_id': transaction.buyer_id,
                'seller_id': transaction.seller_id,
            },
            created_at=self.clock(),
        ))

    async def raise_alert(self, alert: RiskAlert) -> Optional[RiskAlert]:
        """
        Persist an alert unless an identical one exists for the same transaction.

        Returns:
            The stored alert, or None if it was a duplicate
        """
        async with self.store.atomic() as session:
            if alert.transaction_id:
                existing = await session.list_risk_alerts()
                if any(
                    a.transaction_id == alert.transaction_id and a.alert_type == alert.alert_type
                    for a in existing
                ):
                    logger.debug(f"Duplicate {alert.alert_type} alert for {alert.transaction_id}")
                    return None
            stored = await session.insert_risk_alert(alert)

        logger.warning(f"Risk alert {alert.alert_type}: {alert.description}")

        if self.staff_notifier is not None:
            await self.staff_notifier.notify_risk_alert(stored)
        return stored

    async def scan_balance_anomalies(self) -> List[str]:
        """
        Freeze non-staff wallets whose balance their history cannot explain.

        Expected balance = completed deposits - non-rejected withdrawals
        - buyer debits on funded, unrefunded trades + proceeds of completed sales.

        Returns:
            User ids frozen by this run
        """
        async with self.store.atomic() as session:
            wallets = await session.list_wallets()

        frozen = []
        for wallet in wallets:
            if wallet.is_staff or wallet.is_frozen:
                continue
            try:
                if await self._scan_wallet(wallet):
                    frozen.append(wallet.user_id)
            except Exception as e:
                logger.error(f"Balance scan failed for {mask_sensitive_data(wallet.user_id)}: {e}")

        logger.info(f"Balance anomaly scan finished: {len(wallets)} wallets, {len(frozen)} frozen")
        return frozen

    async def _scan_wallet(self, wallet: Wallet) -> bool:
        async with self.store.atomic() as session:
            history = await self._wallet_history(session, wallet.user_id)
            current = await session.get_wallet(wallet.user_id)

            expected = (
                history['deposits']
                - history['withdrawals']
                - history['spent_as_buyer']
                + history['earned_as_seller']
            )
            diff = current.balance - expected

            reason = None
            if diff > self.config.risk_balance_diff_threshold:
                reason = (
                    f"Balance {format_currency(current.balance)} exceeds expected "
                    f"{format_currency(expected)} by {format_currency(diff)}"
                )
            elif (
                current.balance > self.config.risk_unexplained_balance
                and history['deposits'] == 0
                and history['earned_as_seller'] == 0
            ):
                reason = (
                    f"Balance {format_currency(current.balance)} with no deposit or sale history"
                )

            if reason is None:
                return False

            now = self.clock()
            await session.freeze_wallet(wallet.user_id, reason, now)
            alert = await session.insert_risk_alert(RiskAlert(
                user_id=wallet.user_id,
                alert_type='balance_anomaly',
                description=reason,
                metadata={
                    'balance': str(current.balance),
                    'expected': str(expected),
                    'difference': str(diff),
                },
                created_at=now,
            ))

        logger.warning(f"Wallet {mask_sensitive_data(wallet.user_id)} frozen: {reason}")
        if self.staff_notifier is not None:
            await self.staff_notifier.notify_risk_alert(alert)
        return True

    @staticmethod
    async def _wallet_history(session: StoreSession, user_id: str) -> Dict[str, Decimal]:
        deposits = await session.list_deposits(status=DepositStatus.COMPLETED, user_id=user_id)
        withdrawals = await session.list_withdrawals(user_id=user_id)
        transactions = await session.list_transactions(user_id=user_id)

        return {
            'deposits': sum(
                (d.credited_amount if d.credited_amount is not None else d.amount for d in deposits),
                Decimal('0')
            ),
            'withdrawals': sum(
                (w.amount for w in withdrawals if w.status != WithdrawalStatus.REJECTED),
                Decimal('0')
            ),
            'spent_as_buyer': sum(
                (t.buyer_paid for t in transactions
                 if t.buyer_id == user_id and t.status in FUNDED_STATUSES),
                Decimal('0')
            ),
            'earned_as_seller': sum(
                (t.seller_receives for t in transactions
                 if t.seller_id == user_id and t.status == TransactionStatus.COMPLETED),
                Decimal('0')
            ),
        }
