"""
Wallet Service Module

Concrete Wallet Ledger operations outside the escrow state machine:
bank-transfer top-ups confirmed by the payment provider's webhook, and
withdrawals reviewed by staff.

Webhook processing is idempotent: a deposit moves pending -> completed by
compare-and-swap in the same atomic unit as the balance credit, so a
replayed or concurrent delivery finds nothing left to credit.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, List, Callable, Any, Union

from pydantic import BaseModel, ConfigDict, Field

from config import get_config, Config
from escrow_database import EscrowStore
from escrow_errors import (
    ConflictError,
    UnauthorizedTransitionError,
    ValidationError,
)
from escrow_models import (
    Actor,
    Deposit,
    DepositStatus,
    RiskAlert,
    Wallet,
    Withdrawal,
    WithdrawalStatus,
    parse_decimal,
    utcnow,
)
from utils import (
    deposit_transfer_code,
    extract_deposit_reference,
    format_currency,
    mask_sensitive_data,
    sanitize_input,
)

logger = logging.getLogger(__name__)


class PaymentWebhookPayload(BaseModel):
    """Incoming bank-transfer notification from the payment provider."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: Optional[Union[int, str]] = None
    gateway: Optional[str] = None
    transaction_date: Optional[str] = Field(default=None, alias='transactionDate')
    account_number: Optional[str] = Field(default=None, alias='accountNumber')
    code: Optional[str] = None
    content: Optional[str] = None
    transfer_type: str = Field(default='in', alias='transferType')
    transfer_amount: Decimal = Field(alias='transferAmount')
    accumulated: Optional[Decimal] = None
    reference_code: Optional[str] = Field(default=None, alias='referenceCode')
    description: Optional[str] = None


class WebhookResult(BaseModel):
    """Acknowledgement returned to the provider."""
    success: bool = True
    message: str
    deposit_id: Optional[str] = None
    amount: Optional[Decimal] = None
    credited: bool = False


class WalletService:
    """
    Deposits, payment webhook and withdrawals.

    Attributes:
        store: Transaction Ledger (wallet rows live in the same store)
        config: Configuration instance
        staff_notifier: Optional StaffNotifier
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
        # Last staff flag written per user, so only role changes cost a write
        self._staff_flags: Dict[str, bool] = {}

    # ==================== Wallets ====================

    async def register_wallet(self, user_id: str, is_staff: bool = False) -> Wallet:
        """Create the user's wallet if missing and record the staff flag."""
        async with self.store.atomic() as session:
            return await session.ensure_wallet(user_id, is_staff)

    async def sync_actor(self, actor: Actor) -> None:
        """
        Mirror the caller's staff capability onto their wallet.

        The balance scan skips staff wallets, so the flag must follow the
        roles the auth layer reports on each request.
        """
        if self._staff_flags.get(actor.user_id) == actor.is_staff:
            return
        await self.register_wallet(actor.user_id, actor.is_staff)
        self._staff_flags[actor.user_id] = actor.is_staff

    async def get_wallet(self, user_id: str) -> Wallet:
        return await self.store.get_wallet(user_id)

    # ==================== Deposits ====================

    async def create_deposit(self, user_id: str, amount: Any) -> Deposit:
        """
        Open a pending top-up.

        Args:
            user_id: Wallet owner
            amount: Expected transfer amount

        Returns:
            Deposit whose ``transfer_code`` the payer puts in the transfer content

        Raises:
            ValidationError: If the amount is below the minimum
        """
        amount = parse_decimal(amount)
        if amount < self.config.min_deposit_amount:
            raise ValidationError(
                f"Minimum deposit is {format_currency(self.config.min_deposit_amount)}"
            )

        deposit = Deposit(user_id=user_id, amount=amount, created_at=self.clock())
        deposit = deposit.model_copy(update={
            'transfer_code': deposit_transfer_code(deposit.id, self.config.deposit_code_prefix)
        })

        async with self.store.atomic() as session:
            stored = await session.insert_deposit(deposit)

        logger.info(
            f"Deposit {stored.transfer_code} opened for {mask_sensitive_data(user_id)}: "
            f"{format_currency(amount)}"
        )
        return stored

    async def _find_pending_deposit(self, kind: str, value: str) -> Optional[Deposit]:
        async with self.store.atomic() as session:
            if kind == 'uuid':
                candidates = await session.list_deposits(status=DepositStatus.PENDING)
                return next((d for d in candidates if d.id.lower() == value), None)

            # Newest pending deposit wins a prefix collision
            candidates = await session.list_deposits(
                status=DepositStatus.PENDING,
                limit=self.config.deposit_candidate_limit
            )
            return next(
                (d for d in candidates if d.id.replace('-', '').lower().startswith(value)),
                None
            )

    async def handle_payment_webhook(self, payload: PaymentWebhookPayload) -> WebhookResult:
        """
        Process a "funds received" notification.

        Only incoming transfers are considered. The deposit is located by
        the reference embedded in the transfer content, the amount must be
        within tolerance, and the credit happens at most once per deposit.

        Args:
            payload: Parsed provider payload

        Returns:
            WebhookResult; unmatched or replayed payloads are acknowledged
            with ``credited=False``
        """
        if payload.transfer_type != 'in':
            logger.info("Skipping outgoing transfer")
            return WebhookResult(message="Skipped outgoing transfer")

        kind, value = extract_deposit_reference(
            payload.content or payload.description,
            self.config.deposit_code_prefix
        )
        if kind is None:
            logger.info(f"No deposit reference in transfer content: {mask_sensitive_data(payload.content, 8)}")
            return WebhookResult(message="No deposit ID found")

        deposit = await self._find_pending_deposit(kind, value)
        if deposit is None:
            logger.info(f"Deposit not found or already processed: {value}")
            return WebhookResult(message="Deposit not found or already processed")

        transfer_amount = payload.transfer_amount
        if abs(deposit.amount - transfer_amount) > self.config.deposit_amount_tolerance:
            logger.warning(
                f"Amount mismatch for deposit {deposit.transfer_code}: "
                f"expected {deposit.amount}, received {transfer_amount}"
            )
            async with self.store.atomic() as session:
                await session.insert_risk_alert(RiskAlert(
                    user_id=deposit.user_id,
                    alert_type='deposit_amount_mismatch',
                    description=(
                        f"Deposit {deposit.transfer_code} expected {format_currency(deposit.amount)}, "
                        f"received {format_currency(transfer_amount)}"
                    ),
                    metadata={
                        'deposit_id': deposit.id,
                        'provider_tx_id': str(payload.id) if payload.id is not None else None,
                    },
                    created_at=self.clock(),
                ))
            return WebhookResult(
                success=False,
                message="Amount mismatch",
                deposit_id=deposit.id,
                amount=transfer_amount,
            )

        now = self.clock()
        try:
            async with self.store.atomic() as session:
                await session.update_deposit(
                    deposit.id,
                    {
                        'status': DepositStatus.COMPLETED,
                        'credited_amount': transfer_amount,
                        'provider_tx_id': str(payload.id) if payload.id is not None else None,
                        'reference': payload.reference_code,
                        'completed_at': now,
                    },
                    expected_status=DepositStatus.PENDING
                )
                balance = await session.credit(deposit.user_id, transfer_amount)
        except ConflictError:
            logger.info(f"Deposit {deposit.transfer_code} was confirmed concurrently")
            return WebhookResult(
                message="Deposit not found or already processed",
                deposit_id=deposit.id,
            )

        logger.info(
            f"Deposit {deposit.transfer_code} confirmed: {format_currency(transfer_amount)} "
            f"credited, balance {format_currency(balance)}"
        )

        if self.staff_notifier is not None:
            await self.staff_notifier.notify(
                'deposit', 'Deposit Confirmed',
                f"{format_currency(transfer_amount)} received via {payload.gateway or 'bank transfer'}",
                {'Code': deposit.transfer_code, 'User': mask_sensitive_data(deposit.user_id)}
            )

        return WebhookResult(
            message="Deposit confirmed",
            deposit_id=deposit.id,
            amount=transfer_amount,
            credited=True,
        )

    async def expire_stale_deposits(self, now: Optional[datetime] = None) -> int:
        """
        Mark abandoned pending deposits as expired.

        Returns:
            Number of deposits expired
        """
        now = now or self.clock()
        cutoff = now - timedelta(minutes=self.config.stale_deposit_minutes)

        async with self.store.atomic() as session:
            stale = await session.list_deposits(status=DepositStatus.PENDING, created_before=cutoff)

        expired = 0
        for deposit in stale:
            try:
                async with self.store.atomic() as session:
                    await session.update_deposit(
                        deposit.id,
                        {'status': DepositStatus.EXPIRED},
                        expected_status=DepositStatus.PENDING
                    )
                expired += 1
            except ConflictError:
                # Confirmed by the webhook in the meantime
                continue

        if expired:
            logger.info(f"Expired {expired} stale deposits")
        return expired

    # ==================== Withdrawals ====================

    async def request_withdrawal(
        self,
        user_id: str,
        amount: Any,
        bank_name: str,
        account_number: str,
        account_holder: str
    ) -> Withdrawal:
        """
        Debit the wallet and queue a payout for staff review.

        Raises:
            ValidationError: If the amount is below the minimum or bank details are missing
            InsufficientFundsError: If the balance cannot cover the amount
        """
        amount = parse_decimal(amount)
        if amount < self.config.min_withdrawal_amount:
            raise ValidationError(
                f"Minimum withdrawal is {format_currency(self.config.min_withdrawal_amount)}"
            )

        bank_name = sanitize_input(bank_name, 100)
        account_number = sanitize_input(account_number, 50)
        account_holder = sanitize_input(account_holder, 100)
        if not (bank_name and account_number and account_holder):
            raise ValidationError("Bank name, account number and account holder are required")

        withdrawal = Withdrawal(
            user_id=user_id,
            amount=amount,
            bank_name=bank_name,
            account_number=account_number,
            account_holder=account_holder.upper(),
            created_at=self.clock(),
        )

        async with self.store.atomic() as session:
            await session.debit(user_id, amount)
            stored = await session.insert_withdrawal(withdrawal)

        logger.info(
            f"Withdrawal {stored.id} requested by {mask_sensitive_data(user_id)}: "
            f"{format_currency(amount)} to {mask_sensitive_data(account_number)}"
        )

        if self.staff_notifier is not None:
            await self.staff_notifier.notify(
                'withdrawal', 'Withdrawal Request',
                f"{format_currency(amount)} to {bank_name}",
                {'Account': mask_sensitive_data(account_number), 'Holder': stored.account_holder}
            )
        return stored

    async def approve_withdrawal(self, withdrawal_id: str, actor: Actor, note: Optional[str] = None) -> Withdrawal:
        """
        Staff marks a payout as sent.

        Raises:
            UnauthorizedTransitionError: If the actor is not staff
            ConflictError: If the withdrawal was already reviewed
        """
        if not actor.is_staff:
            raise UnauthorizedTransitionError("Only staff can review withdrawals")

        async with self.store.atomic() as session:
            withdrawal = await session.update_withdrawal(
                withdrawal_id,
                {
                    'status': WithdrawalStatus.COMPLETED,
                    'note': sanitize_input(note, 500) or None,
                    'reviewed_by': actor.user_id,
                    'reviewed_at': self.clock(),
                },
                expected_status=WithdrawalStatus.PENDING
            )

        logger.info(f"Withdrawal {withdrawal_id} approved by {actor.user_id}")
        return withdrawal

    async def reject_withdrawal(self, withdrawal_id: str, actor: Actor, note: Optional[str] = None) -> Withdrawal:
        """
        Staff rejects a payout; the amount returns to the wallet.

        Raises:
            UnauthorizedTransitionError: If the actor is not staff
            ConflictError: If the withdrawal was already reviewed
        """
        if not actor.is_staff:
            raise UnauthorizedTransitionError("Only staff can review withdrawals")

        async with self.store.atomic() as session:
            withdrawal = await session.update_withdrawal(
                withdrawal_id,
                {
                    'status': WithdrawalStatus.REJECTED,
                    'note': sanitize_input(note, 500) or None,
                    'reviewed_by': actor.user_id,
                    'reviewed_at': self.clock(),
                },
                expected_status=WithdrawalStatus.PENDING
            )
            await session.credit(withdrawal.user_id, withdrawal.amount)

        logger.info(f"Withdrawal {withdrawal_id} rejected by {actor.user_id}; funds returned")
        return withdrawal

    async def list_withdrawals(self, actor: Actor, status: Optional[str] = None) -> List[Withdrawal]:
        async with self.store.atomic() as session:
            if actor.is_staff:
                return await session.list_withdrawals(status=status)
            return await session.list_withdrawals(status=status, user_id=actor.user_id)
