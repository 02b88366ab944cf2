"""
Domain records for the escrow engine.

Transactions, deposits, withdrawals, wallets, risk alerts and transition
events are pydantic models. Records are treated as values: stores replace
them with ``model_copy(update=...)`` rather than mutating in place.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, List, Dict, Any, FrozenSet, NamedTuple

from pydantic import BaseModel, Field

from escrow_errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_decimal(value: Any, field: str = 'amount') -> Decimal:
    """Convert user input to Decimal, raising ValidationError on garbage."""
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number, got {value!r}")
    return number


class TransactionStatus(str, Enum):
    """Enumeration of escrow transaction states."""
    PENDING = "pending"              # Room open, not funded
    DEPOSITED = "deposited"          # Buyer funds held in escrow
    SHIPPING = "shipping"            # Seller marked as shipped
    COMPLETED = "completed"          # Funds released to seller
    DISPUTED = "disputed"            # Waiting for staff arbitration
    CANCELLED = "cancelled"          # Abandoned before funding
    REFUNDED = "refunded"            # Funds returned to buyer


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
})

# Status graph enforced at the storage boundary. Who may walk an edge is
# decided by the transition table in escrow_service.
ALLOWED_EDGES = frozenset({
    (TransactionStatus.PENDING, TransactionStatus.DEPOSITED),
    (TransactionStatus.PENDING, TransactionStatus.CANCELLED),
    (TransactionStatus.DEPOSITED, TransactionStatus.SHIPPING),
    (TransactionStatus.DEPOSITED, TransactionStatus.DISPUTED),
    (TransactionStatus.SHIPPING, TransactionStatus.COMPLETED),
    (TransactionStatus.SHIPPING, TransactionStatus.DISPUTED),
    (TransactionStatus.DISPUTED, TransactionStatus.COMPLETED),
    (TransactionStatus.DISPUTED, TransactionStatus.REFUNDED),
})

# Trade terms a joining seller may supply and the creator may edit. They are
# locked once both parties are in the room.
DETAIL_FIELDS = frozenset({
    'product_name', 'description', 'category', 'images', 'amount', 'fee_bearer',
})


class FeeBearer(str, Enum):
    """Which party's proceeds absorb the platform fee."""
    BUYER = "buyer"
    SELLER = "seller"
    SPLIT = "split"


class Role(str, Enum):
    """Trigger roles used by the transition table."""
    BUYER = "buyer"
    SELLER = "seller"
    STAFF = "staff"


class EventType(str, Enum):
    """Events published after a committed change."""
    CREATED = "created"
    JOINED = "joined"
    DETAILS_UPDATED = "details_updated"
    FUNDED = "funded"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RESOLVED_RELEASE = "resolved_release"
    RESOLVED_REFUND = "resolved_refund"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"
    CLAIMED = "claimed"


class DepositStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


STAFF_ROLES = frozenset({'admin', 'moderator'})


class Actor(BaseModel):
    """
    Caller identity supplied by the external auth layer.

    ``roles`` holds capability names such as ``user``, ``moderator`` and
    ``admin``. The hidden elevated capability is a separate flag and
    implies ``admin``.
    """
    user_id: str
    roles: FrozenSet[str] = frozenset({'user'})
    is_root_admin: bool = False

    @property
    def is_admin(self) -> bool:
        return self.is_root_admin or 'admin' in self.roles

    @property
    def is_staff(self) -> bool:
        return self.is_admin or bool(STAFF_ROLES & self.roles)

    @property
    def display_role(self) -> str:
        # Root admins are presented as plain admins
        if self.is_admin:
            return 'admin'
        if 'moderator' in self.roles:
            return 'moderator'
        return 'user'

    @classmethod
    def system(cls) -> 'Actor':
        """Actor used by scheduled jobs."""
        return cls(user_id='system', roles=frozenset({'admin'}))


class FeeSplit(NamedTuple):
    fee_amount: Decimal
    seller_receives: Decimal
    buyer_pays: Decimal


def compute_fee_split(amount: Decimal, fee_percent: Decimal, fee_bearer: FeeBearer) -> FeeSplit:
    """
    Split the platform fee between the parties.

    Args:
        amount: Escrowed principal
        fee_percent: Fee rate in percent, 0..100
        fee_bearer: Who absorbs the fee

    Returns:
        FeeSplit with the fee, the seller's proceeds and the buyer's debit

    Example:
        >>> compute_fee_split(Decimal('100000'), Decimal('5'), FeeBearer.SELLER)
        FeeSplit(fee_amount=Decimal('5000'), seller_receives=Decimal('95000'), buyer_pays=Decimal('100000'))
    """
    amount = Decimal(amount)
    fee_amount = amount * Decimal(fee_percent) / Decimal('100')

    if fee_bearer == FeeBearer.SELLER:
        return FeeSplit(fee_amount, amount - fee_amount, amount)
    if fee_bearer == FeeBearer.BUYER:
        return FeeSplit(fee_amount, amount, amount + fee_amount)

    half = fee_amount / Decimal('2')
    return FeeSplit(fee_amount, amount - half, amount + half)


class Transaction(BaseModel):
    """Canonical escrow record."""
    id: str = Field(default_factory=new_id)
    code: str
    room_id: Optional[str] = None
    room_password: Optional[str] = None

    buyer_id: Optional[str] = None
    seller_id: Optional[str] = None
    moderator_id: Optional[str] = None
    arbiter_id: Optional[str] = None

    product_name: str
    description: Optional[str] = None
    category: str = 'other'
    images: List[str] = Field(default_factory=list)

    amount: Decimal
    fee_percent: Decimal = Decimal('0')
    fee_amount: Decimal = Decimal('0')
    fee_bearer: FeeBearer = FeeBearer.SELLER
    seller_receives: Decimal = Decimal('0')
    buyer_paid: Decimal = Decimal('0')
    dispute_window_hours: int = 24

    status: TransactionStatus = TransactionStatus.PENDING
    dispute_reason: Optional[str] = None
    buyer_confirmed: bool = False
    seller_confirmed: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deposited_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dispute_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_both_parties(self) -> bool:
        return bool(self.buyer_id and self.seller_id)

    @property
    def dispute_deadline(self) -> Optional[datetime]:
        if self.shipped_at is None:
            return None
        return self.shipped_at + timedelta(hours=self.dispute_window_hours)

    def party_role(self, user_id: str) -> Optional[Role]:
        """Return BUYER or SELLER when the user is a party, else None."""
        if user_id and user_id == self.buyer_id:
            return Role.BUYER
        if user_id and user_id == self.seller_id:
            return Role.SELLER
        return None

    def check_invariants(self) -> None:
        """
        Validate data-model invariants.

        Raises:
            ValidationError: If any invariant is violated
        """
        if self.amount <= 0:
            raise ValidationError(f"Amount must be positive, got {self.amount}")

        if not Decimal('0') <= self.fee_percent <= Decimal('100'):
            raise ValidationError(f"Fee percent must be between 0 and 100, got {self.fee_percent}")

        if not Decimal('0') <= self.seller_receives <= self.amount:
            raise ValidationError(
                f"Seller proceeds {self.seller_receives} outside [0, {self.amount}]"
            )

        if self.dispute_window_hours <= 0:
            raise ValidationError("Dispute window must be positive")

        if not self.product_name or not self.product_name.strip():
            raise ValidationError("Product name is required")

        if self.buyer_id and self.buyer_id == self.seller_id:
            raise ValidationError("Buyer and seller cannot be the same user")


class Wallet(BaseModel):
    """A user's spendable balance."""
    user_id: str
    balance: Decimal = Decimal('0')
    is_staff: bool = False
    is_frozen: bool = False
    freeze_reason: Optional[str] = None
    frozen_at: Optional[datetime] = None


class Deposit(BaseModel):
    """A wallet top-up awaiting a bank transfer."""
    id: str = Field(default_factory=new_id)
    user_id: str
    amount: Decimal
    status: DepositStatus = DepositStatus.PENDING
    transfer_code: str = ''
    credited_amount: Optional[Decimal] = None
    provider_tx_id: Optional[str] = None
    reference: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class Withdrawal(BaseModel):
    """A payout request; the amount is debited when requested."""
    id: str = Field(default_factory=new_id)
    user_id: str
    amount: Decimal
    bank_name: str
    account_number: str
    account_holder: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    note: Optional[str] = None
    reviewed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None


class RiskAlert(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    transaction_id: Optional[str] = None
    alert_type: str
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_resolved: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class TransactionEvent(BaseModel):
    """Structured record of a committed change, fanned out by the notifier."""
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    transaction_id: str
    event_type: EventType
    from_status: TransactionStatus
    to_status: TransactionStatus
    actor_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def dedupe_key(self) -> tuple:
        return (self.transaction_id, self.event_type.value, self.to_status.value)
