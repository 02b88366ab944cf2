"""
Escrow Service Module

State Machine Core of the escrow engine. Every status change goes through
the transition table below: the caller's role is checked against the edge,
preconditions are verified, and the compare-and-swap status write, the
wallet movement and the timeline entry are committed in one atomic unit.
Events are published only after the commit.

Lifecycle:
    pending -> deposited -> shipping -> completed
    shipping/deposited -> disputed -> completed | refunded
    pending -> cancelled

Dependencies:
    - escrow_database.py: Transaction Ledger
    - notifier.py: Event fan-out
    - config.py: Fee and dispute defaults, rate limits
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any, Callable, FrozenSet, NamedTuple, Tuple

from pydantic import ValidationError as PydanticValidationError

from config import get_config, Config
from escrow_database import EscrowStore, StoreSession
from escrow_errors import (
    ConflictError,
    EscrowError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitError,
    UnauthorizedTransitionError,
    ValidationError,
    WindowExpiredError,
)
from escrow_models import (
    Actor,
    DETAIL_FIELDS,
    EventType,
    FeeBearer,
    RiskAlert,
    Role,
    Transaction,
    TransactionEvent,
    TransactionStatus,
    compute_fee_split,
    parse_decimal,
    utcnow,
)
from utils import (
    format_currency,
    generate_room_id,
    generate_room_password,
    generate_transaction_code,
    sanitize_input,
)

logger = logging.getLogger(__name__)


class Edge(NamedTuple):
    """One row of the transition table."""
    from_status: TransactionStatus
    to_status: TransactionStatus
    roles: FrozenSet[Role]
    event_type: EventType


S = TransactionStatus

TRANSITIONS: Dict[str, Tuple[Edge, ...]] = {
    'deposit': (
        Edge(S.PENDING, S.DEPOSITED, frozenset({Role.BUYER}), EventType.FUNDED),
    ),
    'ship': (
        Edge(S.DEPOSITED, S.SHIPPING, frozenset({Role.SELLER}), EventType.SHIPPED),
    ),
    'complete': (
        Edge(S.SHIPPING, S.COMPLETED, frozenset({Role.BUYER}), EventType.COMPLETED),
    ),
    'dispute': (
        Edge(S.SHIPPING, S.DISPUTED, frozenset({Role.BUYER}), EventType.DISPUTED),
        Edge(S.DEPOSITED, S.DISPUTED, frozenset({Role.BUYER, Role.SELLER}), EventType.DISPUTED),
    ),
    'release': (
        Edge(S.DISPUTED, S.COMPLETED, frozenset({Role.STAFF}), EventType.RESOLVED_RELEASE),
    ),
    'refund': (
        Edge(S.DISPUTED, S.REFUNDED, frozenset({Role.STAFF}), EventType.RESOLVED_REFUND),
    ),
    'cancel': (
        Edge(S.PENDING, S.CANCELLED, frozenset({Role.BUYER, Role.SELLER, Role.STAFF}), EventType.CANCELLED),
    ),
}

CONFIRMABLE_STATUSES = frozenset({S.DEPOSITED, S.SHIPPING, S.DISPUTED})


class EscrowService:
    """
    Core escrow business logic service.

    Attributes:
        store: Transaction Ledger
        notifier: Event notifier (optional); receives events after commit
        config: Configuration instance
        clock: Callable returning the current UTC time
    """

    def __init__(
        self,
        store: EscrowStore,
        notifier: Optional[Any] = None,
        config: Optional[Config] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.notifier = notifier
        self.config = config or get_config()
        self.clock = clock or utcnow
        logger.info("EscrowService initialized successfully")

    # ==================== Roles and edges ====================

    @staticmethod
    def actor_roles(transaction: Transaction, actor: Actor) -> FrozenSet[Role]:
        """Trigger roles the actor holds on this transaction."""
        roles = set()
        party = transaction.party_role(actor.user_id)
        if party is not None:
            roles.add(party)
        if actor.is_staff:
            roles.add(Role.STAFF)
        return frozenset(roles)

    def resolve_edge(self, action: str, transaction: Transaction, actor: Actor) -> Edge:
        """
        Find the edge an action takes from the transaction's current status.

        Raises:
            InvalidTransitionError: If the action has no edge from the current status
            UnauthorizedTransitionError: If the actor's roles may not trigger it
        """
        edges = TRANSITIONS.get(action)
        if edges is None:
            raise InvalidTransitionError(f"Unknown action: {action}")

        if transaction.is_terminal:
            raise InvalidTransitionError(
                f"Transaction {transaction.code} is {transaction.status.value} and cannot change"
            )

        edge = next((e for e in edges if e.from_status == transaction.status), None)
        if edge is None:
            raise InvalidTransitionError(
                f"Cannot {action} a transaction that is {transaction.status.value}"
            )

        if not edge.roles & self.actor_roles(transaction, actor):
            raise UnauthorizedTransitionError(
                f"User {actor.user_id} may not {action} transaction {transaction.code}"
            )

        return edge

    async def _commit(
        self,
        transaction: Transaction,
        actor: Actor,
        event_type: EventType,
        patch: Dict[str, Any],
        debits: Tuple[Tuple[str, Decimal], ...] = (),
        credits: Tuple[Tuple[str, Decimal], ...] = (),
        payload: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Apply a patch, its wallet movements and its timeline entry atomically,
        then publish the event.
        """
        expected_status = transaction.status
        patch = dict(patch)
        patch.setdefault('updated_at', self.clock())

        async with self.store.atomic() as session:
            updated = await session.update_transaction(transaction.id, patch, expected_status)

            for user_id, amount in debits:
                await session.debit(user_id, amount)
            for user_id, amount in credits:
                if amount > 0:
                    await session.credit(user_id, amount)

            event = TransactionEvent(
                transaction_id=updated.id,
                event_type=event_type,
                from_status=expected_status,
                to_status=updated.status,
                actor_id=actor.user_id,
                timestamp=patch['updated_at'],
                payload=payload or {},
            )
            await session.append_event(event)

        logger.info(
            f"Transaction {updated.code}: {event_type.value} "
            f"({expected_status.value} -> {updated.status.value}) by {actor.user_id}"
        )

        await self._publish(event)
        return updated

    async def _publish(self, event: TransactionEvent) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.publish(event)
        except Exception as e:
            # Committed state stands regardless of delivery
            logger.error(f"Failed to publish {event.event_type.value} for {event.transaction_id}: {e}")

    async def _transition(
        self,
        action: str,
        transaction_id: str,
        actor: Actor,
        build: Callable[[Transaction, datetime], Tuple[Dict[str, Any], tuple, tuple, Dict[str, Any]]]
    ) -> Transaction:
        """
        Load, authorize, check preconditions and commit one table transition.

        ``build`` receives the loaded record and the current time and returns
        (patch, debits, credits, payload); it raises to reject the request.
        """
        try:
            transaction = await self.store.get(transaction_id)
            edge = self.resolve_edge(action, transaction, actor)
            now = self.clock()

            patch, debits, credits, payload = build(transaction, now)
            patch['status'] = edge.to_status
            patch['updated_at'] = now

            return await self._commit(
                transaction, actor, edge.event_type, patch,
                debits=debits, credits=credits, payload=payload,
            )
        except EscrowError as e:
            logger.warning(f"Rejected {action} on {transaction_id} by {actor.user_id}: {e}")
            raise

    # ==================== Creation and room flow ====================

    async def create_transaction(
        self,
        actor: Actor,
        product_name: str,
        amount: Any,
        creator_role: str = 'seller',
        description: Optional[str] = None,
        category: Optional[str] = None,
        images: Optional[List[str]] = None,
        fee_bearer: Optional[str] = None,
        fee_percent: Optional[Any] = None,
        dispute_window_hours: Optional[int] = None,
        client_ip: Optional[str] = None
    ) -> Transaction:
        """
        Open a new escrow room.

        Args:
            actor: Creator; becomes buyer or seller according to creator_role
            product_name: Item being traded
            amount: Escrowed principal, must be positive
            creator_role: 'buyer' or 'seller'
            description: Optional item description
            category: Item category (config default when omitted)
            images: Optional image URLs
            fee_bearer: 'buyer', 'seller' or 'split' (config default when omitted)
            fee_percent: Fee rate snapshot (config default when omitted)
            dispute_window_hours: Dispute window (config default when omitted)
            client_ip: Caller IP used for rate limiting

        Returns:
            The stored pending transaction

        Raises:
            ValidationError: If any input is invalid; nothing is persisted
            RateLimitError: If the caller opened too many rooms recently
        """
        if creator_role not in (Role.BUYER.value, Role.SELLER.value):
            raise ValidationError(f"creator_role must be buyer or seller, got {creator_role!r}")

        try:
            bearer = FeeBearer(fee_bearer or self.config.default_fee_bearer)
        except ValueError:
            raise ValidationError(f"Invalid fee bearer: {fee_bearer!r}")

        fields = dict(
            product_name=sanitize_input(product_name, 200),
            description=sanitize_input(description, 2000) or None,
            category=sanitize_input(category, 50) or self.config.default_category,
            images=list(images or []),
            amount=parse_decimal(amount, 'amount'),
            fee_percent=parse_decimal(
                self.config.default_fee_percent if fee_percent is None else fee_percent,
                'fee_percent'
            ),
            fee_bearer=bearer,
            dispute_window_hours=(
                self.config.default_dispute_hours if dispute_window_hours is None else dispute_window_hours
            ),
        )
        if creator_role == Role.BUYER.value:
            fields['buyer_id'] = actor.user_id
        else:
            fields['seller_id'] = actor.user_id

        now = self.clock()
        last_error: Optional[ConflictError] = None
        limited_count: Optional[int] = None

        # Codes and room ids are random; retry on the rare collision
        for _ in range(3):
            try:
                transaction = Transaction(
                    code=generate_transaction_code(),
                    room_id=generate_room_id(),
                    room_password=generate_room_password(),
                    created_at=now,
                    updated_at=now,
                    **fields
                )
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid transaction: {e.errors()[0]['msg']}")
            transaction.check_invariants()

            try:
                async with self.store.atomic() as session:
                    if client_ip:
                        limited_count = await self._count_recent_creates(session, actor, client_ip, now)
                        if limited_count is not None:
                            break
                        await session.record_action(client_ip, 'create_transaction', now)

                    stored = await session.insert_transaction(transaction)
                    event = TransactionEvent(
                        transaction_id=stored.id,
                        event_type=EventType.CREATED,
                        from_status=stored.status,
                        to_status=stored.status,
                        actor_id=actor.user_id,
                        timestamp=now,
                        payload={'creator_role': creator_role},
                    )
                    await session.append_event(event)
            except ConflictError as e:
                last_error = e
                continue

            logger.info(
                f"Transaction {stored.code} created by {actor.user_id} as {creator_role}: "
                f"{stored.product_name} for {format_currency(stored.amount)}"
            )
            await self._publish(event)
            return stored

        if limited_count is not None:
            logger.warning(f"Create rate limit exceeded for {client_ip} (user {actor.user_id})")
            raise RateLimitError("Too many transactions created. Please try again later.")
        raise last_error

    async def _count_recent_creates(
        self,
        session: StoreSession,
        actor: Actor,
        client_ip: str,
        now: datetime
    ) -> Optional[int]:
        """
        Check the per-IP create limit inside the caller's unit of work.

        Returns:
            None when another room may be opened, otherwise the recent count
            (a rate_limit_exceeded alert has then been recorded)
        """
        since = now - timedelta(minutes=self.config.create_rate_window_minutes)
        count = await session.count_actions(client_ip, 'create_transaction', since)
        if count < self.config.create_rate_limit:
            return None

        await session.insert_risk_alert(RiskAlert(
            user_id=actor.user_id,
            alert_type='rate_limit_exceeded',
            description=(
                f"{count} transactions created from {client_ip} "
                f"in {self.config.create_rate_window_minutes} minutes"
            ),
            metadata={'ip': client_ip, 'count': count},
            created_at=now,
        ))
        return count

    def _validate_details(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - DETAIL_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {sorted(unknown)}")

        clean = {}
        for key, value in fields.items():
            if value is None:
                continue
            if key == 'amount':
                clean[key] = parse_decimal(value, 'amount')
            elif key == 'fee_bearer':
                try:
                    clean[key] = FeeBearer(value)
                except ValueError:
                    raise ValidationError(f"Invalid fee bearer: {value!r}")
            elif key == 'images':
                if not isinstance(value, (list, tuple)):
                    raise ValidationError("images must be a list of URLs")
                clean[key] = [str(url) for url in value]
            elif key == 'product_name':
                clean[key] = sanitize_input(value, 200)
            else:
                clean[key] = sanitize_input(value, 2000)
        return clean

    async def join(
        self,
        transaction_id: str,
        actor: Actor,
        details: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Enter a pending room as the missing counterpart.

        The empty side is filled, buyer first. A joining seller may supply
        product details, applied in the same update.

        Raises:
            InvalidTransitionError: If the room is no longer pending
            ValidationError: If the room is full or the actor already participates
        """
        try:
            transaction = await self.store.get(transaction_id)

            if transaction.status != S.PENDING:
                raise InvalidTransitionError(
                    f"Room {transaction.room_id} is {transaction.status.value}, not open for joining"
                )
            if transaction.party_role(actor.user_id) is not None:
                raise ValidationError("You are already part of this transaction")
            if transaction.has_both_parties:
                raise ValidationError(f"Room {transaction.room_id} is full")

            if not transaction.buyer_id:
                patch: Dict[str, Any] = {'buyer_id': actor.user_id}
                side = Role.BUYER
            else:
                patch = {'seller_id': actor.user_id}
                side = Role.SELLER
                patch.update(self._validate_details(details or {}))

            return await self._commit(
                transaction, actor, EventType.JOINED, patch,
                payload={'side': side.value},
            )
        except EscrowError as e:
            logger.warning(f"Rejected join on {transaction_id} by {actor.user_id}: {e}")
            raise

    async def join_room(
        self,
        room_id: str,
        room_password: str,
        actor: Actor,
        details: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Join by room id and password.

        Raises:
            NotFoundError: If no room has this id
            UnauthorizedTransitionError: If the password does not match
        """
        async with self.store.atomic() as session:
            transaction = await session.find_by_room(room_id)

        if transaction is None:
            raise NotFoundError(f"Room not found: {room_id}")

        if transaction.room_password and transaction.room_password != room_password:
            logger.warning(f"Wrong room password for {room_id} from {actor.user_id}")
            raise UnauthorizedTransitionError("Incorrect room password")

        return await self.join(transaction.id, actor, details)

    async def update_details(
        self,
        transaction_id: str,
        actor: Actor,
        fields: Dict[str, Any]
    ) -> Transaction:
        """
        Edit descriptive metadata before anyone else joins.

        Raises:
            UnauthorizedTransitionError: If the actor is not the creator
            InvalidTransitionError: If the transaction is no longer pending
            ValidationError: If a counterpart has joined or a field is invalid
        """
        transaction = await self.store.get(transaction_id)

        if transaction.party_role(actor.user_id) is None:
            raise UnauthorizedTransitionError("Only the creator can edit this transaction")
        if transaction.status != S.PENDING:
            raise InvalidTransitionError("Details can only change while pending")
        if transaction.has_both_parties:
            raise ValidationError("Details are locked once the counterpart has joined")

        patch = self._validate_details(fields)
        if not patch:
            return transaction

        return await self._commit(
            transaction, actor, EventType.DETAILS_UPDATED, patch,
            payload={'fields': sorted(patch)},
        )

    # ==================== Transitions ====================

    async def deposit(self, transaction_id: str, actor: Actor) -> Transaction:
        """
        Buyer funds the escrow from their wallet.

        The fee split is computed from the snapshotted fee rate and the
        buyer's debit happens in the same atomic unit as the status change.

        Raises:
            ValidationError: If the counterpart has not joined yet
            InsufficientFundsError: If the buyer's wallet cannot cover the debit
        """
        def build(transaction: Transaction, now: datetime):
            if not transaction.has_both_parties:
                raise ValidationError("Both parties must join before funding")

            split = compute_fee_split(transaction.amount, transaction.fee_percent, transaction.fee_bearer)
            patch = {
                'fee_amount': split.fee_amount,
                'seller_receives': split.seller_receives,
                'buyer_paid': split.buyer_pays,
                'deposited_at': now,
            }
            payload = {
                'amount': str(transaction.amount),
                'fee_amount': str(split.fee_amount),
                'seller_receives': str(split.seller_receives),
                'buyer_paid': str(split.buyer_pays),
            }
            return patch, ((transaction.buyer_id, split.buyer_pays),), (), payload

        return await self._transition('deposit', transaction_id, actor, build)

    async def mark_shipped(self, transaction_id: str, actor: Actor) -> Transaction:
        """Seller marks the item as shipped; starts the dispute window."""
        def build(transaction: Transaction, now: datetime):
            return {'shipped_at': now}, (), (), {
                'dispute_deadline': (now + timedelta(hours=transaction.dispute_window_hours)).isoformat()
            }

        return await self._transition('ship', transaction_id, actor, build)

    async def confirm_receipt(self, transaction_id: str, actor: Actor) -> Transaction:
        """Buyer confirms receipt; the seller's proceeds are credited."""
        def build(transaction: Transaction, now: datetime):
            return (
                {'completed_at': now},
                (),
                ((transaction.seller_id, transaction.seller_receives),),
                {'seller_receives': str(transaction.seller_receives)},
            )

        return await self._transition('complete', transaction_id, actor, build)

    async def open_dispute(self, transaction_id: str, actor: Actor, reason: str) -> Transaction:
        """
        Raise a dispute.

        From shipping only the buyer may dispute, and only until
        ``shipped_at + dispute_window_hours``. From deposited either party may.

        Raises:
            ValidationError: If the reason is empty
            WindowExpiredError: If the dispute window has passed
        """
        def build(transaction: Transaction, now: datetime):
            clean_reason = sanitize_input(reason, 1000)
            if not clean_reason:
                raise ValidationError("A dispute reason is required")

            deadline = transaction.dispute_deadline
            if transaction.status == S.SHIPPING and deadline is not None and now > deadline:
                raise WindowExpiredError(
                    f"Dispute window closed at {deadline.isoformat()}"
                )

            return (
                {'dispute_at': now, 'dispute_reason': clean_reason},
                (),
                (),
                {'reason': clean_reason},
            )

        return await self._transition('dispute', transaction_id, actor, build)

    async def resolve_release(self, transaction_id: str, actor: Actor) -> Transaction:
        """Staff resolves a dispute in the seller's favour."""
        def build(transaction: Transaction, now: datetime):
            patch: Dict[str, Any] = {'completed_at': now}
            if transaction.arbiter_id is None:
                patch['arbiter_id'] = actor.user_id
            return (
                patch,
                (),
                ((transaction.seller_id, transaction.seller_receives),),
                {'seller_receives': str(transaction.seller_receives)},
            )

        return await self._transition('release', transaction_id, actor, build)

    async def resolve_refund(self, transaction_id: str, actor: Actor) -> Transaction:
        """Staff resolves a dispute in the buyer's favour; the buyer's debit is returned."""
        def build(transaction: Transaction, now: datetime):
            patch: Dict[str, Any] = {}
            if transaction.arbiter_id is None:
                patch['arbiter_id'] = actor.user_id
            return (
                patch,
                (),
                ((transaction.buyer_id, transaction.buyer_paid),),
                {'refunded': str(transaction.buyer_paid)},
            )

        return await self._transition('refund', transaction_id, actor, build)

    async def cancel(self, transaction_id: str, actor: Actor, reason: Optional[str] = None) -> Transaction:
        """Abandon an unfunded transaction."""
        def build(transaction: Transaction, now: datetime):
            payload = {'reason': sanitize_input(reason, 500)} if reason else {}
            return {}, (), (), payload

        return await self._transition('cancel', transaction_id, actor, build)

    # ==================== Side-channel updates ====================

    async def confirm(self, transaction_id: str, actor: Actor) -> Transaction:
        """
        Record the caller's acknowledgement flag.

        Flags are informational and never gate a transition.

        Raises:
            UnauthorizedTransitionError: If the actor is not a party
            InvalidTransitionError: If the transaction is unfunded or terminal
        """
        transaction = await self.store.get(transaction_id)

        side = transaction.party_role(actor.user_id)
        if side is None:
            raise UnauthorizedTransitionError("Only the buyer or seller can confirm")
        if transaction.status not in CONFIRMABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot confirm a transaction that is {transaction.status.value}"
            )

        flag = 'buyer_confirmed' if side == Role.BUYER else 'seller_confirmed'
        if getattr(transaction, flag):
            return transaction

        return await self._commit(
            transaction, actor, EventType.CONFIRMED, {flag: True},
            payload={'side': side.value},
        )

    async def claim_dispute(self, transaction_id: str, actor: Actor, as_arbiter: bool = False) -> Transaction:
        """
        Staff takes ownership of a dispute.

        Raises:
            UnauthorizedTransitionError: If the actor is not staff
            InvalidTransitionError: If the transaction is not disputed
        """
        transaction = await self.store.get(transaction_id)

        if not actor.is_staff:
            raise UnauthorizedTransitionError("Only staff can claim disputes")
        if transaction.status != S.DISPUTED:
            raise InvalidTransitionError("Only disputed transactions can be claimed")

        field = 'arbiter_id' if as_arbiter else 'moderator_id'
        return await self._commit(
            transaction, actor, EventType.CLAIMED, {field: actor.user_id},
            payload={'field': field, 'role': actor.display_role},
        )

    # ==================== Queries ====================

    async def get_transaction(self, transaction_id: str, actor: Optional[Actor] = None) -> Transaction:
        """
        Fetch a transaction; when an actor is given they must be a party or staff.

        Raises:
            NotFoundError: If the transaction does not exist
            UnauthorizedTransitionError: If the actor may not view it
        """
        transaction = await self.store.get(transaction_id)
        if actor is not None and not self.actor_roles(transaction, actor):
            raise UnauthorizedTransitionError("You are not part of this transaction")
        return transaction

    async def list_for_user(self, user_id: str) -> List[Transaction]:
        return await self.store.list_for_user(user_id)

    async def list_all(self, actor: Actor, status: Optional[str] = None) -> List[Transaction]:
        if not actor.is_staff:
            raise UnauthorizedTransitionError("Only staff can list all transactions")
        try:
            status_filter = TransactionStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"Unknown status: {status!r}")
        return await self.store.list_all(status_filter)

    async def get_timeline(self, transaction_id: str) -> List[TransactionEvent]:
        return await self.store.list_events(transaction_id)
