"""
Shared fixtures for the escrow engine test suite.

Everything runs against the in-memory store with a controllable clock;
no database, network or Telegram access is needed.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from config import Config
from escrow_models import Actor
from escrow_service import EscrowService
from memory_store import InMemoryEscrowStore
from notifier import EventNotifier
from risk_monitor import RiskMonitor
from wallet_service import WalletService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def config(monkeypatch):
    for key in ('DATABASE_URL', 'TELEGRAM_BOT_TOKEN', 'ADMIN_CHAT_ID'):
        monkeypatch.delenv(key, raising=False)

    cfg = Config()
    cfg.default_fee_percent = Decimal('5')
    cfg.default_fee_bearer = 'seller'
    cfg.default_dispute_hours = 24
    cfg.deposit_amount_tolerance = Decimal('1000')
    cfg.min_deposit_amount = Decimal('10000')
    cfg.min_withdrawal_amount = Decimal('50000')
    cfg.stale_room_minutes = 30
    cfg.stale_deposit_minutes = 15
    cfg.risk_fast_completion_seconds = 300
    cfg.create_rate_limit = 5
    cfg.create_rate_window_minutes = 60
    return cfg


@pytest.fixture
def store():
    return InMemoryEscrowStore()


@pytest.fixture
def notifier():
    return EventNotifier(max_attempts=3, retry_delay=0)


@pytest.fixture
def service(store, notifier, config, clock):
    return EscrowService(store, notifier=notifier, config=config, clock=clock)


@pytest.fixture
def wallet_service(store, config, clock):
    return WalletService(store, config=config, clock=clock)


@pytest.fixture
def risk_monitor(store, config, clock):
    return RiskMonitor(store, config=config, clock=clock)


@pytest.fixture
def buyer():
    return Actor(user_id='buyer-1')


@pytest.fixture
def seller():
    return Actor(user_id='seller-1')


@pytest.fixture
def moderator():
    return Actor(user_id='mod-1', roles=frozenset({'moderator'}))


@pytest.fixture
def admin():
    return Actor(user_id='admin-1', roles=frozenset({'admin'}))


@pytest.fixture
def outsider():
    return Actor(user_id='stranger-1')


async def fund_wallet(store, user_id: str, amount) -> None:
    async with store.atomic() as session:
        await session.credit(user_id, Decimal(str(amount)))


async def balance_of(store, user_id: str) -> Decimal:
    return (await store.get_wallet(user_id)).balance


@pytest_asyncio.fixture
async def open_trade(service, seller, buyer):
    """
    Factory for a pending room opened by the seller and joined by the buyer.

    Defaults: amount 100000, fee 5%, seller bears the fee.
    """
    async def factory(amount='100000', fee_bearer='seller', **kwargs):
        transaction = await service.create_transaction(
            seller,
            product_name='Mechanical keyboard',
            amount=amount,
            creator_role='seller',
            fee_bearer=fee_bearer,
            **kwargs
        )
        return await service.join(transaction.id, buyer)

    return factory


@pytest_asyncio.fixture
async def funded_trade(store, service, buyer, open_trade):
    """A trade moved to deposited with the buyer's wallet pre-funded."""
    async def factory(**kwargs):
        transaction = await open_trade(**kwargs)
        await fund_wallet(store, buyer.user_id, '200000')
        return await service.deposit(transaction.id, buyer)

    return factory
