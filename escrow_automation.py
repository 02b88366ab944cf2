"""
Escrow Automation Module

Scheduled housekeeping for the escrow engine, run with APScheduler:
    - Cancel unfunded rooms left open too long (every 5 minutes)
    - Expire unpaid deposits (every 5 minutes)
    - Balance anomaly scan (hourly)

Stale rooms are cancelled through the state machine with the system
actor, so the same role checks, CAS write and events apply as for a
user-initiated cancel.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_config, Config
from escrow_errors import ConflictError, EscrowError, InvalidTransitionError
from escrow_models import Actor, TransactionStatus

logger = logging.getLogger(__name__)


class EscrowAutomation:
    """
    Automation service for the escrow engine.

    Attributes:
        escrow_service: EscrowService used for cancellations
        wallet_service: WalletService used for deposit expiry
        risk_monitor: RiskMonitor used for the anomaly scan
        scheduler: APScheduler AsyncIOScheduler
    """

    def __init__(
        self,
        escrow_service,
        wallet_service,
        risk_monitor,
        config: Optional[Config] = None,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.escrow_service = escrow_service
        self.wallet_service = wallet_service
        self.risk_monitor = risk_monitor
        self.config = config or get_config()
        self.scheduler = scheduler or AsyncIOScheduler(timezone='UTC')
        self.is_running = False
        self.actor = Actor.system()

        # Statistics
        self.stats: Dict[str, Any] = {
            'rooms_cancelled': 0,
            'deposits_expired': 0,
            'wallets_frozen': 0,
            'last_run': {}
        }

    def start(self) -> None:
        """Schedule all jobs and start the scheduler (requires a running event loop)."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True

        logger.info("Escrow automation started successfully")
        logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

    def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        """Schedule all automation tasks."""

        # Cancel stale unfunded rooms - Every 5 minutes
        self.scheduler.add_job(
            self.cancel_stale_rooms,
            trigger=IntervalTrigger(minutes=5),
            id='cancel_stale_rooms',
            name='Cancel Stale Rooms',
            max_instances=1,
            replace_existing=True,
            misfire_grace_time=60
        )

        # Expire unpaid deposits - Every 5 minutes
        self.scheduler.add_job(
            self.expire_stale_deposits,
            trigger=IntervalTrigger(minutes=5),
            id='expire_stale_deposits',
            name='Expire Stale Deposits',
            max_instances=1,
            replace_existing=True,
            misfire_grace_time=60
        )

        # Balance anomaly scan - Hourly
        self.scheduler.add_job(
            self.scan_balances,
            trigger=IntervalTrigger(hours=1),
            id='scan_balances',
            name='Balance Anomaly Scan',
            max_instances=1,
            replace_existing=True,
            misfire_grace_time=300
        )

        logger.info("All automation tasks scheduled")

    async def cancel_stale_rooms(self, now: Optional[datetime] = None) -> int:
        """
        Cancel pending transactions older than the configured age.

        Rooms funded or cancelled concurrently are skipped.

        Returns:
            Number of rooms cancelled
        """
        logger.info("Starting stale room cancellation task")
        now = now or self.escrow_service.clock()
        cutoff = now - timedelta(minutes=self.config.stale_room_minutes)

        stale = [
            t for t in await self.escrow_service.store.list_all(TransactionStatus.PENDING)
            if t.created_at < cutoff
        ]

        cancelled = 0
        for transaction in stale:
            try:
                await self.escrow_service.cancel(
                    transaction.id,
                    self.actor,
                    reason=f"Auto-cancelled after {self.config.stale_room_minutes} minutes unfunded"
                )
                cancelled += 1
            except (ConflictError, InvalidTransitionError) as e:
                logger.info(f"Skipping {transaction.code}: {e}")
            except EscrowError as e:
                logger.error(f"Failed to cancel stale room {transaction.code}: {e}")

        self.stats['rooms_cancelled'] += cancelled
        self.stats['last_run']['cancel_stale_rooms'] = now

        logger.info(f"Stale room task completed: {cancelled}/{len(stale)} cancelled")
        return cancelled

    async def expire_stale_deposits(self, now: Optional[datetime] = None) -> int:
        """Expire unpaid deposits."""
        try:
            expired = await self.wallet_service.expire_stale_deposits(now)
        except EscrowError as e:
            logger.error(f"Deposit expiry task failed: {e}", exc_info=True)
            return 0

        self.stats['deposits_expired'] += expired
        self.stats['last_run']['expire_stale_deposits'] = now or self.wallet_service.clock()
        return expired

    async def scan_balances(self) -> int:
        """Run the balance anomaly scan and freeze suspicious wallets."""
        try:
            frozen = await self.risk_monitor.scan_balance_anomalies()
        except EscrowError as e:
            logger.error(f"Balance scan failed: {e}", exc_info=True)
            return 0

        self.stats['wallets_frozen'] += len(frozen)
        self.stats['last_run']['scan_balances'] = self.risk_monitor.clock()
        return len(frozen)

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'stats': self.stats,
        }
