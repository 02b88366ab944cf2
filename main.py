"""
Escrow Engine - Main Application Entry Point

This module orchestrates the application by:
- Loading configuration and setting up logging
- Connecting the Transaction Ledger (PostgreSQL, or in-memory without DATABASE_URL)
- Wiring the state machine, notifier, risk monitor and staff bot
- Starting the APScheduler automation jobs
- Serving the FastAPI app with uvicorn until shutdown
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import uvicorn

from api_server import create_app
from config import Config, ConfigError, get_config
from escrow_automation import EscrowAutomation
from escrow_database import EscrowStore, PostgresEscrowStore
from escrow_errors import StoreError
from escrow_service import EscrowService
from memory_store import InMemoryEscrowStore
from notifier import EventDeduplicator, EventNotifier
from risk_monitor import RiskMonitor
from telegram_notify import StaffNotifier
from utils import setup_logger
from wallet_service import WalletService

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything the process wires together."""
    config: Config
    store: EscrowStore
    notifier: EventNotifier
    staff_notifier: StaffNotifier
    escrow_service: EscrowService
    wallet_service: WalletService
    risk_monitor: RiskMonitor
    automation: EscrowAutomation


def build_store(config: Config) -> EscrowStore:
    if config.has_database_config:
        return PostgresEscrowStore(
            config.database_url,
            min_size=config.db_pool_min,
            max_size=config.db_pool_max
        )

    logger.warning("DATABASE_URL not set - using in-memory store (data is lost on restart)")
    return InMemoryEscrowStore()


def build_components(config: Config, store: Optional[EscrowStore] = None) -> Components:
    """
    Construct and connect every service.

    Observers are registered behind a deduplicator so that a redelivered
    event does not raise the same alert twice.
    """
    store = store or build_store(config)
    notifier = EventNotifier(max_attempts=config.notify_max_attempts)
    staff_notifier = StaffNotifier.from_config(config)

    escrow_service = EscrowService(store, notifier=notifier, config=config)
    wallet_service = WalletService(store, config=config, staff_notifier=staff_notifier)
    risk_monitor = RiskMonitor(store, config=config, staff_notifier=staff_notifier)

    notifier.add_observer(EventDeduplicator().wrap(risk_monitor.on_event))
    notifier.add_observer(EventDeduplicator().wrap(staff_notifier.on_event))

    automation = EscrowAutomation(escrow_service, wallet_service, risk_monitor, config=config)

    return Components(
        config=config,
        store=store,
        notifier=notifier,
        staff_notifier=staff_notifier,
        escrow_service=escrow_service,
        wallet_service=wallet_service,
        risk_monitor=risk_monitor,
        automation=automation,
    )


def display_startup_banner(config: Config) -> None:
    """Display startup banner with configuration info."""
    banner = f"""
╔{'='*58}╗
║{' '*21}ESCROW ENGINE{' '*24}║
╚{'='*58}╝

📅 Startup Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}

🔧 Configuration:
   • Environment:        {config.app_env}
   • Version:            {config.app_version}
   • API Server:         {config.api_host}:{config.api_port}
   • Database:           {'PostgreSQL' if config.has_database_config else 'in-memory'}
   • Staff Alerts:       {'Telegram' if config.has_telegram_config else 'disabled'}
   • Default Fee:        {config.default_fee_percent}% ({config.default_fee_bearer} pays)
   • Dispute Window:     {config.default_dispute_hours}h
   • Log Level:          {config.log_level}

🚀 Starting services...
"""
    print(banner)
    logger.info("Application startup initiated")


async def async_main(config: Config) -> None:
    """
    Main asynchronous function that orchestrates the entire application.
    """
    components = build_components(config)

    try:
        await components.store.connect()
        logger.info("✓ Transaction ledger ready")

        components.automation.start()
        logger.info("✓ Escrow automation running")

        app = create_app(
            components.escrow_service,
            components.wallet_service,
            components.notifier,
            risk_monitor=components.risk_monitor,
            staff_notifier=components.staff_notifier,
            automation=components.automation,
            config=config,
        )

        server = uvicorn.Server(uvicorn.Config(
            app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
        ))
        logger.info(f"✓ API listening on {config.api_host}:{config.api_port}")
        await server.serve()

    finally:
        logger.info("Performing cleanup...")
        components.automation.stop()
        await components.store.close()
        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Sets up logging and runs the async main function.
    """
    try:
        config = get_config()
    except ConfigError as e:
        print(f"CRITICAL ERROR: Invalid configuration: {e}")
        sys.exit(1)

    setup_logger(
        log_level=config.log_level,
        log_file=config.log_file,
        log_format=config.log_format,
        max_bytes=config.log_max_size,
        backup_count=config.log_backup_count,
    )
    logger.info("Logger initialized successfully")
    display_startup_banner(config)

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except StoreError as e:
        logger.critical(f"Application failed to start: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
