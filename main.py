"""
Escrow Service - Main Application Entry Point

This module orchestrates the application by:
- Loading configuration
- Initializing logger and database
- Registering the configured payment providers
- Running the FastAPI callback server
- Running the stale transaction sweep in the background
- Managing graceful shutdown
"""

import asyncio
import logging
import sys
from typing import Optional

import uvicorn
from telegram import Bot

from callback_server import create_app
from config import Config, ConfigError, get_config
from database import Database, PostgresStore, PostgresUserDirectory
from airtel_service import AirtelProvider
from equity_service import EquityProvider
from escrow_automation import EscrowAutomation
from escrow_service import EscrowService
from ledger import TransactionLedger
from mpesa_service import MpesaProvider
from notifications import LogNotifier, NotificationDispatcher, TelegramNotifier
from order_state import OrderStateMachine
from payment_providers import ProviderRegistry
from reconciliation import ReconciliationEngine
from utils import setup_logger

logger = logging.getLogger(__name__)


def build_registry(config: Config) -> ProviderRegistry:
    """
    Register an adapter for every supported method that has credentials.

    Args:
        config: Application configuration

    Returns:
        ProviderRegistry with the usable adapters
    """
    registry = ProviderRegistry()
    candidates = [
        ('mpesa', config.has_mpesa_config, MpesaProvider),
        ('airtel', config.has_airtel_config, AirtelProvider),
        ('equity', config.has_equity_config, EquityProvider),
    ]

    for method, configured, provider_class in candidates:
        if method not in config.supported_payment_methods:
            continue
        if not configured:
            logger.warning(f"{method} credentials missing, provider not registered")
            continue
        registry.register(provider_class(config))

    if not registry.methods():
        logger.warning("No payment providers configured; collections will be rejected")
    return registry


def build_notifier(config: Config, bot: Optional[Bot]) -> NotificationDispatcher:
    if bot is not None:
        sink = TelegramNotifier(bot)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set, notifications will only be logged")
        sink = LogNotifier()
    return NotificationDispatcher(sink, admin_contact=config.admin_chat_id)


def display_startup_banner(config: Config, registry: ProviderRegistry) -> None:
    logger.info("=" * 60)
    logger.info(f"{config.app_name} starting")
    logger.info(f"Environment: {config.environment}")
    logger.info(f"Providers: {', '.join(registry.methods()) or 'none'}")
    logger.info(
        f"Underpayment policy: tolerance={config.underpayment_tolerance}, "
        f"accept={config.accept_underpayment}"
    )
    logger.info(f"Listening on {config.api_host}:{config.api_port}")
    logger.info("=" * 60)


async def async_main(config: Config) -> None:
    """
    Main asynchronous function: wire components and serve until shutdown.
    """
    if not config.database_url:
        raise ConfigError("DATABASE_URL is required")

    database = Database(config.database_url)
    registry: Optional[ProviderRegistry] = None
    automation: Optional[EscrowAutomation] = None
    bot: Optional[Bot] = None
    notifier: Optional[NotificationDispatcher] = None

    try:
        await database.connect()
        await database.init_schema()
        logger.info("✓ Database initialized successfully")

        store = PostgresStore(database)
        users = PostgresUserDirectory(database)
        registry = build_registry(config)

        if config.telegram_bot_token:
            bot = Bot(config.telegram_bot_token)
            await bot.initialize()
        notifier = build_notifier(config, bot)

        orders = OrderStateMachine(store, users, config)
        ledger = TransactionLedger(store)
        engine = ReconciliationEngine(store, orders, ledger, registry, users, notifier, config)
        escrow = EscrowService(orders, ledger, engine, users, notifier)

        automation = EscrowAutomation(engine, config)
        await automation.start()

        display_startup_banner(config, registry)

        # Front ends (bot handlers, admin API) reach the facade through app.state.escrow
        app = create_app(engine, registry, config, store, escrow=escrow)
        server = uvicorn.Server(uvicorn.Config(
            app=app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
            access_log=True,
        ))
        await server.serve()

    finally:
        logger.info("Performing cleanup...")

        if automation is not None:
            await automation.stop()

        if notifier is not None:
            await notifier.drain()

        if bot is not None:
            try:
                await bot.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down Telegram bot: {e}")

        if registry is not None:
            await registry.aclose()

        await database.disconnect()
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

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.critical(f"Application failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
