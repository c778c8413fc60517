"""
Escrow Engine - Main Application Entry Point

This module orchestrates the application by:
- Loading configuration
- Initializing the logger and the escrow store
- Wiring notification channels (in-app inbox, optional Telegram bot)
- Running the FastAPI server
- Managing graceful shutdown
"""

import asyncio
import logging
import sys
from typing import Any, List, Optional, Tuple

import uvicorn
from telegram import Bot

from api_server import app as fastapi_app, set_escrow_service
from config import Config, ConfigError, load_config
from database import Database
from escrow_database import EscrowDatabase
from escrow_service import EscrowService
from memory_store import MemoryEscrowStore
from notification_service import (
    CompositeNotifier,
    NotificationDispatcher,
    StoreNotifier,
    TelegramNotifier,
)
from transaction_states import STATE_DISPLAY_NAMES
from utils import get_fee_percentage_display, setup_logger

# Global variables
logger: Optional[logging.Logger] = None


async def initialize_store(config: Config) -> Tuple[Any, Optional[Database]]:
    """
    Create the escrow store.

    Uses PostgreSQL when DATABASE_URL is set, otherwise the in-memory store.

    Returns:
        Tuple of (store, database); database is None for the memory store
    """
    if not config.has_database_config:
        logger.warning("DATABASE_URL not set - using in-memory store (data is not persisted)")
        return MemoryEscrowStore(), None

    logger.info("Initializing PostgreSQL escrow store...")
    database = Database(
        config.database_url,
        min_size=config.db_pool_min_size,
        max_size=config.db_pool_max_size
    )
    await database.connect()
    store = EscrowDatabase(database)
    await store.initialize_tables()
    logger.info("✓ Escrow store initialized")
    return store, database


def build_dispatcher(config: Config, store: Any) -> Optional[NotificationDispatcher]:
    """Build the notification dispatcher from the configured channels."""
    if not config.enable_notifications:
        logger.info("Notifications disabled")
        return None

    channels: List[Any] = [StoreNotifier(store)]
    if config.has_telegram_config:
        channels.append(TelegramNotifier(Bot(token=config.telegram_bot_token)))
        logger.info("✓ Telegram notifications enabled")

    notifier = channels[0] if len(channels) == 1 else CompositeNotifier(channels)
    return NotificationDispatcher(
        notifier,
        currency_symbol=config.currency_symbol,
        support_user_id=config.support_user_id
    )


def display_startup_banner(config: Config) -> None:
    """Log a summary of the running configuration."""
    logger.info("=" * 60)
    logger.info(f"  {config.app_name} v{config.app_version} ({config.app_env})")
    logger.info("=" * 60)
    logger.info(f"  Store:         {'PostgreSQL' if config.has_database_config else 'in-memory'}")
    logger.info(f"  Telegram:      {'enabled' if config.has_telegram_config else 'disabled'}")
    logger.info(f"  Platform fee:  {get_fee_percentage_display(config.transaction_fee_percentage)}")
    logger.info(f"  Amount range:  {config.min_amount} - {config.max_amount}")
    logger.info(f"  States:        {', '.join(STATE_DISPLAY_NAMES.values())}")
    logger.info(f"  API:           http://{config.api_host}:{config.api_port}")
    logger.info("=" * 60)


async def run_server(config: Config) -> None:
    """Run the FastAPI server until it is asked to stop."""
    uvicorn_config = uvicorn.Config(
        app=fastapi_app,
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower(),
        access_log=True,
        use_colors=True,
    )
    server = uvicorn.Server(uvicorn_config)
    logger.info(f"✓ FastAPI server starting on {config.api_host}:{config.api_port}")
    await server.serve()


async def async_main(config: Config) -> None:
    """
    Main asynchronous function that orchestrates the entire application.
    """
    database: Optional[Database] = None

    try:
        store, database = await initialize_store(config)
        dispatcher = build_dispatcher(config, store)
        set_escrow_service(EscrowService(store, dispatcher=dispatcher, config=config))

        display_startup_banner(config)
        await run_server(config)

    finally:
        logger.info("Performing cleanup...")
        set_escrow_service(None)

        if database:
            logger.info("Closing database connections...")
            await database.disconnect()
            logger.info("✓ Database connections closed")

        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Loads configuration, sets up logging and runs the async main function.
    """
    global logger

    try:
        config = load_config()
    except ConfigError as e:
        print(f"CRITICAL ERROR: Invalid configuration: {e}")
        sys.exit(1)

    try:
        # Root logger so every module logger shares the handlers
        logger = setup_logger(
            '',
            log_level=config.log_level,
            log_file=config.log_file,
            log_format=config.log_format,
            max_bytes=config.log_max_size,
            backup_count=config.log_backup_count,
        )
        logger.info("Logger initialized successfully")

        asyncio.run(async_main(config))

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        if logger:
            logger.critical(f"Application failed to start: {e}", exc_info=True)
        else:
            print(f"CRITICAL ERROR: Application failed to start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
