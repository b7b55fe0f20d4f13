"""
Ledger wiring: builds the store and engine from configuration.
"""

from typing import Optional

from .config import LedgerConfig, get_config
from .errors import StoreError
from .events import EventDispatcher
from .ledger import LedgerEngine
from .logging_config import get_logger, setup_logging
from .storage import StorageInterface, create_storage


def create_storage_from_config(config: LedgerConfig) -> StorageInterface:
    """Open the configured store and verify it answers"""
    logger = get_logger("account_ledger.bootstrap")
    storage = create_storage(
        config.database_url,
        pool_size=config.database_pool_size,
        pool_timeout=config.database_pool_timeout,
        timeout=config.store_timeout_seconds,
    )
    scheme = config.database_url.split(":", 1)[0]
    try:
        storage.ping()
    except StoreError:
        logger.error(f"Connection error to {scheme} store", exc_info=True)
        storage.close()
        raise
    logger.info(f"Connected to {scheme} store")
    return storage


def create_ledger_engine(
    config: Optional[LedgerConfig] = None,
    event_dispatcher: Optional[EventDispatcher] = None,
    configure_logging: bool = True
) -> LedgerEngine:
    """
    Build a ready-to-use LedgerEngine.

    Args:
        config: Settings to use; the global configuration when omitted
        event_dispatcher: Dispatcher subscribers listen on; a new one when omitted
        configure_logging: Install the structured log handler first

    Raises:
        StoreError: the store cannot be reached
    """
    config = config or get_config()
    if configure_logging:
        setup_logging(config.log_level, log_format=config.log_format)
    storage = create_storage_from_config(config)
    return LedgerEngine(storage, event_dispatcher or EventDispatcher(), config)
