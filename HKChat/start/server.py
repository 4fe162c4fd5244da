"""
Server startup module for HKChat application.
Provides the entry point for starting the realtime relay.
"""

import asyncio
import logging

from HKChat.config import config
from HKChat.core.logging import auto_configure
from HKChat.core.server import SQLiteStore, create_server

__all__ = ['server']

logger = logging.getLogger(__name__)


def server(host=None, port=None, db_path=None):
    """
    Start the relay on the specified address.

    Args:
        host (str): Address to bind (default: config.DEFAULT_HOST)
        port (int): Port number to listen on (default: config.DEFAULT_SERVER_PORT)
        db_path (str): SQLite database file (default: config.SQLITE_DB_FILE)
    """
    env = auto_configure()
    store = SQLiteStore(db_path or config.SQLITE_DB_FILE)

    # Presence is process-local: nobody is online before they reconnect
    reset = store.reset_presence()
    logger.info("Logging preset %s; marked %d users offline", env, reset)

    relay = create_server(store=store)

    async def run_relay():
        async with relay.run(host, port):
            await asyncio.Future()

    try:
        asyncio.run(run_relay())
    except KeyboardInterrupt:
        print("Closed by user.")
    finally:
        store.close()
