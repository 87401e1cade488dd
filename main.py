"""Entry point for the pool autotrader."""

import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.db import Store
from trading.auto_trader import AutoTrader

DB_LOG_LEVEL = logging.INFO


class StoreLogHandler(logging.Handler):
    """Mirror INFO+ records into the store's logs table; the event code is the first word."""

    def __init__(self, store: Store, level: int = DB_LOG_LEVEL) -> None:
        super().__init__(level=level)
        self.store = store

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            code = message.split(" ", 1)[0] if message else "LOG"
            self.store.insert_log(
                level=record.levelname,
                component=record.name,
                code=code if code.isupper() else "LOG",
                message=message,
            )
        except Exception:
            self.handleError(record)


def configure_logging(store: Store | None = None) -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)
    if store is not None and bool(getattr(config, "LOG_TO_DB", False)):
        root.addHandler(StoreLogHandler(store))

    # RPC URLs carry API keys in their query string.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("solana").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


async def run_trader(trader: AutoTrader) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, trader.stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support.
            pass
    try:
        await trader.run()
    finally:
        await trader.close()


def main() -> None:
    config.validate()
    store = Store()
    store.init_db()
    configure_logging(store)
    logger.info("STARTUP mode=%s db=%s", config.MODE, config.DB_PATH)

    trader = AutoTrader(store)
    try:
        asyncio.run(run_trader(trader))
    except KeyboardInterrupt:
        logger.warning("SHUTDOWN reason=keyboard_interrupt")
    finally:
        store.close()


if __name__ == "__main__":
    main()
