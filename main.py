#!/usr/bin/env python3
"""
Escrow worker process startup

Creates missing tables, logs the effective configuration and runs the
background scheduler until SIGINT/SIGTERM.
"""

import logging
import signal
import threading

from config import Config
from database import create_tables
from jobs.scheduler import EscrowScheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    logger.info("🚀 Starting escrow worker...")
    Config.log_configuration()
    Config.validate_payment_gateway()

    create_tables()

    scheduler = EscrowScheduler.get_instance()
    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info(f"🛑 Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    try:
        stop_event.wait()
    finally:
        scheduler.stop()
        logger.info("✅ Escrow worker stopped")


if __name__ == "__main__":
    main()
