#!/usr/bin/env python3
"""
Entry point for the USCRN hourly ingestion service.

By default runs the scheduler until SIGINT/SIGTERM. ``--once`` runs a single
cycle and exits; ``--api-only`` serves the status API instead.
"""

import os
import sys
import signal
import logging
import argparse
import threading

from config import load_config
from errors import ConfigError
from fetcher import DirectoryClient
from models import create_engine_and_session, create_tables
from repository import Repository
from scheduler import Scheduler

logger = logging.getLogger(__name__)


def setup_logging():
    level_name = os.getenv('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('ingestion.log'),
            logging.StreamHandler()
        ]
    )


def setup_database(config):
    """Create the engine and make sure the schema exists."""
    database_url = config.database.connection_url()
    engine_kwargs = {}
    if not database_url.startswith('sqlite'):
        engine_kwargs['pool_size'] = config.database.max_connections
        engine_kwargs['pool_pre_ping'] = True
    logger.info("Connecting to database...")
    engine, _ = create_engine_and_session(database_url, **engine_kwargs)
    create_tables(engine)
    logger.info("Database connection established")
    return engine


def install_signal_handlers(shutdown):
    def handle(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down after current file...")
        shutdown.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def main(argv=None):
    parser = argparse.ArgumentParser(description='USCRN hourly data ingestion service')
    parser.add_argument('--config', default='config/config.yaml',
                        help='Path to the YAML config file (default: config/config.yaml)')
    parser.add_argument('--once', action='store_true',
                        help='Run a single ingestion cycle right away and exit')
    parser.add_argument('--api-only', action='store_true',
                        help='Only start the status API server')
    parser.add_argument('--port', type=int, default=5000,
                        help='Port for API server (default: 5000)')
    args = parser.parse_args(argv)

    setup_logging()
    logger.info("Starting CRN ingestion service")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    logger.info(f"Configuration loaded from {args.config}")
    logger.info(f"Location filter: {config.locations}")

    engine = setup_database(config)
    repository = Repository(engine)

    if args.api_only:
        logger.info("Starting status API server only...")
        from app import create_app
        create_app(repository).run(host='0.0.0.0', port=args.port)
        return 0

    shutdown = threading.Event()
    install_signal_handlers(shutdown)

    with DirectoryClient(config.source.base_url) as fetcher:
        scheduler = Scheduler(config, fetcher, repository, shutdown)
        if args.once:
            summaries = scheduler.run_cycle()
            for year, summary in sorted(summaries.items()):
                logger.info(f"{year}: {summary}")
        else:
            scheduler.run()

    engine.dispose()
    logger.info("CRN ingestion service stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
