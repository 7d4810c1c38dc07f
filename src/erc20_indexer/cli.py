import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .config import IndexerConfig, load_config
from .errors import ChainIdMismatch, ConfigError
from .pipeline import Pipeline
from .utils.logging_setup import get_current_log_file, setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="erc20-indexer",
        description="Index ERC20 Transfer events from an Ethereum JSON-RPC endpoint into a SQL database",
    )
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint (overrides RPC_URL)")
    parser.add_argument("--database-url", help="SQLAlchemy database URL (overrides DATABASE_URL)")
    parser.add_argument("--start-block", type=int, help="First block to index on a fresh database")
    parser.add_argument("--end-block", type=int, help="Stop once this block has been persisted")
    parser.add_argument("--log-level", default=None, help="Console log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--log-dir", default="logs", help="Directory for log files, empty to disable")
    return parser.parse_args(argv)


async def run(config: IndexerConfig, end_block: Optional[int] = None) -> None:
    logger.info("Starting indexer...")
    logger.info(f"  RPC URL: {config.rpc_url}")
    logger.info(f"  Chain ID: {config.chain_id}")
    logger.info(f"  Start Block: {config.start_block}")
    logger.info(f"  Database: {config.database_url}")
    logger.info(f"  Token Address: {config.token_address or 'any'}")

    pipeline = Pipeline.from_config(config, end_block=end_block)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.stop)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await pipeline.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    load_dotenv()
    level = args.log_level or os.environ.get("LOG_LEVEL", "INFO")
    setup_logging(level=level, log_dir=args.log_dir or None)
    log_file = get_current_log_file()
    if log_file is not None:
        logger.info(f"Logging to {log_file}")

    try:
        config = load_config(
            args.config,
            overrides={
                "rpc_url": args.rpc_url,
                "database_url": args.database_url,
                "start_block": args.start_block,
            },
        )
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    try:
        asyncio.run(run(config, end_block=args.end_block))
    except ChainIdMismatch as e:
        logger.error(f"Fatal error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")

    return 0


if __name__ == "__main__":
    sys.exit(main())
