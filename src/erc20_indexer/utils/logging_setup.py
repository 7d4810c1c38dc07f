import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

# Global variables to track logging state
_is_logging_configured = False
_current_log_file: Optional[Path] = None

NOISY_LOGGERS = ("web3", "urllib3", "requests", "sqlalchemy.engine", "asyncio")


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Union[str, Path]] = "logs",
) -> logging.Logger:
    """Configure console and file logging for the indexer.

    The console handler logs at ``level``; the file handler, if ``log_dir``
    is set, always logs at DEBUG. Calling it again is a no-op.
    """
    global _is_logging_configured, _current_log_file

    if _is_logging_configured:
        return logging.getLogger()

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        _current_log_file = log_dir / f"erc20_indexer_{timestamp}.log"

        file_handler = logging.FileHandler(_current_log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _is_logging_configured = True
    return root_logger


def get_current_log_file() -> Optional[Path]:
    """Get the path to the current log file"""
    return _current_log_file
