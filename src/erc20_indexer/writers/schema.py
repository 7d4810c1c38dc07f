import logging
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    CHAR,
    Column,
    Engine,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeDecorator

from ..errors import StorageFailure

logger = logging.getLogger(__name__)

UINT256_DIGITS = 78


class Uint256(TypeDecorator):
    """Unsigned 256-bit integer column.

    NUMERIC(78, 0) where the backend holds it exactly. SQLite's NUMERIC
    affinity turns large integers into REAL, so there the decimal string is
    stored instead.
    """

    impl = Numeric(UINT256_DIGITS, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(UINT256_DIGITS))
        return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0))

    def process_bind_param(self, value: Optional[int], dialect) -> Any:
        if value is None:
            return None
        if value < 0:
            raise ValueError(f"uint256 value must not be negative: {value}")
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value: Any, dialect) -> Optional[int]:
        if value is None:
            return None
        return int(value)


metadata = MetaData()

sync = Table(
    "sync",
    metadata,
    Column("chain_id", Integer, primary_key=True, autoincrement=False),
    Column("block_number", BigInteger().with_variant(Integer, "sqlite"), nullable=False),
)

transfers = Table(
    "transfers",
    metadata,
    Column("chain_id", Integer, primary_key=True, autoincrement=False),
    Column("block_number", BigInteger().with_variant(Integer, "sqlite"), nullable=False),
    Column("tx_hash", CHAR(66), primary_key=True),
    Column("token_address", CHAR(42), nullable=False),
    Column("from_addr", CHAR(42), nullable=False),
    Column("to_addr", CHAR(42), nullable=False),
    Column("value", Uint256, nullable=False),
    Column("log_index", Integer, primary_key=True, autoincrement=False),
    Index("idx_block", "chain_id", "block_number"),
    Index("idx_token", "chain_id", "token_address"),
    Index("idx_from", "from_addr"),
    Index("idx_to", "to_addr"),
)


def create_engine_from_url(url: str, **kwargs) -> Engine:
    """Create SQLAlchemy engine from config URL"""
    if url.startswith("sqlite"):
        # connections are handed between asyncio worker threads
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


def create_tables(engine: Engine) -> None:
    """Create the sync and transfers tables and their indexes if missing"""
    logger.info("Creating database tables if they don't exist")
    try:
        metadata.create_all(engine, checkfirst=True)
    except SQLAlchemyError as e:
        logger.error(f"Error creating tables: {e}")
        raise StorageFailure(f"failed to create tables: {e}") from e
    logger.info("Database tables are ready")


__all__ = [
    "Uint256",
    "metadata",
    "sync",
    "transfers",
    "create_engine_from_url",
    "create_tables",
]
