import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

from sqlalchemy import Connection, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StorageFailure
from ..types import TransferEvent
from .schema import transfers

if TYPE_CHECKING:
    from .checkpoint import CheckpointStore

logger = logging.getLogger(__name__)

KEY_COLUMNS = ["chain_id", "tx_hash", "log_index"]


def dialect_insert(dialect_name: str):
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise StorageFailure(f"unsupported database dialect: {dialect_name}")


def insert_transfers(conn: Connection, events: Sequence[TransferEvent]) -> None:
    """Insert events on an open connection, ignoring rows whose natural key already exists"""
    if not events:
        return

    insert = dialect_insert(conn.dialect.name)
    stmt = insert(transfers).on_conflict_do_nothing(index_elements=KEY_COLUMNS)
    conn.execute(stmt, [event.to_row() for event in events])


def _row_to_event(row) -> TransferEvent:
    return TransferEvent(
        chain_id=row.chain_id,
        block_number=row.block_number,
        tx_hash=row.tx_hash,
        token_address=row.token_address,
        from_addr=row.from_addr,
        to_addr=row.to_addr,
        value=row.value,
        log_index=row.log_index,
    )


class TransferStore:
    """Idempotent persistence of decoded transfers.

    Writes go through CheckpointStore.advance so events and the checkpoint
    commit in one transaction.
    """

    def __init__(self, checkpoints: "CheckpointStore"):
        self.checkpoints = checkpoints
        self.engine = checkpoints.engine

    def persist(self, chain_id: int, to_block: int, events: Sequence[TransferEvent]) -> None:
        for event in events:
            if event.chain_id != chain_id:
                raise ValueError(
                    f"event {event.tx_hash}:{event.log_index} belongs to chain {event.chain_id}, not {chain_id}"
                )
            if event.block_number > to_block:
                raise ValueError(
                    f"event {event.tx_hash}:{event.log_index} at block {event.block_number} is past {to_block}"
                )

        self.checkpoints.advance(chain_id, to_block, events)

    def count(self, chain_id: int) -> int:
        try:
            with self.engine.connect() as conn:
                return conn.execute(
                    select(func.count()).select_from(transfers).where(transfers.c.chain_id == chain_id)
                ).scalar_one()
        except SQLAlchemyError as e:
            raise StorageFailure(f"failed to count transfers: {e}") from e

    def list_transfers(
        self,
        chain_id: int,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> List[TransferEvent]:
        """Return stored transfers in (block_number, log_index) order"""
        query = select(transfers).where(transfers.c.chain_id == chain_id)
        if from_block is not None:
            query = query.where(transfers.c.block_number >= from_block)
        if to_block is not None:
            query = query.where(transfers.c.block_number <= to_block)
        query = query.order_by(transfers.c.block_number, transfers.c.log_index)

        try:
            with self.engine.connect() as conn:
                return [_row_to_event(row) for row in conn.execute(query)]
        except SQLAlchemyError as e:
            raise StorageFailure(f"failed to read transfers: {e}") from e


__all__ = ["TransferStore", "dialect_insert", "insert_transfers"]
