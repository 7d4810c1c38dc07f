import logging
from typing import Optional, Sequence

from sqlalchemy import Connection, Engine, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..errors import CheckpointRegression, StorageFailure
from ..types import TransferEvent
from .schema import sync
from .transfers import dialect_insert, insert_transfers

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Durable record of the last fully persisted block per chain.

    The start block is the first block to index, so a chain without a row
    reports start_block - 1.
    """

    def __init__(self, engine: Engine, start_block: int = 0):
        self.engine = engine
        self.start_block = start_block

    @property
    def initial(self) -> int:
        return self.start_block - 1

    def _current(self, conn: Connection, chain_id: int) -> Optional[int]:
        return conn.execute(
            select(sync.c.block_number).where(sync.c.chain_id == chain_id)
        ).scalar_one_or_none()

    def load(self, chain_id: int) -> int:
        try:
            with self.engine.connect() as conn:
                current = self._current(conn, chain_id)
        except SQLAlchemyError as e:
            raise StorageFailure(f"failed to load checkpoint for chain {chain_id}: {e}") from e

        return self.initial if current is None else current

    def seed(self, chain_id: int) -> int:
        """Create the checkpoint row on first run; an existing row is left untouched"""
        try:
            with self.engine.begin() as conn:
                current = self._current(conn, chain_id)
                if current is not None:
                    return current

                insert = dialect_insert(conn.dialect.name)
                conn.execute(
                    insert(sync)
                    .values(chain_id=chain_id, block_number=self.initial)
                    .on_conflict_do_nothing(index_elements=["chain_id"])
                )
        except SQLAlchemyError as e:
            raise StorageFailure(f"failed to seed checkpoint for chain {chain_id}: {e}") from e

        logger.info(f"Seeded checkpoint for chain {chain_id} at block {self.initial}")
        return self.initial

    def advance(
        self,
        chain_id: int,
        new_block_number: int,
        events: Sequence[TransferEvent] = (),
    ) -> None:
        """Insert events and move the checkpoint to new_block_number in one transaction.

        new_block_number is the last block of the fetched range. Either both
        the events and the checkpoint are committed or neither is.
        """
        try:
            with self.engine.begin() as conn:
                current = self._current(conn, chain_id)
                if current is not None and new_block_number < current:
                    raise CheckpointRegression(chain_id, current, new_block_number)

                insert_transfers(conn, events)

                if current is None:
                    conn.execute(
                        sync.insert().values(chain_id=chain_id, block_number=new_block_number)
                    )
                else:
                    conn.execute(
                        update(sync)
                        .where(sync.c.chain_id == chain_id)
                        .values(block_number=new_block_number)
                    )
        except SQLAlchemyError as e:
            logger.error(f"Error committing batch up to block {new_block_number}: {e}")
            raise StorageFailure(
                f"failed to advance checkpoint for chain {chain_id} to {new_block_number}: {e}"
            ) from e

        logger.debug(
            f"Checkpoint for chain {chain_id} advanced to {new_block_number} with {len(events)} transfers"
        )


__all__ = ["CheckpointStore"]
