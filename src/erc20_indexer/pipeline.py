import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Set, Tuple

from sqlalchemy import Engine

from .backoff import Backoff
from .config import IndexerConfig
from .decode import decode
from .errors import ChainIdMismatch, DecodeFailure, FetchFailure, StorageFailure
from .ingest.base import LogsProvider
from .ingest.fetcher import LogFetcher
from .ingest.rpc import Web3Provider
from .types import Batch, BlockRange, TransferEvent
from .writers.checkpoint import CheckpointStore
from .writers.schema import create_engine_from_url, create_tables
from .writers.transfers import TransferStore

logger = logging.getLogger(__name__)

RETRYABLE = (FetchFailure, StorageFailure)

# queue sentinel: the upstream stage has finished
_STOP = object()


class State(str, Enum):
    IDLE = "idle"
    COMPUTE_RANGE = "compute_range"
    CAUGHT_UP_WAIT = "caught_up_wait"
    FETCHING = "fetching"
    DECODING = "decoding"
    PERSISTING = "persisting"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RangeEnd:
    """Every log of block_range has been handed to the decoder"""

    block_range: BlockRange


@dataclass
class PipelineStats:
    batches: int = 0
    events: int = 0
    skipped: int = 0
    decode_failures: int = 0
    retries: int = 0
    checkpoint: Optional[int] = None

    def __str__(self) -> str:
        return (
            f"checkpoint={self.checkpoint} batches={self.batches} transfers={self.events} "
            f"skipped={self.skipped} decode_failures={self.decode_failures} retries={self.retries}"
        )


class Pipeline:
    """Fetch → decode → persist loop for one chain.

    Each session loads the checkpoint from storage and runs three stages
    connected by bounded queues, so range N+1 is fetched while range N is
    decoded and persisted. Batches commit strictly in range order. Any
    retryable failure ends the session; the pipeline backs off and starts
    the next session from the persisted checkpoint. It never gives up on its
    own: only stop() (or committing end_block) ends run().

    ``state`` is a best-effort status: the stages run concurrently and it
    holds the most recent transition made by any of them.
    """

    def __init__(
        self,
        chain_id: int,
        fetcher: LogFetcher,
        checkpoints: CheckpointStore,
        store: TransferStore,
        poll_interval: float = 12.0,
        max_batch_span: int = 100,
        log_queue_size: int = 10_000,
        batch_queue_size: int = 4,
        backoff: Optional[Backoff] = None,
        verify_chain_id: bool = True,
        end_block: Optional[int] = None,
    ):
        if max_batch_span < 1:
            raise ValueError("max_batch_span must be at least 1")

        self.chain_id = chain_id
        self.fetcher = fetcher
        self.checkpoints = checkpoints
        self.store = store
        self.poll_interval = poll_interval
        self.max_batch_span = max_batch_span
        self.log_queue_size = log_queue_size
        self.batch_queue_size = batch_queue_size
        self.backoff = backoff or Backoff(base_delay=1.0, max_delay=60.0)
        self.verify_chain_id = verify_chain_id
        self.end_block = end_block

        self.state = State.IDLE
        self.stats = PipelineStats()
        self._stop = asyncio.Event()
        self._prepared = False

    @classmethod
    def from_config(
        cls,
        config: IndexerConfig,
        provider: Optional[LogsProvider] = None,
        engine: Optional[Engine] = None,
        end_block: Optional[int] = None,
    ) -> "Pipeline":
        if provider is None:
            provider = Web3Provider(config.rpc_url, request_timeout=config.request_timeout)
        if engine is None:
            engine = create_engine_from_url(config.database_url)

        checkpoints = CheckpointStore(engine, start_block=config.start_block)

        return cls(
            chain_id=config.chain_id,
            fetcher=LogFetcher(provider, config.fetch_retry, config.token_address),
            checkpoints=checkpoints,
            store=TransferStore(checkpoints),
            poll_interval=config.poll_interval,
            max_batch_span=config.max_batch_span,
            log_queue_size=config.log_queue_size,
            batch_queue_size=config.batch_queue_size,
            backoff=Backoff(config.backoff.base_delay, config.backoff.max_delay),
            verify_chain_id=config.verify_chain_id,
            end_block=end_block,
        )

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Request a cooperative stop; queued work is drained first"""
        if not self._stop.is_set():
            logger.info(f"Stop requested for chain {self.chain_id}")
        self._stop.set()

    def _past_end(self, block_number: int) -> bool:
        return self.end_block is not None and block_number >= self.end_block

    def _transition(self, state: State) -> None:
        if state != self.state:
            logger.debug(f"chain {self.chain_id}: {self.state.value} -> {state.value}")
            self.state = state

    async def _wait(self, timeout: float) -> bool:
        """Sleep for timeout seconds; return True early if a stop was requested"""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> PipelineStats:
        logger.info(f"Running pipeline for chain {self.chain_id}")

        while not self._stop.is_set():
            try:
                if not self._prepared:
                    await self._prepare()
                await self._run_session()
            except RETRYABLE as e:
                self.stats.retries += 1
                delay = self.backoff.next_delay()
                self._transition(State.BACKOFF)
                logger.warning(
                    f"chain {self.chain_id}: cycle failed (attempt {self.backoff.attempt}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._wait(delay)

        self._transition(State.STOPPED)
        logger.info(f"Pipeline for chain {self.chain_id} stopped: {self.stats}")
        return self.stats

    async def _prepare(self) -> None:
        await asyncio.to_thread(create_tables, self.checkpoints.engine)
        checkpoint = await asyncio.to_thread(self.checkpoints.seed, self.chain_id)
        self.stats.checkpoint = checkpoint

        if self.verify_chain_id:
            rpc_chain_id = await self.fetcher.chain_id()
            if rpc_chain_id != self.chain_id:
                raise ChainIdMismatch(rpc=rpc_chain_id, expected=self.chain_id)
            logger.info(f"Chain ID verified: {rpc_chain_id} (matches RPC)")

        self._prepared = True

    async def _run_session(self) -> None:
        self._transition(State.IDLE)
        checkpoint = await asyncio.to_thread(self.checkpoints.load, self.chain_id)
        self.stats.checkpoint = checkpoint

        if self._past_end(checkpoint):
            logger.info(f"chain {self.chain_id}: end block {self.end_block} already persisted")
            self.stop()
            return

        logger.info(f"chain {self.chain_id}: resuming from block {checkpoint + 1}")

        logs: asyncio.Queue = asyncio.Queue(maxsize=self.log_queue_size)
        batches: asyncio.Queue = asyncio.Queue(maxsize=self.batch_queue_size)

        tasks = [
            asyncio.create_task(self._fetch_stage(checkpoint, logs), name="fetch"),
            asyncio.create_task(self._decode_stage(logs, batches), name="decode"),
            asyncio.create_task(self._persist_stage(checkpoint, batches), name="persist"),
        ]

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in list(done) + tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

        fetch_error = tasks[0].result()
        if fetch_error is not None:
            raise fetch_error

    async def _fetch_stage(
        self, checkpoint: int, logs: asyncio.Queue
    ) -> Optional[FetchFailure]:
        """Producer. A FetchFailure is returned rather than raised so the
        ranges already queued still reach storage before backing off."""
        next_block = checkpoint + 1
        tip = -1
        error = None

        try:
            while not self._stop.is_set():
                self._transition(State.COMPUTE_RANGE)

                if self._past_end(next_block - 1):
                    # persist stage stops the pipeline once the end block is committed
                    break

                if next_block > tip:
                    tip = await self.fetcher.latest_block()

                if next_block > tip:
                    self._transition(State.CAUGHT_UP_WAIT)
                    logger.debug(
                        f"chain {self.chain_id}: caught up at tip {tip}, polling again in {self.poll_interval}s"
                    )
                    await self._wait(self.poll_interval)
                    continue

                to_block = min(tip, next_block + self.max_batch_span - 1)
                if self.end_block is not None:
                    to_block = min(to_block, self.end_block)
                block_range = BlockRange(next_block, to_block)

                self._transition(State.FETCHING)
                async for log in self.fetcher.stream(block_range.from_block, block_range.to_block):
                    await logs.put(log)
                await logs.put(RangeEnd(block_range))

                next_block = block_range.to_block + 1
        except FetchFailure as e:
            error = e

        await logs.put(_STOP)
        return error

    async def _decode_stage(self, logs: asyncio.Queue, batches: asyncio.Queue) -> None:
        events: List[TransferEvent] = []
        seen: Set[Tuple[int, str, int]] = set()

        while True:
            item = await logs.get()

            if item is _STOP:
                if events:
                    logger.debug(f"dropping {len(events)} transfers of an unfinished range")
                await batches.put(_STOP)
                return

            if isinstance(item, RangeEnd):
                await batches.put(Batch(item.block_range, events))
                events, seen = [], set()
                continue

            self._transition(State.DECODING)
            try:
                event = decode(item, self.chain_id)
            except DecodeFailure as e:
                self.stats.decode_failures += 1
                logger.warning(f"chain {self.chain_id}: skipping malformed transfer log: {e}")
                continue

            if event is None:
                self.stats.skipped += 1
                continue

            # providers occasionally repeat a log across paginated responses
            if event.key in seen:
                continue
            seen.add(event.key)
            events.append(event)

    async def _persist_stage(self, checkpoint: int, batches: asyncio.Queue) -> None:
        last_block = checkpoint

        while True:
            batch = await batches.get()
            if batch is _STOP:
                return

            if batch.block_range.from_block != last_block + 1:
                raise RuntimeError(
                    f"batch {batch.block_range} does not follow checkpoint {last_block}"
                )

            self._transition(State.PERSISTING)
            await self._write(batch)

            last_block = batch.block_range.to_block
            self.stats.batches += 1
            self.stats.events += batch.total_events
            self.stats.checkpoint = last_block
            self.backoff.reset()
            self._transition(State.IDLE)

            logger.info(f"chain {self.chain_id}: persisted {batch}; {self.stats}")

            if self._past_end(last_block):
                logger.info(f"chain {self.chain_id}: reached end block {self.end_block}")
                self.stop()

    async def _write(self, batch: Batch) -> None:
        write = asyncio.ensure_future(
            asyncio.to_thread(
                self.store.persist,
                self.chain_id,
                batch.block_range.to_block,
                batch.events,
            )
        )
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # let the transaction commit or roll back before unwinding
            await asyncio.wait([write])
            if not write.cancelled() and write.exception() is not None:
                logger.warning(f"write of {batch} failed during shutdown: {write.exception()}")
            raise


__all__ = ["Pipeline", "PipelineStats", "State"]
