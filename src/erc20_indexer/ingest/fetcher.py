import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from ..backoff import backoff_delay
from ..config import RetryConfig
from ..decode import TRANSFER_TOPIC
from ..errors import FetchFailure
from ..types import BlockRange, RawLog
from .base import LogsProvider, RangeTooWide, TransientRpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LogFetcher:
    """Pulls transfer logs from a LogsProvider.

    Provider calls are blocking and run in a worker thread. Transient errors
    are retried with exponential backoff; ranges the provider rejects as too
    wide are halved until they fit.
    """

    def __init__(
        self,
        provider: LogsProvider,
        retry: Optional[RetryConfig] = None,
        token_address: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.retry = retry or RetryConfig()
        self.token_address = token_address
        self.topics = [TRANSFER_TOPIC]
        self._sleep = sleep

    async def _with_retry(
        self, what: str, fn: Callable[..., T], *args, allow_split: bool = False
    ) -> T:
        """Run a provider call with bounded retries.

        RangeTooWide is passed through only when the caller can split its
        range; otherwise it is retried like any transient error.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.to_thread(fn, *args)
            except RangeTooWide as e:
                if allow_split:
                    raise
                error: Exception = e
            except TransientRpcError as e:
                error = e
            except Exception as e:
                # provider contract: anything else is an unusable response
                raise FetchFailure(f"{what} returned an unexpected response: {e!r}") from e

            if attempt >= self.retry.max_attempts:
                raise FetchFailure(
                    f"{what} failed after {attempt} attempts: {error}"
                ) from error
            delay = backoff_delay(
                attempt, self.retry.base_delay, self.retry.max_delay
            )
            logger.warning(
                f"{what} failed (attempt {attempt}/{self.retry.max_attempts}), retrying in {delay:.2f}s: {error}"
            )
            await self._sleep(delay)

    async def latest_block(self) -> int:
        return await self._with_retry("eth_blockNumber", self.provider.latest_block)

    async def chain_id(self) -> int:
        return await self._with_retry("eth_chainId", self.provider.chain_id)

    async def _get_logs(self, block_range: BlockRange) -> List[RawLog]:
        entries = await self._with_retry(
            f"eth_getLogs {block_range}",
            self.provider.get_logs,
            block_range.from_block,
            block_range.to_block,
            self.topics,
            self.token_address,
            allow_split=True,
        )

        if not isinstance(entries, list):
            raise FetchFailure(
                f"eth_getLogs {block_range} returned {type(entries).__name__}, expected a list"
            )

        logs = []
        for entry in entries:
            try:
                log = RawLog.from_rpc(entry)
            except (KeyError, TypeError, ValueError) as e:
                raise FetchFailure(
                    f"malformed log entry in eth_getLogs {block_range}: {e!r}"
                ) from e
            if log.block_number not in block_range:
                raise FetchFailure(
                    f"eth_getLogs {block_range} returned a log from block {log.block_number}"
                )
            logs.append(log)

        logs.sort(key=lambda log: log.sort_key)
        return logs

    async def stream(self, from_block: int, to_block: int) -> AsyncIterator[RawLog]:
        """Yield logs for [from_block, to_block] in (block_number, log_index) order.

        Logs are yielded as each sub-request returns. Sub-ranges are fetched
        left to right, so the overall order holds across splits.
        """
        pending = [BlockRange(from_block, to_block)]

        while pending:
            block_range = pending.pop()
            try:
                logs = await self._get_logs(block_range)
            except RangeTooWide as e:
                if len(block_range) == 1:
                    raise FetchFailure(
                        f"provider rejected single block {block_range.from_block}: {e}"
                    ) from e
                left, right = block_range.split()
                logger.debug(
                    f"range {block_range} too wide, splitting into {left} and {right}"
                )
                # stack: left half is fetched first
                pending.append(right)
                pending.append(left)
                continue

            logger.debug(f"fetched {len(logs)} logs for {block_range}")
            for log in logs:
                yield log

    async def fetch(self, chain_id: int, from_block: int, to_block: int) -> List[RawLog]:
        logger.debug(f"fetching transfer logs on chain {chain_id} for [{from_block}, {to_block}]")
        return [log async for log in self.stream(from_block, to_block)]


__all__ = ["LogFetcher"]
