import pytest
import requests
from web3.exceptions import Web3RPCError

from erc20_indexer.config import RetryConfig
from erc20_indexer.errors import FetchFailure
from erc20_indexer.ingest.base import RangeTooWide, TransientRpcError
from erc20_indexer.ingest.fetcher import LogFetcher
from erc20_indexer.ingest.rpc import Web3Provider, is_range_too_wide

from support import TOKEN, FakeProvider, transfer_log

NO_WAIT = RetryConfig(max_attempts=3, base_delay=0, max_delay=0)


def sort_keys(logs):
    return [(log.block_number, log.log_index) for log in logs]


@pytest.mark.asyncio
async def test_fetch_orders_logs():
    logs = [transfer_log(block=b, log_index=i) for b in (3, 1, 2) for i in (1, 0)]
    provider = FakeProvider(logs, tip=10, reverse=True)

    result = await LogFetcher(provider, NO_WAIT).fetch(1, 1, 10)

    assert sort_keys(result) == [(1, 0), (1, 1), (2, 0), (2, 1), (3, 0), (3, 1)]
    assert provider.calls == [(1, 10)]


@pytest.mark.asyncio
async def test_fetch_halves_rejected_ranges():
    logs = [transfer_log(block=b) for b in range(1, 11)]
    provider = FakeProvider(logs, tip=10, max_range=3)

    result = await LogFetcher(provider, NO_WAIT).fetch(1, 1, 10)

    assert sort_keys(result) == [(b, 0) for b in range(1, 11)]
    accepted = [c for c in provider.calls if c[1] - c[0] + 1 <= 3]
    assert accepted == sorted(accepted)
    assert accepted[0][0] == 1 and accepted[-1][1] == 10
    assert (1, 10) in provider.calls


@pytest.mark.asyncio
async def test_single_block_still_too_wide_fails():
    provider = FakeProvider([transfer_log(block=1)], tip=1, max_range=0)

    with pytest.raises(FetchFailure):
        await LogFetcher(provider, NO_WAIT).fetch(1, 1, 4)


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    provider = FakeProvider([transfer_log(block=5)], tip=5)
    provider.fail_next = 2
    delays = []

    async def record(delay):
        delays.append(delay)

    fetcher = LogFetcher(provider, RetryConfig(max_attempts=3, base_delay=0.5, max_delay=0.75), sleep=record)
    result = await fetcher.fetch(1, 1, 5)

    assert sort_keys(result) == [(5, 0)]
    assert delays == [0.5, 0.75]


@pytest.mark.asyncio
async def test_retries_are_bounded():
    provider = FakeProvider([transfer_log(block=5)], tip=5)
    provider.fail_next = 3

    with pytest.raises(FetchFailure):
        await LogFetcher(provider, NO_WAIT).fetch(1, 1, 5)

    assert len(provider.calls) == 3


@pytest.mark.asyncio
async def test_latest_block_uses_retry():
    provider = FakeProvider(tip=42)
    provider.fail_next = 1

    assert await LogFetcher(provider, NO_WAIT).latest_block() == 42


@pytest.mark.asyncio
async def test_malformed_entry_fails():
    entry = transfer_log(block=2)
    del entry["transactionHash"]
    provider = FakeProvider([entry], tip=2)

    with pytest.raises(FetchFailure):
        await LogFetcher(provider, NO_WAIT).fetch(1, 1, 2)


@pytest.mark.asyncio
async def test_log_outside_range_fails():
    class Sloppy(FakeProvider):
        def get_logs(self, from_block, to_block, topics, address=None):
            return [transfer_log(block=to_block + 1)]

    with pytest.raises(FetchFailure):
        await LogFetcher(Sloppy(tip=10), NO_WAIT).fetch(1, 1, 5)


@pytest.mark.asyncio
async def test_token_filter_is_passed_to_provider():
    other = "0x" + "cd" * 20
    logs = [transfer_log(block=1), transfer_log(block=2, token=other)]
    provider = FakeProvider(logs, tip=2)

    result = await LogFetcher(provider, NO_WAIT, token_address=TOKEN).fetch(1, 1, 2)

    assert [log.address for log in result] == [TOKEN]


def _http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} error", response=response)


@pytest.mark.parametrize(
    "error, expected",
    [
        (ValueError({"code": -32005, "message": "query returned more than 10000 results"}), True),
        (ValueError({"code": -32602, "message": "eth_getLogs block range is too large"}), True),
        (ValueError({"code": -32000, "message": "Log response size exceeded"}), True),
        (ValueError({"code": -32005, "message": "project ID request rate exceeded"}), False),
        (ValueError({"code": -32000, "message": "header not found"}), False),
        (_http_error(413), True),
        (_http_error(503), False),
    ],
)
def test_is_range_too_wide(error, expected):
    assert is_range_too_wide(error) is expected


@pytest.mark.asyncio
async def test_limit_error_on_tip_query_is_not_split():
    class LimitedTip(FakeProvider):
        def latest_block(self):
            raise RangeTooWide("eth_blockNumber: limit exceeded")

    with pytest.raises(FetchFailure):
        await LogFetcher(LimitedTip(tip=5), NO_WAIT).latest_block()


def _raise(error):
    def call():
        raise error

    return call


@pytest.mark.parametrize(
    "error, expected",
    [
        (ValueError({"code": -32005, "message": "query returned more than 10000 results"}), RangeTooWide),
        (ValueError({"code": -32000, "message": "header not found"}), TransientRpcError),
        (
            Web3RPCError(
                "block range too large",
                rpc_response={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "block range is too large"}},
            ),
            RangeTooWide,
        ),
        (
            Web3RPCError(
                "rate limited",
                rpc_response={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "request rate exceeded"}},
            ),
            TransientRpcError,
        ),
        (_http_error(413), RangeTooWide),
        (_http_error(503), TransientRpcError),
        (requests.ConnectionError("connection refused"), TransientRpcError),
        (TimeoutError("timed out"), TransientRpcError),
    ],
)
def test_provider_maps_rpc_errors(error, expected):
    provider = Web3Provider("http://127.0.0.1:8545")

    with pytest.raises(expected) as info:
        provider._call("eth_getLogs [1, 10]", _raise(error))

    assert info.value.__cause__ is error
    assert str(info.value).startswith("eth_getLogs [1, 10]: ")


def test_provider_passes_results_through():
    provider = Web3Provider("http://127.0.0.1:8545")

    assert provider._call("eth_blockNumber", lambda: 42) == 42
