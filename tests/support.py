import threading
from typing import Any, Dict, List, Mapping, Optional, Sequence

from erc20_indexer.decode import TRANSFER_TOPIC
from erc20_indexer.ingest.base import LogsProvider, RangeTooWide, TransientRpcError
from erc20_indexer.types import TransferEvent

TOKEN = "0x" + "ab" * 20


def address(n: int) -> str:
    return "0x" + f"{n:040x}"


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def pad_address(addr: str) -> str:
    return "0x" + "0" * 24 + addr[2:]


def transfer_log(
    block: int,
    log_index: int = 0,
    sender: int = 1,
    recipient: int = 2,
    value: int = 1000,
    tx: Optional[int] = None,
    token: str = TOKEN,
    topics: Optional[List[str]] = None,
    data: Optional[str] = None,
) -> Dict[str, Any]:
    """A JSON-RPC style eth_getLogs entry for an ERC20 Transfer"""
    if topics is None:
        topics = [TRANSFER_TOPIC, pad_address(address(sender)), pad_address(address(recipient))]
    if data is None:
        data = "0x" + value.to_bytes(32, "big").hex()

    return {
        "address": token,
        "blockNumber": hex(block),
        "transactionHash": tx_hash(tx if tx is not None else block * 1000 + log_index),
        "logIndex": hex(log_index),
        "topics": topics,
        "data": data,
    }


class FakeProvider(LogsProvider):
    """In-memory chain.

    max_range makes get_logs reject wider queries; fail_next makes the next
    N calls raise TransientRpcError.
    """

    def __init__(
        self,
        logs: Sequence[Mapping[str, Any]] = (),
        tip: int = 0,
        chain: int = 1,
        max_range: Optional[int] = None,
        reverse: bool = False,
    ):
        self.logs = list(logs)
        self.tip = tip
        self.chain = chain
        self.max_range = max_range
        self.reverse = reverse
        self.fail_next = 0
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def _maybe_fail(self, what: str) -> None:
        with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise TransientRpcError(f"{what}: connection reset")

    def latest_block(self) -> int:
        self._maybe_fail("eth_blockNumber")
        return self.tip

    def chain_id(self) -> int:
        self._maybe_fail("eth_chainId")
        return self.chain

    def get_logs(self, from_block, to_block, topics, address=None):
        self.calls.append((from_block, to_block))
        self._maybe_fail("eth_getLogs")

        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise RangeTooWide(f"block range {from_block}-{to_block} is too large")

        out = [
            log
            for log in self.logs
            if from_block <= int(log["blockNumber"], 16) <= to_block
            and (address is None or log["address"].lower() == address)
        ]
        return list(reversed(out)) if self.reverse else out


def make_event(
    block: int,
    log_index: int = 0,
    chain_id: int = 1,
    value: int = 1000,
    tx: Optional[int] = None,
) -> TransferEvent:
    return TransferEvent(
        chain_id=chain_id,
        block_number=block,
        tx_hash=tx_hash(tx if tx is not None else block * 1000 + log_index),
        token_address=TOKEN,
        from_addr=address(1),
        to_addr=address(2),
        value=value,
        log_index=log_index,
    )
