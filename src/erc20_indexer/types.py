from dataclasses import dataclass, field
from typing import Any, List, Mapping, Tuple, Union


def to_hex(value: Union[bytes, bytearray, str]) -> str:
    """Normalise bytes or a hex string to a lowercase 0x-prefixed hex string"""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        body = value[2:] if value[:2] in ("0x", "0X") else value
        # validates the digits
        bytes.fromhex(body if len(body) % 2 == 0 else "0" + body)
        return "0x" + body.lower()
    raise TypeError(f"expected bytes or hex string, got {type(value).__name__}")


def to_int(value: Union[int, str]) -> int:
    if isinstance(value, bool):
        raise TypeError("expected an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value[:2] in ("0x", "0X") else int(value)
    raise TypeError(f"expected int or hex string, got {type(value).__name__}")


@dataclass(frozen=True)
class BlockRange:
    """Inclusive range of block numbers"""

    from_block: int
    to_block: int

    def __post_init__(self):
        if self.from_block > self.to_block:
            raise ValueError(
                f"block range is invalid: {self.from_block} > {self.to_block}"
            )

    def __len__(self) -> int:
        return self.to_block - self.from_block + 1

    def __contains__(self, block_number: int) -> bool:
        return self.from_block <= block_number <= self.to_block

    def split(self) -> Tuple["BlockRange", "BlockRange"]:
        mid = (self.from_block + self.to_block) // 2
        return BlockRange(self.from_block, mid), BlockRange(mid + 1, self.to_block)

    def __str__(self) -> str:
        return f"[{self.from_block}, {self.to_block}]"


@dataclass(frozen=True)
class RawLog:
    """A log entry as returned by eth_getLogs, with hex fields normalised"""

    block_number: int
    tx_hash: str
    log_index: int
    address: str
    topics: Tuple[str, ...]
    data: str

    @property
    def sort_key(self) -> Tuple[int, int]:
        return self.block_number, self.log_index

    @classmethod
    def from_rpc(cls, entry: Mapping[str, Any]) -> "RawLog":
        """Build from a web3 LogReceipt or a plain JSON-RPC dict.

        Raises KeyError, TypeError or ValueError when the entry is malformed.
        """
        topics = entry["topics"]
        if isinstance(topics, (str, bytes)):
            raise TypeError("topics must be a list")

        return cls(
            block_number=to_int(entry["blockNumber"]),
            tx_hash=to_hex(entry["transactionHash"]),
            log_index=to_int(entry["logIndex"]),
            address=to_hex(entry["address"]),
            topics=tuple(to_hex(t) for t in topics),
            data=to_hex(entry["data"]),
        )


@dataclass(frozen=True)
class TransferEvent:
    chain_id: int
    block_number: int
    tx_hash: str
    token_address: str
    from_addr: str
    to_addr: str
    value: int
    log_index: int

    @property
    def key(self) -> Tuple[int, str, int]:
        return self.chain_id, self.tx_hash, self.log_index

    def to_row(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "token_address": self.token_address,
            "from_addr": self.from_addr,
            "to_addr": self.to_addr,
            "value": self.value,
            "log_index": self.log_index,
        }


@dataclass
class Batch:
    """Decoded transfers for one fetched block range"""

    block_range: BlockRange
    events: List[TransferEvent] = field(default_factory=list)

    @property
    def total_events(self) -> int:
        return len(self.events)

    def __str__(self) -> str:
        return f"Batch({self.total_events} transfers, block range: {self.block_range})"
