import logging
from typing import Optional

from web3 import Web3

from .errors import DecodeFailure
from .types import RawLog, TransferEvent

logger = logging.getLogger(__name__)

TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"
# keccak256 of the signature, 0xddf252ad...
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text=TRANSFER_SIGNATURE))

WORD_SIZE = 32
ADDRESS_SIZE = 20


def _word(hex_str: str, what: str, log: RawLog) -> bytes:
    try:
        raw = bytes.fromhex(hex_str[2:])
    except ValueError as e:
        raise DecodeFailure(f"{what} is not valid hex in {_describe(log)}") from e
    if len(raw) != WORD_SIZE:
        raise DecodeFailure(
            f"{what} is {len(raw)} bytes, expected {WORD_SIZE} in {_describe(log)}"
        )
    return raw


def _address(topic: str, what: str, log: RawLog) -> str:
    word = _word(topic, what, log)
    if any(word[: WORD_SIZE - ADDRESS_SIZE]):
        raise DecodeFailure(f"{what} has non-zero padding in {_describe(log)}")
    return "0x" + word[WORD_SIZE - ADDRESS_SIZE :].hex()


def _describe(log: RawLog) -> str:
    return f"log {log.tx_hash}:{log.log_index} (block {log.block_number})"


def is_transfer(log: RawLog) -> bool:
    return len(log.topics) > 0 and log.topics[0].lower() == TRANSFER_TOPIC


def decode(log: RawLog, chain_id: int) -> Optional[TransferEvent]:
    """Decode an ERC20 Transfer log.

    Returns None when the log is not an ERC20 transfer: a different topic0, or
    the four-topic ERC-721 form that shares the signature. Raises
    DecodeFailure when the signature matches but the topics or data do not
    hold two padded addresses and one uint256.
    """
    if not is_transfer(log):
        return None

    if len(log.topics) == 4:
        return None

    if len(log.topics) != 3:
        raise DecodeFailure(
            f"expected 3 topics, got {len(log.topics)} in {_describe(log)}"
        )

    from_addr = _address(log.topics[1], "from topic", log)
    to_addr = _address(log.topics[2], "to topic", log)
    value = int.from_bytes(_word(log.data, "data", log), byteorder="big")

    token_address = log.address.lower()
    if len(token_address) != 2 + 2 * ADDRESS_SIZE:
        raise DecodeFailure(f"emitter address is malformed in {_describe(log)}")
    if len(log.tx_hash) != 2 + 2 * WORD_SIZE:
        raise DecodeFailure(f"transaction hash is malformed in {_describe(log)}")

    return TransferEvent(
        chain_id=chain_id,
        block_number=log.block_number,
        tx_hash=log.tx_hash.lower(),
        token_address=token_address,
        from_addr=from_addr,
        to_addr=to_addr,
        value=value,
        log_index=log.log_index,
    )


__all__ = ["TRANSFER_SIGNATURE", "TRANSFER_TOPIC", "decode", "is_transfer"]
