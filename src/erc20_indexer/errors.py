class IndexerError(Exception):
    """Base class for errors raised by the indexer"""


class FetchFailure(IndexerError):
    """Upstream RPC could not deliver logs for a range.

    Raised once transient retries are exhausted, when a response is malformed
    or when a single block is still rejected as too wide. Retryable.
    """


class DecodeFailure(IndexerError):
    """A log carries the transfer signature but its topics or data are malformed"""


class StorageFailure(IndexerError):
    """A storage transaction failed. Nothing from the batch was persisted. Retryable."""


class CheckpointRegression(StorageFailure):
    def __init__(self, chain_id: int, current: int, requested: int):
        super().__init__(
            f"checkpoint for chain {chain_id} would move backwards from {current} to {requested}"
        )
        self.chain_id = chain_id
        self.current = current
        self.requested = requested


class ConfigError(IndexerError):
    pass


class ChainIdMismatch(IndexerError):
    def __init__(self, rpc: int, expected: int):
        super().__init__(
            f"Chain ID mismatch: RPC returned {rpc} but expected {expected}"
        )
        self.rpc = rpc
        self.expected = expected


__all__ = [
    "IndexerError",
    "FetchFailure",
    "DecodeFailure",
    "StorageFailure",
    "CheckpointRegression",
    "ConfigError",
    "ChainIdMismatch",
]
