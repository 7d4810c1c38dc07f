from . import config, errors, types
from .decode import TRANSFER_TOPIC, decode
from .ingest import LogFetcher, LogsProvider, Web3Provider
from .pipeline import Pipeline
from .writers import CheckpointStore, TransferStore

__all__ = [
    "config",
    "errors",
    "types",
    "TRANSFER_TOPIC",
    "decode",
    "LogFetcher",
    "LogsProvider",
    "Web3Provider",
    "Pipeline",
    "CheckpointStore",
    "TransferStore",
]
