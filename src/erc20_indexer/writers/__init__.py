from .checkpoint import CheckpointStore
from .schema import create_engine_from_url, create_tables
from .transfers import TransferStore

__all__ = [
    "CheckpointStore",
    "TransferStore",
    "create_engine_from_url",
    "create_tables",
]
