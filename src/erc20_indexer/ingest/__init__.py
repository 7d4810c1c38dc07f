from .base import LogsProvider, RangeTooWide, TransientRpcError
from .fetcher import LogFetcher
from .rpc import Web3Provider

__all__ = [
    "LogsProvider",
    "RangeTooWide",
    "TransientRpcError",
    "LogFetcher",
    "Web3Provider",
]
