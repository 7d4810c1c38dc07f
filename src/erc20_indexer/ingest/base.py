from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Optional, Sequence
import logging

logger = logging.getLogger(__name__)


class RangeTooWide(Exception):
    """Provider refused a log query because the block range or result set is too large"""


class TransientRpcError(Exception):
    """Provider call failed in a way that may succeed on retry"""


class LogsProvider(ABC):
    """Blocking access to an Ethereum JSON-RPC endpoint.

    Implementations raise RangeTooWide or TransientRpcError; any other
    exception is treated as a malformed response.
    """

    @abstractmethod
    def latest_block(self) -> int:
        """Return the current chain tip"""
        pass

    @abstractmethod
    def chain_id(self) -> int:
        """Return the chain id reported by the endpoint"""
        pass

    @abstractmethod
    def get_logs(
        self,
        from_block: int,
        to_block: int,
        topics: Sequence[str],
        address: Optional[str] = None,
    ) -> List[Mapping[str, Any]]:
        """Return raw log entries for the inclusive block range"""
        pass
