import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests
from web3 import Web3
from web3.exceptions import Web3Exception, Web3RPCError

from .base import LogsProvider, RangeTooWide, TransientRpcError

logger = logging.getLogger(__name__)

# -32005 is "limit exceeded" on Infura/Alchemy style providers
RANGE_TOO_WIDE_CODES = {-32005}
RANGE_TOO_WIDE_MESSAGES = (
    "block range",
    "range is too large",
    "range too large",
    "too many results",
    "more than 10000 results",
    "query returned more than",
    "exceeds max results",
    "response size exceeded",
    "response size is larger",
    "log response size",
    "payload too large",
    "entity too large",
    "too many blocks",
)
RATE_LIMIT_MESSAGES = ("rate limit", "too many requests", "request rate", "request count")


def _rpc_error(e: Exception) -> Dict[str, Any]:
    response = getattr(e, "rpc_response", None)
    if isinstance(response, Mapping) and isinstance(response.get("error"), Mapping):
        return dict(response["error"])
    if e.args and isinstance(e.args[0], Mapping):
        return dict(e.args[0])
    return {}


def is_range_too_wide(e: Exception) -> bool:
    """Classify a provider error as a rejection of the query's size"""
    if isinstance(e, requests.HTTPError) and e.response is not None:
        if e.response.status_code == 413:
            return True

    error = _rpc_error(e)
    message = str(error.get("message", e)).lower()

    if any(m in message for m in RATE_LIMIT_MESSAGES):
        return False
    if error.get("code") in RANGE_TOO_WIDE_CODES:
        return True
    return any(m in message for m in RANGE_TOO_WIDE_MESSAGES)


class Web3Provider(LogsProvider):
    def __init__(self, url: str, request_timeout: float = 30.0):
        logger.debug(f"Initializing Web3Provider for {url}")
        self.url = url
        self.w3 = Web3(
            Web3.HTTPProvider(url, request_kwargs={"timeout": request_timeout})
        )

    def _call(self, what: str, fn, *args):
        try:
            return fn(*args)
        except (Web3RPCError, ValueError, requests.HTTPError) as e:
            if is_range_too_wide(e):
                raise RangeTooWide(f"{what}: {e}") from e
            raise TransientRpcError(f"{what}: {e}") from e
        except (requests.RequestException, Web3Exception, TimeoutError, ConnectionError) as e:
            raise TransientRpcError(f"{what}: {e}") from e

    def latest_block(self) -> int:
        return int(self._call("eth_blockNumber", lambda: self.w3.eth.block_number))

    def chain_id(self) -> int:
        return int(self._call("eth_chainId", lambda: self.w3.eth.chain_id))

    def get_logs(
        self,
        from_block: int,
        to_block: int,
        topics: Sequence[str],
        address: Optional[str] = None,
    ) -> List[Mapping[str, Any]]:
        params: Dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": list(topics),
        }
        if address is not None:
            params["address"] = Web3.to_checksum_address(address)

        logs = self._call(
            f"eth_getLogs [{from_block}, {to_block}]", self.w3.eth.get_logs, params
        )
        return list(logs)
