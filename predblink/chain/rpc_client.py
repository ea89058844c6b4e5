# predblink/chain/rpc_client.py
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from loguru import logger

from predblink.errors import RpcError


def to_hex_quantity(value: int) -> str:
    if value < 0:
        raise ValueError(f"block number cannot be negative: {value}")
    return hex(value)


def _parse_quantity(value: Any, field: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.startswith("0x") and len(value) > 2:
        try:
            return int(value, 16)
        except ValueError:
            pass
    raise RpcError(f"invalid hex quantity in {field}: {value!r}")


@dataclass(frozen=True)
class RawLog:
    """A single `eth_getLogs` record, untouched apart from quantity parsing."""

    topics: Tuple[str, ...]
    data: str
    transaction_hash: str
    block_number: int
    log_index: int = 0
    address: Optional[str] = None

    @classmethod
    def from_rpc(cls, item: Dict[str, Any]) -> "RawLog":
        if not isinstance(item, dict):
            raise RpcError(f"log entry is not an object: {item!r}")

        topics = item.get("topics")
        if not isinstance(topics, list) or not all(isinstance(t, str) for t in topics):
            raise RpcError("log entry has no topics list")

        data = item.get("data", "0x")
        tx_hash = item.get("transactionHash")
        if not isinstance(data, str) or not isinstance(tx_hash, str):
            raise RpcError("log entry is missing data or transactionHash")

        return cls(
            topics=tuple(t.lower() for t in topics),
            data=data,
            transaction_hash=tx_hash.lower(),
            block_number=_parse_quantity(item.get("blockNumber"), "blockNumber"),
            log_index=_parse_quantity(item.get("logIndex", "0x0"), "logIndex"),
            address=item["address"].lower() if isinstance(item.get("address"), str) else None,
        )


class ChainRpcClient:
    """
    Minimal JSON-RPC client for the two methods the indexer needs.

    The underlying httpx client is owned by whoever constructs this object
    and is closed through `close()`; pass `client=` to share a transport.
    """

    def __init__(self, rpc_url: str, timeout: float = 15.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json", "User-Agent": "PredBlink-Indexer/1.0"}
        )
        self._request_id = 0

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def _call(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": self._request_id}

        try:
            response = await self.client.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RpcError(f"{method} timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise RpcError(f"{method} failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RpcError(f"{method} transport error: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise RpcError(f"{method} returned a non-JSON response") from e

        if not isinstance(body, dict):
            raise RpcError(f"{method} returned an unexpected payload")

        if body.get("error") is not None:
            error = body["error"]
            if isinstance(error, dict):
                raise RpcError(f"{method} error: {error.get('message', error)}", code=error.get("code"))
            raise RpcError(f"{method} error: {error}")

        if "result" not in body:
            raise RpcError(f"{method} response has no result")

        return body["result"]

    async def get_block_number(self) -> int:
        result = await self._call("eth_blockNumber", [])
        return _parse_quantity(result, "eth_blockNumber")

    async def get_logs(self, address: str, from_block: int, to_block: int,
                       topics: Optional[Sequence[Any]] = None) -> List[RawLog]:
        """Fetch raw logs for `[from_block, to_block]`, both ends inclusive."""
        log_filter: Dict[str, Any] = {
            "address": address,
            "fromBlock": to_hex_quantity(from_block),
            "toBlock": to_hex_quantity(to_block),
        }
        if topics:
            log_filter["topics"] = list(topics)

        result = await self._call("eth_getLogs", [log_filter])
        if not isinstance(result, list):
            raise RpcError("eth_getLogs result is not a list")

        logs = [RawLog.from_rpc(item) for item in result]
        logger.debug(f"eth_getLogs {from_block}-{to_block} returned {len(logs)} logs")
        return logs
