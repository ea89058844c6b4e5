# predblink_fixtures.py - log builders, chain simulator and store doubles shared by the tests
import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import httpx

from predblink.chain.events import (
    CLAIMED,
    MARKET_CREATED,
    RESOLVED,
    TRADE,
    VOIDED,
    ClaimEvent,
    MarketCreatedEvent,
    ResolutionEvent,
    TradeEvent,
    VoidEvent,
)
from predblink.chain.rpc_client import ChainRpcClient
from predblink.tasks.sql_indexer import TradeWithMarket
from predblink.tasks.sync_state import SyncState

CONTRACT = "0x00000000000000000000000000000000000b1a7e"
TRADER = "0x1111111111111111111111111111111111111111"
CREATOR = "0x2222222222222222222222222222222222222222"
UNKNOWN_TOPIC = "0x" + "ab" * 32
PRICE_ONE = 10 ** 18


# ========== ABI encoding ==========

def word(value: int) -> str:
    return format(value, "064x")


def address_word(address: str) -> str:
    return address.lower()[2:].rjust(64, "0")


def topic(value: int) -> str:
    return "0x" + word(value)


def address_topic(address: str) -> str:
    return "0x" + address_word(address)


def string_tail(text: str) -> str:
    raw = text.encode("utf-8")
    padded_len = ((len(raw) + 31) // 32) * 64
    return word(len(raw)) + raw.hex().ljust(padded_len, "0")


def _tx_hash(block: int, log_index: int) -> str:
    return "0x" + format(block, "032x") + format(log_index, "032x")


def rpc_log(topics: List[str], data: str, block: int, log_index: int = 0,
            tx_hash: Optional[str] = None) -> Dict[str, Any]:
    return {
        "address": CONTRACT,
        "topics": topics,
        "data": data,
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": tx_hash or _tx_hash(block, log_index),
    }


def trade_log(market_id: int = 1, trader: str = TRADER, is_yes: bool = True, is_buy: bool = True,
              usdc_amount: int = 1_000_000_000, shares: int = 2 * PRICE_ONE,
              new_yes_price: int = PRICE_ONE // 2, block: int = 1100, log_index: int = 0,
              tx_hash: Optional[str] = None) -> Dict[str, Any]:
    data = "0x" + word(int(is_yes)) + word(int(is_buy)) + word(usdc_amount) + word(shares) + word(new_yes_price)
    return rpc_log([TRADE.topic0, topic(market_id), address_topic(trader)], data, block, log_index, tx_hash)


def market_log(market_id: int = 1, market_type: int = 0, feed_id: str = "0x" + "fe" * 32,
               question: str = "Will the tweet reach 10k likes?", target_value: int = 10_000,
               end_time: int = 1_767_225_600, end_block: int = 9_000_000, creator: str = CREATOR,
               block: int = 1050, log_index: int = 0) -> Dict[str, Any]:
    head_slots = 6
    data = (
        "0x"
        + feed_id[2:]
        + word(head_slots * 32)
        + word(target_value)
        + word(end_time)
        + word(end_block)
        + address_word(creator)
        + string_tail(question)
    )
    return rpc_log([MARKET_CREATED.topic0, topic(market_id), topic(market_type)], data, block, log_index)


def resolved_log(market_id: int = 1, outcome: int = 1, final_value: int = 12_345,
                 block: int = 1400, log_index: int = 0) -> Dict[str, Any]:
    return rpc_log([RESOLVED.topic0, topic(market_id)], "0x" + word(outcome) + word(final_value), block, log_index)


def claimed_log(market_id: int = 1, user: str = TRADER, payout: int = 1_500_000,
                block: int = 1450, log_index: int = 0) -> Dict[str, Any]:
    return rpc_log([CLAIMED.topic0, topic(market_id), address_topic(user)], "0x" + word(payout), block, log_index)


def voided_log(market_id: int = 2, block: int = 1450, log_index: int = 1) -> Dict[str, Any]:
    return rpc_log([VOIDED.topic0, topic(market_id)], "0x", block, log_index)


def unknown_log(block: int = 1100, log_index: int = 5) -> Dict[str, Any]:
    return rpc_log([UNKNOWN_TOPIC, topic(7)], "0x" + word(42), block, log_index)


# ========== Chain simulator ==========

class ChainSimulator:
    """In-process JSON-RPC endpoint honouring block ranges and topic0 filters."""

    def __init__(self, head: int = 0):
        self.head = head
        self.logs: List[Dict[str, Any]] = []
        self.requests: List[Dict[str, Any]] = []
        self.fail_methods: Set[str] = set()
        self.fail_topics: Set[str] = set()
        self.ignore_topic_filter = False

    def add(self, *logs: Dict[str, Any]) -> None:
        self.logs.extend(logs)

    def _error(self, request_id, message: str) -> httpx.Response:
        return httpx.Response(200, json={
            "jsonrpc": "2.0", "id": request_id, "error": {"code": -32000, "message": message}
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        method = payload["method"]

        if method in self.fail_methods:
            return self._error(payload["id"], f"{method} unavailable")

        if method == "eth_blockNumber":
            result: Any = hex(self.head)
        elif method == "eth_getLogs":
            log_filter = payload["params"][0]
            low = int(log_filter["fromBlock"], 16)
            high = int(log_filter["toBlock"], 16)
            topics = log_filter.get("topics") or []
            topic0 = topics[0] if topics and not self.ignore_topic_filter else None
            if topic0 in self.fail_topics:
                return self._error(payload["id"], "log query failed")
            result = [
                log for log in self.logs
                if low <= int(log["blockNumber"], 16) <= high
                and (topic0 is None or log["topics"][0] == topic0)
            ]
        else:
            return self._error(payload["id"], f"method {method} not supported")

        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    def client(self) -> ChainRpcClient:
        transport = httpx.MockTransport(self.handler)
        return ChainRpcClient("http://rpc.test", timeout=5.0, client=httpx.AsyncClient(transport=transport))


# ========== Store doubles ==========

class InMemoryEventStore:
    """Same async interface and ordering rules as PredBlinkSQLIndexer."""

    def __init__(self):
        self.trades: Dict[Any, TradeEvent] = {}
        self.markets: Dict[Any, MarketCreatedEvent] = {}
        self.resolutions: Dict[Any, ResolutionEvent] = {}
        self.claims: Dict[Any, ClaimEvent] = {}
        self.voids: Dict[Any, VoidEvent] = {}
        self.fail_with: Optional[Exception] = None
        self.query_error: Optional[Exception] = None
        self.insert_attempts = 0

    def _slot(self, event):
        if isinstance(event, TradeEvent):
            return self.trades, (event.transaction_hash, event.log_index), replace(event, trader=event.trader.lower())
        if isinstance(event, MarketCreatedEvent):
            return self.markets, event.market_id, replace(event, creator=event.creator.lower())
        if isinstance(event, ResolutionEvent):
            return self.resolutions, event.market_id, event
        if isinstance(event, ClaimEvent):
            return self.claims, (event.transaction_hash, event.log_index), replace(event, user=event.user.lower())
        if isinstance(event, VoidEvent):
            return self.voids, event.market_id, event
        raise TypeError(type(event).__name__)

    async def insert_event(self, event) -> bool:
        self.insert_attempts += 1
        if self.fail_with is not None:
            raise self.fail_with
        table, key, row = self._slot(event)
        if key in table:
            return False
        table[key] = replace(row, indexed_at=datetime.now(timezone.utc))
        return True

    @staticmethod
    def _newest(rows):
        return sorted(rows, key=lambda r: (r.block_number, r.log_index), reverse=True)

    async def get_trades_by_trader(self, trader: str, limit: int = 100):
        return self._newest(t for t in self.trades.values() if t.trader == trader.lower())[:limit]

    async def get_markets_by_creator(self, creator: str, limit: int = 50):
        return self._newest(m for m in self.markets.values() if m.creator == creator.lower())[:limit]

    async def get_trades_by_market(self, market_id: int, limit: int = 500):
        rows = [t for t in self.trades.values() if t.market_id == market_id]
        return sorted(rows, key=lambda r: (r.block_number, r.log_index))[:limit]

    async def get_recent_trades(self, limit: int = 50):
        rows = []
        for trade in self._newest(self.trades.values())[:limit]:
            market = self.markets.get(trade.market_id)
            rows.append(TradeWithMarket(
                trade=trade,
                market_type=market.market_type if market else None,
                question=market.question if market else None,
            ))
        return rows

    async def get_recent_markets(self, limit: int = 20):
        return self._newest(self.markets.values())[:limit]

    async def get_resolution(self, market_id: int):
        return self.resolutions.get(market_id)

    async def is_market_voided(self, market_id: int) -> bool:
        return market_id in self.voids

    async def get_claims_by_user(self, user: str, limit: int = 100):
        return self._newest(c for c in self.claims.values() if c.user == user.lower())[:limit]

    async def get_event_counts(self):
        if self.query_error is not None:
            raise self.query_error
        return {"trades": len(self.trades), "markets": len(self.markets), "resolutions": len(self.resolutions)}


class InMemorySyncState:
    """Cursor double; records every value the cursor takes."""

    def __init__(self, deployment_block: int = 0):
        self.deployment_block = deployment_block
        self.cursor: Optional[int] = None
        self.updated_at: Optional[datetime] = None
        self.status = "IDLE"
        self.error_message: Optional[str] = None
        self.total_events = 0
        self.history: List[int] = []

    async def get_state(self) -> SyncState:
        if self.cursor is None:
            return SyncState(last_processed_block=self.deployment_block, last_updated_at=None)
        return SyncState(
            last_processed_block=self.cursor,
            last_updated_at=self.updated_at,
            status=self.status,
            error_message=self.error_message,
            total_events_processed=self.total_events,
        )

    async def get_cursor(self) -> int:
        return (await self.get_state()).last_processed_block

    async def advance_cursor(self, block_number: int, events_processed: int = 0) -> None:
        self.cursor = max(self.cursor if self.cursor is not None else block_number, block_number)
        self.updated_at = datetime.now(timezone.utc)
        self.status = "RUNNING"
        self.error_message = None
        self.total_events += events_processed
        self.history.append(self.cursor)

    async def mark_error(self, error_message: str) -> None:
        if self.cursor is not None:
            self.status = "ERROR"
            self.error_message = error_message
