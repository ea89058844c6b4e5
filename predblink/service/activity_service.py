# predblink/service/activity_service.py
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from predblink.aggregation import (
    build_price_history,
    current_prices,
    market_activity,
    merge_activity,
    trade_activity,
)
from predblink.chain.events import ClaimEvent, MarketCreatedEvent, ResolutionEvent, TradeEvent
from predblink.errors import ValidationError
from predblink.tasks.blockchain_indexer import IndexPassSummary, PredBlinkIndexer
from predblink.tasks.sql_indexer import PredBlinkSQLIndexer
from predblink.tasks.sync_state import SyncStateTracker

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
MAX_MARKET_ID = 2 ** 63 - 1

RECENT_TRADES_FOR_FEED = 50
RECENT_MARKETS_FOR_FEED = 20


def normalize_address(raw: str) -> str:
    if not raw or not ADDRESS_RE.match(raw):
        raise ValidationError("Valid address required")
    return raw.lower()


def parse_market_id(raw: str) -> int:
    if not raw or not raw.isdigit() or not raw.isascii():
        raise ValidationError("Valid market ID required")
    market_id = int(raw)
    if market_id > MAX_MARKET_ID:
        raise ValidationError("Valid market ID required")
    return market_id


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def trade_to_dict(trade: TradeEvent) -> Dict[str, Any]:
    return {
        "marketId": trade.market_id,
        "trader": trade.trader,
        "isYes": trade.is_yes,
        "isBuy": trade.is_buy,
        "usdcAmount": str(trade.usdc_amount),
        "shares": str(trade.shares),
        "newYesPrice": str(trade.new_yes_price),
        "transactionHash": trade.transaction_hash,
        "logIndex": trade.log_index,
        "blockNumber": trade.block_number,
        "indexedAt": _iso(trade.indexed_at),
    }


def market_to_dict(market: MarketCreatedEvent) -> Dict[str, Any]:
    return {
        "marketId": market.market_id,
        "marketType": market.market_type,
        "feedId": market.feed_id,
        "question": market.question,
        "targetValue": str(market.target_value),
        "endTime": market.end_time,
        "endBlock": market.end_block,
        "creator": market.creator,
        "transactionHash": market.transaction_hash,
        "logIndex": market.log_index,
        "blockNumber": market.block_number,
        "indexedAt": _iso(market.indexed_at),
    }


def resolution_to_dict(resolution: ResolutionEvent) -> Dict[str, Any]:
    return {
        "marketId": resolution.market_id,
        "outcome": resolution.outcome,
        "finalValue": str(resolution.final_value),
        "transactionHash": resolution.transaction_hash,
        "blockNumber": resolution.block_number,
        "indexedAt": _iso(resolution.indexed_at),
    }


def claim_to_dict(claim: ClaimEvent) -> Dict[str, Any]:
    return {
        "marketId": claim.market_id,
        "user": claim.user,
        "payout": str(claim.payout),
        "transactionHash": claim.transaction_hash,
        "logIndex": claim.log_index,
        "blockNumber": claim.block_number,
        "indexedAt": _iso(claim.indexed_at),
    }


class PredBlinkService:
    """Read side of the indexer plus the manual pass trigger."""

    def __init__(self, store: PredBlinkSQLIndexer, sync_state: SyncStateTracker,
                 indexer: PredBlinkIndexer, chain_name: str = "monad-testnet"):
        self.store = store
        self.sync_state = sync_state
        self.indexer = indexer
        self.chain_name = chain_name

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "chain": self.chain_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def get_trades(self, raw_address: str) -> Dict[str, Any]:
        address = normalize_address(raw_address)
        trades = await self.store.get_trades_by_trader(address)
        return {"success": True, "count": len(trades), "trades": [trade_to_dict(t) for t in trades]}

    async def get_created_markets(self, raw_address: str) -> Dict[str, Any]:
        address = normalize_address(raw_address)
        markets = await self.store.get_markets_by_creator(address)
        return {"success": True, "count": len(markets), "markets": [market_to_dict(m) for m in markets]}

    async def get_claims(self, raw_address: str) -> Dict[str, Any]:
        address = normalize_address(raw_address)
        claims = await self.store.get_claims_by_user(address)
        return {"success": True, "count": len(claims), "claims": [claim_to_dict(c) for c in claims]}

    async def get_market_trades(self, raw_market_id: str) -> Dict[str, Any]:
        market_id = parse_market_id(raw_market_id)
        trades = await self.store.get_trades_by_market(market_id)
        resolution = await self.store.get_resolution(market_id)
        voided = await self.store.is_market_voided(market_id)

        history = build_price_history(trades)
        yes_price, no_price = current_prices(history)

        return {
            "success": True,
            "marketId": market_id,
            "count": len(trades),
            "trades": [trade_to_dict(t) for t in trades],
            "priceHistory": [
                {
                    "blockNumber": point.block_number,
                    "yesPrice": point.yes_price,
                    "noPrice": point.no_price,
                    "isYes": point.is_yes,
                    "isBuy": point.is_buy,
                    "amount": point.amount,
                    "trader": point.trader,
                }
                for point in history
            ],
            "currentYesPrice": yes_price,
            "currentNoPrice": no_price,
            "resolution": resolution_to_dict(resolution) if resolution else None,
            "voided": voided,
        }

    async def get_global_activity(self) -> Dict[str, Any]:
        trades = await self.store.get_recent_trades(RECENT_TRADES_FOR_FEED)
        markets = await self.store.get_recent_markets(RECENT_MARKETS_FOR_FEED)

        activity = merge_activity(
            [trade_activity(row.trade, row.market_type, row.question) for row in trades],
            [market_activity(m) for m in markets]
        )

        items = []
        for item in activity:
            entry: Dict[str, Any] = {
                "type": item.kind,
                "marketId": item.market_id,
                "user": item.user,
                "marketType": item.market_type,
                "question": item.question,
                "txHash": item.transaction_hash,
                "blockNumber": item.block_number,
                "logIndex": item.log_index,
                "timestamp": item.timestamp,
            }
            if item.kind == 'TRADE':
                entry.update({"isYes": item.is_yes, "isBuy": item.is_buy, "amount": item.amount})
            else:
                entry["targetValue"] = item.target_value
            items.append(entry)

        return {"success": True, "count": len(items), "activity": items}

    async def get_stats(self) -> Dict[str, Any]:
        state = await self.sync_state.get_state()
        counts = await self.store.get_event_counts()
        return {
            "success": True,
            "stats": {
                "chain": self.chain_name,
                "lastBlock": state.last_processed_block,
                "lastUpdated": _iso(state.last_updated_at),
                "indexerStatus": state.status,
                "totalTrades": counts["trades"],
                "totalMarkets": counts["markets"],
                "totalResolutions": counts["resolutions"],
            },
        }

    async def run_index_pass(self) -> IndexPassSummary:
        logger.info("Manual indexing pass requested")
        return await self.indexer.run_pass()
