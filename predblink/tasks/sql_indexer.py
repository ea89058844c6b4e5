# predblink/tasks/sql_indexer.py
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg
from loguru import logger

from predblink.chain.events import (
    ClaimEvent,
    EventRecord,
    MarketCreatedEvent,
    ResolutionEvent,
    TradeEvent,
    VoidEvent,
)
from predblink.errors import StoreError

TRADER_TRADES_LIMIT = 100
CREATOR_MARKETS_LIMIT = 50
MARKET_TRADES_LIMIT = 500
USER_CLAIMS_LIMIT = 100

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_state (
    name TEXT PRIMARY KEY,
    last_processed_block BIGINT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    status TEXT NOT NULL DEFAULT 'RUNNING',
    total_events_processed BIGINT NOT NULL DEFAULT 0,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS trades (
    id BIGSERIAL PRIMARY KEY,
    market_id BIGINT NOT NULL,
    trader TEXT NOT NULL,
    is_yes BOOLEAN NOT NULL,
    is_buy BOOLEAN NOT NULL,
    usdc_amount NUMERIC(78, 0) NOT NULL,
    shares NUMERIC(78, 0) NOT NULL,
    new_yes_price NUMERIC(78, 0) NOT NULL,
    tx_hash TEXT NOT NULL,
    log_index INTEGER NOT NULL,
    block_number BIGINT NOT NULL,
    indexed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (tx_hash, log_index)
);

CREATE TABLE IF NOT EXISTS created_markets (
    market_id BIGINT PRIMARY KEY,
    market_type SMALLINT NOT NULL,
    feed_id TEXT NOT NULL,
    question TEXT NOT NULL,
    target_value NUMERIC(78, 0) NOT NULL,
    end_time BIGINT NOT NULL,
    end_block BIGINT NOT NULL,
    creator TEXT NOT NULL,
    tx_hash TEXT NOT NULL,
    log_index INTEGER NOT NULL,
    block_number BIGINT NOT NULL,
    indexed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS resolutions (
    market_id BIGINT PRIMARY KEY,
    outcome SMALLINT NOT NULL,
    final_value NUMERIC(78, 0) NOT NULL,
    tx_hash TEXT NOT NULL,
    log_index INTEGER NOT NULL,
    block_number BIGINT NOT NULL,
    indexed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS claims (
    id BIGSERIAL PRIMARY KEY,
    market_id BIGINT NOT NULL,
    user_address TEXT NOT NULL,
    payout NUMERIC(78, 0) NOT NULL,
    tx_hash TEXT NOT NULL,
    log_index INTEGER NOT NULL,
    block_number BIGINT NOT NULL,
    indexed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (tx_hash, log_index)
);

CREATE TABLE IF NOT EXISTS voided_markets (
    market_id BIGINT PRIMARY KEY,
    tx_hash TEXT NOT NULL,
    log_index INTEGER NOT NULL,
    block_number BIGINT NOT NULL,
    indexed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_trades_trader ON trades (trader, block_number DESC);
CREATE INDEX IF NOT EXISTS idx_trades_market ON trades (market_id, block_number);
CREATE INDEX IF NOT EXISTS idx_trades_block ON trades (block_number DESC, log_index DESC);
CREATE INDEX IF NOT EXISTS idx_markets_creator ON created_markets (creator, block_number DESC);
CREATE INDEX IF NOT EXISTS idx_claims_user ON claims (user_address, block_number DESC);
"""

_TRADE_COLUMNS = """
    market_id, trader, is_yes, is_buy, usdc_amount, shares, new_yes_price,
    tx_hash, log_index, block_number, indexed_at
"""

_MARKET_COLUMNS = """
    market_id, market_type, feed_id, question, target_value, end_time, end_block,
    creator, tx_hash, log_index, block_number, indexed_at
"""

# command_timeout and pool acquire raise asyncio.TimeoutError, not an OSError before 3.11
STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class TradeWithMarket:
    """A trade joined with its market's type and question, when known."""

    trade: TradeEvent
    market_type: Optional[int]
    question: Optional[str]


def _numeric(value: int) -> Decimal:
    return Decimal(value)


def _trade_from_row(row) -> TradeEvent:
    return TradeEvent(
        market_id=row['market_id'],
        trader=row['trader'],
        is_yes=row['is_yes'],
        is_buy=row['is_buy'],
        usdc_amount=int(row['usdc_amount']),
        shares=int(row['shares']),
        new_yes_price=int(row['new_yes_price']),
        transaction_hash=row['tx_hash'],
        block_number=row['block_number'],
        log_index=row['log_index'],
        indexed_at=row['indexed_at']
    )


def _market_from_row(row) -> MarketCreatedEvent:
    return MarketCreatedEvent(
        market_id=row['market_id'],
        market_type=row['market_type'],
        feed_id=row['feed_id'],
        question=row['question'],
        target_value=int(row['target_value']),
        end_time=row['end_time'],
        end_block=row['end_block'],
        creator=row['creator'],
        transaction_hash=row['tx_hash'],
        block_number=row['block_number'],
        log_index=row['log_index'],
        indexed_at=row['indexed_at']
    )


class PredBlinkSQLIndexer:
    """
    PostgreSQL event store.

    Owns every event row. All writes go through `insert_event` (or the typed
    insert_* methods), which are insert-or-ignore on each table's natural key.
    """

    def __init__(self, settings):
        self.database_url = settings.DATABASE_URL
        self.pool_size = getattr(settings, 'CONNECTION_POOL_SIZE', 10)
        self.query_timeout = getattr(settings, 'QUERY_TIMEOUT', 60)
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=self.query_timeout
            )
            logger.info("Connected to PostgreSQL database")
        except STORE_ERRORS as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise StoreError(f"database unavailable: {e}") from e

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    def get_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreError("database not connected. Call connect() first.")
        return self.pool

    async def ensure_schema(self) -> None:
        async with self.get_pool().acquire() as conn:
            try:
                await conn.execute(SCHEMA)
                logger.info("Database schema ensured")
            except STORE_ERRORS as e:
                logger.error(f"Error creating schema: {e}")
                raise StoreError(f"schema creation failed: {e}") from e

    # ========== Inserts ==========

    async def _insert(self, label: str, query: str, *args) -> bool:
        try:
            async with self.get_pool().acquire() as conn:
                status = await conn.execute(query, *args)
        except asyncpg.UniqueViolationError:
            logger.debug(f"Duplicate {label}, skipping")
            return False
        except STORE_ERRORS as e:
            logger.error(f"Error inserting {label}: {e}")
            raise StoreError(f"insert {label} failed: {e}") from e

        inserted = status.endswith(" 1")
        if not inserted:
            logger.debug(f"Duplicate {label}, skipping")
        return inserted

    async def insert_trade(self, trade: TradeEvent) -> bool:
        return await self._insert(
            f"trade {trade.transaction_hash[:10]}#{trade.log_index}",
            """
            INSERT INTO trades (
                market_id, trader, is_yes, is_buy, usdc_amount, shares,
                new_yes_price, tx_hash, log_index, block_number
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (tx_hash, log_index) DO NOTHING
            """,
            trade.market_id, trade.trader.lower(), trade.is_yes, trade.is_buy,
            _numeric(trade.usdc_amount), _numeric(trade.shares), _numeric(trade.new_yes_price),
            trade.transaction_hash, trade.log_index, trade.block_number
        )

    async def insert_market(self, market: MarketCreatedEvent) -> bool:
        return await self._insert(
            f"market {market.market_id}",
            """
            INSERT INTO created_markets (
                market_id, market_type, feed_id, question, target_value, end_time,
                end_block, creator, tx_hash, log_index, block_number
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (market_id) DO NOTHING
            """,
            market.market_id, market.market_type, market.feed_id, market.question,
            _numeric(market.target_value), market.end_time, market.end_block,
            market.creator.lower(), market.transaction_hash, market.log_index, market.block_number
        )

    async def insert_resolution(self, resolution: ResolutionEvent) -> bool:
        return await self._insert(
            f"resolution {resolution.market_id}",
            """
            INSERT INTO resolutions (
                market_id, outcome, final_value, tx_hash, log_index, block_number
            ) VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (market_id) DO NOTHING
            """,
            resolution.market_id, resolution.outcome, _numeric(resolution.final_value),
            resolution.transaction_hash, resolution.log_index, resolution.block_number
        )

    async def insert_claim(self, claim: ClaimEvent) -> bool:
        return await self._insert(
            f"claim {claim.transaction_hash[:10]}#{claim.log_index}",
            """
            INSERT INTO claims (
                market_id, user_address, payout, tx_hash, log_index, block_number
            ) VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (tx_hash, log_index) DO NOTHING
            """,
            claim.market_id, claim.user.lower(), _numeric(claim.payout),
            claim.transaction_hash, claim.log_index, claim.block_number
        )

    async def insert_void(self, void: VoidEvent) -> bool:
        return await self._insert(
            f"void {void.market_id}",
            """
            INSERT INTO voided_markets (market_id, tx_hash, log_index, block_number)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (market_id) DO NOTHING
            """,
            void.market_id, void.transaction_hash, void.log_index, void.block_number
        )

    async def insert_event(self, event: EventRecord) -> bool:
        """Insert any decoded record; False when its natural key already exists."""
        if isinstance(event, TradeEvent):
            return await self.insert_trade(event)
        if isinstance(event, MarketCreatedEvent):
            return await self.insert_market(event)
        if isinstance(event, ResolutionEvent):
            return await self.insert_resolution(event)
        if isinstance(event, ClaimEvent):
            return await self.insert_claim(event)
        if isinstance(event, VoidEvent):
            return await self.insert_void(event)
        raise TypeError(f"unsupported event record: {type(event).__name__}")

    # ========== Queries ==========

    async def _fetch(self, label: str, query: str, *args) -> List[Any]:
        try:
            async with self.get_pool().acquire() as conn:
                return await conn.fetch(query, *args)
        except STORE_ERRORS as e:
            logger.error(f"Error fetching {label}: {e}")
            raise StoreError(f"query {label} failed: {e}") from e

    async def get_trades_by_trader(self, trader: str,
                                   limit: int = TRADER_TRADES_LIMIT) -> List[TradeEvent]:
        rows = await self._fetch("trader trades", f"""
            SELECT {_TRADE_COLUMNS} FROM trades
            WHERE trader = $1
            ORDER BY block_number DESC, log_index DESC
            LIMIT $2
        """, trader.lower(), limit)
        return [_trade_from_row(row) for row in rows]

    async def get_markets_by_creator(self, creator: str,
                                     limit: int = CREATOR_MARKETS_LIMIT) -> List[MarketCreatedEvent]:
        rows = await self._fetch("creator markets", f"""
            SELECT {_MARKET_COLUMNS} FROM created_markets
            WHERE creator = $1
            ORDER BY block_number DESC, log_index DESC
            LIMIT $2
        """, creator.lower(), limit)
        return [_market_from_row(row) for row in rows]

    async def get_trades_by_market(self, market_id: int,
                                   limit: int = MARKET_TRADES_LIMIT) -> List[TradeEvent]:
        rows = await self._fetch("market trades", f"""
            SELECT {_TRADE_COLUMNS} FROM trades
            WHERE market_id = $1
            ORDER BY block_number ASC, log_index ASC
            LIMIT $2
        """, market_id, limit)
        return [_trade_from_row(row) for row in rows]

    async def get_recent_trades(self, limit: int = 50) -> List[TradeWithMarket]:
        rows = await self._fetch("recent trades", """
            SELECT t.market_id, t.trader, t.is_yes, t.is_buy, t.usdc_amount, t.shares,
                   t.new_yes_price, t.tx_hash, t.log_index, t.block_number, t.indexed_at,
                   m.market_type, m.question
            FROM trades t
            LEFT JOIN created_markets m ON t.market_id = m.market_id
            ORDER BY t.block_number DESC, t.log_index DESC
            LIMIT $1
        """, limit)
        return [
            TradeWithMarket(
                trade=_trade_from_row(row),
                market_type=row['market_type'],
                question=row['question']
            )
            for row in rows
        ]

    async def get_recent_markets(self, limit: int = 20) -> List[MarketCreatedEvent]:
        rows = await self._fetch("recent markets", f"""
            SELECT {_MARKET_COLUMNS} FROM created_markets
            ORDER BY block_number DESC, log_index DESC
            LIMIT $1
        """, limit)
        return [_market_from_row(row) for row in rows]

    async def get_resolution(self, market_id: int) -> Optional[ResolutionEvent]:
        rows = await self._fetch("resolution", """
            SELECT market_id, outcome, final_value, tx_hash, log_index, block_number, indexed_at
            FROM resolutions WHERE market_id = $1
        """, market_id)
        if not rows:
            return None
        row = rows[0]
        return ResolutionEvent(
            market_id=row['market_id'],
            outcome=row['outcome'],
            final_value=int(row['final_value']),
            transaction_hash=row['tx_hash'],
            block_number=row['block_number'],
            log_index=row['log_index'],
            indexed_at=row['indexed_at']
        )

    async def is_market_voided(self, market_id: int) -> bool:
        rows = await self._fetch("void", "SELECT 1 FROM voided_markets WHERE market_id = $1", market_id)
        return bool(rows)

    async def get_claims_by_user(self, user: str, limit: int = USER_CLAIMS_LIMIT) -> List[ClaimEvent]:
        rows = await self._fetch("user claims", """
            SELECT market_id, user_address, payout, tx_hash, log_index, block_number, indexed_at
            FROM claims WHERE user_address = $1
            ORDER BY block_number DESC, log_index DESC
            LIMIT $2
        """, user.lower(), limit)
        return [
            ClaimEvent(
                market_id=row['market_id'],
                user=row['user_address'],
                payout=int(row['payout']),
                transaction_hash=row['tx_hash'],
                block_number=row['block_number'],
                log_index=row['log_index'],
                indexed_at=row['indexed_at']
            )
            for row in rows
        ]

    async def get_event_counts(self) -> Dict[str, int]:
        rows = await self._fetch("event counts", """
            SELECT
                (SELECT COUNT(*) FROM trades) AS trades,
                (SELECT COUNT(*) FROM created_markets) AS markets,
                (SELECT COUNT(*) FROM resolutions) AS resolutions
        """)
        row = rows[0]
        return {
            "trades": row['trades'],
            "markets": row['markets'],
            "resolutions": row['resolutions']
        }
