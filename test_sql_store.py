# test_sql_store.py
# Store and cursor code paths against a scripted asyncpg pool; no server needed.
import asyncio
from decimal import Decimal
from types import SimpleNamespace

import asyncpg
import pytest

from predblink_fixtures import CONTRACT, PRICE_ONE, TRADER, ChainSimulator, InMemorySyncState, trade_log
from predblink.chain.events import TradeEvent
from predblink.errors import StoreError
from predblink.tasks.blockchain_indexer import STATUS_FAILED, PredBlinkIndexer
from predblink.tasks.sql_indexer import PredBlinkSQLIndexer
from predblink.tasks.sync_state import SyncStateTracker


class ScriptedConnection:
    """Returns canned results, or raises `error`, and records every statement."""

    def __init__(self, status="INSERT 0 1", rows=None, row=None, error=None):
        self.status = status
        self.rows = rows or []
        self.row = row
        self.error = error
        self.calls = []

    def _answer(self, query, args, result):
        self.calls.append((query, args))
        if self.error is not None:
            raise self.error
        return result

    async def execute(self, query, *args):
        return self._answer(query, args, self.status)

    async def fetch(self, query, *args):
        return self._answer(query, args, self.rows)

    async def fetchrow(self, query, *args):
        return self._answer(query, args, self.row)


class _Acquire:
    def __init__(self, pool):
        self.pool = pool

    async def __aenter__(self):
        if self.pool.acquire_error is not None:
            raise self.pool.acquire_error
        return self.pool.conn

    async def __aexit__(self, *exc_info):
        return False


class ScriptedPool:
    def __init__(self, conn, acquire_error=None):
        self.conn = conn
        self.acquire_error = acquire_error

    def acquire(self):
        return _Acquire(self)


def make_store(conn, acquire_error=None) -> PredBlinkSQLIndexer:
    store = PredBlinkSQLIndexer(SimpleNamespace(DATABASE_URL="postgresql://unused/predblink"))
    store.pool = ScriptedPool(conn, acquire_error)
    return store


def trade(**overrides) -> TradeEvent:
    fields = dict(
        market_id=1, trader=TRADER.upper().replace("0X", "0x"), is_yes=True, is_buy=True,
        usdc_amount=2 ** 256 - 1, shares=PRICE_ONE, new_yes_price=PRICE_ONE // 2,
        transaction_hash="0x" + "ab" * 32, block_number=1100, log_index=2,
    )
    fields.update(overrides)
    return TradeEvent(**fields)


@pytest.mark.asyncio
async def test_insert_reports_affected_row():
    conn = ScriptedConnection(status="INSERT 0 1")

    assert await make_store(conn).insert_event(trade()) is True

    query, args = conn.calls[0]
    assert "ON CONFLICT (tx_hash, log_index) DO NOTHING" in query
    assert args[1] == TRADER
    assert args[4] == Decimal(2 ** 256 - 1)


@pytest.mark.asyncio
async def test_conflicting_insert_is_not_an_error():
    assert await make_store(ScriptedConnection(status="INSERT 0 0")).insert_event(trade()) is False
    duplicate = ScriptedConnection(error=asyncpg.UniqueViolationError("duplicate key"))
    assert await make_store(duplicate).insert_event(trade()) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    asyncio.TimeoutError(),
    asyncpg.InterfaceError("connection is closed"),
    ConnectionRefusedError("refused"),
])
async def test_insert_failures_become_store_errors(error):
    with pytest.raises(StoreError, match="insert trade"):
        await make_store(ScriptedConnection(error=error)).insert_event(trade())


@pytest.mark.asyncio
async def test_pool_acquire_timeout_becomes_store_error():
    store = make_store(ScriptedConnection(), acquire_error=asyncio.TimeoutError())

    with pytest.raises(StoreError):
        await store.get_event_counts()


@pytest.mark.asyncio
async def test_query_converts_numeric_columns():
    row = {
        "market_id": 1, "trader": TRADER, "is_yes": False, "is_buy": True,
        "usdc_amount": Decimal(10 ** 30), "shares": Decimal(5), "new_yes_price": Decimal(PRICE_ONE),
        "tx_hash": "0x01", "log_index": 0, "block_number": 1100, "indexed_at": None,
    }
    conn = ScriptedConnection(rows=[row])

    trades = await make_store(conn).get_trades_by_trader(TRADER.upper().replace("0X", "0x"))

    assert trades[0].usdc_amount == 10 ** 30
    assert isinstance(trades[0].usdc_amount, int)
    assert conn.calls[0][1] == (TRADER, 100)


@pytest.mark.asyncio
async def test_database_timeout_fails_the_pass():
    chain = ChainSimulator(head=1500)
    chain.add(trade_log(block=1100))
    sync_state = InMemorySyncState(deployment_block=1000)
    indexer = PredBlinkIndexer(
        rpc=chain.client(),
        store=make_store(ScriptedConnection(error=asyncio.TimeoutError())),
        sync_state=sync_state,
        contract_address=CONTRACT,
    )

    summary = await indexer.run_pass()

    assert summary.status == STATUS_FAILED
    assert "insert trade" in summary.error
    assert sync_state.cursor is None


@pytest.mark.asyncio
async def test_cursor_defaults_to_deployment_block():
    tracker = SyncStateTracker(make_store(ScriptedConnection(row=None)), deployment_block=1000)

    assert await tracker.get_cursor() == 1000


@pytest.mark.asyncio
async def test_cursor_advance_is_a_single_monotonic_upsert():
    conn = ScriptedConnection(status="INSERT 0 1")
    tracker = SyncStateTracker(make_store(conn), indexer_name="predblink")

    await tracker.advance_cursor(1500, events_processed=4)

    assert len(conn.calls) == 1
    query, args = conn.calls[0]
    assert "ON CONFLICT (name) DO UPDATE" in query
    assert "GREATEST(sync_state.last_processed_block" in query
    assert args == ("predblink", 1500, 4)


@pytest.mark.asyncio
async def test_cursor_timeouts_become_store_errors():
    tracker = SyncStateTracker(make_store(ScriptedConnection(error=asyncio.TimeoutError())))

    with pytest.raises(StoreError):
        await tracker.get_state()
    with pytest.raises(StoreError):
        await tracker.advance_cursor(1500)


@pytest.mark.asyncio
async def test_mark_error_never_raises():
    conn = ScriptedConnection(error=asyncio.TimeoutError())
    tracker = SyncStateTracker(make_store(conn))

    await tracker.mark_error("rpc down")

    assert "status = 'ERROR'" in conn.calls[0][0]
