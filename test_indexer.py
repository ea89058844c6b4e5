# test_indexer.py
import pytest

from predblink_fixtures import (
    CREATOR,
    PRICE_ONE,
    TRADER,
    claimed_log,
    market_log,
    resolved_log,
    trade_log,
    unknown_log,
    voided_log,
)
from predblink.chain.events import MARKET_CREATED, TRADE
from predblink.errors import StoreError
from predblink.tasks.blockchain_indexer import STATUS_FAILED, STATUS_INDEXED, STATUS_UP_TO_DATE


def price(cents: int) -> int:
    return cents * PRICE_ONE // 100


@pytest.mark.asyncio
async def test_first_pass_indexes_from_deployment_block(chain, store, sync_state, indexer):
    chain.add(market_log(market_id=1, block=1050), trade_log(market_id=1, block=1100))

    summary = await indexer.run_pass()
    result = summary.to_dict()

    assert summary.ok
    assert result["status"] == STATUS_INDEXED
    assert result["fromBlock"] == 1000
    assert result["toBlock"] == 1500
    assert result["currentBlock"] == 1500
    assert result["tradesInserted"] == 1
    assert result["marketsInserted"] == 1
    assert result["logsFound"]["trades"] == 1
    assert "error" not in result
    assert sync_state.cursor == 1500
    assert sync_state.total_events == 2


@pytest.mark.asyncio
async def test_second_pass_is_up_to_date(chain, store, sync_state, indexer):
    chain.add(trade_log())
    await indexer.run_pass()
    requests_before = len(chain.requests)

    summary = await indexer.run_pass()

    assert summary.to_dict() == {
        "status": STATUS_UP_TO_DATE,
        "lastBlock": 1500,
        "currentBlock": 1500,
        "durationMs": summary.duration_ms,
    }
    # only eth_blockNumber was called
    assert [r["method"] for r in chain.requests[requests_before:]] == ["eth_blockNumber"]
    assert len(store.trades) == 1


@pytest.mark.asyncio
async def test_range_is_capped_by_batch_size(chain, sync_state, indexer):
    chain.head = 10_000

    summary = await indexer.run_pass()

    assert summary.from_block == 1000
    assert summary.to_block == 3000
    assert sync_state.cursor == 3000


@pytest.mark.asyncio
async def test_catch_up_walks_to_head_in_batches(chain, sync_state, make_indexer):
    chain.head = 1_450
    indexer = make_indexer(batch_size=200)

    ranges = []
    while True:
        summary = await indexer.run_pass()
        if summary.status == STATUS_UP_TO_DATE:
            break
        ranges.append((summary.from_block, summary.to_block))

    assert ranges == [(1000, 1200), (1200, 1400), (1400, 1450)]
    assert sync_state.history == [1200, 1400, 1450]


@pytest.mark.asyncio
async def test_replaying_a_range_inserts_nothing_new(chain, store, sync_state, indexer):
    chain.add(
        market_log(market_id=1),
        trade_log(block=1100),
        trade_log(block=1200, new_yes_price=price(60)),
        resolved_log(market_id=1),
        claimed_log(market_id=1),
        voided_log(market_id=2),
    )
    await indexer.run_pass()
    snapshot = (dict(store.trades), dict(store.markets), dict(store.resolutions),
                dict(store.claims), dict(store.voids))

    sync_state.cursor = None
    replay = await indexer.run_pass()

    assert replay.status == STATUS_INDEXED
    assert replay.logs_found["trades"] == 2
    assert sum(replay.inserted.values()) == 0
    assert (store.trades, store.markets, store.resolutions, store.claims, store.voids) == snapshot


@pytest.mark.asyncio
async def test_boundary_block_is_absorbed_by_dedupe(chain, store, make_indexer):
    chain.add(trade_log(block=1200))
    indexer = make_indexer(batch_size=200)

    first = await indexer.run_pass()
    second = await indexer.run_pass()

    assert (first.to_block, second.from_block) == (1200, 1200)
    assert first.inserted["trades"] == 1
    assert second.logs_found["trades"] == 1
    assert second.inserted["trades"] == 0
    assert len(store.trades) == 1


@pytest.mark.asyncio
async def test_logs_sharing_a_transaction_are_distinct(chain, store, indexer):
    tx_hash = "0x" + "cd" * 32
    chain.add(
        trade_log(block=1100, log_index=0, tx_hash=tx_hash),
        trade_log(block=1100, log_index=1, tx_hash=tx_hash, is_buy=False),
    )

    summary = await indexer.run_pass()

    assert summary.inserted["trades"] == 2
    assert len(store.trades) == 2


@pytest.mark.asyncio
async def test_head_failure_leaves_cursor_and_store_untouched(chain, store, sync_state, indexer):
    chain.fail_methods.add("eth_blockNumber")

    summary = await indexer.run_pass()

    assert not summary.ok
    assert summary.status == STATUS_FAILED
    assert "eth_blockNumber" in summary.to_dict()["error"]
    assert sync_state.history == []
    assert store.insert_attempts == 0


@pytest.mark.asyncio
async def test_failed_pass_marks_existing_cursor_as_error(chain, sync_state, indexer):
    chain.head = 1200
    await indexer.run_pass()
    chain.head = 1500
    chain.fail_methods.add("eth_getLogs")

    summary = await indexer.run_pass()
    state = await sync_state.get_state()

    assert summary.status == STATUS_FAILED
    assert state.last_processed_block == 1200
    assert state.status == "ERROR"
    assert "eth_getLogs" in state.error_message


@pytest.mark.asyncio
async def test_single_kind_fetch_failure_aborts_by_default(chain, store, sync_state, indexer):
    chain.add(market_log(block=1050), trade_log(block=1100))
    chain.fail_topics.add(TRADE.topic0)

    summary = await indexer.run_pass()

    assert summary.status == STATUS_FAILED
    assert store.insert_attempts == 0
    assert store.markets == {}
    assert sync_state.cursor is None


@pytest.mark.asyncio
async def test_degrade_mode_treats_failed_kind_as_empty(chain, store, sync_state, make_indexer):
    chain.add(market_log(block=1050), trade_log(block=1100))
    chain.fail_topics.add(TRADE.topic0)
    indexer = make_indexer(degrade_on_fetch_error=True)

    summary = await indexer.run_pass()

    assert summary.status == STATUS_INDEXED
    assert summary.logs_found["trades"] == 0
    assert summary.inserted["markets"] == 1
    assert store.trades == {}
    assert sync_state.cursor == 1500


@pytest.mark.asyncio
async def test_undecodable_log_is_skipped(chain, store, sync_state, indexer):
    broken = market_log(market_id=3, block=1060)
    broken["data"] = broken["data"][:2 + 64 * 2]
    chain.add(broken, trade_log(block=1100))

    summary = await indexer.run_pass()

    assert summary.status == STATUS_INDEXED
    assert summary.decode_errors == 1
    assert summary.to_dict()["decodeErrors"] == 1
    assert summary.inserted == {"trades": 1, "markets": 0, "resolutions": 0, "claims": 0, "voids": 0}
    assert sync_state.cursor == 1500


@pytest.mark.asyncio
async def test_question_with_nul_does_not_block_the_batch(chain, store, sync_state, indexer):
    chain.add(market_log(market_id=1, question="evil\x00question", block=1050), trade_log(block=1100))

    summary = await indexer.run_pass()
    follow_up = await indexer.run_pass()

    assert summary.status == STATUS_INDEXED
    assert summary.decode_errors == 1
    assert summary.inserted["trades"] == 1
    assert store.markets == {}
    assert len(store.trades) == 1
    assert sync_state.cursor == 1500
    assert follow_up.status == STATUS_UP_TO_DATE


@pytest.mark.asyncio
async def test_store_failure_aborts_without_advancing(chain, store, sync_state, indexer):
    chain.add(trade_log(block=1100))
    store.fail_with = StoreError("connection refused")

    summary = await indexer.run_pass()

    assert summary.status == STATUS_FAILED
    assert summary.error == "connection refused"
    assert sync_state.cursor is None


@pytest.mark.asyncio
async def test_unknown_signature_is_counted_and_skipped(chain, store, indexer):
    # a node that ignores topic filters returns everything for every kind
    chain.ignore_topic_filter = True
    chain.add(trade_log(block=1100, log_index=0), unknown_log(block=1100, log_index=5))

    summary = await indexer.run_pass()

    assert summary.unknown_skipped == 1
    assert summary.inserted["trades"] == 1
    assert store.insert_attempts == 1


@pytest.mark.asyncio
async def test_topic_filter_is_one_signature_per_request(chain, indexer):
    await indexer.run_pass()

    filters = [r["params"][0]["topics"] for r in chain.requests if r["method"] == "eth_getLogs"]

    assert len(filters) == 5
    assert [TRADE.topic0] in filters
    assert [MARKET_CREATED.topic0] in filters


@pytest.mark.asyncio
async def test_cursor_never_moves_backwards(chain, sync_state, indexer):
    chain.head = 1300
    await indexer.run_pass()

    chain.head = 1500
    chain.fail_methods.add("eth_getLogs")
    await indexer.run_pass()

    chain.fail_methods.clear()
    await indexer.run_pass()

    chain.head = 1400  # node fell behind
    await indexer.run_pass()

    assert sync_state.history == [1300, 1500]
    assert sync_state.history == sorted(sync_state.history)
    assert sync_state.cursor == 1500


@pytest.mark.asyncio
async def test_price_history_follows_trades(chain, service, indexer):
    chain.add(
        market_log(market_id=1, creator=CREATOR, block=1050),
        trade_log(market_id=1, trader=TRADER, new_yes_price=price(50), block=1100),
        trade_log(market_id=1, trader=TRADER, new_yes_price=price(62), block=1200),
        trade_log(market_id=1, trader=TRADER, new_yes_price=price(45), block=1300, is_yes=False),
        trade_log(market_id=9, new_yes_price=price(90), block=1300, log_index=1),
    )
    await indexer.run_pass()

    result = await service.get_market_trades("1")

    assert result["count"] == 3
    assert [p["yesPrice"] for p in result["priceHistory"]] == [50, 62, 45]
    assert [p["noPrice"] for p in result["priceHistory"]] == [50, 38, 55]
    assert result["currentYesPrice"] == 45
    assert result["currentNoPrice"] == 55
    assert result["priceHistory"][0]["amount"] == "1000.00"
    assert result["resolution"] is None
    assert result["voided"] is False
