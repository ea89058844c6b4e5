# predblink/tasks/blockchain_indexer.py
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from celery import shared_task
from loguru import logger

from predblink.chain.events import EVENT_KINDS, EventKind, identify
from predblink.chain.rpc_client import ChainRpcClient, RawLog
from predblink.errors import DecodeError, RpcError, StoreError
from predblink.tasks.sql_indexer import PredBlinkSQLIndexer
from predblink.tasks.sync_state import SyncStateTracker

STATUS_INDEXED = 'indexed'
STATUS_UP_TO_DATE = 'up_to_date'
STATUS_FAILED = 'failed'

_INSERTED_KEYS = {
    'trades': 'tradesInserted',
    'markets': 'marketsInserted',
    'resolutions': 'resolutionsInserted',
    'claims': 'claimsInserted',
    'voids': 'voidsInserted',
}


@dataclass
class IndexPassSummary:
    status: str
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    current_block: Optional[int] = None
    logs_found: Dict[str, int] = field(default_factory=dict)
    inserted: Dict[str, int] = field(default_factory=dict)
    unknown_skipped: int = 0
    decode_errors: int = 0
    duration_ms: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != STATUS_FAILED

    def to_dict(self) -> Dict[str, Any]:
        if self.status == STATUS_UP_TO_DATE:
            return {
                "status": self.status,
                "lastBlock": self.from_block,
                "currentBlock": self.current_block,
                "durationMs": self.duration_ms,
            }

        result: Dict[str, Any] = {
            "status": self.status,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "currentBlock": self.current_block,
            "logsFound": dict(self.logs_found),
        }
        for key, name in _INSERTED_KEYS.items():
            result[name] = self.inserted.get(key, 0)
        result["unknownSkipped"] = self.unknown_skipped
        result["decodeErrors"] = self.decode_errors
        result["durationMs"] = self.duration_ms
        if self.error:
            result["error"] = self.error
        return result


class PredBlinkIndexer:
    """
    Runs one indexing pass: Idle -> Fetching -> Committing -> Idle.

    The cursor only moves after every log of the batch has been attempted,
    so a pass that fails at any point can be retried from the same block.
    """

    def __init__(self, rpc: ChainRpcClient, store: PredBlinkSQLIndexer,
                 sync_state: SyncStateTracker, contract_address: str,
                 batch_size: int = 2000, degrade_on_fetch_error: bool = False,
                 event_kinds: Sequence[EventKind] = EVENT_KINDS):
        self.rpc = rpc
        self.store = store
        self.sync_state = sync_state
        self.contract_address = contract_address
        self.batch_size = batch_size
        self.degrade_on_fetch_error = degrade_on_fetch_error
        self.event_kinds = tuple(event_kinds)

    async def run_pass(self) -> IndexPassSummary:
        started = time.monotonic()
        summary = IndexPassSummary(status=STATUS_FAILED)

        try:
            await self._run(summary)
        except (RpcError, StoreError) as e:
            summary.status = STATUS_FAILED
            summary.error = str(e)
            logger.error(f"Indexing pass failed: {e}")
            await self.sync_state.mark_error(str(e))

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        if summary.status == STATUS_INDEXED:
            logger.info(
                f"Indexed blocks {summary.from_block}-{summary.to_block}: "
                f"found {summary.logs_found}, inserted {summary.inserted}, "
                f"{summary.decode_errors} decode errors in {summary.duration_ms}ms"
            )
        return summary

    async def _run(self, summary: IndexPassSummary) -> None:
        cursor = await self.sync_state.get_cursor()
        current_block = await self.rpc.get_block_number()
        summary.current_block = current_block

        if cursor >= current_block:
            logger.debug(f"PredBlink up to date: {cursor}")
            summary.status = STATUS_UP_TO_DATE
            summary.from_block = cursor
            return

        # toBlock of this pass is fromBlock of the next; dedupe absorbs the overlap
        from_block = cursor
        to_block = min(cursor + self.batch_size, current_block)
        summary.from_block = from_block
        summary.to_block = to_block
        logger.info(f"Processing PredBlink: blocks {from_block}-{to_block} (head {current_block})")

        logs_by_kind = await self._fetch_logs(from_block, to_block)
        logs: List[RawLog] = []
        for kind in self.event_kinds:
            kind_logs = logs_by_kind.get(kind.key, [])
            summary.logs_found[kind.key] = len(kind_logs)
            logs.extend(kind_logs)
        logs.sort(key=lambda log: (log.block_number, log.log_index))

        summary.inserted = {kind.key: 0 for kind in self.event_kinds}
        seen = set()
        for log in logs:
            # the same log can come back under several topic filters
            log_id = (log.transaction_hash, log.log_index)
            if log_id in seen:
                continue
            seen.add(log_id)

            kind = identify(log)
            if kind is None or kind.key not in summary.inserted:
                summary.unknown_skipped += 1
                continue

            try:
                record = kind.decode(log)
            except DecodeError as e:
                summary.decode_errors += 1
                logger.warning(
                    f"Skipping undecodable {kind.shape.name} log "
                    f"{log.transaction_hash}#{log.log_index}: {e}"
                )
                continue

            if await self.store.insert_event(record):
                summary.inserted[kind.key] += 1

        await self.sync_state.advance_cursor(to_block, sum(summary.inserted.values()))
        summary.status = STATUS_INDEXED

    async def _fetch_logs(self, from_block: int, to_block: int) -> Dict[str, List[RawLog]]:
        results = await asyncio.gather(
            *(self.rpc.get_logs(self.contract_address, from_block, to_block, topics=[kind.topic0])
              for kind in self.event_kinds),
            return_exceptions=True
        )

        logs_by_kind: Dict[str, List[RawLog]] = {}
        for kind, result in zip(self.event_kinds, results):
            if isinstance(result, RpcError):
                if not self.degrade_on_fetch_error:
                    raise result
                logger.warning(f"Fetching {kind.shape.name} logs failed, treating as empty: {result}")
                logs_by_kind[kind.key] = []
            elif isinstance(result, BaseException):
                raise result
            else:
                logs_by_kind[kind.key] = result
        return logs_by_kind


def build_indexer(settings, rpc: ChainRpcClient, store: PredBlinkSQLIndexer) -> PredBlinkIndexer:
    sync_state = SyncStateTracker(
        store,
        deployment_block=settings.DEPLOYMENT_BLOCK,
        indexer_name=settings.INDEXER_NAME
    )
    return PredBlinkIndexer(
        rpc=rpc,
        store=store,
        sync_state=sync_state,
        contract_address=settings.PREDBLINK_ADDRESS,
        batch_size=settings.BATCH_SIZE,
        degrade_on_fetch_error=settings.DEGRADE_ON_LOG_FETCH_ERROR
    )


async def index_predblink_events(settings) -> IndexPassSummary:
    """One pass with its own connection pool and RPC client."""
    store = PredBlinkSQLIndexer(settings)
    rpc = ChainRpcClient(settings.RPC_URL, timeout=settings.RPC_TIMEOUT_SECONDS)

    try:
        await store.connect()
        return await build_indexer(settings, rpc, store).run_pass()
    except StoreError as e:
        return IndexPassSummary(status=STATUS_FAILED, error=str(e))
    finally:
        await rpc.close()
        await store.close()


@shared_task(name="blockchain_indexer.run_predblink_indexer")
def run_predblink_indexer():
    """Celery task to run one indexing pass"""
    from settings import settings

    logger.info("Starting PredBlink indexing task")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        summary = loop.run_until_complete(index_predblink_events(settings))
    finally:
        loop.close()

    if summary.ok:
        logger.info(f"Indexing task completed: {summary.to_dict()}")
    else:
        logger.error(f"Indexing task failed, will retry on next schedule: {summary.error}")
    return summary.to_dict()
