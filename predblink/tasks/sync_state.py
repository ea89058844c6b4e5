# predblink/tasks/sync_state.py
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from loguru import logger

from predblink.errors import StoreError
from predblink.tasks.sql_indexer import STORE_ERRORS, PredBlinkSQLIndexer


@dataclass(frozen=True)
class SyncState:
    last_processed_block: int
    last_updated_at: Optional[datetime]
    status: str = 'IDLE'
    error_message: Optional[str] = None
    total_events_processed: int = 0


class SyncStateTracker:
    """
    Owns the indexing cursor: the last block fully processed.

    Nothing else writes the `sync_state` table. `advance_cursor` is a single
    upsert and never moves the cursor backwards.
    """

    def __init__(self, store: PredBlinkSQLIndexer, deployment_block: int = 0,
                 indexer_name: str = 'predblink'):
        self.store = store
        self.deployment_block = deployment_block
        self.indexer_name = indexer_name

    async def get_state(self) -> SyncState:
        try:
            async with self.store.get_pool().acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT last_processed_block, updated_at, status,
                           error_message, total_events_processed
                    FROM sync_state WHERE name = $1
                """, self.indexer_name)
        except STORE_ERRORS as e:
            logger.error(f"Error reading sync state for {self.indexer_name}: {e}")
            raise StoreError(f"sync state unavailable: {e}") from e

        if row is None:
            return SyncState(last_processed_block=self.deployment_block, last_updated_at=None)

        return SyncState(
            last_processed_block=row['last_processed_block'],
            last_updated_at=row['updated_at'],
            status=row['status'],
            error_message=row['error_message'],
            total_events_processed=row['total_events_processed']
        )

    async def get_cursor(self) -> int:
        state = await self.get_state()
        return state.last_processed_block

    async def advance_cursor(self, block_number: int, events_processed: int = 0) -> None:
        """Call only after every event up to `block_number` is stored."""
        try:
            async with self.store.get_pool().acquire() as conn:
                await conn.execute("""
                    INSERT INTO sync_state (
                        name, last_processed_block, updated_at, status, total_events_processed
                    ) VALUES ($1, $2, NOW(), 'RUNNING', $3)
                    ON CONFLICT (name) DO UPDATE SET
                        last_processed_block = GREATEST(sync_state.last_processed_block,
                                                        EXCLUDED.last_processed_block),
                        updated_at = NOW(),
                        status = 'RUNNING',
                        total_events_processed = sync_state.total_events_processed
                                                 + EXCLUDED.total_events_processed,
                        error_message = NULL
                """, self.indexer_name, block_number, events_processed)
            logger.debug(f"Updated sync state: {self.indexer_name} -> block {block_number}")
        except STORE_ERRORS as e:
            logger.error(f"Error updating sync state: {e}")
            raise StoreError(f"cursor update failed: {e}") from e

    async def mark_error(self, error_message: str) -> None:
        """Record a failed pass. The cursor is left where it was."""
        try:
            async with self.store.get_pool().acquire() as conn:
                await conn.execute("""
                    UPDATE sync_state SET
                        status = 'ERROR',
                        error_message = $1
                    WHERE name = $2
                """, error_message, self.indexer_name)
            logger.error(f"Marked indexer {self.indexer_name} as ERROR: {error_message}")
        except (StoreError, *STORE_ERRORS) as e:
            logger.error(f"Error marking indexer error: {e}")
