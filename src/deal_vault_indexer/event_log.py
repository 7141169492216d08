"""
Event log store: append-only audit trail and dedup fence.

Every processed event is recorded under its (tx_hash, log_index) identity.
The fence is the table's primary key, so it survives restarts; recording
an identity a second time reports ALREADY_EXISTS instead of failing.

All methods take the caller's connection so the entry commits or rolls
back together with the projection change it accompanies.
"""

from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from .models.events import EventLogEntry, RecordOutcome

logger = structlog.get_logger(__name__)


class EventLogStore:
    """Writes and reads the event_log table."""

    async def record(self, conn: AsyncConnection, entry: EventLogEntry) -> RecordOutcome:
        """
        Insert an entry unless its identity is already recorded.

        Returns:
            INSERTED, or ALREADY_EXISTS when the dedup fence tripped
        """
        sql = text("""
            INSERT INTO event_log (
                tx_hash, log_index, event_name, contract_address,
                block_number, args, timestamp
            ) VALUES (
                :tx_hash, :log_index, :event_name, :contract_address,
                :block_number, :args, :timestamp
            )
            ON CONFLICT (tx_hash, log_index) DO NOTHING
        """)
        result = await conn.execute(sql, entry.to_row())

        if result.rowcount == 0:
            logger.debug(
                'event_log.already_exists',
                tx_hash=entry.tx_hash,
                log_index=entry.log_index,
            )
            return RecordOutcome.ALREADY_EXISTS
        return RecordOutcome.INSERTED

    async def annotate(
        self,
        conn: AsyncConnection,
        entry: EventLogEntry,
        extra: dict[str, Any],
    ) -> EventLogEntry:
        """
        Merge handler-computed facts into a recorded entry's args.

        Returns:
            The entry as now stored
        """
        annotated = entry.model_copy(update={'args': {**entry.args, **extra}})
        sql = text("""
            UPDATE event_log SET args = :args
            WHERE tx_hash = :tx_hash AND log_index = :log_index
        """)
        await conn.execute(
            sql,
            {
                'args': annotated.serialized_args(),
                'tx_hash': annotated.tx_hash,
                'log_index': annotated.log_index,
            },
        )
        return annotated

    async def exists(self, conn: AsyncConnection, tx_hash: str, log_index: int) -> bool:
        sql = text("""
            SELECT 1 FROM event_log
            WHERE tx_hash = :tx_hash AND log_index = :log_index
        """)
        result = await conn.execute(sql, {'tx_hash': tx_hash.lower(), 'log_index': log_index})
        return result.first() is not None

    async def get(
        self,
        conn: AsyncConnection,
        tx_hash: str,
        log_index: int,
    ) -> EventLogEntry | None:
        sql = text("""
            SELECT tx_hash, log_index, event_name, contract_address,
                   block_number, args, timestamp
            FROM event_log
            WHERE tx_hash = :tx_hash AND log_index = :log_index
        """)
        result = await conn.execute(sql, {'tx_hash': tx_hash.lower(), 'log_index': log_index})
        row = result.mappings().first()
        return EventLogEntry.from_row(row) if row else None
