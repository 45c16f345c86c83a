"""Persistent event journal.

Copies the in-ledger event log into the ``marketplace_events`` table so
off-ledger indexers can follow the marketplace. Rows are keyed by the log id
and the event sequence number, so flushing the same log twice stores every
event once, and a restarted marketplace writing a new log loses nothing.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from events import EventLog, MarketplaceEvent
from .exceptions import EventStoreError

logger = logging.getLogger(__name__)

INSERT_EVENT = '''
    INSERT INTO marketplace_events (log_id, seq, name, event_time, data)
    VALUES ($1, $2, $3, $4, $5::JSONB)
    ON CONFLICT (log_id, seq) DO NOTHING
'''


class EventStore:
    """Writes and reads marketplace events in the database."""

    def __init__(self, pool: Optional[asyncpg.Pool] = None):
        """Initialize the event store.

        Args:
            pool: Connection pool; the shared pool from ``database.get_pool``
                is used when omitted
        """
        self._pool = pool

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            from . import get_pool
            self._pool = await get_pool()
        return self._pool

    async def last_seq(self, log_id: str) -> int:
        """Highest stored sequence number of one log, 0 when it has none."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                'SELECT max(seq) FROM marketplace_events WHERE log_id = $1', log_id
            )
        return value or 0

    async def flush(self, log: EventLog) -> int:
        """Store every event of the log newer than the ones stored for it.

        Returns:
            Number of events written

        Raises:
            EventStoreError: If the insert fails
        """
        since = await self.last_seq(log.log_id)
        pending = log.events(since=since)
        if not pending:
            return 0

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(INSERT_EVENT, [
                        (log.log_id, e.seq, e.name, e.timestamp, json.dumps(e.data, default=str))
                        for e in pending
                    ])
        except asyncpg.PostgresError as e:
            logger.error(
                f"Failed to store {len(pending)} events of log {log.log_id} after #{since}: {e}"
            )
            raise EventStoreError(f"Failed to store events: {e}") from e

        logger.info(f"Stored events #{pending[0].seq}-#{pending[-1].seq} of log {log.log_id}")
        return len(pending)

    async def fetch(self, log_id: str, name: Optional[str] = None, since: int = 0,
                    limit: int = 100) -> List[MarketplaceEvent]:
        """Read the stored events of one log in sequence order."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT seq, name, event_time, data
                FROM marketplace_events
                WHERE log_id = $1 AND seq > $2 AND ($3::TEXT IS NULL OR name = $3)
                ORDER BY seq
                LIMIT $4
                ''',
                log_id, since, name, limit
            )
        return [_row_to_event(row) for row in rows]

    async def log_ids(self) -> List[str]:
        """Ids of every stored log, oldest first."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT log_id
                FROM marketplace_events
                GROUP BY log_id
                ORDER BY min(recorded_at), log_id
                '''
            )
        return [row['log_id'] for row in rows]


def _row_to_event(row: Dict[str, Any]) -> MarketplaceEvent:
    data = row['data']
    if isinstance(data, str):
        data = json.loads(data)
    return MarketplaceEvent(
        seq=row['seq'],
        name=row['name'],
        timestamp=row['event_time'],
        data=data
    )


__all__ = ['EventStore', 'EventStoreError']
