"""
SummaryStore - LanceDB storage for conversation summaries.

Summaries are written by background summarisation jobs (add_summary) and
read by the context builder (find_by_channel). Lookups are by channel, most
recent first.
"""
from typing import List, Dict, Any

import pyarrow as pa

from database.base import LanceDBPool, PooledConnection
from database.message_store import format_timestamp, parse_timestamp, sql_quote
from models.summary import ConversationSummary
import config


SUMMARY_SCHEMA = pa.schema([
    pa.field("id", pa.string()),
    pa.field("channel_id", pa.string()),
    pa.field("summary", pa.string()),
    pa.field("key_topics", pa.list_(pa.string())),
    pa.field("participant_ids", pa.list_(pa.string())),
    pa.field("mood", pa.string()),
    pa.field("notable_moments", pa.list_(pa.string())),
    pa.field("start_ts", pa.string()),
    pa.field("end_ts", pa.string()),
    pa.field("message_count", pa.int64()),
    pa.field("created_at", pa.string()),
])


class SummaryStore:
    """LanceDB storage for conversation summaries."""

    def __init__(self, pool: LanceDBPool, table_name: str = None):
        self.pool = pool
        self.table_name = table_name or config.SUMMARY_TABLE_NAME

    async def initialize(self):
        await self.pool.run(
            lambda conn: conn.ensure_table(self.table_name, SUMMARY_SCHEMA),
            label="summaries.init"
        )

    async def add_summary(self, summary: ConversationSummary) -> str:
        """Add a new summary."""
        data = {
            "id": summary.id,
            "channel_id": summary.channel_id,
            "summary": summary.summary,
            "key_topics": summary.key_topics,
            "participant_ids": summary.participant_ids,
            "mood": summary.mood,
            "notable_moments": summary.notable_moments,
            "start_ts": summary.start_ts,
            "end_ts": summary.end_ts,
            "message_count": summary.message_count,
            "created_at": format_timestamp(summary.created_at),
        }

        def _add(conn: PooledConnection):
            conn.ensure_table(self.table_name, SUMMARY_SCHEMA).add(
                pa.Table.from_pylist([data], schema=SUMMARY_SCHEMA)
            )

        await self.pool.run(_add, label="summaries.add")
        return summary.id

    def _channel_rows(self, conn: PooledConnection, channel_id: str) -> List[Dict[str, Any]]:
        if not conn.has_table(self.table_name):
            return []
        return (
            conn.table(self.table_name)
            .search()
            .where(f"channel_id = {sql_quote(channel_id)}", prefilter=True)
            .limit(getattr(config, 'MAX_SCAN_ROWS', 10000))
            .to_list()
        )

    async def find_by_channel(self, channel_id: str, limit: int = 5) -> List[ConversationSummary]:
        """Most recent summaries of a channel."""
        rows = await self.pool.run(self._channel_rows, channel_id, label="summaries.by_channel")
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [self._row_to_summary(r) for r in rows[:limit]]

    async def search_by_topics(self, channel_id: str, topics: List[str], limit: int = 5) -> List[ConversationSummary]:
        """Summaries sharing at least one topic, ranked by overlap then recency."""
        wanted = {t.lower() for t in topics}
        if not wanted:
            return []

        rows = await self.pool.run(self._channel_rows, channel_id, label="summaries.by_topics")
        scored = []
        for row in rows:
            overlap = len(wanted & {t.lower() for t in (row.get("key_topics") or [])})
            if overlap:
                scored.append((overlap, row["created_at"], row))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [self._row_to_summary(row) for _, _, row in scored[:limit]]

    @staticmethod
    def _row_to_summary(row: Dict[str, Any]) -> ConversationSummary:
        return ConversationSummary(
            id=row["id"],
            channel_id=row["channel_id"],
            summary=row["summary"],
            key_topics=list(row.get("key_topics") or []),
            participant_ids=list(row.get("participant_ids") or []),
            mood=row.get("mood"),
            notable_moments=list(row.get("notable_moments") or []),
            start_ts=row.get("start_ts"),
            end_ts=row.get("end_ts"),
            message_count=row.get("message_count") or 0,
            created_at=parse_timestamp(row["created_at"]),
        )
