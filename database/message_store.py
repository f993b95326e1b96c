"""
MessageStore - LanceDB storage for Slack channel messages.

Handles:
- Idempotent ingestion keyed by (channel_id, message_ts)
- Recent-window scans, channel scans with filters, counts
- Cosine similarity search over attached embeddings
- Full-text keyword search (scores normalised to [0, 1])
- Attaching embeddings after ingestion (once per message)
- Archiving old messages; reads union the hot and archive tables

Every LanceDB call goes through the connection pool so it runs off the event
loop and under the pool's query deadline.
"""
from datetime import datetime, timezone, timedelta
from typing import List, Optional, Dict, Any, Tuple, Union
import asyncio
import json
import logging
import re

import pyarrow as pa
from lancedb.index import BTree, FTS, IvfPq

from database.base import LanceDBPool, PooledConnection
from models.message import Message, MessageFilter, ts_to_float
import config


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so string order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def sql_quote(value: str) -> str:
    """Quote a string literal for a LanceDB filter."""
    return "'" + str(value).replace("'", "''") + "'"


def message_schema(dimension: int) -> pa.Schema:
    return pa.schema([
        pa.field("id", pa.string()),
        pa.field("channel_id", pa.string()),
        pa.field("user_id", pa.string()),
        pa.field("message_text", pa.string()),
        pa.field("message_ts", pa.string()),
        pa.field("thread_ts", pa.string()),
        pa.field("parent_user_ts", pa.string()),
        pa.field("context", pa.string()),
        pa.field("has_embedding", pa.bool_()),
        # Zero vector until an embedding is attached; filtered by has_embedding
        pa.field("vector", pa.list_(pa.float32(), dimension)),
        pa.field("embedding_model", pa.string()),
        pa.field("created_at", pa.string()),
    ])


class MessageStore:
    """LanceDB storage for channel messages."""

    def __init__(
        self,
        pool: LanceDBPool,
        dimension: int = None,
        table_name: str = None,
        archive_table_name: str = None
    ):
        self.pool = pool
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.table_name = table_name or config.MESSAGE_TABLE_NAME
        self.archive_table_name = archive_table_name or config.ARCHIVE_TABLE_NAME
        self.schema = message_schema(self.dimension)
        self.max_scan_rows = getattr(config, 'MAX_SCAN_ROWS', 10000)

        self._write_lock = asyncio.Lock()
        self._fts_ready = set()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def initialize(self):
        """Create the message table if it does not exist."""
        def _init(conn: PooledConnection):
            if conn.has_table(self.table_name):
                table = conn.table(self.table_name)
                logger.info("[MessageStore] Opened %s (%d rows)", self.table_name, table.count_rows())
            else:
                conn.create_table(self.table_name, self.schema)
                logger.info("[MessageStore] Created %s table", self.table_name)

        await self.pool.run(_init, label="messages.init")

    async def create_search_indexes(self):
        """Build FTS, scalar and (once the table is large enough) vector indexes."""
        min_rows = getattr(config, 'VECTOR_INDEX_MIN_ROWS', 5000)
        dimension = self.dimension

        def _index(conn: PooledConnection) -> Dict[str, bool]:
            table = conn.table(self.table_name)
            built = {}
            for column in ("channel_id", "thread_ts"):
                try:
                    table.create_index(column, config=BTree(), replace=True)
                    built[column] = True
                except Exception as e:
                    logger.debug("[MessageStore] Scalar index on %s skipped: %s", column, e)
                    built[column] = False

            built["message_text"] = self._build_fts_index(table)

            row_count = table.count_rows()
            built["vector"] = False
            if row_count >= min_rows:
                try:
                    table.create_index(
                        "vector",
                        config=IvfPq(
                            distance_type="cosine",
                            num_partitions=min(row_count // 20, 256),
                            num_sub_vectors=max(1, min(dimension // 16, 96)),
                        ),
                        replace=True
                    )
                    built["vector"] = True
                    logger.info("[MessageStore] Vector index created (%d rows)", row_count)
                except Exception as e:
                    logger.warning("[MessageStore] Vector index skipped: %s", e)
            return built

        return await self.pool.run(_index, label="messages.create_indexes")

    async def optimize(self):
        """Compact fragments and fold new rows into existing indexes."""
        def _optimize(conn: PooledConnection):
            for table in self._read_tables(conn):
                table.optimize()

        await self.pool.run(_optimize, label="messages.optimize", timeout=max(self.pool.query_timeout, 300.0))
        logger.info("[MessageStore] Compacted %s", self.table_name)

    def _build_fts_index(self, table) -> bool:
        try:
            table.create_index("message_text", config=FTS(), replace=True)
            self._fts_ready.add(table.name)
            return True
        except Exception as e:
            logger.debug("[MessageStore] FTS index skipped: %s", e)
            return False

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _message_to_row(self, message: Message) -> Dict[str, Any]:
        vector = message.embedding
        if vector is not None and len(vector) != self.dimension:
            raise ValueError(
                f"Embedding has {len(vector)} dimensions, expected {self.dimension}"
            )
        return {
            "id": message.id,
            "channel_id": message.channel_id,
            "user_id": message.user_id,
            "message_text": message.message_text,
            "message_ts": message.message_ts,
            "thread_ts": message.thread_ts,
            "parent_user_ts": message.parent_user_ts,
            "context": json.dumps(message.context or {}, default=str),
            "has_embedding": vector is not None,
            "vector": list(vector) if vector is not None else [0.0] * self.dimension,
            "embedding_model": message.embedding_model,
            "created_at": format_timestamp(message.created_at),
        }

    @staticmethod
    def _row_to_message(row: Dict[str, Any]) -> Message:
        try:
            context = json.loads(row.get("context") or "{}")
        except (TypeError, ValueError):
            context = {}
        has_embedding = bool(row.get("has_embedding"))
        vector = row.get("vector")
        return Message(
            id=row["id"],
            channel_id=row["channel_id"],
            user_id=row["user_id"],
            message_text=row["message_text"],
            message_ts=row["message_ts"],
            thread_ts=row.get("thread_ts"),
            parent_user_ts=row.get("parent_user_ts"),
            context=context,
            embedding=[float(x) for x in vector] if has_embedding and vector is not None else None,
            embedding_model=row.get("embedding_model"),
            created_at=parse_timestamp(row["created_at"]),
        )

    def _read_tables(self, conn: PooledConnection) -> list:
        """Hot table plus the archive table when one exists."""
        tables = [conn.table(self.table_name)]
        if conn.has_table(self.archive_table_name):
            tables.append(conn.table(self.archive_table_name))
        return tables

    def _scan(self, conn: PooledConnection, where: str, limit: int = None) -> List[Dict[str, Any]]:
        rows = []
        for table in self._read_tables(conn):
            rows.extend(
                table.search()
                .where(where, prefilter=True)
                .limit(limit or self.max_scan_rows)
                .to_list()
            )
        return rows

    def _scan_ordered(
        self,
        conn: PooledConnection,
        where: str,
        limit: int,
        offset: int = 0,
        newest_first: bool = True
    ) -> List[Dict[str, Any]]:
        """
        Rows matching `where`, windowed by message_ts order.

        Only message_ts is read for the full match; whole rows are fetched for
        the selected window alone, so a large channel cannot push the newest
        rows past the scan cap.
        """
        keys = []
        for table in self._read_tables(conn):
            matched = table.count_rows(where)
            if not matched:
                continue
            rows = (
                table.search()
                .where(where, prefilter=True)
                .select(["message_ts"])
                .limit(matched)
                .to_list()
            )
            keys.extend((ts_to_float(r["message_ts"]), r["message_ts"]) for r in rows)

        keys.sort(reverse=newest_first)
        chosen = list(dict.fromkeys(ts for _, ts in keys[offset:offset + limit]))
        if not chosen:
            return []
        in_list = ", ".join(sql_quote(ts) for ts in chosen)
        return self._scan(conn, f"({where}) AND message_ts IN ({in_list})", limit=len(chosen))

    def _fetch_one(self, conn: PooledConnection, channel_id: str, message_ts: str) -> Optional[Dict[str, Any]]:
        where = f"channel_id = {sql_quote(channel_id)} AND message_ts = {sql_quote(message_ts)}"
        rows = self._scan(conn, where, limit=1)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_message(self, data: Union[Message, Dict[str, Any]]) -> Message:
        """
        Insert a message. A second insert with the same (channel_id, message_ts)
        is a no-op that returns the record already stored.
        """
        message = data if isinstance(data, Message) else Message(**data)
        row = self._message_to_row(message)

        def _insert(conn: PooledConnection) -> Dict[str, Any]:
            table = conn.table(self.table_name)
            (
                table.merge_insert(["channel_id", "message_ts"])
                .when_not_matched_insert_all()
                .execute(pa.Table.from_pylist([row], schema=self.schema))
            )
            stored = self._fetch_one(conn, message.channel_id, message.message_ts)
            return stored or row

        async with self._write_lock:
            stored = await self.pool.run(_insert, label="messages.create")

        result = self._row_to_message(stored)
        if result.id != message.id:
            logger.debug(
                "[MessageStore] Duplicate message %s/%s ignored",
                message.channel_id, message.message_ts
            )
        return result

    async def update_embedding(self, message_id: str, vector: List[float], model_tag: str) -> bool:
        """
        Attach an embedding to a stored message.

        Returns False when the message is unknown or already has an embedding;
        an attached embedding is never overwritten.
        """
        if len(vector) != self.dimension:
            raise ValueError(f"Embedding has {len(vector)} dimensions, expected {self.dimension}")

        where = f"id = {sql_quote(message_id)} AND has_embedding = false"

        def _update(conn: PooledConnection) -> bool:
            table = conn.table(self.table_name)
            pending = table.search().where(where, prefilter=True).limit(1).to_list()
            if not pending:
                return False
            table.update(
                where=where,
                values={
                    "vector": [float(x) for x in vector],
                    "has_embedding": True,
                    "embedding_model": model_tag,
                }
            )
            return True

        async with self._write_lock:
            return await self.pool.run(_update, label="messages.update_embedding")

    async def archive_messages(self, older_than_days: int = None) -> int:
        """Move messages older than the retention window into the archive table."""
        days = older_than_days if older_than_days is not None else config.ARCHIVE_AFTER_DAYS
        cutoff = format_timestamp(datetime.now(timezone.utc) - timedelta(days=days))
        where = f"created_at < {sql_quote(cutoff)}"

        def _copy(conn: PooledConnection) -> List[str]:
            hot = conn.table(self.table_name)
            rows = hot.search().where(where, prefilter=True).limit(self.max_scan_rows).to_list()
            if not rows:
                return []
            archive = conn.ensure_table(self.archive_table_name, self.schema)
            data = pa.Table.from_pylist(
                [{name: r.get(name) for name in self.schema.names} for r in rows],
                schema=self.schema
            )
            (
                archive.merge_insert(["channel_id", "message_ts"])
                .when_not_matched_insert_all()
                .execute(data)
            )
            return [r["id"] for r in rows]

        def _delete(conn: PooledConnection, ids: List[str]):
            id_list = ", ".join(sql_quote(i) for i in ids)
            conn.table(self.table_name).delete(f"id IN ({id_list})")

        async with self._write_lock:
            async with self.pool.transaction(self.table_name, self.archive_table_name) as conn:
                ids = await self.pool.run(_copy, conn=conn, label="messages.archive.copy")
                if ids:
                    await self.pool.run(_delete, ids, conn=conn, label="messages.archive.delete")

        if ids:
            logger.info("[MessageStore] Archived %d messages older than %d days", len(ids), days)
        return len(ids)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_message(self, channel_id: str, message_ts: str) -> Optional[Message]:
        row = await self.pool.run(self._fetch_one, channel_id, message_ts, label="messages.get")
        return self._row_to_message(row) if row else None

    async def get_recent_messages(self, channel_id: str, hours: int = 24, limit: int = 20) -> List[Message]:
        """Last `limit` messages of the past `hours`, oldest first."""
        if limit <= 0:
            return []
        cutoff = format_timestamp(datetime.now(timezone.utc) - timedelta(hours=hours))
        where = f"channel_id = {sql_quote(channel_id)} AND created_at >= {sql_quote(cutoff)}"

        rows = await self.pool.run(self._scan_ordered, where, limit, label="messages.recent")
        messages = [self._row_to_message(r) for r in rows]
        messages.sort(key=lambda m: m.ts_value)
        return messages

    async def find_by_channel(self, channel_id: str, filter: Optional[MessageFilter] = None) -> List[Message]:
        """Channel scan with optional thread/user/date filters, newest first."""
        filter = filter or MessageFilter()
        clauses = [f"channel_id = {sql_quote(channel_id)}"]
        if filter.thread_ts:
            clauses.append(f"thread_ts = {sql_quote(filter.thread_ts)}")
        if filter.user_id:
            clauses.append(f"user_id = {sql_quote(filter.user_id)}")
        if filter.start_date:
            clauses.append(f"created_at >= {sql_quote(format_timestamp(filter.start_date))}")
        if filter.end_date:
            clauses.append(f"created_at <= {sql_quote(format_timestamp(filter.end_date))}")

        rows = await self.pool.run(
            self._scan_ordered, " AND ".join(clauses), filter.limit,
            offset=filter.offset, label="messages.by_channel"
        )
        messages = [self._row_to_message(r) for r in rows]
        messages.sort(key=lambda m: m.ts_value, reverse=True)
        return messages

    async def find_thread(self, channel_id: str, thread_ts: str, limit: int = 50) -> List[Message]:
        """Root message plus replies of a thread, oldest first."""
        where = (
            f"channel_id = {sql_quote(channel_id)} AND "
            f"(thread_ts = {sql_quote(thread_ts)} OR message_ts = {sql_quote(thread_ts)})"
        )
        rows = await self.pool.run(self._scan_ordered, where, limit, newest_first=False, label="messages.thread")
        return sorted((self._row_to_message(r) for r in rows), key=lambda m: m.ts_value)

    async def count_by_channel(self, channel_id: str) -> int:
        where = f"channel_id = {sql_quote(channel_id)}"

        def _count(conn: PooledConnection) -> int:
            return sum(table.count_rows(where) for table in self._read_tables(conn))

        return await self.pool.run(_count, label="messages.count")

    async def get_messages_without_embeddings(self, limit: int = 100) -> List[Message]:
        def _pending(conn: PooledConnection) -> List[Dict[str, Any]]:
            table = conn.table(self.table_name)
            return table.search().where("has_embedding = false", prefilter=True).limit(limit).to_list()

        rows = await self.pool.run(_pending, label="messages.without_embeddings")
        return [self._row_to_message(r) for r in rows]

    async def find_similar(
        self,
        embedding: List[float],
        limit: int = 10,
        threshold: float = 0.7,
        channel_id: Optional[str] = None
    ) -> List[Tuple[Message, float]]:
        """
        Cosine similarity search over messages that have an embedding.

        Returns:
            (message, similarity) pairs with similarity >= threshold, best first
        """
        where = "has_embedding = true"
        if channel_id:
            where += f" AND channel_id = {sql_quote(channel_id)}"
        query = [float(x) for x in embedding]

        def _search(conn: PooledConnection) -> List[Dict[str, Any]]:
            rows = []
            for table in self._read_tables(conn):
                rows.extend(
                    table.search(query, vector_column_name="vector")
                    .distance_type("cosine")
                    .where(where, prefilter=True)
                    .limit(limit)
                    .to_list()
                )
            return rows

        rows = await self.pool.run(_search, label="messages.similar")
        results = []
        for row in rows:
            similarity = 1.0 - float(row.get("_distance", 1.0))
            if similarity >= threshold:
                results.append((self._row_to_message(row), similarity))
        results.sort(key=lambda pair: pair[1], reverse=True)
        return results[:limit]

    def _keyword_scan(self, table, query: str, where: Optional[str], limit: int) -> List[Dict[str, Any]]:
        """Term-overlap scoring for tables without an FTS index."""
        terms = list(dict.fromkeys(re.findall(r"\w+", query.lower())))
        if not terms:
            return []
        matches = " OR ".join(
            f"lower(message_text) LIKE {sql_quote('%' + term + '%')}" for term in terms
        )
        clause = f"({where}) AND ({matches})" if where else f"({matches})"
        rows = table.search().where(clause, prefilter=True).limit(self.max_scan_rows).to_list()
        for row in rows:
            words = set(re.findall(r"\w+", (row.get("message_text") or "").lower()))
            row["_score"] = sum(1 for term in terms if term in words) / len(terms)
        rows.sort(key=lambda r: r["_score"], reverse=True)
        return rows[:limit]

    async def keyword_search(self, query: str, channel_id: Optional[str] = None, limit: int = 20) -> List[Tuple[Message, float]]:
        """
        Full-text search on message_text.

        Returns:
            (message, score) pairs, score normalised by the best hit to [0, 1]
        """
        if not query or not query.strip():
            return []
        where = f"channel_id = {sql_quote(channel_id)}" if channel_id else None

        def _search(conn: PooledConnection) -> List[Dict[str, Any]]:
            rows = []
            for table in self._read_tables(conn):
                if table.count_rows() == 0:
                    continue
                if table.name not in self._fts_ready and not self._build_fts_index(table):
                    rows.extend(self._keyword_scan(table, query, where, limit))
                    continue
                search = table.search(query, query_type="fts")
                if where:
                    search = search.where(where, prefilter=True)
                rows.extend(search.limit(limit).to_list())
            return rows

        rows = await self.pool.run(_search, label="messages.keyword")
        if not rows:
            return []

        max_score = max(float(r.get("_score", 0.0)) for r in rows)
        results = []
        for row in rows:
            score = float(row.get("_score", 0.0))
            results.append((self._row_to_message(row), score / max_score if max_score > 0 else 0.0))
        results.sort(key=lambda pair: pair[1], reverse=True)
        return results[:limit]
