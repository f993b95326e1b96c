"""
Slack channel memory - main system class wiring all components

Pipeline:
1. Ingestion: ingest_message() -> MessageStore (idempotent) -> ChannelWindow
   -> outbox "message.stored" -> embedding attached in the background
2. Retrieval: build_context() -> ContextBuilder -> HybridSearchEngine / stores
3. Prompting: format_context() -> flattened text for the response layer

Every dependency is built once in create() and passed in explicitly.
"""
from typing import Any, Dict, List, Optional, Union
import argparse
import asyncio
import logging

from core.context_builder import ContextBuilder, format_memory_context
from core.hybrid_search import HybridSearchEngine, ThreadRetriever
from database.base import LanceDBPool
from database.cached_message_store import CachedMessageStore
from database.message_store import MessageStore
from database.summary_store import SummaryStore
from database.user_profile_store import UserProfileStore
from models.context import ContextBundle, ContextOptions, SearchOptions
from models.message import Message, ScoredMessage
from services.batch_embeddings import BatchEmbeddingProcessor, EmbeddingBackfillJob
from services.cache import CacheService
from services.channel_window import ChannelWindow
from services.outbox import Outbox
from utils.embedding import EmbeddingModel
import config


logger = logging.getLogger(__name__)

MESSAGE_STORED = "message.stored"


def configure_logging(level: str = None):
    logging.basicConfig(
        level=(level or getattr(config, 'LOG_LEVEL', 'INFO')).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


class MemorySystem:
    """
    Channel memory for the Slack bot.

    Holds the connection pool, stores, cache, embedding model, hybrid search,
    context builder, channel window and outbox. Use `await MemorySystem.create()`
    to build a ready system and `await system.close()` to release it.
    """

    def __init__(
        self,
        pool: LanceDBPool,
        message_store: MessageStore,
        summary_store: SummaryStore,
        profile_store: UserProfileStore,
        cache: CacheService,
        embedding_model: EmbeddingModel,
        window: Optional[ChannelWindow] = None,
        outbox: Optional[Outbox] = None
    ):
        self.pool = pool
        self.message_store = message_store
        self.messages = CachedMessageStore(message_store, cache)
        self.summary_store = summary_store
        self.profile_store = profile_store
        self.cache = cache
        self.embedding_model = embedding_model

        self.search_engine = HybridSearchEngine(message_store, embedding_model)
        self.thread_retriever = ThreadRetriever(message_store, self.search_engine)
        self.context_builder = ContextBuilder(
            message_store=self.messages,
            embedding_model=embedding_model,
            summary_store=summary_store,
            profile_store=profile_store,
            search_engine=self.search_engine,
            cache=cache,
        )
        self.batch_processor = BatchEmbeddingProcessor(embedding_model, cache)
        self.backfill_job = EmbeddingBackfillJob(message_store, self.batch_processor)

        self.window = window or ChannelWindow()
        self.outbox = outbox or Outbox()
        self.outbox.subscribe(MESSAGE_STORED, self._attach_embedding)

    @classmethod
    async def create(
        cls,
        db_path: Optional[str] = None,
        cache: Optional[CacheService] = None,
        embedding_model: Optional[EmbeddingModel] = None,
        pool: Optional[LanceDBPool] = None,
        start_worker: bool = True
    ) -> "MemorySystem":
        """Build, initialise and start every component."""
        logger.info("[MemorySystem] Initializing (env=%s)", getattr(config, 'APP_ENV', 'development'))

        pool = pool or LanceDBPool(db_path=db_path)
        await pool.start()

        cache = cache or CacheService()
        embedding_model = embedding_model or EmbeddingModel(cache=cache)

        message_store = MessageStore(pool, dimension=embedding_model.dimension)
        summary_store = SummaryStore(pool)
        profile_store = UserProfileStore(pool)
        await message_store.initialize()
        await summary_store.initialize()
        await profile_store.initialize()
        await message_store.create_search_indexes()

        system = cls(pool, message_store, summary_store, profile_store, cache, embedding_model)
        if start_worker:
            system.outbox.start()

        logger.info("[MemorySystem] Ready")
        return system

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_message(self, data: Union[Message, Dict[str, Any]]) -> Message:
        """
        Store a message and queue its embedding.

        Ingesting the same (channel_id, message_ts) twice returns the stored
        record and queues nothing new.
        """
        incoming = data if isinstance(data, Message) else Message(**data)
        message = await self.messages.create_message(incoming)
        if message.id != incoming.id:
            return message

        self.window.add(message)
        await self.context_builder.invalidate_channel(message.channel_id)

        if not message.has_embedding:
            self.outbox.publish(MESSAGE_STORED, {
                "message_id": message.id,
                "channel_id": message.channel_id,
                "text": message.message_text,
            })
        return message

    async def _attach_embedding(self, payload: Dict[str, Any]):
        result = await self.embedding_model.embed(payload["text"])
        attached = await self.message_store.update_embedding(
            payload["message_id"], result.vector, self.embedding_model.model_name
        )
        if attached:
            logger.debug("[MemorySystem] Embedded message %s", payload["message_id"])

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def build_context(
        self,
        channel_id: str,
        query: Optional[str] = None,
        options: Optional[ContextOptions] = None
    ) -> ContextBundle:
        return await self.context_builder.build_context(channel_id, query, options)

    def format_context(self, bundle: ContextBundle) -> str:
        return format_memory_context(bundle)

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> List[ScoredMessage]:
        return await self.search_engine.search(query, options)

    async def get_thread_context(self, channel_id: str, thread_ts: str, include_related: bool = True) -> List[Message]:
        return await self.thread_retriever.get_thread_context(channel_id, thread_ts, include_related=include_related)

    def get_window(self, channel_id: str, limit: Optional[int] = None) -> List[Message]:
        return self.window.get_recent(channel_id, limit)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def backfill_embeddings(self, limit: int = 100) -> int:
        return await self.backfill_job.run_once(limit=limit)

    async def archive(self, older_than_days: Optional[int] = None) -> int:
        return await self.message_store.archive_messages(older_than_days)

    async def run_maintenance(self) -> Dict[str, Any]:
        """Archive old messages, backfill missing embeddings, compact tables."""
        archived = await self.archive()
        embedded = await self.backfill_embeddings()
        await self.message_store.optimize()
        logger.info("[Maintenance] archived=%d embedded=%d", archived, embedded)
        return {"archived": archived, "embedded": embedded}

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> Dict[str, Any]:
        store = await self.pool.health_check()
        cache_ok = await self.cache.ping()
        return {
            "healthy": store["healthy"],
            "store": store,
            "cache": {"reachable": cache_ok},
        }

    def metrics(self) -> Dict[str, Any]:
        return {
            "pool": self.pool.get_metrics(),
            "cache": self.cache.get_stats(),
            "embeddings": self.batch_processor.get_stats(),
            "window": self.window.get_stats(),
            "outbox": self.outbox.get_stats(),
        }

    async def close(self):
        await self.outbox.stop()
        await self.cache.close()
        await self.pool.close()


async def create_system(db_path: Optional[str] = None) -> MemorySystem:
    """Create a MemorySystem with config.py defaults."""
    return await MemorySystem.create(db_path=db_path)


async def _run_command(args: argparse.Namespace):
    system = await MemorySystem.create(db_path=args.db_path, start_worker=False)
    try:
        if args.command == "backfill":
            attached = await system.backfill_embeddings(limit=args.limit)
            print(f"Attached {attached} embeddings")
        elif args.command == "archive":
            archived = await system.archive(args.days)
            print(f"Archived {archived} messages")
        elif args.command == "maintenance":
            print(await system.run_maintenance())
        elif args.command == "health":
            print(await system.health())
    finally:
        await system.close()


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Slack channel memory maintenance")
    parser.add_argument("--db-path", default=None, help="LanceDB path (defaults to LANCEDB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    backfill = sub.add_parser("backfill", help="Attach embeddings to messages that lack one")
    backfill.add_argument("--limit", type=int, default=500)

    archive = sub.add_parser("archive", help="Move old messages to the archive table")
    archive.add_argument("--days", type=int, default=None)

    sub.add_parser("maintenance", help="Archive, backfill and compact")
    sub.add_parser("health", help="Check store and cache health")

    args = parser.parse_args(argv)
    configure_logging()
    asyncio.run(_run_command(args))


if __name__ == "__main__":
    main()
