"""
CachedMessageStore - read-through cache in front of MessageStore.

Recent-window reads are the hottest query in the system (every reply builds
a context). They are cached per channel under the `messages:{channel_id}`
namespace and the namespace is cleared on every write to that channel.
Everything else passes straight through.
"""
from typing import List, Optional, Dict, Any, Union
import logging

from database.message_store import MessageStore
from models.message import Message
from services.cache import CacheService, CacheTier
import config


logger = logging.getLogger(__name__)


class CachedMessageStore:
    """MessageStore with cached recent-window reads."""

    def __init__(self, store: MessageStore, cache: CacheService, ttl: int = None):
        self.store = store
        self.cache = cache
        self.ttl = ttl or getattr(config, 'RECENT_MESSAGES_CACHE_TTL', 60)

    @staticmethod
    def _namespace(channel_id: str) -> str:
        return f"messages:{channel_id}"

    async def get_recent_messages(self, channel_id: str, hours: int = 24, limit: int = 20) -> List[Message]:
        async def _load():
            messages = await self.store.get_recent_messages(channel_id, hours=hours, limit=limit)
            return [m.model_dump(mode="json", exclude={"embedding"}) for m in messages]

        rows = await self.cache.get_or_set(
            self._namespace(channel_id),
            f"recent:{hours}:{limit}",
            _load,
            ttl=self.ttl,
            tier=CacheTier.HOT,
        )
        return [Message.model_validate(r) for r in rows or []]

    async def create_message(self, data: Union[Message, Dict[str, Any]]) -> Message:
        message = await self.store.create_message(data)
        await self.cache.clear_namespace(self._namespace(message.channel_id))
        return message

    async def update_embedding(self, message_id: str, vector: List[float], model_tag: str) -> bool:
        # Cached rows never carry embeddings; nothing to invalidate.
        return await self.store.update_embedding(message_id, vector, model_tag)

    async def invalidate_channel(self, channel_id: str) -> int:
        return await self.cache.clear_namespace(self._namespace(channel_id))

    def __getattr__(self, name: str):
        return getattr(self.store, name)
