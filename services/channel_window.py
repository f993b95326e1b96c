"""
ChannelWindow - bounded in-memory sliding window of recent messages per channel.

Keeps the last few messages of each active channel so the bot can see the
immediate conversation without a store round trip. Memory is bounded three
ways:
- at most `max_channels` channels (least recently active evicted first)
- at most `max_messages` messages per channel
- messages older than `max_age_seconds` are pruned on access
"""
from collections import OrderedDict, deque
from typing import Any, Callable, Deque, Dict, List, Tuple
import time

from models.message import Message
import config


class ChannelWindow:
    """Sliding window of recent messages, LRU over channels."""

    def __init__(
        self,
        max_channels: int = None,
        max_messages: int = None,
        max_age_seconds: float = None,
        clock: Callable[[], float] = time.time
    ):
        self.max_channels = max_channels or config.WINDOW_MAX_CHANNELS
        self.max_messages = max_messages or config.WINDOW_MAX_MESSAGES
        self.max_age_seconds = max_age_seconds or config.WINDOW_MAX_AGE_SECONDS
        self._clock = clock
        # channel_id -> deque of (added_at, message)
        self._channels: "OrderedDict[str, Deque[Tuple[float, Message]]]" = OrderedDict()
        self.evicted_channels = 0

    def _prune(self, channel_id: str, window: Deque[Tuple[float, Message]]):
        cutoff = self._clock() - self.max_age_seconds
        while window and window[0][0] < cutoff:
            window.popleft()
        if not window:
            del self._channels[channel_id]

    def add(self, message: Message):
        """Append a message to its channel window. Re-adding the same message is a no-op."""
        window = self._channels.get(message.channel_id)
        if window is None:
            window = self._channels[message.channel_id] = deque(maxlen=self.max_messages)
        elif any(m.key == message.key for _, m in window):
            self._channels.move_to_end(message.channel_id)
            return

        window.append((self._clock(), message))
        self._channels.move_to_end(message.channel_id)

        while len(self._channels) > self.max_channels:
            self._channels.popitem(last=False)
            self.evicted_channels += 1

    def get_recent(self, channel_id: str, limit: int = None) -> List[Message]:
        """Recent messages of a channel, oldest first."""
        window = self._channels.get(channel_id)
        if window is None:
            return []
        self._prune(channel_id, window)
        if channel_id not in self._channels:
            return []
        self._channels.move_to_end(channel_id)
        messages = [m for _, m in window]
        return messages[-limit:] if limit else messages

    def clear(self, channel_id: str):
        self._channels.pop(channel_id, None)

    def __len__(self) -> int:
        return len(self._channels)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "channels": len(self._channels),
            "messages": sum(len(w) for w in self._channels.values()),
            "max_channels": self.max_channels,
            "max_messages": self.max_messages,
            "evicted_channels": self.evicted_channels,
        }
