"""
Message models - Slack channel messages as stored and as scored by retrieval.

A message is identified by (channel_id, message_ts): Slack guarantees the
source timestamp is unique within a channel, so ingestion of the same event
twice resolves to the same stored record.
"""
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Tuple
import uuid

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ts_to_float(message_ts: str) -> float:
    """Slack timestamps are "seconds.micros" strings; order them numerically."""
    try:
        return float(message_ts)
    except (TypeError, ValueError):
        return 0.0


class Message(BaseModel):
    """A single Slack message."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(..., description="Slack user id of the author")
    channel_id: str = Field(..., description="Slack channel id")
    message_text: str = Field(..., description="Raw message text")
    message_ts: str = Field(..., description="Slack source timestamp, unique per channel")
    thread_ts: Optional[str] = Field(None, description="Thread root timestamp")
    parent_user_ts: Optional[str] = Field(None, description="Timestamp of the parent message")
    context: Dict[str, Any] = Field(default_factory=dict, description="Free-form event context")
    embedding: Optional[List[float]] = Field(None, description="Attached once, after ingestion")
    embedding_model: Optional[str] = Field(None, description="Model that produced the embedding")
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> Tuple[str, str]:
        """Identity of the message across stores and retrieval paths."""
        return (self.channel_id, self.message_ts)

    @property
    def ts_value(self) -> float:
        return ts_to_float(self.message_ts)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


class ScoredMessage(BaseModel):
    """A message with the per-path scores produced by hybrid search."""
    message: Message
    keyword_score: float = 0.0
    semantic_score: float = 0.0
    temporal_score: float = 0.0
    score: float = 0.0
    explanation: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return self.message.key


class MessageFilter(BaseModel):
    """Optional filters for channel scans."""
    thread_ts: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(100, ge=1)
    offset: int = Field(0, ge=0)
