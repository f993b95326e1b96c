"""
Conversation summary model.

Summaries are produced by background jobs; the memory core only reads them.
"""
from datetime import datetime
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from models.message import utc_now


class ConversationSummary(BaseModel):
    """Summary of a stretch of channel conversation."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    channel_id: str = Field(..., description="Slack channel id")
    summary: str = Field(..., description="Summary text")
    key_topics: List[str] = Field(default_factory=list, description="Ordered, de-duplicated topics")
    participant_ids: List[str] = Field(default_factory=list)
    mood: Optional[str] = None
    notable_moments: List[str] = Field(default_factory=list)
    start_ts: Optional[str] = None
    end_ts: Optional[str] = None
    message_count: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("key_topics")
    @classmethod
    def _dedupe_topics(cls, topics: List[str]) -> List[str]:
        seen = set()
        ordered = []
        for topic in topics:
            if topic not in seen:
                seen.add(topic)
                ordered.append(topic)
        return ordered
