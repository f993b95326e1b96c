"""
Context models - retrieval options and the assembled context bundle.
"""
from typing import List, Optional, Dict, Any, Literal

from pydantic import BaseModel, Field

from models.message import Message
from models.summary import ConversationSummary
from models.user_profile import UserProfile
import config


class SearchOptions(BaseModel):
    """Options for one hybrid search call."""
    channel_id: Optional[str] = None
    limit: int = Field(20, ge=1)
    semantic_weight: float = Field(
        default_factory=lambda: config.HYBRID_SEMANTIC_WEIGHT, ge=0.0, le=1.0,
        description="Keyword weight is 1 - semantic_weight",
    )
    temporal_decay: float = Field(default_factory=lambda: config.HYBRID_TEMPORAL_DECAY, ge=0.0)
    min_score: float = Field(default_factory=lambda: config.HYBRID_MIN_SCORE, ge=0.0)
    recent_hours: int = Field(default_factory=lambda: config.HYBRID_RECENT_HOURS, ge=1)


class ContextOptions(BaseModel):
    """Options for building a context bundle."""
    recent_limit: int = Field(default_factory=lambda: config.CONTEXT_RECENT_LIMIT, ge=0)
    relevant_limit: int = Field(default_factory=lambda: config.CONTEXT_RELEVANT_LIMIT, ge=0)
    hours: int = Field(default_factory=lambda: config.CONTEXT_HOURS, ge=1)
    thread_ts: Optional[str] = None
    include_summaries: bool = True
    include_profiles: bool = True
    use_cache: bool = False
    strategy: Literal["semantic", "hybrid"] = "semantic"
    semantic_weight: float = Field(default_factory=lambda: config.HYBRID_SEMANTIC_WEIGHT, ge=0.0, le=1.0)
    diversity_weight: float = Field(default_factory=lambda: config.HYBRID_DIVERSITY_WEIGHT, ge=0.0, le=1.0)
    max_tokens: int = Field(default_factory=lambda: config.CONTEXT_MAX_TOKENS, ge=1)


class ContextWindow(BaseModel):
    """Estimated prompt footprint of a bundle."""
    tokens: int = 0
    messages: int = 0
    quality: float = 0.0


class SearchMetadata(BaseModel):
    keyword_matches: int = 0
    semantic_matches: int = 0
    hybrid_score: float = 0.0


class ContextBundle(BaseModel):
    """
    Everything the response layer gets about a channel for one reply.

    recent_messages are chronological (oldest first); relevant_messages are
    ordered by relevance and never repeat a message already in recent_messages.
    """
    recent_messages: List[Message] = Field(default_factory=list)
    relevant_messages: List[Message] = Field(default_factory=list)
    thread_context: Optional[List[Message]] = None
    conversation_summaries: Optional[List[ConversationSummary]] = None
    user_profiles: Optional[Dict[str, UserProfile]] = None
    total_messages: int = 0
    context_window: ContextWindow = Field(default_factory=ContextWindow)
    search_metadata: Optional[SearchMetadata] = None

    @classmethod
    def minimal(cls) -> "ContextBundle":
        """Bundle returned when assembly fails."""
        return cls()

    def is_empty(self) -> bool:
        return not (
            self.recent_messages
            or self.relevant_messages
            or self.thread_context
            or self.conversation_summaries
            or self.user_profiles
        )


class ConversationPatterns(BaseModel):
    """Activity patterns of one user in a channel."""
    message_count: int = 0
    average_length: float = 0.0
    common_topics: List[str] = Field(default_factory=list)
    active_hours: List[int] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
