"""
User Profile Model - what the bot knows about a Slack user.

Profiles are built by background profiling jobs from conversation history.
The memory core reads them to label authors and to give the response layer
a short personality sketch of the people in the conversation.
"""
from datetime import datetime
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field

from models.message import utc_now


class UserProfile(BaseModel):
    """
    Slack user profile.

    Identity is the Slack user id. Display fields mirror the Slack user
    object; the rest is extracted from conversations.
    """
    user_id: str = Field(..., description="Slack user id (e.g., 'U024BE7LH')")

    # Slack identity
    username: Optional[str] = Field(None, description="Slack handle")
    real_name: Optional[str] = Field(None, description="Full name")
    display_name: Optional[str] = Field(None, description="Display name shown in Slack")

    # Extracted from conversations
    personality_summary: Optional[str] = Field(None, description="Short personality sketch")
    interests: List[str] = Field(default_factory=list, description="Topics the user talks about")
    communication_style: Optional[str] = Field(None, description="e.g., 'terse', 'playful'")
    memorable_quotes: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def display_label(self) -> str:
        """Best human-readable label for prompts."""
        return self.username or self.display_name or self.real_name or self.user_id
