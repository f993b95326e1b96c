"""
Models package
"""
from .message import Message, ScoredMessage, MessageFilter
from .summary import ConversationSummary
from .user_profile import UserProfile
from .context import (
    SearchOptions, ContextOptions, ContextBundle,
    ContextWindow, SearchMetadata, ConversationPatterns
)

__all__ = [
    'Message', 'ScoredMessage', 'MessageFilter',
    'ConversationSummary',
    'UserProfile',
    'SearchOptions', 'ContextOptions', 'ContextBundle',
    'ContextWindow', 'SearchMetadata', 'ConversationPatterns'
]
