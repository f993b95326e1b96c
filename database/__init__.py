"""
Database package
"""
from .base import LanceDBPool, PooledConnection
from .message_store import MessageStore
from .cached_message_store import CachedMessageStore
from .summary_store import SummaryStore
from .user_profile_store import UserProfileStore

__all__ = [
    'LanceDBPool', 'PooledConnection',
    'MessageStore', 'CachedMessageStore',
    'SummaryStore', 'UserProfileStore',
]
