"""
User Profile Store - LanceDB-based storage for Slack user profiles

Profiles are written by background profiling jobs and read by the context
builder, one lookup per distinct author. The full profile is kept as JSON
next to the indexed identity columns.
"""
from typing import List, Optional, Dict, Any
import json
import logging

import pyarrow as pa
from lancedb.index import BTree

from database.base import LanceDBPool, PooledConnection
from database.message_store import format_timestamp, sql_quote
from models.message import utc_now
from models.user_profile import UserProfile
import config


logger = logging.getLogger(__name__)

PROFILE_SCHEMA = pa.schema([
    pa.field("user_id", pa.string()),
    pa.field("username", pa.string()),
    pa.field("profile_data", pa.string()),  # Full UserProfile as JSON
    pa.field("created_at", pa.string()),
    pa.field("updated_at", pa.string()),
])


class UserProfileStore:
    """LanceDB storage for user profiles."""

    def __init__(self, pool: LanceDBPool, table_name: str = None):
        self.pool = pool
        self.table_name = table_name or config.USER_TABLE_NAME

    async def initialize(self):
        def _init(conn: PooledConnection):
            table = conn.ensure_table(self.table_name, PROFILE_SCHEMA)
            try:
                table.create_index("user_id", config=BTree(), replace=True)
            except Exception as e:
                logger.debug("[UserProfileStore] Scalar index skipped: %s", e)

        await self.pool.run(_init, label="profiles.init")

    async def find_by_user_id(self, user_id: str) -> Optional[UserProfile]:
        def _find(conn: PooledConnection) -> List[Dict[str, Any]]:
            if not conn.has_table(self.table_name):
                return []
            return (
                conn.table(self.table_name)
                .search()
                .where(f"user_id = {sql_quote(user_id)}", prefilter=True)
                .limit(1)
                .to_list()
            )

        rows = await self.pool.run(_find, label="profiles.by_user")
        if not rows:
            return None
        return UserProfile.model_validate(json.loads(rows[0]["profile_data"]))

    async def upsert(self, profile: UserProfile) -> UserProfile:
        """Insert or replace a profile keyed by user_id."""
        profile = profile.model_copy(update={"updated_at": utc_now()})
        row = {
            "user_id": profile.user_id,
            "username": profile.username,
            "profile_data": profile.model_dump_json(),
            "created_at": format_timestamp(profile.created_at),
            "updated_at": format_timestamp(profile.updated_at),
        }

        def _upsert(conn: PooledConnection):
            table = conn.ensure_table(self.table_name, PROFILE_SCHEMA)
            (
                table.merge_insert("user_id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(pa.Table.from_pylist([row], schema=PROFILE_SCHEMA))
            )

        await self.pool.run(_upsert, label="profiles.upsert")
        return profile
