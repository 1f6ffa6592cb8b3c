"""
Key Builder Module

This module defines the cache key layout shared by every service, so that a
key written by one component is found by another (and by operators reading
Redis directly).
"""

import hashlib
from typing import Any, Optional


class KeyBuilder:
    """Utility for building colon-separated cache keys."""

    @staticmethod
    def build(*parts: Any, namespace: Optional[str] = None) -> str:
        """
        Build a cache key from parts.

        Args:
            *parts: Parts of the key; None becomes "null"
            namespace: Optional leading namespace

        Returns:
            A colon-separated key string
        """
        processed = [str(namespace)] if namespace else []
        processed.extend("null" if part is None else str(getattr(part, "value", part)) for part in parts)
        return ":".join(processed)

    @staticmethod
    def digest(value: str) -> str:
        """Stable SHA-256 hex digest, for values too long or sensitive to key on."""
        return hashlib.sha256(value.encode('utf-8')).hexdigest()


class CacheKeys:
    """Key layout of the scheduler's cache namespace."""

    @staticmethod
    def aggregation(item_id: str) -> str:
        return KeyBuilder.build("aggregation", item_id)

    @staticmethod
    def queue_list(urgency: Any) -> str:
        """FIFO list of pending item ids for one urgency tier."""
        return KeyBuilder.build("queue", urgency)

    @staticmethod
    def queue_entry(urgency: Any, item_id: str) -> str:
        return KeyBuilder.build("queue", urgency, item_id)

    @staticmethod
    def queue_lease(item_id: str) -> str:
        return KeyBuilder.build("queue", "lease", item_id)

    @staticmethod
    def queue_processing() -> str:
        """Index set of item ids currently under lease."""
        return KeyBuilder.build("queue", "processing")

    @staticmethod
    def prediction(user_id: str, item_id: str) -> str:
        return KeyBuilder.build("prediction", user_id, item_id)

    @staticmethod
    def profile(user_id: str) -> str:
        return KeyBuilder.build("profile", user_id)

    @staticmethod
    def session(session_id: str) -> str:
        return KeyBuilder.build("session", session_id)

    @staticmethod
    def user_sessions(user_id: str) -> str:
        return KeyBuilder.build("user_sessions", user_id)

    @staticmethod
    def blacklist(token: str) -> str:
        # Tokens are hashed so raw credentials never appear in the keyspace
        return KeyBuilder.build("blacklist", KeyBuilder.digest(token))

    @staticmethod
    def tag_index(tag: str) -> str:
        return KeyBuilder.build("tag_index", tag)

    @staticmethod
    def item_tag(item_id: str) -> str:
        return KeyBuilder.build("item", item_id)

    @staticmethod
    def user_tag(user_id: str) -> str:
        return KeyBuilder.build("user", user_id)
