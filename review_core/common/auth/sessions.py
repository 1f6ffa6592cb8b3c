"""
Session Registry Module

This module tracks learner sessions and revoked tokens in the cache. A
revoked token stays on the blacklist exactly as long as it would otherwise
have remained valid, and invalidating a learner revokes the refresh tokens
of all their sessions.
"""

import datetime
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from review_core.common.cache import CacheBackend, CacheError, CacheKeys
from review_core.common.config import SessionSettings
from review_core.common.exceptions import DegradedDependencyError, InvalidTokenError

from .jwt import JWTConfig, create_access_token, create_refresh_token, token_expiry

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """
    A learner session.

    Attributes:
        session_id: Unique identifier
        user_id: Owner
        created_at: Epoch seconds the session was opened
        last_active: Epoch seconds of the latest activity
        expires_at: Epoch seconds the session lapses unless touched
        refresh_token: Refresh token bound to the session
        is_active: False once invalidated
        metadata: Client details (device, address)
    """
    session_id: str
    user_id: str
    created_at: float
    last_active: float
    expires_at: float
    refresh_token: Optional[str] = None
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "last_active": self.last_active,
            "expires_at": self.expires_at,
            "refresh_token": self.refresh_token,
            "is_active": self.is_active,
            "metadata": dict(self.metadata)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            created_at=float(data["created_at"]),
            last_active=float(data["last_active"]),
            expires_at=float(data["expires_at"]),
            refresh_token=data.get("refresh_token"),
            is_active=bool(data.get("is_active", True)),
            metadata=dict(data.get("metadata") or {})
        )


class SessionRegistry:
    """
    Cache-backed session store and token blacklist.

    Blacklist lookups fail open: when the cache cannot be reached,
    ``is_token_blacklisted`` answers False, logs a warning and sets
    ``last_check_degraded`` so callers can tighten other checks.
    """

    def __init__(
        self,
        backend: CacheBackend,
        settings: Optional[SessionSettings] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the registry.

        Args:
            backend: Cache backend holding sessions and blacklist entries
            settings: Session lifetime and token configuration
            clock: Source of the current epoch time
        """
        self._backend = backend
        self._settings = settings or SessionSettings()
        self._jwt = JWTConfig.from_settings(self._settings)
        self._clock = clock
        self.last_check_degraded = False

    def _now_datetime(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self._clock(), datetime.timezone.utc)

    async def _save(self, session: Session) -> None:
        ttl = max(1, math.ceil(session.expires_at - self._clock()))
        result = await self._backend.set(CacheKeys.session(session.session_id), session.to_dict(), ttl)
        if not result.success:
            raise DegradedDependencyError(self._backend.name, result.error or f"failed to store session {session.session_id}")

    async def create_session(
        self,
        user_id: str,
        refresh_token: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Session:
        """
        Open a session for a learner.

        Args:
            user_id: Learner
            refresh_token: Refresh token to bind; one is issued when omitted
            metadata: Client details

        Returns:
            The new session
        """
        now = self._clock()
        session_id = str(uuid.uuid4())
        if refresh_token is None:
            refresh_token = create_refresh_token(
                self._jwt, user_id, {"sid": session_id}, now=self._now_datetime()
            )

        session = Session(
            session_id=session_id,
            user_id=user_id,
            created_at=now,
            last_active=now,
            expires_at=now + self._settings.session_ttl,
            refresh_token=refresh_token,
            metadata=dict(metadata or {})
        )
        await self._save(session)

        index_key = CacheKeys.user_sessions(user_id)
        await self._backend.sadd(index_key, session_id)
        await self._backend.expire(index_key, self._settings.session_ttl)

        logger.info(f"Created session {session_id} for {user_id}")
        return session

    def issue_access_token(self, session: Session) -> str:
        """Short-lived access token bound to a session."""
        return create_access_token(self._jwt, session.user_id, {"sid": session.session_id}, now=self._now_datetime())

    async def get_session(self, session_id: str) -> Optional[Session]:
        """Live session by id, or None when unknown or lapsed."""
        result = await self._backend.get(CacheKeys.session(session_id))
        if not result.hit:
            return None
        try:
            return Session.from_dict(result.value)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed session {session_id}: {e}")
            return None

    async def touch_session(self, session_id: str) -> Optional[Session]:
        """Record activity and extend the session's lifetime."""
        session = await self.get_session(session_id)
        if session is None or not session.is_active:
            return None
        now = self._clock()
        session.last_active = now
        session.expires_at = now + self._settings.session_ttl
        await self._save(session)
        await self._backend.expire(CacheKeys.user_sessions(session.user_id), self._settings.session_ttl)
        return session

    async def invalidate_session(self, session_id: str, reason: str = "session invalidated") -> bool:
        """
        End a session and revoke its refresh token.

        Returns:
            False if the session was unknown or already inactive
        """
        session = await self.get_session(session_id)
        if session is None or not session.is_active:
            return False

        session.is_active = False
        await self._save(session)
        if session.refresh_token:
            await self.blacklist_token(session.refresh_token, reason)
        await self._backend.srem(CacheKeys.user_sessions(session.user_id), session_id)

        logger.info(f"Invalidated session {session_id} for {session.user_id}: {reason}")
        return True

    async def invalidate_user(self, user_id: str, reason: str = "user invalidated") -> int:
        """
        End every session of a learner, revoking their refresh tokens.

        Returns:
            Number of sessions invalidated
        """
        index_key = CacheKeys.user_sessions(user_id)
        invalidated = 0
        for session_id in await self._backend.smembers(index_key):
            if await self.invalidate_session(session_id, reason):
                invalidated += 1
            else:
                await self._backend.srem(index_key, session_id)

        logger.info(f"Invalidated {invalidated} sessions for {user_id}")
        return invalidated

    async def blacklist_token(self, token: str, reason: str = "revoked") -> bool:
        """
        Revoke a token until it would have expired anyway.

        Tokens without an ``exp`` claim, or that cannot be decoded, stay
        blacklisted for ``default_blacklist_ttl``. Tokens that are already
        expired are not stored. Blacklisting twice is harmless.

        Returns:
            True if the token is now on the blacklist
        """
        now = self._clock()
        try:
            expires_at = token_expiry(token)
        except InvalidTokenError as e:
            logger.warning(f"Blacklisting undecodable token with default lifetime: {e}")
            expires_at = None

        if expires_at is None:
            ttl = self._settings.default_blacklist_ttl
        else:
            remaining = expires_at - now
            if remaining <= 0:
                logger.debug("Token already expired; not blacklisted")
                return False
            ttl = math.ceil(remaining)

        try:
            stored = await self._backend.add(
                CacheKeys.blacklist(token), {"reason": reason, "blacklisted_at": now}, ttl
            )
        except CacheError as e:
            logger.error(f"Failed to blacklist token: {e}")
            return False

        if stored:
            logger.info(f"Blacklisted token for {ttl}s: {reason}")
        return True

    async def is_token_blacklisted(self, token: str) -> bool:
        """
        Check whether a token has been revoked.

        Fails open: an unreachable cache yields False with
        ``last_check_degraded`` set.
        """
        try:
            blacklisted = await self._backend.has(CacheKeys.blacklist(token))
        except CacheError as e:
            self.last_check_degraded = True
            logger.warning(f"Token blacklist unavailable, failing open: {e}")
            return False

        self.last_check_degraded = False
        return blacklisted

    async def get_user_sessions(self, user_id: str) -> List[Session]:
        """Active sessions of a learner, oldest first."""
        sessions = []
        for session_id in await self._backend.smembers(CacheKeys.user_sessions(user_id)):
            session = await self.get_session(session_id)
            if session is not None and session.is_active:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.created_at)

    async def cleanup_expired_sessions(self, user_id: str) -> int:
        """
        Drop index entries of a learner's lapsed sessions.

        Returns:
            Number of entries removed
        """
        index_key = CacheKeys.user_sessions(user_id)
        removed = 0
        for session_id in await self._backend.smembers(index_key):
            if not await self._backend.has(CacheKeys.session(session_id)):
                removed += await self._backend.srem(index_key, session_id)
        if removed:
            logger.debug(f"Removed {removed} lapsed sessions of {user_id}")
        return removed
