"""
Conversation session storage.

Sessions are small JSON documents keyed by session id with a fixed TTL that
is refreshed on every write. Writes are compare-and-set against a version
stamp so two requests racing on the same session cannot silently overwrite
each other.

Two backends share the SessionStore interface:
- InMemorySessionStore: single-process store for development and tests
- RedisSessionStore: Redis-backed store used when REDIS_URL is set
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from redis.exceptions import RedisError, WatchError

from app.errors import SessionConflictError, StoreUnavailableError
from app.utils import format_timestamp, utc_now

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    MENU = "MENU"
    AWAITING_INPUT = "AWAITING_INPUT"
    AWAITING_RECIPIENT = "AWAITING_RECIPIENT"
    AWAITING_AMOUNT = "AWAITING_AMOUNT"
    AWAITING_AUTH = "AWAITING_AUTH"


@dataclass
class ConversationSession:
    """
    State of one conversation.

    state is kept as the raw stored string so a corrupt value survives
    loading and can be recovered by the engine instead of failing here.
    """
    session_id: str
    phone_number: str
    state: str = SessionState.MENU.value
    recipient: Optional[str] = None
    auth_token: Optional[str] = None
    created_at: str = field(default_factory=lambda: format_timestamp(utc_now()))
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, session_id: str, data: Dict[str, Any]) -> "ConversationSession":
        return cls(
            session_id=session_id,
            phone_number=data.get("phone_number") or "",
            state=data.get("state") or SessionState.MENU.value,
            recipient=data.get("recipient"),
            auth_token=data.get("auth_token"),
            created_at=data.get("created_at") or format_timestamp(utc_now()),
            version=int(data.get("version") or 0),
        )


class SessionStore(ABC):
    """Durable mapping from session id to conversation state."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[ConversationSession]:
        """Return the live session, or None if absent or expired."""

    @abstractmethod
    def put(self, session: ConversationSession, ttl: int) -> None:
        """
        Persist a session and refresh its TTL.

        Succeeds only if the stored version still equals session.version
        (an absent session counts as version 0); on success session.version
        is incremented. Raises SessionConflictError otherwise.
        """

    @abstractmethod
    def delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...


class InMemorySessionStore(SessionStore):
    """
    Lightweight in-process store.

    Honors TTLs using a monotonic clock; the clock is injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # session_id -> (payload, expires_at)
        self._sessions: Dict[str, Tuple[Dict[str, Any], float]] = {}

    def _live_payload(self, session_id: str) -> Optional[Dict[str, Any]]:
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at <= self._clock():
            del self._sessions[session_id]
            return None
        return payload

    def get(self, session_id: str) -> Optional[ConversationSession]:
        with self._lock:
            payload = self._live_payload(session_id)
            if payload is None:
                return None
            return ConversationSession.from_dict(session_id, payload)

    def put(self, session: ConversationSession, ttl: int) -> None:
        with self._lock:
            current = self._live_payload(session.session_id)
            current_version = int(current.get("version") or 0) if current else 0
            if current_version != session.version:
                raise SessionConflictError(session.session_id)
            payload = session.to_dict()
            payload["version"] = session.version + 1
            self._sessions[session.session_id] = (payload, self._clock() + ttl)
            session.version += 1

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def ping(self) -> bool:
        return True



class RedisSessionStore(SessionStore):
    """
    Redis-backed session store. Use when REDIS_URL is set in production.

    The compare-and-set runs inside WATCH/MULTI so it holds across processes.
    """

    def __init__(self, url: str, client: Optional[redis.Redis] = None) -> None:
        self._client = client or redis.from_url(url, decode_responses=True)

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def get(self, session_id: str) -> Optional[ConversationSession]:
        try:
            raw = self._client.get(self._key(session_id))
        except RedisError as e:
            raise StoreUnavailableError(f"Session store unavailable: {e}") from e
        data = self._decode(raw)
        if data is None:
            return None
        return ConversationSession.from_dict(session_id, data)

    def put(self, session: ConversationSession, ttl: int) -> None:
        key = self._key(session.session_id)
        payload = session.to_dict()
        payload["version"] = session.version + 1
        try:
            with self._client.pipeline() as pipe:
                pipe.watch(key)
                current = self._decode(pipe.get(key))
                current_version = int(current.get("version") or 0) if current else 0
                if current_version != session.version:
                    pipe.unwatch()
                    raise SessionConflictError(session.session_id)
                pipe.multi()
                pipe.setex(key, ttl, json.dumps(payload, default=str))
                pipe.execute()
        except WatchError as e:
            raise SessionConflictError(session.session_id) from e
        except RedisError as e:
            raise StoreUnavailableError(f"Session store unavailable: {e}") from e
        session.version += 1

    def delete(self, session_id: str) -> None:
        try:
            self._client.delete(self._key(session_id))
        except RedisError as e:
            raise StoreUnavailableError(f"Session store unavailable: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False


def build_session_store(redis_url: Optional[str]) -> SessionStore:
    """Use Redis when configured, else the in-memory store."""
    if redis_url:
        logger.info("Using Redis session store")
        return RedisSessionStore(redis_url)
    logger.warning("REDIS_URL not set, sessions are kept in memory")
    return InMemorySessionStore()
