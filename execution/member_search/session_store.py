"""
Sessions and Per-User Rate Limits

Conversation state lives in the shared key-value store, not in process
memory, so any worker can serve any user and restarts lose nothing.

    session:{user_id}         -> Session dict, sliding TTL (default 30 min)
    rate:{category}:{user_id} -> fixed-window counter (count, window_start)

History is kept in arrival order and capped FIFO: each request takes a
sequence number when it is admitted, and its turn is inserted by that
number once the answer is ready. Rate admission is a single atomic
store operation, so two concurrent requests can never both take the last
slot.
"""

import math
import time
import logging
from typing import Callable, Optional
from dataclasses import dataclass, field

from .config import SessionConfig
from .errors import RateLimitExceeded
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)

MESSAGE = "message"
SEARCH = "search"
RATE_CATEGORIES = (MESSAGE, SEARCH)


@dataclass
class Turn:
    """One entry of conversation history."""
    turn_id: str
    query_text: str
    extraction: dict = field(default_factory=dict)
    result_summary: dict = field(default_factory=dict)
    kind: str = SEARCH  # "search" when the ranker ran, "message" otherwise
    created_at: float = 0.0
    sequence: int = 0  # Arrival order within the session; 0 means unsequenced

    def to_dict(self) -> dict:
        return {
            "turn_id": self.turn_id,
            "query_text": self.query_text,
            "extraction": self.extraction,
            "result_summary": self.result_summary,
            "kind": self.kind,
            "created_at": self.created_at,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Turn":
        return cls(
            turn_id=data["turn_id"],
            query_text=data.get("query_text", ""),
            extraction=data.get("extraction") or {},
            result_summary=data.get("result_summary") or {},
            kind=data.get("kind", SEARCH),
            created_at=data.get("created_at", 0.0),
            sequence=data.get("sequence", 0),
        )


@dataclass
class Session:
    """Per-user conversation state."""
    user_id: str
    tenant_id: Optional[str] = None
    history: list[Turn] = field(default_factory=list)
    created_at: float = 0.0
    last_active_at: float = 0.0
    message_counter: int = 0
    search_counter: int = 0
    next_sequence: int = 0  # Last arrival sequence number handed out

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "history": [t.to_dict() for t in self.history],
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
            "message_counter": self.message_counter,
            "search_counter": self.search_counter,
            "next_sequence": self.next_sequence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            user_id=data["user_id"],
            tenant_id=data.get("tenant_id"),
            history=[Turn.from_dict(t) for t in data.get("history", [])],
            created_at=data.get("created_at", 0.0),
            last_active_at=data.get("last_active_at", 0.0),
            message_counter=data.get("message_counter", 0),
            search_counter=data.get("search_counter", 0),
            next_sequence=data.get("next_sequence", 0),
        )


@dataclass
class RateLimitDecision:
    """Outcome of one rate-limit admission check."""
    allowed: bool
    retry_after: int
    current: int
    limit: int
    category: str = SEARCH
    window_seconds: float = 3600


class SessionStore:
    """
    Session history and rate windows on a KeyValueStore.

    Usage:
        store = SessionStore(InMemoryKeyValueStore())
        decision = store.check_and_increment("user-1", "search")
        store.append_history("user-1", Turn(turn_id="m1", query_text="find AI experts"))
    """

    def __init__(
        self,
        kv: KeyValueStore,
        config: Optional[SessionConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.config = config or SessionConfig()
        self._clock = clock

    @staticmethod
    def session_key(user_id: str) -> str:
        return f"session:{user_id}"

    @staticmethod
    def rate_key(user_id: str, category: str) -> str:
        return f"rate:{category}:{user_id}"

    def limit_for(self, category: str) -> int:
        if category == MESSAGE:
            return self.config.messages_per_window
        if category == SEARCH:
            return self.config.searches_per_window
        raise ValueError(f"Unknown rate-limit category: {category}")

    # =========================================================================
    # Sessions
    # =========================================================================

    def _new_session(self, user_id: str, tenant_id: Optional[str], now: float) -> dict:
        logger.info(f"Creating session for user {user_id}")
        return Session(
            user_id=user_id,
            tenant_id=tenant_id,
            created_at=now,
            last_active_at=now,
        ).to_dict()

    def get_session(self, user_id: str) -> Optional[Session]:
        """Current session, or None if it never existed or has expired."""
        data = self.kv.get(self.session_key(user_id))
        return Session.from_dict(data) if data else None

    def get_or_create_session(
        self,
        user_id: str,
        tenant_id: Optional[str] = None,
        reserve_turn: bool = False,
    ) -> Session:
        """
        Load the session, creating it on first contact and sliding its TTL.

        With ``reserve_turn`` the same atomic update also hands out the next
        arrival sequence number, returned as ``session.next_sequence``.
        Pass it on the Turn so append_history() can place it correctly.
        """
        if not user_id:
            raise ValueError("user_id is required")

        def _touch(current: Optional[dict]) -> dict:
            now = self._clock()
            data = current or self._new_session(user_id, tenant_id, now)
            data["last_active_at"] = now
            if tenant_id and not data.get("tenant_id"):
                data["tenant_id"] = tenant_id
            if reserve_turn:
                data["next_sequence"] = data.get("next_sequence", 0) + 1
            return data

        data = self.kv.update(
            self.session_key(user_id), _touch, ttl_seconds=self.config.session_ttl_seconds
        )
        return Session.from_dict(data)

    def append_history(self, user_id: str, turn: Turn, tenant_id: Optional[str] = None) -> Session:
        """
        Record a turn, evicting the oldest beyond max_history.

        Sequenced turns are inserted after every turn that arrived before
        them, so a slow request finishing late still lands in its arrival
        position. Unsequenced turns are appended.

        Replaying a turn_id already in history is a no-op, so retried
        deliveries of the same message do not duplicate it.
        """
        max_history = self.config.max_history

        def _append(current: Optional[dict]) -> dict:
            now = self._clock()
            data = current or self._new_session(user_id, tenant_id, now)
            data["last_active_at"] = now

            history = data.get("history", [])
            if any(t.get("turn_id") == turn.turn_id for t in history):
                logger.debug(f"Turn {turn.turn_id} already recorded for {user_id}")
                return data

            entry = turn.to_dict()
            if not entry["created_at"]:
                entry["created_at"] = now
            position = len(history)
            if turn.sequence:
                while position > 0 and history[position - 1].get("sequence", 0) > turn.sequence:
                    position -= 1
            history.insert(position, entry)
            if len(history) > max_history:
                history = history[-max_history:]
            data["history"] = history

            data["message_counter"] = data.get("message_counter", 0) + 1
            if turn.kind == SEARCH:
                data["search_counter"] = data.get("search_counter", 0) + 1
            return data

        data = self.kv.update(
            self.session_key(user_id), _append, ttl_seconds=self.config.session_ttl_seconds
        )
        return Session.from_dict(data)

    def get_history(self, user_id: str) -> list[Turn]:
        session = self.get_session(user_id)
        return session.history if session else []

    def clear_session(self, user_id: str) -> bool:
        deleted = self.kv.delete(self.session_key(user_id))
        if deleted:
            logger.info(f"Cleared session for user {user_id}")
        return deleted

    # =========================================================================
    # Rate limits
    # =========================================================================

    def check_and_increment(
        self,
        user_id: str,
        category: str,
        limit: Optional[int] = None,
        window_seconds: Optional[float] = None,
    ) -> RateLimitDecision:
        """
        Atomically admit one event in the user's current window.

        A rejection does not advance the counter.
        """
        limit = self.limit_for(category) if limit is None else limit
        window = self.config.rate_window_seconds if window_seconds is None else window_seconds
        now = self._clock()

        admission = self.kv.check_and_increment(
            self.rate_key(user_id, category), limit, window, now=now
        )

        if admission.allowed:
            return RateLimitDecision(True, 0, admission.count, limit, category, window)

        remaining = admission.window_start + window - now
        retry_after = max(1, math.ceil(remaining))
        logger.warning(
            f"Rate limit hit: user={user_id} category={category} "
            f"count={admission.count}/{limit} retry_after={retry_after}s"
        )
        return RateLimitDecision(False, retry_after, admission.count, limit, category, window)

    def enforce(
        self,
        user_id: str,
        category: str,
        limit: Optional[int] = None,
        window_seconds: Optional[float] = None,
    ) -> RateLimitDecision:
        """
        check_and_increment() that raises on rejection.

        Raises:
            RateLimitExceeded: the window is full
        """
        decision = self.check_and_increment(user_id, category, limit, window_seconds)
        if not decision.allowed:
            raise RateLimitExceeded(
                f"{category.capitalize()} limit reached ({decision.limit} per window). "
                f"Try again in {decision.retry_after}s.",
                category=category,
                current=decision.current,
                limit=decision.limit,
                retry_after=decision.retry_after,
                window_seconds=decision.window_seconds,
            )
        return decision
