"""
Interaction sessions: short-lived per-phone state (flow, step, context).

Every write goes to the ephemeral cache and to the durable
InteractionSession table; a cache miss rehydrates from the durable copy when
it has not itself expired.
"""
import uuid
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from config.cache import SessionCache
from .models import InteractionSession
from .schema import SessionState

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 3600


def session_cache_key(phone: str) -> str:
    return f"session:{phone}"


class SessionService:

    def __init__(
        self,
        db: Session,
        cache: SessionCache,
        ttl_seconds: int = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def create_session(self, phone: str, context: Optional[Dict[str, Any]] = None) -> SessionState:
        now = self.clock()
        state = SessionState(
            session_id=str(uuid.uuid4()),
            phone_number=phone,
            context=dict(context or {}),
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        self._expire_durable(phone, now)
        self._persist(state)
        logger.info(f"Created session {state.session_id}", extra={"phone": phone})
        return state

    def get_by_phone(self, phone: str, create_if_missing: bool = True) -> Optional[SessionState]:
        """
        Current session for ``phone``. Expired sessions are a miss, never an
        error; with ``create_if_missing`` a fresh session replaces them.
        """
        state = self._load(phone)
        if state is None and create_if_missing:
            return self.create_session(phone)
        return state

    def update(
        self,
        phone: str,
        current_flow: Optional[str] = None,
        current_step: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        increment_messages: bool = False,
    ) -> SessionState:
        state = self.get_by_phone(phone)
        now = self.clock()

        if current_flow is not None:
            state.current_flow = current_flow
        if current_step is not None:
            state.current_step = current_step
        if context:
            state.context = {**state.context, **context}
        if increment_messages:
            state.message_count += 1

        state.last_activity = now
        # Expiry only ever moves forward
        state.expires_at = max(state.expires_at, now + timedelta(seconds=self.ttl_seconds))
        self._persist(state)
        return state

    def extend(self, phone: str, seconds: Optional[int] = None) -> Optional[SessionState]:
        state = self.get_by_phone(phone, create_if_missing=False)
        if state is None:
            return None
        state.expires_at = state.expires_at + timedelta(seconds=seconds or self.ttl_seconds)
        self._persist(state)
        return state

    def end(self, phone: str) -> bool:
        """Drop the cached session and mark the durable copy expired"""
        self._cache_delete(phone)
        ended = self._expire_durable(phone, self.clock())
        if ended:
            logger.info("Ended session", extra={"phone": phone})
        return ended > 0

    def cleanup_expired(self) -> int:
        """Delete durable sessions past expiry. Returns the number removed."""
        removed = (
            self.db.query(InteractionSession)
            .filter(InteractionSession.expires_at <= self.clock())
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if removed:
            logger.info(f"🧹 Removed {removed} expired sessions")
        return removed

    # ------------------------------------------------------------------

    def _load(self, phone: str) -> Optional[SessionState]:
        now = self.clock()

        cached = self._cache_get(phone)
        if cached is not None:
            state = SessionState(**cached)
            if not state.is_expired(now):
                return state
            self._cache_delete(phone)
            return None

        row = (
            self.db.query(InteractionSession)
            .filter(InteractionSession.phone_number == phone, InteractionSession.expires_at > now)
            .order_by(InteractionSession.last_activity.desc())
            .first()
        )
        if not row:
            return None

        data = row.session_data or {}
        state = SessionState(
            session_id=row.id,
            phone_number=row.phone_number,
            current_flow=data.get("current_flow"),
            current_step=data.get("current_step"),
            context=data.get("context") or {},
            message_count=data.get("message_count", 0),
            created_at=row.created_at,
            last_activity=row.last_activity,
            expires_at=row.expires_at,
        )
        logger.info(f"♻️ Rehydrated session {state.session_id} from durable store", extra={"phone": phone})
        self._cache_set(state, now)
        return state

    def _persist(self, state: SessionState) -> None:
        row = self.db.get(InteractionSession, state.session_id)
        if row is None:
            row = InteractionSession(id=state.session_id, phone_number=state.phone_number, created_at=state.created_at)
            self.db.add(row)
        row.session_data = state.to_session_data()
        row.last_activity = state.last_activity
        row.expires_at = state.expires_at
        self.db.commit()
        self._cache_set(state, self.clock())

    def _expire_durable(self, phone: str, now: datetime) -> int:
        count = (
            self.db.query(InteractionSession)
            .filter(InteractionSession.phone_number == phone, InteractionSession.expires_at > now)
            .update({InteractionSession.expires_at: now}, synchronize_session=False)
        )
        self.db.commit()
        return count

    # Cache failures degrade to the durable store

    def _cache_get(self, phone: str) -> Optional[Dict[str, Any]]:
        try:
            return self.cache.get_json(session_cache_key(phone))
        except Exception as e:
            logger.warning(f"Session cache read failed: {e}")
            return None

    def _cache_set(self, state: SessionState, now: datetime) -> None:
        ttl = int((state.expires_at - now).total_seconds())
        try:
            self.cache.set_json(session_cache_key(state.phone_number), state.model_dump(mode="json"), ttl)
        except Exception as e:
            logger.warning(f"Session cache write failed: {e}")

    def _cache_delete(self, phone: str) -> None:
        try:
            self.cache.delete(session_cache_key(phone))
        except Exception as e:
            logger.warning(f"Session cache delete failed: {e}")
