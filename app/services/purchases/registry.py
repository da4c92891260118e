"""
SessionRegistry — in-memory store of in-flight purchase sessions.

Consistency contract:
- one lock per shard (payment ids are striped over shards); every read-modify-write
  of a session happens under its shard lock, so transitions of one payment id are
  totally ordered while different payment ids proceed in parallel;
- buyer -> active payment id index, updated together with creation and retirement
  (lock order: shard lock, then index lock);
- sessions are immutable snapshots, callers get the current one and change it only
  through transition() (compare-and-swap on state).

Nothing here performs network I/O; locks are held only for dict operations.
"""
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.services.purchases.errors import (
    ConcurrentPurchase,
    ConflictError,
    DuplicateSession,
    NotFound,
)
from app.services.purchases.models import (
    EXPIRABLE_STATES,
    PurchaseSession,
    SessionState,
)
from app.utils.metrics import active_sessions

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset({
        SessionState.PENDING,
        SessionState.CANCELED,
        SessionState.EXPIRED,
    }),
    SessionState.PENDING: frozenset({
        SessionState.PENDING,
        SessionState.SUCCEEDED,
        SessionState.CANCELED,
        SessionState.EXPIRED,
        SessionState.FAILED,
    }),
    SessionState.SUCCEEDED: frozenset({
        SessionState.PROVISIONED,
        SessionState.FAILED,
    }),
}

# Fields a transition may set besides state
MUTABLE_FIELDS = frozenset({"confirmation_url", "failure_reason", "access_link"})

DEFAULT_SHARDS = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Shard:
    __slots__ = ("lock", "sessions")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.sessions: dict[str, PurchaseSession] = {}


class SessionRegistry:
    def __init__(
        self,
        shard_count: int = DEFAULT_SHARDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self._shards = [_Shard() for _ in range(shard_count)]
        self._buyers: dict[str, str] = {}
        self._buyers_lock = threading.Lock()
        self._clock = clock or _utcnow

    def _shard(self, payment_id: str) -> _Shard:
        return self._shards[hash(payment_id) % len(self._shards)]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, payment_id: str) -> PurchaseSession:
        shard = self._shard(payment_id)
        with shard.lock:
            session = shard.sessions.get(payment_id)
        if session is None:
            raise NotFound(f"Unknown payment {payment_id}", payment_id=payment_id)
        return session

    def find_active(self, buyer_id: str) -> PurchaseSession | None:
        """Non-terminal session of the buyer, if any."""
        with self._buyers_lock:
            payment_id = self._buyers.get(buyer_id)
        if payment_id is None:
            return None
        # Index lock released first: shard lock must never be taken under it
        shard = self._shard(payment_id)
        with shard.lock:
            session = shard.sessions.get(payment_id)
        if session is None or session.is_terminal:
            return None
        return session

    def active_count(self) -> int:
        with self._buyers_lock:
            return len(self._buyers)

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.sessions)
        return total

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        payment_id: str,
        buyer_id: str,
        channel_id: str,
        confirmation_url: str | None = None,
    ) -> PurchaseSession:
        shard = self._shard(payment_id)
        now = self._clock()
        with shard.lock:
            if payment_id in shard.sessions:
                raise DuplicateSession(f"Payment {payment_id} already tracked", payment_id=payment_id)
            with self._buyers_lock:
                active_id = self._buyers.get(buyer_id)
                if active_id is not None:
                    raise ConcurrentPurchase(
                        f"Buyer {buyer_id} already has purchase {active_id} in progress",
                        payment_id=active_id,
                    )
                self._buyers[buyer_id] = payment_id
            session = PurchaseSession(
                payment_id=payment_id,
                buyer_id=buyer_id,
                channel_id=channel_id,
                created_at=now,
                updated_at=now,
                confirmation_url=confirmation_url,
            )
            shard.sessions[payment_id] = session
        active_sessions.inc()
        logger.info(
            "session_created",
            extra={"payment_id": payment_id, "buyer_id": buyer_id, "state": session.state.value},
        )
        return session

    def transition(
        self,
        payment_id: str,
        expected_state: SessionState,
        next_state: SessionState,
        **changes,
    ) -> PurchaseSession:
        """
        Compare-and-swap the session state.
        Raises NotFound, or ConflictError if the session is not in expected_state.
        Terminal sessions never move again.
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot change session fields: {', '.join(sorted(unknown))}")
        if next_state not in ALLOWED_TRANSITIONS.get(expected_state, frozenset()):
            raise ValueError(f"Transition {expected_state.value} -> {next_state.value} is not allowed")

        shard = self._shard(payment_id)
        now = self._clock()
        with shard.lock:
            current = shard.sessions.get(payment_id)
            if current is None:
                raise NotFound(f"Unknown payment {payment_id}", payment_id=payment_id)
            if current.state != expected_state:
                raise ConflictError(
                    f"Payment {payment_id} is {current.state.value}, expected {expected_state.value}",
                    payment_id=payment_id,
                    actual_state=current.state,
                )
            updated = replace(current, state=next_state, updated_at=now, **changes)
            if next_state.is_terminal:
                updated = replace(updated, finished_at=now)
                self._release_buyer(updated)
            shard.sessions[payment_id] = updated

        logger.info(
            "session_transition",
            extra={
                "payment_id": payment_id,
                "old_state": expected_state.value,
                "new_state": next_state.value,
            },
        )
        return updated

    def sweep_expired(self, now: datetime, ttl: timedelta) -> list[str]:
        """
        Move CREATED/PENDING sessions older than ttl to EXPIRED.
        Each session is returned by exactly one sweep.
        """
        expired: list[str] = []
        for shard in self._shards:
            with shard.lock:
                for payment_id, session in list(shard.sessions.items()):
                    if session.state not in EXPIRABLE_STATES:
                        continue
                    if now - session.created_at <= ttl:
                        continue
                    updated = replace(
                        session,
                        state=SessionState.EXPIRED,
                        updated_at=now,
                        finished_at=now,
                    )
                    self._release_buyer(updated)
                    shard.sessions[payment_id] = updated
                    expired.append(payment_id)
        if expired:
            logger.info("sessions_expired", extra={"expired_count": len(expired)})
        return expired

    def purge_retired(self, now: datetime, retention: timedelta) -> int:
        """Drop terminal sessions that finished more than retention ago."""
        purged = 0
        for shard in self._shards:
            with shard.lock:
                for payment_id, session in list(shard.sessions.items()):
                    if not session.is_terminal or session.finished_at is None:
                        continue
                    if now - session.finished_at >= retention:
                        del shard.sessions[payment_id]
                        purged += 1
        if purged:
            logger.info("sessions_purged", extra={"purged_count": purged})
        return purged

    def _release_buyer(self, session: PurchaseSession) -> None:
        """Drop the buyer index entry; caller holds the session's shard lock."""
        with self._buyers_lock:
            if self._buyers.get(session.buyer_id) == session.payment_id:
                del self._buyers[session.buyer_id]
                active_sessions.dec()
