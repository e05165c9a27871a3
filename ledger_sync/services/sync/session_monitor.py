"""Game session state monitor.

A game launch session tracks whether a user is currently playing:

    ready/paused --(bet within the resume window)--> active
    active --(no bet for SESSION_PAUSE_AFTER_SECONDS)--> paused
    ended: terminal, never touched here

Bets are observed through ``game_records`` (what the sync engine ingested),
so a resume can lag a real bet by up to one sync interval plus one monitor
interval.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional, Set

from sqlalchemy.orm import Session

from ledger_sync.core.config import settings
from ledger_sync.core.logging import get_logger
from ledger_sync.core.metrics import record_session_transition
from ledger_sync.repositories.ledger_gateway import LedgerStoreGateway
from ledger_sync.utils.timezone import utc_now

logger = get_logger(__name__)

STATE_READY = "ready"
STATE_ACTIVE = "active"
STATE_PAUSED = "paused"
STATE_ENDED = "ended"

MONITORED_STATES = (STATE_READY, STATE_ACTIVE, STATE_PAUSED)


@dataclass
class SessionTransition:
    """New state plus the session timestamps to write with it."""
    new_state: str
    timestamps: Dict[str, datetime] = field(default_factory=dict)


def next_session_state(
    session,
    latest_bet_at: Optional[datetime],
    now: datetime,
    pause_after_seconds: Optional[int] = None,
    resume_window_seconds: Optional[int] = None,
) -> Optional[SessionTransition]:
    """
    Decide what to write for one session, or None to leave it alone.

    An active session that saw a newer bet keeps its state but gets
    ``last_bet_at`` moved forward, which is what keeps it from pausing.
    """
    pause_after = timedelta(seconds=(
        settings.SESSION_PAUSE_AFTER_SECONDS if pause_after_seconds is None else pause_after_seconds
    ))
    resume_window = timedelta(seconds=(
        settings.SESSION_RESUME_WINDOW_SECONDS if resume_window_seconds is None else resume_window_seconds
    ))

    if session.status == STATE_ACTIVE:
        last_bet = session.last_bet_at or session.launched_at
        if latest_bet_at is not None and (last_bet is None or latest_bet_at > last_bet):
            return SessionTransition(STATE_ACTIVE, {"last_bet_at": latest_bet_at})
        if last_bet is not None and now - last_bet > pause_after:
            return SessionTransition(STATE_PAUSED, {"last_bet_checked_at": now, "last_activity_at": now})
        return None

    if session.status in (STATE_READY, STATE_PAUSED):
        if latest_bet_at is None or now - latest_bet_at > resume_window:
            return None
        if session.last_bet_at is not None and latest_bet_at <= session.last_bet_at:
            return None
        return SessionTransition(STATE_ACTIVE, {
            "last_bet_at": latest_bet_at,
            "last_bet_checked_at": now,
            "last_activity_at": now,
        })

    return None


class SessionStateMonitor:
    """Applies ``next_session_state`` to every live session."""

    def __init__(self, db: Session):
        self.gateway = LedgerStoreGateway(db)

    def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Check all ready/active/paused sessions once.

        Returns:
            Counts: checked, activated, paused, refreshed
        """
        now = now or utc_now()
        counts = {"checked": 0, "activated": 0, "paused": 0, "refreshed": 0}

        for session in self.gateway.list_sessions(MONITORED_STATES):
            counts["checked"] += 1
            latest = self.gateway.latest_bet_played_at(session.user_id, since=session.launched_at)
            transition = next_session_state(session, latest, now)
            if transition is None:
                continue

            previous = session.status
            self.gateway.update_game_session_state(session.id, transition.new_state, **transition.timestamps)

            if transition.new_state == previous:
                counts["refreshed"] += 1
                continue

            counts["activated" if transition.new_state == STATE_ACTIVE else "paused"] += 1
            record_session_transition(previous, transition.new_state)
            logger.info(
                f"Session {session.id} {previous} -> {transition.new_state}",
                extra={"user_id": session.user_id},
            )

        return counts

    def eligible_user_ids(self) -> Set[str]:
        """Users with an active or paused session (balance reconciliation filter)."""
        return self.gateway.user_ids_with_sessions((STATE_ACTIVE, STATE_PAUSED))
