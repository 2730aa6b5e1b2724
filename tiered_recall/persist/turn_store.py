"""
Turn persistence layer.

Append-only log of conversation turns keyed by session and user, plus the
session table and the tier transition log. The turn store is the only
writer of turn rows; tier columns are written exclusively through
`record_transitions`, which the tier manager calls.
"""

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Union

from tiered_recall.errors import SessionEnded, SessionNotFound, TurnNotFound
from tiered_recall.memory.schemas import Session, Tier, TierTransition, Turn
from tiered_recall.memory.tokens import estimate_tokens
from .sqlite_store import TurnDatabase


logger = logging.getLogger(__name__)


TURN_COLUMNS = (
    "t.id, t.session_id, t.user_id, t.sequence_number, t.user_text, t.assistant_text, "
    "t.created_at, t.completed_at, t.token_count_user, t.token_count_assistant, "
    "t.tier, t.tier_changed_at, t.criticality"
)


@dataclass(frozen=True)
class IndexUpdate:
    """Event emitted after a turn's indexable text changes."""

    kind: str  # "append" or "complete"
    turn: Turn


IndexListener = Callable[[IndexUpdate], None]


def _row_to_turn(row: sqlite3.Row) -> Turn:
    return Turn(
        id=row["id"],
        session_id=row["session_id"],
        user_id=row["user_id"],
        sequence_number=row["sequence_number"],
        user_text=row["user_text"],
        assistant_text=row["assistant_text"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
        token_count_user=row["token_count_user"],
        token_count_assistant=row["token_count_assistant"],
        tier=Tier(row["tier"]),
        tier_changed_at=row["tier_changed_at"],
        criticality=bool(row["criticality"]),
    )


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        user_id=row["user_id"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        turn_count=row["turn_count"],
        total_tokens=row["total_tokens"],
        last_turn_at=row["last_turn_at"],
    )


def _tier_clause(tiers: Optional[Sequence[Tier]]) -> Tuple[str, list]:
    if not tiers:
        return "", []
    placeholders = ", ".join("?" for _ in tiers)
    return f" AND t.tier IN ({placeholders})", [Tier(t).value for t in tiers]


class TurnStore:
    """
    Durable store for turns, sessions and tier transitions.

    Features:
    - Monotonic sequence numbers per session
    - Reads ordered by (session start, sequence number)
    - Capped cross-session reads for Cold queries
    - Atomic tier mutation + transition log writes
    - Index-update events for the ranked index
    """

    def __init__(
        self,
        db: Union[TurnDatabase, str, Path, None] = None,
        user_query_cap: int = 100,
    ):
        """
        Initialize turn store.

        Args:
            db: TurnDatabase instance or path (default: data/memory/turns.db)
            user_query_cap: Hard cap on get_turns_for_user results
        """
        if db is None:
            db = Path("data/memory/turns.db")
        self.db = db if isinstance(db, TurnDatabase) else TurnDatabase(db)
        self.user_query_cap = user_query_cap
        self._listeners: List[IndexListener] = []

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: IndexListener) -> None:
        """Register a callback for index-update events."""
        self._listeners.append(listener)

    def _emit(self, kind: str, turn: Turn) -> None:
        event = IndexUpdate(kind=kind, turn=turn)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                # The index is a rebuildable projection; the write already committed
                logger.exception("Index listener failed for turn %s", turn.id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: str) -> Session:
        """
        Create and store a new active session.

        Args:
            user_id: Owner of the session

        Returns:
            Created Session
        """
        session = Session(id=f"sess_{uuid.uuid4().hex[:16]}", user_id=user_id, started_at=time.time())
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO sessions (id, user_id, started_at, turn_count, total_tokens) "
                "VALUES (?, ?, ?, 0, 0)",
                (session.id, session.user_id, session.started_at),
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self.db.fetch_one("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return _row_to_session(row) if row else None

    def require_session(self, session_id: str) -> Session:
        """Get a session or raise SessionNotFound."""
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def get_active_session(self, user_id: str) -> Optional[Session]:
        """Most recent session for the user with ended_at unset."""
        row = self.db.fetch_one(
            "SELECT * FROM sessions WHERE user_id = ? AND ended_at IS NULL "
            "ORDER BY started_at DESC LIMIT 1",
            (user_id,),
        )
        return _row_to_session(row) if row else None

    def last_turn_time(self, user_id: str) -> Optional[float]:
        """Timestamp of the user's latest turn across all sessions."""
        row = self.db.fetch_one(
            "SELECT MAX(last_turn_at) FROM sessions WHERE user_id = ?",
            (user_id,),
        )
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Turns: writes
    # ------------------------------------------------------------------

    def append_turn(self, session_id: str, user_text: str, token_count: Optional[int] = None) -> str:
        """
        Append a new turn with assistant text still pending.

        Args:
            session_id: Active session to append to
            user_text: The user's message
            token_count: Token count of user_text (estimated if omitted)

        Returns:
            New turn id

        Raises:
            SessionNotFound, SessionEnded, StorageUnavailable
        """
        now = time.time()
        tokens = estimate_tokens(user_text) if token_count is None else token_count
        turn_id = f"turn_{uuid.uuid4().hex[:16]}"

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT user_id, ended_at FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                raise SessionNotFound(session_id)
            if row["ended_at"] is not None:
                raise SessionEnded(session_id)

            sequence_number = conn.execute(
                "SELECT COALESCE(MAX(sequence_number), 0) + 1 FROM turns WHERE session_id = ?",
                (session_id,),
            ).fetchone()[0]

            conn.execute(
                "INSERT INTO turns (id, session_id, user_id, sequence_number, user_text, "
                "created_at, token_count_user, tier, tier_changed_at, criticality) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)",
                (turn_id, session_id, row["user_id"], sequence_number, user_text,
                 now, tokens, Tier.HOT.value, now),
            )
            conn.execute(
                "UPDATE sessions SET turn_count = turn_count + 1, "
                "total_tokens = total_tokens + ?, last_turn_at = ? WHERE id = ?",
                (tokens, now, session_id),
            )

        turn = Turn(
            id=turn_id,
            session_id=session_id,
            user_id=row["user_id"],
            sequence_number=sequence_number,
            user_text=user_text,
            created_at=now,
            token_count_user=tokens,
            tier=Tier.HOT,
            tier_changed_at=now,
        )
        self._emit("append", turn)
        return turn_id

    def complete_turn(
        self,
        turn_id: str,
        assistant_text: str,
        token_counts: Optional[Tuple[int, int]] = None,
    ) -> Turn:
        """
        Record the assistant output for a turn.

        Args:
            turn_id: Turn to complete
            assistant_text: Generated response
            token_counts: (user_tokens, assistant_tokens); estimated if omitted

        Returns:
            The updated Turn
        """
        now = time.time()
        with self.db.transaction() as conn:
            row = conn.execute(
                f"SELECT {TURN_COLUMNS} FROM turns t WHERE t.id = ?", (turn_id,)
            ).fetchone()
            if row is None:
                raise TurnNotFound(turn_id)
            previous = _row_to_turn(row)

            if token_counts is None:
                user_tokens = previous.token_count_user
                assistant_tokens = estimate_tokens(assistant_text)
            else:
                user_tokens, assistant_tokens = token_counts

            delta = (user_tokens + assistant_tokens) - previous.total_tokens
            conn.execute(
                "UPDATE turns SET assistant_text = ?, completed_at = ?, "
                "token_count_user = ?, token_count_assistant = ? WHERE id = ?",
                (assistant_text, now, user_tokens, assistant_tokens, turn_id),
            )
            conn.execute(
                "UPDATE sessions SET total_tokens = total_tokens + ?, last_turn_at = ? WHERE id = ?",
                (delta, now, previous.session_id),
            )

        turn = previous.model_copy(update={
            "assistant_text": assistant_text,
            "completed_at": now,
            "token_count_user": user_tokens,
            "token_count_assistant": assistant_tokens,
        })
        self._emit("complete", turn)
        return turn

    def set_criticality(self, turn_id: str, critical: bool = True) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE turns SET criticality = ? WHERE id = ?", (int(critical), turn_id)
            )
            if cursor.rowcount == 0:
                raise TurnNotFound(turn_id)

    def record_transitions(
        self,
        transitions: Sequence[TierTransition],
        ended_session_id: Optional[str] = None,
        ended_at: Optional[float] = None,
    ) -> None:
        """
        Apply tier changes and append their log entries in one transaction.

        If any write fails nothing is committed: no tier change is ever
        visible without its log entry.

        Args:
            transitions: Transition entries to log and apply
            ended_session_id: Also mark this session ended in the same transaction
            ended_at: End timestamp for the session (default: now)
        """
        with self.db.transaction() as conn:
            for tr in transitions:
                conn.execute(
                    "INSERT INTO tier_transitions (id, turn_id, from_tier, to_tier, transitioned_at, reason) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (tr.id, tr.turn_id, tr.from_tier.value, tr.to_tier.value, tr.transitioned_at, tr.reason),
                )
                cursor = conn.execute(
                    "UPDATE turns SET tier = ?, tier_changed_at = ? WHERE id = ? AND tier = ?",
                    (tr.to_tier.value, tr.transitioned_at, tr.turn_id, tr.from_tier.value),
                )
                if cursor.rowcount != 1:
                    # Stale from_tier or missing turn: abort the whole batch
                    raise TurnNotFound(tr.turn_id)

            if ended_session_id is not None:
                conn.execute(
                    "UPDATE sessions SET ended_at = ? WHERE id = ? AND ended_at IS NULL",
                    (ended_at or time.time(), ended_session_id),
                )

    # ------------------------------------------------------------------
    # Turns: reads
    # ------------------------------------------------------------------

    def get_turn(self, turn_id: str) -> Optional[Turn]:
        row = self.db.fetch_one(f"SELECT {TURN_COLUMNS} FROM turns t WHERE t.id = ?", (turn_id,))
        return _row_to_turn(row) if row else None

    def get_turns(
        self,
        session_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
        tiers: Optional[Sequence[Tier]] = None,
    ) -> List[Turn]:
        """
        Get a session's turns in sequence order.

        Args:
            session_id: Session to read
            offset: Number of turns to skip
            limit: Maximum turns (None = all)
            tiers: Optional tier filter

        Returns:
            Turns ordered by sequence_number ascending
        """
        tier_sql, tier_params = _tier_clause(tiers)
        rows = self.db.fetch_all(
            f"SELECT {TURN_COLUMNS} FROM turns t WHERE t.session_id = ?{tier_sql} "
            "ORDER BY t.sequence_number ASC LIMIT ? OFFSET ?",
            [session_id, *tier_params, -1 if limit is None else limit, offset],
        )
        return [_row_to_turn(r) for r in rows]

    def get_turns_for_user(
        self,
        user_id: str,
        limit: Optional[int] = None,
        tiers: Optional[Sequence[Tier]] = None,
    ) -> List[Turn]:
        """
        Get a user's most recent turns across all sessions.

        The result is capped at user_query_cap regardless of `limit` to bound
        query cost, and returned ordered by (session start, sequence number).
        """
        cap = self.user_query_cap if limit is None else min(limit, self.user_query_cap)
        tier_sql, tier_params = _tier_clause(tiers)
        rows = self.db.fetch_all(
            f"SELECT {TURN_COLUMNS}, s.started_at AS session_started FROM turns t "
            "JOIN sessions s ON s.id = t.session_id "
            f"WHERE t.user_id = ?{tier_sql} "
            "ORDER BY s.started_at DESC, t.sequence_number DESC LIMIT ?",
            [user_id, *tier_params, cap],
        )
        turns = [_row_to_turn(r) for r in rows]
        turns.reverse()
        return turns

    def iter_all_turns(self) -> Iterator[Turn]:
        """Every stored turn, for rebuilding derived indexes."""
        rows = self.db.fetch_all(
            f"SELECT {TURN_COLUMNS} FROM turns t JOIN sessions s ON s.id = t.session_id "
            "ORDER BY s.started_at ASC, t.sequence_number ASC"
        )
        for row in rows:
            yield _row_to_turn(row)

    def get_transitions(
        self,
        turn_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> List[TierTransition]:
        """Transition log entries for one turn or one session, oldest first."""
        if turn_id is not None:
            rows = self.db.fetch_all(
                "SELECT * FROM tier_transitions WHERE turn_id = ? ORDER BY transitioned_at ASC, rowid ASC",
                (turn_id,),
            )
        elif session_id is not None:
            rows = self.db.fetch_all(
                "SELECT tr.* FROM tier_transitions tr JOIN turns t ON t.id = tr.turn_id "
                "WHERE t.session_id = ? ORDER BY tr.transitioned_at ASC, tr.rowid ASC",
                (session_id,),
            )
        else:
            rows = self.db.fetch_all(
                "SELECT * FROM tier_transitions ORDER BY transitioned_at ASC, rowid ASC"
            )
        return [
            TierTransition(
                id=r["id"],
                turn_id=r["turn_id"],
                from_tier=Tier(r["from_tier"]),
                to_tier=Tier(r["to_tier"]),
                transitioned_at=r["transitioned_at"],
                reason=r["reason"],
            )
            for r in rows
        ]

    def close(self) -> None:
        self.db.close()
