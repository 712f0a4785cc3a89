"""
MODULE OVERVIEW:
The session bookkeeping that survives reconnects.

WHAT IS HAPPENING HERE:
Three fields decide how the next connection is opened: the session id (can we RESUME?),
the last dispatch sequence (where to resume from, and what every heartbeat carries) and
the reconnect attempt counter (how long to back off). The reader task, the heartbeat
task and the reconnect task all touch them, so they are only reachable through the
methods below. Each method is synchronous and never awaits, which makes it a single
transaction on the event loop; readers that need several fields at once take a
`snapshot()`.
"""
from shared.models import SessionSnapshot

UNSET_SEQUENCE = -1


class SessionState:
    def __init__(self):
        self._session_id: str | None = None
        self._last_sequence: int = UNSET_SEQUENCE
        self._reconnect_attempts: int = 0

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def has_session(self) -> bool:
        return bool(self._session_id)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self._session_id,
            last_sequence=self._last_sequence,
            reconnect_attempts=self._reconnect_attempts,
        )

    def record_sequence(self, sequence: int | None) -> bool:
        """Advance the sequence from a DISPATCH. Stale or missing values are ignored."""
        if sequence is None or sequence < self._last_sequence:
            return False
        self._last_sequence = sequence
        return True

    def on_ready(self, session_id: str, sequence: int | None) -> None:
        # READY opens a new sequence, so it may move the counter backwards
        self._session_id = session_id
        self._reconnect_attempts = 0
        if sequence is not None:
            self._last_sequence = sequence

    def record_failure(self) -> int:
        self._reconnect_attempts += 1
        return self._reconnect_attempts

    def invalidate(self) -> None:
        """Forget the session after a non-resumable disconnect; the next handshake IDENTIFYs."""
        self._session_id = None
