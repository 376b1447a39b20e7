"""
Sessions - one browsing cursor per viewer.

A session remembers where in the shared queue its viewer is. New sessions
start near the live edge so a first visit shows recent clips. Relative moves
that fall off either end of the queue snap to a random position, and the
cursor stays anchored there for the next move.

Sessions are kept in memory only and expire after a fixed retention window;
SessionSweeper removes them on its own schedule.
"""

import logging
import random
import secrets
import threading
import time
from dataclasses import dataclass

from board.errors import EmptyQueueError

log = logging.getLogger(__name__)

LIVE_EDGE = 10
RETENTION_SECONDS = 12 * 60 * 60
SWEEP_INTERVAL_SECONDS = 60 * 60


@dataclass
class Session:
    position: int
    effective_position: int
    created_at: float


class SessionStore:
    """Table of sessions keyed by an opaque random identifier."""

    def __init__(self, live_edge=LIVE_EDGE, retention=RETENTION_SECONDS,
                 clock=time.time, rng=None):
        self.live_edge = live_edge
        self.retention = retention
        self.clock = clock
        self.rng = rng or random.Random()
        self._sessions = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id):
        with self._lock:
            return session_id in self._sessions

    def initial_position(self, queue_length):
        return max(0, queue_length - self.live_edge)

    def _new_session(self, queue_length):
        position = self.initial_position(queue_length)
        return Session(position=position, effective_position=position,
                       created_at=self.clock())

    def get(self, session_id):
        with self._lock:
            return self._sessions.get(session_id)

    def resolve(self, cookie_value, queue_length):
        """
        Map a request cookie to a session.

        Returns (session_id, is_new). is_new tells the caller a fresh cookie
        must be set on the response: there was no cookie, or it named a
        session we do not know (expired, or issued by a previous process).
        """
        with self._lock:
            if cookie_value and cookie_value in self._sessions:
                return cookie_value, False
            session_id = secrets.token_hex(16)
            while session_id in self._sessions:
                session_id = secrets.token_hex(16)
            self._sessions[session_id] = self._new_session(queue_length)
        log.debug("Created session %s", session_id)
        return session_id, True

    def move(self, session_id, delta, queue_length):
        """
        Move a session's cursor by `delta` and return the position to serve.

        `queue_length` is a single snapshot taken by the caller; all bounds
        are computed against it. Out-of-range moves serve a uniformly random
        position and re-anchor the cursor there. delta=0 re-resolves the
        current position.

        Raises EmptyQueueError if queue_length is 0.
        """
        if queue_length <= 0:
            raise EmptyQueueError("Queue is empty")

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                log.info("Unknown session %s, recreating it", session_id)
                session = self._new_session(queue_length)
                self._sessions[session_id] = session

            target = session.position + delta
            if 0 <= target < queue_length:
                session.position = target
            else:
                session.position = self.rng.randrange(queue_length)
            session.effective_position = session.position
            return session.effective_position

    def sweep(self, now=None):
        """Delete sessions older than the retention window. Returns the count."""
        now = self.clock() if now is None else now
        cutoff = now - self.retention
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.created_at <= cutoff]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            log.info("Expired %d sessions", len(expired))
        return len(expired)


class SessionSweeper:
    """Background thread calling SessionStore.sweep() at a fixed interval."""

    def __init__(self, store, interval=SWEEP_INTERVAL_SECONDS):
        self.store = store
        self.interval = interval
        self.stop_event = threading.Event()
        self._thread = None

    def run_forever(self):
        while not self.stop_event.wait(self.interval):
            try:
                self.store.sweep()
            except Exception:
                log.exception("Session sweep failed")

    def start(self):
        if self._thread and self._thread.is_alive():
            return self._thread
        self.stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="session-sweeper", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        self.stop_event.set()
        if self._thread:
            self._thread.join(timeout)
