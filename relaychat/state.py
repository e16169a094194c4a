from typing import Callable, Dict, List, Optional
import logging
import socket
import threading
import time

from relaychat.errors import PersistenceError
from relaychat.history import HistoryLog
from relaychat.models import ClientSession, Registration, ServerConfig
from relaychat.wire import HISTORY, encode_line, users_payload

logger = logging.getLogger("relaychat")


# --- Small helpers ---

def log(msg: str, level: int = logging.INFO) -> None:
    """Log through the `relaychat` logger; main() gives it the [SERVER] prefix."""
    logger.log(level, msg)


def mark_closing(session: ClientSession) -> None:
    """
    Flag a peer as dead and kick its socket.

    Its own thread is blocked in readline(); shutting the socket down makes
    that return, and the normal disconnect path takes it from there.
    """
    session.closing = True
    if session.sock is None:
        return
    try:
        session.sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # already gone
        pass


def send_bytes(session: ClientSession, *chunks: bytes) -> bool:
    """
    Write raw chunks to one peer as a single unit.

    Holds the session's write lock for the whole write, so nobody else's
    line can land in the middle. On failure we log, mark the peer closing
    and return False; callers doing a fan-out just carry on.
    """
    with session.write_lock:
        if session.closing:
            return False
        try:
            for chunk in chunks:
                session.writer.write(chunk)
            session.writer.flush()
            return True
        except (OSError, ValueError) as e:
            log(f"Failed to send to {session.label}: {e}", logging.WARNING)
            mark_closing(session)
            return False


def send_line(session: ClientSession, line: str) -> bool:
    return send_bytes(session, encode_line(line))


# --- Registry ---

class Registry:
    """
    Live sessions keyed by name.

    One dict is both the session set and the name set, so a name is taken
    iff exactly one registered session carries it. Every method takes the
    same lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_name: Dict[str, ClientSession] = {}

    def try_register(self, session: ClientSession, name: str) -> Registration:
        if not name or "\n" in name or "\r" in name:
            return Registration.INVALID_NAME

        with self._lock:
            if name in self._by_name:
                return Registration.NAME_IN_USE
            session.name = name
            self._by_name[name] = session
        return Registration.ACCEPTED

    def unregister(self, session: ClientSession) -> bool:
        """Drop the session and free its name. Safe to call twice."""
        with self._lock:
            if session.name is None or self._by_name.get(session.name) is not session:
                return False
            del self._by_name[session.name]
        return True

    def snapshot_names(self) -> List[str]:
        with self._lock:
            return sorted(self._by_name)

    def find_by_name(self, name: str) -> Optional[ClientSession]:
        with self._lock:
            return self._by_name.get(name)

    def sessions(self) -> List[ClientSession]:
        with self._lock:
            return list(self._by_name.values())

    def for_each(self, visitor: Callable[[ClientSession], None]) -> None:
        """
        Call visitor(session) for every active session.

        The set is snapshotted under the lock and visited outside it, so a
        slow peer never blocks joins and leaves.
        """
        for session in self.sessions():
            visitor(session)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._by_name

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_name)


# --- Per-server state ---

class ChatState:
    """
    Everything one server instance shares between its sessions: the registry,
    the history file and the config. Nothing here is module-global, so tests
    can run several servers side by side.
    """

    def __init__(self, config: Optional[ServerConfig] = None,
                 history: Optional[HistoryLog] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or ServerConfig()
        self.registry = Registry()
        self.history = history or HistoryLog(self.config.history_path)
        # seconds, monotonic; swapped out in tests
        self.clock = clock

    def now_ms(self) -> float:
        return self.clock() * 1000.0

    def record(self, line: str) -> None:
        """Persist a formatted line. A failed write is logged, never raised."""
        try:
            self.history.append(line)
        except PersistenceError as e:
            log(str(e), logging.WARNING)

    def broadcast(self, line: str,
                  exclude: Optional[ClientSession] = None) -> None:
        data = encode_line(line)

        def deliver(session: ClientSession) -> None:
            if session is not exclude:
                send_bytes(session, data)

        self.registry.for_each(deliver)

    def announce(self, line: str) -> None:
        """Persist, then send to every active session (sender included)."""
        self.record(line)
        self.broadcast(line)

    def broadcast_users(self) -> None:
        self.broadcast(users_payload(self.registry.snapshot_names()))

    def replay_history(self, session: ClientSession) -> int:
        lines = self.history.replay_tail(self.config.history_limit,
                                         from_end=self.config.history_from_end)
        for line in lines:
            send_line(session, HISTORY + line)
        return len(lines)
