from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
import socket
import threading


@dataclass
class ServerConfig:
    """
    Knobs for one server instance. Defaults match what clients expect.
    """
    host: str = "0.0.0.0"
    port: int = 12345
    history_path: str = "chat_history.txt"
    history_limit: int = 50
    # False = replay the first N lines of the file (what old clients are used to)
    history_from_end: bool = False
    max_file_size: int = 5 * 1024 * 1024
    typing_interval_ms: int = 2000


@dataclass(eq=False)
class ClientSession:
    """
    One accepted connection: its streams, the name once the handshake
    succeeds, and the typing throttle clock.

    Identity is the object itself (eq=False), so two sessions never compare
    equal even if they end up with the same name at different times.
    """
    sock: Optional[socket.socket]
    reader: Any  # binary buffered reader (makefile("rb"))
    writer: Any  # binary buffered writer (makefile("wb"))
    addr: Any = None
    name: Optional[str] = None
    last_typing_ms: Optional[float] = None
    # set once a write to this peer failed; its own thread does the cleanup
    closing: bool = False
    write_lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def label(self) -> str:
        return self.name or str(self.addr)


class Registration(Enum):
    ACCEPTED = "accepted"
    NAME_IN_USE = "name_in_use"
    INVALID_NAME = "invalid_name"


# --- Parsed client commands ---

@dataclass(frozen=True)
class Typing:
    pass


@dataclass(frozen=True)
class PrivateMessage:
    recipient: str
    body: str


@dataclass(frozen=True)
class FileOffer:
    recipient: str
    filename: str


@dataclass(frozen=True)
class Chat:
    body: str
