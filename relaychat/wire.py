"""
Wire format: UTF-8, one message per line, "\n" terminated.

The only binary framing is the optional file body, which follows a /file
line as an 8-byte big-endian length plus that many raw bytes. Both share one
buffered binary reader per connection so line read-ahead never eats file bytes.
"""
import struct
from typing import BinaryIO, List, Optional

from relaychat.errors import ProtocolError, TransportError
from relaychat.models import Chat, FileOffer, PrivateMessage, Typing

# Server -> client tags
SUBMITNAME = "SUBMITNAME"
NAMEACCEPTED = "NAMEACCEPTED"
NAME_IN_USE = "NAME_IN_USE"
HISTORY = "HISTORY:"
TYPING = "TYPING:"
USERS = "USERS:"
FILE = "FILE:"
SERVER = "SERVER:"

# Client -> server command prefixes
CMD_TYPING = "/typing"
CMD_PM = "/pm "
CMD_FILE = "/file "

FILE_SIZE = struct.Struct(">q")


def encode_line(line: str) -> bytes:
    return (line + "\n").encode("utf-8")


def read_line(reader: BinaryIO) -> Optional[str]:
    """
    Read one line, without its terminator.

    Returns None on EOF. A trailing chunk with no newline (peer hung up
    mid-message) counts as EOF and is thrown away. A CR before the LF is
    dropped too.
    """
    raw = reader.readline()
    if not raw or not raw.endswith(b"\n"):
        return None
    line = raw[:-1]
    if line.endswith(b"\r"):
        line = line[:-1]
    return line.decode("utf-8", errors="replace")


def parse_command(line: str):
    """
    Turn a received line into Typing / PrivateMessage / FileOffer / Chat.

    Anything starting with one of the reserved prefixes is a command, even if
    the user meant it as chat. Raises ProtocolError for /pm or /file with
    fewer than three space-separated fields.
    """
    if line.startswith(CMD_TYPING):
        return Typing()

    if line.startswith(CMD_PM):
        parts = line.split(" ", 2)
        if len(parts) < 3:
            raise ProtocolError("SERVER: Invalid private message format")
        return PrivateMessage(recipient=parts[1], body=parts[2])

    if line.startswith(CMD_FILE):
        parts = line.split(" ", 2)
        if len(parts) < 3:
            raise ProtocolError("SERVER: Invalid file format")
        return FileOffer(recipient=parts[1], filename=parts[2])

    return Chat(body=line)


def users_payload(names: List[str]) -> str:
    """USERS:<a>,<b>,... (no trailing comma)."""
    return USERS + ",".join(names)


def parse_users(line: str) -> List[str]:
    """Inverse of users_payload. Empty fields are ignored."""
    payload = line[len(USERS):] if line.startswith(USERS) else line
    return [name for name in payload.split(",") if name]


def pack_file_size(size: int) -> bytes:
    return FILE_SIZE.pack(size)


def read_exact(reader: BinaryIO, n: int) -> bytes:
    """Read exactly n bytes or raise TransportError."""
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = reader.read(min(remaining, 64 * 1024))
        if not chunk:
            raise TransportError(f"stream ended with {remaining} of {n} bytes missing")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_file_size(reader: BinaryIO) -> int:
    (size,) = FILE_SIZE.unpack(read_exact(reader, FILE_SIZE.size))
    return size


def discard_exact(reader: BinaryIO, n: int) -> None:
    """Skip n bytes of a frame we refused, without holding them in memory."""
    remaining = n
    while remaining > 0:
        chunk = reader.read(min(remaining, 64 * 1024))
        if not chunk:
            raise TransportError(f"stream ended with {remaining} of {n} bytes missing")
        remaining -= len(chunk)
