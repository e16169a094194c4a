import socket
import time

import pytest

from relaychat.models import ServerConfig
from relaychat.server import ChatServer


class LineClient:
    """
    Raw socket test client with its own buffer.

    Doesn't use makefile(): a timed-out buffered reader can't be read again,
    and several tests want to check that nothing arrives.
    """

    def __init__(self, address, timeout: float = 5.0):
        self.sock = socket.create_connection(address, timeout=timeout)
        self.timeout = timeout
        self.buf = b""

    def send(self, line: str) -> None:
        self.sock.sendall((line + "\n").encode("utf-8"))

    def send_raw(self, data: bytes) -> None:
        self.sock.sendall(data)

    def _fill(self, timeout: float) -> bool:
        self.sock.settimeout(timeout)
        chunk = self.sock.recv(65536)
        if not chunk:
            return False
        self.buf += chunk
        return True

    def recv_line(self, timeout: float = None) -> str:
        deadline = time.monotonic() + (timeout or self.timeout)
        while b"\n" not in self.buf:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("no line")
            if not self._fill(remaining):
                raise EOFError("server closed the connection")
        raw, self.buf = self.buf.split(b"\n", 1)
        return raw.decode("utf-8")

    def recv_exact(self, n: int) -> bytes:
        while len(self.buf) < n:
            if not self._fill(self.timeout):
                raise EOFError("server closed the connection")
        data, self.buf = self.buf[:n], self.buf[n:]
        return data

    def expect(self, *lines: str) -> None:
        for expected in lines:
            assert self.recv_line() == expected

    def assert_silent(self, wait: float = 0.3) -> None:
        """Nothing buffered and nothing arrives within `wait` seconds."""
        assert self.buf == b""
        try:
            got = self._fill(wait)
        except socket.timeout:
            return
        assert not got or self.buf == b"", f"unexpected data: {self.buf!r}"

    def assert_closed(self) -> None:
        while True:
            if not self._fill(self.timeout):
                return

    def join(self, name: str) -> "LineClient":
        """Do the handshake and read everything up to our own USERS: line."""
        assert self.recv_line() == "SUBMITNAME"
        self.send(name)
        assert self.recv_line() == "NAMEACCEPTED"
        while True:
            line = self.recv_line()
            if line == f"SERVER: {name} joined the chat":
                break
        assert self.recv_line().startswith("USERS:")
        return self

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:
            pass


@pytest.fixture
def history_path(tmp_path):
    return tmp_path / "chat_history.txt"


@pytest.fixture
def server(history_path):
    config = ServerConfig(host="127.0.0.1", port=0, history_path=str(history_path))
    srv = ChatServer(config)
    srv.start()
    yield srv
    srv.shutdown(disconnect_clients=True)


@pytest.fixture
def connect(server):
    clients = []

    def _connect() -> LineClient:
        c = LineClient(server.address)
        clients.append(c)
        return c

    yield _connect
    for c in clients:
        c.close()


@pytest.fixture
def wait_for():
    def _wait_for(predicate, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait_for
