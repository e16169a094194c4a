from typing import List, Optional
import argparse
import logging
import signal
import socket
import sys
import threading

from relaychat.commands import dispatch
from relaychat.errors import HandshakeError, TransportError
from relaychat.models import ClientSession, Registration, ServerConfig
from relaychat.state import ChatState, log, mark_closing, send_line
from relaychat.wire import NAME_IN_USE, NAMEACCEPTED, SUBMITNAME, read_line

ACCEPT_RETRY_DELAY = 0.1  # seconds


def handshake(state: ChatState, session: ClientSession) -> None:
    """
    SUBMITNAME -> one line with the name -> NAMEACCEPTED or NAME_IN_USE.

    Registration, NAMEACCEPTED and the history replay all happen under the
    session's write lock, so the new client sees them before any broadcast
    another session manages to aim at it.
    """
    send_line(session, SUBMITNAME)

    name = read_line(session.reader)
    if name is None:
        raise HandshakeError("disconnected before sending a name")

    with session.write_lock:
        result = state.registry.try_register(session, name)
        if result is not Registration.ACCEPTED:
            send_line(session, NAME_IN_USE)
            raise HandshakeError(f"name {name!r} rejected ({result.value})")

        send_line(session, NAMEACCEPTED)
        state.replay_history(session)


def handle_client(state: ChatState, sock: socket.socket, addr) -> None:
    """
    Session lifecycle for one accepted socket, run on its own thread:
    handshake, join announcement, one command per line until EOF or error,
    then the leave sequence (at most once, and only if the join happened).
    """
    log(f"Incoming connection from {addr}")

    session = ClientSession(
        sock=sock,
        reader=sock.makefile("rb"),
        writer=sock.makefile("wb"),
        addr=addr,
    )
    active = False

    try:
        handshake(state, session)
        active = True
        log(f"User '{session.name}' joined from {addr} ({len(state.registry)} online)")

        state.announce(f"SERVER: {session.name} joined the chat")
        state.broadcast_users()

        # Active: one command per line
        while True:
            line = read_line(session.reader)
            if line is None:
                # client hung up (or we shut the socket after a failed write)
                break
            dispatch(state, session, line)

    except HandshakeError as e:
        log(f"Handshake with {addr} failed: {e}")
    except (TransportError, OSError) as e:
        log(f"Connection error for {session.label}: {e}")
    except Exception as e:
        log(f"Exception in client handler {addr}: {e}", logging.ERROR)

    finally:
        close_connection(session)

        # no-op if the handshake never got that far
        state.registry.unregister(session)
        if active:
            log(f"Cleaning up user '{session.name}'")
            state.announce(f"SERVER: {session.name} left the chat")
            state.broadcast_users()

        log(f"Connection from {addr} closed")


def close_connection(session: ClientSession) -> None:
    session.closing = True
    with session.write_lock:
        for stream in (session.writer, session.reader):
            try:
                stream.close()
            except OSError:
                # peer already gone, nothing left to flush
                pass
    try:
        session.sock.close()
    except OSError:
        pass


class ChatServer:
    """
    Owns the listen socket and spawns a thread per accepted connection.
    """

    def __init__(self, config: Optional[ServerConfig] = None,
                 state: Optional[ChatState] = None):
        self.config = config or ServerConfig()
        self.state = state or ChatState(self.config)
        self._sock: Optional[socket.socket] = None
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self):
        return self._sock.getsockname()

    def bind(self) -> None:
        """Create the history file and open the listen socket. Raises OSError."""
        self.state.history.ensure()

        srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            srv.bind((self.config.host, self.config.port))
            srv.listen()
        except OSError:
            srv.close()
            raise
        self._sock = srv
        log(f"Listening on {self.config.host}:{self.address[1]}")

    def serve_forever(self) -> None:
        if self._sock is None:
            self.bind()

        while not self._stopping.is_set():
            try:
                client_sock, addr = self._sock.accept()
            except OSError as e:
                if self._stopping.is_set():
                    break
                log(f"Accept failed: {e}", logging.WARNING)
                # e.g. out of file descriptors; back off instead of spinning
                self._stopping.wait(ACCEPT_RETRY_DELAY)
                continue

            t = threading.Thread(
                target=handle_client,
                args=(self.state, client_sock, addr),
                daemon=True,
            )
            t.start()

        log("Listener stopped")

    def start(self) -> threading.Thread:
        """Bind (if needed) and serve on a background thread."""
        if self._sock is None:
            self.bind()
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)
        self._thread.start()
        return self._thread

    def shutdown(self, disconnect_clients: bool = False) -> None:
        """
        Close the listen socket so accept() fails and the loop exits.

        Existing sessions are left to end on their own unless
        disconnect_clients is set.
        """
        self._stopping.set()
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # not connected; close() below is enough
                pass
            self._sock.close()

        if disconnect_clients:
            for session in self.state.registry.sessions():
                mark_closing(session)

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)


def build_parser() -> argparse.ArgumentParser:
    defaults = ServerConfig()
    parser = argparse.ArgumentParser(description="Line-oriented TCP chat server")
    parser.add_argument("--host", default=defaults.host)
    parser.add_argument("--port", type=int, default=defaults.port)
    parser.add_argument("--history-path", default=defaults.history_path)
    parser.add_argument("--history-limit", type=int, default=defaults.history_limit,
                        help="lines replayed to a joining client")
    parser.add_argument("--history-from-end", action="store_true",
                        help="replay the last N lines instead of the first N")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Parse args, bind, serve until SIGINT/SIGTERM.

    Returns 0 on a clean shutdown, 1 if the port can't be bound.
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[SERVER] %(message)s",
        stream=sys.stderr,
    )

    config = ServerConfig(
        host=args.host,
        port=args.port,
        history_path=args.history_path,
        history_limit=args.history_limit,
        history_from_end=args.history_from_end,
    )
    server = ChatServer(config)

    try:
        server.bind()
    except OSError as e:
        log(f"Could not listen on {config.host}:{config.port}: {e}", logging.ERROR)
        return 1

    def on_term(signum, frame):
        log("Shutting down")
        server.shutdown()

    signal.signal(signal.SIGTERM, on_term)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log("Interrupted, shutting down")
        server.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
