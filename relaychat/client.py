from pathlib import Path
from typing import Optional, Set
import argparse
import os
import socket
import threading

from relaychat.errors import TransportError
from relaychat.models import ServerConfig
from relaychat.wire import (
    FILE,
    HISTORY,
    NAME_IN_USE,
    NAMEACCEPTED,
    SUBMITNAME,
    TYPING,
    USERS,
    encode_line,
    pack_file_size,
    parse_users,
    read_exact,
    read_file_size,
    read_line,
)

MAX_FILE_SIZE = ServerConfig().max_file_size


class ChatClient:
    """
    Minimal console client. A background thread prints whatever the server
    sends; the main thread reads stdin and sends lines.
    """

    def __init__(self, name: str, downloads: str = "downloads"):
        self.name = name
        self.downloads = Path(downloads)
        self.sock: Optional[socket.socket] = None
        self.rfile = None
        self.wfile = None
        self.running = False
        self.users: Set[str] = set()
        self._send_lock = threading.Lock()

    def connect(self, host: str, port: int) -> None:
        s = socket.create_connection((host, port))
        self.sock = s
        self.rfile = s.makefile("rb")
        self.wfile = s.makefile("wb")
        self.running = True

        t = threading.Thread(target=self.receiver_loop, daemon=True)
        t.start()
        print(f"Connected to {host}:{port}")

    def send(self, *chunks: bytes) -> bool:
        if self.wfile is None:
            print("No connection to the server.")
            return False
        try:
            with self._send_lock:
                for chunk in chunks:
                    self.wfile.write(chunk)
                self.wfile.flush()
            return True
        except OSError as e:
            print(f"Could not send: {e}")
            return False

    def send_line(self, line: str) -> bool:
        return self.send(encode_line(line))

    def receiver_loop(self) -> None:
        """Runs on its own thread: reads server lines (and file frames) until EOF."""
        try:
            while self.running:
                line = read_line(self.rfile)
                if line is None:
                    print("** Server closed the connection **")
                    break
                self.handle_line(line)
        except (OSError, TransportError) as e:
            print(f"** Lost connection: {e}")
        finally:
            self.running = False

    def handle_line(self, line: str) -> None:
        if line == SUBMITNAME:
            self.send_line(self.name)
        elif line.startswith(FILE):
            self.receive_file(line)
        else:
            if line.startswith(USERS):
                self.users = set(parse_users(line))
            text = render(line, self.name)
            if text is not None:
                print(text)

    def receive_file(self, line: str) -> None:
        """FILE:<sender>:<filename> is followed by the length and the body."""
        sender, _, filename = line[len(FILE):].partition(":")
        size = read_file_size(self.rfile)
        data = read_exact(self.rfile, size)

        self.downloads.mkdir(parents=True, exist_ok=True)
        # never trust the sender's path
        target = self.downloads / (os.path.basename(filename) or "download")
        target.write_bytes(data)
        print(f"** {sender} sent you {filename} ({size} bytes) -> {target}")

    def send_file(self, recipient: str, path: str) -> bool:
        """
        /file <recipient> <filename> then the length-prefixed body.

        Size and recipient are checked here first so the user hears about
        it right away; the server would skip the body and refuse it anyway.
        """
        p = Path(path)
        if not p.is_file():
            print(f"No such file: {path}")
            return False
        size = p.stat().st_size
        if size > MAX_FILE_SIZE:
            print("File exceeds 5MB limit")
            return False
        if recipient not in self.users:
            print(f"User '{recipient}' is not online")
            return False

        data = p.read_bytes()
        return self.send(encode_line(f"/file {recipient} {p.name}"),
                         pack_file_size(len(data)), data)

    def close(self) -> None:
        self.running = False
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError:
                pass


def render(line: str, me: str = "") -> Optional[str]:
    """
    How a server line shows up on screen. None means "don't print it".
    """
    if line == NAMEACCEPTED:
        return "** Name accepted, you're in **"
    if line == NAME_IN_USE:
        return "** That name is taken, try another **"
    if line.startswith(HISTORY):
        return "(history) " + line[len(HISTORY):]
    if line.startswith(TYPING):
        who = line[len(TYPING):]
        return None if who == me else f"* {who} is typing..."
    if line.startswith(USERS):
        return "Online: " + ", ".join(parse_users(line))
    return line


def print_help():
    print("Commands:")
    print("  <text>                    public message")
    print("  /pm <user> <text>         private message")
    print("  /typing                   typing notification")
    print("  %sendfile <user> <path>   send a file (max 5MB)")
    print("  %help")
    print("  %exit")
    print()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Console chat client")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=ServerConfig().port)
    parser.add_argument("--name", required=True)
    parser.add_argument("--downloads", default="downloads")
    args = parser.parse_args(argv)

    client = ChatClient(args.name, downloads=args.downloads)
    try:
        client.connect(args.host, args.port)
    except OSError as e:
        print(f"Failed to connect: {e}")
        return 1

    print_help()

    while client.running:
        try:
            line = input().rstrip("\r\n")
        except (EOFError, KeyboardInterrupt):
            break

        if line.strip() == "%exit":
            break

        elif line.strip() in ("%help", "%h"):
            print_help()

        elif line.startswith("%sendfile "):
            parts = line.split(" ", 2)
            if len(parts) < 3:
                print("Usage: %sendfile <user> <path>")
                continue
            client.send_file(parts[1], parts[2])

        elif line.startswith("%"):
            print(f"No such command: {line.split()[0]} (try %help)")

        else:
            client.send_line(line)

    client.close()
    print("Bye.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
