from collections import deque
from pathlib import Path
from typing import List
import threading

from relaychat.errors import PersistenceError


class HistoryLog:
    """
    Append-only text file of already-formatted chat lines.

    No in-memory cache: replay always reads the file.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def ensure(self) -> None:
        """Create the file if it isn't there. Existing content is left alone."""
        with self._lock:
            self.path.touch(exist_ok=True)

    def append(self, line: str) -> None:
        try:
            with self._lock:
                with self.path.open("a", encoding="utf-8", newline="\n") as f:
                    f.write(line + "\n")
                    f.flush()
        except OSError as e:
            raise PersistenceError(f"could not append to {self.path}: {e}") from e

    def replay_tail(self, limit: int, from_end: bool = False) -> List[str]:
        """
        Lines to replay to a joining client, in file order.

        By default this is the *first* `limit` lines of the file, which is
        what existing clients have always seen. from_end=True gives the last
        `limit` lines instead. A missing file is just empty.
        """
        if limit <= 0:
            return []
        try:
            with self._lock:
                with self.path.open("r", encoding="utf-8", newline="\n",
                                    errors="replace") as f:
                    if from_end:
                        lines = list(deque(f, maxlen=limit))
                    else:
                        lines = []
                        for raw in f:
                            if len(lines) >= limit:
                                break
                            lines.append(raw)
        except FileNotFoundError:
            return []
        return [raw.rstrip("\n") for raw in lines]
