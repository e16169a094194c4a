import pytest

from relaychat.errors import PersistenceError
from relaychat.history import HistoryLog


def test_ensure_creates_missing_file(tmp_path):
    log = HistoryLog(tmp_path / "h.txt")
    log.ensure()
    assert (tmp_path / "h.txt").read_text(encoding="utf-8") == ""


def test_ensure_keeps_existing_content(tmp_path):
    path = tmp_path / "h.txt"
    path.write_text("old line\n", encoding="utf-8")
    HistoryLog(path).ensure()
    assert path.read_text(encoding="utf-8") == "old line\n"


def test_append_writes_lines_in_order(tmp_path):
    path = tmp_path / "h.txt"
    log = HistoryLog(path)
    log.append("SERVER: alice joined the chat")
    log.append("alice: hi \U0001F60A")
    assert path.read_text(encoding="utf-8") == (
        "SERVER: alice joined the chat\nalice: hi \U0001F60A\n"
    )


def test_reopened_log_sees_same_lines(tmp_path):
    path = tmp_path / "h.txt"
    first = HistoryLog(path)
    for i in range(3):
        first.append(f"line {i}")
    assert HistoryLog(path).replay_tail(50) == ["line 0", "line 1", "line 2"]


def test_replay_returns_first_lines_by_default(tmp_path):
    log = HistoryLog(tmp_path / "h.txt")
    for i in range(60):
        log.append(f"line {i}")
    replay = log.replay_tail(50)
    assert len(replay) == 50
    assert replay[0] == "line 0"
    assert replay[-1] == "line 49"


def test_replay_from_end(tmp_path):
    log = HistoryLog(tmp_path / "h.txt")
    for i in range(60):
        log.append(f"line {i}")
    replay = log.replay_tail(50, from_end=True)
    assert replay[0] == "line 10"
    assert replay[-1] == "line 59"


def test_missing_file_replays_nothing(tmp_path):
    assert HistoryLog(tmp_path / "nope.txt").replay_tail(50) == []


def test_append_failure_raises_persistence_error(tmp_path):
    # a directory can't be opened for append
    with pytest.raises(PersistenceError):
        HistoryLog(tmp_path).append("boom")
