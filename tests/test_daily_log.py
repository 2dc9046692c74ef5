"""Tests for mudpuppy DailyLog."""
from datetime import datetime

from mudpuppy.daily_log import DailyLog


def test_creates_file_with_header(tmp_path):
    log = DailyLog(tmp_path / "memory")
    path = log.append("Alice likes coffee", "preference", "manual", now=datetime(2026, 3, 1, 9, 5, 7))
    assert path == tmp_path / "memory" / "2026-03-01.md"
    assert path.read_text() == (
        "# Daily Log - 2026-03-01\n\n"
        "- **09:05:07** [preference] (manual) Alice likes coffee\n"
    )


def test_appends_lines(tmp_path):
    log = DailyLog(tmp_path)
    log.append("first", "fact", "manual", now=datetime(2026, 3, 1, 10, 0, 0))
    log.append("second", "task", "agent", now=datetime(2026, 3, 1, 11, 0, 0))
    lines = (tmp_path / "2026-03-01.md").read_text().splitlines()
    assert lines[2:] == [
        "- **10:00:00** [fact] (manual) first",
        "- **11:00:00** [task] (agent) second",
    ]


def test_truncates_long_content(tmp_path):
    log = DailyLog(tmp_path)
    path = log.append("x" * 250, "fact", "manual", now=datetime(2026, 3, 1, 12, 0, 0))
    line = path.read_text().splitlines()[-1]
    assert line.endswith("x" * 197 + "...")
    assert "x" * 198 not in line


def test_new_day_new_file(tmp_path):
    log = DailyLog(tmp_path)
    log.append("monday", "event", "manual", now=datetime(2026, 3, 2, 23, 59, 59))
    log.append("tuesday", "event", "manual", now=datetime(2026, 3, 3, 0, 0, 1))
    assert (tmp_path / "2026-03-02.md").exists()
    assert "tuesday" in (tmp_path / "2026-03-03.md").read_text()


def test_existing_file_not_overwritten(tmp_path):
    (tmp_path / "2026-03-01.md").write_text("# my own notes\n")
    log = DailyLog(tmp_path)
    log.append("added", "fact", "manual", now=datetime(2026, 3, 1, 8, 0, 0))
    content = (tmp_path / "2026-03-01.md").read_text()
    assert content.startswith("# my own notes\n")
    assert content.endswith("(manual) added\n")


def test_ensure_recreates_after_reset(tmp_path):
    log = DailyLog(tmp_path)
    path = log.ensure("2026-03-01")
    path.unlink()
    log.reset_cache()
    assert log.ensure("2026-03-01").read_text() == "# Daily Log - 2026-03-01\n\n"
