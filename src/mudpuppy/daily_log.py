"""Daily markdown log of newly added memories: ``<dir>/YYYY-MM-DD.md``."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger("mudpuppy.daily_log")

_MAX_LINE_CONTENT = 200


def _today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


class DailyLog:
    """Appends one timestamped line per added memory to today's file."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self._verified_date: Optional[str] = None

    def path_for(self, date: Optional[str] = None) -> Path:
        return self.directory / f"{date or _today()}.md"

    def ensure(self, date: Optional[str] = None) -> Path:
        """Create the directory and today's file with a header if missing."""
        date = date or _today()
        path = self.path_for(date)
        if self._verified_date == date:
            return path
        self.directory.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(f"# Daily Log - {date}\n\n", encoding="utf-8")
        self._verified_date = date
        return path

    def append(self, content: str, entry_type: str, source: str, now: Optional[datetime] = None) -> Path:
        now = now or datetime.now()
        path = self.ensure(now.strftime("%Y-%m-%d"))
        if len(content) > _MAX_LINE_CONTENT:
            content = content[: _MAX_LINE_CONTENT - 3] + "..."
        line = f"- **{now.strftime('%H:%M:%S')}** [{entry_type}] ({source}) {content}\n"
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)
        return path

    def reset_cache(self) -> None:
        self._verified_date = None
