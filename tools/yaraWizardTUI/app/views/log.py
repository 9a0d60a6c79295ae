# app/views/log.py
from datetime import datetime
from textual.widgets import Static

MAX_LINES = 200


class LogView(Static):
    """Status log panel; newest line last, capped at MAX_LINES."""

    def on_mount(self) -> None:
        self._lines: list[str] = []
        self.update("")

    def log(self, text: str) -> None:
        """Append a timestamped line."""
        self._lines.append(f"[dim]{datetime.now():%H:%M:%S}[/dim] {text}")
        del self._lines[:-MAX_LINES]
        self.update("\n".join(self._lines))
