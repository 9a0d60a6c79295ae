import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from yara_wizard_core.errors import ReportWriteFailure
from app.services.export import DETAILED_FORMAT, WRITERS

log = logging.getLogger(__name__)


@dataclass
class CachedReport:
    path: str
    session_id: int


class ReportCache:
    """
    Remembers, per format, the last report file written for a session.

    Saving a format that is already cached for the same session copies the
    file instead of regenerating it. Entries tagged with another session are
    treated as absent.
    """

    def __init__(self, writers: Optional[Dict[str, Callable]] = None):
        self.writers = dict(writers or WRITERS)
        self._entries: Dict[str, CachedReport] = {}
        self._temp_files: List[str] = []

    def cached_path(self, fmt: str, session) -> Optional[str]:
        entry = self._entries.get(fmt)
        if entry is None:
            return None
        if entry.session_id != session.session_id:
            del self._entries[fmt]
            return None
        return entry.path

    def invalidate(self) -> None:
        self._entries.clear()

    def save(self, fmt: str, destination, session) -> bool:
        """
        Write the report for `session` in `fmt` to `destination`.
        Returns True when an existing report was copied, False when the
        serializer ran. Raises ReportWriteFailure on any failure.
        """
        writer = self.writers.get(fmt)
        if writer is None:
            raise ReportWriteFailure(fmt, destination, ValueError(f"Unsupported format: {fmt}"))
        destination = str(destination)
        cached = self.cached_path(fmt, session)
        if cached is not None:
            try:
                shutil.copyfile(cached, destination)
            except shutil.SameFileError:
                pass
            except OSError as e:
                self._entries.pop(fmt, None)
                raise ReportWriteFailure(fmt, destination, e) from e
            log.info("Copied %s report %s -> %s", fmt, cached, destination)
            self._entries[fmt] = CachedReport(destination, session.session_id)
            return True

        try:
            writer(session, destination)
        except Exception as e:
            self._entries.pop(fmt, None)
            raise ReportWriteFailure(fmt, destination, e) from e
        log.info("Wrote %s report to %s", fmt, destination)
        self._entries[fmt] = CachedReport(destination, session.session_id)
        return False

    def view(self, session, opener: Callable[[str], None]) -> str:
        """Open the detailed report, generating it into a temp file on first use."""
        path = self.cached_path(DETAILED_FORMAT, session)
        if path is None:
            fd, path = tempfile.mkstemp(prefix="yarawizard-", suffix=f".{DETAILED_FORMAT}")
            os.close(fd)
            self._temp_files.append(path)
            self.save(DETAILED_FORMAT, path, session)
        opener(path)
        return path

    def cleanup(self) -> None:
        for path in self._temp_files:
            try:
                Path(path).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning("Could not remove temporary report %s: %s", path, e)
        self._temp_files.clear()
