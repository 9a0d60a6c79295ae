import hashlib
import logging
import mimetypes
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

from yara_wizard_core.errors import ParseFailure
from yara_wizard_core.models import ArtifactEntry, SampleInfo

log = logging.getLogger(__name__)

DEFAULT_MAX_FILE_MB = 100


def _hashes(path: Path, block_size=1024 * 1024):
    h_sha256 = hashlib.sha256()
    h_sha1 = hashlib.sha1()
    h_md5 = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(block_size), b""):
            h_sha256.update(chunk)
            h_sha1.update(chunk)
            h_md5.update(chunk)
    return h_sha256.hexdigest(), h_sha1.hexdigest(), h_md5.hexdigest()


def _pe_summary(path: Path):
    import pefile
    try:
        pe = pefile.PE(str(path), fast_load=True)
    except pefile.PEFormatError as e:
        raise ParseFailure(path, f"malformed PE image ({e})") from e
    try:
        return {
            "is_pe": True,
            "machine": hex(pe.FILE_HEADER.Machine),
            "timestamp": int(pe.FILE_HEADER.TimeDateStamp),
            "sections": len(pe.sections),
            "dll": bool(pe.is_dll()),
        }
    finally:
        pe.close()


def parse_artifact(path, max_file_mb: int = DEFAULT_MAX_FILE_MB) -> SampleInfo:
    """
    Turn a file path into a SampleInfo: hashes, size, mime guess and, for
    MZ images, a short PE summary. Raises ParseFailure when the file cannot
    be read, is too large, or claims to be PE but is malformed.
    """
    p = Path(path)
    try:
        size = p.stat().st_size
        if size > max_file_mb * 1024 * 1024:
            raise ParseFailure(p, f"larger than {max_file_mb} MB")
        with open(p, "rb") as f:
            magic = f.read(2)
        sha256, sha1, md5 = _hashes(p)
    except OSError as e:
        raise ParseFailure(p, e.strerror or str(e)) from e

    pe = _pe_summary(p) if magic == b"MZ" else None
    mime = mimetypes.guess_type(p.name)[0] or "application/octet-stream"
    return SampleInfo(path=p, size=size, sha256=sha256, sha1=sha1, md5=md5, mime=mime, pe=pe)


class ArtifactCache:
    """
    Maps each user-added path to its last parsed representation.

    Entries are reparsed only when the file's modification time moves past
    the one recorded at the last successful parse. Not locked: the controller
    guarantees a single writer at a time.
    """

    def __init__(self, parser: Callable[[str], SampleInfo] = parse_artifact,
                 stat: Callable[[str], os.stat_result] = os.stat):
        self._parser = parser
        self._stat = stat
        self._entries: Dict[str, ArtifactEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path) -> bool:
        return str(path) in self._entries

    @property
    def paths(self) -> List[str]:
        return list(self._entries)

    def entries(self) -> List[ArtifactEntry]:
        return list(self._entries.values())

    def get(self, path) -> Optional[ArtifactEntry]:
        return self._entries.get(str(path))

    def add(self, path) -> bool:
        key = str(path)
        if key in self._entries:
            log.debug("Ignoring duplicate artifact %s", key)
            return False
        self._entries[key] = ArtifactEntry(path=key)
        return True

    def remove(self, path) -> bool:
        return self._entries.pop(str(path), None) is not None

    def refresh_all(self) -> List[str]:
        """Parse new or modified entries. Returns the paths that were parsed."""
        parsed: List[str] = []
        for entry in list(self._entries.values()):
            try:
                mtime = self._stat(entry.path).st_mtime
            except OSError as e:
                entry.error = f"{entry.path}: {e.strerror or e}"
                log.warning("Cannot stat %s: %s", entry.path, e)
                continue
            stale = entry.last_parsed_at is None or entry.last_parsed_at < mtime
            if entry.parsed is not None and not stale and entry.error is None:
                continue
            try:
                sample = self._parser(entry.path)
            except ParseFailure as e:
                entry.error = str(e)
                log.warning("Parse failed for %s: %s", entry.path, e.reason)
                continue
            entry.parsed = sample
            entry.last_parsed_at = mtime
            entry.error = None
            parsed.append(entry.path)
        if parsed:
            log.info("Parsed %d artifact(s)", len(parsed))
        return parsed

    def loaded(self) -> List[ArtifactEntry]:
        return [e for e in self._entries.values() if e.is_loaded]

    def failed(self) -> List[ArtifactEntry]:
        return [e for e in self._entries.values() if e.error is not None]
