import hashlib
import os
from types import SimpleNamespace

import pytest

from app.services.artifacts import ArtifactCache, parse_artifact
from yara_wizard_core.errors import ParseFailure


class _Clock:
    """Fake os.stat with controllable mtimes."""

    def __init__(self):
        self.mtimes = {}

    def __call__(self, path):
        if path not in self.mtimes:
            raise FileNotFoundError(2, "No such file or directory", path)
        return SimpleNamespace(st_mtime=self.mtimes[path])


@pytest.fixture
def clock():
    return _Clock()


def test_add_rejects_duplicates_and_keeps_order(parser, clock):
    cache = ArtifactCache(parser, stat=clock)
    assert cache.add("b.bin")
    assert cache.add("a.bin")
    assert not cache.add("b.bin")
    assert cache.add("c.bin")
    assert cache.remove("a.bin")
    assert not cache.remove("a.bin")
    assert cache.paths == ["b.bin", "c.bin"]
    assert len(cache) == 2
    assert "c.bin" in cache


def test_refresh_is_idempotent_without_changes(tmp_path, parser):
    f = tmp_path / "one.bin"
    f.write_bytes(b"abc")
    cache = ArtifactCache(parser)
    cache.add(str(f))

    assert cache.refresh_all() == [str(f)]
    entry = cache.get(f)
    parsed, stamp = entry.parsed, entry.last_parsed_at

    assert cache.refresh_all() == []
    assert parser.calls == [str(f)]
    assert entry.parsed is parsed
    assert entry.last_parsed_at == stamp


def test_refresh_reparses_only_the_modified_file(tmp_path, parser):
    one, two = tmp_path / "one.bin", tmp_path / "two.bin"
    one.write_bytes(b"1")
    two.write_bytes(b"2")
    cache = ArtifactCache(parser)
    cache.add(str(one))
    cache.add(str(two))
    cache.refresh_all()

    st = two.stat()
    os.utime(two, (st.st_atime + 10, st.st_mtime + 10))
    parser.calls.clear()

    assert cache.refresh_all() == [str(two)]
    assert parser.calls == [str(two)]


def test_parse_failure_is_isolated_and_keeps_previous_value(tmp_path, parser):
    good, bad = tmp_path / "good.bin", tmp_path / "bad.bin"
    good.write_bytes(b"g")
    bad.write_bytes(b"b")
    cache = ArtifactCache(parser)
    cache.add(str(bad))
    cache.add(str(good))
    cache.refresh_all()
    previous = cache.get(bad).parsed

    parser.fail.add("bad.bin")
    st = bad.stat()
    os.utime(bad, (st.st_atime + 5, st.st_mtime + 5))

    assert cache.refresh_all() == []
    entry = cache.get(bad)
    assert entry.parsed is previous
    assert "bad image" in entry.error
    assert [e.path for e in cache.loaded()] == [str(good)]
    assert [e.path for e in cache.failed()] == [str(bad)]

    # fixed on disk: the next refresh clears the warning
    parser.fail.clear()
    assert cache.refresh_all() == [str(bad)]
    assert cache.get(bad).error is None


def test_missing_file_is_reported_per_entry(parser, clock):
    cache = ArtifactCache(parser, stat=clock)
    cache.add("gone.bin")
    assert cache.refresh_all() == []
    assert cache.get("gone.bin").error
    assert parser.calls == []


def test_parse_artifact_hashes_plain_file(tmp_path):
    f = tmp_path / "blob.dat"
    data = b"not an executable"
    f.write_bytes(data)
    info = parse_artifact(f)
    assert info.size == len(data)
    assert info.sha256 == hashlib.sha256(data).hexdigest()
    assert info.md5 == hashlib.md5(data).hexdigest()
    assert info.pe is None


def test_parse_artifact_rejects_truncated_pe(tmp_path):
    f = tmp_path / "broken.exe"
    f.write_bytes(b"MZ" + b"\x00" * 10)
    with pytest.raises(ParseFailure) as exc:
        parse_artifact(f)
    assert "malformed PE" in str(exc.value)


def test_parse_artifact_missing_and_oversized(tmp_path):
    with pytest.raises(ParseFailure):
        parse_artifact(tmp_path / "nope.bin")
    f = tmp_path / "big.bin"
    f.write_bytes(b"x")
    with pytest.raises(ParseFailure, match="larger than 0 MB"):
        parse_artifact(f, max_file_mb=0)
