import pytest

from app.services.analysis import AnalysisSession, PostArtifact, PreArtifact
from app.services.artifacts import ArtifactCache


def _loaded(parser, *paths):
    cache = ArtifactCache(parser)
    for p in paths:
        cache.add(str(p))
    cache.refresh_all()
    return cache.loaded()


def test_two_events_per_artifact_in_order(parser, engine, artifact_files):
    a, b = artifact_files
    engine.hits = {("UpxPacked", "a.bin"): 1, ("EicarString", "b.bin"): 2}
    rules = engine.discover()
    session = AnalysisSession(_loaded(parser, a, b), rules, engine)

    events = []
    defects = session.run(events.append)

    pre = [e for e in events if isinstance(e, PreArtifact)]
    post = [e for e in events if isinstance(e, PostArtifact)]
    assert [type(e) for e in events] == [PreArtifact, PostArtifact, PreArtifact, PostArtifact]
    assert [(e.index, e.total, e.artifact) for e in pre] == [(1, 2, str(a)), (2, 2, str(b))]
    assert [e.defect_count for e in post] == [1, 3]
    assert len(defects) == 3
    assert session.processed == 2
    assert session.finished
    assert set(session.defects_by_rule()) == {"packers.UpxPacked", "test.EicarString"}
    assert len(session.defects_for(str(b))) == 2


def test_only_enabled_rules_run(parser, engine, artifact_files):
    rules = engine.discover()
    rules[0].enabled = False
    session = AnalysisSession(_loaded(parser, *artifact_files), rules, engine)
    session.run()
    assert "packers.UpxPacked" not in {name for name, _ in engine.evaluated}
    assert len(engine.evaluated) == 2 * 2


def test_sessions_get_distinct_ids(parser, engine, artifact_files):
    loaded = _loaded(parser, *artifact_files)
    first = AnalysisSession(loaded, [], engine)
    second = AnalysisSession(loaded, [], engine)
    assert second.session_id > first.session_id


def test_rule_failure_ends_the_run(parser, engine, artifact_files):
    engine.fail_on = ("Themida", "a.bin")
    session = AnalysisSession(_loaded(parser, *artifact_files), engine.discover(), engine)
    events = []
    with pytest.raises(RuntimeError, match="Themida crashed"):
        session.run(events.append)
    assert len(events) == 1
    assert not session.finished
