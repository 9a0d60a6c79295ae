"""Shared fakes for the wizard tests: parser, rule engine, report writers."""

import hashlib
import threading
from pathlib import Path

import pytest

from yara_wizard_core.errors import ParseFailure
from yara_wizard_core.models import Defect, Rule, SampleInfo


class FakeParser:
    """Records every parse; paths in `fail` raise ParseFailure."""

    def __init__(self):
        self.calls = []
        self.fail = set()
        self.gate = None

    def __call__(self, path):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self.calls.append(str(path))
        if Path(path).name in self.fail:
            raise ParseFailure(path, "bad image")
        data = Path(path).read_bytes()
        return SampleInfo(
            path=Path(path),
            size=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            sha1=hashlib.sha1(data).hexdigest(),
            md5=hashlib.md5(data).hexdigest(),
        )


class FakeEngine:
    """
    Three rules in two namespaces. `hits` maps (rule name, artifact file name)
    to the number of defects evaluate() reports.
    """

    def __init__(self, hits=None):
        self.hits = hits or {}
        self.discover_calls = 0
        self.evaluated = []
        self.gate = None
        self.fail_on = None
        self.estimate = 0
        self.discover_error = None

    def estimate_count(self):
        return self.estimate

    def discover(self):
        self.discover_calls += 1
        if self.discover_error is not None:
            raise self.discover_error
        return [
            Rule(name="UpxPacked", namespace="packers", description="UPX packed image"),
            Rule(name="Themida", namespace="packers", description="Themida protector"),
            Rule(name="EicarString", namespace="test", description="EICAR test string"),
        ]

    def evaluate(self, rule, sample):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        name = Path(sample.path).name
        self.evaluated.append((rule.full_name, name))
        if self.fail_on == (rule.name, name):
            raise RuntimeError(f"{rule.name} crashed")
        count = self.hits.get((rule.name, name), 0)
        return [Defect(rule=rule.full_name, artifact=str(sample.path), description=rule.description)
                for _ in range(count)]


class RecordingWriter:
    def __init__(self, fmt="html"):
        self.fmt = fmt
        self.calls = []

    def __call__(self, session, destination):
        self.calls.append(str(destination))
        Path(destination).write_text(f"{self.fmt} report for session {session.session_id}")


@pytest.fixture
def parser():
    return FakeParser()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def writers():
    return {"html": RecordingWriter("html"), "json": RecordingWriter("json")}


@pytest.fixture
def opened():
    return []


@pytest.fixture
def artifact_files(tmp_path):
    a = tmp_path / "a.bin"
    b = tmp_path / "b.bin"
    a.write_bytes(b"\x00first artifact")
    b.write_bytes(b"\x00second artifact")
    return a, b


@pytest.fixture
def make_controller(tmp_path, parser, engine, writers, opened):
    from app.controllers.wizard import WizardController

    def factory(**kwargs):
        settings = {"workspace_path": str(tmp_path / "ws"),
                    "docs_base_url": "https://docs.example/",
                    "docs_default_url": "https://docs.example/wizard"}
        kwargs.setdefault("parser", parser)
        kwargs.setdefault("engine", engine)
        kwargs.setdefault("writers", writers)
        kwargs.setdefault("opener", opened.append)
        return WizardController(settings, **kwargs)

    return factory


@pytest.fixture
def gate():
    return threading.Event()
