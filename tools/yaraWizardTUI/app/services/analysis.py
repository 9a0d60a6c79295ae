import itertools
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

from yara_wizard_core.models import ArtifactEntry, Defect, Rule

log = logging.getLogger(__name__)

_session_ids = itertools.count(1)


@dataclass(frozen=True)
class PreArtifact:
    index: int  # 1-based
    total: int
    artifact: str


@dataclass(frozen=True)
class PostArtifact:
    index: int
    total: int
    defect_count: int


ProgressEvent = Union[PreArtifact, PostArtifact]


class AnalysisSession:
    """
    One analysis pass over a snapshot of artifacts and enabled rules.

    Artifacts are processed one at a time in the order given. For each one a
    PreArtifact event is emitted, every rule is evaluated, and a PostArtifact
    event carries the cumulative defect count. Events are delivered on the
    thread that calls run(). Rule errors propagate and end the run.
    """

    def __init__(self, artifacts: List[ArtifactEntry], rules: List[Rule], engine):
        self.session_id = next(_session_ids)
        self.artifacts = list(artifacts)
        self.rules = [r for r in rules if r.enabled]
        self.engine = engine
        self.defects: List[Defect] = []
        self.processed = 0
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.duration_ms: Optional[int] = None

    @property
    def total(self) -> int:
        return len(self.artifacts)

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def run(self, listener: Optional[Callable[[ProgressEvent], None]] = None) -> List[Defect]:
        emit = listener or (lambda event: None)
        self.defects = []
        self.processed = 0
        self.finished_at = None
        self.started_at = datetime.now(timezone.utc)
        t0 = time.perf_counter()

        reset = getattr(self.engine, "reset", None)
        if reset is not None:
            reset()

        total = self.total
        for index, entry in enumerate(self.artifacts, 1):
            emit(PreArtifact(index=index, total=total, artifact=entry.path))
            for rule in self.rules:
                self.defects.extend(self.engine.evaluate(rule, entry.parsed))
            self.processed = index
            emit(PostArtifact(index=index, total=total, defect_count=len(self.defects)))

        self.duration_ms = int((time.perf_counter() - t0) * 1000)
        self.finished_at = datetime.now(timezone.utc)
        log.info("Session %d: %d artifact(s), %d rule(s), %d defect(s) in %d ms",
                 self.session_id, total, len(self.rules), len(self.defects), self.duration_ms)
        return self.defects

    def defects_by_rule(self) -> Dict[str, List[Defect]]:
        grouped: Dict[str, List[Defect]] = {}
        for d in self.defects:
            grouped.setdefault(d.rule, []).append(d)
        return grouped

    def defects_for(self, artifact: str) -> List[Defect]:
        return [d for d in self.defects if d.artifact == artifact]
