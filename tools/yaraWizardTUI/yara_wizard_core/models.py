from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import List, Dict, Any, Optional


class Stage(IntEnum):
    WELCOME = 0
    ADD_FILES = 1
    SELECT_RULES = 2
    ANALYZE = 3
    REPORT = 4

    @property
    def title(self) -> str:
        return self.name.replace("_", " ").title()


@dataclass
class SampleInfo:
    path: Path
    size: int
    sha256: str
    sha1: str
    md5: str
    mime: Optional[str] = None
    pe: Optional[Dict[str, Any]] = None


@dataclass
class ArtifactEntry:
    path: str
    last_parsed_at: Optional[float] = None
    parsed: Optional[SampleInfo] = None
    error: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self.parsed is not None and self.error is None

    @property
    def name(self) -> str:
        return Path(self.path).name


@dataclass
class Rule:
    name: str
    namespace: str
    description: str = ""
    uri: str = ""
    tags: List[str] = field(default_factory=list)
    enabled: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name


@dataclass
class MatchString:
    identifier: str
    offset: int
    data_preview: str


@dataclass
class RuleMatch:
    rule: str
    namespace: str
    tags: List[str]
    meta: Dict[str, Any]
    strings: List[MatchString]


@dataclass
class Defect:
    rule: str
    artifact: str
    description: str = ""
    tags: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    strings: List[MatchString] = field(default_factory=list)
