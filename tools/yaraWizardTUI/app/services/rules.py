from pathlib import Path
import hashlib
import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from yara_wizard_core.models import Defect, MatchString, Rule, RuleMatch, SampleInfo
from app.services.tasks import BackgroundTask

log = logging.getLogger(__name__)

DEFAULT_DOCS_BASE_URL = "https://yara.readthedocs.io/en/stable/"

# externals declared at compile time and filled per artifact at match time
_EXTERNAL_DEFAULTS = {"filename": "", "filepath": "", "extension": "", "filesize": 0,
                      "sha256": "", "sha1": "", "md5": ""}

# ---------------------------
# Rule file discovery helpers
# ---------------------------

def _iter_rule_files(root: Path) -> Iterable[Path]:
    """Yield all .yar / .yara files under root (case-insensitive)."""
    root = Path(root)
    if not root.is_dir():
        return
    for p in sorted(root.rglob("*")):
        if p.is_file() and p.suffix.lower() in (".yar", ".yara"):
            yield p

def _namespace_for(root: Path, p: Path) -> str:
    """packers/upx.yar -> 'packers.upx'"""
    rel = p.relative_to(root).with_suffix("")
    return ".".join(rel.parts)

def _collect_filepaths(root: Path) -> Dict[str, str]:
    """
    Build a mapping for yara.compile(filepaths=...).
    Keys become the rule namespace, values are absolute file paths.
    Using filepaths preserves 'include' handling in YARA.
    """
    return {_namespace_for(root, p): str(p.resolve()) for p in _iter_rule_files(root)}

def _rules_digest(root: Path) -> str:
    """Stable digest over rule set (names + mtimes + sizes)."""
    h = hashlib.sha256()
    files = sorted(_iter_rule_files(root), key=lambda x: str(x).lower())
    for p in files:
        st = p.stat()
        h.update(str(p.relative_to(root)).encode("utf-8", "ignore"))
        h.update(str(st.st_mtime_ns).encode())
        h.update(str(st.st_size).encode())
    return h.hexdigest()[:16]

def estimate_rule_count(root) -> int:
    """
    Approximate number of rules by scanning .yar/.yara sources.
    Used for display before the catalog is compiled.
    """
    count = 0
    for p in _iter_rule_files(Path(root)):
        try:
            for line in p.read_text(errors="ignore").splitlines():
                s = line.strip()
                if s.startswith("rule ") or s.startswith("global rule "):
                    count += 1
        except OSError as e:
            log.debug("Skipping unreadable rule file %s: %s", p, e)
    return count

def _normalize_strings(yara_strings) -> List[MatchString]:
    """
    Normalize python-yara string matches to MatchString records.
    Handles both legacy tuple style and new object style with .instances.
    """
    out: List[MatchString] = []
    for s in yara_strings:
        if isinstance(s, tuple) and len(s) >= 3:
            out.append(MatchString(identifier=str(s[1]), offset=int(s[0]), data_preview=_preview(s[2])))
            continue
        ident = str(getattr(s, "identifier", ""))
        for inst in getattr(s, "instances", None) or []:
            out.append(MatchString(identifier=ident, offset=int(getattr(inst, "offset", 0)),
                                   data_preview=_preview(getattr(inst, "matched_data", b""))))
    return out

def _preview(data, limit: int = 120) -> str:
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("latin-1")
    text = "".join(c if c.isprintable() else "." for c in str(data))
    return text[:limit]


# ---------------------------
# Rule engine
# ---------------------------

class YaraRuleEngine:
    """
    Discovers individual YARA rules and evaluates them against parsed samples.

    A sample is matched once against the whole compiled set; evaluate() then
    picks out the matches of one rule.
    """

    def __init__(self, rules_root, cache_dir, timeout: int = 20,
                 docs_base_url: str = DEFAULT_DOCS_BASE_URL):
        self.rules_root = Path(rules_root)
        self.cache_dir = Path(cache_dir)
        self.timeout = timeout
        self.docs_base_url = docs_base_url
        self.digest: Optional[str] = None
        self._compiled = None
        self._local = threading.local()

    def load_or_compile(self):
        """
        Load a compiled rules cache if available; otherwise compile from sources.
        Returns the compiled rules.
        """
        import yara  # local import to avoid hard dep until rules are needed

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.digest = _rules_digest(self.rules_root)
        cache_path = self.cache_dir / f"rules.{self.digest}.yarac"

        if cache_path.exists():
            self._compiled = yara.load(str(cache_path))
            return self._compiled

        filepaths = _collect_filepaths(self.rules_root)
        if not filepaths:
            log.warning("No rule files found under %s", self.rules_root)
            self._compiled = None
            return None
        self._compiled = yara.compile(filepaths=filepaths, externals=_EXTERNAL_DEFAULTS)
        self._compiled.save(str(cache_path))
        log.info("Compiled %d rule file(s) into %s", len(filepaths), cache_path.name)
        return self._compiled

    def estimate_count(self) -> int:
        return estimate_rule_count(self.rules_root)

    def discover(self) -> List[Rule]:
        """Compile the rule set, then list its public rules file by file."""
        import yara

        if self.load_or_compile() is None:
            return []
        rules: List[Rule] = []
        for namespace, path in _collect_filepaths(self.rules_root).items():
            # compiled alone so every rule is attributed to its file's namespace
            for r in yara.compile(filepath=path, externals=_EXTERNAL_DEFAULTS):
                if getattr(r, "is_private", False):
                    continue
                meta = dict(getattr(r, "meta", {}) or {})
                name = r.identifier
                uri = str(meta.get("reference") or meta.get("url") or self.docs_base_url + name)
                rules.append(Rule(
                    name=name,
                    namespace=namespace,
                    description=str(meta.get("description", "")),
                    uri=uri,
                    tags=list(getattr(r, "tags", []) or []),
                ))
        return rules

    def reset(self) -> None:
        self._local.matches = {}

    def _match(self, sample: SampleInfo) -> List[RuleMatch]:
        key = (str(sample.path), sample.sha256)
        # per thread: a detached run may still be finishing while a new one starts
        memo: Optional[Dict[Tuple[str, str], List[RuleMatch]]] = getattr(self._local, "matches", None)
        if memo is None:
            memo = self._local.matches = {}
        if key in memo:
            return memo[key]
        if self._compiled is None:
            self.load_or_compile()
        p = Path(sample.path)
        externals = {
            "filename": p.name,
            "filepath": str(p),
            "extension": p.suffix.lower().lstrip("."),
            "filesize": sample.size,
            "sha256": sample.sha256,
            "sha1": sample.sha1,
            "md5": sample.md5,
        }
        found: List[RuleMatch] = []
        if self._compiled is not None:
            for m in self._compiled.match(str(p), timeout=self.timeout, externals=externals):
                found.append(RuleMatch(
                    rule=m.rule,
                    namespace=m.namespace,
                    tags=list(m.tags),
                    meta=dict(getattr(m, "meta", {})),
                    strings=_normalize_strings(getattr(m, "strings", [])),
                ))
        memo[key] = found
        return found

    def evaluate(self, rule: Rule, sample: SampleInfo) -> List[Defect]:
        return [
            Defect(
                rule=rule.full_name,
                artifact=str(sample.path),
                description=rule.description,
                tags=list(m.tags),
                meta=m.meta,
                strings=m.strings,
            )
            for m in self._match(sample)
            if m.rule == rule.name and m.namespace == rule.namespace
        ]


# ---------------------------
# Rule catalog
# ---------------------------

class RuleCatalog:
    """
    The set of available rules, discovered once per process.

    load() is single-shot: the first call starts discovery in the background,
    later calls hand back the same task. Rules are never added or removed
    afterwards; only their enabled flag changes.
    """

    def __init__(self, engine):
        self.engine = engine
        self._rules: List[Rule] = []
        self._task: Optional[BackgroundTask] = None
        self._estimate: Optional[int] = None
        self._lock = threading.Lock()

    def load(self) -> BackgroundTask:
        with self._lock:
            if self._task is None:
                self._task = BackgroundTask(self._discover, name="rule-catalog").start()
            return self._task

    def _discover(self) -> List[Rule]:
        rules = self.engine.discover()
        for rule in rules:
            rule.enabled = True
        self._rules = rules
        log.info("Rule catalog loaded: %d rules", len(rules))
        return rules

    @property
    def task(self) -> Optional[BackgroundTask]:
        return self._task

    @property
    def loaded(self) -> bool:
        return self._task is not None and self._task.poll()

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules)

    @property
    def count(self) -> int:
        """Best-known number of rules: a source scan until discovery finishes."""
        if self.loaded:
            return len(self._rules)
        if self._estimate is None:
            self._estimate = self.engine.estimate_count()
        return self._estimate

    def get(self, full_name: str) -> Optional[Rule]:
        return next((r for r in self._rules if r.full_name == full_name), None)

    def enabled(self) -> List[Rule]:
        return [r for r in self._rules if r.enabled]

    def namespaces(self) -> Dict[str, List[Rule]]:
        tree: Dict[str, List[Rule]] = {}
        for rule in self._rules:
            tree.setdefault(rule.namespace, []).append(rule)
        return {ns: sorted(tree[ns], key=lambda r: r.name) for ns in sorted(tree)}

    def set_enabled(self, full_name: str, enabled: bool) -> bool:
        rule = self.get(full_name)
        if rule is None:
            return False
        rule.enabled = enabled
        return True

    def set_namespace_enabled(self, namespace: str, enabled: bool) -> int:
        changed = 0
        for rule in self._rules:
            if rule.namespace == namespace:
                rule.enabled = enabled
                changed += 1
        return changed

    def namespace_state(self, namespace: str) -> Optional[bool]:
        """True if all rules enabled, False if none, None when mixed."""
        flags = {r.enabled for r in self._rules if r.namespace == namespace}
        if len(flags) == 1:
            return flags.pop()
        return None
