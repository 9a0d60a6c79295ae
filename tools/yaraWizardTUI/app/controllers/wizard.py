import logging
import webbrowser
from functools import partial
from importlib import metadata
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from yara_wizard_core.errors import AnalysisRejected, InvalidStageTransition
from yara_wizard_core.models import Rule, Stage
from yara_wizard_core.state import WizardState
from app.services.analysis import AnalysisSession, PostArtifact, PreArtifact, ProgressEvent
from app.services.artifacts import ArtifactCache, parse_artifact
from app.services.report_cache import ReportCache
from app.services.rules import DEFAULT_DOCS_BASE_URL, RuleCatalog, YaraRuleEngine
from app.services.tasks import BackgroundTask

log = logging.getLogger(__name__)

DEFAULT_DOCS_URL = "https://virustotal.github.io/yara/"

_FORWARD = {
    Stage.WELCOME: Stage.ADD_FILES,
    Stage.ADD_FILES: Stage.SELECT_RULES,
    Stage.SELECT_RULES: Stage.ANALYZE,
}
_BACKWARD = {
    Stage.ADD_FILES: Stage.WELCOME,
    Stage.SELECT_RULES: Stage.ADD_FILES,
    Stage.ANALYZE: Stage.SELECT_RULES,
    Stage.REPORT: Stage.SELECT_RULES,  # skips over Analyze
}
# Analyze -> Report is only taken when the analysis completes
_ALLOWED = set(_FORWARD.items()) | set(_BACKWARD.items()) | {(Stage.ANALYZE, Stage.REPORT)}


def open_external(target: str) -> None:
    """Open a URL or a local file with the user's default handler."""
    if "://" not in target:
        target = Path(target).resolve().as_uri()
    webbrowser.open_new_tab(target)


def _direct(fn, *args):
    fn(*args)


class WizardController:
    """
    Five-stage wizard: Welcome, AddFiles, SelectRules, Analyze, Report.

    Every transition re-renders the new stage, which may start background
    work: the rule catalog is loaded on Welcome, artifacts are refreshed on
    SelectRules and the analysis runs on Analyze. `dispatch(fn, *args)` is
    used to bring analysis progress back to the caller's context; the TUI
    passes a thread-safe scheduler, tests use the default direct call.
    """

    def __init__(self, settings, parser=None, engine=None, catalog: Optional[RuleCatalog] = None,
                 writers=None, opener: Optional[Callable[[str], None]] = None,
                 dispatch: Optional[Callable[..., None]] = None):
        self.settings = settings
        self.state = WizardState()
        ws = Path(settings.get("workspace_path", "workspace"))

        if parser is None:
            parser = partial(parse_artifact, max_file_mb=int(settings.get("max_file_mb", 100)))
        self.artifacts = ArtifactCache(parser)

        if catalog is None:
            if engine is None:
                engine = YaraRuleEngine(
                    settings.get("rules_path", "yara_rules"),
                    ws / ".cache",
                    timeout=int(settings.get("scan_timeout_s", 20)),
                    docs_base_url=settings.get("docs_base_url", DEFAULT_DOCS_BASE_URL),
                )
            catalog = RuleCatalog(engine)
        self.catalog = catalog
        self.engine = catalog.engine

        self.reports = ReportCache(writers)
        self.session: Optional[AnalysisSession] = None
        self.catalog_error: Optional[str] = None

        self._opener = opener or open_external
        self._dispatch = dispatch or _direct
        self._listeners: List[Callable[["WizardController"], None]] = []
        self._refresh_task: Optional[BackgroundTask] = None
        self._analysis_task: Optional[BackgroundTask] = None
        self._attached_session: Optional[int] = None

        self.catalog.load().on_complete(self._on_catalog_loaded)
        self._render()

    # ─────────────────────────────────────
    # General wizard code
    # ─────────────────────────────────────
    @property
    def stage(self) -> Stage:
        return self.state.stage

    def add_listener(self, fn: Callable[["WizardController"], None]) -> None:
        self._listeners.append(fn)

    def _notify(self) -> None:
        for fn in list(self._listeners):
            fn(self)

    @property
    def can_go_back(self) -> bool:
        return self.stage in _BACKWARD and not self.state.closed

    @property
    def can_go_next(self) -> bool:
        if self.state.closed or self.stage not in _FORWARD:
            return False
        if self.stage == Stage.ADD_FILES:
            return len(self.artifacts) > 0
        if self.stage == Stage.SELECT_RULES:
            return self.catalog.loaded
        return True

    @property
    def needs_abort_confirmation(self) -> bool:
        task = self._analysis_task
        return self.stage == Stage.ANALYZE and task is not None and not task.poll()

    def next(self) -> bool:
        if not self.can_go_next:
            return False
        self._move(_FORWARD[self.stage])
        return True

    def back(self, confirmed: bool = False) -> bool:
        if not self.can_go_back:
            return False
        if self.stage == Stage.ANALYZE:
            if self.needs_abort_confirmation and not confirmed:
                return False
            self._detach_session()
            self.session = None
        self._move(_BACKWARD[self.stage])
        return True

    def cancel(self, confirmed: bool = False) -> bool:
        if self.needs_abort_confirmation and not confirmed:
            return False
        self.close()
        return True

    def close(self) -> None:
        if self.state.closed:
            return
        self._detach_session()
        self.reports.cleanup()
        self.state.closed = True
        log.info("Wizard closed at %s", self.stage.name)
        self._notify()

    def goto(self, target: Stage) -> None:
        """Table-checked transition; raises InvalidStageTransition."""
        if (self.stage, target) not in _ALLOWED:
            raise InvalidStageTransition(self.stage, target)
        if target == Stage.SELECT_RULES and self.stage == Stage.ADD_FILES and not len(self.artifacts):
            raise InvalidStageTransition(self.stage, target)
        if self.stage == Stage.ANALYZE and target == Stage.SELECT_RULES:
            self._detach_session()
            self.session = None
        self._move(target)

    def _move(self, target: Stage) -> None:
        if target == Stage.ANALYZE:
            # rejected before the stage changes and before any task starts
            session = self._prepare_analysis()
            self.state.stage = target
            self._start_analysis(session)
        else:
            self.state.stage = target
        log.debug("Stage -> %s", target.name)
        self._render()

    def _render(self) -> None:
        handler = {
            Stage.WELCOME: self._render_welcome,
            Stage.ADD_FILES: self._render_add_files,
            Stage.SELECT_RULES: self._render_select_rules,
            Stage.ANALYZE: self._render_analyze,
            Stage.REPORT: self._render_report,
        }[self.stage]
        handler()
        self._notify()

    def help(self) -> str:
        url = self.settings.get("docs_default_url", DEFAULT_DOCS_URL)
        self._opener(url)
        return url

    # ─────────────────────────────────────
    # Welcome
    # ─────────────────────────────────────
    def _render_welcome(self) -> None:
        self.catalog.load()

    def _on_catalog_loaded(self, task: BackgroundTask) -> None:
        err = task.exception()
        if err is not None:
            self.catalog_error = str(err)
            log.error("Rule catalog could not be loaded: %s", err)

    def about(self) -> Dict[str, str]:
        import yara

        try:
            wizard_version = metadata.version("yara-wizard")
        except metadata.PackageNotFoundError:
            wizard_version = "unknown"
        return {"wizard": wizard_version, "yara": str(getattr(yara, "__version__", "unknown"))}

    # ─────────────────────────────────────
    # Add files
    # ─────────────────────────────────────
    def _render_add_files(self) -> None:
        pass

    def _wait_for_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.wait()

    def add_artifact(self, path: Union[str, Path]) -> bool:
        if self.stage >= Stage.ANALYZE:
            return False
        self._wait_for_refresh()
        added = self.artifacts.add(str(path))
        if added:
            log.info("Added artifact %s", path)
            self._notify()
        return added

    def remove_artifact(self, path: Union[str, Path]) -> bool:
        if self.stage >= Stage.ANALYZE:
            return False
        self._wait_for_refresh()
        removed = self.artifacts.remove(str(path))
        if removed:
            log.info("Removed artifact %s", path)
            self._notify()
        return removed

    # ─────────────────────────────────────
    # Select rules
    # ─────────────────────────────────────
    def _render_select_rules(self) -> None:
        self._start_refresh()
        # the rule tree cannot be shown before the catalog exists
        task = self.catalog.load()
        task.wait()

    def _start_refresh(self) -> BackgroundTask:
        task = self._refresh_task
        if task is not None and not task.poll():
            return task
        task = BackgroundTask(self.artifacts.refresh_all, name="artifact-refresh")
        task.on_complete(lambda t: self._dispatch(self._notify))
        self._refresh_task = task.start()
        return task

    @property
    def refresh_task(self) -> Optional[BackgroundTask]:
        return self._refresh_task

    @property
    def rule_count(self) -> int:
        return self.catalog.count

    def set_rule_enabled(self, rule: Union[Rule, str], enabled: bool) -> bool:
        name = rule.full_name if isinstance(rule, Rule) else rule
        return self.catalog.set_enabled(name, enabled)

    def set_namespace_enabled(self, namespace: str, enabled: bool) -> int:
        return self.catalog.set_namespace_enabled(namespace, enabled)

    def documentation_url(self, selection: Union[Rule, str, None] = None) -> str:
        if selection is None:
            return self.settings.get("docs_default_url", DEFAULT_DOCS_URL)
        if isinstance(selection, Rule):
            return selection.uri
        return self.settings.get("docs_base_url", DEFAULT_DOCS_BASE_URL) + selection

    def open_documentation(self, selection: Union[Rule, str, None] = None) -> str:
        url = self.documentation_url(selection)
        self._opener(url)
        return url

    # ─────────────────────────────────────
    # Analyze
    # ─────────────────────────────────────
    def _prepare_analysis(self) -> AnalysisSession:
        self._wait_for_refresh()
        # pick up anything changed on disk since the SelectRules refresh
        self.artifacts.refresh_all()
        loaded = self.artifacts.loaded()
        if not loaded:
            raise AnalysisRejected("no artifact could be loaded for analysis")
        # any existing report is now out-of-date
        self.reports.invalidate()
        return AnalysisSession(loaded, self.catalog.enabled(), self.engine)

    def _start_analysis(self, session: AnalysisSession) -> None:
        self.session = session
        self._attached_session = session.session_id
        self.state.reset_progress(session.total)
        sid = session.session_id
        task = BackgroundTask(partial(session.run, partial(self._on_progress_event, sid)),
                              name=f"analysis-{sid}")
        task.on_complete(partial(self._on_analysis_event, sid))
        self._analysis_task = task
        log.info("Starting analysis %d: %d artifact(s), %d rule(s)",
                 sid, session.total, len(session.rules))

    def _render_analyze(self) -> None:
        if self._analysis_task is not None:
            self._analysis_task.start()

    def _detach_session(self) -> None:
        if self._attached_session is not None:
            log.info("Detaching from analysis %d", self._attached_session)
        self._attached_session = None

    def _on_progress_event(self, sid: int, event: ProgressEvent) -> None:
        if sid != self._attached_session:
            return
        self._dispatch(self._apply_progress, sid, event)

    def _apply_progress(self, sid: int, event: ProgressEvent) -> None:
        if sid != self._attached_session:
            return
        if isinstance(event, PreArtifact):
            self.state.progress = event.index - 1
            self.state.processed = event.index
            self.state.total = event.total
            self.state.current_artifact = event.artifact
        elif isinstance(event, PostArtifact):
            self.state.progress = event.index
            self.state.defect_count = event.defect_count
        self._notify()

    def _on_analysis_event(self, sid: int, task: BackgroundTask) -> None:
        if sid != self._attached_session:
            return
        self._dispatch(self._finish_analysis, sid, task)

    def _finish_analysis(self, sid: int, task: BackgroundTask) -> None:
        if sid != self._attached_session or self.stage != Stage.ANALYZE:
            return
        err = task.exception()
        if err is not None:
            self.state.analysis_error = f"{type(err).__name__}: {err}"
            log.error("Analysis %d failed: %s", sid, err)
            self._notify()
            return
        self._move(Stage.REPORT)

    def wait_for_analysis(self, timeout: Optional[float] = None) -> bool:
        if self._analysis_task is None:
            return True
        return self._analysis_task.wait(timeout)

    @property
    def analysis_task(self) -> Optional[BackgroundTask]:
        return self._analysis_task

    # ─────────────────────────────────────
    # Report
    # ─────────────────────────────────────
    def _render_report(self) -> None:
        pass

    @property
    def defect_count(self) -> int:
        return len(self.session.defects) if self.session else 0

    @property
    def has_defects(self) -> bool:
        return self.defect_count > 0

    def save_report(self, fmt: str, destination: Union[str, Path]) -> bool:
        """Returns True when a previously written report was copied."""
        if self.session is None or not self.session.finished:
            raise AnalysisRejected("no completed analysis to report on")
        return self.reports.save(fmt, destination, self.session)

    def view_report(self) -> str:
        if self.session is None or not self.session.finished:
            raise AnalysisRejected("no completed analysis to report on")
        return self.reports.view(self.session, self._opener)
