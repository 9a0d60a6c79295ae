from textual.app import App, ComposeResult
from textual.widgets import Header, Footer, Button, Static, Select, DirectoryTree, Input, ContentSwitcher
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual import events
from pathlib import Path
import asyncio
import logging
import yaml
from rich.markup import escape

from app.controllers.wizard import WizardController
from app.services.export import FORMAT_LABELS
from app.views.artifacts import ArtifactList, artifact_count_label
from app.views.defects import DefectsView, report_subtitle
from app.views.log import LogView
from app.views.progress import AnalyzePanel
from app.views.ruleset import RuleTree
from yara_wizard_core.errors import WizardError
from yara_wizard_core.log_setup import setup_logging
from yara_wizard_core.models import Stage

log = logging.getLogger(__name__)


# ─────────────────────────────────────────
# Settings
# ─────────────────────────────────────────
DEFAULT_SETTINGS = {
    "workspace_path": "workspace",
    "rules_path": "yara_rules",
    "scan_timeout_s": 20,
    "max_file_mb": 100,
    "report_formats": ["html", "json", "md"],
    "log_level": "INFO",
}


def load_settings(path: Path = Path("settings.yaml")):
    settings = dict(DEFAULT_SETTINGS)
    if path.exists():
        settings.update(yaml.safe_load(path.read_text()) or {})
    settings.setdefault("log_file", str(Path(settings["workspace_path"]) / "wizard.log"))
    return settings


# ─────────────────────────────────────────
# Pickers & dialogs
# ─────────────────────────────────────────
class FilePicker(Vertical):
    def __init__(self, on_pick, **kwargs):
        super().__init__(**kwargs)
        self.on_pick = on_pick

    def compose(self) -> ComposeResult:
        yield Static("[b]Select artifacts to add[/b] (Enter to add)")
        desktop = Path.home() / "Desktop"
        base_path = desktop if desktop.exists() else Path.home()
        self.dir_tree = DirectoryTree(base_path)
        yield self.dir_tree

    def on_directory_tree_file_selected(self, event: DirectoryTree.FileSelected):
        self.on_pick(event.path)


class ConfirmAbort(ModalScreen[bool]):
    def __init__(self, and_quit: bool):
        super().__init__()
        self.and_quit = and_quit

    def compose(self) -> ComposeResult:
        and_quit = "and quit " if self.and_quit else ""
        with Vertical(id="dialog"):
            yield Static(f"Abort the current analysis being executed {and_quit}YaraWizard?")
            with Horizontal():
                yield Button("No", id="confirm_no", variant="primary")
                yield Button("Yes", id="confirm_yes")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "confirm_yes")


class SaveReportDialog(ModalScreen[tuple]):
    def __init__(self, formats):
        super().__init__()
        self.formats = formats

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Static("[b]Save report[/b]")
            self.fmt = Select([(FORMAT_LABELS.get(f, f), f) for f in self.formats],
                              value=self.formats[0], allow_blank=False)
            yield self.fmt
            self.dest = Input(placeholder="Destination file, e.g. report.html")
            yield self.dest
            with Horizontal():
                yield Button("Cancel", id="save_cancel")
                yield Button("Save", id="save_ok", variant="primary")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "save_ok" and self.dest.value.strip():
            self.dismiss((self.fmt.value, self.dest.value.strip()))
        else:
            self.dismiss(None)


# ─────────────────────────────────────────
# App
# ─────────────────────────────────────────
class YaraWizardTUI(App):
    CSS = """
    Screen { layout: vertical; }
    #stages { height: 1fr; }
    #toolbar { height: 3; }
    #log { height: 5; border-top: solid $surface; }
    #add_left { width: 1fr; }
    #add_right { width: 1fr; }
    #dialog { width: 70; height: auto; border: thick $primary; padding: 1 2; }
    ConfirmAbort, SaveReportDialog { align: center middle; }
    """
    BINDINGS = [
        ("b", "back", "Back"),
        ("n", "next", "Next"),
        ("d", "remove_file", "Remove File"),
        ("o", "docs", "Rule Docs"),
        ("s", "save_report", "Save Report"),
        ("v", "view_report", "View Report"),
        ("f1", "help", "Help"),
        ("q", "cancel", "Cancel"),
    ]

    def __init__(self, settings=None):
        super().__init__()
        self.settings = settings or load_settings()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with ContentSwitcher(initial="welcome", id="stages"):
            with Vertical(id="welcome"):
                yield Static("[b]Welcome to YaraWizard[/b]\n\nThis wizard scans binary artifacts "
                             "with a selection of YARA rules and produces a report.")
                self.versions = Static("")
                yield self.versions
            with Horizontal(id="add_files"):
                with Vertical(id="add_left"):
                    yield FilePicker(self._on_file_picked)
                with Vertical(id="add_right"):
                    self.files_label = Static("")
                    yield self.files_label
                    self.artifact_list = ArtifactList()
                    yield self.artifact_list
                    yield Button("Remove", id="btn_remove")
            with Vertical(id="select_rules"):
                self.rules_label = Static("")
                yield self.rules_label
                self.rule_tree = RuleTree()
                yield self.rule_tree
                yield Button("Browse documentation", id="btn_docs")
            with Vertical(id="analyze"):
                self.analyze_panel = AnalyzePanel()
                yield self.analyze_panel
            with Vertical(id="report"):
                self.report_label = Static("")
                yield self.report_label
                with Horizontal():
                    self.save_button = Button("Save report", id="btn_save")
                    yield self.save_button
                    self.view_button = Button("View report", id="btn_view")
                    yield self.view_button
                self.defects_view = DefectsView()
                yield self.defects_view
        with Horizontal(id="toolbar"):
            yield Button("Help", id="btn_help")
            yield Button("< Back", id="btn_back")
            yield Button("Next >", id="btn_next", variant="primary")
            yield Button("Cancel", id="btn_cancel")
        self.log_panel = LogView(id="log")
        yield self.log_panel
        yield Footer()

    @property
    def _toolbar_ids(self):
        return ["btn_help", "btn_back", "btn_next", "btn_cancel"]

    def on_mount(self):
        loop = asyncio.get_running_loop()
        self.controller = WizardController(
            self.settings,
            dispatch=lambda fn, *args: loop.call_soon_threadsafe(fn, *args),
        )
        self.controller.add_listener(lambda c: self._sync())
        try:
            about = self.controller.about()
            self.versions.update(f"YaraWizard version {about['wizard']}\nYARA version {about['yara']}")
        except Exception as e:
            self.versions.update(f"[red]Version lookup failed:[/red] {e}")
        self._sync()
        self.log_panel.log(f"Loading rule catalog in the background (about {self.controller.rule_count} rules).")

    async def on_key(self, event: events.Key):
        focused = self.focused
        ids = self._toolbar_ids
        if not focused or getattr(focused, "id", None) not in ids:
            return
        if event.key in ("left", "right"):
            step = -1 if event.key == "left" else 1
            idx = (ids.index(focused.id) + step) % len(ids)
            self.query_one(f"#{ids[idx]}").focus()
            event.stop()

    # ─────────────────────────────────────
    # Stage rendering
    # ─────────────────────────────────────
    def _sync(self):
        c = self.controller
        state = c.state
        if state.closed:
            self.exit()
            return
        self.query_one("#stages", ContentSwitcher).current = state.stage.name.lower()
        self.query_one("#btn_back", Button).disabled = not c.can_go_back
        self.query_one("#btn_next", Button).disabled = not c.can_go_next
        self.query_one("#btn_cancel", Button).label = "Close" if state.stage == Stage.REPORT else "Cancel"
        self.sub_title = state.stage.title

        if state.stage == Stage.ADD_FILES:
            self.files_label.update(artifact_count_label(len(c.artifacts)))
            self.artifact_list.update_entries(c.artifacts.entries())
            self.query_one("#btn_remove", Button).disabled = not len(c.artifacts)
        elif state.stage == Stage.SELECT_RULES:
            lines = [f"{c.rule_count} rules are available."]
            if c.catalog_error:
                lines.append(f"[red]Rule catalog error:[/red] {escape(c.catalog_error)}")
            failed = c.artifacts.failed()
            if failed:
                lines.append(f"[yellow]{len(failed)} artifact(s) failed to load and will be skipped.[/yellow]")
            self.rules_label.update("\n".join(lines))
            self.rule_tree.populate(c.catalog)
        elif state.stage == Stage.ANALYZE:
            self.analyze_panel.update_state(state)
        elif state.stage == Stage.REPORT:
            self.report_label.update(report_subtitle(c.defect_count))
            self.save_button.disabled = not c.has_defects
            self.view_button.disabled = not c.has_defects
            self.defects_view.update_defects(c.session)

    # ─────────────────────────────────────
    # Toolbar actions
    # ─────────────────────────────────────
    def on_button_pressed(self, event: Button.Pressed):
        actions = {
            "btn_help": self.action_help,
            "btn_back": self.action_back,
            "btn_next": self.action_next,
            "btn_cancel": self.action_cancel,
            "btn_remove": self.action_remove_file,
            "btn_docs": self.action_docs,
            "btn_save": self.action_save_report,
            "btn_view": self.action_view_report,
        }
        action = actions.get(event.button.id)
        if action:
            action()

    def action_next(self):
        try:
            self.controller.next()
        except WizardError as e:
            self.log_panel.log(f"[red]Cannot continue:[/red] {e}")

    def action_back(self):
        if self.controller.needs_abort_confirmation:
            self.push_screen(ConfirmAbort(and_quit=False),
                             lambda yes: self.controller.back(confirmed=bool(yes)))
            return
        self.controller.back()

    def action_cancel(self):
        if self.controller.needs_abort_confirmation:
            self.push_screen(ConfirmAbort(and_quit=True),
                             lambda yes: self.controller.cancel(confirmed=bool(yes)))
            return
        self.controller.cancel()

    def action_help(self):
        self._open(self.controller.help)

    def action_docs(self):
        if self.controller.stage != Stage.SELECT_RULES:
            return
        node = self.rule_tree.cursor_node
        self._open(lambda: self.controller.open_documentation(node.data if node else None))

    def _open(self, fn):
        try:
            self.log_panel.log(f"Opened {fn()}")
        except Exception as e:
            self.log_panel.log(f"[red]Open failed:[/red] {e}")

    def action_remove_file(self):
        if self.controller.stage != Stage.ADD_FILES:
            return
        path = self.artifact_list.selected_path()
        if path and self.controller.remove_artifact(path):
            self.log_panel.log(f"Removed {path}")

    def _on_file_picked(self, path: Path):
        if self.controller.add_artifact(path):
            self.log_panel.log(f"Added {path}")
        else:
            self.log_panel.log(f"[yellow]Already added:[/yellow] {path}")

    # ─────────────────────────────────────
    # Report
    # ─────────────────────────────────────
    def action_save_report(self):
        if self.controller.stage != Stage.REPORT or not self.controller.has_defects:
            return
        formats = self.settings.get("report_formats", ["html", "json", "md"])
        self.push_screen(SaveReportDialog(formats), self._on_save_chosen)

    def _on_save_chosen(self, choice):
        if not choice:
            return
        fmt, dest = choice
        try:
            copied = self.controller.save_report(fmt, dest)
            how = "copied" if copied else "written"
            self.log_panel.log(f"Report {how} to {dest}")
        except WizardError as e:
            self.log_panel.log(f"[red]Save failed:[/red] {e}")

    def action_view_report(self):
        if self.controller.stage != Stage.REPORT or not self.controller.has_defects:
            return
        try:
            path = self.controller.view_report()
            self.log_panel.log(f"Opened {path}")
        except WizardError as e:
            self.log_panel.log(f"[red]View failed:[/red] {e}")


def main():
    settings = load_settings()
    setup_logging(settings.get("log_level", "INFO"), settings.get("log_file"))
    log.info("Starting YaraWizard")
    YaraWizardTUI(settings).run()


if __name__ == "__main__":
    main()
