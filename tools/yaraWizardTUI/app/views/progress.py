from pathlib import Path
from textual.app import ComposeResult
from textual.containers import Vertical
from textual.widgets import ProgressBar, Static


def progress_label(processed: int, total: int) -> str:
    return f"Processing artifact {max(processed, 1)} of {total}"


class AnalyzePanel(Vertical):
    def compose(self) -> ComposeResult:
        yield Static("[b]Analyzing[/b]")
        self.bar = ProgressBar(total=1, show_eta=False)
        yield self.bar
        self.status = Static("")
        yield self.status
        self.current = Static("")
        yield self.current
        self.defects = Static("")
        yield self.defects

    def update_state(self, state) -> None:
        self.bar.update(total=max(state.total, 1), progress=state.progress)
        self.status.update(progress_label(state.processed, state.total))
        name = Path(state.current_artifact).name if state.current_artifact else ""
        self.current.update(f"Artifact: {name}")
        if state.analysis_error:
            self.defects.update(f"[red]Analysis failed:[/red] {state.analysis_error}")
        else:
            self.defects.update(f"Defects Found: {state.defect_count}")
