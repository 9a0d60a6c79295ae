from typing import Iterable, Optional
from textual.widgets import OptionList
from textual.widgets.option_list import Option
from rich.markup import escape


def artifact_count_label(count: int) -> str:
    if count == 0:
        return "No artifact selected."
    return f"{count} artifact{'' if count == 1 else 's'} selected"


class ArtifactList(OptionList):
    """User-added artifacts, with a warning marker on the ones that failed to parse."""

    def update_entries(self, entries: Iterable) -> None:
        self.clear_options()
        options = []
        for entry in entries:
            if entry.error:
                prompt = f"[yellow]![/yellow] {escape(entry.path)}\n  [yellow]{escape(entry.error)}[/yellow]"
            elif entry.parsed is not None:
                info = entry.parsed
                pe = f" PE sections={info.pe.get('sections')}" if info.pe else ""
                prompt = f"{escape(entry.path)}\n  [dim]{info.size} bytes sha256={info.sha256[:16]}{pe}[/dim]"
            else:
                prompt = escape(entry.path)
            options.append(Option(prompt, id=entry.path))
        self.add_options(options)

    def selected_path(self) -> Optional[str]:
        if self.highlighted is None:
            return None
        return self.get_option_at_index(self.highlighted).id
