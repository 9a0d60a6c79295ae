from pathlib import Path
from textual.widgets import Static
from rich.markup import escape
from rich.table import Table


def report_subtitle(defect_count: int) -> str:
    found = str(defect_count) if defect_count else "no"
    return f"YaraWizard has found {found} defects during analysis."


class DefectsView(Static):
    def update_defects(self, session):
        if not session or not session.defects:
            self.update("[bold green]No defects.[/bold green]")
            return

        table = Table(title="Defects", expand=True)
        table.add_column("Rule", no_wrap=True)
        table.add_column("Artifact", no_wrap=True)
        table.add_column("Tags")
        table.add_column("#Strings", justify="right")

        for d in session.defects:
            table.add_row(
                f"[red]{escape(d.rule)}[/red]",
                escape(Path(d.artifact).name),
                ", ".join(d.tags),
                str(len(d.strings)),
            )
        self.update(table)
