from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, MofNCompleteColumn, TimeRemainingColumn


class IngestionProgress:
    """Rich progress bar fed by IngestionPipeline's per-batch callback."""

    def __init__(self, console: Console):
        self.console = console
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("[green]{task.fields[inserted]} inserted[/green]"),
            TextColumn("[yellow]{task.fields[skipped]} skipped[/yellow]"),
            TimeRemainingColumn(),
            console=self.console
        )
        self.task_id = None

    def __enter__(self):
        self.progress.start()
        self.task_id = self.progress.add_task("Embedding chunks", total=None, inserted=0, skipped=0)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.progress.stop()
        return False

    def update(self, done: int, total: int, inserted: int, skipped: int) -> None:
        self.progress.update(
            self.task_id,
            completed=done,
            total=total,
            inserted=inserted,
            skipped=skipped
        )
