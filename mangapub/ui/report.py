"""Rich renderers for moderation results on the command line."""

from __future__ import annotations

from typing import Iterable, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..pipeline.moderation import ApproveResult, PendingChapter, RejectResult
from ..pipeline.sweeper import SweepReport
from ..services.settings import WebPConfig


def _format_bytes(value: int) -> str:
    size = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{value} B"


class ModerationReport:
    """Render approve, reject and pending listings using Rich widgets."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self._console = console or Console()

    @property
    def console(self) -> Console:
        return self._console

    def approve(self, result: ApproveResult) -> None:
        console = self._console
        console.rule(f"[bold green]Chapter {result.chapter_id} published")

        table = Table(box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Destination")
        table.add_column("Source", style="dim")
        table.add_column("Strategy")
        table.add_column("Action")
        for page in result.relocated:
            action = page.action if page.transferred else f"[dim]{page.action}[/dim]"
            table.add_row(str(page.index), page.dest_key, page.source_key or "-", page.strategy, action)
        console.print(table)

        stats = result.stats
        summary = Text.assemble(
            ("Prefix: ", "bold"),
            result.published_prefix,
            ("\nPages: ", "bold"),
            str(stats.pages_count),
            ("  Size: ", "bold"),
            f"{_format_bytes(stats.original_bytes)} -> {_format_bytes(stats.total_file_size)}",
            ("  Saved: ", "bold"),
            f"{stats.compression_ratio}%",
        )
        if result.degraded:
            summary.append("\nPublished without page records (positional order).", style="yellow")
        console.print(Panel(summary, border_style="green", box=box.ROUNDED))

        if result.skipped_pages:
            skipped = Table(title="Skipped pages", box=box.MINIMAL, title_style="bold yellow")
            skipped.add_column("Page", justify="right")
            skipped.add_column("Reason")
            skipped.add_column("Reference", style="dim")
            for page in result.skipped_pages:
                skipped.add_row(str(page.page_index), page.reason, page.reference or "-")
            console.print(skipped)
        if result.cleanup is not None:
            self.cleanup(result.cleanup)

    def reject(self, result: RejectResult) -> None:
        self._console.rule(f"[bold red]Chapter {result.chapter_id} rejected")
        self._console.print(
            f"Status: [bold]{result.status.value}[/bold]  Page rows removed: {result.deleted_page_count}"
        )
        self.cleanup(result.cleanup)

    def cleanup(self, report: SweepReport) -> None:
        table = Table(title="Cleanup", box=box.MINIMAL, title_style="bold")
        table.add_column("Target")
        table.add_column("Deleted", justify="right")
        if report.exact_deleted:
            table.add_row("exact keys", str(report.exact_deleted))
        for label, count in report.prefix_counts.items():
            table.add_row(label, str(count))
        self._console.print(table)
        for error in report.errors:
            self._console.print(f"[yellow]cleanup warning[/yellow] {error.key}: {error.message}")

    def pending(self, chapters: Iterable[PendingChapter]) -> None:
        entries = list(chapters)
        if not entries:
            self._console.print(Panel("No chapters are waiting for review.", border_style="yellow"))
            return
        table = Table(title="Pending chapters", box=box.ROUNDED)
        table.add_column("ID", justify="right", style="cyan")
        table.add_column("Title")
        table.add_column("Vol", justify="right")
        table.add_column("Ch", justify="right")
        table.add_column("Status")
        table.add_column("Pages", justify="right")
        table.add_column("Created", style="dim")
        for entry in entries:
            chapter = entry.chapter
            table.add_row(
                str(chapter.id),
                entry.slug,
                str(chapter.volume),
                str(chapter.chapter_number),
                chapter.status,
                str(entry.page_count),
                chapter.created_at,
            )
        self._console.print(table)

    def webp_config(self, config: WebPConfig) -> None:
        table = Table(title="WebP settings", box=box.SIMPLE)
        table.add_column("Setting")
        table.add_column("Value", justify="right")
        for name, value in config.to_dict().items():
            table.add_row(name.replace("_", " "), str(value))
        self._console.print(table)


__all__ = ["ModerationReport"]
