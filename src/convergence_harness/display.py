"""Rich rendering for snapshots, comparisons and scenario results."""

from typing import Optional

from rich.console import Console
from rich.table import Table

from .core import ComparisonResult, EntryKind, MismatchKind, ScenarioResult, Snapshot
from .hashing import short_digest
from .utils import format_mode, format_mtime, humanize_size


def display_snapshot(snapshot: Snapshot, console: Console, limit: Optional[int] = None):
    """Display a snapshot as a table sorted by path.

    Args:
        snapshot: Snapshot to show
        console: Rich console for output
        limit: Show at most this many entries
    """
    table = Table(title=f"{snapshot.root or 'snapshot'} ({snapshot.summary()})")
    table.add_column("Path", style="cyan")
    table.add_column("Mode")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    table.add_column("Digest", style="dim")

    for i, entry in enumerate(snapshot.sorted_entries()):
        if limit is not None and i >= limit:
            break
        if entry.kind == EntryKind.DIR:
            table.add_row(f"{entry.path}/", "", "", "", "")
            continue
        table.add_row(
            entry.path,
            format_mode(entry.mode),
            humanize_size(entry.size),
            format_mtime(entry.mtime),
            short_digest(entry.digest),
        )

    console.print(table)
    if limit is not None and len(snapshot) > limit:
        console.print(f"[dim]... {len(snapshot) - limit} more entries[/dim]")


def display_comparison(result: ComparisonResult, console: Console, label: str = "", limit: int = 50):
    """Display the outcome of a snapshot comparison."""
    prefix = f"{label}: " if label else ""
    if result.ok:
        console.print(f"[green]✓[/green] {prefix}contents match ({result.actual_count} entries)")
        if result.tolerated:
            console.print(f"[dim]  {len(result.tolerated)} file(s) differ only in mtime[/dim]")
        return

    console.print(f"[red]✗[/red] {prefix}{len(result.mismatches)} mismatch(es), "
                  f"{result.actual_count} actual vs {result.expected_count} expected entries")

    table = Table()
    table.add_column("Kind")
    table.add_column("Path", style="cyan")
    table.add_column("Actual")
    table.add_column("Expected")

    style = {
        MismatchKind.MISSING: "red",
        MismatchKind.EXTRA: "yellow",
    }
    for mismatch in result.mismatches[:limit]:
        color = style.get(mismatch.kind, "magenta")
        table.add_row(
            f"[{color}]{mismatch.kind.value}[/{color}]",
            mismatch.path,
            mismatch.actual or "",
            mismatch.expected or "",
        )
    console.print(table)
    if len(result.mismatches) > limit:
        console.print(f"[dim]... {len(result.mismatches) - limit} more[/dim]")


def display_result(result: ScenarioResult, console: Console):
    """Display a scenario summary with per-round timings."""
    status = "[green]✓ PASSED[/green]" if result.passed else "[red]✗ FAILED[/red]"
    console.print(f"\n[bold]Versioning:[/bold] {result.versioning}  {status}")
    console.print(f"Iterations: {result.iterations_completed}/{result.iterations_planned}")

    if result.rounds:
        table = Table(title="Rounds")
        table.add_column("#", justify="right")
        table.add_column("Converge", justify="right")
        table.add_column("Settle", justify="right")
        table.add_column("Result")
        for round_result in result.rounds:
            table.add_row(
                str(round_result.iteration + 1),
                f"{round_result.convergence_seconds:.1f}s",
                f"{round_result.settle_seconds:.1f}s",
                "[green]ok[/green]" if round_result.passed else "[red]failed[/red]",
            )
        console.print(table)

    for failure in result.failures:
        console.print(f"[red]•[/red] {failure}")
