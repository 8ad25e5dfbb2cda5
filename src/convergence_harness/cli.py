"""CLI for convergence-harness."""

import json
import logging
import random
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from .config import default_config, load_config, save_config
from .constants import CONFIG_FILE, DEFAULT_FILE_SIZE_EXP, DEFAULT_NUM_FILES, VERSIONING_TYPES
from .core import ScenarioResult, VersioningConfig
from .diffing import compare_snapshots
from .display import display_comparison, display_result, display_snapshot
from .errors import ConfigError, HarnessError
from .generator import SeedSource, generate_files, max_tree_size
from .ignore import IgnoreSpec
from .scenario import ClusterScenario
from .snapshot import scan_directory
from .utils import atomic_write_text, humanize_size
from .workspace import TestWorkspace


app = typer.Typer(help="""\
Convergence test harness for file synchronization clusters. Starts several
replicas, seeds divergent folders, and checks after every round of changes
that each replica ends up with exactly the expected files.""")

console = Console()

VERSIONING_CHOICES = ("none", "simple", "staggered", "all")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_config_or_exit(path: Optional[Path]):
    try:
        return load_config(path)
    except ConfigError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)


def _versionings(name: str) -> List[VersioningConfig]:
    if name == "all":
        return [VersioningConfig.named(kind or "none") for kind in VERSIONING_TYPES]
    return [VersioningConfig.named(name)]


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Harness config (default: harness.yaml in the workspace, else built-in topology)"),
    workspace: Path = typer.Option(Path("."), "--workspace", "-w", help="Directory holding replica homes and folders"),
    versioning: str = typer.Option("none", "--versioning", help="none, simple, staggered or all"),
    iterations: Optional[int] = typer.Option(None, "--iterations", "-n", help="Override number of rounds"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Override random seed"),
    report: Optional[Path] = typer.Option(None, "--report", help="Write a JSON report here"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run the convergence scenario against a replica cluster.

    Examples:
        convergence-harness run -w integration              # No versioning
        convergence-harness run -w integration --versioning all
    """
    _setup_logging(verbose)
    if versioning not in VERSIONING_CHOICES:
        console.print(f"[red]✗[/red] Unknown versioning '{versioning}' (choose from {', '.join(VERSIONING_CHOICES)})")
        raise typer.Exit(2)

    config = _load_config_or_exit(config_path or _default_config_path(workspace))
    if iterations is not None:
        config.iterations = iterations
    if seed is not None:
        config.seed = seed
    ws = TestWorkspace(workspace, config)

    results: List[ScenarioResult] = []
    for policy in _versionings(versioning):
        try:
            result = ClusterScenario(ws, versioning=policy).run()
        except HarnessError as e:
            console.print(f"[red]✗[/red] {e}")
            result = ScenarioResult(versioning=policy.label, iterations_planned=config.iterations, failures=[str(e)])
        display_result(result, console)
        results.append(result)

    if report:
        payload = [r.model_dump(mode="json") | {"passed": r.passed} for r in results]
        atomic_write_text(report, json.dumps(payload, indent=2))
        console.print(f"[dim]Report written to {report}[/dim]")

    if not all(r.passed for r in results):
        raise typer.Exit(1)


def _default_config_path(workspace: Path) -> Optional[Path]:
    path = workspace / CONFIG_FILE
    return path if path.exists() else None


@app.command()
def snapshot(
    directory: Path = typer.Argument(..., help="Folder to scan"),
    limit: Optional[int] = typer.Option(None, "-n", help="Show at most N entries"),
):
    """Show the contents of a folder as the harness sees them."""
    try:
        snap = scan_directory(directory, IgnoreSpec())
    except HarnessError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)
    display_snapshot(snap, console, limit=limit)


@app.command()
def compare(
    actual: Path = typer.Argument(..., help="Folder to check"),
    expected: Path = typer.Argument(..., help="Folder with the expected contents"),
    no_permissions: bool = typer.Option(False, "--no-permissions", help="Ignore permission bits"),
):
    """Compare two folders by content digest, size and permissions."""
    ignore = IgnoreSpec()
    try:
        result = compare_snapshots(
            scan_directory(actual, ignore),
            scan_directory(expected, ignore),
            check_permissions=not no_permissions,
        )
    except HarnessError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)
    display_comparison(result, console, label=str(actual))
    if not result.ok:
        raise typer.Exit(1)


@app.command()
def generate(
    directory: Path = typer.Argument(..., help="Folder to populate"),
    count: int = typer.Option(DEFAULT_NUM_FILES, "--count", help="Number of files"),
    size_exp: int = typer.Option(DEFAULT_FILE_SIZE_EXP, "--size-exp", help="Files are at most about 2**size_exp bytes"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Random seed"),
    seed_source: Path = typer.Option(Path("LICENSE"), "--seed-source", help="File whose bytes fill the generated files"),
):
    """Populate a folder with random files, as a scenario does at setup."""
    rng = random.Random(seed) if seed is not None else random.Random()
    try:
        created = generate_files(directory, count, size_exp, SeedSource(seed_source), rng=rng)
    except HarnessError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(2)
    console.print(f"[green]✓[/green] Created {len(created)} files in {directory} "
                  f"(at most {humanize_size(max_tree_size(count, size_exp))})")


@app.command("init-config")
def init_config(
    path: Path = typer.Argument(Path(CONFIG_FILE), help="Where to write the config"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write the default three-replica configuration as YAML."""
    if path.exists() and not force:
        console.print(f"[red]✗[/red] {path} already exists (use --force to overwrite)")
        raise typer.Exit(1)
    save_config(default_config(), path)
    console.print(f"[green]✓[/green] Wrote {path}")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
