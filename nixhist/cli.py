"""
Command-line interface for nixhist.

This module provides the command-line entry point for browsing, comparing and
managing NixOS and Home-Manager generations.
"""

import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from nixhist import __version__
from nixhist.config import NixhistConfig
from nixhist.context import DashboardContext
from nixhist.detect import detect_system, profiles_for
from nixhist.errors import ManifestUnreadable, NixhistError, NoCurrentGeneration
from nixhist.executor.shell import SubprocessExecutor
from nixhist.packages import DiffResult, filter_packages
from nixhist.planner import Action, MutationPlan
from nixhist.registry import Generation
from nixhist.source import ProfileKind
from nixhist.source.nixenv import NixEnvSource
from nixhist.workflow import ExecutionOutcome

# Set up the console and logger
console = Console()
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=console, rich_tracebacks=True)],
)
logger = logging.getLogger("nixhist")

# Create the Typer app
app = typer.Typer(
    help="NixOS generation dashboard: view, compare, restore, delete and pin generations.",
    add_completion=False,
    no_args_is_help=True,
)

PROFILE_OPTION = typer.Option(
    ProfileKind.SYSTEM,
    "--profile",
    "-p",
    help="Profile to operate on.",
    case_sensitive=False,
)


def log_error(message: str) -> None:
    """Log an error message to both logger and console."""
    logger.error(message)
    console.print(f"[red]{message}[/red]")
    return None


def build_context(options: Dict[str, Any]) -> DashboardContext:
    """Create the session context for a command invocation."""
    config_path: Optional[Path] = options.get("config_path")
    config = NixhistConfig.load(config_path)
    system = detect_system()
    source = NixEnvSource(profiles_for(system))
    return DashboardContext.create(
        config,
        source,
        SubprocessExecutor(),
        system,
        dry_run=options.get("dry_run", False),
        config_path=config_path,
    )


def open_session(ctx: typer.Context, profile: ProfileKind) -> DashboardContext:
    """Build the context and load the generations of *profile*."""
    context = build_context(ctx.ensure_object(dict))
    try:
        context.registry.load(profile)
    except NixhistError as e:
        log_error(f"Failed to load {profile} generations: {e}")
        raise typer.Exit(1) from e

    report = context.registry.last_report(profile)
    if report and report.skipped:
        console.print(
            f"[yellow]Skipped {len(report.skipped)} malformed {profile} "
            f"record(s); run with --verbose for details[/yellow]"
        )
    if context.dry_run:
        console.print("[yellow]Dry run: no changes will be made[/yellow]")
    return context


def generation_status(generation: Generation, show_boot: bool = True) -> str:
    markers = []
    if generation.is_current:
        markers.append("[green]current[/green]")
    if generation.is_pinned:
        markers.append("[cyan]pinned[/cyan]")
    if show_boot and generation.is_in_bootloader:
        markers.append("boot")
    return " ".join(markers)


def package_count(context: DashboardContext, generation: Generation) -> str:
    try:
        return str(len(context.catalog.load_packages(generation)))
    except ManifestUnreadable as e:
        logger.debug(
            f"No package count for {generation.profile_kind} #{generation.id}: {e}"
        )
        return "-"


def system_header(context: DashboardContext) -> str:
    system = context.system
    flakes = "yes" if system.uses_flakes else "no"
    return f"nixhist · {system.username}@{system.hostname} · flakes: {flakes}"


def report_outcome(outcome: ExecutionOutcome) -> None:
    """Print what happened to a plan, including the failing command."""
    for result in outcome.results:
        colour = "green" if result.ok else "red"
        console.print(f"[{colour}]{result.message}[/{colour}]")

    if outcome.error is not None:
        log_error(f"Failed command: {outcome.error.failed_command}")
        log_error(outcome.error.message)
        completed = [r for r in outcome.error.partial_results if r.ok]
        if completed:
            console.print(
                f"[yellow]{len(completed)} command(s) completed before the "
                "failure; the operation is partial[/yellow]"
            )
    elif outcome.simulated:
        console.print("[yellow]Dry run: nothing was executed[/yellow]")
    elif outcome.registry_stale:
        console.print(
            f"[yellow]Commands completed, but the generation list is out of date: "
            f"{outcome.registry_error}[/yellow]"
        )


def run_plan(
    context: DashboardContext, plan: MutationPlan, yes: bool
) -> Optional[ExecutionOutcome]:
    """Show a plan, ask for confirmation and execute it."""
    console.print(Panel(plan.preview_text, title=plan.action.value.capitalize()))
    context.workflow.request(plan)

    if not yes and not typer.confirm("Proceed?", default=False):
        context.workflow.cancel()
        console.print("Cancelled, nothing was changed.")
        return None

    outcome = asyncio.run(context.workflow.confirm())
    report_outcome(outcome)
    if not outcome.ok:
        raise typer.Exit(1)
    return outcome


def wait_for_undo(context: DashboardContext, profile: ProfileKind) -> None:
    """Keep the undo window open until it expires or the user presses Ctrl+C."""
    workflow = context.workflow
    try:
        with console.status("") as status:
            while True:
                pending = workflow.pending_undo(profile)
                if pending is None:
                    break
                remaining = pending.remaining(workflow.clock.now()).total_seconds()
                status.update(f"Press Ctrl+C within {remaining:.0f}s to undo the deletion")
                time.sleep(min(0.2, max(remaining, 0.0)))
    except KeyboardInterrupt:
        outcome = asyncio.run(workflow.cancel_undo(profile))
        if outcome is None:
            console.print("[yellow]Undo window already closed; deletion is final[/yellow]")
            return
        report_outcome(outcome)
        if not outcome.ok:
            raise typer.Exit(1) from None
        console.print("[green]Deletion undone[/green]")
        return

    console.print("Deletion is final.")


@app.callback()
def callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose output."
    ),
    json: bool = typer.Option(False, "--json", help="Output logs in JSON format."),
    version: bool = typer.Option(
        False, "--version", help="Show the application version and exit."
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", "-n", help="Show what would be done without executing."
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to the config file (default: ~/.config/nixhist)."
    ),
) -> None:
    """
    nixhist: browse, compare and manage NixOS generations.
    """
    if version:
        console.print(f"nixhist version: {__version__}")
        raise typer.Exit()

    ctx.ensure_object(dict)
    ctx.obj["dry_run"] = dry_run
    ctx.obj["config_path"] = config

    # Configure logging level based on verbosity
    if verbose:
        logger.setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled")

    # Configure JSON logging if requested
    if json:
        for handler in list(logging.root.handlers):
            logging.root.removeHandler(handler)
        logging.basicConfig(
            level=logging.INFO if not verbose else logging.DEBUG,
            format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"message": "%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
            stream=sys.stdout,
        )
        logger.debug("JSON logging enabled")


@app.command(name="generations")
def list_generations(
    ctx: typer.Context,
    profile: ProfileKind = PROFILE_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format."),
) -> None:
    """
    List the generations of a profile, newest first.
    """
    context = open_session(ctx, profile)
    generations = context.registry.generations(profile)

    if not generations:
        logger.info(f"No {profile} generations found")
        return

    try:
        context.registry.current(profile)
    except NoCurrentGeneration as e:
        console.print(f"[yellow]{e}[/yellow]")

    if json_output:
        data = [
            {
                "id": gen.id,
                "date": gen.created_at.isoformat(),
                "current": gen.is_current,
                "pinned": gen.is_pinned,
                "in_bootloader": gen.is_in_bootloader,
                "nixos_version": gen.nixos_version,
                "kernel_version": gen.kernel_version,
                "closure_size": gen.closure_size,
                "store_path": gen.store_path,
            }
            for gen in generations
        ]
        typer.echo(json.dumps(data, indent=2))
        return

    display = context.config.display
    console.print(system_header(context))
    table = Table(title=f"{profile} Generations")
    table.add_column("ID", justify="right")
    table.add_column("Date")
    table.add_column("Status")
    if display.show_nixos_version:
        table.add_column("Version")
    if display.show_kernel_version and profile is ProfileKind.SYSTEM:
        table.add_column("Kernel")
    if display.show_package_count:
        table.add_column("Packages", justify="right")
    if display.show_size:
        table.add_column("Size", justify="right")
    if display.show_store_path:
        table.add_column("Store path")

    for gen in generations:
        row = [
            f"#{gen.id}",
            gen.formatted_date(),
            generation_status(gen, display.show_boot_entry),
        ]
        if display.show_nixos_version:
            row.append(gen.nixos_version or "-")
        if display.show_kernel_version and profile is ProfileKind.SYSTEM:
            row.append(gen.kernel_version or "-")
        if display.show_package_count:
            row.append(package_count(context, gen))
        if display.show_size:
            row.append(gen.formatted_size())
        if display.show_store_path:
            row.append(gen.store_path)
        table.add_row(*row)
    console.print(table)


@app.command()
def packages(
    ctx: typer.Context,
    generation_id: int = typer.Argument(..., help="Generation to inspect."),
    profile: ProfileKind = PROFILE_OPTION,
    filter_text: str = typer.Option(
        "", "--filter", "-f", help="Only show packages whose name contains this text."
    ),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format."),
) -> None:
    """
    List the packages installed in a generation.
    """
    context = open_session(ctx, profile)
    try:
        generation = context.registry.get(profile, generation_id)
    except NixhistError as e:
        log_error(str(e))
        raise typer.Exit(1) from e

    try:
        package_set = context.catalog.load_packages(generation)
    except ManifestUnreadable as e:
        console.print(
            f"{profile} #{generation.id}: {generation.formatted_date()}, "
            f"{generation.nixos_version or 'unknown version'}, "
            f"{generation.formatted_size()}"
        )
        log_error(f"Packages unavailable: {e}")
        raise typer.Exit(1) from e

    entries = list(filter_packages(package_set, filter_text))

    if json_output:
        data = [
            {"name": e.name, "version": e.version, "size": e.size} for e in entries
        ]
        typer.echo(json.dumps(data, indent=2))
        return

    table = Table(title=f"{profile} #{generation.id} ({generation.formatted_date()})")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Size", justify="right")
    for entry in entries:
        table.add_row(entry.name, entry.version, entry.formatted_size())
    console.print(table)
    console.print(f"{len(entries)} of {len(package_set)} packages")


def print_diff(result: DiffResult) -> None:
    console.print(result.summary())

    if result.added:
        table = Table(title="Added")
        table.add_column("Name")
        table.add_column("Version")
        for entry in result.added:
            table.add_row(f"[green]+ {entry.name}[/green]", entry.version)
        console.print(table)

    if result.removed:
        table = Table(title="Removed")
        table.add_column("Name")
        table.add_column("Version")
        for entry in result.removed:
            table.add_row(f"[red]- {entry.name}[/red]", entry.version)
        console.print(table)

    if result.changed:
        table = Table(title="Updated")
        table.add_column("Name")
        table.add_column("Old")
        table.add_column("New")
        table.add_column("")
        for change in result.changed:
            note = ""
            if change.is_kernel:
                note = "[magenta]kernel[/magenta]"
            elif change.is_security:
                note = "[yellow]security[/yellow]"
            table.add_row(change.name, change.version_a, change.version_b, note)
        console.print(table)


@app.command()
def diff(
    ctx: typer.Context,
    generation_a: int = typer.Argument(..., help="Older generation."),
    generation_b: int = typer.Argument(..., help="Newer generation."),
    profile: ProfileKind = PROFILE_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format."),
) -> None:
    """
    Compare the packages of two generations.
    """
    context = open_session(ctx, profile)
    try:
        result = context.catalog.diff_generations(
            context.registry.get(profile, generation_a),
            context.registry.get(profile, generation_b),
        )
    except NixhistError as e:
        log_error(str(e))
        raise typer.Exit(1) from e

    if json_output:
        data = {
            "added": [{"name": e.name, "version": e.version} for e in result.added],
            "removed": [{"name": e.name, "version": e.version} for e in result.removed],
            "changed": [
                {"name": c.name, "old": c.version_a, "new": c.version_b}
                for c in result.changed
            ],
        }
        typer.echo(json.dumps(data, indent=2))
        return

    console.print(f"{profile} #{generation_a} → #{generation_b}")
    print_diff(result)


@app.command()
def restore(
    ctx: typer.Context,
    generation_id: int = typer.Argument(..., help="Generation to switch to."),
    profile: ProfileKind = PROFILE_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """
    Switch a profile back to an earlier generation.
    """
    context = open_session(ctx, profile)
    try:
        plan = context.planner.plan_restore(profile, generation_id)
        outcome = run_plan(context, plan, yes)
    except NixhistError as e:
        log_error(str(e))
        raise typer.Exit(1) from e

    if outcome is not None and not outcome.simulated:
        console.print(f"[green]Restored {profile} generation #{generation_id}[/green]")


@app.command()
def delete(
    ctx: typer.Context,
    generation_ids: List[int] = typer.Argument(..., help="Generations to delete."),
    profile: ProfileKind = PROFILE_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """
    Delete generations, with a short window to undo.
    """
    context = open_session(ctx, profile)
    try:
        plan = context.planner.plan_delete(profile, generation_ids)
        outcome = run_plan(context, plan, yes)
    except (NixhistError, ValueError) as e:
        log_error(str(e))
        raise typer.Exit(1) from e

    if outcome is not None and outcome.pending_undo is not None:
        wait_for_undo(context, profile)


@app.command()
def pin(
    ctx: typer.Context,
    generation_id: int = typer.Argument(..., help="Generation to pin or unpin."),
    profile: ProfileKind = PROFILE_OPTION,
) -> None:
    """
    Pin a generation to protect it from deletion, or unpin it.
    """
    context = open_session(ctx, profile)
    try:
        plan = context.planner.plan_pin_toggle(profile, generation_id)
        context.workflow.request(plan)
    except NixhistError as e:
        log_error(str(e))
        raise typer.Exit(1) from e

    verb = "Pinned" if plan.action is Action.PIN else "Unpinned"
    console.print(f"{verb} {profile} generation #{generation_id}")


@app.command()
def version() -> None:
    """Show the application version."""
    console.print(f"nixhist version: {__version__}")


if __name__ == "__main__":
    app()
