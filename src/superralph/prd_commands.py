"""prd.json commands for superralph CLI: status, validate, plan."""

import json
import shutil
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from superralph.backends import AgentNotFoundError, ClaudeInvoker
from superralph.checkpoint import CheckpointError, CheckpointStore
from superralph.config import get_claude_path
from superralph.error_logging import ErrorType, log_error
from superralph.prd import (
    PRD,
    PRDError,
    PRDNotFoundError,
    VALID_CATEGORIES,
    VALID_PRIORITIES,
    compute_stats,
    get_prd_path,
    load_prd,
    prd_exists,
    validate_prd,
)
from superralph.prompt import PLAN_OPENING_MESSAGE, PLAN_SYSTEM_PROMPT
from superralph.scheduler import get_unmet_dependencies, next_feature_with_reason

BACKUP_SUFFIX = ".backup"

_PRIORITY_STYLES = {"high": "red", "medium": "yellow", "low": "dim"}

_project_option = click.option(
    '--project', '-p', 'project', type=click.Path(file_okay=False, path_type=Path),
    default=None, help='Project directory containing prd.json (default: cwd)',
)


def _load_or_exit(console: Console, project_dir: Path, subcommand: str) -> PRD:
    """Load prd.json or print the error and exit 1."""
    try:
        return load_prd(project_dir)
    except PRDNotFoundError as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        log_error(f"superralph {subcommand}", subcommand, ErrorType.PRD_NOT_FOUND, str(e))
        sys.exit(1)
    except PRDError as e:
        console.print("[red]✗[/red] Failed to load prd.json")
        console.print(f"[dim]  {escape(str(e))}[/dim]")
        log_error(f"superralph {subcommand}", subcommand, ErrorType.PRD_INVALID, str(e))
        sys.exit(1)


def _print_breakdown(console: Console, prd: PRD) -> None:
    stats = compute_stats(prd)
    console.print("[dim]  By Category:[/dim]")
    for category in VALID_CATEGORIES:
        counts = stats.by_category.get(category, {})
        if counts.get("total"):
            console.print(f"    {category:12} {counts['passing']}/{counts['total']}")
    console.print()
    console.print("[dim]  By Priority:[/dim]")
    for priority in VALID_PRIORITIES:
        counts = stats.by_priority.get(priority, {})
        if counts.get("total"):
            console.print(f"    {priority:12} {counts['passing']}/{counts['total']}")
    console.print()


def build_status(prd: PRD, project_dir: Path) -> dict:
    """Status snapshot used by `status --json`."""
    feature, reason = next_feature_with_reason(prd.features)
    try:
        checkpoint = CheckpointStore(project_dir).load()
    except CheckpointError:
        checkpoint = None
    return {
        "project": prd.name,
        "test_command": prd.test_command,
        "stats": compute_stats(prd).to_dict(),
        "next_feature": feature.id if feature else None,
        "reason": reason,
        "checkpoint": checkpoint.to_dict() if checkpoint else None,
        "features": [
            {
                "id": f.id,
                "priority": f.priority,
                "category": f.category,
                "passes": f.passes,
                "waiting_on": get_unmet_dependencies(f, prd.features),
            }
            for f in prd.features
        ],
    }


def register_prd_commands(cli):
    """Register prd.json commands with the CLI."""

    @cli.command()
    @_project_option
    @click.option('--json', 'output_json', is_flag=True, help='Output as JSON')
    def status(project: Optional[Path], output_json: bool):
        """Show feature progress, the next feature, and any checkpoint.

        \b
        Examples:
            superralph status
            superralph status --json
        """
        console = Console()
        project_dir = (project or Path.cwd()).resolve()
        prd = _load_or_exit(console, project_dir, 'status')

        if output_json:
            click.echo(json.dumps(build_status(prd, project_dir), indent=2))
            return

        stats = compute_stats(prd)
        console.print(f"[bold]{escape(prd.name)}[/bold]")
        if prd.description:
            console.print(f"[dim]{escape(prd.description)}[/dim]")
        console.print(f"Progress: [green]{stats.passing}[/green]/{stats.total} features "
                      f"({stats.percent_complete:.0f}%)")
        console.print()

        table = Table(title="Features")
        table.add_column("ID", style="cyan")
        table.add_column("Priority")
        table.add_column("Category", style="blue")
        table.add_column("Status")
        table.add_column("Description")

        for feature in prd.features:
            style = _PRIORITY_STYLES.get(feature.priority, "")
            priority = f"[{style}]{feature.priority}[/{style}]" if style else escape(feature.priority)
            if feature.passes:
                state = "[green]passing[/green]"
            else:
                waiting = get_unmet_dependencies(feature, prd.features)
                if waiting:
                    state = f"[yellow]waiting on {escape(', '.join(waiting))}[/yellow]"
                else:
                    state = "pending"
            table.add_row(escape(feature.id), priority, escape(feature.category), state,
                          escape(feature.description))

        console.print(table)
        console.print()

        feature, reason = next_feature_with_reason(prd.features)
        if feature is not None:
            console.print(f"[bold]Next:[/bold] {escape(feature.id)} \"{escape(feature.description)}\" "
                          f"[dim]({escape(reason)})[/dim]")
        elif stats.total and stats.passing == stats.total:
            console.print("[bold green]All features complete![/bold green]")
        else:
            console.print(f"[yellow]Nothing to do:[/yellow] {escape(reason)}")

        try:
            checkpoint = CheckpointStore(project_dir).load()
        except CheckpointError as e:
            console.print(f"[red]Checkpoint unreadable:[/red] {escape(str(e))}")
            return
        if checkpoint is not None:
            hint = f" on {checkpoint.current_feature_id}" if checkpoint.current_feature_id else ""
            console.print(f"[dim]Checkpoint: resume at iteration {checkpoint.iteration}"
                          f"/{checkpoint.total_iterations}{escape(hint)} "
                          f"(saved {checkpoint.timestamp}); run 'superralph build --resume'[/dim]")

    @cli.command()
    @_project_option
    def validate(project: Optional[Path]):
        """Check prd.json structure, categories, priorities and dependencies.

        Exits 1 if any issue is found.
        """
        console = Console()
        project_dir = (project or Path.cwd()).resolve()
        prd = _load_or_exit(console, project_dir, 'validate')

        issues = validate_prd(prd)
        if issues:
            console.print("[red]✗[/red] prd.json has validation errors:\n")
            for issue in issues:
                console.print(f"  [red]•[/red] {escape(str(issue))}")
            console.print()
            log_error("superralph validate", 'validate', ErrorType.PRD_INVALID,
                      f"{len(issues)} validation error(s)",
                      context={'issues': [str(i) for i in issues]})
            sys.exit(1)

        stats = compute_stats(prd)
        console.print("[green]✓[/green] prd.json is valid\n")
        console.print(f"  [bold]Project:[/bold] {escape(prd.name)}")
        console.print(f"  [bold]Test Command:[/bold] {escape(prd.test_command)}")
        console.print(f"  [bold]Features:[/bold] {stats.total} features "
                      f"({stats.passing} passing, {stats.total - stats.passing} remaining)\n")
        _print_breakdown(console, prd)

        feature, _ = next_feature_with_reason(prd.features)
        if feature is not None:
            console.print(f"  [bold]Next:[/bold] {escape(feature.id)} \"{escape(feature.description)}\"")
        elif stats.total and stats.passing == stats.total:
            console.print("[bold green]  All features complete![/bold green]")

    @cli.command()
    @_project_option
    @click.option('--yes', '-y', is_flag=True, help='Replace an existing prd.json without asking')
    def plan(project: Optional[Path], yes: bool):
        """Create prd.json in an interactive claude session.

        An existing prd.json is backed up to prd.json.backup first.
        """
        console = Console()
        project_dir = (project or Path.cwd()).resolve()

        if prd_exists(project_dir):
            if not yes and not click.confirm("prd.json already exists. Replace it with a new PRD?"):
                console.print("Cancelled")
                return
            prd_path = get_prd_path(project_dir)
            backup = prd_path.with_name(prd_path.name + BACKUP_SUFFIX)
            shutil.copy2(prd_path, backup)
            console.print(f"[dim]  Backed up existing PRD to {backup.name}[/dim]")

        console.print()
        console.print("[bold]Starting PRD Planning Session[/bold]")
        console.print("[dim]Claude will ask questions and explore your codebase to create a PRD.[/dim]")
        console.print()

        invoker = ClaudeInvoker(claude_path=get_claude_path())
        try:
            exit_code = invoker.run_interactive(PLAN_SYSTEM_PROMPT, project_dir, PLAN_OPENING_MESSAGE)
        except AgentNotFoundError as e:
            console.print(f"[red]✗[/red] {escape(str(e))}")
            log_error("superralph plan", 'plan', ErrorType.AGENT_NOT_FOUND, str(e))
            sys.exit(1)

        if exit_code != 0:
            console.print(f"[yellow]⚠[/yellow] Planning session exited with code {exit_code}")

        if not prd_exists(project_dir):
            console.print("[yellow]⚠[/yellow] No prd.json was created")
            console.print("[dim]  The planning session ended without creating a PRD[/dim]")
            sys.exit(1)

        prd = _load_or_exit(console, project_dir, 'plan')
        issues = validate_prd(prd)
        if issues:
            console.print("[yellow]⚠[/yellow] prd.json was created but has validation errors:")
            for issue in issues:
                console.print(f"  [red]•[/red] {escape(str(issue))}")
            console.print()
            console.print("[dim]  Fix the PRD by hand or run 'superralph plan' again[/dim]")
            sys.exit(1)

        console.print("[green]✓[/green] prd.json created successfully!\n")
        console.print(f"  [bold]Project:[/bold] {escape(prd.name)}")
        console.print(f"  [bold]Test Command:[/bold] {escape(prd.test_command)}")
        console.print(f"  [bold]Features:[/bold] {len(prd.features)} features defined\n")
        console.print("[dim]  Run 'superralph build' to start implementing features[/dim]")
