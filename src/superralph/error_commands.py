"""Error reporting commands for superralph CLI.

Provides the `superralph errors` command for viewing error statistics and history.
"""

import json
import click
from datetime import datetime
from typing import Optional

from superralph.error_logging import ErrorLogger, ErrorType


def register_error_commands(cli):
    """Register error commands with the CLI."""

    @cli.command()
    @click.option(
        '--days',
        default=7,
        type=int,
        help='Number of days to include in stats (default: 7)',
    )
    @click.option(
        '--type',
        'error_type',
        default=None,
        type=click.Choice([t.value for t in ErrorType]),
        help='Filter by error type (e.g., INVOCATION_FAILED)',
    )
    @click.option(
        '--json',
        'output_json',
        is_flag=True,
        help='Output as JSON for programmatic access',
    )
    @click.option(
        '--limit',
        default=10,
        type=int,
        help='Number of recent errors to show (default: 10)',
    )
    def errors(days: int, error_type: Optional[str], output_json: bool, limit: int):
        """Show error statistics and recent errors.

        Reads ~/.superralph/errors.jsonl, where failed and blocked builds
        and invalid PRDs are recorded.

        \b
        Examples:
            superralph errors                         # Last 7 days
            superralph errors --days 30
            superralph errors --type INVOCATION_FAILED
            superralph errors --json
        """
        logger = ErrorLogger()
        stats = logger.get_error_stats(days=days)
        recent = logger.get_recent_errors(limit=limit)

        if error_type:
            recent = [e for e in recent if e.get('error_type') == error_type]
            count = stats['by_type'].get(error_type, 0)
            stats = {
                'total': count,
                'by_type': {error_type: count} if count else {},
                'by_command': {},
            }

        if output_json:
            _output_json(stats, recent, days)
        else:
            _output_human(stats, recent, days, error_type)


def _output_json(stats: dict, recent: list, days: int) -> None:
    output = {
        'stats': stats,
        'recent_errors': recent,
        'days': days,
    }
    click.echo(json.dumps(output, indent=2))


def _format_timestamp(ts_str: str) -> str:
    try:
        return datetime.fromisoformat(ts_str.rstrip('Z')).strftime('%Y-%m-%d %H:%M')
    except (ValueError, AttributeError):
        return ts_str[:16] if ts_str else 'unknown'


def _output_human(
    stats: dict, recent: list, days: int, error_type: Optional[str]
) -> None:
    """Print counts by type and subcommand, then the recent entries."""
    total = stats['total']

    if total == 0:
        if error_type:
            click.echo(f"No errors of type '{error_type}' in the last {days} days.")
        else:
            click.echo(f"No errors in the last {days} days.")
        return

    click.echo(f"Error summary (last {days} days):")
    click.echo()

    by_type = stats.get('by_type', {})
    if by_type:
        click.echo("By type:")
        for name, count in sorted(by_type.items(), key=lambda x: x[1], reverse=True):
            pct = count / total * 100
            click.echo(f"  {name:25} {count:4} ({pct:.0f}%)")
        click.echo()

    by_command = stats.get('by_command', {})
    if by_command:
        click.echo("By command:")
        for cmd, count in sorted(by_command.items(), key=lambda x: x[1], reverse=True):
            pct = count / total * 100
            click.echo(f"  superralph {cmd:14} {count:4} ({pct:.0f}%)")
        click.echo()

    if recent:
        click.echo("Recent errors:")
        for error in recent:
            message = error.get('message', '')
            if len(message) > 60:
                message = message[:57] + '...'
            click.echo(
                f"  {_format_timestamp(error.get('timestamp', ''))}  "
                f"{error.get('subcommand', 'unknown'):10}  "
                f"{error.get('error_type', 'UNKNOWN'):20}  {message}"
            )
