"""Log viewing command for superralph CLI.

Provides `superralph logs` for reading the hybrid-format command logs that
builds write under the configured log directory.
"""

from typing import Optional

import click

from superralph.config import get_log_dir
from superralph.logging import RalphLogger

LEVEL_MARKS = {
    'INFO': '✓',
    'ERROR': '✗',
    'WARNING': '⚠',
    'DEBUG': '·',
}

# Data keys worth a second line; everything else stays in the file
_SHOWN_FIELDS = (
    ('feature_id', 'Feature'),
    ('iteration', 'Iteration'),
    ('duration_ms', 'Duration'),
)


def register_log_commands(cli):
    """Register log commands with the CLI."""

    @cli.command()
    @click.option('--limit', default=50, type=int,
                  help='Number of log entries to show (default: 50)')
    @click.option('--command', 'command_filter',
                  help='Filter by command name (e.g. build)')
    @click.option('--level', 'level_filter',
                  type=click.Choice(list(LEVEL_MARKS), case_sensitive=False),
                  help='Filter by log level')
    def logs(limit: int, command_filter: Optional[str], level_filter: Optional[str]):
        """View superralph command logs with optional filtering.

        \b
        Examples:
            superralph logs
            superralph logs --level ERROR
            superralph logs --command build --limit 20
        """
        ralph_logger = RalphLogger(get_log_dir())
        entries = ralph_logger.read_logs(
            limit=limit,
            command_filter=command_filter,
            level_filter=level_filter.upper() if level_filter else None,
        )

        if not entries:
            click.echo("No log entries found.")
            return

        click.echo(f"superralph logs (showing {len(entries)} entries)")
        click.echo()

        # read_logs is newest first; print oldest first so the latest is at the bottom
        for entry in reversed(entries):
            mark = LEVEL_MARKS.get(entry['level'], '·')
            click.echo(f"{mark} {entry['timestamp']} [{entry['command']}] {entry['message']}")
            for key, label in _SHOWN_FIELDS:
                value = entry['data'].get(key)
                if value is None:
                    continue
                if key == 'duration_ms':
                    value = f"{value}ms"
                click.echo(f"   {label}: {value}")
