"""Build command for superralph CLI.

Runs the iteration controller against prd.json in the project directory.
"""

import sys
import time
import traceback
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from superralph.backends import ClaudeInvoker, ToolConfig
from superralph.cancellation import (
    CancelToken,
    PauseGate,
    install_pause_handler,
    install_signal_handlers,
)
from superralph.checkpoint import CheckpointError, CheckpointStore
from superralph.config import (
    CANCEL_POLICIES,
    ConfigError,
    get_allowed_bash_commands,
    get_cancel_policy,
    get_claude_path,
    get_delay_seconds,
    get_log_dir,
    get_max_iterations,
    get_max_validation_attempts,
    get_phased,
    get_snapshot_settings,
)
from superralph.console import ConsoleObserver
from superralph.controller import BuildConfig, ErrorKind, IterationController, RunOutcome
from superralph.error_logging import ErrorType, log_error
from superralph.logging import RalphLogger
from superralph.prd import PRDNotFoundError, PRDError, PRDValidationError, ensure_valid, load_prd
from superralph.prompt import SnapshotConfig

# Process exit code per terminal outcome
EXIT_CODES = {
    RunOutcome.COMPLETE: 0,
    RunOutcome.BUDGET_EXHAUSTED: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.BLOCKED: 2,
    RunOutcome.CANCELLED: 130,
}

# errors.jsonl type per controller failure kind
FAILURE_ERROR_TYPES = {
    ErrorKind.LOAD: ErrorType.PRD_INVALID,
    ErrorKind.INVOCATION: ErrorType.INVOCATION_FAILED,
    ErrorKind.CHECKPOINT: ErrorType.CHECKPOINT_CORRUPT,
    ErrorKind.AGENT_NOT_FOUND: ErrorType.AGENT_NOT_FOUND,
}


def _command_line() -> str:
    return " ".join(["superralph"] + sys.argv[1:])


def build_config_from_options(
    max_iterations: Optional[int],
    phased: Optional[bool],
    cancel_policy: Optional[str],
    delay: Optional[float],
    record_progress: bool,
) -> BuildConfig:
    """
    Resolve build settings: CLI flag > ~/.superralph/config.yaml > default.

    Raises:
        ConfigError: If a resolved value is unusable
    """
    snapshot = get_snapshot_settings()
    return BuildConfig(
        max_iterations=get_max_iterations(max_iterations),
        delay_seconds=get_delay_seconds(delay),
        cancel_policy=get_cancel_policy(cancel_policy),
        phased=get_phased(phased),
        max_validation_attempts=get_max_validation_attempts(),
        record_progress=record_progress,
        snapshot=SnapshotConfig(
            max_tree_depth=snapshot['max_tree_depth'],
            max_file_size_bytes=snapshot['max_file_size_bytes'],
            include_key_files=snapshot['include_key_files'],
        ),
    )


def register_build_commands(cli):
    """Register the build command with the CLI."""

    @cli.command()
    @click.option('--project', '-p', 'project', type=click.Path(file_okay=False, path_type=Path),
                  default=None, help='Project directory containing prd.json (default: cwd)')
    @click.option('--max-iterations', '-n', type=int, default=None,
                  help='Iteration budget (default: config or 50)')
    @click.option('--resume', is_flag=True, help='Continue from the last checkpoint')
    @click.option('--debug', is_flag=True, help='Show tool output and agent diagnostics')
    @click.option('--phased/--no-phased', default=None,
                  help='Plan and validate before executing each feature')
    @click.option('--cancel-policy', type=click.Choice(CANCEL_POLICIES), default=None,
                  help="On Ctrl-C: 'graceful' lets the agent finish, 'kill' stops it")
    @click.option('--delay', type=float, default=None,
                  help='Seconds to wait between iterations (default: config or 3)')
    @click.option('--record-progress', is_flag=True,
                  help='Append an entry to progress.txt after each iteration')
    def build(project, max_iterations, resume, debug, phased, cancel_policy, delay, record_progress):
        """Run the agent over prd.json until every feature passes.

        Each iteration picks the highest-priority feature whose dependencies
        pass, runs claude on it, and checkpoints to .superralph/resume.json.

        \b
        Ctrl-C cancels (a second Ctrl-C aborts immediately).
        `kill -USR1 <pid>` pauses or resumes between iterations.

        \b
        Exit codes:
            0    all features complete, or iteration budget used up
            1    failure (invalid prd.json, agent kept failing)
            2    blocked (remaining features have unmet dependencies)
            130  cancelled

        \b
        Examples:
            superralph build
            superralph build -n 10 --phased
            superralph build --resume
        """
        console = Console()
        project_dir = (project or Path.cwd()).resolve()
        command = _command_line()

        try:
            config = build_config_from_options(
                max_iterations, phased, cancel_policy, delay, record_progress
            )
        except ConfigError as e:
            console.print(f"[red]Config error:[/red] {escape(str(e))}")
            log_error(command, 'build', ErrorType.CONFIG_ERROR, str(e))
            sys.exit(1)

        try:
            prd = ensure_valid(load_prd(project_dir))
        except PRDNotFoundError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            log_error(command, 'build', ErrorType.PRD_NOT_FOUND, str(e))
            sys.exit(1)
        except PRDValidationError as e:
            console.print("[red]prd.json failed validation:[/red]")
            for issue in e.issues:
                console.print(f"  - {escape(str(issue))}")
            log_error(command, 'build', ErrorType.PRD_INVALID, str(e),
                      context={'issues': [str(i) for i in e.issues]})
            sys.exit(1)
        except PRDError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            log_error(command, 'build', ErrorType.PRD_INVALID, str(e))
            sys.exit(1)

        store = CheckpointStore(project_dir)
        checkpoint = None
        if resume:
            try:
                checkpoint = store.load()
            except CheckpointError as e:
                console.print(f"[red]Error:[/red] {escape(str(e))}")
                console.print("Delete the file or run without --resume to start over.")
                log_error(command, 'build', ErrorType.CHECKPOINT_CORRUPT, str(e))
                sys.exit(1)
            if checkpoint is None:
                console.print("[yellow]No checkpoint found; starting from iteration 1[/yellow]")

        console.print(f"[bold]superralph[/bold] building [cyan]{escape(prd.name)}[/cyan] "
                      f"({len(prd.features)} features, max {config.max_iterations} iterations)")

        token = CancelToken()
        gate = PauseGate(token)
        invoker = ClaudeInvoker(
            claude_path=get_claude_path(),
            tool_config=ToolConfig(allowed_bash_commands=get_allowed_bash_commands()),
            debug=debug,
        )
        ralph_logger = RalphLogger(get_log_dir())
        controller = IterationController(
            project_dir,
            invoker,
            config=config,
            observers=[
                ConsoleObserver(console, verbose=debug),
                ralph_logger.as_observer('build'),
            ],
            token=token,
            pause_gate=gate,
            checkpoint_store=store,
        )

        def on_signal(name: str) -> None:
            if config.cancel_policy == 'kill':
                console.print(f"\n[yellow]{name}: stopping the agent...[/yellow]")
            else:
                console.print(f"\n[yellow]{name}: finishing the current step, "
                              "press Ctrl-C again to abort[/yellow]")

        def on_toggle(paused: bool) -> None:
            state = "paused (send SIGUSR1 again to resume)" if paused else "resumed"
            console.print(f"[yellow]Build {state}[/yellow]")

        ralph_logger.log_command_start('build', {
            'project_dir': str(project_dir),
            'max_iterations': config.max_iterations,
            'resume_iteration': checkpoint.iteration if checkpoint else None,
            'phased': config.phased,
            'cancel_policy': config.cancel_policy,
        })
        start = time.monotonic()

        restore_signals = install_signal_handlers(token, on_signal)
        restore_pause = install_pause_handler(gate, on_toggle)
        try:
            result = controller.run(checkpoint)
        except Exception as e:
            ralph_logger.log_error('build', 'Build crashed', {'reason': str(e)})
            log_error(command, 'build', ErrorType.UNEXPECTED_ERROR, str(e),
                      stack_trace=traceback.format_exc())
            raise
        finally:
            restore_pause()
            restore_signals()

        duration_ms = int((time.monotonic() - start) * 1000)
        ralph_logger.log_command_complete('build', duration_ms, result.to_dict())

        if result.outcome == RunOutcome.FAILED:
            log_error(
                command, 'build',
                FAILURE_ERROR_TYPES.get(result.error_kind, ErrorType.UNEXPECTED_ERROR),
                result.message,
                context={
                    'feature_id': result.feature_id,
                    'iteration': result.last_iteration,
                    'error_kind': result.error_kind.value if result.error_kind else None,
                },
                duration_ms=duration_ms,
            )
            if debug and result.last_output:
                console.print("[dim]Last agent output:[/dim]")
                console.print(escape(result.last_output[-2000:]), highlight=False)
        elif result.outcome == RunOutcome.BLOCKED:
            log_error(command, 'build', ErrorType.BLOCKED, result.message,
                      context={'iteration': result.last_iteration}, duration_ms=duration_ms)

        if result.stats is not None:
            console.print(f"[dim]{result.stats.passing}/{result.stats.total} features passing "
                          f"after {result.iterations_run} iteration(s)[/dim]")

        sys.exit(EXIT_CODES[result.outcome])
