"""
Iteration controller: the build loop.

Each iteration re-reads prd.json, asks the scheduler for one feature, runs
the agent on it (with up to MAX_RETRIES attempts), checkpoints, and loops
until one of five terminal outcomes:

    COMPLETE          every feature passes, or the agent printed the
                      completion sentinel
    BLOCKED           features remain but none has its dependencies met
    FAILED            prd.json could not be loaded or no longer validates,
                      or every attempt of an
                      iteration failed
    BUDGET_EXHAUSTED  max_iterations ran out first (partial progress)
    CANCELLED         the cancel token was set (not a failure)

Every terminal path emits exactly one conclusive event before run() returns.

Trust boundary: ``passes`` in prd.json is written by the agent and taken as
truth. The loop never runs the test command itself.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from superralph.backends.base import (
    AgentInvoker,
    AgentNotFoundError,
    InvocationRequest,
    InvocationResult,
)
from superralph.cancellation import CancelToken, PauseGate
from superralph.checkpoint import Checkpoint, CheckpointStore
from superralph.detection import contains_completion_signal, is_failure_output
from superralph.events import EventBus, EventType, Observer, Phase
from superralph.prd import PRD, PRDError, PRDStats, Feature, compute_stats, ensure_valid, load_prd
from superralph.progress import ProgressEntryBuilder, ProgressWriter
from superralph.prompt import (
    SnapshotConfig,
    build_iteration_context,
    extract_plan,
    parse_validation,
)
from superralph.scheduler import is_complete, next_feature_with_reason

logger = logging.getLogger(__name__)

# Attempts per iteration before the run halts
MAX_RETRIES = 3


class RunOutcome(Enum):
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CANCELLED = "cancelled"


class ErrorKind(Enum):
    LOAD = "load"
    INVOCATION = "invocation"
    CHECKPOINT = "checkpoint"
    AGENT_NOT_FOUND = "agent_not_found"


@dataclass
class BuildConfig:
    """Settings for one build run."""
    max_iterations: int = 50
    delay_seconds: float = 3.0
    cancel_policy: str = "graceful"
    phased: bool = False
    max_validation_attempts: int = 3
    record_progress: bool = False
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)


@dataclass
class RunResult:
    """How a run ended."""
    outcome: RunOutcome
    message: str
    iterations_run: int = 0
    last_iteration: int = 0
    feature_id: Optional[str] = None
    stats: Optional[PRDStats] = None
    error_kind: Optional[ErrorKind] = None
    last_output: str = ""

    @property
    def is_error(self) -> bool:
        return self.outcome == RunOutcome.FAILED

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "message": self.message,
            "iterations_run": self.iterations_run,
            "last_iteration": self.last_iteration,
            "feature_id": self.feature_id,
            "stats": self.stats.to_dict() if self.stats else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


class _Stop(Exception):
    """Internal: carries a terminal RunResult out of nested steps."""

    def __init__(self, result: RunResult):
        self.result = result


# Conclusive event type per outcome
_CONCLUSIVE_EVENT = {
    RunOutcome.COMPLETE: EventType.SUCCESS,
    RunOutcome.BLOCKED: EventType.ERROR,
    RunOutcome.FAILED: EventType.ERROR,
    RunOutcome.BUDGET_EXHAUSTED: EventType.INFO,
    RunOutcome.CANCELLED: EventType.INFO,
}


class IterationController:
    """
    Drives the agent over the feature set until a terminal outcome.

    Observers are fixed at construction and receive events on the bus
    consumer thread. run() blocks the calling thread; pause/cancel are
    driven from elsewhere through ``pause_gate`` and ``token``.
    """

    def __init__(
        self,
        project_dir: Path,
        invoker: AgentInvoker,
        config: Optional[BuildConfig] = None,
        observers: Optional[Iterable[Observer]] = None,
        token: Optional[CancelToken] = None,
        pause_gate: Optional[PauseGate] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
    ):
        self.project_dir = Path(project_dir)
        self.invoker = invoker
        self.config = config or BuildConfig()
        self.observers: List[Observer] = list(observers or [])
        self.token = token or CancelToken()
        self.pause_gate = pause_gate or PauseGate(self.token)
        self.checkpoints = checkpoint_store or CheckpointStore(self.project_dir)
        self.phase: Optional[Phase] = None
        self._bus: Optional[EventBus] = None
        self._iterations_run = 0
        self._feature_id: Optional[str] = None
        self._last_output = ""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, checkpoint: Optional[Checkpoint] = None) -> RunResult:
        """
        Run the loop to a terminal outcome.

        Args:
            checkpoint: Resume point from a previous interrupted run. Its
                iteration seeds the counter; its feature id is only a hint,
                the scheduler still chooses.

        Returns:
            RunResult describing the terminal outcome
        """
        self._iterations_run = 0
        self._feature_id = None
        self._last_output = ""

        unregister = None
        if self.config.cancel_policy == "kill":
            unregister = self.token.on_cancel(self.invoker.cancel)

        self._bus = EventBus(self.observers).start()
        try:
            try:
                result = self._loop(checkpoint)
            except _Stop as stop:
                result = stop.result
            self._bus.emit(_CONCLUSIVE_EVENT[result.outcome], result.message)
            return result
        finally:
            if unregister is not None:
                unregister()
            self._bus.close()
            self._bus = None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _loop(self, checkpoint: Optional[Checkpoint]) -> RunResult:
        max_iterations = self.config.max_iterations
        start = 1
        resume_hint: Optional[str] = None
        if checkpoint is not None:
            start = max(1, checkpoint.iteration)
            resume_hint = checkpoint.current_feature_id or None
            self._emit(EventType.INFO, f"Resuming from iteration {start}"
                       + (f" (was working on {resume_hint})" if resume_hint else ""))

        iteration = start
        while iteration <= max_iterations:
            self._check_cancelled(iteration)
            self.pause_gate.wait()
            self._check_cancelled(iteration)

            self._emit(EventType.INFO, f"=== Iteration {iteration}/{max_iterations} ===")
            prd = self._load(iteration)

            if is_complete(prd.features):
                return self._complete(iteration, prd, "All features complete!")

            feature, reason = next_feature_with_reason(prd.features)
            if feature is None:
                return self._result(
                    RunOutcome.BLOCKED, f"All remaining work is blocked: {reason}", iteration, prd
                )

            if resume_hint is not None:
                if resume_hint != feature.id:
                    self._emit(EventType.INFO,
                               f"Checkpoint feature {resume_hint} superseded; scheduler selected {feature.id}")
                resume_hint = None

            self._feature_id = feature.id
            stats = compute_stats(prd)
            self._emit(EventType.INFO, f"Progress: {stats.passing}/{stats.total} features complete")
            self._emit(EventType.INFO, f"Next: {feature.id} - {feature.description}")

            progress = None
            if self.config.record_progress:
                progress = ProgressEntryBuilder(iteration, prd, feature)

            plan = ""
            if self.config.phased:
                plan = self._plan_and_validate(iteration, prd, feature)

            self._execute(iteration, prd, feature, plan)
            self._iterations_run += 1

            prd = self._load(iteration)
            stats = compute_stats(prd)
            self._emit(EventType.PHASE,
                       f"Iteration {iteration} done: {stats.passing}/{stats.total} features complete "
                       f"({stats.percent_complete:.0f}%)")
            if progress is not None:
                self._record_progress(progress, prd, feature)

            iteration += 1
            self._save_checkpoint(iteration, feature.id)

            if iteration <= max_iterations and self.config.delay_seconds > 0:
                self.token.wait(self.config.delay_seconds)

        prd = self._load(iteration)
        if is_complete(prd.features):
            return self._complete(iteration - 1, prd, "All features complete!")
        stats = compute_stats(prd)
        return self._result(
            RunOutcome.BUDGET_EXHAUSTED,
            f"Reached maximum iterations ({max_iterations}): "
            f"{stats.passing}/{stats.total} features complete",
            iteration - 1,
            prd,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _execute(self, iteration: int, prd: PRD, feature: Feature, plan: str) -> None:
        """Run the executing phase with retries. Raises _Stop on terminal outcomes."""
        self._set_phase(Phase.EXECUTING)

        for attempt in range(1, MAX_RETRIES + 1):
            context = self._context(iteration, prd, feature, Phase.EXECUTING if self.config.phased else None)
            context.previous_plan = plan
            request = InvocationRequest(
                prompt=context.build_prompt(),
                work_dir=self.project_dir,
                iteration=iteration,
                feature_id=feature.id,
                phase=Phase.EXECUTING,
            )
            result = self._invoke(request, iteration, prd)
            self._last_output = result.output

            if result.cancelled:
                raise _Stop(self._cancelled(iteration))

            if contains_completion_signal(result.output):
                self._iterations_run += 1
                raise _Stop(self._complete(iteration, self._load(iteration),
                                           "Agent signalled all work complete"))

            if not (result.failed or is_failure_output(result.output)):
                return

            detail = f"exit code {result.exit_code}" if result.exit_code else "failure markers in output"
            if result.error:
                detail = result.error
            self._emit(EventType.INFO, f"Attempt {attempt}/{MAX_RETRIES} on {feature.id} failed ({detail})")

            if self.token.cancelled:
                raise _Stop(self._cancelled(iteration))

        raise _Stop(self._result(
            RunOutcome.FAILED,
            f"Agent failed {MAX_RETRIES} times on {feature.id} (iteration {iteration})",
            iteration,
            prd,
            error_kind=ErrorKind.INVOCATION,
        ))

    def _plan_and_validate(self, iteration: int, prd: PRD, feature: Feature) -> str:
        """PLANNING -> VALIDATING, looping back with feedback. Returns the accepted plan."""
        max_attempts = max(1, self.config.max_validation_attempts)
        feedback = ""

        for attempt in range(1, max_attempts + 1):
            self._set_phase(Phase.PLANNING, f" (attempt {attempt}/{max_attempts})")
            context = self._context(iteration, prd, feature, Phase.PLANNING)
            context.validation_feedback = feedback
            context.validation_attempt = attempt
            context.max_validation_attempts = max_attempts
            output = self._invoke_phase(context, iteration, prd, feature, Phase.PLANNING)
            plan = extract_plan(output) or output

            self._set_phase(Phase.VALIDATING)
            context = self._context(iteration, prd, feature, Phase.VALIDATING)
            context.previous_plan = plan
            output = self._invoke_phase(context, iteration, prd, feature, Phase.VALIDATING)
            verdict = parse_validation(output)

            if verdict.valid:
                self._emit(EventType.SUCCESS, "Validation: PASSED")
                return plan

            feedback = verdict.feedback_text()
            self._emit(EventType.INFO, f"Validation: FAILED - {len(verdict.issues)} issues")

        raise _Stop(self._result(
            RunOutcome.FAILED,
            f"Plan validation failed after {max_attempts} attempts on {feature.id}: {feedback.strip()}",
            iteration,
            prd,
            error_kind=ErrorKind.INVOCATION,
        ))

    def _invoke_phase(self, context, iteration: int, prd: PRD, feature: Feature, phase: Phase) -> str:
        request = InvocationRequest(
            prompt=context.build_prompt(),
            work_dir=self.project_dir,
            iteration=iteration,
            feature_id=feature.id,
            phase=phase,
        )
        result = self._invoke(request, iteration, prd)
        if result.cancelled or self.token.cancelled:
            raise _Stop(self._cancelled(iteration))
        if result.failed:
            raise _Stop(self._result(
                RunOutcome.FAILED,
                f"{phase.value} phase failed on {feature.id}: "
                f"{result.error or f'exit code {result.exit_code}'}",
                iteration,
                prd,
                error_kind=ErrorKind.INVOCATION,
            ))
        return result.output

    def _invoke(self, request: InvocationRequest, iteration: int, prd: PRD) -> InvocationResult:
        try:
            return self.invoker.invoke(request, self._emit)
        except AgentNotFoundError as e:
            raise _Stop(self._result(
                RunOutcome.FAILED, str(e), iteration, prd, error_kind=ErrorKind.AGENT_NOT_FOUND
            ))
        except OSError as e:
            logger.warning("agent invocation raised: %s", e)
            return InvocationResult(output="", exit_code=1, error=str(e))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _context(self, iteration: int, prd: PRD, feature: Feature, phase: Optional[Phase]):
        try:
            return build_iteration_context(
                self.project_dir,
                iteration,
                phase=phase,
                feature=feature,
                snapshot=self.config.snapshot,
                test_command=prd.test_command,
            )
        except OSError as e:
            raise _Stop(self._result(
                RunOutcome.FAILED, f"Failed to build iteration context: {e}", iteration, prd,
                error_kind=ErrorKind.LOAD,
            ))

    def _load(self, iteration: int) -> PRD:
        try:
            return ensure_valid(load_prd(self.project_dir))
        except PRDError as e:
            raise _Stop(RunResult(
                outcome=RunOutcome.FAILED,
                message=f"Failed to load prd.json: {e}",
                iterations_run=self._iterations_run,
                last_iteration=iteration,
                feature_id=self._feature_id,
                error_kind=ErrorKind.LOAD,
                last_output=self._last_output,
            ))

    def _check_cancelled(self, iteration: int) -> None:
        if self.token.cancelled:
            raise _Stop(self._cancelled(iteration))

    def _cancelled(self, iteration: int) -> RunResult:
        """Checkpoint ``iteration`` (it will be re-run) and build the CANCELLED result."""
        self._save_checkpoint(iteration, self._feature_id or "")
        reason = self.token.reason or "cancelled"
        return RunResult(
            outcome=RunOutcome.CANCELLED,
            message=f"Build cancelled ({reason}). Use --resume to continue from iteration {iteration}.",
            iterations_run=self._iterations_run,
            last_iteration=iteration,
            feature_id=self._feature_id,
            last_output=self._last_output,
        )

    def _complete(self, iteration: int, prd: PRD, message: str) -> RunResult:
        self._set_phase(Phase.COMPLETE)
        self.checkpoints.clear()
        return self._result(RunOutcome.COMPLETE, message, iteration, prd)

    def _result(
        self,
        outcome: RunOutcome,
        message: str,
        iteration: int,
        prd: Optional[PRD],
        error_kind: Optional[ErrorKind] = None,
    ) -> RunResult:
        return RunResult(
            outcome=outcome,
            message=message,
            iterations_run=self._iterations_run,
            last_iteration=iteration,
            feature_id=self._feature_id,
            stats=compute_stats(prd) if prd is not None else None,
            error_kind=error_kind,
            last_output=self._last_output,
        )

    def _save_checkpoint(self, iteration: int, feature_id: str) -> None:
        try:
            self.checkpoints.save(Checkpoint(
                iteration=iteration,
                current_feature_id=feature_id,
                total_iterations=self.config.max_iterations,
            ))
        except OSError as e:
            raise _Stop(RunResult(
                outcome=RunOutcome.FAILED,
                message=f"Failed to save checkpoint: {e}",
                iterations_run=self._iterations_run,
                last_iteration=iteration,
                feature_id=self._feature_id,
                error_kind=ErrorKind.CHECKPOINT,
                last_output=self._last_output,
            ))

    def _record_progress(self, builder: ProgressEntryBuilder, prd: PRD, feature: Feature) -> None:
        current = prd.find(feature.id)
        passed = bool(current and current.passes)
        builder.add_work(f"Agent iteration on {feature.id}: {feature.description}")
        builder.set_test_result(prd.test_command, passed=passed, details="as reported in prd.json")
        try:
            ProgressWriter(self.project_dir).append(builder.finish(prd, all_tests_passing=passed))
        except OSError as e:
            self._emit(EventType.INFO, f"Could not append to progress.txt: {e}")

    def _set_phase(self, phase: Phase, suffix: str = "") -> None:
        self.phase = phase
        # COMPLETE is announced by the conclusive SUCCESS event
        if phase != Phase.COMPLETE:
            self._emit(EventType.PHASE, f"Phase: {phase.value.upper()}{suffix}")

    def _emit(self, event_type: EventType, content: str) -> None:
        if self._bus is not None:
            self._bus.emit(event_type, content)
