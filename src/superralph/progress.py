"""
progress.txt: the append-only session log.

The agent normally appends its own entries (the build prompt tells it the
format). The loop only reads the file to embed it in the next prompt, and can
optionally append an entry of its own after each successful iteration.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from superralph.prd import PRD

PROGRESS_FILENAME = "progress.txt"
SEPARATOR = "=" * 80


@dataclass
class FeatureRef:
    id: str
    description: str


@dataclass
class ProjectState:
    """Feature counts at the start or end of a session."""
    features_total: int = 0
    features_passing: int = 0
    working_on: Optional[FeatureRef] = None
    all_tests_passing: bool = False


@dataclass
class TestResult:
    command: str = ""
    passed: bool = False
    details: str = ""


@dataclass
class Commit:
    hash: str
    message: str


@dataclass
class ProgressEntry:
    """One session section of progress.txt."""
    timestamp: datetime
    iteration: int
    starting_state: ProjectState = field(default_factory=ProjectState)
    work_done: List[str] = field(default_factory=list)
    testing: TestResult = field(default_factory=TestResult)
    commits: List[Commit] = field(default_factory=list)
    ending_state: ProjectState = field(default_factory=ProjectState)
    notes: List[str] = field(default_factory=list)


def format_entry(entry: ProgressEntry) -> str:
    """Render an entry in the progress.txt section format."""
    lines = [
        SEPARATOR,
        f"Session: {entry.timestamp.isoformat(timespec='seconds')}",
        f"Iteration: {entry.iteration}",
        SEPARATOR,
        "",
        "## Starting State",
        f"- Features passing: {entry.starting_state.features_passing}/{entry.starting_state.features_total}",
    ]
    if entry.starting_state.working_on is not None:
        ref = entry.starting_state.working_on
        lines.append(f'- Working on: {ref.id} "{ref.description}"')
    lines.append("")

    lines.append("## Work Done")
    lines.extend(f"- {work}" for work in entry.work_done)
    lines.append("")

    lines.append("## Testing")
    lines.append(f"- Test command: {entry.testing.command}")
    lines.append(f"- Result: {'PASSED' if entry.testing.passed else 'FAILED'}")
    if entry.testing.details:
        lines.append(f"- Details: {entry.testing.details}")
    lines.append("")

    lines.append("## Commits")
    lines.extend(f"- {c.hash}: {c.message}" for c in entry.commits)
    lines.append("")

    lines.append("## Ending State")
    lines.append(f"- Features passing: {entry.ending_state.features_passing}/{entry.ending_state.features_total}")
    if entry.ending_state.working_on is not None:
        lines.append(f"- Feature {entry.ending_state.working_on.id} marked as passes: true")
    lines.append(f"- All tests passing: {'YES' if entry.ending_state.all_tests_passing else 'NO'}")
    lines.append("")

    lines.append("## Notes for Next Session")
    lines.extend(f"- {note}" for note in entry.notes)
    lines.append("")

    return "\n".join(lines) + "\n"


class ProgressWriter:
    """Appends entries to <project>/progress.txt."""

    def __init__(self, project_dir: Optional[Path] = None):
        if project_dir is None:
            project_dir = Path.cwd()
        self.path = Path(project_dir) / PROGRESS_FILENAME

    def append(self, entry: ProgressEntry) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(format_entry(entry))

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> str:
        """Return file content, or '' if no progress has been written yet."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""


def _state_from(prd: "PRD", working_on: Optional[FeatureRef] = None, all_passing: bool = False) -> ProjectState:
    return ProjectState(
        features_total=len(prd.features),
        features_passing=sum(1 for f in prd.features if f.passes),
        working_on=working_on,
        all_tests_passing=all_passing,
    )


class ProgressEntryBuilder:
    """
    Accumulates one session's entry while the iteration runs.

    Usage:
        builder = ProgressEntryBuilder(iteration=3, prd=prd, feature=feature)
        builder.add_work("Implemented login form")
        builder.set_test_result("pytest", passed=True)
        entry = builder.finish(reloaded_prd, all_tests_passing=True)
    """

    def __init__(self, iteration: int, prd: "PRD", feature=None, timestamp: Optional[datetime] = None):
        self._feature_ref = FeatureRef(feature.id, feature.description) if feature is not None else None
        self.entry = ProgressEntry(
            timestamp=timestamp or datetime.now(timezone.utc),
            iteration=iteration,
            starting_state=_state_from(prd, self._feature_ref),
            testing=TestResult(command=prd.test_command),
        )

    def add_work(self, work: str) -> "ProgressEntryBuilder":
        self.entry.work_done.append(work)
        return self

    def set_test_result(self, command: str, passed: bool, details: str = "") -> "ProgressEntryBuilder":
        self.entry.testing = TestResult(command=command, passed=passed, details=details)
        return self

    def add_commit(self, commit_hash: str, message: str) -> "ProgressEntryBuilder":
        self.entry.commits.append(Commit(commit_hash, message))
        return self

    def add_note(self, note: str) -> "ProgressEntryBuilder":
        self.entry.notes.append(note)
        return self

    def finish(self, prd: "PRD", all_tests_passing: bool) -> ProgressEntry:
        """
        Close the entry against the reloaded PRD.

        The ending state names the feature only if the PRD now marks it passing.
        """
        working_on = None
        if self._feature_ref is not None:
            feature = prd.find(self._feature_ref.id)
            if feature is not None and feature.passes:
                working_on = self._feature_ref
        self.entry.ending_state = _state_from(prd, working_on, all_tests_passing)
        return self.entry
