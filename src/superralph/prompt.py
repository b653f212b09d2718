"""
Iteration prompt building.

Every agent invocation gets a fresh, self-contained prompt: the current
prd.json text, progress.txt, a directory snapshot, key project files, the
feature being worked on, and instructions for the current phase. Nothing is
carried over from earlier invocations except what is on disk.

Also parses the structured blocks the agent is asked to emit in the phased
loop (<plan> and <validation>).
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from superralph.detection import COMPLETION_SENTINEL
from superralph.events import Phase
from superralph.prd import PRD_FILENAME, Feature
from superralph.progress import PROGRESS_FILENAME, SEPARATOR

logger = logging.getLogger(__name__)


# ========== Snapshot Defaults ==========

DEFAULT_TREE_DEPTH = 4
DEFAULT_MAX_FILE_SIZE = 50 * 1024

TREE_SKIP_DIRS = {"node_modules", "vendor", "__pycache__", "target", "build", "dist"}

KEY_FILE_PATTERNS = [
    # Package managers / dependency files
    "go.mod", "go.sum", "package.json", "package-lock.json", "yarn.lock",
    "pnpm-lock.yaml", "Cargo.toml", "Cargo.lock", "requirements.txt",
    "pyproject.toml", "Pipfile", "Gemfile", "composer.json",
    # Documentation
    "README.md", "README", "README.txt", "CONTRIBUTING.md", "CHANGELOG.md",
    # Configuration
    "Makefile", "Dockerfile", "docker-compose.yml", "docker-compose.yaml",
    ".env.example", "tsconfig.json", "webpack.config.js", "vite.config.js",
    "vite.config.ts", ".eslintrc.json", ".prettierrc",
    # CI/CD
    ".github/workflows/*.yml", ".github/workflows/*.yaml", ".gitlab-ci.yml",
]

MAIN_ENTRY_PATTERNS = [
    "main.go", "cmd/*/main.go", "src/main.go", "src/index.ts", "src/index.js",
    "index.ts", "index.js", "app.py", "main.py", "src/main.rs", "src/lib.rs",
]


@dataclass
class SnapshotConfig:
    """Controls how much of the project is embedded in each prompt."""
    max_tree_depth: int = DEFAULT_TREE_DEPTH
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE
    include_key_files: bool = True


@dataclass
class ValidationResult:
    """Parsed <validation> block."""
    valid: bool = True
    issues: List[str] = field(default_factory=list)
    feedback: str = ""

    def feedback_text(self) -> str:
        """Feedback for the next planning attempt, falling back to the issue list."""
        if self.feedback:
            return self.feedback
        if self.issues:
            return "Issues found:\n" + "".join(f"- {issue}\n" for issue in self.issues)
        return ""


@dataclass
class IterationContext:
    """Everything one agent invocation needs to know, read fresh from disk."""
    iteration: int
    prd_content: str
    test_command: str = ""
    progress_content: str = ""
    directory_tree: str = ""
    key_files: Dict[str, str] = field(default_factory=dict)
    current_feature: Optional[Feature] = None
    phase: Optional[Phase] = None
    previous_plan: str = ""
    validation_feedback: str = ""
    validation_attempt: int = 0
    max_validation_attempts: int = 3

    def build_prompt(self) -> str:
        """Render the prompt. Empty sections are left out."""
        parts: List[str] = []

        parts.append(f"## {PRD_FILENAME}\n\n{self.prd_content.strip()}\n")
        parts.append(f"## {PROGRESS_FILENAME}\n\n{self.progress_content.strip() or '(empty)'}\n")

        if self.directory_tree:
            parts.append(f"## Directory Structure\n\n```\n{self.directory_tree.rstrip()}\n```\n")

        if self.key_files:
            lines = [
                "## Key Files\n",
                "The following are automatically detected important project files:\n",
            ]
            for path in sorted(self.key_files):
                lines.append(f"### {path}\n\n```\n{self.key_files[path].rstrip()}\n```\n")
            parts.append("\n".join(lines))

        if self.current_feature is not None:
            parts.append(_format_feature(self.current_feature))

        if self.phase is not None:
            parts.append(f"## Current Phase: {self.phase.value}\n")
            parts.append(self._phase_instructions())
        else:
            parts.append(build_instructions(self.test_command, self.iteration))

        return "\n".join(parts)

    def _phase_instructions(self) -> str:
        if self.phase == Phase.PLANNING:
            return planning_instructions(
                self.validation_feedback, self.validation_attempt, self.max_validation_attempts
            )
        if self.phase == Phase.VALIDATING:
            return validation_instructions(self.previous_plan)
        if self.phase == Phase.EXECUTING:
            return execution_instructions(self.previous_plan, self.test_command)
        return ""


def _format_feature(feature: Feature) -> str:
    lines = [
        "## Current Feature\n",
        f"- ID: {feature.id}",
        f"- Category: {feature.category}",
        f"- Priority: {feature.priority}",
        f"- Description: {feature.description}",
    ]
    if feature.depends_on:
        lines.append(f"- Depends on: {', '.join(feature.depends_on)}")
    lines.append("- Verification steps:")
    for i, step in enumerate(feature.steps, 1):
        lines.append(f"  {i}. {step}")
    return "\n".join(lines) + "\n"


# ========== Phase Instructions ==========

def build_instructions(test_command: str, iteration: int) -> str:
    """Single-pass instructions: implement one feature, gated on passing tests."""
    return f"""## Instructions

You are working on a project with a structured PRD. Your job is to make incremental progress while ensuring ALL TESTS PASS before committing.

### CRITICAL RULES - NON-NEGOTIABLE

1. **TESTS MUST PASS BEFORE ANY COMMIT**
   - Run the test command BEFORE committing: {test_command}
   - If tests fail, FIX THEM before committing
   - NEVER commit with failing tests

2. **ONE FEATURE PER SESSION**
   - Work on the highest-priority feature with passes: false whose dependencies pass
   - Implement ONLY that one feature

3. **CLEAN STATE REQUIREMENT**
   - The codebase must be in a working state when you finish
   - All tests passing, code committed, progress documented

### Workflow

1. Read {PRD_FILENAME} and {PROGRESS_FILENAME} to understand current state
2. Run tests first to verify starting state: {test_command}
3. If tests are failing, FIX THEM FIRST before implementing new features
4. Implement the feature
5. Run tests: {test_command}
6. Only after tests pass:
   - Update {PRD_FILENAME}: set passes: true for the completed feature
   - Make a git commit with a descriptive message
   - Append a session summary to {PROGRESS_FILENAME}

### Progress File Format

Append a new section to {PROGRESS_FILENAME} with this EXACT format:

{SEPARATOR}
Session: [TIMESTAMP]
Iteration: {iteration}
{SEPARATOR}

## Starting State
- Features passing: X/Y
- Working on: [feature_id] "[description]"

## Work Done
- [bullet points of what you did]

## Testing
- Test command: {test_command}
- Result: [PASSED/FAILED]

## Commits
- [commit hash]: [message]

## Ending State
- Features passing: X/Y
- All tests passing: [YES/NO]

## Notes for Next Session
- [anything the next agent should know]

### Completion

If ALL features have passes: true and all tests pass, output exactly:
{COMPLETION_SENTINEL}

Remember: NEVER COMMIT WITH FAILING TESTS.
"""


def planning_instructions(feedback: str = "", attempt: int = 0, max_attempts: int = 3) -> str:
    text = """## Planning Phase Instructions

Study the current feature, the codebase snapshot and the progress log, then
write a concrete implementation plan. Do NOT implement anything yet: no file
edits, no commits.

Output the plan inside a block:

<plan>
1. Files to create or change, and why
2. Tests to add or update
3. How the verification steps will be satisfied
</plan>
"""
    if feedback:
        text += f"""
### Previous Plan Was Rejected (Attempt {attempt}/{max_attempts})

Address this feedback in the new plan:

{feedback.strip()}
"""
    return text


def validation_instructions(plan: str) -> str:
    return f"""## My Plan

{plan.strip()}

## Validation Phase Instructions

Review the plan above against the codebase. Do NOT implement anything.

### Validation Checklist
- Does the plan cover every verification step of the feature?
- Does it respect existing structure and conventions?
- Are the tests it proposes sufficient to prove the feature works?
- Does it avoid breaking features that already pass?

Respond with:

<validation>
valid: true|false
issues:
- [issue, one per line]
feedback: [what the next plan must change]
</validation>
"""


def execution_instructions(plan: str, test_command: str = "") -> str:
    test_line = f"   - Test command: {test_command}\n" if test_command else ""
    return f"""## My Validated Plan

{plan.strip()}

## Execution Phase Instructions

Follow the plan. Implement the current feature only.

### Execution Rules
1. Make the changes described in the plan
2. Run the tests until they pass
{test_line}3. Set passes: true for the feature in {PRD_FILENAME} only after tests pass
4. Commit and append an entry to {PROGRESS_FILENAME}

When finished, report:

<execution_complete>
tests_passing: true|false
summary: [what changed]
</execution_complete>

If ALL features now pass, also output exactly:
{COMPLETION_SENTINEL}
"""


PLAN_SYSTEM_PROMPT = """You are a PRD (Product Requirements Document) planning assistant for superralph.

Your job is to help the user create a prd.json file for their project through conversation:
1. Understand what they want to build
2. Ask clarifying questions to fully understand the scope
3. Help them break it down into discrete, testable features
4. When ready, create a well-structured prd.json file

## PRD Schema

{
  "name": "Project Name",
  "description": "High-level description of the project",
  "testCommand": "command to run tests (e.g., go test ./..., npm test, pytest)",
  "features": [
    {
      "id": "feat-001",
      "category": "functional|ui|integration|performance|security",
      "priority": "high|medium|low",
      "description": "What this feature does",
      "steps": ["Step 1 to verify the feature works", "Step 2 to verify"],
      "passes": false,
      "dependsOn": ["feat-000"]
    }
  ]
}

## Guidelines

1. Feature IDs use the format "feat-XXX"
2. Categories: functional, ui, integration, performance, security
3. Priorities: high (must have), medium (should have), low (nice to have)
4. Each feature has 2-5 verification steps
5. dependsOn is optional; list only ids of features that must pass first, never the feature itself
6. testCommand is REQUIRED and must run the project's tests

When the user is satisfied with the plan, you MUST create the prd.json file in the
current directory using the Write tool, with every feature set to "passes": false."""

PLAN_OPENING_MESSAGE = (
    "What are you building? Tell me about your project - what's the main purpose, "
    "who will use it, and what problem does it solve?"
)


# ========== Context Assembly ==========

def generate_directory_tree(root: Path, max_depth: int = DEFAULT_TREE_DEPTH) -> str:
    """
    Render a directory tree below ``root``.

    Hidden entries (except .gitignore) and dependency/build directories are
    skipped. Depth 0 is the root's direct children.
    """
    lines: List[str] = []
    _walk(Path(root), "", 0, max_depth, lines)
    return "\n".join(lines) + ("\n" if lines else "")


def _walk(path: Path, prefix: str, depth: int, max_depth: int, lines: List[str]) -> None:
    if depth > max_depth:
        return
    try:
        entries = sorted(path.iterdir(), key=lambda p: p.name)
    except OSError:
        return

    filtered = [
        e for e in entries
        if not (e.name.startswith(".") and e.name != ".gitignore") and e.name not in TREE_SKIP_DIRS
    ]
    for i, entry in enumerate(filtered):
        is_last = i == len(filtered) - 1
        connector = "└── " if is_last else "├── "
        is_dir = entry.is_dir()
        lines.append(f"{prefix}{connector}{entry.name}{'/' if is_dir else ''}")
        if is_dir:
            _walk(entry, prefix + ("    " if is_last else "│   "), depth + 1, max_depth, lines)


def detect_key_files(root: Path, max_size: int = DEFAULT_MAX_FILE_SIZE) -> Dict[str, str]:
    """
    Load well-known project files (manifests, docs, CI, entry points).

    Files above ``max_size`` bytes are replaced by a size marker.

    Returns:
        Mapping of path relative to root -> content
    """
    root = Path(root)
    found: Dict[str, str] = {}

    for pattern in KEY_FILE_PATTERNS + MAIN_ENTRY_PATTERNS:
        if "*" in pattern:
            candidates = sorted(root.glob(pattern))
        else:
            candidates = [root / pattern]
        for candidate in candidates:
            rel = candidate.relative_to(root).as_posix()
            if rel in found or not candidate.is_file():
                continue
            size = candidate.stat().st_size
            if size > max_size:
                found[rel] = f"[File too large: {size} bytes, max {max_size} bytes]"
                continue
            try:
                found[rel] = candidate.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.debug("skipping key file %s: %s", rel, e)
    return found


def build_iteration_context(
    project_dir: Path,
    iteration: int,
    phase: Optional[Phase] = None,
    feature: Optional[Feature] = None,
    snapshot: Optional[SnapshotConfig] = None,
    test_command: str = "",
) -> IterationContext:
    """
    Read the project state from disk into a fresh IterationContext.

    Raises:
        FileNotFoundError: If prd.json is missing
    """
    project_dir = Path(project_dir)
    snapshot = snapshot or SnapshotConfig()

    prd_content = (project_dir / PRD_FILENAME).read_text(encoding="utf-8")

    progress_path = project_dir / PROGRESS_FILENAME
    progress_content = progress_path.read_text(encoding="utf-8") if progress_path.exists() else ""

    key_files: Dict[str, str] = {}
    if snapshot.include_key_files:
        key_files = detect_key_files(project_dir, snapshot.max_file_size_bytes)

    return IterationContext(
        iteration=iteration,
        prd_content=prd_content,
        test_command=test_command,
        progress_content=progress_content,
        directory_tree=generate_directory_tree(project_dir, snapshot.max_tree_depth),
        key_files=key_files,
        current_feature=feature,
        phase=phase,
    )


# ========== Output Parsing ==========

def extract_plan(output: str) -> str:
    """Return the stripped text inside the first <plan>...</plan> block, or ''."""
    start = output.find("<plan>")
    if start == -1:
        return ""
    end = output.find("</plan>", start)
    if end == -1:
        return ""
    return output[start + len("<plan>"):end].strip()


def parse_validation(output: str) -> ValidationResult:
    """
    Parse the <validation> block of a validation-phase reply.

    Missing or unclosed blocks yield a valid result. Inside the block:
    ``valid:`` sets validity (case-insensitive "true"), ``- `` lines before
    ``feedback:`` are issues, and ``feedback:`` plus every later line is the
    feedback text.
    """
    result = ValidationResult()

    start = output.find("<validation>")
    if start == -1:
        return result
    end = output.find("</validation>", start)
    if end == -1:
        return result

    block = output[start + len("<validation>"):end]
    feedback_lines: List[str] = []
    in_feedback = False

    for raw in block.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("valid:"):
            result.valid = line[len("valid:"):].strip().lower() == "true"
        elif line.startswith("issues:"):
            continue
        elif line.startswith("- ") and not in_feedback:
            result.issues.append(line[2:])
        elif line.startswith("feedback:"):
            in_feedback = True
            text = line[len("feedback:"):].strip()
            if text:
                feedback_lines.append(text)
        elif in_feedback:
            feedback_lines.append(line)

    result.feedback = "\n".join(feedback_lines)
    return result

