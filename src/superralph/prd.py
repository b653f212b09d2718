"""
prd.json management for the build loop.

This module provides:
- Feature / PRD data structures with typed fields
- Load/save operations for <project>/prd.json
- Schema validation with field-addressed issues
- Completion statistics by category and priority

The PRD is the fact store: the agent edits it (flipping ``passes``), and the
build loop re-reads it at every decision point instead of caching it.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


# ============================================================================
# CONSTANTS
# ============================================================================

PRD_FILENAME = "prd.json"

# Declared order is significant: it is the order shown in stats and errors
VALID_CATEGORIES = ("functional", "ui", "integration", "performance", "security")

# Highest first; the scheduler walks tiers in this order
PRIORITY_ORDER = ("high", "medium", "low")
VALID_PRIORITIES = PRIORITY_ORDER


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PRDError(Exception):
    """Base exception for prd module."""
    pass


class PRDNotFoundError(PRDError):
    """Raised when prd.json doesn't exist."""
    pass


class PRDParseError(PRDError):
    """Raised when prd.json is not valid JSON or has the wrong shape."""
    pass


class PRDValidationError(PRDError):
    """Raised when prd.json fails schema validation."""

    def __init__(self, issues: List["ValidationIssue"]):
        self.issues = issues
        summary = "; ".join(str(issue) for issue in issues)
        super().__init__(f"prd.json has {len(issues)} validation error(s): {summary}")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Feature:
    """
    Represents a single feature in prd.json.

    Required fields:
        id: Unique identifier (e.g. feat-001)
        category: functional, ui, integration, performance, security
        priority: high, medium, low
        description: What the feature does
        steps: Ordered verification steps (non-empty)

    Optional fields:
        passes: Whether the feature is verified (default: False)
        depends_on: Feature ids that must pass before this one is eligible
            (JSON key "dependsOn"; the older "depends_on" spelling is still read)
    """
    id: str
    category: str
    priority: str
    description: str
    steps: List[str] = field(default_factory=list)
    passes: bool = False
    depends_on: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: Dict[str, Any] = {
            "id": self.id,
            "category": self.category,
            "priority": self.priority,
            "description": self.description,
            "steps": list(self.steps),
            "passes": self.passes,
        }
        if self.depends_on:
            data["dependsOn"] = list(self.depends_on)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feature":
        """
        Create Feature from dictionary. Missing fields become empty values.

        ``passes`` is kept as found so validate_prd() can reject non-booleans.
        """
        depends_on = data.get("dependsOn")
        if depends_on is None:
            depends_on = data.get("depends_on")
        return cls(
            id=data.get("id") or "",
            category=data.get("category") or "",
            priority=data.get("priority") or "",
            description=data.get("description") or "",
            steps=list(data.get("steps") or []),
            passes=data.get("passes", False),
            depends_on=list(depends_on or []),
        )


@dataclass
class PRD:
    """The whole feature set: project metadata plus ordered features."""
    name: str
    description: str
    test_command: str
    features: List[Feature] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "testCommand": self.test_command,
            "features": [f.to_dict() for f in self.features],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PRD":
        return cls(
            name=data.get("name") or "",
            description=data.get("description") or "",
            test_command=data.get("testCommand") or "",
            features=[Feature.from_dict(item) for item in data.get("features") or []],
        )

    def find(self, feature_id: str) -> Optional[Feature]:
        """Find feature by ID."""
        for feature in self.features:
            if feature.id == feature_id:
                return feature
        return None


@dataclass
class ValidationIssue:
    """A single schema problem, addressed by field path (e.g. features[0].steps[1])."""
    field: str
    message: str

    def __str__(self) -> str:
        if self.field:
            return f"{self.field}: {self.message}"
        return self.message


@dataclass
class PRDStats:
    """Completion counts for a PRD."""
    total: int = 0
    passing: int = 0
    by_category: Dict[str, Dict[str, int]] = field(default_factory=dict)
    by_priority: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def percent_complete(self) -> float:
        if self.total == 0:
            return 0.0
        return self.passing / self.total * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "passing": self.passing,
            "percent_complete": round(self.percent_complete, 1),
            "by_category": self.by_category,
            "by_priority": self.by_priority,
        }


# ============================================================================
# FILE OPERATIONS
# ============================================================================

def get_prd_path(project_dir: Optional[Path] = None) -> Path:
    """
    Get path to prd.json for a project.

    Args:
        project_dir: Project directory (defaults to cwd)

    Returns:
        Path to prd.json
    """
    if project_dir is None:
        project_dir = Path.cwd()
    return Path(project_dir) / PRD_FILENAME


def prd_exists(project_dir: Optional[Path] = None) -> bool:
    """Check if prd.json exists in the project directory."""
    return get_prd_path(project_dir).exists()


def load_prd(project_dir: Optional[Path] = None) -> PRD:
    """
    Load the PRD from prd.json.

    No schema validation happens here; call validate_prd() or ensure_valid()
    for that. The loop reloads through this function every iteration.

    Args:
        project_dir: Project directory (defaults to cwd)

    Returns:
        PRD object

    Raises:
        PRDNotFoundError: If prd.json doesn't exist
        PRDParseError: If file is not valid JSON or not a PRD-shaped object
        PRDError: If the file cannot be read
    """
    prd_path = get_prd_path(project_dir)

    if not prd_path.exists():
        raise PRDNotFoundError(
            f"prd.json not found at {prd_path}. "
            "Run 'superralph plan' to create one."
        )

    try:
        with prd_path.open('r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise PRDParseError(f"Invalid JSON in prd.json: {e}") from e
    except OSError as e:
        raise PRDError(f"Error reading prd.json: {e}") from e

    if not isinstance(data, dict):
        raise PRDParseError("prd.json must contain a JSON object")
    features = data.get("features", [])
    if features is not None and not isinstance(features, list):
        raise PRDParseError("'features' must be an array")
    for i, item in enumerate(features or []):
        if not isinstance(item, dict):
            raise PRDParseError(f"features[{i}] must be an object")

    return PRD.from_dict(data)


def save_prd(prd: PRD, project_dir: Optional[Path] = None) -> Path:
    """
    Save the PRD to prd.json with 2-space indentation.

    Args:
        prd: PRD to write
        project_dir: Project directory (defaults to cwd)

    Returns:
        Path written
    """
    prd_path = get_prd_path(project_dir)
    prd_path.parent.mkdir(parents=True, exist_ok=True)
    with prd_path.open('w', encoding='utf-8') as f:
        json.dump(prd.to_dict(), f, indent=2)
        f.write('\n')
    return prd_path


# ============================================================================
# VALIDATION
# ============================================================================

def validate_prd(prd: PRD) -> List[ValidationIssue]:
    """
    Validate a PRD against the schema.

    Dependency references are checked in a second pass so that forward
    references to later features are accepted.

    Args:
        prd: PRD to validate

    Returns:
        List of issues (empty when valid)
    """
    issues: List[ValidationIssue] = []

    def add(field_path: str, message: str) -> None:
        issues.append(ValidationIssue(field=field_path, message=message))

    if not prd.name.strip():
        add("name", "is required")
    if not prd.description.strip():
        add("description", "is required")
    if not prd.test_command.strip():
        add("testCommand", "is required")
    if not prd.features:
        add("features", "must have at least one feature")

    seen_ids = set()
    for i, feature in enumerate(prd.features):
        prefix = f"features[{i}]"

        if not feature.id.strip():
            add(f"{prefix}.id", "is required")
        elif feature.id in seen_ids:
            add(f"{prefix}.id", f"duplicate id '{feature.id}'")
        else:
            seen_ids.add(feature.id)

        if feature.category not in VALID_CATEGORIES:
            add(
                f"{prefix}.category",
                f"invalid category '{feature.category}' "
                f"(must be one of: {', '.join(VALID_CATEGORIES)})",
            )

        if feature.priority not in VALID_PRIORITIES:
            add(
                f"{prefix}.priority",
                f"invalid priority '{feature.priority}' "
                f"(must be one of: {', '.join(VALID_PRIORITIES)})",
            )

        if not feature.description.strip():
            add(f"{prefix}.description", "is required")

        if not feature.steps:
            add(f"{prefix}.steps", "must have at least one step")
        else:
            for j, step in enumerate(feature.steps):
                if not str(step).strip():
                    add(f"{prefix}.steps[{j}]", "cannot be empty")

        if not isinstance(feature.passes, bool):
            add(f"{prefix}.passes", f"must be true or false, got {feature.passes!r}")

    for i, feature in enumerate(prd.features):
        for j, dep_id in enumerate(feature.depends_on):
            path = f"features[{i}].dependsOn[{j}]"
            if not str(dep_id).strip():
                add(path, "cannot be empty")
            elif dep_id not in seen_ids:
                add(path, f"references unknown feature '{dep_id}'")
            elif dep_id == feature.id:
                add(path, "feature cannot depend on itself")

    return issues


def ensure_valid(prd: PRD) -> PRD:
    """
    Validate and return the PRD unchanged.

    Raises:
        PRDValidationError: If any issue is found
    """
    issues = validate_prd(prd)
    if issues:
        raise PRDValidationError(issues)
    return prd


# ============================================================================
# STATISTICS
# ============================================================================

def compute_stats(prd: PRD) -> PRDStats:
    """
    Count total/passing features overall, by category and by priority.

    All valid categories and priorities are present in the breakdowns even
    when they have no features.
    """
    stats = PRDStats(
        total=len(prd.features),
        by_category={c: {"total": 0, "passing": 0} for c in VALID_CATEGORIES},
        by_priority={p: {"total": 0, "passing": 0} for p in VALID_PRIORITIES},
    )

    for feature in prd.features:
        if feature.passes:
            stats.passing += 1

        bucket = stats.by_category.setdefault(feature.category, {"total": 0, "passing": 0})
        bucket["total"] += 1
        if feature.passes:
            bucket["passing"] += 1

        bucket = stats.by_priority.setdefault(feature.priority, {"total": 0, "passing": 0})
        bucket["total"] += 1
        if feature.passes:
            bucket["passing"] += 1

    return stats
