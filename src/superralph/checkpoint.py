"""
Resumable build-loop progress.

A checkpoint records the iteration a later ``build --resume`` should start
from and the feature that was in flight. It lives at
<project>/.superralph/resume.json and has exactly one writer and one reader:
the iteration controller.

Writes are atomic (temp file in the same directory + os.replace), so an
interrupted save leaves either the old checkpoint or the new one.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

STATE_DIRNAME = ".superralph"
CHECKPOINT_FILENAME = "resume.json"


class CheckpointError(Exception):
    """Raised when the checkpoint file exists but cannot be parsed."""
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Checkpoint:
    """Snapshot needed to resume a build loop."""
    iteration: int
    current_feature_id: str = ""
    total_iterations: int = 0
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "currentFeatureId": self.current_feature_id,
            "totalIterations": self.total_iterations,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        """
        Build a Checkpoint from parsed JSON.

        Raises:
            CheckpointError: If required fields are missing or out of range
        """
        if not isinstance(data, dict):
            raise CheckpointError("checkpoint must be a JSON object")

        iteration = data.get("iteration")
        if not isinstance(iteration, int) or isinstance(iteration, bool) or iteration < 1:
            raise CheckpointError(f"checkpoint iteration must be an integer >= 1, got {iteration!r}")

        total = data.get("totalIterations", 0)
        if not isinstance(total, int) or isinstance(total, bool) or total < 0:
            raise CheckpointError(f"checkpoint totalIterations must be a non-negative integer, got {total!r}")

        feature_id = data.get("currentFeatureId") or ""
        if not isinstance(feature_id, str):
            raise CheckpointError("checkpoint currentFeatureId must be a string")

        timestamp = data.get("timestamp") or ""
        if not isinstance(timestamp, str):
            raise CheckpointError("checkpoint timestamp must be a string")

        return cls(
            iteration=iteration,
            current_feature_id=feature_id,
            total_iterations=total,
            timestamp=timestamp,
        )


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class CheckpointStore:
    """Load/save/clear the checkpoint for one project directory."""

    def __init__(self, project_dir: Optional[Path] = None):
        if project_dir is None:
            project_dir = Path.cwd()
        self.path = Path(project_dir) / STATE_DIRNAME / CHECKPOINT_FILENAME

    def save(self, checkpoint: Checkpoint) -> None:
        """Atomically write or overwrite the checkpoint."""
        _atomic_write_text(self.path, json.dumps(checkpoint.to_dict(), indent=2) + "\n")

    def load(self) -> Optional[Checkpoint]:
        """
        Read the checkpoint.

        Returns:
            Checkpoint, or None if no checkpoint file exists

        Raises:
            CheckpointError: If the file exists but is malformed
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CheckpointError(f"Error reading {self.path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CheckpointError(f"Invalid JSON in {self.path}: {e}") from e

        return Checkpoint.from_dict(data)

    def exists(self) -> bool:
        return self.path.exists()

    def clear(self) -> None:
        """Remove the checkpoint; a missing file is fine."""
        self.path.unlink(missing_ok=True)
