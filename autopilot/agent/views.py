from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from autopilot.exceptions import WaitTimeoutError


class TaskStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class LocalArtifact(BaseModel):
    """Bytes that have landed on local disk."""

    path: Path
    size_bytes: int
    method: str = Field(description="Acquisition strategy that produced the file")
    source_url: Optional[str] = None


class PendingArtifact(BaseModel):
    """Completion has been observed but the artifact bytes are not local yet."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["element", "download", "file"] = "element"
    element: Any = Field(None, exclude=True, description="Handle of the completion element, when the UI exposes one")
    reference: Optional[str] = Field(None, description="href/src already read from the completion element")


class TaskResult(BaseModel):
    """Outcome of one unit of work."""

    index: int | str
    status: TaskStatus
    attempts: int = 0
    elapsed_seconds: float = 0.0
    value: Optional[str] = None
    artifact: Optional[LocalArtifact] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (TaskStatus.SUCCESS, TaskStatus.SKIPPED)

    @property
    def output_key(self) -> str:
        return f"result_p{self.index}"

    @classmethod
    def from_error(cls, index: int | str, error: BaseException, attempts: int, elapsed_seconds: float) -> TaskResult:
        status = TaskStatus.TIMEOUT if isinstance(error, WaitTimeoutError) else TaskStatus.FAILURE
        return cls(
            index=index,
            status=status,
            attempts=attempts,
            elapsed_seconds=round(elapsed_seconds, 3),
            error=TaskError.format_error(error),
            error_type=type(error).__name__,
        )


class TaskError:
    """Container for task error formatting"""

    @staticmethod
    def format_error(error: BaseException) -> str:
        """Message of the error, or its type name when it has none"""
        return str(error) or type(error).__name__


class RunSummary(BaseModel):
    """Results of a whole queue, in submission order."""

    results: list[TaskResult] = Field(default_factory=list)
    total: int = 0
    elapsed_seconds: float = 0.0
    reconnects: int = 0
    screenshot: Optional[Path] = Field(None, description="End-of-run screenshot, when one was saved")

    @property
    def completed(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> bool:
        return self.completed == self.total and all(r.ok for r in self.results)

    def outputs(self) -> dict[str, Any]:
        """Flat result_p<index> mapping for workflow tools that read one key per prompt."""
        outputs: dict[str, Any] = {}
        for r in self.results:
            if r.artifact is not None:
                outputs[r.output_key] = str(r.artifact.path)
            elif r.status == TaskStatus.SKIPPED:
                outputs[r.output_key] = r.value or "(Skipped: empty prompt)"
            elif r.ok:
                outputs[r.output_key] = r.value if r.value else "(No response)"
            else:
                outputs[r.output_key] = f"(Error: {r.error})"
        return outputs

    def to_output(self) -> dict[str, Any]:
        results = [r.model_dump(mode="json", exclude_none=True) for r in self.results]
        if self.succeeded:
            output: dict[str, Any] = {
                "success": True,
                "elapsed_seconds": round(self.elapsed_seconds, 3),
                "reconnects": self.reconnects,
                "results": results,
                "outputs": self.outputs(),
            }
        else:
            output = self._failure_output(results)
        if self.screenshot is not None:
            output["screenshot"] = str(self.screenshot)
        return output

    def _failure_output(self, results: list[dict[str, Any]]) -> dict[str, Any]:
        first_failure = next((r for r in self.results if not r.ok), None)
        return {
            "success": False,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "reconnects": self.reconnects,
            "error": {
                "message": first_failure.error if first_failure else "Run did not complete",
                "type": first_failure.error_type if first_failure else None,
                "index": first_failure.index if first_failure else None,
                "completed": sum(1 for r in self.results if r.ok),
                "total": self.total,
            },
            "results": results,
            "outputs": self.outputs(),
        }


def failure_output(error: BaseException, summary: Optional[RunSummary] = None) -> dict[str, Any]:
    """Structured output for a run that died outside any single task."""
    output: dict[str, Any] = {
        "success": False,
        "error": {
            "message": TaskError.format_error(error),
            "type": type(error).__name__,
            "completed": sum(1 for r in summary.results if r.ok) if summary else 0,
            "total": summary.total if summary else 0,
        },
        "results": [r.model_dump(mode="json", exclude_none=True) for r in summary.results] if summary else [],
    }
    return output
