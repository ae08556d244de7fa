"""
Shared pieces of workflow orchestrators: results, timeouts and progress.

Invariants:
    - A timeout is a failure that triggers rollback, never a cancellation
    - Orchestrators turn outcomes into WorkflowResult messages; they do not
      hide a rollback failure behind a generic error

How to change safely:
    - Keep WorkflowResult.to_dict() stable; the admin API returns it as-is
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..errors import RollbackFailure, WorkflowTimeoutError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class WorkflowResult:
    """Outcome of one workflow run.

    Attributes:
        success: True if the workflow committed
        message: Human readable summary
        results: One line per completed operation
        errors: One line per error
        rolled_back: True if changes were rolled back
        failed_keys: Keys a failed rollback could not restore
        details: Workflow specific data
    """

    success: bool
    message: str
    results: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    rolled_back: bool = False
    failed_keys: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "results": list(self.results),
            "errors": list(self.errors),
            "rolled_back": self.rolled_back,
            "failed_keys": list(self.failed_keys),
            "details": dict(self.details),
        }

    @classmethod
    def from_failure(
        cls,
        operation: str,
        error: Exception,
        results: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> WorkflowResult:
        """Build the result of a failed run after execute() raised."""
        if isinstance(error, RollbackFailure):
            return cls(
                success=False,
                message=(
                    f"{operation} failed and rollback also failed - manual intervention "
                    f"required ({len(error.failed_keys)} key(s) not restored)"
                ),
                results=list(results or []),
                errors=[repr(error.original_error), str(error)],
                rolled_back=False,
                failed_keys=list(error.failed_keys),
                details=dict(details or {}),
            )
        prefix = "TIMEOUT: " if isinstance(error, WorkflowTimeoutError) else ""
        return cls(
            success=False,
            message=f"{operation} failed, changes were rolled back: {error}",
            results=list(results or []),
            errors=[f"{prefix}{error}"],
            rolled_back=True,
            details=dict(details or {}),
        )


class StepTimer:
    """Counts workflow steps against a time budget.

    Example:
        >>> timer = StepTimer(timeout_seconds=240, total_steps=5)
        >>> timer.check("Clearing entity data")
    """

    def __init__(
        self,
        timeout_seconds: float,
        total_steps: int,
        progress: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.total_steps = total_steps
        self.progress = progress
        self._clock = clock
        self._started = clock()
        self.current = 0

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def check(self, step: str) -> None:
        """Advance one step.

        Raises:
            WorkflowTimeoutError: If the budget is already spent
        """
        self.current += 1
        elapsed = self.elapsed
        if elapsed > self.timeout_seconds:
            raise WorkflowTimeoutError(f"Operation timeout after {elapsed:.1f}s during: {step}")
        if self.progress is not None:
            self.progress(self.current, self.total_steps, step)

    def skip(self) -> None:
        """Count a step that does not run in this mode."""
        self.current += 1
