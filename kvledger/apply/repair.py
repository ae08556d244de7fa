"""Counters returned by reconciliation repair passes."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class RepairCounts:
    """Before/after counts of one repair run.

    Attributes:
        before_missing: Missing entries found before repairing
        before_phantom: Phantom entries found before repairing
        added: Entries added by this run
        removed: Entries removed by this run
        after_missing: Missing entries left after repairing
        after_phantom: Phantom entries left after repairing
        dry_run: True if nothing was written
    """

    before_missing: int
    before_phantom: int
    added: int = 0
    removed: int = 0
    after_missing: int = 0
    after_phantom: int = 0
    dry_run: bool = False

    @property
    def changes(self) -> int:
        return self.added + self.removed

    @property
    def is_clean(self) -> bool:
        return self.after_missing == 0 and self.after_phantom == 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
