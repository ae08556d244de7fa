"""
Workflow orchestrators: multi-step operations run inside one transaction.
"""

from .archive import ArchiveCollectionWorkflow, ArchiveResult
from .base import ProgressCallback, StepTimer, WorkflowResult
from .clear_logs import CLEARABLE_LOG_TYPES, ClearLogsWorkflow
from .reset import RESET_MODES, ResetDataWorkflow

__all__ = [
    "ArchiveCollectionWorkflow",
    "ArchiveResult",
    "CLEARABLE_LOG_TYPES",
    "ClearLogsWorkflow",
    "ProgressCallback",
    "RESET_MODES",
    "ResetDataWorkflow",
    "StepTimer",
    "WorkflowResult",
]
