"""
Clear logs workflow: deletes entity lifecycle logs and the link log.

Invariants:
    - Runs inside one transaction; a failure restores every log
    - Entity records, links and effect markers are untouched

How to change safely:
    - Add new log types to CLEARABLE_LOG_TYPES
"""

from __future__ import annotations

import logging

from .. import keys
from ..apply import LifecycleLog
from ..errors import ConcurrentTransactionError
from ..tx import TransactionManager
from ..types import EntityType
from .base import WorkflowResult

logger = logging.getLogger(__name__)

CLEARABLE_LOG_TYPES = (
    EntityType.TASK.value,
    EntityType.ITEM.value,
    EntityType.SALE.value,
    EntityType.FINANCIAL.value,
    EntityType.CHARACTER.value,
    EntityType.PLAYER.value,
    EntityType.SITE.value,
    keys.LINK_LOG,
)


class ClearLogsWorkflow:
    """Deletes lifecycle logs inside a transaction."""

    def __init__(self, log: LifecycleLog, tx: TransactionManager) -> None:
        self.log = log
        self.tx = tx

    async def execute(self) -> WorkflowResult:
        """Clear every log in CLEARABLE_LOG_TYPES.

        Raises:
            ConcurrentTransactionError: If another workflow is running
        """
        results: list[str] = []

        async def run() -> None:
            for log_type in CLEARABLE_LOG_TYPES:
                existed = await self.log.clear(log_type)
                self.tx.track_log_clearing(log_type)
                results.append(f"Cleared {log_type} logs" if existed else f"No {log_type} logs")

        try:
            await self.tx.execute(run)
        except ConcurrentTransactionError:
            raise
        except Exception as error:
            logger.error("Clear logs failed", extra={"error": repr(error)})
            return WorkflowResult.from_failure("Clear logs", error, results)

        logger.info("Logs cleared", extra={"operations": len(results)})
        return WorkflowResult(
            success=True,
            message=f"Successfully cleared logs - {len(results)} operations completed",
            results=results,
        )
