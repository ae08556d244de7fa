"""
Ledger: wires the store, consistency layer and workflows together.

Used by the admin API and the repair CLI so both build components the
same way from one LedgerConfig.

Invariants:
    - One TransactionManager per store, shared by every workflow
    - start() connects the store before any component touches it

How to change safely:
    - New components are created in start() and released in stop()
"""

from __future__ import annotations

import logging
from typing import Any

from .apply import EntityRepository, RepairCounts
from .config import LedgerConfig
from .store import KvStore, create_store
from .tx import TransactionManager
from .workflows import ArchiveCollectionWorkflow, ClearLogsWorkflow, ResetDataWorkflow

logger = logging.getLogger(__name__)


class Ledger:
    """Lifecycle owner of every kvledger component.

    Attributes:
        config: Ledger configuration
        store: Key-value store
        repo: Entity repository (indexes, links, effects and logs hang off it)
        tx: Transaction manager
        reset: Reset data workflow
        clear_logs: Clear logs workflow
        archive: Archive collection workflow

    Example:
        >>> ledger = Ledger(LedgerConfig())
        >>> await ledger.start()
        >>> await ledger.repo.upsert("task", {"id": "task-1"})
        >>> await ledger.stop()
    """

    def __init__(self, config: LedgerConfig | None = None, store: KvStore | None = None) -> None:
        self.config = config or LedgerConfig.from_env()
        self.store = store or create_store(self.config)
        batch_size = self.config.transaction.capture_batch_size
        self.repo = EntityRepository(self.store, batch_size=batch_size)
        self.tx = TransactionManager(self.store, self.config.transaction)
        self.reset = ResetDataWorkflow(self.repo, self.tx, self.config.workflow)
        self.clear_logs = ClearLogsWorkflow(self.repo.log, self.tx)
        self.archive = ArchiveCollectionWorkflow(self.repo, self.tx)

    @property
    def indexes(self):
        return self.repo.indexes

    @property
    def links(self):
        return self.repo.links

    async def start(self) -> None:
        if self.store.is_connected:
            return
        logger.info("Starting ledger", extra={"store_backend": self.config.store_backend.value})
        await self.store.connect()

    async def stop(self) -> None:
        if not self.store.is_connected:
            return
        await self.store.close()
        logger.info("Ledger stopped")

    async def reconcile_all(self) -> dict[str, Any]:
        """Reconcile every registered index and the link graph."""
        indexes = []
        for policy in self.indexes.policies:
            report = await self.indexes.reconcile(policy.entity_type, policy.name)
            indexes.append(report.to_dict())
        links = await self.links.reconcile()
        return {"indexes": indexes, "links": links.to_dict()}

    async def repair_all(self, apply: bool = True) -> dict[str, RepairCounts]:
        """Repair every registered index and the link graph.

        Returns:
            Counts keyed by "{collection}:{index}" plus "links"
        """
        results: dict[str, RepairCounts] = {}
        for policy in self.indexes.policies:
            name = f"{policy.entity_type.collection}:{policy.name}"
            results[name] = await self.indexes.repair(policy.entity_type, policy.name, apply)
        results["links"] = await self.links.repair(apply)
        return results
