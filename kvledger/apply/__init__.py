"""
Apply module for kvledger - the consistency layer every entity write passes through.

This module handles:
- Effect ledger (mark-after-do idempotency markers)
- Relationship graph (links, reverse-lookup sets, reconciliation)
- Link derivation from entity reference fields
- Secondary month-bucket indexes (maintenance, reconciliation, repair)
- Lifecycle logs
- The entity upsert path and explicit entity deletion

Invariants:
    - Every derived key can be rebuilt from primary records by repair
    - Every write here is individually idempotent

How to change safely:
    - Verify idempotency with duplicate-call tests
    - Add reconcile coverage for any new derived key
"""

from .effects import EffectLedger
from .entities import EntityRepository
from .indexes import (
    DEFAULT_POLICIES,
    IndexEntry,
    IndexPolicy,
    IndexReconcileReport,
    SecondaryIndexMaintainer,
)
from .link_rules import DEFAULT_RULES, LinkChanges, LinkRule, LinkRules
from .links import (
    Link,
    LinkReconcileReport,
    LinkRegistry,
    LinkSideEntry,
    make_link,
    metadata_from_dict,
)
from .logs import LifecycleLog, LogEntry, LogEvent
from .repair import RepairCounts

__all__ = [
    "EffectLedger",
    "EntityRepository",
    "DEFAULT_POLICIES",
    "IndexEntry",
    "IndexPolicy",
    "IndexReconcileReport",
    "SecondaryIndexMaintainer",
    "DEFAULT_RULES",
    "LinkChanges",
    "LinkRule",
    "LinkRules",
    "Link",
    "LinkReconcileReport",
    "LinkRegistry",
    "LinkSideEntry",
    "make_link",
    "metadata_from_dict",
    "LifecycleLog",
    "LogEntry",
    "LogEvent",
    "RepairCounts",
]
