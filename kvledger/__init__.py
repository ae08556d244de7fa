"""
kvledger - Consistency layer for key-value backed admin data.

Every entity mutation of the admin tool (tasks, items, sales, financial
records, sites, characters, players, accounts) passes through this package:
- A relationship graph ("links") connecting entities
- An idempotent side-effect ledger preventing duplicate bookkeeping on retry
- Derived secondary indexes (month buckets) with reconciliation and repair
- A transaction manager giving multi-entity workflows approximate rollback

Architecture:
    ┌──────────────┐     ┌────────────────────┐
    │  Workflow    │────▶│ TransactionManager │── snapshot / rollback
    │ (reset, ...) │     └─────────┬──────────┘
    └──────────────┘               │
                                   ▼
                        ┌────────────────────┐
                        │  EntityRepository  │  (upsert / delete)
                        └─────────┬──────────┘
              ┌───────────────────┼────────────────────┐
              ▼                   ▼                    ▼
       ┌────────────┐      ┌────────────┐       ┌────────────┐
       │  Indexes   │      │   Links    │       │  Effects   │
       └─────┬──────┘      └─────┬──────┘       └─────┬──────┘
             └───────────────────┼────────────────────┘
                                 ▼
                        ┌────────────────────┐
                        │  KvStore (memory,  │
                        │      sqlite)       │
                        └────────────────────┘

Invariants:
    - The store only offers single-key atomic operations
    - Derived state (indexes, link side sets) can always be rebuilt by repair
    - Every component tolerates at-least-once redelivery

How to change safely:
    - Key formats live in keys.py only; changing them orphans stored data
    - Bucket policies live in apply/indexes.py; changing a chain moves
      historical entities between buckets, run repair afterwards
"""

from ._version import __version__

__all__ = ["__version__"]
