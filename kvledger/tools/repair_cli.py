"""
Repair CLI tool for kvledger.

Reconciles derived keys (secondary index buckets and link reverse-lookup
sets) against the primary records and optionally repairs the drift.

Usage:
    kvledger-repair indexes [--entity-type task --index collected] [--apply]
    kvledger-repair links [--apply]
    kvledger-repair all [--apply]

Without --apply the tool only reports. The exit code is 1 whenever drift
remains after the run (always the case for a dry run that found drift),
so it can gate deploys.

Invariants:
    - Repair is idempotent (can be re-run safely)
    - A dry run never writes

How to change safely:
    - Add new targets as new subcommands
    - Keep the exit code contract stable
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field, replace

from ..apply import RepairCounts
from ..config import LedgerConfig, StoreBackend
from ..ledger import Ledger

logger = logging.getLogger(__name__)

REPAIR_TARGETS = ("indexes", "links", "all")


@dataclass
class RepairConfig:
    """Configuration for a repair run.

    Attributes:
        target: "indexes", "links" or "all"
        apply: If False, only report drift
        entity_type: Restrict index repair to one entity type
        index_name: Restrict index repair to one index (with entity_type)
    """

    target: str = "all"
    apply: bool = False
    entity_type: str | None = None
    index_name: str | None = None


@dataclass
class RepairResult:
    """Result of a repair run.

    Attributes:
        success: True if the run finished and no drift remains
        counts: Repair counts per index ("{collection}:{index}") and "links"
        duration_ms: Total duration
        error: Error message if the run failed
    """

    success: bool
    counts: dict[str, RepairCounts] = field(default_factory=dict)
    duration_ms: int = 0
    error: str | None = None

    @property
    def remaining_drift(self) -> int:
        return sum(c.after_missing + c.after_phantom for c in self.counts.values())


class RepairTool:
    """Runs reconciliation and repair over one ledger.

    Example:
        >>> tool = RepairTool(RepairConfig(target="links", apply=True), ledger)
        >>> result = await tool.run()
        >>> result.counts["links"].added
        0
    """

    def __init__(self, config: RepairConfig, ledger: Ledger) -> None:
        if config.target not in REPAIR_TARGETS:
            raise ValueError(
                f"Unknown repair target '{config.target}'. Must be one of: {', '.join(REPAIR_TARGETS)}"
            )
        self.config = config
        self.ledger = ledger

    async def run(self) -> RepairResult:
        start_time = time.time()
        counts: dict[str, RepairCounts] = {}
        try:
            if self.config.target in ("indexes", "all"):
                await self._repair_indexes(counts)
            if self.config.target in ("links", "all"):
                counts["links"] = await self.ledger.links.repair(apply=self.config.apply)
        except Exception as e:
            logger.error(f"Repair failed: {e}", exc_info=True)
            return RepairResult(
                success=False,
                counts=counts,
                duration_ms=int((time.time() - start_time) * 1000),
                error=str(e),
            )

        result = RepairResult(
            success=True,
            counts=counts,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        result.success = result.remaining_drift == 0
        return result

    async def _repair_indexes(self, counts: dict[str, RepairCounts]) -> None:
        indexes = self.ledger.indexes
        if self.config.entity_type and self.config.index_name:
            policies = [indexes.policy(self.config.entity_type, self.config.index_name)]
        elif self.config.entity_type:
            policies = indexes.policies_for(self.config.entity_type)
        else:
            policies = list(indexes.policies)

        for policy in policies:
            name = f"{policy.entity_type.collection}:{policy.name}"
            counts[name] = await indexes.repair(policy.entity_type, policy.name, self.config.apply)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reconcile and repair kvledger secondary indexes and link side entries"
    )
    parser.add_argument(
        "--backend",
        choices=[b.value for b in StoreBackend],
        help="Store backend (default: STORE_BACKEND)",
    )
    parser.add_argument("--data-dir", help="Directory of the SQLite database (default: DATA_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="target", required=True)

    indexes = subparsers.add_parser("indexes", help="Repair secondary index buckets")
    indexes.add_argument("--entity-type", help="Only this entity type")
    indexes.add_argument("--index", dest="index_name", help="Only this index (needs --entity-type)")
    indexes.add_argument("--apply", action="store_true", help="Write the repairs")

    links = subparsers.add_parser("links", help="Repair link reverse-lookup sets")
    links.add_argument("--apply", action="store_true", help="Write the repairs")

    everything = subparsers.add_parser("all", help="Repair every index and the link graph")
    everything.add_argument("--apply", action="store_true", help="Write the repairs")
    return parser


def load_ledger_config(args: argparse.Namespace) -> LedgerConfig:
    """Environment configuration with command line overrides."""
    config = LedgerConfig.from_env()
    if args.backend:
        config.store_backend = StoreBackend(args.backend)
    if args.data_dir:
        config.storage = replace(config.storage, data_dir=args.data_dir)
    config.validate()
    return config


async def _run(repair_config: RepairConfig, ledger_config: LedgerConfig) -> RepairResult:
    ledger = Ledger(ledger_config)
    await ledger.start()
    try:
        return await RepairTool(repair_config, ledger).run()
    finally:
        await ledger.stop()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the repair tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if getattr(args, "index_name", None) and not getattr(args, "entity_type", None):
        parser.error("--index requires --entity-type")

    try:
        ledger_config = load_ledger_config(args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    repair_config = RepairConfig(
        target=args.target,
        apply=args.apply,
        entity_type=getattr(args, "entity_type", None),
        index_name=getattr(args, "index_name", None),
    )
    result = asyncio.run(_run(repair_config, ledger_config))

    if result.error:
        print(f"Repair failed: {result.error}")
        sys.exit(1)

    mode = "applied" if repair_config.apply else "dry run"
    print(f"Repair {mode} in {result.duration_ms}ms")
    for name, counts in result.counts.items():
        print(
            f"  {name}: missing {counts.before_missing} -> {counts.after_missing}, "
            f"phantom {counts.before_phantom} -> {counts.after_phantom} "
            f"(+{counts.added} / -{counts.removed})"
        )
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
