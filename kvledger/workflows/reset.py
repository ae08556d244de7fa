"""
Reset data workflow.

Runs inside one transaction, in this order:
1. Clear entity data (in batches), derived index buckets and effect markers
2. Clear links and their reverse-lookup sets
3. Clear entity and link logs (research logs are kept)
4. "defaults" mode: create Player One (account, player, character)
5. "defaults" mode: seed default sites

"backfill" mode deletes nothing: it rebuilds derived indexes and link
side entries from the primary records.

Invariants:
    - Logs are cleared before Player One is created, so its creation
      entries survive the reset
    - Any step failure or timeout rolls every step back
    - Research logs (data:notes-log, data:dev-log) are never touched

How to change safely:
    - Keep new steps inside the transaction
    - Call timer.check() at the start of every step
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .. import keys
from ..apply import EntityRepository, make_link
from ..config import WorkflowConfig
from ..errors import ConcurrentTransactionError
from ..tx import TransactionManager
from ..types import EntityRef, EntityType, LinkType
from .base import ProgressCallback, StepTimer, WorkflowResult

logger = logging.getLogger(__name__)

RESET_MODES = ("clear", "defaults", "backfill")

RESETTABLE_ENTITY_TYPES = tuple(EntityType)

RESEARCH_LOG_KEYS = ("data:notes-log", "data:dev-log")

PLAYER_ONE_ACCOUNT_ID = "account-one"
PLAYER_ONE_ID = "player-one"
CHARACTER_ONE_ID = "character-one"


class ResetDataWorkflow:
    """Clears all entity data and optionally re-creates the defaults.

    Example:
        >>> workflow = ResetDataWorkflow(repo, tx, config.workflow)
        >>> result = await workflow.execute("defaults")
        >>> result.success
        True
    """

    TOTAL_STEPS = 5

    def __init__(
        self,
        repo: EntityRepository,
        tx: TransactionManager,
        config: WorkflowConfig | None = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.repo = repo
        self.store = repo.store
        self.tx = tx
        self.config = config or WorkflowConfig()
        self._clock = clock

    async def execute(
        self,
        mode: str = "defaults",
        progress: Optional[ProgressCallback] = None,
    ) -> WorkflowResult:
        """Run the reset.

        Args:
            mode: "clear", "defaults" or "backfill"
            progress: Called with (current, total, step) at every step

        Returns:
            Outcome with per-operation results

        Raises:
            ValueError: If mode is unknown
            ConcurrentTransactionError: If another workflow is running
        """
        if mode not in RESET_MODES:
            raise ValueError(f"Unknown reset mode '{mode}'. Must be one of: {', '.join(RESET_MODES)}")

        results: list[str] = []
        timer_kwargs = {"clock": self._clock} if self._clock else {}
        timer = StepTimer(self.config.timeout_seconds, self.TOTAL_STEPS, progress, **timer_kwargs)
        logger.info("Reset data started", extra={"mode": mode})

        async def run() -> None:
            if mode == "backfill":
                await self._backfill(timer, results)
                return

            timer.check("Clearing entity data")
            await self._clear_entity_data(results)

            timer.check("Clearing links")
            await self._clear_links(results)

            timer.check("Clearing logs")
            await self._clear_logs(results)

            if mode == "defaults":
                timer.check("Initializing Player One")
                await self._initialize_player_one(results)
                timer.check("Seeding default sites")
                await self._seed_default_sites(results)
            else:
                timer.skip()
                timer.skip()

        try:
            await self.tx.execute(run)
        except ConcurrentTransactionError:
            raise
        except Exception as error:
            logger.error("Reset data failed", extra={"mode": mode, "error": repr(error)})
            return WorkflowResult.from_failure("Reset", error, results, {"mode": mode})

        logger.info(
            "Reset data completed",
            extra={"mode": mode, "operations": len(results), "elapsed_seconds": timer.elapsed},
        )
        return WorkflowResult(
            success=True,
            message=f"Successfully reset data ({mode} mode) - {len(results)} operations completed",
            results=results,
            details={"mode": mode, "progress": {"current": timer.total_steps, "total": timer.total_steps}},
        )

    async def _clear_entity_data(self, results: list[str]) -> None:
        batch_size = self.config.reset_batch_size
        for entity_type in RESETTABLE_ENTITY_TYPES:
            ids = await self.repo.list_ids(entity_type)
            # Records missing from the id set are cleared too
            prefix = keys.data_prefix(entity_type)
            ids = sorted(set(ids) | {k[len(prefix) :] for k in await self.store.scan_prefix(prefix)})
            if not ids:
                results.append(f"No {entity_type.value} entities to clear")
                continue

            batches = 0
            for start in range(0, len(ids), batch_size):
                batch = ids[start : start + batch_size]
                for entity_id in batch:
                    await self.store.delete(keys.data_key(entity_type, entity_id))
                self.tx.track_entity_clearing(entity_type, batch)
                batches += 1
            await self.store.delete(keys.all_ids_key(entity_type))
            results.append(f"Cleared {len(ids)} {entity_type.value} entities in {batches} batches")

        buckets = 0
        for policy in self.repo.indexes.policies:
            buckets += await self.repo.indexes.clear(policy.entity_type, policy.name)
        results.append(f"Cleared {buckets} index buckets")

        markers = 0
        for key in await self.store.scan_prefix(keys.EFFECTS_PREFIX):
            if await self.store.delete(key):
                markers += 1
        results.append(f"Cleared {markers} effect markers")

    async def _clear_links(self, results: list[str]) -> None:
        link_keys = await self.store.scan_prefix(keys.link_prefix())
        batch_size = self.config.reset_batch_size
        for start in range(0, len(link_keys), batch_size):
            batch = link_keys[start : start + batch_size]
            for key in batch:
                await self.store.delete(key)
            self.tx.track_link_clearing(k[len(keys.link_prefix()) :] for k in batch)

        for key in await self.store.scan_prefix(keys.links_by_entity_prefix()):
            await self.store.delete(key)

        results.append(f"Cleared {len(link_keys)} links" if link_keys else "No links to clear")

    async def _clear_logs(self, results: list[str]) -> None:
        for log_type in [t.value for t in RESETTABLE_ENTITY_TYPES] + [keys.LINK_LOG]:
            await self.repo.log.clear(log_type)
            self.tx.track_log_clearing(log_type)
            results.append(f"Cleared {log_type} logs")

        for key in RESEARCH_LOG_KEYS:
            if await self.store.get(key) is not None:
                results.append(f"Preserved {key[len(keys.DATA_PREFIX):]} (research)")

    async def _initialize_player_one(self, results: list[str]) -> None:
        account = {
            "id": PLAYER_ONE_ACCOUNT_ID,
            "name": "Player One",
            "description": "Player One Account",
            "isActive": True,
            "playerId": PLAYER_ONE_ID,
            "characterId": CHARACTER_ONE_ID,
        }
        player = {
            "id": PLAYER_ONE_ID,
            "name": "Player One",
            "description": "Player One",
            "accountId": PLAYER_ONE_ACCOUNT_ID,
            "level": 0,
            "points": {"xp": 0, "rp": 0, "fp": 0, "hp": 0},
            "characterIds": [CHARACTER_ONE_ID],
            "isActive": True,
        }
        character = {
            "id": CHARACTER_ONE_ID,
            "name": "Player One",
            "description": "Player One Character",
            "accountId": PLAYER_ONE_ACCOUNT_ID,
            "playerId": PLAYER_ONE_ID,
            "roles": ["FOUNDER", "PLAYER"],
            "isActive": True,
        }

        for entity_type, record in (
            (EntityType.ACCOUNT, account),
            (EntityType.PLAYER, player),
            (EntityType.CHARACTER, character),
        ):
            await self.repo.upsert(entity_type, record)
            self.tx.track_entity_creation(entity_type, record["id"])

        await self.repo.links.create_link(
            make_link(
                LinkType.PLAYER_CHARACTER,
                EntityRef(EntityType.PLAYER, PLAYER_ONE_ID),
                EntityRef(EntityType.CHARACTER, CHARACTER_ONE_ID),
            )
        )
        results.append("Initialized Player One (account, player, character)")

    async def _seed_default_sites(self, results: list[str]) -> None:
        for name in self.config.seed_sites:
            site = {
                "id": name.lower().replace(" ", "-"),
                "name": name,
                "status": "active",
                "isActive": True,
            }
            await self.repo.upsert(EntityType.SITE, site)
            self.tx.track_entity_creation(EntityType.SITE, site["id"])
            results.append(f"Seeded site: {name}")

    async def _backfill(self, timer: StepTimer, results: list[str]) -> None:
        timer.check("Rebuilding indexes")
        for policy in self.repo.indexes.policies:
            counts = await self.repo.indexes.repair(policy.entity_type, policy.name)
            results.append(
                f"Rebuilt {policy.entity_type.collection}:{policy.name} "
                f"(+{counts.added} / -{counts.removed})"
            )

        timer.check("Re-deriving links")
        derived = 0
        for entity_type in RESETTABLE_ENTITY_TYPES:
            for record in await self.repo.list_all(entity_type):
                changes = await self.repo.process_links(entity_type, record)
                derived += len(changes.created)
        results.append(f"Derived {derived} missing links")

        timer.check("Repairing link side entries")
        counts = await self.repo.links.repair()
        results.append(f"Repaired link side entries (+{counts.added} / -{counts.removed})")
        timer.skip()
        timer.skip()
