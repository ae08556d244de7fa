"""
Link derivation from entity reference fields.

After an entity is persisted, its reference fields (siteId, customerId,
sourceTaskId, ...) are turned into links. When a single-valued reference
changes, the link to the old target is removed.

Invariants:
    - Processing the same record twice writes nothing the second time
    - A metadata change replaces the link, it is never edited in place
    - Sites create no links on save

How to change safely:
    - A new reference field needs one LinkRule entry in DEFAULT_RULES
    - Metadata builders may only emit fields of the link type's metadata class
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from ..types import EntityRef, EntityType, LinkType
from .links import Link, LinkRegistry, make_link

logger = logging.getLogger(__name__)


def _points(entity: dict[str, Any]) -> dict[str, Any]:
    points = (entity.get("rewards") or {}).get("points") or {}
    return {k: int(points[k]) for k in ("xp", "rp", "fp", "hp") if k in points}


def _task_output(entity: dict[str, Any]) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    if entity.get("outputQuantity") is not None:
        meta["quantity"] = int(entity["outputQuantity"])
    if entity.get("outputUnitCost") is not None:
        meta["unit_cost"] = float(entity["outputUnitCost"])
    if entity.get("outputItemPrice") is not None:
        meta["price"] = float(entity["outputItemPrice"])
    if entity.get("outputItemType") is not None:
        meta["item_type"] = str(entity["outputItemType"])
    return meta


def _role(role: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    return lambda entity: {"role": role}


@dataclass(frozen=True)
class LinkRule:
    """One reference field that implies one link type.

    Attributes:
        field: Entity field holding the target id
        link_type: Link created from the entity to that target
        metadata: Builds the link metadata from the entity record
    """

    field: str
    link_type: LinkType
    metadata: Optional[Callable[[dict[str, Any]], dict[str, Any]]] = None

    def target_of(self, entity: dict[str, Any] | None) -> EntityRef | None:
        if not entity:
            return None
        value = entity.get(self.field)
        if not value:
            return None
        return EntityRef(self.link_type.target_type, str(value))


DEFAULT_RULES: Mapping[EntityType, tuple[LinkRule, ...]] = {
    EntityType.TASK: (
        LinkRule("siteId", LinkType.TASK_SITE),
        LinkRule("customerCharacterId", LinkType.TASK_CHARACTER, _role("customer")),
        LinkRule("sourceSaleId", LinkType.TASK_SALE),
        LinkRule("outputItemId", LinkType.TASK_ITEM, _task_output),
        LinkRule("playerId", LinkType.TASK_PLAYER, _points),
    ),
    EntityType.ITEM: (
        LinkRule("sourceTaskId", LinkType.ITEM_TASK),
        LinkRule("siteId", LinkType.ITEM_SITE),
        LinkRule("ownerCharacterId", LinkType.ITEM_CHARACTER, _role("owner")),
    ),
    EntityType.SALE: (
        LinkRule("siteId", LinkType.SALE_SITE),
        LinkRule("customerId", LinkType.SALE_CHARACTER, _role("customer")),
        LinkRule("playerId", LinkType.SALE_PLAYER, _points),
    ),
    EntityType.FINANCIAL: (
        LinkRule("siteId", LinkType.FINREC_SITE),
        LinkRule("sourceTaskId", LinkType.FINREC_TASK),
        LinkRule("sourceSaleId", LinkType.FINREC_SALE),
        LinkRule("customerCharacterId", LinkType.FINREC_CHARACTER, _role("customer")),
        LinkRule("playerId", LinkType.FINREC_PLAYER, _points),
    ),
    EntityType.CHARACTER: (
        LinkRule("playerId", LinkType.CHARACTER_PLAYER),
        LinkRule("accountId", LinkType.CHARACTER_ACCOUNT),
    ),
    EntityType.PLAYER: (LinkRule("accountId", LinkType.PLAYER_ACCOUNT),),
    EntityType.ACCOUNT: (
        LinkRule("playerId", LinkType.ACCOUNT_PLAYER),
        LinkRule("characterId", LinkType.ACCOUNT_CHARACTER),
    ),
    EntityType.SITE: (),
}


@dataclass
class LinkChanges:
    """Links written or removed while processing one entity."""

    created: list[Link] = field(default_factory=list)
    removed: list[Link] = field(default_factory=list)


class LinkRules:
    """Applies DEFAULT_RULES (or custom rules) to entity writes."""

    def __init__(
        self,
        links: LinkRegistry,
        rules: Mapping[EntityType, tuple[LinkRule, ...]] = DEFAULT_RULES,
    ) -> None:
        self.links = links
        self.rules = rules

    async def process(
        self,
        entity_type: EntityType | str,
        entity: dict[str, Any],
        previous: dict[str, Any] | None = None,
    ) -> LinkChanges:
        """Ensure the links implied by an entity's reference fields.

        Args:
            entity_type: Type of the written entity
            entity: Record as just persisted
            previous: Record before the write, None for a new entity

        Returns:
            Links created (or replaced) and links removed
        """
        entity_type = EntityType.parse(entity_type)
        source = EntityRef(entity_type, entity["id"])
        changes = LinkChanges()

        for rule in self.rules.get(entity_type, ()):
            target = rule.target_of(entity)
            old_target = rule.target_of(previous)

            if old_target is not None and old_target != target:
                stale = await self.links.find_link(rule.link_type, source, old_target)
                if stale is not None and await self.links.remove_link(stale.id):
                    changes.removed.append(stale)

            if target is None:
                continue
            metadata = rule.metadata(entity) if rule.metadata else None
            link = make_link(rule.link_type, source, target, metadata)
            if await self.links.replace_link(link):
                changes.created.append(link)

        if changes.created or changes.removed:
            logger.debug(
                "Entity links processed",
                extra={
                    "entity": str(source),
                    "links_created": len(changes.created),
                    "links_removed": len(changes.removed),
                },
            )
        return changes
