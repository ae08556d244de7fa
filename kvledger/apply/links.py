"""
Relationship graph: typed, directed links between entities.

A link is stored as three independent keys:
- the canonical record at links:link:{id}
- its id in the source entity's reverse set index:links:by-entity:{type}:{id}
- its id in the target entity's reverse set

The three writes are not atomic as a group. A failure between them leaves
a link missing a side entry, which reconcile() detects and repair() fixes.

Invariants:
    - (link_type, source, target) is unique; creating an existing triple
      is a successful no-op (create_link returns False)
    - Links built with make_link() have deterministic ids, so racing
      creators write the same canonical key
    - Links are never mutated in place; a metadata change is remove + create
    - Reads skip side entries whose canonical record is gone
    - Only cascade_delete() removes links on behalf of an entity

How to change safely:
    - Add a metadata class per new link type in _METADATA_TYPES
    - Metadata fields may be added with defaults, never renamed
    - Keep create order (record, source, target) and remove order
      (sides, record) so that a partial failure is always detectable
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Union

from .. import keys
from ..errors import LinkValidationError
from ..store import KvStore, mget_batched
from ..types import EntityRef, EntityType, LinkType
from .logs import LifecycleLog, LogEvent
from .repair import RepairCounts

logger = logging.getLogger(__name__)

_LINK_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "kvledger:links")


# =============================================================================
# Metadata
# =============================================================================


@dataclass(frozen=True)
class EmptyMetadata:
    """Links that carry no metadata."""


@dataclass(frozen=True)
class TaskItemMetadata:
    """Task produced an item.

    Attributes:
        quantity: Units produced
        unit_cost: Cost per unit
        price: Target sale price per unit
        item_type: Item category
    """

    quantity: int = 0
    unit_cost: float = 0.0
    price: float = 0.0
    item_type: str | None = None


@dataclass(frozen=True)
class ItemSaleMetadata:
    """Item sold in a sale."""

    quantity: int = 0
    unit_price: float = 0.0


@dataclass(frozen=True)
class SiteMovementMetadata:
    """Inventory moved between two sites."""

    item_id: str | None = None
    quantity: int = 0
    moved_at: str | None = None


@dataclass(frozen=True)
class PointsMetadata:
    """Points a player earned from an entity."""

    xp: int = 0
    rp: int = 0
    fp: int = 0
    hp: int = 0


@dataclass(frozen=True)
class FinancialMetadata:
    """Money tracked by a financial record."""

    amount: float = 0.0
    currency: str = "USD"


@dataclass(frozen=True)
class ReferenceMetadata:
    """Links to characters, sites and accounts; role is e.g. "customer" or "owner"."""

    role: str | None = None


LinkMetadata = Union[
    EmptyMetadata,
    TaskItemMetadata,
    ItemSaleMetadata,
    SiteMovementMetadata,
    PointsMetadata,
    FinancialMetadata,
    ReferenceMetadata,
]

_POINTS_LINKS = {
    LinkType.TASK_PLAYER,
    LinkType.ITEM_PLAYER,
    LinkType.SALE_PLAYER,
    LinkType.FINREC_PLAYER,
    LinkType.PLAYER_TASK,
    LinkType.PLAYER_SALE,
    LinkType.PLAYER_FINREC,
    LinkType.PLAYER_ITEM,
}

_REFERENCE_TYPES = {EntityType.CHARACTER, EntityType.SITE, EntityType.ACCOUNT, EntityType.PLAYER}


def _metadata_type(link_type: LinkType) -> type:
    if link_type in (LinkType.TASK_ITEM, LinkType.ITEM_TASK):
        return TaskItemMetadata
    if link_type in (LinkType.ITEM_SALE, LinkType.SALE_ITEM):
        return ItemSaleMetadata
    if link_type == LinkType.SITE_SITE:
        return SiteMovementMetadata
    if link_type in _POINTS_LINKS:
        return PointsMetadata
    ends = {link_type.source_type, link_type.target_type}
    if EntityType.FINANCIAL in ends:
        return FinancialMetadata
    if ends & _REFERENCE_TYPES:
        return ReferenceMetadata
    return EmptyMetadata


_METADATA_TYPES: dict[LinkType, type] = {lt: _metadata_type(lt) for lt in LinkType}


def metadata_type_for(link_type: LinkType) -> type:
    """Metadata class registered for a link type."""
    return _METADATA_TYPES[link_type]


def metadata_from_dict(link_type: LinkType, data: dict[str, Any] | None) -> LinkMetadata:
    """Build the typed metadata of a link type from a plain mapping.

    Raises:
        LinkValidationError: On unknown fields or bad values
    """
    cls = metadata_type_for(link_type)
    data = dict(data or {})
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise LinkValidationError(
            f"Unknown metadata field(s) for {link_type.value}: {', '.join(unknown)}"
        )
    try:
        return cls(**data)
    except TypeError as e:
        raise LinkValidationError(f"Invalid metadata for {link_type.value}: {e}") from e


# =============================================================================
# Link
# =============================================================================


def link_id_for(link_type: LinkType, source: EntityRef, target: EntityRef) -> str:
    """Deterministic link id of a triple."""
    return str(uuid.uuid5(_LINK_NAMESPACE, f"{link_type.value}|{source}|{target}"))


@dataclass
class Link:
    """A typed, directed edge between two entities.

    Attributes:
        id: Link identifier
        link_type: Relationship tag
        source: Source endpoint
        target: Target endpoint
        metadata: Typed metadata for the link type
        created_at: ISO-8601 UTC creation time
    """

    id: str
    link_type: LinkType
    source: EntityRef
    target: EntityRef
    metadata: LinkMetadata = field(default_factory=EmptyMetadata)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def triple(self) -> tuple[LinkType, EntityRef, EntityRef]:
        return (self.link_type, self.source, self.target)

    def touches(self, ref: EntityRef) -> bool:
        return ref == self.source or ref == self.target

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "link_type": self.link_type.value,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "metadata": asdict(self.metadata),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Link:
        link_type = LinkType(data["link_type"])
        return cls(
            id=data["id"],
            link_type=link_type,
            source=EntityRef.from_dict(data["source"]),
            target=EntityRef.from_dict(data["target"]),
            metadata=metadata_from_dict(link_type, data.get("metadata")),
            created_at=data.get("created_at", ""),
        )


def make_link(
    link_type: LinkType,
    source: EntityRef,
    target: EntityRef,
    metadata: LinkMetadata | dict[str, Any] | None = None,
) -> Link:
    """Build a link with its deterministic id.

    Args:
        link_type: Relationship tag
        source: Source endpoint
        target: Target endpoint
        metadata: Typed metadata, a plain mapping, or None for defaults

    Raises:
        LinkValidationError: If metadata does not match the link type
    """
    if metadata is None or isinstance(metadata, dict):
        metadata = metadata_from_dict(link_type, metadata)
    return Link(
        id=link_id_for(link_type, source, target),
        link_type=link_type,
        source=source,
        target=target,
        metadata=metadata,
    )


def validate_link(link: Link) -> None:
    """Check endpoint types, self reference and metadata class.

    Raises:
        LinkValidationError: If the link is not acceptable
    """
    lt = link.link_type
    if link.source.entity_type != lt.source_type:
        raise LinkValidationError(
            f"{lt.value} requires a {lt.source_type.value} source, "
            f"got {link.source.entity_type.value}"
        )
    if link.target.entity_type != lt.target_type:
        raise LinkValidationError(
            f"{lt.value} requires a {lt.target_type.value} target, "
            f"got {link.target.entity_type.value}"
        )
    if link.source == link.target:
        raise LinkValidationError(f"Link cannot point to itself: {link.source}")
    if not isinstance(link.metadata, metadata_type_for(lt)):
        raise LinkValidationError(
            f"{lt.value} expects {metadata_type_for(lt).__name__}, "
            f"got {type(link.metadata).__name__}"
        )


# =============================================================================
# Reconciliation reports
# =============================================================================


@dataclass(frozen=True)
class LinkSideEntry:
    """A link id expected in (missing) or found in (phantom) an entity's reverse set."""

    link_id: str
    entity: EntityRef

    def to_dict(self) -> dict[str, Any]:
        return {"link_id": self.link_id, "entity": self.entity.to_dict()}


@dataclass
class LinkReconcileReport:
    """Drift between canonical link records and reverse-lookup sets."""

    missing: list[LinkSideEntry] = field(default_factory=list)
    phantom: list[LinkSideEntry] = field(default_factory=list)
    links_checked: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.missing and not self.phantom

    def to_dict(self) -> dict[str, Any]:
        return {
            "missing": [e.to_dict() for e in self.missing],
            "phantom": [e.to_dict() for e in self.phantom],
            "links_checked": self.links_checked,
        }


# =============================================================================
# Registry
# =============================================================================


class LinkRegistry:
    """Store-backed relationship graph.

    Example:
        >>> registry = LinkRegistry(store)
        >>> link = make_link(LinkType.TASK_FINREC,
        ...                  EntityRef(EntityType.TASK, "task-1"),
        ...                  EntityRef(EntityType.FINANCIAL, "finrec-1"))
        >>> await registry.create_link(link)
        True
        >>> await registry.create_link(link)
        False
    """

    def __init__(
        self,
        store: KvStore,
        log: LifecycleLog | None = None,
        batch_size: int = 200,
    ) -> None:
        self.store = store
        self.log = log if log is not None else LifecycleLog(store)
        self.batch_size = batch_size

    async def get_link(self, link_id: str) -> Link | None:
        data = await self.store.get(keys.link_key(link_id))
        return None if data is None else Link.from_dict(data)

    async def find_link(
        self,
        link_type: LinkType,
        source: EntityRef,
        target: EntityRef,
    ) -> Link | None:
        """Find the stored link of a triple, whatever its id."""
        link = await self.get_link(link_id_for(link_type, source, target))
        if link is not None and link.triple == (link_type, source, target):
            return link
        for candidate in await self.get_links_for(source):
            if candidate.triple == (link_type, source, target):
                return candidate
        return None

    async def create_link(self, link: Link) -> bool:
        """Create a link unless its triple already exists.

        Args:
            link: Link to store

        Returns:
            True if written, False if the triple already existed

        Raises:
            LinkValidationError: If the link is not acceptable
        """
        validate_link(link)

        existing = await self.get_link(link.id)
        if existing is not None and existing.triple != link.triple:
            raise LinkValidationError(f"Link id {link.id} already used by another triple")
        if existing is None:
            existing = await self.find_link(*link.triple)

        if existing is not None:
            # Heal side entries left out by an earlier partial write
            await self._add_side_entries(existing)
            logger.debug(
                "Duplicate link ignored",
                extra={"link_id": existing.id, "link_type": link.link_type.value},
            )
            return False

        await self._write(link)
        await self.log.append(keys.LINK_LOG, LogEvent.CREATED, link.id, self._log_details(link))
        logger.debug(
            "Link created",
            extra={
                "link_id": link.id,
                "link_type": link.link_type.value,
                "source": str(link.source),
                "target": str(link.target),
            },
        )
        return True

    async def remove_link(self, link_id: str) -> bool:
        """Remove a link's side entries, then its canonical record.

        Returns:
            True if the canonical record existed
        """
        link = await self.get_link(link_id)
        if link is None:
            return False
        await self._erase(link)
        await self.log.append(keys.LINK_LOG, LogEvent.REMOVED, link.id, self._log_details(link))
        logger.debug("Link removed", extra={"link_id": link.id})
        return True

    async def replace_link(self, link: Link) -> bool:
        """Store link, replacing an existing link of the same triple.

        Returns:
            True if anything was written
        """
        validate_link(link)
        existing = await self.find_link(*link.triple)
        if existing is None:
            return await self.create_link(link)
        if existing.metadata == link.metadata:
            await self._add_side_entries(existing)
            return False

        await self._erase(existing)
        await self._write(link)
        await self.log.append(keys.LINK_LOG, LogEvent.UPDATED, link.id, self._log_details(link))
        return True

    async def get_links_for(self, ref: EntityRef) -> list[Link]:
        """Links where ref is either endpoint, oldest first."""
        link_ids = sorted(await self.store.smembers(keys.links_by_entity_key(ref.entity_type, ref.entity_id)))
        records = await mget_batched(
            self.store, [keys.link_key(i) for i in link_ids], self.batch_size
        )
        links = []
        for data in records:
            if data is None:
                continue
            link = Link.from_dict(data)
            if link.touches(ref):
                links.append(link)
        links.sort(key=lambda l: (l.created_at, l.id))
        return links

    async def get_all_links(self) -> list[Link]:
        link_keys = await self.store.scan_prefix(keys.link_prefix())
        records = await mget_batched(self.store, link_keys, self.batch_size)
        return [Link.from_dict(data) for data in records if data is not None]

    async def cascade_delete(self, ref: EntityRef) -> list[Link]:
        """Remove every link touching an entity, then its reverse set.

        Returns:
            The links that were removed
        """
        links = await self.get_links_for(ref)
        for link in links:
            await self.remove_link(link.id)
        await self.store.delete(keys.links_by_entity_key(ref.entity_type, ref.entity_id))
        if links:
            logger.info(
                "Links cascaded on entity deletion",
                extra={"entity": str(ref), "count": len(links)},
            )
        return links

    async def reconcile(self) -> LinkReconcileReport:
        """Compare canonical records with reverse-lookup sets.

        Two independent scans:
        1. every canonical link must be in both endpoint sets (missing)
        2. every id in every reverse set must resolve to a canonical record
           having that entity as an endpoint (phantom)
        """
        report = LinkReconcileReport()
        members_by_key: dict[str, set[str]] = {}

        async def members(key: str) -> set[str]:
            if key not in members_by_key:
                members_by_key[key] = await self.store.smembers(key)
            return members_by_key[key]

        for link in await self.get_all_links():
            report.links_checked += 1
            for ref in (link.source, link.target):
                side_key = keys.links_by_entity_key(ref.entity_type, ref.entity_id)
                if link.id not in await members(side_key):
                    report.missing.append(LinkSideEntry(link.id, ref))

        for side_key in await self.store.scan_prefix(keys.links_by_entity_prefix()):
            entity_type, entity_id = keys.parse_links_by_entity_key(side_key)
            ref = EntityRef(entity_type, entity_id)
            link_ids = sorted(await members(side_key))
            records = await mget_batched(
                self.store, [keys.link_key(i) for i in link_ids], self.batch_size
            )
            for link_id, data in zip(link_ids, records):
                if data is None or not Link.from_dict(data).touches(ref):
                    report.phantom.append(LinkSideEntry(link_id, ref))

        if not report.is_clean:
            logger.warning(
                "Link integrity drift detected",
                extra={"missing": len(report.missing), "phantom": len(report.phantom)},
            )
        return report

    async def repair(self, apply: bool = True) -> RepairCounts:
        """Add missing side entries and remove phantom ones.

        Safe to re-run and to run alongside normal traffic: every write
        either adds a correct entry or removes an incorrect one.

        Args:
            apply: False for a dry run that only reports

        Returns:
            Before/after counts
        """
        before = await self.reconcile()
        counts = RepairCounts(
            before_missing=len(before.missing),
            before_phantom=len(before.phantom),
            dry_run=not apply,
        )
        if not apply:
            counts.after_missing = counts.before_missing
            counts.after_phantom = counts.before_phantom
            return counts

        for entry in before.missing:
            key = keys.links_by_entity_key(entry.entity.entity_type, entry.entity.entity_id)
            counts.added += await self.store.sadd(key, entry.link_id)
        for entry in before.phantom:
            key = keys.links_by_entity_key(entry.entity.entity_type, entry.entity.entity_id)
            counts.removed += await self.store.srem(key, entry.link_id)

        after = await self.reconcile()
        counts.after_missing = len(after.missing)
        counts.after_phantom = len(after.phantom)
        logger.info("Link repair finished", extra=counts.to_dict())
        return counts

    async def _write(self, link: Link) -> None:
        await self.store.set(keys.link_key(link.id), link.to_dict())
        await self._add_side_entries(link)

    async def _erase(self, link: Link) -> None:
        for ref in (link.source, link.target):
            await self.store.srem(keys.links_by_entity_key(ref.entity_type, ref.entity_id), link.id)
        await self.store.delete(keys.link_key(link.id))

    async def _add_side_entries(self, link: Link) -> None:
        for ref in (link.source, link.target):
            await self.store.sadd(keys.links_by_entity_key(ref.entity_type, ref.entity_id), link.id)

    @staticmethod
    def _log_details(link: Link) -> dict[str, Any]:
        return {
            "link_type": link.link_type.value,
            "source": link.source.to_dict(),
            "target": link.target.to_dict(),
        }
