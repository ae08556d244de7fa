"""
Closed sets of entity and link types.

Link types are named SOURCE_TARGET. The prefix fixes the source entity
type and the suffix fixes the target entity type, with FINREC standing
for a financial record.

Invariants:
    - Enum values are persisted in store keys and link records
    - Every LinkType name splits into two known entity tokens

How to change safely:
    - Only add members; renaming a value orphans stored data
    - A new entity type needs an entry in _COLLECTIONS and _LINK_TOKENS
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class EntityType(Enum):
    """Entity types managed by the admin tool."""

    TASK = "task"
    ITEM = "item"
    SALE = "sale"
    FINANCIAL = "financial"
    CHARACTER = "character"
    PLAYER = "player"
    ACCOUNT = "account"
    SITE = "site"

    @property
    def collection(self) -> str:
        """Plural collection name used by derived index keys."""
        return _COLLECTIONS[self]

    @classmethod
    def parse(cls, value: EntityType | str) -> EntityType:
        """Accept an EntityType, its value or its collection name."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if value == member.value or value == member.collection:
                return member
        raise ValueError(f"Unknown entity type: {value!r}")


_COLLECTIONS = {
    EntityType.TASK: "tasks",
    EntityType.ITEM: "items",
    EntityType.SALE: "sales",
    EntityType.FINANCIAL: "financials",
    EntityType.CHARACTER: "characters",
    EntityType.PLAYER: "players",
    EntityType.ACCOUNT: "accounts",
    EntityType.SITE: "sites",
}

_LINK_TOKENS = {
    "TASK": EntityType.TASK,
    "ITEM": EntityType.ITEM,
    "SALE": EntityType.SALE,
    "FINREC": EntityType.FINANCIAL,
    "CHARACTER": EntityType.CHARACTER,
    "PLAYER": EntityType.PLAYER,
    "ACCOUNT": EntityType.ACCOUNT,
    "SITE": EntityType.SITE,
}


class LinkType(Enum):
    """Directed relationship tags."""

    TASK_ITEM = "TASK_ITEM"
    TASK_FINREC = "TASK_FINREC"
    TASK_SALE = "TASK_SALE"
    TASK_PLAYER = "TASK_PLAYER"
    TASK_CHARACTER = "TASK_CHARACTER"
    TASK_SITE = "TASK_SITE"

    ITEM_TASK = "ITEM_TASK"
    ITEM_SALE = "ITEM_SALE"
    ITEM_FINREC = "ITEM_FINREC"
    ITEM_PLAYER = "ITEM_PLAYER"
    ITEM_CHARACTER = "ITEM_CHARACTER"
    ITEM_SITE = "ITEM_SITE"

    SALE_TASK = "SALE_TASK"
    SALE_ITEM = "SALE_ITEM"
    SALE_FINREC = "SALE_FINREC"
    SALE_PLAYER = "SALE_PLAYER"
    SALE_CHARACTER = "SALE_CHARACTER"
    SALE_SITE = "SALE_SITE"

    FINREC_TASK = "FINREC_TASK"
    FINREC_ITEM = "FINREC_ITEM"
    FINREC_SALE = "FINREC_SALE"
    FINREC_PLAYER = "FINREC_PLAYER"
    FINREC_CHARACTER = "FINREC_CHARACTER"
    FINREC_SITE = "FINREC_SITE"

    CHARACTER_TASK = "CHARACTER_TASK"
    CHARACTER_ITEM = "CHARACTER_ITEM"
    CHARACTER_SALE = "CHARACTER_SALE"
    CHARACTER_FINREC = "CHARACTER_FINREC"
    CHARACTER_SITE = "CHARACTER_SITE"
    CHARACTER_PLAYER = "CHARACTER_PLAYER"

    SITE_TASK = "SITE_TASK"
    SITE_CHARACTER = "SITE_CHARACTER"
    SITE_FINREC = "SITE_FINREC"
    SITE_ITEM = "SITE_ITEM"
    SITE_SALE = "SITE_SALE"
    SITE_SITE = "SITE_SITE"

    PLAYER_TASK = "PLAYER_TASK"
    PLAYER_SALE = "PLAYER_SALE"
    PLAYER_FINREC = "PLAYER_FINREC"
    PLAYER_ITEM = "PLAYER_ITEM"
    PLAYER_CHARACTER = "PLAYER_CHARACTER"

    ACCOUNT_PLAYER = "ACCOUNT_PLAYER"
    ACCOUNT_CHARACTER = "ACCOUNT_CHARACTER"
    PLAYER_ACCOUNT = "PLAYER_ACCOUNT"
    CHARACTER_ACCOUNT = "CHARACTER_ACCOUNT"

    @property
    def source_type(self) -> EntityType:
        return _LINK_TOKENS[self.value.split("_", 1)[0]]

    @property
    def target_type(self) -> EntityType:
        return _LINK_TOKENS[self.value.split("_", 1)[1]]


@dataclass(frozen=True)
class EntityRef:
    """Reference to one endpoint of a link.

    Attributes:
        entity_type: Type of the referenced entity
        entity_id: Identifier of the referenced entity
    """

    entity_type: EntityType
    entity_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"entity_type": self.entity_type.value, "id": self.entity_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityRef:
        return cls(EntityType.parse(data["entity_type"]), str(data["id"]))

    def __str__(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"


class TaskStatus(Enum):
    CREATED = "Created"
    ON_HOLD = "On Hold"
    IN_PROGRESS = "In Progress"
    FINISHING = "Finishing"
    DONE = "Done"
    COLLECTED = "Collected"
    FAILED = "Failed"
    NONE = "None"


class ItemStatus(Enum):
    CREATED = "Created"
    FOR_SALE = "For Sale"
    SOLD = "Sold"
    TO_ORDER = "To Order"
    TO_DO = "To Do"
    GIFTED = "Gifted"
    RESERVED = "Reserved"
    CONSIGNMENT = "Consignment"
    OBSOLETE = "Obsolete"
    DAMAGED = "Damaged"
    IDLE = "Idle"
    COLLECTED = "Collected"


class SaleStatus(Enum):
    PENDING = "PENDING"
    ON_HOLD = "ON_HOLD"
    CHARGED = "CHARGED"
    COLLECTED = "COLLECTED"
    CANCELLED = "CANCELLED"


class FinancialStatus(Enum):
    PENDING = "PENDING"
    DONE = "Done"
    COLLECTED = "Collected"
