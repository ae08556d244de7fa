"""
Key builder for every store key kvledger reads or writes.

Key layout:
    data:{entity_type}:{id}                          entity record (value)
    index:{entity_type}                              all ids of a type (set)
    index:{collection}:{index_name}:{MM-YY}          derived bucket (set)
    index:links:by-entity:{entity_type}:{id}         link ids touching an entity (set)
    links:link:{link_id}                             canonical link record (value)
    effects:{entity_type}:{id}:{effect}              effect marker (value)
    logs:{entity_type}                               lifecycle log (value, list)
    logs:links                                       link lifecycle log (value, list)
    archive:{kind}:{MM-YY}:{id}                      archived snapshot (value)
    index:archive:{kind}:{MM-YY}                     archived ids of a month (set)
    index:archive:months                             months holding archives (set)

Invariants:
    - Set-typed keys are exactly the keys under "index:"
    - Identical inputs always produce identical keys
    - Callers never concatenate key strings themselves

How to change safely:
    - Changing a format orphans existing data; add a migration first
    - Keep is_set_key() in sync with any new set-typed key
"""

from __future__ import annotations

from datetime import datetime, timezone

from .types import EntityType

DATA_PREFIX = "data:"
INDEX_PREFIX = "index:"
LINKS_PREFIX = "links:"
EFFECTS_PREFIX = "effects:"
LOGS_PREFIX = "logs:"
ARCHIVE_PREFIX = "archive:"

LINK_LOG = "links"


def _type_value(entity_type: EntityType | str) -> str:
    return EntityType.parse(entity_type).value


def data_key(entity_type: EntityType | str, entity_id: str) -> str:
    return f"{DATA_PREFIX}{_type_value(entity_type)}:{entity_id}"


def data_prefix(entity_type: EntityType | str) -> str:
    return f"{DATA_PREFIX}{_type_value(entity_type)}:"


def all_ids_key(entity_type: EntityType | str) -> str:
    return f"{INDEX_PREFIX}{_type_value(entity_type)}"


def index_prefix(entity_type: EntityType | str, index_name: str) -> str:
    """Prefix shared by every bucket of one derived index."""
    collection = EntityType.parse(entity_type).collection
    return f"{INDEX_PREFIX}{collection}:{index_name}:"


def index_key(entity_type: EntityType | str, index_name: str, bucket: str) -> str:
    return f"{index_prefix(entity_type, index_name)}{bucket}"


def link_key(link_id: str) -> str:
    return f"{LINKS_PREFIX}link:{link_id}"


def link_prefix() -> str:
    return f"{LINKS_PREFIX}link:"


def links_by_entity_prefix() -> str:
    return f"{INDEX_PREFIX}links:by-entity:"


def links_by_entity_key(entity_type: EntityType | str, entity_id: str) -> str:
    return f"{links_by_entity_prefix()}{_type_value(entity_type)}:{entity_id}"


def parse_links_by_entity_key(key: str) -> tuple[EntityType, str]:
    """Inverse of links_by_entity_key()."""
    rest = key[len(links_by_entity_prefix()) :]
    entity_type, _, entity_id = rest.partition(":")
    return EntityType.parse(entity_type), entity_id


def effect_prefix(entity_type: EntityType | str, entity_id: str) -> str:
    return f"{EFFECTS_PREFIX}{_type_value(entity_type)}:{entity_id}:"


def effect_key(entity_type: EntityType | str, entity_id: str, effect: str) -> str:
    return f"{effect_prefix(entity_type, entity_id)}{effect}"


def log_key(log_type: EntityType | str) -> str:
    """Log key for an entity type or for the link log ("links")."""
    if log_type == LINK_LOG:
        return f"{LOGS_PREFIX}{LINK_LOG}"
    return f"{LOGS_PREFIX}{_type_value(log_type)}"


def archive_data_key(kind: str, month: str, entity_id: str) -> str:
    return f"{ARCHIVE_PREFIX}{kind}:{month}:{entity_id}"


def archive_index_key(kind: str, month: str) -> str:
    return f"{INDEX_PREFIX}archive:{kind}:{month}"


def archive_months_key() -> str:
    return f"{INDEX_PREFIX}archive:months"


def is_set_key(key: str) -> bool:
    """Whether a key holds a set (as opposed to a JSON value)."""
    return key.startswith(INDEX_PREFIX)


def month_token(moment: datetime) -> str:
    """Format a moment as the "MM-YY" bucket token, in UTC.

    Naive datetimes are taken to be UTC already.
    """
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return f"{moment.month:02d}-{moment.year % 100:02d}"


class EffectKey:
    """Builders for stable effect marker keys.

    Keys depend only on the logical operation, never on the time of the
    attempt, so a redelivered operation finds the marker of the first one.

    Example:
        >>> EffectKey.created("task", "task-1")
        'effects:task:task-1:created'
    """

    @staticmethod
    def created(entity_type: EntityType | str, entity_id: str) -> str:
        return effect_key(entity_type, entity_id, "created")

    @staticmethod
    def status(
        entity_type: EntityType | str,
        entity_id: str,
        from_status: str,
        to_status: str,
        bucket: str | None = None,
    ) -> str:
        effect = f"status:{from_status}->{to_status}"
        if bucket:
            effect = f"{effect}:{bucket}"
        return effect_key(entity_type, entity_id, effect)

    @staticmethod
    def side_effect(entity_type: EntityType | str, entity_id: str, name: str) -> str:
        return effect_key(entity_type, entity_id, name)

    @staticmethod
    def monthly(entity_type: EntityType | str, entity_id: str, name: str, month: str) -> str:
        return effect_key(entity_type, entity_id, f"{name}:{month}")
