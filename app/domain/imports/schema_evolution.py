"""
Extensible-attribute registration for import mappings.

Headers mapped to ``__new__`` become equipment attributes. Registration runs
in a single transaction that commits before any row is imported, so a failed
import never leaves a partially registered set of attributes, and re-running
an import reuses the attributes an earlier run created.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.db.attributes import register_if_absent
from app.domain.imports.errors import SchemaEvolutionError
from app.domain.imports.mapping import NEW_ATTRIBUTE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedAttribute:
    header: str
    key: str
    label: str


@dataclass(frozen=True)
class AttributeRegistration:
    header: str
    key: str
    label: str
    attribute_id: str
    created: bool


def attribute_label(header: str) -> str:
    """Display name: trimmed with inner whitespace collapsed."""
    return " ".join(header.split())


def normalize_attribute_key(header: str) -> str:
    """Stable attribute identity: label case-folded."""
    return attribute_label(header).casefold()


def plan_new_attributes(headers: Sequence[str], active: Mapping[str, str]) -> List[PlannedAttribute]:
    """
    Assign a unique key to every header mapped to ``__new__``.

    Headers whose keys collide get ``_2``, ``_3``... in header order, so the
    same mapping always yields the same keys.
    """
    planned: List[PlannedAttribute] = []
    used = set()
    for header in headers:
        if active.get(header) != NEW_ATTRIBUTE:
            continue
        base_key = normalize_attribute_key(header)
        key = base_key
        counter = 2
        while key in used:
            key = f"{base_key}_{counter}"
            counter += 1
        used.add(key)
        label = attribute_label(header)
        if key != base_key:
            label = f"{label} ({counter - 1})"
        planned.append(PlannedAttribute(header=header, key=key, label=label))
    return planned


def evolve_schema(
    engine: Engine,
    planned: Sequence[PlannedAttribute],
    import_id: Optional[str] = None,
) -> List[AttributeRegistration]:
    """
    Register every planned attribute in one transaction.

    Raises:
        SchemaEvolutionError: If any registration fails; nothing is committed
    """
    if not planned:
        return []

    registrations: List[AttributeRegistration] = []
    try:
        with engine.begin() as conn:
            for item in planned:
                attribute_id, created = register_if_absent(conn, item.key, item.label, import_id=import_id)
                registrations.append(
                    AttributeRegistration(
                        header=item.header,
                        key=item.key,
                        label=item.label,
                        attribute_id=attribute_id,
                        created=created,
                    )
                )
    except SQLAlchemyError as e:
        logger.error(f"Attribute registration failed; no attributes were committed: {e}")
        raise SchemaEvolutionError(f"Could not register new attributes: {e}") from e

    created = [r.label for r in registrations if r.created]
    reused = [r.label for r in registrations if not r.created]
    logger.info(f"Schema evolution complete: created={created} reused={reused}")
    return registrations


def attribute_ids_by_header(registrations: Sequence[AttributeRegistration]) -> Dict[str, str]:
    return {r.header: r.attribute_id for r in registrations}
