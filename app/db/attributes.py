"""
Extensible equipment attributes.

Attributes that are not part of the fixed equipment catalog are kept in a
name registry (``equipment_attributes``) with values in a keyed side table
(``equipment_attribute_values``), so imports can introduce new properties
without altering the equipment table.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


def create_attribute_tables(engine: Engine) -> None:
    """Create the attribute registry and value tables if they don't exist."""
    ddl_statements = [
        """
        CREATE TABLE IF NOT EXISTS equipment_attributes (
            id VARCHAR(36) PRIMARY KEY,
            attribute_key VARCHAR(255) NOT NULL UNIQUE,
            label VARCHAR(255) NOT NULL,
            created_by_import VARCHAR(36),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS equipment_attribute_values (
            equipment_id VARCHAR(36) NOT NULL REFERENCES equipment(id) ON DELETE CASCADE,
            attribute_id VARCHAR(36) NOT NULL REFERENCES equipment_attributes(id) ON DELETE CASCADE,
            value TEXT NOT NULL,
            PRIMARY KEY (equipment_id, attribute_id)
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_equipment_attribute_values_attribute
        ON equipment_attribute_values(attribute_id)
        """,
    ]

    with engine.begin() as conn:
        for ddl in ddl_statements:
            conn.execute(text(ddl))
    logger.info("equipment attribute tables created/verified successfully")


def _find_attribute_id(conn: Connection, attribute_key: str) -> Optional[str]:
    row = conn.execute(
        text("SELECT id FROM equipment_attributes WHERE attribute_key = :attribute_key"),
        {"attribute_key": attribute_key},
    ).fetchone()
    return row[0] if row else None


def register_if_absent(
    conn: Connection,
    attribute_key: str,
    label: str,
    import_id: Optional[str] = None,
) -> Tuple[str, bool]:
    """
    Return the id of the attribute with ``attribute_key``, creating it if needed.

    Safe against a concurrent import registering the same key: the insert runs
    in a savepoint and a unique violation falls back to the existing row.

    Returns:
        Tuple of (attribute_id, created)
    """
    existing_id = _find_attribute_id(conn, attribute_key)
    if existing_id:
        return existing_id, False

    attribute_id = str(uuid.uuid4())
    try:
        with conn.begin_nested():
            conn.execute(
                text(
                    """
                    INSERT INTO equipment_attributes (id, attribute_key, label, created_by_import)
                    VALUES (:id, :attribute_key, :label, :created_by_import)
                    """
                ),
                {
                    "id": attribute_id,
                    "attribute_key": attribute_key,
                    "label": label,
                    "created_by_import": import_id,
                },
            )
    except IntegrityError:
        existing_id = _find_attribute_id(conn, attribute_key)
        if existing_id is None:
            raise
        logger.info(f"Attribute '{attribute_key}' was registered concurrently; reusing it")
        return existing_id, False

    logger.info(f"Registered extensible attribute '{label}' (key '{attribute_key}')")
    return attribute_id, True


def set_value(conn: Connection, equipment_id: str, attribute_id: str, value: str) -> None:
    """Store one attribute value for an equipment row, replacing any previous value."""
    conn.execute(
        text(
            """
            INSERT INTO equipment_attribute_values (equipment_id, attribute_id, value)
            VALUES (:equipment_id, :attribute_id, :value)
            ON CONFLICT (equipment_id, attribute_id) DO UPDATE
            SET value = excluded.value
            """
        ),
        {"equipment_id": equipment_id, "attribute_id": attribute_id, "value": value},
    )


def list_attributes(engine: Engine) -> List[Dict[str, Any]]:
    """Return every registered attribute ordered by key."""
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                """
                SELECT id, attribute_key, label, created_by_import
                FROM equipment_attributes
                ORDER BY attribute_key
                """
            )
        ).mappings().all()
    return [dict(row) for row in rows]


def get_attribute_values(engine: Engine, equipment_id: str) -> Dict[str, str]:
    """Return ``{label: value}`` for one equipment row."""
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                """
                SELECT a.label, v.value
                FROM equipment_attribute_values v
                JOIN equipment_attributes a ON a.id = v.attribute_id
                WHERE v.equipment_id = :equipment_id
                """
            ),
            {"equipment_id": equipment_id},
        ).fetchall()
    return {row[0]: row[1] for row in rows}
