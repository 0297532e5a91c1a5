"""
Equipment registry storage used by the bulk-import pipeline.

The table layout mirrors the registry owned by the surrounding application.
Only the pieces the importer needs live here: the field catalog, DDL, and the
row-level insert and natural-key lookups.
"""
import logging
import uuid
from typing import Any, Dict, Optional, Set

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

# First-class equipment fields an import column can be mapped to.
EQUIPMENT_FIELDS: Dict[str, str] = {
    "name": "Equipment name/title (required) - the primary identifier for the equipment",
    "model": "Model number or product model name",
    "serial_number": "Serial number or unique identifier for individual units",
    "manufacturer": "Manufacturer, brand, or vendor name",
    "location": "Physical location, room, building, or site where equipment is located",
    "description": "General description, notes, or additional details about the equipment",
}

REQUIRED_FIELDS = ("name",)

# Natural key used for duplicate detection.
NATURAL_KEY_FIELD = "serial_number"

# VARCHAR(255) columns; description is TEXT and unbounded.
FIELD_MAX_LENGTHS: Dict[str, int] = {
    "name": 255,
    "model": 255,
    "serial_number": 255,
    "manufacturer": 255,
    "location": 255,
}


def create_equipment_table(engine: Engine) -> None:
    """Create the equipment table and its indexes if they don't exist."""
    ddl_statements = [
        """
        CREATE TABLE IF NOT EXISTS equipment (
            id VARCHAR(36) PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            model VARCHAR(255),
            serial_number VARCHAR(255),
            manufacturer VARCHAR(255),
            location VARCHAR(255),
            description TEXT,
            qr_code VARCHAR(255) UNIQUE,
            is_active BOOLEAN DEFAULT TRUE,
            created_by VARCHAR(255),
            import_id VARCHAR(36),
            source_row_number INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        # Serial numbers are unique ignoring case; blank serials are not keys.
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_equipment_serial_number
        ON equipment (LOWER(serial_number))
        WHERE serial_number IS NOT NULL AND serial_number <> ''
        """,
        """CREATE INDEX IF NOT EXISTS idx_equipment_import_id ON equipment(import_id)""",
    ]

    with engine.begin() as conn:
        for ddl in ddl_statements:
            conn.execute(text(ddl))
    logger.info("equipment table created/verified successfully")


def generate_qr_code() -> str:
    """Return a short registry QR code (e.g. ``KB-1A2B3C4D``)."""
    return f"KB-{uuid.uuid4().hex[:8].upper()}"


def insert_equipment(
    conn: Connection,
    record: Dict[str, Optional[str]],
    *,
    created_by: Optional[str] = None,
    import_id: Optional[str] = None,
    source_row_number: Optional[int] = None,
) -> str:
    """
    Insert one equipment row inside the caller's transaction.

    Args:
        conn: Open connection with an active transaction
        record: Catalog field values; missing fields are stored as NULL
        created_by: Acting operator, if known
        import_id: Import run that produced the row
        source_row_number: 1-based data row number in the source file

    Returns:
        The new equipment id
    """
    equipment_id = str(uuid.uuid4())
    params: Dict[str, Any] = {field: record.get(field) or None for field in EQUIPMENT_FIELDS}
    params.update(
        {
            "id": equipment_id,
            "qr_code": generate_qr_code(),
            "created_by": created_by,
            "import_id": import_id,
            "source_row_number": source_row_number,
        }
    )

    conn.execute(
        text(
            """
            INSERT INTO equipment (
                id, name, model, serial_number, manufacturer, location, description,
                qr_code, created_by, import_id, source_row_number
            )
            VALUES (
                :id, :name, :model, :serial_number, :manufacturer, :location, :description,
                :qr_code, :created_by, :import_id, :source_row_number
            )
            """
        ),
        params,
    )
    return equipment_id


def get_existing_serial_numbers(engine: Engine) -> Set[str]:
    """Return all non-blank serial numbers already registered, lower-cased."""
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                "SELECT serial_number FROM equipment "
                "WHERE serial_number IS NOT NULL AND serial_number <> ''"
            )
        ).fetchall()
    return {row[0].lower() for row in rows}


def get_equipment_by_import(engine: Engine, import_id: str) -> list:
    """Return equipment rows created by an import run, in source order."""
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                """
                SELECT id, name, model, serial_number, manufacturer, location,
                       description, qr_code, source_row_number
                FROM equipment
                WHERE import_id = :import_id
                ORDER BY source_row_number
                """
            ),
            {"import_id": import_id},
        ).mappings().all()
    return [dict(row) for row in rows]
