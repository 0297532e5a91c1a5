"""
Import run tracking for auditing and crash recovery.

Every execute call opens a run record before the first row is written and
closes it when the batch finishes. A run left in ``executing`` state marks an
import that was interrupted mid-batch; the equipment rows it committed carry
its ``import_id`` and can be found (or removed) from there.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

RUN_STATUS_EXECUTING = "executing"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"

_RUN_COLUMNS = (
    "import_id, session_handle, file_name, status, total_rows, imported, skipped, "
    "error_count, mapping, options, errors, attributes_created, created_by, "
    "error_message, started_at, completed_at"
)


def create_import_runs_table(engine: Engine) -> None:
    """Create the equipment_import_runs table if it doesn't exist."""
    ddl_statements = [
        """
        CREATE TABLE IF NOT EXISTS equipment_import_runs (
            import_id VARCHAR(36) PRIMARY KEY,
            session_handle VARCHAR(36) NOT NULL,
            file_name VARCHAR(500),
            status VARCHAR(50) NOT NULL,
            total_rows INTEGER NOT NULL DEFAULT 0,
            imported INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            mapping TEXT,
            options TEXT,
            errors TEXT,
            attributes_created TEXT,
            created_by VARCHAR(255),
            error_message TEXT,
            started_at TIMESTAMP,
            completed_at TIMESTAMP
        )
        """,
        """CREATE INDEX IF NOT EXISTS idx_equipment_import_runs_status ON equipment_import_runs(status)""",
    ]

    with engine.begin() as conn:
        for ddl in ddl_statements:
            conn.execute(text(ddl))
    logger.info("equipment_import_runs table created/verified successfully")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_import_run(
    engine: Engine,
    *,
    session_handle: str,
    file_name: Optional[str],
    total_rows: int,
    mapping: Dict[str, Any],
    options: Dict[str, Any],
    created_by: Optional[str] = None,
) -> str:
    """Record the start of an import and return its id."""
    import_id = str(uuid.uuid4())
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO equipment_import_runs (
                    import_id, session_handle, file_name, status, total_rows,
                    mapping, options, created_by, started_at
                )
                VALUES (
                    :import_id, :session_handle, :file_name, :status, :total_rows,
                    :mapping, :options, :created_by, :started_at
                )
                """
            ),
            {
                "import_id": import_id,
                "session_handle": session_handle,
                "file_name": file_name,
                "status": RUN_STATUS_EXECUTING,
                "total_rows": total_rows,
                "mapping": json.dumps(mapping),
                "options": json.dumps(options),
                "created_by": created_by,
                "started_at": _utcnow(),
            },
        )
    logger.info(f"Started import run {import_id} for session {session_handle} ({total_rows} rows)")
    return import_id


def finish_import_run(
    engine: Engine,
    import_id: str,
    *,
    status: str,
    imported: int = 0,
    skipped: int = 0,
    errors: Optional[List[Dict[str, Any]]] = None,
    attributes_created: Optional[List[str]] = None,
    error_message: Optional[str] = None,
) -> None:
    """Close an import run with its final counts."""
    errors = errors or []
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                UPDATE equipment_import_runs
                SET status = :status,
                    imported = :imported,
                    skipped = :skipped,
                    error_count = :error_count,
                    errors = :errors,
                    attributes_created = :attributes_created,
                    error_message = :error_message,
                    completed_at = :completed_at
                WHERE import_id = :import_id
                """
            ),
            {
                "import_id": import_id,
                "status": status,
                "imported": imported,
                "skipped": skipped,
                "error_count": len(errors),
                "errors": json.dumps(errors),
                "attributes_created": json.dumps(attributes_created or []),
                "error_message": error_message,
                "completed_at": _utcnow(),
            },
        )
    logger.info(
        f"Import run {import_id} {status}: imported={imported} skipped={skipped} errors={len(errors)}"
    )


def _row_to_run(row: Dict[str, Any]) -> Dict[str, Any]:
    run = dict(row)
    for key in ("mapping", "options"):
        run[key] = json.loads(run[key]) if run.get(key) else {}
    for key in ("errors", "attributes_created"):
        run[key] = json.loads(run[key]) if run.get(key) else []
    return run


def get_import_runs(
    engine: Engine,
    *,
    import_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """
    List import runs, newest first.

    Args:
        engine: Database engine
        import_id: Only return this run
        status: Filter by run status ('executing', 'completed', 'failed')
        limit: Maximum number of runs to return
        offset: Number of runs to skip for pagination
    """
    clauses = []
    params: Dict[str, Any] = {"limit": limit, "offset": offset}
    if import_id:
        clauses.append("import_id = :import_id")
        params["import_id"] = import_id
    if status:
        clauses.append("status = :status")
        params["status"] = status

    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    query = f"""
        SELECT {_RUN_COLUMNS}
        FROM equipment_import_runs
        {where_sql}
        ORDER BY started_at DESC
        LIMIT :limit OFFSET :offset
    """

    with engine.connect() as conn:
        rows = conn.execute(text(query), params).mappings().all()
    return [_row_to_run(row) for row in rows]
