"""
Commit logic for equipment imports.

``execute_import`` takes an uploaded session through
``uploaded -> executing -> completed``: it validates the operator's mapping,
registers new attributes, then writes every row in its own transaction so a
bad row is reported without aborting the batch.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from sqlalchemy.engine import Engine
from sqlalchemy.exc import DataError, IntegrityError

from app.db.attributes import set_value
from app.db.equipment import (
    EQUIPMENT_FIELDS,
    FIELD_MAX_LENGTHS,
    NATURAL_KEY_FIELD,
    REQUIRED_FIELDS,
    get_existing_serial_numbers,
    insert_equipment,
)
from app.domain.imports.errors import (
    ImportPipelineError,
    RowValidationError,
    SessionNotFoundError,
)
from app.domain.imports.history import (
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    finish_import_run,
    start_import_run,
)
from app.domain.imports.mapping import (
    active_mapping,
    build_candidate,
    mapping_issues,
    validate_mapping,
)
from app.domain.imports.schema_evolution import (
    attribute_ids_by_header,
    evolve_schema,
    plan_new_attributes,
)
from app.domain.imports.sessions import ImportSessionStore, SessionState

logger = logging.getLogger(__name__)


@dataclass
class ImportOptions:
    skip_duplicates: bool = True

    @classmethod
    def from_value(cls, value: Union["ImportOptions", Mapping[str, Any], None]) -> "ImportOptions":
        if isinstance(value, ImportOptions):
            return value
        value = value or {}
        return cls(skip_duplicates=bool(value.get("skip_duplicates", True)))

    def to_dict(self) -> Dict[str, Any]:
        return {"skip_duplicates": self.skip_duplicates}


@dataclass
class RowIssue:
    row_number: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"row_number": self.row_number, "message": self.message}


@dataclass
class ImportResult:
    total_rows: int = 0
    imported: int = 0
    errors: List[RowIssue] = field(default_factory=list)
    skipped_rows: List[RowIssue] = field(default_factory=list)
    attributes_created: List[str] = field(default_factory=list)
    attributes_reused: List[str] = field(default_factory=list)
    import_id: Optional[str] = None

    @property
    def skipped(self) -> int:
        return len(self.skipped_rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "import_id": self.import_id,
            "total_rows": self.total_rows,
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": [issue.to_dict() for issue in self.errors],
            "skipped_rows": [issue.to_dict() for issue in self.skipped_rows],
            "attributes_created": list(self.attributes_created),
            "attributes_reused": list(self.attributes_reused),
        }


@dataclass
class MappingPreview:
    """Outcome of a draft mapping edit: issues plus what the preview rows would become."""

    handle: str
    mapping: Dict[str, Optional[str]]
    options: ImportOptions
    issues: List[ImportPipelineError]
    candidates: List[Dict[str, Any]]
    new_attributes: List[str]

    @property
    def valid(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "mapping": dict(self.mapping),
            "options": self.options.to_dict(),
            "valid": self.valid,
            "issues": [issue.to_detail() for issue in self.issues],
            "candidates": self.candidates,
            "new_attributes": list(self.new_attributes),
        }


def _validate_candidate(fields: Dict[str, str]) -> None:
    for required in REQUIRED_FIELDS:
        if not fields.get(required):
            raise RowValidationError(f"Missing {required}")
    for field_name, max_length in FIELD_MAX_LENGTHS.items():
        value = fields.get(field_name) or ""
        if len(value) > max_length:
            raise RowValidationError(f"{field_name} exceeds {max_length} characters")


def _constraint_message(error: Exception, serial: str) -> str:
    if isinstance(error, IntegrityError) and serial:
        return f"Duplicate serial number: {serial}"
    detail = getattr(error, "orig", None) or error
    return f"Database error: {str(detail).strip().splitlines()[0]}"


def execute_import(
    engine: Engine,
    store: ImportSessionStore,
    handle: str,
    mapping: Mapping[str, Any],
    options: Union[ImportOptions, Mapping[str, Any], None] = None,
    actor_id: Optional[str] = None,
) -> ImportResult:
    """
    Commit an uploaded session using the operator-confirmed mapping.

    Args:
        engine: Database engine holding the equipment tables
        store: Session store the handle belongs to
        handle: Import session handle from the preview step
        mapping: ``{header: field | "__new__" | "__skip__" | None}``
        options: Duplicate policy (``skip_duplicates`` defaults to True)
        actor_id: Operator recorded as ``created_by``

    Returns:
        ImportResult where ``imported + skipped + len(errors) == total_rows``

    Raises:
        SessionNotFoundError: Unknown, ended or already executing session
        MappingValidationError: Mapping cannot be executed; session stays uploaded
        SchemaEvolutionError: Attributes could not be registered; no rows written
    """
    options = ImportOptions.from_value(options)
    session = store.get(handle)
    active = validate_mapping(session.headers, mapping)
    session = store.begin_execute(handle)

    try:
        rows = store.load_rows(session)
    except SessionNotFoundError:
        store.terminate(handle, SessionState.EXPIRED)
        raise

    try:
        import_id = start_import_run(
            engine,
            session_handle=handle,
            file_name=session.file_name,
            total_rows=len(rows),
            mapping=active,
            options=options.to_dict(),
            created_by=actor_id,
        )
    except Exception:
        store.release(handle)
        raise

    try:
        registrations = evolve_schema(engine, plan_new_attributes(session.headers, active), import_id=import_id)
    except ImportPipelineError as e:
        try:
            finish_import_run(engine, import_id, status=RUN_STATUS_FAILED, error_message=e.message)
        except Exception:
            logger.exception(f"Could not mark import run {import_id} as failed")
        store.release(handle)
        raise

    result = ImportResult(
        total_rows=len(rows),
        import_id=import_id,
        attributes_created=[r.label for r in registrations if r.created],
        attributes_reused=[r.label for r in registrations if not r.created],
    )
    attribute_ids = attribute_ids_by_header(registrations)

    try:
        _write_rows(engine, session.headers, rows, active, attribute_ids, options, actor_id, import_id, result)
    except Exception as e:
        logger.exception(f"Import {import_id} aborted after {result.imported} row(s)")
        try:
            finish_import_run(
                engine,
                import_id,
                status=RUN_STATUS_FAILED,
                imported=result.imported,
                skipped=result.skipped,
                errors=[issue.to_dict() for issue in result.errors],
                attributes_created=result.attributes_created,
                error_message=str(e),
            )
        except Exception:
            logger.exception(f"Could not mark import run {import_id} as failed")
        store.terminate(handle, SessionState.FAILED)
        raise

    try:
        finish_import_run(
            engine,
            import_id,
            status=RUN_STATUS_COMPLETED,
            imported=result.imported,
            skipped=result.skipped,
            errors=[issue.to_dict() for issue in result.errors],
            attributes_created=result.attributes_created,
        )
    finally:
        store.terminate(handle, SessionState.COMPLETED)

    logger.info(
        f"Import {import_id} finished: {result.imported} imported, {result.skipped} skipped, "
        f"{len(result.errors)} error(s) of {result.total_rows} rows"
    )
    return result


def _write_rows(
    engine: Engine,
    headers: List[str],
    rows: List[List[str]],
    active: Dict[str, str],
    attribute_ids: Dict[str, str],
    options: ImportOptions,
    actor_id: Optional[str],
    import_id: str,
    result: ImportResult,
) -> None:
    known_serials: Set[str] = get_existing_serial_numbers(engine)

    for row_number, row in enumerate(rows, start=1):
        fields, attributes = build_candidate(dict(zip(headers, row)), active)
        serial = fields.get(NATURAL_KEY_FIELD, "")
        serial_key = serial.lower()

        if options.skip_duplicates and serial_key and serial_key in known_serials:
            result.skipped_rows.append(RowIssue(row_number, f"Duplicate serial number: {serial}"))
            continue

        try:
            _validate_candidate(fields)
            with engine.begin() as conn:
                equipment_id = insert_equipment(
                    conn,
                    {name: fields.get(name) for name in EQUIPMENT_FIELDS},
                    created_by=actor_id,
                    import_id=import_id,
                    source_row_number=row_number,
                )
                for header, value in attributes.items():
                    set_value(conn, equipment_id, attribute_ids[header], value)
        except RowValidationError as e:
            result.errors.append(RowIssue(row_number, str(e)))
            continue
        except (IntegrityError, DataError) as e:
            logger.warning(f"Import {import_id} row {row_number} rejected: {e.orig}")
            result.errors.append(RowIssue(row_number, _constraint_message(e, serial)))
            continue

        result.imported += 1
        if serial_key:
            known_serials.add(serial_key)


def cancel_import(store: ImportSessionStore, handle: str) -> None:
    """Discard an uploaded session without importing anything."""
    store.cancel(handle)


def preview_mapping(
    store: ImportSessionStore,
    handle: str,
    mapping: Mapping[str, Any],
    options: Union[ImportOptions, Mapping[str, Any], None] = None,
) -> MappingPreview:
    """
    Save the operator's draft mapping and show what it would produce.

    Nothing is written to the equipment or attribute tables.
    """
    options = ImportOptions.from_value(options)
    draft = {str(header): target for header, target in mapping.items()}
    session = store.save_draft(handle, draft, options.to_dict())

    issues = mapping_issues(session.headers, draft)
    active = active_mapping(session.headers, draft)
    labels = {planned.header: planned.label for planned in plan_new_attributes(session.headers, active)}

    candidates = []
    for row_number, row in enumerate(session.preview_rows, start=1):
        fields, attributes = build_candidate(row, active)
        candidates.append(
            {
                "row_number": row_number,
                "fields": fields,
                "attributes": {labels[header]: value for header, value in attributes.items()},
            }
        )

    return MappingPreview(
        handle=handle,
        mapping=draft,
        options=options,
        issues=issues,
        candidates=candidates,
        new_attributes=list(labels.values()),
    )
