"""
Equipment bulk-import endpoints: upload preview, mapping edits, execute and cancel.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.engine import Engine

from app.api.dependencies import get_import_engine, get_mapping_advisor, get_session_store
from app.api.schemas.imports import (
    CancelImportRequest,
    CancelImportResponse,
    EquipmentFieldsResponse,
    ExecuteImportRequest,
    ImportPreviewResponse,
    ImportResultResponse,
    ImportSessionResponse,
    MappingPreviewResponse,
    UpdateMappingRequest,
)
from app.core.config import settings
from app.db.equipment import EQUIPMENT_FIELDS, REQUIRED_FIELDS
from app.domain.imports.advisor import MappingAdvisor, get_advisor_pool, request_suggestion
from app.domain.imports.errors import (
    FileTooLargeError,
    ImportPipelineError,
    InputError,
    MappingValidationError,
    SessionNotFoundError,
    UnsupportedFormatError,
)
from app.domain.imports.executor import cancel_import, execute_import, preview_mapping
from app.domain.imports.mapping import NEW_ATTRIBUTE, SKIP_COLUMN
from app.domain.imports.processors.tabular import parse_tabular_file, resolve_extension
from app.domain.imports.sessions import ImportSessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/equipment/import", tags=["equipment-import"])


def _status_code_for(error: ImportPipelineError) -> int:
    if isinstance(error, UnsupportedFormatError):
        return 415
    if isinstance(error, FileTooLargeError):
        return 413
    if isinstance(error, InputError):
        return 400
    if isinstance(error, SessionNotFoundError):
        return 404
    if isinstance(error, MappingValidationError):
        return 422
    return 500


def _http_error(error: ImportPipelineError) -> HTTPException:
    return HTTPException(status_code=_status_code_for(error), detail=error.to_detail())


def _ensure_within_size_limit(file_size: int, file_name: Optional[str]) -> None:
    """Raise an HTTPException if a file exceeds the configured upload limit."""
    if file_size > settings.upload_max_file_size_mb * 1024 * 1024:
        raise _http_error(
            FileTooLargeError(
                f"{file_name or 'Upload'} is too large. "
                f"Maximum allowed upload size is {settings.upload_max_file_size_mb}MB."
            )
        )


@router.get("/fields", response_model=EquipmentFieldsResponse)
async def list_equipment_fields():
    """Return the equipment fields a column can be mapped to."""
    return EquipmentFieldsResponse(
        equipment_fields=EQUIPMENT_FIELDS,
        required_fields=list(REQUIRED_FIELDS),
        sentinels={
            NEW_ATTRIBUTE: "Create a new equipment attribute from this column",
            SKIP_COLUMN: "Ignore this column",
        },
    )


@router.post("/preview", response_model=ImportPreviewResponse)
async def preview_import(
    file: UploadFile = File(...),
    store: ImportSessionStore = Depends(get_session_store),
    advisor: Optional[MappingAdvisor] = Depends(get_mapping_advisor),
):
    """
    Parse an uploaded CSV or Excel file and open an import session.

    Parameters:
    - file: The spreadsheet to import (.csv, .xlsx, .xlsm, .xls)

    Returns:
    - Session handle, headers, preview rows and the suggested column mapping
    """
    file_content = await file.read()
    _ensure_within_size_limit(len(file_content), file.filename)

    try:
        extension = resolve_extension(file.filename, file.content_type)
        parsed = await run_in_threadpool(parse_tabular_file, file_content, extension, settings.import_max_rows)
        session = await run_in_threadpool(store.create, parsed, file.filename, settings.import_preview_rows)
        session = await run_in_threadpool(
            request_suggestion,
            store,
            session.handle,
            advisor,
            EQUIPMENT_FIELDS,
            settings.advisor_wait_seconds,
            get_advisor_pool(settings.advisor_max_workers),
        )
    except ImportPipelineError as e:
        logger.info(f"Import preview rejected for '{file.filename}': {e.message}")
        raise _http_error(e)

    return ImportPreviewResponse(
        **session.to_dict(),
        equipment_fields=EQUIPMENT_FIELDS,
        required_fields=list(REQUIRED_FIELDS),
    )


@router.get("/sessions/{handle}", response_model=ImportSessionResponse)
async def get_import_session(handle: str, store: ImportSessionStore = Depends(get_session_store)):
    """Return the current state of an uploaded import session."""
    try:
        session = store.get(handle)
    except ImportPipelineError as e:
        raise _http_error(e)
    return ImportSessionResponse(**session.to_dict())


@router.put("/sessions/{handle}/mapping", response_model=MappingPreviewResponse)
async def update_import_mapping(
    handle: str,
    request: UpdateMappingRequest,
    store: ImportSessionStore = Depends(get_session_store),
):
    """
    Save a draft mapping and preview the records it would produce.

    Validation problems are returned in ``issues`` rather than as an error so
    the operator can keep editing.
    """
    try:
        preview = preview_mapping(store, handle, request.mapping, request.options.model_dump())
    except ImportPipelineError as e:
        raise _http_error(e)
    return MappingPreviewResponse(**preview.to_dict())


@router.post("/execute", response_model=ImportResultResponse)
def execute_equipment_import(
    request: ExecuteImportRequest,
    engine: Engine = Depends(get_import_engine),
    store: ImportSessionStore = Depends(get_session_store),
):
    """
    Import every row of a session using the confirmed mapping.

    Returns:
    - Counts of imported, skipped and failed rows plus newly created attributes
    """
    try:
        result = execute_import(
            engine,
            store,
            request.handle,
            request.mapping,
            request.options.model_dump(),
            actor_id=request.actor_id,
        )
    except ImportPipelineError as e:
        raise _http_error(e)
    return ImportResultResponse(**result.to_dict())


@router.post("/cancel", response_model=CancelImportResponse)
def cancel_equipment_import(
    request: CancelImportRequest,
    store: ImportSessionStore = Depends(get_session_store),
):
    """Discard an import session and its temporary file."""
    try:
        cancel_import(store, request.handle)
    except ImportPipelineError as e:
        raise _http_error(e)
    return CancelImportResponse(handle=request.handle, message="Import cancelled")
