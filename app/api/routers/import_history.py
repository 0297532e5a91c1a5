"""
Import run history endpoints for monitoring and auditing equipment imports.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.api.dependencies import get_import_engine
from app.api.schemas.imports import ImportRunDetailResponse, ImportRunListResponse, ImportRunRecord
from app.domain.imports.history import get_import_runs

router = APIRouter(prefix="/equipment/import/runs", tags=["equipment-import"])


@router.get("", response_model=ImportRunListResponse)
def list_import_runs(
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: Engine = Depends(get_import_engine),
):
    """
    List import runs, newest first.

    Parameters:
    - status: Filter by run status ('executing', 'completed', 'failed')
    - limit: Maximum number of runs to return (default: 100)
    - offset: Number of runs to skip for pagination (default: 0)
    """
    try:
        runs = get_import_runs(engine, status=status, limit=limit, offset=offset)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Failed to retrieve import runs: {str(e)}")

    records = [ImportRunRecord(**run) for run in runs]
    return ImportRunListResponse(runs=records, total_count=len(records), limit=limit, offset=offset)


@router.get("/{import_id}", response_model=ImportRunDetailResponse)
def get_import_run(import_id: str, engine: Engine = Depends(get_import_engine)):
    """Get one import run, including its per-row errors."""
    try:
        runs = get_import_runs(engine, import_id=import_id, limit=1)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Failed to retrieve import run: {str(e)}")

    if not runs:
        raise HTTPException(status_code=404, detail=f"Import run {import_id} not found")
    return ImportRunDetailResponse(run=ImportRunRecord(**runs[0]))
