from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ImportOptionsModel(BaseModel):
    """Duplicate handling for an equipment import"""
    skip_duplicates: bool = True  # Skip rows whose serial number already exists


class RowIssueModel(BaseModel):
    row_number: int  # 1-based, counted from the first data row
    message: str


class ErrorDetail(BaseModel):
    code: str
    message: str


class EquipmentFieldsResponse(BaseModel):
    equipment_fields: Dict[str, str]
    required_fields: List[str]
    sentinels: Dict[str, str]


class ImportPreviewResponse(BaseModel):
    success: bool = True
    handle: str
    file_name: Optional[str] = None
    file_type: str
    headers: List[str]
    total_rows: int
    preview_rows: List[Dict[str, str]]
    suggested_mapping: Dict[str, str]
    advisor_confidence: str
    advisor_notes: str = ""
    sheet_name: Optional[str] = None
    sheet_names: List[str] = Field(default_factory=list)
    equipment_fields: Dict[str, str]
    required_fields: List[str]


class ImportSessionResponse(BaseModel):
    handle: str
    file_name: Optional[str] = None
    file_type: str
    headers: List[str]
    total_rows: int
    preview_rows: List[Dict[str, str]]
    suggested_mapping: Dict[str, str]
    advisor_confidence: str
    advisor_notes: str = ""
    sheet_name: Optional[str] = None
    sheet_names: List[str] = Field(default_factory=list)
    draft_mapping: Optional[Dict[str, Optional[str]]] = None
    draft_options: Optional[Dict[str, Any]] = None
    state: str
    created_at: datetime
    last_activity_at: datetime


class UpdateMappingRequest(BaseModel):
    mapping: Dict[str, Optional[str]]
    options: ImportOptionsModel = Field(default_factory=ImportOptionsModel)


class CandidateRecord(BaseModel):
    row_number: int
    fields: Dict[str, str]
    attributes: Dict[str, str]


class MappingPreviewResponse(BaseModel):
    handle: str
    mapping: Dict[str, Optional[str]]
    options: ImportOptionsModel
    valid: bool
    issues: List[ErrorDetail]
    candidates: List[CandidateRecord]
    new_attributes: List[str]


class ExecuteImportRequest(BaseModel):
    handle: str
    mapping: Dict[str, Optional[str]]
    options: ImportOptionsModel = Field(default_factory=ImportOptionsModel)
    actor_id: Optional[str] = None


class ImportResultResponse(BaseModel):
    success: bool = True
    import_id: Optional[str] = None
    total_rows: int
    imported: int
    skipped: int
    errors: List[RowIssueModel]
    skipped_rows: List[RowIssueModel]
    attributes_created: List[str]
    attributes_reused: List[str]


class CancelImportRequest(BaseModel):
    handle: str


class CancelImportResponse(BaseModel):
    success: bool = True
    handle: str
    message: str


class ImportRunRecord(BaseModel):
    import_id: str
    session_handle: str
    file_name: Optional[str] = None
    status: str
    total_rows: int = 0
    imported: int = 0
    skipped: int = 0
    error_count: int = 0
    mapping: Dict[str, Any] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)
    errors: List[RowIssueModel] = Field(default_factory=list)
    attributes_created: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportRunListResponse(BaseModel):
    success: bool = True
    runs: List[ImportRunRecord]
    total_count: int
    limit: int
    offset: int


class ImportRunDetailResponse(BaseModel):
    success: bool = True
    run: ImportRunRecord
