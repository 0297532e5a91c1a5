"""
Exceptions raised by the equipment import pipeline.

Every error carries a stable ``code`` so routers can surface a structured
``{code, message}`` payload without string matching.
"""
from typing import Iterable, Optional


class ImportPipelineError(Exception):
    """Base class for all import pipeline failures."""

    code = "import_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


# Input errors (parse time) -------------------------------------------------

class InputError(ImportPipelineError):
    """Raised while reading an upload; no session is created."""


class UnsupportedFormatError(InputError):
    code = "unsupported_format"


class EmptyFileError(InputError):
    code = "empty_file"

    def __init__(self, message: str = "File is empty"):
        super().__init__(message)


class HeaderRowMissingError(InputError):
    code = "header_row_missing"

    def __init__(self, message: str = "File has no header columns"):
        super().__init__(message)


class FileTooLargeError(InputError):
    code = "file_too_large"


# Lifecycle errors ----------------------------------------------------------

class SessionNotFoundError(ImportPipelineError):
    """Raised for missing, terminated, or currently executing sessions."""

    code = "session_not_found"

    def __init__(self, handle: str, message: Optional[str] = None):
        self.handle = handle
        super().__init__(message or f"Import session '{handle}' not found or expired. Please upload again.")


# Mapping errors (execute time, before any write) --------------------------

class MappingValidationError(ImportPipelineError):
    """Base class for mapping problems the operator can fix and retry."""


class MissingRequiredFieldError(MappingValidationError):
    code = "missing_required_field"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Equipment {field_name} field must be mapped")


class DuplicateFieldMappingError(MappingValidationError):
    code = "duplicate_field_mapping"

    def __init__(self, field_name: str, headers: Iterable[str]):
        self.field_name = field_name
        self.headers = list(headers)
        joined = ", ".join(f"'{h}'" for h in self.headers)
        super().__init__(f"Field '{field_name}' is mapped from more than one column: {joined}")


class UnknownColumnError(MappingValidationError):
    code = "unknown_column"

    def __init__(self, headers: Iterable[str]):
        self.headers = list(headers)
        joined = ", ".join(f"'{h}'" for h in self.headers)
        super().__init__(f"Mapping references columns not present in the upload: {joined}")


class UnknownFieldError(MappingValidationError):
    code = "unknown_field"

    def __init__(self, header: str, target: str):
        self.header = header
        self.target = target
        super().__init__(f"Column '{header}' is mapped to unknown field '{target}'")


# Schema errors -------------------------------------------------------------

class SchemaEvolutionError(ImportPipelineError):
    """Raised when extensible attributes cannot be registered; nothing is imported."""

    code = "schema_evolution_failed"


# Row errors ----------------------------------------------------------------

class RowValidationError(ValueError):
    """A single row failed validation; recorded in the result, batch continues."""
