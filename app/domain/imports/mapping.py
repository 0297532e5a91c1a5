"""
Column mapping rules for equipment imports.

A mapping assigns each source header either a catalog field, the
``__new__`` sentinel (store the column as an extensible attribute), or
nothing (``__skip__`` / null / absent: ignore the column).
"""
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from app.db.equipment import EQUIPMENT_FIELDS, REQUIRED_FIELDS
from app.domain.imports.errors import (
    DuplicateFieldMappingError,
    MappingValidationError,
    MissingRequiredFieldError,
    UnknownColumnError,
    UnknownFieldError,
)

NEW_ATTRIBUTE = "__new__"
SKIP_COLUMN = "__skip__"

CONFIDENCE_LEVELS = ("high", "medium", "low", "none")


def default_mapping(headers: Sequence[str]) -> Dict[str, str]:
    """Mapping used when no advisor suggestion is available."""
    return {header: NEW_ATTRIBUTE for header in headers}


def normalize_target(target: Any) -> Optional[str]:
    """Return the effective target, or None when the column is ignored."""
    if target is None:
        return None
    target = str(target).strip()
    if not target or target == SKIP_COLUMN:
        return None
    return target


def normalize_confidence(value: Any) -> str:
    """Clamp an advisor confidence label to high/medium/low."""
    label = str(value or "").strip().lower()
    if label in ("high", "medium", "low"):
        return label
    return "medium"


def _check_unknown_columns(headers: Sequence[str], mapping: Mapping[str, Any]) -> Optional[MappingValidationError]:
    known = set(headers)
    unknown = [
        header for header, target in mapping.items()
        if header not in known and normalize_target(target) is not None
    ]
    return UnknownColumnError(unknown) if unknown else None


def _check_unknown_fields(
    active: Mapping[str, str], catalog: Mapping[str, str]
) -> List[MappingValidationError]:
    return [
        UnknownFieldError(header, target)
        for header, target in active.items()
        if target != NEW_ATTRIBUTE and target not in catalog
    ]


def _check_required(active: Mapping[str, str], required: Sequence[str]) -> List[MappingValidationError]:
    targets = set(active.values())
    return [MissingRequiredFieldError(field) for field in required if field not in targets]


def _check_duplicates(active: Mapping[str, str]) -> List[MappingValidationError]:
    by_field: Dict[str, List[str]] = {}
    for header, target in active.items():
        if target == NEW_ATTRIBUTE:
            continue
        by_field.setdefault(target, []).append(header)
    return [
        DuplicateFieldMappingError(field, headers)
        for field, headers in by_field.items()
        if len(headers) > 1
    ]


def active_mapping(headers: Sequence[str], mapping: Mapping[str, Any]) -> Dict[str, str]:
    """Drop ignored columns, keeping session header order."""
    active: Dict[str, str] = {}
    for header in headers:
        target = normalize_target(mapping.get(header))
        if target is not None:
            active[header] = target
    return active


def mapping_issues(
    headers: Sequence[str],
    mapping: Mapping[str, Any],
    catalog: Mapping[str, str] = EQUIPMENT_FIELDS,
    required: Sequence[str] = REQUIRED_FIELDS,
) -> List[MappingValidationError]:
    """Return every problem with ``mapping`` (empty when it can be executed)."""
    issues: List[MappingValidationError] = []
    unknown_columns = _check_unknown_columns(headers, mapping)
    if unknown_columns:
        issues.append(unknown_columns)

    active = active_mapping(headers, mapping)
    issues.extend(_check_unknown_fields(active, catalog))
    issues.extend(_check_required(active, required))
    issues.extend(_check_duplicates(active))
    return issues


def validate_mapping(
    headers: Sequence[str],
    mapping: Mapping[str, Any],
    catalog: Mapping[str, str] = EQUIPMENT_FIELDS,
    required: Sequence[str] = REQUIRED_FIELDS,
) -> Dict[str, str]:
    """
    Validate an operator-confirmed mapping.

    Returns:
        The active mapping (ignored columns removed)

    Raises:
        MappingValidationError: The first problem found
    """
    issues = mapping_issues(headers, mapping, catalog, required)
    if issues:
        raise issues[0]
    return active_mapping(headers, mapping)


def sanitize_suggestion(
    headers: Sequence[str],
    suggested: Mapping[str, Any],
    catalog: Mapping[str, str] = EQUIPMENT_FIELDS,
) -> Dict[str, str]:
    """
    Turn an untrusted advisor mapping into a complete, valid-shaped default.

    Headers the advisor did not mention, targets outside the catalog, and
    second claims on an already-used field all fall back to ``__new__``.
    """
    mapping = default_mapping(headers)
    claimed = set()
    for header in headers:
        target = suggested.get(header)
        if isinstance(target, str) and target in catalog and target not in claimed:
            mapping[header] = target
            claimed.add(target)
    return mapping


def build_candidate(
    row: Mapping[str, str], active: Mapping[str, str]
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Apply an active mapping to one row.

    Returns:
        Tuple of (catalog field values, {header: value} for non-blank new-attribute cells)
    """
    fields: Dict[str, str] = {}
    attributes: Dict[str, str] = {}
    for header, target in active.items():
        value = (row.get(header) or "").strip()
        if target == NEW_ATTRIBUTE:
            if value:
                attributes[header] = value
        else:
            fields[target] = value
    return fields, attributes
