"""Field-level validation of uploaded datasets.

``validate_data`` is pure and total: whatever it is handed, it returns a
``ValidationResult`` and never raises. Errors are recomputed from scratch on
every call.
"""
import json
import math
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, List, Optional

from models import (
    CLIENTS,
    TASKS,
    WORKERS,
    Row,
    ValidationError,
    ValidationResult,
    get_id_field,
)

# Per-entity column vocabulary, also used by the AI gateway to map
# normalized field names back to their canonical spelling.
ENTITY_COLUMNS: Dict[str, List[str]] = {
    CLIENTS: [
        "ClientID", "ClientName", "PriorityLevel",
        "RequestedTaskIDs", "GroupTag", "AttributesJSON",
    ],
    WORKERS: [
        "WorkerID", "WorkerName", "Skills",
        "AvailableSlots", "MaxLoadPerPhase",
        "WorkerGroup", "QualificationLevel",
    ],
    TASKS: [
        "TaskID", "TaskName", "Category",
        "Duration", "RequiredSkills",
        "PreferredPhases", "MaxConcurrent",
    ],
}

PHASE_RANGE_PATTERN = re.compile(r"\d+\s*-\s*\d+", re.ASCII)


def _reject_constant(name: str):
    raise ValueError(f"Non-standard JSON constant: {name}")


def _parse_json(value: Any) -> Any:
    """Parse a JSON cell. Already-decoded containers and numbers pass through."""
    if isinstance(value, str):
        return json.loads(value, parse_constant=_reject_constant)
    if isinstance(value, (dict, list, bool, int, float)):
        return value
    raise ValueError(f"Not JSON text: {value!r}")


def _to_number(value: Any) -> Optional[float]:
    """Numeric reading of a cell, or None when it is not a finite number."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def _is_missing_id(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _identity_key(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return (type(value).__name__, value)


# --------- Field rules ---------
# Each rule returns an error message, or None when the value passes.

def _integer_in_range(label: str, low: int, high: int) -> Callable[[Any], Optional[str]]:
    def check(value: Any) -> Optional[str]:
        number = _to_number(value)
        if number is None or not number.is_integer() or number < low or number > high:
            return f"{label} must be a number between {low} and {high}"
        return None
    return check


def _at_least_one(message: str) -> Callable[[Any], Optional[str]]:
    def check(value: Any) -> Optional[str]:
        number = _to_number(value)
        if number is None or number < 1:
            return message
        return None
    return check


def _check_task_id_list(value: Any) -> Optional[str]:
    task_ids = [part.strip() for part in str(value).split(",")]
    if not task_ids or any(task_id == "" for task_id in task_ids):
        return "RequestedTaskIDs must contain valid task IDs separated by commas"
    return None


def _check_json(value: Any) -> Optional[str]:
    try:
        _parse_json(value)
    except ValueError:
        return "AttributesJSON must be valid JSON"
    return None


def _check_slots(value: Any) -> Optional[str]:
    try:
        slots = _parse_json(value)
    except ValueError:
        return "AvailableSlots must be valid JSON"
    if not isinstance(slots, list):
        return "AvailableSlots must be a valid JSON array"
    return None


def _check_phase_range(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not PHASE_RANGE_PATTERN.fullmatch(value):
        return 'PreferredPhases must be in format "start - end" (e.g., "1 - 2")'
    return None


FIELD_RULES: Dict[str, Dict[str, Callable[[Any], Optional[str]]]] = {
    CLIENTS: {
        "PriorityLevel": _integer_in_range("PriorityLevel", 1, 5),
        "RequestedTaskIDs": _check_task_id_list,
        "AttributesJSON": _check_json,
    },
    WORKERS: {
        "AvailableSlots": _check_slots,
        "MaxLoadPerPhase": _at_least_one("MaxLoadPerPhase must be a positive number"),
        "QualificationLevel": _integer_in_range("QualificationLevel", 1, 5),
    },
    TASKS: {
        "Duration": _at_least_one("Duration must be a number greater than or equal to 1"),
        "MaxConcurrent": _at_least_one("MaxConcurrent must be a positive number"),
        "PreferredPhases": _check_phase_range,
    },
}


def validate_row_fields(entity_type: str, row: Row, row_index: int) -> List[ValidationError]:
    """Entity-specific checks for one row. Absent or empty fields are skipped."""
    errors = []
    for field_name, rule in FIELD_RULES.get(entity_type, {}).items():
        value = row.get(field_name)
        if _is_blank(value):
            continue
        message = rule(value)
        if message:
            errors.append(ValidationError(row_index, field_name, message))
    return errors


def validate_data(entity_type: str, data: Optional[Iterable[Any]]) -> ValidationResult:
    if not data:
        return ValidationResult(valid=True, errors=[])

    errors: List[ValidationError] = []
    id_field = get_id_field(entity_type)
    seen_ids = set()

    for row_index, row in enumerate(data):
        if not isinstance(row, Mapping):
            row = {}

        # a. Missing / duplicate identifiers, first occurrence wins
        row_id = row.get(id_field)
        if _is_missing_id(row_id):
            errors.append(ValidationError(row_index, id_field, f"Missing {id_field}"))
        else:
            key = _identity_key(row_id)
            if key in seen_ids:
                errors.append(ValidationError(row_index, id_field, f"Duplicate {id_field}: {row_id}"))
            else:
                seen_ids.add(key)

        # b. Entity-specific field rules
        errors.extend(validate_row_fields(entity_type, row, row_index))

    return ValidationResult(valid=not errors, errors=errors)


def rows_with_errors(errors: Iterable[ValidationError]) -> int:
    """Number of distinct rows carrying at least one error."""
    return len({error.row_index for error in errors})
