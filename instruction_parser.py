"""Deterministic parser for plain-text edit instructions.

Two forms are understood, matched case-insensitively in this order::

    set <field> = <value> where <field2> = <value2>
    set <field> = <value>

The parser only proposes changes; nothing is written back to the rows.
"""
import json
import math
import re
from typing import Any, Iterable, List, Optional, Sequence

from models import EditChange, Row

CONDITIONAL_PATTERN = re.compile(
    r"^set\s+(\w+)\s*=\s*(\S+)\s+where\s+(\w+)\s*=\s*(\S+)$", re.IGNORECASE
)
UNCONDITIONAL_PATTERN = re.compile(r"^set\s+(\w+)\s*=\s*(\S+)$", re.IGNORECASE)


def cell_text(value: Any) -> str:
    """Render a cell the way it reads in the grid (5.0 -> "5", True -> "true")."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    return str(value)


def compute_new_value(current: Any, replacement: str) -> str:
    if isinstance(current, str):
        stripped = current.strip()
        # JSON object: same value for every key
        if stripped.startswith("{") and stripped.endswith("}"):
            try:
                obj = json.loads(stripped)
            except ValueError:
                obj = None
            if isinstance(obj, dict):
                return json.dumps({key: replacement for key in obj}, separators=(",", ":"))
            return replacement
        # Comma-separated list: append
        if "," in current:
            return current + "," + replacement
    return replacement


def _propose(rows: Sequence[Row], field: str, replacement: str, where: Optional[tuple] = None) -> List[EditChange]:
    changes = []
    for row_index, row in enumerate(rows):
        if where is not None:
            where_field, where_value = where
            if cell_text(row.get(where_field)).lower() != where_value:
                continue
        current = row.get(field)
        changes.append(EditChange(row_index, field, current, compute_new_value(current, replacement)))
    return changes


def parse_edit(instruction: str, rows: Iterable[Row]) -> List[EditChange]:
    """Proposed changes for ``instruction``; ``[]`` means it did not parse or matched nothing."""
    if not isinstance(instruction, str):
        return []
    rows = list(rows or [])
    text = instruction.strip()

    match = CONDITIONAL_PATTERN.match(text)
    if match:
        field, replacement, where_field, where_value = match.groups()
        return _propose(rows, field, replacement, where=(where_field, where_value.lower()))

    match = UNCONDITIONAL_PATTERN.match(text)
    if match:
        field, replacement = match.groups()
        return _propose(rows, field, replacement)

    return []


def apply_changes(rows: Sequence[Row], changes: Iterable[EditChange]) -> List[Row]:
    """Copy-on-write batch application; insertion order, last write wins.

    Changes pointing past the end of ``rows`` are skipped.
    """
    updated = [dict(row) for row in rows]
    for change in changes:
        if 0 <= change.row_index < len(updated):
            updated[change.row_index][change.field] = change.new_value
    return updated
