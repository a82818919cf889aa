"""Record types shared by the validator, the parsers, the gateway and the session.

Rows themselves stay plain ``Dict[str, Any]`` mappings: the column set is open,
and only the fields the validator checks have a documented meaning.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import UnknownEntityError

Row = Dict[str, Any]

CLIENTS = "clients"
WORKERS = "workers"
TASKS = "tasks"
ENTITY_TYPES = (CLIENTS, WORKERS, TASKS)

ID_FIELDS = {
    CLIENTS: "ClientID",
    WORKERS: "WorkerID",
    TASKS: "TaskID",
}


def get_id_field(entity_type: str) -> str:
    return ID_FIELDS.get(entity_type, "ID")


def check_entity_type(entity_type: Any) -> str:
    if entity_type not in ENTITY_TYPES:
        raise UnknownEntityError(entity_type)
    return entity_type


# --------- Validation Error Record ---------
@dataclass
class ValidationError:
    row_index: int
    field: str
    message: str

    def to_dict(self):
        return {
            "rowIndex": self.row_index,
            "field": self.field,
            "message": self.message,
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: List[ValidationError] = field(default_factory=list)

    def to_dict(self):
        return {"valid": self.valid, "errors": [e.to_dict() for e in self.errors]}


@dataclass
class EditChange:
    """A proposed, not yet applied, cell mutation.

    Only meaningful against the dataset snapshot it was computed from.
    AI-suggested fixes carry a ``reasoning``.
    """

    row_index: int
    field: str
    old_value: Any
    new_value: Any
    reasoning: Optional[str] = None

    def to_dict(self):
        data = {
            "rowIndex": self.row_index,
            "field": self.field,
            "oldValue": self.old_value,
            "newValue": self.new_value,
        }
        if self.reasoning is not None:
            data["reasoning"] = self.reasoning
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EditChange":
        return cls(
            row_index=data["rowIndex"],
            field=data["field"],
            old_value=data.get("oldValue"),
            new_value=data.get("newValue"),
            reasoning=data.get("reasoning"),
        )


@dataclass
class AIValidationWarning:
    row_index: int
    field: str
    warning: str
    severity: str

    def to_dict(self):
        return {
            "rowIndex": self.row_index,
            "field": self.field,
            "warning": self.warning,
            "severity": self.severity,
        }
