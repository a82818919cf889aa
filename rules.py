"""Scheduling rules and prioritization weights collected for a downstream scheduler.

Rules point at tasks, worker groups and client groups by value only. When the
referenced rows go away the rule stays; ``find_dangling_references`` reports
such references without touching the store.
"""
import copy
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from errors import InputError, RuleConfigError, RuleParseError
from models import Row

CO_RUN = "co-run"
SLOT_RESTRICTION = "slot-restriction"
LOAD_LIMIT = "load-limit"
PHASE_WINDOW = "phase-window"
RULE_TYPES = (CO_RUN, SLOT_RESTRICTION, LOAD_LIMIT, PHASE_WINDOW)


def new_rule_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Rule:
    id: str
    type: str
    name: str
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        return {"id": self.id, "type": self.type, "name": self.name, "config": copy.deepcopy(self.config)}


# --------- Config normalization ---------

def _positive_int(config: Dict[str, Any], key: str) -> int:
    value = config.get(key)
    try:
        if isinstance(value, bool):
            raise ValueError(value)
        number = float(value)
        if not number.is_integer():
            raise ValueError(value)
        number = int(number)
    except (TypeError, ValueError):
        raise RuleConfigError(f"{key} must be a whole number, got {value!r}")
    if number < 1:
        raise RuleConfigError(f"{key} must be at least 1")
    return number


def _text(config: Dict[str, Any], key: str) -> str:
    value = config.get(key)
    if value is None or not str(value).strip():
        raise RuleConfigError(f"{key} is required")
    return str(value).strip()


def _text_list(config: Dict[str, Any], key: str) -> List[str]:
    value = config.get(key, [])
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise RuleConfigError(f"{key} must be a list")
    return [str(item).strip() for item in value if str(item).strip()]


def normalize_config(rule_type: str, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    config = config or {}
    if rule_type == CO_RUN:
        # Two or more tasks are expected but not enforced
        return {"taskIds": _text_list(config, "taskIds")}
    if rule_type == SLOT_RESTRICTION:
        group_type = _text(config, "groupType").lower()
        if group_type not in ("client", "worker"):
            raise RuleConfigError(f"groupType must be 'client' or 'worker', got {group_type!r}")
        return {
            "groupType": group_type,
            "groupName": _text(config, "groupName"),
            "minCommonSlots": _positive_int(config, "minCommonSlots"),
        }
    if rule_type == LOAD_LIMIT:
        return {
            "workerGroup": _text(config, "workerGroup"),
            "maxSlotsPerPhase": _positive_int(config, "maxSlotsPerPhase"),
        }
    if rule_type == PHASE_WINDOW:
        phases = _text_list(config, "allowedPhases")
        for phase in phases:
            if not phase.isdigit() or int(phase) < 1:
                raise RuleConfigError(f"allowedPhases must be positive integers, got {phase!r}")
        return {"taskId": _text(config, "taskId"), "allowedPhases": phases}
    raise RuleConfigError(f"Unknown rule type: {rule_type!r}")


def build_rule(rule_type: str, name: str, config: Optional[Dict[str, Any]] = None,
               rule_id: Optional[str] = None) -> Rule:
    if rule_type not in RULE_TYPES:
        raise RuleConfigError(f"Unknown rule type: {rule_type!r}")
    if not name or not str(name).strip():
        raise RuleConfigError("Rule name is required")
    return Rule(
        id=rule_id or new_rule_id(),
        type=rule_type,
        name=str(name).strip(),
        config=normalize_config(rule_type, config),
    )


def rule_from_dict(data: Dict[str, Any]) -> Rule:
    if not isinstance(data, dict):
        raise RuleConfigError("A rule must be a JSON object")
    return build_rule(data.get("type"), data.get("name"), data.get("config"), rule_id=data.get("id"))


# --------- Prioritization ---------

PRESETS = {
    "maximize-fulfillment": {
        "name": "Maximize Fulfillment",
        "description": "Prioritize completing as many requested tasks as possible",
        "values": {"priorityLevel": 8, "requestedTaskFulfillment": 9, "fairness": 3},
    },
    "fair-distribution": {
        "name": "Fair Distribution",
        "description": "Balance workload evenly across workers",
        "values": {"priorityLevel": 5, "requestedTaskFulfillment": 5, "fairness": 9},
    },
    "minimize-workload": {
        "name": "Minimize Workload",
        "description": "Reduce overall worker load while maintaining quality",
        "values": {"priorityLevel": 3, "requestedTaskFulfillment": 4, "fairness": 7},
    },
    "custom": {
        "name": "Custom",
        "description": "Manually adjust prioritization factors",
        "values": {"priorityLevel": 5, "requestedTaskFulfillment": 5, "fairness": 5},
    },
}

WEIGHT_KEYS = ("priorityLevel", "requestedTaskFulfillment", "fairness")


@dataclass
class PrioritizationConfig:
    priority_level: int = 5
    requested_task_fulfillment: int = 5
    fairness: int = 5
    preset: str = "custom"

    _ATTRS = {
        "priorityLevel": "priority_level",
        "requestedTaskFulfillment": "requested_task_fulfillment",
        "fairness": "fairness",
    }

    def to_dict(self):
        return {
            "priorityLevel": self.priority_level,
            "requestedTaskFulfillment": self.requested_task_fulfillment,
            "fairness": self.fairness,
            "preset": self.preset,
        }

    def set_weights(self, weights: Dict[str, Any]) -> "PrioritizationConfig":
        """Hand-adjusted sliders: the preset becomes "custom"."""
        unknown = set(weights) - set(WEIGHT_KEYS)
        if unknown:
            raise InputError(f"Unknown prioritization weights: {', '.join(sorted(unknown))}")
        values = {key: _weight(key, value) for key, value in weights.items()}
        for key, value in values.items():
            setattr(self, self._ATTRS[key], value)
        self.preset = "custom"
        return self

    def apply_preset(self, preset_key: str) -> "PrioritizationConfig":
        if preset_key not in PRESETS:
            raise InputError(f"Unknown preset: {preset_key!r}")
        for key, value in PRESETS[preset_key]["values"].items():
            setattr(self, self._ATTRS[key], value)
        self.preset = preset_key
        return self


def _weight(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or float(value) != int(value):
        raise InputError(f"{key} must be a whole number between 0 and 10")
    value = int(value)
    if value < 0 or value > 10:
        raise InputError(f"{key} must be a whole number between 0 and 10")
    return value


# --------- Rule Store ---------

class RuleStore:
    def __init__(self):
        self._rules: List[Rule] = []

    def __len__(self):
        return len(self._rules)

    def __iter__(self):
        return iter(list(self._rules))

    def list(self) -> List[Rule]:
        return list(self._rules)

    def get(self, rule_id: str) -> Optional[Rule]:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None

    def add(self, rule: Rule) -> Rule:
        """Append, or replace in place when a rule with the same id exists."""
        for index, existing in enumerate(self._rules):
            if existing.id == rule.id:
                self._rules[index] = rule
                return rule
        self._rules.append(rule)
        return rule

    def replace(self, rule_id: str, rule: Rule) -> Rule:
        for index, existing in enumerate(self._rules):
            if existing.id == rule_id:
                rule.id = rule_id
                self._rules[index] = rule
                return rule
        raise KeyError(rule_id)

    def delete(self, rule_id: str) -> bool:
        remaining = [rule for rule in self._rules if rule.id != rule_id]
        deleted = len(remaining) != len(self._rules)
        self._rules = remaining
        return deleted

    def clear(self):
        self._rules = []

    def export_bundle(self, prioritization: PrioritizationConfig,
                      generated_at: Optional[datetime] = None) -> Dict[str, Any]:
        generated_at = generated_at or datetime.now(timezone.utc)
        return {
            "rules": [rule.to_dict() for rule in self._rules],
            "prioritization": prioritization.to_dict(),
            "generatedAt": generated_at.isoformat(),
        }


# --------- Natural-language rules ---------

CO_RUN_TASKS = re.compile(r"tasks?\s+([A-Z0-9]+(?:\s*(?:,|and)\s*[A-Z0-9]+)*)", re.IGNORECASE)
LIMIT_GROUP = re.compile(r"(?:group|workers?)\s+([A-Z0-9]+)", re.IGNORECASE)
SLOT_COUNT = re.compile(r"(\d+)\s+slots?", re.IGNORECASE)
WINDOW_TASK = re.compile(r"task\s+([A-Z0-9]+)", re.IGNORECASE)
WINDOW_PHASES = re.compile(r"phases?\s+([0-9,\s]+)", re.IGNORECASE)


def parse_rule_text(text: str) -> Rule:
    """Deterministic rule parsing for a few fixed phrasings.

    >>> parse_rule_text("Tasks T1 and T2 must run together").config
    {'taskIds': ['T1', 'T2']}
    """
    if not isinstance(text, str) or not text.strip():
        raise RuleParseError()
    lower_text = text.lower()

    if "run together" in lower_text or "co-run" in lower_text:
        match = CO_RUN_TASKS.search(text)
        if match:
            task_ids = [part for part in re.split(r"\s*(?:,|\band\b)\s*", match.group(1), flags=re.IGNORECASE) if part]
            return build_rule(CO_RUN, f"Co-run {' and '.join(task_ids)}", {"taskIds": task_ids})

    if "limit" in lower_text and "slot" in lower_text:
        group_match = LIMIT_GROUP.search(text)
        slot_match = SLOT_COUNT.search(text)
        if group_match and slot_match:
            group, slots = group_match.group(1), int(slot_match.group(1))
            return build_rule(
                LOAD_LIMIT,
                f"Limit {group} to {slots} slots",
                {"workerGroup": group, "maxSlotsPerPhase": slots},
            )

    if "phase" in lower_text and "window" in lower_text:
        task_match = WINDOW_TASK.search(text)
        phase_match = WINDOW_PHASES.search(text)
        if task_match and phase_match:
            phases = re.findall(r"\d+", phase_match.group(1))
            if phases:
                return build_rule(
                    PHASE_WINDOW,
                    f"Phase window for {task_match.group(1)}",
                    {"taskId": task_match.group(1), "allowedPhases": phases},
                )

    raise RuleParseError()


# --------- Dangling references ---------

def _values(rows: Iterable[Row], key: str) -> set:
    return {str(row.get(key)).strip() for row in rows if row.get(key) not in (None, "")}


def find_dangling_references(rules: Iterable[Rule], clients: Iterable[Row], workers: Iterable[Row],
                             tasks: Iterable[Row]) -> List[Dict[str, Any]]:
    """References in ``rules`` that no longer resolve against the current data."""
    clients, workers, tasks = list(clients), list(workers), list(tasks)
    task_ids = _values(tasks, "TaskID")
    worker_groups = _values(workers, "WorkerGroup")
    client_groups = _values(clients, "GroupTag")

    dangling = []

    def report(rule: Rule, field_name: str, value: str):
        dangling.append({"ruleId": rule.id, "ruleName": rule.name, "field": field_name, "value": value})

    for rule in rules:
        config = rule.config
        if rule.type == CO_RUN:
            for task_id in config.get("taskIds", []):
                if task_id not in task_ids:
                    report(rule, "taskIds", task_id)
        elif rule.type == PHASE_WINDOW:
            if config.get("taskId") not in task_ids:
                report(rule, "taskId", config.get("taskId"))
        elif rule.type == LOAD_LIMIT:
            if config.get("workerGroup") not in worker_groups:
                report(rule, "workerGroup", config.get("workerGroup"))
        elif rule.type == SLOT_RESTRICTION:
            groups = client_groups if config.get("groupType") == "client" else worker_groups
            if config.get("groupName") not in groups:
                report(rule, "groupName", config.get("groupName"))
    return dangling
