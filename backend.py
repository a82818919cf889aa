import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ai_gateway import AIGateway, EditResult, FilterResult, RuleSuggestion, apply_filter
from data_io import build_export_files, export_all
from debounce import Debouncer
from errors import (
    ConfigurationError,
    InputError,
    InstructionParseError,
    NoStagedChangesError,
    RuleConfigError,
    StaleChangesError,
)
from instruction_parser import apply_changes as apply_change_batch, parse_edit
from models import (
    CLIENTS,
    ENTITY_TYPES,
    TASKS,
    WORKERS,
    AIValidationWarning,
    EditChange,
    Row,
    ValidationError,
    check_entity_type,
)
from rules import (
    PrioritizationConfig,
    Rule,
    RuleStore,
    build_rule,
    find_dangling_references,
    parse_rule_text,
    rule_from_dict,
)
from validators import rows_with_errors, validate_data

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dataset:
    """One immutable snapshot of a dataset and the errors computed for it."""

    rows: tuple = ()
    errors: tuple = ()
    version: int = 0

    def to_dict(self):
        return {
            "rows": [dict(row) for row in self.rows],
            "errors": [error.to_dict() for error in self.errors],
            "version": self.version,
        }


@dataclass
class StagedChanges:
    entity_type: str
    version: int
    changes: List[EditChange]
    description: str = ""
    source: str = "instruction"

    def to_dict(self):
        return {
            "entityType": self.entity_type,
            "version": self.version,
            "changes": [change.to_dict() for change in self.changes],
            "description": self.description,
            "source": self.source,
        }


@dataclass
class FixSuggestions:
    """AI fixes together with the dataset version they were computed against."""

    entity_type: str
    version: int
    fixes: List[EditChange] = field(default_factory=list)

    def to_dict(self):
        return {
            "entityType": self.entity_type,
            "version": self.version,
            "fixes": [fix.to_dict() for fix in self.fixes],
        }


@dataclass
class AIValidationOutcome:
    warnings: List[AIValidationWarning] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self):
        data = {"warnings": [warning.to_dict() for warning in self.warnings]}
        if self.error is not None:
            data["error"] = self.error
        return data


class DataManager:
    """Session state: the three datasets, their errors, the rules and the weights.

    Every dataset mutation goes through ``_commit``, which re-runs the
    validator before the new snapshot becomes visible.
    """

    def __init__(self, gateway: Optional[AIGateway] = None, ai_unavailable_reason: Optional[str] = None,
                 auto_ai_validation: bool = False, ai_validation_delay: float = 2.0):
        self.gateway = gateway
        self.ai_unavailable_reason = ai_unavailable_reason
        self.datasets: Dict[str, Dataset] = {entity_type: Dataset() for entity_type in ENTITY_TYPES}
        self.rules = RuleStore()
        self.prioritization = PrioritizationConfig()
        self.staged: Dict[str, StagedChanges] = {}
        self.ai_warnings: Dict[str, AIValidationOutcome] = {}
        self.auto_ai_validation = auto_ai_validation
        self.ai_validation_debouncer = Debouncer(ai_validation_delay, self._debounced_ai_validation)

    # --------- Read access ---------

    def rows(self, entity_type: str) -> List[Row]:
        return [dict(row) for row in self.datasets[check_entity_type(entity_type)].rows]

    def errors(self, entity_type: str) -> List[ValidationError]:
        return list(self.datasets[check_entity_type(entity_type)].errors)

    def version(self, entity_type: str) -> int:
        return self.datasets[check_entity_type(entity_type)].version

    @property
    def clients(self) -> List[Row]:
        return self.rows(CLIENTS)

    @property
    def workers(self) -> List[Row]:
        return self.rows(WORKERS)

    @property
    def tasks(self) -> List[Row]:
        return self.rows(TASKS)

    def summary(self) -> Dict[str, Any]:
        data = {}
        for entity_type, dataset in self.datasets.items():
            data[entity_type] = {
                "rows": len(dataset.rows),
                "errors": len(dataset.errors),
                "errorRows": rows_with_errors(dataset.errors),
                "version": dataset.version,
            }
        data["rules"] = len(self.rules)
        return data

    # --------- Mutations ---------

    def _commit(self, entity_type: str, rows: Sequence[Row]) -> Dataset:
        entity_type = check_entity_type(entity_type)
        snapshot_rows = tuple(dict(row) for row in rows)
        result = validate_data(entity_type, snapshot_rows)
        previous = self.datasets[entity_type]
        dataset = Dataset(rows=snapshot_rows, errors=tuple(result.errors), version=previous.version + 1)
        self.datasets[entity_type] = dataset
        logger.info("%s now at version %d: %d rows, %d validation errors",
                    entity_type, dataset.version, len(dataset.rows), len(dataset.errors))
        if self.auto_ai_validation and self.gateway is not None:
            self.schedule_ai_validation()
        return dataset

    def load_rows(self, entity_type: str, rows: Iterable[Row]) -> Dataset:
        """Upload: replaces the dataset of that kind and discards anything staged for it."""
        rows = list(rows)
        if any(not isinstance(row, dict) for row in rows):
            raise InputError("Every row must be an object")
        self.staged.pop(entity_type, None)
        self.ai_warnings.pop(entity_type, None)
        return self._commit(entity_type, rows)

    def update_cell(self, entity_type: str, row_index: int, field_name: str, value: Any) -> Dataset:
        rows = self.datasets[check_entity_type(entity_type)].rows
        if isinstance(row_index, bool) or not isinstance(row_index, int) or not 0 <= row_index < len(rows):
            raise InputError(f"Row {row_index} does not exist in {entity_type}")
        if not field_name:
            raise InputError("field is required")
        change = EditChange(row_index, field_name, rows[row_index].get(field_name), value)
        return self._commit(entity_type, apply_change_batch(rows, [change]))

    def apply_changes(self, entity_type: str, changes: Iterable[EditChange]) -> Dataset:
        rows = self.datasets[check_entity_type(entity_type)].rows
        return self._commit(entity_type, apply_change_batch(rows, list(changes)))

    def apply_fixes(self, entity_type: str, fixes: Iterable[EditChange], version: int) -> Dataset:
        """Apply fixes only to the snapshot they were suggested for."""
        current = self.version(entity_type)
        if version != current:
            raise StaleChangesError(entity_type, version, current)
        return self.apply_changes(entity_type, fixes)

    # --------- Staged edits ---------

    def _stage(self, entity_type: str, version: int, changes: List[EditChange],
               description: str, source: str) -> StagedChanges:
        staged = StagedChanges(entity_type, version, changes, description, source)
        self.staged[entity_type] = staged
        return staged

    def propose_edit(self, entity_type: str, instruction: str) -> StagedChanges:
        dataset = self.datasets[check_entity_type(entity_type)]
        changes = parse_edit(instruction, dataset.rows)
        if not changes:
            raise InstructionParseError()
        return self._stage(entity_type, dataset.version, changes, instruction, "instruction")

    def apply_staged(self, entity_type: str) -> Dataset:
        staged = self.staged.pop(check_entity_type(entity_type), None)
        if staged is None:
            raise NoStagedChangesError(entity_type)
        current = self.datasets[entity_type].version
        if staged.version != current:
            raise StaleChangesError(entity_type, staged.version, current)
        return self.apply_changes(entity_type, staged.changes)

    def cancel_staged(self, entity_type: str) -> bool:
        return self.staged.pop(check_entity_type(entity_type), None) is not None

    # --------- Rules & prioritization ---------

    def add_rule(self, data: Dict[str, Any]) -> Rule:
        return self.rules.add(rule_from_dict(data))

    def update_rule(self, rule_id: str, data: Dict[str, Any]) -> Rule:
        if self.rules.get(rule_id) is None:
            raise KeyError(rule_id)
        rule = build_rule(data.get("type"), data.get("name"), data.get("config"), rule_id=rule_id)
        return self.rules.replace(rule_id, rule)

    def delete_rule(self, rule_id: str) -> bool:
        return self.rules.delete(rule_id)

    def add_rule_from_text(self, text: str) -> Rule:
        return self.rules.add(parse_rule_text(text))

    def accept_suggestion(self, suggestion: Dict[str, Any]) -> Rule:
        """Turn an AI suggestion (or any {type, name, config}) into a stored rule."""
        if not isinstance(suggestion, dict):
            raise RuleConfigError("A suggestion must be a JSON object")
        return self.rules.add(build_rule(suggestion.get("type"), suggestion.get("name"), suggestion.get("config")))

    def dangling_references(self) -> List[Dict[str, Any]]:
        return find_dangling_references(self.rules, self.clients, self.workers, self.tasks)

    def set_priorities(self, weights: Dict[str, Any]) -> PrioritizationConfig:
        return self.prioritization.set_weights(weights)

    def apply_preset(self, preset_key: str) -> PrioritizationConfig:
        return self.prioritization.apply_preset(preset_key)

    # --------- Export ---------

    def export_bundle(self) -> Dict[str, Any]:
        return self.rules.export_bundle(self.prioritization)

    def _export_datasets(self) -> Dict[str, List[Row]]:
        return {entity_type: self.rows(entity_type) for entity_type in ENTITY_TYPES}

    def export_files(self) -> List[Dict[str, Any]]:
        return build_export_files(self._export_datasets(), self.export_bundle())

    def export_all(self, output_dir: str = "exports") -> List[str]:
        return export_all(self._export_datasets(), self.export_bundle(), output_dir)

    # --------- AI-assisted operations ---------

    def _require_gateway(self) -> AIGateway:
        if self.gateway is None:
            raise ConfigurationError(self.ai_unavailable_reason or "AI features are not configured")
        return self.gateway

    async def search(self, entity_type: str, query: str) -> Dict[str, Any]:
        gateway = self._require_gateway()
        rows = self.rows(entity_type)
        result: FilterResult = await gateway.generate_filter(query, rows, entity_type)
        matched = apply_filter(result.filter_function, rows)
        logger.info("Filter %r matched %d of %d %s", result.filter_function, len(matched), len(rows), entity_type)
        return {"filter": result.to_dict(), "rows": matched}

    async def suggest_edit(self, entity_type: str, query: str) -> StagedChanges:
        gateway = self._require_gateway()
        dataset = self.datasets[check_entity_type(entity_type)]
        result: EditResult = await gateway.generate_edit(query, [dict(row) for row in dataset.rows], entity_type)
        # Staged against the snapshot the prompt was built from
        return self._stage(entity_type, dataset.version, result.changes, result.description, "ai")

    async def suggest_fixes(self, entity_type: str) -> FixSuggestions:
        gateway = self._require_gateway()
        dataset = self.datasets[check_entity_type(entity_type)]
        if not dataset.errors:
            return FixSuggestions(entity_type, dataset.version)
        fixes = await gateway.generate_validation_fixes(list(dataset.errors), [dict(row) for row in dataset.rows])
        return FixSuggestions(entity_type, dataset.version, fixes)

    async def suggest_rules(self) -> List[RuleSuggestion]:
        gateway = self._require_gateway()
        if not (self.clients or self.workers or self.tasks):
            raise InputError("Please upload some data first to generate rule suggestions")
        return await gateway.generate_rule_suggestions(self.clients, self.workers, self.tasks)

    async def generate_rule_from_natural_language(self, text: str) -> RuleSuggestion:
        gateway = self._require_gateway()
        if not text or not text.strip():
            raise InputError("Missing required fields: text")
        return await gateway.generate_rule(text, self.clients, self.workers, self.tasks)

    async def run_ai_validation(self, entity_types: Optional[Iterable[str]] = None) -> Dict[str, AIValidationOutcome]:
        """Fan out one warning request per non-empty dataset; failures stay per kind."""
        gateway = self._require_gateway()
        requested = [check_entity_type(e) for e in (entity_types or ENTITY_TYPES)]
        targets = [e for e in requested if self.datasets[e].rows]
        results = await asyncio.gather(
            *(gateway.generate_ai_validation_warnings(self.rows(e), e) for e in targets),
            return_exceptions=True,
        )

        outcomes = {}
        for entity_type, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("AI validation failed for %s: %s", entity_type, result)
                message = getattr(result, "message", None) or "Failed to generate AI validation warnings"
                outcomes[entity_type] = AIValidationOutcome(error=message)
            else:
                outcomes[entity_type] = AIValidationOutcome(warnings=result)
        self.ai_warnings.update(outcomes)
        return outcomes

    def schedule_ai_validation(self):
        try:
            self.ai_validation_debouncer.trigger()
        except RuntimeError:
            # No running loop (synchronous caller): nothing to schedule on
            logger.debug("AI validation not scheduled: no running event loop")

    async def _debounced_ai_validation(self):
        if any(dataset.rows for dataset in self.datasets.values()):
            await self.run_ai_validation()
