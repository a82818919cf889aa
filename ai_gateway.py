"""
Contract layer between the application and the language model.

Every operation follows the same steps: build a prompt from a bounded sample
of rows plus the full column list, make exactly one provider call, strip code
fences from the reply, parse it as JSON and check it against a pydantic shape.
A reply that fails any step fails the whole operation; nothing is partially
accepted. Column names coming back from the model are mapped to the dataset's
canonical spelling before the result leaves this module.
"""
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from errors import (
    AIProviderError,
    AIResponseParseError,
    EmptyAIResponseError,
    FilterEvaluationError,
    GatewayError,
)
from models import AIValidationWarning, EditChange, Row, ValidationError
from predicate import PredicateError, compile_predicate
from rules import RULE_TYPES
from validators import ENTITY_COLUMNS

logger = logging.getLogger(__name__)

FILTER_SAMPLE_SIZE = 3
EDIT_SAMPLE_SIZE = 3
FIX_SAMPLE_SIZE = 3
RULE_SAMPLE_SIZE = 5
WARNING_SAMPLE_SIZE = 10

FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
PARAMETER_PATTERN = re.compile(r"^\s*\(?\s*([A-Za-z_$][\w$]*)\s*\)?\s*=>")
# String literals are matched first so nothing inside them is rewritten
PROPERTY_PATTERN = re.compile(
    r"""
    (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<dot>\b(?P<owner>[A-Za-z_$][\w$]*)\s*\??\.\s*)(?P<name>[A-Za-z_$][\w$]*)(?![\w$]|\s*\()
  | (?P<bracket>\b(?P<bracket_owner>[A-Za-z_$][\w$]*)\s*\[\s*(?P<quote>['"]))(?P<key>[^'"\\]*)(?P=quote)
    """,
    re.VERBOSE,
)


# --------- Response shapes ---------

class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class FilterResult(_Payload):
    entity_type: Optional[str] = Field(default=None, alias="entityType")
    filter_function: str = Field(alias="filterFunction", min_length=1)
    description: str = ""


class ChangePayload(_Payload):
    row_index: int = Field(alias="rowIndex", ge=0)
    field: str = Field(min_length=1)
    old_value: Any = Field(default=None, alias="oldValue")
    new_value: Any = Field(alias="newValue")
    reasoning: Optional[str] = None


class EditPayload(_Payload):
    entity_type: Optional[str] = Field(default=None, alias="entityType")
    changes: List[ChangePayload]
    description: str = ""


class EditResult:
    def __init__(self, entity_type: str, changes: List[EditChange], description: str = ""):
        self.entity_type = entity_type
        self.changes = changes
        self.description = description

    def to_dict(self):
        return {
            "entityType": self.entity_type,
            "changes": [change.to_dict() for change in self.changes],
            "description": self.description,
        }


class RuleSuggestion(_Payload):
    type: Literal["co-run", "slot-restriction", "load-limit", "phase-window"]
    name: str = Field(min_length=1)
    config: Dict[str, Any]
    reasoning: str = ""


class WarningPayload(_Payload):
    row_index: int = Field(alias="rowIndex", ge=0)
    field: str
    warning: str
    severity: Literal["low", "medium", "high"]


_CHANGES = TypeAdapter(List[ChangePayload])
_SUGGESTIONS = TypeAdapter(List[RuleSuggestion])
_WARNINGS = TypeAdapter(List[WarningPayload])


# --------- Text helpers ---------

def extract_json_block(text: str) -> str:
    return FENCE_PATTERN.sub("", text).strip()


def column_names(rows: Sequence[Row], entity_type: Optional[str] = None) -> List[str]:
    """Columns of the first row, followed by any known columns of the entity it lacks."""
    columns = list(rows[0].keys()) if rows else []
    for column in ENTITY_COLUMNS.get(entity_type, []):
        if column not in columns:
            columns.append(column)
    return columns


def map_field_name(name: str, columns: Iterable[str]) -> str:
    columns = list(columns)
    if name in columns:
        return name
    lowered = name.lower()
    for column in columns:
        if column.lower() == lowered:
            return column
    return name


def map_filter_function_to_original_columns(filter_function: str, columns: Iterable[str]) -> str:
    """Rewrite lower-cased property tokens (``row.duration``) to their column name.

    Only properties read directly off the filter's parameter are touched
    (``row.x``, ``row?.x``, ``row['x']``), never a method call and never text
    inside a string literal. The rest of the expression is left as is.
    """
    by_lower = {}
    for column in columns:
        by_lower.setdefault(column.lower(), column)
    match = PARAMETER_PATTERN.match(filter_function)
    parameter = match.group(1) if match else "row"

    def canonical(token: str) -> Optional[str]:
        if token == token.lower() and token in by_lower:
            return by_lower[token]
        return None

    def replace(match):
        if match.group("dot") and match.group("owner") == parameter:
            column = canonical(match.group("name"))
            if column:
                return match.group("dot") + column
        elif match.group("bracket") and match.group("bracket_owner") == parameter:
            column = canonical(match.group("key"))
            if column:
                return match.group("bracket") + column + match.group("quote")
        return match.group(0)

    return PROPERTY_PATTERN.sub(replace, filter_function)


def normalize_rows(rows: Sequence[Row]) -> List[Row]:
    return [
        {key: value.strip() if isinstance(value, str) else value for key, value in row.items()}
        for row in rows
    ]


def apply_filter(filter_function: str, rows: Sequence[Row]) -> List[Row]:
    """Run a generated predicate over trimmed copies of ``rows``.

    Matching rows are returned as stored, untrimmed. Any compile or evaluation failure becomes a FilterEvaluationError.
    """
    try:
        predicate = compile_predicate(filter_function)
    except PredicateError as exc:
        logger.warning("Rejected filter %r: %s", filter_function, exc)
        raise FilterEvaluationError() from exc

    matched = []
    for row, trimmed in zip(rows, normalize_rows(rows)):
        try:
            keep = predicate(trimmed)
        except PredicateError as exc:
            logger.warning("Filter %r failed on a row: %s", filter_function, exc)
            raise FilterEvaluationError() from exc
        if keep:
            matched.append(dict(row))
    return matched


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


# --------- Gateway ---------

class AIGateway:
    def __init__(self, agent):
        self.agent = agent

    async def _request(self, system_prompt: str, user_prompt: str, operation: str) -> Any:
        try:
            response = await self.agent.chat_completion(system_prompt, user_prompt)
        except GatewayError:
            raise
        except Exception as exc:
            logger.warning("%s: provider call failed: %s", operation, exc)
            raise AIProviderError(f"{operation}: AI provider call failed") from exc

        if not response or not response.strip():
            raise EmptyAIResponseError(f"{operation}: no response from AI provider")

        cleaned = extract_json_block(response)
        logger.debug("%s raw response: %r", operation, response)
        logger.debug("%s cleaned response: %r", operation, cleaned)
        try:
            return json.loads(cleaned)
        except ValueError as exc:
            logger.warning("%s: response is not valid JSON", operation)
            raise AIResponseParseError(f"{operation}: unable to parse AI response") from exc

    @staticmethod
    def _check(adapter_or_model, parsed: Any, operation: str):
        try:
            if isinstance(adapter_or_model, TypeAdapter):
                return adapter_or_model.validate_python(parsed)
            return adapter_or_model.model_validate(parsed)
        except PydanticValidationError as exc:
            logger.warning("%s: response has the wrong shape: %s", operation, exc)
            raise AIResponseParseError(f"{operation}: AI response does not match the expected format") from exc

    @staticmethod
    def _to_changes(payloads: List[ChangePayload], columns: List[str]) -> List[EditChange]:
        return [
            EditChange(
                row_index=payload.row_index,
                field=map_field_name(payload.field, columns),
                old_value=payload.old_value,
                new_value=payload.new_value,
                reasoning=payload.reasoning,
            )
            for payload in payloads
        ]

    async def generate_filter(self, query: str, rows: Sequence[Row], entity_type: str) -> FilterResult:
        columns = column_names(rows, entity_type)
        sample = list(rows[:FILTER_SAMPLE_SIZE])
        system_prompt = "You convert plain English queries into row filter expressions. Return only valid JSON."
        user_prompt = f"""
Convert the user's query into a filter expression for this dataset.

- The expression receives one row and must evaluate to true or false.
- Access fields as row.ColumnName. Lower-case column names are accepted and mapped back to the exact column names.
- Normalize casing for string values with .toLowerCase() before comparing.
- Allowed: comparisons (==, !=, <, <=, >, >=), &&, ||, !, parentheses, Number(value),
  and the methods .includes(), .toLowerCase(), .toUpperCase(), .trim(), .startsWith(), .endsWith().
- Nothing else is available: no other functions, variables or statements.
- Only return valid JSON, no extra text or markdown.

User Query: "{query}"
Entity Type: {entity_type}
Available Columns: {', '.join(columns)}
Sample Data: {_dump(sample)}

Example response:
{{
  "entityType": "tasks",
  "filterFunction": "row => row.Duration > 1 && row.PreferredPhases.includes('2')",
  "description": "Filters tasks with duration greater than 1 and preferred in phase 2"
}}
"""
        parsed = await self._request(system_prompt, user_prompt, "generate_filter")
        result = self._check(FilterResult, parsed, "generate_filter")
        result.filter_function = map_filter_function_to_original_columns(result.filter_function, columns)
        if not result.entity_type:
            result.entity_type = entity_type
        return result

    async def generate_edit(self, query: str, rows: Sequence[Row], entity_type: str) -> EditResult:
        columns = column_names(rows, entity_type)
        sample = list(rows[:EDIT_SAMPLE_SIZE])
        system_prompt = "You are a data editing assistant. Return only valid JSON."
        user_prompt = f"""
Given a user instruction and sample data, generate specific cell changes.

User Instruction: "{query}"
Entity Type: {entity_type}
Total rows: {len(rows)}
Available Columns: {', '.join(columns)}
Sample Data: {_dump(sample)}

Return a JSON object with:
- entityType: the type of entity being edited
- changes: array of changes with rowIndex, field, oldValue, newValue
- description: brief description of the changes

Example response:
{{
  "entityType": "clients",
  "changes": [
    {{"rowIndex": 0, "field": "PriorityLevel", "oldValue": 3, "newValue": 5}}
  ],
  "description": "Set priority 5 for all clients in GroupTag = Enterprise"
}}

Only return valid JSON, no additional text.
"""
        parsed = await self._request(system_prompt, user_prompt, "generate_edit")
        payload = self._check(EditPayload, parsed, "generate_edit")
        return EditResult(
            entity_type=payload.entity_type or entity_type,
            changes=self._to_changes(payload.changes, columns),
            description=payload.description,
        )

    async def generate_rule_suggestions(self, clients: Sequence[Row], workers: Sequence[Row],
                                        tasks: Sequence[Row]) -> List[RuleSuggestion]:
        system_prompt = "You are a scheduling rule recommendation assistant. Return only valid JSON arrays."
        user_prompt = f"""
Analyze the provided data and suggest useful scheduling rules.

Clients Data: {_dump(list(clients[:RULE_SAMPLE_SIZE]))}
Workers Data: {_dump(list(workers[:RULE_SAMPLE_SIZE]))}
Tasks Data: {_dump(list(tasks[:RULE_SAMPLE_SIZE]))}

Suggest 3-5 useful rules based on patterns in the data. Consider:
- Tasks that should run together based on dependencies
- Worker group load balancing
- Client priority considerations
- Phase scheduling optimizations

Return a JSON array of rule suggestions with:
- type: one of {', '.join(repr(t) for t in RULE_TYPES)}
- name: descriptive rule name
- config: rule configuration object
  - co-run: {{"taskIds": [...]}}
  - slot-restriction: {{"groupType": "client" or "worker", "groupName": "...", "minCommonSlots": 1}}
  - load-limit: {{"workerGroup": "...", "maxSlotsPerPhase": 1}}
  - phase-window: {{"taskId": "...", "allowedPhases": ["1", "2"]}}
- reasoning: explanation of why this rule is useful

Example response:
[
  {{
    "type": "co-run",
    "name": "Critical Data Pipeline Tasks",
    "config": {{"taskIds": ["T1", "T4", "T8"]}},
    "reasoning": "These tasks form a critical data pipeline and should run together"
  }}
]

Only return raw JSON. Do not wrap it in markdown code blocks.
"""
        parsed = await self._request(system_prompt, user_prompt, "generate_rule_suggestions")
        return self._check(_SUGGESTIONS, parsed, "generate_rule_suggestions")

    async def generate_rule(self, text: str, clients: Sequence[Row], workers: Sequence[Row],
                            tasks: Sequence[Row]) -> RuleSuggestion:
        system_prompt = ("You are an expert AI rules converter that transforms natural language "
                         "descriptions of allocation rules into structured JSON rule objects.")
        user_prompt = f'''
Analyze the following data to understand the context and create a rule:

Clients (sample):
{_dump(list(clients[:RULE_SAMPLE_SIZE]))}

Workers (sample):
{_dump(list(workers[:RULE_SAMPLE_SIZE]))}

Tasks (sample):
{_dump(list(tasks[:RULE_SAMPLE_SIZE]))}

Convert the following natural language rule description into a structured JSON rule:
"""{text.strip()}"""

The rule must be a JSON object with:
- type: one of {', '.join(repr(t) for t in RULE_TYPES)}
- name: user-friendly title
- config: co-run {{"taskIds"}}, slot-restriction {{"groupType", "groupName", "minCommonSlots"}},
  load-limit {{"workerGroup", "maxSlotsPerPhase"}}, phase-window {{"taskId", "allowedPhases"}}
- reasoning: brief summary

Return only the JSON object. No explanations and no code blocks.
'''
        parsed = await self._request(system_prompt, user_prompt, "generate_rule")
        return self._check(RuleSuggestion, parsed, "generate_rule")

    async def generate_validation_fixes(self, errors: Sequence[ValidationError],
                                        rows: Sequence[Row]) -> List[EditChange]:
        columns = column_names(rows)
        error_dicts = [error.to_dict() if isinstance(error, ValidationError) else error for error in errors]
        system_prompt = "You are a data validation fix assistant. Return only valid JSON arrays."
        user_prompt = f"""
Given validation errors and sample data, suggest corrections.

Validation Errors: {_dump(error_dicts)}
Available Columns: {', '.join(columns)}
Sample Data: {_dump(list(rows[:FIX_SAMPLE_SIZE]))}

For each error, suggest a reasonable fix. Consider:
- Data type corrections
- Range adjustments
- Format fixes
- Logical consistency

Return a JSON array of fixes with:
- rowIndex: the row index to fix
- field: the field name
- oldValue: current value
- newValue: suggested corrected value
- reasoning: explanation of the fix

Example response:
[
  {{
    "rowIndex": 0,
    "field": "PriorityLevel",
    "oldValue": 6,
    "newValue": 5,
    "reasoning": "PriorityLevel must be between 1-5, setting to maximum allowed value"
  }}
]

Only return raw JSON. Do not wrap it in markdown code blocks.
"""
        parsed = await self._request(system_prompt, user_prompt, "generate_validation_fixes")
        payloads = self._check(_CHANGES, parsed, "generate_validation_fixes")
        return self._to_changes(payloads, columns)

    async def generate_ai_validation_warnings(self, rows: Sequence[Row],
                                              entity_type: str) -> List[AIValidationWarning]:
        columns = column_names(rows, entity_type)
        system_prompt = "You are a data quality analyst. Return only valid JSON arrays."
        user_prompt = f"""
Review the provided data and flag any potential inconsistencies or suspicious entries.

Entity Type: {entity_type}
Available Columns: {', '.join(columns)}
Data: {_dump(list(rows[:WARNING_SAMPLE_SIZE]))}

Look for:
- Unusual patterns or outliers
- Potential data quality issues
- Logical inconsistencies
- Missing or suspicious values

Return a JSON array of warnings with:
- rowIndex: the row index
- field: the field name
- warning: description of the issue
- severity: 'low', 'medium', or 'high'

Example response:
[
  {{
    "rowIndex": 0,
    "field": "Duration",
    "warning": "Duration seems unusually high for this task type",
    "severity": "medium"
  }}
]

Only return raw JSON. Do not wrap it in markdown code blocks.
"""
        parsed = await self._request(system_prompt, user_prompt, "generate_ai_validation_warnings")
        payloads = self._check(_WARNINGS, parsed, "generate_ai_validation_warnings")
        return [
            AIValidationWarning(
                row_index=payload.row_index,
                field=map_field_name(payload.field, columns),
                warning=payload.warning,
                severity=payload.severity,
            )
            for payload in payloads
        ]
