import pytest

from ai_gateway import (
    AIGateway,
    apply_filter,
    extract_json_block,
    map_filter_function_to_original_columns,
)
from errors import (
    AIProviderError,
    AIResponseParseError,
    EmptyAIResponseError,
    FilterEvaluationError,
)
from models import EditChange, ValidationError

from fakes import FakeAgent

TASK_COLUMNS = ["TaskID", "TaskName", "Duration", "PreferredPhases"]


def test_extract_json_block_strips_fences():
    assert extract_json_block('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json_block("```[1]```") == "[1]"
    assert extract_json_block("  [1] ") == "[1]"


def test_filter_columns_are_mapped_back_to_canonical_names():
    mapped = map_filter_function_to_original_columns(
        "row => row.duration > 1 && row['preferredphases'].includes('2') && row.TaskName.trim() == 'x'",
        TASK_COLUMNS,
    )
    assert mapped == (
        "row => row.Duration > 1 && row['PreferredPhases'].includes('2') && row.TaskName.trim() == 'x'"
    )


def test_method_names_are_not_rewritten():
    columns = ["Includes", "Duration"]
    assert map_filter_function_to_original_columns("row.duration.includes('1')", columns) == \
        "row.Duration.includes('1')"


def test_string_literals_are_not_rewritten():
    columns = ["Category"]
    assert map_filter_function_to_original_columns(
        "row => row.category == 'data.category' || row['category'] == \"x.category\"", columns,
    ) == "row => row.Category == 'data.category' || row['Category'] == \"x.category\""


def test_only_parameter_properties_are_rewritten():
    columns = ["Duration", "Length"]
    assert map_filter_function_to_original_columns(
        "(r) => r.duration > 1 && r.duration.length > 0 && other.duration", columns,
    ) == "(r) => r.Duration > 1 && r.Duration.length > 0 && other.duration"


def test_apply_filter_matches_trimmed_values_but_returns_stored_rows():
    rows = [{"Category": " ETL "}, {"Category": "QA"}]
    matched = apply_filter("row => row.Category === 'ETL'", rows)
    assert matched == [{"Category": " ETL "}]
    assert matched[0] is not rows[0]


def test_apply_filter_wraps_failures():
    with pytest.raises(FilterEvaluationError) as info:
        apply_filter("row => import os", [{"A": 1}])
    assert info.value.message == "Unable to apply filter logic from AI. Please rephrase your query."
    with pytest.raises(FilterEvaluationError):
        apply_filter("row => row.Missing.includes('x')", [{"A": 1}])


@pytest.mark.asyncio
async def test_generate_filter_parses_fenced_reply(tasks_rows):
    agent = FakeAgent('```json\n{"filterFunction": "row => row.duration > 1", "description": "long"}\n```')
    result = await AIGateway(agent).generate_filter("long tasks", tasks_rows, "tasks")
    assert result.filter_function == "row => row.Duration > 1"
    assert result.entity_type == "tasks"
    assert "long tasks" in agent.calls[0]["user"]


@pytest.mark.asyncio
async def test_prompt_sample_is_bounded(tasks_rows):
    rows = [dict(tasks_rows[0], TaskID=f"T{i}") for i in range(10)]
    agent = FakeAgent({"filterFunction": "row => true"})
    await AIGateway(agent).generate_filter("all", rows, "tasks")
    prompt = agent.calls[0]["user"]
    assert '"T2"' in prompt
    assert '"T3"' not in prompt


@pytest.mark.asyncio
@pytest.mark.parametrize("reply, error", [
    ("", EmptyAIResponseError),
    ("   ", EmptyAIResponseError),
    ("not json at all", AIResponseParseError),
    ('{"description": "no filter"}', AIResponseParseError),
    ('["wrong", "shape"]', AIResponseParseError),
    (RuntimeError("boom"), AIProviderError),
])
async def test_generate_filter_failures(tasks_rows, reply, error):
    with pytest.raises(error):
        await AIGateway(FakeAgent(reply)).generate_filter("q", tasks_rows, "tasks")


@pytest.mark.asyncio
async def test_generate_edit_maps_fields(clients_rows):
    agent = FakeAgent({
        "entityType": "clients",
        "changes": [{"rowIndex": 1, "field": "prioritylevel", "oldValue": "5", "newValue": "4"}],
        "description": "lower priority",
    })
    result = await AIGateway(agent).generate_edit("lower Globex", clients_rows, "clients")
    assert result.changes == [EditChange(1, "PriorityLevel", "5", "4")]
    assert result.description == "lower priority"


@pytest.mark.asyncio
async def test_generate_edit_rejects_negative_row_index(clients_rows):
    agent = FakeAgent({"changes": [{"rowIndex": -1, "field": "PriorityLevel", "newValue": "4"}]})
    with pytest.raises(AIResponseParseError):
        await AIGateway(agent).generate_edit("q", clients_rows, "clients")


@pytest.mark.asyncio
async def test_generate_rule_suggestions(clients_rows, workers_rows, tasks_rows):
    agent = FakeAgent([
        {"type": "co-run", "name": "Pipeline", "config": {"taskIds": ["T1", "T2"]}, "reasoning": "linked"},
        {"type": "load-limit", "name": "Cap A", "config": {"workerGroup": "GroupA", "maxSlotsPerPhase": 2}},
    ])
    suggestions = await AIGateway(agent).generate_rule_suggestions(clients_rows, workers_rows, tasks_rows)
    assert [s.type for s in suggestions] == ["co-run", "load-limit"]
    assert suggestions[0].to_dict()["config"] == {"taskIds": ["T1", "T2"]}


@pytest.mark.asyncio
async def test_generate_rule_rejects_unknown_type(clients_rows, workers_rows, tasks_rows):
    agent = FakeAgent({"type": "teleport", "name": "x", "config": {}})
    with pytest.raises(AIResponseParseError):
        await AIGateway(agent).generate_rule("beam me up", clients_rows, workers_rows, tasks_rows)


@pytest.mark.asyncio
async def test_generate_validation_fixes(clients_rows):
    errors = [ValidationError(0, "PriorityLevel", "PriorityLevel must be a number between 1 and 5")]
    agent = FakeAgent([{"rowIndex": 0, "field": "PriorityLevel", "oldValue": "9", "newValue": "5",
                        "reasoning": "clamp"}])
    fixes = await AIGateway(agent).generate_validation_fixes(errors, clients_rows)
    assert fixes == [EditChange(0, "PriorityLevel", "9", "5", reasoning="clamp")]


@pytest.mark.asyncio
async def test_generate_ai_validation_warnings(tasks_rows):
    agent = FakeAgent([{"rowIndex": 2, "field": "duration", "warning": "long", "severity": "high"}])
    warnings = await AIGateway(agent).generate_ai_validation_warnings(tasks_rows, "tasks")
    assert warnings[0].field == "Duration"
    assert warnings[0].severity == "high"


@pytest.mark.asyncio
async def test_warning_with_unknown_severity_is_rejected(tasks_rows):
    agent = FakeAgent([{"rowIndex": 0, "field": "Duration", "warning": "x", "severity": "critical"}])
    with pytest.raises(AIResponseParseError):
        await AIGateway(agent).generate_ai_validation_warnings(tasks_rows, "tasks")
