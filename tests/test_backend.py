import asyncio

import pytest

from ai_gateway import AIGateway
from backend import DataManager
from data_io import read_rows
from errors import (
    ConfigurationError,
    InputError,
    InstructionParseError,
    NoStagedChangesError,
    StaleChangesError,
    UnknownEntityError,
)
from fakes import FakeAgent
from models import EditChange
from validators import validate_data


def _assert_errors_current(manager):
    for entity_type in ("clients", "workers", "tasks"):
        expected = validate_data(entity_type, manager.rows(entity_type)).errors
        assert manager.errors(entity_type) == expected


def test_load_rows_validates_and_versions(manager, tasks_rows):
    tasks_rows[0]["Duration"] = "0"
    dataset = manager.load_rows("tasks", tasks_rows)
    assert dataset.version == 1
    assert [(e.row_index, e.field) for e in manager.errors("tasks")] == [(0, "Duration")]
    _assert_errors_current(manager)


def test_rows_are_copies(loaded_manager):
    rows = loaded_manager.rows("tasks")
    rows[0]["Duration"] = "0"
    assert loaded_manager.rows("tasks")[0]["Duration"] == "2"


def test_unknown_entity_type(manager):
    with pytest.raises(UnknownEntityError):
        manager.load_rows("projects", [])


def test_update_cell_revalidates(loaded_manager):
    loaded_manager.update_cell("clients", 1, "PriorityLevel", "9")
    assert [(e.row_index, e.field) for e in loaded_manager.errors("clients")] == [(1, "PriorityLevel")]
    loaded_manager.update_cell("clients", 1, "PriorityLevel", "4")
    assert loaded_manager.errors("clients") == []
    _assert_errors_current(loaded_manager)


def test_update_cell_out_of_range(loaded_manager):
    with pytest.raises(InputError):
        loaded_manager.update_cell("clients", 10, "PriorityLevel", "1")


def test_update_cell_rejects_boolean_row_index(loaded_manager):
    with pytest.raises(InputError):
        loaded_manager.update_cell("clients", True, "PriorityLevel", "1")
    assert loaded_manager.rows("clients")[1]["PriorityLevel"] == "5"


def test_apply_fixes_last_write_wins(loaded_manager):
    loaded_manager.apply_fixes("tasks", [
        EditChange(0, "Duration", "2", "0"),
        EditChange(0, "Duration", "0", "5"),
    ], loaded_manager.version("tasks"))
    assert loaded_manager.rows("tasks")[0]["Duration"] == "5"
    _assert_errors_current(loaded_manager)


def test_staged_edit_lifecycle(loaded_manager):
    staged = loaded_manager.propose_edit("tasks", "set Category=Ops where Category=qa")
    assert [c.row_index for c in staged.changes] == [1]
    # nothing applied until confirmed
    assert loaded_manager.rows("tasks")[1]["Category"] == "QA"

    loaded_manager.apply_staged("tasks")
    assert loaded_manager.rows("tasks")[1]["Category"] == "Ops"
    with pytest.raises(NoStagedChangesError):
        loaded_manager.apply_staged("tasks")


def test_unparseable_instruction(loaded_manager):
    with pytest.raises(InstructionParseError):
        loaded_manager.propose_edit("tasks", "please fix things")


def test_stale_staged_changes_are_rejected(loaded_manager):
    loaded_manager.propose_edit("tasks", "set Duration=4")
    loaded_manager.update_cell("tasks", 0, "TaskName", "Renamed")
    with pytest.raises(StaleChangesError):
        loaded_manager.apply_staged("tasks")
    assert loaded_manager.rows("tasks")[0]["Duration"] == "2"


def test_cancel_staged(loaded_manager):
    loaded_manager.propose_edit("tasks", "set Duration=4")
    assert loaded_manager.cancel_staged("tasks") is True
    assert loaded_manager.cancel_staged("tasks") is False


def test_upload_discards_staged_changes(loaded_manager, tasks_rows):
    loaded_manager.propose_edit("tasks", "set Duration=4")
    loaded_manager.load_rows("tasks", tasks_rows)
    with pytest.raises(NoStagedChangesError):
        loaded_manager.apply_staged("tasks")


def test_rules_survive_data_changes_and_report_dangling(loaded_manager):
    rule = loaded_manager.add_rule({"type": "co-run", "name": "Pipeline", "config": {"taskIds": ["T1", "T3"]}})
    assert loaded_manager.dangling_references() == []
    loaded_manager.load_rows("tasks", [{"TaskID": "T1"}])
    assert [d["value"] for d in loaded_manager.dangling_references()] == ["T3"]
    assert [r.id for r in loaded_manager.rules] == [rule.id]


def test_update_missing_rule(loaded_manager):
    with pytest.raises(KeyError):
        loaded_manager.update_rule("nope", {"type": "co-run", "name": "x", "config": {}})


def test_export_files(loaded_manager):
    loaded_manager.apply_preset("minimize-workload")
    names = [f["name"] for f in loaded_manager.export_files()]
    assert names == ["clients.csv", "workers.csv", "tasks.csv", "rules.json"]
    assert loaded_manager.export_bundle()["prioritization"]["preset"] == "minimize-workload"


def test_structured_cell_survives_export_and_reupload(loaded_manager):
    loaded_manager.update_cell("clients", 0, "AttributesJSON", {"budget": 100})
    assert loaded_manager.errors("clients") == []
    exported = {f["name"]: f["content"] for f in loaded_manager.export_files()}

    loaded_manager.load_rows("clients", read_rows(exported["clients.csv"].encode("utf-8"), "clients.csv"))
    assert loaded_manager.errors("clients") == []
    assert loaded_manager.rows("clients")[0]["AttributesJSON"] == '{"budget": 100}'


def test_summary(loaded_manager):
    loaded_manager.update_cell("tasks", 2, "Duration", "0")
    summary = loaded_manager.summary()
    assert summary["tasks"]["rows"] == 3
    assert summary["tasks"]["errors"] == 1
    assert summary["rules"] == 0


@pytest.mark.asyncio
async def test_search_runs_generated_filter(loaded_manager, fake_agent):
    fake_agent.queue({"filterFunction": "row => Number(row.duration) >= 2"})
    result = await loaded_manager.search("tasks", "long tasks")
    assert [row["TaskID"] for row in result["rows"]] == ["T1", "T3"]
    assert result["filter"]["filterFunction"] == "row => Number(row.Duration) >= 2"


@pytest.mark.asyncio
async def test_ai_edit_is_staged_not_applied(loaded_manager, fake_agent):
    fake_agent.queue({"changes": [{"rowIndex": 0, "field": "Duration", "oldValue": "2", "newValue": "3"}],
                      "description": "longer"})
    staged = await loaded_manager.suggest_edit("tasks", "make T1 longer")
    assert staged.source == "ai"
    assert loaded_manager.rows("tasks")[0]["Duration"] == "2"
    loaded_manager.apply_staged("tasks")
    assert loaded_manager.rows("tasks")[0]["Duration"] == "3"


@pytest.mark.asyncio
async def test_suggest_fixes_skips_provider_when_clean(loaded_manager, fake_agent):
    suggestions = await loaded_manager.suggest_fixes("tasks")
    assert suggestions.fixes == []
    assert suggestions.version == loaded_manager.version("tasks")
    assert fake_agent.calls == []


@pytest.mark.asyncio
async def test_suggest_fixes_then_apply(loaded_manager, fake_agent):
    loaded_manager.update_cell("clients", 0, "PriorityLevel", "8")
    fake_agent.queue([{"rowIndex": 0, "field": "PriorityLevel", "oldValue": "8", "newValue": "5",
                       "reasoning": "clamp"}])
    suggestions = await loaded_manager.suggest_fixes("clients")
    loaded_manager.apply_fixes("clients", suggestions.fixes, suggestions.version)
    assert loaded_manager.errors("clients") == []


@pytest.mark.asyncio
async def test_fixes_for_an_older_snapshot_are_rejected(loaded_manager, fake_agent):
    loaded_manager.update_cell("tasks", 0, "Duration", "0")
    fake_agent.queue([{"rowIndex": 0, "field": "Duration", "oldValue": "0", "newValue": "1"}])
    suggestions = await loaded_manager.suggest_fixes("tasks")

    loaded_manager.load_rows("tasks", [{"TaskID": "X9", "Duration": "7"}])
    with pytest.raises(StaleChangesError):
        loaded_manager.apply_fixes("tasks", suggestions.fixes, suggestions.version)
    assert loaded_manager.rows("tasks") == [{"TaskID": "X9", "Duration": "7"}]


@pytest.mark.asyncio
async def test_suggest_rules_requires_data(manager):
    with pytest.raises(InputError):
        await manager.suggest_rules()


@pytest.mark.asyncio
async def test_ai_validation_partial_failure(loaded_manager, fake_agent):
    def reply(system_prompt, user_prompt):
        if "Entity Type: workers" in user_prompt:
            raise RuntimeError("provider down")
        return [{"rowIndex": 0, "field": "Duration", "warning": "odd", "severity": "low"}]

    fake_agent.queue(reply, reply, reply)
    outcomes = await loaded_manager.run_ai_validation()
    assert outcomes["workers"].error
    assert outcomes["workers"].warnings == []
    assert len(outcomes["clients"].warnings) == 1
    assert len(outcomes["tasks"].warnings) == 1
    assert loaded_manager.ai_warnings["tasks"].warnings[0].severity == "low"


@pytest.mark.asyncio
async def test_ai_validation_skips_empty_datasets(manager, fake_agent, tasks_rows):
    manager.load_rows("tasks", tasks_rows)
    fake_agent.queue([])
    outcomes = await manager.run_ai_validation()
    assert list(outcomes) == ["tasks"]


@pytest.mark.asyncio
async def test_ai_operations_without_gateway(tasks_rows):
    manager = DataManager(ai_unavailable_reason="GEMINI_API_KEY is not set in environment variables")
    manager.load_rows("tasks", tasks_rows)
    with pytest.raises(ConfigurationError) as info:
        await manager.search("tasks", "anything")
    assert "GEMINI_API_KEY" in info.value.message


@pytest.mark.asyncio
async def test_auto_validation_is_debounced(tasks_rows):
    agent = FakeAgent([], [])
    manager = DataManager(gateway=AIGateway(agent), auto_ai_validation=True, ai_validation_delay=0.05)
    manager.load_rows("tasks", tasks_rows)
    manager.update_cell("tasks", 0, "Duration", "3")
    manager.update_cell("tasks", 1, "Duration", "4")
    await asyncio.sleep(0.15)
    await manager.ai_validation_debouncer.wait()
    assert len(agent.calls) == 1
