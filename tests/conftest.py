"""
Shared fixtures: sample datasets, a scripted AI agent and an HTTP client
wired to a fresh session.
"""
import os
import tempfile

# Keep uploads/exports out of the working tree and never pick up a real key
_TMP = tempfile.mkdtemp(prefix="data-alchemist-tests-")
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ["EXPORT_DIR"] = os.path.join(_TMP, "exports")
os.environ["AI_PROVIDER"] = "gemini"
os.environ["GEMINI_API_KEY"] = ""
os.environ["AUTO_AI_VALIDATION"] = "false"

from typing import Any, Dict, List

import pytest

from ai_gateway import AIGateway
from backend import DataManager
from fakes import FakeAgent


def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "api: Tests that go through the HTTP layer")


@pytest.fixture
def clients_rows() -> List[Dict[str, Any]]:
    return [
        {"ClientID": "C1", "ClientName": "Acme", "PriorityLevel": "3",
         "RequestedTaskIDs": "T1,T2", "GroupTag": "GroupA", "AttributesJSON": '{"budget": 100}'},
        {"ClientID": "C2", "ClientName": "Globex", "PriorityLevel": "5",
         "RequestedTaskIDs": "T3", "GroupTag": "GroupB", "AttributesJSON": "{}"},
    ]


@pytest.fixture
def workers_rows() -> List[Dict[str, Any]]:
    return [
        {"WorkerID": "W1", "WorkerName": "Ann", "Skills": "coding,testing", "AvailableSlots": "[1,2,3]",
         "MaxLoadPerPhase": "2", "WorkerGroup": "GroupA", "QualificationLevel": "4"},
        {"WorkerID": "W2", "WorkerName": "Bob", "Skills": "design", "AvailableSlots": "[2,4]",
         "MaxLoadPerPhase": "1", "WorkerGroup": "GroupB", "QualificationLevel": "2"},
    ]


@pytest.fixture
def tasks_rows() -> List[Dict[str, Any]]:
    return [
        {"TaskID": "T1", "TaskName": "Build", "Category": "ETL", "Duration": "2",
         "RequiredSkills": "coding", "PreferredPhases": "1 - 2", "MaxConcurrent": "2"},
        {"TaskID": "T2", "TaskName": "Test", "Category": "QA", "Duration": "1",
         "RequiredSkills": "testing", "PreferredPhases": "2 - 3", "MaxConcurrent": "1"},
        {"TaskID": "T3", "TaskName": "Ship", "Category": "Ops", "Duration": "3",
         "RequiredSkills": "coding", "PreferredPhases": "3 - 4", "MaxConcurrent": "1"},
    ]


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def manager(fake_agent) -> DataManager:
    return DataManager(gateway=AIGateway(fake_agent))


@pytest.fixture
def loaded_manager(manager, clients_rows, workers_rows, tasks_rows) -> DataManager:
    manager.load_rows("clients", clients_rows)
    manager.load_rows("workers", workers_rows)
    manager.load_rows("tasks", tasks_rows)
    return manager


@pytest.fixture
def api_client(manager):
    from fastapi.testclient import TestClient

    from main import app, get_data_manager

    app.dependency_overrides[get_data_manager] = lambda: manager
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
