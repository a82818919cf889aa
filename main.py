# main.py
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from ai_gateway import AIGateway
from backend import DataManager
from config import Settings, get_settings
from data_io import infer_entity_type, read_rows, save_upload_file
from errors import ConfigurationError, DataAlchemistError, InputError
from llm import create_agent
from models import ENTITY_TYPES, EditChange, check_entity_type
from rules import PRESETS


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def setup_logging(settings: Settings) -> logging.Logger:
    """Configure the root logger from LOG_LEVEL / LOG_FORMAT."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level, logging.INFO))
    root.handlers = [h for h in root.handlers if getattr(h, "name", None) != "data_alchemist"]

    handler = logging.StreamHandler(sys.stdout)
    handler.name = "data_alchemist"
    if settings.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)
    return logging.getLogger("data_alchemist")


settings = get_settings()
logger = setup_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Missing keys surface at startup rather than on the first AI request
    get_data_manager()
    yield


app = FastAPI(title="Data Alchemist", lifespan=lifespan)

# Enable CORS for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global DataManager instance to persist data across requests
global_data_manager: Optional[DataManager] = None


def create_data_manager(settings: Settings) -> DataManager:
    """Session with AI features when the provider key is configured, without them otherwise."""
    try:
        gateway = AIGateway(create_agent(settings))
        reason = None
    except ConfigurationError as exc:
        logger.error("AI features disabled: %s", exc.message)
        gateway, reason = None, exc.message
    return DataManager(
        gateway=gateway,
        ai_unavailable_reason=reason,
        auto_ai_validation=settings.auto_ai_validation,
        ai_validation_delay=settings.ai_validation_debounce,
    )


def get_data_manager() -> DataManager:
    global global_data_manager
    if global_data_manager is None:
        global_data_manager = create_data_manager(settings)
    return global_data_manager


# --------- Error translation ---------

@app.exception_handler(DataAlchemistError)
async def handle_app_error(request: Request, exc: DataAlchemistError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unexpected error in %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"status": "error", "error": str(exc)})


def require_fields(request: Any, *fields: str) -> Dict[str, Any]:
    if not isinstance(request, dict):
        raise InputError(f"Missing required fields: {', '.join(fields)}")
    missing = [name for name in fields if request.get(name) in (None, "", [])]
    if missing:
        raise InputError(f"Missing required fields: {', '.join(missing)}")
    return request


def entity_payload(dm: DataManager, entity_type: str) -> Dict[str, Any]:
    return {
        "entityType": entity_type,
        "rows": dm.rows(entity_type),
        "errors": [error.to_dict() for error in dm.errors(entity_type)],
        "version": dm.version(entity_type),
    }


def parse_changes(items: Any) -> List[EditChange]:
    if not isinstance(items, list):
        raise InputError("changes must be a list")
    changes = []
    for item in items:
        if not isinstance(item, dict) or "rowIndex" not in item or "field" not in item or "newValue" not in item:
            raise InputError("Each change needs rowIndex, field and newValue")
        if not isinstance(item["rowIndex"], int) or isinstance(item["rowIndex"], bool):
            raise InputError("rowIndex must be an integer")
        changes.append(EditChange.from_dict(item))
    return changes


# --------- Upload & data ---------

@app.post("/upload")
async def upload_file(
    file: UploadFile = File(...),
    entity_type: Optional[str] = Form(None),
    dm: DataManager = Depends(get_data_manager),
):
    entity_type = check_entity_type(entity_type or infer_entity_type(file.filename))
    content = await file.read()
    rows = read_rows(content, file.filename, max_size=settings.max_file_size)
    save_upload_file(content, file.filename, str(settings.upload_dir))
    dm.load_rows(entity_type, rows)
    logger.info("Uploaded %s as %s (%d rows)", file.filename, entity_type, len(rows))
    return {"status": "success", **entity_payload(dm, entity_type), "summary": dm.summary()}


@app.get("/data/{entity_type}")
async def get_data(entity_type: str, dm: DataManager = Depends(get_data_manager)):
    return {"status": "success", **entity_payload(dm, check_entity_type(entity_type))}


@app.patch("/data/{entity_type}/cell")
async def update_cell(entity_type: str, request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "rowIndex", "field")
    if "value" not in request:
        raise InputError("Missing required fields: value")
    dm.update_cell(check_entity_type(entity_type), request["rowIndex"], request["field"], request["value"])
    return {"status": "success", **entity_payload(dm, entity_type)}


@app.get("/summary")
async def summary(dm: DataManager = Depends(get_data_manager)):
    return {"status": "success", "summary": dm.summary()}


# --------- Edits ---------

@app.post("/edit/parse")
async def parse_edit_instruction(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "instruction", "entityType")
    staged = dm.propose_edit(check_entity_type(request["entityType"]), request["instruction"])
    return {"status": "success", "staged": staged.to_dict()}


@app.post("/edit/apply")
async def apply_staged_edit(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "entityType")
    entity_type = check_entity_type(request["entityType"])
    dm.apply_staged(entity_type)
    return {"status": "success", **entity_payload(dm, entity_type)}


@app.post("/edit/cancel")
async def cancel_staged_edit(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "entityType")
    cancelled = dm.cancel_staged(check_entity_type(request["entityType"]))
    return {"status": "success", "cancelled": cancelled}


@app.post("/fixes/apply")
async def apply_fixes(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "entityType", "fixes", "version")
    entity_type = check_entity_type(request["entityType"])
    version = request["version"]
    if isinstance(version, bool) or not isinstance(version, int):
        raise InputError("version must be an integer")
    before = len(dm.errors(entity_type))
    dm.apply_fixes(entity_type, parse_changes(request["fixes"]), version)
    after = len(dm.errors(entity_type))
    return {
        "status": "success",
        "message": f"Applied fixes. Errors reduced from {before} to {after}",
        **entity_payload(dm, entity_type),
    }


# --------- AI endpoints ---------

@app.post("/api/query-filter")
async def query_filter(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "userQuery", "entityType")
    result = await dm.search(check_entity_type(request["entityType"]), request["userQuery"])
    return {"status": "success", **result}


@app.post("/api/query-edit")
async def query_edit(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "userQuery", "entityType")
    staged = await dm.suggest_edit(check_entity_type(request["entityType"]), request["userQuery"])
    return {"status": "success", "staged": staged.to_dict()}


@app.post("/api/rule-suggestions")
async def rule_suggestions(dm: DataManager = Depends(get_data_manager)):
    suggestions = await dm.suggest_rules()
    return {"status": "success", "suggestions": [s.to_dict() for s in suggestions]}


@app.post("/api/rule-from-text")
async def rule_from_text(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "input")
    suggestion = await dm.generate_rule_from_natural_language(request["input"])
    return {"status": "success", "rule": suggestion.to_dict()}


@app.post("/api/autofix")
async def autofix(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "entityType")
    suggestions = await dm.suggest_fixes(check_entity_type(request["entityType"]))
    return {"status": "success", **suggestions.to_dict()}


@app.post("/api/ai-validation")
async def ai_validation(request: Optional[dict] = None, dm: DataManager = Depends(get_data_manager)):
    entity_type = (request or {}).get("entityType")
    entity_types = [check_entity_type(entity_type)] if entity_type else list(ENTITY_TYPES)
    outcomes = await dm.run_ai_validation(entity_types)
    return {"status": "success", "results": {key: value.to_dict() for key, value in outcomes.items()}}


# --------- Rules & prioritization ---------

@app.get("/rules")
async def list_rules(dm: DataManager = Depends(get_data_manager)):
    return {"status": "success", "rules": [rule.to_dict() for rule in dm.rules]}


@app.post("/rules")
async def create_rule(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "type", "name")
    rule = dm.add_rule(request)
    return {"status": "success", "rule": rule.to_dict()}


@app.put("/rules/{rule_id}")
async def update_rule(rule_id: str, request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "type", "name")
    try:
        rule = dm.update_rule(rule_id, request)
    except KeyError:
        return JSONResponse(status_code=404, content={"status": "error", "error": f"Rule {rule_id} not found"})
    return {"status": "success", "rule": rule.to_dict()}


@app.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, dm: DataManager = Depends(get_data_manager)):
    if not dm.delete_rule(rule_id):
        return JSONResponse(status_code=404, content={"status": "error", "error": f"Rule {rule_id} not found"})
    return {"status": "success", "deleted": rule_id}


@app.post("/rules/parse")
async def parse_rule(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "input")
    rule = dm.add_rule_from_text(request["input"])
    return {"status": "success", "rule": rule.to_dict()}


@app.post("/rules/accept")
async def accept_suggestion(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "type", "name")
    rule = dm.accept_suggestion(request)
    return {"status": "success", "rule": rule.to_dict()}


@app.get("/rules/dangling")
async def dangling_rules(dm: DataManager = Depends(get_data_manager)):
    return {"status": "success", "dangling": dm.dangling_references()}


@app.get("/prioritization")
async def get_prioritization(dm: DataManager = Depends(get_data_manager)):
    return {"status": "success", "prioritization": dm.prioritization.to_dict(), "presets": PRESETS}


@app.put("/prioritization")
async def set_prioritization(request: dict, dm: DataManager = Depends(get_data_manager)):
    weights = {key: value for key, value in request.items() if key != "preset"}
    if not weights:
        raise InputError("Missing required fields: priorityLevel, requestedTaskFulfillment or fairness")
    config = dm.set_priorities(weights)
    return {"status": "success", "prioritization": config.to_dict()}


@app.post("/prioritization/preset")
async def set_preset(request: dict, dm: DataManager = Depends(get_data_manager)):
    require_fields(request, "preset")
    config = dm.apply_preset(request["preset"])
    return {"status": "success", "prioritization": config.to_dict()}


# --------- Export ---------

@app.post("/export")
async def export_data(dm: DataManager = Depends(get_data_manager)):
    output_dir = str(settings.export_dir)
    paths = dm.export_all(output_dir)
    files = [{"name": os.path.basename(path), "path": path} for path in paths]
    return {
        "status": "success",
        "message": f"Data exported successfully to {output_dir}",
        "export_directory": output_dir,
        "files": files,
        "summary": dm.summary(),
    }


@app.post("/export_download")
async def export_download(dm: DataManager = Depends(get_data_manager)):
    files_data = dm.export_files()
    return {
        "status": "success",
        "message": f"Prepared {len(files_data)} files for download",
        "files": files_data,
        "summary": dm.summary(),
    }


# Download individual exported files
@app.get("/download/{filename}")
async def download_file(filename: str):
    # Only bare file names from the export directory
    if os.path.basename(filename) != filename:
        raise InputError("Invalid file name")
    file_path = os.path.join(str(settings.export_dir), filename)
    if not os.path.exists(file_path):
        return JSONResponse(status_code=404, content={"status": "error", "error": "File not found"})
    return FileResponse(path=file_path, media_type="application/octet-stream", filename=filename)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
