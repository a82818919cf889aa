"""CSV / Excel upload parsing and export of datasets and the rules bundle."""
import csv
import io
import json
import logging
import math
import os
import uuid
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from errors import InputError
from models import CLIENTS, TASKS, WORKERS, Row

logger = logging.getLogger(__name__)

CSV_EXTENSIONS = (".csv",)
EXCEL_EXTENSIONS = (".xlsx", ".xls")


def infer_entity_type(filename: str) -> str:
    name = (filename or "").lower()
    if "client" in name:
        return CLIENTS
    if "worker" in name:
        return WORKERS
    return TASKS


def _clean_data(data: List[Dict[str, Any]]) -> List[Row]:
    """Replace NaN/inf leftovers with "" so rows stay JSON serializable."""
    cleaned_data = []
    for row in data:
        cleaned_row = {}
        for key, value in row.items():
            if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
                cleaned_row[str(key)] = ""
            elif value is None:
                cleaned_row[str(key)] = ""
            else:
                cleaned_row[str(key)] = value
        cleaned_data.append(cleaned_row)
    return cleaned_data


def read_rows(content: bytes, filename: str, max_size: Optional[int] = None) -> List[Row]:
    """Parse an uploaded file into string-valued rows (empty cells become "")."""
    if max_size is not None and len(content) > max_size:
        raise InputError(f"File size too large. Please upload a file smaller than {max_size // (1024 * 1024)}MB.")

    extension = os.path.splitext((filename or "").lower())[1]
    try:
        if extension in CSV_EXTENSIONS:
            df = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False)
        elif extension in EXCEL_EXTENSIONS:
            df = pd.read_excel(io.BytesIO(content), dtype=str, keep_default_na=False)
        else:
            raise InputError("Please upload a valid CSV or Excel file.")
    except pd.errors.EmptyDataError:
        raise InputError("No data found in the file.")
    except (pd.errors.ParserError, ValueError) as exc:
        logger.warning("Could not parse %s: %s", filename, exc)
        raise InputError(f"Could not parse {filename}: {exc}")

    df.columns = [str(column).strip() for column in df.columns]
    rows = _clean_data(df.to_dict(orient="records"))
    if not rows:
        raise InputError("No data found in the file.")
    return rows


# --------- Export ---------

def export_cell(value: Any) -> Any:
    """Text form of a cell that reads back the same after a re-upload."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return ""
    return value


def rows_to_csv(rows: Sequence[Row]) -> str:
    """Quoted-field CSV whose header is the key order of the first row."""
    headers = list(rows[0].keys())
    records = [{key: export_cell(row.get(key)) for key in headers} for row in rows]
    df = pd.DataFrame(records, columns=headers)
    return df.to_csv(index=False, quoting=csv.QUOTE_ALL, na_rep="")


def build_export_files(datasets: Dict[str, Sequence[Row]], bundle: Dict[str, Any]) -> List[Dict[str, Any]]:
    """In-memory export: one CSV per non-empty dataset plus rules.json."""
    files_data = []
    for entity_type in (CLIENTS, WORKERS, TASKS):
        rows = datasets.get(entity_type) or []
        if not rows:
            continue
        content = rows_to_csv(rows)
        files_data.append({
            "name": f"{entity_type}.csv",
            "content": content,
            "type": "text/csv",
            "size": len(content.encode("utf-8")),
        })

    rules_json = json.dumps(bundle, indent=2, default=str)
    files_data.append({
        "name": "rules.json",
        "content": rules_json,
        "type": "application/json",
        "size": len(rules_json.encode("utf-8")),
    })
    return files_data


def export_all(datasets: Dict[str, Sequence[Row]], bundle: Dict[str, Any], output_dir: str = "exports") -> List[str]:
    """Write the export files to ``output_dir`` and return their paths."""
    os.makedirs(output_dir, exist_ok=True)
    # Empty datasets produce no file, so drop the one left by a previous export
    for entity_type in (CLIENTS, WORKERS, TASKS):
        stale = os.path.join(output_dir, f"{entity_type}.csv")
        if not datasets.get(entity_type) and os.path.exists(stale):
            os.remove(stale)
    paths = []
    for file_data in build_export_files(datasets, bundle):
        path = os.path.join(output_dir, file_data["name"])
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(file_data["content"])
        paths.append(path)
    logger.info("Exported %d files to %s", len(paths), output_dir)
    return paths


def save_upload_file(content: bytes, filename: str, upload_dir: str = "uploads") -> str:
    """Keep a copy of the raw upload under a unique name."""
    os.makedirs(upload_dir, exist_ok=True)
    file_id = str(uuid.uuid4())
    file_path = os.path.join(upload_dir, f"{file_id}_{os.path.basename(filename or 'upload')}")
    with open(file_path, "wb") as buffer:
        buffer.write(content)
    return file_path
