"""
Local file system ledger of plans, table runs, validations and procedures
"""

import json
import re
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import structlog

from .models import MigrationPlan, TableMoveResult, TranslatedProcedure, ValidationRecord

logger = structlog.get_logger()

HISTORY_LIMIT = 50


class MigrationLedger:
    """JSON files under <ledger_dir>/<kind>/<key>.json"""

    def __init__(self, ledger_dir: str = "./migration_ledger"):
        self.ledger_dir = Path(ledger_dir)
        self.ledger_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        # Ledger data is run state, not source
        gitignore_path = self.ledger_dir / ".gitignore"
        if not gitignore_path.exists():
            with open(gitignore_path, "w") as f:
                f.write("# sa2pg ledger - don't commit\n*\n!.gitignore\n")

        logger.debug("Ledger initialized", ledger_dir=str(self.ledger_dir))

    def _entry_file(self, kind: str, key: str) -> Path:
        kind_dir = self.ledger_dir / kind
        kind_dir.mkdir(parents=True, exist_ok=True)
        return kind_dir / f"{re.sub(r'[^A-Za-z0-9_.-]', '_', key)}.json"

    def get(self, kind: str, key: str) -> Dict[str, Any]:
        entry_file = self._entry_file(kind, key)
        if not entry_file.exists():
            return {}
        with open(entry_file, "r") as f:
            return json.load(f)

    def put(self, kind: str, key: str, data: Dict[str, Any]):
        entry = {
            **data,
            "_metadata": {
                "updated_at": datetime.now().isoformat(),
                "kind": kind,
                "key": key,
            },
        }
        with self._lock:
            with open(self._entry_file(kind, key), "w") as f:
                json.dump(entry, f, indent=2, default=str)
        logger.debug("Ledger updated", kind=kind, key=key)

    def list_entries(self) -> Dict[str, List[str]]:
        entries = {}
        for kind_dir in self.ledger_dir.iterdir():
            if kind_dir.is_dir() and not kind_dir.name.startswith("."):
                entries[kind_dir.name] = sorted(f.stem for f in kind_dir.glob("*.json"))
        return entries

    def record_plan(self, plan: MigrationPlan):
        self.put("plan", "current", plan.to_dict())

    def record_move(self, result: TableMoveResult):
        """Latest result plus a bounded run history per table"""
        entry = self.get("tables", result.table_name)

        history = entry.get("history", [])
        history.append({
            "timestamp": datetime.now().isoformat(),
            "success": result.success,
            "rows_committed": result.rows_committed,
            "resumed_from": result.resumed_from,
            "execution_time": result.execution_time_seconds,
            "error_message": result.error_message,
        })
        history = history[-HISTORY_LIMIT:]
        success_count = sum(1 for run in history if run["success"])

        self.put("tables", result.table_name, {
            "last_result": asdict(result),
            "history": history,
            "total_runs": len(history),
            "success_rate": success_count / len(history),
        })

    def record_validation(self, record: ValidationRecord):
        self.put("validation", f"{record.kind}-{record.subject}", asdict(record))

    def record_procedure(self, procedure: TranslatedProcedure):
        data = asdict(procedure)
        data["behavior"] = procedure.behavior.value
        self.put("procedures", procedure.name, data)

    def summary(self) -> Dict[str, Any]:
        """Per-table status for the status command"""
        tables = {}
        for name in self.list_entries().get("tables", []):
            entry = self.get("tables", name)
            last = entry.get("last_result", {})
            validation = self.get("validation", f"table-{last.get('table_name', name)}")
            tables[last.get("table_name", name)] = {
                "rows_committed": last.get("rows_committed"),
                "source_rows": last.get("source_rows"),
                "moved": last.get("success"),
                "validated": validation.get("passed"),
                "mismatches": validation.get("mismatches", []),
                "success_rate": entry.get("success_rate"),
            }

        procedures = {}
        for name in self.list_entries().get("procedures", []):
            entry = self.get("procedures", name)
            procedures[entry.get("name", name)] = {
                "behavior": entry.get("behavior"),
                "manual_review": entry.get("manual_review", []),
            }
        return {"tables": tables, "procedures": procedures}
