"""
Record store for recorded actions, schedules and runs.

Plain CRUD with per-call atomicity. Designed with an abstract interface
so a database-backed store can replace the JSON one without touching
the engine.
"""

from typing import Any, Dict, List, Optional, Protocol
from pathlib import Path
import json
import logging
import os
import threading

from workflow_models import Action, Run, Schedule

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    """
    Abstract interface for the record store.

    Implementations must make each call atomic; no cross-call
    transactions are required.
    """

    def batch_create_actions(self, workflow_id: str, actions: List[Action]) -> List[Action]:
        """Persist a full recording for a workflow in one write."""
        ...

    def get_actions(self, workflow_id: str) -> List[Action]:
        """Fetch a workflow's actions ordered by ``order``."""
        ...

    def create_schedule(self, schedule: Schedule) -> Schedule:
        ...

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        ...

    def list_schedules(self, workflow_id: Optional[str] = None) -> List[Schedule]:
        ...

    def update_schedule(self, schedule_id: str, changes: Dict[str, Any]) -> Schedule:
        ...

    def delete_schedule(self, schedule_id: str) -> bool:
        ...

    def save_run(self, run: Run) -> None:
        ...

    def get_run(self, run_id: str) -> Optional[Run]:
        ...


class JSONRecordStore:
    """
    JSON-based implementation of RecordStore.

    Layout under ``output_dir``:
        actions/<workflow_id>.json   one recording per workflow
        schedules.json               all schedules keyed by id
        runs/<run_id>.json           one file per run
    """

    def __init__(self, output_dir: str = "output/automation"):
        """
        Initialize the JSON record store.

        Args:
            output_dir: Directory for store files
        """
        self.output_dir = Path(output_dir)
        self.actions_dir = self.output_dir / "actions"
        self.runs_dir = self.output_dir / "runs"
        self.schedules_file = self.output_dir / "schedules.json"

        self.actions_dir.mkdir(parents=True, exist_ok=True)
        self.runs_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()

    # --- File helpers ---

    @staticmethod
    def _safe_name(identifier: str) -> str:
        if not identifier or any(ch in identifier for ch in "/\\") or identifier.startswith("."):
            raise ValueError(f"Invalid identifier: {identifier!r}")
        return identifier

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return default

    def _load_schedules(self) -> Dict[str, Dict[str, Any]]:
        return self._read_json(self.schedules_file, {})

    # --- Actions ---

    def batch_create_actions(self, workflow_id: str, actions: List[Action]) -> List[Action]:
        path = self.actions_dir / f"{self._safe_name(workflow_id)}.json"
        ordered = sorted(actions, key=lambda a: a.order)
        with self._lock:
            self._write_json(path, [a.model_dump(mode="json") for a in ordered])
        logger.info(f"Saved {len(ordered)} actions for workflow {workflow_id}")
        return ordered

    def get_actions(self, workflow_id: str) -> List[Action]:
        path = self.actions_dir / f"{self._safe_name(workflow_id)}.json"
        with self._lock:
            data = self._read_json(path, [])
        return sorted((Action.model_validate(a) for a in data), key=lambda a: a.order)

    # --- Schedules ---

    def create_schedule(self, schedule: Schedule) -> Schedule:
        with self._lock:
            schedules = self._load_schedules()
            if schedule.id in schedules:
                raise ValueError(f"Schedule already exists: {schedule.id}")
            schedules[schedule.id] = schedule.model_dump(mode="json")
            self._write_json(self.schedules_file, schedules)
        return schedule

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        with self._lock:
            data = self._load_schedules().get(schedule_id)
        return Schedule.model_validate(data) if data else None

    def list_schedules(self, workflow_id: Optional[str] = None) -> List[Schedule]:
        with self._lock:
            schedules = self._load_schedules()
        items = [Schedule.model_validate(s) for s in schedules.values()]
        if workflow_id is not None:
            items = [s for s in items if s.workflow_id == workflow_id]
        return items

    def update_schedule(self, schedule_id: str, changes: Dict[str, Any]) -> Schedule:
        with self._lock:
            schedules = self._load_schedules()
            if schedule_id not in schedules:
                raise KeyError(f"Schedule not found: {schedule_id}")
            merged = {**schedules[schedule_id], **changes, "id": schedule_id}
            updated = Schedule.model_validate(merged)
            schedules[schedule_id] = updated.model_dump(mode="json")
            self._write_json(self.schedules_file, schedules)
        return updated

    def delete_schedule(self, schedule_id: str) -> bool:
        with self._lock:
            schedules = self._load_schedules()
            if schedules.pop(schedule_id, None) is None:
                return False
            self._write_json(self.schedules_file, schedules)
        return True

    # --- Runs ---

    def save_run(self, run: Run) -> None:
        path = self.runs_dir / f"{self._safe_name(run.id)}.json"
        with self._lock:
            self._write_json(path, run.model_dump(mode="json"))

    def get_run(self, run_id: str) -> Optional[Run]:
        path = self.runs_dir / f"{self._safe_name(run_id)}.json"
        with self._lock:
            data = self._read_json(path, None)
        return Run.model_validate(data) if data else None
