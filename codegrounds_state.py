"""
Project state persistence for CodeGrounds.

One JSON record per project (codegrounds.state.json) shared by every agent
and the build controller: goals, architecture plan, per-file status,
checkpoint, bugs, and bounded event / message logs. Saved after every
mutation; last writer wins.
"""

import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from codegrounds_errors import PlanParseError
from codegrounds_models import Checkpoint, FileRecord, FileStatus, PhasePlan

logger = logging.getLogger(__name__)

STATE_FILENAME = "codegrounds.state.json"
MAX_EVENTS = 50
MAX_MESSAGES = 20


def default_state() -> dict:
    return {
        "project": {"name": "", "description": "", "goals": []},
        "architecture": None,
        "files": {},
        "checkpoint": None,
        "qa": {"bugs": [], "testResults": []},
        "history": [],
        "messages": [],
    }


class ProjectStateStore:
    """
    Load-on-start, save-on-every-mutation store for a project directory.

    A missing file is created with the default record; a corrupt one is
    logged and replaced by the default.
    """

    def __init__(self, project_dir: Path):
        self.project_dir = Path(project_dir)
        self.state_file = self.project_dir / STATE_FILENAME
        self.state = default_state()

    def load(self) -> dict:
        if not self.state_file.exists():
            self.state = default_state()
            self.save()
            return self.state

        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("state root is not an object")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load project state, resetting: {e}")
            self.state = default_state()
            self.save()
            return self.state

        # Fill keys an older or partial record may lack
        merged = default_state()
        merged.update(data)
        self.state = merged
        logger.debug(f"State loaded: {len(self.state['files'])} tracked files")
        return self.state

    def save(self):
        self.project_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(self.state, indent=2), encoding="utf-8")
        os.replace(tmp, self.state_file)

    def snapshot(self) -> str:
        return json.dumps(self.state, indent=2)

    # ============================================================
    # Project / goals / architecture
    # ============================================================

    def update_project(self, **details):
        self.state["project"].update(details)
        self.record_event("PROJECT_UPDATE", f"Updated project details: {', '.join(sorted(details))}")
        self.save()

    def set_goals(self, goals: List[str]):
        self.state["project"]["goals"] = list(goals)
        self.record_event("GOALS_UPDATE", "Requirements defined")
        self.save()

    @property
    def goals(self) -> List[str]:
        return list(self.state["project"].get("goals") or [])

    def set_architecture(self, plan: PhasePlan):
        self.state["architecture"] = plan.to_dict()
        self.record_event("ARCH_UPDATE", f"Architecture defined: {plan.file_count} files in {len(plan.phases)} phases")
        self.save()

    def get_architecture(self) -> Optional[PhasePlan]:
        raw = self.state.get("architecture")
        if not raw:
            return None
        try:
            return PhasePlan.from_dict(raw)
        except PlanParseError as e:
            logger.warning(f"Stored architecture is invalid, ignoring it: {e}")
            return None

    # ============================================================
    # Files / checkpoint
    # ============================================================

    def get_file_record(self, path: str) -> Optional[FileRecord]:
        raw = self.state["files"].get(path)
        return FileRecord.from_dict(raw) if raw else None

    def get_file_status(self, path: str) -> Optional[FileStatus]:
        record = self.get_file_record(path)
        return record.status if record else None

    def file_records(self) -> Dict[str, FileRecord]:
        return {path: FileRecord.from_dict(raw) for path, raw in self.state["files"].items()}

    def set_file_status(self, path: str, status: FileStatus, audit: str = ""):
        self.state["files"][path] = FileRecord(status=status, last_audit=audit).to_dict()
        self.save()

    def mark_stale(self, paths: List[str]) -> List[str]:
        """Downgrade PERFECTED / BUILT files to STALE. Returns the paths actually changed."""
        changed = []
        for path in paths:
            record = self.get_file_record(path)
            if record and record.status in (FileStatus.PERFECTED, FileStatus.BUILT):
                self.state["files"][path] = FileRecord(FileStatus.STALE, record.last_audit).to_dict()
                changed.append(path)
        if changed:
            self.record_event("INVALIDATION", f"Marked stale: {', '.join(changed)}")
            self.save()
        return changed

    @property
    def checkpoint(self) -> Optional[Checkpoint]:
        raw = self.state.get("checkpoint")
        return Checkpoint.from_dict(raw) if raw else None

    def set_checkpoint(self, phase_index: int, file_path: str):
        self.state["checkpoint"] = Checkpoint(phase_index, file_path).to_dict()
        self.save()

    def clear_checkpoint(self):
        self.state["checkpoint"] = None
        self.save()

    # ============================================================
    # QA / messages / events
    # ============================================================

    def log_bug(self, file: str, description: str) -> str:
        bug_id = str(int(time.time() * 1000))
        while any(b["id"] == bug_id for b in self.state["qa"]["bugs"]):
            bug_id = str(int(bug_id) + 1)
        self.state["qa"]["bugs"].append({"id": bug_id, "file": file, "description": description, "status": "open"})
        self.record_event("BUG_REPORT", f"Bug found in {file}")
        self.save()
        return bug_id

    def resolve_bug(self, bug_id: str) -> bool:
        for bug in self.state["qa"]["bugs"]:
            if bug["id"] == bug_id:
                bug["status"] = "resolved"
                self.save()
                return True
        return False

    def open_bugs(self) -> List[dict]:
        return [b for b in self.state["qa"]["bugs"] if b.get("status") == "open"]

    def add_message(self, sender: str, recipient: str, content: str):
        messages = self.state["messages"]
        messages.append({
            "timestamp": datetime.now().isoformat(),
            "from": sender,
            "to": recipient,
            "content": content,
        })
        del messages[:-MAX_MESSAGES]
        self.save()

    def record_event(self, event_type: str, message: str):
        """Append to the event history. Callers save; this is part of a larger mutation."""
        history = self.state["history"]
        history.append({"timestamp": datetime.now().isoformat(), "type": event_type, "message": message})
        del history[:-MAX_EVENTS]
