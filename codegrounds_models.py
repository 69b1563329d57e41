"""
Data models for CodeGrounds.

Zero external dependencies beyond Python stdlib.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from codegrounds_errors import PlanParseError


class BuildPhase(Enum):
    REQUIREMENTS = "requirements"
    ARCHITECTURE = "architecture"
    TEST_STRATEGY = "test_strategy"
    CONSTRUCTION = "construction"
    VERIFICATION = "verification"
    COMPLETE = "complete"


class FileStatus(Enum):
    BUILT = "BUILT"
    PERFECTED = "PERFECTED"
    STALE = "STALE"


class AgentState(Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"


@dataclass
class AgentRun:
    """Loop state of a single Agent.run() call; never shared between calls."""
    max_steps: int
    state: AgentState = AgentState.AWAITING_MODEL
    steps_taken: int = 0
    text: str = ""


# ============================================================
# Agent inputs
# ============================================================

@dataclass(frozen=True)
class TaskRequest:
    """An instruction plus its context. Never mutated once handed to an agent."""
    instruction: str
    context: Union[str, Dict[str, Any], None] = None

    def render(self) -> str:
        if self.context is None or self.context == "" or self.context == {}:
            context_str = "{}"
        elif isinstance(self.context, str):
            context_str = self.context
        else:
            context_str = json.dumps(self.context, indent=2, default=str)
        return f"CONTEXT:\n{context_str}\n\nTASK:\n{self.instruction}"


@dataclass(frozen=True)
class RoleDescriptor:
    """Static description of an agent role."""
    key: str
    name: str
    title: str
    responsibility: str
    allowed_tools: Optional[FrozenSet[str]] = None  # None = unrestricted
    max_steps: int = 15
    model_id: Optional[str] = None
    credential_index: int = 1

    def system_instruction(self) -> str:
        return f"""
CRITICAL IDENTITY: You are {self.name}, the {self.title}.
YOUR ROLE: {self.responsibility}
CONSTRAINTS: Do NOT deviate from this role. Do NOT perform tasks belonging to other agents.

Collaborative Guidelines:
1. PRECISION: When writing code, ensure interfaces match other files exactly. Use get_file_context to verify dependencies.
2. DEFENSIVE WRITING: Before writing or editing a file, use list_files/read_file to check if it exists or if another agent has already modified it.
3. SURGICAL EDITS: Use replace_in_file for modifications. If it fails with "content not found", read_file the current state and fall back to write_file.
4. SELF-CORRECTION: If you see a syntax warning or tool error, fix it immediately.
5. ATOMICITY: Each tool call should be a complete, logical step.
6. JSON: If asked for JSON, output ONLY valid JSON in a code block.
7. BATCHING: You can execute multiple tools in one turn.
"""


# ============================================================
# Conversation
# ============================================================

@dataclass
class ToolCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    name: str
    content: str

    @property
    def ok(self) -> bool:
        return not self.content.startswith("Error")

    def to_part(self) -> dict:
        return {
            "functionResponse": {
                "name": self.name,
                "response": {
                    "status": "success" if self.ok else "error",
                    "content": self.content,
                },
            }
        }


@dataclass
class Turn:
    kind: str  # "model" or "tool"
    parts: List[dict]

    def to_content(self) -> dict:
        # Function responses travel in a user-role turn on the wire
        return {"role": "model" if self.kind == "model" else "user", "parts": self.parts}


@dataclass
class ConversationHistory:
    """
    Append-only log of model / tool-result turns for one agent loop.

    The opening prompt is pinned separately so follow-up prompts can stay
    minimal. The only removal is prune_to_last_exchange(), which the
    invocation layer calls on context overflow.
    """
    turns: List[Turn] = field(default_factory=list)
    opening: Optional[str] = None

    def __len__(self) -> int:
        return len(self.turns)

    def append_exchange(self, model_parts: List[dict], results: List[ToolResult]):
        self.turns.append(Turn("model", list(model_parts)))
        self.turns.append(Turn("tool", [r.to_part() for r in results]))

    def prune_to_last_exchange(self) -> bool:
        """Drop everything but the last two turns. Returns True if anything was removed."""
        if len(self.turns) <= 2:
            return False
        del self.turns[:-2]
        return True

    def to_contents(self, prompt: str) -> List[dict]:
        contents = []
        if self.opening:
            contents.append({"role": "user", "parts": [{"text": self.opening}]})
        contents.extend(t.to_content() for t in self.turns)
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        return contents


@dataclass
class ModelResponse:
    parts: List[dict] = field(default_factory=list)
    model_id: str = ""
    credential_index: int = 0

    @property
    def tool_calls(self) -> List[ToolCall]:
        calls = []
        for part in self.parts:
            fc = part.get("functionCall")
            if fc:
                calls.append(ToolCall(name=fc.get("name", ""), arguments=dict(fc.get("args") or {})))
        return calls

    @property
    def text(self) -> str:
        return "".join(p.get("text", "") for p in self.parts if "text" in p)


# ============================================================
# Phase plan
# ============================================================

@dataclass(frozen=True)
class FileTask:
    path: str
    description: str
    independent: bool = True


@dataclass
class PhasePlan:
    phases: List[List[FileTask]]
    stack: str
    run_command: str
    setup_commands: List[str] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return sum(len(p) for p in self.phases)

    def all_files(self) -> List[FileTask]:
        return [t for phase in self.phases for t in phase]

    def to_dict(self) -> dict:
        return {
            "phases": [
                [{"path": t.path, "description": t.description, "independent": t.independent} for t in phase]
                for phase in self.phases
            ],
            "stack": self.stack,
            "runCommand": self.run_command,
            "setupCommands": list(self.setup_commands),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PhasePlan":
        if not isinstance(data, dict):
            raise PlanParseError("Plan must be a JSON object")
        for key in ("phases", "stack", "runCommand"):
            if key not in data:
                raise PlanParseError(f"Plan is missing required field '{key}'")
        if not isinstance(data["stack"], str) or not isinstance(data["runCommand"], str):
            raise PlanParseError("'stack' and 'runCommand' must be strings")
        raw_phases = data["phases"]
        if not isinstance(raw_phases, list) or not raw_phases:
            raise PlanParseError("'phases' must be a non-empty list")

        seen = set()
        phases: List[List[FileTask]] = []
        for i, raw_phase in enumerate(raw_phases):
            if not isinstance(raw_phase, list):
                raise PlanParseError(f"Phase {i + 1} must be a list of files")
            phase = []
            for entry in raw_phase:
                if not isinstance(entry, dict) or not isinstance(entry.get("path"), str) or not entry["path"].strip():
                    raise PlanParseError(f"Phase {i + 1} has a file entry without a path")
                path = entry["path"].strip()
                if path in seen:
                    raise PlanParseError(f"Duplicate file path in plan: {path}")
                seen.add(path)
                phase.append(FileTask(
                    path=path,
                    description=str(entry.get("description", "")),
                    independent=bool(entry.get("independent", True)),
                ))
            phases.append(phase)

        setup = data.get("setupCommands") or []
        if not isinstance(setup, list):
            raise PlanParseError("'setupCommands' must be a list")
        return cls(
            phases=phases,
            stack=data["stack"],
            run_command=data["runCommand"],
            setup_commands=[str(c) for c in setup],
        )

    @classmethod
    def from_text(cls, text: str) -> "PhasePlan":
        """Parse a plan out of a model reply (fenced block, or first '{' to last '}')."""
        return cls.from_dict(extract_json(text))


def extract_json(text: str) -> Any:
    """Pull a JSON document out of free model text. Raises PlanParseError."""
    candidate = text or ""
    match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", candidate)
    if match:
        candidate = match.group(1)
    else:
        first = candidate.find("{")
        last = candidate.rfind("}")
        if first != -1 and last > first:
            candidate = candidate[first:last + 1]
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise PlanParseError(f"JSON Parse Failed: {e}") from e


# ============================================================
# Persisted progress
# ============================================================

@dataclass
class FileRecord:
    status: FileStatus
    last_audit: str = ""
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {"status": self.status.value, "lastAuditText": self.last_audit, "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, data: dict) -> "FileRecord":
        return cls(
            status=FileStatus(data.get("status", "BUILT")),
            last_audit=data.get("lastAuditText", ""),
            updated_at=data.get("updatedAt", ""),
        )


@dataclass
class Checkpoint:
    last_phase_index: int
    last_file_path: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "lastPhaseIndex": self.last_phase_index,
            "lastFilePath": self.last_file_path,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            last_phase_index=int(data.get("lastPhaseIndex", 0)),
            last_file_path=data.get("lastFilePath", ""),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class BuildOutcome:
    project_dir: str
    completed: bool = False
    declined: bool = False
    verified: bool = False
    failed_files: Dict[str, str] = field(default_factory=dict)
