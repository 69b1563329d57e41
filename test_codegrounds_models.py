"""
Tests for data models: plan parsing/validation, history, responses.
"""

import pytest

from codegrounds_errors import PlanParseError
from codegrounds_models import (
    ConversationHistory,
    FileRecord,
    FileStatus,
    ModelResponse,
    PhasePlan,
    TaskRequest,
    ToolResult,
    extract_json,
)

PLAN_TEXT = """Here is the design:
```json
{
  "phases": [
    [{"path": "package.json", "description": "deps"}],
    [{"path": "server.js", "description": "express app", "independent": false},
     {"path": "public/index.html", "description": "page"}]
  ],
  "stack": "Node.js + Express",
  "setupCommands": ["npm install"],
  "runCommand": "node server.js"
}
```
Let me know if you need changes."""


# ============================================================
# Phase plan
# ============================================================

def test_plan_from_fenced_text():
    plan = PhasePlan.from_text(PLAN_TEXT)

    assert plan.stack == "Node.js + Express"
    assert plan.run_command == "node server.js"
    assert plan.setup_commands == ["npm install"]
    assert plan.file_count == 3
    assert [t.path for t in plan.all_files()] == ["package.json", "server.js", "public/index.html"]
    assert plan.phases[1][0].independent is False
    assert plan.phases[1][1].independent is True


def test_plan_from_bare_braces():
    plan = PhasePlan.from_text('Sure! {"phases": [[{"path": "a.py"}]], "stack": "py", "runCommand": "python a.py"} done')

    assert plan.phases[0][0].path == "a.py"
    assert plan.setup_commands == []


def test_plan_round_trips_through_dict():
    plan = PhasePlan.from_text(PLAN_TEXT)
    assert PhasePlan.from_dict(plan.to_dict()) == plan


@pytest.mark.parametrize("payload,message", [
    ('{"phases": [[{"path": "a"}]], "stack": "x"}', "runCommand"),
    ('{"phases": [], "stack": "x", "runCommand": "y"}', "non-empty"),
    ('{"phases": [{"path": "a"}], "stack": "x", "runCommand": "y"}', "list of files"),
    ('{"phases": [[{"description": "no path"}]], "stack": "x", "runCommand": "y"}', "without a path"),
    ('{"phases": [[{"path": "a"}], [{"path": "a"}]], "stack": "x", "runCommand": "y"}', "Duplicate"),
    ('{"phases": [[{"path": "a"}]], "stack": 3, "runCommand": "y"}', "must be strings"),
    ('{"phases": [[{"path": "a"}]], "stack": "x", "runCommand": "y", "setupCommands": "npm i"}', "setupCommands"),
    ('[1, 2, 3]', "JSON object"),
])
def test_invalid_plans_are_rejected(payload, message):
    with pytest.raises(PlanParseError) as exc_info:
        PhasePlan.from_text(payload)
    assert message in str(exc_info.value)


def test_unparseable_text_is_plan_parse_error_and_value_error():
    with pytest.raises(ValueError):
        PhasePlan.from_text("I could not design this app.")


def test_extract_json_list():
    assert extract_json('```json\n["Which database?", "Auth needed?"]\n```') == ["Which database?", "Auth needed?"]


# ============================================================
# Requests / history / responses
# ============================================================

def test_task_request_render():
    assert TaskRequest("Do it").render() == "CONTEXT:\n{}\n\nTASK:\nDo it"
    rendered = TaskRequest("Do it", {"path": "a.js"}).render()
    assert rendered == 'CONTEXT:\n{\n  "path": "a.js"\n}\n\nTASK:\nDo it'


def test_history_prune_keeps_last_exchange():
    history = ConversationHistory(opening="CONTEXT:\n{}\n\nTASK:\nx")
    for i in range(3):
        history.append_exchange([{"text": f"model {i}"}], [ToolResult("list_files", f"result {i}")])

    assert len(history) == 6
    assert history.prune_to_last_exchange() is True
    assert len(history) == 2
    assert history.turns[0].parts == [{"text": "model 2"}]
    assert history.prune_to_last_exchange() is False

    contents = history.to_contents("Continue.")
    assert [c["role"] for c in contents] == ["user", "model", "user", "user"]
    assert contents[-1]["parts"] == [{"text": "Continue."}]


def test_tool_result_status():
    assert ToolResult("read_file", "hello").to_part()["functionResponse"]["response"]["status"] == "success"
    assert ToolResult("read_file", "Error: File not found.").ok is False


def test_model_response_tool_calls_and_text():
    response = ModelResponse(parts=[
        {"text": "Let me look. "},
        {"functionCall": {"name": "read_file", "args": {"path": "a.js"}}},
        {"functionCall": {"name": "list_files"}},
        {"text": "Then write."},
    ])

    assert [(c.name, c.arguments) for c in response.tool_calls] == [("read_file", {"path": "a.js"}), ("list_files", {})]
    assert response.text == "Let me look. Then write."


def test_file_record_dict_keys():
    record = FileRecord(FileStatus.PERFECTED, "PASS", "2026-01-01T00:00:00")
    assert record.to_dict() == {"status": "PERFECTED", "lastAuditText": "PASS", "updatedAt": "2026-01-01T00:00:00"}
    assert FileRecord.from_dict(record.to_dict()) == record
