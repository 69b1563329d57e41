"""
Tests for the agent tool-calling loop: step budgets, grace extension,
sequential tool execution and tool filtering.
"""

import asyncio

import pytest

from codegrounds_agents import Agent, build_agents
from codegrounds_config import READ_ONLY_TOOLS, default_config
from codegrounds_errors import FatalInvocationError, StepBudgetExceeded
from codegrounds_models import AgentState, ModelResponse, RoleDescriptor, TaskRequest
from codegrounds_tools import TOOL_NAMES


def role(max_steps=15, allowed_tools=None):
    return RoleDescriptor(
        key="engineer", name="Coder", title="Lead Developer",
        responsibility="You write code.", allowed_tools=allowed_tools,
        max_steps=max_steps, model_id="gemini-1.5-flash", credential_index=4,
    )


def call(name, **args):
    return {"functionCall": {"name": name, "args": args}}


class ScriptedInvoker:
    """Replays model turns; once the script runs out it keeps asking for a tool."""

    def __init__(self, turns=None):
        self.turns = list(turns or [])
        self.requests = []

    async def invoke(self, prompt, system_instruction="", model_id=None, credential_index=1,
                     tool_schema=None, history=None):
        self.requests.append({
            "prompt": prompt,
            "system": system_instruction,
            "model": model_id,
            "key": credential_index,
            "schema": tool_schema,
            "history_len": len(history),
            "opening": history.opening,
        })
        parts = self.turns.pop(0) if self.turns else [call("list_files")]
        return ModelResponse(parts=parts, model_id=model_id or "")


class RecordingTools:
    def __init__(self):
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def execute(self, name, arguments, caller="Unknown"):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0)
        self.calls.append((name, dict(arguments), caller))
        self.active -= 1
        if name == "read_file" and arguments.get("path") == "missing.js":
            return "Error: File not found."
        return f"{name} ok"


# ============================================================
# Step budget
# ============================================================

def test_budget_of_100_runs_exactly_100_steps():
    invoker = ScriptedInvoker()
    agent = Agent(role(max_steps=100), invoker, RecordingTools())

    with pytest.raises(StepBudgetExceeded) as exc_info:
        asyncio.run(agent.execute("loop forever"))

    assert len(invoker.requests) == 100
    assert exc_info.value.steps == 100
    assert "[Coder] Exceeded max tool steps (100)." == str(exc_info.value)


def test_grace_extension_adds_five_steps_below_100():
    invoker = ScriptedInvoker()
    agent = Agent(role(max_steps=97), invoker, RecordingTools())

    with pytest.raises(StepBudgetExceeded) as exc_info:
        asyncio.run(agent.execute("loop forever"))

    assert len(invoker.requests) == 102
    assert exc_info.value.steps == 102


def test_grace_extension_recurs_until_reaching_100():
    invoker = ScriptedInvoker()
    agent = Agent(role(max_steps=15), invoker, RecordingTools())

    with pytest.raises(StepBudgetExceeded):
        asyncio.run(agent.execute("loop forever"))

    assert len(invoker.requests) == 100


def test_text_answer_ends_loop():
    invoker = ScriptedInvoker([
        [call("read_file", path="app.js")],
        [{"text": "All done."}],
    ])
    agent = Agent(role(), invoker, RecordingTools())

    run = asyncio.run(agent.run("Write app.js"))

    assert run.text == "All done."
    assert run.steps_taken == 2
    assert run.state is AgentState.DONE


def test_concurrent_runs_keep_their_own_step_counts():
    class HistoryInvoker:
        """Asks for a tool until three exchanges are in history, then answers."""

        async def invoke(self, prompt, history=None, **kwargs):
            await asyncio.sleep(0)
            if len(history) < 6:
                return ModelResponse(parts=[call("list_files")])
            return ModelResponse(parts=[{"text": f"done after {len(history)} turns"}])

    agent = Agent(role(), HistoryInvoker(), RecordingTools())

    async def run_three():
        return await asyncio.gather(*(agent.run(f"task {n}") for n in range(3)))

    runs = asyncio.run(run_three())

    assert [r.steps_taken for r in runs] == [4, 4, 4]
    assert all(r.state is AgentState.DONE for r in runs)
    assert all(r.max_steps == 15 for r in runs)


def test_text_answer_on_last_step_is_returned():
    invoker = ScriptedInvoker([[call("list_files")], [call("list_files")], [{"text": "finished"}]])
    agent = Agent(role(max_steps=3), invoker, RecordingTools())

    assert asyncio.run(agent.execute("task")) == "finished"


# ============================================================
# Prompts and history
# ============================================================

def test_first_prompt_carries_context_then_continue():
    invoker = ScriptedInvoker([[call("list_files")], [{"text": "done"}]])
    agent = Agent(role(), invoker, RecordingTools())

    asyncio.run(agent.execute("Build the API", {"stack": "express"}))

    first, second = invoker.requests
    assert first["prompt"].startswith("CONTEXT:\n{")
    assert '"stack": "express"' in first["prompt"]
    assert first["prompt"].endswith("TASK:\nBuild the API")
    assert first["history_len"] == 0
    assert second["prompt"] == "Continue."
    assert second["history_len"] == 2
    assert second["opening"] == first["prompt"]
    assert first["model"] == "gemini-1.5-flash"
    assert first["key"] == 4
    assert "CRITICAL IDENTITY: You are Coder, the Lead Developer." in first["system"]


def test_task_request_is_accepted_directly():
    invoker = ScriptedInvoker([[{"text": "ok"}]])
    agent = Agent(role(), invoker, RecordingTools())

    asyncio.run(agent.execute(TaskRequest("Do it", "plain context")))

    assert invoker.requests[0]["prompt"] == "CONTEXT:\nplain context\n\nTASK:\nDo it"


# ============================================================
# Tool execution
# ============================================================

def test_tool_calls_run_sequentially_in_order():
    invoker = ScriptedInvoker([
        [
            call("read_file", path="a.js"),
            call("write_file", path="b.js", content="x"),
            call("read_file", path="missing.js"),
            call("run_command", command="npm test"),
        ],
        [{"text": "done"}],
    ])
    tools = RecordingTools()
    agent = Agent(role(), invoker, tools)

    asyncio.run(agent.execute("task"))

    assert [(name, args.get("path") or args.get("command")) for name, args, _ in tools.calls] == [
        ("read_file", "a.js"),
        ("write_file", "b.js"),
        ("read_file", "missing.js"),
        ("run_command", "npm test"),
    ]
    assert tools.max_active == 1
    assert all(caller == "Coder" for _, _, caller in tools.calls)


def test_tool_results_are_batched_into_one_turn():
    invoker = ScriptedInvoker([
        [call("read_file", path="a.js"), call("read_file", path="missing.js")],
        [{"text": "done"}],
    ])
    captured = {}

    original_invoke = invoker.invoke

    async def capturing_invoke(prompt, **kwargs):
        if prompt == "Continue.":
            captured["turns"] = list(kwargs["history"].turns)
        return await original_invoke(prompt, **kwargs)

    invoker.invoke = capturing_invoke
    asyncio.run(Agent(role(), invoker, RecordingTools()).execute("task"))

    model_turn, tool_turn = captured["turns"]
    assert model_turn.kind == "model"
    assert tool_turn.kind == "tool"
    responses = [p["functionResponse"] for p in tool_turn.parts]
    assert [r["response"]["status"] for r in responses] == ["success", "error"]
    assert responses[1]["response"]["content"] == "Error: File not found."


def test_agent_without_tools_reports_error_to_model():
    invoker = ScriptedInvoker([[call("read_file", path="a.js")], [{"text": "ok"}]])
    agent = Agent(role(), invoker, tools=None)

    assert asyncio.run(agent.execute("task")) == "ok"
    assert invoker.requests[0]["schema"] is None


def test_restricted_role_sees_only_allowed_tools():
    invoker = ScriptedInvoker([[{"text": "ok"}]])
    agent = Agent(role(allowed_tools=READ_ONLY_TOOLS), invoker, RecordingTools())

    asyncio.run(agent.execute("judge"))

    names = {d["name"] for d in invoker.requests[0]["schema"]["functionDeclarations"]}
    assert names == set(READ_ONLY_TOOLS)


def test_unrestricted_role_sees_full_catalog():
    invoker = ScriptedInvoker([[{"text": "ok"}]])
    asyncio.run(Agent(role(), invoker, RecordingTools()).execute("build"))

    names = [d["name"] for d in invoker.requests[0]["schema"]["functionDeclarations"]]
    assert names == TOOL_NAMES


def test_invocation_failure_propagates():
    class FailingInvoker:
        async def invoke(self, *args, **kwargs):
            raise FatalInvocationError("[401] API key not valid", "gemini-1.5-pro", 1)

    agent = Agent(role(), FailingInvoker(), RecordingTools())
    with pytest.raises(FatalInvocationError):
        asyncio.run(agent.execute("task"))


def test_build_agents_creates_configured_team():
    agents = build_agents(default_config(), ScriptedInvoker(), RecordingTools())

    assert set(agents) == {"pm", "architect", "devops", "engineer", "debugger", "manager", "tester", "auditor"}
    assert agents["engineer"].role.max_steps == 30
    assert agents["debugger"].role.credential_index == 5
    assert agents["manager"].role.allowed_tools == READ_ONLY_TOOLS
