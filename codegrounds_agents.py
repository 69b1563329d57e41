"""
Agent loop for CodeGrounds.

An Agent turns one TaskRequest into a bounded series of model calls and
tool invocations:
- the model asks for tools → run them one by one, in order, feed results back
- the model answers with text only → that text is the result
"""

import json
import logging
from typing import Any, Dict, Optional, Union

from codegrounds_config import Config
from codegrounds_errors import StepBudgetExceeded
from codegrounds_llm import ModelInvoker
from codegrounds_models import AgentRun, AgentState, ConversationHistory, RoleDescriptor, TaskRequest, ToolResult
from codegrounds_tools import ToolExecutor, tool_schema

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = "Continue."
GRACE_STEPS = 5
GRACE_CEILING = 100


class Agent:
    def __init__(self, role: RoleDescriptor, invoker: ModelInvoker, tools: Optional[ToolExecutor] = None):
        self.role = role
        self.invoker = invoker
        self.tools = tools

    @property
    def name(self) -> str:
        return self.role.name

    def __repr__(self) -> str:
        return f"Agent({self.role.key}: {self.role.name})"

    async def execute(self, task: Union[str, TaskRequest], context: Any = None) -> str:
        """Run the loop and return the model's final text."""
        run = await self.run(task, context)
        return run.text

    async def run(self, task: Union[str, TaskRequest], context: Any = None) -> AgentRun:
        """
        Run the tool-calling loop until the model answers with text.

        Every call gets its own AgentRun, so one Agent can serve several
        concurrent file tasks. Raises StepBudgetExceeded when the (possibly
        extended) step budget runs out; invocation failures propagate unchanged.
        """
        request = task if isinstance(task, TaskRequest) else TaskRequest(task, context)
        system_instruction = self.role.system_instruction()
        schema = tool_schema(self.role.allowed_tools) if self.tools is not None else None
        history = ConversationHistory()
        run = AgentRun(max_steps=self.role.max_steps)

        i = 0
        while i < run.max_steps:
            run.state = AgentState.AWAITING_MODEL
            prompt = request.render() if i == 0 else CONTINUE_PROMPT
            try:
                response = await self.invoker.invoke(
                    prompt,
                    system_instruction=system_instruction,
                    model_id=self.role.model_id,
                    credential_index=self.role.credential_index,
                    tool_schema=schema,
                    history=history,
                )
            except Exception as e:
                logger.error(f"[{self.name}] Error executing task: {e}")
                raise
            run.steps_taken += 1
            if i == 0:
                # History carries the task from here on; follow-ups are just "Continue."
                history.opening = prompt

            # Grace period: an agent still busy on its last step gets a few more
            if i == run.max_steps - 1 and run.max_steps < GRACE_CEILING:
                run.max_steps += GRACE_STEPS
                logger.debug(f"[{self.name}] Step budget extended to {run.max_steps}")

            calls = response.tool_calls
            if not calls:
                run.state = AgentState.DONE
                run.text = response.text
                return run

            run.state = AgentState.EXECUTING_TOOLS
            results = []
            for call in calls:
                logger.debug(f"[{self.name}] 🛠️  {call.name}({_preview(call.arguments)})")
                if self.tools is None:
                    content = "Error: No tools available."
                else:
                    content = await self.tools.execute(call.name, call.arguments, self.name)
                results.append(ToolResult(call.name, content))
            history.append_exchange(response.parts, results)
            i += 1

        raise StepBudgetExceeded(self.name, run.max_steps)


def _preview(arguments: Dict[str, Any], limit: int = 50) -> str:
    text = json.dumps(arguments, default=str)
    return text if len(text) <= limit else text[:limit] + "..."


def build_agents(config: Config, invoker: ModelInvoker, tools: Optional[ToolExecutor]) -> Dict[str, Agent]:
    """One agent per configured role, keyed by role key (pm, architect, ...)."""
    return {key: Agent(descriptor, invoker, tools) for key, descriptor in config.descriptors().items()}
