"""
CodeGrounds Build Controller: multi-agent phase state machine.

Implements: REQUIREMENTS → ARCHITECTURE → TEST_STRATEGY → CONSTRUCTION →
VERIFICATION → COMPLETE, each phase gated by what the project state store
already holds, so an interrupted build resumes where it stopped.

Construction runs File Tasks in chunks of up to three concurrent tasks,
chunks and phases strictly in order, checkpointing after every file and
marking direct dependents of a rebuilt file STALE.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from codegrounds_agents import build_agents
from codegrounds_config import Config
from codegrounds_errors import (
    CodegroundsError,
    ConstructionFailure,
    InvocationExhausted,
    PlanParseError,
    StepBudgetExceeded,
)
from codegrounds_index import SymbolIndex
from codegrounds_llm import ModelInvoker
from codegrounds_models import BuildOutcome, BuildPhase, FileStatus, FileTask, PhasePlan, extract_json
from codegrounds_state import ProjectStateStore
from codegrounds_tools import ToolExecutor
from codegrounds_workspace import Workspace

logger = logging.getLogger(__name__)

RECHECK_PHRASES = ("recheck", "re-check", "full check", "start over", "from scratch", "rebuild everything")
MAX_CLARIFY_QUESTIONS = 3
CONTEXT_FILE_CHARS = 5000
CONTEXT_TOTAL_CHARS = 40000
CONTEXT_EXTENSIONS = {".js", ".ts", ".jsx", ".tsx", ".py", ".json", ".md", ".html", ".css", ".go", ".rs", ".rb", ".php"}

PLAN_FORMAT = (
    'Output JSON: { "phases": [[{"path": "...", "description": "...", "independent": true}]], '
    '"stack": "...", "setupCommands": ["..."], "runCommand": "..." }\n'
    "Set \"independent\": false for a file that must not be built alongside the others in its phase."
)


def wants_recheck(instruction: str) -> bool:
    text = instruction.lower()
    return any(phrase in text for phrase in RECHECK_PHRASES)


def chunk_tasks(tasks: List[FileTask], size: int) -> List[List[FileTask]]:
    """Group a phase's tasks into chunks of `size`; a non-independent task gets a chunk of its own."""
    chunks: List[List[FileTask]] = []
    current: List[FileTask] = []
    for task in tasks:
        if not task.independent:
            if current:
                chunks.append(current)
                current = []
            chunks.append([task])
            continue
        current.append(task)
        if len(current) >= size:
            chunks.append(current)
            current = []
    if current:
        chunks.append(current)
    return chunks


class BuildController:
    """
    Drives the agent team through one build of one project.

    confirm(plan) -> bool approves the architecture plan (None = auto-approve).
    ask(question) -> str collects clarification answers (None = no clarification).
    agent_factory(tools) -> {role: agent} replaces the configured team.
    """

    def __init__(
        self,
        config: Config,
        invoker: Optional[ModelInvoker] = None,
        workspace: Optional[Workspace] = None,
        confirm: Optional[Callable[[PhasePlan], bool]] = None,
        ask: Optional[Callable[[str], str]] = None,
        agent_factory: Optional[Callable[[ToolExecutor], Dict[str, Any]]] = None,
    ):
        self.config = config
        self.invoker = invoker
        self.workspace = workspace or Workspace(Path(config.projects_dir))
        self.confirm = confirm
        self.ask = ask
        self.agent_factory = agent_factory or (lambda tools: build_agents(config, invoker, tools))

        self.state: Optional[ProjectStateStore] = None
        self.index: Optional[SymbolIndex] = None
        self.tools: Optional[ToolExecutor] = None
        self.agents: Dict[str, Any] = {}
        self.phase: Optional[BuildPhase] = None

    # ============================================================
    # Setup
    # ============================================================

    def _init_project(self, project_dir: Path):
        self.state = ProjectStateStore(project_dir)
        self.state.load()
        self.index = SymbolIndex(project_dir)
        self.index.load()
        self.tools = ToolExecutor(
            self.workspace, self.index, self.state, command_timeout=self.config.command_timeout,
        )
        self.agents = self.agent_factory(self.tools)

    def _enter(self, phase: BuildPhase):
        self.phase = phase
        self.state.update_project(phase=phase.value)
        logger.info(f"\n📍 PHASE: {phase.value.upper()}")

    # ============================================================
    # Main loop
    # ============================================================

    async def run(self, instruction: str, project_dir: Optional[Path] = None) -> BuildOutcome:
        logger.info(f"{'=' * 60}")
        logger.info("🚀 CODEGROUNDS BUILD STARTING")
        logger.info(f"Instruction: {instruction[:200]}")

        resumed = project_dir is not None
        if resumed:
            self.workspace.set_project_dir(Path(project_dir))
            logger.info(f"Resumed workspace: {self.workspace.project_dir}")
        else:
            await self.workspace.create_project(instruction[:20])
        logger.info(f"{'=' * 60}")

        project_path = self.workspace.project_dir
        self._init_project(project_path)
        self.state.update_project(description=instruction)
        outcome = BuildOutcome(project_dir=str(project_path))
        recheck = wants_recheck(instruction)

        self._enter(BuildPhase.REQUIREMENTS)
        requirements = await self._requirements_phase(instruction, resumed, recheck)

        self._enter(BuildPhase.ARCHITECTURE)
        plan = await self._architecture_phase(requirements, resumed, recheck)
        if self.confirm is not None and not self.confirm(plan):
            logger.info("🛑 Build declined by operator")
            self.state.record_event("DECLINED", "Plan declined by operator")
            self.state.save()
            outcome.declined = True
            return outcome

        self._enter(BuildPhase.TEST_STRATEGY)
        await self._test_strategy_phase(plan)

        self._enter(BuildPhase.CONSTRUCTION)
        await self._construction_phase(plan, requirements, instruction, resumed, recheck, outcome)

        self._enter(BuildPhase.VERIFICATION)
        outcome.verified = await self._verification_phase(plan)

        self._enter(BuildPhase.COMPLETE)
        self.workspace.append_log(
            f"Build complete. {plan.file_count} planned files, {len(outcome.failed_files)} failed, "
            f"verified={outcome.verified}"
        )
        await self.workspace.git_commit("CodeGrounds: build complete")
        outcome.completed = True

        if outcome.failed_files:
            logger.warning(f"⚠️  {len(outcome.failed_files)} file(s) failed: {', '.join(sorted(outcome.failed_files))}")
        logger.info("✨ Mission Complete! ✨")
        return outcome

    # ============================================================
    # REQUIREMENTS
    # ============================================================

    async def _requirements_phase(self, instruction: str, resumed: bool, recheck: bool) -> str:
        goals = self.state.goals
        if resumed and goals and not recheck:
            logger.info("  📋 Reusing stored requirements (no recheck requested)")
            return "\n\n".join(goals)

        request = await self._clarify(instruction)
        if resumed:
            prompt = f'Update requirements for: "{request}". Check existing README.md if it exists.'
        else:
            prompt = f'Define requirements for: "{request}". Create a detailed plan.'

        logger.info(f"  🧑‍💼 {self.agents['pm'].name} (PM) is analyzing...")
        requirements = await self._run_with_retries(self.agents["pm"], prompt)
        self.state.set_goals([requirements])
        logger.info("  ✅ Requirements defined")
        return requirements

    async def _clarify(self, instruction: str) -> str:
        """Ask the operator up to three disambiguating questions; answers are merged into the request."""
        if self.ask is None:
            return instruction

        prompt = (
            f'A user asked for: "{instruction}"\n'
            f"List up to {MAX_CLARIFY_QUESTIONS} short questions whose answers would remove real ambiguity "
            "from this request. Output ONLY a JSON array of strings. Output [] if the request is clear."
        )
        try:
            questions = extract_json(await self.agents["manager"].execute(prompt))
        except (PlanParseError, StepBudgetExceeded) as e:
            logger.warning(f"  Clarification skipped: {e}")
            return instruction
        if not isinstance(questions, list):
            return instruction

        answers = []
        for question in [str(q) for q in questions if str(q).strip()][:MAX_CLARIFY_QUESTIONS]:
            answer = (self.ask(question) or "").strip()
            if answer:
                answers.append(f"- Q: {question}\n  A: {answer}")
        if not answers:
            return instruction
        return instruction + "\n\nClarifications:\n" + "\n".join(answers)

    # ============================================================
    # ARCHITECTURE
    # ============================================================

    async def _architecture_phase(self, requirements: str, resumed: bool, recheck: bool) -> PhasePlan:
        stored = self.state.get_architecture()
        if resumed and stored is not None and not recheck:
            listing = "\n".join(self.workspace.list_files()) or "(empty)"
            prompt = (
                f"Stored plan:\n{stored.to_dict()}\n\nFiles currently on disk:\n{listing}\n\n"
                "Is the stored plan still a valid description of this project? "
                "Answer with exactly one word: VALID or STALE."
            )
            verdict = await self._run_with_retries(self.agents["architect"], prompt)
            if "STALE" not in verdict.upper():
                logger.info(f"  📐 Stored plan is still valid: {stored.file_count} files")
                return stored
            logger.info("  📐 Stored plan is stale, re-planning")

        plan = await self._plan_architecture(requirements, resumed)
        self.state.set_architecture(plan)
        self.state.clear_checkpoint()

        logger.info(f"  📐 Plan: {plan.file_count} files in {len(plan.phases)} phases ({plan.stack})")
        for i, phase in enumerate(plan.phases):
            for task in phase:
                logger.info(f"    [{i + 1}] {task.path}")
        return plan

    async def _plan_architecture(self, requirements: str, resumed: bool) -> PhasePlan:
        if resumed:
            prompt = (
                f"Based on requirements: {requirements}\nThe project already exists.\n"
                f"Existing File Contents (Context):\n{self._existing_files_context()}\n\n"
                f"Analyze the changes needed.\n{PLAN_FORMAT}\n"
                "IMPORTANT: List ONLY the files that need to be created or modified. "
                "Do NOT list files that remain unchanged."
            )
        else:
            prompt = (
                f"Based on requirements: {requirements}\nDesign the app.\n{PLAN_FORMAT}\n"
                "Ensure you list ALL necessary files."
            )

        logger.info(f"  🏗️  {self.agents['architect'].name} (Architect) is designing...")
        try:
            return await self._run_with_retries(
                self.agents["architect"], prompt, parse=PhasePlan.from_text, retries=self.config.plan_retries,
            )
        except PlanParseError as e:
            raise PlanParseError(
                f"Architect failed to produce a valid plan after {self.config.plan_retries + 1} attempts: {e}"
            ) from e

    def _existing_files_context(self) -> str:
        parts: List[str] = []
        total = 0
        for path in self.workspace.list_files():
            if Path(path).suffix not in CONTEXT_EXTENSIONS or path.startswith("codegrounds."):
                continue
            try:
                content = self.workspace.read_file(path)[:CONTEXT_FILE_CHARS]
            except (OSError, UnicodeDecodeError):
                continue
            block = f"\n--- FILE: {path} ---\n{content}\n"
            if total + len(block) > CONTEXT_TOTAL_CHARS:
                parts.append(f"\n--- FILE: {path} --- (content omitted)\n")
                continue
            parts.append(block)
            total += len(block)
        return "".join(parts) or "(no files yet)"

    async def _run_with_retries(self, agent, prompt: str, context: Any = None,
                                parse: Optional[Callable[[str], Any]] = None, retries: Optional[int] = None):
        """Run an agent; on StepBudgetExceeded / PlanParseError retry with the error as a hint."""
        retries = self.config.agent_retries if retries is None else retries
        hint = ""
        for attempt in range(retries + 1):
            try:
                text = await agent.execute(prompt + hint, context)
                return parse(text) if parse else text
            except (StepBudgetExceeded, PlanParseError) as e:
                if attempt >= retries:
                    raise
                logger.warning(f"  ⚠️  {agent.name} attempt {attempt + 1}/{retries + 1} failed: {e}. Retrying...")
                hint = f"\n\nPREVIOUS ATTEMPT FAILED: {e}\nCorrect this and try again."

    # ============================================================
    # TEST_STRATEGY
    # ============================================================

    async def _test_strategy_phase(self, plan: PhasePlan):
        if self.state.checkpoint is not None:
            logger.info("  ⏭️  Construction already underway, test skeletons left as they are")
            return

        files = "\n".join(f"- {t.path}: {t.description}" for t in plan.all_files())
        prompt = (
            f"Stack: {plan.stack}\nPlanned files:\n{files}\n\n"
            "Create or update test skeletons ONLY for planned source files that have no tests yet. "
            "Do not implement the source files. Do not run the tests."
        )
        try:
            await self.agents["tester"].execute(prompt)
            logger.info("  🧪 Test skeletons ready")
        except InvocationExhausted:
            raise
        except CodegroundsError as e:
            logger.warning(f"  ⚠️  Test strategy failed, continuing without it: {e}")

    # ============================================================
    # CONSTRUCTION
    # ============================================================

    async def _construction_phase(self, plan: PhasePlan, requirements: str, instruction: str,
                                  resumed: bool, recheck: bool, outcome: BuildOutcome):
        checkpoint = self.state.checkpoint
        start_phase = 0

        if checkpoint is None:
            await self._run_setup(plan)
        else:
            start_phase = min(checkpoint.last_phase_index, len(plan.phases) - 1)
            logger.info(f"  ↩️  Resuming at phase {start_phase + 1} (last file: {checkpoint.last_file_path})")

        for phase_index in range(start_phase, len(plan.phases)):
            tasks = plan.phases[phase_index]
            logger.info(f"\n--- Phase {phase_index + 1}/{len(plan.phases)} ({len(tasks)} files) ---")

            for chunk in chunk_tasks(tasks, self.config.chunk_size):
                results = await asyncio.gather(
                    *(self._construct_file(phase_index, task, plan, requirements, instruction, resumed, recheck)
                      for task in chunk),
                    return_exceptions=True,
                )
                exhausted = None
                for task, result in zip(chunk, results):
                    if isinstance(result, BaseException):
                        if not isinstance(result, Exception):
                            raise result
                        self._record_failure(task, result, outcome)
                        if isinstance(result, InvocationExhausted) and exhausted is None:
                            exhausted = result
                if exhausted is not None:
                    raise exhausted

            await self.workspace.git_commit(f"Phase {phase_index + 1} complete")
            self.workspace.append_log(f"Phase {phase_index + 1} complete: {', '.join(t.path for t in tasks)}")

    async def _run_setup(self, plan: PhasePlan):
        if not plan.setup_commands:
            return
        logger.info("  🔧 DevOps: setting up environment...")
        for cmd in plan.setup_commands:
            try:
                await self.agents["devops"].execute(f"Run setup command: {cmd}. If it fails, try to fix it.")
            except StepBudgetExceeded as e:
                logger.warning(f"  ⚠️  Setup command did not finish: {cmd} ({e})")
        logger.info("  ✅ Environment ready")

    async def _construct_file(self, phase_index: int, task: FileTask, plan: PhasePlan,
                              requirements: str, instruction: str, resumed: bool, recheck: bool = False):
        path = task.path
        status = self.state.get_file_status(path)
        if resumed and not recheck and status is FileStatus.PERFECTED:
            logger.info(f"  ⏭️  {path}: already PERFECTED, skipping")
            return

        context = {
            "path": path,
            "description": task.description,
            "stack": plan.stack,
        }

        if self.workspace.exists(path):
            verdict = await self.agents["manager"].execute(
                f'Does the existing file "{path}" already meet its description?\n'
                f"Description: {task.description}\n"
                "Read it first. Answer with exactly one word: SKIP (it already meets the description) "
                "or REFAC (it needs rework).",
                context,
            )
            license_flag = "SKIP" if "SKIP" in verdict.upper() and "REFAC" not in verdict.upper() else "REFAC"
        else:
            license_flag = "BUILD"

        if license_flag == "SKIP":
            logger.info(f"  ✅ {path}: meets its description, no rebuild needed")
            self.state.set_file_status(path, FileStatus.PERFECTED, "SKIP: already meets its description")
            self.state.set_checkpoint(phase_index, path)
            return

        logger.info(f"  🧱 {path}: {license_flag}")
        action = "Create" if license_flag == "BUILD" else "Rework"
        await self.agents["engineer"].execute(
            f'{action} file: "{path}"\nLicense: {license_flag}\n'
            f"Description: {task.description}\nStack: {plan.stack}\n"
            f"Requirements: {requirements}\nLatest instruction: {instruction}\n\n"
            "Use your tools to write the file.\nIf it depends on other files, check them first.",
            {**context, "license": license_flag},
        )
        if not self.workspace.exists(path):
            raise ConstructionFailure(path, "engineer finished without writing the file")
        self.index.index_file(path, self.workspace.read_file(path))

        audit = await self.agents["auditor"].execute(
            f'Audit "{path}" against its description: {task.description}\n'
            "Answer PASS or FAIL followed by a one-line reason.",
            context,
        )
        passed = "PASS" in audit.upper() and "FAIL" not in audit.upper()
        new_status = FileStatus.PERFECTED if passed else FileStatus.BUILT
        self.state.set_file_status(path, new_status, audit.strip()[:500])
        self.state.set_checkpoint(phase_index, path)
        logger.info(f"  {'✅' if passed else '🟡'} {path}: {new_status.value}")

        stale = self.state.mark_stale(self.index.get_dependents(path))
        if stale:
            logger.info(f"  🔄 {path} changed, dependents now STALE: {', '.join(stale)}")

    def _record_failure(self, task: FileTask, error: Exception, outcome: BuildOutcome):
        failure = error if isinstance(error, ConstructionFailure) else ConstructionFailure(task.path, str(error))
        logger.error(f"  ❌ {task.path}: {failure.reason}")
        outcome.failed_files[task.path] = failure.reason
        self.state.log_bug(task.path, f"Construction failed: {failure.reason}")

    # ============================================================
    # VERIFICATION
    # ============================================================

    async def _verification_phase(self, plan: PhasePlan) -> bool:
        prompt = (
            f'Verify the application "{plan.stack}".\n'
            f"Run Command: {plan.run_command}\n"
            "1. Create a test script if needed.\n"
            "2. Run the app.\n"
            "3. If it fails, analyze the error and fix the files.\n"
            "4. Repeat until success or max retries."
        )
        logger.info(f"  🔄 {self.agents['debugger'].name} (Debugger) is verifying...")
        try:
            await self.agents["debugger"].execute(prompt)
        except StepBudgetExceeded as e:
            logger.warning(f"  ⚠️  Verification did not converge: {e}")
            self.state.record_event("VERIFICATION", f"Did not converge: {e}")
            self.state.save()
            return False
        self.state.record_event("VERIFICATION", "Verification finished")
        self.state.save()
        return True
