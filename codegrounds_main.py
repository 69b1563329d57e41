#!/usr/bin/env python3
"""
CodeGrounds CLI entry point.

Usage:
    python3 codegrounds_main.py new "Build a todo app with an Express backend"
    python3 codegrounds_main.py resume
    python3 codegrounds_main.py resume todo_app_2026-01-01T10-00-00 -m "Add dark mode"
    python3 codegrounds_main.py new "Build a CLI timer" --yes -v
"""

import argparse
import asyncio
import copy
import logging
import sys
import traceback
from pathlib import Path
from typing import List, Optional

import httpx
from dotenv import load_dotenv

from codegrounds_config import Config, load_config
from codegrounds_errors import NoCredentialsError
from codegrounds_llm import CredentialPool, ModelInvoker
from codegrounds_models import BuildOutcome, PhasePlan
from codegrounds_orchestrator import BuildController
from codegrounds_workspace import Workspace

logger = logging.getLogger(__name__)


COLORS = {
    'DEBUG': '\033[36m', 'INFO': '\033[32m', 'WARNING': '\033[33m',
    'ERROR': '\033[31m', 'CRITICAL': '\033[35m', 'RESET': '\033[0m',
}


class ColorFormatter(logging.Formatter):
    """Colours the level name on the console; the record itself is left untouched for other handlers."""

    def format(self, record):
        colored = copy.copy(record)
        color = COLORS.get(record.levelname, '')
        colored.levelname = f"{color}{record.levelname:<8}{COLORS['RESET']}"
        return super().format(colored)


def setup_logging(verbose: bool = False, log_file: Path = None):
    """Configure logging with colors."""
    level = logging.DEBUG if verbose else logging.INFO

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ColorFormatter(
        '%(asctime)s │ %(levelname)s │ %(name)s │ %(message)s',
        datefmt='%H:%M:%S'
    ))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            '%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s'
        ))
        root.addHandler(fh)

    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)


# ============================================================
# Interactive prompts
# ============================================================

def _prompt(message: str, default: str = "") -> str:
    try:
        answer = input(message)
    except EOFError:
        return default
    return answer.strip() or default


def confirm_plan(plan: PhasePlan) -> bool:
    print("\n📋 Plan:")
    for i, phase in enumerate(plan.phases):
        for task in phase:
            print(f"  [{i + 1}] {task.path}")
    print(f"  Stack: {plan.stack}")
    print(f"  Run:   {plan.run_command}")
    return _prompt("Start Build? [Y/n] ", "y").lower() in ("y", "yes")


def ask_question(question: str) -> str:
    return _prompt(f"❓ {question}\n> ")


def select_project(workspace: Workspace, name: Optional[str]) -> Optional[Path]:
    """Resolve a project name or path; without one, let the operator pick from the list."""
    if name:
        candidate = Path(name)
        if candidate.is_dir():
            return candidate.resolve()
        candidate = workspace.base_dir / name
        return candidate if candidate.is_dir() else None

    projects = workspace.list_projects()
    if not projects:
        return None
    print("\n📂 Projects:")
    for i, project in enumerate(projects, 1):
        print(f"  {i}. {project.name}")
    choice = _prompt("Select a project to resume [1]: ", "1")
    if not choice.isdigit() or not 1 <= int(choice) <= len(projects):
        return None
    return projects[int(choice) - 1]


# ============================================================
# Run
# ============================================================

async def run_build(config: Config, instruction: str, project_dir: Optional[Path],
                    assume_yes: bool) -> BuildOutcome:
    async with httpx.AsyncClient(timeout=config.request_timeout) as client:
        pool = CredentialPool.from_config(config, client=client)
        invoker = ModelInvoker.from_config(config, pool)
        controller = BuildController(
            config,
            invoker,
            workspace=Workspace(Path(config.projects_dir)),
            confirm=None if assume_yes else confirm_plan,
            ask=None if assume_yes else ask_question,
        )
        return await controller.run(instruction, project_dir=project_dir)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codegrounds",
        description="CodeGrounds: Autonomous Multi-Agent Coding Studio",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s new "Build a todo app with an Express backend"
  %(prog)s resume
  %(prog)s resume my_project_2026-01-01T10-00-00 -m "Add dark mode"
  %(prog)s new "Build a CLI timer" --yes --config codegrounds.json -v
        """
    )
    parser.add_argument(
        "--config", type=Path, default=None,
        help="Configuration JSON file path"
    )
    parser.add_argument(
        "--projects-dir", type=Path, default=None,
        help="Directory holding projects (default: from config, 'projects')"
    )
    parser.add_argument(
        "--yes", "-y", action="store_true",
        help="Skip clarifying questions and plan approval"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable verbose/debug logging"
    )
    parser.add_argument(
        "--log-file", type=Path, default=None,
        help="Write logs to file"
    )

    sub = parser.add_subparsers(dest="action")
    new = sub.add_parser("new", help="Create a new project")
    new.add_argument("instruction", nargs="?", help="What the team should build")

    resume = sub.add_parser("resume", help="Resume an existing project")
    resume.add_argument("project", nargs="?", help="Project name or path (default: choose from a list)")
    resume.add_argument("--message", "-m", dest="instruction", default=None,
                        help="What to update, change or add")
    return parser


def main(argv: Optional[List[str]] = None):
    load_dotenv(Path.cwd() / ".env")

    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.action:
        parser.error("Must choose an action: new or resume")

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    config = load_config(args.config)
    if args.projects_dir is not None:
        config.projects_dir = str(args.projects_dir)

    if not config.has_credentials():
        logger.error("❌ No Gemini API keys found. Set GEMINI_API_KEY or GEMINI_API_KEY_1..6 (a .env file works).")
        sys.exit(1)

    try:
        project_dir = None
        if args.action == "resume":
            project_dir = select_project(Workspace(Path(config.projects_dir)), args.project)
            if project_dir is None:
                logger.error("❌ No project to resume")
                sys.exit(1)
            instruction = args.instruction or _prompt("What would you like to update/change/add? ")
        else:
            instruction = args.instruction or _prompt("What would you like the team to build? ")

        if not instruction:
            parser.error("An instruction is required")

        outcome = asyncio.run(run_build(config, instruction, project_dir, args.yes))
        if outcome.declined:
            logger.info("Build declined, nothing was constructed.")
        else:
            logger.info(f"📁 Project: {outcome.project_dir}")
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("\n⚠️ Interrupted by user")
        sys.exit(130)
    except NoCredentialsError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"❌ System Error: {e}")
        if config.debug:
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
