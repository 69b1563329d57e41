"""
Workspace: project directories, file I/O and patching, syntax checks, shell.

All paths handed in by agents are relative to the project directory and may
not escape it.
"""

import asyncio
import json
import logging
import os
import py_compile
import re
import signal
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

PROJECT_TIMESTAMP = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})$")

IGNORED_DIRS = {"node_modules", ".git", "__pycache__", ".venv", "venv", "dist", "build", ".next", ".cache"}

# Checker command per extension; {path} is the absolute file path
SYNTAX_CHECKS = {
    ".js": "node --check {path}",
    ".go": "go vet {path}",
    ".rs": "rustc --crate-type lib --emit=metadata -o /dev/null {path}",
    ".php": "php -l {path}",
    ".rb": "ruby -c {path}",
    ".ts": "tsc --noEmit {path}",
}


class CommandResult:
    def __init__(self, success: bool, output: str, error: str = "", exit_code: Optional[int] = None):
        self.success = success
        self.output = output
        self.error = error
        self.exit_code = exit_code


class Workspace:
    """A directory of projects, plus the one currently being worked on."""

    def __init__(self, base_dir: Path, project_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir).resolve()
        self.project_dir: Optional[Path] = Path(project_dir).resolve() if project_dir else None

    # ============================================================
    # Projects
    # ============================================================

    async def create_project(self, name: str) -> Path:
        safe_name = re.sub(r"[^a-z0-9]", "_", name.lower())[:20]
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        self.project_dir = self.base_dir / f"{safe_name}_{timestamp}"
        self.project_dir.mkdir(parents=True, exist_ok=True)

        init = await self.run_command("git init && git add . && git commit --allow-empty -m \"Initial commit: Project scaffold\"")
        if not init.success:
            logger.warning(f"Failed to initialize Git: {init.error}")

        logger.info(f"Created new workspace: {self.project_dir}")
        return self.project_dir

    def set_project_dir(self, path: Path):
        self.project_dir = Path(path).resolve()

    def list_projects(self) -> List[Path]:
        """Project directories, newest first (names end in a sortable timestamp)."""
        self.base_dir.mkdir(parents=True, exist_ok=True)
        projects = [p for p in self.base_dir.iterdir() if p.is_dir()]

        def created(p: Path) -> str:
            match = PROJECT_TIMESTAMP.search(p.name)
            return match.group(1) if match else ""

        return sorted(projects, key=lambda p: (created(p), p.name), reverse=True)

    def _require_project(self) -> Path:
        if self.project_dir is None:
            raise RuntimeError("Project not created yet. Call create_project() first.")
        return self.project_dir

    def resolve(self, path: str) -> Path:
        """Resolve path and ensure it stays within the project. Raises ValueError on traversal."""
        root = self._require_project()
        full_path = (root / (path or ".")).resolve()
        if full_path != root and root not in full_path.parents:
            raise ValueError(f"Path traversal blocked: '{path}' resolves outside the project")
        return full_path

    def relative(self, full_path: Path) -> str:
        return full_path.relative_to(self._require_project()).as_posix()

    # ============================================================
    # Files
    # ============================================================

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def read_file(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    def write_file(self, path: str, content: str) -> Path:
        full_path = self.resolve(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        if full_path.suffix.lower() not in (".md", ".markdown"):
            content = clean_code(content)
        full_path.write_text(content, encoding="utf-8")
        return full_path

    def list_files(self, path: str = ".", recursive: bool = True) -> List[str]:
        root = self.resolve(path)
        if not root.is_dir():
            raise FileNotFoundError(f"Directory not found: {path}")
        if not recursive:
            return sorted(p.name for p in root.iterdir())

        files = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
            for name in sorted(filenames):
                files.append(self.relative(Path(dirpath) / name))
        return files

    def apply_patch(self, path: str, search: str, replace: str) -> Dict[str, object]:
        """
        Replace `search` with `replace` in a file.

        1. Exact match on the trimmed search block
        2. Line-by-line match ignoring whitespace and blank lines; the
           replacement is re-indented to the first matched line
        """
        full_path = self.resolve(path)
        content = full_path.read_text(encoding="utf-8")

        clean_search = search.strip()
        if not clean_search:
            return {"success": False, "error": "Search content empty"}

        if clean_search in content:
            full_path.write_text(content.replace(clean_search, replace.strip(), 1), encoding="utf-8")
            return {"success": True}

        content_lines = content.splitlines()
        normalized = [(line.strip(), i) for i, line in enumerate(content_lines) if line.strip()]
        wanted = [line.strip() for line in clean_search.splitlines() if line.strip()]

        for start in range(len(normalized) - len(wanted) + 1):
            if all(normalized[start + j][0] == wanted[j] for j in range(len(wanted))):
                first_line = normalized[start][1]
                last_line = normalized[start + len(wanted) - 1][1]
                indent = re.match(r"^\s*", content_lines[first_line]).group(0)
                replacement = [
                    (indent + line) if line.strip() else ""
                    for line in replace.strip().splitlines()
                ]
                new_lines = content_lines[:first_line] + replacement + content_lines[last_line + 1:]
                full_path.write_text("\n".join(new_lines), encoding="utf-8")
                return {"success": True}

        return {"success": False, "error": "Search content not found (even with robust match)."}

    async def validate_syntax(self, path: str) -> Dict[str, object]:
        full_path = self.resolve(path)
        ext = full_path.suffix

        if ext == ".py":
            try:
                py_compile.compile(str(full_path), doraise=True)
                return {"valid": True}
            except py_compile.PyCompileError as e:
                return {"valid": False, "error": str(e)}

        if ext == ".json":
            try:
                json.loads(full_path.read_text(encoding="utf-8"))
                return {"valid": True}
            except json.JSONDecodeError as e:
                return {"valid": False, "error": str(e)}

        check = SYNTAX_CHECKS.get(ext)
        if check:
            result = await self.run_command(check.format(path=f'"{full_path}"'), timeout=60)
            if not result.success and result.exit_code is not None and result.exit_code != 127:
                return {"valid": False, "error": result.output.strip() or result.error}

        # Unknown type or missing checker, assume valid
        return {"valid": True}

    # ============================================================
    # Shell
    # ============================================================

    async def run_command(self, command: str, timeout: float = 300) -> CommandResult:
        cwd = self._require_project()
        logger.debug(f"Executing in {cwd}: {command[:120]}")
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, "TERM": "dumb", "NO_COLOR": "1"},
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError, AttributeError):
                proc.kill()
            await proc.wait()
            return CommandResult(False, "", f"Command timed out after {timeout}s", exit_code=None)

        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace")
        combined = f"STDOUT:\n{out}\nSTDERR:\n{err}"
        if proc.returncode != 0:
            return CommandResult(False, combined, f"Exit code {proc.returncode}", exit_code=proc.returncode)
        return CommandResult(True, combined, exit_code=0)

    async def git_commit(self, message: str):
        """Commit everything; empty commits and missing git are ignored."""
        safe_message = message.replace('"', "'")
        result = await self.run_command(f'git add . && git commit -m "{safe_message}"', timeout=60)
        if result.success:
            logger.debug(f"Committed: {message}")

    def append_log(self, message: str) -> str:
        log_path = self._require_project() / "PROJECT_LOG.md"
        entry = f"\n## [{datetime.now().strftime('%H:%M:%S')}] Update\n{message}\n"
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(entry)
        return entry


def clean_code(content: str) -> str:
    """
    Strip Markdown fences an agent wrapped around file content.

    When several fenced blocks are present the largest one is the file;
    small ones are usually explanations ("Run this:").
    """
    blocks = re.findall(r"```(?:[\w+\-]*)?[ \t]*\n?([\s\S]*?)```", content)
    if not blocks:
        return content
    largest = max((b.strip() for b in blocks), key=len)
    return largest + "\n"
