"""
Tool catalog and executor for CodeGrounds agents.

TOOL_DEFINITIONS are Gemini function declarations. ToolExecutor.execute()
never raises: every failure comes back as an "Error: ..." string so the
model can read it and correct itself.
"""

import logging
import re
from typing import Any, Dict, FrozenSet, List, Optional

import httpx

from codegrounds_index import SymbolIndex
from codegrounds_state import ProjectStateStore
from codegrounds_workspace import Workspace

logger = logging.getLogger(__name__)


def _params(properties: Dict[str, dict], required: Optional[List[str]] = None) -> dict:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _str(description: str) -> dict:
    return {"type": "string", "description": description}


TOOL_DEFINITIONS: List[dict] = [
    {
        "name": "read_file",
        "description": "Read the contents of a file. Use this to inspect code, configuration, or text files.",
        "parameters": _params({"path": _str("The relative path to the file.")}, ["path"]),
    },
    {
        "name": "list_files",
        "description": "List files in a directory. Recursive by default.",
        "parameters": _params({
            "path": _str("The directory path (default: .)"),
            "recursive": {"type": "boolean", "description": "List recursively?"},
        }),
    },
    {
        "name": "run_command",
        "description": "Execute a shell command. Use this to run build scripts, tests, installs, or git commands.",
        "parameters": _params({"command": _str("The command to run (e.g., 'npm install', 'ls -la').")}, ["command"]),
    },
    {
        "name": "write_file",
        "description": (
            "Write content to a file. Overwrites existing content. Creates directories if needed. "
            "Automatically updates the symbol index."
        ),
        "parameters": _params({"path": _str("File path."), "content": _str("File content.")}, ["path", "content"]),
    },
    {
        "name": "replace_in_file",
        "description": "Replace a section of a file with new content. Use this for small edits.",
        "parameters": _params({
            "path": _str("File path."),
            "search": _str("The exact content to replace."),
            "replace": _str("The new content."),
        }, ["path", "search", "replace"]),
    },
    {
        "name": "search_files",
        "description": "Search for a regex pattern in files.",
        "parameters": _params({
            "pattern": _str("Regex pattern."),
            "path": _str("Directory to search (default: .)"),
        }, ["pattern"]),
    },
    {
        "name": "search_symbols",
        "description": "Search the symbol index for functions, classes, variables. Fast and indexed.",
        "parameters": _params({"query": _str("Symbol name or keyword.")}, ["query"]),
    },
    {
        "name": "get_file_context",
        "description": "Get full context of a file including content, symbols, and dependencies.",
        "parameters": _params({"path": _str("File path.")}, ["path"]),
    },
    {
        "name": "fetch_url",
        "description": "Fetch the content of a URL. Use to verify server responses.",
        "parameters": _params({"url": _str("URL to fetch.")}, ["url"]),
    },
    {
        "name": "post_message",
        "description": "Post a message to the shared project log for other agents or the controller to see.",
        "parameters": _params({
            "to": _str("Recipient agent name (Alex, Sarah, Coder, Ops, Fixer, Manager, Tester, Auditor) or 'All'."),
            "content": _str("The message content."),
        }, ["to", "content"]),
    },
]

TOOL_NAMES = [t["name"] for t in TOOL_DEFINITIONS]


def tool_schema(allowed: Optional[FrozenSet[str]] = None) -> dict:
    """Function declarations, restricted to `allowed` when given."""
    if allowed is None:
        return {"functionDeclarations": list(TOOL_DEFINITIONS)}
    return {"functionDeclarations": [t for t in TOOL_DEFINITIONS if t["name"] in allowed]}


MAX_SEARCH_OUTPUT = 8000
MAX_COMMAND_OUTPUT = 10000
MAX_FETCH_CONTENT = 2000

# Safety rails: commands that would wreck the project or the host
PROTECTED_PATTERNS = [
    "rm -rf /",
    "rm -rf ~",
    "rm -rf .git",
    "git clean -fdx",
    "sudo ",
]
PROTECTED_FILES = ["codegrounds.state.json", "codegrounds.index.json"]


class ToolExecutor:
    """Executes tool calls from the model against the current project."""

    def __init__(
        self,
        workspace: Workspace,
        index: Optional[SymbolIndex] = None,
        state: Optional[ProjectStateStore] = None,
        command_timeout: float = 300,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.workspace = workspace
        self.index = index
        self.state = state
        self.command_timeout = command_timeout
        self.http_client = http_client

    async def execute(self, tool_name: str, arguments: dict, caller: str = "Unknown") -> str:
        """Execute a tool and return the result as a string."""
        args = arguments or {}
        try:
            if tool_name == "read_file":
                return self._read_file(args)
            elif tool_name == "list_files":
                return self._list_files(args)
            elif tool_name == "run_command":
                return await self._run_command(args)
            elif tool_name == "write_file":
                return await self._write_file(args)
            elif tool_name == "replace_in_file":
                return await self._replace_in_file(args)
            elif tool_name == "search_files":
                return self._search_files(args)
            elif tool_name == "search_symbols":
                return self._search_symbols(args)
            elif tool_name == "get_file_context":
                return self._get_file_context(args)
            elif tool_name == "fetch_url":
                return await self._fetch_url(args)
            elif tool_name == "post_message":
                return self._post_message(caller, args)
            else:
                return f"Error: Unknown tool {tool_name}"
        except Exception as e:
            logger.debug(f"  TOOL {tool_name} failed for {caller}: {e}")
            return f"Error executing {tool_name}: {e}"

    # ============================================================
    # Files
    # ============================================================

    def _read_file(self, args: dict) -> str:
        path = args.get("path", "")
        if not path:
            return "Error: No path provided"
        if not self.workspace.exists(path):
            return "Error: File not found."
        return self.workspace.read_file(path)

    def _list_files(self, args: dict) -> str:
        recursive = args.get("recursive", True)
        files = self.workspace.list_files(args.get("path") or ".", recursive=recursive is not False)
        return "\n".join(files) if files else "No files found."

    async def _write_file(self, args: dict) -> str:
        path = args.get("path", "")
        if not path:
            return "Error: No path provided"
        self.workspace.write_file(path, args.get("content", ""))
        logger.debug(f"  TOOL write_file: {path}")
        warning = await self._after_write(path, "Syntax error detected")
        return f"Successfully wrote to {path}{warning}"

    async def _replace_in_file(self, args: dict) -> str:
        path = args.get("path", "")
        if not path or not self.workspace.exists(path):
            return "Error: File not found."
        result = self.workspace.apply_patch(path, args.get("search", ""), args.get("replace", ""))
        if not result["success"]:
            return f"Error: {result['error']}"
        logger.debug(f"  TOOL replace_in_file: {path}")
        warning = await self._after_write(path, "Syntax error detected after edit")
        return f"Successfully replaced content in {path}{warning}"

    async def _after_write(self, path: str, label: str) -> str:
        """Re-index the file and syntax-check it. A failed check is a warning, not an error."""
        if self.index is not None:
            self.index.index_file(path, self.workspace.read_file(path))
        check = await self.workspace.validate_syntax(path)
        if not check["valid"]:
            logger.debug(f"  Syntax warning for {path}: {check.get('error')}")
            return f"\n⚠️  WARNING: {label}:\n{check.get('error')}"
        return ""

    # ============================================================
    # Shell / search
    # ============================================================

    async def _run_command(self, args: dict) -> str:
        command = args.get("command", "")
        if not command:
            return "Error: No command provided"

        cmd_lower = command.lower().strip()
        for pattern in PROTECTED_PATTERNS:
            if pattern in cmd_lower:
                return f"Error: Blocked dangerous command: '{command[:80]}'"
        if "rm " in cmd_lower:
            for pf in PROTECTED_FILES:
                if pf in command:
                    return f"Error: Cannot delete protected project file: {pf}"

        logger.debug(f"  TOOL run_command: {command[:100]}")
        result = await self.workspace.run_command(command, timeout=self.command_timeout)
        if result.exit_code is None and not result.success:
            return f"Error: {result.error}"

        output = result.output
        if len(output) > MAX_COMMAND_OUTPUT:
            output = output[:5000] + "\n\n... (truncated) ...\n\n" + output[-3000:]
        if not result.success:
            return f"Execution Failed: {result.error}\n{output}"
        return output

    def _search_files(self, args: dict) -> str:
        pattern = args.get("pattern", "")
        if not pattern:
            return "Error: No pattern provided"
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            return f"Error: Invalid regex: {e}"

        root = args.get("path") or "."
        lines: List[str] = []
        for rel in self.workspace.list_files(root):
            if rel in PROTECTED_FILES or rel.endswith("package-lock.json"):
                continue
            try:
                text = self.workspace.read_file(rel)
            except (UnicodeDecodeError, OSError):
                continue
            for n, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    lines.append(f"{rel}:{n}: {line.strip()}")

        if not lines:
            return "No matches found."
        output = "\n".join(lines)
        if len(output) > MAX_SEARCH_OUTPUT:
            return output[:MAX_SEARCH_OUTPUT] + "\n... (Truncated)"
        return output

    def _search_symbols(self, args: dict) -> str:
        if self.index is None:
            return "Error: Symbol index not active."
        query = args.get("query", "")
        hits = self.index.search(query)
        if hits:
            return "Found symbols:\n" + "\n".join(
                f"{h['name']} ({h['type']}) in {h['file']}: {h['signature']}" for h in hits[:50]
            )
        files = self.index.get_relevant_files(query)
        if not files:
            return "No relevant symbols found in the symbol index."
        return "Found relevant symbols in:\n" + "\n".join(files)

    def _get_file_context(self, args: dict) -> str:
        content = self._read_file(args)
        if content.startswith("Error"):
            return content
        path = args["path"]
        context = f"--- FILE: {path} ---\n{content}\n"
        if self.index is not None:
            context += f"\nSymbols defined: {', '.join(self.index.symbols_for(path))}"
            context += f"\nDependencies: {', '.join(self.index.get_dependencies(path))}"
        return context

    # ============================================================
    # Network / collaboration
    # ============================================================

    async def _fetch_url(self, args: dict) -> str:
        url = args.get("url", "")
        if not url:
            return "Error: No url provided"
        try:
            if self.http_client is not None:
                resp = await self.http_client.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=30) as client:
                    resp = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            return f"Error: Fetch failed: {e}"
        text = resp.text
        suffix = "..." if len(text) > MAX_FETCH_CONTENT else ""
        return f"Status: {resp.status_code}\nContent:\n{text[:MAX_FETCH_CONTENT]}{suffix}"

    def _post_message(self, caller: str, args: dict) -> str:
        if self.state is None:
            return "Error: Project state not active."
        to = args.get("to") or "All"
        content = args.get("content", "")
        self.state.add_message(caller, to, content)
        self.workspace.append_log(f"**{caller} → {to}:** {content}")
        return f"Message posted to {to}."
