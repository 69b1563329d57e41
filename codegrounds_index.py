"""
Symbol / dependency index for a project.

Regex-based and language-agnostic: good enough to answer "where is X
defined" and "who imports this file" for the agents and the invalidation
pass. It is a heuristic, not a resolver, and can both over- and
under-report dependencies.
"""

import json
import logging
import posixpath
import re
from pathlib import Path
from typing import Dict, List, Set

logger = logging.getLogger(__name__)

SYMBOL_PATTERNS = [
    ("function", re.compile(r"(?:async\s+)?(?:function|func|def|fn)\s+([A-Za-z0-9_]+)\s*\(")),
    ("function", re.compile(r"(?:const|let|var)\s+([A-Za-z0-9_]+)\s*=\s*(?:async\s*)?\([^)]*\)\s*=>")),
    ("class", re.compile(r"(?:class|struct|interface|type)\s+([A-Za-z0-9_]+)")),
    ("variable", re.compile(r"(?:const|let|var|static)\s+([A-Za-z0-9_]+)\s*=")),
    ("export", re.compile(r"(?:export|pub)\s+(?:default\s+)?(?:const|let|var|function|class|struct|fn)\s+([A-Za-z0-9_]+)")),
]

IMPORT_PATTERNS = [
    re.compile(r"""import\s+(?:[\w*{}\s,]+\s+from\s+)?['"]([^'"]+)['"]"""),   # ES modules
    re.compile(r"""require\(\s*['"]([^'"]+)['"]\s*\)"""),                      # CommonJS
    re.compile(r"""^\s*from\s+([.\w]+)\s+import\s""", re.MULTILINE),          # Python
    re.compile(r"""^\s*import\s+([\w.]+)\s*$""", re.MULTILINE),               # Python
    re.compile(r"""#include\s+"([^"]+)\""""),                                  # C / C++
    re.compile(r"""<(?:script|link)[^>]+(?:src|href)=['"]([^'"]+)['"]"""),     # HTML
]

RESOLVE_SUFFIXES = ["", ".js", ".jsx", ".ts", ".tsx", ".py", ".json", "/index.js", "/index.ts", "/__init__.py"]


class SymbolIndex:
    """
    Persisted to codegrounds.index.json in the project root:
      symbols: name -> [{file, type, signature}]
      files:   path -> {symbols: [...], imports: [...]}
    """

    def __init__(self, project_dir: Path):
        self.project_dir = Path(project_dir)
        self.index_path = self.project_dir / "codegrounds.index.json"
        self.symbols: Dict[str, List[dict]] = {}
        self.files: Dict[str, dict] = {}

    def load(self):
        if not self.index_path.exists():
            return
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
            self.symbols = data.get("symbols", {})
            self.files = data.get("files", {})
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Symbol index unreadable, starting empty: {e}")
            self.symbols, self.files = {}, {}

    def save(self):
        self.index_path.write_text(
            json.dumps({"symbols": self.symbols, "files": self.files}, indent=2),
            encoding="utf-8",
        )

    def index_file(self, path: str, content: str):
        """(Re-)index one file. Prior entries for the path are replaced."""
        self._forget(path)

        names: List[str] = []
        for kind, pattern in SYMBOL_PATTERNS:
            for match in pattern.finditer(content):
                name = match.group(1)
                self.symbols.setdefault(name, []).append({
                    "file": path, "type": kind, "signature": match.group(0)[:100],
                })
                names.append(name)

        imports: List[str] = []
        for pattern in IMPORT_PATTERNS:
            for match in pattern.finditer(content):
                if match.group(1) not in imports:
                    imports.append(match.group(1))

        self.files[path] = {"symbols": sorted(set(names)), "imports": imports}
        self.save()

    def _forget(self, path: str):
        for name in self.files.get(path, {}).get("symbols", []):
            entries = [e for e in self.symbols.get(name, []) if e["file"] != path]
            if entries:
                self.symbols[name] = entries
            else:
                self.symbols.pop(name, None)
        self.files.pop(path, None)

    # ============================================================
    # Queries
    # ============================================================

    def symbols_for(self, path: str) -> List[str]:
        return list(self.files.get(path, {}).get("symbols", []))

    def get_dependencies(self, path: str) -> List[str]:
        """Indexed project files that `path` imports."""
        deps: List[str] = []
        for specifier in self.files.get(path, {}).get("imports", []):
            for target in self._resolve(path, specifier):
                if target != path and target not in deps:
                    deps.append(target)
        return deps

    def get_dependents(self, path: str) -> List[str]:
        """Indexed files whose recorded dependencies include `path` (one hop only)."""
        return sorted(other for other in self.files if other != path and path in self.get_dependencies(other))

    def search(self, query: str) -> List[dict]:
        """Symbols whose name contains `query` (case-insensitive), exact matches first."""
        needle = query.strip().lower()
        if not needle:
            return []
        hits = []
        for name, entries in self.symbols.items():
            if needle in name.lower():
                for entry in entries:
                    hits.append({"name": name, **entry})
        hits.sort(key=lambda h: (h["name"].lower() != needle, h["name"], h["file"]))
        return hits

    def get_relevant_files(self, query: str) -> List[str]:
        seen: List[str] = []
        for token in re.split(r"[^A-Za-z0-9_]+", query):
            if len(token) <= 3:
                continue
            for entry in self.symbols.get(token, []):
                if entry["file"] not in seen:
                    seen.append(entry["file"])
        return seen

    def _resolve(self, importer: str, specifier: str) -> Set[str]:
        """
        Map an import string to indexed paths.

        Relative specs ("./db", "../lib/x.js") are joined against the importer's
        directory and tried with common suffixes. Dotted Python modules become
        paths. Anything left over falls back to a basename / stem match.
        """
        found: Set[str] = set()
        candidates = []
        if specifier.startswith("."):
            if "/" in specifier or specifier in (".", ".."):
                candidates.append(posixpath.normpath(posixpath.join(posixpath.dirname(importer), specifier)))
            else:
                # Python relative import: ".models" / "..pkg.mod"
                level = len(specifier) - len(specifier.lstrip("."))
                base = posixpath.dirname(importer)
                for _ in range(level - 1):
                    base = posixpath.dirname(base)
                rest = specifier.lstrip(".").replace(".", "/")
                candidates.append(posixpath.join(base, rest) if rest else base)
        else:
            candidates.append(specifier.lstrip("/"))
            if "/" not in specifier and "." in specifier:
                candidates.append(specifier.replace(".", "/"))
            candidates.append(posixpath.join(posixpath.dirname(importer), specifier))

        for candidate in candidates:
            for suffix in RESOLVE_SUFFIXES:
                target = posixpath.normpath(candidate + suffix)
                if target in self.files:
                    found.add(target)
        if found:
            return found

        stem = posixpath.splitext(posixpath.basename(specifier.replace(".", "/") if "/" not in specifier else specifier))[0]
        if not stem:
            return found
        for other in self.files:
            if posixpath.splitext(posixpath.basename(other))[0] == stem:
                found.add(other)
        return found
