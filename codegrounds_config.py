"""
Configuration for CodeGrounds.

Layering: built-in defaults -> optional JSON file -> environment variables.

Credentials:
  - GEMINI_API_KEY_1 .. GEMINI_API_KEY_6: independent credential slots
  - GEMINI_API_KEY: legacy single key, fills slot 1 when it is empty

Models:
  - DEFAULT_MODEL: model for roles without an override
  - MODEL_MANAGER / MODEL_ARCHITECT / MODEL_DEVOPS / MODEL_ENGINEER / MODEL_DEBUGGER
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional

from codegrounds_models import RoleDescriptor

MAX_CREDENTIAL_SLOTS = 6

HIGH_CAPACITY_MODEL = "gemini-1.5-pro"
BASELINE_MODEL = "gemini-1.5-flash"

READ_ONLY_TOOLS: FrozenSet[str] = frozenset({
    "read_file", "list_files", "search_files", "search_symbols", "get_file_context",
})


@dataclass
class RoleConfig:
    """Configuration for a specific agent role."""
    key: str
    name: str
    title: str
    responsibility: str
    model_env: Optional[str] = None  # env var that overrides the model id
    model: Optional[str] = None
    key_index: int = 1
    max_steps: int = 15
    allowed_tools: Optional[FrozenSet[str]] = None

    def descriptor(self, default_model: str) -> RoleDescriptor:
        return RoleDescriptor(
            key=self.key,
            name=self.name,
            title=self.title,
            responsibility=self.responsibility,
            allowed_tools=self.allowed_tools,
            max_steps=self.max_steps,
            model_id=self.model or default_model,
            credential_index=self.key_index,
        )


@dataclass
class Config:
    """Main configuration container."""
    api_keys: Dict[int, str] = field(default_factory=dict)
    default_model: str = HIGH_CAPACITY_MODEL
    high_capacity_model: str = HIGH_CAPACITY_MODEL
    baseline_model: str = BASELINE_MODEL
    api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    request_timeout: float = 600.0
    max_retries: int = 3
    backoff_base: float = 2.0
    chunk_size: int = 3
    command_timeout: int = 300
    plan_retries: int = 3
    agent_retries: int = 2
    projects_dir: str = "projects"
    debug: bool = False
    roles: Dict[str, RoleConfig] = field(default_factory=dict)

    def has_credentials(self) -> bool:
        return bool(self.api_keys)

    def get_role(self, key: str) -> RoleConfig:
        if key not in self.roles:
            raise ValueError(f"Unknown agent role: {key}")
        return self.roles[key]

    def descriptors(self) -> Dict[str, RoleDescriptor]:
        return {key: rc.descriptor(self.default_model) for key, rc in self.roles.items()}


def default_roles() -> Dict[str, RoleConfig]:
    """The standing team. Each role pins its own credential slot."""
    roles = [
        RoleConfig(
            key="pm", name="Alex", title="Product Manager",
            responsibility="You define requirements. Use list_files/read_file to check existing docs.",
            model_env="MODEL_MANAGER", key_index=1,
        ),
        RoleConfig(
            key="architect", name="Sarah", title="Software Architect",
            responsibility="You design the system. You can explore the codebase. Output JSON plans.",
            model_env="MODEL_ARCHITECT", key_index=2,
        ),
        RoleConfig(
            key="devops", name="Ops", title="DevOps Engineer",
            responsibility="You manage the environment. You run commands to build/test. You can read/write config files.",
            model_env="MODEL_DEVOPS", model=BASELINE_MODEL, key_index=3,
        ),
        RoleConfig(
            key="engineer", name="Coder", title="Lead Developer",
            responsibility=(
                "You write code. Use read_file to understand context. Use write_file for new files and "
                "replace_in_file for edits. Use search_symbols to find definitions."
            ),
            model_env="MODEL_ENGINEER", model=BASELINE_MODEL, key_index=4, max_steps=30,
        ),
        RoleConfig(
            key="debugger", name="Fixer", title="Senior Debugger",
            responsibility=(
                "You fix bugs. Read error logs. Use search_symbols/search_files to locate code. "
                "Use replace_in_file to fix specific lines."
            ),
            model_env="MODEL_DEBUGGER", key_index=5, max_steps=60,
        ),
        RoleConfig(
            key="manager", name="Manager", title="Project Coordinator",
            responsibility="You oversee the project. You verify plans and results.",
            model_env="MODEL_MANAGER", key_index=6, allowed_tools=READ_ONLY_TOOLS,
        ),
        RoleConfig(
            key="tester", name="Tester", title="QA Engineer",
            responsibility="You write and run tests. You can use run_command to execute test scripts.",
            model_env="MODEL_ENGINEER", model=BASELINE_MODEL, key_index=4, max_steps=25,
        ),
        RoleConfig(
            key="auditor", name="Auditor", title="Code Auditor",
            responsibility=(
                "You audit one file against its description. Read it, check its dependencies, "
                "and answer PASS or FAIL with a one-line reason. You never edit files."
            ),
            model_env="MODEL_MANAGER", model=BASELINE_MODEL, key_index=6, max_steps=8,
            allowed_tools=READ_ONLY_TOOLS,
        ),
    ]
    return {r.key: r for r in roles}


def default_config() -> Config:
    return Config(roles=default_roles())


def _to_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def load_credentials(env: Mapping[str, str]) -> Dict[int, str]:
    keys: Dict[int, str] = {}
    for i in range(1, MAX_CREDENTIAL_SLOTS + 1):
        value = (env.get(f"GEMINI_API_KEY_{i}") or "").strip()
        if value:
            keys[i] = value
    legacy = (env.get("GEMINI_API_KEY") or "").strip()
    if 1 not in keys and legacy:
        keys[1] = legacy
    return keys


def load_config(config_path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Config:
    """Load config from JSON file and environment, falling back to defaults."""
    env = os.environ if env is None else env
    config = default_config()

    if config_path and config_path.exists():
        with open(config_path) as f:
            overrides = json.load(f)

        for key in (
            "default_model", "high_capacity_model", "baseline_model", "api_base_url",
            "request_timeout", "max_retries", "backoff_base", "chunk_size",
            "command_timeout", "plan_retries", "agent_retries", "projects_dir",
        ):
            if key in overrides:
                setattr(config, key, overrides[key])

        for role, ao in overrides.get("agents", {}).items():
            if role not in config.roles:
                continue
            rc = config.roles[role]
            if "model" in ao:
                rc.model = ao["model"]
            if "max_steps" in ao:
                rc.max_steps = int(ao["max_steps"])
            if "key_index" in ao:
                rc.key_index = int(ao["key_index"])

    config.api_keys = load_credentials(env)
    if env.get("DEFAULT_MODEL"):
        config.default_model = env["DEFAULT_MODEL"]
    for rc in config.roles.values():
        if rc.model_env and env.get(rc.model_env):
            rc.model = env[rc.model_env]
    config.debug = _to_bool(env.get("DEBUG"))

    return config
