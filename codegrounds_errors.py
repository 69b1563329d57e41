"""
Error taxonomy for CodeGrounds.

Invocation errors are what the model-invocation layer raises once its
retry / rotate / downgrade ladder gives up (or when retrying cannot help).
Everything else belongs to the agent loop or the build controller.
"""

from typing import Optional


class CodegroundsError(Exception):
    """Base class for all CodeGrounds errors."""


class NoCredentialsError(CodegroundsError):
    """No model API credentials are configured."""


# ============================================================
# Model invocation
# ============================================================

class InvocationError(CodegroundsError):
    """A model call failed."""

    def __init__(self, message: str, model_id: str = "", credential_index: Optional[int] = None):
        super().__init__(message)
        self.model_id = model_id
        self.credential_index = credential_index


class RateLimited(InvocationError):
    pass


class ContextOverflow(InvocationError):
    pass


class TransientNetworkError(InvocationError):
    pass


class FatalInvocationError(InvocationError):
    """Malformed request, auth failure, or anything else retrying cannot fix."""


class InvocationExhausted(InvocationError):
    """Every retry, credential rotation and model downgrade failed."""

    last_error: Optional[InvocationError] = None


# ============================================================
# Agent loop / build controller
# ============================================================

class StepBudgetExceeded(CodegroundsError):
    def __init__(self, agent_name: str, steps: int):
        super().__init__(f"[{agent_name}] Exceeded max tool steps ({steps}).")
        self.agent_name = agent_name
        self.steps = steps


class PlanParseError(CodegroundsError, ValueError):
    """Architecture output was not a well-formed phase plan."""


class ConstructionFailure(CodegroundsError):
    """A single File Task failed. Recorded against the file, never re-raised by the controller."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
