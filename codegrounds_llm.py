"""
Model invocation layer: credential pool, Gemini HTTP backend and a resilient invoke().

invoke() hides three kinds of trouble from the agents:
1. Context overflow  → prune history to the last exchange, move to the
   high-capacity model, retry at once
2. Rate limits / flaky network → exponential backoff on the same slot, then
   rotate to the next credential slot, then downgrade to the baseline model
3. Anything else → raised immediately, retrying would not help
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type

import httpx

from codegrounds_config import Config
from codegrounds_errors import (
    ContextOverflow,
    FatalInvocationError,
    InvocationError,
    InvocationExhausted,
    NoCredentialsError,
    RateLimited,
    TransientNetworkError,
)
from codegrounds_models import ConversationHistory, ModelResponse

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Non-2xx (or unusable) reply from the model backend."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# ============================================================
# Gemini backend: talks to the generateContent REST API directly
# ============================================================

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_NONE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


class GeminiBackend:
    """
    Direct HTTP client for one Gemini API key.

    POST {base}/models/{model}:generateContent with system instruction,
    contents (history + prompt) and optional function declarations.
    """

    def __init__(self, api_key: str, base_url: str, timeout: float = 600.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = client or httpx.AsyncClient(timeout=timeout)

    async def generate(
        self,
        model_id: str,
        system_instruction: str,
        contents: List[dict],
        tools: Optional[dict] = None,
    ) -> ModelResponse:
        url = f"{self.base_url}/models/{model_id}:generateContent"
        payload: Dict[str, Any] = {
            "systemInstruction": {"role": "system", "parts": [{"text": system_instruction}]},
            "contents": contents,
            "safetySettings": SAFETY_SETTINGS,
            "generationConfig": {"temperature": 1.0, "maxOutputTokens": 65536},
        }
        if tools:
            payload["tools"] = [tools]

        resp = await self.session.post(url, json=payload, headers={"x-goog-api-key": self.api_key})
        if resp.status_code >= 400:
            raise BackendError(f"[{resp.status_code}] {_error_message(resp)}", status_code=resp.status_code)

        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates returned")
            raise BackendError(f"Empty response from model: {reason}")

        content = candidates[0].get("content") or {}
        return ModelResponse(parts=list(content.get("parts") or []), model_id=model_id)

    async def aclose(self):
        await self.session.aclose()


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("error", {}).get("message", resp.text)
    except ValueError:
        return resp.text


# ============================================================
# Credential pool
# ============================================================

class CredentialSlot:
    def __init__(self, index: int, backend: Any):
        self.index = index
        self.backend = backend

    def __repr__(self) -> str:
        return f"CredentialSlot({self.index})"


class CredentialPool:
    """Read-only set of 1..6 credential slots keyed by index."""

    def __init__(self, slots: List[CredentialSlot]):
        self._slots = {s.index: s for s in slots}

    @classmethod
    def from_config(cls, config: Config, client: Optional[httpx.AsyncClient] = None) -> "CredentialPool":
        if not config.api_keys:
            raise NoCredentialsError("No API Key available. Set GEMINI_API_KEY or GEMINI_API_KEY_1..6.")
        return cls([
            CredentialSlot(i, GeminiBackend(key, config.api_base_url, config.request_timeout, client=client))
            for i, key in sorted(config.api_keys.items())
        ])

    @property
    def indices(self) -> List[int]:
        return sorted(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def get(self, index: int) -> CredentialSlot:
        """The requested slot, or the lowest available one if it does not exist."""
        if index in self._slots:
            return self._slots[index]
        if not self._slots:
            raise NoCredentialsError(f"No API Key available. Requested Key {index}, but none found.")
        return self._slots[self.indices[0]]

    def next_index(self, current: int) -> Optional[int]:
        """Next higher slot index, wrapping to the lowest. None with a single slot."""
        indices = self.indices
        if len(indices) <= 1:
            return None
        return next((i for i in indices if i > current), indices[0])

    async def aclose(self):
        for slot in self._slots.values():
            close = getattr(slot.backend, "aclose", None)
            if close:
                await close()


# ============================================================
# Error classification
# ============================================================

class ErrorKind(Enum):
    CONTEXT_OVERFLOW = "Context Overflow"
    RATE_LIMITED = "Rate Limit"
    TRANSIENT = "Network Error"
    FATAL = "Fatal"

    @property
    def error_class(self) -> Type[InvocationError]:
        return _ERROR_CLASSES[self]


_ERROR_CLASSES: Dict[ErrorKind, Type[InvocationError]] = {
    ErrorKind.CONTEXT_OVERFLOW: ContextOverflow,
    ErrorKind.RATE_LIMITED: RateLimited,
    ErrorKind.TRANSIENT: TransientNetworkError,
    ErrorKind.FATAL: FatalInvocationError,
}

CONTEXT_MARKERS = (
    "maximum context length", "too many tokens",
    "exceeds the maximum number of tokens", "context window",
)
RATE_LIMIT_PATTERN = re.compile(r"\b429\b|resource has been exhausted|resource_exhausted|quota")
TRANSIENT_PATTERN = re.compile(
    r"\b50[0234]\b|fetch failed|etimedout|econnreset|deadline exceeded|unavailable|internal error"
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Inspect an error from the backend and decide how to recover."""
    msg = str(exc).lower()
    if any(m in msg for m in CONTEXT_MARKERS):
        return ErrorKind.CONTEXT_OVERFLOW
    status = getattr(exc, "status_code", None)
    if status == 429 or RATE_LIMIT_PATTERN.search(msg):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TRANSIENT
    if status in (500, 502, 503, 504) or TRANSIENT_PATTERN.search(msg):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


# ============================================================
# ModelInvoker: retry, then rotate, then downgrade
# ============================================================

class ModelInvoker:
    def __init__(
        self,
        pool: CredentialPool,
        default_model: str,
        high_capacity_model: str,
        baseline_model: str,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pool = pool
        self.default_model = default_model
        self.high_capacity_model = high_capacity_model
        self.baseline_model = baseline_model
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Config, pool: CredentialPool, **kwargs) -> "ModelInvoker":
        return cls(
            pool,
            default_model=config.default_model,
            high_capacity_model=config.high_capacity_model,
            baseline_model=config.baseline_model,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            **kwargs,
        )

    async def invoke(
        self,
        prompt: str,
        system_instruction: str = "",
        model_id: Optional[str] = None,
        credential_index: int = 1,
        tool_schema: Optional[dict] = None,
        history: Optional[ConversationHistory] = None,
    ) -> ModelResponse:
        if history is None:
            history = ConversationHistory()
        slot = self.pool.get(credential_index)
        model = model_id or self.default_model
        tried: Set[int] = {slot.index}
        attempt = 0
        # Downgrade happens at most once per call; an overflow upgrade afterwards
        # must not re-open the ladder
        downgraded = False

        while True:
            try:
                response = await slot.backend.generate(
                    model, system_instruction, history.to_contents(prompt), tool_schema
                )
                response.credential_index = slot.index
                return response
            except Exception as e:
                kind = classify_error(e)
                if kind is ErrorKind.FATAL:
                    raise FatalInvocationError(str(e), model, slot.index) from e

                logger.warning(
                    f"⚠️  {kind.value} on Key {slot.index} ({model}). "
                    f"Attempt {attempt + 1}/{self.max_retries}: {str(e)[:200]}"
                )

                if kind is ErrorKind.CONTEXT_OVERFLOW:
                    pruned = history.prune_to_last_exchange()
                    upgraded = model != self.high_capacity_model
                    if not pruned and not upgraded:
                        raise ContextOverflow(
                            f"Context overflow persists on {model} with minimal history: {e}",
                            model, slot.index,
                        ) from e
                    logger.warning(f"✂️  Context overflow detected. Pruned history to {len(history)} turns")
                    model = self.high_capacity_model
                    attempt = 0
                    continue

                if attempt < self.max_retries:
                    delay = self.backoff_base * (2 ** attempt)
                    attempt += 1
                    await self._sleep(delay)
                    continue

                next_slot = self._next_untried(slot.index, tried)
                if next_slot is not None:
                    logger.warning(f"🔄 Rotating to Key {next_slot.index}...")
                    slot = next_slot
                    tried.add(slot.index)
                    attempt = 0
                    continue

                if not downgraded and model != self.baseline_model:
                    logger.warning(f"🚨 Falling back to {self.baseline_model}...")
                    model = self.baseline_model
                    downgraded = True
                    tried = {slot.index}
                    attempt = 0
                    continue

                exhausted = InvocationExhausted(
                    "Critical Failure: AI exhausted all retries, rotations, and fallbacks.",
                    model, slot.index,
                )
                exhausted.last_error = kind.error_class(str(e), model, slot.index)
                raise exhausted from e

    def _next_untried(self, current: int, tried: Set[int]) -> Optional[CredentialSlot]:
        index = current
        for _ in range(len(self.pool)):
            index = self.pool.next_index(index)
            if index is None:
                return None
            if index not in tried:
                return self.pool.get(index)
        return None
