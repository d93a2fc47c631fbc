"""Provider-selectable reasoning backend client (Anthropic or Gemini)."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from buildmend.core.models import BuildError, ChangeKind, FileChange
from buildmend.llm.prompts import (
    build_codegen_prompt,
    build_fix_prompt,
    extract_code,
    extract_confidence,
    extract_explanation,
    extract_search_replace_blocks,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROVIDERS = ("anthropic", "gemini")
DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "gemini": "gemini-2.0-flash",
}
REQUEST_KINDS = ("refactor", "template-fix", "migration-reasoning")

_RETRYABLE_NAMES = ("RateLimit", "Timeout", "Connection", "Throttl", "Overloaded", "ServiceUnavailable")
_RETRYABLE_TEXT = ("rate limit", "quota", "timeout", "timed out", "network", "overloaded")


@dataclass
class ReasoningRequest:
    kind: str
    error: BuildError
    file_content: str
    target_version: str
    constraints: list[str] = field(default_factory=list)


@dataclass
class ReasoningResponse:
    success: bool
    changes: list[FileChange] = field(default_factory=list)
    reasoning: str | None = None
    confidence: float | None = None


@dataclass
class CodeGeneration:
    code: str | None
    reasoning: str | None = None


@dataclass
class Completion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


def is_retryable(exc: BaseException) -> bool:
    """Rate limits, timeouts, dropped connections and 5xx responses are retried."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "code", None)
    if isinstance(status, int) and (status == 429 or 500 <= status < 600):
        return True

    name = type(exc).__name__
    if any(part in name for part in _RETRYABLE_NAMES):
        return True

    message = str(exc).lower()
    return any(text in message for text in _RETRYABLE_TEXT)


class LLMClient:
    """Thin async wrapper around the configured provider SDK.

    Every provider call goes through :meth:`_with_retry`, which backs off
    exponentially with jitter and only retries transient failures.
    """

    def __init__(
        self,
        provider: str = "anthropic",
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider {provider!r}; expected one of {PROVIDERS}")
        self.provider = provider
        self.api_key = api_key
        self.model = model or DEFAULT_MODELS[provider]
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._client = None

    def _get_client(self):
        """Lazy-initialize the provider SDK client."""
        if self._client is not None:
            return self._client
        if self.provider == "anthropic":
            try:
                import anthropic
            except ImportError:
                raise ImportError(
                    "The anthropic provider requires the anthropic package. "
                    "Install with: pip install buildmend[ai]"
                )
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        else:
            try:
                from google import genai
            except ImportError:
                raise ImportError(
                    "The gemini provider requires the google-genai package. "
                    "Install with: pip install buildmend[ai]"
                )
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def _with_retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(self.max_retries + 1):
            try:
                return await fn()
            except Exception as e:
                if attempt >= self.max_retries or not is_retryable(e):
                    raise
                delay = min(self.backoff_base * (2 ** attempt) + random.random(), self.backoff_max)
                logger.info(
                    "Reasoning call failed (attempt %d/%d): %s; retrying in %.1fs",
                    attempt + 1, self.max_retries + 1, e, delay,
                )
                await self._sleep(delay)
        raise RuntimeError("unreachable")

    async def chat(self, messages: list[dict[str, str]]) -> Completion:
        """Send a conversation of ``{"role", "content"}`` dicts; system turns are folded in."""
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]
        return await self._with_retry(lambda: self._send(system, turns))

    async def complete(self, prompt: str, system: str | None = None) -> Completion:
        return await self.chat(
            ([{"role": "system", "content": system}] if system else [])
            + [{"role": "user", "content": prompt}]
        )

    async def _send(self, system: str, turns: list[dict[str, str]]) -> Completion:
        client = self._get_client()
        if self.provider == "anthropic":
            kwargs: dict[str, Any] = {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "messages": [{"role": t["role"], "content": t["content"]} for t in turns],
            }
            if system:
                kwargs["system"] = system
            response = await client.messages.create(**kwargs)
            text = "".join(
                getattr(block, "text", "") for block in response.content
                if getattr(block, "type", "text") == "text"
            )
            usage = getattr(response, "usage", None)
            return Completion(
                text=text,
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
            )

        from google.genai import types

        contents = [
            types.Content(
                role="model" if t["role"] == "assistant" else "user",
                parts=[types.Part(text=t["content"])],
            )
            for t in turns
        ]
        response = await client.aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=system or None,
                max_output_tokens=self.max_tokens,
                temperature=0.2,
            ),
        )
        usage = getattr(response, "usage_metadata", None)
        return Completion(
            text=response.text or "",
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
        )

    async def request_fix(self, request: ReasoningRequest) -> ReasoningResponse:
        """Ask for a minimal fix. Transport errors propagate after retries are exhausted."""
        if request.kind not in REQUEST_KINDS:
            return ReasoningResponse(success=False, reasoning=f"Unsupported request kind {request.kind!r}")

        prompt = build_fix_prompt(
            request.error, request.file_content, request.target_version, request.constraints
        )
        completion = await self.complete(prompt)
        return self.parse_fix_reply(completion.text, request.error.file or "")

    def parse_fix_reply(self, text: str, file: str) -> ReasoningResponse:
        reasoning = extract_explanation(text)
        blocks = extract_search_replace_blocks(text)
        if blocks:
            return ReasoningResponse(
                success=True,
                changes=[FileChange(file=file, kind=ChangeKind.MODIFY, search_replace=blocks)],
                reasoning=reasoning,
                confidence=extract_confidence(text),
            )

        code = extract_code(text)
        if code is None:
            return ReasoningResponse(
                success=False,
                reasoning="Could not extract SEARCH/REPLACE blocks or code from the reply",
            )

        logger.warning("Reply for %s was a full code block instead of SEARCH/REPLACE blocks", file)
        return ReasoningResponse(
            success=True,
            changes=[FileChange(file=file, kind=ChangeKind.MODIFY, content=code, full_replacement=True)],
            reasoning=reasoning,
            confidence=min(extract_confidence(text), 0.5),
        )

    async def generate_code(
        self,
        description: str,
        error: BuildError,
        file_content: str,
        constraints: list[str],
    ) -> CodeGeneration:
        prompt = build_codegen_prompt(description, error, file_content, constraints)
        completion = await self.complete(prompt)
        return CodeGeneration(
            code=extract_code(completion.text),
            reasoning=extract_explanation(completion.text),
        )
