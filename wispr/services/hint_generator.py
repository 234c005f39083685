"""
Hint Generator - AI collaborator that writes one hint about a compliment's sender.

The generator is treated as slow and fallible: every failure mode (timeout,
API error, unusable output) surfaces as HintGenerationFailedError so the
caller can abort before touching the ledger.
"""

import asyncio
import json
import time
from typing import Protocol

from openai import APIError, APITimeoutError, AsyncOpenAI, OpenAIError
from structlog import get_logger

from wispr.exceptions import HintGenerationFailedError
from wispr.models.domain import HintContext
from wispr.observability.metrics import metrics
from wispr.observability.tracing import trace_operation

logger = get_logger(__name__)


class HintGenerator(Protocol):
    """Anything that can produce a fresh hint for a compliment."""

    async def generate(
        self,
        text: str,
        context: HintContext | None,
        previous_hints: list[str],
    ) -> str:
        """Return a non-empty hint, or raise HintGenerationFailedError."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


SYSTEM_PROMPT = """You are a thoughtful assistant. Analyze an anonymous compliment and the \
context about its sender, then write a creative, one-sentence hint about the sender.

The hint MUST be in {language}.
The hint should be intriguing and grounded in the context, but it MUST NOT reveal the \
sender's identity or restate the exact context. It should spark curiosity.
If previous hints are listed, do not repeat them or give very similar information.

Example (no context):
Compliment: "Таны хувцаслалтын мэдрэмж таалагддаг!"
Hint: "Энэ хүн таныг бусдаас ялгаруулдаг бүтээлч талыг тань анзаардаг."

Respond with a single JSON object with a single "hint" field and nothing else."""


def build_user_prompt(text: str, context: HintContext | None, previous_hints: list[str]) -> str:
    """Render the per-request part of the prompt."""
    lines: list[str] = []
    if context is not None and not context.is_empty:
        lines.append("Context about the sender:")
        lines.append(f"- How often you notice them: {context.frequency}")
        lines.append(f"- Where you notice them: {context.location}")
        lines.append("")
    if previous_hints:
        lines.append("Previous hints (generate a NEW, different one):")
        lines.extend(f"- {hint}" for hint in previous_hints)
        lines.append("")
    lines.append(f"Compliment text: {text}")
    return "\n".join(lines)


def parse_hint(content: str | None) -> str:
    """Extract the hint from a model response; raise if there isn't one."""
    if not content or not content.strip():
        raise HintGenerationFailedError("empty model response")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise HintGenerationFailedError("model response is not JSON") from exc
    hint = data.get("hint") if isinstance(data, dict) else None
    if not isinstance(hint, str) or not hint.strip():
        raise HintGenerationFailedError("model response has no hint")
    return hint.strip()


class OpenAIHintGenerator:
    """HintGenerator backed by OpenAI chat completions in JSON mode."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        language: str = "Mongolian",
        timeout_seconds: float = 20.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.language = language
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self._client is not None or bool(self.api_key)

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-initialized OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise HintGenerationFailedError("OpenAI API key is not configured")
            self._client = AsyncOpenAI(
                api_key=self.api_key, timeout=self.timeout_seconds, max_retries=0
            )
        return self._client

    async def generate(
        self,
        text: str,
        context: HintContext | None,
        previous_hints: list[str],
    ) -> str:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT.format(language=self.language)},
            {"role": "user", "content": build_user_prompt(text, context, previous_hints)},
        ]

        client = self.client
        started = time.perf_counter()
        with trace_operation("hint_generation", model=self.model):
            try:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=self.model,
                        messages=messages,  # type: ignore[arg-type]
                        response_format={"type": "json_object"},
                        temperature=0.9,
                    ),
                    timeout=self.timeout_seconds,
                )
            except (TimeoutError, APITimeoutError) as exc:
                logger.warning("hint_generation_timeout", model=self.model)
                raise HintGenerationFailedError("timed out") from exc
            except APIError as exc:
                logger.error(
                    "hint_generation_api_error",
                    model=self.model,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise HintGenerationFailedError(type(exc).__name__) from exc
            except OpenAIError as exc:
                logger.error("hint_generation_client_error", model=self.model, error=str(exc))
                raise HintGenerationFailedError(type(exc).__name__) from exc
            finally:
                metrics.record_hint_generation(time.perf_counter() - started)

        if not response.choices:
            raise HintGenerationFailedError("model returned no choices")
        return parse_hint(response.choices[0].message.content)

    async def close(self) -> None:
        """Close the OpenAI client if one was created."""
        if self._client is not None:
            await self._client.close()
            self._client = None
