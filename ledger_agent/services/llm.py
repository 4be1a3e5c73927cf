from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import LLMSettings, Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class LLMUnavailableError(RuntimeError):
    """Raised when the language model cannot produce a response."""


class LanguageModel(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> str:
        ...


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


def _messages_from_text(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


def parse_json_object(text: str) -> dict[str, Any]:
    """Extract the JSON object from a model reply, tolerating code fences and chatter."""
    trimmed = _FENCE_PATTERN.sub("", text.strip()).strip()
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        start = trimmed.find("{")
        end = trimmed.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise ValueError("Model response did not contain JSON") from None
        payload = json.loads(trimmed[start : end + 1])
    if not isinstance(payload, dict):
        raise ValueError("Model response JSON is not an object")
    return payload


@dataclass
class LLMService:
    """LangChain chat client with retry and backoff; failures surface as ``LLMUnavailableError``."""

    config: LLMSettings
    _client: Any
    model: str
    default_system_prompt: str = "You are a careful bookkeeping assistant. Answer with JSON only."

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        config = settings.llm
        model_name = model or config.model
        if client is None:
            client = ChatOllama(
                model=model_name,
                base_url=_build_base_url(config.host, config.port),
                temperature=config.temperature,
            )
        return cls(config=config, _client=client, model=model_name)

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> str:
        messages = _messages_from_text(prompt, system_prompt or self.default_system_prompt)
        client = self._client
        if temperature is not None and hasattr(client, "bind"):
            client = client.bind(temperature=temperature)

        last_error: Exception | None = None
        attempts = self.config.max_retries
        for attempt in range(attempts):
            try:
                result = await asyncio.wait_for(client.ainvoke(messages), timeout=self.config.timeout_seconds)
                return _extract_content(result)
            except asyncio.TimeoutError:
                last_error = asyncio.TimeoutError(
                    f"LLM request timed out after {self.config.timeout_seconds} seconds"
                )
                logger.warning("llm_generation_timeout", attempt=attempt + 1, max_attempts=attempts, model=self.model)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "llm_generation_retry",
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    error=str(exc),
                    model=self.model,
                )
            if attempt < attempts - 1:
                delay = min(self.config.base_delay_seconds * (2**attempt), self.config.max_delay_seconds)
                await asyncio.sleep(delay)

        logger.error(
            "llm_generation_failed",
            error=str(last_error) if last_error else "Unknown error",
            model=self.model,
            attempts=attempts,
        )
        raise LLMUnavailableError(f"LLM generation failed after {attempts} attempts") from last_error


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if text:
                    parts.append(str(text))
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return str(content)


__all__ = ["LLMService", "LLMUnavailableError", "LanguageModel", "parse_json_object"]
