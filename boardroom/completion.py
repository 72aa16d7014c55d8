"""Text-completion capability used by debate turns and summaries."""

from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx
from httpx_sse import aconnect_sse

from .errors import CompletionError

logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str], None]


@dataclass(frozen=True)
class ChatMessage:
    role: str  # 'system', 'user', 'assistant'
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: str) -> int:
    """Rough token count used when a provider does not report usage."""
    return math.ceil(len(text) / 4)


class TextCompletion(ABC):
    """An asynchronous, cancellable chat completion."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        *,
        model: str | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> Completion:
        """Return the full completion.

        Raise ``CompletionError`` on failure, with ``transient=True`` when a
        retry may succeed. ``on_delta`` receives text chunks as they arrive.
        """

    async def aclose(self) -> None:
        return None


def _is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


class OpenRouterClient(TextCompletion):
    """Streaming chat completions against the OpenRouter API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        default_model: str = "mistralai/mixtral-8x7b-instruct",
        referer: str | None = None,
        title: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"}
        if referer:
            headers["HTTP-Referer"] = referer
        if title:
            headers["X-Title"] = title

        self._default_model = default_model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _body(self, system_prompt: str, messages: Sequence[ChatMessage], model: str) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                *(m.to_dict() for m in messages),
            ],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        *,
        model: str | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> Completion:
        model = model or self._default_model
        body = self._body(system_prompt, messages, model)
        chunks: list[str] = []
        usage: dict[str, Any] = {}

        try:
            async with aconnect_sse(self._client, "POST", "/chat/completions", json=body) as source:
                response = source.response
                if response.status_code >= 400:
                    await response.aread()
                    raise CompletionError(
                        f"OpenRouter API error {response.status_code}: {response.text[:500]}",
                        transient=_is_transient_status(response.status_code),
                    )

                async for sse in source.aiter_sse():
                    if not sse.data:
                        continue
                    if sse.data.strip() == "[DONE]":
                        break
                    try:
                        payload = json.loads(sse.data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping non-JSON SSE payload: %s", sse.data[:200])
                        continue

                    if isinstance(payload.get("error"), dict):
                        raise CompletionError(
                            f"OpenRouter stream error: {payload['error'].get('message', payload['error'])}",
                            transient=True,
                        )
                    if isinstance(payload.get("usage"), dict):
                        usage = payload["usage"]
                    for choice in payload.get("choices") or []:
                        delta = (choice.get("delta") or {}).get("content")
                        if delta:
                            chunks.append(delta)
                            if on_delta is not None:
                                on_delta(delta)
        except httpx.RequestError as exc:
            raise CompletionError(f"OpenRouter request failed: {exc}", transient=True) from exc

        text = "".join(chunks).strip()
        if not text:
            raise CompletionError(f"Empty completion from {model}", transient=True)

        prompt_text = system_prompt + "".join(m.content for m in messages)
        return Completion(
            text=text,
            model=model,
            input_tokens=int(usage.get("prompt_tokens") or estimate_tokens(prompt_text)),
            output_tokens=int(usage.get("completion_tokens") or estimate_tokens(text)),
        )
