from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, List
from urllib.parse import urlparse, urlunparse

from ..types import ProviderChatResponse
from . import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, BaseProvider

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    """Bespoke path: the Anthropic Messages API, with a top-level ``system`` field."""

    def _prepare_chat_request(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float,
        max_tokens: int,
        *,
        system: str | None,
        stream: bool,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        parsed = urlparse((self.config.base_url or "https://api.anthropic.com").strip())
        segments = [segment for segment in (parsed.path or "").split("/") if segment]

        def is_version_segment(segment: str) -> bool:
            lowered = segment.lower()
            return lowered.startswith("v") and lowered[1:2].isdigit()

        ends_with_messages = bool(segments) and segments[-1].lower() == "messages"
        if not any(is_version_segment(segment) for segment in segments):
            insert_index = len(segments) - 1 if ends_with_messages else len(segments)
            segments.insert(insert_index, "v1")
        if not ends_with_messages:
            segments.append("messages")
        url = urlunparse(parsed._replace(path="/" + "/".join(segments)))
        headers: dict[str, str] = {
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        if self.config.api_key:
            headers["x-api-key"] = self.config.api_key
        payload: dict[str, Any] = {
            "model": model or self.config.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system is not None:
            payload["system"] = system
        if stream:
            payload["stream"] = True
        return url, headers, payload

    async def chat(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        *,
        system: str | None = None,
        **options: Any,
    ) -> ProviderChatResponse:
        _ = options
        url, headers, payload = self._prepare_chat_request(
            model, messages, temperature, max_tokens, system=system, stream=False
        )
        r = await self._client().post(url, headers=headers, json=payload)
        r.raise_for_status()
        data = r.json()
        text_parts: list[str] = []
        for block in data.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text":
                text_value = block.get("text")
                if isinstance(text_value, str):
                    text_parts.append(text_value)
        usage = data.get("usage") or {}
        return ProviderChatResponse(
            model=data.get("model") or model or self.config.model,
            content="".join(text_parts),
            finish_reason=data.get("stop_reason"),
            usage_prompt_tokens=usage.get("input_tokens") or 0,
            usage_completion_tokens=usage.get("output_tokens") or 0,
        )

    async def chat_stream(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        *,
        system: str | None = None,
        **options: Any,
    ) -> AsyncIterator[str]:
        _ = options
        url, headers, payload = self._prepare_chat_request(
            model, messages, temperature, max_tokens, system=system, stream=True
        )
        async with self._client().stream("POST", url, headers=headers, json=payload) as response:
            response.raise_for_status()

            async def iter_events() -> AsyncIterator[dict[str, Any]]:
                buffer: list[str] = []
                async for line in response.aiter_lines():
                    if line is None:
                        continue
                    stripped = line.strip()
                    if not stripped:
                        if not buffer:
                            continue
                        data_text = "\n".join(buffer).strip()
                        buffer.clear()
                        if not data_text or data_text == "[DONE]":
                            continue
                        try:
                            parsed = json.loads(data_text)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(parsed, dict):
                            yield parsed
                        continue
                    if stripped.startswith("data:"):
                        buffer.append(stripped[5:].lstrip())
                if buffer:
                    data_text = "\n".join(buffer).strip()
                    if data_text and data_text != "[DONE]":
                        try:
                            parsed = json.loads(data_text)
                        except json.JSONDecodeError:
                            parsed = None
                        if isinstance(parsed, dict):
                            yield parsed

            async for event in iter_events():
                event_type = event.get("type")
                if event_type == "error":
                    error_info = event.get("error")
                    message = error_info.get("message") if isinstance(error_info, dict) else None
                    raise ValueError(f"anthropic stream error: {message or 'unknown'}")
                if event_type != "content_block_delta":
                    continue
                delta = event.get("delta")
                if isinstance(delta, dict) and delta.get("type") == "text_delta":
                    text_value = delta.get("text")
                    if isinstance(text_value, str) and text_value:
                        yield text_value
