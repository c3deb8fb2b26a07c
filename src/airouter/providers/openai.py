from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, List
from urllib.parse import urlparse, urlunparse

from ..types import ProviderChatResponse
from . import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, BaseProvider


class OpenAICompatProvider(BaseProvider):
    """Adapter path: any backend speaking the OpenAI ``/chat/completions`` shape."""

    def _build_chat_request(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float,
        max_tokens: int,
        *,
        stream: bool,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        raw_base = (self.config.base_url or "").strip()
        parsed = urlparse(raw_base)
        segments = [segment for segment in (parsed.path or "").split("/") if segment]
        lowered = [segment.lower() for segment in segments]
        if lowered[-2:] != ["chat", "completions"]:
            if lowered and lowered[-1] == "chat":
                segments.append("completions")
            else:
                segments.extend(["chat", "completions"])
        url = urlunparse(parsed._replace(path="/" + "/".join(segments)))
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        payload: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        return url, headers, payload

    @staticmethod
    def _coerce_text(content: Any) -> str | None:
        if content is None:
            return None
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for part in content:
                if isinstance(part, dict):
                    text = part.get("text")
                    if isinstance(text, str):
                        parts.append(text)
                elif isinstance(part, str):
                    parts.append(part)
            return "".join(parts)
        return str(content)

    async def chat(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **options: Any,
    ) -> ProviderChatResponse:
        _ = options
        url, headers, payload = self._build_chat_request(
            model, messages, temperature, max_tokens, stream=False
        )
        r = await self._client().post(url, headers=headers, json=payload)
        r.raise_for_status()
        data = r.json()
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ValueError(f"{self.config.provider} response contained no choices")
        first_choice = choices[0]
        message = first_choice.get("message")
        content = self._coerce_text(message.get("content")) if isinstance(message, dict) else None
        usage = data.get("usage") or {}
        return ProviderChatResponse(
            model=data.get("model") or model or self.config.model,
            content=content,
            finish_reason=first_choice.get("finish_reason"),
            usage_prompt_tokens=usage.get("prompt_tokens") or 0,
            usage_completion_tokens=usage.get("completion_tokens") or 0,
        )

    def _text_from_stream_payload(self, payload: dict[str, Any]) -> str | None:
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message") or "stream error"
            raise ValueError(f"{self.config.provider} stream error: {message}")
        for choice in payload.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta")
            if isinstance(delta, dict):
                text = self._coerce_text(delta.get("content"))
            elif isinstance(delta, str):
                text = delta
            else:
                text = None
            if text:
                return text
        return None

    async def chat_stream(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **options: Any,
    ) -> AsyncIterator[str]:
        _ = options
        url, headers, payload = self._build_chat_request(
            model, messages, temperature, max_tokens, stream=True
        )
        async with self._client().stream("POST", url, headers=headers, json=payload) as response:
            response.raise_for_status()
            data_lines: list[str] = []
            async for raw_line in response.aiter_lines():
                if raw_line is None:
                    continue
                line = raw_line.strip("\r")
                if line == "":
                    if not data_lines:
                        continue
                    data_text = "\n".join(data_lines)
                    data_lines.clear()
                    if data_text == "[DONE]":
                        return
                    try:
                        payload_data = json.loads(data_text)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(payload_data, dict):
                        text = self._text_from_stream_payload(payload_data)
                        if text:
                            yield text
                    continue
                if line.startswith(":") or line.startswith("event:"):
                    continue
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
            if data_lines:
                data_text = "\n".join(data_lines)
                if data_text and data_text != "[DONE]":
                    try:
                        payload_data = json.loads(data_text)
                    except json.JSONDecodeError:
                        return
                    if isinstance(payload_data, dict):
                        text = self._text_from_stream_payload(payload_data)
                        if text:
                            yield text
