from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Protocol
from urllib import error, request

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)


class InvalidAIResponseError(ValueError):
    """The backend answered with text that is not parseable JSON."""

    def __init__(self, text: str) -> None:
        super().__init__("AI returned invalid JSON")
        self.text = text


class AIBackend(Protocol):
    """Interface for text completions used by job task bodies."""

    async def generate(
        self,
        model: str,
        prompt: str,
        system_instruction: str | None = None,
    ) -> str: ...


def parse_json_response(text: str) -> Any:
    """Strip markdown code fences and parse the remaining text as JSON."""
    cleaned = _FENCE_PATTERN.sub("", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning("AI response parse failed preview=%r", text[:200])
        raise InvalidAIResponseError(text) from exc


class OpenAIChatCompletionsAdapter:
    """Small OpenAI adapter using the chat completions REST API.

    The HTTP call is blocking, so `generate` runs it in a worker thread to keep
    the event loop (and the job scheduler on it) responsive.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    async def generate(
        self,
        model: str,
        prompt: str,
        system_instruction: str | None = None,
    ) -> str:
        messages: list[dict[str, str]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})
        payload = {"model": model, "messages": messages}
        response_json = await asyncio.to_thread(self._request_with_retry, payload)
        return self._extract_content(response_json)

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    payload.get("model"),
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        raw_payload = json.dumps(payload).encode("utf-8")
        req = request.Request(
            url=url,
            data=raw_payload,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise ValueError("OpenAI response content could not be parsed as text")
