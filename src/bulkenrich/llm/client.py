from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

import jsonschema

from ..config import LlmConfig
from ..errors import MalformedResponse, PaymentRequired, RateLimited, UpstreamError
from ..utils import log_event


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class CompletionClient:
    """Single structured-completion call against an OpenAI compatible gateway.

    One HTTP request per call and no retries; callers decide whether a
    failed item is resubmitted. The HTTP timeout is the per-item timeout.
    """

    def __init__(self, config: LlmConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("bulkenrich.llm")

    def complete(self, system_prompt: str, user_prompt: str, tool: ToolSpec) -> dict[str, Any]:
        if not self._config.api_key:
            raise UpstreamError("BE_LLM_API_KEY not set")
        payload = {
            "model": self._config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self._config.temperature,
            "tools": [tool.to_payload()],
            "tool_choice": {"type": "function", "function": {"name": tool.name}},
        }
        response = self._post(_join_url(self._config.base_url, "/chat/completions"), payload)
        arguments = read_tool_arguments(response, tool.name)
        validate_arguments(tool, arguments)
        return arguments

    def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url, data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        request.add_header("Authorization", f"Bearer {self._config.api_key}")
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            log_event(
                self._logger,
                logging.WARNING,
                "llm_http_error",
                status=exc.code,
                model=self._config.model,
            )
            if exc.code == 429:
                raise RateLimited("Rate limit exceeded") from exc
            if exc.code == 402:
                raise PaymentRequired("Payment required") from exc
            raise UpstreamError(f"AI API error: {exc.code} - {body[:500]}") from exc
        except urllib.error.URLError as exc:
            raise UpstreamError(f"network_error: {exc}") from exc
        except TimeoutError as exc:
            raise UpstreamError("timeout") from exc
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedResponse("response is not JSON") from exc
        if not isinstance(decoded, dict):
            raise MalformedResponse("response is not a JSON object")
        return decoded


def read_tool_arguments(response: dict[str, Any], tool_name: str) -> dict[str, Any]:
    choices = response.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        raise MalformedResponse("missing choices")
    message = choices[0].get("message") or {}
    tool_calls = message.get("tool_calls") or []
    if not tool_calls:
        raise MalformedResponse("No tool call in AI response")
    function = tool_calls[0].get("function") or {}
    if function.get("name") and function["name"] != tool_name:
        raise MalformedResponse(f"unexpected tool {function['name']}")
    arguments = function.get("arguments")
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as exc:
            raise MalformedResponse("tool arguments are not JSON") from exc
    if not isinstance(arguments, dict):
        raise MalformedResponse("tool arguments are not an object")
    return arguments


def validate_arguments(tool: ToolSpec, arguments: dict[str, Any]) -> None:
    try:
        jsonschema.validate(arguments, tool.parameters)
    except jsonschema.ValidationError as exc:
        raise MalformedResponse(f"schema_violation: {exc.message}") from exc


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
