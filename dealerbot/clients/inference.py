"""Client for the hosted structured-generation (inference) backend.

The backend is treated as an opaque service with one operation::

    generate(prompt, response_schema) -> structured result

It is reached with ``POST {INFERENCE_BASE_URL}/generate`` and a JSON body
``{"model", "prompt", "response_schema"}``.  Three response shapes are
accepted:

* ``{"output": {...}}``: the structured result as a JSON object.
* ``{"text": "..."}``: free text that contains a JSON object.
* any other body: its raw text is searched for a JSON object.

The response body, whatever its shape, is truncated to
``INFERENCE_RESPONSE_MAX_CHARS`` *before* parsing; a truncated body is
searched for a JSON object like free text.
A body with no recoverable JSON object raises
:class:`~dealerbot.core.exceptions.InferenceResponseError` (malformed
upstream); a failed call raises
:class:`~dealerbot.core.exceptions.InferenceError` (transient).

Typical usage::

    inference = InferenceClient(client, model="default", response_max_chars=20_000)
    data = await inference.generate(prompt, EXTRACT_SCHEMA)
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Final

from dealerbot.clients.http_client import RateLimitedClient
from dealerbot.clients.rate_limit import RateLimiterRegistry
from dealerbot.core.exceptions import InferenceError, InferenceResponseError
from dealerbot.core.settings import Settings

__all__ = ["InferenceClient", "extract_json_object", "build_inference_client"]

logger = logging.getLogger(__name__)

#: Path of the generate operation, relative to the configured base URL.
GENERATE_PATH: Final[str] = "/generate"

#: First ``{`` to last ``}`` across newlines.
_JSON_OBJECT_RE: Final[re.Pattern[str]] = re.compile(r"\{.*\}", re.DOTALL)


def extract_json_object(text: str, *, target: str = "inference") -> dict[str, Any]:
    """Return the JSON object embedded in *text*.

    The whole text is tried first; failing that, the span from the first
    ``{`` to the last ``}`` (which also strips Markdown code fences).

    Raises:
        InferenceResponseError: If no JSON object can be decoded.
    """
    stripped = text.strip()
    if not stripped:
        raise InferenceResponseError(target, "Empty response text")

    try:
        value = json.loads(stripped)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(stripped)
        if match is None:
            raise InferenceResponseError(target, "No JSON object in response text") from None
        try:
            value = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise InferenceResponseError(target, f"Invalid JSON object: {exc.msg}") from exc

    if not isinstance(value, dict):
        raise InferenceResponseError(target, f"Expected a JSON object, got {type(value).__name__}")
    return value


class InferenceClient:
    """Structured-generation calls over a rate-limited client.

    Args:
        client: Client configured with ``error_cls=InferenceError`` and the
            inference base URL.
        model: Model name forwarded to the backend.
        api_key: Bearer key; omitted from the request when empty.
        response_max_chars: Response bodies are cut to this length before
            parsing.
    """

    def __init__(
        self,
        client: RateLimitedClient,
        *,
        model: str,
        api_key: str = "",
        response_max_chars: int = 20_000,
    ) -> None:
        self._client = client
        self._model = model
        self._api_key = api_key
        self._response_max_chars = response_max_chars

    async def generate(self, prompt: str, response_schema: dict[str, Any]) -> dict[str, Any]:
        """Run one structured-generation call.

        Args:
            prompt: Task prompt.
            response_schema: JSON schema describing the expected object.

        Returns:
            The decoded JSON object.

        Raises:
            InferenceError: Call failure, timeout or non-2xx response.
            RateLimitExceededError: The inference budget is exhausted.
            InferenceResponseError: The body carries no usable JSON object.
        """
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
        response = await self._client.post(
            GENERATE_PATH,
            json={"model": self._model, "prompt": prompt, "response_schema": response_schema},
            headers=headers,
        )

        raw = response.text
        if len(raw) > self._response_max_chars:
            # An oversized body of any shape is cut and parsed as free text.
            logger.debug(
                "Inference response truncated from %d to %d chars",
                len(raw),
                self._response_max_chars,
            )
            return extract_json_object(raw[: self._response_max_chars])

        try:
            body: Any = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            output = body.get("output")
            if isinstance(output, dict):
                return output
            text = body.get("text")
            if isinstance(text, str):
                return extract_json_object(text)
            if output is None and "text" not in body:
                return body
            raise InferenceResponseError("inference", "Unexpected 'output' / 'text' types")

        return extract_json_object(raw)


def build_inference_client(
    settings: Settings,
    limiters: RateLimiterRegistry,
    **kwargs: object,
) -> RateLimitedClient:
    """Build the HTTP client used by :class:`InferenceClient` from settings."""
    return RateLimitedClient(
        "inference",
        limiters.get(RateLimiterRegistry.INFERENCE),
        error_cls=InferenceError,
        base_url=settings.inference_base_url,
        headers={"Accept": "application/json"},
        max_concurrency=settings.max_concurrency,
        timeout_s=settings.inference_timeout_s,
        max_attempts=settings.inference_max_attempts,
        **kwargs,  # type: ignore[arg-type]
    )
