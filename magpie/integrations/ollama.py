"""Ollama chat client used by the task extractor.

Only the non-streaming ``/api/chat`` call with a ``format`` constraint is
needed: the extractor asks for one JSON object per email and validates the
fields itself.
"""

import json
import logging
import re

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0

# Model-name fragments in order of preference for extraction work.
INSTRUCT_HINTS = ("instruct", "chat", "qwen", "gemma")

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class OllamaResponse(BaseModel):
    """Non-streaming /api/chat reply. Token counts feed debug logging only."""

    model: str
    message: dict
    done: bool
    done_reason: str = ""
    total_duration: int = 0
    prompt_eval_count: int = 0
    eval_count: int = 0

    @property
    def content(self) -> str:
        return self.message.get("content", "")

    @property
    def seconds(self) -> float:
        return self.total_duration / 1e9


def _decode_object(content: str, model: str) -> dict:
    """Decode the assistant content as a JSON object, tolerating a code fence."""
    text = content.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object from {model}, got {type(data).__name__}")
    return data


class OllamaClient:
    """Async client for a local Ollama server.

    Usage::

        async with OllamaClient(OLLAMA_BASE_URL) as ollama:
            model = await ollama.pick_instruct_model()
            data, raw = await ollama.generate_json(model, SYSTEM_PROMPT, prompt, schema=schema)
    """

    def __init__(
        self,
        base_url: str,
        *,
        default_keep_alive: str = "5m",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._default_keep_alive = default_keep_alive
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def _chat_payload(
        self,
        model: str,
        system: str,
        prompt: str,
        schema: dict | None,
        temperature: float,
        keep_alive: str | None,
    ) -> dict:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            # "json" only guarantees syntax; a schema also constrains the shape.
            "format": schema if schema is not None else "json",
            "stream": False,
            "keep_alive": keep_alive or self._default_keep_alive,
            "options": {"temperature": temperature},
        }

    async def generate_json(
        self,
        model: str,
        system: str,
        prompt: str,
        *,
        schema: dict | None = None,
        temperature: float = 0.2,
        keep_alive: str | None = None,
    ) -> tuple[dict, OllamaResponse]:
        """Run one chat turn and return the reply decoded as a JSON object.

        Raises:
            httpx.HTTPStatusError: Ollama answered with a non-2xx status.
            ValueError: The reply is not a JSON object (json.JSONDecodeError
                is a ValueError too).
        """
        payload = self._chat_payload(model, system, prompt, schema, temperature, keep_alive)
        response = await self._client.post("/api/chat", json=payload)
        response.raise_for_status()

        raw = OllamaResponse.model_validate(response.json())
        data = _decode_object(raw.content, model)
        logger.debug(
            "Ollama %s: %d prompt tokens, %d eval tokens, %.1fs",
            model,
            raw.prompt_eval_count,
            raw.eval_count,
            raw.seconds,
        )
        return data, raw

    async def list_models(self) -> list[str]:
        """Names of the models installed on the server."""
        response = await self._client.get("/api/tags")
        response.raise_for_status()
        return [m["name"] for m in response.json().get("models", [])]

    async def pick_instruct_model(self) -> str | None:
        return pick_instruct_model(await self.list_models())


def pick_instruct_model(names: list[str]) -> str | None:
    """Pick the model best suited to instruction following.

    Names are ranked by the first matching entry of ``INSTRUCT_HINTS``;
    without any match the first installed model is used.
    """
    if not names:
        return None
    for hint in INSTRUCT_HINTS:
        for name in names:
            if hint in name.lower():
                return name
    return names[0]
