from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx

from .config import GEMINI_API_KEY, GEMINI_BASE_URL, GEMINI_MODELS, GEMINI_TIMEOUT_S
from .errors import UpstreamUnavailable
from .logging_utils import get_logger

log = get_logger(__name__)

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

DEFAULT_SAFETY_SETTINGS = [{"category": c, "threshold": "BLOCK_MEDIUM_AND_ABOVE"} for c in HARM_CATEGORIES]


class _ModelNotFound(Exception):
    pass


def to_provider_history(turns: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert stored turns to Gemini `contents` entries, skipping turns without text."""
    out: list[dict[str, Any]] = []
    for t in turns:
        text = t.get("text")
        if not isinstance(text, str) or not text:
            continue
        out.append({"role": str(t.get("role") or "user"), "parts": [{"text": text}]})
    return out


def _extract_text(data: dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    content = (candidates[0] or {}).get("content") or {}
    parts = content.get("parts") or []
    return "".join(str(p.get("text") or "") for p in parts if isinstance(p, dict))


class GeminiClient:
    """Streaming client for the Gemini `streamGenerateContent` endpoint.

    One instance per process; chat views get it passed in and open sessions from it.
    Models are tried in order until one exists; the first that answers is reused.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = GEMINI_BASE_URL,
        models: list[str] | None = None,
        timeout_s: float = GEMINI_TIMEOUT_S,
        safety_settings: list[dict[str, str]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.models = list(models or GEMINI_MODELS)
        self.timeout_s = timeout_s
        self.safety_settings = DEFAULT_SAFETY_SETTINGS if safety_settings is None else safety_settings
        self._transport = transport
        self._model_id: str | None = None

    @classmethod
    def from_env(cls) -> "GeminiClient":
        return cls(GEMINI_API_KEY)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def model_id(self) -> str | None:
        return self._model_id

    def start_session(self, history: list[dict[str, Any]]) -> "GeminiChatSession":
        return GeminiChatSession(self, to_provider_history(history))

    async def stream_generate(self, contents: list[dict[str, Any]]) -> AsyncIterator[str]:
        if not self.api_key:
            raise UpstreamUnavailable("GEMINI_API_KEY is not set")
        if not self.models:
            raise UpstreamUnavailable("No Gemini models configured")

        candidates = list(self.models)
        if self._model_id:
            candidates = [self._model_id] + [m for m in candidates if m != self._model_id]

        for model in candidates:
            try:
                async for text in self._stream_model(model, contents):
                    yield text
                return
            except _ModelNotFound:
                log.warning("Gemini model %s is not available; trying the next one", model)
                if self._model_id == model:
                    self._model_id = None
        raise UpstreamUnavailable(f"No Gemini model available (tried: {', '.join(candidates)})")

    async def _stream_model(self, model: str, contents: list[dict[str, Any]]) -> AsyncIterator[str]:
        payload = {"contents": contents, "safetySettings": self.safety_settings}
        url = f"{self.base_url}/models/{model}:streamGenerateContent"

        # For streaming, read timeout is per-chunk; keep it generous.
        timeout = httpx.Timeout(self.timeout_s, connect=10.0, read=self.timeout_s, write=10.0, pool=10.0)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                async with client.stream(
                    "POST",
                    url,
                    params={"alt": "sse"},
                    headers={"x-goog-api-key": str(self.api_key)},
                    json=payload,
                ) as resp:
                    if resp.status_code == 404:
                        raise _ModelNotFound(model)
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise UpstreamUnavailable(f"Gemini request failed ({resp.status_code}): {body[:500]}".strip())
                    self._model_id = model
                    async for line in resp.aiter_lines():
                        s = line.strip()
                        if not s.startswith("data:"):
                            continue
                        data_str = s[len("data:") :].strip()
                        if not data_str:
                            continue
                        try:
                            data = json.loads(data_str)
                        except json.JSONDecodeError:
                            log.debug("Skipping non-JSON stream line: %s", data_str)
                            continue
                        if isinstance(data, dict) and data.get("error"):
                            raise UpstreamUnavailable(f"Gemini stream error: {data['error']}")
                        text = _extract_text(data) if isinstance(data, dict) else ""
                        if text:
                            yield text
            except httpx.TimeoutException as e:
                raise UpstreamUnavailable(
                    f"Gemini request timed out after {self.timeout_s:.1f}s ({type(e).__name__})."
                ) from e
            except httpx.HTTPError as e:
                msg = str(e).strip() or repr(e)
                raise UpstreamUnavailable(f"Gemini request failed ({type(e).__name__}): {msg}") from e


class GeminiChatSession:
    """Multi-turn context for one chat view; keeps completed exchanges."""

    def __init__(self, client: GeminiClient, history: list[dict[str, Any]]) -> None:
        self._client = client
        self.history = list(history)

    async def send_and_stream(self, text: str, *, image: dict[str, str] | None = None) -> AsyncIterator[str]:
        parts: list[dict[str, Any]] = []
        if image:
            parts.append({"inline_data": {"mime_type": image["mime_type"], "data": image["data"]}})
        parts.append({"text": text})
        user = {"role": "user", "parts": parts}

        reply: list[str] = []
        async for fragment in self._client.stream_generate([*self.history, user]):
            reply.append(fragment)
            yield fragment
        if reply:
            self.history.extend([user, {"role": "model", "parts": [{"text": "".join(reply)}]}])
