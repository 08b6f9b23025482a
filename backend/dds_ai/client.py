from __future__ import annotations

from typing import Any

import httpx

from .config import API_URL
from .errors import (
    ChatError,
    Forbidden,
    NotFound,
    StorageError,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)
from .logging_utils import get_logger

log = get_logger(__name__)

_STATUS_ERRORS: dict[int, type[ChatError]] = {
    400: ValidationError,
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
    502: UpstreamUnavailable,
    503: UpstreamUnavailable,
}


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    try:
        body = resp.json()
        detail = (body.get("detail") or body.get("error")) if isinstance(body, dict) else body
    except ValueError:
        detail = resp.text
    exc_cls = _STATUS_ERRORS.get(resp.status_code)
    if exc_cls is None:
        exc_cls = StorageError if resp.status_code >= 500 else ChatError
    raise exc_cls(detail)


def exchange_from_turns(turns: list[dict[str, Any]]) -> tuple[str | None, str | None, str | None]:
    """Map an append to the PUT body shape: optional question, then optional answer."""
    roles = [t.get("role") for t in turns]
    if roles not in ([], ["user"], ["model"], ["user", "model"]):
        raise ValidationError(f"Unsupported turn sequence for the chat API: {roles}")
    question = answer = img = None
    for t in turns:
        if t["role"] == "user":
            question = t["text"]
            img = t.get("img")
        else:
            answer = t["text"]
    return question, answer, img


class DdsApiClient:
    """Async client for the chat REST API; keeps the bearer token after sign-in."""

    def __init__(
        self,
        base_url: str = API_URL,
        *,
        token: str | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout_s, transport=transport)

    async def __aenter__(self) -> "DdsApiClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = dict(kwargs.pop("headers", None) or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            msg = str(e).strip() or repr(e)
            raise StorageError(f"API request failed ({type(e).__name__}): {msg}") from e
        log.debug("%s %s -> %s", method, path, resp.status_code)
        _raise_for_status(resp)
        return resp.json()

    async def signup(self, *, email: str, password: str, name: str) -> dict[str, Any]:
        data = await self._request("POST", "/api/auth/signup", json={"email": email, "password": password, "name": name})
        self.token = data["token"]
        return data["user"]

    async def signin(self, *, email: str, password: str) -> dict[str, Any]:
        data = await self._request("POST", "/api/auth/signin", json={"email": email, "password": password})
        self.token = data["token"]
        return data["user"]

    async def me(self) -> dict[str, Any]:
        return await self._request("GET", "/api/auth/me")

    async def create_chat(self, text: str) -> str:
        return str(await self._request("POST", "/api/chats", json={"text": text}))

    async def list_chats(self) -> list[dict[str, Any]]:
        return list(await self._request("GET", "/api/userchats"))

    async def get_chat(self, chat_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/chats/{chat_id}")

    async def append(
        self,
        chat_id: str,
        *,
        question: str | None = None,
        answer: str | None = None,
        img: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if question:
            body["question"] = question
        if answer:
            body["answer"] = answer
        if img:
            body["img"] = img
        return await self._request("PUT", f"/api/chats/{chat_id}", json=body)

    async def upload_auth(self) -> dict[str, Any]:
        return await self._request("GET", "/api/upload")


class RemoteChatBackend:
    """Chat access over the REST API for views that drive the provider client-side."""

    def __init__(self, api: DdsApiClient) -> None:
        self.api = api

    async def get_chat(self, chat_id: str) -> dict[str, Any]:
        return await self.api.get_chat(chat_id)

    async def append_turns(self, chat_id: str, turns: list[dict[str, Any]]) -> dict[str, Any]:
        question, answer, img = exchange_from_turns(turns)
        return await self.api.append(chat_id, question=question, answer=answer, img=img)
