from __future__ import annotations

import asyncio
from typing import Any, Callable, Protocol

from . import app_db
from .errors import ChatError, ValidationError
from .logging_utils import get_logger
from .streaming import ProviderSession, StreamCoordinator, TurnResult, TurnState, notify

log = get_logger(__name__)


class ChatBackend(Protocol):
    async def get_chat(self, chat_id: str) -> dict[str, Any]: ...

    async def append_turns(self, chat_id: str, turns: list[dict[str, Any]]) -> Any: ...


class ProviderClient(Protocol):
    def start_session(self, history: list[dict[str, Any]]) -> ProviderSession: ...


class LocalChatBackend:
    """Store-backed chat access bound to one authenticated owner."""

    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id

    async def get_chat(self, chat_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(app_db.get_chat, chat_id=chat_id, owner_id=self.owner_id)

    async def append_turns(self, chat_id: str, turns: list[dict[str, Any]]) -> int:
        return await asyncio.to_thread(app_db.append_turns, chat_id=chat_id, owner_id=self.owner_id, turns=turns)


class InitialTurnTrigger:
    """One-shot latch for generating the first reply of a freshly created chat.

    The latch closes on the first call whatever the outcome, so a view that is
    set up more than once still starts at most one initial generation. It lives
    with the view instance: a new view over the same unanswered chat fires again.
    """

    def __init__(self) -> None:
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def claim(self, history: list[dict[str, Any]]) -> str | None:
        if self._fired:
            return None
        self._fired = True
        if len(history) != 1:
            return None
        seed = history[0]
        text = seed.get("text")
        if seed.get("role") != "user" or not isinstance(text, str) or not text:
            return None
        return text


class ChatView:
    """One open chat: loaded history, a provider session and the turn coordinator."""

    def __init__(
        self,
        backend: ChatBackend,
        provider: ProviderClient,
        chat_id: str,
        *,
        on_history_changed: Callable[[dict[str, Any] | None], Any] | None = None,
    ) -> None:
        self.chat_id = chat_id
        self.chat: dict[str, Any] | None = None
        self.trigger = InitialTurnTrigger()
        self._backend = backend
        self._provider = provider
        self._on_history_changed = on_history_changed
        self._coordinator: StreamCoordinator | None = None

    @property
    def state(self) -> TurnState:
        return self._coordinator.state if self._coordinator else TurnState.IDLE

    @property
    def history(self) -> list[dict[str, Any]]:
        return list((self.chat or {}).get("history") or [])

    async def load(self) -> dict[str, Any]:
        self.chat = await self._backend.get_chat(self.chat_id)
        return self.chat

    async def mount(self, *, on_text: Callable[[str], Any] | None = None) -> TurnResult | None:
        """Set the view up; answers the seed question when the chat has no reply yet."""
        if self.chat is None:
            await self.load()
        history = self.history
        seed = self.trigger.claim(history)
        # The seed is sent as the question, so it must not also be in the prior context.
        coordinator = self._ensure_coordinator(history[:-1] if seed else history)
        if seed is None:
            return None
        log.info("Generating first reply: chat_id=%s", self.chat_id)
        return await coordinator.run_turn(seed, persist_question=False, on_text=on_text)

    async def ask(
        self,
        question: str,
        *,
        img: str | None = None,
        image: dict[str, str] | None = None,
        on_text: Callable[[str], Any] | None = None,
    ) -> TurnResult:
        if not isinstance(question, str) or not question.strip():
            raise ValidationError("Question is required")
        if self.chat is None:
            await self.load()
        coordinator = self._ensure_coordinator(self.history)
        return await coordinator.run_turn(question, persist_question=True, img=img, image=image, on_text=on_text)

    async def retry_commit(self) -> TurnResult:
        if self._coordinator is None:
            raise RuntimeError("No failed commit to retry")
        return await self._coordinator.retry_commit()

    def close(self) -> None:
        if self._coordinator is not None:
            self._coordinator.abandon()

    def _ensure_coordinator(self, history: list[dict[str, Any]]) -> StreamCoordinator:
        if self._coordinator is None:
            session = self._provider.start_session(history)
            self._coordinator = StreamCoordinator(session, self._append, on_committed=self._committed)
        return self._coordinator

    async def _append(self, turns: list[dict[str, Any]]) -> None:
        await self._backend.append_turns(self.chat_id, turns)

    async def _committed(self, turns: list[dict[str, Any]]) -> None:
        try:
            await self.load()
        except ChatError as e:
            log.warning("Failed to reload chat %s after commit: %s", self.chat_id, e)
        await notify(self._on_history_changed, self.chat)
