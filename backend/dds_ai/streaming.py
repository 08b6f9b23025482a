"""Drives one AI completion per turn and commits it to the chat history once.

A turn moves through ``IDLE -> REQUESTING -> STREAMING -> COMMITTING`` and ends
``COMMITTED`` (a model turn was stored) or ``ABANDONED`` (no model text, or the
caller walked away). The user's question is stored even when generation fails,
partial model output is kept when the stream breaks mid-way, and a failed
commit leaves the text in place for an explicit ``retry_commit()``.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from .logging_utils import get_logger

log = get_logger(__name__)

NO_RESPONSE_MESSAGE = "Sorry, I did not receive a response. Please try again."


class TurnState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABANDONED = "abandoned"


class ProviderSession(Protocol):
    def send_and_stream(self, text: str, *, image: dict[str, str] | None = None) -> AsyncIterator[str]: ...


AppendTurns = Callable[[list[dict[str, Any]]], Awaitable[Any]]


@dataclass
class StreamSession:
    question: str
    text: str = ""
    received: bool = False
    fragments: int = 0


@dataclass
class TurnResult:
    state: TurnState
    text: str = ""
    committed: list[dict[str, Any]] = field(default_factory=list)
    no_response: bool = False
    upstream_error: Exception | None = None
    commit_error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.state is TurnState.COMMITTED


async def notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    res = callback(*args)
    if inspect.isawaitable(res):
        await res


async def _close_stream(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


class StreamCoordinator:
    def __init__(
        self,
        provider_session: ProviderSession,
        append: AppendTurns,
        *,
        on_committed: Callable[[list[dict[str, Any]]], Any] | None = None,
    ) -> None:
        self._provider = provider_session
        self._append = append
        self._on_committed = on_committed
        self.state = TurnState.IDLE
        self.session: StreamSession | None = None
        self._busy = False
        self._abandoned = False
        self._pending: list[dict[str, Any]] | None = None
        self._result: TurnResult | None = None

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending_commit(self) -> list[dict[str, Any]] | None:
        return list(self._pending) if self._pending is not None else None

    def abandon(self) -> None:
        """Stop consuming the current stream; nothing from this turn is committed."""
        if self._busy and self.state in (TurnState.REQUESTING, TurnState.STREAMING):
            self._abandoned = True
        elif not self._busy and self.state is TurnState.COMMITTING:
            log.warning("Dropping uncommitted turn on abandon")
            self._pending = None
            self.state = TurnState.ABANDONED

    async def run_turn(
        self,
        question: str,
        *,
        persist_question: bool = True,
        img: str | None = None,
        image: dict[str, str] | None = None,
        on_text: Callable[[str], Any] | None = None,
    ) -> TurnResult:
        if self._busy:
            raise RuntimeError("A turn is already in progress")
        if self.state is TurnState.COMMITTING and self._pending is not None:
            log.warning("Starting a new turn; discarding a turn whose commit failed")
        self._busy = True
        self._abandoned = False
        self._pending = None
        session = StreamSession(question=question)
        self.session = session
        self.state = TurnState.REQUESTING

        upstream_error: Exception | None = None
        stream: Any = None
        try:
            try:
                stream = self._provider.send_and_stream(question, image=image)
                iterator = stream.__aiter__()
            except Exception as e:
                upstream_error = e
                iterator = None
            while iterator is not None and not self._abandoned:
                try:
                    fragment = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    upstream_error = e
                    break
                if self._abandoned:
                    break
                self.state = TurnState.STREAMING
                session.received = True
                session.fragments += 1
                session.text += str(fragment)
                await notify(on_text, session.text)
        except BaseException:
            # Cancelled or the renderer failed: treat as walking away from the turn.
            self._finish_abandoned()
            raise
        finally:
            if stream is not None:
                await _close_stream(stream)

        if self._abandoned:
            log.info("Turn abandoned after %d fragment(s); not committing", session.fragments)
            return self._finish_abandoned()

        if upstream_error is not None:
            if session.text:
                log.warning(
                    "Provider stream failed after %d fragment(s); committing partial answer: %s",
                    session.fragments,
                    upstream_error,
                )
            else:
                log.warning("Provider stream failed before any text: %s", upstream_error)

        turns: list[dict[str, Any]] = []
        if persist_question and question:
            turns.append({"role": "user", "text": question, "img": img})
        no_response = not session.text
        if no_response:
            if upstream_error is None:
                log.warning("Provider stream ended without text (fragments=%d)", session.fragments)
        else:
            turns.append({"role": "model", "text": session.text, "img": None})

        self._result = TurnResult(
            state=TurnState.COMMITTING,
            text=session.text,
            no_response=no_response,
            upstream_error=upstream_error,
        )
        if not turns:
            self.state = TurnState.ABANDONED
            self._result.state = TurnState.ABANDONED
            self.session = None
            self._busy = False
            return self._result

        self._pending = turns
        self.state = TurnState.COMMITTING
        return await self._commit()

    async def retry_commit(self) -> TurnResult:
        if self._busy or self.state is not TurnState.COMMITTING or self._pending is None or self._result is None:
            raise RuntimeError("No failed commit to retry")
        self._busy = True
        return await self._commit()

    async def _commit(self) -> TurnResult:
        assert self._pending is not None and self._result is not None
        turns = self._pending
        result = self._result
        try:
            await self._append(turns)
        except asyncio.CancelledError:
            self._busy = False
            raise
        except Exception as e:
            log.warning("Failed to commit turn (%d item(s)); keeping it for retry: %s", len(turns), e)
            result.state = TurnState.COMMITTING
            result.commit_error = e
            self._busy = False
            return result

        final = TurnState.COMMITTED if any(t["role"] == "model" for t in turns) else TurnState.ABANDONED
        self._pending = None
        self.session = None
        self.state = final
        result.state = final
        result.committed = turns
        result.commit_error = None
        self._busy = False
        await notify(self._on_committed, turns)
        return result

    def _finish_abandoned(self) -> TurnResult:
        session = self.session
        self.state = TurnState.ABANDONED
        self.session = None
        self._pending = None
        self._busy = False
        self._result = TurnResult(state=TurnState.ABANDONED, text=session.text if session else "")
        return self._result
