from __future__ import annotations

import asyncio
import contextlib
import json
import time
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from . import app_db
from .auth import Identity, current_user, require_identity, signin, signup
from .chat_view import ChatView, LocalChatBackend
from .config import CLIENT_URL
from .errors import ChatError, ValidationError
from .gemini import GeminiClient
from .logging_utils import get_logger
from .schemas import (
    AppendAck,
    AuthResponse,
    ChatAppendRequest,
    ChatCreateRequest,
    ChatOut,
    ErrorResponse,
    SigninRequest,
    SignupRequest,
    StreamRequest,
    TurnOut,
    UploadAuthResponse,
    UserChatEntry,
    UserOut,
)
from .streaming import NO_RESPONSE_MESSAGE, TurnResult
from .uploads import upload_auth_params

log = get_logger(__name__)

app = FastAPI(title="dds-ai-backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[CLIENT_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept"],
)

provider = GeminiClient.from_env()

api = APIRouter(prefix="/api")


def get_provider() -> GeminiClient:
    return provider


@app.on_event("startup")
def _startup() -> None:
    app_db.init_db()
    if not provider.configured:
        log.warning("GEMINI_API_KEY is not set; streaming endpoints will report the provider as unavailable.")


@app.exception_handler(ChatError)
async def _chat_error(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc)
    body = ErrorResponse(error=exc.error, detail=jsonable_encoder(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    body = ErrorResponse(error="Validation error", detail=jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=400, content=body.model_dump())


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=ErrorResponse(error="Server error").model_dump())


@app.get("/health")
def health() -> dict[str, Any]:
    db_ok = app_db.ping()
    return {
        "status": "ok",
        "db": db_ok,
        "users": app_db.count_users() if db_ok else None,
        "provider": {"configured": provider.configured, "model": provider.model_id},
    }


@api.post("/auth/signup", response_model=AuthResponse, status_code=201)
def auth_signup(req: SignupRequest) -> AuthResponse:
    user, token = signup(email=req.email, password=req.password, name=req.name)
    return AuthResponse(token=token, user=UserOut(**user))


@api.post("/auth/signin", response_model=AuthResponse)
def auth_signin(req: SigninRequest) -> AuthResponse:
    user, token = signin(email=req.email, password=req.password)
    return AuthResponse(token=token, user=UserOut(**user))


@api.get("/auth/me", response_model=UserOut)
def auth_me(identity: Identity = Depends(require_identity)) -> UserOut:
    return UserOut(**current_user(identity))


@api.get("/upload", response_model=UploadAuthResponse)
def upload_auth(identity: Identity = Depends(require_identity)) -> UploadAuthResponse:
    return UploadAuthResponse(**upload_auth_params())


@api.post("/chats", response_model=str, status_code=201)
def chats_create(req: ChatCreateRequest, identity: Identity = Depends(require_identity)) -> str:
    chat = app_db.create_chat(owner_id=identity.user_id, seed_text=req.text)
    return str(chat["chat_id"])


@api.get("/userchats", response_model=list[UserChatEntry])
def userchats_list(identity: Identity = Depends(require_identity)) -> list[UserChatEntry]:
    return [UserChatEntry(**e) for e in app_db.list_user_chats(owner_id=identity.user_id)]


@api.get("/chats/{chat_id}", response_model=ChatOut)
def chats_get(chat_id: str, identity: Identity = Depends(require_identity)) -> ChatOut:
    return ChatOut(**app_db.get_chat(chat_id=chat_id, owner_id=identity.user_id))


@api.put("/chats/{chat_id}", response_model=AppendAck)
def chats_append(chat_id: str, req: ChatAppendRequest, identity: Identity = Depends(require_identity)) -> AppendAck:
    turns: list[dict[str, Any]] = []
    if req.question:
        turns.append({"role": "user", "text": req.question, "img": req.img})
    if req.answer:
        turns.append({"role": "model", "text": req.answer, "img": None})
    appended = app_db.append_turns(chat_id=chat_id, owner_id=identity.user_id, turns=turns)
    return AppendAck(ok=True, appended=appended)


def _turn_out(result: TurnResult | None) -> TurnOut:
    if result is None:
        return TurnOut(state="idle")
    return TurnOut(
        state=result.state.value,
        text=result.text,
        committed=result.committed,
        no_response=result.no_response,
        message=NO_RESPONSE_MESSAGE if result.no_response else None,
        upstream_error=str(result.upstream_error) if result.upstream_error else None,
        commit_error=str(result.commit_error) if result.commit_error else None,
    )


@api.post("/chats/{chat_id}/stream")
async def chats_stream(
    chat_id: str,
    req: StreamRequest,
    identity: Identity = Depends(require_identity),
    provider_client: GeminiClient = Depends(get_provider),
) -> StreamingResponse:
    view = ChatView(LocalChatBackend(identity.user_id), provider_client, chat_id)
    # Load before streaming so a missing chat is a plain 404.
    await view.load()
    question = (req.question or "").strip() or None
    image = req.image.model_dump() if req.image else None
    if image and not question:
        raise ValidationError("An image needs a question to go with it")

    def sse(event: str, data: dict[str, Any]) -> str:
        return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"

    async def gen():
        q: asyncio.Queue[str | None] = asyncio.Queue()

        async def run() -> TurnResult | None:
            try:
                if question:
                    return await view.ask(question, img=req.img, image=image, on_text=q.put_nowait)
                return await view.mount(on_text=q.put_nowait)
            finally:
                q.put_nowait(None)

        started = time.monotonic()
        task = asyncio.create_task(run())
        try:
            yield sse("status", {"phase": "calling_llm", "chat_id": chat_id})
            while True:
                try:
                    text = await asyncio.wait_for(q.get(), timeout=3.0)
                except asyncio.TimeoutError:
                    yield sse("ping", {"elapsed_s": int(time.monotonic() - started)})
                    continue
                if text is None:
                    break
                yield sse("delta", {"text": text})

            result = await task
            yield sse("final", _turn_out(result).model_dump())
        except asyncio.CancelledError:
            raise
        except ChatError as e:
            log.warning("Chat stream failed: %s", e)
            yield sse("error", {"error": e.error, "detail": jsonable_encoder(e.detail)})
        except Exception as e:
            log.exception("Chat stream error")
            yield sse("error", {"error": "Chat stream failed", "detail": str(e)})
        finally:
            if not task.done():
                view.close()
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


app.include_router(api)
