from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class UserOut(BaseModel):
    id: str
    email: str
    name: str


class SignupRequest(BaseModel):
    email: str
    password: str
    name: str


class SigninRequest(BaseModel):
    email: str
    password: str


class AuthResponse(BaseModel):
    token: str
    user: UserOut


class Turn(BaseModel):
    role: Literal["user", "model"]
    text: str
    img: str | None = None


class ChatOut(BaseModel):
    chat_id: str
    owner_id: str
    created_at: str
    history: list[Turn]


class ChatCreateRequest(BaseModel):
    text: str = Field(min_length=1)


class UserChatEntry(BaseModel):
    chat_id: str
    title: str


class ChatAppendRequest(BaseModel):
    question: str | None = None
    answer: str | None = None
    img: str | None = None


class AppendAck(BaseModel):
    ok: bool = True
    appended: int = 0


class ImagePart(BaseModel):
    mime_type: str = Field(pattern=r"^image/")
    data: str = Field(min_length=1)


class StreamRequest(BaseModel):
    question: str | None = None
    img: str | None = None
    # Sent to the model inline; `img` is only the stored reference.
    image: ImagePart | None = None


class TurnOut(BaseModel):
    state: Literal["idle", "requesting", "streaming", "committing", "committed", "abandoned"]
    text: str = ""
    committed: list[Turn] = Field(default_factory=list)
    no_response: bool = False
    message: str | None = None
    upstream_error: str | None = None
    commit_error: str | None = None


class UploadAuthResponse(BaseModel):
    token: str
    expire: int
    signature: str
    public_key: str | None = None
    url_endpoint: str | None = None


class ErrorResponse(BaseModel):
    error: str
    detail: Any | None = None
