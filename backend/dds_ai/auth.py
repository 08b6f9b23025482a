from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from . import app_db
from .config import TOKEN_TTL_S
from .errors import Forbidden, NotFound, Unauthorized, ValidationError
from .logging_utils import get_logger

log = get_logger(__name__)

_AUTH_SECRET = os.getenv("DDS_AUTH_SECRET")
if not _AUTH_SECRET:
    _AUTH_SECRET = secrets.token_hex(32)
    log.warning("DDS_AUTH_SECRET is not set; using ephemeral secret (tokens reset on restart).")

MIN_PASSWORD_LEN = 6


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str | None = None
    name: str | None = None


def _sign(raw: bytes) -> str:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def encode_token(claims: dict[str, Any]) -> str:
    raw = json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")
    body = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return f"{body}.{_sign(raw)}"


def decode_token(token: str) -> dict[str, Any]:
    """Check the signature and return the claims; expiry is checked by `verify`."""
    try:
        body, signature = token.rsplit(".", 1)
        raw = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    except (binascii.Error, ValueError) as e:
        raise Forbidden("Invalid or expired token") from e
    if not hmac.compare_digest(signature.encode("utf-8"), _sign(raw).encode("ascii")):
        raise Forbidden("Invalid or expired token")
    try:
        claims = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise Forbidden("Invalid or expired token") from e
    if not isinstance(claims, dict) or not claims.get("sub"):
        raise Forbidden("Invalid or expired token")
    return claims


def hash_password(password: str, *, iterations: int = 200_000) -> str:
    pwd = str(password or "")
    if not pwd:
        raise ValueError("Password is empty")
    salt = secrets.token_bytes(16)
    dk = hashlib.pbkdf2_hmac("sha256", pwd.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        algo, it_s, salt_hex, hash_hex = str(stored or "").split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iterations = int(it_s)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        return False

    dk = hashlib.pbkdf2_hmac("sha256", str(password or "").encode("utf-8"), salt, iterations)
    return hmac.compare_digest(dk, expected)


def public_user(rec: dict[str, Any]) -> dict[str, Any]:
    return {"id": str(rec["user_id"]), "email": str(rec["email"]), "name": str(rec.get("name") or "")}


def bearer_token(authorization: str | None) -> str | None:
    parts = str(authorization or "").strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def issue_token(rec: dict[str, Any], *, ttl_s: int = TOKEN_TTL_S) -> str:
    claims = {
        "sub": str(rec["user_id"]),
        "email": str(rec.get("email") or ""),
        "name": str(rec.get("name") or ""),
        "exp": int(time.time()) + int(ttl_s),
    }
    return encode_token(claims)


def verify(credential: str | None) -> Identity:
    """Resolve a bearer credential to the caller's identity without touching the store.

    Missing credential -> Unauthorized; tampered, malformed or expired -> Forbidden.
    """
    if not credential:
        raise Unauthorized("No token provided")

    claims = decode_token(credential)
    try:
        exp = int(claims.get("exp"))
    except (TypeError, ValueError) as e:
        raise Forbidden("Invalid or expired token") from e
    if exp <= time.time():
        raise Forbidden("Invalid or expired token")

    return Identity(
        user_id=str(claims["sub"]),
        email=str(claims.get("email") or "") or None,
        name=str(claims.get("name") or "") or None,
    )


def require_identity(request: Request) -> Identity:
    return verify(bearer_token(request.headers.get("authorization")))


def signup(*, email: str, password: str, name: str) -> tuple[dict[str, Any], str]:
    email = str(email or "").strip().lower()
    name = str(name or "").strip()
    password = str(password or "")
    if not email or not password or not name:
        raise ValidationError("All fields are required")
    if "@" not in email:
        raise ValidationError("Invalid email address")
    if len(password) < MIN_PASSWORD_LEN:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LEN} characters")

    rec = app_db.create_user(email=email, password_hash=hash_password(password), name=name)
    token = issue_token(rec)
    log.info("User signed up: user_id=%s", rec["user_id"])
    return public_user(rec), token


def signin(*, email: str, password: str) -> tuple[dict[str, Any], str]:
    email = str(email or "").strip().lower()
    if not email or not password:
        raise ValidationError("Email and password are required")
    rec = app_db.get_user_by_email(email)
    if not rec:
        raise Unauthorized("Invalid credentials")
    if not verify_password(password, str(rec.get("password_hash") or "")):
        raise Unauthorized("Invalid credentials")
    return public_user(rec), issue_token(rec)


def current_user(identity: Identity) -> dict[str, Any]:
    rec = app_db.get_user(identity.user_id)
    if not rec:
        raise NotFound("User not found")
    return public_user(rec)
