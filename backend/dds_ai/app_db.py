from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .config import APP_DB_PATH, TITLE_MAX_CHARS
from .errors import NotFound, StorageError, ValidationError
from .logging_utils import get_logger

log = get_logger(__name__)

TURN_ROLES = ("user", "model")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect(db_path: Path | None = None) -> sqlite3.Connection:
    db_path = db_path or APP_DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def _session(*, write: bool = False) -> Iterator[sqlite3.Connection]:
    """Connection scope; write scopes run inside one BEGIN IMMEDIATE transaction."""
    try:
        conn = _connect()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to open database: {e}") from e
    try:
        if write:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        if write:
            conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageError(f"Database error: {e}") from e
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with _session() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
              user_id TEXT PRIMARY KEY,
              email TEXT NOT NULL UNIQUE,
              password_hash TEXT NOT NULL,
              name TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chats (
              chat_id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS turns (
              chat_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              role TEXT NOT NULL CHECK(role IN ('user','model')),
              text TEXT NOT NULL,
              img TEXT,
              created_at TEXT NOT NULL,
              PRIMARY KEY(chat_id, seq),
              FOREIGN KEY(chat_id) REFERENCES chats(chat_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS user_chats (
              owner_id TEXT PRIMARY KEY,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_chat_entries (
              owner_id TEXT NOT NULL,
              chat_id TEXT NOT NULL,
              title TEXT NOT NULL,
              position INTEGER NOT NULL,
              created_at TEXT NOT NULL,
              PRIMARY KEY(owner_id, chat_id),
              FOREIGN KEY(owner_id) REFERENCES user_chats(owner_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_chats_owner
              ON chats(owner_id, chat_id);

            CREATE INDEX IF NOT EXISTS idx_user_chat_entries_position
              ON user_chat_entries(owner_id, position);
            """
        )


def ping() -> bool:
    try:
        with _session() as conn:
            conn.execute("SELECT 1").fetchone()
        return True
    except StorageError:
        return False


# Users.


def create_user(*, email: str, password_hash: str, name: str) -> dict[str, Any]:
    user_id = str(uuid.uuid4())
    now = _utc_now()
    with _session(write=True) as conn:
        taken = conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone()
        if taken:
            raise ValidationError("User with this email already exists")
        conn.execute(
            """
            INSERT INTO users(user_id, email, password_hash, name, created_at, updated_at)
            VALUES (?,?,?,?,?,?)
            """,
            (user_id, email, password_hash, name, now, now),
        )
    return {"user_id": user_id, "email": email, "name": name, "created_at": now, "updated_at": now}


def get_user(user_id: str) -> dict[str, Any] | None:
    with _session() as conn:
        row = conn.execute(
            "SELECT user_id, email, password_hash, name, created_at, updated_at FROM users WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    return dict(row) if row else None


def get_user_by_email(email: str) -> dict[str, Any] | None:
    with _session() as conn:
        row = conn.execute(
            "SELECT user_id, email, password_hash, name, created_at, updated_at FROM users WHERE email = ?",
            (email,),
        ).fetchone()
    return dict(row) if row else None


def count_users() -> int:
    with _session() as conn:
        row = conn.execute("SELECT COUNT(1) AS c FROM users").fetchone()
    return int(row["c"] or 0) if row else 0


# Chats, history and the per-user chat index.


def chat_title(seed_text: str) -> str:
    return seed_text[:TITLE_MAX_CHARS]


def _check_turn(turn: dict[str, Any]) -> dict[str, Any]:
    role = turn.get("role")
    text = turn.get("text")
    if role not in TURN_ROLES:
        raise ValidationError(f"Invalid turn role: {role!r}")
    if not isinstance(text, str):
        raise ValidationError("Turn text must be a string")
    img = turn.get("img")
    return {"role": role, "text": text, "img": str(img) if img else None}


def create_chat(*, owner_id: str, seed_text: str) -> dict[str, Any]:
    if not isinstance(seed_text, str) or not seed_text.strip():
        raise ValidationError("Chat text is required")

    chat_id = str(uuid.uuid4())
    now = _utc_now()
    title = chat_title(seed_text)

    with _session(write=True) as conn:
        conn.execute("INSERT INTO chats(chat_id, owner_id, created_at) VALUES (?,?,?)", (chat_id, owner_id, now))
        conn.execute(
            "INSERT INTO turns(chat_id, seq, role, text, img, created_at) VALUES (?,?,?,?,?,?)",
            (chat_id, 0, "user", seed_text, None, now),
        )
        # Find-or-create the index and append to it in the same transaction.
        conn.execute(
            "INSERT INTO user_chats(owner_id, created_at) VALUES (?,?) ON CONFLICT(owner_id) DO NOTHING",
            (owner_id, now),
        )
        conn.execute(
            """
            INSERT INTO user_chat_entries(owner_id, chat_id, title, position, created_at)
            SELECT ?, ?, ?, COALESCE(MAX(position), -1) + 1, ?
            FROM user_chat_entries
            WHERE owner_id = ?
            """,
            (owner_id, chat_id, title, now, owner_id),
        )

    log.info("Chat created: chat_id=%s owner_id=%s", chat_id, owner_id)
    return {"chat_id": chat_id, "owner_id": owner_id, "title": title, "created_at": now}


def list_user_chats(*, owner_id: str) -> list[dict[str, Any]]:
    with _session() as conn:
        rows = conn.execute(
            """
            SELECT chat_id, title
            FROM user_chat_entries
            WHERE owner_id = ?
            ORDER BY position ASC
            """,
            (owner_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def count_user_indexes(owner_id: str) -> int:
    with _session() as conn:
        row = conn.execute("SELECT COUNT(1) AS c FROM user_chats WHERE owner_id = ?", (owner_id,)).fetchone()
    return int(row["c"] or 0) if row else 0


def get_chat(*, chat_id: str, owner_id: str) -> dict[str, Any]:
    with _session() as conn:
        chat = conn.execute(
            "SELECT chat_id, owner_id, created_at FROM chats WHERE chat_id = ? AND owner_id = ?",
            (chat_id, owner_id),
        ).fetchone()
        if not chat:
            raise NotFound("Chat not found")
        rows = conn.execute(
            "SELECT role, text, img FROM turns WHERE chat_id = ? ORDER BY seq ASC",
            (chat_id,),
        ).fetchall()
    out = dict(chat)
    out["history"] = [dict(r) for r in rows]
    return out


def append_turns(*, chat_id: str, owner_id: str, turns: list[dict[str, Any]]) -> int:
    checked = [_check_turn(t) for t in turns]
    now = _utc_now()

    with _session(write=True) as conn:
        owned = conn.execute(
            "SELECT 1 FROM chats WHERE chat_id = ? AND owner_id = ?",
            (chat_id, owner_id),
        ).fetchone()
        if not owned:
            raise NotFound("Chat not found")
        if not checked:
            return 0
        row = conn.execute("SELECT COALESCE(MAX(seq), -1) AS s FROM turns WHERE chat_id = ?", (chat_id,)).fetchone()
        start = int(row["s"]) + 1
        conn.executemany(
            "INSERT INTO turns(chat_id, seq, role, text, img, created_at) VALUES (?,?,?,?,?,?)",
            [(chat_id, start + i, t["role"], t["text"], t["img"], now) for i, t in enumerate(checked)],
        )

    log.info("Appended %d turn(s): chat_id=%s roles=%s", len(checked), chat_id, ",".join(t["role"] for t in checked))
    return len(checked)
