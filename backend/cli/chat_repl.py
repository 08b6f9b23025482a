from __future__ import annotations

import argparse
import asyncio
import base64
import getpass
import mimetypes
import os
import sys
from pathlib import Path

from dds_ai.chat_view import ChatView
from dds_ai.client import DdsApiClient, RemoteChatBackend
from dds_ai.config import API_URL
from dds_ai.errors import ChatError, ValidationError
from dds_ai.gemini import GeminiClient
from dds_ai.streaming import NO_RESPONSE_MESSAGE, TurnResult, TurnState

HELP = (
    "Commands: /new <text>, /open <chat_id>, /list, /img <path> <question>, /retry, /quit. "
    "Anything else is sent to the open chat."
)


def log(msg: str) -> None:
    print(msg, file=sys.stderr)


class _LiveText:
    """Prints only the new tail of the accumulated answer."""

    def __init__(self) -> None:
        self.shown = 0

    def __call__(self, text: str) -> None:
        sys.stdout.write(text[self.shown :])
        sys.stdout.flush()
        self.shown = len(text)


def _report(result: TurnResult | None) -> None:
    if result is None:
        return
    print()
    if result.no_response:
        log(NO_RESPONSE_MESSAGE)
    if result.upstream_error is not None:
        log(f"AI provider error: {result.upstream_error}")
    if result.state is TurnState.COMMITTING and result.commit_error is not None:
        log(f"Answer not saved: {result.commit_error} (type /retry to try again)")


def _print_history(view: ChatView) -> None:
    for turn in view.history:
        who = "you" if turn["role"] == "user" else "ai"
        print(f"[{who}] {turn['text']}")


def _read_image(path: str) -> dict[str, str]:
    mime, _ = mimetypes.guess_type(path)
    if not mime or not mime.startswith("image/"):
        raise ValidationError(f"Not an image file: {path}")
    try:
        data = Path(path).expanduser().read_bytes()
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e
    return {"mime_type": mime, "data": base64.b64encode(data).decode("ascii")}


async def _open(api: DdsApiClient, provider: GeminiClient, chat_id: str) -> ChatView:
    view = ChatView(RemoteChatBackend(api), provider, chat_id)
    await view.load()
    _print_history(view)
    if len(view.history) == 1:
        print("[ai] ", end="")
    _report(await view.mount(on_text=_LiveText()))
    return view


async def repl(api: DdsApiClient, provider: GeminiClient) -> None:
    view: ChatView | None = None
    log(HELP)
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, lambda: input("> "))
        line = line.strip()
        if not line:
            continue
        try:
            if line in ("/quit", "/exit"):
                break
            if line == "/list":
                for entry in await api.list_chats():
                    print(f"{entry['chat_id']}  {entry['title']}")
            elif line.startswith("/new "):
                if view is not None:
                    view.close()
                chat_id = await api.create_chat(line[len("/new ") :])
                view = await _open(api, provider, chat_id)
            elif line.startswith("/open "):
                if view is not None:
                    view.close()
                view = await _open(api, provider, line[len("/open ") :].strip())
            elif line.startswith("/img "):
                if view is None:
                    log("No chat open.")
                    continue
                path, _, question = line[len("/img ") :].strip().partition(" ")
                image = _read_image(path)
                print("[ai] ", end="")
                _report(await view.ask(question, image=image, on_text=_LiveText()))
            elif line == "/retry":
                if view is None:
                    log("No chat open.")
                    continue
                _report(await view.retry_commit())
            elif line.startswith("/"):
                log(HELP)
            elif view is None:
                log("No chat open; use /new <text> or /open <chat_id>.")
            else:
                print("[ai] ", end="")
                _report(await view.ask(line, on_text=_LiveText()))
        except ChatError as e:
            log(f"{e.error}: {e.detail}")
        except RuntimeError as e:
            log(str(e))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Terminal client for the DDS AI chat service.")
    p.add_argument("--api-url", default=API_URL, help="Chat API base URL")
    p.add_argument("--email", default=os.getenv("DDS_EMAIL"), help="Account email")
    p.add_argument("--password", default=os.getenv("DDS_PASSWORD"), help="Account password (prompted if omitted)")
    p.add_argument("--name", default=None, help="Display name (with --signup)")
    p.add_argument("--signup", action="store_true", help="Create the account before starting")
    return p


async def _main_async(args: argparse.Namespace) -> int:
    if not args.email:
        log("--email is required")
        return 2
    password = args.password or getpass.getpass("Password: ")
    provider = GeminiClient.from_env()
    if not provider.configured:
        log("GEMINI_API_KEY is not set; replies will fail until it is.")

    async with DdsApiClient(args.api_url) as api:
        try:
            if args.signup:
                user = await api.signup(email=args.email, password=password, name=args.name or args.email)
            else:
                user = await api.signin(email=args.email, password=password)
        except ChatError as e:
            log(f"{e.error}: {e.detail}")
            return 1
        log(f"Signed in as {user['name']} <{user['email']}>")
        try:
            await repl(api, provider)
        except (EOFError, KeyboardInterrupt):
            print()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(_main_async(args))


if __name__ == "__main__":
    raise SystemExit(main())
