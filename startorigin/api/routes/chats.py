"""
startorigin.api.routes.chats — Chat REST endpoints + live WebSocket
====================================================================

REST endpoints are thin wrappers over ``messaging_service`` for clients
that poll.  ``WS /api/chats/ws?token=…`` hosts one
:class:`~startorigin.services.messenger.Messenger` per connection:

* client → server: ``{"op": "...", ...}`` commands (see ``_COMMANDS``).
  Destructive ops (``delete_message``, ``block``, ``unblock``,
  ``delete_chat``) run only with ``"confirmed": true``; otherwise the reply
  is ``{"type": "confirm", ...}`` carrying the prompt to show.
* server → client: ``{"type": "result" | "error" | "confirm", "op": ...}``
  replies, ``{"type": "notice", ...}`` dialogs and ``{"type": "state"}``
  snapshots whenever the view changes (including live updates).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from jwt.exceptions import InvalidTokenError
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from startorigin.api.deps import (
    decode_token,
    error_body,
    get_config,
    get_current_user,
    get_engine,
    get_live,
)
from startorigin.config import StartOriginConfig
from startorigin.database.engine import run_db
from startorigin.errors import StartOriginError
from startorigin.services import messaging_service
from startorigin.notices import Notice
from startorigin.services.messenger import Messenger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/chats", tags=["chats"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class OpenChat(BaseModel):
    user_id: str


class SendBody(BaseModel):
    content: str


class ReactionBody(BaseModel):
    emoji: str


class BlockBody(BaseModel):
    user_id: str


# ---------------------------------------------------------------------------
# Chats & messages
# ---------------------------------------------------------------------------
@router.get("")
def list_chats(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    chats = messaging_service.list_chats(engine, user["sub"])
    return {"chats": [c.to_dict() for c in chats]}


@router.post("")
def open_chat(
    body: OpenChat,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    """Find or create the 1:1 chat with ``user_id``."""
    chat_id, created = messaging_service.open_chat_with(engine, user["sub"], body.user_id)
    return {"chat_id": chat_id, "created": created}


@router.get("/search")
def search_users(
    q: str = Query(""),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    results = messaging_service.search_users(engine, user["sub"], q)
    return {"users": [u.to_dict() for u in results]}


@router.get("/blocks")
def list_blocks(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    return {"blocked": sorted(messaging_service.blocked_ids(engine, user["sub"]))}


@router.post("/blocks", status_code=201)
def block_user(
    body: BlockBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    live=Depends(get_live),
):
    deleted_chat = messaging_service.block_user(engine, live, user["sub"], body.user_id)
    return {"blocked": body.user_id, "deleted_chat_id": deleted_chat}


@router.delete("/blocks/{user_id}")
def unblock_user(
    user_id: str,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return {"unblocked": messaging_service.unblock_user(engine, user["sub"], user_id)}


@router.delete("/messages/{message_id}")
def delete_message(
    message_id: str,
    for_everyone: bool = Query(False),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    live=Depends(get_live),
):
    messaging_service.delete_message(
        engine, live, message_id, user["sub"], for_everyone=for_everyone,
    )
    return {"deleted": message_id}


@router.post("/messages/{message_id}/reactions", status_code=201)
def add_reaction(
    message_id: str,
    body: ReactionBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    reaction = messaging_service.add_reaction(engine, message_id, user["sub"], body.emoji)
    return {"id": reaction.id, "message_id": message_id, "emoji": reaction.emoji}


@router.delete("/messages/{message_id}/reactions")
def remove_reaction(
    message_id: str,
    emoji: str = Query(...),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    removed = messaging_service.remove_reaction(engine, message_id, user["sub"], emoji)
    return {"removed": removed}


@router.get("/{chat_id}/messages")
def get_messages(
    chat_id: str,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    messages = messaging_service.load_messages(engine, chat_id, user["sub"])
    return {"chat_id": chat_id, "messages": [m.to_dict() for m in messages]}


@router.post("/{chat_id}/messages", status_code=201)
def post_message(
    chat_id: str,
    body: SendBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    live=Depends(get_live),
):
    message = messaging_service.send_message(engine, live, chat_id, user["sub"], body.content)
    return message.to_dict()


@router.post("/{chat_id}/read")
def mark_read(
    chat_id: str,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return {"updated": messaging_service.mark_as_read(engine, chat_id, user["sub"])}


@router.delete("/{chat_id}")
def delete_chat(
    chat_id: str,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    live=Depends(get_live),
):
    messaging_service.delete_chat(engine, live, chat_id, user["sub"])
    return {"deleted": chat_id}


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------
_STATE = object()


class _Outbox:
    """Loop-side queue fed from any thread.  Consecutive state pushes
    collapse into one snapshot."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._state_queued = False

    def put(self, payload: dict) -> None:
        self._queue.put_nowait(payload)

    def push(self, payload: dict) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, payload)

    def mark_dirty(self) -> None:
        self._loop.call_soon_threadsafe(self._enqueue_state)

    def _enqueue_state(self) -> None:
        if not self._state_queued:
            self._state_queued = True
            self._queue.put_nowait(_STATE)

    async def get(self) -> Any:
        item = await self._queue.get()
        if item is _STATE:
            self._state_queued = False
        return item


class _ConfirmGate:
    """Confirmation dialog answered by the command's ``confirmed`` flag."""

    def __init__(self) -> None:
        self.confirmed = False
        self.prompt: tuple[str, str] | None = None

    def arm(self, confirmed: bool) -> None:
        self.confirmed = confirmed
        self.prompt = None

    def __call__(self, title: str, message: str) -> bool:
        self.prompt = (title, message)
        return self.confirmed


# ---------------------------------------------------------------------------
# WebSocket command schemas
# ---------------------------------------------------------------------------
class Command(BaseModel):
    op: str
    confirmed: bool = False


class TextCommand(Command):
    text: str | None = None


class MessageCommand(Command):
    message_id: str
    for_everyone: bool = False


class ReactionCommand(Command):
    message_id: str
    emoji: str


class UserCommand(Command):
    user_id: str


class ChatCommand(Command):
    chat_id: str


class OptionalChatCommand(Command):
    chat_id: str | None = None


class SearchCommand(Command):
    query: str = ""


def _run_command(messenger: Messenger, gate: _ConfirmGate, cmd: dict) -> dict:
    op = cmd.get("op")
    entry = _COMMANDS.get(op) if isinstance(op, str) else None
    if entry is None:
        return {"type": "error", "op": op, "error": "UnknownOp", "detail": f"Unknown op: {op!r}"}

    schema, handler = entry
    try:
        parsed = schema.model_validate(cmd)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "command"
        return {"type": "error", "op": op, "error": "BadRequest",
                "detail": f"Invalid field {field!r}: {first['msg']}"}

    gate.arm(parsed.confirmed)
    try:
        result = handler(messenger, parsed)
    except StartOriginError as exc:
        return {"type": "error", "op": op, **error_body(exc)}
    except SQLAlchemyError:
        return {"type": "error", "op": op, "error": "StoreError", "detail": "Store request failed"}

    if result is False and gate.prompt is not None and not gate.confirmed:
        title, message = gate.prompt
        return {"type": "confirm", "op": op, "title": title, "message": message}
    return {"type": "result", "op": op, "result": result}


def _messages_result(m: Messenger) -> list[dict]:
    return [msg.to_dict() for msg in m.messages]


def _send(m: Messenger, cmd: TextCommand) -> dict | None:
    message = m.send(cmd.text)
    return message.to_dict() if message is not None else None


def _set_draft(m: Messenger, cmd: TextCommand) -> str:
    m.draft = cmd.text or ""
    return m.draft


def _delete_message(m: Messenger, cmd: MessageCommand) -> bool:
    return m.delete_message(cmd.message_id, for_everyone=cmd.for_everyone)


def _open_chat(m: Messenger, cmd: UserCommand) -> str:
    return m.open_chat_with(cmd.user_id)


def _select_chat(m: Messenger, cmd: ChatCommand) -> list[dict]:
    m.select_chat(cmd.chat_id)
    return _messages_result(m)


def _close_chat(m: Messenger, cmd: Command) -> None:
    m.close_chat()


def _toggle_reaction(m: Messenger, cmd: ReactionCommand) -> str:
    return m.toggle_reaction(cmd.message_id, cmd.emoji)


def _mark_read(m: Messenger, cmd: OptionalChatCommand) -> int:
    return m.mark_as_read(cmd.chat_id)


def _block(m: Messenger, cmd: UserCommand) -> bool:
    return m.block_user(cmd.user_id)


def _unblock(m: Messenger, cmd: UserCommand) -> bool:
    return m.unblock_user(cmd.user_id)


def _delete_chat(m: Messenger, cmd: OptionalChatCommand) -> bool:
    return m.delete_chat(cmd.chat_id)


def _search(m: Messenger, cmd: SearchCommand) -> list[dict]:
    return [u.to_dict() for u in m.search(cmd.query)]


def _load_chats(m: Messenger, cmd: Command) -> list[dict]:
    return [c.to_dict() for c in m.load_chats()]


def _snapshot(m: Messenger, cmd: Command) -> dict:
    return m.snapshot()


_COMMANDS = {
    "open_chat": (UserCommand, _open_chat),
    "select_chat": (ChatCommand, _select_chat),
    "close_chat": (Command, _close_chat),
    "send": (TextCommand, _send),
    "set_draft": (TextCommand, _set_draft),
    "delete_message": (MessageCommand, _delete_message),
    "toggle_reaction": (ReactionCommand, _toggle_reaction),
    "mark_read": (OptionalChatCommand, _mark_read),
    "block": (UserCommand, _block),
    "unblock": (UserCommand, _unblock),
    "delete_chat": (OptionalChatCommand, _delete_chat),
    "search": (SearchCommand, _search),
    "load_chats": (Command, _load_chats),
    "snapshot": (Command, _snapshot),
}


async def _drain(websocket: WebSocket, outbox: _Outbox, messenger: Messenger) -> None:
    while True:
        item = await outbox.get()
        if item is _STATE:
            item = {"type": "state", "state": messenger.snapshot()}
        await websocket.send_json(item)


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: str = Query(...),
    recipient: str | None = Query(None),
    engine=Depends(get_engine),
    live=Depends(get_live),
    cfg: StartOriginConfig = Depends(get_config),
):
    try:
        claims = decode_token(token)
    except InvalidTokenError:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    outbox = _Outbox(asyncio.get_running_loop())
    gate = _ConfirmGate()

    def _notify(notice: Notice) -> None:
        outbox.push({
            "type": "notice",
            "level": notice.level,
            "title": notice.title,
            "message": notice.message,
        })

    messenger = Messenger(
        engine,
        live,
        claims["sub"],
        confirm=gate,
        notify=_notify,
        refresh_delay=cfg.chat_refresh_delay_seconds,
        on_change=lambda _what: outbox.mark_dirty(),
    )
    sender = asyncio.create_task(_drain(websocket, outbox, messenger))
    try:
        try:
            await run_db(messenger.load, recipient)
        except (StartOriginError, SQLAlchemyError):
            logger.warning("Initial chat load failed for %s", claims["sub"])
        outbox.put({"type": "ready", "user_id": claims["sub"]})

        while True:
            cmd = await websocket.receive_json()
            if not isinstance(cmd, dict):
                outbox.put({"type": "error", "op": None, "error": "BadRequest",
                            "detail": "Commands must be JSON objects"})
                continue
            outbox.put(await run_db(_run_command, messenger, gate, cmd))
    except WebSocketDisconnect:
        logger.debug("Chat socket closed for %s", claims["sub"])
    finally:
        messenger.close()
        sender.cancel()
