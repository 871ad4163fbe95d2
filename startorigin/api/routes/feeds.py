"""
startorigin.api.routes.feeds — Live feed WebSocket
===================================================

``WS /api/feeds/ws?kind=problems|projects`` hosts one
:class:`~startorigin.services.feed_service.FeedView` per connection.  The
feed is public, so no token is required.

* client → server: ``{"op": "search", "text": ...}`` (debounced),
  ``{"op": "category", "category": ...}``, ``{"op": "sort", "sort": ...}``
  and ``{"op": "load_more"}``.
* server → client: ``{"type": "page", ...}`` with the full loaded list
  after every re-query, or ``{"type": "error", ...}``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from startorigin.api.deps import error_body, get_config, get_engine
from startorigin.api.routes.problems import problem_to_dict
from startorigin.api.routes.projects import project_to_dict
from startorigin.config import StartOriginConfig
from startorigin.database.engine import run_db
from startorigin.errors import StartOriginError
from startorigin.services.feed_service import FEED_KINDS, FeedPager, FeedView

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/feeds", tags=["feeds"])

_SERIALIZERS: dict[str, Callable] = {
    "problems": problem_to_dict,
    "projects": project_to_dict,
}


# ---------------------------------------------------------------------------
# Command schemas
# ---------------------------------------------------------------------------
class FeedCommand(BaseModel):
    op: str


class SearchCommand(FeedCommand):
    text: str = Field("", max_length=200)


class CategoryCommand(FeedCommand):
    category: str | None = None


class SortCommand(FeedCommand):
    sort: str


def _error_frame(op: str | None, exc: Exception) -> dict:
    if isinstance(exc, StartOriginError):
        return {"type": "error", "op": op, **error_body(exc)}
    return {"type": "error", "op": op, "error": "StoreError", "detail": "Store request failed"}


def _page_frame(kind: str, op: str, pager: FeedPager) -> dict:
    serialize = _SERIALIZERS[kind]
    return {
        "type": "page",
        "op": op,
        "kind": kind,
        "items": [serialize(item) for item in list(pager.items)],
        "total": pager.total,
        "page": pager.page,
        "exhausted": pager.exhausted,
        "query": {
            "search": pager.query.search,
            "category": pager.query.category,
            "sort": pager.query.sort,
        },
    }


_COMMANDS: dict[str, tuple[type[FeedCommand], Callable]] = {
    "search": (SearchCommand, lambda view, cmd: view.type_search(cmd.text)),
    "category": (CategoryCommand, lambda view, cmd: view.set_category(cmd.category)),
    "sort": (SortCommand, lambda view, cmd: view.set_sort(cmd.sort)),
    "load_more": (FeedCommand, lambda view, cmd: view.load_more()),
}


def _run_command(view: FeedView, kind: str, cmd: dict) -> dict | None:
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

    try:
        pager = handler(view, parsed)
    except (StartOriginError, SQLAlchemyError) as exc:
        return _error_frame(op, exc)
    # search answers later, once typing pauses
    return _page_frame(kind, op, pager) if pager is not None else None


async def _drain(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        await websocket.send_json(await queue.get())


@router.websocket("/ws")
async def feed_socket(
    websocket: WebSocket,
    kind: str = Query("problems"),
    engine=Depends(get_engine),
    cfg: StartOriginConfig = Depends(get_config),
):
    if kind not in FEED_KINDS:
        await websocket.close(code=4400)
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict] = asyncio.Queue()

    def _push(frame: dict) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, frame)

    view = FeedView(
        engine,
        kind,
        debounce_ms=cfg.search_debounce_ms,
        on_change=lambda pager: _push(_page_frame(kind, "search", pager)),
        on_error=lambda exc: _push(_error_frame("search", exc)),
    )
    sender = asyncio.create_task(_drain(websocket, queue))
    try:
        try:
            queue.put_nowait(_page_frame(kind, "load", await run_db(view.load)))
        except (StartOriginError, SQLAlchemyError) as exc:
            logger.warning("Initial %s feed load failed: %s", kind, exc)
            queue.put_nowait(_error_frame("load", exc))

        while True:
            cmd = await websocket.receive_json()
            if not isinstance(cmd, dict):
                queue.put_nowait({"type": "error", "op": None, "error": "BadRequest",
                                  "detail": "Commands must be JSON objects"})
                continue
            frame = await run_db(_run_command, view, kind, cmd)
            if frame is not None:
                queue.put_nowait(frame)
    except WebSocketDisconnect:
        logger.debug("Feed socket closed (%s)", kind)
    finally:
        view.close()
        sender.cancel()
