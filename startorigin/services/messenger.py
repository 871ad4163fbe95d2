"""
startorigin.services.messenger — Stateful Chat View
====================================================

One :class:`Messenger` backs one open chat view (a WebSocket connection in
the API).  It owns the view state the user sees: the chat list, the active
conversation, the blocked set, user-search results and the draft.  Store
calls go through :mod:`startorigin.services.messaging_service`; everything
that changes the active conversation flows through the pure reducer in
:mod:`startorigin.engine.conversation`.

Live updates:
  * ``chat:{chat_id}``: subscribed when a chat becomes active, torn down
    when it changes or the view closes.  Inserts are re-read by id and
    merged; deletes drop the message by id.
  * ``unread_messages:{user_id}``: held for the view's lifetime.  Any
    message not sent by the viewer reloads the chat list (unread badges).

User-facing dialogs are injected: ``confirm(title, message) -> bool`` runs
before every destructive action, ``notify(Notice)`` after every outcome the
user should hear about.  Failures are notified and then re-raised.

Usage::

    messenger = Messenger(engine, live, user_id, confirm=ask, notify=show)
    messenger.load(recipient_id=other_id)
    messenger.send("hello")
    ...
    messenger.close()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from startorigin.engine import conversation as conv
from startorigin.engine.conversation import ConversationState, MessageView, ReactionView
from startorigin.engine.live import ChangeKind, RowChange, Subscription, chat_topic, unread_topic
from startorigin.errors import BlockedRecipient, StartOriginError
from startorigin.notices import ConfirmFn, Notice, NotifyFn
from startorigin.services import messaging_service as svc
from startorigin.services.messaging_service import ChatSummary, UserStub

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from startorigin.engine.live import LiveChannel

logger = logging.getLogger(__name__)

_FAILURES = (StartOriginError, SQLAlchemyError)

ChangeFn = Callable[[str], None]


class Messenger:
    """Per-view messaging state.  Thread-safe: live callbacks may arrive on
    the listener thread while user commands run on another."""

    def __init__(
        self,
        engine: Engine,
        live: LiveChannel,
        user_id: str,
        *,
        confirm: ConfirmFn,
        notify: NotifyFn,
        refresh_delay: float = 0.5,
        on_change: ChangeFn | None = None,
    ) -> None:
        self._engine = engine
        self._live = live
        self.user_id = user_id
        self._confirm = confirm
        self._notify = notify
        self._refresh_delay = refresh_delay
        self._on_change = on_change

        self._lock = threading.RLock()
        self.state = ConversationState(viewer_id=user_id)
        self.chats: list[ChatSummary] = []
        self.blocked: set[str] = set()
        self.search_results: list[UserStub] = []
        self.draft = ""
        self.is_loading = False
        self.deleting_id: str | None = None

        self._chat_sub: Subscription | None = None
        self._refresh_timer: threading.Timer | None = None
        self._closed = False

        self._lifetime_subs = [
            live.subscribe(
                unread_topic(user_id),
                table="messages",
                kinds={ChangeKind.INSERT},
                callback=self._on_foreign_message,
                where=lambda row: row.get("sender_id") != user_id,
            ),
            live.subscribe(
                unread_topic(user_id),
                table="chats",
                kinds={ChangeKind.DELETE},
                callback=self._on_chat_deleted,
                where=lambda row: row.get("id") in self.chat_ids,
            ),
        ]

    # -------------------------------------------------------------------
    # Read-only view
    # -------------------------------------------------------------------
    @property
    def active_chat_id(self) -> str | None:
        return self.state.chat_id

    @property
    def messages(self) -> list[MessageView]:
        return list(self.state.messages)

    @property
    def is_sending(self) -> bool:
        return self.state.is_sending

    @property
    def chat_ids(self) -> set[str]:
        # read lock-free: evaluated inside the hub lock during dispatch
        return {c.id for c in self.chats}

    @property
    def active_peer(self) -> UserStub | None:
        chat_id = self.state.chat_id
        for c in self.chats:
            if c.id == chat_id:
                return c.other
        return None

    @property
    def can_send(self) -> bool:
        """False when the active peer is blocked (the input is hidden)."""
        peer = self.active_peer
        return self.state.chat_id is not None and (peer is None or peer.id not in self.blocked)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "active_chat_id": self.state.chat_id,
                "messages": [m.to_dict() for m in self.state.messages],
                "chats": [c.to_dict() for c in self.chats],
                "blocked": sorted(self.blocked),
                "search_results": [u.to_dict() for u in self.search_results],
                "send_state": self.state.send_state.value,
                "sync_phase": self.state.sync_phase.value,
                "is_loading": self.is_loading,
                "deleting_id": self.deleting_id,
                "can_send": self.can_send,
            }

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _emit(self, what: str) -> None:
        if self._on_change is not None and not self._closed:
            self._on_change(what)

    def _dispatch(self, event: conv.Event) -> None:
        with self._lock:
            new = conv.reduce(self.state, event)
            changed = new is not self.state
            self.state = new
        if changed:
            self._emit("messages")

    def _fail(self, title: str, exc: Exception) -> None:
        if isinstance(exc, StartOriginError):
            logger.warning("%s: %s", title, exc)
            message = str(exc)
        else:
            logger.exception("%s", title)
            message = "Something went wrong. Please try again."
        self._notify(Notice("error", title, message))

    def _success(self, title: str, message: str) -> None:
        self._notify(Notice("success", title, message))

    def _subscribe_chat(self, chat_id: str | None) -> None:
        # never call into the hub while holding self._lock
        old, self._chat_sub = self._chat_sub, None
        if old is not None:
            old.unsubscribe()
        if chat_id is not None:
            self._chat_sub = self._live.subscribe(
                chat_topic(chat_id),
                table="messages",
                kinds={ChangeKind.INSERT, ChangeKind.DELETE},
                callback=self._on_chat_change,
                where=lambda row: row.get("chat_id") == chat_id,
            )

    def _schedule_refresh(self) -> None:
        if self._refresh_delay <= 0:
            self.load_chats()
            return
        with self._lock:
            if self._refresh_timer is not None:
                self._refresh_timer.cancel()
            timer = threading.Timer(self._refresh_delay, self._refresh_quietly)
            timer.daemon = True
            self._refresh_timer = timer
        timer.start()

    def _refresh_quietly(self) -> None:
        if self._closed:
            return
        try:
            self.load_chats()
        except _FAILURES:
            # already logged and notified by load_chats
            pass

    # -------------------------------------------------------------------
    # Live callbacks
    # -------------------------------------------------------------------
    def _on_chat_change(self, change: RowChange) -> None:
        row = change.row
        chat_id = row.get("chat_id")
        message_id = row.get("id")
        if not message_id or chat_id != self.state.chat_id:
            return
        if change.kind == ChangeKind.DELETE:
            self._dispatch(conv.MessageRemoved(message_id))
            return
        self._dispatch(conv.LiveReceived(chat_id, message_id))
        try:
            message = svc.get_message(self._engine, message_id, self.user_id)
        except SQLAlchemyError:
            logger.exception("Could not fetch live message %s", message_id)
            message = None
        self._dispatch(conv.LiveApplied(message_id, message))

    def _on_foreign_message(self, change: RowChange) -> None:
        self._refresh_quietly()

    def _on_chat_deleted(self, change: RowChange) -> None:
        chat_id = change.row.get("id")
        if chat_id == self.state.chat_id:
            self.close_chat()
        self._refresh_quietly()

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    def load(self, recipient_id: str | None = None) -> None:
        """Initial load: blocked set, chat list, then (optionally) the chat
        with *recipient_id*."""
        self.load_blocked()
        self.load_chats()
        if recipient_id is not None:
            self.open_chat_with(recipient_id)

    def load_chats(self) -> list[ChatSummary]:
        try:
            chats = svc.list_chats(self._engine, self.user_id)
        except _FAILURES as exc:
            self._fail("Can't load chats", exc)
            raise
        with self._lock:
            self.chats = chats
        self._emit("chats")
        return chats

    def load_blocked(self) -> set[str]:
        try:
            blocked = svc.blocked_ids(self._engine, self.user_id)
        except _FAILURES as exc:
            self._fail("Can't load blocked users", exc)
            raise
        with self._lock:
            self.blocked = blocked
        self._emit("chats")
        return blocked

    # -------------------------------------------------------------------
    # Chat resolution & selection
    # -------------------------------------------------------------------
    def open_chat_with(self, target: UserStub | str) -> str:
        """Find or create the chat with *target* and make it active."""
        target_id = target.id if isinstance(target, UserStub) else target
        try:
            if target_id in self.blocked:
                raise BlockedRecipient(target_id)
            chat_id, created = svc.open_chat_with(self._engine, self.user_id, target_id)
        except _FAILURES as exc:
            self._fail("Can't start chat", exc)
            raise

        if created:
            self.load_chats()
        with self._lock:
            self.search_results = []
        self.select_chat(chat_id)
        return chat_id

    def select_chat(self, chat_id: str) -> None:
        """Activate *chat_id*: subscribe, load messages, mark them read."""
        self._subscribe_chat(chat_id)
        self.is_loading = True
        self._emit("loading")
        try:
            messages = svc.load_messages(self._engine, chat_id, self.user_id)
            self._dispatch(conv.Loaded(chat_id, tuple(messages)))
            self._mark_read(chat_id)
        except _FAILURES as exc:
            self._subscribe_chat(self.state.chat_id)
            self._fail("Can't load messages", exc)
            raise
        finally:
            self.is_loading = False
            self._emit("loading")

    def close_chat(self) -> None:
        self._subscribe_chat(None)
        self._dispatch(conv.Cleared())

    # -------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------
    def send(self, text: str | None = None) -> MessageView | None:
        """Send *text* (default: the draft) to the active chat.

        No-op returning ``None`` for blank text, no active chat, or a send
        already in flight.  On failure the draft is kept for retry.
        """
        if text is None:
            text = self.draft
        else:
            self.draft = text
        with self._lock:
            chat_id = self.state.chat_id
            if not text.strip() or chat_id is None or self.state.is_sending:
                return None
            self.state = conv.reduce(self.state, conv.SendStarted())
        self._emit("messages")

        try:
            message = svc.send_message(self._engine, self._live, chat_id, self.user_id, text)
        except _FAILURES as exc:
            self._dispatch(conv.SendFailed(str(exc)))
            self._fail("Message not sent", exc)
            raise

        self._dispatch(conv.SendSucceeded(message))
        self.draft = ""
        self._schedule_refresh()
        return message

    def delete_message(self, message_id: str, *, for_everyone: bool = False) -> bool:
        prompt = (
            "This message will be removed for both of you."
            if for_everyone else "This message will be removed from your view."
        )
        if not self._confirm("Delete message?", prompt):
            return False

        self.deleting_id = message_id
        self._emit("messages")
        try:
            svc.delete_message(
                self._engine, self._live, message_id, self.user_id, for_everyone=for_everyone,
            )
        except _FAILURES as exc:
            self._fail("Can't delete message", exc)
            raise
        finally:
            self.deleting_id = None

        self._dispatch(conv.MessageRemoved(message_id))
        self._schedule_refresh()
        return True

    # -------------------------------------------------------------------
    # Reactions
    # -------------------------------------------------------------------
    def add_reaction(self, message_id: str, emoji: str) -> ReactionView:
        try:
            reaction = svc.add_reaction(self._engine, message_id, self.user_id, emoji)
        except _FAILURES as exc:
            self._fail("Can't add reaction", exc)
            raise
        self._dispatch(conv.ReactionAdded(reaction))
        return reaction

    def remove_reaction(self, message_id: str, emoji: str) -> int:
        try:
            removed = svc.remove_reaction(self._engine, message_id, self.user_id, emoji)
        except _FAILURES as exc:
            self._fail("Can't remove reaction", exc)
            raise
        self._dispatch(conv.ReactionRemoved(message_id, self.user_id, emoji))
        return removed

    def toggle_reaction(self, message_id: str, emoji: str) -> str:
        """Click on a reaction badge.  Returns ``"add"`` or ``"remove"``."""
        message = self.state.get(message_id)
        action = "add" if message is None else conv.reaction_click(message, emoji, self.user_id)
        if action == "remove":
            self.remove_reaction(message_id, emoji)
        else:
            self.add_reaction(message_id, emoji)
        return action

    # -------------------------------------------------------------------
    # Read state
    # -------------------------------------------------------------------
    def mark_as_read(self, chat_id: str | None = None) -> int:
        chat_id = chat_id or self.state.chat_id
        if chat_id is None:
            return 0
        try:
            return self._mark_read(chat_id)
        except _FAILURES as exc:
            self._fail("Can't mark messages as read", exc)
            raise

    def _mark_read(self, chat_id: str) -> int:
        updated = svc.mark_as_read(self._engine, chat_id, self.user_id)
        with self._lock:
            self.chats = [
                replace(c, unread_count=0) if c.id == chat_id else c for c in self.chats
            ]
        if chat_id == self.state.chat_id:
            self._dispatch(conv.MarkedRead())
        self._emit("chats")
        return updated

    # -------------------------------------------------------------------
    # Blocks & chat deletion
    # -------------------------------------------------------------------
    def block_user(self, user_id: str) -> bool:
        if not self._confirm(
            "Block user?", "You won't be able to message each other.",
        ):
            return False
        try:
            deleted_chat = svc.block_user(self._engine, self._live, self.user_id, user_id)
        except _FAILURES as exc:
            self._fail("Can't block user", exc)
            raise

        with self._lock:
            self.blocked.add(user_id)
        if deleted_chat is not None and deleted_chat == self.state.chat_id:
            self.close_chat()
        self.load_chats()
        self._success("User blocked", "You will no longer receive messages from this user.")
        return True

    def unblock_user(self, user_id: str) -> bool:
        if not self._confirm("Unblock user?", "You will be able to message each other again."):
            return False
        try:
            svc.unblock_user(self._engine, self.user_id, user_id)
        except _FAILURES as exc:
            self._fail("Can't unblock user", exc)
            raise

        with self._lock:
            self.blocked.discard(user_id)
        self._emit("chats")
        self._success("User unblocked", "You can message this user again.")
        return True

    def delete_chat(self, chat_id: str | None = None) -> bool:
        chat_id = chat_id or self.state.chat_id
        if chat_id is None:
            return False
        if not self._confirm(
            "Delete chat?", "All messages in this conversation will be deleted.",
        ):
            return False
        try:
            svc.delete_chat(self._engine, self._live, chat_id, self.user_id)
        except _FAILURES as exc:
            self._fail("Can't delete chat", exc)
            raise

        if chat_id == self.state.chat_id:
            self.close_chat()
        with self._lock:
            self.chats = [c for c in self.chats if c.id != chat_id]
        self._emit("chats")
        self._success("Chat deleted", "The conversation has been removed.")
        return True

    # -------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------
    def search(self, query: str) -> list[UserStub]:
        if not (query or "").strip():
            with self._lock:
                self.search_results = []
            self._emit("search")
            return []
        try:
            results = svc.search_users(self._engine, self.user_id, query)
        except SQLAlchemyError as exc:
            self._fail("Search failed", exc)
            raise
        with self._lock:
            self.search_results = results
        self._emit("search")
        return results

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def close(self) -> None:
        """Tear down every subscription and pending timer."""
        with self._lock:
            self._closed = True
            if self._refresh_timer is not None:
                self._refresh_timer.cancel()
                self._refresh_timer = None
        self._subscribe_chat(None)
        for sub in self._lifetime_subs:
            sub.unsubscribe()
        self._lifetime_subs = []
        logger.debug("Messenger for %s closed", self.user_id)
