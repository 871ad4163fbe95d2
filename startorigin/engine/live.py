"""
startorigin.engine.live — Live-Update Channel
==============================================

Topic-based push of row-level changes (insert / delete on ``messages``) to
subscribed chat views.

Two transports share one subscription hub:

* :class:`LiveChannel` dispatches published changes in-process.  Used for a
  single API worker and in tests.
* :class:`PostgresLiveChannel` publishes with ``pg_notify`` on the
  ``row_changes`` channel and runs a background LISTEN thread that feeds
  received changes back into the hub, so every API worker sees every write.

Topics follow the client convention: ``chat:{chat_id}`` for one
conversation, ``unread_messages:{user_id}`` for "anything not sent by me".
Delivery order is whatever the transport yields; subscribers must tolerate
duplicates and reordering.
"""

from __future__ import annotations

import enum
import json
import logging
import random
import select as _select
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# The PG channel carrying JSON-encoded RowChange payloads
NOTIFY_CHANNEL = "row_changes"

# Tables whose changes may be published
ALLOWED_TABLES: frozenset[str] = frozenset({
    "messages",
    "chats",
})

# pg_notify payloads must stay under 8000 bytes
_MAX_PAYLOAD_BYTES = 7800


class ChangeKind(enum.StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def chat_topic(chat_id: str) -> str:
    return f"chat:{chat_id}"


def unread_topic(user_id: str) -> str:
    return f"unread_messages:{user_id}"


# ---------------------------------------------------------------------------
# RowChange — the event envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RowChange:
    """One row-level change.  ``record`` is the new row, ``old_record`` the
    row as it was (deletes carry only ``old_record``)."""

    table: str
    kind: ChangeKind
    record: dict = field(default_factory=dict)
    old_record: dict = field(default_factory=dict)

    @property
    def row(self) -> dict:
        return self.old_record if self.kind == ChangeKind.DELETE else self.record

    def to_json(self) -> str:
        return json.dumps(
            {
                "table": self.table,
                "type": self.kind.value,
                "record": self.record,
                "old_record": self.old_record,
            },
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> RowChange:
        data = json.loads(raw)
        return cls(
            table=data["table"],
            kind=ChangeKind(data["type"]),
            record=data.get("record") or {},
            old_record=data.get("old_record") or {},
        )


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------
class Subscription:
    """A callback bound to a topic, a table and a set of change kinds."""

    def __init__(
        self,
        channel: LiveChannel,
        topic: str,
        table: str,
        kinds: frozenset[ChangeKind],
        callback: Callable[[RowChange], Any],
        where: Callable[[dict], bool] | None = None,
    ) -> None:
        self._channel = channel
        self.topic = topic
        self.table = table
        self.kinds = kinds
        self.callback = callback
        self.where = where
        self.active = True

    def matches(self, change: RowChange) -> bool:
        if not self.active or change.table != self.table or change.kind not in self.kinds:
            return False
        return self.where is None or bool(self.where(change.row))

    def unsubscribe(self) -> None:
        self._channel.remove(self)

    def __repr__(self) -> str:
        kinds = ",".join(sorted(self.kinds))
        return f"<Subscription topic={self.topic!r} table={self.table} kinds={kinds}>"


# ---------------------------------------------------------------------------
# In-process hub
# ---------------------------------------------------------------------------
class LiveChannel:
    """Thread-safe subscription hub with in-process delivery.

    Usage::

        live = LiveChannel()
        sub = live.subscribe(
            chat_topic(chat_id),
            table="messages",
            kinds={ChangeKind.INSERT, ChangeKind.DELETE},
            callback=on_change,
            where=lambda row: row.get("chat_id") == chat_id,
        )
        live.publish(RowChange("messages", ChangeKind.INSERT, record={...}))
        sub.unsubscribe()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}

    # -------------------------------------------------------------------
    # Subscription management
    # -------------------------------------------------------------------
    def subscribe(
        self,
        topic: str,
        *,
        table: str,
        kinds: set[ChangeKind] | frozenset[ChangeKind],
        callback: Callable[[RowChange], Any],
        where: Callable[[dict], bool] | None = None,
    ) -> Subscription:
        sub = Subscription(self, topic, table, frozenset(kinds), callback, where)
        with self._lock:
            self._subscriptions.setdefault(topic, []).append(sub)
        logger.debug("Subscribed %r", sub)
        return sub

    def remove(self, sub: Subscription) -> None:
        sub.active = False
        with self._lock:
            subs = self._subscriptions.get(sub.topic)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscriptions[sub.topic]

    def remove_topic(self, topic: str) -> None:
        with self._lock:
            subs = self._subscriptions.pop(topic, [])
        for sub in subs:
            sub.active = False

    def subscriber_count(self, topic: str | None = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._subscriptions.get(topic, []))
            return sum(len(v) for v in self._subscriptions.values())

    # -------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------
    def publish(self, change: RowChange) -> None:
        """Deliver *change* to every matching subscriber."""
        if change.table not in ALLOWED_TABLES:
            raise ValueError(
                f"Invalid table for live publish: '{change.table}'. "
                f"Allowed: {sorted(ALLOWED_TABLES)}"
            )
        self.dispatch(change)

    def dispatch(self, change: RowChange) -> int:
        """Run callbacks for *change*; returns how many were invoked.

        Callbacks run outside the hub lock so they may (un)subscribe.
        """
        with self._lock:
            targets = [
                sub
                for subs in self._subscriptions.values()
                for sub in subs
                if sub.matches(change)
            ]
        for sub in targets:
            try:
                sub.callback(change)
            except Exception:
                logger.exception("Live callback failed for %r", sub)
        return len(targets)

    # -------------------------------------------------------------------
    # Lifecycle (no-ops for the in-process hub)
    # -------------------------------------------------------------------
    def start(self) -> None:
        return None

    def stop(self) -> None:
        return None

    @property
    def healthy(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# PostgreSQL LISTEN/NOTIFY transport
# ---------------------------------------------------------------------------
class PostgresLiveChannel(LiveChannel):
    """Hub fed by a LISTEN thread; publishes via ``pg_notify``.

    The listener reconnects with exponential backoff + jitter and gives up
    after ``max_reconnect_attempts`` consecutive failures.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        max_reconnect_attempts: int = 10,
        max_backoff: float = 60.0,
    ) -> None:
        super().__init__()
        self._engine = engine
        self._max_reconnect_attempts = max_reconnect_attempts
        self._max_backoff = max_backoff
        self._listener_thread: threading.Thread | None = None
        self._listener_healthy = False
        self._listener_failed = False
        self._shutdown_event = threading.Event()

    @property
    def healthy(self) -> bool:
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        return self._listener_failed

    def publish(self, change: RowChange) -> None:
        """Send *change* on the NOTIFY channel; delivery comes back through
        the LISTEN thread (including to this process)."""
        if change.table not in ALLOWED_TABLES:
            raise ValueError(
                f"Invalid table for live publish: '{change.table}'. "
                f"Allowed: {sorted(ALLOWED_TABLES)}"
            )
        payload = _fit_payload(change)
        with self._engine.connect() as conn:
            conn.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": NOTIFY_CHANNEL, "payload": payload},
            )
            conn.commit()

    def handle_payload(self, raw: str) -> None:
        try:
            change = RowChange.from_json(raw)
        except (json.JSONDecodeError, KeyError, ValueError, TypeError):
            logger.warning("Invalid live payload (ignored): %s", raw[:200])
            return
        self.dispatch(change)

    def stop(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("Live listener thread stopped")

    def start(self) -> None:
        """Start the background LISTEN thread (raw psycopg2 + select())."""
        import psycopg2

        base_backoff = 1.0

        def _listen_thread() -> None:
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {NOTIFY_CHANNEL};")
                    logger.info("PG LISTEN started on channel '%s'", NOTIFY_CHANNEL)

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            self.handle_payload(notify.payload or "")

                except Exception:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= self._max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. Live updates disabled.",
                            self._max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), self._max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, self._max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        thread = threading.Thread(target=_listen_thread, daemon=True, name="pg-live-listener")
        self._listener_thread = thread
        thread.start()
        logger.info("Live listener thread started")


def _fit_payload(change: RowChange) -> str:
    """Serialize *change*, dropping message bodies that would overflow
    NOTIFY.  Subscribers re-read the row by id anyway."""
    payload = change.to_json()
    if len(payload.encode("utf-8")) <= _MAX_PAYLOAD_BYTES:
        return payload
    slim = RowChange(
        table=change.table,
        kind=change.kind,
        record={k: v for k, v in change.record.items() if k != "content"},
        old_record={k: v for k, v in change.old_record.items() if k != "content"},
    )
    return slim.to_json()


def create_live_channel(engine: Engine) -> LiveChannel:
    """Pick the transport for *engine*'s dialect."""
    if engine.dialect.name == "postgresql":
        return PostgresLiveChannel(engine)
    return LiveChannel()
