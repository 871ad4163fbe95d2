"""
StartOrigin — Community Problem Board, Chat & Points Economy
==============================================================
Users post "problems", upvote them, chat one-to-one, browse projects,
earn points by publishing and spend them on cosmetic customizations.
Identity comes from an external session provider; live chat updates ride
on PostgreSQL LISTEN/NOTIFY.

Package layout::

    startorigin/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Points, page sizes, emoji set, username prices
    ├── errors.py          # Domain exception taxonomy
    ├── notices.py         # Notice + confirm/notify dialog types
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default shop catalogue
    ├── engine/
    │   ├── conversation.py  # Per-conversation reducer (send/sync states)
    │   └── live.py        # Live-update channel (hub + PG LISTEN/NOTIFY)
    ├── services/
    │   ├── messaging_service.py  # Chats, messages, reactions, blocks
    │   ├── messenger.py          # Stateful chat view kept live
    │   ├── engagement_service.py # Upvotes, point accrual, shop
    │   ├── feed_service.py       # Paginated problem/project feeds
    │   ├── profile_service.py    # Profile edit, aliases, badges
    │   ├── marketplace_service.py # Premium username pricing
    │   ├── admin_service.py      # Audit-logged admin mutations
    │   ├── reconciliation_service.py # Balance vs. ledger drift
    │   └── log_buffer.py         # Recent log records for the admin panel
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Session-provider callback + /me
        └── routes/        # REST + chat and feed WebSocket endpoints
"""

__version__ = "0.1.0"
