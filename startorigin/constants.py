"""
startorigin.constants — Shared Constants & Helpers
===================================================

Single source of truth for the points economy, feed paging, the chat
emoji set and premium-username pricing.  Import from here instead of
duplicating in services and routes.
"""

from __future__ import annotations

import math
import re

# ---------------------------------------------------------------------------
# Points economy
# ---------------------------------------------------------------------------
POINTS_PER_PROBLEM = 10

TRANSACTION_EARNED = "earned"
TRANSACTION_SPENT = "spent"


def problems_needed(shortfall: int) -> int:
    """How many more published problems cover a *shortfall* of points."""
    if shortfall <= 0:
        return 0
    return math.ceil(shortfall / POINTS_PER_PROBLEM)


# ---------------------------------------------------------------------------
# Feeds & search
# ---------------------------------------------------------------------------
FEED_PAGE_SIZE = 4
FEED_SORTS = ("recent", "popular")
USER_SEARCH_LIMIT = 10


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
REACTION_EMOJIS: tuple[str, ...] = (
    "\U0001f44d",        # 👍
    "\u2764\ufe0f",    # ❤️
    "\U0001f602",        # 😂
    "\U0001f62e",        # 😮
    "\U0001f622",        # 😢
    "\U0001f64f",        # 🙏
)

LOGIN_PATH = "/auth/login"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

BADGE_TYPES: frozenset[str] = frozenset({"verified", "whale", "early"})

RARITY_ORDER: tuple[str, ...] = ("common", "rare", "epic", "legendary")


# ---------------------------------------------------------------------------
# Premium usernames — price by length
# ---------------------------------------------------------------------------
USERNAME_PRICES: dict[int, int] = {
    1: 2000,
    2: 1750,
    3: 1500,
    4: 1250,
    5: 1000,
    6: 600,
    7: 400,
    8: 200,
}
USERNAME_BASE_PRICE = 100  # nine letters and longer

TOP_USERNAMES: dict[str, list[str]] = {
    "1 Letter": ["x", "q", "z", "v", "k"],
    "2 Letters": ["ai", "io", "me", "tv", "ex", "vc", "gg", "cc", "yy", "zz"],
}


def username_price(length: int) -> int:
    """Price of a premium username with *length* characters."""
    if length < 1:
        raise ValueError("username length must be positive")
    return USERNAME_PRICES.get(length, USERNAME_BASE_PRICE)


# ---------------------------------------------------------------------------
# Problems & projects
# ---------------------------------------------------------------------------
PROBLEM_CATEGORIES: tuple[str, ...] = (
    "technology",
    "business",
    "healthcare",
    "education",
    "environment",
    "transportation",
    "finance",
    "social",
    "food",
    "energy",
    "housing",
    "entertainment",
    "sports",
    "other",
)
TITLE_MAX_LENGTH = 200
MAX_TAGS = 5
PROBLEM_STATUSES: tuple[str, ...] = ("open", "in_progress", "solved", "closed")
