"""
startorigin.database.seed — Default Shop Catalogue
===================================================

Baseline customization items seeded on first startup so the points shop is
immediately usable.  Idempotent: only inserts items whose name is missing;
prices edited later in the database are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from startorigin.database.models import CustomizationItem

logger = logging.getLogger(__name__)


# name -> (type, value, icon, price, rarity, description)
DEFAULT_ITEMS: dict[str, tuple[str, str, str | None, int, str, str]] = {
    "Golden Name": (
        "name_color", "#d4a017", "crown", 100, "rare",
        "Show your display name in gold",
    ),
    "Starry Frame": (
        "avatar_frame", "stars", "star", 50, "common",
        "A sparkling frame around your avatar",
    ),
    "Lightning Badge": (
        "profile_badge", "zap", "zap", 150, "epic",
        "A bolt next to your name on every problem",
    ),
    "Gem Background": (
        "profile_background", "gem-gradient", "gem", 300, "legendary",
        "Legendary gradient behind your profile header",
    ),
}


def seed_customization_items(engine: Engine) -> int:
    """Insert any missing default items.  Returns the number inserted."""
    with Session(engine) as session:
        existing = set(session.scalars(select(CustomizationItem.name)).all())
        inserted = 0
        for name, (type_, value, icon, price, rarity, description) in DEFAULT_ITEMS.items():
            if name in existing:
                continue
            session.add(CustomizationItem(
                name=name,
                type=type_,
                value=value,
                icon=icon,
                price=price,
                rarity=rarity,
                description=description,
            ))
            inserted += 1
        session.commit()

    if inserted:
        logger.info("Seeded %d customization items", inserted)
    return inserted
