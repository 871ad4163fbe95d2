"""
startorigin.services.marketplace_service — Premium Username Lookup
==================================================================

Price and availability of premium usernames.  A name is available when it
is valid and neither a main username nor a stored or static alias.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from startorigin.constants import TOP_USERNAMES, username_price
from startorigin.errors import ValidationFailed
from startorigin.services.profile_service import normalize_username, username_in_use

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class UsernameQuote:
    username: str
    length: int
    available: bool
    price: int | None

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "length": self.length,
            "available": self.available,
            "price": self.price,
        }


def check_username(
    engine: Engine,
    name: str,
    static_aliases: Mapping[str, list[str]] | None = None,
) -> UsernameQuote:
    """Availability and price for *name*.  Taken names carry no price.

    Raises ``ValidationFailed`` for blank or malformed names.
    """
    username = normalize_username(name)
    if username is None:
        raise ValidationFailed("Enter a username to check.")

    static_taken = any(
        username == main or username in aliases
        for main, aliases in (static_aliases or {}).items()
    )
    with Session(engine) as session:
        taken = static_taken or username_in_use(session, username)

    price = None if taken else username_price(len(username))
    logger.debug("Username %r: available=%s price=%s", username, not taken, price)
    return UsernameQuote(username=username, length=len(username), available=not taken, price=price)


def top_usernames() -> dict[str, list[dict]]:
    """Showcase groups with each name's list price."""
    return {
        group: [{"username": n, "price": username_price(len(n))} for n in names]
        for group, names in TOP_USERNAMES.items()
    }
