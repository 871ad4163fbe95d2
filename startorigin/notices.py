"""
startorigin.notices — User-facing dialog types
===============================================

Views (chat, shop) never talk to a UI directly.  They are handed a
``confirm(title, message) -> bool`` callable, asked before destructive
actions, and a ``notify(Notice)`` callable for outcomes the user should
see.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Notice:
    level: str  # "success" | "error"
    title: str
    message: str


ConfirmFn = Callable[[str, str], bool]
NotifyFn = Callable[[Notice], None]
