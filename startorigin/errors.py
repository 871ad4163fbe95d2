"""
startorigin.errors — Domain Exceptions
=======================================

Services raise these; the API layer maps them to HTTP status codes and the
stateful chat view surfaces them through its notification dialog.
Store and transport failures (``SQLAlchemyError``) are not wrapped.
"""

from __future__ import annotations

from startorigin.constants import LOGIN_PATH, problems_needed


class StartOriginError(Exception):
    """Base class for all expected, user-facing failures."""


class AuthenticationRequired(StartOriginError):
    """No logged-in identity; the caller should be sent to *login_url*."""

    def __init__(self, login_url: str = LOGIN_PATH) -> None:
        super().__init__("Sign in to continue.")
        self.login_url = login_url


class NotFound(StartOriginError):
    pass


class Forbidden(StartOriginError):
    pass


class NotAParticipant(Forbidden):
    pass


class BlockedRecipient(StartOriginError):
    """Messaging refused because a block exists between the two users."""

    def __init__(self, user_id: str) -> None:
        super().__init__("You can't message this user.")
        self.user_id = user_id


class ChatDisabled(StartOriginError):
    """The recipient has turned chat off in their profile."""

    def __init__(self, user_id: str) -> None:
        super().__init__("This user has disabled chat.")
        self.user_id = user_id


class ChatCreationError(StartOriginError):
    """A chat row was created but its participants could not be attached."""

    def __init__(self, chat_id: str) -> None:
        super().__init__("Could not start the conversation.")
        self.chat_id = chat_id


class ValidationFailed(StartOriginError):
    pass


class UsernameTaken(ValidationFailed):
    def __init__(self, username: str) -> None:
        super().__init__("This username is already taken. Please choose another one.")
        self.username = username


class AlreadyOwned(StartOriginError):
    def __init__(self, item_id: str) -> None:
        super().__init__("You already own this item.")
        self.item_id = item_id


class InsufficientPoints(StartOriginError):
    """Purchase refused; carries how far short the balance is."""

    def __init__(self, price: int, balance: int) -> None:
        self.price = price
        self.balance = balance
        self.shortfall = price - balance
        self.problems_needed = problems_needed(self.shortfall)
        super().__init__(
            f"You need {self.shortfall} more points "
            f"({self.problems_needed} more problems)"
        )
