"""Operator identity check."""

from typing import Optional

from telegram import User


def normalize_username(username: Optional[str]) -> str:
    """Strip whitespace and a leading '@' from a configured handle."""
    if not username:
        return ""
    return username.strip().lstrip("@")


def is_authorized(user: Optional[User], operator_username: Optional[str]) -> bool:
    """Check if a Telegram user is the configured operator (and not a bot)."""
    expected = normalize_username(operator_username)
    if user is None or not expected:
        return False
    return user.username == expected and not user.is_bot
