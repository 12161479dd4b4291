from typing import Tuple

from chatcore.errors import ValidationError

SEPARATOR = "_"


def validate_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not user_id:
        raise ValidationError("User id must be a non-empty string")
    if SEPARATOR in user_id:
        raise ValidationError(f"User id {user_id!r} must not contain {SEPARATOR!r}")
    return user_id


def derive_key(user_a: str, user_b: str) -> str:
    """Canonical key for the conversation between two users, independent of argument order."""
    first, second = sorted([user_a, user_b])
    return f"{first}{SEPARATOR}{second}"


def parse_key(conversation_key: str) -> Tuple[str, str]:
    parts = conversation_key.split(SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise ValidationError(f"Malformed conversation key {conversation_key!r}")
    first, second = parts
    return first, second
