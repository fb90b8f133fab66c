"""Identifier coercion helpers.

Primary keys are UUIDs; id sets stored in JSON columns hold their canonical
string form.
"""

import uuid
from typing import Iterable, Optional, Union

from .errors import ValidationError

IdLike = Union[str, uuid.UUID]


def as_uuid(value: IdLike) -> uuid.UUID:
    """Coerce a UUID or its string form, raising ValidationError otherwise."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"Invalid identifier: {value!r}")


def as_optional_uuid(value: Optional[IdLike]) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    return as_uuid(value)


def id_str(value: IdLike) -> str:
    return str(as_uuid(value))


def id_list(values: Optional[Iterable[IdLike]]) -> list[str]:
    """Canonical, de-duplicated id list preserving first-seen order."""
    result: list[str] = []
    for value in values or []:
        key = id_str(value)
        if key not in result:
            result.append(key)
    return result
