"""Pure predicates for request field validation."""

import re
from typing import Any

from .models import Mood

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,64}$")

_VALID_MOODS = frozenset(mood.value for mood in Mood)


def is_valid_session_id(value: Any) -> bool:
    """Return True when ``value`` is an 8-64 character ``[A-Za-z0-9_-]`` string."""
    return isinstance(value, str) and SESSION_ID_PATTERN.fullmatch(value) is not None


def is_valid_mood(value: Any) -> bool:
    """Return True when ``value`` is absent or a member of the mood enumeration."""
    return value is None or (isinstance(value, str) and value in _VALID_MOODS)
