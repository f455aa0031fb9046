"""Pattern matching used by definition filters and type switches."""

from __future__ import annotations

import re
from functools import lru_cache


@lru_cache(maxsize=256)
def _compile(pattern: str, ignore_case: bool) -> re.Pattern[str]:
    alternatives = []
    for alt in pattern.split("|"):
        alternatives.append(".*".join(re.escape(piece) for piece in alt.split("*")))
    return re.compile("|".join(f"(?:{alt})" for alt in alternatives), re.IGNORECASE if ignore_case else 0)


def matches(value: str, pattern: str, *, ignore_case: bool = True, search_part: bool = True) -> bool:
    """
    Check value against pattern.

    The pattern holds "|" separated alternatives, each may contain "*" as
    wildcard. With search_part an alternative may match anywhere in value,
    otherwise it has to match the whole value. An empty pattern matches all.
    """
    if not pattern or pattern == "*":
        return True
    regex = _compile(pattern, ignore_case)
    if search_part:
        return regex.search(value) is not None
    return regex.fullmatch(value) is not None
