"""
Wildcard Matching
Glob-style (* and ?) name matching used to select databases and collections
"""
import re
from typing import Iterable, List


def has_wildcard(pattern: str) -> bool:
    """True if the pattern contains '*' or '?'"""
    if pattern is None:
        return False
    return "*" in pattern or "?" in pattern


def wildcard_to_regex(pattern: str, anchor_on_start: bool = False) -> str:
    """Translate a wildcard pattern into a regular expression"""
    if pattern is None:
        return ""
    regex = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return ("^" if anchor_on_start else "") + regex + r"\Z"


def is_match(pattern: str, name: str, ignore_case: bool = True) -> bool:
    """
    Check if a name matches a wildcard pattern

    Exact equality always matches. Patterns without wildcards fall back to a
    (case-insensitive by default) string comparison.
    """
    if name == pattern:
        return True
    if not pattern or not pattern.strip() or not name or not name.strip():
        return False
    if not has_wildcard(pattern):
        if ignore_case:
            return name.casefold() == pattern.casefold()
        return name == pattern
    flags = re.IGNORECASE if ignore_case else 0
    return re.match(wildcard_to_regex(pattern, True), name, flags) is not None


def filter_names(pattern: str, names: Iterable[str], ignore_case: bool = True) -> List[str]:
    """Names matching the pattern, in their original order"""
    return [name for name in names if is_match(pattern, name, ignore_case)]
