"""Deterministic clean-up of model targets, conditioned on the source."""

from typing import Optional

QUOTE_PAIRS = (
    ('"', '"'),
    ("'", "'"),
    ("“", "”"),
    ("‘", "’"),
    ("«", "»"),
    ("「", "」"),
)


def _wrapping_quote(text: str) -> Optional[tuple[str, str]]:
    if len(text) < 2:
        return None
    for opening, closing in QUOTE_PAIRS:
        if text.startswith(opening) and text.endswith(closing):
            return opening, closing
    return None


def strip_added_quotes(source: str, target: str) -> str:
    """Remove quotes wrapping the whole target unless the source is quoted too."""
    if _wrapping_quote(source.strip()) is not None:
        return target

    core = target.strip()
    while _wrapping_quote(core) is not None:
        core = core[1:-1].strip()
    return core if core != target.strip() else target


def normalize_newlines(source: str, target: str) -> str:
    """Use LF in the target unless the source itself uses CRLF."""
    if "\r\n" in source:
        return target
    return target.replace("\r\n", "\n")


def mirror_whitespace(source: str, target: str) -> str:
    """Give the target the same leading and trailing whitespace as the source."""
    core = target.strip()
    if not core or not source.strip():
        return target
    leading = source[: len(source) - len(source.lstrip())]
    trailing = source[len(source.rstrip()) :]
    return f"{leading}{core}{trailing}"


def fix_target(source: Optional[str], target: Optional[str]) -> Optional[str]:
    """Apply every fix. ``fix_target(s, fix_target(s, t)) == fix_target(s, t)``."""
    if source is None or target is None:
        return target

    fixed = strip_added_quotes(source, target)
    fixed = normalize_newlines(source, fixed)
    return mirror_whitespace(source, fixed)
