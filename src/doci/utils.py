"""Utility helpers for composite-code normalization."""

from __future__ import annotations

import re

CODE_PART_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
NUMERIC_SUFFIX_PATTERN = re.compile(r"^\d+$")


def normalize_part(value: str) -> str:
    """Canonical form of a prefix or suffix: trimmed and upper-cased."""
    return (value or "").strip().upper()


def is_valid_part(value: str) -> bool:
    """Check that a prefix or suffix can appear in a composite code."""
    return bool(value) and CODE_PART_PATTERN.match(value) is not None


def composite_code(prefix: str, suffix: str) -> str:
    """Build the canonical ``prefix/suffix`` lookup key."""
    return f"{normalize_part(prefix)}/{normalize_part(suffix)}"


def split_composite_code(code: str) -> tuple[str, str] | None:
    """Split a composite code into its parts, or ``None`` when malformed."""
    if not code or "/" not in code:
        return None
    prefix, _, suffix = code.strip().partition("/")
    prefix, suffix = normalize_part(prefix), normalize_part(suffix)
    if not (is_valid_part(prefix) and is_valid_part(suffix)):
        return None
    return prefix, suffix


def format_suffix(value: int, width: int) -> str:
    """Zero-padded decimal suffix used by the allocator."""
    return str(value).zfill(width)


def numeric_suffix_value(suffix: str) -> int | None:
    """Integer value of an allocator-style suffix, ``None`` otherwise."""
    if NUMERIC_SUFFIX_PATTERN.match(suffix or ""):
        return int(suffix)
    return None
