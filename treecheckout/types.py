"""Branded types for object identifiers.

NewType gives static checkers a way to tell a checksum from an arbitrary
string without any runtime cost.
"""

import re
from typing import NewType

Checksum = NewType("Checksum", str)

CHECKSUM_LENGTH = 64

_REF_FRAGMENT = r"[-._\w\d]+"
_REF_RE = re.compile(rf"^(?:{_REF_FRAGMENT}/)*{_REF_FRAGMENT}$")


def checksum_error(value: str) -> str | None:
    """Return why value is not a SHA-256 hex checksum, or None if it is."""
    if len(value) != CHECKSUM_LENGTH:
        return f"Invalid checksum '{value}': expected {CHECKSUM_LENGTH} characters"
    for c in value:
        if c not in "0123456789abcdef":
            return f"Invalid character '{c}' in checksum '{value}'"
    return None


def is_checksum(value: str) -> bool:
    return checksum_error(value) is None


def is_valid_ref(value: str) -> bool:
    """Ref names are slash-separated fragments of word characters, '-', '.' and '_'."""
    if not _REF_RE.match(value):
        return False
    return not any(part in (".", "..") for part in value.split("/"))
