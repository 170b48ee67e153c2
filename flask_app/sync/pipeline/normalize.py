"""
Email/phone normalization shared by adapters and the merge engine.

Both helpers return ``None`` for values that cannot serve as an identity key,
so callers can treat "missing" and "unusable" the same way.
"""

from __future__ import annotations

import re

_EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_E164_REGEX = re.compile(r"^\+[1-9]\d{7,14}$")
_EXTENSION_REGEX = re.compile(r"\s*(x|ext|extension|#)\s*\d+.*$", flags=re.IGNORECASE)


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim; reject tokens that are not plausibly an address."""

    if value is None:
        return None
    token = str(value).strip().lower()
    if not token or not _EMAIL_REGEX.match(token):
        return None
    return token


def normalize_phone(value: object | None) -> str | None:
    """
    Normalize phone numbers to E.164 (``+<country><number>``).

    Ten-digit numbers without a country code are assumed to be US numbers.
    Extensions are dropped and a leading ``00`` becomes ``+``.
    """

    if value is None:
        return None
    token = _EXTENSION_REGEX.sub("", str(value).strip()).strip()
    if not token:
        return None

    for char in (" ", "-", "(", ")", "."):
        token = token.replace(char, "")
    if token.startswith("00"):
        token = f"+{token[2:]}"

    digits_only = "".join(c for c in token if c.isdigit())
    if not token.startswith("+"):
        if len(digits_only) == 10:
            normalized = f"+1{digits_only}"
        elif len(digits_only) == 11 and digits_only.startswith("1"):
            normalized = f"+{digits_only}"
        else:
            return None
    else:
        normalized = f"+{digits_only}"

    if _E164_REGEX.match(normalized):
        return normalized
    return None


def clean_text(value: object | None) -> str | None:
    if value is None:
        return None
    token = " ".join(str(value).split())
    return token or None


def join_name(first: object | None, last: object | None) -> str | None:
    return clean_text(" ".join(part for part in (clean_text(first), clean_text(last)) if part))
