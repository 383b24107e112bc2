"""Identifier generation."""

from __future__ import annotations

import secrets
import string

__all__ = ["ID_ALPHABET", "ID_LENGTH", "new_id"]

ID_ALPHABET = string.digits + string.ascii_lowercase
ID_LENGTH = 12


def new_id() -> str:
    """Return a random 12-character base-36 identifier.

    Characters are drawn from :mod:`secrets`. A collision surfaces as a
    primary-key violation on insert and is never retried.
    """
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_LENGTH))
