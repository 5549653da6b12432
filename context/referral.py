"""
Referral codes — deterministic derivation from a contact's name.

    derive_referral_code("Dr. Ali Khan", "1712345678901")  →  "DRDRAL8901"

The code is not guaranteed unique; the store rejects a code already held by
another contact and the caller re-derives once with the next disambiguator.
"""
from __future__ import annotations

import hashlib
import re

from models.schemas import Contact

CODE_PREFIX = "DR"
_NAME_CHARS = 4
_SUFFIX_DIGITS = 4


def derive_referral_code(name: str, disambiguator: str) -> str:
    """Build a referral code from a display name and a uniqueness suffix."""
    clean = re.sub(r"[^A-Za-z0-9]", "", name or "").upper()[:_NAME_CHARS] or "DOC"
    digits = re.sub(r"\D", "", disambiguator or "")
    suffix = digits[-_SUFFIX_DIGITS:].rjust(_SUFFIX_DIGITS, "0")
    return f"{CODE_PREFIX}{clean}{suffix}"


def referral_disambiguator(contact: Contact, attempt: int = 0) -> str:
    """
    Attempt 0 uses the contact's creation time in milliseconds; later
    attempts hash the address with the attempt number.
    """
    if attempt == 0:
        return str(int(contact.created_at.timestamp() * 1000))
    digest = hashlib.sha1(f"{contact.address}:{attempt}".encode()).hexdigest()
    return str(int(digest, 16) % 10 ** _SUFFIX_DIGITS)


def referral_link(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}?ref={code}"
