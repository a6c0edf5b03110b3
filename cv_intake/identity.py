"""Identity normalization shared by pack grouping and duplicate detection."""

from __future__ import annotations

import re
import unicodedata
from typing import Final, Optional

__all__ = [
    "identity_key",
    "is_valid_email",
    "normalize_email",
    "normalize_name",
    "normalize_phone",
    "split_name",
]

_EMAIL_RE: Final = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGIT_RE: Final = re.compile(r"\D+")
_NON_WORD_RE: Final = re.compile(r"[\W_]+")

MIN_PHONE_DIGITS: Final[int] = 10
MAX_PHONE_DIGITS: Final[int] = 15
MIN_NAME_LENGTH: Final[int] = 2
UK_TRUNK_LENGTH: Final[int] = 11
UK_COUNTRY_CODE: Final[str] = "44"


def is_valid_email(value: Optional[str]) -> bool:
    if not value:
        return False
    return bool(_EMAIL_RE.match(value.strip()))


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = value.strip().lower()
    if not _EMAIL_RE.match(cleaned):
        return None
    return cleaned


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Digits only, UK trunk prefix rewritten to the country code.

    ``"07911 123456"`` and ``"+447911123456"`` both normalize to
    ``"447911123456"``.
    """

    if not value:
        return None
    digits = _NON_DIGIT_RE.sub("", str(value))
    if len(digits) == UK_TRUNK_LENGTH and digits.startswith("0"):
        digits = UK_COUNTRY_CODE + digits[1:]
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        return None
    return digits


def normalize_name(value: Optional[str]) -> Optional[str]:
    """Casefold, fold accents and collapse every non-alphanumeric run to a space.

    Letters from any script are kept, so ``"José Núñez"`` and ``"Jose Nunez"``
    normalize alike and ``"李明"`` survives.
    """

    if not value:
        return None
    decomposed = unicodedata.normalize("NFKD", value)
    folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()
    cleaned = " ".join(_NON_WORD_RE.sub(" ", folded).split())
    if len(cleaned) < MIN_NAME_LENGTH:
        return None
    return cleaned


def identity_key(
    email: Optional[str] = None,
    phone: Optional[str] = None,
    name: Optional[str] = None,
) -> Optional[str]:
    """Return the strongest available identity key: email, then phone, then name."""

    normalized_email = normalize_email(email)
    if normalized_email:
        return f"email:{normalized_email}"
    normalized_phone = normalize_phone(phone)
    if normalized_phone:
        return f"phone:{normalized_phone}"
    normalized_name = normalize_name(name)
    if normalized_name:
        return f"name:{normalized_name}"
    return None


def split_name(full_name: Optional[str]) -> tuple[str, str]:
    if not full_name:
        return "", ""
    parts = full_name.strip().split()
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], " ".join(parts[1:])
