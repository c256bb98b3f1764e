"""Phone number normalization for the call-automation backend."""

import re
from typing import Optional

E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_phone_to_e164(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    Numbers already written with a leading "+" keep their country code.
    Bare numbers are treated as North American:
        (864) 555-1234   -> +18645551234
        1-864-555-1234   -> +18645551234

    Returns None when the input can't be turned into a dialable number.
    """
    if not phone:
        return None

    raw = phone.strip()
    digits = re.sub(r"\D", "", raw)

    if raw.startswith("+"):
        candidate = f"+{digits}"
        return candidate if E164_RE.match(candidate) else None

    if raw.startswith("00") and len(digits) > 2:
        candidate = f"+{digits[2:]}"
        return candidate if E164_RE.match(candidate) else None

    if len(digits) == 10:
        return f"+1{digits}"

    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"

    return None


def is_e164(phone: Optional[str]) -> bool:
    return bool(phone) and bool(E164_RE.match(phone))
