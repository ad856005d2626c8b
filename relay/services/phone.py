import re
from typing import Optional

_CHANNEL_PREFIX = re.compile(r"^\s*whatsapp:\s*", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Canonical ``+<digits>`` form of a provider address.

    ``whatsapp:+33 6 00 00 00 01``, ``33600000001`` and ``+33600000001``
    all map to ``+33600000001``. A leading ``00`` international prefix is
    dropped. Returns None when no digits remain.
    """
    if not raw:
        return None
    value = _CHANNEL_PREFIX.sub("", raw)
    digits = _NON_DIGITS.sub("", value)
    if digits.startswith("00"):
        digits = digits[2:]
    if not digits:
        return None
    return f"+{digits}"


def to_channel_address(phone: str) -> str:
    """Provider address for a canonical phone (``whatsapp:+...``)."""
    return f"whatsapp:{normalize_phone(phone) or phone}"
