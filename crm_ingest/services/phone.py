import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")
_JID_SUFFIX = re.compile(r"@(s\.whatsapp\.net|c\.us|lid|g\.us|broadcast)$")


def sanitize_phone(value: Optional[object]) -> str:
    """Digits-only form of a phone number; the canonical contact key."""
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def phone_from_remote_jid(remote_jid: Optional[str]) -> str:
    """Strip the WhatsApp address suffix, then reduce to digits.

    5511999990000@s.whatsapp.net -> 5511999990000
    """
    if not remote_jid:
        return ""
    return sanitize_phone(_JID_SUFFIX.sub("", remote_jid.strip()))
