"""Address normalization shared by routing, inbound and outbound paths.

An *address* is the canonical end-user phone number: ``+`` followed by digits.
A *JID* is the transport's identifier (``59891234567@s.whatsapp.net``,
``59891234567:12@s.whatsapp.net`` for a linked device, ``1234@lid`` for an
opaque linked id).
"""

import re

USER_SUFFIX = "@s.whatsapp.net"
LID_SUFFIX = "@lid"
GROUP_SUFFIX = "@g.us"
NEWSLETTER_SUFFIX = "@newsletter"
BROADCAST_SUFFIX = "@broadcast"

_NON_DIGITS = re.compile(r"\D")


def normalize_address(raw: str | None) -> str:
    """``"+598 91-234 567"`` -> ``"+59891234567"``; empty input stays empty."""
    if not raw:
        return ""
    digits = _NON_DIGITS.sub("", raw)
    return f"+{digits}" if digits else ""


def address_digits(raw: str | None) -> str:
    return _NON_DIGITS.sub("", raw or "")


def jid_to_address(jid: str | None) -> str:
    """Strip server and device suffix from a user JID."""
    if not jid:
        return ""
    user = jid.split("@", 1)[0].split(":", 1)[0]
    return normalize_address(user)


def address_to_jid(address: str) -> str:
    return f"{address_digits(address)}{USER_SUFFIX}"


def is_user_jid(jid: str | None) -> bool:
    return bool(jid) and jid.endswith(USER_SUFFIX)


def is_lid(jid: str | None) -> bool:
    return bool(jid) and jid.endswith(LID_SUFFIX)


def is_non_conversational(jid: str | None) -> bool:
    """Status broadcasts, newsletters/channels and groups never reach the CRM."""
    if not jid:
        return True
    return (
        jid.startswith("status@")
        or jid.endswith(BROADCAST_SUFFIX)
        or jid.endswith(NEWSLETTER_SUFFIX)
        or jid.endswith(GROUP_SUFFIX)
    )
