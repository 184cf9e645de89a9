"""Session Router – PII Filter.

Regex-based masking of phone numbers and e-mail addresses for log safety.
Applied to log records only, NEVER to message content forwarded to the CRM.
"""

import re
from typing import Any

PATTERNS: dict[str, re.Pattern[str]] = {
    "phone_intl": re.compile(
        r"\+?\d{8,15}"
    ),
    "email": re.compile(
        r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}"
    ),
}

# Log fields that always hold an end-user address and are masked as a whole
ADDRESS_FIELDS = {"address", "to", "sender", "destination", "phone", "jid"}

# Log fields that are never touched (ids, channel numbers the operator owns)
SAFE_FIELDS = {"event", "level", "timestamp", "message_id", "session_id", "tenant_id", "slot", "channel"}


class PIIFilter:
    """PII detection and masking.

    Usage:
        pii = PIIFilter()
        safe_text = pii.mask("+59891234567 wrote")  # "+5989****"
    """

    def __init__(self, patterns: dict[str, re.Pattern[str]] | None = None) -> None:
        self._patterns = patterns or PATTERNS

    def contains_pii(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._patterns.values())

    def mask(self, text: str) -> str:
        """Mask phone numbers (keep first 5 chars) and e-mails (keep first char + TLD)."""

        def mask_phone(match: re.Match[str]) -> str:
            full = match.group(0)
            if len(full) > 5:
                return full[:5] + "****"
            return "****"

        def mask_email(match: re.Match[str]) -> str:
            local, _, domain = match.group(0).partition("@")
            domain_parts = domain.rsplit(".", 1)
            tld = domain_parts[1] if len(domain_parts) > 1 else "com"
            return f"{local[:1]}****@{domain_parts[0][:1]}****.{tld}"

        result = self._patterns["email"].sub(mask_email, text)
        return self._patterns["phone_intl"].sub(mask_phone, result)


_pii = PIIFilter()


def filter_log_record(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: mask end-user addresses in log fields."""
    for key, value in list(event_dict.items()):
        if key in SAFE_FIELDS or not isinstance(value, str):
            continue
        if key in ADDRESS_FIELDS or _pii.contains_pii(value):
            event_dict[key] = _pii.mask(value)
    return event_dict
