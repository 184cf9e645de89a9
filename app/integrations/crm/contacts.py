"""Session Router – Contact Resolver.

Idempotent find-or-create of the CRM contact behind an end-user address:

  1. known contact id   → GET it
  2. search by digits   → accept the first hit whose phone digits match
  3. create             → a duplicate-contact 400 carrying ``meta.contactId``
                          counts as success

Contacts still carrying the placeholder name are upgraded to the WhatsApp
push name when one is available (best effort).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from app.core.addresses import address_digits, normalize_address
from app.core.errors import CrmError, RouterError
from app.integrations.crm.client import CrmClient
from config.settings import Settings, get_settings

logger = structlog.get_logger()

MIN_MATCH_DIGITS = 8


@dataclass(frozen=True)
class CrmContact:
    id: str
    phone: str | None = None
    name: str | None = None


def _full_name(contact: dict[str, Any]) -> str:
    name = contact.get("contactName") or contact.get("name")
    if name:
        return str(name).strip()
    return f"{contact.get('firstName') or ''} {contact.get('lastName') or ''}".strip()


def _to_contact(contact: dict[str, Any], fallback_phone: str | None = None) -> CrmContact:
    return CrmContact(
        id=str(contact["id"]),
        phone=contact.get("phone") or fallback_phone,
        name=_full_name(contact) or None,
    )


def _phones_match(found: str | None, query_digits: str) -> bool:
    """Same number, allowing one side to omit a country or trunk prefix."""
    digits = address_digits(found)
    if not digits or not query_digits:
        return False
    shorter, longer = sorted((digits, query_digits), key=len)
    return len(shorter) >= MIN_MATCH_DIGITS and longer.endswith(shorter)


class ContactResolver:
    def __init__(self, client: CrmClient, settings: Settings | None = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    def _is_placeholder(self, name: str | None) -> bool:
        if not name:
            return True
        return name.strip().lower() == self._settings.crm_placeholder_name.strip().lower()

    async def _upgrade_name(self, tenant_id: str, contact: dict[str, Any], name: str | None) -> None:
        if not name or not self._is_placeholder(_full_name(contact)):
            return
        try:
            await self._client.update_contact(tenant_id, str(contact["id"]), {"firstName": name, "lastName": ""})
            contact["firstName"], contact["lastName"] = name, ""
            logger.info("contacts.name_upgraded", tenant_id=tenant_id, contact_id=contact["id"])
        except RouterError as e:
            logger.warning("contacts.name_upgrade_failed", tenant_id=tenant_id, contact_id=contact["id"], error=str(e))

    async def resolve(
        self,
        tenant_id: str,
        address: str,
        display_name: str | None,
        known_contact_id: str | None = None,
        from_me: bool = False,
    ) -> CrmContact | None:
        """Return the tenant's CRM contact for ``address``, creating it if needed."""
        address = normalize_address(address)
        digits = address_digits(address)
        if not digits:
            return None
        # The push name on a fromMe mirror belongs to the tenant, not the contact.
        real_name = (display_name or "").strip() if not from_me else ""
        real_name = "" if self._is_placeholder(real_name) else real_name

        if known_contact_id:
            try:
                contact = await self._client.get_contact(tenant_id, known_contact_id)
            except CrmError as e:
                logger.warning("contacts.known_lookup_failed", tenant_id=tenant_id, contact_id=known_contact_id, error=str(e))
                contact = None
            if contact:
                await self._upgrade_name(tenant_id, contact, real_name)
                return _to_contact(contact, address)

        try:
            hits = await self._client.search_contacts(tenant_id, digits, limit=1)
        except CrmError as e:
            logger.warning("contacts.search_failed", tenant_id=tenant_id, address=address, error=str(e))
            hits = []
        if hits and hits[0].get("id") and _phones_match(hits[0].get("phone"), digits):
            found = hits[0]
            await self._upgrade_name(tenant_id, found, real_name)
            return _to_contact(found, address)

        try:
            created = await self._client.create_contact(
                tenant_id,
                {
                    "phone": address,
                    "firstName": real_name or self._settings.crm_placeholder_name,
                    "source": self._settings.crm_contact_source,
                },
            )
        except CrmError as e:
            body = e.body if isinstance(e.body, dict) else {}
            existing_id = (body.get("meta") or {}).get("contactId")
            if e.status_code == 400 and existing_id:
                logger.info("contacts.duplicate_recovered", tenant_id=tenant_id, contact_id=existing_id)
                return CrmContact(id=str(existing_id), phone=address)
            logger.error("contacts.create_failed", tenant_id=tenant_id, address=address, error=str(e))
            return None

        if not created.get("id"):
            logger.error("contacts.create_without_id", tenant_id=tenant_id, address=address)
            return None
        logger.info("contacts.created", tenant_id=tenant_id, contact_id=created["id"])
        return _to_contact(created, address)
