"""Contact resolver tests: known id, search match, create, duplicate recovery, name upgrade."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from app.core.errors import CrmError
from app.integrations.crm.client import CrmClient
from app.integrations.crm.contacts import ContactResolver, CrmContact
from app.integrations.crm.tokens import CrmCredentials


@pytest.fixture
def crm() -> MagicMock:
    client = MagicMock()
    client.get_contact = AsyncMock(return_value=None)
    client.search_contacts = AsyncMock(return_value=[])
    client.create_contact = AsyncMock(return_value={"id": "new-1", "phone": "+59891234567"})
    client.update_contact = AsyncMock(return_value={})
    return client


@pytest.fixture
def resolver(crm, settings) -> ContactResolver:
    return ContactResolver(crm, settings)


class TestResolve:
    @pytest.mark.anyio
    async def test_known_contact_is_returned(self, resolver, crm) -> None:
        crm.get_contact.return_value = {"id": "c1", "firstName": "Ana", "phone": "+59891234567"}
        contact = await resolver.resolve("loc1", "+59891234567", "Ana", known_contact_id="c1")
        assert contact == CrmContact(id="c1", phone="+59891234567", name="Ana")
        crm.search_contacts.assert_not_awaited()
        crm.create_contact.assert_not_awaited()

    @pytest.mark.anyio
    async def test_known_lookup_failure_falls_back_to_search(self, resolver, crm) -> None:
        crm.get_contact.side_effect = CrmError("gone", status_code=404)
        crm.search_contacts.return_value = [{"id": "c2", "phone": "+598 91 234 567", "firstName": "Ana"}]
        contact = await resolver.resolve("loc1", "+59891234567", "Ana", known_contact_id="stale")
        assert contact.id == "c2"

    @pytest.mark.anyio
    async def test_search_hit_must_match_digits(self, resolver, crm) -> None:
        crm.search_contacts.return_value = [{"id": "other", "phone": "+1 222 333"}]
        contact = await resolver.resolve("loc1", "+59891234567", "Ana")
        assert contact.id == "new-1"
        crm.search_contacts.assert_awaited_once_with("loc1", "59891234567", limit=1)

    @pytest.mark.anyio
    async def test_short_number_suffix_is_not_a_match(self, resolver, crm) -> None:
        crm.search_contacts.return_value = [{"id": "short", "phone": "1234567"}]
        contact = await resolver.resolve("loc1", "+5491234567", "Ana")
        assert contact.id == "new-1"
        crm.create_contact.assert_awaited_once()

    @pytest.mark.anyio
    async def test_unrelated_number_containing_query_is_not_a_match(self, resolver, crm) -> None:
        crm.search_contacts.return_value = [{"id": "other", "phone": "+59891234567999"}]
        contact = await resolver.resolve("loc1", "+59891234567", "Ana")
        assert contact.id == "new-1"

    @pytest.mark.anyio
    async def test_search_hit_without_country_code_matches(self, resolver, crm) -> None:
        crm.search_contacts.return_value = [{"id": "c3", "phone": "91234567", "firstName": "Ana"}]
        contact = await resolver.resolve("loc1", "+59891234567", "Ana")
        assert contact.id == "c3"
        crm.create_contact.assert_not_awaited()

    @pytest.mark.anyio
    async def test_create_uses_push_name_and_source(self, resolver, crm) -> None:
        await resolver.resolve("loc1", "+59891234567", "Ana")
        fields = crm.create_contact.await_args.args[1]
        assert fields == {"phone": "+59891234567", "firstName": "Ana", "source": "WhatsApp"}

    @pytest.mark.anyio
    async def test_from_me_never_uses_push_name(self, resolver, crm) -> None:
        await resolver.resolve("loc1", "+59891234567", "Tenant Owner", from_me=True)
        fields = crm.create_contact.await_args.args[1]
        assert fields["firstName"] == "WhatsApp User"

    @pytest.mark.anyio
    async def test_duplicate_conflict_is_recovered(self, resolver, crm) -> None:
        crm.create_contact.side_effect = CrmError(
            "duplicate", status_code=400, body={"message": "dup", "meta": {"contactId": "dup-9"}}
        )
        contact = await resolver.resolve("loc1", "+59891234567", "Ana")
        assert contact == CrmContact(id="dup-9", phone="+59891234567")

    @pytest.mark.anyio
    async def test_other_create_failures_return_none(self, resolver, crm) -> None:
        crm.create_contact.side_effect = CrmError("boom", status_code=422, body={"message": "bad"})
        assert await resolver.resolve("loc1", "+59891234567", "Ana") is None

    @pytest.mark.anyio
    async def test_resolution_is_idempotent(self, resolver, crm) -> None:
        crm.search_contacts.side_effect = [[], [{"id": "new-1", "phone": "+59891234567"}]]
        first = await resolver.resolve("loc1", "+59891234567", "Ana")
        second = await resolver.resolve("loc1", "+59891234567", "Ana")
        assert first.id == second.id == "new-1"
        assert crm.create_contact.await_count == 1

    @pytest.mark.anyio
    async def test_empty_address(self, resolver) -> None:
        assert await resolver.resolve("loc1", "", "Ana") is None


class TestNameUpgrade:
    @pytest.mark.anyio
    async def test_placeholder_name_is_upgraded(self, resolver, crm) -> None:
        crm.get_contact.return_value = {"id": "c1", "firstName": "WhatsApp", "lastName": "User"}
        contact = await resolver.resolve("loc1", "+59891234567", "Ana", known_contact_id="c1")
        crm.update_contact.assert_awaited_once_with("loc1", "c1", {"firstName": "Ana", "lastName": ""})
        assert contact.name == "Ana"

    @pytest.mark.anyio
    async def test_real_names_are_left_alone(self, resolver, crm) -> None:
        crm.get_contact.return_value = {"id": "c1", "firstName": "Maria"}
        await resolver.resolve("loc1", "+59891234567", "Ana", known_contact_id="c1")
        crm.update_contact.assert_not_awaited()

    @pytest.mark.anyio
    async def test_upgrade_failure_is_only_logged(self, resolver, crm) -> None:
        crm.get_contact.return_value = {"id": "c1", "firstName": ""}
        crm.update_contact.side_effect = CrmError("nope", status_code=500)
        contact = await resolver.resolve("loc1", "+59891234567", "Ana", known_contact_id="c1")
        assert contact.id == "c1"


class StaticTokens:
    async def credentials(self, tenant_id: str) -> CrmCredentials:
        return CrmCredentials(access_token="t", location_id=tenant_id)

    async def refresh_token(self, tenant_id: str) -> CrmCredentials:
        return await self.credentials(tenant_id)


class TestUnreachableCrm:
    @pytest.mark.anyio
    async def test_hung_name_update_keeps_the_contact(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "PUT":
                raise httpx.ConnectTimeout("crm hung", request=request)
            return httpx.Response(200, json={"contact": {"id": "c1", "firstName": "WhatsApp User"}})

        client = CrmClient(StaticTokens(), settings, transport=httpx.MockTransport(handler))
        contact = await ContactResolver(client, settings).resolve(
            "loc1", "+59891234567", "Ana", known_contact_id="c1"
        )
        assert contact is not None
        assert contact.id == "c1"

    @pytest.mark.anyio
    async def test_network_failed_search_falls_through_to_create(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                raise httpx.ReadTimeout("search hung", request=request)
            return httpx.Response(201, json={"contact": {"id": "new-7", "phone": "+59891234567"}})

        client = CrmClient(StaticTokens(), settings, transport=httpx.MockTransport(handler))
        contact = await ContactResolver(client, settings).resolve("loc1", "+59891234567", "Ana")
        assert contact.id == "new-7"
