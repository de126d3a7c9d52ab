"""Tests for AmoebaTransport and AmoebaCrmClient over httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest
from tenacity import wait_none

from src.amoebacrm.crm.client import AmoebaCrmClient
from src.amoebacrm.crm.errors import ConnectorError, RemoteRejection, RemoteTimeout
from src.amoebacrm.crm.transport import (
    AmoebaTransport,
    RawResponse,
    RequestSettings,
    extract_error_message,
)

BASE_URL = "https://crm.example.com"


def _transport(handler, token: str = "tok-123", max_retries: int = 3) -> AmoebaTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AmoebaTransport(
        access_token=token,
        max_retries=max_retries,
        client=client,
        retry_wait=wait_none(),
    )


# ── Error Message Extraction ───────────────────────────────────────────────


class TestExtractErrorMessage:
    def test_message_key(self):
        assert extract_error_message({"message": "Bad email"}, "fallback") == "Bad email"

    def test_error_key_with_nested_message(self):
        body = {"error": {"message": "Token expired"}}
        assert extract_error_message(body, "fallback") == "Token expired"

    def test_first_of_errors_list(self):
        body = {"errors": [{"message": "first"}, {"message": "second"}]}
        assert extract_error_message(body, "fallback") == "first"

    def test_fallback(self):
        assert extract_error_message(None, "Not Found") == "Not Found"
        assert extract_error_message({"detail": "x"}, "Not Found") == "Not Found"


# ── Transport ──────────────────────────────────────────────────────────────


class TestAmoebaTransport:
    async def test_json_body_and_bearer_header(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "c-1"})

        transport = _transport(handler)
        result = await transport.request(
            f"{BASE_URL}/api/contact/create?_format=json",
            {"email": {"value": "a@example.com"}},
            "POST",
        )

        assert result == {"id": "c-1"}
        request = seen[0]
        assert request.headers["Authorization"] == "Bearer tok-123"
        assert request.url.params["_format"] == "json"
        assert json.loads(request.content) == {"email": {"value": "a@example.com"}}

    async def test_form_encoding(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        transport = _transport(handler)
        await transport.request(
            f"{BASE_URL}/x", {"a": "1"}, "POST", RequestSettings(encode_parameters="form")
        )

        assert seen[0].headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert seen[0].content == b"a=1"

    async def test_get_parameters_merge_into_query(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[])

        transport = _transport(handler)
        await transport.request(f"{BASE_URL}/list?_format=json", {"page": 2}, "GET")

        assert seen[0].url.params["_format"] == "json"
        assert seen[0].url.params["page"] == "2"

    @pytest.mark.parametrize("status_code", [200, 201, 202])
    async def test_success_codes(self, status_code):
        transport = _transport(lambda request: httpx.Response(status_code, json={"ok": True}))

        assert await transport.request(f"{BASE_URL}/x") == {"ok": True}

    async def test_non_success_raises_rejection_with_message(self):
        transport = _transport(
            lambda request: httpx.Response(422, json={"message": "Invalid email"})
        )

        with pytest.raises(RemoteRejection) as exc_info:
            await transport.request(f"{BASE_URL}/x", {"a": 1}, "POST")

        assert exc_info.value.status_code == 422
        assert exc_info.value.message == "Invalid email"

    async def test_204_is_not_success(self):
        transport = _transport(lambda request: httpx.Response(204))

        with pytest.raises(RemoteRejection) as exc_info:
            await transport.request(f"{BASE_URL}/x")

        assert exc_info.value.message == "No Content"

    async def test_rejection_is_not_retried(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500, text="boom")

        transport = _transport(handler)
        with pytest.raises(RemoteRejection):
            await transport.request(f"{BASE_URL}/x")

        assert calls == 1

    async def test_timeout_retried_then_raises_remote_timeout(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ReadTimeout("slow", request=request)

        transport = _transport(handler, max_retries=3)
        with pytest.raises(RemoteTimeout):
            await transport.request(f"{BASE_URL}/x")

        assert calls == 3

    async def test_timeout_then_success(self):
        responses = iter([None, httpx.Response(200, json={"id": "c-1"})])

        def handler(request: httpx.Request) -> httpx.Response:
            response = next(responses)
            if response is None:
                raise httpx.ConnectError("refused", request=request)
            return response

        transport = _transport(handler)

        assert await transport.request(f"{BASE_URL}/x") == {"id": "c-1"}

    async def test_post_read_timeout_sent_once(self):
        """A create that timed out may have landed remotely, so it is not re-sent."""
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            raise httpx.ReadTimeout("slow", request=request)

        transport = _transport(handler, max_retries=3)
        with pytest.raises(RemoteTimeout):
            await transport.request(
                f"{BASE_URL}/api/contact/create?_format=json", {"email": {"value": "a"}}, "POST"
            )

        assert methods == ["POST"]

    async def test_post_connect_error_retried(self):
        responses = iter([None, httpx.Response(201, json={"id": "c-1"})])

        def handler(request: httpx.Request) -> httpx.Response:
            response = next(responses)
            if response is None:
                raise httpx.ConnectError("refused", request=request)
            return response

        transport = _transport(handler)

        assert await transport.request(f"{BASE_URL}/x", {"a": 1}, "POST") == {"id": "c-1"}

    async def test_patch_read_timeout_retried(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ReadTimeout("slow", request=request)

        transport = _transport(handler, max_retries=2)
        with pytest.raises(RemoteTimeout):
            await transport.request(f"{BASE_URL}/contact/c-1", {"a": 1}, "PATCH")

        assert calls == 2

    async def test_other_transport_errors_are_connector_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.RemoteProtocolError("bad frame", request=request)

        transport = _transport(handler)
        with pytest.raises(ConnectorError) as exc_info:
            await transport.request(f"{BASE_URL}/x")

        assert not isinstance(exc_info.value, (RemoteTimeout, RemoteRejection))

    async def test_return_raw(self):
        transport = _transport(lambda request: httpx.Response(201, json={"id": "c-1"}))

        result = await transport.request(
            f"{BASE_URL}/x", settings=RequestSettings(return_raw=True)
        )

        assert isinstance(result, RawResponse)
        assert result.code == 201
        assert result.json() == {"id": "c-1"}


# ── Client ─────────────────────────────────────────────────────────────────


class TestAmoebaCrmClient:
    def test_endpoints(self):
        client = AmoebaCrmClient(BASE_URL + "/", _transport(lambda r: httpx.Response(200)))

        assert client.endpoint_get_fields() == f"{BASE_URL}/api/contact/fields?_format=json"
        assert client.endpoint_create_contact() == f"{BASE_URL}/api/contact/create?_format=json"
        assert client.endpoint_update_contact("c-7") == f"{BASE_URL}/contact/c-7?_format=json"
        assert (
            client.endpoint_retrieve_contacts()
            == f"{BASE_URL}/api/retrieve/contact?_format=json"
        )

    def test_authorization_requires_token_and_url(self):
        handler = lambda r: httpx.Response(200)  # noqa: E731

        assert AmoebaCrmClient(BASE_URL, _transport(handler)).is_authorized()
        assert not AmoebaCrmClient(BASE_URL, _transport(handler, token="")).is_authorized()
        assert not AmoebaCrmClient("", _transport(handler)).is_authorized()

    async def test_available_fields_converted_and_cached(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(
                200, json={"fields": {"email": "Email", "first_name": "First name"}}
            )

        client = AmoebaCrmClient(BASE_URL, _transport(handler))

        fields = await client.get_available_lead_fields()
        await client.get_available_lead_fields()

        assert fields == {
            "email": {"label": "Email", "type": "string", "required": True, "group": "Contact"},
            "first_name": {
                "label": "First name",
                "type": "string",
                "required": False,
                "group": "Contact",
            },
        }
        assert calls == 1

    async def test_available_fields_empty_on_error(self):
        client = AmoebaCrmClient(
            BASE_URL, _transport(lambda r: httpx.Response(401, json={"error": "nope"}))
        )

        assert await client.get_available_lead_fields() == {}

    async def test_available_fields_empty_when_unauthorized(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = AmoebaCrmClient(BASE_URL, _transport(handler, token=""))

        assert await client.get_available_lead_fields() == {}

    async def test_create_and_update_return_ids(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(201, json={"id": 17})
            assert request.method == "PATCH"
            assert request.url.path == "/contact/c-9"
            return httpx.Response(200, json={"id": "c-9"})

        client = AmoebaCrmClient(BASE_URL, _transport(handler))

        assert await client.create_contact({"email": {"value": "a@b.c"}}) == "17"
        assert await client.update_contact("c-9", {"email": {"value": "a@b.c"}}) == "c-9"

    async def test_update_without_id_returns_none(self):
        client = AmoebaCrmClient(BASE_URL, _transport(lambda r: httpx.Response(200, json={})))

        assert await client.update_contact("c-9", {"email": {"value": "a@b.c"}}) is None

    async def test_retrieve_contacts_with_paging(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"id": "c-1"}])

        client = AmoebaCrmClient(BASE_URL, _transport(handler))

        assert await client.retrieve_contacts(page=3, limit=50) == [{"id": "c-1"}]
        assert seen[0].url.params["page"] == "3"
        assert seen[0].url.params["limit"] == "50"
        assert seen[0].url.params["_format"] == "json"
        assert seen[0].url.path == "/api/retrieve/contact"

    async def test_retrieve_contacts_rejects_unexpected_payload(self):
        client = AmoebaCrmClient(
            BASE_URL, _transport(lambda r: httpx.Response(200, json={"total": 3}))
        )

        with pytest.raises(RemoteRejection):
            await client.retrieve_contacts()
