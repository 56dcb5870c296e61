from __future__ import annotations

import asyncio

import httpx
import pytest

from src.adapters.api_client import RemoteApiClient, classify_failure
from src.services.errors import (
    AuthError,
    DomainConflict,
    InstrumentExhausted,
    NotFoundError,
    SessionFull,
    TransportError,
    ValidationError,
    describe_error,
)
from tests.fakes import API_URL


def _client(handler) -> RemoteApiClient:
    return RemoteApiClient(API_URL, transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "status, body, expected",
    [
        (401, {"success": False, "error": "jwt expired"}, AuthError),
        (404, {"success": False, "error": "Session not found"}, NotFoundError),
        (502, "Bad gateway", TransportError),
        (409, {"error": {"code": "SESSION_FULL", "message": "Full"}}, SessionFull),
        (400, {"success": False, "error": "No remaining credits on package"}, InstrumentExhausted),
        (400, {"success": False, "error": "Weekly frequency limit reached"}, InstrumentExhausted),
        (400, {"success": False, "error": "Your package has expired"}, InstrumentExhausted),
        (400, {"success": False, "error": "Password reset link has expired"}, ValidationError),
        (400, {"success": False, "error": "Invitation limit reached"}, ValidationError),
        (409, {"success": False, "error": "Already booked"}, DomainConflict),
        (400, {"success": False, "message": "sessionId is required"}, ValidationError),
    ],
)
def test_classify_failure_maps_remote_errors(status, body, expected):
    error = classify_failure(status, body)
    assert type(error) is expected
    assert error.status == status


def test_request_unwraps_success_envelope_and_sends_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["params"] = dict(request.url.params)
        seen["path"] = request.url.path
        return httpx.Response(200, json={"success": True, "data": [{"_id": "pkg-1"}]})

    async def scenario():
        client = _client(handler)
        client.bind_session(lambda: "token-9")
        try:
            return await client.list_packages("brand-a")
        finally:
            await client.aclose()

    data = asyncio.run(scenario())

    assert data == [{"_id": "pkg-1"}]
    assert seen["auth"] == "Bearer token-9"
    assert seen["params"] == {"brandId": "brand-a"}
    assert seen["path"] == "/api/api/package/client"


def test_unsuccessful_envelope_is_an_error_even_with_http_200():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "Session is full"})

    async def scenario():
        client = _client(handler)
        try:
            await client.get_session("session-1")
        finally:
            await client.aclose()

    with pytest.raises(SessionFull):
        asyncio.run(scenario())


def test_network_failures_become_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        client = _client(handler)
        try:
            await client.list_bookings("brand-a")
        finally:
            await client.aclose()

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.retryable is True


def test_unauthorized_response_triggers_session_hook_only_for_authenticated_calls():
    signed_out = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"success": False, "error": "Invalid token"})

    async def scenario():
        client = _client(handler)
        client.bind_session(lambda: "stale-token", lambda: signed_out.append(True))
        try:
            with pytest.raises(AuthError):
                await client.login("ada@example.com", "wrong")
            assert signed_out == []
            with pytest.raises(AuthError):
                await client.get_current_identity()
        finally:
            await client.aclose()

    asyncio.run(scenario())
    assert signed_out == [True]


def test_describe_error_prefers_user_facing_messages():
    assert describe_error(SessionFull("raw server text")) == SessionFull.user_message
    assert describe_error({"message": "Card declined", "code": "E42"}) == "Error E42: Card declined"
    assert describe_error({"error": {"details": "Nested detail"}}) == "Nested detail"
    assert describe_error(None) == "An unknown error occurred"
