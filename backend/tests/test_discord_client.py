from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from tradersmind.errors import ForbiddenError, NotFoundError, TransientError
from tradersmind.services.discord_client import DiscordClient, ThreadHandle, is_system_message, message_created_at


def _client(settings, handler) -> DiscordClient:
    http = httpx.AsyncClient(base_url="https://discord.test/api/v10", transport=httpx.MockTransport(handler))
    return DiscordClient(settings, http=http)


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (404, {"code": 10008, "message": "Unknown Message"}, NotFoundError),
        (400, {"code": 10003, "message": "Unknown Channel"}, NotFoundError),
        (403, {"code": 50013, "message": "Missing Permissions"}, ForbiddenError),
        (400, {"code": 50001, "message": "Missing Access"}, ForbiddenError),
        (500, {"message": "Internal"}, TransientError),
        (429, {"message": "rate limited", "retry_after": 2.5}, TransientError),
    ],
)
def test_error_responses_are_classified(settings, status, body, expected):
    client = _client(settings, lambda _request: httpx.Response(status, json=body))

    with pytest.raises(expected) as excinfo:
        asyncio.run(client.delete_message("chan-1", "m1"))

    assert excinfo.value.status_code == status
    if status == 429:
        assert excinfo.value.retry_after == 2.5


def test_network_failure_is_transient(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = _client(settings, handler)

    with pytest.raises(TransientError):
        asyncio.run(client.fetch_message("chan-1", "m1"))


def test_delete_message_uses_channel_route(settings):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(204)

    asyncio.run(_client(settings, handler).delete_message("chan-1", "m1"))

    assert seen == [("DELETE", "/api/v10/channels/chan-1/messages/m1")]


def test_find_thread_created_notice_matches_reference(settings):
    messages = [
        {"id": "10", "type": 0, "content": "hi"},
        {"id": "11", "type": 18, "message_reference": {"channel_id": "t-other"}},
        {"id": "12", "type": 18, "message_reference": {"channel_id": "t-1"}},
    ]
    client = _client(settings, lambda _request: httpx.Response(200, json=messages))

    assert asyncio.run(client.find_thread_created_notice("chan-1", "t-1")) == "12"
    assert asyncio.run(client.find_thread_created_notice("chan-1", "t-9")) is None


def test_fetch_thread_rejects_plain_channels(settings):
    client = _client(settings, lambda _request: httpx.Response(200, json={"id": "chan-1", "type": 0}))

    with pytest.raises(NotFoundError):
        asyncio.run(client.fetch_thread("chan-1"))


def test_list_active_threads_filters_by_parent(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/channels/chan-1"):
            return httpx.Response(200, json={"id": "chan-1", "type": 0, "guild_id": "g-1"})
        assert request.url.path.endswith("/guilds/g-1/threads/active")
        return httpx.Response(
            200,
            json={
                "threads": [
                    {"id": "t-1", "parent_id": "chan-1", "name": "a", "thread_metadata": {"archived": False}},
                    {"id": "t-2", "parent_id": "chan-2", "name": "b"},
                ]
            },
        )

    threads = asyncio.run(_client(settings, handler).list_active_threads("chan-1"))

    assert [item.id for item in threads] == ["t-1"]
    assert threads[0].archived is False


def test_send_message_with_file_uses_multipart(settings):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["content_type"] = request.headers["content-type"]
        captured["body"] = request.read()
        return httpx.Response(200, json={"id": "m-5", "channel_id": "t-1"})

    message = asyncio.run(
        _client(settings, handler).send_message("t-1", embeds=[{"title": "AAPL"}], file=("chart.png", b"\x89PNG"))
    )

    assert message["id"] == "m-5"
    assert captured["content_type"].startswith("multipart/form-data")
    assert b"payload_json" in captured["body"]
    assert b"\x89PNG" in captured["body"]


def test_send_message_reply_payload(settings):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"id": "m-6"})

    asyncio.run(_client(settings, handler).send_message("chan-1", content="hi", reply_to="m-1"))

    assert captured["message_reference"]["message_id"] == "m-1"
    assert captured["allowed_mentions"] == {"replied_user": False}


def test_thread_handle_from_payload():
    handle = ThreadHandle.from_payload(
        {
            "id": "175928847299117063",
            "parent_id": 42,
            "name": "\U0001F4CA alice's Stock Charts",
            "owner_id": "900000000000000001",
            "thread_metadata": {"archived": True, "create_timestamp": "2024-01-01T12:00:00.000000+00:00"},
        }
    )
    assert handle.parent_id == "42"
    assert handle.archived is True
    assert handle.created_at.isoformat() == "2024-01-01T12:00:00+00:00"


def test_message_helpers():
    assert is_system_message({"type": 18}) is True
    assert is_system_message({"type": 19}) is False
    assert is_system_message({}) is False
    created = message_created_at({"id": "175928847299117063"})
    assert created.year == 2016
    assert message_created_at({"timestamp": "2024-01-01T12:00:00Z"}).hour == 12
