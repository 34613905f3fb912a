from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx

from tradersmind.config import Settings
from tradersmind.errors import ForbiddenError, NotFoundError, PlatformError, TransientError

logger = logging.getLogger(__name__)

# Discord JSON error codes.
UNKNOWN_CHANNEL = 10003
UNKNOWN_MESSAGE = 10008
UNKNOWN_WEBHOOK = 10015
UNKNOWN_INTERACTION = 10062
MISSING_ACCESS = 50001
MISSING_PERMISSIONS = 50013

_NOT_FOUND_CODES = {UNKNOWN_CHANNEL, UNKNOWN_MESSAGE, UNKNOWN_WEBHOOK, UNKNOWN_INTERACTION}
_FORBIDDEN_CODES = {MISSING_ACCESS, MISSING_PERMISSIONS}

# Channel and message type constants.
PUBLIC_THREAD = 11
PRIVATE_THREAD = 12
THREAD_TYPES = {10, PUBLIC_THREAD, PRIVATE_THREAD}
THREAD_CREATED_MESSAGE = 18
USER_MESSAGE_TYPES = {0, 19, 20, 23}

EPHEMERAL_FLAG = 1 << 6
DEFERRED_CHANNEL_MESSAGE = 5


def _parse_snowflake_time(snowflake: str | None) -> datetime | None:
    try:
        value = int(str(snowflake))
    except (TypeError, ValueError):
        return None
    millis = (value >> 22) + 1420070400000
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def _parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_system_message(message: Dict[str, Any]) -> bool:
    return int(message.get("type", 0) or 0) not in USER_MESSAGE_TYPES


def message_created_at(message: Dict[str, Any]) -> datetime | None:
    return _parse_timestamp(message.get("timestamp")) or _parse_snowflake_time(message.get("id"))


@dataclass
class ThreadHandle:
    id: str
    parent_id: str | None
    name: str
    owner_id: str | None = None
    archived: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ThreadHandle":
        metadata = payload.get("thread_metadata") or {}
        created = _parse_timestamp(metadata.get("create_timestamp")) or _parse_snowflake_time(payload.get("id"))
        return cls(
            id=str(payload.get("id")),
            parent_id=str(payload["parent_id"]) if payload.get("parent_id") else None,
            name=str(payload.get("name") or ""),
            owner_id=str(payload["owner_id"]) if payload.get("owner_id") else None,
            archived=bool(metadata.get("archived", False)),
            created_at=created,
        )


def _classify(response: httpx.Response, action: str) -> PlatformError:
    code: int | None = None
    detail = response.text[:200]
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        raw_code = body.get("code")
        code = int(raw_code) if isinstance(raw_code, int) else None
        detail = str(body.get("message") or detail)

    message = f"{action} failed ({response.status_code}): {detail}"
    if response.status_code == 404 or code in _NOT_FOUND_CODES:
        return NotFoundError(message, status_code=response.status_code, code=code)
    if response.status_code == 403 or code in _FORBIDDEN_CODES:
        return ForbiddenError(message, status_code=response.status_code, code=code)
    retry_after = None
    if response.status_code == 429 and isinstance(body, dict):
        try:
            retry_after = float(body.get("retry_after"))
        except (TypeError, ValueError):
            retry_after = None
    return TransientError(message, status_code=response.status_code, code=code, retry_after=retry_after)


class DiscordClient:
    """Minimal Discord REST client covering what the bot posts and reclaims."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._http = http or httpx.AsyncClient(
            base_url=settings.discord_api_url.rstrip("/"),
            timeout=15.0,
            headers={
                "Authorization": f"Bot {settings.discord_bot_token}",
                "User-Agent": "DiscordBot (https://github.com/tradersmind, 0.1.0)",
            },
        )
        self._user_id: str | None = None
        self._guild_by_channel: Dict[str, str] = {}

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, action: str, **kwargs: Any) -> Any:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransientError(f"{action} failed: {type(exc).__name__}: {exc}") from exc
        if response.status_code >= 400:
            raise _classify(response, action)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def current_user_id(self) -> str:
        if self._user_id is None:
            payload = await self._request("GET", "/users/@me", "fetch current user")
            self._user_id = str((payload or {}).get("id") or "")
        return self._user_id

    async def fetch_conversation(self, channel_id: str) -> Dict[str, Any]:
        payload = await self._request("GET", f"/channels/{channel_id}", "fetch channel")
        if not isinstance(payload, dict):
            raise NotFoundError(f"channel {channel_id} returned no data")
        if payload.get("guild_id"):
            self._guild_by_channel[channel_id] = str(payload["guild_id"])
        return payload

    async def fetch_message(self, channel_id: str, message_id: str) -> Dict[str, Any]:
        payload = await self._request("GET", f"/channels/{channel_id}/messages/{message_id}", "fetch message")
        return payload or {}

    async def fetch_recent_messages(self, channel_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        payload = await self._request(
            "GET",
            f"/channels/{channel_id}/messages",
            "fetch messages",
            params={"limit": max(1, min(limit, 100))},
        )
        return payload if isinstance(payload, list) else []

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        await self._request("DELETE", f"/channels/{channel_id}/messages/{message_id}", "delete message")

    async def send_message(
        self,
        channel_id: str,
        *,
        content: str | None = None,
        embeds: List[Dict[str, Any]] | None = None,
        components: List[Dict[str, Any]] | None = None,
        reply_to: str | None = None,
        file: tuple[str, bytes] | None = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if content:
            body["content"] = content
        if embeds:
            body["embeds"] = embeds
        if components:
            body["components"] = components
        if reply_to:
            body["message_reference"] = {"message_id": reply_to, "fail_if_not_exists": False}
            body["allowed_mentions"] = {"replied_user": False}

        path = f"/channels/{channel_id}/messages"
        if file is None:
            payload = await self._request("POST", path, "send message", json=body)
        else:
            filename, data = file
            body["attachments"] = [{"id": 0, "filename": filename}]
            payload = await self._request(
                "POST",
                path,
                "send message",
                data={"payload_json": json.dumps(body)},
                files={"files[0]": (filename, data, "image/png")},
            )
        return payload or {}

    async def create_thread(self, channel_id: str, name: str, archive_after_minutes: int) -> ThreadHandle:
        payload = await self._request(
            "POST",
            f"/channels/{channel_id}/threads",
            "create thread",
            json={
                "name": name[:100],
                "auto_archive_duration": archive_after_minutes,
                "type": PUBLIC_THREAD,
            },
        )
        return ThreadHandle.from_payload(payload or {})

    async def fetch_thread(self, thread_id: str) -> ThreadHandle:
        payload = await self.fetch_conversation(thread_id)
        if int(payload.get("type", 0) or 0) not in THREAD_TYPES:
            raise NotFoundError(f"channel {thread_id} is not a thread")
        return ThreadHandle.from_payload(payload)

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/channels/{thread_id}", "delete thread")

    async def _guild_for(self, channel_id: str) -> str | None:
        if channel_id not in self._guild_by_channel:
            await self.fetch_conversation(channel_id)
        return self._guild_by_channel.get(channel_id)

    async def list_active_threads(self, channel_id: str) -> List[ThreadHandle]:
        guild_id = await self._guild_for(channel_id)
        if not guild_id:
            return []
        payload = await self._request("GET", f"/guilds/{guild_id}/threads/active", "list active threads")
        threads = (payload or {}).get("threads") or []
        return [ThreadHandle.from_payload(item) for item in threads if str(item.get("parent_id")) == channel_id]

    async def list_archived_threads(self, channel_id: str) -> List[ThreadHandle]:
        payload = await self._request(
            "GET",
            f"/channels/{channel_id}/threads/archived/public",
            "list archived threads",
        )
        threads = (payload or {}).get("threads") or []
        return [ThreadHandle.from_payload(item) for item in threads]

    async def find_thread_created_notice(self, channel_id: str, thread_id: str) -> str | None:
        """Locate the THREAD_CREATED system message announcing ``thread_id``."""
        for message in await self.fetch_recent_messages(channel_id, limit=10):
            if int(message.get("type", 0) or 0) != THREAD_CREATED_MESSAGE:
                continue
            reference = message.get("message_reference") or {}
            if str(reference.get("channel_id")) == thread_id:
                return str(message.get("id"))
        return None

    async def defer_interaction(self, interaction_id: str, token: str, *, ephemeral: bool = True) -> None:
        await self._request(
            "POST",
            f"/interactions/{interaction_id}/{token}/callback",
            "defer interaction",
            json={"type": DEFERRED_CHANNEL_MESSAGE, "data": {"flags": EPHEMERAL_FLAG if ephemeral else 0}},
        )

    async def edit_interaction_response(
        self,
        token: str,
        *,
        content: str | None = None,
        embeds: List[Dict[str, Any]] | None = None,
        application_id: str | None = None,
    ) -> Dict[str, Any]:
        app_id = application_id or self.settings.discord_application_id
        body: Dict[str, Any] = {"content": content or ""}
        if embeds:
            body["embeds"] = embeds
        payload = await self._request(
            "PATCH",
            f"/webhooks/{app_id}/{token}/messages/@original",
            "edit interaction response",
            json=body,
        )
        return payload or {}
