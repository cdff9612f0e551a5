"""Slack Web API client for Project Owl.

Wraps the handful of Web API methods the dashboard needs:
- channel listing, info and history
- user lookups (cached for the lifetime of the client)
- joining channels and posting messages

Rate-limited calls are retried with exponential backoff.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from hvac_owl.config import get_settings

logger = logging.getLogger(__name__)

RATE_LIMIT_ERRORS = {"ratelimited", "rate_limited"}
UNKNOWN_USER = {"name": "Unknown", "real_name": "Unknown", "display_name": "Unknown"}


class SlackError(Exception):
    """Raised when a Slack Web API call fails."""

    def __init__(self, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.error = error


class SlackRateLimitError(SlackError):
    """Raised when Slack rate limits a call."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, error="ratelimited")
        self.retry_after = retry_after


def _retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; None when absent or not a number."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric Retry-After header: {value!r}")
        return None


class SlackClient:
    """Async Slack Web API client."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        timeout_s: float = 30.0,
    ):
        """Initialize the client.

        Args:
            token: Bot token. Defaults to config value.
            base_url: Web API base URL. Defaults to config value.
            transport: Optional httpx transport (used by tests).
            max_retries: Attempts made for a rate-limited call.
            initial_delay: First backoff delay in seconds, doubled per retry.
            timeout_s: HTTP timeout per call.
        """
        settings = get_settings()
        self.token = token or settings.slack_bot_token
        self.base_url = (base_url or settings.slack_api_url).rstrip("/")
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self._http = httpx.AsyncClient(transport=transport, timeout=timeout_s)
        self._user_cache: Dict[str, Dict[str, str]] = {}

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "SlackClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    # =========================================================================
    # Transport
    # =========================================================================

    async def _call_once(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.token:
            raise SlackError("SLACK_BOT_TOKEN is not set", error="not_authed")

        data = {k: str(v).lower() if isinstance(v, bool) else v for k, v in params.items() if v is not None}
        try:
            resp = await self._http.post(
                f"{self.base_url}/{method}",
                data=data,
                headers={"Authorization": f"Bearer {self.token}"},
            )
        except httpx.HTTPError as e:
            raise SlackError(f"Slack {method} request failed: {e}") from e

        if resp.status_code == 429:
            raise SlackRateLimitError(
                f"Slack {method} rate limited",
                retry_after=_retry_after(resp.headers.get("Retry-After")),
            )
        if resp.status_code >= 400:
            raise SlackError(f"Slack {method} HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError as e:
            raise SlackError(f"Slack {method} returned invalid JSON: {resp.text[:200]}") from e
        if not isinstance(body, dict):
            raise SlackError(f"Slack {method} returned an unexpected payload")
        if not body.get("ok"):
            error = body.get("error", "unknown_error")
            if error in RATE_LIMIT_ERRORS:
                raise SlackRateLimitError(f"Slack {method} rate limited")
            raise SlackError(f"Slack {method} failed: {error}", error=error)
        return body

    async def _call(self, method: str, **params: Any) -> Dict[str, Any]:
        """Call a Web API method, retrying with backoff when rate limited."""
        delay = self.initial_delay
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._call_once(method, params)
            except SlackRateLimitError as e:
                if attempt == self.max_retries:
                    raise
                wait = max(delay, e.retry_after or 0)
                logger.warning(
                    f"Slack {method} rate limited (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {wait:.1f}s"
                )
                await asyncio.sleep(wait)
                delay *= 2
        raise SlackError("Max retries reached")

    # =========================================================================
    # Web API methods
    # =========================================================================

    async def auth_test(self) -> Dict[str, Any]:
        return await self._call("auth.test")

    async def list_channels(self, types: str = "public_channel,private_channel", limit: int = 200) -> list[dict]:
        """List non-archived channels, dropping entries without id or name."""
        body = await self._call("conversations.list", exclude_archived=True, types=types, limit=limit)
        channels = []
        for channel in body.get("channels") or []:
            if not channel.get("id") or not channel.get("name"):
                logger.error(f"Invalid channel data: {channel}")
                continue
            channels.append(
                {
                    "id": channel["id"],
                    "name": channel["name"],
                    "purpose": (channel.get("purpose") or {}).get("value", ""),
                }
            )
        return channels

    async def channel_info(self, channel_id: str) -> Dict[str, Any]:
        body = await self._call("conversations.info", channel=channel_id)
        channel = body.get("channel")
        if not channel:
            raise SlackError(f"Failed to fetch channel info for {channel_id}")
        return channel

    async def history(
        self,
        channel_id: str,
        limit: Optional[int] = None,
        oldest: Optional[float] = None,
        inclusive: Optional[bool] = None,
    ) -> list[dict]:
        body = await self._call(
            "conversations.history",
            channel=channel_id,
            limit=limit,
            oldest=f"{oldest:.6f}" if oldest is not None else None,
            inclusive=inclusive,
        )
        return body.get("messages") or []

    async def join_channel(self, channel_id: str) -> Dict[str, Any]:
        body = await self._call("conversations.join", channel=channel_id)
        return body.get("channel") or {}

    async def post_message(self, channel_id: str, text: str) -> Dict[str, Any]:
        return await self._call("chat.postMessage", channel=channel_id, text=text)

    async def post_owl(self, channel_id: str) -> Dict[str, Any]:
        return await self.post_message(channel_id, ":owl:")

    async def user_info(self, user_id: Optional[str]) -> Dict[str, str]:
        """Return ``{name, real_name, display_name}`` for a user, cached.

        Lookup failures are logged and reported as an unknown user.
        """
        if not user_id:
            return dict(UNKNOWN_USER)
        if user_id in self._user_cache:
            return self._user_cache[user_id]

        try:
            body = await self._call("users.info", user=user_id)
        except SlackError as e:
            logger.error(f"Error fetching user info for {user_id}: {e}")
            return dict(UNKNOWN_USER)

        user = body.get("user") or {}
        profile = user.get("profile") or {}
        info = {
            "name": user.get("name") or user_id,
            "real_name": user.get("real_name") or profile.get("real_name") or user.get("name") or user_id,
            "display_name": profile.get("display_name") or user.get("name") or user_id,
        }
        self._user_cache[user_id] = info
        return info

    # =========================================================================
    # Higher level helpers
    # =========================================================================

    async def enrich_messages(self, messages: list[dict]) -> list[dict]:
        """Add ``username``/``real_name`` to each message from cached user lookups."""
        user_ids = sorted({m["user"] for m in messages if m.get("user")})
        infos = await asyncio.gather(*(self.user_info(uid) for uid in user_ids))
        users = dict(zip(user_ids, infos))

        enriched = []
        for msg in messages:
            info = users.get(msg.get("user"))
            enriched.append(
                {
                    **msg,
                    "username": info["display_name"] if info else "Unknown User",
                    "real_name": info["real_name"] if info else "Unknown",
                }
            )
        return enriched

    async def get_channel_messages(
        self,
        channel_id: str,
        days: int = 14,
        limit: int = 200,
        oldest: Optional[float] = None,
    ) -> list[dict]:
        """Messages of the last ``days`` days, each with a ``username``.

        When ``oldest`` is given only messages strictly newer than it are returned.
        """
        inclusive = oldest is None
        if oldest is None:
            oldest = time.time() - days * 24 * 60 * 60
        logger.info(
            f"Fetching messages for {channel_id} since "
            f"{datetime.fromtimestamp(oldest, tz=timezone.utc).isoformat()}"
        )
        messages = await self.history(channel_id, limit=limit, oldest=oldest, inclusive=inclusive)
        enriched = await self.enrich_messages(messages)
        logger.info(f"Retrieved {len(enriched)} messages for {channel_id}")
        return enriched

    async def get_channel_summary(self, channel_id: str, hours: int = 24) -> Dict[str, Any]:
        """Channel name, purpose and recent messages; failures are reported inline."""
        try:
            channel = await self.channel_info(channel_id)
            messages = await self.history(
                channel_id, oldest=time.time() - hours * 60 * 60, inclusive=True
            )
            return {
                "id": channel_id,
                "name": channel.get("name") or "unknown",
                "purpose": (channel.get("purpose") or {}).get("value", ""),
                "messages": await self.enrich_messages(messages),
            }
        except SlackError as e:
            logger.error(f"Error getting channel summary for {channel_id}: {e}")
            return {
                "id": channel_id,
                "name": "unknown",
                "purpose": "",
                "messages": [],
                "error": str(e) or "Failed to fetch channel data",
            }
