"""Tests for the Slack Web API client using a mocked transport."""

import asyncio
from unittest.mock import AsyncMock, call, patch
from urllib.parse import parse_qs

import httpx
import pytest

from hvac_owl.owl.slack_client import SlackClient, SlackError, SlackRateLimitError


def make_client(handler, **kwargs) -> SlackClient:
    return SlackClient(
        token="xoxb-test",
        base_url="https://slack.test/api",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def run(client: SlackClient, coro_fn):
    async def go():
        try:
            return await coro_fn(client)
        finally:
            await client.aclose()
    return asyncio.run(go())


class TestTransport:
    """Tests for request handling and retries."""

    def test_sends_bearer_token_and_form(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "messages": [{"ts": "1.0", "text": "hi"}]})

        messages = run(make_client(handler), lambda c: c.history("C1", limit=100, oldest=5.0, inclusive=True))

        assert messages == [{"ts": "1.0", "text": "hi"}]
        request = seen[0]
        assert request.url.path == "/api/conversations.history"
        assert request.headers["Authorization"] == "Bearer xoxb-test"
        assert form(request) == {"channel": "C1", "limit": "100", "oldest": "5.000000", "inclusive": "true"}

    def test_api_error(self):
        handler = lambda request: httpx.Response(200, json={"ok": False, "error": "channel_not_found"})

        with pytest.raises(SlackError) as exc_info:
            run(make_client(handler), lambda c: c.channel_info("C404"))
        assert exc_info.value.error == "channel_not_found"

    def test_missing_token(self):
        client = make_client(lambda request: httpx.Response(200, json={"ok": True}))
        client.token = None

        with pytest.raises(SlackError):
            run(client, lambda c: c.auth_test())

    def test_rate_limit_retried_with_backoff(self):
        attempts = {"n": 0}

        def handler(request):
            attempts["n"] += 1
            if attempts["n"] < 3:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"ok": True, "channel": {"id": "C1", "name": "general"}})

        with patch("hvac_owl.owl.slack_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            channel = run(make_client(handler), lambda c: c.channel_info("C1"))

        assert channel["name"] == "general"
        assert attempts["n"] == 3
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    def test_retry_after_header_is_honoured(self):
        attempts = {"n": 0}

        def handler(request):
            attempts["n"] += 1
            if attempts["n"] == 1:
                return httpx.Response(429, headers={"Retry-After": "7"})
            return httpx.Response(200, json={"ok": True})

        with patch("hvac_owl.owl.slack_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            run(make_client(handler), lambda c: c.auth_test())

        assert sleep.await_args_list == [call(7.0)]

    def test_non_numeric_retry_after_uses_backoff(self):
        attempts = {"n": 0}

        def handler(request):
            attempts["n"] += 1
            if attempts["n"] == 1:
                return httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
            return httpx.Response(200, json={"ok": True})

        with patch("hvac_owl.owl.slack_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            run(make_client(handler), lambda c: c.auth_test())

        assert sleep.await_args_list == [call(1.0)]

    def test_non_json_body_is_a_slack_error(self):
        handler = lambda request: httpx.Response(200, text="<html>Bad gateway</html>")

        with pytest.raises(SlackError) as exc_info:
            run(make_client(handler), lambda c: c.auth_test())
        assert "invalid JSON" in str(exc_info.value)

    def test_rate_limit_exhausted(self):
        handler = lambda request: httpx.Response(200, json={"ok": False, "error": "ratelimited"})

        with patch("hvac_owl.owl.slack_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(SlackRateLimitError):
                run(make_client(handler, max_retries=3), lambda c: c.auth_test())

        assert sleep.await_count == 2


class TestUsers:
    """Tests for user lookups and message enrichment."""

    def test_user_lookups_are_cached(self):
        lookups = []

        def handler(request):
            lookups.append(form(request)["user"])
            return httpx.Response(200, json={
                "ok": True,
                "user": {"name": "alice", "real_name": "Alice Smith", "profile": {"display_name": "ali"}},
            })

        messages = [
            {"user": "U1", "text": "one", "ts": "1.0"},
            {"user": "U1", "text": "two", "ts": "2.0"},
        ]

        async def enrich_twice(client):
            first = await client.enrich_messages(messages)
            await client.enrich_messages(messages)
            return first

        enriched = run(make_client(handler), enrich_twice)

        assert lookups == ["U1"]
        assert enriched[0]["username"] == "ali"
        assert enriched[1]["real_name"] == "Alice Smith"

    def test_failed_lookup_is_unknown(self):
        handler = lambda request: httpx.Response(200, json={"ok": False, "error": "user_not_found"})

        enriched = run(make_client(handler), lambda c: c.enrich_messages([{"user": "U9", "text": "x", "ts": "1.0"}]))

        assert enriched[0]["username"] == "Unknown"
        assert enriched[0]["real_name"] == "Unknown"

    def test_bot_messages_without_user(self):
        handler = lambda request: pytest.fail("no lookup expected")

        enriched = run(make_client(handler), lambda c: c.enrich_messages([{"text": "deploy done", "ts": "1.0"}]))

        assert enriched[0]["username"] == "Unknown User"


class TestHelpers:
    def test_list_channels_drops_invalid_entries(self):
        handler = lambda request: httpx.Response(200, json={
            "ok": True,
            "channels": [
                {"id": "C1", "name": "general", "purpose": {"value": "Chat"}},
                {"id": "C2"},
            ],
        })

        channels = run(make_client(handler), lambda c: c.list_channels())

        assert channels == [{"id": "C1", "name": "general", "purpose": "Chat"}]

    def test_channel_summary_reports_errors_inline(self):
        handler = lambda request: httpx.Response(200, json={"ok": False, "error": "not_in_channel"})

        summary = run(make_client(handler), lambda c: c.get_channel_summary("C1"))

        assert summary["id"] == "C1"
        assert summary["messages"] == []
        assert "not_in_channel" in summary["error"]

    def test_channel_summary_survives_non_json_body(self):
        handler = lambda request: httpx.Response(200, text="upstream proxy error")

        summary = run(make_client(handler), lambda c: c.get_channel_summary("C1"))

        assert summary["messages"] == []
        assert "invalid JSON" in summary["error"]

    def test_messages_after_a_known_ts(self):
        seen = []

        def handler(request):
            seen.append(form(request))
            return httpx.Response(200, json={"ok": True, "messages": []})

        run(make_client(handler), lambda c: c.get_channel_messages("C1", oldest=1700000000.0001))

        assert seen[0]["oldest"] == "1700000000.000100"
        assert seen[0]["inclusive"] == "false"

    def test_post_owl(self):
        posted = []

        def handler(request):
            posted.append(form(request))
            return httpx.Response(200, json={"ok": True})

        run(make_client(handler), lambda c: c.post_owl("C1"))

        assert posted == [{"channel": "C1", "text": ":owl:"}]
