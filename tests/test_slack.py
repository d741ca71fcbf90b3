"""Tests for the Slack notifier."""

from datetime import datetime, timezone

import httpx
import pytest

from trafficlight.models import BlockActivated, BlockDeactivated, CountsUpdated, StatusChanged, Tier
from trafficlight.notifiers.slack import SlackConfig, SlackNotifier

WEBHOOK = "https://hooks.slack.com/services/T000/B000/XXXX"


def make_notifier(status_code: int = 200, **config: object) -> tuple[SlackNotifier, list[httpx.Request]]:
    sent: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(status_code, text="ok")

    notifier = SlackNotifier(SlackConfig(webhook_url=WEBHOOK, **config))  # type: ignore[arg-type]
    notifier._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return notifier, sent


class TestShouldNotify:
    def test_block_events_always(self) -> None:
        notifier, _ = make_notifier(notify_on_red=False)
        end = datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc)
        assert notifier._should_notify(BlockActivated(block_end_time=end, duration_minutes=10))
        assert notifier._should_notify(BlockDeactivated(reason="manual"))

    def test_tier_preferences(self) -> None:
        notifier, _ = make_notifier()
        assert notifier._should_notify(StatusChanged("1", Tier.RED, "Using ChatGPT on Canvas"))
        assert not notifier._should_notify(StatusChanged("1", Tier.YELLOW, "Using ChatGPT"))
        assert not notifier._should_notify(StatusChanged("1", Tier.GREEN, "No AI usage detected"))

    def test_dedup_per_context_and_tier(self) -> None:
        notifier, _ = make_notifier()
        event = StatusChanged("1", Tier.RED, "Using ChatGPT on Canvas")
        assert notifier._should_notify(event)
        assert not notifier._should_notify(event)
        assert notifier._should_notify(StatusChanged("2", Tier.RED, "Using ChatGPT on Canvas"))

    def test_counts_not_forwarded(self) -> None:
        notifier, _ = make_notifier()
        assert not notifier._should_notify(CountsUpdated("1", Tier.RED, {"red": 1}))


class TestSend:
    @pytest.mark.asyncio
    async def test_posts_attachment(self) -> None:
        notifier, sent = make_notifier()
        end = datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc)

        assert await notifier.send_event(BlockActivated(block_end_time=end, duration_minutes=10, title="AI Access Blocked"))
        await notifier.close()

        assert len(sent) == 1
        assert str(sent[0].url) == WEBHOOK
        body = sent[0].read().decode()
        assert "AI Access Blocked" in body
        assert "2026-03-02 09:10 UTC" in body

    @pytest.mark.asyncio
    async def test_http_failure_returns_false(self) -> None:
        notifier, sent = make_notifier(status_code=500)
        assert not await notifier.send_event(BlockDeactivated(reason="expired"))
        assert len(sent) == 1
        await notifier.close()

    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self) -> None:
        notifier, sent = make_notifier(enabled=False)
        assert not await notifier.send_event(BlockDeactivated(reason="expired"))
        assert sent == []
        await notifier.close()
