"""Slack webhook notifier for status and block events."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx
from cachetools import TTLCache

from trafficlight.models import (
    BlockActivated,
    BlockDeactivated,
    OutboundEvent,
    StatusChanged,
    Tier,
)

logger = logging.getLogger(__name__)

# Slack color codes by tier
TIER_COLORS = {
    Tier.GREEN: "#10B981",
    Tier.YELLOW: "#FBBF24",
    Tier.RED: "#DC2626",
}

BLOCK_COLOR = "#6B7280"  # gray

DEFAULT_DEDUP_WINDOW = 600  # 10 minutes
DEFAULT_DEDUP_CACHE_SIZE = 1000


@dataclass
class SlackConfig:
    """Configuration for Slack notifier."""
    webhook_url: str
    notify_on_red: bool = True
    notify_on_yellow: bool = False
    enabled: bool = True
    dedup_window: int = DEFAULT_DEDUP_WINDOW  # seconds


class SlackNotifier:
    """Async Slack webhook notifier.

    Subscribes to the event router. Block events are always forwarded;
    status changes only for the tiers enabled in the config, and at most
    once per (context, tier) within the dedup window.
    """

    def __init__(self, config: SlackConfig) -> None:
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None
        self._recent: TTLCache[str, bool] = TTLCache(
            maxsize=DEFAULT_DEDUP_CACHE_SIZE,
            ttl=config.dedup_window,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __call__(self, event: OutboundEvent) -> None:
        await self.send_event(event)

    def _should_notify(self, event: OutboundEvent) -> bool:
        """Check if the event is worth a Slack message."""
        if isinstance(event, (BlockActivated, BlockDeactivated)):
            return True
        if isinstance(event, StatusChanged):
            if event.tier == Tier.RED:
                wanted = self.config.notify_on_red
            elif event.tier == Tier.YELLOW:
                wanted = self.config.notify_on_yellow
            else:
                wanted = False
            if not wanted:
                return False
            key = f"{event.context_id}:{event.tier.value}"
            if key in self._recent:
                return False
            self._recent[key] = True
            return True
        return False

    def _format_message(self, event: OutboundEvent) -> dict:
        """Format event as Slack message with attachment."""
        now = int(datetime.now(timezone.utc).timestamp())

        if isinstance(event, BlockActivated):
            attachment = {
                "color": BLOCK_COLOR,
                "title": event.title,
                "text": event.message,
                "fields": [
                    {"title": "Duration", "value": f"{event.duration_minutes} min", "short": True},
                    {
                        "title": "Until",
                        "value": event.block_end_time.strftime("%Y-%m-%d %H:%M UTC"),
                        "short": True,
                    },
                ],
            }
        elif isinstance(event, BlockDeactivated):
            attachment = {
                "color": TIER_COLORS[Tier.GREEN],
                "title": event.title,
                "text": event.message,
                "fields": [{"title": "Reason", "value": event.reason, "short": True}],
            }
        else:
            assert isinstance(event, StatusChanged)
            attachment = {
                "color": TIER_COLORS.get(event.tier, "#808080"),
                "title": f"[{event.tier.value.upper()}] {event.reason}",
                "text": f"Context {event.context_id}",
                "fields": [{"title": "Tier", "value": event.tier.value.upper(), "short": True}],
            }

        attachment["footer"] = "trafficlight"
        attachment["ts"] = now
        return {"attachments": [attachment]}

    async def send_event(self, event: OutboundEvent) -> bool:
        """Send event to Slack. Returns True if sent successfully."""
        if not self.config.enabled:
            return False

        if not self._should_notify(event):
            logger.debug(f"Skipping Slack notification for {type(event).__name__}")
            return False

        try:
            client = await self._get_client()
            payload = self._format_message(event)

            resp = await client.post(self.config.webhook_url, json=payload)

            if resp.status_code == 200:
                logger.debug(f"Slack notification sent for {type(event).__name__}")
                return True
            else:
                logger.warning(f"Slack webhook failed: {resp.status_code} - {resp.text}")
                return False

        except httpx.TimeoutException:
            logger.warning("Slack webhook timeout")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Slack webhook error: {e}")
            return False
