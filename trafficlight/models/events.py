"""Status tiers, per-context status and outbound events.

Outbound events are what the policy core tells the outside world: badge
updates, block overlays, redirects and counter refreshes. They form a
closed set; consumers dispatch on the concrete class.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union


class Tier(str, Enum):
    """Traffic light status of a context."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


@dataclass
class ContextStatus:
    """Current status of one monitored context (e.g. a browser tab).

    Rebuilt on every navigation evaluation, never persisted.
    """

    context_id: str
    tier: Tier
    reason: str


@dataclass
class ActivityEntry:
    """One line of the capped activity log."""

    timestamp: datetime
    context_id: str
    url: str
    tier: Tier
    reason: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "context_id": self.context_id,
            "url": self.url,
            "tier": self.tier.value,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityEntry":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            context_id=str(data.get("context_id", "")),
            url=data.get("url", ""),
            tier=Tier(data.get("tier", Tier.GREEN.value)),
            reason=data.get("reason", ""),
        )


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusChanged:
    """A context's traffic light changed; the badge should follow."""

    context_id: str
    tier: Tier
    reason: str

    def to_dict(self) -> dict:
        return {
            "type": "StatusChanged",
            "context_id": self.context_id,
            "tier": self.tier.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class BlockActivated:
    """AI access is blocked until ``block_end_time``."""

    block_end_time: datetime
    duration_minutes: int
    title: str = "AI Access Blocked"
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "type": "BlockActivated",
            "block_end_time": self.block_end_time.isoformat(),
            "duration_minutes": self.duration_minutes,
            "title": self.title,
            "message": self.message,
        }


@dataclass(frozen=True)
class BlockDeactivated:
    """The block is over.

    Attributes:
        reason: "expired", "manual", "signal" or "restart"
    """

    reason: str = "expired"
    title: str = "AI Access Restored"
    message: str = "AI access has been restored. Please use AI tools responsibly."

    def to_dict(self) -> dict:
        return {
            "type": "BlockDeactivated",
            "reason": self.reason,
            "title": self.title,
            "message": self.message,
        }


@dataclass(frozen=True)
class RedirectRequested:
    """Send the context to the block page."""

    context_id: str

    def to_dict(self) -> dict:
        return {"type": "RedirectRequested", "context_id": self.context_id}


@dataclass(frozen=True)
class CountsUpdated:
    """Rolling-window message counts changed after a classified message."""

    context_id: str
    tier: Tier
    counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = "CountsUpdated"
        data["tier"] = self.tier.value
        return data


OutboundEvent = Union[
    StatusChanged,
    BlockActivated,
    BlockDeactivated,
    RedirectRequested,
    CountsUpdated,
]
