"""Data models for site rules, policy config and block state."""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

from trafficlight.models import Tier

AI_WEBSITES = "ai_websites"
ACADEMIC_PLATFORMS = "academic_platforms"

# Tier assigned to rules of each category when the config does not say
CATEGORY_TIERS = {
    AI_WEBSITES: Tier.YELLOW,
    ACADEMIC_PLATFORMS: Tier.GREEN,
}


@dataclass(frozen=True)
class Rule:
    """A categorized site pattern.

    Attributes:
        name: Display name used in reasons (e.g., "ChatGPT")
        tier: Informational only. A navigation's tier depends on which
            categories matched, not on this field.
        pattern: Glob where ``*`` matches any sequence, matched against the full URL
    """

    name: str
    tier: Tier
    pattern: str

    def to_dict(self) -> dict:
        return {"name": self.name, "tier": self.tier.value, "pattern": self.pattern}

    @classmethod
    def from_dict(cls, data: dict, default_tier: Tier = Tier.YELLOW) -> "Rule":
        return cls(
            name=str(data.get("name") or data.get("pattern", "")),
            tier=Tier(data.get("tier", default_tier.value)),
            pattern=data.get("pattern", ""),
        )


# Category name -> ordered rules. Order is significant: first match wins.
RuleSet = dict[str, tuple[Rule, ...]]


@dataclass(frozen=True)
class PolicyConfig:
    """Block policy settings.

    Attributes:
        enabled: Whether violations can trigger a block at all
        violation_threshold: Violations needed before blocking (>= 1)
        block_duration_minutes: Length of a block (> 0)
    """

    enabled: bool = True
    violation_threshold: int = 5
    block_duration_minutes: int = 10

    def __post_init__(self) -> None:
        if not isinstance(self.enabled, bool):
            raise ValueError("enabled must be true or false")
        for name in ("violation_threshold", "block_duration_minutes"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
        if self.violation_threshold < 1:
            raise ValueError("violation_threshold must be >= 1")
        if self.block_duration_minutes <= 0:
            raise ValueError("block_duration_minutes must be > 0")

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "violation_threshold": self.violation_threshold,
            "block_duration_minutes": self.block_duration_minutes,
        }

    def merged(self, values: dict[str, Any]) -> "PolicyConfig":
        """Return a copy with known fields from ``values`` applied.

        Unknown keys are ignored; missing keys keep the current value.

        Raises:
            ValueError: If a merged value has the wrong type or is out of range
        """
        known = {f.name for f in fields(self)}
        current = self.to_dict()
        for key, value in values.items():
            if key in known and value is not None:
                current[key] = value
        for key in ("violation_threshold", "block_duration_minutes"):
            value = current[key]
            if isinstance(value, float) and value.is_integer():
                current[key] = int(value)
        return PolicyConfig(**current)


@dataclass
class BlockState:
    """Installation-wide block state.

    Invariant: ``is_blocked == (block_end_time is not None)``.
    """

    block_end_time: Optional[datetime] = None
    consecutive_violation_count: int = 0
    config: PolicyConfig = field(default_factory=PolicyConfig)

    @property
    def is_blocked(self) -> bool:
        return self.block_end_time is not None

    def to_dict(self) -> dict:
        return {
            "is_blocked": self.is_blocked,
            "block_end_time": self.block_end_time.isoformat() if self.block_end_time else None,
            "consecutive_violation_count": self.consecutive_violation_count,
        }
