"""Rolling-window counts of classified messages per tier.

Each tier keeps the timestamps of its events. Expiry is lazy: stale
timestamps are dropped whenever a tier is counted, never by a sweeper.
"""

from datetime import datetime, timedelta
from typing import Optional

from trafficlight.models import Tier

RETENTION = timedelta(days=30)


class ViolationTracker:
    """Per-tier event windows with a fixed retention period."""

    def __init__(
        self,
        timestamps: Optional[dict[Tier, list[datetime]]] = None,
        retention: timedelta = RETENTION,
    ) -> None:
        self.retention = retention
        self._windows: dict[Tier, list[datetime]] = {tier: [] for tier in Tier}
        for tier, stamps in (timestamps or {}).items():
            self._windows[tier] = sorted(stamps)

    def record(self, tier: Tier, timestamp: datetime) -> None:
        """Append an event timestamp to a tier's window."""
        window = self._windows[tier]
        if window and timestamp < window[-1]:
            # Out-of-order arrival; keep the window ordered
            window.append(timestamp)
            window.sort()
        else:
            window.append(timestamp)

    def count(self, tier: Tier, now: datetime) -> int:
        """Drop expired timestamps for a tier and return how many remain.

        A timestamp expires once ``timestamp <= now - retention``.
        """
        cutoff = now - self.retention
        window = self._windows[tier]
        keep_from = 0
        while keep_from < len(window) and window[keep_from] <= cutoff:
            keep_from += 1
        if keep_from:
            del window[:keep_from]
        return len(window)

    def counts(self, now: datetime) -> dict[Tier, int]:
        """Count every tier (purging each)."""
        return {tier: self.count(tier, now) for tier in Tier}

    def reset(self, tier: Tier) -> None:
        """Clear a tier's window entirely."""
        self._windows[tier] = []

    def reset_all(self) -> None:
        for tier in Tier:
            self.reset(tier)

    def timestamps(self, tier: Tier) -> list[datetime]:
        """Stored timestamps for a tier, as of the last purge."""
        return list(self._windows[tier])

    # -- persistence helpers -------------------------------------------------

    def to_dict(self) -> dict[str, list[str]]:
        return {tier.value: [ts.isoformat() for ts in window] for tier, window in self._windows.items()}

    @classmethod
    def from_dict(cls, data: Optional[dict], retention: timedelta = RETENTION) -> "ViolationTracker":
        """Rebuild from the persisted ``{tier: [iso timestamps]}`` layout.

        Unknown tiers and unparseable timestamps are skipped.
        """
        timestamps: dict[Tier, list[datetime]] = {}
        for key, stamps in (data or {}).items():
            try:
                tier = Tier(key)
            except ValueError:
                continue
            parsed = []
            for raw in stamps or []:
                try:
                    parsed.append(datetime.fromisoformat(raw))
                except (TypeError, ValueError):
                    continue
            timestamps[tier] = parsed
        return cls(timestamps, retention)
