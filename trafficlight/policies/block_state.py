"""Enforced block lifecycle.

Two states: unblocked and blocked. A block lasts
``block_duration_minutes`` and ends when its timer fires, when a
collaborator reports the countdown finished, or on manual reset.

At most one expiry timer is outstanding. The timer remembers the end
time it was scheduled for and does nothing if the block it belonged to
has since been cleared or replaced, so a stale timer can never end a
newer block. Timers do not survive a restart: ``restore()`` rebuilds
them from the persisted end time.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from trafficlight.models import BlockActivated, BlockDeactivated, OutboundEvent
from trafficlight.policies.models import BlockState, PolicyConfig
from trafficlight.storage import StateStore, StorageError
from trafficlight.storage.db import KEY_BLOCK_STATE, KEY_POLICY_CONFIG

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Publisher = Callable[[OutboundEvent], Awaitable[None]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def discard_event(event: OutboundEvent) -> None:
    return None


def state_from_persisted(
    record: Optional[dict[str, Any]],
    config: Optional[dict[str, Any]],
    defaults: Optional[PolicyConfig] = None,
) -> BlockState:
    """Build a BlockState from persisted records.

    Missing or malformed fields fall back to defaults; nothing here raises.
    """
    base = defaults or PolicyConfig()
    try:
        policy = base.merged(config or {})
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring invalid persisted policy config: {e}")
        policy = base

    record = record or {}
    end_time = None
    raw_end = record.get("block_end_time")
    if raw_end:
        try:
            end_time = datetime.fromisoformat(raw_end)
            if end_time.tzinfo is None:
                end_time = end_time.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable block end time: {raw_end!r}")

    try:
        count = max(0, int(record.get("consecutive_violation_count", 0)))
    except (TypeError, ValueError):
        count = 0

    return BlockState(block_end_time=end_time, consecutive_violation_count=count, config=policy)


class BlockStateMachine:
    """Owns BlockState and every mutation of it."""

    def __init__(
        self,
        state: Optional[BlockState] = None,
        store: Optional[StateStore] = None,
        publish: Optional[Publisher] = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the state machine.

        Args:
            state: Initial state (unblocked with default config if None)
            store: Where to persist state after each mutation (None = memory only)
            publish: Coroutine called with each outbound event
            clock: Returns the current aware UTC time
        """
        self.state = state or BlockState()
        self.store = store
        self.publish = publish or discard_event
        self.clock = clock
        # Called after every exit so context badges can be re-evaluated
        self.on_unblocked: Optional[Callable[[], Awaitable[None]]] = None
        # Called with the end time when the timer fires (default: expire())
        self.expiry_handler: Optional[Callable[[datetime], Awaitable[None]]] = None
        self._timer: Optional[asyncio.Task[None]] = None

    @property
    def is_blocked(self) -> bool:
        return self.state.is_blocked

    @property
    def config(self) -> PolicyConfig:
        return self.state.config

    def remaining(self) -> timedelta:
        """Time left in the current block (zero when unblocked)."""
        if self.state.block_end_time is None:
            return timedelta(0)
        return max(timedelta(0), self.state.block_end_time - self.clock())

    def status(self) -> dict[str, Any]:
        data = self.state.to_dict()
        data["threshold"] = self.state.config.violation_threshold
        data["enabled"] = self.state.config.enabled
        data["remaining_seconds"] = int(self.remaining().total_seconds())
        return data

    # -- lifecycle -----------------------------------------------------------

    async def restore(self) -> None:
        """Reload persisted state after a (re)start.

        A persisted block that is still running is resumed with a timer for
        the remaining time; one that ended while we were down is exited now.
        """
        record: dict[str, Any] = {}
        config: dict[str, Any] = {}
        if self.store is not None:
            try:
                stored = await self.store.get([KEY_BLOCK_STATE, KEY_POLICY_CONFIG])
                record = stored.get(KEY_BLOCK_STATE) or {}
                config = stored.get(KEY_POLICY_CONFIG) or {}
            except StorageError as e:
                logger.warning(f"Could not load block state, starting unblocked: {e}")

        self.state = state_from_persisted(record, config, self.state.config)

        if self.state.block_end_time is None:
            return

        if self.state.block_end_time > self.clock():
            logger.info(
                f"Resuming block until {self.state.block_end_time.isoformat()} "
                f"({int(self.remaining().total_seconds())}s left)"
            )
            self._schedule_expiry()
        else:
            logger.info("Block expired while not running")
            await self.exit_block(reason="restart")

    async def enter_block(self, trigger: str = "navigation") -> bool:
        """Start a block. No-op while already blocked.

        Args:
            trigger: "navigation" or "chat"; only changes the notification text

        Returns:
            True if a new block started
        """
        if self.state.is_blocked:
            logger.debug("enter_block ignored: already blocked")
            return False

        minutes = self.state.config.block_duration_minutes
        self.state.block_end_time = self.clock() + timedelta(minutes=minutes)
        logger.info(f"Block activated for {minutes} minutes ({trigger})")

        self._schedule_expiry()
        await self._save()

        if trigger == "chat":
            title = f"Chat Blocked - {self.state.config.violation_threshold} Red Violations"
            message = (
                f"AI chat access blocked for {minutes} minutes "
                "due to repeated inappropriate usage."
            )
        else:
            title = "AI Access Blocked"
            message = f"AI access blocked for {minutes} minutes due to repeated violations."

        await self.publish(BlockActivated(
            block_end_time=self.state.block_end_time,
            duration_minutes=minutes,
            title=title,
            message=message,
        ))
        return True

    async def exit_block(self, reason: str = "manual") -> bool:
        """End any block and clear the consecutive-violation counter.

        Idempotent: safe to call while unblocked.

        Args:
            reason: "expired", "manual", "signal" or "restart"

        Returns:
            True if a block was actually in effect
        """
        self._cancel_timer()

        was_blocked = self.state.is_blocked
        self.state.block_end_time = None
        self.state.consecutive_violation_count = 0
        await self._save()

        if was_blocked:
            logger.info(f"Block ended ({reason})")
            await self.publish(BlockDeactivated(reason=reason))

        if self.on_unblocked is not None:
            await self.on_unblocked()
        return was_blocked

    async def expire(self, end_time: datetime) -> bool:
        """End the block scheduled to finish at ``end_time``.

        Does nothing if that block has since been reset or replaced.
        """
        if self.state.block_end_time != end_time:
            logger.debug("Ignoring expiry of a block that is no longer current")
            return False
        return await self.exit_block(reason="expired")

    async def check_expiry(self) -> bool:
        """Exit a block whose end time has passed.

        Covers hosts where the timer could not run (e.g. short-lived CLI
        invocations). Returns True if a block was ended.
        """
        end_time = self.state.block_end_time
        if end_time is not None and end_time <= self.clock():
            return await self.exit_block(reason="expired")
        return False

    async def shutdown(self) -> None:
        """Cancel the pending timer without touching state."""
        timer = self._timer
        self._cancel_timer()
        if timer is not None:
            try:
                await timer
            except asyncio.CancelledError:
                pass

    # -- counters and config -------------------------------------------------

    async def record_violation(self) -> int:
        """Increment the consecutive-violation counter and persist it."""
        self.state.consecutive_violation_count += 1
        await self._save()
        return self.state.consecutive_violation_count

    async def clear_violations(self) -> None:
        """Zero the consecutive-violation counter if it is set."""
        if self.state.consecutive_violation_count == 0:
            return
        self.state.consecutive_violation_count = 0
        await self._save()

    async def set_config(self, config: PolicyConfig) -> None:
        """Replace the policy config. An active block keeps its end time."""
        self.state.config = config
        logger.info(
            f"Policy config: enabled={config.enabled} "
            f"threshold={config.violation_threshold} "
            f"duration={config.block_duration_minutes}m"
        )
        await self._save()

    # -- internals -----------------------------------------------------------

    def _schedule_expiry(self) -> None:
        end_time = self.state.block_end_time
        if end_time is None:
            return
        self._cancel_timer()
        delay = max(0.0, (end_time - self.clock()).total_seconds())
        self._timer = asyncio.get_running_loop().create_task(self._expire_after(delay, end_time))

    async def _expire_after(self, delay: float, end_time: datetime) -> None:
        await asyncio.sleep(delay)
        if self._timer is asyncio.current_task():
            self._timer = None
        if self.expiry_handler is not None:
            await self.expiry_handler(end_time)
        else:
            await self.expire(end_time)

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _save(self) -> None:
        if self.store is None:
            return
        try:
            await self.store.set({
                KEY_BLOCK_STATE: {
                    "is_blocked": self.state.is_blocked,
                    "block_end_time": (
                        self.state.block_end_time.isoformat()
                        if self.state.block_end_time else None
                    ),
                    "consecutive_violation_count": self.state.consecutive_violation_count,
                },
                KEY_POLICY_CONFIG: self.state.config.to_dict(),
            })
        except StorageError as e:
            logger.warning(f"Failed to persist block state, keeping in-memory state: {e}")
