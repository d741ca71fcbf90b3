"""Event router: the boundary between collaborators and the policy core.

Inbound commands are dispatched one at a time - each runs to completion
before the next starts - so the policy core never sees interleaved
mutations. Outbound events fan out to subscribers; delivery is
best-effort and a failing subscriber never affects the others or the
command that produced the event.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Optional, Union

from trafficlight.config import Config
from trafficlight.models import (
    BlockEnded,
    ClassifyAndRecord,
    CloseContext,
    Command,
    EvaluateNavigation,
    GetActivityLog,
    GetBlockStatus,
    GetStatus,
    GetViolationCounts,
    OutboundEvent,
    ReconfigurePolicy,
    ReconfigureRules,
    ReloadRules,
    ReportPageContext,
    ResetBlock,
    ResetSettings,
    parse_command,
)
from trafficlight.policies.block_state import BlockStateMachine, Clock, utc_now
from trafficlight.policies.message_classifier import MessageClassifier
from trafficlight.policies.models import BlockState
from trafficlight.policies.policy_engine import PolicyEngine
from trafficlight.policies.rule_matcher import rule_set_to_dicts
from trafficlight.storage import StateStore

logger = logging.getLogger(__name__)

EventHandler = Callable[[OutboundEvent], Union[Awaitable[None], None]]


class EventRouter:
    """Dispatches inbound commands and fans out outbound events."""

    def __init__(self, engine: Optional[PolicyEngine] = None) -> None:
        self.engine = engine
        self._subscribers: list[EventHandler] = []
        self._lock = asyncio.Lock()

    def subscribe(self, handler: EventHandler) -> None:
        """Register a consumer of outbound events (sync or async callable)."""
        self._subscribers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    async def publish(self, event: OutboundEvent) -> None:
        """Deliver an event to every subscriber, swallowing delivery failures."""
        for handler in list(self._subscribers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Dropped {type(event).__name__} for {handler!r}: {e}")

    async def handle_payload(self, payload: Any) -> dict[str, Any]:
        """Parse a wire command and dispatch it.

        Never raises for bad input; errors come back as ``{"ok": False}``.
        """
        try:
            command = parse_command(payload)
        except (TypeError, ValueError) as e:
            logger.debug(f"Rejected command {payload!r}: {e}")
            return {"ok": False, "error": str(e)}

        try:
            return await self.dispatch(command)
        except (TypeError, ValueError) as e:
            return {"ok": False, "error": str(e)}

    async def dispatch(self, command: Command) -> dict[str, Any]:
        """Run one command to completion and return its JSON-able response."""
        if self.engine is None:
            raise RuntimeError("EventRouter has no engine attached")

        async with self._lock:
            return await self._dispatch(self.engine, command)

    async def expire_block(self, end_time: datetime) -> None:
        """Timer callback: end a block under the same lock as commands."""
        if self.engine is None:
            return
        async with self._lock:
            await self.engine.block.expire(end_time)

    async def _dispatch(self, engine: PolicyEngine, command: Command) -> dict[str, Any]:
        match command:
            case EvaluateNavigation(context_id=context_id, url=url):
                status = await engine.evaluate_navigation(context_id, url)
                return {
                    "ok": True,
                    "tier": status.tier.value if status else None,
                    "reason": status.reason if status else None,
                    "is_blocked": engine.block.is_blocked,
                }

            case ClassifyAndRecord(context_id=context_id, text=text, timestamp=timestamp, platform=platform):
                tier = await engine.classify_and_record(context_id, text, timestamp, platform)
                return {
                    "ok": True,
                    "tier": tier.value,
                    "counts": engine.violation_counts(),
                    "is_blocked": engine.block.is_blocked,
                }

            case ReportPageContext(
                context_id=context_id,
                url=url,
                has_grading_keywords=has_grading,
                page_text=page_text,
            ):
                status = await engine.report_page_context(context_id, url, has_grading, page_text)
                return {"ok": True, "tier": status.tier.value if status else None}

            case GetStatus(context_id=context_id):
                status = engine.get_status(context_id)
                return {"ok": True, "status": status.tier.value, "reason": status.reason}

            case GetBlockStatus():
                await engine.block.check_expiry()
                return {"ok": True, **engine.block.status()}

            case GetViolationCounts():
                return {"ok": True, "counts": engine.violation_counts()}

            case GetActivityLog(limit=limit):
                entries = await engine.activity_log(limit)
                return {"ok": True, "log": [entry.to_dict() for entry in entries]}

            case ResetBlock():
                await engine.reset_block()
                return {"ok": True}

            case BlockEnded():
                await engine.block_ended()
                return {"ok": True}

            case ReconfigureRules(overrides=overrides):
                rules = await engine.reconfigure_rules(overrides)
                return {"ok": True, "rules": rule_set_to_dicts(rules)}

            case ReconfigurePolicy(values=values):
                config = await engine.reconfigure_policy(values)
                return {"ok": True, "config": config.to_dict()}

            case ReloadRules():
                rules = await engine.reload_rules()
                return {"ok": True, "rules": rule_set_to_dicts(rules)}

            case ResetSettings():
                config = await engine.reset_settings()
                return {"ok": True, "config": config.to_dict(), "rules": rule_set_to_dicts(engine.rules)}

            case CloseContext(context_id=context_id):
                await engine.close_context(context_id)
                return {"ok": True}

            case _:
                raise ValueError(f"Unhandled command: {type(command).__name__}")


def create_router(
    config: Config,
    store: Optional[StateStore] = None,
    clock: Clock = utc_now,
) -> EventRouter:
    """Wire a router, policy engine and block state machine from config.

    Call ``await router.engine.start()`` before dispatching to restore
    persisted state.
    """
    policy = config.policy()
    router = EventRouter()
    block = BlockStateMachine(
        state=BlockState(config=policy),
        store=store,
        publish=router.publish,
        clock=clock,
    )
    router.engine = PolicyEngine(
        block,
        classifier=MessageClassifier.from_config(config.keywords()),
        rule_overrides=config.rule_overrides,
        store=store,
        publish=router.publish,
        grading_keywords=config.grading_keywords,
        default_policy=policy,
    )
    block.expiry_handler = router.expire_block
    return router
