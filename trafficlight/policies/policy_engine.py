"""Policy engine: turns navigation and message events into status and blocks.

Navigation path (per context):
1. While blocked, AI-tool URLs are redirected to the block page
2. Match the URL against AI-tool and academic-platform rules
3. AI tool on an academic platform -> Red, counts toward the
   consecutive-violation threshold; reaching it starts a block
4. AI tool alone -> Yellow, anything else -> Green; both clear the counter
5. Publish the new context status

Message path (installation-wide):
1. Record the classified message in the rolling 30-day window
2. Publish updated counts
3. A Red message that brings the Red count to the threshold starts a block

The two counters answer different questions (a streak in the current
browsing session vs. chat misuse over a month) and are kept separate.
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Optional

from trafficlight.models import (
    ActivityEntry,
    ContextStatus,
    CountsUpdated,
    RedirectRequested,
    StatusChanged,
    Tier,
)
from trafficlight.policies.block_state import BlockStateMachine, Clock, Publisher, discard_event
from trafficlight.policies.message_classifier import MessageClassifier, detect_grading_context
from trafficlight.policies.models import ACADEMIC_PLATFORMS, AI_WEBSITES, PolicyConfig, Rule, RuleSet
from trafficlight.policies.rule_matcher import build_rule_set, classify_url
from trafficlight.policies.violation_tracker import ViolationTracker
from trafficlight.storage import StateStore, StorageError
from trafficlight.storage.db import (
    KEY_COLOR_COUNTERS,
    KEY_COUNTER_TIMESTAMPS,
    KEY_RULE_OVERRIDES,
)

logger = logging.getLogger(__name__)

REASON_NO_AI = "No AI usage detected"
REASON_GRADING_PAGE = "AI usage detected on grading/submission page"


def evaluate_url(url: str, rules: RuleSet) -> tuple[Tier, str, Optional[Rule], Optional[Rule]]:
    """Classify a URL against the AI-tool and academic-platform rules.

    Returns:
        Tuple of (tier, reason, ai_rule, platform_rule)
    """
    ai_rule = classify_url(url, rules.get(AI_WEBSITES, ()))
    platform_rule = classify_url(url, rules.get(ACADEMIC_PLATFORMS, ()))

    if ai_rule and platform_rule:
        return Tier.RED, f"Using {ai_rule.name} on {platform_rule.name}", ai_rule, platform_rule
    if ai_rule:
        return Tier.YELLOW, f"Using {ai_rule.name}", ai_rule, None
    return Tier.GREEN, REASON_NO_AI, None, platform_rule


class PolicyEngine:
    """Combines rule matching, message classification and violation tracking.

    All state mutation goes through this object and its BlockStateMachine;
    callers must process one event at a time (the event router does).
    """

    def __init__(
        self,
        block: BlockStateMachine,
        classifier: Optional[MessageClassifier] = None,
        tracker: Optional[ViolationTracker] = None,
        rule_overrides: Optional[Mapping[str, Iterable[dict]]] = None,
        store: Optional[StateStore] = None,
        publish: Optional[Publisher] = None,
        grading_keywords: Optional[list[str]] = None,
        default_policy: Optional[PolicyConfig] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            block: Block state machine (shares clock and store with the engine)
            classifier: Message classifier (built-in keyword lists if None)
            tracker: Rolling message window (empty if None)
            rule_overrides: Configured per-category rule overrides
            store: Persistence (None = memory only)
            publish: Coroutine receiving outbound events
            grading_keywords: Keywords that mark a grading/submission page
            default_policy: Policy restored by reset_settings (config file values)
        """
        self.block = block
        self.classifier = classifier or MessageClassifier()
        self.tracker = tracker or ViolationTracker()
        self.store = store
        self.publish = publish or discard_event
        self.grading_keywords = grading_keywords
        self.default_policy = default_policy or PolicyConfig()

        self._configured_overrides: dict[str, list[dict]] = {
            k: list(v) for k, v in (rule_overrides or {}).items()
        }
        self._stored_overrides: dict[str, list[dict]] = {}
        self.rules: RuleSet = build_rule_set(self._configured_overrides)

        self._contexts: dict[str, ContextStatus] = {}
        self._context_urls: dict[str, str] = {}

        self.block.on_unblocked = self.refresh_all_contexts

    @property
    def clock(self) -> Clock:
        return self.block.clock

    @property
    def config(self) -> PolicyConfig:
        return self.block.config

    async def start(self) -> None:
        """Load persisted counters and rule overrides, then restore the block."""
        if self.store is not None:
            try:
                stored = await self.store.get([KEY_COUNTER_TIMESTAMPS, KEY_RULE_OVERRIDES])
            except StorageError as e:
                logger.warning(f"Could not load persisted state, using defaults: {e}")
                stored = {}

            if KEY_COUNTER_TIMESTAMPS in stored:
                self.tracker = ViolationTracker.from_dict(
                    stored[KEY_COUNTER_TIMESTAMPS], self.tracker.retention
                )
            overrides = stored.get(KEY_RULE_OVERRIDES)
            if isinstance(overrides, dict):
                self._stored_overrides = overrides
                self._rebuild_rules()

        await self.block.restore()

    async def shutdown(self) -> None:
        await self.block.shutdown()

    # -- navigation path -----------------------------------------------------

    async def evaluate_navigation(self, context_id: str, url: str) -> Optional[ContextStatus]:
        """Run the navigation path for one context.

        Returns:
            New ContextStatus, or None if the navigation was redirected or
            started a block
        """
        await self.block.check_expiry()
        self._context_urls[context_id] = url
        config = self.config

        if self.block.is_blocked and config.enabled:
            if classify_url(url, self.rules.get(AI_WEBSITES, ())):
                logger.info(f"Context {context_id}: redirecting AI site during block")
                await self.publish(RedirectRequested(context_id=context_id))
                return None

        tier, reason, _ai, _platform = evaluate_url(url, self.rules)
        logger.debug(f"Context {context_id}: {tier.value} - {reason}")

        if tier == Tier.RED:
            if config.enabled:
                count = await self.block.record_violation()
                logger.info(
                    f"Violation {count}/{config.violation_threshold} in context {context_id}: {reason}"
                )
                if count >= config.violation_threshold:
                    await self._log_activity(context_id, url, tier, reason)
                    await self.block.enter_block(trigger="navigation")
                    return None
        else:
            await self.block.clear_violations()

        return await self._set_status(context_id, url, tier, reason)

    async def report_page_context(
        self,
        context_id: str,
        url: str,
        has_grading_keywords: bool = False,
        page_text: Optional[str] = None,
    ) -> Optional[ContextStatus]:
        """Escalate an AI-tool page that looks like a grading or submission page.

        Does not touch any counter.
        """
        if page_text is not None:
            has_grading_keywords = detect_grading_context(page_text, self.grading_keywords)

        if not has_grading_keywords:
            return self._contexts.get(context_id)
        if not classify_url(url, self.rules.get(AI_WEBSITES, ())):
            return self._contexts.get(context_id)

        self._context_urls.setdefault(context_id, url)
        return await self._set_status(context_id, url, Tier.RED, REASON_GRADING_PAGE)

    async def refresh_all_contexts(self) -> None:
        """Re-derive every known context's status from its last URL.

        Only refreshes badges: counters are left alone.
        """
        for context_id, url in list(self._context_urls.items()):
            if self.block.is_blocked and classify_url(url, self.rules.get(AI_WEBSITES, ())):
                continue
            tier, reason, _ai, _platform = evaluate_url(url, self.rules)
            status = ContextStatus(context_id=context_id, tier=tier, reason=reason)
            self._contexts[context_id] = status
            await self.publish(StatusChanged(context_id=context_id, tier=tier, reason=reason))

    def get_status(self, context_id: str) -> ContextStatus:
        """Current status of a context (Green if never evaluated)."""
        return self._contexts.get(
            context_id,
            ContextStatus(context_id=context_id, tier=Tier.GREEN, reason=REASON_NO_AI),
        )

    def known_contexts(self) -> list[str]:
        return list(self._context_urls)

    async def close_context(self, context_id: str) -> None:
        """Forget a closed context."""
        self._contexts.pop(context_id, None)
        self._context_urls.pop(context_id, None)

    # -- message path --------------------------------------------------------

    async def classify_and_record(
        self,
        context_id: str,
        text: str,
        timestamp: Optional[datetime] = None,
        platform: str = "",
    ) -> Tier:
        """Classify a captured message and run the message path."""
        tier, keyword = self.classifier.match(text)
        logger.debug(
            f"Message on {platform or 'unknown platform'} classified {tier.value}"
            + (f" (keyword '{keyword}')" if keyword else " (default)")
        )
        await self.record_message(context_id, tier, timestamp or self.clock(), text, platform)
        return tier

    async def record_message(
        self,
        context_id: str,
        tier: Tier,
        timestamp: datetime,
        text: str = "",
        platform: str = "",
    ) -> dict[Tier, int]:
        """Record an already-classified message.

        Returns:
            Window counts per tier after recording
        """
        await self.block.check_expiry()

        self.tracker.record(tier, timestamp)
        counts = self.tracker.counts(self.clock())
        await self._save_counters(counts)

        snippet = text[:50]
        await self._log_activity(
            context_id,
            platform or "AI Chat",
            tier,
            f'{tier.value.upper()} message detected: "{snippet}..."',
        )

        await self.publish(CountsUpdated(
            context_id=context_id,
            tier=tier,
            counts={t.value: n for t, n in counts.items()},
        ))

        config = self.config
        if (
            tier == Tier.RED
            and counts[Tier.RED] >= config.violation_threshold
            and config.enabled
            and not self.block.is_blocked
        ):
            logger.info(f"Red message count {counts[Tier.RED]} reached threshold")
            await self.block.enter_block(trigger="chat")

        return counts

    def violation_counts(self) -> dict[str, int]:
        """Window counts per tier as of now."""
        return {tier.value: n for tier, n in self.tracker.counts(self.clock()).items()}

    # -- commands ------------------------------------------------------------

    async def reset_block(self) -> None:
        """Manual reset: end any block and clear the Red message window.

        Without clearing the window the next Red message would block again
        immediately.
        """
        self.tracker.reset(Tier.RED)
        await self._save_counters(self.tracker.counts(self.clock()))
        await self.block.exit_block(reason="manual")

    async def block_ended(self) -> None:
        """A collaborator reported that its block countdown finished."""
        await self.block.exit_block(reason="signal")

    async def reconfigure_policy(self, values: Mapping[str, Any]) -> PolicyConfig:
        """Apply new policy values atomically.

        Raises:
            ValueError: If the resulting config is invalid (nothing changes)
        """
        new_config = self.config.merged(dict(values))
        await self.block.set_config(new_config)
        return new_config

    async def reconfigure_rules(self, overrides: Mapping[str, Iterable[dict]]) -> RuleSet:
        """Replace user rule overrides and persist them."""
        self._stored_overrides = {k: list(v) for k, v in overrides.items()}
        self._rebuild_rules()
        if self.store is not None:
            try:
                await self.store.set({KEY_RULE_OVERRIDES: self._stored_overrides})
            except StorageError as e:
                logger.warning(f"Failed to persist rule overrides: {e}")
        return self.rules

    async def reload_rules(self) -> RuleSet:
        """Rebuild rules from built-ins, configured and persisted overrides."""
        if self.store is not None:
            try:
                stored = await self.store.get([KEY_RULE_OVERRIDES])
                overrides = stored.get(KEY_RULE_OVERRIDES)
                if isinstance(overrides, dict):
                    self._stored_overrides = overrides
            except StorageError as e:
                logger.warning(f"Could not reload rule overrides: {e}")
        self._rebuild_rules()
        return self.rules

    async def reset_settings(self) -> PolicyConfig:
        """Forget everything stored and go back to the configured defaults.

        Clears persisted state and the activity log, empties the message
        windows, drops stored rule overrides and ends any block.
        """
        if self.store is not None:
            try:
                await self.store.clear()
            except StorageError as e:
                logger.warning(f"Failed to clear stored state: {e}")

        self.tracker.reset_all()
        await self._save_counters(self.tracker.counts(self.clock()))
        self._stored_overrides = {}
        self._rebuild_rules()

        await self.block.set_config(self.default_policy)
        await self.block.exit_block(reason="manual")
        logger.info("Settings reset to defaults")
        return self.config

    async def activity_log(self, limit: int = 50) -> list[ActivityEntry]:
        if self.store is None:
            return []
        try:
            return await self.store.get_activity(limit)
        except StorageError as e:
            logger.warning(f"Could not read activity log: {e}")
            return []

    # -- internals -----------------------------------------------------------

    def _rebuild_rules(self) -> None:
        overrides = dict(self._configured_overrides)
        overrides.update(self._stored_overrides)
        self.rules = build_rule_set(overrides)
        logger.info(
            "Rules loaded: "
            + ", ".join(f"{category}={len(rules)}" for category, rules in self.rules.items())
        )

    async def _set_status(self, context_id: str, url: str, tier: Tier, reason: str) -> ContextStatus:
        status = ContextStatus(context_id=context_id, tier=tier, reason=reason)
        self._contexts[context_id] = status
        await self.publish(StatusChanged(context_id=context_id, tier=tier, reason=reason))
        await self._log_activity(context_id, url, tier, reason)
        return status

    async def _save_counters(self, counts: dict[Tier, int]) -> None:
        if self.store is None:
            return
        try:
            await self.store.set({
                KEY_COLOR_COUNTERS: {t.value: n for t, n in counts.items()},
                KEY_COUNTER_TIMESTAMPS: self.tracker.to_dict(),
            })
        except StorageError as e:
            logger.warning(f"Failed to persist message counters: {e}")

    async def _log_activity(self, context_id: str, url: str, tier: Tier, reason: str) -> None:
        if self.store is None:
            return
        entry = ActivityEntry(
            timestamp=self.clock(),
            context_id=context_id,
            url=url,
            tier=tier,
            reason=reason,
        )
        try:
            await self.store.append_activity(entry)
        except StorageError as e:
            logger.warning(f"Failed to append activity log: {e}")
