"""Tests for the policy engine: navigation path, message path and commands."""

from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from conftest import (
    AI_URL,
    PLAIN_URL,
    PLATFORM_URL,
    RED_URL,
    START,
    TEST_RULES,
    EventRecorder,
    FakeClock,
)
from trafficlight.models import (
    BlockActivated,
    BlockDeactivated,
    CountsUpdated,
    RedirectRequested,
    StatusChanged,
    Tier,
)
from trafficlight.policies.block_state import BlockStateMachine
from trafficlight.policies.models import AI_WEBSITES, BlockState, PolicyConfig
from trafficlight.policies.policy_engine import (
    REASON_GRADING_PAGE,
    REASON_NO_AI,
    PolicyEngine,
    evaluate_url,
)
from trafficlight.policies.rule_matcher import build_rule_set
from trafficlight.storage import StateStore, StorageError

RED_TEXT = "please write my essay about tides"


async def make_engine(
    clock: FakeClock,
    recorder: EventRecorder,
    store: StateStore | None = None,
    **config: Any,
) -> PolicyEngine:
    block = BlockStateMachine(
        state=BlockState(config=PolicyConfig(**config)),
        store=store,
        publish=recorder,
        clock=clock,
    )
    engine = PolicyEngine(block, rule_overrides=TEST_RULES, store=store, publish=recorder)
    await engine.start()
    return engine


class FailingStore(StateStore):
    """A store whose every operation fails."""

    def __init__(self) -> None:
        super().__init__(Path(":memory:"))

    async def _run(self, func: Any, *args: Any) -> Any:
        raise StorageError("disk unavailable")


class TestEvaluateUrl:
    def test_tiers(self) -> None:
        rules = build_rule_set(TEST_RULES)
        assert evaluate_url(AI_URL, rules)[:2] == (Tier.YELLOW, "Using ChatGPT")
        assert evaluate_url(RED_URL, rules)[:2] == (Tier.RED, "Using ChatGPT on Canvas")
        assert evaluate_url(PLATFORM_URL, rules)[:2] == (Tier.GREEN, REASON_NO_AI)
        assert evaluate_url(PLAIN_URL, rules)[:2] == (Tier.GREEN, REASON_NO_AI)

    def test_rule_tier_does_not_change_result(self) -> None:
        rules = build_rule_set({
            AI_WEBSITES: [{"name": "ChatGPT", "pattern": "*.openai.com/*", "tier": "red"}],
        })
        assert evaluate_url(AI_URL, rules)[:2] == (Tier.YELLOW, "Using ChatGPT")


class TestNavigation:
    @pytest.mark.asyncio
    async def test_ai_site_is_yellow(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)

        status = await engine.evaluate_navigation("tab-1", AI_URL)
        assert status is not None
        assert status.tier == Tier.YELLOW
        assert status.reason == "Using ChatGPT"
        assert recorder.events == [StatusChanged("tab-1", Tier.YELLOW, "Using ChatGPT")]
        assert engine.get_status("tab-1") == status

    @pytest.mark.asyncio
    async def test_ai_on_platform_is_red_and_counts(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)

        status = await engine.evaluate_navigation("tab-1", RED_URL)
        assert status is not None
        assert status.tier == Tier.RED
        assert status.reason == "Using ChatGPT on Canvas"
        assert engine.block.state.consecutive_violation_count == 1

    @pytest.mark.asyncio
    async def test_non_red_resets_counter(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)

        await engine.evaluate_navigation("tab-1", RED_URL)
        await engine.evaluate_navigation("tab-1", RED_URL)
        assert engine.block.state.consecutive_violation_count == 2

        await engine.evaluate_navigation("tab-1", AI_URL)
        assert engine.block.state.consecutive_violation_count == 0

    @pytest.mark.asyncio
    async def test_plain_site_is_green(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        status = await engine.evaluate_navigation("tab-1", PLAIN_URL)
        assert status is not None
        assert status.tier == Tier.GREEN
        assert status.reason == REASON_NO_AI

    @pytest.mark.asyncio
    async def test_threshold_starts_block(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder, violation_threshold=3, block_duration_minutes=10)

        assert await engine.evaluate_navigation("tab-1", RED_URL) is not None
        assert await engine.evaluate_navigation("tab-1", RED_URL) is not None
        assert await engine.evaluate_navigation("tab-1", RED_URL) is None

        assert engine.block.is_blocked
        activated = recorder.of_type(BlockActivated)
        assert len(activated) == 1
        assert activated[0].block_end_time == START + timedelta(minutes=10)
        assert activated[0].title == "AI Access Blocked"
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_redirect_while_blocked(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.block.enter_block()
        recorder.clear()

        assert await engine.evaluate_navigation("tab-2", AI_URL) is None
        assert recorder.events == [RedirectRequested("tab-2")]

        # Non-AI sites are evaluated normally during a block
        status = await engine.evaluate_navigation("tab-2", PLAIN_URL)
        assert status is not None
        assert status.tier == Tier.GREEN
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_navigation_after_block_end_time(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.block.enter_block()
        clock.advance(minutes=11)

        status = await engine.evaluate_navigation("tab-1", AI_URL)
        assert status is not None
        assert status.tier == Tier.YELLOW
        assert not engine.block.is_blocked
        assert recorder.of_type(BlockDeactivated)[0].reason == "expired"

    @pytest.mark.asyncio
    async def test_disabled_never_blocks(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder, enabled=False, violation_threshold=2)

        for _ in range(5):
            status = await engine.evaluate_navigation("tab-1", RED_URL)
            assert status is not None
            assert status.tier == Tier.RED
        assert not engine.block.is_blocked
        assert engine.block.state.consecutive_violation_count == 0
        assert recorder.of_type(BlockActivated) == []

    @pytest.mark.asyncio
    async def test_contexts_are_independent(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.evaluate_navigation("tab-1", AI_URL)
        await engine.evaluate_navigation("tab-2", PLAIN_URL)

        assert engine.get_status("tab-1").tier == Tier.YELLOW
        assert engine.get_status("tab-2").tier == Tier.GREEN
        assert sorted(engine.known_contexts()) == ["tab-1", "tab-2"]

    @pytest.mark.asyncio
    async def test_unknown_context_is_green(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        status = engine.get_status("never-seen")
        assert status.tier == Tier.GREEN
        assert status.reason == REASON_NO_AI

    @pytest.mark.asyncio
    async def test_close_context(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.evaluate_navigation("tab-1", AI_URL)
        await engine.close_context("tab-1")

        assert engine.known_contexts() == []
        assert engine.get_status("tab-1").tier == Tier.GREEN
        # Closing an unknown context is harmless
        await engine.close_context("tab-1")


class TestPageContext:
    @pytest.mark.asyncio
    async def test_grading_page_escalates_to_red(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.evaluate_navigation("tab-1", AI_URL)

        status = await engine.report_page_context("tab-1", AI_URL, has_grading_keywords=True)
        assert status is not None
        assert status.tier == Tier.RED
        assert status.reason == REASON_GRADING_PAGE
        assert engine.block.state.consecutive_violation_count == 0

    @pytest.mark.asyncio
    async def test_page_text_is_scanned(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        status = await engine.report_page_context("tab-1", AI_URL, page_text="Quiz 4: submit before noon")
        assert status is not None
        assert status.tier == Tier.RED

    @pytest.mark.asyncio
    async def test_no_keywords_keeps_status(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.evaluate_navigation("tab-1", AI_URL)
        recorder.clear()

        status = await engine.report_page_context("tab-1", AI_URL, has_grading_keywords=False)
        assert status is not None
        assert status.tier == Tier.YELLOW
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_non_ai_page_ignored(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        assert await engine.report_page_context("tab-1", PLATFORM_URL, has_grading_keywords=True) is None
        assert recorder.events == []


class TestMessages:
    @pytest.mark.asyncio
    async def test_counts_updated(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)

        tier = await engine.classify_and_record("tab-1", "help me understand fractions")
        assert tier == Tier.GREEN
        assert recorder.events == [
            CountsUpdated("tab-1", Tier.GREEN, {"green": 1, "yellow": 0, "red": 0}),
        ]
        assert engine.violation_counts() == {"green": 1, "yellow": 0, "red": 0}

    @pytest.mark.asyncio
    async def test_five_red_messages_block_once(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder, violation_threshold=5, block_duration_minutes=10)

        for i in range(4):
            clock.advance(seconds=1)
            await engine.classify_and_record("tab-1", RED_TEXT)
            assert not engine.block.is_blocked, i

        clock.advance(seconds=1)
        await engine.classify_and_record("tab-1", RED_TEXT)
        assert engine.block.is_blocked

        activated = recorder.of_type(BlockActivated)
        assert len(activated) == 1
        assert activated[0].block_end_time == clock() + timedelta(minutes=10)
        assert activated[0].title == "Chat Blocked - 5 Red Violations"

        # Further Red messages while blocked do not restart the block
        await engine.classify_and_record("tab-1", RED_TEXT)
        assert len(recorder.of_type(BlockActivated)) == 1
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_non_red_message_never_blocks(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder, violation_threshold=1)
        await engine.classify_and_record("tab-1", "summarize this chapter")
        assert not engine.block.is_blocked

    @pytest.mark.asyncio
    async def test_old_messages_do_not_count(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder, violation_threshold=2)
        await engine.classify_and_record("tab-1", RED_TEXT, timestamp=START - timedelta(days=31))
        await engine.classify_and_record("tab-1", RED_TEXT)

        assert engine.violation_counts()["red"] == 1
        assert not engine.block.is_blocked

    @pytest.mark.asyncio
    async def test_disabled_never_blocks(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder, enabled=False, violation_threshold=1)
        await engine.classify_and_record("tab-1", RED_TEXT)
        assert not engine.block.is_blocked
        assert engine.violation_counts()["red"] == 1

    @pytest.mark.asyncio
    async def test_message_and_navigation_counters_are_separate(
        self, clock: FakeClock, recorder: EventRecorder
    ) -> None:
        engine = await make_engine(clock, recorder)
        await engine.evaluate_navigation("tab-1", RED_URL)
        await engine.classify_and_record("tab-1", "explain photosynthesis")

        assert engine.block.state.consecutive_violation_count == 1
        assert engine.violation_counts()["red"] == 0


class TestCommands:
    @pytest.mark.asyncio
    async def test_reset_while_unblocked(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.evaluate_navigation("tab-1", RED_URL)
        await engine.evaluate_navigation("tab-1", RED_URL)

        await engine.reset_block()
        assert engine.block.state.consecutive_violation_count == 0
        assert recorder.of_type(BlockDeactivated) == []

    @pytest.mark.asyncio
    async def test_reset_while_blocked(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder, violation_threshold=2)
        await engine.evaluate_navigation("tab-1", PLAIN_URL)
        await engine.classify_and_record("tab-2", RED_TEXT)
        await engine.classify_and_record("tab-2", RED_TEXT)
        assert engine.block.is_blocked
        recorder.clear()

        await engine.reset_block()
        assert not engine.block.is_blocked
        assert engine.violation_counts()["red"] == 0
        assert [e.reason for e in recorder.of_type(BlockDeactivated)] == ["manual"]
        # Known contexts get their badges refreshed
        assert StatusChanged("tab-1", Tier.GREEN, REASON_NO_AI) in recorder.events

        # The next Red message starts counting from zero
        await engine.classify_and_record("tab-2", RED_TEXT)
        assert not engine.block.is_blocked

    @pytest.mark.asyncio
    async def test_block_ended_signal(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.block.enter_block()
        await engine.block_ended()

        assert not engine.block.is_blocked
        assert [e.reason for e in recorder.of_type(BlockDeactivated)] == ["signal"]

    @pytest.mark.asyncio
    async def test_refresh_skips_ai_sites_while_blocked(
        self, clock: FakeClock, recorder: EventRecorder
    ) -> None:
        engine = await make_engine(clock, recorder)
        await engine.evaluate_navigation("tab-1", AI_URL)
        await engine.evaluate_navigation("tab-2", PLAIN_URL)
        await engine.block.enter_block()
        recorder.clear()

        await engine.refresh_all_contexts()
        assert [e.context_id for e in recorder.of_type(StatusChanged)] == ["tab-2"]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_reconfigure_policy(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        config = await engine.reconfigure_policy({"violation_threshold": 2})
        assert config.violation_threshold == 2
        assert config.block_duration_minutes == 10
        assert engine.config == config

    @pytest.mark.asyncio
    async def test_invalid_policy_is_rejected(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder, violation_threshold=4)
        with pytest.raises(ValueError):
            await engine.reconfigure_policy({"block_duration_minutes": -1})
        assert engine.config.violation_threshold == 4
        assert engine.config.block_duration_minutes == 10

    @pytest.mark.asyncio
    async def test_new_duration_applies_to_next_block(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.block.enter_block()
        await engine.reconfigure_policy({"block_duration_minutes": 30})

        # Running block keeps its end time
        assert engine.block.state.block_end_time == START + timedelta(minutes=10)
        await engine.reset_block()
        await engine.block.enter_block()
        assert engine.block.state.block_end_time == START + timedelta(minutes=30)
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_reconfigure_rules(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.reconfigure_rules({AI_WEBSITES: [{"name": "Bot", "pattern": "*bot.example/*"}]})

        status = await engine.evaluate_navigation("tab-1", "https://bot.example/chat")
        assert status is not None
        assert status.reason == "Using Bot"
        # The override replaced the whole category
        status = await engine.evaluate_navigation("tab-1", AI_URL)
        assert status is not None
        assert status.tier == Tier.GREEN


class TestPersistence:
    @pytest.mark.asyncio
    async def test_counters_survive_restart(
        self, clock: FakeClock, recorder: EventRecorder, memory_store: StateStore
    ) -> None:
        engine = await make_engine(clock, recorder, store=memory_store)
        await engine.classify_and_record("tab-1", RED_TEXT)
        await engine.classify_and_record("tab-1", "what is a noun")

        restarted = await make_engine(clock, recorder, store=memory_store)
        assert restarted.violation_counts() == {"green": 1, "yellow": 0, "red": 1}

    @pytest.mark.asyncio
    async def test_rules_survive_restart(
        self, clock: FakeClock, recorder: EventRecorder, memory_store: StateStore
    ) -> None:
        engine = await make_engine(clock, recorder, store=memory_store)
        await engine.reconfigure_rules({AI_WEBSITES: [{"name": "Bot", "pattern": "*bot.example/*"}]})

        restarted = await make_engine(clock, recorder, store=memory_store)
        assert [r.name for r in restarted.rules[AI_WEBSITES]] == ["Bot"]

    @pytest.mark.asyncio
    async def test_block_survives_restart(
        self, clock: FakeClock, recorder: EventRecorder, memory_store: StateStore
    ) -> None:
        engine = await make_engine(clock, recorder, store=memory_store, violation_threshold=1)
        await engine.evaluate_navigation("tab-1", RED_URL)
        assert engine.block.is_blocked
        await engine.shutdown()

        clock.advance(minutes=4)
        restarted = await make_engine(clock, recorder, store=memory_store, violation_threshold=1)
        assert restarted.block.is_blocked
        assert restarted.block.remaining() == timedelta(minutes=6)
        await restarted.shutdown()

    @pytest.mark.asyncio
    async def test_activity_log(
        self, clock: FakeClock, recorder: EventRecorder, memory_store: StateStore
    ) -> None:
        engine = await make_engine(clock, recorder, store=memory_store)
        await engine.evaluate_navigation("tab-1", AI_URL)
        await engine.classify_and_record("tab-1", RED_TEXT, platform="ChatGPT")

        log = await engine.activity_log()
        assert [entry.tier for entry in log] == [Tier.YELLOW, Tier.RED]
        assert log[0].reason == "Using ChatGPT"
        assert log[1].reason == f'RED message detected: "{RED_TEXT}..."'
        assert log[1].url == "ChatGPT"

    @pytest.mark.asyncio
    async def test_no_store_has_empty_log(self, clock: FakeClock, recorder: EventRecorder) -> None:
        engine = await make_engine(clock, recorder)
        await engine.evaluate_navigation("tab-1", AI_URL)
        assert await engine.activity_log() == []

    @pytest.mark.asyncio
    async def test_storage_failures_keep_memory_state(
        self, clock: FakeClock, recorder: EventRecorder
    ) -> None:
        engine = await make_engine(clock, recorder, store=FailingStore(), violation_threshold=2)

        status = await engine.evaluate_navigation("tab-1", AI_URL)
        assert status is not None
        assert status.tier == Tier.YELLOW

        await engine.classify_and_record("tab-1", RED_TEXT)
        await engine.classify_and_record("tab-1", RED_TEXT)
        assert engine.block.is_blocked
        assert engine.violation_counts()["red"] == 2

        await engine.reconfigure_rules({AI_WEBSITES: []})
        assert engine.rules[AI_WEBSITES] == ()
        assert await engine.activity_log() == []
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_reset_settings_survives_storage_failure(
        self, clock: FakeClock, recorder: EventRecorder
    ) -> None:
        engine = await make_engine(clock, recorder, store=FailingStore(), violation_threshold=1)
        await engine.evaluate_navigation("tab-1", RED_URL)
        assert engine.block.is_blocked

        assert await engine.reset_settings() == PolicyConfig()
        assert not engine.block.is_blocked

    @pytest.mark.asyncio
    async def test_reset_settings_forgets_everything(
        self, clock: FakeClock, recorder: EventRecorder, memory_store: StateStore
    ) -> None:
        engine = await make_engine(clock, recorder, store=memory_store, violation_threshold=1)
        await engine.reconfigure_rules({AI_WEBSITES: [{"name": "Bot", "pattern": "*bot.example/*"}]})
        await engine.evaluate_navigation("tab-1", PLAIN_URL)
        await engine.classify_and_record("tab-1", RED_TEXT)
        assert engine.block.is_blocked

        assert await engine.reset_settings() == PolicyConfig()
        assert not engine.block.is_blocked
        assert [e.reason for e in recorder.of_type(BlockDeactivated)] == ["manual"]
        assert engine.violation_counts() == {"green": 0, "yellow": 0, "red": 0}
        assert [r.name for r in engine.rules[AI_WEBSITES]] == ["ChatGPT"]
        assert await engine.activity_log() == []

        restarted = await make_engine(clock, recorder, store=memory_store)
        assert not restarted.block.is_blocked
        assert restarted.violation_counts() == {"green": 0, "yellow": 0, "red": 0}
        assert [r.name for r in restarted.rules[AI_WEBSITES]] == ["ChatGPT"]
