"""
Coach Insight Generator Tests
=============================

Rule selection, anti-spam state machine, ranking, LLM fallback and
the never-fatal default path.
"""

import pytest
from datetime import timedelta
from unittest.mock import patch

from coach_memory.errors import LLMUnavailable, PersistenceError
from coach_memory.insight_generator import (
    DEFAULT_INSIGHT_ID, GENTLE_PROGRESSION_MESSAGE, InsightGenerator, time_of_day
)
from coach_memory.llm_client import MockLLMClient
from coach_memory.state import (
    CategoryState, CheckInPreferences, CoachInsight, InsightAction, InsightCategory, InsightHistoryEntry
)


@pytest.fixture
def generator(repo, builder, policy, clock):
    return InsightGenerator(repo, builder, policy=policy, clock=clock)


def _by_id(insights):
    return {i.id: i for i in insights}


# ==============================================================================
# End-to-end scenarios
# ==============================================================================

class TestEndToEnd:

    @pytest.mark.parametrize("style", [
        "encouraging-positive", "direct-challenging", "strict-structured", "calm-patient"
    ])
    def test_streak_with_repeated_weight_declines(self, generator, db, user, add_workouts, record, style):
        """7-day streak + 3 declines on weight_increase."""
        user.coaching_style = style
        db.commit()
        add_workouts(range(7))
        for days_ago in (2, 1, 0):
            record("suggestion_declined", days_ago=days_ago, topic="weight_increase")

        insights = generator.get_insights(1)
        streak = [i for i in insights if i.category == InsightCategory.STREAK]
        progression = [i for i in insights if i.id == "progression-weight-increase"]

        assert streak and streak[0].priority >= 8
        assert progression
        assert "only if you feel ready" in progression[0].message
        assert insights[0].priority >= 8

    def test_new_user_gets_motivation(self, generator, user):
        ids = _by_id(generator.get_insights(1))

        assert "new-user-motivation" in ids
        assert "morning-energy" in ids
        assert "motivation-0" in ids

    def test_returning_user_gets_recovery_first(self, generator, user, add_workouts):
        add_workouts([5, 6, 7, 8])

        insights = generator.get_insights(1)

        assert insights[0].id == "recovery-return"
        assert insights[0].priority == 9

    def test_results_are_ranked_and_capped(self, generator, user, add_workouts):
        add_workouts(range(7))

        insights = generator.get_insights(1, count=3)

        assert len(insights) == 3
        priorities = [i.priority for i in insights]
        assert priorities == sorted(priorities, reverse=True)

    def test_shown_insights_are_recorded(self, generator, repo, user, clock):
        insights = generator.get_insights(1, count=2)

        history = repo.get_insight_history(1, since=clock.now() - timedelta(days=1))

        assert {h.insight_id for h in history} == {i.id for i in insights}

    def test_mark_shown_false_does_not_record(self, generator, repo, user, clock):
        generator.get_insights(1, count=2, mark_shown=False)

        assert repo.get_insight_history(1, since=clock.now() - timedelta(days=1)) == []


# ==============================================================================
# Anti-spam
# ==============================================================================

class TestAntiSpam:

    def test_wellness_cooling_then_eligible(self, generator, repo, user, add_workouts, clock):
        """Wellness shown 2 days ago stays hidden; 8 days later it is back."""
        add_workouts(range(-8, 6))
        repo.append_insight_history(1, [
            InsightHistoryEntry("wellness-check", InsightCategory.WELLNESS, clock.now() - timedelta(days=2))
        ])

        now_ids = _by_id(generator.get_insights(1, count=20))
        assert "wellness-check" not in now_ids

        clock.advance(days=8)
        later_ids = _by_id(generator.get_insights(1, count=20))
        assert "wellness-check" in later_ids

    def test_category_state_machine(self, generator, clock):
        now = clock.now()
        shown_now = [InsightHistoryEntry("wellness-check", InsightCategory.WELLNESS, now)]
        shown_2d = [InsightHistoryEntry("wellness-check", InsightCategory.WELLNESS, now - timedelta(days=2))]
        shown_8d = [InsightHistoryEntry("wellness-check", InsightCategory.WELLNESS, now - timedelta(days=8))]

        assert generator.category_state(InsightCategory.WELLNESS, [], now) == CategoryState.ELIGIBLE
        assert generator.category_state(InsightCategory.WELLNESS, shown_now, now) == CategoryState.SHOWN
        assert generator.category_state(InsightCategory.WELLNESS, shown_2d, now) == CategoryState.COOLING
        assert generator.category_state(InsightCategory.MENTAL_HEALTH, shown_2d, now) == CategoryState.COOLING
        assert generator.category_state(InsightCategory.WELLNESS, shown_8d, now) == CategoryState.ELIGIBLE
        assert generator.category_state(InsightCategory.STREAK, shown_2d, now) == CategoryState.ELIGIBLE

    def test_checkin_opt_out_and_snooze(self, generator, clock):
        now = clock.now()
        off = CheckInPreferences(enabled=False)
        snoozed = CheckInPreferences(snoozed_until=now + timedelta(days=3))

        assert generator.category_state(InsightCategory.WELLNESS, [], now, off) == CategoryState.DISABLED
        assert generator.category_state(InsightCategory.STREAK, [], now, off) == CategoryState.ELIGIBLE
        assert generator.category_state(InsightCategory.MENTAL_HEALTH, [], now, snoozed) == CategoryState.SNOOZED
        later = now + timedelta(days=3)
        assert generator.category_state(InsightCategory.MENTAL_HEALTH, [], later, snoozed) == CategoryState.ELIGIBLE

    def test_reduced_frequency_lengthens_cooldown(self, generator, clock):
        now = clock.now()
        reduced = CheckInPreferences(reduced_frequency=True)
        shown_10d = [InsightHistoryEntry("wellness-check", InsightCategory.WELLNESS, now - timedelta(days=10))]
        shown_15d = [InsightHistoryEntry("wellness-check", InsightCategory.WELLNESS, now - timedelta(days=15))]

        assert generator.category_state(InsightCategory.WELLNESS, shown_10d, now) == CategoryState.ELIGIBLE
        assert generator.category_state(InsightCategory.WELLNESS, shown_10d, now, reduced) == CategoryState.COOLING
        assert generator.category_state(InsightCategory.WELLNESS, shown_15d, now, reduced) == CategoryState.ELIGIBLE

    def test_checkin_response_restarts_cooldown(self, generator, clock):
        now = clock.now()
        responded = CheckInPreferences(last_response_at=now - timedelta(days=2))

        assert generator.category_state(InsightCategory.WELLNESS, [], now, responded) == CategoryState.COOLING

    def test_opted_out_user_sees_no_wellness_until_reenabled(self, generator, user, add_workouts, record):
        add_workouts(range(-8, 6))
        record("checkin_disabled", days_ago=30, topic="wellness")

        assert "wellness-check" not in _by_id(generator.get_insights(1, count=20))

        record("checkin_enabled", topic="wellness")

        assert "wellness-check" in _by_id(generator.get_insights(1, count=20))

    def test_history_lookback_covers_reduced_cooldown(self, generator, policy):
        assert generator._history_lookback() >= timedelta(days=policy.wellness_reduced_cooldown_days)

    def _insight(self, clock, insight_id="morning-energy", category=InsightCategory.TIP):
        now = clock.now()
        return CoachInsight(insight_id, "msg", category, InsightAction.NONE, "", 5, now, now)

    def test_same_id_hidden_within_expiry(self, generator, clock):
        insight = self._insight(clock)
        recent = [InsightHistoryEntry("morning-energy", InsightCategory.TIP, clock.now() - timedelta(hours=1))]
        older = [InsightHistoryEntry("morning-energy", InsightCategory.TIP, clock.now() - timedelta(hours=5))]

        assert not generator.should_show(insight, recent, clock.now())
        assert generator.should_show(insight, older, clock.now())

    def test_category_repeat_limit(self, generator, clock):
        insight = self._insight(clock, "motivation-2")
        now = clock.now()
        history = [
            InsightHistoryEntry("morning-energy", InsightCategory.TIP, now - timedelta(hours=30)),
            InsightHistoryEntry("evening-unwind", InsightCategory.TIP, now - timedelta(hours=50)),
        ]

        assert not generator.should_show(insight, history, now)
        assert generator.should_show(insight, history, now + timedelta(hours=30))

    def test_second_call_rotates_insights(self, generator, user):
        first = {i.id for i in generator.get_insights(1, count=2)}
        second = {i.id for i in generator.get_insights(1, count=2)}

        assert first.isdisjoint(second)


# ==============================================================================
# Ranking
# ==============================================================================

class TestRanking:

    def test_fresher_trigger_wins_ties(self, clock):
        now = clock.now()
        stale = CoachInsight("a", "a", InsightCategory.PROGRESS, InsightAction.NONE, "", 8, now, now,
                             triggered_at=now - timedelta(days=3))
        fresh = CoachInsight("b", "b", InsightCategory.STREAK, InsightAction.NONE, "", 8, now, now,
                             triggered_at=now - timedelta(hours=1))
        generic = CoachInsight("c", "c", InsightCategory.MOTIVATION, InsightAction.NONE, "", 8, now, now)
        top = CoachInsight("d", "d", InsightCategory.RECOVERY, InsightAction.NONE, "", 9, now, now)

        ranked = InsightGenerator.rank([generic, stale, fresh, top])

        assert [i.id for i in ranked] == ["d", "b", "a", "c"]

    def test_rule_order_breaks_remaining_ties(self, clock):
        now = clock.now()
        first = CoachInsight("x", "x", InsightCategory.TIP, InsightAction.NONE, "", 4, now, now)
        second = CoachInsight("y", "y", InsightCategory.TIP, InsightAction.NONE, "", 4, now, now)

        assert [i.id for i in InsightGenerator.rank([first, second])] == ["x", "y"]

    @pytest.mark.parametrize("hour,expected", [
        (6, "morning"), (13, "afternoon"), (18, "evening"), (23, "night"), (2, "night")
    ])
    def test_time_of_day(self, clock, hour, expected):
        assert time_of_day(clock.now().replace(hour=hour)) == expected


# ==============================================================================
# Tendency-driven suggestions
# ==============================================================================

class TestSuggestions:

    @pytest.mark.parametrize("style", ["encouraging-positive", "direct-challenging"])
    def test_confirmation_question_when_user_prefers_it(self, generator, db, user, add_workouts, record, style):
        user.coaching_style = style
        db.commit()
        add_workouts([0, 1])
        for days_ago in (2, 1):
            record("suggestion_declined", days_ago=days_ago, topic="rep_range")

        ids = _by_id(generator.get_insights(1, count=20))

        assert "?" in ids["progression-weight-increase"].message
        assert GENTLE_PROGRESSION_MESSAGE not in ids["progression-weight-increase"].message

    def test_recovery_suggestion(self, generator, user, add_workouts, record):
        add_workouts([0, 1])
        for days_ago in (2, 1, 0):
            record("feedback_submitted", days_ago=days_ago, payload={"difficulty": "pain", "pain": True})

        ids = _by_id(generator.get_insights(1, count=20))

        assert "recovery-need" in ids

    def test_no_progression_for_slow_pace(self, generator, user, add_workouts, record):
        add_workouts([0, 1])
        for days_ago in (1, 8, 15):
            record("suggestion_declined", days_ago=days_ago, topic="weight_increase")

        ids = _by_id(generator.get_insights(1, count=20))

        assert "progression-weight-increase" not in ids


# ==============================================================================
# LLM variant
# ==============================================================================

class TestAIInsight:

    def test_ai_added_when_nothing_higher_pending(self, repo, builder, policy, clock, user):
        llm = MockLLMClient(["Squat day. Own it."])
        generator = InsightGenerator(repo, builder, policy=policy, clock=clock, llm_client=llm)

        insights = generator.get_insights(1, include_ai=True)
        ai = [i for i in insights if i.id.startswith("ai-")]

        assert len(ai) == 1
        assert ai[0].message == "Squat day. Own it."
        assert ai[0].priority == 6
        assert llm.calls[0]["max_tokens"] == 50
        assert "CONTEXT: HOME SCREEN" in llm.calls[0]["system_prompt"]

    def test_ai_skipped_when_higher_priority_pending(self, repo, builder, policy, clock, user, add_workouts):
        add_workouts(range(7))
        llm = MockLLMClient()
        generator = InsightGenerator(repo, builder, policy=policy, clock=clock, llm_client=llm)

        insights = generator.get_insights(1, include_ai=True)

        assert llm.calls == []
        assert not any(i.id.startswith("ai-") for i in insights)

    def test_ai_not_requested(self, repo, builder, policy, clock, user):
        llm = MockLLMClient()
        generator = InsightGenerator(repo, builder, policy=policy, clock=clock, llm_client=llm)

        generator.get_insights(1)

        assert llm.calls == []

    def test_timeout_falls_back_to_rules(self, repo, builder, policy, clock, user):
        llm = MockLLMClient(["too late"], delay=0.5)
        generator = InsightGenerator(repo, builder, policy=policy, clock=clock,
                                     llm_client=llm, llm_timeout=0.05)

        insights = generator.get_insights(1, include_ai=True)

        assert insights
        assert not any(i.id.startswith("ai-") for i in insights)
        assert "new-user-motivation" in _by_id(insights)

    def test_llm_error_falls_back_to_rules(self, repo, builder, policy, clock, user):
        llm = MockLLMClient(error=LLMUnavailable("HTTP 500"))
        generator = InsightGenerator(repo, builder, policy=policy, clock=clock, llm_client=llm)

        insights = generator.get_insights(1, include_ai=True)

        assert not any(i.id.startswith("ai-") for i in insights)

    def test_unexpected_llm_exception_falls_back(self, repo, builder, policy, clock, user):
        llm = MockLLMClient(error=KeyError("candidates"))
        generator = InsightGenerator(repo, builder, policy=policy, clock=clock, llm_client=llm)

        assert generator.get_insights(1, include_ai=True)


# ==============================================================================
# Failure semantics
# ==============================================================================

class TestFailures:

    def test_summary_failure_returns_default(self, generator, user):
        with patch.object(generator.summary_builder, "build", side_effect=PersistenceError("down")):
            insights = generator.get_insights(1)

        assert len(insights) == 1
        assert insights[0].id == DEFAULT_INSIGHT_ID
        assert insights[0].message == "Ready when you are. Let's make today count!"

    def test_history_failure_returns_default(self, generator, user):
        with patch.object(generator.repo, "get_insight_history", side_effect=PersistenceError("down")):
            insights = generator.get_insights(1)

        assert [i.id for i in insights] == [DEFAULT_INSIGHT_ID]

    def test_empty_candidates_return_default(self, generator, user):
        with patch.object(generator, "generate_candidates", return_value=[]):
            insights = generator.get_insights(1)

        assert [i.id for i in insights] == [DEFAULT_INSIGHT_ID]

    def test_history_write_failure_still_returns(self, generator, user):
        with patch.object(generator.repo, "append_insight_history", side_effect=PersistenceError("down")):
            insights = generator.get_insights(1, count=3)

        assert len(insights) == 3
