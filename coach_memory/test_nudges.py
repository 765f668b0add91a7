"""
Coach Nudge Tests
=================
"""

import pytest
from dataclasses import replace
from unittest.mock import patch

from coach_memory.errors import PersistenceError, ValidationError
from coach_memory.nudges import (
    ExerciseContext, NudgeGenerator, NudgeResolution, NudgeSituation, NudgeType, adjust_recommendation
)
from coach_memory.state import EventType, UserTendencies


@pytest.fixture
def nudges(builder, store, policy, clock):
    return NudgeGenerator(builder, store, policy, clock)


SQUAT = ExerciseContext("Squat", previous_weight=60, suggested_weight=62.5, movement_pattern="squat")


class TestAdjustRecommendation:

    def test_low_confidence_halves_with_floor(self):
        t = UserTendencies(confidence_with_load=0.2, movement_confidence={"squat": 0.3})

        assert adjust_recommendation(5.0, t, "squat") == 2.5
        assert adjust_recommendation(0.5, t, "squat") == 0.5

    def test_high_confidence_boosts(self):
        t = UserTendencies(confidence_with_load=0.9, movement_confidence={"bench": 0.8})

        assert adjust_recommendation(2.0, t, "bench") == pytest.approx(2.5)

    def test_neutral_is_unchanged(self):
        assert adjust_recommendation(2.5, UserTendencies()) == 2.5

    def test_unknown_movement_counts_as_neutral(self):
        t = UserTendencies(confidence_with_load=0.9)

        # (0.9 + 0.5) / 2 == 0.7, not above the boost threshold
        assert adjust_recommendation(2.0, t, "deadlift") == 2.0

    def test_thresholds_come_from_policy(self, policy):
        t = UserTendencies(confidence_with_load=0.5, movement_confidence={"squat": 0.5})
        cautious = replace(policy, load_cut_confidence=0.6, load_cut_factor=0.25, min_load_increase=1.0)
        eager = replace(policy, load_boost_confidence=0.4, load_boost_factor=2.0)

        assert adjust_recommendation(8.0, t, "squat", policy) == 8.0
        assert adjust_recommendation(8.0, t, "squat", cautious) == 2.0
        assert adjust_recommendation(2.0, t, "squat", cautious) == 1.0
        assert adjust_recommendation(2.0, t, "squat", eager) == 4.0


class TestExerciseNudge:

    def test_soft_ask_after_repeated_declines(self, nudges, user, record):
        for days_ago in (3, 2, 1):
            record("suggestion_declined", days_ago=days_ago, topic="weight_increase")

        nudge = nudges.generate(1, NudgeSituation.EXERCISE_START, SQUAT)

        assert nudge.nudge_type == NudgeType.READINESS_CHECK
        assert nudge.message.startswith("Last time we stayed at 60kg for Squat.")
        assert [a.label for a in nudge.actions] == ["Try it", "Hold", "Ask coach"]
        assert nudge.context["soft_ask"] is True

    def test_confirmation_when_preferred(self, nudges, user, record):
        for days_ago in (2, 1):
            record("suggestion_declined", days_ago=days_ago, topic="rep_range")

        nudge = nudges.generate(1, NudgeSituation.EXERCISE_START, SQUAT)

        assert nudge.message == "Ready to try 62.5kg on Squat? That's +2.5kg from last time."

    def test_direct_for_neutral_user(self, nudges, user):
        nudge = nudges.generate(1, NudgeSituation.EXERCISE_START, SQUAT)

        assert nudge.message == "Squat: 62.5kg suggested (+2.5). Good to go?"
        assert len(nudge.actions) == 2

    def test_no_nudge_without_increase(self, nudges, user):
        same = ExerciseContext("Squat", previous_weight=60, suggested_weight=60)

        assert nudges.generate(1, NudgeSituation.EXERCISE_START, same) is None
        assert nudges.generate(1, NudgeSituation.EXERCISE_START) is None


class TestSituationNudges:

    def test_recovery_nudge_on_workout_start(self, nudges, user, record):
        for days_ago in (2, 1, 0):
            record("feedback_submitted", days_ago=days_ago, payload={"difficulty": "pain", "pain": True})

        nudge = nudges.generate(1, NudgeSituation.WORKOUT_START)

        assert nudge.nudge_type == NudgeType.RECOVERY_ADJUST
        assert nudge.priority == 6

    def test_no_recovery_nudge_for_neutral_user(self, nudges, user):
        assert nudges.generate(1, NudgeSituation.WORKOUT_START) is None

    def test_schedule_nudge_when_behind(self, nudges, user):
        nudge = nudges.generate(1, NudgeSituation.HOME_VIEW)

        assert nudge.nudge_type == NudgeType.SCHEDULE_ADJUST

    def test_no_schedule_nudge_when_on_track(self, nudges, user, add_workouts):
        add_workouts([0])
        # Monday workout puts the user at 1/3 of the weekly target
        assert nudges.generate(1, NudgeSituation.HOME_VIEW) is None

    def test_schedule_decline_cooldown(self, nudges, user, clock):
        nudges.resolve(1, NudgeType.SCHEDULE_ADJUST, NudgeResolution.REJECTED)

        clock.advance(days=2)
        assert nudges.generate(1, NudgeSituation.HOME_VIEW) is None

        clock.advance(days=6)
        assert nudges.generate(1, NudgeSituation.HOME_VIEW) is not None

    def test_summary_failure_means_no_nudge(self, nudges, user):
        with patch.object(nudges.summary_builder, "build", side_effect=PersistenceError("down")):
            assert nudges.generate(1, NudgeSituation.HOME_VIEW) is None


class TestResolve:

    @pytest.mark.parametrize("resolution,event_type", [
        (NudgeResolution.ACCEPTED, EventType.NUDGE_ACCEPTED),
        (NudgeResolution.REJECTED, EventType.NUDGE_REJECTED),
        (NudgeResolution.DISMISSED, EventType.NUDGE_DISMISSED),
    ])
    def test_records_matching_event(self, nudges, store, user, resolution, event_type):
        event = nudges.resolve(1, NudgeType.READINESS_CHECK, resolution, nudge_id="readiness_check-1-1")

        stored = list(store.query(1))
        assert event.event_type == event_type
        assert stored[0].topic == "weight_increase"
        assert stored[0].payload["nudge_id"] == "readiness_check-1-1"

    def test_rejected_readiness_checks_lead_to_soft_ask(self, nudges, user, clock):
        for _ in range(3):
            nudges.resolve(1, NudgeType.READINESS_CHECK, NudgeResolution.REJECTED)
            clock.advance(hours=1)

        nudge = nudges.generate(1, NudgeSituation.EXERCISE_START, SQUAT)

        assert nudge.context["soft_ask"] is True

    def test_invalid_resolution(self, nudges, user):
        with pytest.raises(ValidationError):
            nudges.resolve(1, NudgeType.READINESS_CHECK, "maybe")

    def test_store_failure_is_swallowed(self, nudges, user):
        with patch.object(nudges.store, "record", side_effect=PersistenceError("down")):
            assert nudges.resolve(1, NudgeType.SCHEDULE_ADJUST, NudgeResolution.ACCEPTED) is None
