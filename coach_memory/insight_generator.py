"""
Coach Insight Generator
=======================

Produces ranked, anti-spam-filtered home screen insights from the coach summary.

Pipeline:
1. Rule-based candidates from UserCoachSummary (never raw events)
2. Anti-spam filter against insight history
   - mental_health / wellness: Eligible -> Shown -> Cooling (7 days, 14 once
     check-ins are dismissed repeatedly), or Snoozed / Disabled by the user
   - everything else: per-id expiry (4 hours) + same-category repeat limit
3. Optional LLM variant, only when no higher-priority rule insight is pending
4. Sort by priority, then trigger freshness, then rule order
5. Top-K, personality-adapted, recorded as shown

Any context-building failure returns the single safe default insight.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from config import LearningPolicy
from coach_memory.clock import Clock, SystemClock
from coach_memory.errors import CoachMemoryError, LLMUnavailable, PersistenceError
from coach_memory.llm_client import LLMClient, complete_with_timeout
from coach_memory.personality import PersonalityAdapter
from coach_memory.repository import CoachMemoryRepository
from coach_memory.state import (
    WELLNESS_CATEGORIES,
    CategoryState, CheckInPreferences, CoachInsight, ContextMode, InsightAction, InsightCategory,
    InsightHistoryEntry, ProgressionPace, UserCoachSummary
)
from coach_memory.summary_builder import CoachSummaryBuilder

logger = logging.getLogger(__name__)

DEFAULT_INSIGHT_ID = "default-error"
DEFAULT_INSIGHT_MESSAGE = "Ready when you are. Let's make today count!"

AI_INSIGHT_PRIORITY = 6
AI_MAX_TOKENS = 50
AI_TEMPERATURE = 0.8

GENTLE_PROGRESSION_MESSAGE = (
    "No rush on adding weight. Try a small bump next session, only if you feel ready."
)

AI_BASE_PROMPT = "You are a fitness coach writing one short home screen insight for your client."

AI_USER_MESSAGE = """Generate ONE short, personalized insight for your client.

Time of day: {time_of_day}

Rules:
- Keep it under 15 words
- Be specific and actionable
- Don't use emojis excessively (max 1)
- Include context from their data

Respond with ONLY the insight message, nothing else."""

WEEKDAY_PLURALS = ["Mondays", "Tuesdays", "Wednesdays", "Thursdays", "Fridays", "Saturdays", "Sundays"]


def time_of_day(now: datetime) -> str:
    hour = now.hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


@dataclass(frozen=True)
class _Rule:
    """A candidate before timestamps are attached."""
    id: str
    message: str
    category: InsightCategory
    action: InsightAction
    action_label: str
    priority: int
    triggered_at: Optional[datetime] = None


class InsightGenerator:
    """
    Ranked, deduplicated insights for the home screen.

    The injected clock drives every cooldown and expiry decision.
    """

    def __init__(
        self,
        repo: CoachMemoryRepository,
        summary_builder: CoachSummaryBuilder,
        adapter: Optional[PersonalityAdapter] = None,
        policy: Optional[LearningPolicy] = None,
        clock: Optional[Clock] = None,
        llm_client: Optional[LLMClient] = None,
        llm_timeout: float = 8.0,
    ):
        self.repo = repo
        self.summary_builder = summary_builder
        self.adapter = adapter or PersonalityAdapter()
        self.policy = policy or LearningPolicy()
        self.clock = clock or SystemClock()
        self.llm_client = llm_client
        self.llm_timeout = llm_timeout

    # ==========================================================================
    # PUBLIC API
    # ==========================================================================

    def get_insights(
        self,
        user_id: int,
        count: int = 10,
        include_ai: bool = False,
        mark_shown: bool = True,
    ) -> List[CoachInsight]:
        """Never raises. Worst case is [default insight]."""
        now = self.clock.now()
        logger.info(f"Generating insights for user {user_id}")

        try:
            summary = self.summary_builder.build(user_id)
            history = self.repo.get_insight_history(user_id, since=now - self._history_lookback())
        except CoachMemoryError as e:
            logger.warning(f"Insight context unavailable for user {user_id}, serving default: {e}", exc_info=True)
            return [self.default_insight(now)]

        checkin = summary.checkin
        candidates = [
            c for c in self.generate_candidates(summary, now) if self.should_show(c, history, now, checkin)
        ]

        if include_ai and len(candidates) < count and self.llm_client is not None:
            if not any(c.priority > AI_INSIGHT_PRIORITY for c in candidates):
                ai_insight = self._generate_ai_insight(summary, now)
                if ai_insight and self.should_show(ai_insight, history, now, checkin):
                    candidates.append(ai_insight)

        selected = self.rank(candidates)[:max(count, 1)]
        if not selected:
            selected = [self.default_insight(now)]

        for insight in selected:
            insight.message = self.adapter.adapt(insight.message, summary.coach_personality, ContextMode.HOME)

        if mark_shown:
            self._record_shown(user_id, selected, now)

        logger.info(f"Generated {len(selected)} insights for user {user_id}")
        return selected

    def default_insight(self, now: Optional[datetime] = None) -> CoachInsight:
        now = now or self.clock.now()
        return CoachInsight(
            id=DEFAULT_INSIGHT_ID,
            message=DEFAULT_INSIGHT_MESSAGE,
            category=InsightCategory.MOTIVATION,
            action=InsightAction.START_WORKOUT,
            action_label="Start workout",
            priority=5,
            generated_at=now,
            expires_at=now + timedelta(hours=self.policy.insight_expiry_hours),
        )

    # ==========================================================================
    # CANDIDATES
    # ==========================================================================

    def generate_candidates(self, summary: UserCoachSummary, now: datetime) -> List[CoachInsight]:
        """All rule-eligible candidates, in rule order, before anti-spam."""
        p = self.policy
        rules: List[_Rule] = []
        streak = summary.streak_days
        last_at = summary.last_workout_at
        weekday = now.weekday()  # Monday=0
        period = time_of_day(now)
        since_last = summary.days_since_last_workout

        # Streaks
        if streak >= p.streak_high:
            rules.append(_Rule(
                f"streak-{streak}",
                f"🔥 {streak} day streak! You're on fire, don't break it now.",
                InsightCategory.STREAK, InsightAction.START_WORKOUT, "Keep it going", 8, last_at,
            ))
        elif streak >= p.streak_low:
            rules.append(_Rule(
                f"streak-{streak}",
                f"{streak} days strong! One more session keeps the momentum.",
                InsightCategory.STREAK, InsightAction.START_WORKOUT, "Start workout", 7, last_at,
            ))

        # Coming back after a break
        if since_last is not None and since_last >= p.inactivity_days and summary.total_workouts > 0:
            rules.append(_Rule(
                "recovery-return",
                "Been a few days. Ready to get back at it? A light session might feel good.",
                InsightCategory.RECOVERY, InsightAction.START_WORKOUT, "Easy session", 9, last_at,
            ))

        # Weekly target
        if summary.weekly_progress >= p.weekly_progress_high:
            rules.append(_Rule(
                "weekly-almost-done",
                "Almost done for the week! One more session and you've hit your target. 💪",
                InsightCategory.PROGRESS, InsightAction.START_WORKOUT, "Finish strong", 8, last_at,
            ))
        elif summary.weekly_progress < p.weekly_progress_low and weekday >= 2:
            rules.append(_Rule(
                "weekly-catch-up",
                "Week's halfway done. Let's get a session in to stay on track.",
                InsightCategory.SCHEDULE, InsightAction.START_WORKOUT, "Start now", 7,
            ))

        if weekday in summary.struggling_days:
            rules.append(_Rule(
                f"struggling-{weekday}",
                f"{WEEKDAY_PLURALS[weekday]} are usually tough for you. Want to swap today's workout?",
                InsightCategory.SCHEDULE, InsightAction.SWAP_DAY, "Swap day", 6,
            ))

        # Time of day
        if period == "morning":
            rules.append(_Rule(
                "morning-energy",
                "Morning workouts boost energy all day. Ready to start strong?",
                InsightCategory.TIP, InsightAction.START_WORKOUT, "Let's go", 5,
            ))
        elif period == "evening" and (since_last is None or since_last >= 1):
            rules.append(_Rule(
                "evening-unwind",
                "End the day strong with a workout. It's a great way to de-stress.",
                InsightCategory.TIP, InsightAction.START_WORKOUT, "Start workout", 5,
            ))

        if summary.total_workouts < p.new_user_workouts:
            rules.append(_Rule(
                "new-user-motivation",
                "Every expert was once a beginner. Let's build that habit together!",
                InsightCategory.MOTIVATION, InsightAction.START_WORKOUT, "Start workout", 6,
            ))

        total = summary.total_workouts
        if total >= p.milestone_interval and total % p.milestone_interval == 0:
            rules.append(_Rule(
                f"milestone-{total}",
                f"🎉 {total} workouts logged! Your consistency is inspiring.",
                InsightCategory.PROGRESS, InsightAction.VIEW_STATS, "View progress", 8, last_at,
            ))

        if streak >= p.streak_rest_day and weekday == 6:
            rules.append(_Rule(
                "rest-day-sunday",
                f"{p.streak_rest_day}+ days straight. Your muscles grow during rest. "
                "Today might be a good recovery day.",
                InsightCategory.RECOVERY, InsightAction.REST_DAY, "Rest today", 7, last_at,
            ))

        if streak >= p.streak_low:
            rules.append(_Rule(
                "wellness-check",
                "Remember, rest is part of the process. How are you feeling today?",
                InsightCategory.WELLNESS, InsightAction.ASK_COACH, "Chat", 5,
            ))

        rules.extend(self._tendency_rules(summary))

        # Always-available defaults
        rules.extend([
            _Rule("motivation-0", "Ready to make today count? Your future self will thank you.",
                  InsightCategory.MOTIVATION, InsightAction.START_WORKOUT, "Start workout", 4),
            _Rule("motivation-1", "Consistency beats perfection. Even a short workout is a win.",
                  InsightCategory.MOTIVATION, InsightAction.START_WORKOUT, "Quick session", 4),
            _Rule("motivation-2", "Got questions about your program? I'm here to help.",
                  InsightCategory.TIP, InsightAction.ASK_COACH, "Ask me", 3),
            _Rule("motivation-3", "Want to tweak today's workout? We can adjust intensity or exercises.",
                  InsightCategory.SUGGESTION, InsightAction.EDIT_WORKOUT, "Customize", 4),
        ])

        expires_at = now + timedelta(hours=p.insight_expiry_hours)
        return [
            CoachInsight(
                id=r.id,
                message=r.message,
                category=r.category,
                action=r.action,
                action_label=r.action_label,
                priority=r.priority,
                generated_at=now,
                expires_at=expires_at,
                triggered_at=r.triggered_at,
            )
            for r in rules
        ]

    def _tendency_rules(self, summary: UserCoachSummary) -> List[_Rule]:
        """Suggestions driven by learned tendencies."""
        p = self.policy
        t = summary.tendencies
        rules = []

        if t.recovery_need > p.recovery_nudge_threshold:
            rules.append(_Rule(
                "recovery-need",
                "Your body has been working hard. A lighter session today might be the smart call.",
                InsightCategory.RECOVERY, InsightAction.EDIT_WORKOUT, "Go lighter", 7,
            ))

        if t.progression_pace != ProgressionPace.SLOW and summary.total_workouts > 0:
            if summary.has_decline_flag("weight_increase"):
                message, label = GENTLE_PROGRESSION_MESSAGE, "Maybe"
            elif t.prefers_confirmation > p.confirmation_threshold:
                message, label = "Your lifts look steady. Should we add a little weight next session?", "Sounds good"
            else:
                message, label = "You're handling the load well. Add a little weight next session.", "Adjust"
            rules.append(_Rule(
                "progression-weight-increase", message,
                InsightCategory.SUGGESTION, InsightAction.EDIT_WORKOUT, label, 6,
            ))
        return rules

    # ==========================================================================
    # ANTI-SPAM
    # ==========================================================================

    def _history_lookback(self) -> timedelta:
        p = self.policy
        return max(
            timedelta(days=max(p.wellness_cooldown_days, p.wellness_reduced_cooldown_days)),
            timedelta(hours=p.category_repeat_window_hours),
            timedelta(hours=p.insight_expiry_hours),
        )

    def category_state(
        self,
        category: InsightCategory,
        history: List[InsightHistoryEntry],
        now: datetime,
        checkin: Optional[CheckInPreferences] = None,
    ) -> CategoryState:
        """
        Eligible -> Shown -> Cooling -> Eligible, for wellness-class categories.
        Other categories are always Eligible here; they use per-id expiry.

        Check-in preferences override the cycle: opted out is Disabled, an
        active snooze is Snoozed, and a response to a check-in restarts the
        cooldown just like showing one does.
        """
        if category not in WELLNESS_CATEGORIES:
            return CategoryState.ELIGIBLE

        p = self.policy
        checkin = checkin or CheckInPreferences()
        if not checkin.enabled:
            return CategoryState.DISABLED
        if checkin.is_snoozed(now):
            return CategoryState.SNOOZED

        days = p.wellness_reduced_cooldown_days if checkin.reduced_frequency else p.wellness_cooldown_days
        cooldown = timedelta(days=days)
        shown = [h.shown_at for h in history if h.category in WELLNESS_CATEGORIES and h.shown_at <= now]
        if shown and max(shown) == now:
            return CategoryState.SHOWN

        touched = list(shown)
        if checkin.last_response_at and checkin.last_response_at <= now:
            touched.append(checkin.last_response_at)
        if touched and now - max(touched) < cooldown:
            return CategoryState.COOLING
        return CategoryState.ELIGIBLE

    def should_show(
        self,
        insight: CoachInsight,
        history: List[InsightHistoryEntry],
        now: datetime,
        checkin: Optional[CheckInPreferences] = None,
    ) -> bool:
        p = self.policy
        if self.category_state(insight.category, history, now, checkin) != CategoryState.ELIGIBLE:
            return False

        expiry_start = now - timedelta(hours=p.insight_expiry_hours)
        if any(h.insight_id == insight.id and h.shown_at > expiry_start for h in history):
            return False

        window_start = now - timedelta(hours=p.category_repeat_window_hours)
        same_category = sum(1 for h in history if h.category == insight.category and h.shown_at > window_start)
        return same_category < p.category_repeat_limit

    @staticmethod
    def rank(candidates: List[CoachInsight]) -> List[CoachInsight]:
        """Priority desc, then freshest trigger, then rule order (stable sort)."""
        by_trigger = sorted(
            candidates,
            key=lambda c: (c.triggered_at is not None, c.triggered_at or datetime.min),
            reverse=True,
        )
        return sorted(by_trigger, key=lambda c: c.priority, reverse=True)

    def _record_shown(self, user_id: int, insights: List[CoachInsight], now: datetime):
        entries = [InsightHistoryEntry(i.id, i.category, now) for i in insights if i.id != DEFAULT_INSIGHT_ID]
        try:
            self.repo.append_insight_history(user_id, entries)
            self.repo.prune_insight_history(user_id, older_than=now - self._history_lookback())
        except PersistenceError as e:
            logger.warning(f"Could not record insight history for user {user_id}: {e}")

    # ==========================================================================
    # AI VARIANT
    # ==========================================================================

    def _generate_ai_insight(self, summary: UserCoachSummary, now: datetime) -> Optional[CoachInsight]:
        system_prompt = self.adapter.build_system_prompt(AI_BASE_PROMPT, summary, ContextMode.HOME)
        user_message = AI_USER_MESSAGE.format(time_of_day=time_of_day(now))
        try:
            text = complete_with_timeout(
                self.llm_client,
                system_prompt,
                user_message,
                max_tokens=AI_MAX_TOKENS,
                temperature=AI_TEMPERATURE,
                timeout=self.llm_timeout,
            )
        except LLMUnavailable as e:
            logger.warning(f"AI insight unavailable for user {summary.user_id}, rule-based only: {e}")
            return None

        message = text.strip().strip('"')
        if not message:
            return None
        return CoachInsight(
            id=f"ai-{int(now.timestamp())}",
            message=message,
            category=InsightCategory.MOTIVATION,
            action=InsightAction.ASK_COACH,
            action_label="Chat",
            priority=AI_INSIGHT_PRIORITY,
            generated_at=now,
            expires_at=now + timedelta(hours=self.policy.insight_expiry_hours),
            triggered_at=now,
        )
