"""
Coach Personality & Context Mode Adapter
========================================

Pure presentation layer. Decides nothing, only rewrites tone and attaches
directive blocks. Never reads events or tendencies directly.

Configuration maps are immutable and passed in explicitly, keyed by the
closed CoachPersonality / ContextMode enums.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Tuple
import re

from coach_memory.state import CoachPersonality, ContextMode, UserCoachSummary
from coach_memory.summary_builder import format_summary_for_prompt


@dataclass(frozen=True)
class PersonalityStyle:
    description: str
    tone: str
    prompt_directive: str
    # Ordered (old, new) phrase rewrites applied by adapt()
    replacements: Tuple[Tuple[str, str], ...] = ()
    strip_emoji: bool = False


@dataclass(frozen=True)
class ContextModeRule:
    response_length: str
    style: str
    prompt_directive: str
    max_words: Optional[int] = None


def default_personality_styles() -> Mapping[CoachPersonality, PersonalityStyle]:
    return MappingProxyType({
        CoachPersonality.AGGRESSIVE: PersonalityStyle(
            description="Firm, competitive, blunt",
            tone="direct and no-nonsense",
            prompt_directive="""PERSONALITY: FIRM & COMPETITIVE
- Be direct and blunt. No fluff, no hand-holding.
- Challenge them when appropriate. "You've done harder. Get after it."
- Keep it short. Say what needs to be said, nothing more.
- If they're making excuses, call it out respectfully but firmly.
- Acknowledge effort, but always push for more. "Good. Now do better."
- Be competitive: "You beat last week. Keep that momentum."
- Never condescending or hype-y. Just straightforward and honest.
- Respect their intelligence. Speak to them like an equal who needs a push.""",
            replacements=(
                ("You could", "Time to"),
                ("you could", "time to"),
                ("might be", "is"),
            ),
        ),
        CoachPersonality.DISCIPLINED: PersonalityStyle(
            description="Strict, form-focused, accountable",
            tone="professional and precise",
            prompt_directive="""PERSONALITY: DISCIPLINED
- Be strict and structured. Focus on form, technique, and consistency.
- Hold them accountable. Track their adherence, call out missed sessions.
- Use precise language: "Execute 3 sets of 8 reps at 70% 1RM"
- Emphasize progressive overload and proper periodization.
- Correct bad habits immediately. "Your form needs work on X."
- Celebrate consistency, not just intensity.
- Be like a drill sergeant with a PhD in exercise science.""",
            replacements=(("!", "."),),
            strip_emoji=True,
        ),
        CoachPersonality.FRIENDLY: PersonalityStyle(
            description="Supportive, playful, encouraging",
            tone="warm and enthusiastic",
            prompt_directive="""PERSONALITY: FRIENDLY
- Be SUPPORTIVE and ENCOURAGING. Celebrate every win, big or small.
- Use positive language: "Great job!", "You're doing amazing!", "Love the effort!"
- Add light humor when appropriate. Keep it fun.
- Focus on progress, not perfection. "You're getting stronger every day!"
- Make suggestions, not demands. "How about trying X?"
- Be their cheerleader. They should feel good after talking to you.
- Use emojis sparingly to add warmth: 💪 🎉 ⭐""",
        ),
        CoachPersonality.CALM: PersonalityStyle(
            description="Reassuring, steady, low pressure",
            tone="gentle and measured",
            prompt_directive="""PERSONALITY: CALM
- Be REASSURING and STEADY. No pressure, no rush.
- Use gentle language: "When you're ready", "Take your time", "Listen to your body"
- Focus on sustainable progress over intensity.
- Acknowledge struggles without judgment. "It's okay to have off days."
- Emphasize rest, recovery, and mental wellness alongside physical.
- Never make them feel guilty for missing a workout.
- Be like a yoga instructor who also lifts - balanced and grounded.""",
            replacements=(
                ("don't break it", "keep the flow"),
                ("Don't break it", "Keep the flow"),
                ("!", "."),
            ),
        ),
    })


def default_context_modes() -> Mapping[ContextMode, ContextModeRule]:
    return MappingProxyType({
        ContextMode.IN_WORKOUT: ContextModeRule(
            response_length="1-3 bullet points or 1-2 sentences max",
            style="Short, directive, actionable",
            prompt_directive="""CONTEXT: IN-WORKOUT (Active Session)
CRITICAL: User is MID-WORKOUT. Maximum response: 50 words or 3 bullet points.
- Keep response under 50 words. User needs quick guidance, not essays.
- Be directive: "Do X" not "You could try X"
- Format as bullet points when giving multiple tips.
- No introductions, no sign-offs, just the answer.
- Example good response: "• Keep chest up • Drive through heels • Aim for 3-4 RIR\"""",
            max_words=50,
        ),
        ContextMode.POST_WORKOUT: ContextModeRule(
            response_length="2-4 sentences",
            style="Brief reflection + next step",
            prompt_directive="""CONTEXT: POST-WORKOUT (Just Finished)
CRITICAL: User just finished. Maximum response: 3-4 sentences (under 80 words).
- Acknowledge effort briefly (1 sentence).
- Give ONE forward-looking tip (recovery/nutrition/next session).
- Keep it concise. They're tired.""",
            max_words=80,
        ),
        ContextMode.HOME: ContextModeRule(
            response_length="1 sentence (one-liner)",
            style="Proactive insight",
            prompt_directive="""CONTEXT: HOME SCREEN (Browsing)
CRITICAL: Maximum response: 1 sentence (under 20 words).
- Single one-liner insight or tip.
- No explanations, no follow-ups.
- Example: "Your consistency this week has been solid. Keep it up.\"""",
        ),
        ContextMode.CHAT: ContextModeRule(
            response_length="1-3 paragraphs",
            style="Normal conversation",
            prompt_directive="""CONTEXT: CHAT (Conversation)
- User is having a conversation with you.
- Normal response length (1-3 paragraphs, under 200 words).
- Be personable and helpful.
- Answer questions fully but don't ramble.
- Ask clarifying questions if needed.""",
        ),
    })


BEGINNER_SAFETY = MappingProxyType({
    CoachPersonality.AGGRESSIVE: """⚠️ SAFETY: User is a BEGINNER. Even with aggressive style:
- Focus on form before intensity
- Don't push to failure on compound lifts
- Challenge their effort, not their max weights
- Strict about fundamentals""",
    CoachPersonality.DISCIPLINED: """⚠️ SAFETY: User is a BEGINNER with disciplined style:
- Extra emphasis on technique mastery
- Structured progression is essential
- Correct form issues immediately
- Build the foundation right""",
})

_EMOJI = re.compile(
    "[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F000-\U0001F2FF\uFE0F\u200D]+"
)
_SPACES = re.compile(r"\s{2,}")


class PersonalityAdapter:
    """
    Deterministic tone rewriting + prompt directive assembly.
    Holds no state beyond the configuration maps it was given.
    """

    def __init__(
        self,
        styles: Optional[Mapping[CoachPersonality, PersonalityStyle]] = None,
        modes: Optional[Mapping[ContextMode, ContextModeRule]] = None,
    ):
        self.styles = styles if styles is not None else default_personality_styles()
        self.modes = modes if modes is not None else default_context_modes()

    def adapt(self, message: str, personality: CoachPersonality, context_mode: ContextMode) -> str:
        style = self.styles[CoachPersonality(personality)]
        rule = self.modes[ContextMode(context_mode)]

        adapted = message
        if style.strip_emoji:
            adapted = _EMOJI.sub("", adapted)
        for old, new in style.replacements:
            adapted = adapted.replace(old, new)
        adapted = _SPACES.sub(" ", adapted).strip()

        if rule.max_words is not None:
            words = adapted.split()
            if len(words) > rule.max_words:
                adapted = " ".join(words[:rule.max_words])
        return adapted

    def context_directive(self, context_mode: ContextMode) -> str:
        return self.modes[ContextMode(context_mode)].prompt_directive

    def build_system_prompt(
        self,
        base_prompt: str,
        summary: UserCoachSummary,
        context_mode: ContextMode,
    ) -> str:
        """base + personality directive + context directive + summary (+ beginner safety)."""
        style = self.styles[summary.coach_personality]
        sections = [
            base_prompt,
            style.prompt_directive,
            self.context_directive(context_mode),
            format_summary_for_prompt(summary),
        ]
        if summary.experience_level == "beginner" and summary.coach_personality in BEGINNER_SAFETY:
            sections.append(BEGINNER_SAFETY[summary.coach_personality])
        return "\n\n".join(sections)
