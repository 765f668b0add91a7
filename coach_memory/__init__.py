"""
Coach Memory - Adaptive Coaching Memory & Learning Engine
=========================================================

Learns how each user responds to coaching and feeds that back into prompts
and proactive insights:
- Append-only behavior events
- Decayed per-user tendencies (recomputed, never patched)
- Bounded coach summary, the only input to prompt construction
- Anti-spam insight rotation with personality-aware phrasing

Key Design Principles:
1. Learning is best-effort - it never blocks the user action that produced it
2. Declines mean "not yet", never "never"
3. All summaries bounded (summary <= 2048 chars)
4. Every time-based rule reads an injected clock
"""

from coach_memory.event_store import EventStore
from coach_memory.tendency_aggregator import TendencyAggregator
from coach_memory.summary_builder import CoachSummaryBuilder
from coach_memory.insight_generator import InsightGenerator
from coach_memory.personality import PersonalityAdapter
from coach_memory.service import CoachMemoryService
from coach_memory.llm_client import LLMClient, GeminiClient

__all__ = [
    'EventStore',
    'TendencyAggregator',
    'CoachSummaryBuilder',
    'InsightGenerator',
    'PersonalityAdapter',
    'CoachMemoryService',
    'LLMClient',
    'GeminiClient',
]
