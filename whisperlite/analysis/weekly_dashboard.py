from __future__ import annotations

"""
Weekly wellbeing dashboard built from a student's class sessions.

Design intent:
- Aggregate one Monday-to-Sunday window of sessions into counts and patterns.
- Ask Gemini for a few kind insights; fall back to rule-based ones.
- Compare weeks by average stress so the trend reads improving/stable/declining.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from whisperlite.analysis import gemini
from whisperlite.analysis.gemini import GeminiAdapterError
from whisperlite.internal_core.contracts import ClassSession

logger = logging.getLogger(__name__)

TimeOfDay = Literal["morning", "afternoon", "evening"]
Trend = Literal["improving", "stable", "declining"]

TIMES_OF_DAY: tuple[TimeOfDay, ...] = ("morning", "afternoon", "evening")
UNKNOWN = "unknown"
RECENT_SESSION_LIMIT = 7
TREND_THRESHOLD = 1.0

# Post-class check-ins map onto a 1-10 stress scale.
STRESS_SCORE_BY_FEEDBACK = {"yes": 8, "not_sure": 5, "no": 2}

DEFAULT_INSIGHT = "You're doing the work to understand yourself better."
DEFAULT_SUGGESTION = "Keep checking in with yourself. Awareness is the first step."


def week_bounds(week_offset: int = 0, *, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Monday 00:00 to Sunday 23:59:59.999 (UTC); offset -1 is last week."""
    now = now or datetime.now(timezone.utc)
    monday = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    start = monday + timedelta(weeks=week_offset)
    end = start + timedelta(days=7) - timedelta(milliseconds=1)
    return start, end


def time_of_day(moment: datetime) -> TimeOfDay:
    if 6 <= moment.hour < 12:
        return "morning"
    if 12 <= moment.hour < 18:
        return "afternoon"
    return "evening"


def _started(session: ClassSession) -> datetime:
    started = datetime.fromisoformat(session.started_at)
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return started


def _is_calm(session: ClassSession) -> bool:
    if session.user_feedback is not None:
        return session.user_feedback.felt_stressful == "no"
    return session.detections.overall_state == "calm"


def _busiest(counts: Dict[str, int]) -> str:
    best, best_count = UNKNOWN, 0
    for key, count in counts.items():
        if count > best_count:
            best, best_count = key, count
    return best


@dataclass(frozen=True)
class WeeklyAggregate:
    start: datetime
    end: datetime
    sessions: list[ClassSession] = field(default_factory=list)
    total_check_ins: int = 0
    total_breathing_breaks: int = 0
    total_calm_minutes: int = 0
    total_stressors: int = 0
    average_stress_level: float = 0.0
    calmest_time_of_day: str = UNKNOWN
    most_stressful_context: str = UNKNOWN
    time_distribution: Dict[str, int] = field(default_factory=dict)
    context_distribution: Dict[str, int] = field(default_factory=dict)

    @property
    def total_sessions(self) -> int:
        return len(self.sessions)


def aggregate_week(sessions: Sequence[ClassSession], start: datetime, end: datetime) -> WeeklyAggregate:
    in_window = [s for s in sessions if start <= _started(s) <= end]
    in_window.sort(key=_started, reverse=True)

    time_distribution = {slot: 0 for slot in TIMES_OF_DAY}
    calm_by_time = {slot: 0 for slot in TIMES_OF_DAY}
    contexts: Counter[str] = Counter()
    scores: list[int] = []
    for session in in_window:
        slot = time_of_day(_started(session))
        time_distribution[slot] += 1
        if _is_calm(session):
            calm_by_time[slot] += 1
        contexts.update(event.type for event in session.detections.events)
        if session.user_feedback is not None:
            scores.append(STRESS_SCORE_BY_FEEDBACK[session.user_feedback.felt_stressful])

    return WeeklyAggregate(
        start=start,
        end=end,
        sessions=in_window,
        total_check_ins=len(scores),
        total_breathing_breaks=sum(1 for s in in_window if s.interventions_used.breathe_used),
        total_calm_minutes=sum(s.calm_minutes for s in in_window),
        total_stressors=sum(contexts.values()),
        average_stress_level=round(sum(scores) / len(scores), 1) if scores else 0.0,
        calmest_time_of_day=_busiest(calm_by_time),
        most_stressful_context=_busiest(dict(contexts)),
        time_distribution=time_distribution,
        context_distribution=dict(contexts),
    )


@dataclass(frozen=True)
class WeeklyInsights:
    insights: list[str]
    suggestions: list[str]
    source: Literal["gemini", "fallback"]


def _context_label(context: str) -> str:
    return context.replace("_", " ").capitalize()


def fallback_insights(aggregate: WeeklyAggregate) -> WeeklyInsights:
    insights: list[str] = []
    suggestions: list[str] = []

    if aggregate.total_check_ins > 0:
        insights.append(
            f"You checked in on your feelings {aggregate.total_check_ins} times this week. "
            "That's great self-awareness!"
        )
    if aggregate.calmest_time_of_day != UNKNOWN:
        insights.append(
            f"You tend to feel calmer in the {aggregate.calmest_time_of_day}. "
            "Notice when you feel more peaceful."
        )
    if aggregate.total_calm_minutes > 0:
        insights.append(
            f"You had {aggregate.total_calm_minutes} calm minute"
            f"{'s' if aggregate.total_calm_minutes > 1 else ''} in class this week. You're building momentum."
        )

    if aggregate.average_stress_level > 6:
        suggestions.append("Try a breathing exercise when stress feels high. Even 2 minutes helps.")
    if aggregate.most_stressful_context != UNKNOWN:
        suggestions.append(
            f"{_context_label(aggregate.most_stressful_context)} came up the most this week. "
            "You're not alone, many students find this hard too."
        )
    if aggregate.total_breathing_breaks == 0 and aggregate.total_sessions > 0:
        suggestions.append("Next time stress shows up, try a quick breathing break before jumping into the moment.")

    return WeeklyInsights(
        insights=insights or [DEFAULT_INSIGHT],
        suggestions=suggestions or [DEFAULT_SUGGESTION],
        source="fallback",
    )


def build_insights_prompt(aggregate: WeeklyAggregate) -> str:
    contexts = ", ".join(f"{_context_label(k)} ({v})" for k, v in aggregate.context_distribution.items())
    return (
        "You are a supportive school counselor reviewing a student's week in a wellness app. "
        "Write 2-3 kind, encouraging insights and 1-2 actionable suggestions from this data:\n\n"
        f"Class sessions: {aggregate.total_sessions}\n"
        f"Post-class check-ins: {aggregate.total_check_ins}\n"
        f"- Average stress level: {aggregate.average_stress_level}/10\n"
        f"- Calmest time of day: {aggregate.calmest_time_of_day}\n"
        f"- Most frequent stressor: {aggregate.most_stressful_context}\n"
        f"Calm minutes: {aggregate.total_calm_minutes}\n"
        f"Breathing exercises used: {aggregate.total_breathing_breaks} times\n"
        f"Sessions by time of day: {aggregate.time_distribution}\n"
        f"Stressors detected: {contexts or 'none'}\n\n"
        "RULES:\n"
        "1. Always be positive and supportive\n"
        "2. Use simple language (8th grade level)\n"
        "3. Acknowledge their effort and resilience\n"
        "4. Each insight is 1-2 sentences\n"
        "5. Each suggestion starts with an action verb (Try, Practice, Consider)\n"
        'Return JSON only: {"insights": ["..."], "suggestions": ["..."]}'
    )


def _strings(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(item).strip() for item in raw if str(item).strip()]


def generate_insights(aggregate: WeeklyAggregate, *, api_key: str, model_name: str) -> WeeklyInsights:
    if not str(api_key or "").strip():
        return fallback_insights(aggregate)
    try:
        data = gemini.generate_json(
            build_insights_prompt(aggregate),
            api_key=api_key,
            model_name=model_name,
            temperature=0.6,
        )
    except GeminiAdapterError as exc:
        logger.warning("weekly_insights_fallback reason=%s", exc)
        return fallback_insights(aggregate)

    insights = _strings(data.get("insights"))
    suggestions = _strings(data.get("suggestions"))
    if not insights and not suggestions:
        logger.warning("weekly_insights_empty keys=%s", sorted(data))
        return fallback_insights(aggregate)
    return WeeklyInsights(
        insights=insights or [DEFAULT_INSIGHT],
        suggestions=suggestions or [DEFAULT_SUGGESTION],
        source="gemini",
    )


def _session_summary(session: ClassSession) -> Dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "startedAt": session.started_at,
        "durationSec": session.duration_sec,
        "overallState": session.detections.overall_state,
        "feltStressful": session.user_feedback.felt_stressful if session.user_feedback else None,
        "calmMinutes": session.calm_minutes,
    }


def build_weekly_dashboard(
    sessions: Sequence[ClassSession],
    week_offset: int = 0,
    *,
    api_key: str,
    model_name: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    start, end = week_bounds(week_offset, now=now)
    aggregate = aggregate_week(sessions, start, end)
    insights = generate_insights(aggregate, api_key=api_key, model_name=model_name)
    logger.info(
        "weekly_dashboard week_offset=%s sessions=%s check_ins=%s insight_source=%s",
        week_offset,
        aggregate.total_sessions,
        aggregate.total_check_ins,
        insights.source,
    )
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "stats": {
            "totalSessions": aggregate.total_sessions,
            "totalCheckIns": aggregate.total_check_ins,
            "totalBreathingBreaks": aggregate.total_breathing_breaks,
            "totalCalmMinutes": aggregate.total_calm_minutes,
            "totalStressors": aggregate.total_stressors,
            "averageStressLevel": aggregate.average_stress_level,
        },
        "patterns": {
            "calmestTimeOfDay": aggregate.calmest_time_of_day,
            "mostStressfulContext": aggregate.most_stressful_context,
            "timeDistribution": dict(aggregate.time_distribution),
            "contextPatterns": dict(aggregate.context_distribution),
        },
        "insights": insights.insights,
        "suggestions": insights.suggestions,
        "insightSource": insights.source,
        "recentSessions": [_session_summary(s) for s in aggregate.sessions[:RECENT_SESSION_LIMIT]],
    }


def calculate_trend(weeks: Sequence[Dict[str, Any]]) -> Trend:
    """Weeks oldest first; a drop of more than one stress point reads as improving."""
    if len(weeks) < 2:
        return "stable"
    change = weeks[0]["stats"]["averageStressLevel"] - weeks[-1]["stats"]["averageStressLevel"]
    if change > TREND_THRESHOLD:
        return "improving"
    if change < -TREND_THRESHOLD:
        return "declining"
    return "stable"


def build_weekly_trends(
    sessions: Sequence[ClassSession],
    num_weeks: int = 4,
    *,
    api_key: str,
    model_name: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    weeks: List[Dict[str, Any]] = [
        build_weekly_dashboard(sessions, -offset, api_key=api_key, model_name=model_name, now=now)
        for offset in range(max(1, num_weeks))
    ]
    weeks.reverse()
    return {"weeks": weeks, "currentWeek": weeks[-1], "trend": calculate_trend(weeks)}
