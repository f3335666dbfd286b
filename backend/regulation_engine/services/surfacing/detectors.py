"""
Active signal detectors.

Pure functions over the events of the evaluation window. Each returns a
Detection (what was observed and how far past the threshold) or None.
The surfacer owns consent, dedup, expiry and persistence.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from ...models.db_models import ActiveSignalKey, BehaviorEventType, SignalIntensity
from ...models.engine_types import EventSnapshot


@dataclass
class Detection:
    context_data: Dict[str, Any]
    intensity: SignalIntensity


Detector = Callable[[Sequence[EventSnapshot], Dict[str, Any], datetime, Optional[EventSnapshot]], Optional[Detection]]


def _of_type(events: Sequence[EventSnapshot], event_type: BehaviorEventType) -> List[EventSnapshot]:
    return [e for e in events if e.event_type == event_type]


def _tiered(value: float, high: float, medium: float) -> SignalIntensity:
    if value >= high:
        return SignalIntensity.HIGH
    if value >= medium:
        return SignalIntensity.MEDIUM
    return SignalIntensity.LOW


def rapid_context_switching(events, params, now, previous=None) -> Optional[Detection]:
    switches = len(_of_type(events, BehaviorEventType.CONTEXT_SWITCH))
    if switches < params["min_switches"]:
        return None
    return Detection(
        context_data={"switches": switches},
        intensity=_tiered(switches, high=10, medium=7),
    )


def runaway_scope_expansion(events, params, now, previous=None) -> Optional[Detection]:
    additions = len(_of_type(events, BehaviorEventType.SCOPE_EXPANSION))
    if additions < params["min_additions"]:
        return None
    return Detection(
        context_data={"additions": additions},
        intensity=_tiered(additions, high=15, medium=10),
    )


def _pair_focus_sessions(events: Sequence[EventSnapshot]) -> List[float]:
    """
    Durations (minutes) of focus sessions that ended inside the window.

    Ends are matched to starts by metadata `focus_session_id` when both
    carry one, otherwise to the latest unmatched start before the end.
    """
    starts = _of_type(events, BehaviorEventType.FOCUS_SESSION_STARTED)
    ends = _of_type(events, BehaviorEventType.FOCUS_SESSION_ENDED)
    used = set()
    durations = []
    for end in ends:
        ref = end.metadata.get("focus_session_id")
        match = None
        if ref is not None:
            match = next(
                (s for s in starts if s.metadata.get("focus_session_id") == ref and s.event_id not in used),
                None,
            )
        if match is None:
            earlier = [
                s for s in starts
                if s.occurred_at <= end.occurred_at and s.event_id not in used
                and s.metadata.get("focus_session_id") in (None, ref)
            ]
            match = earlier[-1] if earlier else None
        if match is None:
            continue
        used.add(match.event_id)
        durations.append((end.occurred_at - match.occurred_at).total_seconds() / 60.0)
    return durations


def fragmented_focus_session(events, params, now, previous=None) -> Optional[Detection]:
    durations = _pair_focus_sessions(events)
    fragmented = [d for d in durations if d < params["min_duration_minutes"]]
    if not fragmented:
        return None
    return Detection(
        context_data={"fragmented_sessions": len(fragmented), "sessions_ended": len(durations)},
        intensity=_tiered(len(fragmented), high=3, medium=2),
    )


def prolonged_inactivity_gap(events, params, now, previous=None) -> Optional[Detection]:
    """Re-entry inside the window after at least min_gap_days without events."""
    if not events or previous is None:
        return None
    reentry = events[0]
    gap = reentry.occurred_at - previous.occurred_at
    if gap < timedelta(days=params["min_gap_days"]):
        return None
    gap_days = gap.days
    return Detection(
        context_data={"gap_days": gap_days},
        intensity=_tiered(gap_days, high=14, medium=7),
    )


def high_task_intake_without_completion(events, params, now, previous=None) -> Optional[Detection]:
    created = len(_of_type(events, BehaviorEventType.TASK_CREATED))
    completed = len(_of_type(events, BehaviorEventType.TASK_COMPLETED))
    if created < params["min_tasks_created"] or completed > params["max_tasks_completed"]:
        return None
    ratio = completed / created
    if ratio < 0.1 and created >= 10:
        intensity = SignalIntensity.HIGH
    elif ratio < 0.2:
        intensity = SignalIntensity.MEDIUM
    else:
        intensity = SignalIntensity.LOW
    return Detection(
        context_data={"tasks_created": created, "tasks_completed": completed},
        intensity=intensity,
    )


DETECTORS: Dict[ActiveSignalKey, Detector] = {
    ActiveSignalKey.RAPID_CONTEXT_SWITCHING: rapid_context_switching,
    ActiveSignalKey.RUNAWAY_SCOPE_EXPANSION: runaway_scope_expansion,
    ActiveSignalKey.FRAGMENTED_FOCUS_SESSION: fragmented_focus_session,
    ActiveSignalKey.PROLONGED_INACTIVITY_GAP: prolonged_inactivity_gap,
    ActiveSignalKey.HIGH_TASK_INTAKE_WITHOUT_COMPLETION: high_task_intake_without_completion,
}
