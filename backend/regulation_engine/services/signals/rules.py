"""
Candidate Signal Rules

One fixed, versioned rule per CandidateSignalKey. A rule is a pure function
of (events, parameters, time_range): same inputs and version, same output.
That is what makes the provenance hash usable as a cache key.

Output vocabulary is neutral. Rules report counts, spans and ratios; they
never say whether a number is good or bad.

Changing what a rule computes means bumping its version.
"""
import hashlib
import json
import statistics
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ...models.db_models import CandidateSignalKey, ConsentCategory
from ...models.engine_types import EventSnapshot, RuleOutput, TimeRange
from ..consent import CANDIDATE_SIGNAL_CONSENT
from ..exceptions import InvalidParameter, UnknownSignalKey


RuleFn = Callable[[Sequence[EventSnapshot], Dict[str, Any], TimeRange], Optional[RuleOutput]]


@dataclass(frozen=True)
class SignalRule:
    signal_key: CandidateSignalKey
    version: str
    consent_category: ConsentCategory
    description: str
    default_parameters: Dict[str, int] = field(default_factory=dict)
    compute: RuleFn = None

    @property
    def minimum_events(self) -> int:
        return self.default_parameters.get("min_events", 1)


# =============================================================================
# HELPERS
# =============================================================================

def _volume_confidence(event_count: int, saturation: int) -> float:
    """Grows linearly with evidence and saturates at 1.0."""
    if event_count <= 0:
        return 0.0
    return round(min(1.0, event_count / float(saturation)), 4)


def _ids(events: Sequence[EventSnapshot]) -> List[str]:
    return sorted(e.event_id for e in events)


def _bin_edges(time_range: TimeRange, bin_minutes: int) -> List:
    edges = []
    cursor = time_range.start
    step = timedelta(minutes=bin_minutes)
    while cursor < time_range.end:
        edges.append(cursor)
        cursor += step
    if not edges:
        edges.append(time_range.start)
    return edges


def _bin_index(moment, time_range: TimeRange, bin_minutes: int, bin_count: int) -> int:
    offset = (moment - time_range.start).total_seconds() / 60.0
    return min(int(offset // bin_minutes), bin_count - 1)


# =============================================================================
# RULES
# =============================================================================

def session_boundaries(events, params, time_range) -> Optional[RuleOutput]:
    """Split the event stream into sessions wherever the gap exceeds gap_minutes."""
    if len(events) < params["min_events"]:
        return None

    gap = timedelta(minutes=params["gap_minutes"])
    sessions: List[List[EventSnapshot]] = [[events[0]]]
    for previous, current in zip(events, events[1:]):
        if current.occurred_at - previous.occurred_at > gap:
            sessions.append([current])
        else:
            sessions[-1].append(current)

    described = [
        {
            "start": s[0].occurred_at.isoformat(),
            "end": s[-1].occurred_at.isoformat(),
            "event_count": len(s),
            "duration_minutes": round((s[-1].occurred_at - s[0].occurred_at).total_seconds() / 60.0, 2),
        }
        for s in sessions
    ]
    return RuleOutput(
        value={"session_count": len(sessions), "sessions": described},
        confidence=_volume_confidence(len(events), 20),
        provenance_event_ids=_ids(events),
    )


def time_bins_activity_count(events, params, time_range) -> Optional[RuleOutput]:
    """Count events per fixed-width bin across the requested range."""
    if len(events) < params["min_events"]:
        return None

    bin_minutes = params["bin_minutes"]
    edges = _bin_edges(time_range, bin_minutes)
    counts = [0] * len(edges)
    for event in events:
        counts[_bin_index(event.occurred_at, time_range, bin_minutes, len(edges))] += 1

    return RuleOutput(
        value={
            "bin_minutes": bin_minutes,
            "bins": [{"start": edge.isoformat(), "count": count} for edge, count in zip(edges, counts)],
            "total_events": len(events),
        },
        confidence=_volume_confidence(len(events), 20),
        provenance_event_ids=_ids(events),
    )


def activity_intervals(events, params, time_range) -> Optional[RuleOutput]:
    """Durations between consecutive events, ignoring gaps longer than max_interval_minutes."""
    if len(events) < params["min_events"]:
        return None

    limit = params["max_interval_minutes"]
    gaps = [
        (current.occurred_at - previous.occurred_at).total_seconds() / 60.0
        for previous, current in zip(events, events[1:])
    ]
    measured = [g for g in gaps if g <= limit]

    value: Dict[str, Any] = {
        "interval_count": len(measured),
        "excluded_interval_count": len(gaps) - len(measured),
    }
    if measured:
        value.update({
            "total_minutes": round(sum(measured), 2),
            "median_minutes": round(statistics.median(measured), 2),
            "min_minutes": round(min(measured), 2),
            "max_minutes": round(max(measured), 2),
        })

    confidence = round(len(measured) / len(gaps), 4) if gaps else 0.0
    return RuleOutput(value=value, confidence=confidence, provenance_event_ids=_ids(events))


def capture_coverage(events, params, time_range) -> Optional[RuleOutput]:
    """Share of bins in the range that contain at least one event."""
    if len(events) < params["min_events"]:
        return None

    bin_minutes = params["bin_minutes"]
    bin_count = len(_bin_edges(time_range, bin_minutes))
    covered = {_bin_index(e.occurred_at, time_range, bin_minutes, bin_count) for e in events}

    return RuleOutput(
        value={
            "bin_minutes": bin_minutes,
            "bins_total": bin_count,
            "bins_with_events": len(covered),
            "coverage_ratio": round(len(covered) / bin_count, 4),
        },
        confidence=_volume_confidence(bin_count, 24),
        provenance_event_ids=_ids(events),
    )


# =============================================================================
# REGISTRY
# =============================================================================

SIGNAL_RULES: Dict[CandidateSignalKey, SignalRule] = {
    CandidateSignalKey.SESSION_BOUNDARIES: SignalRule(
        signal_key=CandidateSignalKey.SESSION_BOUNDARIES,
        version="1.0.0",
        consent_category=CANDIDATE_SIGNAL_CONSENT[CandidateSignalKey.SESSION_BOUNDARIES],
        description="Session start/end detected from gaps between events",
        default_parameters={"gap_minutes": 30, "min_events": 2},
        compute=session_boundaries,
    ),
    CandidateSignalKey.TIME_BINS_ACTIVITY_COUNT: SignalRule(
        signal_key=CandidateSignalKey.TIME_BINS_ACTIVITY_COUNT,
        version="1.0.0",
        consent_category=CANDIDATE_SIGNAL_CONSENT[CandidateSignalKey.TIME_BINS_ACTIVITY_COUNT],
        description="Event counts per fixed time bin",
        default_parameters={"bin_minutes": 60, "min_events": 1},
        compute=time_bins_activity_count,
    ),
    CandidateSignalKey.ACTIVITY_INTERVALS: SignalRule(
        signal_key=CandidateSignalKey.ACTIVITY_INTERVALS,
        version="1.0.0",
        consent_category=CANDIDATE_SIGNAL_CONSENT[CandidateSignalKey.ACTIVITY_INTERVALS],
        description="Durations between consecutive events",
        default_parameters={"max_interval_minutes": 240, "min_events": 2},
        compute=activity_intervals,
    ),
    CandidateSignalKey.CAPTURE_COVERAGE: SignalRule(
        signal_key=CandidateSignalKey.CAPTURE_COVERAGE,
        version="1.0.0",
        consent_category=CANDIDATE_SIGNAL_CONSENT[CandidateSignalKey.CAPTURE_COVERAGE],
        description="Share of time bins containing at least one event",
        default_parameters={"bin_minutes": 60, "min_events": 1},
        compute=capture_coverage,
    ),
}


def get_rule(signal_key: Union[str, CandidateSignalKey]) -> SignalRule:
    try:
        return SIGNAL_RULES[CandidateSignalKey(signal_key)]
    except ValueError:
        raise UnknownSignalKey(signal_key)


def resolve_parameters(rule: SignalRule, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
    """Defaults merged with overrides. Only known keys, positive integers."""
    params = dict(rule.default_parameters)
    for key, value in (overrides or {}).items():
        if key not in params:
            raise InvalidParameter(key, value, f"known parameters of {rule.signal_key.value}")
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise InvalidParameter(key, value, "positive integer")
        params[key] = value
    return params


def provenance_hash(events: Sequence[EventSnapshot]) -> str:
    """SHA-256 over the canonical form of the events, order-independent."""
    canonical = [e.canonical() for e in sorted(events, key=lambda e: e.event_id)]
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
