"""
Cross-participant aggregation for the dashboard.

Everything here is a pure function of (participant records, filter, query
time, stimulus duration). Records are never mutated; the working set is
rebuilt from storage on every refresh.
"""
from __future__ import annotations
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence
import logging

import numpy as np
from pydantic import ValidationError

from sentiment.config import Settings
from sentiment.duration import duration_statistics
from sentiment.models import (
    ALL,
    AggregationBucket,
    DashboardView,
    DemographicDurationGroup,
    DemographicFilter,
    DurationAnalytics,
    DurationBucket,
    EmotionVector,
    ParticipantRecord,
    SentimentReading,
)

logger = logging.getLogger(__name__)

FILTER_FIELDS = ("age", "gender", "race", "nationality")

# (label, inclusive upper bound)
DURATION_BUCKETS = (
    ("0-15s", 15.0),
    ("15-30s", 30.0),
    ("30-60s", 60.0),
    ("60-120s", 120.0),
    ("120s+", float("inf")),
)


def load_participant_records(rows: Iterable[Dict]) -> List[ParticipantRecord]:
    """Validate stored rows; malformed ones are skipped, not fatal."""
    records: List[ParticipantRecord] = []
    for row in rows:
        try:
            records.append(ParticipantRecord.model_validate(row))
        except (ValidationError, TypeError, ValueError) as e:
            pid = row.get("participant_id") if isinstance(row, dict) else None
            logger.warning(f"[aggregate] skipping malformed record participant={pid}: {e}")
    return records


def matches_filter(record: ParticipantRecord, flt: DemographicFilter) -> bool:
    demo = record.demographics
    for field in FILTER_FIELDS:
        wanted = getattr(flt, field)
        if wanted != ALL and getattr(demo, field) != wanted:
            return False
    return True


def filter_participants(records: Sequence[ParticipantRecord], flt: DemographicFilter) -> List[ParticipantRecord]:
    """Conjunctive demographic filter; an 'all' field is ignored."""
    return [r for r in records if matches_filter(r, flt)]


def participant_count(records: Sequence[ParticipantRecord]) -> int:
    return len({r.participant_id for r in records})


def _mean_vector(readings: Sequence[SentimentReading]) -> EmotionVector:
    arr = np.array([r.expressions.as_list() for r in readings], dtype=float)
    return EmotionVector.from_values(arr.mean(axis=0))


def snapshot_at(
    records: Sequence[ParticipantRecord],
    query_time: float,
    window: float,
    previous: Optional[EmotionVector] = None,
) -> Optional[EmotionVector]:
    """
    Unweighted per-emotion mean over every reading within +/- window of
    query_time, across all participants. With no reading in the window the
    previous snapshot is returned unchanged.
    """
    hits = [
        reading
        for record in records
        for reading in record.readings
        if abs(reading.timestamp - query_time) <= window
    ]
    if not hits:
        return previous
    return _mean_vector(hits)


def timeline(
    records: Sequence[ParticipantRecord],
    stimulus_duration: float,
    bucket_seconds: float,
) -> List[AggregationBucket]:
    """
    Fixed-width buckets over [0, stimulus_duration). Only populated buckets
    are returned, in increasing time order.
    """
    if not stimulus_duration or stimulus_duration <= 0:
        return []
    ts = []
    vals = []
    for record in records:
        for reading in record.readings:
            if 0 <= reading.timestamp < stimulus_duration:
                ts.append(reading.timestamp)
                vals.append(reading.expressions.as_list())
    if not ts:
        return []

    idx = np.floor(np.asarray(ts, dtype=float) / bucket_seconds).astype(int)
    values = np.asarray(vals, dtype=float)
    buckets: List[AggregationBucket] = []
    for b in np.unique(idx):
        mean = values[idx == b].mean(axis=0)
        buckets.append(AggregationBucket(
            bucket_start=float(b * bucket_seconds),
            per_emotion_average=EmotionVector.from_values(mean),
        ))
    return buckets


def duration_distribution(durations: Sequence[float]) -> List[DurationBucket]:
    counts = [0] * len(DURATION_BUCKETS)
    for d in durations:
        for i, (_, upper) in enumerate(DURATION_BUCKETS):
            if d <= upper:
                counts[i] += 1
                break
    total = len(durations)
    return [
        DurationBucket(bucket=label, count=c, percentage=(c / total * 100.0) if total else 0.0)
        for (label, _), c in zip(DURATION_BUCKETS, counts)
    ]


def durations_by_demographics(records: Sequence[ParticipantRecord]) -> Dict[str, Dict[str, DemographicDurationGroup]]:
    out: Dict[str, Dict[str, DemographicDurationGroup]] = {}
    for field in FILTER_FIELDS:
        groups: Dict[str, List[float]] = defaultdict(list)
        for r in records:
            if r.duration is None:
                continue
            groups[getattr(r.demographics, field) or "unknown"].append(r.duration)
        out[field] = {
            value: DemographicDurationGroup(count=len(ds), average_duration=round(float(np.mean(ds)), 3))
            for value, ds in sorted(groups.items())
        }
    return out


def duration_analytics(records: Sequence[ParticipantRecord]) -> DurationAnalytics:
    durations = [r.duration for r in records if r.duration is not None and r.duration > 0]
    return DurationAnalytics(
        statistics=duration_statistics(durations),
        distribution=duration_distribution(durations),
        by_demographics=durations_by_demographics(records),
    )


class AggregationEngine:
    """Builds gated dashboard views from a participant working set."""
    def __init__(self, settings: Settings):
        self.window = settings.SNAPSHOT_WINDOW
        self.bucket_seconds = settings.BUCKET_SECONDS
        self.threshold = settings.PRIVACY_THRESHOLD

    def load(self, rows: Iterable[Dict]) -> List[ParticipantRecord]:
        return load_participant_records(rows)

    def view(
        self,
        records: Sequence[ParticipantRecord],
        flt: Optional[DemographicFilter] = None,
        query_time: float = 0.0,
        stimulus_duration: float = 0.0,
        previous_snapshot: Optional[EmotionVector] = None,
    ) -> DashboardView:
        """
        Filter, count, and (when at or above the privacy threshold) aggregate.
        The participant count is always reported.
        """
        selected = filter_participants(records, flt or DemographicFilter())
        count = participant_count(selected)
        if count < self.threshold:
            logger.debug(f"[aggregate] {count} participants below threshold {self.threshold}; views suppressed")
            return DashboardView(participant_count=count, threshold=self.threshold, below_threshold=True)

        return DashboardView(
            participant_count=count,
            threshold=self.threshold,
            below_threshold=False,
            snapshot=snapshot_at(selected, query_time, self.window, previous_snapshot),
            timeline=timeline(selected, stimulus_duration, self.bucket_seconds),
            durations=duration_analytics(selected),
        )
