"""
Duration reconciliation for finished capture sessions.

Several timing signals may be available when a session finalizes:
  1. the recorder's own timing, when it reports one
  2. wall-clock delta between recorder start and stop
  3. stimulus-clock position at the finalize instant

The reconciler always returns a duration. Candidates outside
[MIN_DURATION, MAX_DURATION] are clamped and flagged invalid.
"""
from __future__ import annotations
from typing import List, Optional, Sequence, Tuple
import logging
import math

import numpy as np

from sentiment.config import Settings
from sentiment.models import DurationSource, DurationStatistics, ReconciledDuration

logger = logging.getLogger(__name__)


def validate_duration(
    duration: Optional[float],
    settings: Settings,
) -> Tuple[float, bool, Optional[str]]:
    """
    Clamp and round a single duration candidate.

    Returns:
      (seconds, is_valid, error)
    """
    lo, hi = settings.MIN_DURATION, settings.MAX_DURATION
    if duration is None:
        return lo, False, "Duration is missing"
    try:
        d = float(duration)
    except (TypeError, ValueError):
        return lo, False, f"Duration {duration!r} is not a number"
    if math.isnan(d):
        return lo, False, "Duration is not a number"
    if d < lo:
        return lo, False, f"Duration {d}s is below minimum {lo}s"
    if d > hi:
        return hi, False, f"Duration {d}s exceeds maximum {hi}s"
    return round(d, settings.DURATION_DECIMALS), True, None


def _present(v: Optional[float]) -> bool:
    if v is None:
        return False
    try:
        return not math.isnan(float(v))
    except (TypeError, ValueError):
        return False


def reconcile_duration(
    settings: Settings,
    recording_started_at: Optional[float] = None,
    recording_stopped_at: Optional[float] = None,
    stimulus_time: Optional[float] = None,
    recorder_timing: Optional[float] = None,
) -> ReconciledDuration:
    """
    Pick one validated duration from the available timing signals.

    Priority: recorder-reported timing, then the wall-clock recording delta,
    then the stimulus clock. The first in-bounds candidate wins. When none is
    in bounds the highest-priority present candidate is clamped and marked
    invalid; with no candidate at all the minimum floor is used.
    """
    wall_delta = None
    if _present(recording_started_at) and _present(recording_stopped_at):
        wall_delta = float(recording_stopped_at) - float(recording_started_at)

    candidates: List[Tuple[DurationSource, Optional[float]]] = [
        ("recorder-timing", recorder_timing),
        ("recorder-timing", wall_delta),
        ("stimulus-clock", stimulus_time),
    ]
    present = [(src, float(v)) for src, v in candidates if _present(v)]
    logger.debug(f"[duration] candidates={present}")

    rejected: List[str] = []
    for src, value in present:
        seconds, ok, err = validate_duration(value, settings)
        if ok:
            return ReconciledDuration(seconds=seconds, source=src, is_valid=True)
        rejected.append(f"{src}: {err}")

    if present:
        src, value = present[0]
        seconds, _, _ = validate_duration(value, settings)
        reason = "; ".join(rejected)
        logger.warning(f"[duration] no in-bounds candidate, clamped {value} -> {seconds} ({reason})")
        return ReconciledDuration(seconds=seconds, source=src, is_valid=False, reason=reason)

    logger.warning("[duration] no duration signal available; using minimum floor")
    return ReconciledDuration(
        seconds=settings.MIN_DURATION,
        source="fallback-minimum",
        is_valid=False,
        reason="No valid duration source available",
    )


def format_duration(seconds: float) -> str:
    """MM:SS"""
    if not seconds or seconds < 0:
        return "00:00"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes:02d}:{secs:02d}"


def format_precise_duration(seconds: float) -> str:
    """MM:SS.mmm"""
    if not seconds or seconds < 0:
        return "00:00.000"
    total_ms = int(round(seconds * 1000))
    minutes, rem = divmod(total_ms, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{minutes:02d}:{secs:02d}.{ms:03d}"


def duration_statistics(durations: Sequence[float]) -> DurationStatistics:
    """Summary statistics over positive durations, rounded to milliseconds."""
    valid = np.array([float(d) for d in durations if d is not None and d > 0], dtype=float)
    if valid.size == 0:
        return DurationStatistics()
    return DurationStatistics(
        count=int(valid.size),
        total=round(float(valid.sum()), 3),
        average=round(float(valid.mean()), 3),
        min=float(valid.min()),
        max=float(valid.max()),
        median=round(float(np.median(valid)), 3),
    )
