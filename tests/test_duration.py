import random

from sentiment.duration import (
    duration_statistics,
    format_duration,
    format_precise_duration,
    reconcile_duration,
    validate_duration,
)


def test_validate_duration_bounds(fixed_settings):
    assert validate_duration(12.34567, fixed_settings) == (12.346, True, None)
    d, ok, err = validate_duration(0.01, fixed_settings)
    assert (d, ok) == (0.1, False) and "below minimum" in err
    d, ok, err = validate_duration(7200, fixed_settings)
    assert (d, ok) == (3600.0, False) and "exceeds maximum" in err
    assert validate_duration(None, fixed_settings)[:2] == (0.1, False)
    assert validate_duration(float("nan"), fixed_settings)[:2] == (0.1, False)


def test_reconciled_value_always_in_range(fixed_settings):
    rng = random.Random(7)
    values = [rng.uniform(-100, 10000) for _ in range(500)] + [0.0, 0.1, 3600.0, 1e9, -1e-9]
    for v in values:
        r = reconcile_duration(fixed_settings, stimulus_time=v)
        assert 0.1 <= r.seconds <= 3600
        assert r.seconds == round(r.seconds, 3)
        in_bounds = 0.1 <= v <= 3600
        assert r.is_valid == in_bounds
        if not in_bounds:
            assert r.reason  # diagnostics retained


def test_wall_clock_delta_preferred_over_stimulus_clock(fixed_settings):
    r = reconcile_duration(fixed_settings, recording_started_at=100.0,
                           recording_stopped_at=125.5, stimulus_time=24.0)
    assert (r.seconds, r.source, r.is_valid) == (25.5, "recorder-timing", True)


def test_recorder_reported_timing_overrides(fixed_settings):
    r = reconcile_duration(fixed_settings, recording_started_at=100.0, recording_stopped_at=125.5,
                           stimulus_time=24.0, recorder_timing=25.25)
    assert r.seconds == 25.25 and r.source == "recorder-timing"


def test_out_of_bounds_wall_clock_falls_back_to_stimulus(fixed_settings):
    r = reconcile_duration(fixed_settings, recording_started_at=0.0, recording_stopped_at=99999.0,
                           stimulus_time=30.0)
    assert (r.seconds, r.source, r.is_valid) == (30.0, "stimulus-clock", True)


def test_no_in_bounds_candidate_clamps_highest_priority(fixed_settings):
    r = reconcile_duration(fixed_settings, recording_started_at=0.0, recording_stopped_at=5000.0,
                           stimulus_time=0.0)
    assert r.seconds == 3600.0
    assert r.source == "recorder-timing"
    assert not r.is_valid
    assert "exceeds maximum" in r.reason and "below minimum" in r.reason


def test_no_signal_uses_minimum_floor(fixed_settings):
    r = reconcile_duration(fixed_settings)
    assert (r.seconds, r.source, r.is_valid) == (0.1, "fallback-minimum", False)
    # a start without a stop is not a usable delta
    r = reconcile_duration(fixed_settings, recording_started_at=10.0)
    assert r.source == "fallback-minimum"


def test_format_duration():
    assert format_duration(0) == "00:00"
    assert format_duration(-3) == "00:00"
    assert format_duration(75.9) == "01:15"
    assert format_precise_duration(75.25) == "01:15.250"
    assert format_precise_duration(0) == "00:00.000"
    assert format_precise_duration(59.9996) == "01:00.000"


def test_duration_statistics():
    stats = duration_statistics([10.0, 20.0, 30.0, 40.0, 0.0])
    assert stats.count == 4
    assert stats.total == 100.0
    assert stats.average == 25.0
    assert (stats.min, stats.max) == (10.0, 40.0)
    assert stats.median == 25.0
    empty = duration_statistics([])
    assert empty.count == 0 and empty.average == 0.0
