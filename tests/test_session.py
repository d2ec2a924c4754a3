import asyncio
import random

import pytest

from fakes import (
    BlockingClassifier,
    FakeCamera,
    FakeClock,
    FakeRecorder,
    GatedCamera,
    HappyClassifier,
    NoMediaRecorder,
    RecordingStore,
)
from sentiment.camera import AcquisitionError
from sentiment.models import AcquisitionFailure, EmotionVector, SessionState
from sentiment.sampler import ExpressionSampler
from sentiment.session import CaptureSession, MonotonicStimulusClock, SessionStateError


def make_session(settings, classifier=None, recorder=None, store=None, camera=None, clock=None):
    return CaptureSession(
        "p1",
        camera=camera or FakeCamera(),
        sampler=ExpressionSampler(classifier or HappyClassifier(), settings),
        persistence=store if store is not None else RecordingStore(),
        settings=settings,
        recorder=recorder,
        clock=clock or FakeClock(),
    )


def assert_spacing(readings, min_gap=0.4):
    ts = [r.timestamp for r in readings]
    assert ts == sorted(ts)
    assert all(b - a >= min_gap for a, b in zip(ts, ts[1:]))


def test_session_lifecycle(settings):
    async def scenario():
        store = RecordingStore()
        camera = FakeCamera()
        session = make_session(settings, recorder=FakeRecorder(), store=store, camera=camera)
        states = []
        session.subscribe(lambda state, status: states.append(state))
        await session.arm()
        await session.start()
        assert session.recording_enabled
        await asyncio.sleep(0.3)
        outcome = await session.stop()
        await session.persist_task
        return session, outcome, store, states, camera

    session, outcome, store, states, camera = asyncio.run(scenario())
    assert states == [SessionState.ARMED, SessionState.RUNNING,
                      SessionState.FINALIZING, SessionState.COMPLETED]
    assert outcome.state == SessionState.COMPLETED
    assert len(outcome.readings) >= 1
    assert_spacing(outcome.readings)
    # wall-clock delta from the recorder's start/stop stamps
    assert (outcome.duration.seconds, outcome.duration.source) == (12.5, "recorder-timing")
    assert outcome.media is not None
    pid, readings, duration, media = store.writes[0]
    assert pid == "p1" and readings == outcome.readings and media.path == "/tmp/fake.webm"
    assert camera.stream.released


def test_debounce_holds_for_random_sampler_output(settings):
    class Flaky:
        def __init__(self, rng):
            self.rng = rng
        def detect(self, frame):
            if self.rng.random() < 0.3:
                return None
            return EmotionVector(happy=self.rng.random())

    class JitterClock(FakeClock):
        def __init__(self, rng):
            super().__init__()
            self.rng = rng
        def now(self):
            if self.running:
                self.t += self.rng.choice([0.05, 0.2, 0.35, 0.5, 0.61])
            return self.t

    async def scenario(seed):
        rng = random.Random(seed)
        session = make_session(settings, classifier=Flaky(rng), clock=JitterClock(rng))
        await session.arm()
        await session.start()
        await asyncio.sleep(0.2)
        return await session.stop()

    for seed in range(3):
        outcome = asyncio.run(scenario(seed))
        assert_spacing(outcome.readings)


def test_no_supported_codec_still_completes(settings):
    async def scenario():
        recorder = FakeRecorder(codec=None)
        session = make_session(settings, recorder=recorder)
        await session.arm()
        await session.start()
        await asyncio.sleep(0.1)
        return session, recorder, await session.stop()

    session, recorder, outcome = asyncio.run(scenario())
    assert outcome.state == SessionState.COMPLETED
    assert len(outcome.readings) > 0
    assert outcome.media is None
    assert outcome.duration.source == "stimulus-clock"
    assert not recorder.stopped
    assert "no supported encoding" in session.hint


def test_recorder_start_failure_degrades(settings):
    async def scenario():
        session = make_session(settings, recorder=FakeRecorder(start_error=RuntimeError("codec busy")))
        await session.arm()
        await session.start()
        assert session.state == SessionState.RUNNING
        assert not session.recording_enabled
        await asyncio.sleep(0.1)
        return await session.stop()

    outcome = asyncio.run(scenario())
    assert outcome.state == SessionState.COMPLETED
    assert outcome.readings


def test_recorder_stop_failure_forwards_readings(settings):
    async def scenario():
        store = RecordingStore()
        session = make_session(settings, store=store,
                               recorder=FakeRecorder(stop_error=RuntimeError("encoder crashed")))
        await session.arm()
        await session.start()
        await asyncio.sleep(0.1)
        outcome = await session.stop()
        await session.persist_task
        return outcome, store

    outcome, store = asyncio.run(scenario())
    assert outcome.state == SessionState.FAILED
    assert outcome.media is None
    _, readings, duration, media = store.writes[0]
    assert readings and media is None
    assert 0.1 <= duration.seconds <= 3600


def test_stop_while_classifier_in_flight(settings):
    async def scenario():
        clf = BlockingClassifier()
        session = make_session(settings, classifier=clf)
        await session.arm()
        await session.start()
        await asyncio.wait_for(clf.started.wait(), timeout=1.0)
        await asyncio.sleep(0.05)  # several ticks fire while the call is pending
        outcome = await session.stop()
        clf.release.set()
        await asyncio.sleep(0.05)
        return clf, session, outcome

    clf, session, outcome = asyncio.run(scenario())
    assert outcome.readings == []
    assert session.readings == ()
    # overlapping ticks were skipped, not queued
    assert clf.calls == 1


def test_stimulus_end_finalizes(settings):
    async def scenario():
        session = make_session(settings)
        await session.arm()
        await session.start()
        await asyncio.sleep(0.05)
        session.stimulus_ended()
        outcome = await session.wait()
        again = await session.stop()
        return session, outcome, again

    session, outcome, again = asyncio.run(scenario())
    assert session.state == SessionState.COMPLETED
    assert again is outcome
    assert session.status().duration == outcome.duration


def test_acquisition_failure_is_retryable(settings):
    async def scenario():
        camera = FakeCamera(failures=[AcquisitionFailure.PERMISSION_DENIED])
        session = make_session(settings, camera=camera)
        with pytest.raises(AcquisitionError) as ei:
            await session.arm()
        assert ei.value.cause == AcquisitionFailure.PERMISSION_DENIED
        assert session.state == SessionState.IDLE
        await session.arm()
        return session, camera

    session, camera = asyncio.run(scenario())
    assert session.state == SessionState.ARMED
    assert camera.calls == 2


def test_illegal_commands_rejected(settings):
    async def scenario():
        session = make_session(settings)
        with pytest.raises(SessionStateError):
            await session.start()
        await session.arm()
        with pytest.raises(SessionStateError):
            await session.arm()
        with pytest.raises(SessionStateError):
            await session.stop()
        session.close()

    asyncio.run(scenario())


def test_persistence_failure_does_not_reopen(settings):
    async def scenario():
        store = RecordingStore(error=RuntimeError("database down"))
        session = make_session(settings, store=store)
        await session.arm()
        await session.start()
        await asyncio.sleep(0.05)
        outcome = await session.stop()
        results = await asyncio.gather(session.persist_task, return_exceptions=True)
        return session, outcome, results

    session, outcome, results = asyncio.run(scenario())
    assert isinstance(results[0], RuntimeError)
    assert outcome.state == SessionState.COMPLETED
    assert session.state == SessionState.COMPLETED


def test_teardown_releases_without_persisting(settings):
    async def scenario():
        store = RecordingStore()
        camera = FakeCamera()
        recorder = FakeRecorder()

        def broken_release():
            raise OSError("device gone")
        camera.stream.release = broken_release

        session = make_session(settings, recorder=recorder, store=store, camera=camera)
        await session.arm()
        await session.start()
        await asyncio.sleep(0.05)
        session.close()  # must not raise
        session.close()
        await asyncio.sleep(0.05)
        return session, recorder, store

    session, recorder, store = asyncio.run(scenario())
    assert session.state == SessionState.IDLE
    assert recorder.aborted
    assert store.writes == []
    assert session.stream is None


def test_teardown_during_finalization_lets_it_finish(settings):
    class SlowStopRecorder(FakeRecorder):
        def __init__(self):
            super().__init__()
            self.gate = asyncio.Event()
        async def stop(self, handle):
            await self.gate.wait()
            return await super().stop(handle)

    async def scenario():
        store = RecordingStore()
        recorder = SlowStopRecorder()
        session = make_session(settings, recorder=recorder, store=store)
        await session.arm()
        await session.start()
        await asyncio.sleep(0.05)
        stopping = asyncio.create_task(session.stop())
        while session.state != SessionState.FINALIZING:
            await asyncio.sleep(0.005)
        session.close()
        assert session.state == SessionState.FINALIZING
        recorder.gate.set()
        outcome = await stopping
        await session.persist_task
        return outcome, store

    outcome, store = asyncio.run(scenario())
    assert outcome.state == SessionState.COMPLETED
    assert len(store.writes) == 1


def test_monotonic_stimulus_clock():
    t = {"now": 100.0}
    clock = MonotonicStimulusClock(monotonic=lambda: t["now"])
    assert clock.now() == 0.0
    clock.start()
    t["now"] = 102.5
    assert clock.now() == 2.5
    clock.stop()
    t["now"] = 110.0
    assert clock.now() == 2.5


def test_teardown_during_acquisition_releases_camera(settings):
    async def scenario():
        camera = GatedCamera()
        session = make_session(settings, camera=camera)
        arming = asyncio.create_task(session.arm())
        await camera.entered.wait()
        session.close()
        camera.gate.set()
        with pytest.raises(SessionStateError):
            await arming
        return session, camera

    session, camera = asyncio.run(scenario())
    assert session.state == SessionState.IDLE
    assert session.stream is None
    assert camera.stream.released


def test_sampling_runs_while_codec_probe_pending(settings):
    class SlowProbeRecorder(FakeRecorder):
        def __init__(self):
            super().__init__()
            self.gate = asyncio.Event()
        async def supported_codec(self):
            await self.gate.wait()
            return self.codec

    async def scenario():
        clf = HappyClassifier()
        recorder = SlowProbeRecorder()
        session = make_session(settings, classifier=clf, recorder=recorder)
        await session.arm()
        starting = asyncio.create_task(session.start())
        await asyncio.sleep(0.1)
        calls_during_probe = clf.calls
        recorder.gate.set()
        await starting
        enabled = session.recording_enabled
        outcome = await session.stop()
        return calls_during_probe, enabled, outcome

    calls_during_probe, enabled, outcome = asyncio.run(scenario())
    assert calls_during_probe > 0
    assert enabled
    assert outcome.state == SessionState.COMPLETED


def test_recorder_without_media_completes(settings):
    async def scenario():
        store = RecordingStore()
        recorder = NoMediaRecorder()
        session = make_session(settings, recorder=recorder, store=store)
        await session.arm()
        await session.start()
        await asyncio.sleep(0.05)
        outcome = await session.stop()
        await session.persist_task
        return outcome, recorder, store

    outcome, recorder, store = asyncio.run(scenario())
    assert recorder.stopped
    assert outcome.state == SessionState.COMPLETED
    assert outcome.media is None
    assert outcome.readings
    assert store.writes[0][3] is None


def test_unexpected_finalize_error_still_resolves(settings):
    class BrokenClock(FakeClock):
        broken = False
        def now(self):
            if self.broken:
                raise RuntimeError("clock source lost")
            return super().now()

    async def scenario():
        store = RecordingStore()
        clock = BrokenClock()
        recorder = FakeRecorder()
        camera = FakeCamera()
        session = make_session(settings, store=store, clock=clock, recorder=recorder, camera=camera)
        await session.arm()
        await session.start()
        await asyncio.sleep(0.05)
        clock.broken = True
        outcome = await asyncio.wait_for(session.stop(), timeout=1.0)
        await session.persist_task
        return session, outcome, store, recorder, camera

    session, outcome, store, recorder, camera = asyncio.run(scenario())
    assert session.state == SessionState.FAILED
    assert outcome.state == SessionState.FAILED
    assert outcome.readings
    assert store.writes[0][1] == outcome.readings
    assert outcome.duration.source == "fallback-minimum"
    assert len(store.writes) == 1
    assert recorder.aborted
    assert camera.stream.released
