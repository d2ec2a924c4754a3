# sentiment/session.py
"""
Capture session state machine.

One session per participant attempt:

    IDLE -> ARMED -> RUNNING -> FINALIZING -> COMPLETED | FAILED

All work is driven from one asyncio mailbox. The sampling timer, classifier
results and stop requests are posted as events and handled in order by a
single consumer, which checks the current state before acting. At the
RUNNING -> FINALIZING transition the reading buffer and the stimulus clock are
captured by value; nothing appended afterwards reaches persistence.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from sentiment.camera import AcquisitionError
from sentiment.config import Settings
from sentiment.duration import reconcile_duration
from sentiment.models import (
    AcquisitionFailure,
    ReconciledDuration,
    RecordedMedia,
    SentimentReading,
    SessionOutcome,
    SessionState,
    SessionStatus,
)
from sentiment.sampler import ExpressionSampler

logger = logging.getLogger(__name__)

TERMINAL = (SessionState.COMPLETED, SessionState.FAILED)

Listener = Callable[[SessionState, SessionStatus], None]


class SessionStateError(RuntimeError):
    """Command is not legal in the session's current state."""


class MonotonicStimulusClock:
    """Seconds since start(); frozen once stopped."""
    def __init__(self, monotonic=time.monotonic):
        self._monotonic = monotonic
        self._t0: Optional[float] = None
        self._frozen: Optional[float] = None

    def start(self) -> None:
        self._t0 = self._monotonic()
        self._frozen = None

    def stop(self) -> None:
        if self._frozen is None:
            self._frozen = self.now()

    def now(self) -> float:
        if self._frozen is not None:
            return self._frozen
        if self._t0 is None:
            return 0.0
        return max(0.0, self._monotonic() - self._t0)


# ---- mailbox events ----
@dataclass(frozen=True)
class _Tick:
    pass


@dataclass(frozen=True)
class _ReadingReady:
    reading: SentimentReading


@dataclass(frozen=True)
class _Finalize:
    reason: str  # "manual-stop" | "stimulus-ended"


class CaptureSession:
    """
    Coordinates camera, sampler, recorder and persistence for one participant.

    Collaborators:
      camera       -- `await camera.acquire()` -> stream with latest_frame()/release()
      sampler      -- ExpressionSampler
      persistence  -- `await persistence.write(participant_id, readings, duration, media)`
      recorder     -- optional; await supported_codec() / start(stream) / stop(handle) / abort(handle)
      clock        -- stimulus clock with start()/stop()/now()
    """
    def __init__(
        self,
        participant_id: str,
        camera,
        sampler: ExpressionSampler,
        persistence,
        settings: Settings,
        recorder=None,
        clock=None,
        wallclock: Callable[[], float] = time.time,
    ):
        self.participant_id = participant_id
        self.camera = camera
        self.sampler = sampler
        self.persistence = persistence
        self.recorder = recorder
        self.clock = clock or MonotonicStimulusClock()
        self.wallclock = wallclock

        self.interval = settings.SAMPLE_INTERVAL
        self.debounce = settings.DEBOUNCE_SECONDS
        self.settings = settings

        self.state = SessionState.IDLE
        self.stream = None
        self.hint: Optional[str] = None
        self.outcome: Optional[SessionOutcome] = None
        self.persist_task: Optional[asyncio.Future] = None

        self._readings: List[SentimentReading] = []
        self._listeners: List[Listener] = []
        self._mailbox: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._done: Optional[asyncio.Future] = None
        # bumped by close(); an acquire that straddles a teardown is discarded
        self._generation = 0
        self._recording = None
        self._recording_started_at: Optional[float] = None
        self._duration: Optional[ReconciledDuration] = None

    # ---- observation ----
    @property
    def readings(self) -> Tuple[SentimentReading, ...]:
        return tuple(self._readings)

    @property
    def recording_enabled(self) -> bool:
        return self._recording is not None

    def status(self) -> SessionStatus:
        return SessionStatus(
            participant_id=self.participant_id,
            state=self.state,
            reading_count=len(self._readings),
            recording_enabled=self.recording_enabled,
            last_reading=self._readings[-1] if self._readings else None,
            duration=self._duration,
            hint=self.hint,
        )

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        logger.info(f"[session] {self.participant_id}: {self.state.value} -> {state.value}")
        self.state = state
        snapshot = self.status()
        for listener in list(self._listeners):
            try:
                listener(state, snapshot)
            except Exception:
                logger.exception("[session] state listener failed")

    # ---- commands ----
    async def arm(self) -> None:
        """IDLE -> ARMED once the camera stream is acquired. Retryable on failure."""
        if self.state != SessionState.IDLE:
            raise SessionStateError(f"arm() not allowed in state {self.state.value}")
        generation = self._generation
        try:
            stream = await self.camera.acquire()
        except AcquisitionError as e:
            logger.warning(f"[session] camera acquisition failed cause={e.cause.value}: {e}")
            raise
        except Exception as e:
            logger.exception("[session] camera acquisition failed unexpectedly")
            raise AcquisitionError(AcquisitionFailure.OTHER, str(e)) from e
        if generation != self._generation or self.state != SessionState.IDLE:
            logger.info(f"[session] {self.participant_id}: torn down during acquisition; releasing camera")
            self._release(stream)
            raise SessionStateError("session was closed while the camera was being acquired")
        self.stream = stream
        self._set_state(SessionState.ARMED)

    async def start(self) -> None:
        """ARMED -> RUNNING: start the stimulus clock, sampling timer and recorder."""
        if self.state != SessionState.ARMED:
            raise SessionStateError(f"start() not allowed in state {self.state.value}")
        loop = asyncio.get_running_loop()
        self._mailbox = asyncio.Queue()
        self._done = loop.create_future()

        self.clock.start()
        self._set_state(SessionState.RUNNING)
        self._consumer = asyncio.create_task(self._consume())
        self._ticker = asyncio.create_task(self._tick_loop())
        await self._start_recorder()

    async def _start_recorder(self) -> None:
        if self.recorder is None:
            self._degrade("recording disabled: no recorder configured")
            return
        try:
            codec = await self.recorder.supported_codec()
        except Exception:
            logger.exception("[session] codec probe failed")
            codec = None
        if self.state != SessionState.RUNNING:
            return
        if codec is None:
            self._degrade("recording disabled: no supported encoding")
            return
        try:
            handle = await self.recorder.start(self.stream)
        except Exception as e:
            logger.exception("[session] recorder failed to start")
            self._degrade(f"recording disabled: {e}")
            return
        if self.state != SessionState.RUNNING:
            # finalized while the recorder was starting
            self._abort_recorder(handle)
            return
        self._recording = handle
        self._recording_started_at = getattr(handle, "started_at", None) or self.wallclock()
        logger.info(f"[session] {self.participant_id}: recording started codec={codec}")

    def _degrade(self, hint: str) -> None:
        self.hint = hint
        logger.warning(f"[session] {self.participant_id}: {hint}; sampling continues")

    def stimulus_ended(self) -> None:
        """Natural end of the stimulus media."""
        self._post(_Finalize("stimulus-ended"))

    async def stop(self) -> Optional[SessionOutcome]:
        """Manual stop. Waits for finalization and returns the persisted outcome."""
        if self.state in TERMINAL:
            return self.outcome
        if self.state not in (SessionState.RUNNING, SessionState.FINALIZING):
            raise SessionStateError(f"stop() not allowed in state {self.state.value}")
        self._post(_Finalize("manual-stop"))
        return await self.wait()

    async def wait(self) -> Optional[SessionOutcome]:
        if self._done is None:
            return self.outcome
        return await asyncio.shield(self._done)

    def _post(self, event) -> None:
        if self._mailbox is None:
            logger.debug(f"[session] dropped {type(event).__name__}: session not running")
            return
        self._mailbox.put_nowait(event)

    # ---- loops ----
    async def _tick_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_t = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, next_t - loop.time()))
            next_t += self.interval
            self._post(_Tick())

    async def _consume(self) -> None:
        while self.state not in TERMINAL:
            event = await self._mailbox.get()
            try:
                if isinstance(event, _Tick):
                    self._on_tick()
                elif isinstance(event, _ReadingReady):
                    self._on_reading(event.reading)
                elif isinstance(event, _Finalize):
                    await self._on_finalize(event.reason)
            except Exception:
                logger.exception(f"[session] failed handling {type(event).__name__}")

    def _on_tick(self) -> None:
        if self.state != SessionState.RUNNING:
            return
        if self._inflight is not None and not self._inflight.done():
            logger.debug("[session] classifier still busy; tick skipped")
            return
        frame = self.stream.latest_frame()
        t = self.clock.now()
        self._inflight = asyncio.create_task(self._classify(frame, t))

    async def _classify(self, frame, t: float) -> None:
        reading = await self.sampler.sample(frame, t)
        if reading is not None:
            self._post(_ReadingReady(reading))

    def _on_reading(self, reading: SentimentReading) -> None:
        if self.state != SessionState.RUNNING:
            logger.debug(f"[session] late reading t={reading.timestamp:.3f}s discarded in {self.state.value}")
            return
        if self._readings:
            gap = reading.timestamp - self._readings[-1].timestamp
            if gap < self.debounce:
                logger.debug(f"[session] reading t={reading.timestamp:.3f}s skipped; {gap:.3f}s since last")
                return
        self._readings.append(reading)
        logger.debug(f"[session] reading #{len(self._readings)} t={reading.timestamp:.3f}s "
                     f"dominant={reading.expressions.dominant()}")

    # ---- finalization ----
    async def _on_finalize(self, reason: str) -> None:
        if self.state != SessionState.RUNNING:
            return
        try:
            await self._finalize(reason)
        except Exception:
            logger.exception(f"[session] {self.participant_id}: finalization failed")
            self._fail_finalization()
        finally:
            if self._done is not None and not self._done.done():
                self._done.set_result(self.outcome)

    async def _finalize(self, reason: str) -> None:
        # capture by value at the transition instant
        captured = tuple(self._readings)
        stimulus_time = self.clock.now()
        stopped_wall = self.wallclock()
        self.clock.stop()
        self._set_state(SessionState.FINALIZING)
        logger.info(f"[session] {self.participant_id}: finalizing ({reason}) "
                    f"readings={len(captured)} stimulus_time={stimulus_time:.3f}s")

        self._cancel_timers()

        failed = False
        media: Optional[RecordedMedia] = None
        handle, self._recording = self._recording, None
        if handle is not None:
            try:
                media = await self.recorder.stop(handle)
                if media is not None:
                    stopped_wall = media.stopped_at
            except Exception:
                logger.exception("[session] recorder stop failed; forwarding readings without media")
                failed = True
                media = None

        try:
            duration = reconcile_duration(
                self.settings,
                recording_started_at=self._recording_started_at,
                recording_stopped_at=stopped_wall if self._recording_started_at is not None else None,
                stimulus_time=stimulus_time,
                recorder_timing=media.reported_duration if media is not None else None,
            )
        except Exception as e:
            logger.exception("[session] duration reconciliation failed")
            failed = True
            duration = ReconciledDuration(
                seconds=self.settings.MIN_DURATION,
                source="fallback-minimum",
                is_valid=False,
                reason=str(e),
            )
        self._duration = duration

        final_state = SessionState.FAILED if failed else SessionState.COMPLETED
        self.outcome = SessionOutcome(
            participant_id=self.participant_id,
            state=final_state,
            readings=list(captured),
            duration=duration,
            media=media,
        )
        self._persist(self.outcome)
        self._set_state(final_state)
        self._release_stream()

    def _fail_finalization(self) -> None:
        """Unexpected error mid-finalize: end FAILED, still forwarding what was captured."""
        self._cancel_timers()
        handle, self._recording = self._recording, None
        if handle is not None:
            self._abort_recorder(handle)
        if self.outcome is None:
            self._duration = ReconciledDuration(
                seconds=self.settings.MIN_DURATION,
                source="fallback-minimum",
                is_valid=False,
                reason="finalization failed",
            )
            self.outcome = SessionOutcome(
                participant_id=self.participant_id,
                state=SessionState.FAILED,
                readings=list(self._readings),
                duration=self._duration,
            )
            self._persist(self.outcome)
        self._set_state(self.outcome.state)
        self._release_stream()

    def _persist(self, outcome: SessionOutcome) -> None:
        """Fire-and-forget handoff; failures are logged, never re-open the session."""
        try:
            result = self.persistence.write(
                outcome.participant_id, list(outcome.readings), outcome.duration, outcome.media,
            )
        except Exception:
            logger.exception(f"[session] persistence write failed for {outcome.participant_id}")
            return
        if not inspect.isawaitable(result):
            return
        self.persist_task = asyncio.ensure_future(result)
        self.persist_task.add_done_callback(self._on_persisted)

    def _on_persisted(self, task: asyncio.Future) -> None:
        if task.cancelled():
            logger.warning(f"[session] persistence for {self.participant_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[session] persistence failed for {self.participant_id}", exc_info=exc)
        else:
            logger.debug(f"[session] persisted {self.participant_id}")

    # ---- teardown ----
    def _cancel_timers(self) -> None:
        for task in (self._ticker, self._inflight):
            if task is not None and not task.done():
                task.cancel()
        self._ticker = None
        self._inflight = None

    def _abort_recorder(self, handle) -> None:
        try:
            self.recorder.abort(handle)
        except Exception:
            logger.exception("[session] recorder force-stop failed")

    def _release_stream(self) -> None:
        stream, self.stream = self.stream, None
        self._release(stream)

    def _release(self, stream) -> None:
        if stream is None:
            return
        try:
            stream.release()
        except Exception:
            logger.exception("[session] camera release failed")

    def close(self) -> None:
        """
        Tear down from any state. Releases the camera, cancels the timer and
        force-stops a live recorder. Partial data is not persisted. A
        finalization already in flight is left to complete. Never raises.
        """
        try:
            if self.state == SessionState.FINALIZING:
                logger.info(f"[session] {self.participant_id}: teardown deferred to finalization")
                return
            self._generation += 1
            self._cancel_timers()
            if self._consumer is not None and not self._consumer.done():
                self._consumer.cancel()
            self._consumer = None
            self._mailbox = None
            handle, self._recording = self._recording, None
            if handle is not None:
                self._abort_recorder(handle)
            self._release_stream()
            self.clock.stop()
            if self._done is not None and not self._done.done():
                self._done.set_result(None)
            if self.state not in TERMINAL:
                self._set_state(SessionState.IDLE)
        except Exception:
            logger.exception("[session] teardown failed")
