"""
REST endpoints for capture sessions and the dashboard.
"""
from collections import OrderedDict
from typing import Dict, Optional, Tuple
import logging

from fastapi import APIRouter, HTTPException, Query

from sentiment.aggregation import AggregationEngine
from sentiment.camera import AcquisitionError, OpenCVCamera
from sentiment.config import Settings
from sentiment.models import Demographics, DemographicFilter, EmotionVector, SessionState
from sentiment.recorder import OpenCVRecorder
from sentiment.sampler import DeepFaceClassifier, ExpressionSampler
from sentiment.session import CaptureSession, SessionStateError, TERMINAL
from sentiment.store import JsonSessionStore

router = APIRouter()
settings = Settings()
store = JsonSessionStore(settings)
engine = AggregationEngine(settings)
logger = logging.getLogger(__name__)

# participant_id -> most recent session
sessions: Dict[str, CaptureSession] = {}
# (stimulus, filter) -> last non-empty snapshot, so the dashboard does not flicker to empty
SNAPSHOT_CACHE_SIZE = 256
_last_snapshots: "OrderedDict[Tuple[str, str, str, str, str], EmotionVector]" = OrderedDict()


def build_session(participant_id: str) -> CaptureSession:
    """Wire a session to the local webcam, DeepFace and the OpenCV recorder."""
    return CaptureSession(
        participant_id,
        camera=OpenCVCamera(settings),
        sampler=ExpressionSampler(DeepFaceClassifier(settings), settings),
        persistence=store,
        settings=settings,
        recorder=OpenCVRecorder(settings),
    )


def _get(participant_id: str) -> CaptureSession:
    session = sessions.get(participant_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for participant {participant_id}")
    return session


@router.post("/sessions/{participant_id}/arm")
async def arm_session(participant_id: str):
    """
    Acquire the camera for a participant (IDLE -> ARMED).

    Returns:
        dict: Session status.
    """
    session = sessions.get(participant_id)
    if session is not None and session.state not in TERMINAL and session.state != SessionState.IDLE:
        raise HTTPException(status_code=409, detail=f"Session already {session.state.value}")
    if session is None or session.state in TERMINAL:
        session = build_session(participant_id)
        sessions[participant_id] = session

    logger.debug(f"[api] arm participant={participant_id}")
    try:
        await session.arm()
    except AcquisitionError as e:
        raise HTTPException(status_code=503, detail={"cause": e.cause.value, "message": str(e)})
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.status().model_dump(mode="json")


@router.post("/sessions/{participant_id}/start")
async def start_session(participant_id: str):
    session = _get(participant_id)
    try:
        await session.start()
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.status().model_dump(mode="json")


@router.post("/sessions/{participant_id}/stimulus-ended")
async def stimulus_ended(participant_id: str):
    session = _get(participant_id)
    session.stimulus_ended()
    outcome = await session.wait()
    if outcome is None:
        return session.status().model_dump(mode="json")
    return outcome.model_dump(mode="json", exclude={"readings"}) | {"reading_count": len(outcome.readings)}


@router.post("/sessions/{participant_id}/stop")
async def stop_session(participant_id: str):
    """
    Manual stop: finalize, reconcile duration and hand off to storage.

    Returns:
        dict: Final state, reconciled duration and reading count.
    """
    session = _get(participant_id)
    try:
        outcome = await session.stop()
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if outcome is None:
        return session.status().model_dump(mode="json")
    return outcome.model_dump(mode="json", exclude={"readings"}) | {"reading_count": len(outcome.readings)}


@router.get("/sessions/{participant_id}")
async def session_status(participant_id: str):
    return _get(participant_id).status().model_dump(mode="json")


@router.delete("/sessions/{participant_id}")
async def teardown_session(participant_id: str):
    session = sessions.pop(participant_id, None)
    if session is None:
        return {"status": "not_found"}
    session.close()
    return {"status": "closed", "state": session.state.value}


@router.post("/participants/{participant_id}/demographics")
async def save_demographics(participant_id: str, demographics: Demographics):
    store.save_demographics(participant_id, demographics)
    return {"status": "saved"}


def _remember_snapshot(key: Tuple[str, ...], snapshot: Optional[EmotionVector]) -> None:
    if snapshot is None:
        return
    _last_snapshots[key] = snapshot
    _last_snapshots.move_to_end(key)
    while len(_last_snapshots) > SNAPSHOT_CACHE_SIZE:
        _last_snapshots.popitem(last=False)


@router.get("/dashboard")
async def dashboard(
    age: str = "all",
    gender: str = "all",
    race: str = "all",
    nationality: str = "all",
    t: float = Query(0.0, ge=0),
    stimulus_duration: float = Query(0.0, ge=0),
    stimulus_id: Optional[str] = None,
):
    """
    Aggregated emotion views for the filtered participant set.

    Views are suppressed below the privacy threshold; the participant count
    is always returned.
    """
    flt = DemographicFilter(age=age, gender=gender, race=race, nationality=nationality)
    stimulus = stimulus_id or store.stimulus_id
    key = (stimulus, age, gender, race, nationality)
    records = engine.load(store.read_records(stimulus))
    view = engine.view(records, flt, query_time=t, stimulus_duration=stimulus_duration,
                       previous_snapshot=_last_snapshots.get(key))
    _remember_snapshot(key, view.snapshot)
    logger.debug(f"[api] dashboard filter={key} t={t} participants={view.participant_count} "
                 f"below_threshold={view.below_threshold}")
    return view.model_dump(mode="json")
