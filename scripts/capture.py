"""
CLI to run one webcam capture session -> JSON.

The stimulus is simulated by a fixed length; the session finalizes when it
ends or on Ctrl+C.
"""
from __future__ import annotations
import argparse, asyncio, json, logging

from sentiment.camera import AcquisitionError, OpenCVCamera
from sentiment.config import Settings
from sentiment.recorder import OpenCVRecorder
from sentiment.sampler import DeepFaceClassifier, ExpressionSampler
from sentiment.session import CaptureSession
from sentiment.store import JsonSessionStore


async def run(participant_id: str, stimulus_seconds: float, settings: Settings, record: bool) -> dict:
    store = JsonSessionStore(settings)
    session = CaptureSession(
        participant_id,
        camera=OpenCVCamera(settings),
        sampler=ExpressionSampler(DeepFaceClassifier(settings), settings),
        persistence=store,
        settings=settings,
        recorder=OpenCVRecorder(settings) if record else None,
    )
    session.subscribe(lambda state, status: print(f"[{state.value}] readings={status.reading_count}"))
    try:
        await session.arm()
    except AcquisitionError as e:
        return {"participant_id": participant_id, "error": e.cause.value, "message": str(e)}

    await session.start()
    asyncio.get_running_loop().call_later(stimulus_seconds, session.stimulus_ended)
    try:
        outcome = await session.wait()
    finally:
        session.close()
    if session.persist_task is not None:
        await session.persist_task
    return outcome.model_dump(mode="json") if outcome else session.status().model_dump(mode="json")


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--participant", required=True, help="Participant id")
    p.add_argument("--seconds", type=float, default=30.0, help="Stimulus length in seconds")
    p.add_argument("--no-record", action="store_true", help="Sample expressions without recording video")
    p.add_argument("--verbose", action="store_true")
    args = p.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    settings = Settings()
    try:
        result = asyncio.run(run(args.participant, args.seconds, settings, record=not args.no_record))
    except KeyboardInterrupt:
        print("Interrupted; partial session not saved")
        return
    print(json.dumps(result, indent=2, ensure_ascii=False))

if __name__ == "__main__":
    main()
