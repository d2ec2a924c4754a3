"""
Expression sampling from camera frames with DeepFace.
"""
# sentiment/sampler.py
from __future__ import annotations
from typing import Dict, Optional, Protocol
import asyncio
import inspect
import logging

from sentiment.config import Settings
from sentiment.models import EMOTIONS, EmotionVector, SentimentReading

logger = logging.getLogger(__name__)

# DeepFace label -> EmotionVector field
DEEPFACE_LABELS: Dict[str, str] = {
    "neutral": "neutral",
    "happy": "happy",
    "sad": "sad",
    "angry": "angry",
    "fear": "fearful",
    "disgust": "disgusted",
    "surprise": "surprised",
}

# Tunables to improve detection robustness
MIN_BOX = 40          # px; increase to avoid tiny faces
MIN_DET_CONF = 0.5    # if backend supplies a score


class ExpressionClassifier(Protocol):
    def detect(self, frame) -> Optional[EmotionVector]: ...


def scores_to_vector(scores: Dict[str, float], scale: float = 1.0) -> EmotionVector:
    """Map a classifier's label->score dict onto the seven emotion fields."""
    out = {k: 0.0 for k in EMOTIONS}
    for label, value in (scores or {}).items():
        key = DEEPFACE_LABELS.get(str(label).lower())
        if key is None:
            continue
        try:
            out[key] = max(0.0, float(value) / scale)
        except (TypeError, ValueError):
            continue
    return EmotionVector(**out)


class DeepFaceClassifier:
    """
    Single-face expression classifier backed by DeepFace.

    Faces are detected first; the emotion model only runs when exactly one
    face passes the size/confidence filters. Zero or several faces -> None.
    """
    def __init__(self, settings: Settings):
        self.detector_backend = settings.DETECTOR_BACKEND

    @staticmethod
    def _valid_region(r) -> bool:
        reg = (r or {}).get("region") or {}
        w = int(reg.get("w", 0)); h = int(reg.get("h", 0))
        ok_size = (w >= MIN_BOX and h >= MIN_BOX)
        conf = (r.get("face_confidence") or r.get("detector_score") or 1.0)
        try:
            conf = float(conf)
        except (TypeError, ValueError):
            conf = 1.0
        return ok_size and conf >= MIN_DET_CONF

    def _faces(self, DeepFace, frame) -> list:
        faces = []
        try:
            dets = DeepFace.extract_faces(
                img_path=frame,
                detector_backend=self.detector_backend,
                enforce_detection=False,
                align=True,
            )
            for d in dets or []:
                fa = d.get("facial_area") or {}
                blob = {"region": {"x": fa.get("x", 0), "y": fa.get("y", 0),
                                   "w": fa.get("w", 0), "h": fa.get("h", 0)},
                        "face_confidence": d.get("confidence", 1.0)}
                if self._valid_region(blob):
                    faces.append(blob)
        except Exception:
            # Fallback to analyze to get regions if extract not available
            res = DeepFace.analyze(
                frame,
                actions=["emotion"],
                enforce_detection=False,
                detector_backend=self.detector_backend,
            )
            res = res if isinstance(res, list) else [res]
            faces = [r for r in res if self._valid_region(r)]
        return faces

    def detect(self, frame) -> Optional[EmotionVector]:
        # Lazy import for easier testing and to avoid loading heavy stacks too early
        from deepface import DeepFace

        faces = self._faces(DeepFace, frame)
        logger.debug(f"[sampler] faces_detected={len(faces)}")
        if len(faces) != 1:
            return None

        reg = faces[0].get("region") or {}
        x, y, w, h = int(reg.get("x", 0)), int(reg.get("y", 0)), int(reg.get("w", 0)), int(reg.get("h", 0))
        chip = frame[y:y+h, x:x+w]
        emo = DeepFace.analyze(
            chip if chip.size else frame,
            actions=["emotion"],
            enforce_detection=False,
            detector_backend=self.detector_backend,
            align=True,
        )
        emo = emo if isinstance(emo, list) else [emo]
        r0 = emo[0] if emo else {}
        scores = r0.get("emotion")
        if not isinstance(scores, dict) or not scores:
            return None
        # DeepFace reports percentages
        return scores_to_vector(scores, scale=100.0)


class ExpressionSampler:
    """Produces at most one reading per call, or None when no face is usable."""
    def __init__(self, classifier: ExpressionClassifier, settings: Settings):
        self.classifier = classifier
        self.decimals = settings.EXPRESSION_DECIMALS

    async def _detect(self, frame) -> Optional[EmotionVector]:
        detect = self.classifier.detect
        if inspect.iscoroutinefunction(detect):
            return await detect(frame)
        return await asyncio.to_thread(detect, frame)

    async def sample(self, frame, stimulus_time: float) -> Optional[SentimentReading]:
        """
        Classify one frame and stamp the result with the stimulus-clock time.

        Classifier failures are treated exactly like "no face".
        """
        if frame is None:
            return None
        try:
            vector = await self._detect(frame)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"[sampler] classifier failed at t={stimulus_time:.3f}s; treating as no face")
            return None
        if vector is None:
            logger.debug(f"[sampler] no face at t={stimulus_time:.3f}s")
            return None
        rounded = EmotionVector.from_values(vector.as_list(), decimals=self.decimals)
        return SentimentReading(timestamp=max(0.0, float(stimulus_time)), expressions=rounded)
