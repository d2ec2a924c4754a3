"""
Session persistence.

Writes are coroutines so the capture session can hand off without blocking.
Reads return raw rows (dicts) joined by participant id; the aggregation
loader validates them.
"""
from __future__ import annotations
from typing import Dict, List, Optional, Sequence
import asyncio
import json
import logging
import os
import shutil
import threading
import time

from sentiment.config import Settings
from sentiment.models import Demographics, RecordedMedia, ReconciledDuration, SentimentReading

logger = logging.getLogger(__name__)


def _session_row(participant_id: str, stimulus_id: str, readings: Sequence[SentimentReading],
                 duration: ReconciledDuration, media_path: Optional[str]) -> Dict:
    return {
        "participant_id": participant_id,
        "stimulus_id": stimulus_id,
        "recorded_at": time.time(),
        "readings": [r.model_dump() for r in readings],
        "duration": duration.model_dump(),
        "media_path": media_path,
    }


def _join(sessions: List[Dict], demographics: Dict[str, Dict], stimulus_id: str) -> List[Dict]:
    latest: Dict[str, Dict] = {}
    for row in sessions:
        if row.get("stimulus_id", stimulus_id) != stimulus_id:
            continue
        pid = row.get("participant_id")
        latest[pid] = row  # last write per participant wins
    out = []
    for pid, row in latest.items():
        duration = row.get("duration")
        if isinstance(duration, dict):
            duration = duration.get("seconds")
        out.append({
            "participant_id": pid,
            "demographics": demographics.get(pid) or {},
            "readings": row.get("readings") or [],
            "duration": duration,
        })
    return out


class InMemorySessionStore:
    """Process-local store for tests and demos."""
    def __init__(self, stimulus_id: str = "default"):
        self.stimulus_id = stimulus_id
        self.sessions: List[Dict] = []
        self.demographics: Dict[str, Dict] = {}

    async def write(self, participant_id: str, readings: Sequence[SentimentReading],
                    duration: ReconciledDuration, media: Optional[RecordedMedia] = None) -> None:
        self.sessions.append(_session_row(participant_id, self.stimulus_id, readings, duration,
                                          media.path if media else None))

    def save_demographics(self, participant_id: str, demographics: Demographics) -> None:
        self.demographics[participant_id] = demographics.model_dump()

    def read_records(self, stimulus_id: Optional[str] = None) -> List[Dict]:
        return _join(list(self.sessions), dict(self.demographics), stimulus_id or self.stimulus_id)


class JsonSessionStore:
    """
    File-backed store under DATA_DIR:
      sessions.jsonl     one JSON document per finished session
      demographics.json  participant_id -> demographics
      media/             recorded webcam files
    """
    def __init__(self, settings: Settings, stimulus_id: str = "default"):
        self.root = settings.DATA_DIR
        self.stimulus_id = stimulus_id
        self.sessions_path = os.path.join(self.root, "sessions.jsonl")
        self.demographics_path = os.path.join(self.root, "demographics.json")
        self.media_dir = os.path.join(self.root, "media")
        self._lock = threading.Lock()

    def _store_media(self, participant_id: str, media: Optional[RecordedMedia]) -> Optional[str]:
        if media is None or not os.path.exists(media.path):
            return None
        os.makedirs(self.media_dir, exist_ok=True)
        ext = os.path.splitext(media.path)[1] or ".webm"
        dest = os.path.join(self.media_dir, f"webcam_{participant_id}{ext}")
        shutil.move(media.path, dest)
        return dest

    def _append(self, participant_id, readings, duration, media) -> None:
        with self._lock:
            os.makedirs(self.root, exist_ok=True)
            media_path = self._store_media(participant_id, media)
            row = _session_row(participant_id, self.stimulus_id, readings, duration, media_path)
            with open(self.sessions_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False) + "\n")
        logger.info(f"[store] session saved participant={participant_id} readings={len(readings)} "
                    f"duration={duration.seconds}s media={media_path}")

    async def write(self, participant_id: str, readings: Sequence[SentimentReading],
                    duration: ReconciledDuration, media: Optional[RecordedMedia] = None) -> None:
        await asyncio.to_thread(self._append, participant_id, list(readings), duration, media)

    def _load_demographics(self) -> Dict[str, Dict]:
        if not os.path.exists(self.demographics_path):
            return {}
        with open(self.demographics_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def save_demographics(self, participant_id: str, demographics: Demographics) -> None:
        with self._lock:
            os.makedirs(self.root, exist_ok=True)
            data = self._load_demographics()
            data[participant_id] = demographics.model_dump()
            tmp = self.demographics_path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.demographics_path)

    def read_records(self, stimulus_id: Optional[str] = None) -> List[Dict]:
        with self._lock:
            demographics = self._load_demographics()
            sessions: List[Dict] = []
            if os.path.exists(self.sessions_path):
                with open(self.sessions_path, "r", encoding="utf-8") as f:
                    for n, line in enumerate(f, 1):
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            sessions.append(json.loads(line))
                        except json.JSONDecodeError:
                            logger.warning(f"[store] skipping unreadable line {n} in {self.sessions_path}")
        return _join(sessions, demographics, stimulus_id or self.stimulus_id)
