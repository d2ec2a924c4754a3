"""
Pydantic data models for capture, storage and dashboard IO.
"""
from __future__ import annotations
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional, Literal, Tuple

EMOTIONS: Tuple[str, ...] = (
    "neutral", "happy", "sad", "angry", "fearful", "disgusted", "surprised",
)

DurationSource = Literal["recorder-timing", "stimulus-clock", "fallback-minimum"]

ALL = "all"


class EmotionVector(BaseModel):
    """Raw classifier confidences; not required to sum to 1."""
    model_config = ConfigDict(frozen=True)

    neutral: float = Field(0.0, ge=0)
    happy: float = Field(0.0, ge=0)
    sad: float = Field(0.0, ge=0)
    angry: float = Field(0.0, ge=0)
    fearful: float = Field(0.0, ge=0)
    disgusted: float = Field(0.0, ge=0)
    surprised: float = Field(0.0, ge=0)

    def as_list(self) -> List[float]:
        return [getattr(self, k) for k in EMOTIONS]

    @classmethod
    def from_values(cls, values, decimals: Optional[int] = None) -> "EmotionVector":
        vals = [float(v) for v in values]
        if decimals is not None:
            vals = [round(v, decimals) for v in vals]
        return cls(**dict(zip(EMOTIONS, vals)))

    def dominant(self) -> str:
        vals = self.as_list()
        return EMOTIONS[vals.index(max(vals))]


class SentimentReading(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(ge=0)
    expressions: EmotionVector


class ReconciledDuration(BaseModel):
    model_config = ConfigDict(frozen=True)

    seconds: float
    source: DurationSource
    is_valid: bool
    reason: Optional[str] = None


class RecordedMedia(BaseModel):
    """Result of stopping a recorder."""
    path: str
    codec: str
    frame_count: int = 0
    fps: float = 0.0
    started_at: float
    stopped_at: float
    # set only by recorders that measure their own length
    reported_duration: Optional[float] = None


# session lifecycle


class SessionState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RUNNING = "running"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class AcquisitionFailure(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    BUSY = "busy"
    OTHER = "other"


class SessionStatus(BaseModel):
    participant_id: str
    state: SessionState
    reading_count: int = 0
    recording_enabled: bool = False
    last_reading: Optional[SentimentReading] = None
    duration: Optional[ReconciledDuration] = None
    hint: Optional[str] = None


class SessionOutcome(BaseModel):
    """What was handed to persistence when a session finalized."""
    participant_id: str
    state: SessionState
    readings: List[SentimentReading] = Field(default_factory=list)
    duration: ReconciledDuration
    media: Optional[RecordedMedia] = None


# read side


class Demographics(BaseModel):
    age: Optional[str] = None
    gender: Optional[str] = None
    race: Optional[str] = None
    ethnicity: Optional[str] = None
    nationality: Optional[str] = None


class ParticipantRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    participant_id: str
    demographics: Demographics = Field(default_factory=Demographics)
    readings: Tuple[SentimentReading, ...] = ()
    duration: Optional[float] = None


class DemographicFilter(BaseModel):
    age: str = ALL
    gender: str = ALL
    race: str = ALL
    nationality: str = ALL


class AggregationBucket(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket_start: float
    per_emotion_average: EmotionVector


class DurationStatistics(BaseModel):
    count: int = 0
    total: float = 0.0
    average: float = 0.0
    min: float = 0.0
    max: float = 0.0
    median: float = 0.0


class DurationBucket(BaseModel):
    bucket: str
    count: int
    percentage: float


class DemographicDurationGroup(BaseModel):
    count: int
    average_duration: float


class DurationAnalytics(BaseModel):
    statistics: DurationStatistics
    distribution: List[DurationBucket] = Field(default_factory=list)
    by_demographics: Dict[str, Dict[str, DemographicDurationGroup]] = Field(default_factory=dict)


class DashboardView(BaseModel):
    participant_count: int
    threshold: int
    below_threshold: bool
    snapshot: Optional[EmotionVector] = None
    timeline: Optional[List[AggregationBucket]] = None
    durations: Optional[DurationAnalytics] = None
