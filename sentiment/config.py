"""
Configuration for capture sessions and the aggregation engine.
"""
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from typing import List
import os

DEFAULT_CODECS = "VP90,VP80,H264,MJPG,mp4v"


class Settings(BaseModel):
    """
    Runtime settings with environment-variable overrides.

    One instance is built by the host and handed to every session, sampler,
    recorder, store and engine it creates.
    """
    model_config = ConfigDict(validate_default=True)

    # Capture cadence
    SAMPLE_INTERVAL: float = float(os.getenv("SAMPLE_INTERVAL", "0.5"))
    DEBOUNCE_SECONDS: float = float(os.getenv("DEBOUNCE_SECONDS", "0.4"))
    EXPRESSION_DECIMALS: int = int(os.getenv("EXPRESSION_DECIMALS", "3"))

    # Duration validation
    MIN_DURATION: float = float(os.getenv("MIN_DURATION", "0.1"))
    MAX_DURATION: float = float(os.getenv("MAX_DURATION", "3600"))
    DURATION_DECIMALS: int = int(os.getenv("DURATION_DECIMALS", "3"))

    # Aggregation
    SNAPSHOT_WINDOW: float = float(os.getenv("SNAPSHOT_WINDOW", "1.0"))
    BUCKET_SECONDS: float = float(os.getenv("BUCKET_SECONDS", "5"))
    PRIVACY_THRESHOLD: int = int(os.getenv("PRIVACY_THRESHOLD", "5"))

    # Devices
    CAMERA_INDEX: int = int(os.getenv("CAMERA_INDEX", "0"))
    CAMERA_WIDTH: int = int(os.getenv("CAMERA_WIDTH", "1280"))
    CAMERA_HEIGHT: int = int(os.getenv("CAMERA_HEIGHT", "720"))
    DETECTOR_BACKEND: str = os.getenv("DETECTOR_BACKEND", "opencv")
    RECORDER_CODECS: List[str] = os.getenv("RECORDER_CODECS", DEFAULT_CODECS)  # type: ignore[assignment]
    RECORDER_FPS: float = float(os.getenv("RECORDER_FPS", "15"))

    # Storage
    DATA_DIR: str = os.getenv("DATA_DIR", "data")

    @field_validator("RECORDER_CODECS", mode="before")
    @classmethod
    def _split_codecs(cls, v):
        if isinstance(v, str):
            v = [c.strip() for c in v.split(",")]
        return [c for c in v if c]

    @field_validator("SAMPLE_INTERVAL", "BUCKET_SECONDS", "RECORDER_FPS")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("DEBOUNCE_SECONDS", "SNAPSHOT_WINDOW")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("PRIVACY_THRESHOLD")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def _duration_bounds(self):
        if not (0 < self.MIN_DURATION <= self.MAX_DURATION):
            raise ValueError("MIN_DURATION must be > 0 and <= MAX_DURATION")
        return self
