"""
ROMTRACK Configuration

Environment variables and application settings.

The ROM_* thresholds were chosen empirically and still need clinical sign-off;
they are kept as named, overridable settings rather than inlined constants.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "ROMTRACK"
    DEBUG: bool = True

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173", "http://localhost:8080"]

    # Landmark validation
    ROM_MIN_VISIBILITY: float = 0.7
    ROM_POSE_MIN_VISIBILITY: float = 0.3

    # Temporal quality gate
    ROM_VISIBILITY_BYPASS_RATIO: float = 0.8
    ROM_TEMPORAL_QUALITY_THRESHOLD: float = 0.7
    ROM_ARTIFACT_THRESHOLD_DEG: float = 30.0
    ROM_CONSISTENCY_WINDOW: int = 5

    # Wrist smoothing (odd window; 1 = off)
    ROM_MEDIAN_FILTER_WINDOW: int = 1

    # Kapandji
    ROM_KAPANDJI_PROXIMITY: float = 0.05

    # Session
    ROM_RECORDING_WINDOW_SECONDS: float = 15.0
    ROM_MIN_FRAME_COUNT: int = 90
    ROM_HANDEDNESS_GRACE_FRAMES: int = 15
    ROM_DEFAULT_HAND_TYPE: str = "LEFT"
    ROM_TARGET_REPETITIONS: int = 1

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()


@dataclass(frozen=True)
class RomConfig:
    """Engine configuration for one session. Immutable once built."""
    min_visibility: float = 0.7
    pose_min_visibility: float = 0.3
    visibility_bypass_ratio: float = 0.8
    temporal_quality_threshold: float = 0.7
    artifact_threshold_deg: float = 30.0
    consistency_window: int = 5
    median_filter_window: int = 1
    kapandji_proximity: float = 0.05
    recording_window_seconds: float = 15.0
    min_frame_count: int = 90
    handedness_grace_frames: int = 15
    default_hand_type: str = "LEFT"
    target_repetitions: int = 1

    def __post_init__(self):
        for name in ("min_visibility", "pose_min_visibility", "visibility_bypass_ratio",
                     "temporal_quality_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must lie in [0, 1], got {value}")
        if self.median_filter_window < 1 or self.median_filter_window % 2 == 0:
            raise ValueError(
                f"median_filter_window must be a positive odd number, got {self.median_filter_window}"
            )
        if self.consistency_window < 1:
            raise ValueError("consistency_window must be at least 1")
        if self.artifact_threshold_deg <= 0 or self.kapandji_proximity <= 0:
            raise ValueError("artifact_threshold_deg and kapandji_proximity must be positive")
        if self.recording_window_seconds <= 0:
            raise ValueError("recording_window_seconds must be positive")
        if self.min_frame_count < 0 or self.handedness_grace_frames < 1 or self.target_repetitions < 1:
            raise ValueError("Frame counts and repetition targets must be positive")
        if self.default_hand_type not in ("LEFT", "RIGHT"):
            raise ValueError(f"default_hand_type must be LEFT or RIGHT, got {self.default_hand_type}")

    @classmethod
    def from_settings(cls, source: Settings = None, **overrides) -> "RomConfig":
        """Build from application settings, with per-session overrides."""
        s = source or settings
        values = dict(
            min_visibility=s.ROM_MIN_VISIBILITY,
            pose_min_visibility=s.ROM_POSE_MIN_VISIBILITY,
            visibility_bypass_ratio=s.ROM_VISIBILITY_BYPASS_RATIO,
            temporal_quality_threshold=s.ROM_TEMPORAL_QUALITY_THRESHOLD,
            artifact_threshold_deg=s.ROM_ARTIFACT_THRESHOLD_DEG,
            consistency_window=s.ROM_CONSISTENCY_WINDOW,
            median_filter_window=s.ROM_MEDIAN_FILTER_WINDOW,
            kapandji_proximity=s.ROM_KAPANDJI_PROXIMITY,
            recording_window_seconds=s.ROM_RECORDING_WINDOW_SECONDS,
            min_frame_count=s.ROM_MIN_FRAME_COUNT,
            handedness_grace_frames=s.ROM_HANDEDNESS_GRACE_FRAMES,
            default_hand_type=s.ROM_DEFAULT_HAND_TYPE.upper(),
            target_repetitions=s.ROM_TARGET_REPETITIONS,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
