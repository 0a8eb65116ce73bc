"""
ROMTRACK ROM Service Models

Landmark-based range-of-motion measurement engine: joint angles, Kapandji
score, elbow-referenced wrist angles, temporal quality gating and session
aggregation.
"""

from .errors import (
    RomEngineError,
    InsufficientLandmarks,
    InvalidFrameError,
    SessionFinalizedError
)

from .landmarks import (
    LandmarkPoint,
    Frame,
    ValidatedFrame,
    HandLandmark,
    PoseLandmark,
    HandType,
    Finger,
    validate_frame
)

from .joint_angles import (
    FingerAngles,
    JointAngleCalculator,
    angle_between
)

from .kapandji import (
    KapandjiScorer,
    KapandjiReading,
    KapandjiRatchet,
    KAPANDJI_TARGETS,
    TARGET_NAMES
)

from .wrist_calculator import (
    WristAngleCalculator,
    WristAngles,
    MovingMedianFilter,
    signed_elbow_angle,
    deviation_angle,
    forearm_rotation_angle
)

from .quality_gate import (
    TemporalQualityGate,
    MetricQuality
)

from .rom_session import (
    RomSession,
    RomSessionHandler,
    SessionResult,
    FrameFeedback,
    AngleSample,
    AngleKind,
    AssessmentKind,
    SessionState,
    get_session_handler
)

__all__ = [
    # Errors
    "RomEngineError",
    "InsufficientLandmarks",
    "InvalidFrameError",
    "SessionFinalizedError",
    # Landmarks
    "LandmarkPoint",
    "Frame",
    "ValidatedFrame",
    "HandLandmark",
    "PoseLandmark",
    "HandType",
    "Finger",
    "validate_frame",
    # Calculators
    "FingerAngles",
    "JointAngleCalculator",
    "angle_between",
    "KapandjiScorer",
    "KapandjiReading",
    "KapandjiRatchet",
    "KAPANDJI_TARGETS",
    "TARGET_NAMES",
    "WristAngleCalculator",
    "WristAngles",
    "MovingMedianFilter",
    "signed_elbow_angle",
    "deviation_angle",
    "forearm_rotation_angle",
    # Quality
    "TemporalQualityGate",
    "MetricQuality",
    # Session
    "RomSession",
    "RomSessionHandler",
    "SessionResult",
    "FrameFeedback",
    "AngleSample",
    "AngleKind",
    "AssessmentKind",
    "SessionState",
    "get_session_handler",
]
