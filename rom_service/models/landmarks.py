"""
ROMTRACK ROM Service - Landmarks and Validation

Data model for tracker frames (21 hand landmarks, optional 33 pose landmarks)
and the landmark validator every frame must pass before any geometry runs.
Trackers emit coordinates even for low-confidence, guessed points, so points
below the visibility threshold are marked missing here rather than trusted.
"""

import math
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .errors import InsufficientLandmarks, InvalidFrameError


HAND_LANDMARK_COUNT = 21
POSE_LANDMARK_COUNT = 33
# Pose is usable for elbow/wrist lookup once both wrists (15, 16) are present
MIN_POSE_LANDMARKS = 17


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class HandLandmark(Enum):
    """Hand landmark indices (MediaPipe Hands topology)."""
    WRIST = 0
    THUMB_CMC = 1
    THUMB_MCP = 2
    THUMB_IP = 3
    THUMB_TIP = 4
    INDEX_MCP = 5
    INDEX_PIP = 6
    INDEX_DIP = 7
    INDEX_TIP = 8
    MIDDLE_MCP = 9
    MIDDLE_PIP = 10
    MIDDLE_DIP = 11
    MIDDLE_TIP = 12
    RING_MCP = 13
    RING_PIP = 14
    RING_DIP = 15
    RING_TIP = 16
    PINKY_MCP = 17
    PINKY_PIP = 18
    PINKY_DIP = 19
    PINKY_TIP = 20


class PoseLandmark(Enum):
    """Upper-body pose landmark indices used for elbow-referenced angles."""
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_ELBOW = 13
    RIGHT_ELBOW = 14
    LEFT_WRIST = 15
    RIGHT_WRIST = 16


class HandType(Enum):
    """Hand side, as hinted by the tracker or locked for a session."""
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "HandType":
        if isinstance(value, HandType):
            return value
        if value is None:
            return cls.UNKNOWN
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN


class Finger(Enum):
    """Long fingers measured for TAM."""
    INDEX = "index"
    MIDDLE = "middle"
    RING = "ring"
    PINKY = "pinky"

    @property
    def joints(self) -> tuple:
        """Landmark indices (MCP, PIP, DIP, TIP) for this finger."""
        return FINGER_JOINTS[self]


FINGER_JOINTS = {
    Finger.INDEX: (5, 6, 7, 8),
    Finger.MIDDLE: (9, 10, 11, 12),
    Finger.RING: (13, 14, 15, 16),
    Finger.PINKY: (17, 18, 19, 20),
}

SIDE_POSE_INDICES = {
    HandType.LEFT: {
        "elbow": PoseLandmark.LEFT_ELBOW.value,
        "wrist": PoseLandmark.LEFT_WRIST.value,
    },
    HandType.RIGHT: {
        "elbow": PoseLandmark.RIGHT_ELBOW.value,
        "wrist": PoseLandmark.RIGHT_WRIST.value,
    },
}


# ═══════════════════════════════════════════════════════════════════════════════
# DATA CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LandmarkPoint:
    """A single tracked 3D point with the detector's visibility confidence."""
    x: float
    y: float
    z: float
    visibility: float = 1.0

    def to_numpy(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LandmarkPoint":
        """Parse a tracker point. Missing visibility means fully trusted."""
        try:
            x = float(data["x"])
            y = float(data["y"])
            z = float(data.get("z", 0.0) or 0.0)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidFrameError(f"Malformed landmark {data!r}: {e}") from e

        if not all(math.isfinite(v) for v in (x, y, z)):
            raise InvalidFrameError(f"Non-finite landmark coordinates: {(x, y, z)}")

        visibility = data.get("visibility")
        if visibility is None:
            visibility = 1.0
        visibility = float(visibility)
        if not 0.0 <= visibility <= 1.0:
            raise InvalidFrameError(f"Landmark visibility {visibility} outside [0, 1]")

        return cls(x=x, y=y, z=z, visibility=visibility)


@dataclass
class Frame:
    """One tracker observation."""
    timestamp: int
    hand_landmarks: Optional[List[LandmarkPoint]] = None
    pose_landmarks: Optional[List[LandmarkPoint]] = None
    handedness_hint: HandType = HandType.UNKNOWN

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Frame":
        """Build a frame from the tracker's JSON payload (camelCase keys)."""
        if not isinstance(data, dict):
            raise InvalidFrameError(f"Frame payload must be an object, got {type(data).__name__}")
        hand = data.get("handLandmarks")
        pose = data.get("poseLandmarks")
        for key, value in (("handLandmarks", hand), ("poseLandmarks", pose)):
            if value is not None and not isinstance(value, list):
                raise InvalidFrameError(f"{key} must be a list, got {type(value).__name__}")

        if hand is not None and len(hand) > HAND_LANDMARK_COUNT:
            raise InvalidFrameError(
                f"Expected at most {HAND_LANDMARK_COUNT} hand landmarks, got {len(hand)}"
            )
        if pose is not None and len(pose) > POSE_LANDMARK_COUNT:
            raise InvalidFrameError(
                f"Expected at most {POSE_LANDMARK_COUNT} pose landmarks, got {len(pose)}"
            )

        try:
            timestamp = int(data["timestamp"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidFrameError(f"Frame timestamp missing or invalid: {e}") from e

        return cls(
            timestamp=timestamp,
            hand_landmarks=[LandmarkPoint.from_dict(p) for p in hand] if hand else None,
            pose_landmarks=[LandmarkPoint.from_dict(p) for p in pose] if pose else None,
            handedness_hint=HandType.parse(data.get("handednessHint")),
        )


@dataclass
class ValidatedFrame:
    """
    A frame that passed the landmark validator.

    hand_points always holds 21 entries; an entry is None when the point fell
    below the visibility threshold. pose_points is None when no usable pose
    was supplied.
    """
    timestamp: int
    hand_points: List[Optional[LandmarkPoint]]
    pose_points: Optional[List[LandmarkPoint]]
    handedness_hint: HandType
    missing: List[int] = field(default_factory=list)

    def has(self, *indices: int) -> bool:
        return all(self.hand_points[i] is not None for i in indices)

    def point(self, index: int) -> Optional[np.ndarray]:
        lm = self.hand_points[index]
        return lm.to_numpy() if lm is not None else None

    @property
    def visible_count(self) -> int:
        return HAND_LANDMARK_COUNT - len(self.missing)


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDATOR
# ═══════════════════════════════════════════════════════════════════════════════

def validate_frame(frame: Frame, min_visibility: float = 0.7) -> ValidatedFrame:
    """
    Filter a raw frame by per-point confidence.

    Args:
        frame: Raw tracker frame
        min_visibility: Points strictly below this are marked missing

    Returns:
        ValidatedFrame with low-confidence hand points set to None

    Raises:
        InsufficientLandmarks: no hand detected or fewer than 21 points
    """
    hand = frame.hand_landmarks
    if not hand:
        raise InsufficientLandmarks("No hand detected", landmark_count=0)
    if len(hand) < HAND_LANDMARK_COUNT:
        raise InsufficientLandmarks(
            f"Only {len(hand)} of {HAND_LANDMARK_COUNT} hand landmarks present",
            landmark_count=len(hand),
        )

    hand_points: List[Optional[LandmarkPoint]] = []
    missing: List[int] = []
    for idx, lm in enumerate(hand):
        if lm.visibility < min_visibility:
            hand_points.append(None)
            missing.append(idx)
        else:
            hand_points.append(lm)

    pose = frame.pose_landmarks
    pose_points = list(pose) if pose and len(pose) >= MIN_POSE_LANDMARKS else None

    return ValidatedFrame(
        timestamp=frame.timestamp,
        hand_points=hand_points,
        pose_points=pose_points,
        handedness_hint=frame.handedness_hint,
        missing=missing,
    )

