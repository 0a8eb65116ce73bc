"""
ROMTRACK ROM Service - Wrist/Forearm Angle Calculator

Elbow-referenced, signed wrist and forearm angles from fused pose + hand
landmarks:

- flexion/extension: elbow -> wrist -> middle MCP, full 3D angle
- radial/ulnar deviation: same triple projected onto the image plane
- pronation/supination: palm normal rotation about the forearm axis

Sign conventions: positive = flexion / radial deviation / pronation,
negative = extension / ulnar deviation / supination. Forearm rotation is
0 degrees with the palm facing the camera.
"""

import numpy as np
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Any

from .joint_angles import EPSILON, angle_between, unit_vector
from .landmarks import HandLandmark, HandType, SIDE_POSE_INDICES, ValidatedFrame


SIGN_BIAS = 1e-9
CAMERA_AXIS = np.array([0.0, 0.0, -1.0])  # toward the camera (negative z is closer)


# ═══════════════════════════════════════════════════════════════════════════════
# SIGNED ANGLE PRIMITIVES
# ═══════════════════════════════════════════════════════════════════════════════

def signed_elbow_angle(elbow: np.ndarray, wrist: np.ndarray, hand_ref: np.ndarray) -> float:
    """
    Signed wrist angle between the forearm and the hand.

    Positive is flexion, negative extension. The side factor mirrors the sign
    when the wrist lies left of the elbow in the image, so a left arm and a
    right arm report flexion with the same sign.
    """
    forearm = np.asarray(wrist, dtype=float) - np.asarray(elbow, dtype=float)
    hand_vec = np.asarray(hand_ref, dtype=float) - np.asarray(wrist, dtype=float)

    theta = angle_between(forearm, hand_vec)
    cross_z = np.cross(unit_vector(hand_vec), unit_vector(forearm))[2]
    sign = 1.0 if cross_z + SIGN_BIAS >= 0 else -1.0
    side_factor = -1.0 if wrist[0] < elbow[0] else 1.0

    return theta * sign * side_factor


def deviation_angle(elbow: np.ndarray, wrist: np.ndarray, hand_ref: np.ndarray,
                    radial_dir: np.ndarray) -> float:
    """
    Radial (+) / ulnar (-) deviation in the image plane.

    radial_dir points across the palm toward the thumb side (index MCP minus
    pinky MCP); the sign is whichever side of the forearm line the hand bends to.
    """
    flat = np.array([1.0, 1.0, 0.0])
    forearm = (np.asarray(wrist) - np.asarray(elbow)) * flat
    hand_vec = (np.asarray(hand_ref) - np.asarray(wrist)) * flat

    theta = angle_between(forearm, hand_vec)
    axis = unit_vector(forearm)
    lateral = hand_vec - np.dot(hand_vec, axis) * axis
    side = np.dot(lateral, np.asarray(radial_dir) * flat)
    sign = 1.0 if side + SIGN_BIAS >= 0 else -1.0

    return theta * sign


def forearm_rotation_angle(elbow: np.ndarray, wrist: np.ndarray, index_mcp: np.ndarray,
                           pinky_mcp: np.ndarray, hand_type: HandType) -> float:
    """
    Pronation (+) / supination (-) about the forearm axis.

    The palm normal is taken from the index and pinky knuckles and flipped for
    a left hand so it always points out of the palm. Its component
    perpendicular to the forearm is compared against the camera axis.
    """
    axis = unit_vector(np.asarray(wrist) - np.asarray(elbow))
    hand_factor = -1.0 if hand_type == HandType.LEFT else 1.0

    normal = np.cross(np.asarray(index_mcp) - wrist, np.asarray(pinky_mcp) - wrist) * hand_factor
    normal_perp = normal - np.dot(normal, axis) * axis
    reference = CAMERA_AXIS - np.dot(CAMERA_AXIS, axis) * axis

    if np.linalg.norm(normal_perp) < EPSILON or np.linalg.norm(reference) < EPSILON:
        return 0.0

    theta = angle_between(reference, normal_perp)
    turn = np.dot(np.cross(unit_vector(reference), unit_vector(normal_perp)), axis)
    sign = 1.0 if turn * hand_factor + SIGN_BIAS >= 0 else -1.0

    return theta * sign


# ═══════════════════════════════════════════════════════════════════════════════
# SMOOTHING
# ═══════════════════════════════════════════════════════════════════════════════

class MovingMedianFilter:
    """Short moving median over the most recent k values (k odd; 1 disables)."""

    def __init__(self, window: int = 1):
        if window < 1 or window % 2 == 0:
            raise ValueError(f"Median filter window must be a positive odd number, got {window}")
        self.window = window
        self._values: Deque[float] = deque(maxlen=window)

    def apply(self, value: float) -> float:
        if self.window == 1:
            return value
        self._values.append(value)
        return float(np.median(self._values))


# ═══════════════════════════════════════════════════════════════════════════════
# CALCULATOR
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class WristAngles:
    """Signed wrist/forearm angles for one frame; None = not measurable."""
    flexion_extension: Optional[float] = None
    rotation: Optional[float] = None
    deviation: Optional[float] = None

    @staticmethod
    def _positive(value: Optional[float]) -> Optional[float]:
        return None if value is None else max(value, 0.0)

    @staticmethod
    def _negative(value: Optional[float]) -> Optional[float]:
        return None if value is None else max(-value, 0.0)

    @property
    def flexion(self) -> Optional[float]:
        return self._positive(self.flexion_extension)

    @property
    def extension(self) -> Optional[float]:
        return self._negative(self.flexion_extension)

    @property
    def pronation(self) -> Optional[float]:
        return self._positive(self.rotation)

    @property
    def supination(self) -> Optional[float]:
        return self._negative(self.rotation)

    @property
    def radial_deviation(self) -> Optional[float]:
        return self._positive(self.deviation)

    @property
    def ulnar_deviation(self) -> Optional[float]:
        return self._negative(self.deviation)

    def to_dict(self) -> Dict[str, Any]:
        def r(v):
            return None if v is None else round(v, 1)
        return {
            "wristFlexionAngle": r(self.flexion),
            "wristExtensionAngle": r(self.extension),
            "forearmPronationAngle": r(self.pronation),
            "forearmSupinationAngle": r(self.supination),
            "radialDeviationAngle": r(self.radial_deviation),
            "ulnarDeviationAngle": r(self.ulnar_deviation),
        }


class WristAngleCalculator:
    """
    Per-session wrist/forearm calculator.

    The elbow is always taken from the pose side matching the session's locked
    hand type; it is never re-chosen per frame. Holds one median filter per
    angle family, so an instance must not be shared between sessions.
    """

    def __init__(self, median_window: int = 1, pose_min_visibility: float = 0.3):
        self.pose_min_visibility = pose_min_visibility
        self.filters = {
            "flexion_extension": MovingMedianFilter(median_window),
            "rotation": MovingMedianFilter(median_window),
            "deviation": MovingMedianFilter(median_window),
        }

    def _arm_points(self, frame: ValidatedFrame, hand_type: HandType):
        """Elbow and wrist for the locked side, or None if not trustworthy."""
        if hand_type not in SIDE_POSE_INDICES or frame.pose_points is None:
            return None

        indices = SIDE_POSE_INDICES[hand_type]
        elbow_lm = frame.pose_points[indices["elbow"]]
        if elbow_lm.visibility < self.pose_min_visibility:
            return None

        wrist = frame.point(HandLandmark.WRIST.value)
        if wrist is None:
            wrist_lm = frame.pose_points[indices["wrist"]]
            if wrist_lm.visibility < self.pose_min_visibility:
                return None
            wrist = wrist_lm.to_numpy()

        return elbow_lm.to_numpy(), wrist

    def calculate(self, frame: ValidatedFrame, hand_type: HandType) -> WristAngles:
        arm = self._arm_points(frame, hand_type)
        if arm is None:
            return WristAngles()
        elbow, wrist = arm

        middle_mcp = frame.point(HandLandmark.MIDDLE_MCP.value)
        index_mcp = frame.point(HandLandmark.INDEX_MCP.value)
        pinky_mcp = frame.point(HandLandmark.PINKY_MCP.value)

        flexion_extension = rotation = deviation = None
        if middle_mcp is not None:
            flexion_extension = self.filters["flexion_extension"].apply(
                signed_elbow_angle(elbow, wrist, middle_mcp)
            )
        if index_mcp is not None and pinky_mcp is not None:
            rotation = self.filters["rotation"].apply(
                forearm_rotation_angle(elbow, wrist, index_mcp, pinky_mcp, hand_type)
            )
            if middle_mcp is not None:
                deviation = self.filters["deviation"].apply(
                    deviation_angle(elbow, wrist, middle_mcp, index_mcp - pinky_mcp)
                )

        return WristAngles(
            flexion_extension=flexion_extension,
            rotation=rotation,
            deviation=deviation,
        )
