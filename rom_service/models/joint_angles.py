"""
ROMTRACK ROM Service - Joint Angle Calculator

Per-finger MCP/PIP/DIP flexion angles and Total Active Motion (TAM) from
validated hand landmarks.

Angle convention: each joint angle is the angle between the two adjacent bone
direction vectors meeting at that joint. 0 degrees is a fully extended
(straight) joint, larger values are more flexed. The MCP joint uses the
metacarpal (wrist -> MCP) as its proximal bone.
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, Optional, Any

from .landmarks import Finger, HandLandmark, ValidatedFrame


EPSILON = 1e-8

# Anatomical ceilings for active flexion; keeps per-finger TAM within [0, 300]
JOINT_LIMITS = {
    "mcp": 100.0,
    "pip": 110.0,
    "dip": 90.0,
}


# ═══════════════════════════════════════════════════════════════════════════════
# VECTOR GEOMETRY
# ═══════════════════════════════════════════════════════════════════════════════

def unit_vector(v: np.ndarray) -> np.ndarray:
    """Normalize v; a zero-length vector stays (near) zero instead of NaN."""
    return v / (np.linalg.norm(v) + EPSILON)


def angle_between(v1: np.ndarray, v2: np.ndarray) -> float:
    """
    Angle between two vectors in degrees (0-180).

    Degenerate (zero-length) input yields 0.0 rather than NaN.
    """
    cosine = np.dot(unit_vector(v1), unit_vector(v2))
    cosine = np.clip(cosine, -1.0, 1.0)
    if np.linalg.norm(v1) < EPSILON or np.linalg.norm(v2) < EPSILON:
        return 0.0
    return float(np.degrees(np.arccos(cosine)))


# ═══════════════════════════════════════════════════════════════════════════════
# DATA CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FingerAngles:
    """Joint angles for one finger, in degrees."""
    mcp: float
    pip: float
    dip: float

    @property
    def total_active_rom(self) -> float:
        return self.mcp + self.pip + self.dip

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mcp": round(self.mcp, 1),
            "pip": round(self.pip, 1),
            "dip": round(self.dip, 1),
            "totalActiveRom": round(self.total_active_rom, 1),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# CALCULATOR
# ═══════════════════════════════════════════════════════════════════════════════

class JointAngleCalculator:
    """
    Computes finger flexion angles from a validated frame.

    A finger is only measured when the wrist and all four of its joint
    landmarks survived validation; otherwise it is reported as None.
    """

    def __init__(self, apply_joint_limits: bool = True):
        self.apply_joint_limits = apply_joint_limits

    def finger_angles(self, frame: ValidatedFrame, finger: Finger) -> Optional[FingerAngles]:
        mcp_idx, pip_idx, dip_idx, tip_idx = finger.joints
        wrist_idx = HandLandmark.WRIST.value

        if not frame.has(wrist_idx, mcp_idx, pip_idx, dip_idx, tip_idx):
            return None

        wrist = frame.point(wrist_idx)
        mcp = frame.point(mcp_idx)
        pip = frame.point(pip_idx)
        dip = frame.point(dip_idx)
        tip = frame.point(tip_idx)

        metacarpal = mcp - wrist
        proximal = pip - mcp
        middle = dip - pip
        distal = tip - dip

        angles = {
            "mcp": angle_between(metacarpal, proximal),
            "pip": angle_between(proximal, middle),
            "dip": angle_between(middle, distal),
        }
        if self.apply_joint_limits:
            angles = {k: min(v, JOINT_LIMITS[k]) for k, v in angles.items()}

        return FingerAngles(**angles)

    def all_fingers(self, frame: ValidatedFrame) -> Dict[Finger, Optional[FingerAngles]]:
        """Angles for every long finger; None where the finger was not visible."""
        return {finger: self.finger_angles(frame, finger) for finger in Finger}
