"""
Shared fixtures for ROM engine tests.

Synthetic hands are built in normalised image coordinates. Each long finger
is bent in the plane spanned by its metacarpal and the z axis, so the joint
angles the calculator reports equal the angles passed in.
"""

import numpy as np
import pytest

from core.config import RomConfig
from rom_service.models import Frame, HandType, LandmarkPoint


WRIST = np.array([0.5, 0.9, 0.0])
MCP_POSITIONS = {
    "index": np.array([0.62, 0.6, 0.0]),
    "middle": np.array([0.54, 0.6, 0.0]),
    "ring": np.array([0.46, 0.6, 0.0]),
    "pinky": np.array([0.38, 0.6, 0.0]),
}
FINGER_BASE = {"index": 5, "middle": 9, "ring": 13, "pinky": 17}
BONE_LENGTHS = (0.1, 0.07, 0.06)
THUMB = [
    np.array([0.60, 0.85, 0.0]),
    np.array([0.68, 0.78, 0.0]),
    np.array([0.74, 0.72, 0.0]),
    np.array([0.79, 0.67, 0.0]),
]
Z_AXIS = np.array([0.0, 0.0, 1.0])


def build_hand_points(flexion=None, thumb_tip=None):
    """
    21 hand points as numpy arrays.

    flexion maps finger name -> (mcp, pip, dip) degrees; unspecified fingers
    are straight.
    """
    flexion = flexion or {}
    points = [None] * 21
    points[0] = WRIST.copy()
    for i, p in enumerate(THUMB, start=1):
        points[i] = p.copy()
    if thumb_tip is not None:
        points[4] = np.asarray(thumb_tip, dtype=float)

    for name, mcp in MCP_POSITIONS.items():
        base = FINGER_BASE[name]
        d0 = (mcp - WRIST) / np.linalg.norm(mcp - WRIST)
        mcp_a, pip_a, dip_a = flexion.get(name, (0.0, 0.0, 0.0))
        cumulative = np.radians(np.cumsum([mcp_a, pip_a, dip_a]))

        points[base] = mcp.copy()
        current = mcp.copy()
        for k, (phi, length) in enumerate(zip(cumulative, BONE_LENGTHS), start=1):
            direction = np.cos(phi) * d0 + np.sin(phi) * Z_AXIS
            current = current + length * direction
            points[base + k] = current.copy()
    return points


def to_landmarks(points, visibility=None, default_visibility=0.95):
    visibility = visibility or {}
    return [
        LandmarkPoint(x=float(p[0]), y=float(p[1]), z=float(p[2]),
                      visibility=visibility.get(i, default_visibility))
        for i, p in enumerate(points)
    ]


def build_pose(elbow=None, wrist=None, side=HandType.RIGHT, elbow_visibility=0.95):
    """33 pose points; only the locked side's elbow and wrist are meaningful."""
    pose = [LandmarkPoint(0.9, 0.1, 0.0, 0.9) for _ in range(33)]
    elbow_idx, wrist_idx = (14, 16) if side == HandType.RIGHT else (13, 15)
    if elbow is not None:
        pose[elbow_idx] = LandmarkPoint(*map(float, elbow), visibility=elbow_visibility)
    if wrist is not None:
        pose[wrist_idx] = LandmarkPoint(*map(float, wrist), visibility=0.95)
    return pose


def build_arm_hand(wrist, hand_ref, radial_offset=(0.02, 0.0, 0.0)):
    """Hand points for wrist-family tests: wrist at 0, middle MCP = hand_ref."""
    wrist = np.asarray(wrist, dtype=float)
    hand_ref = np.asarray(hand_ref, dtype=float)
    offset = np.asarray(radial_offset, dtype=float)
    points = [hand_ref.copy() for _ in range(21)]
    points[0] = wrist
    points[5] = hand_ref + offset
    points[17] = hand_ref - offset
    return points


@pytest.fixture
def hand_factory():
    """Returns f(flexion=None, thumb_tip=None, visibility=None) -> 21 LandmarkPoints."""
    def make(flexion=None, thumb_tip=None, visibility=None):
        return to_landmarks(build_hand_points(flexion, thumb_tip), visibility)
    return make


@pytest.fixture
def frame_factory(hand_factory):
    """Returns f(timestamp, ...) -> Frame with a synthetic hand."""
    def make(timestamp, flexion=None, thumb_tip=None, visibility=None,
             hint=HandType.RIGHT, hand=True, pose=None):
        return Frame(
            timestamp=timestamp,
            hand_landmarks=hand_factory(flexion, thumb_tip, visibility) if hand else None,
            pose_landmarks=pose,
            handedness_hint=hint,
        )
    return make


@pytest.fixture
def wrist_frame_factory():
    """Returns f(timestamp, elbow, wrist, hand_ref, side=RIGHT) -> Frame."""
    def make(timestamp, elbow, wrist, hand_ref, side=HandType.RIGHT, hint=None,
             elbow_visibility=0.95, radial_offset=(0.02, 0.0, 0.0)):
        return Frame(
            timestamp=timestamp,
            hand_landmarks=to_landmarks(build_arm_hand(wrist, hand_ref, radial_offset)),
            pose_landmarks=build_pose(elbow, wrist, side, elbow_visibility),
            handedness_hint=side if hint is None else hint,
        )
    return make


@pytest.fixture
def config():
    """Small-session configuration for fast tests."""
    return RomConfig(min_frame_count=10, handedness_grace_frames=5, recording_window_seconds=15.0)
