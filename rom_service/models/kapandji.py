"""
ROMTRACK ROM Service - Kapandji Scorer

Thumb-opposition score (0-10) from thumb-tip proximity to a fixed ladder of
ten targets running along the fingers and into the palm.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .landmarks import HandLandmark, ValidatedFrame


def _midpoint(a: int, b: int, weight: float = 0.5) -> Callable[[ValidatedFrame], Optional[np.ndarray]]:
    def locate(frame: ValidatedFrame) -> Optional[np.ndarray]:
        if not frame.has(a, b):
            return None
        return (1.0 - weight) * frame.point(a) + weight * frame.point(b)
    return locate


def _landmark(idx: int) -> Callable[[ValidatedFrame], Optional[np.ndarray]]:
    def locate(frame: ValidatedFrame) -> Optional[np.ndarray]:
        return frame.point(idx)
    return locate


def _distal_palmar_crease(frame: ValidatedFrame) -> Optional[np.ndarray]:
    # Between ring and pinky MCPs, pulled a quarter of the way toward the wrist
    ring, pinky, wrist = (
        HandLandmark.RING_MCP.value,
        HandLandmark.PINKY_MCP.value,
        HandLandmark.WRIST.value,
    )
    if not frame.has(ring, pinky, wrist):
        return None
    knuckle = 0.5 * (frame.point(ring) + frame.point(pinky))
    return 0.75 * knuckle + 0.25 * frame.point(wrist)


# Rung -> (name, locator). Rung n is scored when the thumb tip reaches target n.
KAPANDJI_TARGETS: List[Tuple[int, str, Callable[[ValidatedFrame], Optional[np.ndarray]]]] = [
    (1, "indexProximalPhalanx", _midpoint(HandLandmark.INDEX_MCP.value, HandLandmark.INDEX_PIP.value)),
    (2, "indexMiddlePhalanx", _midpoint(HandLandmark.INDEX_PIP.value, HandLandmark.INDEX_DIP.value)),
    (3, "indexTip", _landmark(HandLandmark.INDEX_TIP.value)),
    (4, "middleTip", _landmark(HandLandmark.MIDDLE_TIP.value)),
    (5, "ringTip", _landmark(HandLandmark.RING_TIP.value)),
    (6, "littleTip", _landmark(HandLandmark.PINKY_TIP.value)),
    (7, "littleDipCrease", _landmark(HandLandmark.PINKY_DIP.value)),
    (8, "littlePipCrease", _landmark(HandLandmark.PINKY_PIP.value)),
    (9, "palmarCrease", _landmark(HandLandmark.PINKY_MCP.value)),
    (10, "distalPalmarCrease", _distal_palmar_crease),
]

TARGET_NAMES = [name for _, name, _ in KAPANDJI_TARGETS]


@dataclass(frozen=True)
class KapandjiReading:
    """Kapandji result for a single frame."""
    score: int
    reached: Dict[str, bool]
    distances: Dict[str, float]


@dataclass
class KapandjiRatchet:
    """
    Session-level Kapandji score.

    The score only ever increases: opposition reached once is evidence of
    capability, later lower rungs do not reduce it.
    """
    max_score: int = 0
    details: Dict[str, bool] = field(default_factory=lambda: {name: False for name in TARGET_NAMES})
    frames_scored: int = 0

    def update(self, reading: Optional[KapandjiReading]) -> int:
        if reading is None:
            return self.max_score
        self.frames_scored += 1
        self.max_score = max(self.max_score, reading.score)
        for name, hit in reading.reached.items():
            if hit:
                self.details[name] = True
        return self.max_score


class KapandjiScorer:
    """Scores thumb opposition against the fixed target ladder."""

    def __init__(self, proximity_threshold: float = 0.05):
        self.proximity_threshold = proximity_threshold

    def score_frame(self, frame: ValidatedFrame) -> Optional[KapandjiReading]:
        """
        Highest rung whose target lies within the proximity threshold.

        Returns None when the thumb tip is not visible. Targets whose landmarks
        are missing are skipped.
        """
        thumb_tip = frame.point(HandLandmark.THUMB_TIP.value)
        if thumb_tip is None:
            return None

        score = 0
        reached: Dict[str, bool] = {}
        distances: Dict[str, float] = {}
        for rung, name, locate in KAPANDJI_TARGETS:
            target = locate(frame)
            if target is None:
                reached[name] = False
                continue
            distance = float(np.linalg.norm(thumb_tip - target))
            distances[name] = distance
            hit = distance < self.proximity_threshold
            reached[name] = hit
            if hit:
                score = max(score, rung)

        return KapandjiReading(score=score, reached=reached, distances=distances)
