"""
ROMTRACK ROM Service - Temporal Quality Gate

Per-metric visibility history and frame-to-frame consistency.

A metric seen in at least the bypass ratio of session frames is trusted
outright (quality 1.0). Below that, each value is checked against a short
rolling median of the metric's recent values; values deviating by more than
the artifact threshold are suspect. Quality is then 0.3-0.9 in proportion to
the share of consistent values, and a metric below the acceptance threshold
is reported as missing, never as zero.
"""

import logging
import numpy as np
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Any


logger = logging.getLogger("romtrack.rom.quality")

MIN_QUALITY = 0.3
MAX_QUALITY = 0.9
BYPASS_QUALITY = 1.0
# Values accepted without a median check until the window holds this many
WARMUP_VALUES = 3


@dataclass
class MetricQuality:
    """Resolved quality for one metric."""
    metric: str
    score: float
    bypassed: bool
    accepted: bool
    visibility_ratio: float
    visible_frames: int
    consistent_frames: int
    suspect_timestamps: List[Optional[int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": round(self.score, 3),
            "bypassed": self.bypassed,
            "accepted": self.accepted,
            "visibilityRatio": round(self.visibility_ratio, 3),
            "suspectTimestamps": list(self.suspect_timestamps),
        }


@dataclass
class _MetricTrack:
    window: Deque[float]
    visible_frames: int = 0
    consistent_frames: int = 0
    suspect_timestamps: List[Optional[int]] = field(default_factory=list)


class TemporalQualityGate:
    """
    Quality tracking for a fixed set of metrics within one session.

    Call begin_frame() once for every frame the session receives, including
    frames skipped for insufficient landmarks, then observe() for each metric
    measured in that frame.
    """

    def __init__(
        self,
        metrics: Iterable[str],
        bypass_ratio: float = 0.8,
        acceptance_threshold: float = 0.7,
        artifact_threshold: float = 30.0,
        window: int = 5,
    ):
        self.bypass_ratio = bypass_ratio
        self.acceptance_threshold = acceptance_threshold
        self.artifact_threshold = artifact_threshold
        self.window = window
        self.total_frames = 0
        self._tracks: Dict[str, _MetricTrack] = {
            m: _MetricTrack(window=deque(maxlen=window)) for m in metrics
        }

    @property
    def metrics(self):
        return list(self._tracks)

    def begin_frame(self):
        self.total_frames += 1

    def observe(self, metric: str, value: float, timestamp: Optional[int] = None) -> bool:
        """
        Record a visible value for a metric.

        Returns True if the value is consistent with the metric's rolling
        median (or the window is still warming up).
        """
        track = self._tracks[metric]
        track.visible_frames += 1

        consistent = True
        if len(track.window) >= WARMUP_VALUES:
            median = float(np.median(track.window))
            if abs(value - median) > self.artifact_threshold:
                consistent = False
                track.suspect_timestamps.append(timestamp)
                logger.debug(
                    f"Suspect {metric} value {value:.1f} (median {median:.1f}) at t={timestamp}"
                )

        if consistent:
            track.consistent_frames += 1
        # Suspect values still enter the window so a genuine level change is
        # absorbed after a few frames; a single spike cannot move the median.
        track.window.append(value)
        return consistent

    def visibility_ratio(self, metric: str) -> float:
        if self.total_frames == 0:
            return 0.0
        return self._tracks[metric].visible_frames / self.total_frames

    def is_bypassed(self, metric: str) -> bool:
        return self.total_frames > 0 and self.visibility_ratio(metric) >= self.bypass_ratio

    def resolve(self, metric: str) -> MetricQuality:
        track = self._tracks[metric]
        ratio = self.visibility_ratio(metric)
        bypassed = self.is_bypassed(metric)

        if bypassed:
            score = BYPASS_QUALITY
        elif track.visible_frames == 0:
            score = 0.0
        else:
            consistency = track.consistent_frames / track.visible_frames
            score = MIN_QUALITY + (MAX_QUALITY - MIN_QUALITY) * consistency

        accepted = bypassed or (track.visible_frames > 0 and score >= self.acceptance_threshold)

        return MetricQuality(
            metric=metric,
            score=score,
            bypassed=bypassed,
            accepted=accepted,
            visibility_ratio=ratio,
            visible_frames=track.visible_frames,
            consistent_frames=track.consistent_frames,
            suspect_timestamps=list(track.suspect_timestamps),
        )

    def resolve_all(self) -> Dict[str, MetricQuality]:
        return {m: self.resolve(m) for m in self._tracks}
