"""
ROMTRACK ROM Service - Session Aggregator

Drives validation, angle calculation and quality gating frame by frame for a
recording session and folds results into session maxima.

Each RomSession owns all of its mutable state (locked hand type, median
filters, quality windows, running maxima). Nothing is shared between
sessions; a finalized session yields an immutable SessionResult and is then
discarded by the handler.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any

from core.config import RomConfig
from shared.utils import log_execution_time

from .errors import InsufficientLandmarks, SessionFinalizedError
from .joint_angles import FingerAngles, JointAngleCalculator
from .kapandji import KapandjiRatchet, KapandjiScorer
from .landmarks import Finger, Frame, HandType, ValidatedFrame, validate_frame
from .quality_gate import MetricQuality, TemporalQualityGate
from .wrist_calculator import WristAngleCalculator, WristAngles


logger = logging.getLogger("romtrack.rom.session")


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class AssessmentKind(Enum):
    """Assessment selected once at session start."""
    TAM = "tam"
    KAPANDJI = "kapandji"
    WRIST_FLEXION_EXTENSION = "wrist_flexion_extension"
    FOREARM_ROTATION = "forearm_rotation"
    RADIAL_ULNAR_DEVIATION = "radial_ulnar_deviation"

    @property
    def metrics(self) -> List[str]:
        """Quality-gated metrics this assessment produces."""
        return ASSESSMENT_METRICS[self]


class SessionState(Enum):
    """Session lifecycle. There is no transition out of FINALIZED."""
    UNLOCKED = "unlocked"
    RECORDING = "recording"
    FINALIZED = "finalized"


class AngleKind(Enum):
    MCP = "mcp"
    PIP = "pip"
    DIP = "dip"
    WRIST_FLEXION = "wrist_flexion"
    WRIST_EXTENSION = "wrist_extension"
    PRONATION = "pronation"
    SUPINATION = "supination"
    RADIAL_DEV = "radial_deviation"
    ULNAR_DEV = "ulnar_deviation"
    KAPANDJI = "kapandji"


WRIST_FLEXION_EXTENSION = "wrist_flexion_extension"
FOREARM_ROTATION = "forearm_rotation"
WRIST_DEVIATION = "wrist_deviation"

ASSESSMENT_METRICS = {
    AssessmentKind.TAM: [f.value for f in Finger],
    AssessmentKind.KAPANDJI: [],
    AssessmentKind.WRIST_FLEXION_EXTENSION: [WRIST_FLEXION_EXTENSION],
    AssessmentKind.FOREARM_ROTATION: [FOREARM_ROTATION],
    AssessmentKind.RADIAL_ULNAR_DEVIATION: [WRIST_DEVIATION],
}

# Wrist-family metric -> (WristAngles attribute, positive field, negative field)
WRIST_FAMILIES = {
    WRIST_FLEXION_EXTENSION: ("flexion_extension", AngleKind.WRIST_FLEXION, AngleKind.WRIST_EXTENSION),
    FOREARM_ROTATION: ("rotation", AngleKind.PRONATION, AngleKind.SUPINATION),
    WRIST_DEVIATION: ("deviation", AngleKind.RADIAL_DEV, AngleKind.ULNAR_DEV),
}

OUTPUT_WRIST_FIELDS = {
    AngleKind.WRIST_FLEXION: "wristFlexionAngle",
    AngleKind.WRIST_EXTENSION: "wristExtensionAngle",
    AngleKind.PRONATION: "forearmPronationAngle",
    AngleKind.SUPINATION: "forearmSupinationAngle",
    AngleKind.RADIAL_DEV: "radialDeviationAngle",
    AngleKind.ULNAR_DEV: "ulnarDeviationAngle",
}


# ═══════════════════════════════════════════════════════════════════════════════
# DATA CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AngleSample:
    """One measured value from one frame."""
    kind: AngleKind
    value: float
    timestamp: int
    finger: Optional[Finger] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "finger": self.finger.value if self.finger else None,
            "value": round(self.value, 1) if self.kind != AngleKind.KAPANDJI else int(self.value),
            "timestamp": self.timestamp,
        }


class RunningMaxima:
    """
    Max-only accumulators keyed by (metric, field).

    Two maxima are kept per field: over every observed value, and over values
    the quality gate found consistent. Both only ever increase. While
    recording only the consistent maximum is published; at finalize a
    bypassed metric reports the all-values maximum, which is never lower.
    """

    def __init__(self):
        self._all: Dict[tuple, float] = {}
        self._consistent: Dict[tuple, float] = {}

    def fold(self, metric: str, name: str, value: float, consistent: bool):
        key = (metric, name)
        self._all[key] = max(self._all.get(key, value), value)
        if consistent:
            self._consistent[key] = max(self._consistent.get(key, value), value)

    def get(self, metric: str, name: str, include_suspect: bool) -> Optional[float]:
        source = self._all if include_suspect else self._consistent
        return source.get((metric, name))


@dataclass
class RepetitionRecord:
    """One bounded recording window within a session."""
    repetition_number: int
    start_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    frame_count: int = 0
    valid_frame_count: int = 0
    kapandji_max: Optional[int] = None
    maxima: RunningMaxima = field(default_factory=RunningMaxima)

    @property
    def duration_seconds(self) -> float:
        if self.start_timestamp is None or self.end_timestamp is None:
            return 0.0
        return (self.end_timestamp - self.start_timestamp) / 1000.0

    @property
    def tracking_quality(self) -> float:
        """Share of frames with a validated hand, 0-100."""
        if self.frame_count == 0:
            return 0.0
        return 100.0 * self.valid_frame_count / self.frame_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repetition": self.repetition_number,
            "frameCount": self.frame_count,
            "validFrameCount": self.valid_frame_count,
            "durationSeconds": round(self.duration_seconds, 2),
            "trackingQuality": round(self.tracking_quality, 1),
            "kapandjiMax": self.kapandji_max,
        }


@dataclass
class FrameFeedback:
    """Live per-frame feedback returned to the caller."""
    timestamp: int
    state: SessionState
    hand_type: HandType
    accepted: bool
    skip_reason: Optional[str] = None
    samples: List[AngleSample] = field(default_factory=list)
    fingers: Dict[Finger, Optional[FingerAngles]] = field(default_factory=dict)
    wrist: Optional[WristAngles] = None
    kapandji_score: Optional[int] = None
    window_elapsed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "state": self.state.value,
            "handType": self.hand_type.value,
            "accepted": self.accepted,
            "skipReason": self.skip_reason,
            "samples": [s.to_dict() for s in self.samples],
            "currentRom": {
                f.value: (a.to_dict() if a else None) for f, a in self.fingers.items()
            },
            "wristAngles": self.wrist.to_dict() if self.wrist else None,
            "kapandjiScore": self.kapandji_score,
            "windowElapsed": self.window_elapsed,
        }


@dataclass(frozen=True)
class SessionResult:
    """Immutable snapshot produced when a session is finalized."""
    session_id: str
    assessment_kind: AssessmentKind
    hand_type: HandType
    per_finger: Dict[str, Optional[Dict[str, float]]]
    kapandji_score: Optional[int]
    kapandji_details: Optional[Dict[str, bool]]
    wrist: Dict[str, Optional[float]]
    quality: Dict[str, MetricQuality]
    frame_count: int
    valid_frame_count: int
    is_incomplete: bool
    warnings: List[str]
    repetitions: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "assessmentKind": self.assessment_kind.value,
            "perFinger": self.per_finger,
            "kapandjiScore": self.kapandji_score,
            "kapandjiDetails": self.kapandji_details,
            **self.wrist,
            "handType": self.hand_type.value,
            "quality": {m: q.to_dict() for m, q in self.quality.items()},
            "frameCount": self.frame_count,
            "validFrameCount": self.valid_frame_count,
            "isIncomplete": self.is_incomplete,
            "warnings": list(self.warnings),
            "repetitions": self.repetitions,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION
# ═══════════════════════════════════════════════════════════════════════════════

class RomSession:
    """
    One recording session for one assessment kind.

    State machine: UNLOCKED -> (first confident handedness) -> RECORDING ->
    (window elapsed on the last repetition | stop) -> FINALIZED.
    """

    def __init__(
        self,
        assessment_kind: AssessmentKind,
        config: Optional[RomConfig] = None,
        hand_type: Optional[HandType] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())[:8]
        self.user_id = user_id
        self.assessment_kind = assessment_kind
        self.config = config or RomConfig()

        self.state = SessionState.UNLOCKED
        self.hand_type = HandType.UNKNOWN
        self.warnings: List[str] = []

        self.frame_count = 0
        self.valid_frame_count = 0
        self.repetitions: List[RepetitionRecord] = []
        self._current: Optional[RepetitionRecord] = None
        self._result: Optional[SessionResult] = None

        self.angle_calculator = JointAngleCalculator()
        self.kapandji_scorer = KapandjiScorer(self.config.kapandji_proximity)
        self.kapandji = KapandjiRatchet()
        self.wrist_calculator = WristAngleCalculator(
            median_window=self.config.median_filter_window,
            pose_min_visibility=self.config.pose_min_visibility,
        )
        self.quality_gate = TemporalQualityGate(
            metrics=assessment_kind.metrics,
            bypass_ratio=self.config.visibility_bypass_ratio,
            acceptance_threshold=self.config.temporal_quality_threshold,
            artifact_threshold=self.config.artifact_threshold_deg,
            window=self.config.consistency_window,
        )

        if hand_type is not None and hand_type != HandType.UNKNOWN:
            self._lock_hand(hand_type, source="session start")

    # ─── Hand lock ───────────────────────────────────────────────────────────

    def _lock_hand(self, hand_type: HandType, source: str):
        self.hand_type = hand_type
        self.state = SessionState.RECORDING
        logger.info(f"Session {self.session_id} locked to {hand_type.value} hand ({source})")

    def _update_hand_lock(self, frame: Frame):
        if self.state != SessionState.UNLOCKED:
            return
        if frame.handedness_hint != HandType.UNKNOWN:
            self._lock_hand(frame.handedness_hint, source=f"frame t={frame.timestamp}")
        elif self.frame_count >= self.config.handedness_grace_frames:
            self._lock_hand(HandType(self.config.default_hand_type), source="grace period expired")
            self.warnings.append("ambiguous_handedness")
            logger.warning(
                f"Session {self.session_id}: no confident handedness after "
                f"{self.frame_count} frames, defaulting to {self.config.default_hand_type}"
            )

    # ─── Repetitions ─────────────────────────────────────────────────────────

    def _open_repetition(self) -> RepetitionRecord:
        rep = RepetitionRecord(repetition_number=len(self.repetitions) + 1)
        self.repetitions.append(rep)
        self._current = rep
        return rep

    def _close_repetition(self):
        if self._current is not None:
            logger.debug(
                f"Session {self.session_id}: repetition {self._current.repetition_number} closed "
                f"with {self._current.frame_count} frames"
            )
        self._current = None

    def next_repetition(self):
        """Close the current repetition; the next frame opens a new one."""
        if self.state == SessionState.FINALIZED:
            raise SessionFinalizedError(self.session_id)
        self._close_repetition()

    def _window_elapsed(self, timestamp: int) -> bool:
        rep = self._current
        if rep is None or rep.start_timestamp is None:
            return False
        return timestamp - rep.start_timestamp > self.config.recording_window_seconds * 1000

    # ─── Frame processing ────────────────────────────────────────────────────

    @log_execution_time
    def process_frame(self, frame: Frame) -> FrameFeedback:
        """
        Fold one tracker frame into the session.

        Frames without a usable hand are counted (they lower visibility ratios)
        but otherwise skipped.

        Raises:
            SessionFinalizedError: the session no longer accepts frames
        """
        if self.state == SessionState.FINALIZED:
            raise SessionFinalizedError(self.session_id)

        if self._window_elapsed(frame.timestamp):
            self._close_repetition()
            if len(self.repetitions) >= self.config.target_repetitions:
                self.finalize()
                return FrameFeedback(
                    timestamp=frame.timestamp,
                    state=self.state,
                    hand_type=self.hand_type,
                    accepted=False,
                    skip_reason="recording window elapsed",
                    window_elapsed=True,
                )

        rep = self._current or self._open_repetition()
        if rep.start_timestamp is None:
            rep.start_timestamp = frame.timestamp
        rep.end_timestamp = frame.timestamp
        rep.frame_count += 1
        self.frame_count += 1
        self.quality_gate.begin_frame()

        self._update_hand_lock(frame)

        try:
            validated = validate_frame(frame, self.config.min_visibility)
        except InsufficientLandmarks as e:
            logger.debug(f"Session {self.session_id}: frame t={frame.timestamp} skipped: {e}")
            return FrameFeedback(
                timestamp=frame.timestamp,
                state=self.state,
                hand_type=self.hand_type,
                accepted=False,
                skip_reason=str(e),
            )

        rep.valid_frame_count += 1
        self.valid_frame_count += 1

        feedback = FrameFeedback(
            timestamp=frame.timestamp,
            state=self.state,
            hand_type=self.hand_type,
            accepted=True,
        )

        if self.assessment_kind == AssessmentKind.TAM:
            self._process_fingers(validated, rep, feedback)
        elif self.assessment_kind == AssessmentKind.KAPANDJI:
            self._process_kapandji(validated, rep, feedback)
        else:
            self._process_wrist(validated, rep, feedback)

        return feedback

    def _process_fingers(self, frame: ValidatedFrame, rep: RepetitionRecord, feedback: FrameFeedback):
        feedback.fingers = self.angle_calculator.all_fingers(frame)
        for finger, angles in feedback.fingers.items():
            if angles is None:
                continue
            metric = finger.value
            consistent = self.quality_gate.observe(metric, angles.total_active_rom, frame.timestamp)
            rep.maxima.fold(metric, "mcp", angles.mcp, consistent)
            rep.maxima.fold(metric, "pip", angles.pip, consistent)
            rep.maxima.fold(metric, "dip", angles.dip, consistent)
            rep.maxima.fold(metric, "totalActiveRom", angles.total_active_rom, consistent)
            feedback.samples.extend([
                AngleSample(AngleKind.MCP, angles.mcp, frame.timestamp, finger),
                AngleSample(AngleKind.PIP, angles.pip, frame.timestamp, finger),
                AngleSample(AngleKind.DIP, angles.dip, frame.timestamp, finger),
            ])

    def _process_kapandji(self, frame: ValidatedFrame, rep: RepetitionRecord, feedback: FrameFeedback):
        reading = self.kapandji_scorer.score_frame(frame)
        self.kapandji.update(reading)
        if reading is None:
            return
        rep.kapandji_max = max(rep.kapandji_max or 0, reading.score)
        feedback.kapandji_score = reading.score
        feedback.samples.append(AngleSample(AngleKind.KAPANDJI, reading.score, frame.timestamp))

    def _process_wrist(self, frame: ValidatedFrame, rep: RepetitionRecord, feedback: FrameFeedback):
        if self.hand_type == HandType.UNKNOWN:
            return
        wrist = self.wrist_calculator.calculate(frame, self.hand_type)
        feedback.wrist = wrist

        metric = self.assessment_kind.metrics[0]
        attr, positive_kind, negative_kind = WRIST_FAMILIES[metric]
        signed = getattr(wrist, attr)
        if signed is None:
            return

        consistent = self.quality_gate.observe(metric, signed, frame.timestamp)
        rep.maxima.fold(metric, positive_kind.value, max(signed, 0.0), consistent)
        rep.maxima.fold(metric, negative_kind.value, max(-signed, 0.0), consistent)
        kind = positive_kind if signed >= 0 else negative_kind
        feedback.samples.append(AngleSample(kind, abs(signed), frame.timestamp))

    # ─── Aggregation ─────────────────────────────────────────────────────────

    def _session_max(self, metric: str, name: str, include_suspect: bool) -> Optional[float]:
        """Max across repetitions (never summed)."""
        values = [
            v for v in (rep.maxima.get(metric, name, include_suspect) for rep in self.repetitions)
            if v is not None
        ]
        return max(values) if values else None

    def current_maxima(self) -> Dict[str, Any]:
        """
        Running session maxima while recording.

        Only values the gate found consistent are published here, so each
        figure only ever increases as frames arrive, whatever the metric's
        bypass status does in the meantime.
        """
        per_finger, wrist, kapandji_score = self._build_outputs(
            self.quality_gate.resolve_all(), final=False
        )
        return {"perFinger": per_finger, "kapandjiScore": kapandji_score, **wrist}

    def _build_outputs(self, quality: Dict[str, MetricQuality], final: bool):
        per_finger: Dict[str, Optional[Dict[str, float]]] = {f.value: None for f in Finger}
        wrist: Dict[str, Optional[float]] = {name: None for name in OUTPUT_WRIST_FIELDS.values()}

        for metric, q in quality.items():
            if final and not q.accepted:
                continue
            include_suspect = final and q.bypassed
            if metric in per_finger:
                values = {
                    name: self._session_max(metric, name, include_suspect)
                    for name in ("mcp", "pip", "dip", "totalActiveRom")
                }
                if values["totalActiveRom"] is not None:
                    per_finger[metric] = {k: round(v, 1) for k, v in values.items()}
            else:
                _, positive_kind, negative_kind = WRIST_FAMILIES[metric]
                for kind in (positive_kind, negative_kind):
                    value = self._session_max(metric, kind.value, include_suspect)
                    wrist[OUTPUT_WRIST_FIELDS[kind]] = None if value is None else round(value, 1)

        kapandji_score = None
        if self.assessment_kind == AssessmentKind.KAPANDJI and self.kapandji.frames_scored > 0:
            kapandji_score = self.kapandji.max_score

        return per_finger, wrist, kapandji_score

    # ─── Finalize ────────────────────────────────────────────────────────────

    def finalize(self) -> SessionResult:
        """
        Freeze the session and produce its result. Calling again returns the
        same result.
        """
        if self._result is not None:
            return self._result

        self._close_repetition()
        self.state = SessionState.FINALIZED

        if self.hand_type == HandType.UNKNOWN:
            self.hand_type = HandType(self.config.default_hand_type)
            self.warnings.append("ambiguous_handedness")
            logger.warning(
                f"Session {self.session_id} finalized without a confident handedness; "
                f"reporting {self.hand_type.value}"
            )

        quality = self.quality_gate.resolve_all()
        per_finger, wrist, kapandji_score = self._build_outputs(quality, final=True)

        is_incomplete = self.valid_frame_count < self.config.min_frame_count
        if is_incomplete:
            self.warnings.append("incomplete_recording")

        for metric, q in quality.items():
            status = "ACCEPTED" if q.accepted else "REJECTED"
            mode = "bypassed" if q.bypassed else f"{q.consistent_frames}/{q.visible_frames} consistent"
            logger.info(
                f"Session {self.session_id} {metric}: quality {q.score:.2f} ({mode}, "
                f"visible {q.visibility_ratio:.0%}) - {status}"
            )
            if not q.accepted:
                self.warnings.append(f"low_confidence:{metric}")

        self._result = SessionResult(
            session_id=self.session_id,
            assessment_kind=self.assessment_kind,
            hand_type=self.hand_type,
            per_finger=per_finger,
            kapandji_score=kapandji_score,
            kapandji_details=(
                dict(self.kapandji.details) if self.assessment_kind == AssessmentKind.KAPANDJI else None
            ),
            wrist=wrist,
            quality=quality,
            frame_count=self.frame_count,
            valid_frame_count=self.valid_frame_count,
            is_incomplete=is_incomplete,
            warnings=list(self.warnings),
            repetitions=[rep.to_dict() for rep in self.repetitions],
        )

        logger.info(
            f"Session {self.session_id} finalized: {self.assessment_kind.value}, "
            f"{self.frame_count} frames ({self.valid_frame_count} valid), "
            f"hand {self.hand_type.value}, incomplete={is_incomplete}"
        )
        return self._result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "assessment_kind": self.assessment_kind.value,
            "state": self.state.value,
            "hand_type": self.hand_type.value,
            "frame_count": self.frame_count,
            "valid_frame_count": self.valid_frame_count,
            "repetitions": [rep.to_dict() for rep in self.repetitions],
            "maxima": self.current_maxima(),
            "warnings": list(self.warnings),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION HANDLER
# ═══════════════════════════════════════════════════════════════════════════════

class RomSessionHandler:
    """
    Registry of in-flight sessions, keyed by session id.

    Sessions are removed as soon as they are finalized; results are handed to
    the caller (and from there to persistence), never kept here.
    """

    def __init__(self, config: Optional[RomConfig] = None):
        self.config = config
        self.active_sessions: Dict[str, RomSession] = {}
        self._completed: Dict[str, SessionResult] = {}

    def create_session(
        self,
        assessment_kind: AssessmentKind,
        user_id: Optional[str] = None,
        hand_type: Optional[HandType] = None,
        config: Optional[RomConfig] = None,
    ) -> RomSession:
        session = RomSession(
            assessment_kind=assessment_kind,
            config=config or self.config or RomConfig.from_settings(),
            hand_type=hand_type,
            user_id=user_id,
        )
        self.active_sessions[session.session_id] = session
        logger.info(
            f"Created {assessment_kind.value} session {session.session_id} for user {user_id}"
        )
        return session

    def get_session(self, session_id: str) -> Optional[RomSession]:
        return self.active_sessions.get(session_id)

    def process_frame(self, session_id: str, frame: Frame) -> Optional[FrameFeedback]:
        """Feed a frame; returns None for an unknown session."""
        session = self.active_sessions.get(session_id)
        if session is None:
            return None
        feedback = session.process_frame(frame)
        if session.state == SessionState.FINALIZED:
            self._completed[session_id] = session.finalize()
            self.cleanup_session(session_id)
        return feedback

    def stop_session(self, session_id: str) -> Optional[SessionResult]:
        """Finalize on explicit stop or cancel and drop the session."""
        session = self.active_sessions.get(session_id)
        if session is None:
            return self._completed.pop(session_id, None)
        result = session.finalize()
        self.cleanup_session(session_id)
        return result

    def cleanup_session(self, session_id: str):
        if session_id in self.active_sessions:
            del self.active_sessions[session_id]


# ═══════════════════════════════════════════════════════════════════════════════
# MODULE-LEVEL SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_handler_instance: Optional[RomSessionHandler] = None

def get_session_handler() -> RomSessionHandler:
    """Get or create the global session handler instance."""
    global _handler_instance
    if _handler_instance is None:
        _handler_instance = RomSessionHandler()
    return _handler_instance
