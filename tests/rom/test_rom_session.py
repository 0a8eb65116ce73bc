"""Session aggregation tests: maxima, quality gating, hand lock, repetitions."""

import dataclasses

import numpy as np
import pytest

from rom_service.models import (
    AssessmentKind,
    HandType,
    RomSession,
    RomSessionHandler,
    SessionFinalizedError,
    SessionState,
)


TAM_100 = (30.0, 40.0, 30.0)
TAM_250 = (90.0, 100.0, 60.0)
TAM_80 = (20.0, 30.0, 30.0)

ELBOW = np.array([0.1, 0.3, 0.0])
WRIST = np.array([0.2, 0.5, 0.0])
FLEXED_HAND = np.array([0.18, 0.45, 0.15])
EXTENDED_HAND = np.array([0.22, 0.55, 0.15])


def _run_index_sequence(session, frame_factory, index_values, total_frames):
    """Index finger visible (with the given flexion) in the first frames, occluded after."""
    for i in range(total_frames):
        if i < len(index_values):
            frame = frame_factory(i * 33, flexion={"index": index_values[i]})
        else:
            frame = frame_factory(i * 33, visibility={8: 0.2})
        session.process_frame(frame)


# ─── TAM ────────────────────────────────────────────────────────────────────

def test_tam_session_reports_per_finger_maxima(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    for i, flex in enumerate([(10.0, 20.0, 10.0), (40.0, 60.0, 30.0), (20.0, 30.0, 15.0)] * 4):
        session.process_frame(frame_factory(i * 33, flexion={"index": flex}))

    result = session.finalize()
    index = result.per_finger["index"]
    assert index["mcp"] == 40.0
    assert index["pip"] == 60.0
    assert index["dip"] == 30.0
    assert index["totalActiveRom"] == 130.0
    assert result.per_finger["middle"]["totalActiveRom"] == 0.0
    assert result.quality["index"].bypassed
    assert not result.is_incomplete
    assert result.hand_type == HandType.RIGHT


def test_tam_session_leaves_other_assessment_outputs_empty(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    session.process_frame(frame_factory(0))
    data = session.finalize().to_dict()
    assert data["kapandjiScore"] is None
    assert data["kapandjiDetails"] is None
    assert data["wristFlexionAngle"] is None
    assert data["forearmPronationAngle"] is None
    assert data["radialDeviationAngle"] is None


def test_occluded_finger_single_spike_is_excluded(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    _run_index_sequence(
        session, frame_factory,
        [TAM_100, TAM_100, TAM_100, TAM_250, TAM_100, TAM_100],
        total_frames=12,
    )
    result = session.finalize()

    quality = result.quality["index"]
    assert not quality.bypassed
    assert quality.score == pytest.approx(0.8)
    assert result.per_finger["index"]["totalActiveRom"] == 100.0
    # Fully tracked fingers are unaffected
    assert result.quality["middle"].bypassed


def test_occluded_finger_with_repeated_spikes_is_null(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    _run_index_sequence(
        session, frame_factory,
        [TAM_100, TAM_100, TAM_100, TAM_250, TAM_250, TAM_250, TAM_100],
        total_frames=12,
    )
    result = session.finalize()

    assert result.per_finger["index"] is None
    assert not result.quality["index"].accepted
    assert "low_confidence:index" in result.warnings
    assert result.per_finger["ring"] is not None


def test_well_tracked_finger_keeps_large_values(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    for i, flex in enumerate([TAM_100] * 5 + [TAM_250] + [TAM_100] * 6):
        session.process_frame(frame_factory(i * 33, flexion={"index": flex}))
    result = session.finalize()
    assert result.quality["index"].score == 1.0
    assert result.per_finger["index"]["totalActiveRom"] == 250.0


def test_frames_without_hand_are_counted_but_skipped(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    feedback = session.process_frame(frame_factory(0, hand=False))
    assert not feedback.accepted
    assert feedback.skip_reason
    session.process_frame(frame_factory(33))

    assert session.frame_count == 2
    assert session.valid_frame_count == 1
    assert session.quality_gate.visibility_ratio("index") == pytest.approx(0.5)


def test_frame_feedback_carries_live_samples(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    feedback = session.process_frame(frame_factory(0, flexion={"ring": TAM_100}))
    data = feedback.to_dict()
    assert data["accepted"]
    assert data["state"] == "recording"
    assert len(data["samples"]) == 12
    assert data["currentRom"]["ring"]["totalActiveRom"] == 100.0


# ─── Kapandji ───────────────────────────────────────────────────────────────

def test_kapandji_session_ratchets(frame_factory, hand_factory, config):
    index_tip = hand_factory()[8]
    little_tip = hand_factory()[20]
    session = RomSession(AssessmentKind.KAPANDJI, config=config)
    targets = [(index_tip.x, index_tip.y, 0.0), (little_tip.x, little_tip.y, 0.0), None]

    scores = []
    for i, target in enumerate(targets * 4):
        session.process_frame(frame_factory(i * 33, thumb_tip=target))
        scores.append(session.kapandji.max_score)

    assert scores == sorted(scores)
    result = session.finalize()
    assert result.kapandji_score == 6
    assert result.kapandji_details["indexTip"]
    assert result.kapandji_details["littleTip"]
    assert all(v is None for v in result.per_finger.values())


# ─── Wrist ──────────────────────────────────────────────────────────────────

def test_wrist_session_splits_signed_maxima(wrist_frame_factory, config):
    session = RomSession(AssessmentKind.WRIST_FLEXION_EXTENSION, config=config, hand_type=HandType.RIGHT)
    for i in range(12):
        hand = FLEXED_HAND if i % 2 == 0 else EXTENDED_HAND
        session.process_frame(wrist_frame_factory(i * 33, ELBOW, WRIST, hand))

    data = session.finalize().to_dict()
    assert data["wristFlexionAngle"] == pytest.approx(109.7, abs=0.1)
    assert data["wristExtensionAngle"] == pytest.approx(70.3, abs=0.1)
    assert data["forearmPronationAngle"] is None
    assert data["handType"] == "RIGHT"


def test_wrist_session_keeps_locked_side(wrist_frame_factory, config):
    session = RomSession(AssessmentKind.WRIST_FLEXION_EXTENSION, config=config)
    session.process_frame(wrist_frame_factory(0, ELBOW, WRIST, FLEXED_HAND, side=HandType.RIGHT))
    for i in range(1, 12):
        session.process_frame(wrist_frame_factory(
            i * 33, ELBOW, WRIST, FLEXED_HAND, side=HandType.RIGHT, hint=HandType.LEFT
        ))
    result = session.finalize()
    assert result.hand_type == HandType.RIGHT
    assert result.wrist["wristFlexionAngle"] == pytest.approx(109.7, abs=0.1)


# ─── Hand lock ──────────────────────────────────────────────────────────────

def test_hand_lock_is_never_changed(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    assert session.state == SessionState.UNLOCKED
    session.process_frame(frame_factory(0, hint=HandType.RIGHT))
    for i in range(1, 10):
        session.process_frame(frame_factory(i * 33, hint=HandType.LEFT))
    assert session.hand_type == HandType.RIGHT
    assert session.state == SessionState.RECORDING


def test_explicit_hand_type_wins_over_hints(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config, hand_type=HandType.LEFT)
    session.process_frame(frame_factory(0, hint=HandType.RIGHT))
    assert session.hand_type == HandType.LEFT


def test_ambiguous_handedness_defaults_after_grace(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    for i in range(config.handedness_grace_frames - 1):
        session.process_frame(frame_factory(i * 33, hint=HandType.UNKNOWN))
    assert session.state == SessionState.UNLOCKED

    session.process_frame(frame_factory(999, hint=HandType.UNKNOWN))
    assert session.hand_type == HandType.LEFT
    assert session.state == SessionState.RECORDING
    assert "ambiguous_handedness" in session.finalize().warnings


def test_default_hand_type_is_configurable(frame_factory, config):
    session = RomSession(
        AssessmentKind.TAM, config=dataclasses.replace(config, default_hand_type="RIGHT")
    )
    session.process_frame(frame_factory(0, hint=HandType.UNKNOWN))
    result = session.finalize()
    assert result.hand_type == HandType.RIGHT
    assert "ambiguous_handedness" in result.warnings


# ─── Window, repetitions, finalize ──────────────────────────────────────────

def test_window_elapsed_finalizes_session(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    for t in (0, 5000, 15000):
        assert session.process_frame(frame_factory(t)).accepted

    feedback = session.process_frame(frame_factory(15001))
    assert feedback.window_elapsed
    assert not feedback.accepted
    assert session.state == SessionState.FINALIZED
    assert session.frame_count == 3

    with pytest.raises(SessionFinalizedError):
        session.process_frame(frame_factory(15034))
    with pytest.raises(SessionFinalizedError):
        session.next_repetition()


def test_repetitions_take_max_not_sum(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    for i in range(6):
        session.process_frame(frame_factory(i * 33, flexion={"index": TAM_100}))
    session.next_repetition()
    for i in range(6, 12):
        session.process_frame(frame_factory(i * 33, flexion={"index": TAM_80}))

    result = session.finalize()
    assert len(result.repetitions) == 2
    assert result.per_finger["index"]["totalActiveRom"] == 100.0
    assert result.repetitions[1]["frameCount"] == 6


def test_target_repetitions_reached_by_window(frame_factory, config):
    cfg = dataclasses.replace(config, recording_window_seconds=1.0, target_repetitions=2)
    session = RomSession(AssessmentKind.TAM, config=cfg)
    for t in (0, 500, 1000, 1500, 2000, 2500):
        session.process_frame(frame_factory(t))
    assert session.state == SessionState.RECORDING
    assert len(session.repetitions) == 2

    session.process_frame(frame_factory(2600))
    assert session.state == SessionState.FINALIZED
    assert [r["frameCount"] for r in session.finalize().repetitions] == [3, 3]


def test_short_recording_is_incomplete(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    for i in range(config.min_frame_count - 1):
        session.process_frame(frame_factory(i * 33))
    result = session.finalize()
    assert result.is_incomplete
    assert "incomplete_recording" in result.warnings
    assert result.per_finger["index"] is not None


def test_finalize_is_idempotent(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    session.process_frame(frame_factory(0))
    first = session.finalize()
    assert session.finalize() is first
    assert first.warnings.count("incomplete_recording") == 1


def test_same_frames_same_result(frame_factory, config):
    def run():
        session = RomSession(AssessmentKind.TAM, config=config, session_id="fixed")
        _run_index_sequence(session, frame_factory, [TAM_100, TAM_80, TAM_250, TAM_100], 12)
        return session.finalize().to_dict()

    assert run() == run()


def test_running_maxima_visible_before_finalize(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    session.process_frame(frame_factory(0, flexion={"pinky": TAM_80}))
    status = session.to_dict()
    assert status["state"] == "recording"
    assert status["maxima"]["perFinger"]["pinky"]["totalActiveRom"] == 80.0


# ─── Handler ────────────────────────────────────────────────────────────────

def test_handler_stop_returns_result_and_drops_session(frame_factory, config):
    handler = RomSessionHandler(config)
    session = handler.create_session(AssessmentKind.TAM, user_id="patient-1")
    handler.process_frame(session.session_id, frame_factory(0))

    result = handler.stop_session(session.session_id)
    assert result.frame_count == 1
    assert handler.get_session(session.session_id) is None
    assert handler.stop_session(session.session_id) is None


def test_handler_unknown_session(frame_factory, config):
    handler = RomSessionHandler(config)
    assert handler.process_frame("missing", frame_factory(0)) is None
    assert handler.stop_session("missing") is None


def test_handler_keeps_auto_finalized_result_until_collected(frame_factory, config):
    handler = RomSessionHandler(config)
    session = handler.create_session(AssessmentKind.TAM)
    handler.process_frame(session.session_id, frame_factory(0))
    feedback = handler.process_frame(session.session_id, frame_factory(20000))

    assert feedback.state == SessionState.FINALIZED
    assert session.session_id not in handler.active_sessions
    assert handler.stop_session(session.session_id) is session.finalize()
    assert handler.stop_session(session.session_id) is None


# ─── Monotonic running maxima ───────────────────────────────────────────────

def test_running_maxima_never_decrease_across_bypass_boundary(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    visible = [TAM_100, TAM_100, TAM_100, TAM_250, TAM_100, TAM_100, TAM_100, TAM_100]

    seen = []
    for i in range(12):
        if i < len(visible):
            frame = frame_factory(i * 33, flexion={"index": visible[i]})
        else:
            frame = frame_factory(i * 33, visibility={8: 0.2})
        session.process_frame(frame)
        seen.append(session.current_maxima()["perFinger"]["index"]["totalActiveRom"])

    assert seen == sorted(seen)
    assert session.quality_gate.visibility_ratio("index") < config.visibility_bypass_ratio

    final = session.finalize().per_finger["index"]["totalActiveRom"]
    assert final >= seen[-1]


def test_bypassed_metric_final_value_not_below_running_value(frame_factory, config):
    session = RomSession(AssessmentKind.TAM, config=config)
    for i, flex in enumerate([TAM_100] * 5 + [TAM_250] + [TAM_100] * 6):
        session.process_frame(frame_factory(i * 33, flexion={"index": flex}))
    running = session.current_maxima()["perFinger"]["index"]["totalActiveRom"]

    final = session.finalize().per_finger["index"]["totalActiveRom"]
    assert running == 100.0
    assert final == 250.0


# ─── Forearm rotation and deviation ─────────────────────────────────────────

ARM_ELBOW = np.array([0.5, 0.9, 0.0])
ARM_WRIST = np.array([0.5, 0.6, 0.0])


def _knuckle_offset(phi_deg):
    """Half knuckle line turned phi about the forearm (y) axis."""
    phi = np.radians(phi_deg)
    return tuple(0.04 * np.array([np.cos(phi), 0.0, np.sin(phi)]))


def _deviated_hand(phi_deg):
    """Middle MCP bent phi toward +x (the thumb side) in the image plane."""
    phi = np.radians(phi_deg)
    return ARM_WRIST + 0.1 * np.array([np.sin(phi), -np.cos(phi), 0.0])


def test_forearm_rotation_session_splits_pronation_and_supination(wrist_frame_factory, config):
    session = RomSession(AssessmentKind.FOREARM_ROTATION, config=config, hand_type=HandType.RIGHT)
    hand_ref = ARM_WRIST + np.array([0.0, -0.1, 0.0])
    for i, phi in enumerate([10.0, 25.0, 40.0, 20.0, 0.0, -10.0, -25.0, -15.0] + [5.0] * 4):
        session.process_frame(wrist_frame_factory(
            i * 33, ARM_ELBOW, ARM_WRIST, hand_ref, radial_offset=_knuckle_offset(phi)
        ))

    result = session.finalize()
    data = result.to_dict()
    assert data["forearmPronationAngle"] == pytest.approx(40.0, abs=0.1)
    assert data["forearmSupinationAngle"] == pytest.approx(25.0, abs=0.1)
    assert data["wristFlexionAngle"] is None
    assert data["radialDeviationAngle"] is None

    assert list(result.quality) == ["forearm_rotation"]
    assert result.quality["forearm_rotation"].bypassed
    assert data["quality"]["forearm_rotation"]["accepted"]


def test_deviation_session_is_quality_gated(wrist_frame_factory, config):
    session = RomSession(
        AssessmentKind.RADIAL_ULNAR_DEVIATION, config=config, hand_type=HandType.RIGHT
    )
    for i in range(12):
        if i < 6:
            hand_ref = _deviated_hand(20.0 if i % 2 == 0 else -5.0)
            frame = wrist_frame_factory(i * 33, ARM_ELBOW, ARM_WRIST, hand_ref)
        else:
            # Elbow lost: the hand is still tracked but no deviation is measurable
            frame = wrist_frame_factory(
                i * 33, ARM_ELBOW, ARM_WRIST, _deviated_hand(0.0), elbow_visibility=0.1
            )
        session.process_frame(frame)

    result = session.finalize()
    assert result.wrist["radialDeviationAngle"] == pytest.approx(20.0, abs=0.1)
    assert result.wrist["ulnarDeviationAngle"] == pytest.approx(5.0, abs=0.1)
    assert result.wrist["forearmPronationAngle"] is None

    quality = result.quality["wrist_deviation"]
    assert not quality.bypassed
    assert quality.visibility_ratio == pytest.approx(0.5)
    assert quality.score == pytest.approx(0.9)
    assert quality.accepted


def test_deviation_session_rejects_inconsistent_metric(wrist_frame_factory, config):
    session = RomSession(
        AssessmentKind.RADIAL_ULNAR_DEVIATION, config=config, hand_type=HandType.RIGHT
    )
    angles = [0.0, 0.0, 0.0, 60.0, 60.0, 60.0, 0.0]
    for i in range(12):
        if i < len(angles):
            frame = wrist_frame_factory(i * 33, ARM_ELBOW, ARM_WRIST, _deviated_hand(angles[i]))
        else:
            frame = wrist_frame_factory(
                i * 33, ARM_ELBOW, ARM_WRIST, _deviated_hand(0.0), elbow_visibility=0.1
            )
        session.process_frame(frame)

    result = session.finalize()
    assert not result.quality["wrist_deviation"].accepted
    assert result.wrist["radialDeviationAngle"] is None
    assert result.wrist["ulnarDeviationAngle"] is None
    assert "low_confidence:wrist_deviation" in result.warnings
