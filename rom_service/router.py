"""
ROMTRACK ROM Service Router

Endpoints that feed vision-tracker frames into range-of-motion sessions and
return finalized session maxima. Persistence is the caller's concern: a
finalized result is returned once and then dropped.
"""

import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, HTTPException
from pydantic import BaseModel, Field

from core.config import RomConfig
from shared.utils import handle_exceptions, success_response

from .models import (
    AssessmentKind,
    Frame,
    HandType,
    InvalidFrameError,
    RomSessionHandler,
    SessionFinalizedError,
    SessionState,
    get_session_handler
)

router = APIRouter()
logger = logging.getLogger("romtrack.rom.router")


# Service instance (singleton pattern)
_session_handler: Optional[RomSessionHandler] = None


def get_services() -> RomSessionHandler:
    """Get or initialize service instances."""
    global _session_handler
    if _session_handler is None:
        _session_handler = get_session_handler()
    return _session_handler


# ============= Pydantic Models =============

class LandmarkIn(BaseModel):
    x: float
    y: float
    z: float = 0.0
    visibility: Optional[float] = None


class FrameIn(BaseModel):
    timestamp: int
    handLandmarks: Optional[List[LandmarkIn]] = None
    poseLandmarks: Optional[List[LandmarkIn]] = None
    handednessHint: str = "UNKNOWN"


class StartSessionRequest(BaseModel):
    assessment_kind: str
    user_id: Optional[str] = None
    hand_type: Optional[str] = None
    target_repetitions: Optional[int] = Field(default=None, ge=1)
    median_filter_window: Optional[int] = Field(default=None, ge=1)


ASSESSMENT_DESCRIPTIONS = {
    AssessmentKind.TAM: "Total Active Motion: MCP + PIP + DIP flexion for each long finger",
    AssessmentKind.KAPANDJI: "Thumb opposition score (0-10)",
    AssessmentKind.WRIST_FLEXION_EXTENSION: "Elbow-referenced wrist flexion and extension",
    AssessmentKind.FOREARM_ROTATION: "Forearm pronation and supination",
    AssessmentKind.RADIAL_ULNAR_DEVIATION: "Wrist radial and ulnar deviation",
}


def _parse_frame(payload: Dict[str, Any]) -> Frame:
    return Frame.from_dict(payload)


def _require_session(session_id: str):
    session = get_services().get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ============= REST Endpoints =============

@router.get("/assessments")
async def list_assessments():
    """Assessment kinds and the metrics each one produces."""
    return {
        "assessments": [
            {
                "kind": kind.value,
                "description": ASSESSMENT_DESCRIPTIONS[kind],
                "quality_metrics": kind.metrics,
            }
            for kind in AssessmentKind
        ]
    }


@router.get("/config")
async def get_engine_config():
    """Effective engine thresholds (environment overrides applied)."""
    return success_response(RomConfig.from_settings().to_dict())


@router.post("/session/start")
@handle_exceptions
async def start_session(request: StartSessionRequest):
    """
    Create a recording session.

    The hand type may be locked up front; otherwise it is locked from the
    first frame with a confident handedness hint.
    """
    handler = get_services()

    try:
        kind = AssessmentKind(request.assessment_kind)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid assessment kind. Valid kinds: {[k.value for k in AssessmentKind]}"
        )

    hand_type = HandType.parse(request.hand_type) if request.hand_type else None
    config = RomConfig.from_settings(
        target_repetitions=request.target_repetitions,
        median_filter_window=request.median_filter_window,
    )

    session = handler.create_session(
        assessment_kind=kind,
        user_id=request.user_id,
        hand_type=hand_type,
        config=config,
    )

    return {
        "status": "created",
        "session_id": session.session_id,
        "assessment_kind": kind.value,
        "state": session.state.value,
        "hand_type": session.hand_type.value,
        "recording_window_seconds": config.recording_window_seconds,
        "websocket_url": f"/api/rom/ws/session/{session.session_id}"
    }


@router.post("/session/{session_id}/frame")
@handle_exceptions
async def submit_frame(session_id: str, frame: FrameIn):
    """Process one tracker frame and return live feedback."""
    handler = get_services()
    _require_session(session_id)

    try:
        feedback = handler.process_frame(session_id, _parse_frame(frame.model_dump()))
    except SessionFinalizedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    response = {"session_id": session_id, "feedback": feedback.to_dict()}
    if feedback.state == SessionState.FINALIZED:
        result = handler.stop_session(session_id)
        response["result"] = result.to_dict() if result else None
    return response


@router.post("/session/{session_id}/repetition")
async def next_repetition(session_id: str):
    """Close the current repetition; the next frame starts a new one."""
    session = _require_session(session_id)
    try:
        session.next_repetition()
    except SessionFinalizedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "repetition_closed", "session_id": session_id,
            "repetitions": len(session.repetitions)}


@router.post("/session/{session_id}/stop")
async def stop_session(session_id: str):
    """Finalize the session (explicit stop or cancel) and return its result."""
    result = get_services().stop_session(session_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "finalized", "session_id": session_id, "result": result.to_dict()}


@router.get("/session/{session_id}")
async def get_session_status(session_id: str):
    """Current state and running maxima of an in-flight session."""
    return _require_session(session_id).to_dict()


# ============= WebSocket Stream =============

@router.websocket("/ws/session/{session_id}")
async def session_stream(websocket: WebSocket, session_id: str):
    """
    Streaming ingestion for one session.

    Client messages:
    - {"type": "FRAME", "frame": {...}}
    - {"type": "NEXT_REPETITION"}
    - {"type": "STOP"}
    """
    await websocket.accept()
    handler = get_services()

    session = handler.get_session(session_id)
    if not session:
        await websocket.send_json({
            "type": "ERROR",
            "message": f"Session {session_id} not found"
        })
        await websocket.close()
        return

    await websocket.send_json({
        "type": "SESSION_READY",
        "session_id": session_id,
        "assessment_kind": session.assessment_kind.value,
        "hand_type": session.hand_type.value
    })

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "ERROR", "message": "Message is not valid JSON"})
                continue
            if not isinstance(message, dict):
                await websocket.send_json({"type": "ERROR", "message": "Message must be a JSON object"})
                continue
            msg_type = message.get("type", "FRAME")

            try:
                if msg_type == "FRAME":
                    feedback = handler.process_frame(session_id, _parse_frame(message.get("frame", {})))
                    if feedback is None:
                        raise SessionFinalizedError(session_id)
                    await websocket.send_json({"type": "FRAME_RESULT", **feedback.to_dict()})
                    if feedback.state != SessionState.FINALIZED:
                        continue
                elif msg_type == "NEXT_REPETITION":
                    session.next_repetition()
                    await websocket.send_json({
                        "type": "REPETITION_CLOSED",
                        "repetitions": len(session.repetitions)
                    })
                    continue
                elif msg_type != "STOP":
                    await websocket.send_json({
                        "type": "ERROR",
                        "message": f"Unknown message type {msg_type}"
                    })
                    continue
            except (InvalidFrameError, SessionFinalizedError) as e:
                await websocket.send_json({"type": "ERROR", "message": str(e)})
                continue

            result = handler.stop_session(session_id)
            await websocket.send_json({
                "type": "SESSION_COMPLETED",
                "result": result.to_dict() if result else None
            })
            break

    except WebSocketDisconnect:
        # Cancelled recording: finalize with whatever frames arrived
        result = handler.stop_session(session_id)
        logger.info(
            f"Session {session_id} disconnected; finalized with "
            f"{result.frame_count if result else 0} frames"
        )
        return

    await websocket.close()
