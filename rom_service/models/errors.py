"""
ROMTRACK ROM Service - Engine Errors

Exceptions raised by the measurement engine. Low-confidence metrics, ambiguous
handedness and incomplete recordings are reported as flags on the finalized
result, not raised.
"""


class RomEngineError(Exception):
    """Base class for measurement engine errors."""


class InsufficientLandmarks(RomEngineError):
    """Frame has no hand detection or fewer than 21 hand landmarks."""

    def __init__(self, message: str = "No usable hand landmarks in frame", landmark_count: int = 0):
        super().__init__(message)
        self.landmark_count = landmark_count


class InvalidFrameError(RomEngineError, ValueError):
    """Frame payload is malformed (bad coordinates, visibility outside [0, 1])."""


class SessionFinalizedError(RomEngineError):
    """A frame or command was sent to a session that is already finalized."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is already finalized")
        self.session_id = session_id
