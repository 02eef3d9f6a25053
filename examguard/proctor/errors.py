"""
Proctoring Errors - Error taxonomy for the integrity pipeline

- DetectorTimeout: inference exceeded its bound (fail-open, zero detections)
- PersistenceFailure: storage unavailable after bounded retries
- InvariantViolation: integration/programming errors, fatal to the operation
"""

from typing import Any, Dict, Optional


class ProctoringError(Exception):
    """Base class for all proctoring pipeline errors"""


class DetectorTimeout(ProctoringError):
    """Detector inference did not finish within the configured bound"""

    def __init__(self, timeout_seconds: float, frame_index: Optional[int] = None):
        self.timeout_seconds = timeout_seconds
        self.frame_index = frame_index
        super().__init__(
            f"Detector timed out after {timeout_seconds}s (frame={frame_index})"
        )


class PersistenceFailure(ProctoringError):
    """A storage operation failed, possibly after exhausting retries"""

    def __init__(self, operation: str, message: str = "", attempts: int = 1):
        self.operation = operation
        self.attempts = attempts
        detail = f": {message}" if message else ""
        super().__init__(f"{operation} failed after {attempts} attempt(s){detail}")


class InvariantViolation(ProctoringError):
    """An operation would break a pipeline invariant"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        super().__init__(message)


class IllegalTransition(InvariantViolation):
    """A session or incident status change not allowed by its state machine"""

    def __init__(self, entity: str, entity_id: str, current: str, target: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(
            f"Illegal {entity} transition {current} -> {target} for {entity_id}",
            {"entity_id": entity_id, "current": current, "target": target},
        )


class SessionClosed(InvariantViolation):
    """Frames were sent to a session whose pipeline is no longer accepting them"""


class SessionNotFound(ProctoringError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class AlertNotFound(ProctoringError):
    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert not found: {alert_id}")


class IncidentNotFound(ProctoringError):
    def __init__(self, incident_id: str):
        self.incident_id = incident_id
        super().__init__(f"Incident not found: {incident_id}")
