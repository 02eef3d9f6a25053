"""
Proctoring API - FastAPI endpoints for exam integrity monitoring

Endpoints:
- POST /api/proctor/sessions - Schedule an exam session
- POST /api/proctor/start - Start a scheduled session
- POST /api/proctor/stream - Stream a webcam frame
- POST /api/proctor/submit - Submit the exam (submitted or flagged)
- POST /api/proctor/terminate - Terminate a session
- GET /api/proctor/status/{session_id} - Session disposition
- GET /api/proctor/sessions/{session_id}/alerts - Alerts of a session
- POST /api/proctor/alerts/{alert_id}/acknowledge - Proctor acknowledges an alert
- GET /api/proctor/sessions/{session_id}/incidents - Incidents of a session
- POST /api/proctor/incidents/{incident_id}/status - Proctor/admin incident transition
- GET /api/proctor/health - Service health
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..config import settings
from .errors import (
    AlertNotFound, IncidentNotFound, InvariantViolation, PersistenceFailure,
    ProctoringError, SessionNotFound
)
from .models import IncidentStatus, ObservationFrame
from .monitor import IntegrityMonitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proctor", tags=["Proctoring"])

# Created on first request from settings; tests override get_monitor
_monitor: Optional[IntegrityMonitor] = None


def get_monitor() -> IntegrityMonitor:
    global _monitor
    if _monitor is None:
        _monitor = IntegrityMonitor.from_settings(settings)
    return _monitor


def _http_error(e: ProctoringError) -> HTTPException:
    """Map pipeline errors onto HTTP status codes"""
    if isinstance(e, (SessionNotFound, AlertNotFound, IncidentNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvariantViolation):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PersistenceFailure):
        return HTTPException(status_code=503, detail="Storage temporarily unavailable")
    return HTTPException(status_code=500, detail=str(e))


# ============== Request/Response Models ==============

class ScheduleSessionRequest(BaseModel):
    """Request to schedule an exam session"""
    exam_id: str = Field(..., description="ID of the exam")
    student_id: str = Field(..., description="ID of the student")
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionActionRequest(BaseModel):
    """Request that targets an existing session"""
    session_id: str = Field(..., description="Session ID from /sessions")


class TerminateSessionRequest(BaseModel):
    session_id: str
    reason: str = Field("terminated by administrator", description="Why the session was ended")


class StreamFrameRequest(BaseModel):
    """Request to process a webcam frame"""
    session_id: str = Field(..., description="Session ID from /sessions")
    frame_base64: str = Field(..., description="Base64 encoded JPEG frame")
    timestamp: float = Field(..., description="Frame timestamp in seconds")


class AcknowledgeAlertRequest(BaseModel):
    proctor_id: str
    notes: Optional[str] = None


class IncidentStatusRequest(BaseModel):
    status: IncidentStatus
    actor_id: str
    resolution: Optional[str] = None


class SessionResponse(BaseModel):
    """Exam session record"""
    id: str
    exam_id: str
    student_id: str
    status: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    biometric_verified: bool
    score: Optional[float] = None
    suspicious_activity_count: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status_reason: Optional[str] = None
    needs_manual_audit: bool
    created_at: str


class AlertResponse(BaseModel):
    id: str
    session_id: str
    alert_type: str
    severity: str
    confidence_score: int
    description: str
    window_id: Optional[str] = None
    occurrence_count: int
    acknowledged: bool
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[str] = None
    notes: Optional[str] = None
    created_at: str


class IncidentResponse(BaseModel):
    id: str
    session_id: str
    incident_type: str
    severity: str
    status: str
    reported_by: str
    description: str
    alert_ids: List[str]
    investigated_by: Optional[str] = None
    resolution: Optional[str] = None
    resolved_at: Optional[str] = None
    created_at: str
    updated_at: str


class StreamFrameResponse(BaseModel):
    """Response after processing a frame"""
    session_id: str
    frame_index: Optional[int] = None
    windows_closed: List[str]
    alerts: List[AlertResponse]
    incident: Optional[IncidentResponse] = None
    pending_windows: int
    persistence_error: Optional[str] = None


# ============== API Endpoints ==============

@router.post("/sessions", response_model=SessionResponse)
def schedule_session(request: ScheduleSessionRequest, monitor: IntegrityMonitor = Depends(get_monitor)):
    """Schedule a session in the not_started state"""
    try:
        session = monitor.schedule(
            request.exam_id, request.student_id, request.ip_address, request.user_agent
        )
        return SessionResponse(**session.to_dict())
    except ProctoringError as e:
        raise _http_error(e)


@router.post("/start", response_model=SessionResponse)
def start_session(request: SessionActionRequest, monitor: IntegrityMonitor = Depends(get_monitor)):
    """
    Start a scheduled session.

    Biometric verification is attempted; failure is recorded on the
    session but does not block the start.
    """
    try:
        session = monitor.start(request.session_id)
        return SessionResponse(**session.to_dict())
    except ProctoringError as e:
        raise _http_error(e)


@router.post("/stream", response_model=StreamFrameResponse)
def stream_frame(request: StreamFrameRequest, monitor: IntegrityMonitor = Depends(get_monitor)):
    """
    Process a single webcam frame.

    Frames are buffered into windows; a response reports any window that
    closed with this frame and the alerts/incident it produced.
    """
    payload = request.frame_base64
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]

    try:
        image_data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid frame data")
    if not image_data:
        raise HTTPException(status_code=400, detail="Invalid frame data")

    try:
        result = monitor.ingest_frame(ObservationFrame(
            session_id=request.session_id,
            timestamp=request.timestamp,
            image_data=image_data,
        ))
        return StreamFrameResponse(**result.to_dict())
    except ProctoringError as e:
        raise _http_error(e)


@router.post("/submit", response_model=SessionResponse)
def submit_session(request: SessionActionRequest, monitor: IntegrityMonitor = Depends(get_monitor)):
    """Submit the exam. The session ends as submitted or flagged."""
    try:
        session = monitor.submit(request.session_id)
        return SessionResponse(**session.to_dict())
    except ProctoringError as e:
        raise _http_error(e)


@router.post("/terminate", response_model=SessionResponse)
def terminate_session(request: TerminateSessionRequest, monitor: IntegrityMonitor = Depends(get_monitor)):
    try:
        session = monitor.terminate(request.session_id, request.reason)
        return SessionResponse(**session.to_dict())
    except ProctoringError as e:
        raise _http_error(e)


@router.get("/status/{session_id}")
def get_session_status(session_id: str, monitor: IntegrityMonitor = Depends(get_monitor)) -> Dict[str, Any]:
    """Current (or final) disposition of a session"""
    try:
        return monitor.status(session_id)
    except ProctoringError as e:
        raise _http_error(e)


@router.get("/sessions/{session_id}/alerts", response_model=List[AlertResponse])
def list_session_alerts(session_id: str, monitor: IntegrityMonitor = Depends(get_monitor)):
    try:
        return [AlertResponse(**a.to_dict()) for a in monitor.list_alerts(session_id)]
    except ProctoringError as e:
        raise _http_error(e)


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
def acknowledge_alert(
    alert_id: str,
    request: AcknowledgeAlertRequest,
    monitor: IntegrityMonitor = Depends(get_monitor)
):
    """Acknowledged alerts no longer count towards escalation"""
    try:
        alert = monitor.acknowledge_alert(alert_id, request.proctor_id, request.notes)
        return AlertResponse(**alert.to_dict())
    except ProctoringError as e:
        raise _http_error(e)


@router.get("/sessions/{session_id}/incidents", response_model=List[IncidentResponse])
def list_session_incidents(session_id: str, monitor: IntegrityMonitor = Depends(get_monitor)):
    try:
        return [IncidentResponse(**i.to_dict()) for i in monitor.list_incidents(session_id)]
    except ProctoringError as e:
        raise _http_error(e)


@router.post("/incidents/{incident_id}/status", response_model=IncidentResponse)
def update_incident_status(
    incident_id: str,
    request: IncidentStatusRequest,
    monitor: IntegrityMonitor = Depends(get_monitor)
):
    """
    Move an incident through pending -> investigating -> resolved,
    or dismiss it while it is still open.
    """
    try:
        incident = monitor.transition_incident(
            incident_id, request.status, request.actor_id, request.resolution
        )
        return IncidentResponse(**incident.to_dict())
    except ProctoringError as e:
        raise _http_error(e)


@router.get("/health")
def health_check(monitor: IntegrityMonitor = Depends(get_monitor)):
    """Check proctoring service health"""
    return {
        "status": "healthy",
        "active_sessions": len(monitor.active_sessions()),
        "detector_available": monitor.detector.detector.is_available,
    }
