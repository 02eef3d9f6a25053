"""
Proctoring Logger - Logs proctoring events and operator notifications
"""

import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Channel watched by on-call operators (see setup_logging error handler)
operator_logger = logging.getLogger("examguard.operators")


def log_proctor_event(
    session_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "info"
):
    """
    Log a proctoring event.
    
    Args:
        session_id: Exam session ID
        event_type: Type of event (session_start, window_closed, alert, ...)
        details: Optional event details
        level: Log level (debug, info, warning, error)
    """
    message = f"[PROCTOR] session={session_id} event={event_type}"
    
    if details:
        detail_str = " ".join(f"{k}={v}" for k, v in details.items())
        message += f" {detail_str}"
    
    if level == "debug":
        logger.debug(message)
    elif level == "warning":
        logger.warning(message)
    elif level == "error":
        logger.error(message)
    else:
        logger.info(message)


def log_session_transition(session_id: str, old_status: str, new_status: str, reason: Optional[str] = None):
    """Log a session lifecycle transition"""
    details = {"from": old_status, "to": new_status}
    if reason:
        details["reason"] = reason
    log_proctor_event(session_id, "status_change", details)


def log_alert_created(session_id: str, alert_type: str, severity: str, confidence: int, window_id: str):
    """Log when an alert is persisted"""
    log_proctor_event(
        session_id=session_id,
        event_type="alert_created",
        details={
            "type": alert_type,
            "severity": severity,
            "confidence": confidence,
            "window": window_id
        },
        level="warning" if severity in ("high", "critical") else "info"
    )


def log_incident_opened(session_id: str, incident_id: str, incident_type: str, severity: str, alerts: int):
    """Log when escalation opens an incident"""
    log_proctor_event(
        session_id=session_id,
        event_type="incident_opened",
        details={
            "incident": incident_id,
            "type": incident_type,
            "severity": severity,
            "alerts": alerts
        },
        level="warning"
    )


def notify_operators(session_id: str, problem: str, details: Optional[Dict[str, Any]] = None):
    """
    Surface a pipeline failure on the operator alerting channel.
    
    Used when persistence is exhausted or escalation could not be evaluated,
    i.e. whenever a session needs human attention outside normal review.
    """
    message = f"[OPERATOR] session={session_id} problem={problem}"
    if details:
        message += " " + " ".join(f"{k}={v}" for k, v in details.items())
    operator_logger.error(message)
