"""
Session Lifecycle - Exam session state machine

    not_started -> in_progress -> submitted | flagged | terminated
    not_started -> terminated

Terminal states have no outgoing edges. Every status write is a
compare-and-set on the prior status.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from ..config import IntegrityThresholds, RetryPolicy
from .errors import IllegalTransition, PersistenceFailure, SessionNotFound
from .models import (
    ExamSession, IncidentSeverity, SessionStatus, TERMINAL_STATUSES, utcnow
)
from .scoring import IncidentEscalator
from .storage.repository import IntegrityRepository
from .storage.retry import call_with_retry
from .utils.logging import log_proctor_event, log_session_transition, notify_operators

logger = logging.getLogger(__name__)


SESSION_TRANSITIONS: Dict[SessionStatus, Tuple[SessionStatus, ...]] = {
    SessionStatus.NOT_STARTED: (SessionStatus.IN_PROGRESS, SessionStatus.TERMINATED),
    SessionStatus.IN_PROGRESS: (
        SessionStatus.SUBMITTED, SessionStatus.FLAGGED, SessionStatus.TERMINATED
    ),
    SessionStatus.SUBMITTED: (),
    SessionStatus.FLAGGED: (),
    SessionStatus.TERMINATED: (),
}

FLAGGING_INCIDENT_SEVERITIES = (IncidentSeverity.MAJOR, IncidentSeverity.CRITICAL)

BiometricVerifier = Callable[[ExamSession], bool]


class SessionLifecycleManager:
    """Drives exam sessions through their lifecycle"""

    def __init__(
        self,
        repository: IntegrityRepository,
        escalator: IncidentEscalator,
        thresholds: IntegrityThresholds = None,
        retry_policy: RetryPolicy = None,
        biometric_verifier: Optional[BiometricVerifier] = None
    ):
        self.repository = repository
        self.escalator = escalator
        self.thresholds = thresholds or IntegrityThresholds()
        self.retry_policy = retry_policy or RetryPolicy()
        self.biometric_verifier = biometric_verifier

    def _retry(self, operation, func):
        return call_with_retry(operation, func, self.retry_policy)

    def get(self, session_id: str) -> ExamSession:
        session = self._retry("get_session", lambda: self.repository.get_session(session_id))
        if session is None:
            raise SessionNotFound(session_id)
        return session

    # ========================================================================
    # Transitions
    # ========================================================================

    def schedule(
        self,
        exam_id: str,
        student_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> ExamSession:
        session = ExamSession(
            exam_id=exam_id,
            student_id=student_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        created = self._retry("create_session", lambda: self.repository.create_session(session))
        log_proctor_event(created.id, "scheduled", {"exam": exam_id, "student": student_id})
        return created

    def start(self, session_id: str) -> ExamSession:
        """
        Start the exam. Biometric verification is attempted but a failed or
        unavailable check never blocks the start.
        """
        session = self.get(session_id)
        self._check(session, SessionStatus.IN_PROGRESS)

        verified = False
        if self.biometric_verifier is not None:
            try:
                verified = bool(self.biometric_verifier(session))
            except Exception as e:
                logger.warning(f"Biometric verification failed for {session_id}: {e}")

        return self._transition(session, SessionStatus.IN_PROGRESS, {
            "started_at": utcnow(),
            "biometric_verified": verified,
        })

    def submit(self, session_id: str, unpersisted_windows: int = 0) -> ExamSession:
        """
        Submit the exam, deciding between submitted and flagged.

        Escalation is re-evaluated synchronously first. If that cannot be
        done, or `unpersisted_windows` of evidence were lost in the final
        flush, the session is also marked for manual audit.
        """
        session = self.get(session_id)
        self._check(session, SessionStatus.SUBMITTED)

        needs_audit = self._evidence_lost(session_id, unpersisted_windows)
        reason = None
        try:
            self.escalator.evaluate(session_id)
            open_incident = self._retry(
                "find_open_incident", lambda: self.repository.find_open_incident(session_id)
            )
            count = self.get(session_id).suspicious_activity_count

            if open_incident is not None and open_incident.severity in FLAGGING_INCIDENT_SEVERITIES:
                reason = f"open {open_incident.severity.value} incident {open_incident.id}"
            elif count > self.thresholds.auto_flag_threshold:
                reason = (
                    f"suspicious activity count {count} exceeds "
                    f"{self.thresholds.auto_flag_threshold}"
                )
        except PersistenceFailure as e:
            needs_audit = True
            logger.warning(f"Escalation not evaluated for {session_id}, submitting for manual audit: {e}")
            notify_operators(session_id, "escalation_unavailable", {"operation": e.operation})

        target = SessionStatus.FLAGGED if reason else SessionStatus.SUBMITTED
        return self._transition(session, target, {
            "status_reason": reason,
            "needs_manual_audit": needs_audit,
        })

    def terminate(self, session_id: str, reason: str, unpersisted_windows: int = 0) -> ExamSession:
        """Administrative or timeout termination"""
        session = self.get(session_id)
        self._check(session, SessionStatus.TERMINATED)
        changes: Dict[str, Any] = {"status_reason": reason}
        if self._evidence_lost(session_id, unpersisted_windows):
            changes["needs_manual_audit"] = True
        return self._transition(session, SessionStatus.TERMINATED, changes)

    def disposition(self, session_id: str) -> Dict[str, Any]:
        """Final outcome of a session for downstream reporting"""
        session = self.get(session_id)
        open_incident = self._retry(
            "find_open_incident", lambda: self.repository.find_open_incident(session_id)
        )
        return {
            "session_id": session.id,
            "exam_id": session.exam_id,
            "student_id": session.student_id,
            "status": session.status.value,
            "is_final": session.is_terminal,
            "reason": session.status_reason,
            "started_at": session.started_at.isoformat() if session.started_at else None,
            "ended_at": session.ended_at.isoformat() if session.ended_at else None,
            "suspicious_activity_count": session.suspicious_activity_count,
            "biometric_verified": session.biometric_verified,
            "needs_manual_audit": session.needs_manual_audit,
            "score": session.score,
            "open_incident": open_incident.to_dict() if open_incident else None,
        }

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _evidence_lost(session_id: str, unpersisted_windows: int) -> bool:
        if unpersisted_windows <= 0:
            return False
        logger.warning(
            f"{unpersisted_windows} window(s) of {session_id} were never persisted, "
            "marking for manual audit"
        )
        notify_operators(session_id, "unpersisted_evidence", {"windows": unpersisted_windows})
        return True

    @staticmethod
    def _check(session: ExamSession, target: SessionStatus):
        if target not in SESSION_TRANSITIONS[session.status]:
            raise IllegalTransition("session", session.id, session.status.value, target.value)

    def _transition(
        self,
        session: ExamSession,
        target: SessionStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> ExamSession:
        self._check(session, target)
        changes = dict(changes or {})
        if target in TERMINAL_STATUSES:
            changes["ended_at"] = utcnow()

        updated = self._retry(
            "transition_session",
            lambda: self.repository.transition_session(session.id, session.status, target, changes)
        )
        if updated is None:
            # Someone else moved the session first
            latest = self.get(session.id)
            raise IllegalTransition("session", session.id, latest.status.value, target.value)

        log_session_transition(session.id, session.status.value, target.value, changes.get("status_reason"))
        return updated
