"""
Integrity Repository - Persistence contract and in-memory implementation

Every method is atomic on its own. The pipeline relies on three of them
for its concurrency guarantees:
- create_alert: alert insert + session counter increment, idempotent on dedup key
- create_incident_if_none_open: conditional insert, never two open incidents
- transition_session / update_incident_status: compare-and-set on status
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import (
    Alert, ExamSession, Incident, IncidentStatus, SessionStatus,
    OPEN_INCIDENT_STATUSES, utcnow
)

logger = logging.getLogger(__name__)

# Columns a status transition may change alongside `status`
SESSION_TRANSITION_FIELDS = {
    "started_at", "ended_at", "biometric_verified", "status_reason", "needs_manual_audit"
}


class IntegrityRepository(ABC):
    """Storage operations used by the integrity pipeline"""

    # ========================================================================
    # Sessions
    # ========================================================================

    @abstractmethod
    def create_session(self, session: ExamSession) -> ExamSession:
        """Insert a new exam session"""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[ExamSession]:
        """Load a session, or None"""

    @abstractmethod
    def transition_session(
        self,
        session_id: str,
        expected_status: SessionStatus,
        new_status: SessionStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> Optional[ExamSession]:
        """
        Move a session to `new_status` only if it is still in `expected_status`.

        Returns:
            The updated session, or None if the status had already changed
        """

    # ========================================================================
    # Alerts
    # ========================================================================

    @abstractmethod
    def create_alert(self, alert: Alert, dedup_key: str) -> Optional[Alert]:
        """
        Persist an alert and increment the session's suspicious_activity_count
        in the same transaction.

        Returns:
            The stored alert, or None if `dedup_key` was already used for the
            session (nothing written, counter unchanged)
        """

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[Alert]:
        """Load an alert, or None"""

    @abstractmethod
    def list_alerts(self, session_id: str) -> List[Alert]:
        """All alerts for a session, oldest first"""

    @abstractmethod
    def acknowledge_alert(self, alert_id: str, proctor_id: str, notes: Optional[str] = None) -> Optional[Alert]:
        """Mark an alert acknowledged. First acknowledgement wins."""

    # ========================================================================
    # Incidents
    # ========================================================================

    @abstractmethod
    def create_incident_if_none_open(self, incident: Incident) -> Optional[Incident]:
        """
        Insert `incident` unless the session already has an open
        (pending/investigating) incident.

        Returns:
            The stored incident, or None if one was already open
        """

    @abstractmethod
    def find_open_incident(self, session_id: str) -> Optional[Incident]:
        """The session's open incident, or None"""

    @abstractmethod
    def get_incident(self, incident_id: str) -> Optional[Incident]:
        """Load an incident, or None"""

    @abstractmethod
    def list_incidents(self, session_id: str) -> List[Incident]:
        """All incidents for a session, oldest first"""

    @abstractmethod
    def update_incident_status(
        self,
        incident_id: str,
        expected_status: IncidentStatus,
        new_status: IncidentStatus,
        actor_id: str,
        resolution: Optional[str] = None
    ) -> Optional[Incident]:
        """
        Compare-and-set an incident's status.

        Returns:
            The updated incident, or None if the status had already changed
        """


class InMemoryIntegrityRepository(IntegrityRepository):
    """
    Thread-safe in-memory repository.

    Used when no DATABASE_URL is configured and in tests. A single lock
    makes every method atomic, which gives the same guarantees as the
    SQL transactions in SqlIntegrityRepository. Returned records are copies.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: Dict[str, ExamSession] = {}
        self._alerts: Dict[str, Alert] = {}
        self._alert_keys: Dict[str, set] = {}
        self._incidents: Dict[str, Incident] = {}

    def create_session(self, session: ExamSession) -> ExamSession:
        with self._lock:
            self._sessions[session.id] = copy.deepcopy(session)
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[ExamSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def transition_session(self, session_id, expected_status, new_status, changes=None):
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != expected_status:
                return None

            for key, value in (changes or {}).items():
                if key not in SESSION_TRANSITION_FIELDS:
                    raise ValueError(f"Unsupported session field: {key}")
                setattr(session, key, value)
            session.status = new_status
            return copy.deepcopy(session)

    def create_alert(self, alert: Alert, dedup_key: str) -> Optional[Alert]:
        with self._lock:
            session = self._sessions.get(alert.session_id)
            if session is None:
                raise KeyError(f"Unknown session {alert.session_id}")

            keys = self._alert_keys.setdefault(alert.session_id, set())
            if dedup_key in keys:
                return None

            keys.add(dedup_key)
            self._alerts[alert.id] = copy.deepcopy(alert)
            session.suspicious_activity_count += 1
            return copy.deepcopy(alert)

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return copy.deepcopy(alert) if alert else None

    def list_alerts(self, session_id: str) -> List[Alert]:
        with self._lock:
            alerts = [a for a in self._alerts.values() if a.session_id == session_id]
            return [copy.deepcopy(a) for a in sorted(alerts, key=lambda a: a.created_at)]

    def acknowledge_alert(self, alert_id, proctor_id, notes=None):
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            if not alert.acknowledged:
                alert.acknowledged = True
                alert.acknowledged_by = proctor_id
                alert.acknowledged_at = utcnow()
                alert.notes = notes
            return copy.deepcopy(alert)

    def create_incident_if_none_open(self, incident: Incident) -> Optional[Incident]:
        with self._lock:
            if self._open_incident(incident.session_id) is not None:
                return None
            self._incidents[incident.id] = copy.deepcopy(incident)
            return copy.deepcopy(incident)

    def find_open_incident(self, session_id: str) -> Optional[Incident]:
        with self._lock:
            incident = self._open_incident(session_id)
            return copy.deepcopy(incident) if incident else None

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            incident = self._incidents.get(incident_id)
            return copy.deepcopy(incident) if incident else None

    def list_incidents(self, session_id: str) -> List[Incident]:
        with self._lock:
            incidents = [i for i in self._incidents.values() if i.session_id == session_id]
            return [copy.deepcopy(i) for i in sorted(incidents, key=lambda i: i.created_at)]

    def update_incident_status(self, incident_id, expected_status, new_status, actor_id, resolution=None):
        with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None or incident.status != expected_status:
                return None

            now = utcnow()
            incident.status = new_status
            incident.investigated_by = actor_id
            incident.updated_at = now
            if resolution is not None:
                incident.resolution = resolution
            if new_status in (IncidentStatus.RESOLVED, IncidentStatus.DISMISSED):
                incident.resolved_at = now
            return copy.deepcopy(incident)

    def _open_incident(self, session_id: str) -> Optional[Incident]:
        for incident in self._incidents.values():
            if incident.session_id == session_id and incident.status in OPEN_INCIDENT_STATUSES:
                return incident
        return None
