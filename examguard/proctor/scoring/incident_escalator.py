"""
Incident Escalator - Opens incidents when alert patterns escalate
"""

import logging
from collections import Counter
from typing import Dict, List, Optional, Tuple

from ...config import IntegrityThresholds, RetryPolicy
from ..errors import IllegalTransition, IncidentNotFound
from ..models import (
    ALERT_SEVERITY_RANK, KIND_ORDER, Alert, AlertSeverity, DetectionKind, Incident,
    IncidentSeverity, IncidentStatus, IncidentType
)
from ..storage.repository import IntegrityRepository
from ..storage.retry import call_with_retry
from ..utils.logging import log_incident_opened, log_proctor_event

logger = logging.getLogger(__name__)


INCIDENT_TYPE_FOR_KIND: Dict[DetectionKind, IncidentType] = {
    DetectionKind.PHONE: IncidentType.CHEATING_CONFIRMED,
    DetectionKind.SUSPICIOUS_OBJECT: IncidentType.CHEATING_CONFIRMED,
    DetectionKind.MULTIPLE_FACES: IncidentType.UNAUTHORIZED_ASSISTANCE,
    DetectionKind.UNAUTHORIZED_PERSON: IncidentType.UNAUTHORIZED_ASSISTANCE,
    DetectionKind.LOOKING_AWAY: IncidentType.TECHNICAL_VIOLATION,
}

INCIDENT_SEVERITY_FOR_ALERT: Dict[AlertSeverity, IncidentSeverity] = {
    AlertSeverity.CRITICAL: IncidentSeverity.CRITICAL,
    AlertSeverity.HIGH: IncidentSeverity.MAJOR,
    AlertSeverity.MEDIUM: IncidentSeverity.MODERATE,
    AlertSeverity.LOW: IncidentSeverity.MINOR,
}

ESCALATING_SEVERITIES = (AlertSeverity.HIGH, AlertSeverity.CRITICAL)

# Allowed status changes, all initiated by a proctor or admin
INCIDENT_TRANSITIONS: Dict[IncidentStatus, Tuple[IncidentStatus, ...]] = {
    IncidentStatus.PENDING: (IncidentStatus.INVESTIGATING, IncidentStatus.DISMISSED),
    IncidentStatus.INVESTIGATING: (IncidentStatus.RESOLVED, IncidentStatus.DISMISSED),
    IncidentStatus.RESOLVED: (),
    IncidentStatus.DISMISSED: (),
}

SYSTEM_REPORTER = "system"


def dominant_kind(alerts: List[Alert]) -> DetectionKind:
    """Most frequent alert kind; ties go to higher max confidence, then kind order"""
    counts = Counter(a.alert_type for a in alerts)
    best_confidence: Dict[DetectionKind, int] = {}
    for alert in alerts:
        best_confidence[alert.alert_type] = max(
            best_confidence.get(alert.alert_type, 0), alert.confidence_score
        )
    return min(
        counts,
        key=lambda kind: (-counts[kind], -best_confidence[kind], KIND_ORDER[kind])
    )


class IncidentEscalator:
    """
    Evaluates a session's alerts and opens at most one incident at a time.

    Qualifying alerts are unacknowledged, high or critical, and not already
    part of an incident that was resolved or dismissed.
    """

    def __init__(
        self,
        repository: IntegrityRepository,
        thresholds: IntegrityThresholds = None,
        retry_policy: RetryPolicy = None
    ):
        self.repository = repository
        self.thresholds = thresholds or IntegrityThresholds()
        self.retry_policy = retry_policy or RetryPolicy()

    def _retry(self, operation, func):
        return call_with_retry(operation, func, self.retry_policy)

    def qualifying_alerts(self, session_id: str) -> List[Alert]:
        alerts = self._retry("list_alerts", lambda: self.repository.list_alerts(session_id))
        incidents = self._retry("list_incidents", lambda: self.repository.list_incidents(session_id))

        covered = set()
        for incident in incidents:
            if not incident.is_open:
                covered.update(incident.alert_ids)

        return [
            a for a in alerts
            if not a.acknowledged
            and a.severity in ESCALATING_SEVERITIES
            and a.id not in covered
        ]

    def evaluate(self, session_id: str) -> Optional[Incident]:
        """
        Open an incident if enough qualifying alerts have accumulated.

        Returns:
            The incident opened by this call, or None (not enough alerts,
            or an incident is already open for the session)

        Raises:
            PersistenceFailure: if storage stays unavailable after retries
        """
        qualifying = self.qualifying_alerts(session_id)
        if len(qualifying) < self.thresholds.incident_alert_threshold:
            return None

        kind = dominant_kind(qualifying)
        top = max(qualifying, key=lambda a: ALERT_SEVERITY_RANK[a.severity]).severity
        incident = Incident(
            session_id=session_id,
            incident_type=INCIDENT_TYPE_FOR_KIND[kind],
            severity=INCIDENT_SEVERITY_FOR_ALERT[top],
            reported_by=SYSTEM_REPORTER,
            description=(
                f"{len(qualifying)} high-severity alerts, mostly {kind.value}"
            ),
            alert_ids=[a.id for a in qualifying],
        )

        created = self._retry(
            "create_incident",
            lambda: self.repository.create_incident_if_none_open(incident)
        )
        if created is None:
            logger.debug(f"Incident already open for session {session_id}")
            return None

        log_incident_opened(
            session_id, created.id, created.incident_type.value,
            created.severity.value, len(created.alert_ids)
        )
        return created

    def transition(
        self,
        incident_id: str,
        new_status: IncidentStatus,
        actor_id: str,
        resolution: Optional[str] = None
    ) -> Incident:
        """
        Apply a proctor/admin status change.

        Raises:
            IncidentNotFound: unknown incident
            IllegalTransition: change not allowed from the current status, or
                the incident changed concurrently
        """
        new_status = IncidentStatus(new_status)
        incident = self._retry("get_incident", lambda: self.repository.get_incident(incident_id))
        if incident is None:
            raise IncidentNotFound(incident_id)

        current = incident.status
        if new_status not in INCIDENT_TRANSITIONS[current]:
            raise IllegalTransition("incident", incident_id, current.value, new_status.value)

        updated = self._retry(
            "update_incident_status",
            lambda: self.repository.update_incident_status(
                incident_id, current, new_status, actor_id, resolution
            )
        )
        if updated is None:
            latest = self.repository.get_incident(incident_id)
            raise IllegalTransition(
                "incident", incident_id,
                latest.status.value if latest else current.value, new_status.value
            )

        log_proctor_event(
            updated.session_id, "incident_status",
            {"incident": incident_id, "from": current.value, "to": new_status.value, "by": actor_id}
        )
        return updated
