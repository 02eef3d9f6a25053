"""
Alert Generator - Turns consolidated findings into persisted alerts
"""

import logging
from typing import Dict, List, Sequence

from ...config import IntegrityThresholds, RetryPolicy
from ..models import Alert, AlertSeverity, ConsolidatedFinding, DetectionKind
from ..storage.repository import IntegrityRepository
from ..storage.retry import call_with_retry
from ..utils.logging import log_alert_created

logger = logging.getLogger(__name__)


# Human readable labels used in alert descriptions
KIND_LABELS: Dict[DetectionKind, str] = {
    DetectionKind.PHONE: "Mobile phone detected",
    DetectionKind.MULTIPLE_FACES: "Multiple faces in frame",
    DetectionKind.LOOKING_AWAY: "Candidate looking away from screen",
    DetectionKind.UNAUTHORIZED_PERSON: "Unauthorized person present",
    DetectionKind.SUSPICIOUS_OBJECT: "Suspicious object detected",
}


def severity_for_confidence(confidence: int) -> AlertSeverity:
    """
    Map a 0-100 confidence to alert severity.

    <70 low, 70-84 medium, 85-94 high, >=95 critical
    """
    if confidence >= 95:
        return AlertSeverity.CRITICAL
    if confidence >= 85:
        return AlertSeverity.HIGH
    if confidence >= 70:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def dedup_key(window_id: str, kind: DetectionKind) -> str:
    return f"{window_id}:{DetectionKind(kind).value}"


def describe_finding(finding: ConsolidatedFinding) -> str:
    label = KIND_LABELS.get(finding.kind, finding.kind.value)
    frames = "frame" if finding.occurrence_count == 1 else "frames"
    return (
        f"{label} ({finding.max_confidence}% confidence, "
        f"{finding.occurrence_count} {frames})"
    )


class AlertGenerator:
    """
    Persists one alert per qualifying finding of a closed window.

    A finding qualifies when it was seen often enough and confidently
    enough. Generation is exactly-once per (session, window, kind): running
    the same window again writes nothing and returns no new alerts.
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

    def qualifies(self, finding: ConsolidatedFinding) -> bool:
        return (
            finding.occurrence_count >= self.thresholds.min_occurrence
            and finding.max_confidence >= self.thresholds.min_confidence
        )

    def generate(
        self,
        session_id: str,
        findings: Sequence[ConsolidatedFinding],
        window_id: str
    ) -> List[Alert]:
        """
        Generate and persist alerts for a window's findings.

        Returns:
            Newly created alerts (duplicates from a retried window excluded)

        Raises:
            PersistenceFailure: if storage stays unavailable after retries
        """
        created: List[Alert] = []

        for finding in findings:
            if not self.qualifies(finding):
                logger.debug(
                    f"Finding {finding.kind.value} below threshold "
                    f"(count={finding.occurrence_count}, max={finding.max_confidence})"
                )
                continue

            alert = Alert(
                session_id=session_id,
                alert_type=finding.kind,
                severity=severity_for_confidence(finding.max_confidence),
                confidence_score=finding.max_confidence,
                description=describe_finding(finding),
                window_id=window_id,
                occurrence_count=finding.occurrence_count,
            )
            key = dedup_key(window_id, finding.kind)

            stored = call_with_retry(
                "create_alert",
                lambda: self.repository.create_alert(alert, key),
                self.retry_policy,
            )
            if stored is None:
                continue

            log_alert_created(
                session_id, stored.alert_type.value, stored.severity.value,
                stored.confidence_score, window_id
            )
            created.append(stored)

        return created
