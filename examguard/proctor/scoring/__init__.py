"""Scoring modules"""

from .alert_generator import AlertGenerator, severity_for_confidence
from .incident_escalator import IncidentEscalator, INCIDENT_TRANSITIONS

__all__ = ["AlertGenerator", "IncidentEscalator", "INCIDENT_TRANSITIONS", "severity_for_confidence"]
