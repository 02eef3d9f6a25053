"""
Proctoring Models - Domain types shared by the integrity pipeline
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    """Generate a record ID, optionally prefixed"""
    if prefix:
        return f"{prefix}_{uuid.uuid4().hex[:8].upper()}"
    return str(uuid.uuid4())


# ============== Enums ==============

class DetectionKind(str, Enum):
    """Kinds of suspicious behaviour a detector can report"""
    PHONE = "phone"
    MULTIPLE_FACES = "multiple_faces"
    LOOKING_AWAY = "looking_away"
    UNAUTHORIZED_PERSON = "unauthorized_person"
    SUSPICIOUS_OBJECT = "suspicious_object"


# Declaration order, used wherever a deterministic ordering of kinds is needed
KIND_ORDER: Dict[DetectionKind, int] = {kind: i for i, kind in enumerate(DetectionKind)}


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


ALERT_SEVERITY_RANK: Dict[AlertSeverity, int] = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


class IncidentType(str, Enum):
    CHEATING_CONFIRMED = "cheating_confirmed"
    UNAUTHORIZED_ASSISTANCE = "unauthorized_assistance"
    TECHNICAL_VIOLATION = "technical_violation"
    FALSE_POSITIVE = "false_positive"


class IncidentSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"


class IncidentStatus(str, Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


OPEN_INCIDENT_STATUSES = (IncidentStatus.PENDING, IncidentStatus.INVESTIGATING)


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    FLAGGED = "flagged"
    TERMINATED = "terminated"


TERMINAL_STATUSES = (SessionStatus.SUBMITTED, SessionStatus.FLAGGED, SessionStatus.TERMINATED)


# ============== Transient pipeline types ==============

@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in frame pixel coordinates"""
    x: float
    y: float
    w: float
    h: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass
class ObservationFrame:
    """One sampled webcam frame for a session"""
    session_id: str
    timestamp: float
    image_data: bytes = b""
    index: int = -1


@dataclass(frozen=True)
class RawDetection:
    """
    A single detector output for one frame.

    Confidence is an integer percentage and is clamped to 0-100.
    """
    kind: DetectionKind
    confidence: int
    bounding_box: Optional[BoundingBox] = None
    source_frame_index: int = 0

    def __post_init__(self):
        object.__setattr__(self, "kind", DetectionKind(self.kind))
        object.__setattr__(self, "confidence", max(0, min(100, int(round(self.confidence)))))


@dataclass(frozen=True)
class ConsolidatedFinding:
    """Detections of one kind aggregated over a frame window"""
    kind: DetectionKind
    occurrence_count: int
    max_confidence: int
    avg_confidence: float
    representative_box: Optional[BoundingBox] = None


# ============== Persisted records ==============

@dataclass
class Alert:
    """A persisted, severity-ranked signal of suspected misconduct"""
    session_id: str
    alert_type: DetectionKind
    severity: AlertSeverity
    confidence_score: int
    description: str
    id: str = field(default_factory=new_id)
    window_id: Optional[str] = None
    occurrence_count: int = 1
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["alert_type"] = self.alert_type.value
        data["severity"] = self.severity.value
        data["created_at"] = self.created_at.isoformat()
        data["acknowledged_at"] = self.acknowledged_at.isoformat() if self.acknowledged_at else None
        return data


@dataclass
class Incident:
    """A human-reviewable case opened when alerts escalate"""
    session_id: str
    incident_type: IncidentType
    severity: IncidentSeverity
    reported_by: str
    description: str = ""
    id: str = field(default_factory=new_id)
    status: IncidentStatus = IncidentStatus.PENDING
    alert_ids: List[str] = field(default_factory=list)
    investigated_by: Optional[str] = None
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_INCIDENT_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["incident_type"] = self.incident_type.value
        data["severity"] = self.severity.value
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        data["resolved_at"] = self.resolved_at.isoformat() if self.resolved_at else None
        return data


@dataclass
class ExamSession:
    """One student's attempt at one exam, the aggregate root"""
    exam_id: str
    student_id: str
    id: str = field(default_factory=lambda: new_id("EXM"))
    status: SessionStatus = SessionStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    biometric_verified: bool = False
    score: Optional[float] = None
    suspicious_activity_count: int = 0
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status_reason: Optional[str] = None
    needs_manual_audit: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("started_at", "ended_at", "created_at"):
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        return data
