"""
SQL Integrity Repository - Relational persistence for sessions, alerts and incidents

Uses raw SQL through SQLAlchemy Core so it runs unchanged on SQLite and
PostgreSQL. Atomicity comes from the database:
- alerts: unique (session_id, dedup_key) + counter update in one transaction
- incidents: partial unique index allowing one open incident per session
- status changes: UPDATE ... WHERE status = :expected
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..errors import PersistenceFailure
from ..models import (
    Alert, AlertSeverity, DetectionKind, ExamSession, Incident, IncidentSeverity,
    IncidentStatus, IncidentType, SessionStatus, utcnow
)
from .repository import IntegrityRepository, SESSION_TRANSITION_FIELDS

logger = logging.getLogger(__name__)


# ============================================================================
# Schema
# ============================================================================

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS exam_sessions (
        id TEXT PRIMARY KEY,
        exam_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT,
        ended_at TEXT,
        biometric_verified INTEGER NOT NULL DEFAULT 0,
        score REAL,
        suspicious_activity_count INTEGER NOT NULL DEFAULT 0,
        ip_address TEXT,
        user_agent TEXT,
        status_reason TEXT,
        needs_manual_audit INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS proctoring_alerts (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES exam_sessions(id),
        dedup_key TEXT NOT NULL,
        alert_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        confidence_score INTEGER NOT NULL,
        description TEXT NOT NULL,
        window_id TEXT,
        occurrence_count INTEGER NOT NULL DEFAULT 1,
        acknowledged INTEGER NOT NULL DEFAULT 0,
        acknowledged_by TEXT,
        acknowledged_at TEXT,
        notes TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_alerts_session_dedup
        ON proctoring_alerts (session_id, dedup_key)
    """,
    """
    CREATE TABLE IF NOT EXISTS incidents (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES exam_sessions(id),
        incident_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        status TEXT NOT NULL,
        reported_by TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        alert_ids TEXT NOT NULL DEFAULT '[]',
        investigated_by TEXT,
        resolution TEXT,
        resolved_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_incidents_one_open
        ON incidents (session_id) WHERE status IN ('pending', 'investigating')
    """,
]


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ============================================================================
# Repository
# ============================================================================

class SqlIntegrityRepository(IntegrityRepository):
    """
    Relational repository backed by any SQLAlchemy URL.

    Driver errors surface as PersistenceFailure so callers can retry them.
    """

    def __init__(self, db_url: str):
        self.db_url = db_url
        self._engine = None

    @property
    def engine(self):
        """Lazy load engine"""
        if self._engine is None:
            if self.db_url.startswith("sqlite"):
                kwargs: Dict[str, Any] = {
                    "connect_args": {"check_same_thread": False, "timeout": 30}
                }
                if self.db_url in ("sqlite://", "sqlite:///:memory:"):
                    kwargs["poolclass"] = StaticPool
                self._engine = create_engine(self.db_url, **kwargs)
            else:
                self._engine = create_engine(self.db_url, pool_pre_ping=True)
        return self._engine

    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist"""
        try:
            with self.engine.begin() as conn:
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(text(statement))
            logger.info("[DB] Integrity schema ready")
        except SQLAlchemyError as e:
            raise PersistenceFailure("init_schema", str(e)) from e

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    # ========================================================================
    # Sessions
    # ========================================================================

    def create_session(self, session: ExamSession) -> ExamSession:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text("""
                        INSERT INTO exam_sessions
                            (id, exam_id, student_id, status, started_at, ended_at,
                             biometric_verified, score, suspicious_activity_count,
                             ip_address, user_agent, status_reason, needs_manual_audit, created_at)
                        VALUES
                            (:id, :exam_id, :student_id, :status, :started_at, :ended_at,
                             :biometric_verified, :score, :suspicious_activity_count,
                             :ip_address, :user_agent, :status_reason, :needs_manual_audit, :created_at)
                    """),
                    self._session_params(session)
                )
            logger.info(f"[DB] Created exam session {session.id}")
            return session
        except SQLAlchemyError as e:
            raise PersistenceFailure("create_session", str(e)) from e

    def get_session(self, session_id: str) -> Optional[ExamSession]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text("SELECT * FROM exam_sessions WHERE id = :id"),
                    {"id": session_id}
                ).mappings().first()
            return self._row_to_session(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure("get_session", str(e)) from e

    def transition_session(self, session_id, expected_status, new_status, changes=None):
        changes = dict(changes or {})
        unknown = set(changes) - SESSION_TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported session fields: {sorted(unknown)}")

        params: Dict[str, Any] = {
            "id": session_id,
            "expected": SessionStatus(expected_status).value,
            "status": SessionStatus(new_status).value,
        }
        assignments = ["status = :status"]
        for key, value in changes.items():
            if isinstance(value, datetime):
                value = _ts(value)
            elif isinstance(value, bool):
                value = int(value)
            params[key] = value
            assignments.append(f"{key} = :{key}")

        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    text(
                        f"UPDATE exam_sessions SET {', '.join(assignments)} "
                        "WHERE id = :id AND status = :expected"
                    ),
                    params
                )
                if result.rowcount != 1:
                    return None
                row = conn.execute(
                    text("SELECT * FROM exam_sessions WHERE id = :id"),
                    {"id": session_id}
                ).mappings().first()
            return self._row_to_session(row)
        except SQLAlchemyError as e:
            raise PersistenceFailure("transition_session", str(e)) from e

    # ========================================================================
    # Alerts
    # ========================================================================

    def create_alert(self, alert: Alert, dedup_key: str) -> Optional[Alert]:
        try:
            with self.engine.begin() as conn:
                inserted = conn.execute(
                    text("""
                        INSERT INTO proctoring_alerts
                            (id, session_id, dedup_key, alert_type, severity, confidence_score,
                             description, window_id, occurrence_count, acknowledged,
                             acknowledged_by, acknowledged_at, notes, created_at)
                        VALUES
                            (:id, :session_id, :dedup_key, :alert_type, :severity, :confidence_score,
                             :description, :window_id, :occurrence_count, :acknowledged,
                             :acknowledged_by, :acknowledged_at, :notes, :created_at)
                        ON CONFLICT (session_id, dedup_key) DO NOTHING
                    """),
                    {**self._alert_params(alert), "dedup_key": dedup_key}
                )
                if inserted.rowcount == 0:
                    logger.debug(f"[DB] Duplicate alert key {dedup_key}, skipped")
                    return None

                updated = conn.execute(
                    text("""
                        UPDATE exam_sessions
                        SET suspicious_activity_count = suspicious_activity_count + 1
                        WHERE id = :id
                    """),
                    {"id": alert.session_id}
                )
                if updated.rowcount != 1:
                    # Raising inside begin() rolls the alert insert back
                    raise KeyError(f"Unknown session {alert.session_id}")
            return alert
        except SQLAlchemyError as e:
            raise PersistenceFailure("create_alert", str(e)) from e

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text("SELECT * FROM proctoring_alerts WHERE id = :id"),
                    {"id": alert_id}
                ).mappings().first()
            return self._row_to_alert(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure("get_alert", str(e)) from e

    def list_alerts(self, session_id: str) -> List[Alert]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text("""
                        SELECT * FROM proctoring_alerts
                        WHERE session_id = :session_id
                        ORDER BY created_at, id
                    """),
                    {"session_id": session_id}
                ).mappings().all()
            return [self._row_to_alert(row) for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceFailure("list_alerts", str(e)) from e

    def acknowledge_alert(self, alert_id, proctor_id, notes=None):
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text("""
                        UPDATE proctoring_alerts
                        SET acknowledged = 1, acknowledged_by = :by,
                            acknowledged_at = :at, notes = :notes
                        WHERE id = :id AND acknowledged = 0
                    """),
                    {"id": alert_id, "by": proctor_id, "at": _ts(utcnow()), "notes": notes}
                )
                row = conn.execute(
                    text("SELECT * FROM proctoring_alerts WHERE id = :id"),
                    {"id": alert_id}
                ).mappings().first()
            return self._row_to_alert(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure("acknowledge_alert", str(e)) from e

    # ========================================================================
    # Incidents
    # ========================================================================

    def create_incident_if_none_open(self, incident: Incident) -> Optional[Incident]:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text("""
                        INSERT INTO incidents
                            (id, session_id, incident_type, severity, status, reported_by,
                             description, alert_ids, investigated_by, resolution,
                             resolved_at, created_at, updated_at)
                        VALUES
                            (:id, :session_id, :incident_type, :severity, :status, :reported_by,
                             :description, :alert_ids, :investigated_by, :resolution,
                             :resolved_at, :created_at, :updated_at)
                    """),
                    self._incident_params(incident)
                )
            return incident
        except IntegrityError as e:
            # Only the partial unique index means "already open"
            if self.find_open_incident(incident.session_id) is not None:
                logger.debug(f"[DB] Open incident already exists for {incident.session_id}")
                return None
            raise PersistenceFailure("create_incident", str(e)) from e
        except SQLAlchemyError as e:
            raise PersistenceFailure("create_incident", str(e)) from e

    def find_open_incident(self, session_id: str) -> Optional[Incident]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text("""
                        SELECT * FROM incidents
                        WHERE session_id = :session_id
                          AND status IN ('pending', 'investigating')
                    """),
                    {"session_id": session_id}
                ).mappings().first()
            return self._row_to_incident(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure("find_open_incident", str(e)) from e

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text("SELECT * FROM incidents WHERE id = :id"),
                    {"id": incident_id}
                ).mappings().first()
            return self._row_to_incident(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure("get_incident", str(e)) from e

    def list_incidents(self, session_id: str) -> List[Incident]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text("""
                        SELECT * FROM incidents
                        WHERE session_id = :session_id
                        ORDER BY created_at, id
                    """),
                    {"session_id": session_id}
                ).mappings().all()
            return [self._row_to_incident(row) for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceFailure("list_incidents", str(e)) from e

    def update_incident_status(self, incident_id, expected_status, new_status, actor_id, resolution=None):
        new_status = IncidentStatus(new_status)
        params: Dict[str, Any] = {
            "id": incident_id,
            "expected": IncidentStatus(expected_status).value,
            "status": new_status.value,
            "actor": actor_id,
            "now": _ts(utcnow()),
        }
        assignments = ["status = :status", "investigated_by = :actor", "updated_at = :now"]
        if resolution is not None:
            params["resolution"] = resolution
            assignments.append("resolution = :resolution")
        if new_status in (IncidentStatus.RESOLVED, IncidentStatus.DISMISSED):
            assignments.append("resolved_at = :now")

        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    text(
                        f"UPDATE incidents SET {', '.join(assignments)} "
                        "WHERE id = :id AND status = :expected"
                    ),
                    params
                )
                if result.rowcount != 1:
                    return None
                row = conn.execute(
                    text("SELECT * FROM incidents WHERE id = :id"),
                    {"id": incident_id}
                ).mappings().first()
            return self._row_to_incident(row)
        except SQLAlchemyError as e:
            raise PersistenceFailure("update_incident_status", str(e)) from e

    # ========================================================================
    # Row mapping
    # ========================================================================

    @staticmethod
    def _session_params(session: ExamSession) -> Dict[str, Any]:
        return {
            "id": session.id,
            "exam_id": session.exam_id,
            "student_id": session.student_id,
            "status": session.status.value,
            "started_at": _ts(session.started_at),
            "ended_at": _ts(session.ended_at),
            "biometric_verified": int(session.biometric_verified),
            "score": session.score,
            "suspicious_activity_count": session.suspicious_activity_count,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "status_reason": session.status_reason,
            "needs_manual_audit": int(session.needs_manual_audit),
            "created_at": _ts(session.created_at),
        }

    @staticmethod
    def _row_to_session(row) -> ExamSession:
        return ExamSession(
            id=row["id"],
            exam_id=row["exam_id"],
            student_id=row["student_id"],
            status=SessionStatus(row["status"]),
            started_at=_parse_ts(row["started_at"]),
            ended_at=_parse_ts(row["ended_at"]),
            biometric_verified=bool(row["biometric_verified"]),
            score=row["score"],
            suspicious_activity_count=row["suspicious_activity_count"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            status_reason=row["status_reason"],
            needs_manual_audit=bool(row["needs_manual_audit"]),
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _alert_params(alert: Alert) -> Dict[str, Any]:
        return {
            "id": alert.id,
            "session_id": alert.session_id,
            "alert_type": alert.alert_type.value,
            "severity": alert.severity.value,
            "confidence_score": alert.confidence_score,
            "description": alert.description,
            "window_id": alert.window_id,
            "occurrence_count": alert.occurrence_count,
            "acknowledged": int(alert.acknowledged),
            "acknowledged_by": alert.acknowledged_by,
            "acknowledged_at": _ts(alert.acknowledged_at),
            "notes": alert.notes,
            "created_at": _ts(alert.created_at),
        }

    @staticmethod
    def _row_to_alert(row) -> Alert:
        return Alert(
            id=row["id"],
            session_id=row["session_id"],
            alert_type=DetectionKind(row["alert_type"]),
            severity=AlertSeverity(row["severity"]),
            confidence_score=row["confidence_score"],
            description=row["description"],
            window_id=row["window_id"],
            occurrence_count=row["occurrence_count"],
            acknowledged=bool(row["acknowledged"]),
            acknowledged_by=row["acknowledged_by"],
            acknowledged_at=_parse_ts(row["acknowledged_at"]),
            notes=row["notes"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _incident_params(incident: Incident) -> Dict[str, Any]:
        return {
            "id": incident.id,
            "session_id": incident.session_id,
            "incident_type": incident.incident_type.value,
            "severity": incident.severity.value,
            "status": incident.status.value,
            "reported_by": incident.reported_by,
            "description": incident.description,
            "alert_ids": json.dumps(incident.alert_ids),
            "investigated_by": incident.investigated_by,
            "resolution": incident.resolution,
            "resolved_at": _ts(incident.resolved_at),
            "created_at": _ts(incident.created_at),
            "updated_at": _ts(incident.updated_at),
        }

    @staticmethod
    def _row_to_incident(row) -> Incident:
        return Incident(
            id=row["id"],
            session_id=row["session_id"],
            incident_type=IncidentType(row["incident_type"]),
            severity=IncidentSeverity(row["severity"]),
            status=IncidentStatus(row["status"]),
            reported_by=row["reported_by"],
            description=row["description"],
            alert_ids=json.loads(row["alert_ids"] or "[]"),
            investigated_by=row["investigated_by"],
            resolution=row["resolution"],
            resolved_at=_parse_ts(row["resolved_at"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )
