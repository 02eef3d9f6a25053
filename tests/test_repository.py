"""
Tests for the storage layer: repository contract and retry helper
"""

from unittest.mock import Mock

import pytest

from examguard.config import RetryPolicy
from examguard.proctor.errors import PersistenceFailure
from examguard.proctor.models import (
    DetectionKind, ExamSession, Incident, IncidentSeverity, IncidentStatus,
    IncidentType, SessionStatus
)
from examguard.proctor.storage import SqlIntegrityRepository, call_with_retry

from conftest import make_alert


def new_session(repository, status=SessionStatus.IN_PROGRESS):
    return repository.create_session(
        ExamSession(exam_id="exam-1", student_id="student-1", status=status, ip_address="10.0.0.7")
    )


def new_incident(session_id):
    return Incident(
        session_id=session_id,
        incident_type=IncidentType.CHEATING_CONFIRMED,
        severity=IncidentSeverity.CRITICAL,
        reported_by="system",
        alert_ids=["a1", "a2", "a3"],
    )


class TestRepositoryContract:
    """Runs against both the in-memory and the SQL repository"""

    def test_session_roundtrip(self, any_repository):
        session = new_session(any_repository)

        loaded = any_repository.get_session(session.id)

        assert loaded.id == session.id
        assert loaded.status == SessionStatus.IN_PROGRESS
        assert loaded.ip_address == "10.0.0.7"
        assert loaded.created_at == session.created_at
        assert loaded.biometric_verified is False

    def test_missing_session(self, any_repository):
        assert any_repository.get_session("EXM_NOPE") is None

    def test_transition_is_compare_and_set(self, any_repository):
        session = new_session(any_repository, SessionStatus.NOT_STARTED)

        stale = any_repository.transition_session(
            session.id, SessionStatus.IN_PROGRESS, SessionStatus.SUBMITTED
        )
        moved = any_repository.transition_session(
            session.id, SessionStatus.NOT_STARTED, SessionStatus.TERMINATED,
            {"status_reason": "no show", "needs_manual_audit": True}
        )

        assert stale is None
        assert moved.status == SessionStatus.TERMINATED
        assert moved.status_reason == "no show"
        assert moved.needs_manual_audit is True

    def test_alert_increments_counter(self, any_repository):
        session = new_session(any_repository)

        stored = any_repository.create_alert(make_alert(session.id, 96), "w1:phone")

        assert stored is not None
        assert any_repository.get_session(session.id).suspicious_activity_count == 1
        loaded = any_repository.get_alert(stored.id)
        assert loaded.alert_type == DetectionKind.PHONE
        assert loaded.confidence_score == 96

    def test_duplicate_alert_key_is_ignored(self, any_repository):
        session = new_session(any_repository)

        any_repository.create_alert(make_alert(session.id, 96), "w1:phone")
        duplicate = any_repository.create_alert(make_alert(session.id, 97), "w1:phone")

        assert duplicate is None
        assert len(any_repository.list_alerts(session.id)) == 1
        assert any_repository.get_session(session.id).suspicious_activity_count == 1

    def test_alert_for_unknown_session(self, any_repository):
        with pytest.raises(KeyError):
            any_repository.create_alert(make_alert("EXM_NOPE", 96), "w1:phone")

        assert any_repository.list_alerts("EXM_NOPE") == []

    def test_first_acknowledgement_wins(self, any_repository):
        session = new_session(any_repository)
        alert = any_repository.create_alert(make_alert(session.id, 90), "w1:phone")

        first = any_repository.acknowledge_alert(alert.id, "proctor-1", "seen")
        second = any_repository.acknowledge_alert(alert.id, "proctor-2", "again")

        assert first.acknowledged is True
        assert second.acknowledged_by == "proctor-1"
        assert second.notes == "seen"
        assert any_repository.acknowledge_alert("missing", "proctor-1") is None

    def test_one_open_incident(self, any_repository):
        session = new_session(any_repository)

        first = any_repository.create_incident_if_none_open(new_incident(session.id))
        second = any_repository.create_incident_if_none_open(new_incident(session.id))

        assert first is not None
        assert second is None
        assert any_repository.find_open_incident(session.id).id == first.id
        assert any_repository.get_incident(first.id).alert_ids == ["a1", "a2", "a3"]

    def test_new_incident_after_close(self, any_repository):
        session = new_session(any_repository)
        first = any_repository.create_incident_if_none_open(new_incident(session.id))

        closed = any_repository.update_incident_status(
            first.id, IncidentStatus.PENDING, IncidentStatus.DISMISSED, "proctor-1", "false alarm"
        )
        second = any_repository.create_incident_if_none_open(new_incident(session.id))

        assert closed.status == IncidentStatus.DISMISSED
        assert closed.resolved_at is not None
        assert closed.resolution == "false alarm"
        assert second is not None
        assert len(any_repository.list_incidents(session.id)) == 2

    def test_incident_status_is_compare_and_set(self, any_repository):
        session = new_session(any_repository)
        incident = any_repository.create_incident_if_none_open(new_incident(session.id))

        stale = any_repository.update_incident_status(
            incident.id, IncidentStatus.INVESTIGATING, IncidentStatus.RESOLVED, "admin-1"
        )

        assert stale is None
        assert any_repository.get_incident(incident.id).status == IncidentStatus.PENDING


class TestSqlRepository:
    """SQL-specific behaviour"""

    def test_driver_errors_become_persistence_failures(self, tmp_path):
        repository = SqlIntegrityRepository(f"sqlite:///{tmp_path / 'empty.db'}")

        with pytest.raises(PersistenceFailure):
            repository.get_session("EXM_1")
        repository.dispose()

    def test_other_constraint_errors_are_not_an_open_incident(self, sql_repository):
        """A primary key clash with no open incident is a storage failure, not a no-op"""
        session = new_session(sql_repository)
        incident = sql_repository.create_incident_if_none_open(new_incident(session.id))
        sql_repository.update_incident_status(
            incident.id, IncidentStatus.PENDING, IncidentStatus.DISMISSED, "proctor-1"
        )

        with pytest.raises(PersistenceFailure) as exc_info:
            sql_repository.create_incident_if_none_open(incident)

        assert exc_info.value.operation == "create_incident"
        assert sql_repository.find_open_incident(session.id) is None

    def test_schema_creation_is_idempotent(self, sql_repository):
        sql_repository.init_schema()
        assert sql_repository.get_session("EXM_1") is None

    def test_in_memory_database_url(self):
        repository = SqlIntegrityRepository("sqlite://")
        repository.init_schema()

        session = new_session(repository)

        assert repository.get_session(session.id) is not None
        repository.dispose()


class TestCallWithRetry:
    """Tests for bounded retry"""

    def test_success_first_try(self):
        assert call_with_retry("op", lambda: 42, RetryPolicy()) == 42

    def test_backoff_delays(self):
        func = Mock(side_effect=[PersistenceFailure("op"), PersistenceFailure("op"), "ok"])
        sleep = Mock()

        result = call_with_retry("op", func, RetryPolicy(max_attempts=3, base_delay_seconds=0.1), sleep=sleep)

        assert result == "ok"
        assert [c.args[0] for c in sleep.call_args_list] == [0.1, 0.2]

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_attempts=10, base_delay_seconds=1.0, max_delay_seconds=3.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 3.0, 3.0]

    def test_exhaustion(self):
        func = Mock(side_effect=PersistenceFailure("op", "down"))

        with pytest.raises(PersistenceFailure) as exc_info:
            call_with_retry("create_alert", func, RetryPolicy(max_attempts=4), sleep=Mock())

        assert func.call_count == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.operation == "create_alert"

    def test_other_errors_not_retried(self):
        func = Mock(side_effect=KeyError("unknown session"))

        with pytest.raises(KeyError):
            call_with_retry("op", func, RetryPolicy(), sleep=Mock())

        assert func.call_count == 1
