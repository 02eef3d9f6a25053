"""
Pytest configuration for examguard tests
"""
import pytest
from fastapi.testclient import TestClient

from examguard.config import IntegrityThresholds, RetryPolicy
from examguard.proctor.detectors import ScriptedDetector
from examguard.proctor.models import (
    Alert, DetectionKind, ExamSession, RawDetection, SessionStatus
)
from examguard.proctor.monitor import IntegrityMonitor
from examguard.proctor.storage import InMemoryIntegrityRepository, SqlIntegrityRepository


def make_detection(kind, confidence, index=0, box=None):
    return RawDetection(kind=kind, confidence=confidence, bounding_box=box, source_frame_index=index)


def make_alert(session_id, confidence=96, kind=DetectionKind.PHONE, severity=None, window="w"):
    from examguard.proctor.scoring.alert_generator import severity_for_confidence
    return Alert(
        session_id=session_id,
        alert_type=kind,
        severity=severity or severity_for_confidence(confidence),
        confidence_score=confidence,
        description=f"{kind.value} at {confidence}",
        window_id=window,
    )


@pytest.fixture
def retry_policy():
    """No backoff delay so failure tests stay fast"""
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0)


@pytest.fixture
def thresholds():
    return IntegrityThresholds(window_size=3, window_stride=3)


@pytest.fixture
def repository():
    return InMemoryIntegrityRepository()


@pytest.fixture
def sql_repository(tmp_path):
    """SQLite file database, so several threads can share it"""
    repo = SqlIntegrityRepository(f"sqlite:///{tmp_path / 'integrity.db'}")
    repo.init_schema()
    yield repo
    repo.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_repository(request, tmp_path):
    """Runs a test against both repository implementations"""
    if request.param == "memory":
        yield InMemoryIntegrityRepository()
        return
    repo = SqlIntegrityRepository(f"sqlite:///{tmp_path / 'contract.db'}")
    repo.init_schema()
    yield repo
    repo.dispose()


@pytest.fixture
def in_progress_session(repository):
    session = ExamSession(exam_id="exam-1", student_id="student-1", status=SessionStatus.IN_PROGRESS)
    return repository.create_session(session)


@pytest.fixture
def phone_detector():
    """Reports a critical phone detection on every frame"""
    return ScriptedDetector(by_frame={
        i: [make_detection(DetectionKind.PHONE, 96)] for i in range(200)
    })


@pytest.fixture
def make_monitor(repository, thresholds, retry_policy):
    """Factory for monitors; all created monitors are shut down afterwards"""
    created = []

    def _make(detector=None, timeout=1.0, **overrides):
        monitor = IntegrityMonitor(
            repository=overrides.get("repository", repository),
            detector=detector,
            thresholds=overrides.get("thresholds", thresholds),
            retry_policy=overrides.get("retry_policy", retry_policy),
            detector_timeout_seconds=timeout,
            biometric_verifier=overrides.get("biometric_verifier"),
        )
        created.append(monitor)
        return monitor

    yield _make
    for monitor in created:
        monitor.shutdown()


@pytest.fixture
def monitor(make_monitor, phone_detector):
    return make_monitor(detector=phone_detector)


@pytest.fixture
def client(monitor):
    """FastAPI test client wired to the test monitor"""
    from examguard.main import app
    from examguard.proctor.api import get_monitor

    app.dependency_overrides[get_monitor] = lambda: monitor
    yield TestClient(app)
    app.dependency_overrides.clear()
