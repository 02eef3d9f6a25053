"""
Integrity Monitor - Wires the proctoring components together

Owns the repository, thresholds and detector pool, and keeps one
ProctorSession pipeline per in-progress exam session.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Set

from ..config import IntegrityThresholds, RetryPolicy, Settings
from .detectors import Detector, NullDetector, ProhibitedObjectDetector, TimedDetector
from .errors import AlertNotFound, InvariantViolation, SessionClosed
from .lifecycle import BiometricVerifier, SessionLifecycleManager
from .metrics import window_seq
from .models import Alert, ExamSession, Incident, IncidentStatus, ObservationFrame, SessionStatus
from .scoring import AlertGenerator, IncidentEscalator
from .session import FrameResult, ProctorSession
from .storage import InMemoryIntegrityRepository, IntegrityRepository, SqlIntegrityRepository
from .storage.retry import call_with_retry

logger = logging.getLogger(__name__)


class IntegrityMonitor:
    """Entry point used by the HTTP API and by embedding services"""

    def __init__(
        self,
        repository: IntegrityRepository,
        detector: Optional[Detector] = None,
        thresholds: Optional[IntegrityThresholds] = None,
        retry_policy: Optional[RetryPolicy] = None,
        detector_timeout_seconds: float = 2.0,
        detector_max_workers: int = 4,
        detector_queue_timeout_seconds: float = 30.0,
        biometric_verifier: Optional[BiometricVerifier] = None
    ):
        self.repository = repository
        self.thresholds = thresholds or IntegrityThresholds()
        self.retry_policy = retry_policy or RetryPolicy()
        self.detector = TimedDetector(
            detector or NullDetector(),
            timeout_seconds=detector_timeout_seconds,
            max_workers=detector_max_workers,
            queue_timeout_seconds=detector_queue_timeout_seconds,
        )

        self.generator = AlertGenerator(repository, self.thresholds, self.retry_policy)
        self.escalator = IncidentEscalator(repository, self.thresholds, self.retry_policy)
        self.lifecycle = SessionLifecycleManager(
            repository, self.escalator, self.thresholds, self.retry_policy, biometric_verifier
        )

        self._pipelines: Dict[str, ProctorSession] = {}
        self._registry_lock = threading.Lock()
        # Sessions being submitted or terminated; no new pipeline may start
        self._closing: Set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "IntegrityMonitor":
        if settings.DATABASE_URL:
            repository = SqlIntegrityRepository(settings.DATABASE_URL)
            repository.init_schema()
        else:
            logger.warning("DATABASE_URL not set, using in-memory repository")
            repository = InMemoryIntegrityRepository()

        if settings.DETECTOR_MODEL_PATH:
            detector = ProhibitedObjectDetector(
                settings.DETECTOR_MODEL_PATH, confidence=settings.DETECTOR_CONFIDENCE
            )
        else:
            logger.warning("DETECTOR_MODEL_PATH not set, running without a classifier")
            detector = NullDetector()

        return cls(
            repository=repository,
            detector=detector,
            thresholds=settings.thresholds(),
            retry_policy=settings.retry_policy(),
            detector_timeout_seconds=settings.DETECTOR_TIMEOUT_SECONDS,
            detector_max_workers=settings.DETECTOR_MAX_WORKERS,
            detector_queue_timeout_seconds=settings.DETECTOR_QUEUE_TIMEOUT_SECONDS,
        )

    # ========================================================================
    # Session lifecycle
    # ========================================================================

    def schedule(self, exam_id: str, student_id: str, ip_address: str = None, user_agent: str = None) -> ExamSession:
        return self.lifecycle.schedule(exam_id, student_id, ip_address, user_agent)

    def start(self, session_id: str) -> ExamSession:
        session = self.lifecycle.start(session_id)
        self._pipeline(session_id)
        return session

    def ingest_frame(self, frame: ObservationFrame) -> FrameResult:
        pipeline = self._pipelines.get(frame.session_id)
        if pipeline is None:
            self._check_accepting(self.lifecycle.get(frame.session_id))
            # In progress but no pipeline, e.g. after a service restart
            pipeline = self._pipeline(frame.session_id)
            # A submit may have completed between the status read and registration
            latest = self.lifecycle.get(frame.session_id)
            if latest.status != SessionStatus.IN_PROGRESS:
                self._discard_pipeline(frame.session_id, pipeline)
                self._check_accepting(latest)
        return pipeline.ingest_frame(frame)

    def submit(self, session_id: str) -> ExamSession:
        """
        Flush the session's pipeline, then submit (or flag) the session.

        Windows the final flush could not persist mark the session for
        manual audit.
        """
        with self._closing_pipeline(session_id) as result:
            return self.lifecycle.submit(session_id, unpersisted_windows=self._unpersisted(result))

    def terminate(self, session_id: str, reason: str) -> ExamSession:
        with self._closing_pipeline(session_id) as result:
            return self.lifecycle.terminate(
                session_id, reason, unpersisted_windows=self._unpersisted(result)
            )

    def status(self, session_id: str) -> Dict[str, Any]:
        data = self.lifecycle.disposition(session_id)
        pipeline = self._pipelines.get(session_id)
        data["frames_processed"] = pipeline.frame_count if pipeline else 0
        data["unpersisted_windows"] = pipeline.pending_windows if pipeline else []
        data["detector_available"] = self.detector.detector.is_available
        return data

    # ========================================================================
    # Proctor actions
    # ========================================================================

    def acknowledge_alert(self, alert_id: str, proctor_id: str, notes: Optional[str] = None) -> Alert:
        alert = call_with_retry(
            "acknowledge_alert",
            lambda: self.repository.acknowledge_alert(alert_id, proctor_id, notes),
            self.retry_policy,
        )
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    def transition_incident(
        self,
        incident_id: str,
        new_status: IncidentStatus,
        actor_id: str,
        resolution: Optional[str] = None
    ) -> Incident:
        return self.escalator.transition(incident_id, new_status, actor_id, resolution)

    def list_alerts(self, session_id: str) -> List[Alert]:
        self.lifecycle.get(session_id)
        return call_with_retry(
            "list_alerts", lambda: self.repository.list_alerts(session_id), self.retry_policy
        )

    def list_incidents(self, session_id: str) -> List[Incident]:
        self.lifecycle.get(session_id)
        return call_with_retry(
            "list_incidents", lambda: self.repository.list_incidents(session_id), self.retry_policy
        )

    def active_sessions(self) -> List[str]:
        with self._registry_lock:
            return list(self._pipelines)

    def shutdown(self) -> None:
        with self._registry_lock:
            pipelines = list(self._pipelines.values())
            self._pipelines.clear()
        for pipeline in pipelines:
            pipeline.close()
        self.detector.close()

    # ========================================================================
    # Pipeline registry
    # ========================================================================

    def _pipeline(self, session_id: str) -> ProctorSession:
        with self._registry_lock:
            pipeline = self._pipelines.get(session_id)
            if pipeline is not None:
                return pipeline
        # Read outside the lock; the registry is re-checked below
        first_seq = self._last_window_seq(session_id)
        with self._registry_lock:
            if session_id in self._closing:
                raise SessionClosed(
                    f"Session {session_id} is being closed", {"session_id": session_id}
                )
            pipeline = self._pipelines.get(session_id)
            if pipeline is None:
                pipeline = ProctorSession(
                    session_id,
                    self.detector,
                    self.generator,
                    self.escalator,
                    self.thresholds,
                    first_window_seq=first_seq,
                )
                self._pipelines[session_id] = pipeline
            return pipeline

    def _last_window_seq(self, session_id: str) -> int:
        """Highest window sequence with a persisted alert, so new ids never collide"""
        alerts = call_with_retry(
            "list_alerts", lambda: self.repository.list_alerts(session_id), self.retry_policy
        )
        return max((window_seq(a.window_id) for a in alerts), default=0)

    def _discard_pipeline(self, session_id: str, pipeline: ProctorSession) -> None:
        with self._registry_lock:
            if self._pipelines.get(session_id) is pipeline:
                del self._pipelines[session_id]
        pipeline.close()

    @contextmanager
    def _closing_pipeline(self, session_id: str):
        """Close and unregister the pipeline; yields its final flush result (or None)"""
        with self._registry_lock:
            self._closing.add(session_id)
            pipeline = self._pipelines.pop(session_id, None)
        try:
            yield pipeline.close() if pipeline is not None else None
        finally:
            with self._registry_lock:
                self._closing.discard(session_id)

    @staticmethod
    def _check_accepting(session: ExamSession) -> None:
        if session.is_terminal:
            raise SessionClosed(
                f"Session {session.id} is {session.status.value}",
                {"session_id": session.id, "status": session.status.value},
            )
        if session.status != SessionStatus.IN_PROGRESS:
            raise InvariantViolation(
                f"Session {session.id} has not started",
                {"session_id": session.id, "status": session.status.value},
            )

    @staticmethod
    def _unpersisted(result: Optional[FrameResult]) -> int:
        return result.pending_windows if result is not None else 0
