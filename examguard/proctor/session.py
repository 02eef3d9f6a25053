"""
Proctor Session - Per-session integrity pipeline

Frames flow through:
    FrameWindow -> TimedDetector -> consolidate -> AlertGenerator -> IncidentEscalator
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import IntegrityThresholds
from .detectors import TimedDetector
from .errors import InvariantViolation, PersistenceFailure, SessionClosed
from .metrics import ClosedWindow, FrameWindow, consolidate
from .models import Alert, ConsolidatedFinding, Incident, ObservationFrame, RawDetection
from .scoring import AlertGenerator, IncidentEscalator
from .utils.logging import log_proctor_event, notify_operators

logger = logging.getLogger(__name__)


@dataclass
class PendingWindow:
    """Findings of a closed window that are not yet persisted"""
    window_id: str
    findings: List[ConsolidatedFinding]


@dataclass
class FrameResult:
    """What happened while handling one frame (or a flush)"""
    session_id: str
    frame_index: Optional[int] = None
    windows_closed: List[str] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)
    incident: Optional[Incident] = None
    pending_windows: int = 0
    persistence_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "frame_index": self.frame_index,
            "windows_closed": list(self.windows_closed),
            "alerts": [a.to_dict() for a in self.alerts],
            "incident": self.incident.to_dict() if self.incident else None,
            "pending_windows": self.pending_windows,
            "persistence_error": self.persistence_error,
        }


class ProctorSession:
    """
    Integrity pipeline for a single exam session.

    Owns its frame window, cached detections and unpersisted windows. All
    frame handling is serialized by a per-session lock, so one session is
    always a single writer.
    """

    def __init__(
        self,
        session_id: str,
        detector: TimedDetector,
        generator: AlertGenerator,
        escalator: IncidentEscalator,
        thresholds: IntegrityThresholds = None,
        first_window_seq: int = 0
    ):
        self.id = session_id
        self.thresholds = thresholds or IntegrityThresholds()
        self.detector = detector
        self.generator = generator
        self.escalator = escalator

        self.window = FrameWindow(
            session_id,
            self.thresholds.window_size,
            self.thresholds.window_stride,
            start_seq=first_window_seq,
        )
        self.is_active = True
        self.frame_count = 0

        self._lock = threading.RLock()
        self._last_timestamp: Optional[float] = None
        self._detections: Dict[int, List[RawDetection]] = {}
        self._pending: List[PendingWindow] = []

        logger.info(f"Proctoring pipeline started: {self.id}")

    @property
    def pending_windows(self) -> List[str]:
        return [w.window_id for w in self._pending]

    def ingest_frame(self, frame: ObservationFrame) -> FrameResult:
        """
        Accept the next frame of this session.

        Frames must belong to this session and arrive in strictly
        increasing timestamp order.

        Raises:
            SessionClosed: the pipeline was already closed
            InvariantViolation: foreign or out-of-order frame
        """
        with self._lock:
            if not self.is_active:
                raise SessionClosed(
                    f"Session {self.id} no longer accepts frames", {"session_id": self.id}
                )
            if frame.session_id != self.id:
                raise InvariantViolation(
                    f"Frame for {frame.session_id} sent to session {self.id}",
                    {"session_id": self.id, "frame_session_id": frame.session_id},
                )
            if self._last_timestamp is not None and frame.timestamp <= self._last_timestamp:
                raise InvariantViolation(
                    f"Out-of-order frame for session {self.id}",
                    {"timestamp": frame.timestamp, "last_timestamp": self._last_timestamp},
                )

            self._last_timestamp = frame.timestamp
            frame = dataclasses.replace(frame, index=self.frame_count)
            self.frame_count += 1

            result = FrameResult(session_id=self.id, frame_index=frame.index)
            closed = self.window.push(frame)
            if closed is not None:
                self._process_window(closed, result)
            else:
                result.pending_windows = len(self._pending)
            return result

    def flush(self) -> FrameResult:
        """Close the partial window and retry windows that failed to persist"""
        with self._lock:
            result = FrameResult(session_id=self.id)
            closed = self.window.close()
            if closed is not None:
                self._process_window(closed, result)
            else:
                self._drain(result)
            return result

    def close(self) -> FrameResult:
        """Flush and stop accepting frames"""
        with self._lock:
            result = self.flush() if self.is_active else FrameResult(session_id=self.id)
            self.is_active = False
            log_proctor_event(self.id, "pipeline_closed", {
                "frames": self.frame_count,
                "unpersisted_windows": len(self._pending)
            })
            return result

    def _process_window(self, closed: ClosedWindow, result: FrameResult):
        # Overlapping windows reuse detections of frames seen before
        missing = [f for f in closed.frames if f.index not in self._detections]
        if missing:
            self._detections.update(self.detector.detect_window(missing))

        indices = closed.frame_indices
        detections = [d for i in indices for d in self._detections.get(i, [])]
        detections.sort(key=lambda d: d.source_frame_index)
        findings = consolidate(detections, self.thresholds.window_size)

        # Only frames still in the ring can be part of a later window
        keep = set(indices)
        self._detections = {i: d for i, d in self._detections.items() if i in keep}

        log_proctor_event(self.id, "window_closed", {
            "window": closed.window_id,
            "frames": len(indices),
            "findings": ",".join(f.kind.value for f in findings) or "-"
        }, level="debug")

        result.windows_closed.append(closed.window_id)
        self._pending.append(PendingWindow(closed.window_id, findings))
        self._drain(result)

    def _drain(self, result: FrameResult):
        while self._pending:
            window = self._pending[0]
            try:
                result.alerts.extend(
                    self.generator.generate(self.id, window.findings, window.window_id)
                )
                self._pending.pop(0)
                incident = self.escalator.evaluate(self.id)
                if incident is not None:
                    result.incident = incident
            except PersistenceFailure as e:
                result.persistence_error = str(e)
                notify_operators(self.id, "persistence_failure", {
                    "window": window.window_id,
                    "operation": e.operation,
                    "attempts": e.attempts,
                    "pending_windows": len(self._pending)
                })
                break
        result.pending_windows = len(self._pending)
