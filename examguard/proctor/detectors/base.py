"""
Detector contract and the timeout wrapper used by session pipelines
"""

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Sequence

from ..errors import DetectorTimeout
from ..models import ObservationFrame, RawDetection

logger = logging.getLogger(__name__)

# How often pending inferences are checked against their bounds
POLL_SECONDS = 0.02


class Detector(ABC):
    """Turns one observation frame into zero or more raw detections"""

    name = "detector"

    @abstractmethod
    def detect(self, frame: ObservationFrame) -> List[RawDetection]:
        ...

    @property
    def is_available(self) -> bool:
        return True


class NullDetector(Detector):
    """No classifier configured. Never reports anything."""

    name = "null"

    def detect(self, frame: ObservationFrame) -> List[RawDetection]:
        return []

    @property
    def is_available(self) -> bool:
        return False


class TimedDetector:
    """
    Runs a detector on a worker pool with a per-frame time bound.

    Each frame's bound is measured from when its inference starts, so time
    spent queued behind other frames (or other sessions) does not count
    against it. A frame still waiting for a worker after
    `queue_timeout_seconds` is given up on as well.

    Timeouts and classifier errors inside `detect_window` count as zero
    detections for that frame; the window is never blocked on a slow model.
    """

    def __init__(
        self,
        detector: Detector,
        timeout_seconds: float = 2.0,
        max_workers: int = 4,
        queue_timeout_seconds: float = 30.0
    ):
        self.detector = detector
        self.timeout_seconds = timeout_seconds
        self.queue_timeout_seconds = queue_timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="detector"
        )

    def detect(self, frame: ObservationFrame) -> List[RawDetection]:
        """
        Detect on a single frame.

        Raises:
            DetectorTimeout: if inference takes longer than the bound
        """
        outcome = self._run([frame])[frame.index]
        if isinstance(outcome, Exception):
            raise outcome
        return self._stamp(outcome, frame)

    def detect_window(self, frames: Sequence[ObservationFrame]) -> Dict[int, List[RawDetection]]:
        """
        Detect on all frames of a window concurrently.

        Returns:
            Detections keyed by frame index. Every input frame has an entry.
        """
        outcomes = self._run(frames)
        results: Dict[int, List[RawDetection]] = {}

        for frame in frames:
            outcome = outcomes[frame.index]
            if isinstance(outcome, DetectorTimeout):
                logger.warning(f"{outcome}; session={frame.session_id} treated as no detections")
                results[frame.index] = []
            elif isinstance(outcome, Exception):
                logger.warning(
                    f"Detector {self.detector.name} failed on frame {frame.index} "
                    f"session={frame.session_id}: {outcome}"
                )
                results[frame.index] = []
            else:
                results[frame.index] = self._stamp(outcome, frame)

        return results

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _run(self, frames: Sequence[ObservationFrame]) -> Dict[int, Any]:
        """Detections (or the exception raised) per frame index"""
        started: Dict[int, float] = {}

        def timed_detect(frame: ObservationFrame) -> List[RawDetection]:
            started[frame.index] = time.monotonic()
            return self.detector.detect(frame)

        submitted = time.monotonic()
        futures = {self._executor.submit(timed_detect, frame): frame for frame in frames}
        outcomes: Dict[int, Any] = {}
        pending = set(futures)

        while pending:
            done, pending = wait(pending, timeout=POLL_SECONDS, return_when=FIRST_COMPLETED)
            for future in done:
                frame = futures[future]
                try:
                    outcomes[frame.index] = future.result()
                except Exception as e:
                    outcomes[frame.index] = e

            now = time.monotonic()
            for future in list(pending):
                frame = futures[future]
                start = started.get(frame.index)
                if start is None:
                    if now - submitted < self.queue_timeout_seconds:
                        continue
                    bound = self.queue_timeout_seconds
                elif now - start < self.timeout_seconds:
                    continue
                else:
                    bound = self.timeout_seconds
                # A running inference cannot be interrupted; its result is dropped
                future.cancel()
                pending.discard(future)
                outcomes[frame.index] = DetectorTimeout(bound, frame.index)

        return outcomes

    @staticmethod
    def _stamp(detections: List[RawDetection], frame: ObservationFrame) -> List[RawDetection]:
        # Detectors do not know the session-wide ordinal; the pipeline does
        return [
            RawDetection(
                kind=d.kind,
                confidence=d.confidence,
                bounding_box=d.bounding_box,
                source_frame_index=frame.index,
            )
            for d in detections
        ]
