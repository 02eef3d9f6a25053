"""
Scripted Detector - Deterministic detector for tests and demos
"""

import threading
import time
from typing import Dict, List, Optional, Sequence

from ..models import ObservationFrame, RawDetection
from .base import Detector


class ScriptedDetector(Detector):
    """
    Replays a fixed script of detections.

    `by_frame` maps a frame index to its detections. Otherwise `sequence` is
    consumed in call order, one entry per call, and is empty once exhausted.
    `delay_seconds` adds latency to every call, to exercise timeouts.
    """

    name = "scripted"

    def __init__(
        self,
        sequence: Optional[Sequence[List[RawDetection]]] = None,
        by_frame: Optional[Dict[int, List[RawDetection]]] = None,
        delay_seconds: float = 0.0,
        error: Optional[Exception] = None
    ):
        self.sequence = list(sequence or [])
        self.by_frame = dict(by_frame or {})
        self.delay_seconds = delay_seconds
        self.error = error
        self.calls = 0
        self._lock = threading.Lock()

    def detect(self, frame: ObservationFrame) -> List[RawDetection]:
        with self._lock:
            call = self.calls
            self.calls += 1

        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error

        if self.by_frame:
            return list(self.by_frame.get(frame.index, []))
        if call < len(self.sequence):
            return list(self.sequence[call])
        return []
