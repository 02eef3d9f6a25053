"""
Frame Consolidator - Turns per-frame detections into per-window findings
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence

from ..errors import InvariantViolation
from ..models import KIND_ORDER, ConsolidatedFinding, DetectionKind, ObservationFrame, RawDetection

logger = logging.getLogger(__name__)


def consolidate(detections: Sequence[RawDetection], window_size: int) -> List[ConsolidatedFinding]:
    """
    Aggregate a window's detections into one finding per kind.

    Args:
        detections: Raw detections ordered by source_frame_index
        window_size: Maximum number of frames the detections may span

    Returns:
        Findings ordered by kind declaration order. Empty input gives [].

    Raises:
        InvariantViolation: if the input is unordered or spans too many frames
    """
    if not detections:
        return []

    previous = detections[0].source_frame_index
    for detection in detections[1:]:
        if detection.source_frame_index < previous:
            raise InvariantViolation(
                "Detections must be ordered by source_frame_index",
                {"index": detection.source_frame_index, "previous": previous},
            )
        previous = detection.source_frame_index

    span = detections[-1].source_frame_index - detections[0].source_frame_index
    if span >= window_size:
        raise InvariantViolation(
            f"Detections span {span + 1} frames, window holds {window_size}",
            {"first": detections[0].source_frame_index, "last": detections[-1].source_frame_index},
        )

    groups: Dict[DetectionKind, List[RawDetection]] = {}
    for detection in detections:
        groups.setdefault(detection.kind, []).append(detection)

    findings = []
    for kind in sorted(groups, key=KIND_ORDER.get):
        group = groups[kind]
        confidences = [d.confidence for d in group]
        findings.append(ConsolidatedFinding(
            kind=kind,
            occurrence_count=len(group),
            max_confidence=max(confidences),
            avg_confidence=round(sum(confidences) / len(confidences), 2),
            representative_box=_representative_box(group),
        ))
    return findings


def window_seq(window_id: str) -> int:
    """Sequence number of a `"{session_id}:w{seq}"` window id, 0 if it has none"""
    _, sep, seq = window_id.rpartition(":w")
    return int(seq) if sep and seq.isdigit() else 0


def _representative_box(group: List[RawDetection]):
    # Highest confidence first, earliest frame breaks ties
    ranked = sorted(group, key=lambda d: (-d.confidence, d.source_frame_index))
    for detection in ranked:
        if detection.bounding_box is not None:
            return detection.bounding_box
    return None


@dataclass
class ClosedWindow:
    """A window that has just closed and is ready for consolidation"""
    window_id: str
    frames: List[ObservationFrame] = field(default_factory=list)

    @property
    def frame_indices(self) -> List[int]:
        return [f.index for f in self.frames]


class FrameWindow:
    """
    Ring of the most recent `size` frames of one session.

    A window closes every `stride` pushed frames. With stride == size the
    windows tumble; with a smaller stride consecutive windows overlap.
    Window ids continue after `start_seq`, so a ring rebuilt for a running
    session never reuses the id of a window already persisted.
    """

    def __init__(self, session_id: str, size: int, stride: Optional[int] = None, start_seq: int = 0):
        self.session_id = session_id
        self.size = size
        self.stride = stride or size
        self._frames: Deque[ObservationFrame] = deque(maxlen=size)
        self._since_close = 0
        self._seq = start_seq

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def pending_frames(self) -> int:
        """Frames pushed since the last close"""
        return self._since_close

    def push(self, frame: ObservationFrame) -> Optional[ClosedWindow]:
        """Add a frame; returns the closed window when this frame completes one"""
        self._frames.append(frame)
        self._since_close += 1
        if self._since_close >= self.stride:
            return self.close()
        return None

    def close(self) -> Optional[ClosedWindow]:
        """Close the current window early (flush). None if nothing new arrived."""
        if self._since_close == 0:
            return None
        # New frames plus the configured overlap with the previous window
        count = min(len(self._frames), self._since_close + self.size - self.stride)
        self._since_close = 0
        self._seq += 1
        return ClosedWindow(
            window_id=f"{self.session_id}:w{self._seq}",
            frames=self.snapshot()[-count:]
        )

    def snapshot(self) -> List[ObservationFrame]:
        return list(self._frames)
