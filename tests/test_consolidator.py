"""
Tests for window consolidation
"""

import pytest

from examguard.proctor.errors import InvariantViolation
from examguard.proctor.metrics import FrameWindow, consolidate, window_seq
from examguard.proctor.models import BoundingBox, DetectionKind, ObservationFrame

from conftest import make_detection


class TestConsolidate:
    """Tests for consolidate()"""

    def test_empty_window(self):
        assert consolidate([], 15) == []

    def test_same_kind_counts_and_max(self):
        """N detections of one kind give count N and the max confidence"""
        detections = [
            make_detection(DetectionKind.PHONE, conf, index=i)
            for i, conf in enumerate([80, 90, 96, 70])
        ]

        findings = consolidate(detections, 15)

        assert len(findings) == 1
        assert findings[0].kind == DetectionKind.PHONE
        assert findings[0].occurrence_count == 4
        assert findings[0].max_confidence == 96
        assert findings[0].avg_confidence == 84.0

    def test_average_is_rounded(self):
        detections = [
            make_detection(DetectionKind.LOOKING_AWAY, 70, index=0),
            make_detection(DetectionKind.LOOKING_AWAY, 71, index=1),
            make_detection(DetectionKind.LOOKING_AWAY, 71, index=2),
        ]

        assert consolidate(detections, 15)[0].avg_confidence == 70.67

    def test_output_ordered_by_kind(self):
        detections = [
            make_detection(DetectionKind.SUSPICIOUS_OBJECT, 75, index=0),
            make_detection(DetectionKind.LOOKING_AWAY, 65, index=1),
            make_detection(DetectionKind.PHONE, 90, index=2),
        ]

        kinds = [f.kind for f in consolidate(detections, 15)]

        assert kinds == [
            DetectionKind.PHONE, DetectionKind.LOOKING_AWAY, DetectionKind.SUSPICIOUS_OBJECT
        ]

    def test_idempotent(self):
        """Consolidating the same window twice gives identical findings"""
        detections = [
            make_detection(DetectionKind.MULTIPLE_FACES, 88, index=0, box=BoundingBox(1, 2, 3, 4)),
            make_detection(DetectionKind.PHONE, 91, index=0),
            make_detection(DetectionKind.MULTIPLE_FACES, 60, index=3),
        ]

        assert consolidate(detections, 15) == consolidate(detections, 15)

    def test_representative_box_highest_confidence(self):
        low = BoundingBox(0, 0, 10, 10)
        high = BoundingBox(5, 5, 20, 20)
        detections = [
            make_detection(DetectionKind.PHONE, 70, index=0, box=low),
            make_detection(DetectionKind.PHONE, 95, index=1, box=high),
        ]

        assert consolidate(detections, 15)[0].representative_box == high

    def test_representative_box_tie_goes_to_earliest_frame(self):
        first = BoundingBox(0, 0, 10, 10)
        second = BoundingBox(5, 5, 20, 20)
        detections = [
            make_detection(DetectionKind.PHONE, 90, index=2, box=first),
            make_detection(DetectionKind.PHONE, 90, index=4, box=second),
        ]

        assert consolidate(detections, 15)[0].representative_box == first

    def test_representative_box_skips_unboxed_members(self):
        box = BoundingBox(1, 1, 4, 4)
        detections = [
            make_detection(DetectionKind.PHONE, 99, index=0),
            make_detection(DetectionKind.PHONE, 80, index=1, box=box),
        ]

        assert consolidate(detections, 15)[0].representative_box == box

    def test_no_boxes(self):
        detections = [make_detection(DetectionKind.LOOKING_AWAY, 80, index=0)]
        assert consolidate(detections, 15)[0].representative_box is None

    def test_unordered_input_rejected(self):
        detections = [
            make_detection(DetectionKind.PHONE, 80, index=3),
            make_detection(DetectionKind.PHONE, 80, index=1),
        ]

        with pytest.raises(InvariantViolation):
            consolidate(detections, 15)

    def test_span_must_fit_window(self):
        fits = [
            make_detection(DetectionKind.PHONE, 80, index=0),
            make_detection(DetectionKind.PHONE, 80, index=2),
        ]
        too_wide = [
            make_detection(DetectionKind.PHONE, 80, index=0),
            make_detection(DetectionKind.PHONE, 80, index=3),
        ]

        assert consolidate(fits, 3)[0].occurrence_count == 2
        with pytest.raises(InvariantViolation):
            consolidate(too_wide, 3)


class TestFrameWindow:
    """Tests for the frame ring and window closing"""

    @staticmethod
    def frame(index):
        return ObservationFrame(session_id="S", timestamp=float(index), index=index)

    def test_tumbling_windows(self):
        window = FrameWindow("S", size=3)
        closed = [window.push(self.frame(i)) for i in range(6)]

        assert [c is None for c in closed] == [True, True, False, True, True, False]
        assert closed[2].window_id == "S:w1"
        assert closed[2].frame_indices == [0, 1, 2]
        assert closed[5].window_id == "S:w2"
        assert closed[5].frame_indices == [3, 4, 5]

    def test_overlapping_windows(self):
        window = FrameWindow("S", size=4, stride=2)
        closed = [c for c in (window.push(self.frame(i)) for i in range(6)) if c]

        assert [c.frame_indices for c in closed] == [[0, 1], [0, 1, 2, 3], [2, 3, 4, 5]]
        assert [c.window_id for c in closed] == ["S:w1", "S:w2", "S:w3"]

    def test_ring_holds_at_most_size_frames(self):
        window = FrameWindow("S", size=3)
        for i in range(10):
            window.push(self.frame(i))

        assert len(window) == 3
        assert [f.index for f in window.snapshot()] == [7, 8, 9]

    def test_close_partial_window(self):
        window = FrameWindow("S", size=5)
        window.push(self.frame(0))
        window.push(self.frame(1))

        closed = window.close()

        assert closed.window_id == "S:w1"
        assert closed.frame_indices == [0, 1]
        assert window.pending_frames == 0

    def test_partial_tumbling_window_has_only_new_frames(self):
        window = FrameWindow("S", size=3)
        for i in range(5):
            window.push(self.frame(i))

        closed = window.close()

        assert closed.window_id == "S:w2"
        assert closed.frame_indices == [3, 4]

    def test_partial_overlapping_window_keeps_overlap(self):
        window = FrameWindow("S", size=4, stride=2)
        for i in range(5):
            window.push(self.frame(i))

        assert window.close().frame_indices == [2, 3, 4]

    def test_close_without_new_frames(self):
        window = FrameWindow("S", size=2)
        window.push(self.frame(0))
        window.push(self.frame(1))

        assert window.close() is None

    def test_ids_continue_after_start_seq(self):
        window = FrameWindow("S", size=2, start_seq=4)
        window.push(self.frame(0))

        assert window.push(self.frame(1)).window_id == "S:w5"

    def test_window_seq(self):
        assert window_seq("EXM_AB12:w7") == 7
        assert window_seq("EXM_AB12:w12") == 12
        assert window_seq("manual") == 0
        assert window_seq("EXM_AB12:wx") == 0
