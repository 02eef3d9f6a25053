"""
Tests for Proctoring Detectors
"""

import sys
from types import SimpleNamespace
from unittest.mock import Mock, patch

import cv2
import numpy as np
import pytest

from examguard.proctor.detectors import (
    NullDetector, ProhibitedObjectDetector, ScriptedDetector, TimedDetector
)
from examguard.proctor.errors import DetectorTimeout
from examguard.proctor.models import DetectionKind, ObservationFrame

from conftest import make_detection


def jpeg_bytes():
    ok, buffer = cv2.imencode(".jpg", np.zeros((32, 32, 3), dtype=np.uint8))
    assert ok
    return buffer.tobytes()


def yolo_box(cls_id, conf, xyxy):
    return SimpleNamespace(
        cls=np.array([cls_id]),
        conf=np.array([conf]),
        xyxy=np.array([xyxy], dtype=float),
    )


def fake_model(boxes):
    model = Mock()
    model.names = {0: "person", 67: "cell phone", 73: "book", 2: "car"}
    model.predict.return_value = [SimpleNamespace(boxes=boxes)]
    return model


class TestNullAndScripted:

    def test_null_detector(self):
        detector = NullDetector()
        assert detector.detect(ObservationFrame("S", 1.0)) == []
        assert detector.is_available is False

    def test_scripted_sequence(self):
        detector = ScriptedDetector(sequence=[[make_detection(DetectionKind.PHONE, 90)], []])

        first = detector.detect(ObservationFrame("S", 1.0))
        second = detector.detect(ObservationFrame("S", 2.0))
        third = detector.detect(ObservationFrame("S", 3.0))

        assert [d.kind for d in first] == [DetectionKind.PHONE]
        assert second == [] and third == []
        assert detector.calls == 3

    def test_scripted_by_frame(self):
        detector = ScriptedDetector(by_frame={4: [make_detection(DetectionKind.LOOKING_AWAY, 75)]})

        assert detector.detect(ObservationFrame("S", 1.0, index=3)) == []
        assert detector.detect(ObservationFrame("S", 2.0, index=4))[0].confidence == 75


class TestTimedDetector:
    """Tests for the timeout wrapper"""

    def test_detect_stamps_frame_index(self):
        timed = TimedDetector(ScriptedDetector(sequence=[[make_detection(DetectionKind.PHONE, 90)]]))

        detections = timed.detect(ObservationFrame("S", 1.0, index=7))

        assert detections[0].source_frame_index == 7
        timed.close()

    def test_detect_raises_on_timeout(self):
        timed = TimedDetector(ScriptedDetector(delay_seconds=0.3), timeout_seconds=0.05)

        with pytest.raises(DetectorTimeout) as exc_info:
            timed.detect(ObservationFrame("S", 1.0, index=2))

        assert exc_info.value.frame_index == 2
        timed.close()

    def test_detect_window_covers_every_frame(self):
        detector = ScriptedDetector(by_frame={1: [make_detection(DetectionKind.PHONE, 90)]})
        timed = TimedDetector(detector)
        window = [ObservationFrame("S", float(i), index=i) for i in range(3)]

        results = timed.detect_window(window)

        assert sorted(results) == [0, 1, 2]
        assert results[0] == [] and results[2] == []
        assert results[1][0].source_frame_index == 1
        timed.close()

    def test_detect_window_timeouts_are_empty(self):
        timed = TimedDetector(
            ScriptedDetector(sequence=[[make_detection(DetectionKind.PHONE, 90)]] * 3, delay_seconds=0.3),
            timeout_seconds=0.05,
        )
        window = [ObservationFrame("S", float(i), index=i) for i in range(3)]

        assert timed.detect_window(window) == {0: [], 1: [], 2: []}
        timed.close()

    def test_queued_frames_get_their_own_bound(self):
        """With one worker, frames wait their turn without losing detections"""
        detector = ScriptedDetector(
            by_frame={i: [make_detection(DetectionKind.PHONE, 90)] for i in range(3)},
            delay_seconds=0.3,
        )
        timed = TimedDetector(detector, timeout_seconds=0.5, max_workers=1)
        window = [ObservationFrame("S", float(i), index=i) for i in range(3)]

        results = timed.detect_window(window)

        assert {i: len(d) for i, d in results.items()} == {0: 1, 1: 1, 2: 1}
        assert detector.calls == 3
        timed.close()

    def test_frames_waiting_too_long_for_a_worker_are_empty(self):
        detector = ScriptedDetector(
            by_frame={i: [make_detection(DetectionKind.PHONE, 90)] for i in range(3)},
            delay_seconds=0.5,
        )
        timed = TimedDetector(detector, timeout_seconds=2.0, max_workers=1, queue_timeout_seconds=0.1)
        window = [ObservationFrame("S", float(i), index=i) for i in range(3)]

        results = timed.detect_window(window)

        assert len(results[0]) == 1
        assert results[1] == [] and results[2] == []
        timed.close()


class TestProhibitedObjectDetector:
    """Tests for the YOLO-backed detector"""

    def test_without_weights_is_degraded(self):
        detector = ProhibitedObjectDetector()

        assert detector.detect(ObservationFrame("S", 1.0, image_data=jpeg_bytes())) == []
        assert detector.is_available is False

    def test_missing_ultralytics_is_degraded(self):
        detector = ProhibitedObjectDetector(model_path="yolov8n.pt")

        with patch.dict(sys.modules, {"ultralytics": None}):
            result = detector.detect(ObservationFrame("S", 1.0, image_data=jpeg_bytes()))

        assert result == []
        assert detector.model is None

    def test_undecodable_frame(self):
        detector = ProhibitedObjectDetector(model_path="yolov8n.pt")
        detector.model = fake_model([])

        assert detector.detect(ObservationFrame("S", 1.0, image_data=b"not an image")) == []
        detector.model.predict.assert_not_called()

    def test_class_mapping(self):
        detector = ProhibitedObjectDetector(model_path="yolov8n.pt", confidence=0.4)
        detector.model = fake_model([
            yolo_box(0, 0.93, [0, 0, 10, 20]),
            yolo_box(0, 0.81, [30, 0, 40, 20]),
            yolo_box(67, 0.968, [5, 5, 15, 25]),
            yolo_box(73, 0.7, [1, 1, 2, 2]),
            yolo_box(2, 0.99, [0, 0, 1, 1]),
        ])

        detections = detector.detect(ObservationFrame("S", 1.0, image_data=jpeg_bytes(), index=3))

        by_kind = {d.kind: d for d in detections}
        assert set(by_kind) == {
            DetectionKind.PHONE, DetectionKind.SUSPICIOUS_OBJECT, DetectionKind.UNAUTHORIZED_PERSON
        }
        assert by_kind[DetectionKind.PHONE].confidence == 97
        assert by_kind[DetectionKind.PHONE].bounding_box.w == 10
        assert by_kind[DetectionKind.PHONE].bounding_box.h == 20
        assert by_kind[DetectionKind.UNAUTHORIZED_PERSON].confidence == 81
        assert by_kind[DetectionKind.SUSPICIOUS_OBJECT].confidence == 70
        assert all(d.source_frame_index == 3 for d in detections)
        _, kwargs = detector.model.predict.call_args
        assert kwargs["conf"] == 0.4

    def test_single_person_is_expected(self):
        detector = ProhibitedObjectDetector(model_path="yolov8n.pt")
        detector.model = fake_model([yolo_box(0, 0.95, [0, 0, 10, 10])])

        assert detector.detect(ObservationFrame("S", 1.0, image_data=jpeg_bytes())) == []
