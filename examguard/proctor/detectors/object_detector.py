"""
Prohibited Object Detector - Detects phones, extra people and prohibited items using YOLO

Class names are mapped onto detection kinds:
- cell phone -> phone
- two or more people -> unauthorized_person
- books, notes, earpieces, watches, ... -> suspicious_object
"""

import cv2
import numpy as np
import logging
from typing import List, Optional, Set

from ..models import BoundingBox, DetectionKind, ObservationFrame, RawDetection
from .base import Detector

logger = logging.getLogger(__name__)


class ProhibitedObjectDetector(Detector):
    """
    YOLO-backed detector.

    The model is loaded lazily on first use. If ultralytics is missing or the
    weights cannot be loaded the detector stays in degraded mode and returns
    no detections.
    """

    name = "yolo"

    PHONE_ITEMS: Set[str] = {'cell phone', 'mobile phone', 'phone'}

    PROHIBITED_ITEMS: Set[str] = {
        'book',
        'chits',
        'closedbook',
        'earpiece',
        'headphone',
        'laptop',
        'openbook',
        'sheet',
        'watch'
    }

    def __init__(self, model_path: Optional[str] = None, confidence: float = 0.5):
        """
        Args:
            model_path: Path to YOLO model weights
            confidence: Minimum model confidence (0-1) for a box to count
        """
        self.confidence = confidence
        self.model = None
        self._model_path = model_path
        self._model_loaded = False

    def _ensure_model(self):
        """Lazy load YOLO model"""
        if self.model is not None or self._model_loaded:
            return

        self._model_loaded = True  # Don't retry
        if not self._model_path:
            logger.warning("No YOLO weights configured, object detection disabled")
            return

        try:
            from ultralytics import YOLO
            self.model = YOLO(self._model_path)
            logger.info(f"YOLO model loaded from {self._model_path}")
        except Exception as e:
            logger.error(f"Failed to load YOLO model: {e}")

    @property
    def is_available(self) -> bool:
        self._ensure_model()
        return self.model is not None

    def detect(self, frame: ObservationFrame) -> List[RawDetection]:
        image = self._decode(frame.image_data)
        if image is None:
            return []

        self._ensure_model()
        if self.model is None:
            return []

        results = self.model.predict(image, conf=self.confidence, verbose=False)

        detections: List[RawDetection] = []
        people: List[RawDetection] = []

        for result in results:
            if result.boxes is None:
                continue

            for box in result.boxes:
                cls_id = int(box.cls[0])
                conf = int(round(float(box.conf[0]) * 100))
                name = self.model.names.get(cls_id, f"class_{cls_id}").lower()
                x1, y1, x2, y2 = [float(v) for v in box.xyxy[0].tolist()]
                bbox = BoundingBox(x=x1, y=y1, w=x2 - x1, h=y2 - y1)

                if name == 'person':
                    people.append(RawDetection(
                        DetectionKind.UNAUTHORIZED_PERSON, conf, bbox, frame.index
                    ))
                elif name in self.PHONE_ITEMS:
                    detections.append(RawDetection(DetectionKind.PHONE, conf, bbox, frame.index))
                elif name in self.PROHIBITED_ITEMS:
                    detections.append(RawDetection(
                        DetectionKind.SUSPICIOUS_OBJECT, conf, bbox, frame.index
                    ))

        if len(people) >= 2:
            # The candidate is expected; report the most confident extra person
            people.sort(key=lambda d: d.confidence, reverse=True)
            detections.append(people[1])

        return detections

    @staticmethod
    def _decode(image_data: bytes) -> Optional[np.ndarray]:
        """Decode JPEG/PNG bytes into a BGR image"""
        if not image_data:
            return None
        buffer = np.frombuffer(image_data, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if image is None or image.size == 0:
            logger.debug("Could not decode frame image")
            return None
        return image
