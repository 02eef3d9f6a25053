"""Detector modules for proctoring"""

from .base import Detector, NullDetector, TimedDetector
from .object_detector import ProhibitedObjectDetector
from .scripted import ScriptedDetector

__all__ = [
    "Detector",
    "NullDetector",
    "TimedDetector",
    "ProhibitedObjectDetector",
    "ScriptedDetector",
]
