"""Window consolidation for proctoring"""

from .consolidator import ClosedWindow, FrameWindow, consolidate, window_seq

__all__ = ["ClosedWindow", "FrameWindow", "consolidate", "window_seq"]
