"""Utility modules"""

from .logging import log_proctor_event, notify_operators

__all__ = ["log_proctor_event", "notify_operators"]
