"""
examguard Proctoring Module

Turns a stream of webcam observation frames into:
- Deduplicated, severity-ranked alerts
- Incidents for human review when alert patterns escalate
- A fraud-aware exam session lifecycle (submitted vs flagged)
"""

from .api import router

__all__ = ["router"]
