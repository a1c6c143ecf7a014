"""
oteltape capture: session lifecycle and retention.
"""

from .manager import CaptureSessionManager
from .retention import RetentionEnforcer, RetentionScheduler

__all__ = [
    "CaptureSessionManager",
    "RetentionEnforcer",
    "RetentionScheduler",
]
