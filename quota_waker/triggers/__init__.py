"""
Triggers — определение reset'ов квоты, выполнение wake-запросов и история.
"""

from quota_waker.triggers.dispatcher import MAX_TRIGGER_CONCURRENCY, WakeDispatcher, run_bounded
from quota_waker.triggers.history import TriggerHistory
from quota_waker.triggers.models import ModelOutcome, TriggerRecord
from quota_waker.triggers.orchestrator import TriggerOrchestrator
from quota_waker.triggers.reset_detector import ResetDetector
from quota_waker.triggers.wake_client import WakeClient, WakeReply, build_wake_body

__all__ = [
    "MAX_TRIGGER_CONCURRENCY",
    "ModelOutcome",
    "ResetDetector",
    "TriggerHistory",
    "TriggerOrchestrator",
    "TriggerRecord",
    "WakeClient",
    "WakeDispatcher",
    "WakeReply",
    "build_wake_body",
    "run_bounded",
]
