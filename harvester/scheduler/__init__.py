"""
SERP Harvester scheduler module.
Provides the task queue, CAPTCHA recovery and session lifecycle.
"""

from harvester.scheduler.timers import DurableTimer
from harvester.scheduler.recovery import CaptchaRecovery
from harvester.scheduler.task_queue import TaskOutcome, TaskQueueScheduler
from harvester.scheduler.sessions import SessionManager
from harvester.scheduler.commands import CommandDispatcher

__all__ = [
    # Timers
    "DurableTimer",
    # Recovery
    "CaptchaRecovery",
    # Tasks
    "TaskOutcome",
    "TaskQueueScheduler",
    # Sessions
    "SessionManager",
    "CommandDispatcher",
]
