"""Scheduling, retry, webhooks and milestone notifications."""

from .scheduler import Scheduler, ThreadScheduler, ManualScheduler
from .retry import RetryPolicy, RetryTask
from .webhooks import WebhookDispatcher, WebhookEvent
from .milestones import MilestoneEngine

__all__ = [
    "Scheduler",
    "ThreadScheduler",
    "ManualScheduler",
    "RetryPolicy",
    "RetryTask",
    "WebhookDispatcher",
    "WebhookEvent",
    "MilestoneEngine",
]
