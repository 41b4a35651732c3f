from app.models.event_outbox import EventOutbox
from app.models.task_trigger import ScheduledNotification, TaskTrigger
from app.models.time_clock_session import SessionBreak, TimeClockSession

__all__ = [
    "EventOutbox",
    "ScheduledNotification",
    "SessionBreak",
    "TaskTrigger",
    "TimeClockSession",
]
