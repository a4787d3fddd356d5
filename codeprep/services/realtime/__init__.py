"""Session-scoped event channel over Socket.IO."""

from .schema import (
    CODE_EXECUTION_RESULT,
    CODE_UPDATE,
    INBOUND_EVENTS,
    INTERVIEW_PROGRESS,
    JOIN_INTERVIEW,
    LEAVE_INTERVIEW,
    LIVE_FEEDBACK,
    PROGRESS_SAVED,
    SESSION_STATUS_UPDATE,
    TYPING_INDICATOR,
    CodeUpdate,
    InterviewProgress,
    LiveFeedback,
    ProgressSaved,
    SessionStatusUpdate,
    TypingIndicator,
)
from .service import EventChannel, Subscription

__all__ = [
    "CODE_EXECUTION_RESULT",
    "CODE_UPDATE",
    "INBOUND_EVENTS",
    "INTERVIEW_PROGRESS",
    "JOIN_INTERVIEW",
    "LEAVE_INTERVIEW",
    "LIVE_FEEDBACK",
    "PROGRESS_SAVED",
    "SESSION_STATUS_UPDATE",
    "TYPING_INDICATOR",
    "CodeUpdate",
    "EventChannel",
    "InterviewProgress",
    "LiveFeedback",
    "ProgressSaved",
    "SessionStatusUpdate",
    "Subscription",
    "TypingIndicator",
]
