from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import Field

from codeprep.wire import WireModel

JOIN_INTERVIEW = "join-interview"
LEAVE_INTERVIEW = "leave-interview"
CODE_UPDATE = "code-update"
TYPING_INDICATOR = "typing-indicator"
CODE_EXECUTION_RESULT = "code-execution-result"
LIVE_FEEDBACK = "live-feedback"
PROGRESS_SAVED = "progress-saved"
INTERVIEW_PROGRESS = "interview-progress"
SESSION_STATUS_UPDATE = "session-status-update"

# Events a client listens for; join/leave only ever go client -> server.
INBOUND_EVENTS = (
    CODE_UPDATE,
    TYPING_INDICATOR,
    CODE_EXECUTION_RESULT,
    LIVE_FEEDBACK,
    PROGRESS_SAVED,
    INTERVIEW_PROGRESS,
    SESSION_STATUS_UPDATE,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CodeUpdate(WireModel):
    session_id: str
    code: str
    language: str
    question_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class TypingIndicator(WireModel):
    session_id: str
    is_typing: bool
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class InterviewProgress(WireModel):
    session_id: str
    question_id: Optional[str] = None
    language: Optional[str] = None
    score: Optional[int] = None
    tests_passed: Optional[int] = None
    total_tests: Optional[int] = None
    status: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class LiveFeedback(WireModel):
    session_id: str
    question_id: Optional[str] = None
    feedback: Dict[str, Any] = Field(default_factory=dict)


class ProgressSaved(WireModel):
    session_id: str
    question_id: Optional[str] = None
    saved_at: Optional[datetime] = None


class SessionStatusUpdate(WireModel):
    session_id: str
    status: str
