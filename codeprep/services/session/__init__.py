"""Coding-session state machine: buffers, execution ordering, save and submit."""

from .schema import (
    Example,
    ProgressRecord,
    Question,
    Response,
    Session,
    SubmitReceipt,
    SubmitRequest,
    TestCase,
    advance_status,
    normalize_status,
    select_current_question,
)
from .service import ClientState, EditorBuffers, ExecuteRequest, SessionClient
from .templates import SCRATCH_TEMPLATES, starter_code, template_for

__all__ = [
    "ClientState",
    "EditorBuffers",
    "Example",
    "ExecuteRequest",
    "ProgressRecord",
    "Question",
    "Response",
    "SCRATCH_TEMPLATES",
    "Session",
    "SessionClient",
    "SubmitReceipt",
    "SubmitRequest",
    "TestCase",
    "advance_status",
    "normalize_status",
    "select_current_question",
    "starter_code",
    "template_for",
]
