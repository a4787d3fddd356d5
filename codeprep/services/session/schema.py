from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, field_validator, model_validator

from codeprep.wire import WireModel

SESSION_STATUSES = ("created", "in_progress", "completed")
_STATUS_RANK = {status: rank for rank, status in enumerate(SESSION_STATUSES)}
_STATUS_ALIASES = {
    "scheduled": "created",
    "pending": "created",
    "in-progress": "in_progress",
    "active": "in_progress",
    "done": "completed",
}


def normalize_status(value: Optional[str]) -> str:
    raw = (value or "created").strip().lower()
    status = _STATUS_ALIASES.get(raw, raw)
    return status if status in _STATUS_RANK else "created"


def advance_status(current: str, incoming: Optional[str]) -> str:
    """Session status only moves forward: created < in_progress < completed."""

    target = normalize_status(incoming)
    if _STATUS_RANK[target] > _STATUS_RANK[normalize_status(current)]:
        return target
    return normalize_status(current)


class TestCase(WireModel):
    __test__ = False  # not a pytest class

    input: Any = ""
    expected_output: Any = ""
    is_hidden: bool = False


class Example(WireModel):
    input: Any = ""
    output: Any = ""
    explanation: Optional[str] = None


class Question(WireModel):
    id: str
    title: str = ""
    difficulty: str = "medium"
    type: str = "coding"
    description: str = ""
    examples: List[Example] = Field(default_factory=list)
    constraints: Union[List[str], str, None] = None
    test_cases: List[TestCase] = Field(default_factory=list)
    starter_code: Dict[str, str] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("starter_code", mode="before")
    @classmethod
    def _starter_mapping(cls, value: Any) -> Dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {str(lang).lower(): str(src) for lang, src in value.items() if src is not None}

    def visible_test_cases(self) -> List[TestCase]:
        return [case for case in self.test_cases if not case.is_hidden]

    def for_client(self) -> "Question":
        return self.model_copy(update={"test_cases": self.visible_test_cases()})


class Response(WireModel):
    question_id: str
    code: str = ""
    language: str = ""
    score: int = 0
    tests_passed: int = 0
    total_tests: int = 0
    time_elapsed: int = 0
    rating: Optional[str] = None
    submitted_at: Optional[datetime] = None


class Session(WireModel):
    session_id: str
    status: str = "created"
    language: Optional[str] = None
    start_time: Optional[datetime] = None
    configured_duration_seconds: int = 3600
    questions: List[Question] = Field(default_factory=list)
    responses: List[Response] = Field(default_factory=list)
    current_question_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _single_question_shape(cls, data: Any) -> Any:
        # GET coding/session may carry just the active question
        if isinstance(data, dict) and not data.get("questions") and data.get("question"):
            data = dict(data)
            data["questions"] = [data["question"]]
            data.setdefault("currentQuestionId", data["question"].get("id"))
        return data

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return normalize_status(value)

    def question(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def answered(self) -> set:
        return {response.question_id for response in self.responses}


class ProgressRecord(WireModel):
    session_id: Optional[str] = None
    question_id: Optional[str] = None
    code: str = ""
    language: Optional[str] = None
    score: Optional[int] = None
    tests_passed: Optional[int] = None
    total_tests: Optional[int] = None
    time_elapsed_seconds: Optional[int] = Field(default=None, alias="timeElapsed")
    updated_at: Optional[datetime] = None


class SubmitRequest(WireModel):
    session_id: str
    question_id: str
    code: str
    language: str
    final_score: int
    tests_passed: int = 0
    total_tests: int = 0
    time_elapsed: int = 0


class SubmitReceipt(WireModel):
    session_id: str
    question_id: str
    final_score: int = 0
    rating: Optional[str] = None
    tests_passed: Optional[int] = None
    total_tests: Optional[int] = None
    time_elapsed: Optional[int] = None
    submitted_at: Optional[datetime] = None
    status: Optional[str] = None


def select_current_question(session: Session) -> Optional[Question]:
    """Server-chosen question, else the first unanswered coding one, else the first coding one."""

    if session.current_question_id:
        chosen = session.question(session.current_question_id)
        if chosen is not None:
            return chosen
    coding = [question for question in session.questions if question.type == "coding"]
    answered = session.answered()
    for question in coding:
        if question.id not in answered:
            return question
    if coding:
        return coding[0]
    return session.questions[0] if session.questions else None
