from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from codeprep.wire import WireModel

NO_ANSWER = -1


class McqQuestion(WireModel):
    index: int = 0
    category: Optional[str] = None
    prompt: str = ""
    options: List[str] = Field(default_factory=list)
    correct_index: Optional[int] = None
    explanation: str = ""
    difficulty: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class QuickPracticeSession(WireModel):
    session_id: str
    status: str = "in_progress"
    categories: List[str] = Field(default_factory=list)
    total_questions: int = 0
    questions: List[McqQuestion] = Field(default_factory=list)


class McqAnswer(WireModel):
    question_index: int
    selected_index: int


class QuickPracticeScore(WireModel):
    correct: int = 0
    total: int = 0
    percent: int = 0


class ReviewItem(WireModel):
    index: int
    category: Optional[str] = None
    prompt: str = ""
    options: List[str] = Field(default_factory=list)
    selected_index: Optional[int] = None
    correct_index: Optional[int] = None
    is_correct: bool = False
    explanation: str = ""


class QuickPracticeResult(WireModel):
    session_id: str
    status: str = "completed"
    score: QuickPracticeScore = Field(default_factory=QuickPracticeScore)
    completed_at: Optional[datetime] = None
    review: List[ReviewItem] = Field(default_factory=list)
