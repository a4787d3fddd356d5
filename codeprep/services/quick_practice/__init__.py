from .schema import (
    NO_ANSWER,
    McqAnswer,
    McqQuestion,
    QuickPracticeResult,
    QuickPracticeScore,
    QuickPracticeSession,
    ReviewItem,
)
from .service import McqState, QuickPracticeRunner

__all__ = [
    "NO_ANSWER",
    "McqAnswer",
    "McqQuestion",
    "McqState",
    "QuickPracticeResult",
    "QuickPracticeRunner",
    "QuickPracticeScore",
    "QuickPracticeSession",
    "ReviewItem",
]
