from .analysis import analyze_complexity
from .schema import JUDGE0_LANGUAGE_IDS, RunOutcome, normalize_language
from .service import JudgeService, outputs_match

__all__ = [
    "JUDGE0_LANGUAGE_IDS",
    "JudgeService",
    "RunOutcome",
    "analyze_complexity",
    "normalize_language",
    "outputs_match",
]
