from .schema import (
    ComplexityAnalysis,
    ExecutionResult,
    ExecutionSummary,
    PerformanceMetrics,
    ScoreSnapshot,
    TestCaseResult,
)
from .service import (
    derive_score,
    performance_metrics,
    result_from_event,
    result_from_rest,
    round_half_up,
    score_result,
    summarize,
)

__all__ = [
    "ComplexityAnalysis",
    "ExecutionResult",
    "ExecutionSummary",
    "PerformanceMetrics",
    "ScoreSnapshot",
    "TestCaseResult",
    "derive_score",
    "performance_metrics",
    "result_from_event",
    "result_from_rest",
    "round_half_up",
    "score_result",
    "summarize",
]
