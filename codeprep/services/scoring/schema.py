from __future__ import annotations

from typing import Any, List, Optional

from pydantic import Field

from codeprep.wire import WireModel


class TestCaseResult(WireModel):
    __test__ = False  # not a pytest class

    test_case: Any = None
    passed: bool = False
    input: Optional[Any] = None
    expected: Optional[Any] = None
    actual: Optional[Any] = None
    error: Optional[str] = None
    time_ms: Optional[float] = None


class ExecutionSummary(WireModel):
    passed: int = 0
    total: int = 0
    percentage: int = 0


class ComplexityAnalysis(WireModel):
    time_complexity: str = "unknown"
    space_complexity: str = "unknown"
    detected_algorithm: str = "unknown"
    complexity: Optional[int] = None
    suggestions: List[str] = Field(default_factory=list)


class ExecutionResult(WireModel):
    success: bool = False
    test_results: List[TestCaseResult] = Field(default_factory=list)
    summary: Optional[ExecutionSummary] = None
    execution_time_ms: Optional[float] = None
    complexity_analysis: Optional[ComplexityAnalysis] = None
    output: Optional[str] = None
    error: Optional[str] = None


class ScoreSnapshot(WireModel):
    tests_passed: int = 0
    total_tests: int = 0
    score: int = 0


class PerformanceMetrics(WireModel):
    correctness: float = 0.0
    efficiency: float = 0.0
    code_quality: float = 0.0
