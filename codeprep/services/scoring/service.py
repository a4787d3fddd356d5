from __future__ import annotations

import math
from typing import Any, Iterable, Mapping, Optional, Union

from .schema import (
    ExecutionResult,
    ExecutionSummary,
    PerformanceMetrics,
    ScoreSnapshot,
    TestCaseResult,
)

ResultLike = Union[TestCaseResult, Mapping[str, Any]]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _passed(item: ResultLike) -> bool:
    if isinstance(item, TestCaseResult):
        return item.passed
    return bool(item.get("passed"))


def derive_score(test_results: Iterable[ResultLike]) -> ScoreSnapshot:
    """Fold per-test-case verdicts into ``testsPassed``, ``totalTests`` and a 0-100 score."""

    results = list(test_results)
    total = len(results)
    passed = sum(1 for item in results if _passed(item))
    score = round_half_up(100 * passed / total) if total else 0
    return ScoreSnapshot(tests_passed=passed, total_tests=total, score=score)


def score_result(result: ExecutionResult) -> ScoreSnapshot:
    return derive_score(result.test_results)


def performance_metrics(result: ExecutionResult, score: ScoreSnapshot) -> PerformanceMetrics:
    efficiency = 0.0
    if result.execution_time_ms:
        efficiency = max(0.0, 100.0 - result.execution_time_ms / 100.0)
    code_quality = 0.0
    analysis = result.complexity_analysis
    if analysis is not None and analysis.complexity is not None:
        code_quality = max(0.0, 100.0 - analysis.complexity * 10.0)
    return PerformanceMetrics(
        correctness=float(score.score),
        efficiency=round(efficiency, 2),
        code_quality=code_quality,
    )


def _coerce(body: Mapping[str, Any], complexity: Optional[Mapping[str, Any]] = None) -> ExecutionResult:
    data = dict(body)
    if complexity and not data.get("complexityAnalysis"):
        data["complexityAnalysis"] = complexity
    result = ExecutionResult.model_validate(data)
    if result.summary is None:
        snapshot = score_result(result)
        result.summary = ExecutionSummary(
            passed=snapshot.tests_passed,
            total=snapshot.total_tests,
            percentage=snapshot.score,
        )
    return result


def result_from_rest(data: Mapping[str, Any]) -> ExecutionResult:
    """Normalize the ``data`` member of an execute response.

    Both the flat shape (``{success, testResults, ...}``) and the wrapped shape
    (``{executionResult: {...}, complexityAnalysis}``) are accepted.
    """

    nested = data.get("executionResult")
    if isinstance(nested, Mapping):
        return _coerce(nested, data.get("complexityAnalysis"))
    return _coerce(data)


def result_from_event(payload: Mapping[str, Any]) -> ExecutionResult:
    """Normalize a pushed ``code-execution-result`` event into the same shape as REST."""

    nested = payload.get("executionResult")
    if isinstance(nested, Mapping):
        return _coerce(nested, payload.get("complexityAnalysis"))
    return _coerce(payload)


def summarize(result: ExecutionResult) -> str:
    snapshot = score_result(result)
    if snapshot.total_tests and snapshot.tests_passed == snapshot.total_tests:
        return f"All tests passed! Score: {snapshot.score}%"
    return f"{snapshot.tests_passed}/{snapshot.total_tests} tests passed. Score: {snapshot.score}%"


__all__ = [
    "derive_score",
    "performance_metrics",
    "result_from_event",
    "result_from_rest",
    "round_half_up",
    "score_result",
    "summarize",
]
