from __future__ import annotations

import asyncio

import pytest

from codeprep.services.judge import JudgeService, analyze_complexity, normalize_language, outputs_match
from codeprep.services.session.schema import TestCase


@pytest.mark.parametrize(
    "actual,expected",
    [("[0, 1]\n", "[0,1]"), ("42\r\n", 42), ("hello  world", "hello world"), ("[1,2]", [1, 2])],
)
def test_outputs_match(actual, expected):
    assert outputs_match(actual, expected)


def test_outputs_mismatch():
    assert not outputs_match("[1,0]", "[0,1]")
    assert not outputs_match("", "0")


def test_language_aliases():
    assert normalize_language("Python3") == "python"
    assert normalize_language("C++") == "cpp"
    assert normalize_language("js") == "javascript"


def test_complexity_heuristics():
    nested = "for i in range(n):\n    for j in range(n):\n        pass\n"
    hashed = "seen = {}\nfor i, v in enumerate(nums):\n    seen[v] = i\n"
    brace_nested = "for (int i = 0; i < n; i++) {\n  for (int j = 0; j < n; j++) {\n  }\n}\n"
    assert analyze_complexity(nested).time_complexity == "O(n^2)"
    assert analyze_complexity(nested).suggestions
    assert analyze_complexity("nums.sort()\n").detected_algorithm == "sorting"
    assert analyze_complexity(hashed).time_complexity == "O(n)"
    assert analyze_complexity(brace_nested).detected_algorithm == "nested_loops"
    assert analyze_complexity("print(1)\n").complexity == 1
    assert analyze_complexity("   ").detected_algorithm == "unknown"


def _run(judge, language, source, cases):
    return asyncio.run(judge.run_cases(language, source, cases))


def test_local_runner_scores_cases():
    judge = JudgeService(use_mock=True, case_timeout_s=10.0)
    cases = [
        TestCase(input="3", expected_output="9"),
        TestCase(input="4", expected_output="16"),
        TestCase(input="5", expected_output="26", is_hidden=True),
    ]
    result = _run(judge, "python", "n = int(input())\nprint(n * n)\n", cases)
    assert result.success
    assert result.summary.passed == 2
    assert result.summary.percentage == 67
    assert result.test_results[2].input is None
    assert result.complexity_analysis is not None


def test_runtime_error_without_passes_is_a_failure():
    judge = JudgeService(use_mock=True, case_timeout_s=10.0)
    result = _run(judge, "python", "raise ValueError('bad input')\n", [TestCase(input="1", expected_output="1")])
    assert not result.success
    assert "ValueError" in result.error


def test_timeout_is_reported():
    judge = JudgeService(use_mock=True, case_timeout_s=0.5)
    result = _run(judge, "python", "while True:\n    pass\n", [TestCase(input="", expected_output="1")])
    assert not result.success
    assert "Timeout" in result.error


def test_local_runner_only_handles_python():
    judge = JudgeService(use_mock=True)
    result = _run(judge, "cpp", "int main() {}", [TestCase(input="", expected_output="")])
    assert not result.success
    assert "Judge0" in result.error
    assert "Unsupported" in _run(judge, "cobol", "", []).error
