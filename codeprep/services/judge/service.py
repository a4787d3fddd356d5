from __future__ import annotations

import asyncio
import json
import logging
import os
import subprocess
import sys
import tempfile
import time
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse

import httpx

from codeprep.services.scoring.schema import ExecutionResult, ExecutionSummary, TestCaseResult
from codeprep.services.scoring.service import derive_score
from codeprep.services.session.schema import TestCase

from .analysis import analyze_complexity
from .schema import JUDGE0_LANGUAGE_IDS, RunOutcome, normalize_language


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(name, default)


def _normalize_output(value: Optional[str]) -> str:
    if value is None:
        return ""
    return value.replace("\r\n", "\n").rstrip()


def _as_stdin(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value if value.endswith("\n") else value + "\n"
    return json.dumps(value) + "\n"


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def outputs_match(actual: Optional[str], expected: Any) -> bool:
    """Compare program output to the expected value, ignoring JSON whitespace differences."""

    got = _normalize_output(actual)
    want = _normalize_output(_as_text(expected))
    if got == want:
        return True
    try:
        return json.loads(got) == json.loads(want)
    except ValueError:
        return " ".join(got.split()) == " ".join(want.split())


class JudgeService:
    """Runs submissions against test cases, locally for Python or through Judge0."""

    def __init__(
        self,
        *,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        use_mock: Optional[bool] = None,
        case_timeout_s: float = 5.0,
    ) -> None:
        self.base_url = (host or _env("JUDGE0_HOST") or "https://judge0-ce.p.rapidapi.com").rstrip("/")
        self.api_key = api_key or _env("JUDGE0_KEY")
        self.use_mock = bool(use_mock if use_mock is not None else _env("USE_JUDGE0_MOCK", "true").lower() == "true")
        self.case_timeout_s = case_timeout_s
        self._client: Optional[httpx.AsyncClient] = None
        self._host_header = urlparse(self.base_url).netloc
        self._logger = logging.getLogger("codeprep.judge")

    async def start(self) -> None:
        if self.use_mock or self._client is not None:
            return
        headers = {
            "Content-Type": "application/json",
            "X-RapidAPI-Host": self._host_header,
        }
        if self.api_key:
            headers["X-RapidAPI-Key"] = self.api_key
        timeout = httpx.Timeout(25.0, connect=10.0)
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def run_cases(self, language: str, source: str, cases: Iterable[TestCase]) -> ExecutionResult:
        lang = normalize_language(language)
        tests = list(cases)
        started = time.perf_counter()
        if lang not in JUDGE0_LANGUAGE_IDS:
            return ExecutionResult(success=False, error=f"Unsupported language: {language}")
        if self.use_mock and lang != "python":
            return ExecutionResult(
                success=False,
                error=f"The local runner only executes python; enable Judge0 to run {lang}",
            )
        if self.use_mock:
            outcomes = await asyncio.to_thread(self._run_local, source, tests)
        else:
            outcomes = await self._run_judge0(lang, source, tests)
        result = self._build_result(tests, outcomes)
        result.execution_time_ms = round((time.perf_counter() - started) * 1000.0, 2)
        result.complexity_analysis = analyze_complexity(source)
        self._logger.info(
            "Judged %s submission: %s/%s passed",
            lang,
            result.summary.passed if result.summary else 0,
            len(tests),
        )
        return result

    def _build_result(self, tests: List[TestCase], outcomes: List[RunOutcome]) -> ExecutionResult:
        results: List[TestCaseResult] = []
        errors: List[str] = []
        crashed = False
        for index, (case, outcome) in enumerate(zip(tests, outcomes)):
            ok = not outcome.crashed and outputs_match(outcome.stdout, case.expected_output)
            if outcome.crashed:
                crashed = True
                if outcome.stderr:
                    errors.append(outcome.stderr)
            results.append(
                TestCaseResult(
                    test_case=index + 1,
                    passed=ok,
                    input=None if case.is_hidden else case.input,
                    expected=None if case.is_hidden else case.expected_output,
                    actual=None if case.is_hidden else _normalize_output(outcome.stdout),
                    error=outcome.stderr or None,
                    time_ms=outcome.time_ms,
                )
            )
        snapshot = derive_score(results)
        compile_failed = any(outcome.compile_error for outcome in outcomes)
        return ExecutionResult(
            success=not compile_failed and not (crashed and snapshot.tests_passed == 0),
            test_results=results,
            summary=ExecutionSummary(
                passed=snapshot.tests_passed,
                total=snapshot.total_tests,
                percentage=snapshot.score,
            ),
            error="\n".join(dict.fromkeys(errors)) or None,
        )

    async def _run_judge0(self, lang: str, source: str, tests: List[TestCase]) -> List[RunOutcome]:
        if self._client is None:
            await self.start()
        assert self._client is not None
        outcomes: List[RunOutcome] = []
        for case in tests:
            payload = {
                "language_id": JUDGE0_LANGUAGE_IDS[lang],
                "source_code": source,
                "stdin": _as_stdin(case.input),
                "expected_output": None,
            }
            try:
                response = await self._client.post(
                    "/submissions",
                    params={"base64_encoded": "false", "wait": "true"},
                    json=payload,
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:  # pragma: no cover - integration path
                self._logger.warning("Judge0 request failed: %s", exc)
                outcomes.append(RunOutcome(stderr=str(exc), exit_code=1))
                continue
            data = response.json()
            status_id = (data.get("status") or {}).get("id", 0)
            status_desc = (data.get("status") or {}).get("description", "")
            outcomes.append(
                RunOutcome(
                    stdout=data.get("stdout") or "",
                    stderr=data.get("stderr") or data.get("compile_output") or ("" if status_id == 3 else status_desc),
                    # 3 accepted, 4 wrong answer; both mean the program ran
                    exit_code=0 if status_id in {3, 4} else 1,
                    time_ms=float(data["time"]) * 1000.0 if data.get("time") else None,
                    compile_error=status_id == 6,
                    timed_out=status_id == 5,
                )
            )
        return outcomes

    # Local runner -------------------------------------------------------
    def _run_local(self, source: str, tests: List[TestCase]) -> List[RunOutcome]:
        with tempfile.NamedTemporaryFile("w", suffix=".py", delete=False, encoding="utf-8") as tmp:
            tmp.write(source)
            tmp_path = tmp.name
        try:
            return [self._execute_python(tmp_path, _as_stdin(case.input)) for case in tests]
        finally:
            try:
                os.remove(tmp_path)
            except OSError:
                pass

    def _execute_python(self, path: str, stdin: str) -> RunOutcome:
        started = time.perf_counter()
        try:
            proc = subprocess.run(
                [sys.executable, path],
                input=stdin.encode("utf-8"),
                capture_output=True,
                timeout=self.case_timeout_s,
            )
        except subprocess.TimeoutExpired:
            return RunOutcome(stderr=f"Timeout after {self.case_timeout_s}s", exit_code=1, timed_out=True)
        stderr = proc.stderr.decode("utf-8", errors="replace")
        return RunOutcome(
            stdout=proc.stdout.decode("utf-8", errors="replace"),
            stderr=stderr,
            exit_code=proc.returncode,
            time_ms=round((time.perf_counter() - started) * 1000.0, 2),
            compile_error=proc.returncode != 0 and "SyntaxError" in stderr,
        )
