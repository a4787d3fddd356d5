from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from socketio.exceptions import ConnectionError as SocketConnectionError

from codeprep.config import Settings
from codeprep.errors import CodePrepError


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until the loop goes quiet."""

    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualSleeper:
    """Injectable ``sleep`` whose timers only fire when the test releases them."""

    def __init__(self) -> None:
        self.waiting: List[Tuple[float, asyncio.Future]] = []

    async def __call__(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()
        entry = (delay, future)
        self.waiting.append(entry)
        try:
            await future
        finally:
            if entry in self.waiting:
                self.waiting.remove(entry)

    def pending(self, delay: Optional[float] = None) -> int:
        return sum(1 for wanted, future in self.waiting if not future.done() and (delay is None or wanted == delay))

    async def release(self, delay: Optional[float] = None) -> int:
        matched = [
            (wanted, future)
            for wanted, future in self.waiting
            if not future.done() and (delay is None or wanted == delay)
        ]
        for entry in matched:
            self.waiting.remove(entry)
            entry[1].set_result(None)
        await settle()
        return len(matched)


class Notices:
    def __init__(self) -> None:
        self.items: List[Tuple[str, str]] = []

    def __call__(self, level: str, message: str) -> None:
        self.items.append((level, message))

    def levels(self, level: str) -> List[str]:
        return [message for lvl, message in self.items if lvl == level]


def session_payload(session_id: str = "s1", **overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "sessionId": session_id,
        "status": "in_progress",
        "configuredDurationSeconds": 3600,
        "questions": [
            {
                "id": "q1",
                "title": "Two Sum",
                "type": "coding",
                "testCases": [{"input": "[2,7,11,15], 9", "expectedOutput": "[0,1]"}],
                "starterCode": {"python": "def two_sum(nums, target):\n    pass\n"},
            }
        ],
        "responses": [],
    }
    payload.update(overrides)
    return payload


def execution_data(*verdicts: bool, success: bool = True, **extra: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "success": success,
        "testResults": [{"testCase": index + 1, "passed": passed} for index, passed in enumerate(verdicts)],
        "executionTimeMs": 12.0,
    }
    data.update(extra)
    return data


class FakeCodingApi:
    """Stands in for ``CodingApi``; execute calls block until the test resolves them."""

    def __init__(self, session: Optional[Dict[str, Any]] = None, progress: Optional[Dict[str, Any]] = None) -> None:
        self.session = session if session is not None else session_payload()
        self.progress = progress
        self.session_error: Optional[CodePrepError] = None
        self.save_error: Optional[CodePrepError] = None
        self.executes: List[Dict[str, Any]] = []
        self.execute_futures: List[asyncio.Future] = []
        self.auto_execute: Optional[Dict[str, Any]] = None
        self.saves: List[Dict[str, Any]] = []
        self.save_gate: Optional[asyncio.Event] = None
        self.submits: List[Dict[str, Any]] = []
        self.stored_responses: Dict[str, Dict[str, Any]] = {}

    async def get_session(self, session_id: str, **_: Any) -> Dict[str, Any]:
        if self.session_error is not None:
            raise self.session_error
        return dict(self.session)

    async def get_progress(self, session_id: str, question_id: str, **_: Any) -> Optional[Dict[str, Any]]:
        return dict(self.progress) if self.progress else None

    async def execute(self, payload: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self.executes.append(dict(payload))
        if self.auto_execute is not None:
            return dict(self.auto_execute)
        future = asyncio.get_running_loop().create_future()
        self.execute_futures.append(future)
        return await future

    def resolve_execute(self, index: int, data: Dict[str, Any]) -> None:
        self.execute_futures[index].set_result(data)

    def fail_execute(self, index: int, error: CodePrepError) -> None:
        self.execute_futures[index].set_exception(error)

    async def save_progress(self, payload: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        if self.save_gate is not None:
            await self.save_gate.wait()
        self.saves.append(dict(payload))
        if self.save_error is not None:
            raise self.save_error
        return {"progress": payload}

    async def submit(self, payload: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self.submits.append(dict(payload))
        # responses are keyed by question, a resubmit overwrites
        self.stored_responses[payload["questionId"]] = dict(payload)
        return {
            "sessionId": payload["sessionId"],
            "questionId": payload["questionId"],
            "finalScore": payload["finalScore"],
            "rating": "Excellent" if payload["finalScore"] >= 90 else "Poor",
            "testsPassed": payload["testsPassed"],
            "totalTests": payload["totalTests"],
            "status": "completed",
        }


class FakeQuickPracticeApi:
    def __init__(self, session: Dict[str, Any]) -> None:
        self.session = session
        self.submits: List[List[Dict[str, Any]]] = []
        self.submit_error: Optional[CodePrepError] = None

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        return dict(self.session)

    async def submit(self, session_id: str, answers: List[Dict[str, Any]]) -> Dict[str, Any]:
        self.submits.append([dict(answer) for answer in answers])
        if self.submit_error is not None:
            raise self.submit_error
        questions = self.session["questions"]
        correct = sum(
            1 for answer in answers if questions[answer["questionIndex"]].get("correctIndex") == answer["selectedIndex"]
        )
        return {
            "sessionId": session_id,
            "status": "completed",
            "score": {"correct": correct, "total": len(questions), "percent": round(100 * correct / len(questions))},
        }


class FakeSocketClient:
    """In-memory replacement for ``socketio.AsyncClient``."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.handlers: Dict[str, Callable[..., Any]] = {}
        self.emitted: List[Tuple[str, Any]] = []
        self.connected = False
        self.connect_calls: List[Dict[str, Any]] = []
        self.disconnects = 0

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.handlers[event] = handler

    async def connect(self, url: str, auth: Any = None, wait_timeout: Any = None, **_: Any) -> None:
        self.connect_calls.append({"url": url, "auth": auth})
        if self.fail:
            raise SocketConnectionError("Connection refused by the server")
        self.connected = True
        await self.handlers["connect"]()

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    async def fire(self, event: str, data: Any) -> None:
        await self.handlers[event](data)

    def events(self, name: str) -> List[Any]:
        return [data for event, data in self.emitted if event == name]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        API_URL="http://testserver/api",
        SOCKET_URL=None,
        REQUEST_TIMEOUT_S=5.0,
        WAKE_MAX_WAIT_S=10.0,
        WAKE_ATTEMPT_TIMEOUT_S=1.0,
        NETWORK_NOTICE_COOLDOWN_S=10.0,
        AUTOSAVE_DEBOUNCE_S=2.0,
        AUTOSAVE_INTERVAL_S=30.0,
        TYPING_IDLE_S=2.0,
        DEFAULT_LANGUAGE="cpp",
        REQUIRE_PASSING_SCORE_TO_SUBMIT=True,
        MCQ_SECONDS_PER_QUESTION=60.0,
        MCQ_ANSWER_ADVANCE_S=3.0,
        MCQ_EXPIRY_ADVANCE_S=2.0,
    )


@pytest.fixture
def notices() -> Notices:
    return Notices()
