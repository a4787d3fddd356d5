from __future__ import annotations

import asyncio

import httpx
import pytest

from codeprep.api.main import ServerSettings, create_app
from codeprep.services.judge import JudgeService
from codeprep.services.store import SessionStore

AUTH = {"Authorization": "Bearer tok-1"}

TWO_SUM = {
    "id": "two-sum",
    "title": "Two Sum",
    "type": "coding",
    "testCases": [
        {"input": "[2,7,11,15], 9", "expectedOutput": "[0,1]"},
        {"input": "[3,3], 6", "expectedOutput": "[0,1]", "isHidden": True},
    ],
}

SOLUTION = """import json
import sys

raw = sys.stdin.read().strip()
array, _, target = raw.rpartition(",")
nums, goal = json.loads(array), int(target)
seen = {}
for index, value in enumerate(nums):
    if goal - value in seen:
        print(json.dumps([seen[goal - value], index]))
        break
    seen[value] = index
"""


@pytest.fixture
def store() -> SessionStore:
    return SessionStore("sqlite://")


@pytest.fixture
def app(store):
    settings = ServerSettings(DATABASE_URL="sqlite://", USE_JUDGE0_MOCK=True)
    return create_app(settings, store=store, judge=JudgeService(use_mock=True, case_timeout_s=10.0))


def _call(app, method, path, **kwargs):
    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await client.request(method, path, **kwargs)

    return asyncio.run(scenario())


def test_health_needs_no_token(app):
    response = _call(app, "GET", "/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_missing_token_is_401_envelope(app, store):
    store.create_session([TWO_SUM], session_id="s1")
    response = _call(app, "GET", "/api/coding/session/s1")
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_session_payload_hides_hidden_cases(app, store):
    store.create_session([TWO_SUM], session_id="s1")
    body = _call(app, "GET", "/api/coding/session/s1", headers=AUTH).json()
    cases = body["data"]["questions"][0]["testCases"]
    assert body["success"] is True
    assert body["data"]["status"] == "created"
    assert cases == [{"input": "[2,7,11,15], 9", "expectedOutput": "[0,1]", "isHidden": False}]


def test_unknown_session_is_404(app):
    response = _call(app, "GET", "/api/coding/session/missing", headers=AUTH)
    assert response.status_code == 404
    assert "missing" in response.json()["message"]


def test_progress_round_trip_starts_the_session(app, store):
    store.create_session([TWO_SUM], session_id="s1")
    empty = _call(app, "GET", "/api/coding/progress/s1", params={"questionId": "two-sum"}, headers=AUTH).json()
    assert empty["data"]["progress"] is None
    saved = _call(
        app,
        "POST",
        "/api/coding/save-progress",
        json={
            "sessionId": "s1",
            "questionId": "two-sum",
            "code": "print(1)",
            "language": "python",
            "score": 0,
            "testsPassed": 0,
            "totalTests": 1,
            "timeElapsed": 42,
        },
        headers=AUTH,
    )
    assert saved.status_code == 200
    loaded = _call(app, "GET", "/api/coding/progress/s1", params={"questionId": "two-sum"}, headers=AUTH).json()
    assert loaded["data"]["progress"]["code"] == "print(1)"
    assert loaded["data"]["progress"]["timeElapsed"] == 42
    assert store.get_session("s1").status == "in_progress"
    assert store.get_session("s1").start_time is not None


def test_execute_scores_hidden_cases_and_echoes_sequence(app, store):
    store.create_session([TWO_SUM], session_id="s1")
    response = _call(
        app,
        "POST",
        "/api/coding/execute",
        json={"sessionId": "s1", "questionId": "two-sum", "code": SOLUTION, "language": "python", "requestSeq": 7},
        headers=AUTH,
    )
    body = response.json()
    assert response.status_code == 200
    assert body["data"]["requestSeq"] == 7
    assert body["data"]["summary"] == {"passed": 2, "total": 2, "percentage": 100}
    assert "input" not in body["data"]["testResults"][1]
    assert body["message"] == "All tests passed! Score: 100%"


def test_crashing_program_is_400_with_result(app, store):
    store.create_session([TWO_SUM], session_id="s1")
    response = _call(
        app,
        "POST",
        "/api/coding/execute",
        json={"sessionId": "s1", "questionId": "two-sum", "code": "def broken(:\n", "language": "python"},
        headers=AUTH,
    )
    body = response.json()
    assert response.status_code == 400
    assert body["success"] is False
    assert "SyntaxError" in body["message"]
    assert body["data"]["success"] is False


def test_resubmit_overwrites_single_response(app, store):
    store.create_session([TWO_SUM], session_id="s1")
    payload = {
        "sessionId": "s1",
        "questionId": "two-sum",
        "code": SOLUTION,
        "language": "python",
        "finalScore": 100,
        "testsPassed": 1,
        "totalTests": 1,
        "timeElapsed": 30,
    }
    first = _call(app, "POST", "/api/coding/submit", json=payload, headers=AUTH).json()
    second = _call(app, "POST", "/api/coding/submit", json=dict(payload, finalScore=85), headers=AUTH).json()
    assert first["data"]["rating"] == "Excellent"
    assert second["data"]["rating"] == "Good"
    assert second["data"]["status"] == "completed"
    responses = store.get_session("s1").responses
    assert len(responses) == 1 and responses[0].score == 85


def test_quick_practice_serves_explanations_and_grades_once(app, store):
    store.create_quick_practice(
        [
            {"prompt": "Hash set lookup?", "options": ["O(n)", "O(1)"], "correctIndex": 1, "explanation": "hashing"},
            {"prompt": "Binary search?", "options": ["O(log n)", "O(n)"], "correctIndex": 0},
        ],
        session_id="qp1",
    )
    before = _call(app, "GET", "/api/quick-practice/session/qp1", headers=AUTH).json()["data"]
    assert before["status"] == "in_progress"
    assert before["questions"][0]["explanation"] == "hashing"
    assert before["questions"][0]["correctIndex"] == 1
    answers = {"answers": [{"questionIndex": 0, "selectedIndex": 1}, {"questionIndex": 1, "selectedIndex": 1}]}
    graded = _call(app, "POST", "/api/quick-practice/session/qp1/submit", json=answers, headers=AUTH).json()["data"]
    again = _call(
        app,
        "POST",
        "/api/quick-practice/session/qp1/submit",
        json={"answers": [{"questionIndex": 1, "selectedIndex": 0}]},
        headers=AUTH,
    ).json()["data"]
    assert graded["score"] == {"correct": 1, "total": 2, "percent": 50}
    assert graded["review"][0]["isCorrect"] is True
    assert again["score"] == graded["score"]
