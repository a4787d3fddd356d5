from __future__ import annotations

import logging

import pytest
from sqlalchemy.exc import NoResultFound

from codeprep.services.quick_practice.schema import McqAnswer
from codeprep.services.session.schema import ProgressRecord, SubmitRequest
from codeprep.services.store import SessionStore, rating_for
from codeprep.services.store.seed import DEFAULT_BANK, load_bank, main, seed_from_bank

QUESTIONS = [
    {"id": "q1", "type": "coding", "testCases": [{"input": "1", "expectedOutput": "1"}]},
    {"id": "q2", "type": "coding", "testCases": [{"input": "2", "expectedOutput": "4"}]},
    {"id": "warmup", "type": "behavioral"},
]


@pytest.fixture
def store() -> SessionStore:
    return SessionStore("sqlite://")


def _submit(session_id: str, question_id: str, score: int) -> SubmitRequest:
    return SubmitRequest(
        session_id=session_id,
        question_id=question_id,
        code="print(1)",
        language="python",
        final_score=score,
        tests_passed=1,
        total_tests=1,
        time_elapsed=10,
    )


def test_progress_upsert_is_last_write_wins(store):
    store.create_session(QUESTIONS, session_id="s1")
    store.save_progress(ProgressRecord(session_id="s1", question_id="q1", code="v1", language="python"))
    store.save_progress(ProgressRecord(session_id="s1", question_id="q1", code="v2", language="cpp", score=50))
    record = store.get_progress("s1", "q1")
    assert (record.code, record.language, record.score) == ("v2", "cpp", 50)
    assert store.get_progress("s1", "q2") is None
    assert store.get_session("s1").status == "in_progress"


def test_session_completes_once_every_coding_question_is_answered(store):
    store.create_session(QUESTIONS, session_id="s1")
    first = store.submit(_submit("s1", "q1", 100))
    assert first.status == "in_progress"
    second = store.submit(_submit("s1", "q2", 70))
    assert second.status == "completed"
    assert second.rating == "Average"
    again = store.submit(_submit("s1", "q2", 95))
    session = store.get_session("s1")
    assert again.status == "completed"
    assert len(session.responses) == 2
    assert {r.question_id: r.score for r in session.responses} == {"q1": 100, "q2": 95}


def test_unknown_ids_raise(store):
    with pytest.raises(NoResultFound):
        store.get_session("nope")
    store.create_session(QUESTIONS, session_id="s1")
    with pytest.raises(NoResultFound):
        store.submit(_submit("s1", "not-a-question", 10))


@pytest.mark.parametrize("score,rating", [(95, "Excellent"), (90, "Excellent"), (80, "Good"), (60, "Average"), (59, "Poor")])
def test_rating_bands(score, rating):
    assert rating_for(score) == rating


def test_quick_practice_grades_once_with_last_answer_per_question(store):
    store.create_quick_practice(
        [
            {"prompt": "a", "options": ["x", "y"], "correctIndex": 0},
            {"prompt": "b", "options": ["x", "y"], "correctIndex": 1},
            {"prompt": "c", "options": ["x", "y"], "correctIndex": 1},
            {"prompt": "d", "options": ["x", "y"], "correctIndex": 1},
            {"prompt": "e", "options": ["x", "y"], "correctIndex": 1},
            {"prompt": "f", "options": ["x", "y"], "correctIndex": 1},
            {"prompt": "g", "options": ["x", "y"], "correctIndex": 1},
            {"prompt": "h", "options": ["x", "y"], "correctIndex": 1},
        ],
        session_id="qp1",
    )
    result = store.complete_quick_practice(
        "qp1",
        [
            McqAnswer(question_index=0, selected_index=1),
            McqAnswer(question_index=0, selected_index=0),
            McqAnswer(question_index=42, selected_index=0),
        ],
    )
    assert result.score.correct == 1
    assert result.score.percent == 13
    assert result.review[0].is_correct
    assert result.review[1].selected_index is None
    replay = store.complete_quick_practice("qp1", [McqAnswer(question_index=1, selected_index=1)])
    assert replay.score == result.score
    assert store.get_quick_practice("qp1").status == "completed"


def test_seed_from_packaged_bank(store):
    bank = load_bank(DEFAULT_BANK)
    session_id, practice_id = seed_from_bank(store, bank, session_id="seeded", quick_practice=True)
    session = store.get_session(session_id)
    question = session.question("two-sum")
    assert session_id == "seeded"
    assert question.test_cases[0].expected_output == "[0,1]"
    assert len(question.visible_test_cases()) == 2
    assert store.get_quick_practice(practice_id).total_questions == 3


def test_seed_cli_applies_the_configured_log_level(monkeypatch, capsys):
    monkeypatch.setenv("CODEPREP_LOG_LEVEL", "DEBUG")
    package_logger = logging.getLogger("codeprep")
    try:
        main(["--db", "sqlite://", "--session-id", "cli-seeded", "--quick-practice"])
        level = package_logger.level
    finally:
        package_logger.setLevel(logging.NOTSET)
    lines = capsys.readouterr().out.split()
    assert level == logging.DEBUG
    assert lines[0] == "cli-seeded"
    assert len(lines) == 2
