from __future__ import annotations

import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session as DbSession, declarative_base, relationship, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from dotenv import load_dotenv

from codeprep.services.quick_practice.schema import (
    NO_ANSWER,
    McqAnswer,
    McqQuestion,
    QuickPracticeResult,
    QuickPracticeScore,
    QuickPracticeSession,
    ReviewItem,
)
from codeprep.services.scoring.service import round_half_up
from codeprep.services.session.schema import (
    ProgressRecord,
    Question,
    Response,
    Session,
    SubmitReceipt,
    SubmitRequest,
    advance_status,
)

load_dotenv()

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///./codeprep.db"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite drops tzinfo; every stored timestamp is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class InterviewSession(Base):
    __tablename__ = "interview_sessions"

    id = Column(String(36), primary_key=True)
    status = Column(String(16), nullable=False, default="created")
    language = Column(String(16), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=True)
    duration_s = Column(Integer, nullable=False, default=3600)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    questions = relationship(
        "SessionQuestion",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="SessionQuestion.position",
    )
    responses = relationship("SubmittedResponse", back_populates="session", cascade="all, delete-orphan")


class SessionQuestion(Base):
    __tablename__ = "session_questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("interview_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    question_id = Column(String(64), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    # full question document, hidden test cases included
    payload = Column(JSON, nullable=False)

    session = relationship("InterviewSession", back_populates="questions")


class ProgressRow(Base):
    __tablename__ = "progress_records"

    session_id = Column(String(36), ForeignKey("interview_sessions.id", ondelete="CASCADE"), primary_key=True)
    question_id = Column(String(64), primary_key=True)
    code = Column(Text, nullable=False, default="")
    language = Column(String(16), nullable=True)
    score = Column(Integer, nullable=False, default=0)
    tests_passed = Column(Integer, nullable=False, default=0)
    total_tests = Column(Integer, nullable=False, default=0)
    time_elapsed = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SubmittedResponse(Base):
    __tablename__ = "responses"

    session_id = Column(String(36), ForeignKey("interview_sessions.id", ondelete="CASCADE"), primary_key=True)
    question_id = Column(String(64), primary_key=True)
    code = Column(Text, nullable=False, default="")
    language = Column(String(16), nullable=False, default="")
    score = Column(Integer, nullable=False, default=0)
    tests_passed = Column(Integer, nullable=False, default=0)
    total_tests = Column(Integer, nullable=False, default=0)
    time_elapsed = Column(Integer, nullable=False, default=0)
    rating = Column(String(16), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    session = relationship("InterviewSession", back_populates="responses")


class QuickPracticeRow(Base):
    __tablename__ = "quick_practice_sessions"

    id = Column(String(36), primary_key=True)
    status = Column(String(16), nullable=False, default="in_progress")
    categories = Column(JSON, nullable=False, default=list)
    questions = Column(JSON, nullable=False, default=list)
    answers = Column(JSON, nullable=True)
    correct = Column(Integer, nullable=False, default=0)
    percent = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime(timezone=True), nullable=True)


def _load_database_url(database_url: Optional[str] = None) -> str:
    return database_url or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in {"sqlite://", "sqlite:///"}:
            # one shared connection so every session sees the same in-memory db
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url)


def rating_for(score: int) -> str:
    if score >= 90:
        return "Excellent"
    if score >= 80:
        return "Good"
    if score >= 60:
        return "Average"
    return "Poor"


class SessionStore:
    """Persistence for interview sessions, progress records, responses and quick-practice runs."""

    def __init__(self, database_url: Optional[str] = None, *, create_tables: bool = True) -> None:
        self._engine: Engine = _create_engine(_load_database_url(database_url))
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False, future=True)
        if create_tables:
            Base.metadata.create_all(self._engine)

    @contextmanager
    def session(self) -> Iterator[DbSession]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self._engine.dispose()

    # Coding sessions ----------------------------------------------------
    def create_session(
        self,
        questions: Iterable[Dict[str, Any]],
        *,
        session_id: Optional[str] = None,
        language: Optional[str] = None,
        duration_s: int = 3600,
    ) -> Session:
        parsed = [Question.model_validate(question) for question in questions]
        if not parsed:
            raise ValueError("A session needs at least one question")
        session_id = session_id or str(uuid.uuid4())
        with self.session() as sess:
            row = InterviewSession(id=session_id, status="created", language=language, duration_s=duration_s)
            for position, question in enumerate(parsed):
                row.questions.append(
                    SessionQuestion(question_id=question.id, position=position, payload=question.to_wire())
                )
            sess.add(row)
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> Session:
        with self.session() as sess:
            row = self._require_session(sess, session_id)
            return _to_session(row)

    def get_question(self, session_id: str, question_id: str) -> Question:
        session = self.get_session(session_id)
        question = session.question(question_id)
        if question is None:
            raise NoResultFound(f"Question {question_id} not found in session {session_id}")
        return question

    def get_progress(self, session_id: str, question_id: str) -> Optional[ProgressRecord]:
        with self.session() as sess:
            self._require_session(sess, session_id)
            row = sess.get(ProgressRow, (session_id, question_id))
            return _to_progress(row) if row is not None else None

    def save_progress(self, record: ProgressRecord) -> ProgressRecord:
        """Upsert the progress record for (session, question); the last write wins."""

        if not record.session_id or not record.question_id:
            raise ValueError("sessionId and questionId are required")
        with self.session() as sess:
            owner = self._require_session(sess, record.session_id)
            self._touch(owner)
            row = sess.get(ProgressRow, (record.session_id, record.question_id))
            if row is None:
                row = ProgressRow(session_id=record.session_id, question_id=record.question_id)
                sess.add(row)
            row.code = record.code
            row.language = record.language
            row.score = record.score or 0
            row.tests_passed = record.tests_passed or 0
            row.total_tests = record.total_tests or 0
            row.time_elapsed = record.time_elapsed_seconds or 0
            row.updated_at = _utcnow()
            sess.flush()
            return _to_progress(row)

    def submit(self, request: SubmitRequest) -> SubmitReceipt:
        """Store the final response for a question, overwriting an earlier submission."""

        with self.session() as sess:
            owner = self._require_session(sess, request.session_id)
            if not any(question.question_id == request.question_id for question in owner.questions):
                raise NoResultFound(f"Question {request.question_id} not found in session {request.session_id}")
            self._touch(owner)
            row = sess.get(SubmittedResponse, (request.session_id, request.question_id))
            if row is None:
                row = SubmittedResponse(session_id=request.session_id, question_id=request.question_id)
                sess.add(row)
                owner.responses.append(row)
            row.code = request.code
            row.language = request.language
            row.score = request.final_score
            row.tests_passed = request.tests_passed
            row.total_tests = request.total_tests
            row.time_elapsed = request.time_elapsed
            row.rating = rating_for(request.final_score)
            row.submitted_at = _utcnow()
            answered = {response.question_id for response in owner.responses}
            coding = {q.question_id for q in owner.questions if q.payload.get("type", "coding") == "coding"}
            if coding and coding <= answered:
                owner.status = advance_status(owner.status, "completed")
            sess.flush()
            return SubmitReceipt(
                session_id=request.session_id,
                question_id=request.question_id,
                final_score=row.score,
                rating=row.rating,
                tests_passed=row.tests_passed,
                total_tests=row.total_tests,
                time_elapsed=row.time_elapsed,
                submitted_at=_aware(row.submitted_at),
                status=owner.status,
            )

    # Quick practice ------------------------------------------------------
    def create_quick_practice(
        self,
        questions: Iterable[Dict[str, Any]],
        *,
        session_id: Optional[str] = None,
        categories: Optional[List[str]] = None,
    ) -> QuickPracticeSession:
        parsed = [McqQuestion.model_validate(question) for question in questions]
        for index, question in enumerate(parsed):
            question.index = index
        session_id = session_id or str(uuid.uuid4())
        cats = categories or sorted({q.category for q in parsed if q.category})
        with self.session() as sess:
            sess.add(
                QuickPracticeRow(
                    id=session_id,
                    status="in_progress",
                    categories=cats,
                    questions=[question.to_wire() for question in parsed],
                )
            )
        return self.get_quick_practice(session_id)

    def get_quick_practice(self, session_id: str) -> QuickPracticeSession:
        with self.session() as sess:
            row = self._require_quick_practice(sess, session_id)
            questions = [McqQuestion.model_validate(item) for item in row.questions]
            return QuickPracticeSession(
                session_id=row.id,
                status=row.status,
                categories=list(row.categories or []),
                total_questions=len(questions),
                questions=questions,
            )

    def complete_quick_practice(self, session_id: str, answers: Iterable[McqAnswer]) -> QuickPracticeResult:
        """Grade a quick-practice run once; later calls return the stored result."""

        with self.session() as sess:
            row = self._require_quick_practice(sess, session_id)
            questions = [McqQuestion.model_validate(item) for item in row.questions]
            if row.status != "completed":
                chosen: Dict[int, int] = {}
                for answer in answers:
                    if 0 <= answer.question_index < len(questions):
                        chosen[answer.question_index] = answer.selected_index
                correct = sum(
                    1
                    for index, question in enumerate(questions)
                    if question.correct_index is not None and chosen.get(index) == question.correct_index
                )
                row.answers = {str(index): selected for index, selected in chosen.items()}
                row.correct = correct
                row.percent = round_half_up(100.0 * correct / len(questions)) if questions else 0
                row.status = "completed"
                row.completed_at = _utcnow()
                sess.flush()
            return _to_quick_result(row, questions)

    # helpers -------------------------------------------------------------
    def _require_session(self, sess: DbSession, session_id: str) -> InterviewSession:
        row = (
            sess.query(InterviewSession)
            .options(selectinload(InterviewSession.questions), selectinload(InterviewSession.responses))
            .filter(InterviewSession.id == session_id)
            .one_or_none()
        )
        if row is None:
            raise NoResultFound(f"Session {session_id} not found")
        return row

    def _require_quick_practice(self, sess: DbSession, session_id: str) -> QuickPracticeRow:
        row = sess.get(QuickPracticeRow, session_id)
        if row is None:
            raise NoResultFound(f"Quick practice session {session_id} not found")
        return row

    @staticmethod
    def _touch(owner: InterviewSession) -> None:
        if owner.start_time is None:
            owner.start_time = _utcnow()
        owner.status = advance_status(owner.status, "in_progress")


def _to_session(row: InterviewSession) -> Session:
    return Session(
        session_id=row.id,
        status=row.status,
        language=row.language,
        start_time=_aware(row.start_time),
        configured_duration_seconds=row.duration_s,
        questions=[Question.model_validate(item.payload) for item in row.questions],
        responses=[
            Response(
                question_id=item.question_id,
                code=item.code,
                language=item.language,
                score=item.score,
                tests_passed=item.tests_passed,
                total_tests=item.total_tests,
                time_elapsed=item.time_elapsed,
                rating=item.rating,
                submitted_at=_aware(item.submitted_at),
            )
            for item in row.responses
        ],
    )


def _to_progress(row: ProgressRow) -> ProgressRecord:
    return ProgressRecord(
        session_id=row.session_id,
        question_id=row.question_id,
        code=row.code,
        language=row.language,
        score=row.score,
        tests_passed=row.tests_passed,
        total_tests=row.total_tests,
        time_elapsed_seconds=row.time_elapsed,
        updated_at=_aware(row.updated_at),
    )


def _to_quick_result(row: QuickPracticeRow, questions: List[McqQuestion]) -> QuickPracticeResult:
    chosen = {int(index): selected for index, selected in (row.answers or {}).items()}
    review: List[ReviewItem] = []
    for index, question in enumerate(questions):
        selected = chosen.get(index, NO_ANSWER)
        review.append(
            ReviewItem(
                index=index,
                category=question.category,
                prompt=question.prompt,
                options=question.options,
                selected_index=None if selected == NO_ANSWER else selected,
                correct_index=question.correct_index,
                is_correct=question.correct_index is not None and selected == question.correct_index,
                explanation=question.explanation,
            )
        )
    return QuickPracticeResult(
        session_id=row.id,
        status=row.status,
        score=QuickPracticeScore(correct=row.correct, total=len(questions), percent=row.percent),
        completed_at=_aware(row.completed_at),
        review=review,
    )
