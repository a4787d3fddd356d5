from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError as PayloadError

from codeprep.config import Settings
from codeprep.errors import CodePrepError, ValidationError
from codeprep.notifications import NotifyFn, log_notify
from codeprep.services.transport.endpoints import QuickPracticeApi

from .schema import NO_ANSWER, McqAnswer, McqQuestion, QuickPracticeResult, QuickPracticeSession

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class McqState:
    phase: str = "idle"  # idle | loading | active | submitting | completed | failed
    session: Optional[QuickPracticeSession] = None
    index: int = 0
    answers: Dict[int, int] = field(default_factory=dict)
    locked: Set[int] = field(default_factory=set)
    deadline: Optional[float] = None
    result: Optional[QuickPracticeResult] = None
    last_error: Optional[CodePrepError] = None
    advances: int = 0


class QuickPracticeRunner:
    """Timed multiple-choice run with a countdown per question.

    Answering locks the question, reveals the explanation and schedules an
    advance; letting the clock run out records ``NO_ANSWER`` and schedules a
    shorter one. Manual navigation cancels whatever advance is pending. Each
    scheduled advance carries a token so at most one of them ever moves the
    cursor. Answers stay local until the last question, then go out in one
    batched submit.
    """

    def __init__(
        self,
        api: QuickPracticeApi,
        *,
        settings: Optional[Settings] = None,
        notify: Optional[NotifyFn] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.api = api
        self.settings = settings or api.transport.settings
        self._notify = notify or log_notify
        self._clock = clock
        self._sleep = sleep
        self.state = McqState()
        self._tokens = itertools.count(1)
        self._advance_token: Optional[int] = None
        self._advance_task: Optional[asyncio.Task] = None
        self._expiry_task: Optional[asyncio.Task] = None
        self._logger = logging.getLogger("codeprep.quick_practice")

    # Accessors ---------------------------------------------------------
    @property
    def questions(self) -> List[McqQuestion]:
        return self.state.session.questions if self.state.session else []

    @property
    def current_question(self) -> Optional[McqQuestion]:
        questions = self.questions
        if 0 <= self.state.index < len(questions):
            return questions[self.state.index]
        return None

    @property
    def advance_pending(self) -> bool:
        return self._advance_token is not None

    def revealed(self, index: Optional[int] = None) -> bool:
        return (self.state.index if index is None else index) in self.state.locked

    def revealed_explanation(self, index: Optional[int] = None) -> Optional[str]:
        """Explanation for a locked question, ``None`` while it is still open."""

        target = self.state.index if index is None else index
        if not self.revealed(target) or not 0 <= target < len(self.questions):
            return None
        return self.questions[target].explanation

    def correct_option(self, index: Optional[int] = None) -> Optional[int]:
        target = self.state.index if index is None else index
        if not self.revealed(target) or not 0 <= target < len(self.questions):
            return None
        return self.questions[target].correct_index

    def remaining_seconds(self, now: Optional[float] = None) -> float:
        if self.state.deadline is None:
            return 0.0
        current = self._clock() if now is None else now
        return max(0.0, self.state.deadline - current)

    # Lifecycle ---------------------------------------------------------
    async def load(self, session_id: str) -> McqState:
        if not session_id or not session_id.strip():
            raise ValidationError("Session ID is required")
        await self.close()
        self.state = McqState(phase="loading")
        try:
            session = QuickPracticeSession.model_validate(await self.api.get_session(session_id.strip()))
        except PayloadError as exc:
            return self._failed(CodePrepError("Malformed quick practice session", {"errors": exc.errors()}))
        except CodePrepError as exc:
            return self._failed(exc)
        if not session.questions:
            return self._failed(CodePrepError("This quick practice session has no questions"))
        self.state.session = session
        self.state.phase = "completed" if session.status == "completed" else "active"
        if self.state.phase == "active":
            self._start_question(0)
        return self.state

    def _failed(self, exc: CodePrepError) -> McqState:
        self.state.phase = "failed"
        self.state.last_error = exc
        self._logger.warning("Quick practice load failed: %s", exc.message)
        self._notify("error", exc.message)
        return self.state

    async def close(self) -> None:
        tasks = [task for task in (self._advance_task, self._expiry_task) if task is not None]
        self._cancel_advance()
        self._cancel_expiry()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Timers ------------------------------------------------------------
    def _start_question(self, index: int) -> None:
        self._cancel_expiry()
        self.state.index = index
        if index in self.state.locked:
            self.state.deadline = None
            return
        seconds = self.settings.MCQ_SECONDS_PER_QUESTION
        self.state.deadline = self._clock() + seconds
        self._expiry_task = asyncio.get_running_loop().create_task(self._expire_after(seconds, index))

    async def _expire_after(self, delay: float, index: int) -> None:
        await self._sleep(delay)
        self.expire_current(index)

    def _cancel_expiry(self) -> None:
        task = self._expiry_task
        self._expiry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _schedule_advance(self, delay: float) -> None:
        self._cancel_advance()
        token = next(self._tokens)
        self._advance_token = token
        self._advance_task = asyncio.get_running_loop().create_task(
            self._advance_after(delay, token, self.state.index)
        )

    def _cancel_advance(self) -> None:
        self._advance_token = None
        task = self._advance_task
        self._advance_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _advance_after(self, delay: float, token: int, from_index: int) -> None:
        await self._sleep(delay)
        if token != self._advance_token or self.state.index != from_index or self.state.phase != "active":
            return
        self._advance_token = None
        self._advance_task = None
        self.state.advances += 1
        if from_index + 1 >= len(self.questions):
            await self.submit()
        else:
            self._start_question(from_index + 1)

    # Answers -----------------------------------------------------------
    def expire_current(self, index: Optional[int] = None) -> bool:
        target = self.state.index if index is None else index
        if self.state.phase != "active" or target != self.state.index or target in self.state.locked:
            return False
        self.state.answers[target] = NO_ANSWER
        self.state.locked.add(target)
        self.state.deadline = None
        self._logger.info("Question %d timed out without an answer", target)
        self._schedule_advance(self.settings.MCQ_EXPIRY_ADVANCE_S)
        return True

    def select(self, option_index: int) -> bool:
        question = self.current_question
        if self.state.phase != "active" or question is None:
            return False
        if self.state.index in self.state.locked:
            return False
        if not 0 <= option_index < len(question.options):
            raise ValidationError(f"Option {option_index} does not exist for this question")
        self.state.answers[self.state.index] = option_index
        self.state.locked.add(self.state.index)
        self.state.deadline = None
        self._cancel_expiry()
        self._schedule_advance(self.settings.MCQ_ANSWER_ADVANCE_S)
        return True

    def go_to(self, index: int) -> bool:
        if self.state.phase != "active" or not 0 <= index < len(self.questions):
            return False
        self._cancel_advance()
        if index != self.state.index:
            self._start_question(index)
        return True

    def next(self) -> bool:
        return self.go_to(self.state.index + 1)

    def previous(self) -> bool:
        return self.go_to(self.state.index - 1)

    def answers_payload(self) -> List[McqAnswer]:
        # the backend only accepts selectedIndex >= 0
        return [
            McqAnswer(question_index=index, selected_index=selected)
            for index, selected in sorted(self.state.answers.items())
            if selected != NO_ANSWER
        ]

    async def submit(self) -> Optional[QuickPracticeResult]:
        if self.state.phase == "completed":
            return self.state.result
        if self.state.phase != "active" or self.state.session is None:
            return None
        self._cancel_advance()
        self._cancel_expiry()
        self.state.phase = "submitting"
        self.state.deadline = None
        session_id = self.state.session.session_id
        try:
            data = await self.api.submit(session_id, [answer.to_wire() for answer in self.answers_payload()])
            data.setdefault("sessionId", session_id)
            result = QuickPracticeResult.model_validate(data)
        except (CodePrepError, PayloadError) as exc:
            error = exc if isinstance(exc, CodePrepError) else CodePrepError("Malformed quick practice result")
            self.state.phase = "active"
            self.state.last_error = error
            self._logger.warning("Quick practice submit failed: %s", error.message)
            self._notify("error", error.message)
            return None
        self.state.result = result
        self.state.phase = "completed"
        self._notify("success", f"Quick practice complete: {result.score.correct}/{result.score.total} correct")
        return result
