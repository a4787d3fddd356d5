from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from pydantic import ValidationError as PayloadError

from codeprep.config import Settings
from codeprep.errors import CodePrepError, ServerRejectionError, ValidationError
from codeprep.notifications import NotifyFn, log_notify
from codeprep.services.realtime.schema import (
    CODE_EXECUTION_RESULT,
    CODE_UPDATE,
    INTERVIEW_PROGRESS,
    LIVE_FEEDBACK,
    PROGRESS_SAVED,
    SESSION_STATUS_UPDATE,
    TYPING_INDICATOR,
    CodeUpdate,
    InterviewProgress,
    TypingIndicator,
)
from codeprep.services.realtime.service import EventChannel, Subscription
from codeprep.services.scoring import (
    ExecutionResult,
    PerformanceMetrics,
    ScoreSnapshot,
    performance_metrics,
    result_from_event,
    result_from_rest,
    score_result,
    summarize,
)
from codeprep.services.transport.endpoints import CodingApi

from .schema import (
    ProgressRecord,
    Question,
    Session,
    SubmitReceipt,
    SubmitRequest,
    advance_status,
    select_current_question,
)
from .templates import starter_code

BufferKey = Tuple[str, str]
EditListener = Callable[[str], None]
SleepFn = Callable[[float], Awaitable[None]]

# a progress-saved echo this soon after an explicit save repeats its notice
SAVE_ECHO_WINDOW_S = 5.0


class EditorBuffers:
    """Editor text keyed by ``(questionId, language)``. A write replaces whatever was there."""

    def __init__(self) -> None:
        self._buffers: Dict[BufferKey, str] = {}

    def get(self, question_id: str, language: str) -> Optional[str]:
        return self._buffers.get((question_id, language))

    def put(self, question_id: str, language: str, text: str) -> None:
        self._buffers[(question_id, language)] = text

    def languages(self, question_id: str) -> List[str]:
        return [language for (qid, language) in self._buffers if qid == question_id]

    def __contains__(self, key: object) -> bool:
        return key in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)


@dataclass
class ExecuteRequest:
    seq: int
    session_id: str
    question_id: str
    language: str
    code: str
    test_cases: List[Dict[str, Any]]

    def payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "questionId": self.question_id,
            "code": self.code,
            "language": self.language,
            "testCases": self.test_cases,
            "requestSeq": self.seq,
        }


@dataclass
class ClientState:
    phase: str = "idle"  # idle | loading | ready | failed | submitted
    session: Optional[Session] = None
    question: Optional[Question] = None
    language: str = "cpp"
    code: str = ""
    execution_result: Optional[ExecutionResult] = None
    score: ScoreSnapshot = field(default_factory=ScoreSnapshot)
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    executing: bool = False
    saving: bool = False
    last_saved_at: Optional[float] = None
    last_error: Optional[CodePrepError] = None
    load_error: Optional[str] = None
    live_feedback: Optional[Dict[str, Any]] = None
    typing_users: Dict[str, str] = field(default_factory=dict)
    answered: Set[str] = field(default_factory=set)
    receipt: Optional[SubmitReceipt] = None


class SessionClient:
    """State machine for one timed coding session.

    Owns the active question, the per-language editor buffers, the last
    execution result and the timer anchor. Network failures are turned into
    ``state.last_error`` and a notice; only local precondition failures raise.

    Execution results are ordered by issue order: every ``execute()`` gets a
    sequence number and a result older than the newest applied one (or issued
    before the last language switch) is dropped. REST responses and pushed
    ``code-execution-result`` events both go through
    :meth:`apply_execution_result`.
    """

    def __init__(
        self,
        api: CodingApi,
        *,
        channel: Optional[EventChannel] = None,
        settings: Optional[Settings] = None,
        notify: Optional[NotifyFn] = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.api = api
        self.channel = channel
        self.settings = settings or api.transport.settings
        self._notify = notify or log_notify
        self._clock = clock
        self._sleep = sleep
        self.state = ClientState(language=self.settings.DEFAULT_LANGUAGE.lower())
        self.buffers = EditorBuffers()
        self._seq = itertools.count(1)
        self._issued_seq = 0
        self._applied_seq = 0
        self._floor_seq = 0
        self._announced_seq = 0
        self._in_flight: Set[int] = set()
        self._save_locks: Dict[BufferKey, asyncio.Lock] = {}
        self._saves_in_flight = 0
        self._started_at: Optional[float] = None
        self._typing = False
        self._typing_task: Optional[asyncio.Task] = None
        self._explicit_saves = 0
        self._last_explicit_save_at: Optional[float] = None
        self._edit_listeners: List[EditListener] = []
        self._subscriptions: List[Subscription] = []
        self._logger = logging.getLogger("codeprep.session")

    # Accessors ---------------------------------------------------------
    @property
    def session_id(self) -> Optional[str]:
        return self.state.session.session_id if self.state.session else None

    @property
    def question(self) -> Optional[Question]:
        return self.state.question

    @property
    def language(self) -> str:
        return self.state.language

    @property
    def code(self) -> str:
        return self.state.code

    def buffer_text(self, question_id: str, language: str) -> Optional[str]:
        question = self.state.question
        if question is not None and question.id == question_id and language == self.state.language:
            return self.state.code
        return self.buffers.get(question_id, language)

    def time_elapsed(self, now: Optional[float] = None) -> int:
        if self._started_at is None:
            return 0
        current = self._clock() if now is None else now
        return max(0, int(current - self._started_at))

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        session = self.state.session
        if session is None:
            return 0
        return max(0, session.configured_duration_seconds - self.time_elapsed(now))

    def add_edit_listener(self, listener: EditListener) -> Callable[[], None]:
        self._edit_listeners.append(listener)

        def _remove() -> None:
            if listener in self._edit_listeners:
                self._edit_listeners.remove(listener)

        return _remove

    # Load --------------------------------------------------------------
    async def load(self, session_id: str) -> ClientState:
        if not session_id or not session_id.strip():
            raise ValidationError("Session ID is required")
        session_id = session_id.strip()
        self.state.phase = "loading"
        self.state.load_error = None
        try:
            raw_session = await self.api.get_session(session_id)
            raw_session.setdefault("sessionId", session_id)
            session = Session.model_validate(raw_session)
            question = select_current_question(session)
            if question is None:
                raise ServerRejectionError("No coding question found for this session", status=404)
            raw_progress = await self.api.get_progress(session_id, question.id)
            progress = ProgressRecord.model_validate(raw_progress) if raw_progress else None
        except PayloadError as exc:
            return self._load_failed(session_id, CodePrepError("Malformed session payload", {"errors": exc.errors()}))
        except CodePrepError as exc:
            return self._load_failed(session_id, exc)

        now = self._clock()
        buffers = EditorBuffers()
        language = self.settings.DEFAULT_LANGUAGE.lower()
        if progress is not None and progress.code and progress.language:
            language = progress.language.lower()
            code = progress.code
        else:
            code = starter_code(question, language)
        buffers.put(question.id, language, code)

        score = ScoreSnapshot()
        if progress is not None:
            score = ScoreSnapshot(
                tests_passed=progress.tests_passed or 0,
                total_tests=progress.total_tests or 0,
                score=progress.score or 0,
            )

        if session.start_time is not None:
            anchor = session.start_time.timestamp()
        elif progress is not None and progress.time_elapsed_seconds:
            anchor = now - progress.time_elapsed_seconds
        else:
            anchor = now

        answered = session.answered()
        self.buffers = buffers
        self._floor_seq = self._issued_seq + 1
        self._started_at = anchor
        self._cancel_typing_idle()
        self._typing = False
        self.state = ClientState(
            phase="submitted" if question.id in answered else "ready",
            session=session,
            question=question,
            language=language,
            code=code,
            score=score,
            answered=answered,
        )
        self._logger.info(
            "Loaded session %s question %s (%s, %s)",
            session_id,
            question.id,
            language,
            "restored" if progress is not None else "fresh",
        )
        if self.channel is not None and self._subscriptions:
            await self.channel.join(session_id)
        return self.state

    def _load_failed(self, session_id: str, exc: CodePrepError) -> ClientState:
        self.state.phase = "failed"
        self.state.load_error = exc.message
        self.state.last_error = exc
        self._logger.warning("Loading session %s failed: %s", session_id, exc.message)
        self._notify("error", exc.message)
        return self.state

    # Local edits -------------------------------------------------------
    def _require_question(self) -> Question:
        question = self.state.question
        if question is None or self.state.session is None:
            raise ValidationError("No session is loaded")
        return question

    def change_language(self, language: str) -> bool:
        question = self._require_question()
        next_language = (language or "").strip().lower()
        current = self.state.language
        if not next_language or next_language == current:
            return False
        self.buffers.put(question.id, current, self.state.code)
        next_code = self.buffers.get(question.id, next_language)
        if next_code is None:
            next_code = starter_code(question, next_language)
            self.buffers.put(question.id, next_language, next_code)
        self.state.language = next_language
        self.state.code = next_code
        self.state.execution_result = None
        self.state.score = ScoreSnapshot()
        self.state.metrics = PerformanceMetrics()
        # runs issued for the old language must not land in the new one
        self._floor_seq = self._issued_seq + 1
        self._logger.debug("Language %s -> %s on question %s", current, next_language, question.id)
        return True

    def edit(self, text: str) -> None:
        question = self._require_question()
        self.state.code = text
        self.buffers.put(question.id, self.state.language, text)
        self._set_typing(True)
        self._arm_typing_idle()
        if self.channel is not None and self.session_id:
            update = CodeUpdate(
                session_id=self.session_id,
                question_id=question.id,
                code=text,
                language=self.state.language,
            )
            self.channel.send_nowait(CODE_UPDATE, update.to_wire())
        for listener in list(self._edit_listeners):
            listener(text)

    def _typing_indicator(self, typing: bool) -> Dict[str, Any]:
        identity = self.channel.identity if self.channel is not None else None
        indicator = TypingIndicator(
            session_id=self.session_id or "",
            is_typing=typing,
            user_id=identity.user_id if identity else None,
            user_name=identity.user_name if identity else None,
        )
        return indicator.to_wire()

    def _set_typing(self, typing: bool) -> None:
        if not typing:
            self._cancel_typing_idle()
        if typing == self._typing:
            return
        self._typing = typing
        if self.channel is None or not self.session_id:
            return
        self.channel.send_nowait(TYPING_INDICATOR, self._typing_indicator(typing))

    def _arm_typing_idle(self) -> None:
        """Re-arm the pause timer that clears the typing indicator."""

        if not self._typing:
            return
        self._cancel_typing_idle()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running loop; typing idle timer not armed")
            return
        self._typing_task = loop.create_task(self._typing_idle())

    async def _typing_idle(self) -> None:
        await self._sleep(self.settings.TYPING_IDLE_S)
        self._typing_task = None
        self._set_typing(False)

    def _cancel_typing_idle(self) -> None:
        task = self._typing_task
        self._typing_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # Execute -----------------------------------------------------------
    async def execute(self) -> Optional[ExecutionResult]:
        question = self._require_question()
        code = self.state.code
        if not code.strip():
            raise ValidationError("Please write some code first", {"reason": "empty submission"})
        request = ExecuteRequest(
            seq=next(self._seq),
            session_id=self.session_id or "",
            question_id=question.id,
            language=self.state.language,
            code=code,
            test_cases=[case.to_wire() for case in question.test_cases],
        )
        self._issued_seq = request.seq
        self._in_flight.add(request.seq)
        self.state.executing = True
        self._set_typing(False)
        try:
            data = await self.api.execute(request.payload())
            result = result_from_rest(data)
        except CodePrepError as exc:
            self._foreground_failed("Execution", exc)
            return None
        except PayloadError as exc:
            self._foreground_failed("Execution", CodePrepError("Malformed execution result", {"errors": exc.errors()}))
            return None
        finally:
            self._in_flight.discard(request.seq)
            self.state.executing = bool(self._in_flight)

        applied = self.apply_execution_result(
            result,
            seq=request.seq,
            session_id=request.session_id,
            question_id=request.question_id,
            language=request.language,
            source="rest",
        )
        if not applied:
            return None
        if result.success and self.channel is not None:
            progress = InterviewProgress(
                session_id=request.session_id,
                question_id=request.question_id,
                language=request.language,
                score=self.state.score.score,
                tests_passed=self.state.score.tests_passed,
                total_tests=self.state.score.total_tests,
            )
            self.channel.send_nowait(INTERVIEW_PROGRESS, progress.to_wire())
        return result

    def apply_execution_result(
        self,
        result: ExecutionResult,
        *,
        seq: Optional[int] = None,
        session_id: Optional[str] = None,
        question_id: Optional[str] = None,
        language: Optional[str] = None,
        source: str = "rest",
    ) -> bool:
        """Single entry point for execution results from either channel."""

        question = self.state.question
        if question is None or self.state.session is None:
            return False
        if session_id is not None and session_id != self.state.session.session_id:
            self._logger.debug("Dropping %s result for session %s", source, session_id)
            return False
        if question_id is not None and question_id != question.id:
            self._logger.debug("Dropping %s result for question %s", source, question_id)
            return False
        if language is not None and language.lower() != self.state.language:
            self._logger.debug("Dropping %s result for language %s", source, language)
            return False
        if seq is None:
            if self._in_flight:
                self._logger.debug("Dropping unsequenced %s result while a run is in flight", source)
                return False
        else:
            if seq < self._floor_seq or seq < self._applied_seq:
                self._logger.info(
                    "Dropping stale %s result seq=%d (applied=%d, floor=%d)",
                    source,
                    seq,
                    self._applied_seq,
                    self._floor_seq,
                )
                return False
            self._applied_seq = seq

        self.state.execution_result = result
        self.state.last_error = None
        if result.success:
            snapshot = score_result(result)
            self.state.score = snapshot
            self.state.metrics = performance_metrics(result, snapshot)
        self._announce(result, seq)
        return True

    def _announce(self, result: ExecutionResult, seq: Optional[int]) -> None:
        if seq is not None:
            if seq == self._announced_seq:
                return
            self._announced_seq = seq
        if result.success:
            snapshot = self.state.score
            level = "success" if snapshot.total_tests and snapshot.tests_passed == snapshot.total_tests else "info"
            self._notify(level, summarize(result))
        else:
            self._notify("error", result.error or "Code execution failed")

    # Save / submit -----------------------------------------------------
    def progress_record(self, question_id: str, language: str) -> ProgressRecord:
        score = self.state.score if language == self.state.language else ScoreSnapshot()
        return ProgressRecord(
            session_id=self.session_id,
            question_id=question_id,
            code=self.buffer_text(question_id, language) or "",
            language=language,
            score=score.score,
            tests_passed=score.tests_passed,
            total_tests=score.total_tests,
            time_elapsed_seconds=self.time_elapsed(),
        )

    async def save(self, *, explicit: bool = True) -> bool:
        question = self._require_question()
        key = (question.id, self.state.language)
        lock = self._save_locks.setdefault(key, asyncio.Lock())
        async with lock:
            # read the buffer only once it is this save's turn
            record = self.progress_record(*key)
            self._saves_in_flight += 1
            if explicit:
                self._explicit_saves += 1
            self.state.saving = True
            try:
                await self.api.save_progress(record.to_wire(), quiet=explicit)
            except CodePrepError as exc:
                if explicit:
                    self._foreground_failed("Save", exc)
                else:
                    self._logger.warning("Autosave for %s/%s failed: %s", key[0], key[1], exc.message)
                return False
            finally:
                self._saves_in_flight -= 1
                if explicit:
                    self._explicit_saves -= 1
                self.state.saving = self._saves_in_flight > 0
        self.state.last_saved_at = self._clock()
        if explicit:
            self._last_explicit_save_at = self.state.last_saved_at
            self._notify("success", "Progress saved")
        else:
            self._logger.debug("Autosaved %s/%s (%d chars)", key[0], key[1], len(record.code))
        return True

    async def submit(self) -> Optional[SubmitReceipt]:
        question = self._require_question()
        code = self.state.code
        if not code.strip():
            raise ValidationError("Please write some code first", {"reason": "empty submission"})
        score = self.state.score
        if self.settings.REQUIRE_PASSING_SCORE_TO_SUBMIT and score.score <= 0:
            raise ValidationError(
                "Run your code and pass at least one test case before submitting",
                {"reason": "zero score"},
            )
        request = SubmitRequest(
            session_id=self.session_id or "",
            question_id=question.id,
            code=code,
            language=self.state.language,
            final_score=score.score,
            tests_passed=score.tests_passed,
            total_tests=score.total_tests,
            time_elapsed=self.time_elapsed(),
        )
        try:
            data = await self.api.submit(request.to_wire())
            receipt = SubmitReceipt.model_validate(data)
        except CodePrepError as exc:
            self._foreground_failed("Submit", exc)
            return None
        except PayloadError as exc:
            self._foreground_failed("Submit", CodePrepError("Malformed submit receipt", {"errors": exc.errors()}))
            return None

        session = self.state.session
        if session is not None:
            session.status = advance_status(session.status, receipt.status or "completed")
        self.state.answered.add(question.id)
        self.state.receipt = receipt
        self.state.phase = "submitted"
        self.state.last_error = None
        self._notify("success", "Solution submitted successfully")
        self._logger.info("Submitted question %s with score %d", question.id, receipt.final_score)
        return receipt

    def _foreground_failed(self, operation: str, exc: CodePrepError) -> None:
        self.state.last_error = exc
        self._logger.warning("%s failed: %s", operation, exc.message)
        self._notify("error", exc.message)

    # Realtime ----------------------------------------------------------
    @property
    def attached(self) -> bool:
        return bool(self._subscriptions)

    async def attach(self, channel: Optional[EventChannel] = None) -> None:
        """Subscribe to session events and join the loaded session. Pair with :meth:`detach`."""

        if channel is not None:
            self.channel = channel
        if self.channel is None or self._subscriptions:
            return
        handlers = {
            CODE_EXECUTION_RESULT: self._on_execution_push,
            LIVE_FEEDBACK: self._on_live_feedback,
            TYPING_INDICATOR: self._on_typing,
            PROGRESS_SAVED: self._on_progress_saved,
            SESSION_STATUS_UPDATE: self._on_status_update,
            INTERVIEW_PROGRESS: self._on_status_update,
        }
        self._subscriptions = [self.channel.subscribe(event, handler) for event, handler in handlers.items()]
        if self.session_id:
            await self.channel.join(self.session_id)

    async def detach(self) -> None:
        self._cancel_typing_idle()
        if self._typing:
            self._typing = False
            if self.channel is not None and self.session_id:
                await self.channel.emit(TYPING_INDICATOR, self._typing_indicator(False))
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions = []
        if self.channel is not None and self.session_id and self.channel.session_id == self.session_id:
            await self.channel.leave()

    def _matches(self, payload: Mapping[str, Any]) -> bool:
        if payload.get("sessionId") != self.session_id:
            return False
        question_id = payload.get("questionId")
        question = self.state.question
        return question_id is None or (question is not None and str(question_id) == question.id)

    def _on_execution_push(self, payload: Dict[str, Any]) -> None:
        if not self._matches(payload):
            return
        seq = payload.get("requestSeq")
        try:
            result = result_from_event(payload)
        except PayloadError as exc:
            self._logger.warning("Ignoring malformed execution push: %s", exc)
            return
        self.apply_execution_result(
            result,
            seq=seq if isinstance(seq, int) else None,
            session_id=payload.get("sessionId"),
            question_id=payload.get("questionId"),
            language=payload.get("language"),
            source="socket",
        )

    def _on_live_feedback(self, payload: Dict[str, Any]) -> None:
        if not self._matches(payload):
            return
        feedback = payload.get("feedback")
        if isinstance(feedback, Mapping):
            self.state.live_feedback = dict(feedback)

    def _on_typing(self, payload: Dict[str, Any]) -> None:
        if not self._matches(payload):
            return
        user_id = payload.get("userId")
        identity = self.channel.identity if self.channel is not None else None
        if not user_id or (identity is not None and user_id == identity.user_id):
            return
        if payload.get("isTyping"):
            self.state.typing_users[str(user_id)] = str(payload.get("userName") or user_id)
        else:
            self.state.typing_users.pop(str(user_id), None)

    def _on_progress_saved(self, payload: Dict[str, Any]) -> None:
        if not self._matches(payload):
            return
        now = self._clock()
        self.state.last_saved_at = now
        # the explicit save already announced itself
        if self._explicit_saves or (
            self._last_explicit_save_at is not None and now - self._last_explicit_save_at < SAVE_ECHO_WINDOW_S
        ):
            self._logger.debug("Progress-saved echo for an explicit save; no notice")
            return
        self._notify("success", "Progress auto-saved")

    def _on_status_update(self, payload: Dict[str, Any]) -> None:
        session = self.state.session
        if session is None or payload.get("sessionId") != session.session_id or not payload.get("status"):
            return
        session.status = advance_status(session.status, payload.get("status"))


__all__ = ["ClientState", "EditorBuffers", "ExecuteRequest", "SessionClient"]
