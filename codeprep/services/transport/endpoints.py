from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from codeprep.errors import ServerRejectionError

from .service import RestTransport


def _data(envelope_data: Any) -> Dict[str, Any]:
    return dict(envelope_data) if isinstance(envelope_data, Mapping) else {}


def _carries_execution_result(body: Any) -> bool:
    if not isinstance(body, Mapping):
        return False
    data = body.get("data")
    if not isinstance(data, Mapping):
        return False
    return "testResults" in data or "executionResult" in data or "success" in data


class CodingApi:
    """Coding-session endpoints under ``/coding``."""

    def __init__(self, transport: RestTransport) -> None:
        self.transport = transport

    async def get_session(self, session_id: str, *, wake_on_cold_start: bool = True) -> Dict[str, Any]:
        envelope = await self.transport.get(
            f"coding/session/{session_id}",
            wake_on_cold_start=wake_on_cold_start,
        )
        return _data(envelope.data)

    async def get_progress(self, session_id: str, question_id: str, *, wake_on_cold_start: bool = True) -> Optional[Dict[str, Any]]:
        envelope = await self.transport.get(
            f"coding/progress/{session_id}",
            params={"questionId": question_id},
            wake_on_cold_start=wake_on_cold_start,
        )
        progress = _data(envelope.data).get("progress")
        return dict(progress) if isinstance(progress, Mapping) else None

    async def execute(self, payload: Mapping[str, Any], *, quiet: bool = True) -> Dict[str, Any]:
        """Run code through the judge.

        A program that fails to compile or crashes is still a completed call:
        the backend answers 400 with the execution result in ``data`` and that
        result is returned like any other.
        """

        try:
            envelope = await self.transport.post("coding/execute", dict(payload), quiet=quiet)
        except ServerRejectionError as exc:
            body = exc.details.get("body")
            if exc.status == 400 and _carries_execution_result(body):
                data = _data(body.get("data"))
                data.setdefault("success", False)
                data.setdefault("error", body.get("message"))
                return data
            raise
        return _data(envelope.data)

    async def save_progress(self, payload: Mapping[str, Any], *, quiet: bool = False) -> Dict[str, Any]:
        envelope = await self.transport.post("coding/save-progress", dict(payload), quiet=quiet)
        return _data(envelope.data)

    async def submit(self, payload: Mapping[str, Any], *, quiet: bool = True) -> Dict[str, Any]:
        envelope = await self.transport.post("coding/submit", dict(payload), quiet=quiet)
        return _data(envelope.data)


class QuickPracticeApi:
    """Timed-MCQ endpoints under ``/quick-practice``."""

    def __init__(self, transport: RestTransport) -> None:
        self.transport = transport

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        envelope = await self.transport.get(f"quick-practice/session/{session_id}", wake_on_cold_start=True)
        return _data(envelope.data)

    async def submit(self, session_id: str, answers: List[Mapping[str, Any]]) -> Dict[str, Any]:
        envelope = await self.transport.post(
            f"quick-practice/session/{session_id}/submit",
            {"answers": [dict(answer) for answer in answers]},
            quiet=True,
        )
        return _data(envelope.data)
