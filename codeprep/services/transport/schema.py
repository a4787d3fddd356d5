from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel

from codeprep.wire import WireModel


class Identity(BaseModel):
    """Authenticated user as seen by the transport: an opaque bearer token plus who it belongs to."""

    token: str
    user_id: str
    user_name: Optional[str] = None


class ApiEnvelope(WireModel):
    success: bool = False
    message: Optional[str] = None
    data: Any = None


class HealthStatus(WireModel):
    status: str = "ok"
