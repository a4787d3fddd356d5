from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from codeprep.config import Settings
from codeprep.errors import AuthError, CodePrepError, ServerRejectionError, TransientInfraError
from codeprep.notifications import NotifyFn, RateLimitedNotifier, log_notify

from .schema import ApiEnvelope, Identity

GATEWAY_STATUSES = frozenset({502, 503, 504})
WAKE_BACKOFF_S: Sequence[float] = (0.0, 0.75, 1.25, 2.0, 3.0, 4.0, 5.0)

SleepFn = Callable[[float], Awaitable[None]]


class CredentialStore:
    """Holds the current identity. Clearing it is how a 401 logs the user out."""

    def __init__(self, identity: Optional[Identity] = None) -> None:
        self._identity = identity
        self._listeners: List[Callable[[Optional[Identity]], None]] = []

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def token(self) -> Optional[str]:
        return self._identity.token if self._identity else None

    def set(self, identity: Identity) -> None:
        self._identity = identity
        self._fire()

    def clear(self) -> None:
        if self._identity is None:
            return
        self._identity = None
        self._fire()

    def on_change(self, listener: Callable[[Optional[Identity]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _fire(self) -> None:
        for listener in list(self._listeners):
            listener(self._identity)


def _message_from(body: Any, fallback: str) -> str:
    if isinstance(body, Mapping):
        message = body.get("message") or body.get("detail")
        if isinstance(message, str) and message.strip():
            return message
    return fallback


def classify_status(status: int, body: Any, path: str = "") -> CodePrepError:
    """Map a non-2xx HTTP status onto the error taxonomy."""

    details: Dict[str, Any] = {"status": status, "path": path, "body": body}
    if status == 401:
        return AuthError(_message_from(body, "Session expired. Please login again."), details)
    if status in GATEWAY_STATUSES:
        return TransientInfraError(
            _message_from(body, "Server is waking up. Please try again shortly."),
            details,
            status=status,
        )
    if status == 429:
        return ServerRejectionError("Too many requests. Please try again later.", details, status=status)
    if status >= 500:
        return ServerRejectionError(_message_from(body, "Server error. Please try again later."), details, status=status)
    return ServerRejectionError(_message_from(body, f"Request failed with status {status}"), details, status=status)


class AuthGuard:
    """Clears credentials on 401 and redirects to login at most once."""

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        on_redirect: Optional[Callable[[], None]] = None,
        notify: Optional[NotifyFn] = None,
    ) -> None:
        self._credentials = credentials
        self._on_redirect = on_redirect
        self._notify = notify or log_notify
        self._redirecting = False
        self._logger = logging.getLogger("codeprep.transport.auth")

    @property
    def redirecting(self) -> bool:
        return self._redirecting

    def handle_unauthorized(self, message: str = "Session expired. Please login again.") -> bool:
        self._credentials.clear()
        if self._redirecting:
            return False
        self._redirecting = True
        self._logger.info("Credentials rejected; redirecting to login")
        self._notify("error", message)
        if self._on_redirect is not None:
            self._on_redirect()
        return True

    def reset(self) -> None:
        self._redirecting = False


class ColdStartWaker:
    """Polls ``/health`` until the backend answers or the wall-clock budget runs out.

    Concurrent callers share one polling sequence.
    """

    def __init__(
        self,
        client_provider: Callable[[], Awaitable[httpx.AsyncClient]],
        *,
        max_wait_s: float = 25.0,
        attempt_timeout_s: float = 8.0,
        backoff_s: Sequence[float] = WAKE_BACKOFF_S,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_provider = client_provider
        self._max_wait_s = max_wait_s
        self._attempt_timeout_s = attempt_timeout_s
        self._backoff_s = tuple(backoff_s) or (0.0,)
        self._sleep = sleep
        self._clock = clock
        self._inflight: Optional[asyncio.Future[bool]] = None
        self.attempts = 0
        self._logger = logging.getLogger("codeprep.transport.wake")

    @property
    def waking(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def wake(self) -> bool:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._poll())
        return await asyncio.shield(self._inflight)

    async def _poll(self) -> bool:
        client = await self._client_provider()
        started = self._clock()
        attempt = 0
        while self._clock() - started < self._max_wait_s:
            attempt += 1
            self.attempts += 1
            remaining = self._max_wait_s - (self._clock() - started)
            timeout = max(0.1, min(self._attempt_timeout_s, remaining))
            self._logger.info("Wake attempt %d (%.1fs elapsed)", attempt, self._clock() - started)
            try:
                response = await client.get("health", timeout=timeout)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                self._logger.debug("Wake attempt %d failed: %s", attempt, exc)
            else:
                if response.is_success:
                    self._logger.info("Backend is awake after %d attempt(s)", attempt)
                    return True
                if response.status_code not in GATEWAY_STATUSES:
                    self._logger.warning("Health probe answered %d; giving up", response.status_code)
                    return False
            delay = self._backoff_s[min(attempt - 1, len(self._backoff_s) - 1)]
            if delay > 0:
                await self._sleep(delay)
        self._logger.warning("Backend did not wake within %.0fs", self._max_wait_s)
        return False


class RestTransport:
    """Request/response channel to the backend.

    Every call carries a deadline. Non-2xx answers and transport failures are
    raised as :mod:`codeprep.errors` types. A 401 goes through the shared
    :class:`AuthGuard`; callers that want cold-start recovery pass
    ``wake_on_cold_start=True`` and get one retry after a successful wake.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        credentials: Optional[CredentialStore] = None,
        *,
        notify: Optional[NotifyFn] = None,
        on_auth_redirect: Optional[Callable[[], None]] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings.load()
        self.credentials = credentials or CredentialStore()
        self._notify = notify or log_notify
        self._network_notice = RateLimitedNotifier(
            self._notify,
            interval_s=self.settings.NETWORK_NOTICE_COOLDOWN_S,
            clock=clock,
        )
        self.auth_guard = AuthGuard(self.credentials, on_redirect=on_auth_redirect, notify=self._notify)
        self.waker = ColdStartWaker(
            self._ensure_client,
            max_wait_s=self.settings.WAKE_MAX_WAIT_S,
            attempt_timeout_s=self.settings.WAKE_ATTEMPT_TIMEOUT_S,
            sleep=sleep,
            clock=clock,
        )
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None
        self._logger = logging.getLogger("codeprep.transport")

    async def start(self) -> None:
        await self._ensure_client()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RestTransport":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(self.settings.REQUEST_TIMEOUT_S, connect=min(10.0, self.settings.REQUEST_TIMEOUT_S))
            self._client = httpx.AsyncClient(
                base_url=self.settings.API_URL.rstrip("/") + "/",
                headers={"Content-Type": "application/json"},
                timeout=timeout,
                transport=self._http_transport,
            )
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
        quiet: bool = False,
        suppress_auth_redirect: bool = False,
        wake_on_cold_start: bool = False,
    ) -> ApiEnvelope:
        try:
            return await self._send(
                method,
                path,
                json=json,
                params=params,
                timeout=timeout,
                quiet=quiet or wake_on_cold_start,
                suppress_auth_redirect=suppress_auth_redirect,
            )
        except TransientInfraError as exc:
            if not wake_on_cold_start:
                raise
            self._logger.info("Cold start suspected on %s %s (%s); waking backend", method, path, exc.message)
            if not await self.waker.wake():
                raise TransientInfraError(
                    "Unable to reach server. Please make sure backend is running and try again.",
                    exc.details,
                    status=exc.status,
                ) from exc
        return await self._send(
            method,
            path,
            json=json,
            params=params,
            timeout=timeout,
            quiet=quiet,
            suppress_auth_redirect=suppress_auth_redirect,
        )

    async def get(self, path: str, **kwargs: Any) -> ApiEnvelope:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, payload: Any = None, **kwargs: Any) -> ApiEnvelope:
        return await self.request("POST", path, json=payload, **kwargs)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any,
        params: Optional[Mapping[str, Any]],
        timeout: Optional[float],
        quiet: bool,
        suppress_auth_redirect: bool,
    ) -> ApiEnvelope:
        client = await self._ensure_client()
        headers: Dict[str, str] = {}
        token = self.credentials.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        relative = path.lstrip("/")
        try:
            response = await client.request(
                method,
                relative,
                json=json,
                params=dict(params) if params else None,
                headers=headers,
                timeout=timeout if timeout is not None else self.settings.REQUEST_TIMEOUT_S,
            )
        except httpx.TimeoutException as exc:
            self._report_network_failure(quiet)
            raise TransientInfraError("Request timed out", {"path": relative}) from exc
        except httpx.TransportError as exc:
            self._report_network_failure(quiet)
            raise TransientInfraError("Network error. Please check your connection.", {"path": relative}) from exc

        body = _decode(response)
        if response.is_success:
            if isinstance(body, Mapping) and "success" in body:
                return ApiEnvelope.model_validate(body)
            return ApiEnvelope(success=True, data=body)

        error = classify_status(response.status_code, body, relative)
        self._logger.warning("%s %s -> %d: %s", method, relative, response.status_code, error.message)
        if isinstance(error, AuthError) and not suppress_auth_redirect:
            self.auth_guard.handle_unauthorized()
        elif isinstance(error, TransientInfraError):
            self._report_network_failure(quiet)
        raise error

    def _report_network_failure(self, quiet: bool) -> None:
        if quiet:
            return
        self._network_notice("error", "Network error. Please check your connection.", key="network-error")


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return {"message": response.text[:500]}


__all__ = [
    "AuthGuard",
    "ColdStartWaker",
    "CredentialStore",
    "GATEWAY_STATUSES",
    "RestTransport",
    "classify_status",
]
