from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError
from socketio.exceptions import SocketIOError

from codeprep.config import Settings, socket_base_url
from codeprep.errors import AuthError, ValidationError
from codeprep.notifications import NotifyFn, RateLimitedNotifier, log_notify
from codeprep.services.transport.schema import Identity
from codeprep.services.transport.service import CredentialStore

from .schema import INBOUND_EVENTS, JOIN_INTERVIEW, LEAVE_INTERVIEW

Listener = Callable[[Dict[str, Any]], Any]

CONNECT_ERROR_MESSAGE = "Real-time server unavailable. Some live features may not work."


class Subscription:
    """Handle returned by :meth:`EventChannel.subscribe`; ``dispose()`` detaches the listener."""

    def __init__(self, channel: "EventChannel", event: str, listener: Listener) -> None:
        self._channel = channel
        self.event = event
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def dispose(self) -> None:
        if not self._active:
            return
        self._active = False
        self._channel._remove_listener(self.event, self._listener)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()


def _default_client_factory(settings: Settings) -> socketio.AsyncClient:
    return socketio.AsyncClient(
        reconnection=True,
        reconnection_attempts=settings.SOCKET_RECONNECT_ATTEMPTS,
        reconnection_delay=settings.SOCKET_RECONNECT_DELAY_S,
        logger=False,
        engineio_logger=False,
    )


class EventChannel:
    """Session-scoped Socket.IO channel.

    The socket is opened lazily through :meth:`ensure` and only while an
    identity exists. One session is joined at a time; joining another session
    leaves the current one first. Inbound payloads tagged with a different
    ``sessionId`` than the joined one are dropped before any listener sees them.
    Given a :class:`CredentialStore`, the channel disconnects when it is cleared.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        notify: Optional[NotifyFn] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        credentials: Optional[CredentialStore] = None,
    ) -> None:
        self.settings = settings or Settings.load()
        self.url = socket_base_url(self.settings)
        self._client_factory = client_factory or (lambda: _default_client_factory(self.settings))
        self._connect_notice = RateLimitedNotifier(
            notify or log_notify,
            interval_s=self.settings.CONNECT_ERROR_NOTICE_INTERVAL_S,
        )
        self._sio: Any = None
        self._identity: Optional[Identity] = None
        self._session_id: Optional[str] = None
        self._connected = False
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()
        self._logout_task: Optional[asyncio.Task] = None
        self._logger = logging.getLogger("codeprep.realtime")
        self._unwatch: Optional[Callable[[], None]] = None
        if credentials is not None:
            self._unwatch = credentials.on_change(self._on_identity_change)

    # Lifecycle ---------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    async def ensure(self, identity: Optional[Identity], needed: bool) -> bool:
        """Connect when an identity exists and live features are needed, disconnect otherwise."""

        if identity is None or not needed:
            if self._sio is not None:
                await self.disconnect()
            return False
        if self._sio is not None:
            if self._identity is not None and self._identity.user_id == identity.user_id:
                return self._connected
            await self.disconnect()
        return await self.connect(identity)

    async def connect(self, identity: Identity) -> bool:
        if not identity.token:
            raise AuthError("An authenticated identity is required for real-time features")
        if self._sio is not None:
            return self._connected
        self._identity = identity
        sio = self._client_factory()
        sio.on("connect", self._on_connect)
        sio.on("disconnect", self._on_disconnect)
        sio.on("connect_error", self._on_connect_error)
        for event in INBOUND_EVENTS:
            sio.on(event, self._make_dispatcher(event))
        self._sio = sio
        try:
            await sio.connect(
                self.url,
                auth={"token": identity.token, "userId": identity.user_id, "userName": identity.user_name},
                wait_timeout=self.settings.SOCKET_CONNECT_TIMEOUT_S,
            )
        except SocketConnectionError as exc:
            self._logger.warning("Socket connection to %s failed: %s", self.url, exc)
            self._connected = False
            self._connect_notice("error", CONNECT_ERROR_MESSAGE, key="socket-connect-error")
            self._sio = None
            return False
        self._connected = bool(getattr(sio, "connected", True))
        return self._connected

    async def disconnect(self) -> None:
        sio = self._sio
        if sio is None:
            return
        if self._session_id is not None:
            await self.leave()
        self._sio = None
        self._connected = False
        self._identity = None
        await sio.disconnect()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._logger.info("Socket disconnected from %s", self.url)

    async def close(self) -> None:
        """Stop following the credential store and drop the socket."""

        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        await self.disconnect()

    def _on_identity_change(self, identity: Optional[Identity]) -> None:
        if identity is not None or self._sio is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.warning("Credentials cleared outside the event loop; socket left open")
            return
        self._logger.info("Credentials cleared; closing real-time channel")
        if self._logout_task is None or self._logout_task.done():
            self._logout_task = loop.create_task(self.disconnect())

    async def _on_connect(self) -> None:
        self._connected = True
        self._connect_notice.reset("socket-connect-error")
        self._logger.info("Socket connected to %s", self.url)
        if self._session_id is not None:
            # rooms do not survive a reconnect
            await self._emit(JOIN_INTERVIEW, self._session_id)

    async def _on_disconnect(self, *args: Any) -> None:
        self._connected = False
        self._logger.info("Socket disconnected (%s)", args[0] if args else "client")

    async def _on_connect_error(self, data: Any = None) -> None:
        self._connected = False
        self._logger.warning("Socket connect error: %s", data)
        self._connect_notice("error", CONNECT_ERROR_MESSAGE, key="socket-connect-error")

    # Sessions ----------------------------------------------------------
    async def join(self, session_id: str) -> None:
        if not session_id:
            raise ValidationError("Session ID is required to join a session")
        if self._session_id == session_id:
            return
        if self._session_id is not None:
            await self.leave()
        self._session_id = session_id
        await self._emit(JOIN_INTERVIEW, session_id)
        self._logger.info("Joined interview session %s", session_id)

    async def leave(self) -> None:
        session_id = self._session_id
        if session_id is None:
            return
        self._session_id = None
        await self._emit(LEAVE_INTERVIEW, session_id)
        self._logger.info("Left interview session %s", session_id)

    # Outbound ----------------------------------------------------------
    async def emit(self, event: str, payload: Any) -> bool:
        return await self._emit(event, payload)

    def send_nowait(self, event: str, payload: Any) -> None:
        """Fire-and-forget emit for typing indicators and code updates."""

        if self._sio is None or not self._connected:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running loop; dropping %s", event)
            return
        task = loop.create_task(self._emit(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _emit(self, event: str, payload: Any) -> bool:
        sio = self._sio
        if sio is None or not self._connected:
            self._logger.debug("Not connected; %s not sent", event)
            return False
        try:
            await sio.emit(event, payload)
        except SocketIOError as exc:
            self._logger.warning("Emit %s failed: %s", event, exc)
            return False
        return True

    # Inbound -----------------------------------------------------------
    def subscribe(self, event: str, listener: Listener) -> Subscription:
        self._listeners[event].append(listener)
        return Subscription(self, event, listener)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, ()))
        return sum(len(listeners) for listeners in self._listeners.values())

    def _remove_listener(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            self._listeners.pop(event, None)

    def _make_dispatcher(self, event: str) -> Callable[[Any], Any]:
        async def _handler(data: Any = None) -> None:
            await self.dispatch(event, data)

        return _handler

    async def dispatch(self, event: str, data: Any) -> int:
        """Deliver one inbound payload to current listeners; returns how many were called."""

        if not isinstance(data, Mapping):
            self._logger.debug("Ignoring %s without an object payload", event)
            return 0
        payload = dict(data)
        target = payload.get("sessionId")
        if self._session_id is None or target != self._session_id:
            self._logger.debug("Dropping %s for session %s (joined %s)", event, target, self._session_id)
            return 0
        delivered = 0
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._logger.exception("Listener for %s failed", event)
            delivered += 1
        return delivered


__all__ = ["CONNECT_ERROR_MESSAGE", "EventChannel", "Subscription"]
