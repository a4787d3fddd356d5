from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from codeprep.services.session.service import SessionClient

SleepFn = Callable[[float], Awaitable[None]]


class AutosaveController:
    """Background persistence of the active buffer.

    Two triggers feed the same ``save(explicit=False)``: a debounce timer that
    is re-armed on every edit and a periodic backstop for continuous typing.
    Only one save runs at a time; triggers that arrive meanwhile collapse into
    a single follow-up save. Failures are logged and retried on the next
    debounce, never raised.
    """

    def __init__(
        self,
        client: SessionClient,
        *,
        debounce_s: Optional[float] = None,
        interval_s: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self._debounce_s = client.settings.AUTOSAVE_DEBOUNCE_S if debounce_s is None else debounce_s
        self._interval_s = client.settings.AUTOSAVE_INTERVAL_S if interval_s is None else interval_s
        self._sleep = sleep
        self._debounce_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._dirty = False
        self._generation = 0
        self._saving = False
        self._pending = False
        self.saves = 0
        self.failures = 0
        self._logger = logging.getLogger("codeprep.autosave")

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._client.add_edit_listener(self._on_edit)
        if self._interval_s and self._interval_s > 0:
            self._periodic_task = asyncio.get_running_loop().create_task(self._periodic())

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = [task for task in (self._debounce_task, self._periodic_task) if task is not None]
        self._debounce_task = None
        self._periodic_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def flush(self) -> bool:
        if not self._dirty:
            return True
        return await self.trigger()

    def _on_edit(self, _text: str) -> None:
        self._dirty = True
        self._generation += 1
        self._arm_debounce()

    def _arm_debounce(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running loop; debounce not armed")
            return
        self._debounce_task = loop.create_task(self._debounced())

    async def _debounced(self) -> None:
        await self._sleep(self._debounce_s)
        self._debounce_task = None
        await self.trigger()

    async def _periodic(self) -> None:
        while True:
            await self._sleep(self._interval_s)
            if self._dirty:
                await self.trigger()

    async def trigger(self) -> bool:
        """Save now unless a save is already running, in which case one more save follows it."""

        if not self._client.code.strip():
            self._logger.debug("Buffer empty; autosave skipped")
            return False
        if self._saving:
            self._pending = True
            return True
        self._saving = True
        ok = True
        try:
            while True:
                self._pending = False
                generation = self._generation
                ok = await self._client.save(explicit=False)
                if not ok:
                    self.failures += 1
                    self._arm_debounce()
                    break
                self.saves += 1
                if self._generation == generation:
                    self._dirty = False
                if not self._pending:
                    break
        finally:
            self._saving = False
        return ok
