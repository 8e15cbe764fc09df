"""In-memory sink that records every call it receives.

Used for local development (``SINK_KIND=memory``) and by the test suite.
Calls listed in ``fail_calls`` (0-based call index) raise ``UploadError``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Sequence

from src.pumpsync.base import UploadSink
from src.pumpsync.errors import UploadError


@dataclass
class RecordedCall:
    method: str
    created: list = field(default_factory=list)
    updated: list = field(default_factory=list)
    deleted: list = field(default_factory=list)


class RecordingSink(UploadSink):
    SERVICE_ID = "memory"
    DISPLAY_NAME = "In-memory recorder"

    def __init__(
        self,
        dose_chunk_limit: int | None = None,
        carb_chunk_limit: int | None = None,
        glucose_chunk_limit: int | None = None,
        fail_calls: Sequence[int] = (),
        delay_s: float = 0.0,
    ) -> None:
        self.dose_chunk_limit = dose_chunk_limit
        self.carb_chunk_limit = carb_chunk_limit
        self.glucose_chunk_limit = glucose_chunk_limit
        self.fail_calls = set(fail_calls)
        self.delay_s = delay_s
        self.calls: list[RecordedCall] = []
        self.active = 0
        self.max_active = 0

    @property
    def raw_state(self) -> dict:
        return {
            "dose_chunk_limit": self.dose_chunk_limit,
            "carb_chunk_limit": self.carb_chunk_limit,
            "glucose_chunk_limit": self.glucose_chunk_limit,
        }

    def calls_to(self, method: str) -> list[RecordedCall]:
        return [c for c in self.calls if c.method == method]

    async def _record(self, call: RecordedCall) -> None:
        index = len(self.calls)
        self.calls.append(call)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            if index in self.fail_calls:
                raise UploadError(f"Simulated failure on call {index}", status_code=500)
        finally:
            self.active -= 1

    async def upload_doses(self, created, updated, deleted) -> None:
        await self._record(RecordedCall("doses", list(created), list(updated), list(deleted)))

    async def upload_device_events(self, events) -> None:
        await self._record(RecordedCall("device_events", list(events)))

    async def upload_carbs(self, created, updated, deleted) -> None:
        await self._record(RecordedCall("carbs", list(created), list(updated), list(deleted)))

    async def upload_glucose(self, readings) -> None:
        await self._record(RecordedCall("glucose", list(readings)))
