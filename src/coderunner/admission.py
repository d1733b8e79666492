"""Admission limit on simultaneously running environments.

Requests beyond the limit wait for a free slot for at most
``timeout`` seconds and are then rejected with :class:`AdmissionRejected`.
A timeout of zero rejects straight away.  Resource limits of admitted
environments are never lowered to squeeze more in.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator

from .errors import AdmissionRejected


class AdmissionController:
    def __init__(self, limit: int, timeout: float = 0.0) -> None:
        if limit <= 0:
            raise ValueError("admission limit must be positive")
        self.limit = limit
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    async def acquire(self) -> None:
        if self.timeout <= 0:
            if self._semaphore.locked():
                raise AdmissionRejected(limit=self.limit)
            await self._semaphore.acquire()
        else:
            try:
                await asyncio.wait_for(self._semaphore.acquire(), self.timeout)
            except asyncio.TimeoutError:
                raise AdmissionRejected(limit=self.limit)
        self._in_use += 1

    def release(self) -> None:
        self._in_use -= 1
        self._semaphore.release()

    @contextlib.asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()
