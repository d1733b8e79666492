"""Image cache with single-flight pulls.

The cache is the only state shared between concurrent executions.  When
several requests need an image that is not present locally, the first one
starts a pull task and every other request awaits that same task; all of
them see the same outcome.  A failed pull is not remembered, so a later
request will try again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Set

from .docker_backend import DockerBackend
from .errors import CodeRunnerError, ImageUnavailable, InfrastructureError


logger = logging.getLogger(__name__)


def _retrieve_outcome(task: "asyncio.Task[None]") -> None:
    # Every waiter may have been cancelled before a failed pull finished.
    if not task.cancelled():
        task.exception()


class ImageCache:
    def __init__(self, backend: DockerBackend) -> None:
        self.backend = backend
        self._present: Set[str] = set()
        self._in_flight: Dict[str, "asyncio.Task[None]"] = {}
        self._lock = asyncio.Lock()

    def is_present(self, image: str) -> bool:
        return image in self._present

    def forget(self, image: str) -> None:
        """Drop ``image`` from the cache, e.g. after it was removed from the host."""
        self._present.discard(image)

    async def ensure_available(self, image: str) -> None:
        if image in self._present:
            return
        async with self._lock:
            if image in self._present:
                return
            task = self._in_flight.get(image)
            if task is None:
                task = asyncio.create_task(self._fetch(image), name=f"pull:{image}")
                task.add_done_callback(_retrieve_outcome)
                self._in_flight[image] = task
        # A waiter being cancelled must not cancel the pull for the others.
        await asyncio.shield(task)

    async def _fetch(self, image: str) -> None:
        try:
            if not await asyncio.to_thread(self.backend.image_present, image):
                logger.info("[images] %s not present locally; pulling", image)
                await asyncio.to_thread(self.backend.pull_image, image)
                logger.info("[images] pulled %s", image)
        except (ImageUnavailable, InfrastructureError):
            logger.warning("[images] could not make %s available", image)
            raise
        except CodeRunnerError as exc:
            raise ImageUnavailable(str(exc), image=image)
        else:
            self._present.add(image)
        finally:
            async with self._lock:
                self._in_flight.pop(image, None)
