from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from app.core.config import get_settings
from app.core.errors import AdmissionRejectedError

logger = logging.getLogger(__name__)


class ExecutionSlots:
    """Bounded pool of execution slots.

    Caps the number of concurrent executions (and therefore live child
    processes) across all requests. Callers that cannot get a slot within
    ``timeout_ms`` are rejected instead of queued indefinitely.
    """

    def __init__(self, capacity: int, timeout_ms: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.timeout_ms = max(0, timeout_ms)
        self._semaphore = threading.BoundedSemaphore(capacity)

    @contextmanager
    def slot(self) -> Iterator[None]:
        if not self._semaphore.acquire(timeout=self.timeout_ms / 1000.0):
            logger.warning(
                "Execution rejected: all %d slots busy after %d ms", self.capacity, self.timeout_ms
            )
            raise AdmissionRejectedError(
                f"No execution slot available within {self.timeout_ms} ms"
            )
        try:
            yield
        finally:
            self._semaphore.release()


@lru_cache(maxsize=1)
def get_execution_slots() -> ExecutionSlots:
    settings = get_settings()
    return ExecutionSlots(settings.max_concurrent_executions, settings.admission_timeout_ms)
