"""
Fire-and-forget dispatch for audit and notification sinks.

The request path hands a job to the dispatcher and moves on; the job runs as
an independent task with a bounded timeout. Failures are logged once and
dropped so they can never alter or delay a client response.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from ..errors import SinkFailure

logger = logging.getLogger("llm-relay.audit.dispatcher")

Job = Callable[[], Awaitable[object]]


class SinkDispatcher:
    """Runs sink jobs as background tasks on the current event loop."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

        # Stats
        self.submitted_total = 0
        self.failed_total = 0

    def submit(self, label: str, job: Job) -> Optional[asyncio.Task]:
        """Schedule `job` without awaiting it. Returns the task, or None outside a loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"{label} sink job dropped: no running event loop")
            self.failed_total += 1
            return None

        self.submitted_total += 1
        task = loop.create_task(self._run(label, job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, label: str, job: Job):
        try:
            await asyncio.wait_for(job(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.failed_total += 1
            logger.error(f"{label} sink timed out after {self.timeout}s")
        except SinkFailure as e:
            self.failed_total += 1
            logger.error(f"{label} sink failed: {e.cause}")
        except Exception as e:
            self.failed_total += 1
            logger.error(f"{label} sink failed: {e!r}")

    async def drain(self):
        """Wait for every pending job. Used on shutdown."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "submitted_total": self.submitted_total,
            "failed_total": self.failed_total,
        }
