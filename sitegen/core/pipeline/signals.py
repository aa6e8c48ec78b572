"""
Completion signal.

In-process wakeup for barriers. When a task in the same process writes a
terminal status, waiting barriers re-read the ledger immediately instead of
sleeping out the poll interval. Across processes the poll interval remains
the upper bound on latency.
"""

import asyncio
from collections import defaultdict
from typing import Any


class CompletionSignal:
    def __init__(self) -> None:
        self._waiters: dict[Any, set[asyncio.Event]] = defaultdict(set)

    def notify(self, pipeline_run_id: Any) -> None:
        for event in self._waiters.get(pipeline_run_id, ()):
            event.set()

    def notify_all(self) -> None:
        for events in self._waiters.values():
            for event in events:
                event.set()

    async def wait(self, pipeline_run_id: Any, timeout: float) -> bool:
        """Wait for a notification. Returns False when ``timeout`` elapsed."""
        event = asyncio.Event()
        self._waiters[pipeline_run_id].add(event)
        try:
            await asyncio.wait_for(event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            waiters = self._waiters.get(pipeline_run_id)
            if waiters is not None:
                waiters.discard(event)
                if not waiters:
                    del self._waiters[pipeline_run_id]
