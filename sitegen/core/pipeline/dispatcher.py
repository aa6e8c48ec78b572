"""
Task Dispatcher.

Fire-and-forget delivery of envelopes to task endpoints. The caller never
waits for the task's response; a failed submission is logged and left for
the barriers to notice through the ledger.
"""

import asyncio
from typing import Optional

import httpx
import structlog

from sitegen.core.config import settings
from sitegen.core.schemas import Envelope

logger = structlog.get_logger()


class Dispatcher:
    """
    Sends ``POST {base_url}/{agent_name}`` with the envelope as JSON body.

    Every request carries an ``Idempotency-Key`` derived from the envelope
    (pipeline, phase, agent, attempt and, for fan-out members, sequence) so a
    receiving queue or proxy can drop duplicates. No retries here: retry
    policy belongs to the quality gate and to the tasks' own clients.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        service_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.TASK_BASE_URL).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.SERVICE_KEY
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.DISPATCH_TIMEOUT_SECONDS, connect=5.0)
        )
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def dispatch(self, agent_name: str, envelope: Envelope) -> None:
        """Schedule delivery and return without waiting for it."""
        task = asyncio.create_task(
            self._deliver(agent_name, envelope),
            name=f"dispatch:{agent_name}:{envelope.meta.sequence}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        logger.info(
            "agent_dispatched",
            agent_name=agent_name,
            pipeline_run_id=str(envelope.meta.pipeline_run_id),
            phase=envelope.meta.phase,
            sequence=envelope.meta.sequence,
            attempt=envelope.meta.attempt,
        )

    async def _deliver(self, agent_name: str, envelope: Envelope) -> None:
        try:
            await self._send(agent_name, envelope)
        except httpx.ReadTimeout:
            # Request was accepted; the task keeps running on its own
            logger.debug("dispatch_detached", agent_name=agent_name)
        except Exception as e:
            logger.error(
                "dispatch_failed",
                agent_name=agent_name,
                pipeline_run_id=str(envelope.meta.pipeline_run_id),
                error=str(e),
            )

    async def _send(self, agent_name: str, envelope: Envelope) -> None:
        response = await self._client.post(
            f"{self.base_url}/{agent_name}",
            json=envelope.to_wire(),
            headers=self._headers(envelope),
        )
        if response.status_code >= 400:
            logger.warning(
                "dispatch_rejected",
                agent_name=agent_name,
                status_code=response.status_code,
            )

    def _headers(self, envelope: Envelope) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": envelope.idempotency_key(),
            "X-Correlation-Id": envelope.meta.correlation_id,
        }
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"
        return headers

    async def drain(self) -> None:
        """Wait until every scheduled delivery, including ones scheduled meanwhile, is done."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self._client.aclose()
