"""
Pipeline service wiring.

Builds the object graph shared by the API and by every agent invocation.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitegen.core.clients.llm import CompletionClient
from sitegen.core.clients.providers import Providers
from sitegen.core.config import Settings, get_settings
from sitegen.core.pipeline.barrier import Barrier
from sitegen.core.pipeline.cancellation import CancellationGuard
from sitegen.core.pipeline.controller import PhaseController
from sitegen.core.pipeline.dispatcher import Dispatcher
from sitegen.core.pipeline.fanout import FanOutCoordinator
from sitegen.core.pipeline.ledger import RunLedger
from sitegen.core.pipeline.quality_gate import QualityGate
from sitegen.core.pipeline.signals import CompletionSignal


@dataclass
class PipelineServices:
    settings: Settings
    ledger: RunLedger
    dispatcher: Dispatcher
    guard: CancellationGuard
    barrier: Barrier
    controller: PhaseController
    gate: QualityGate
    fanout: FanOutCoordinator
    llm: CompletionClient
    providers: Providers

    async def aclose(self) -> None:
        await self.dispatcher.aclose()
        await self.llm.aclose()
        await self.providers.aclose()


def build_services(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    dispatcher: Optional[Dispatcher] = None,
    llm: Optional[CompletionClient] = None,
    providers: Optional[Providers] = None,
    signal: Optional[CompletionSignal] = None,
) -> PipelineServices:
    """
    Wire the orchestration core.

    Every collaborator can be injected; the rest is built from ``settings``.
    """
    settings = settings or get_settings()
    ledger = RunLedger(session_factory, signal=signal or CompletionSignal())
    dispatcher = dispatcher or Dispatcher(
        base_url=settings.TASK_BASE_URL,
        service_key=settings.SERVICE_KEY,
        timeout=settings.DISPATCH_TIMEOUT_SECONDS,
    )
    guard = CancellationGuard(ledger)
    barrier = Barrier(
        ledger,
        guard,
        poll_interval=settings.BARRIER_POLL_INTERVAL_SECONDS,
        max_wait=settings.BARRIER_MAX_WAIT_SECONDS,
        fan_out_max_wait=settings.FANOUT_MAX_WAIT_SECONDS,
    )
    controller = PhaseController(
        ledger,
        dispatcher,
        guard,
        max_retries=settings.MAX_RETRIES,
        max_attempts=settings.MAX_ATTEMPTS,
    )
    gate = QualityGate(ledger, controller, threshold=settings.QUALITY_THRESHOLD)
    fanout = FanOutCoordinator(
        ledger,
        controller,
        barrier,
        mode=settings.CODEGEN_MODE,
        watchdog_enabled=settings.FANOUT_WATCHDOG_ENABLED,
    )
    llm = llm or CompletionClient(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        default_model=settings.LLM_DEFAULT_MODEL,
        timeout=settings.LLM_TIMEOUT_SECONDS,
        max_attempts=settings.LLM_MAX_ATTEMPTS,
        backoff=settings.LLM_BACKOFF_SECONDS,
        max_backoff=settings.LLM_MAX_BACKOFF_SECONDS,
    )
    return PipelineServices(
        settings=settings,
        ledger=ledger,
        dispatcher=dispatcher,
        guard=guard,
        barrier=barrier,
        controller=controller,
        gate=gate,
        fanout=fanout,
        llm=llm,
        providers=providers or Providers.from_settings(settings),
    )
