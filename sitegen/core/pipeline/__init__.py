"""
SiteForge Pipeline - Orchestration Core
=======================================

Drives one website generation run through six phases with no central
scheduler. Every agent runs as its own stateless invocation and shares
state only through the run ledger.

Components:
- RunLedger: Durable record of pipeline runs, agent runs and one-time advances
- Dispatcher: Fire-and-forget agent invocation with idempotency keys
- PhaseController: Status transitions and next-agent dispatch
- Barrier: Phase-1 join and fan-out completion counting
- QualityGate: Phase-3 approve / retry / escalate decision
- FanOutCoordinator: Phase-4 sibling self-coordination
- CancellationGuard: Stop checks at every checkpoint
- CompletionSignal: Wakes barrier polls early on agent completion
"""

from sitegen.core.pipeline.barrier import Barrier, BarrierResult
from sitegen.core.pipeline.cancellation import CancellationGuard
from sitegen.core.pipeline.controller import PhaseController, StartResult
from sitegen.core.pipeline.dispatcher import Dispatcher
from sitegen.core.pipeline.fanout import FanOutCoordinator
from sitegen.core.pipeline.ledger import RunLedger
from sitegen.core.pipeline.quality_gate import QualityDecision, QualityGate
from sitegen.core.pipeline.services import PipelineServices, build_services
from sitegen.core.pipeline.signals import CompletionSignal

__all__ = [
    "Barrier",
    "BarrierResult",
    "CancellationGuard",
    "CompletionSignal",
    "Dispatcher",
    "FanOutCoordinator",
    "PhaseController",
    "PipelineServices",
    "QualityDecision",
    "QualityGate",
    "RunLedger",
    "StartResult",
    "build_services",
]
