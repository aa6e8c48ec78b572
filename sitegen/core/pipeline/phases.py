"""
Phase topology.

Static description of the six phases: which agents run in each, which of
them gate completion, the conditional integration chain and the allowed
status transitions. Nothing here changes at runtime.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from sitegen.core.models import PipelineStatus
from sitegen.core.schemas import ProjectData


# ==========================================================================
# Agent Names
# ==========================================================================

STRATEGIST = "strategist"
SEO = "seo"
LEGAL = "legal"
VISUAL = "visual"
IMAGE = "image"
COLLECTOR = "collector"
CONTENT_PACK = "content-pack"
EDITOR = "editor"
CODE_RENDERER = "code-renderer"
SHARED_COMPONENTS = "shared-components"
SECTION_GENERATOR = "section-generator"
PAGE_BUILDER = "page-builder"
CODE_COLLECTOR = "code-collector"
CMS = "cms"
EMAIL = "email"
ANALYTICS = "analytics"
DEPLOYER = "deployer"

PHASE_1_AGENTS = (STRATEGIST, SEO, LEGAL, VISUAL, IMAGE)
COLLECTOR_SEQUENCE = 99
SECTION_SEQUENCE_START = 1
PAGE_SEQUENCE_START = 100

# One-time advance keys
SECTIONS_COMPLETE = "sections_complete"
INTEGRATIONS_TRIGGERED = "integrations_triggered"
DEPLOY_TRIGGERED = "deploy_triggered"


# ==========================================================================
# Phase Config
# ==========================================================================

@dataclass(frozen=True)
class PhaseSpec:
    number: int
    name: str
    agents: tuple[str, ...]
    parallel: bool = False
    mandatory: tuple[str, ...] = ()

    @property
    def status(self) -> PipelineStatus:
        return status_for_phase(self.number)


PHASE_CONFIG: dict[int, PhaseSpec] = {
    1: PhaseSpec(1, "Foundation", PHASE_1_AGENTS, parallel=True, mandatory=(STRATEGIST,)),
    2: PhaseSpec(2, "Content Generation", (CONTENT_PACK,), mandatory=(CONTENT_PACK,)),
    3: PhaseSpec(3, "Quality Gate", (EDITOR,), mandatory=(EDITOR,)),
    4: PhaseSpec(
        4,
        "Code Generation",
        (CODE_RENDERER, SHARED_COMPONENTS, SECTION_GENERATOR, PAGE_BUILDER, CODE_COLLECTOR),
        parallel=True,
        mandatory=(CODE_RENDERER, SHARED_COMPONENTS, SECTION_GENERATOR, PAGE_BUILDER),
    ),
    5: PhaseSpec(5, "Integrations", (CMS, EMAIL, ANALYTICS)),
    6: PhaseSpec(6, "Deployment", (DEPLOYER,), mandatory=(DEPLOYER,)),
}

AGENT_PHASES: dict[str, int] = {
    agent: spec.number for spec in PHASE_CONFIG.values() for agent in spec.agents
}
AGENT_PHASES[COLLECTOR] = 1


def phase_of(agent_name: str) -> int:
    return AGENT_PHASES[agent_name]


# ==========================================================================
# Integration Chain
# ==========================================================================

@dataclass(frozen=True)
class IntegrationStep:
    agent: str
    sequence: int
    required: Callable[[ProjectData], bool] = field(compare=False)
    reason: str = ""


INTEGRATION_CHAIN: tuple[IntegrationStep, ...] = (
    IntegrationStep(
        CMS, 1,
        lambda project: project.has_addon("cms_base", "cms"),
        "CMS addon not purchased",
    ),
    IntegrationStep(
        EMAIL, 2,
        lambda project: project.has_addon("booking_form"),
        "Booking form addon not purchased",
    ),
    IntegrationStep(
        ANALYTICS, 3,
        lambda project: project.package_type == "enterprise" or project.has_addon("analytics"),
        "Analytics requires enterprise package or analytics addon",
    ),
)

INTEGRATION_STEPS: dict[str, IntegrationStep] = {step.agent: step for step in INTEGRATION_CHAIN}


def required_integrations(project: ProjectData) -> list[str]:
    return [step.agent for step in INTEGRATION_CHAIN if step.required(project)]


def next_integration(project: ProjectData, after: Optional[str] = None) -> Optional[IntegrationStep]:
    """
    Next required integration in chain order, or None when deployment is next.

    ``after`` is the integration that just finished; None starts the chain.
    """
    start = 0
    if after is not None:
        start = [step.agent for step in INTEGRATION_CHAIN].index(after) + 1
    for step in INTEGRATION_CHAIN[start:]:
        if step.required(project):
            return step
    return None


# ==========================================================================
# Status Transitions
# ==========================================================================

PHASE_STATUSES = (
    PipelineStatus.PHASE_1,
    PipelineStatus.PHASE_2,
    PipelineStatus.PHASE_3,
    PipelineStatus.PHASE_4,
    PipelineStatus.PHASE_5,
    PipelineStatus.PHASE_6,
)

TERMINAL_STATUSES = frozenset({
    PipelineStatus.COMPLETED,
    PipelineStatus.FAILED,
    PipelineStatus.NEEDS_HUMAN,
    PipelineStatus.CANCELLED,
})

# Statuses the stop operation cancels
STOPPABLE_STATUSES = frozenset({PipelineStatus.PENDING, *PHASE_STATUSES, PipelineStatus.NEEDS_HUMAN})

ALLOWED_TRANSITIONS: dict[PipelineStatus, frozenset[PipelineStatus]] = {
    PipelineStatus.PENDING: frozenset({PipelineStatus.PHASE_1, PipelineStatus.FAILED}),
    PipelineStatus.PHASE_1: frozenset({PipelineStatus.PHASE_2, PipelineStatus.FAILED}),
    PipelineStatus.PHASE_2: frozenset({PipelineStatus.PHASE_3, PipelineStatus.FAILED}),
    PipelineStatus.PHASE_3: frozenset({
        PipelineStatus.PHASE_4,
        PipelineStatus.PHASE_2,
        PipelineStatus.NEEDS_HUMAN,
        PipelineStatus.FAILED,
    }),
    PipelineStatus.PHASE_4: frozenset({PipelineStatus.PHASE_5, PipelineStatus.PHASE_6, PipelineStatus.FAILED}),
    PipelineStatus.PHASE_5: frozenset({PipelineStatus.PHASE_5, PipelineStatus.PHASE_6, PipelineStatus.FAILED}),
    PipelineStatus.PHASE_6: frozenset({PipelineStatus.PHASE_6, PipelineStatus.COMPLETED, PipelineStatus.FAILED}),
}


# The quality gate's bounded retry is the only backward move
ROLLBACK_TRANSITIONS = frozenset({(PipelineStatus.PHASE_3, PipelineStatus.PHASE_2)})


def allowed_sources(target: PipelineStatus, include_rollback: bool = False) -> list[PipelineStatus]:
    """
    Statuses from which ``target`` may be entered.

    Rollback edges are left out unless ``include_rollback`` is set.
    """
    if target == PipelineStatus.CANCELLED:
        return sorted(STOPPABLE_STATUSES, key=lambda s: s.value)
    return [
        source
        for source, targets in ALLOWED_TRANSITIONS.items()
        if target in targets and (include_rollback or (source, target) not in ROLLBACK_TRANSITIONS)
    ]


def status_for_phase(phase: int) -> PipelineStatus:
    return PipelineStatus(f"phase_{phase}")


def phase_for_status(status: PipelineStatus) -> Optional[int]:
    if status in PHASE_STATUSES:
        return int(status.value.split("_")[1])
    return None
