"""
SiteForge Pipeline - Test Fixtures
==================================

Shared pytest fixtures for all tests.

Every test gets its own SQLite ledger file. Agents never reach a network:
completions come from FakeCompletionClient, and dispatches either stay
recorded (RecordingDispatcher) or run the agent in-process
(LoopbackDispatcher).
"""

import inspect
import json
from collections.abc import AsyncGenerator
from typing import Any, Callable, Optional, Union
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from sitegen.api.deps import get_services
from sitegen.api.main import app
from sitegen.core.agents.registry import create_task
from sitegen.core.clients.llm import Completion
from sitegen.core.clients.providers import Providers
from sitegen.core.config import Settings
from sitegen.core.database import create_engine, create_session_factory, get_db, init_db
from sitegen.core.models import PipelineStatus
from sitegen.core.pipeline.dispatcher import Dispatcher
from sitegen.core.pipeline.services import PipelineServices, build_services
from sitegen.core.schemas import Envelope, EnvelopeMeta, ProjectData


# ==========================================================================
# Fakes
# ==========================================================================

CompletionResponse = Union[dict, Exception, Callable[[str, int], Any], list]

DEFAULT_COMPLETIONS: dict[str, CompletionResponse] = {
    "strategist": {
        "positioning": "Neighbourhood bakery with sourdough focus",
        "valueProposition": "Bread baked at 4am, on your table at 8",
        "tone": "warm",
        "keyMessages": ["Fresh daily", "Local flour"],
        "pages": [],
        "callsToAction": ["Order now"],
    },
    "seo": {"primaryKeywords": ["sourdough berlin"], "secondaryKeywords": [], "pages": []},
    "legal": {"jurisdiction": "DE", "privacyPolicy": "...", "termsOfService": "...", "imprint": None},
    "visual": {
        "palette": {"primary": "#7c2d12", "secondary": "#fbbf24"},
        "typography": {"heading": "Playfair Display", "body": "Inter"},
    },
    "image": {"images": [{"pageSlug": "home", "slot": "hero", "query": "sourdough loaf", "alt": "Loaf"}]},
    "content-pack": {
        "pages": [
            {
                "slug": "home",
                "title": "Home",
                "sections": [
                    {"type": "hero", "heading": "Bread, properly", "body": "Baked daily."},
                    {"type": "features", "heading": "Why us", "body": "Local flour."},
                ],
            },
            {
                "slug": "about",
                "title": "About",
                "sections": [{"type": "story", "heading": "Since 1998", "body": "Family run."}],
            },
        ],
        "global": {"tagline": "Bread, properly", "footerText": "Crumb & Co"},
    },
    "editor": {"score": 8.5, "approved": True, "summary": "Strong copy", "issues": []},
    "shared-components": {
        "files": {
            "components/Header.tsx": "export default function Header() { return <header /> }",
            "components/Footer.tsx": "export default function Footer() { return <footer /> }",
        }
    },
    "section-generator": {"files": {"section.tsx": "export default function Section() { return <section /> }"}},
    "page-builder": {"files": {"page.tsx": "export default function Page() { return <main /> }"}},
}


class FakeCompletionClient:
    """
    Stand-in for CompletionClient keyed by the caller's ``purpose``.

    A response can be a dict (returned as JSON), an exception (raised), a
    list (one entry per call, the last one repeats) or a callable, plain or
    async, taking (user_prompt, call_index).
    """

    enabled = True

    def __init__(self, responses: Optional[dict[str, CompletionResponse]] = None):
        self.responses = {**DEFAULT_COMPLETIONS, **(responses or {})}
        self.calls: list[tuple[str, str]] = []

    def count(self, purpose: str) -> int:
        return sum(1 for called, _ in self.calls if called == purpose)

    def prompts(self, purpose: str) -> list[str]:
        return [prompt for called, prompt in self.calls if called == purpose]

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        purpose: str,
        model: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        json_mode: bool = True,
    ) -> Completion:
        index = self.count(purpose)
        self.calls.append((purpose, user_prompt))

        response = self.responses[purpose]
        if isinstance(response, list):
            response = response[min(index, len(response) - 1)]
        if callable(response):
            response = response(user_prompt, index)
        if inspect.isawaitable(response):
            response = await response
        if isinstance(response, Exception):
            raise response
        return Completion(
            content=json.dumps(response),
            model=model or "gpt-4o-mini",
            input_tokens=100,
            output_tokens=50,
        )

    async def aclose(self) -> None:
        pass


class RecordingDispatcher(Dispatcher):
    """Records every dispatch and delivers nothing."""

    def __init__(self) -> None:
        super().__init__(base_url="http://agents.test/api/v1/agents", service_key=None, timeout=5)
        self.sent: list[tuple[str, Envelope]] = []

    async def _send(self, agent_name: str, envelope: Envelope) -> None:
        self.sent.append((agent_name, envelope))

    def agents(self) -> list[str]:
        return [agent_name for agent_name, _ in self.sent]

    def envelopes(self, agent_name: str) -> list[Envelope]:
        return [envelope for name, envelope in self.sent if name == agent_name]


class LoopbackDispatcher(RecordingDispatcher):
    """Runs every dispatched agent in-process, as the task endpoint would."""

    services: Optional[PipelineServices] = None

    async def _send(self, agent_name: str, envelope: Envelope) -> None:
        await super()._send(agent_name, envelope)
        await create_task(agent_name, self.services, envelope).handle()


# ==========================================================================
# Settings & Database
# ==========================================================================

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        OPENAI_API_KEY="test-key",
        BARRIER_POLL_INTERVAL_SECONDS=0.05,
        BARRIER_MAX_WAIT_SECONDS=5,
        FANOUT_MAX_WAIT_SECONDS=5,
        CODEGEN_MODE="chunked",
        FANOUT_WATCHDOG_ENABLED=False,
    )


@pytest_asyncio.fixture(scope="function")
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with all ledger tables created."""
    test_engine = create_engine(test_settings.DATABASE_URL)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ==========================================================================
# Pipeline Fixtures
# ==========================================================================

@pytest.fixture
def llm() -> FakeCompletionClient:
    return FakeCompletionClient()


def make_services(
    test_settings: Settings,
    session_factory,
    dispatcher: Dispatcher,
    llm: FakeCompletionClient,
    **overrides: Any,
) -> PipelineServices:
    config = test_settings.model_copy(update=overrides) if overrides else test_settings
    services = build_services(
        config,
        session_factory=session_factory,
        dispatcher=dispatcher,
        llm=llm,
        providers=Providers.from_settings(config),
    )
    if isinstance(dispatcher, LoopbackDispatcher):
        dispatcher.services = services
    return services


@pytest_asyncio.fixture
async def services(test_settings, session_factory, llm) -> AsyncGenerator[PipelineServices, None]:
    """Services whose dispatches are only recorded."""
    pipeline_services = make_services(test_settings, session_factory, RecordingDispatcher(), llm)
    yield pipeline_services
    await pipeline_services.aclose()


@pytest_asyncio.fixture
async def loopback(test_settings, session_factory, llm) -> AsyncGenerator[PipelineServices, None]:
    """Services that run every dispatched agent in-process."""
    pipeline_services = make_services(test_settings, session_factory, LoopbackDispatcher(), llm)
    yield pipeline_services
    await pipeline_services.aclose()


@pytest_asyncio.fixture
async def paged_loopback(test_settings, session_factory, llm) -> AsyncGenerator[PipelineServices, None]:
    """In-process services generating one page-builder per page."""
    pipeline_services = make_services(
        test_settings, session_factory, LoopbackDispatcher(), llm, CODEGEN_MODE="paged"
    )
    yield pipeline_services
    await pipeline_services.aclose()


@pytest_asyncio.fixture
async def watched_loopback(test_settings, session_factory, llm) -> AsyncGenerator[PipelineServices, None]:
    """In-process services with the code-collector watchdog enabled."""
    pipeline_services = make_services(
        test_settings, session_factory, LoopbackDispatcher(), llm, FANOUT_WATCHDOG_ENABLED=True
    )
    yield pipeline_services
    await pipeline_services.aclose()


@pytest.fixture
def project() -> ProjectData:
    return ProjectData.model_validate(
        {
            "id": "proj-bakery",
            "name": "Crumb & Co",
            "brief": "Website for a family bakery in Berlin",
            "targetAudience": "Neighbours and office workers",
            "packageType": "basic",
            "primaryColor": "#7c2d12",
            "pages": [
                {"id": "page-home", "name": "Home", "slug": "home", "sections": ["hero", "features"]},
                {"id": "page-about", "name": "About", "slug": "about", "sections": ["story"]},
            ],
            "addons": [],
        }
    )


async def create_running_pipeline(services: PipelineServices, project: ProjectData, status) -> UUID:
    """Create a run and walk it to ``status`` through allowed transitions."""
    run = await services.ledger.create_pipeline_run(project, correlation_id="pipe-test-000000")
    path = [
        PipelineStatus.PHASE_1,
        PipelineStatus.PHASE_2,
        PipelineStatus.PHASE_3,
        PipelineStatus.PHASE_4,
        PipelineStatus.PHASE_5,
        PipelineStatus.PHASE_6,
    ]
    if status != PipelineStatus.PENDING:
        for step in path:
            assert await services.ledger.transition(run.id, step)
            if step == status:
                break
    return run.id


def root_envelope(pipeline_run_id: UUID, project: ProjectData, agent_name: str, phase: int, **kwargs: Any) -> Envelope:

    return Envelope(
        meta=EnvelopeMeta(
            pipeline_run_id=pipeline_run_id,
            project_id=project.id,
            correlation_id="pipe-test-000000",
            agent_name=agent_name,
            phase=phase,
            **kwargs,
        ),
        project=project,
    )


# ==========================================================================
# HTTP Client
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def client(session_factory, services: PipelineServices) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and services overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def keyed_client(test_settings, session_factory, llm) -> AsyncGenerator[AsyncClient, None]:
    """Test HTTP client against services that require a service key."""
    keyed = make_services(test_settings, session_factory, RecordingDispatcher(), llm, SERVICE_KEY="svc-secret")

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: keyed

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()
    await keyed.aclose()


# ==========================================================================
# Factory Fixtures
# ==========================================================================

@pytest.fixture
def running_pipeline(services: PipelineServices, project: ProjectData):
    """Factory: create a pipeline run already sitting in a given status."""
    async def factory(
        status: PipelineStatus = PipelineStatus.PHASE_1,
        *,
        on: Optional[PipelineServices] = None,
        for_project: Optional[ProjectData] = None,
    ) -> UUID:
        return await create_running_pipeline(on or services, for_project or project, status)

    return factory


@pytest.fixture
def envelope_for(project: ProjectData):
    """Factory: envelope addressed to one agent of a pipeline run."""
    def factory(
        pipeline_run_id: UUID,
        agent_name: str,
        phase: int,
        *,
        for_project: Optional[ProjectData] = None,
        **meta: Any,
    ) -> Envelope:
        return root_envelope(pipeline_run_id, for_project or project, agent_name, phase, **meta)

    return factory
