"""
Agent registry.

Maps the agent names used on the wire to their task classes.
"""

from sitegen.core.agents.base import AgentTask
from sitegen.core.agents.codegen import CODEGEN_AGENTS
from sitegen.core.agents.collector import CollectorAgent
from sitegen.core.agents.content import ContentPackAgent
from sitegen.core.agents.deployer import DeployerAgent
from sitegen.core.agents.editor import EditorAgent
from sitegen.core.agents.integrations import INTEGRATION_AGENTS
from sitegen.core.agents.research import RESEARCH_AGENTS
from sitegen.core.pipeline.services import PipelineServices
from sitegen.core.schemas import Envelope

AGENTS: dict[str, type[AgentTask]] = {
    agent.name: agent
    for agent in (
        *RESEARCH_AGENTS,
        CollectorAgent,
        ContentPackAgent,
        EditorAgent,
        *CODEGEN_AGENTS,
        *INTEGRATION_AGENTS,
        DeployerAgent,
    )
}


def create_task(agent_name: str, services: PipelineServices, envelope: Envelope) -> AgentTask:
    """
    Instantiate the task for one invocation.

    Raises:
        KeyError: Unknown agent name
    """
    try:
        agent_cls = AGENTS[agent_name]
    except KeyError:
        raise KeyError(f"Unknown agent: {agent_name}") from None
    return agent_cls(services, envelope)
