"""
SiteForge Pipeline - Agents
===========================

One task class per agent name. Every task shares the lifecycle in
``base.AgentTask``; ``registry.create_task`` resolves a name to its task.
"""

from sitegen.core.agents.base import AgentResult, AgentTask
from sitegen.core.agents.registry import AGENTS, create_task

__all__ = ["AGENTS", "AgentResult", "AgentTask", "create_task"]
