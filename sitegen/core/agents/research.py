"""
Phase 1 research agents.

Five independent agents run in parallel. Only the strategist gates the
phase; a failure of any other research agent is recorded and left for the
collector to report, the pipeline carries on without that output.
"""

from typing import Any, ClassVar

from sitegen.core.agents.base import AgentResult, AgentTask
from sitegen.core.pipeline import phases


class ResearchAgent(AgentTask):
    phase = 1
    fails_pipeline = False
    system_prompt: ClassVar[str]
    instructions: ClassVar[str]

    def build_prompt(self) -> str:
        return f"PROJECT:\n{self.project_brief()}\n\nTASK:\n{self.instructions}\n\nRespond with a single JSON object."

    async def execute(self) -> AgentResult:
        data = await self.complete_json(self.system_prompt, self.build_prompt())
        return AgentResult(output=data)


class StrategistAgent(ResearchAgent):
    name = phases.STRATEGIST
    system_prompt = (
        "You are a senior brand strategist planning a small-business website. "
        "You decide positioning, messaging and the structure of every page."
    )
    instructions = (
        "Return {\"positioning\": str, \"valueProposition\": str, \"tone\": str, "
        "\"keyMessages\": [str], \"pages\": [{\"slug\": str, \"goal\": str, \"sections\": "
        "[{\"type\": str, \"purpose\": str}]}], \"callsToAction\": [str]}."
    )


class SeoAgent(ResearchAgent):
    name = phases.SEO
    model_role = "fast"
    system_prompt = "You are an SEO specialist for local and national small-business websites."
    instructions = (
        "Return {\"primaryKeywords\": [str], \"secondaryKeywords\": [str], \"pages\": "
        "[{\"slug\": str, \"title\": str, \"metaDescription\": str, \"h1\": str}], "
        "\"schemaOrgType\": str}. Titles under 60 characters, descriptions under 160."
    )


class LegalAgent(ResearchAgent):
    name = phases.LEGAL
    model_role = "fast"
    system_prompt = (
        "You prepare website legal copy. You are careful about the jurisdiction "
        "of the business and never invent registration numbers."
    )
    instructions = (
        "Return {\"jurisdiction\": str, \"privacyPolicy\": str, \"termsOfService\": str, "
        "\"cookieBanner\": {\"required\": bool, \"text\": str}, \"imprint\": str | null}."
    )


class VisualAgent(ResearchAgent):
    name = phases.VISUAL
    model_role = "fast"
    system_prompt = "You are a visual designer defining a design system for a marketing website."
    instructions = (
        "Use the project's primary and secondary colours when given. Return "
        "{\"palette\": {\"primary\": str, \"secondary\": str, \"accent\": str, \"background\": str, "
        "\"text\": str}, \"typography\": {\"heading\": str, \"body\": str}, \"radius\": str, "
        "\"style\": str}."
    )


class ImageAgent(ResearchAgent):
    """Picks image subjects per page, then resolves them to stock photos when Pexels is configured."""

    name = phases.IMAGE
    model_role = "fast"
    system_prompt = "You are an art director choosing photography for a website."
    instructions = (
        "Return {\"images\": [{\"pageSlug\": str, \"slot\": str, \"query\": str, \"alt\": str}]} "
        "with one hero image per page and at most two more per page."
    )

    async def execute(self) -> AgentResult:
        plan = await self.complete_json(self.system_prompt, self.build_prompt())
        images: list[dict[str, Any]] = plan.get("images") or []

        pexels = self.services.providers.pexels
        if not pexels.enabled:
            return AgentResult(output={"images": images, "source": "queries"})

        resolved = []
        for image in images:
            await self.guard.ensure_active(self.pipeline_run_id, "image:search")
            query = image.get("query")
            photos = await pexels.search(query, per_page=1) if query else []
            resolved.append({**image, **(photos[0] if photos else {})})
        return AgentResult(output={"images": resolved, "source": "pexels"})


RESEARCH_AGENTS = (StrategistAgent, SeoAgent, LegalAgent, VisualAgent, ImageAgent)
