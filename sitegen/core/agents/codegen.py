"""
Phase 4 code generation.

code-renderer writes the project scaffold and launches the fan-out.
shared-components, section-generator and page-builder are fan-out members:
each one, after completing, runs the sibling self-check that may advance
the pipeline. code-collector is the optional watchdog over the final stage.
"""

import json
import re
from typing import Any, Optional

from sitegen.core.agents.base import AgentResult, AgentTask
from sitegen.core.exceptions import MissingUpstreamOutput, UpstreamResponseError
from sitegen.core.pipeline import phases
from sitegen.core.schemas import ControlDirective

CODE_SYSTEM_PROMPT = (
    "You are a senior Next.js engineer. You write production TypeScript React "
    "components with Tailwind CSS classes, no external UI libraries, semantic "
    "HTML and accessible markup. You return code only inside the requested JSON."
)

FANOUT_MEMBER_FAILED = "FANOUT_MEMBER_FAILED"


def pascal_case(value: str) -> str:
    words = re.split(r"[^0-9a-zA-Z]+", value)
    name = "".join(word[:1].upper() + word[1:] for word in words if word)
    return name if name and not name[0].isdigit() else f"X{name}"


def page_route(slug: str) -> str:
    slug = slug.strip("/")
    if slug in ("", "home", "index"):
        return "app/page.tsx"
    return f"app/{slug}/page.tsx"


def find_page_content(content: dict[str, Any], slug: str) -> dict[str, Any]:
    for page in content.get("pages") or []:
        if isinstance(page, dict) and page.get("slug", "").strip("/") == slug.strip("/"):
            return page
    return {}


def extract_files(data: dict[str, Any]) -> dict[str, str]:
    files = data.get("files")
    if not isinstance(files, dict) or not files:
        raise UpstreamResponseError("Completion returned no files")
    return {str(path): str(code) for path, code in files.items()}


# ==========================================================================
# Renderer
# ==========================================================================

class CodeRendererAgent(AgentTask):
    """Writes the scaffold every generated page builds on, then fans out."""

    name = phases.CODE_RENDERER
    phase = 4

    async def execute(self) -> AgentResult:
        content = await self.ledger.load_agent_output(self.pipeline_run_id, phases.CONTENT_PACK)
        if content is None:
            raise MissingUpstreamOutput(phases.CONTENT_PACK)
        design = await self.ledger.load_agent_outputs(self.pipeline_run_id, (phases.VISUAL, phases.SEO))

        files = self.scaffold(content, design.get(phases.VISUAL) or {}, design.get(phases.SEO) or {})
        await self.ledger.upsert_files(
            self.envelope.project.id,
            files,
            pipeline_run_id=self.pipeline_run_id,
            agent_name=self.name,
        )
        project = self.envelope.project
        return AgentResult(
            output={
                "mode": self.services.fanout.mode,
                "files": sorted(files),
                "pages": len(project.pages),
                "sections": project.section_count,
            }
        )

    def scaffold(self, content: dict, visual: dict, seo: dict) -> dict[str, str]:
        project = self.envelope.project
        palette = visual.get("palette") or {}
        primary = palette.get("primary") or project.primary_color or "#1f2937"
        secondary = palette.get("secondary") or project.secondary_color or "#f59e0b"
        typography = visual.get("typography") or {}
        safe_name = re.sub(r"[^a-z0-9-]+", "-", project.name.lower()).strip("-") or "site"
        description = (content.get("global") or {}).get("tagline") or project.brief[:150]

        package_json = {
            "name": safe_name,
            "private": True,
            "scripts": {"dev": "next dev", "build": "next build", "start": "next start"},
            "dependencies": {"next": "14.2.5", "react": "18.3.1", "react-dom": "18.3.1"},
            "devDependencies": {
                "typescript": "5.5.4",
                "tailwindcss": "3.4.7",
                "postcss": "8.4.40",
                "autoprefixer": "10.4.19",
                "@types/react": "18.3.3",
                "@types/node": "20.14.12",
            },
        }
        tailwind = (
            "import type { Config } from 'tailwindcss'\n\n"
            "const config: Config = {\n"
            "  content: ['./app/**/*.{ts,tsx}', './components/**/*.{ts,tsx}'],\n"
            "  theme: {\n"
            "    extend: {\n"
            f"      colors: {{ primary: '{primary}', secondary: '{secondary}' }},\n"
            f"      fontFamily: {{ heading: ['{typography.get('heading', 'Inter')}'], "
            f"body: ['{typography.get('body', 'Inter')}'] }},\n"
            "    },\n"
            "  },\n"
            "}\n\nexport default config\n"
        )
        layout = (
            "import './globals.css'\n"
            "import type { Metadata } from 'next'\n"
            "import Header from '@/components/Header'\n"
            "import Footer from '@/components/Footer'\n\n"
            "export const metadata: Metadata = {\n"
            f"  title: {json.dumps(project.name)},\n"
            f"  description: {json.dumps(description)},\n"
            f"  keywords: {json.dumps(seo.get('primaryKeywords') or [])},\n"
            "}\n\n"
            "export default function RootLayout({ children }: { children: React.ReactNode }) {\n"
            "  return (\n"
            "    <html lang=\"en\">\n"
            "      <body className=\"font-body\">\n"
            "        <Header />\n"
            "        <main>{children}</main>\n"
            "        <Footer />\n"
            "      </body>\n"
            "    </html>\n"
            "  )\n"
            "}\n"
        )
        return {
            "package.json": json.dumps(package_json, indent=2) + "\n",
            "tailwind.config.ts": tailwind,
            "postcss.config.js": "module.exports = { plugins: { tailwindcss: {}, autoprefixer: {} } }\n",
            "app/globals.css": "@tailwind base;\n@tailwind components;\n@tailwind utilities;\n",
            "app/layout.tsx": layout,
            "lib/content.json": json.dumps(content, indent=2) + "\n",
        }

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        launched = await self.services.fanout.launch(self.envelope)
        return ControlDirective(next_phase=4, next_agents=sorted(set(launched)))


# ==========================================================================
# Fan-out Members
# ==========================================================================

class FanOutMember(AgentTask):
    phase = 4

    @property
    def item(self) -> dict[str, Any]:
        return self.envelope.meta.item or {}

    async def load_content(self) -> dict[str, Any]:
        content = await self.ledger.load_agent_output(self.pipeline_run_id, phases.CONTENT_PACK)
        if content is None:
            raise MissingUpstreamOutput(phases.CONTENT_PACK)
        return content

    async def write_files(self, files: dict[str, str]) -> None:
        await self.guard.ensure_active(self.pipeline_run_id, f"{self.name}:write_files")
        await self.ledger.upsert_files(
            self.envelope.project.id,
            files,
            pipeline_run_id=self.pipeline_run_id,
            agent_name=self.name,
        )

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        triggered = await self.services.fanout.member_completed(self.envelope)
        if triggered is None:
            return ControlDirective()
        next_phase = phases.phase_of(triggered)
        return ControlDirective(next_phase=next_phase, next_agents=[triggered])

    async def on_failure(self, code: str, message: str, error: Exception) -> None:
        # Every sibling is mandatory
        await self.controller.fail_pipeline(
            self.pipeline_run_id,
            FANOUT_MEMBER_FAILED,
            f"{self.name} (sequence {self.envelope.meta.sequence}) failed: {message}",
            self.name,
        )


class SharedComponentsAgent(FanOutMember):
    name = phases.SHARED_COMPONENTS

    async def execute(self) -> AgentResult:
        content = await self.load_content()
        project = self.envelope.project
        prompt = (
            f"PROJECT:\n{self.project_brief()}\n\n"
            f"GLOBAL COPY:\n{json.dumps(content.get('global') or {}, indent=2)}\n\n"
            "Write components/Header.tsx (navigation to "
            f"{json.dumps([{'name': p.name, 'href': '/' + p.slug.strip('/')} for p in project.pages])}), "
            "components/Footer.tsx and components/Button.tsx. Return {\"files\": {path: code}}."
        )
        files = extract_files(await self.complete_json(CODE_SYSTEM_PROMPT, prompt, max_tokens=6000))
        await self.write_files(files)
        return AgentResult(output={"files": sorted(files)})


class SectionGeneratorAgent(FanOutMember):
    """One page section as a standalone component."""

    name = phases.SECTION_GENERATOR
    background = True

    def component_name(self) -> str:
        return pascal_case(f"{self.item.get('pageSlug', 'page')} {self.item.get('sectionType', 'section')}") + str(
            self.item.get("sectionIndex", 0)
        )

    async def execute(self) -> AgentResult:
        content = await self.load_content()
        slug = self.item.get("pageSlug", "")
        index = int(self.item.get("sectionIndex", 0))
        sections = find_page_content(content, slug).get("sections") or []
        section_copy = sections[index] if index < len(sections) else {}

        component = self.component_name()
        file_path = f"components/sections/{slug.strip('/') or 'home'}/{component}.tsx"
        prompt = (
            f"PROJECT:\n{self.project_brief()}\n\n"
            f"SECTION TYPE: {self.item.get('sectionType')}\n"
            f"COPY:\n{json.dumps(section_copy, indent=2)}\n\n"
            f"Write a default-exported component named {component} at {file_path}. "
            "Use only the copy above. Return {\"files\": {path: code}}."
        )
        files = extract_files(await self.complete_json(CODE_SYSTEM_PROMPT, prompt))
        # Keep only the requested component path
        code = files.get(file_path) or next(iter(files.values()))
        await self.write_files({file_path: code})
        return AgentResult(
            output={
                "pageId": self.item.get("pageId"),
                "pageSlug": slug,
                "sectionType": self.item.get("sectionType"),
                "sectionIndex": index,
                "component": component,
                "file": file_path,
            }
        )


class PageBuilderAgent(FanOutMember):
    """One route. Composes generated sections, or writes the page whole in paged mode."""

    name = phases.PAGE_BUILDER
    background = True

    async def execute(self) -> AgentResult:
        slug = self.item.get("pageSlug", "")
        route = page_route(slug)
        if self.item.get("source") == "sections":
            sections = await self.page_sections()
            code = self.compose(sections)
            await self.write_files({route: code})
            return AgentResult(output=self._output(route, [s["component"] for s in sections]))

        content = await self.load_content()
        page_copy = find_page_content(content, slug)
        prompt = (
            f"PROJECT:\n{self.project_brief()}\n\n"
            f"PAGE: {self.item.get('pageName')} ({route})\n"
            f"COPY:\n{json.dumps(page_copy, indent=2)}\n\n"
            f"Write {route} as a default-exported page rendering every section of the copy in order, "
            "using '@/components/Button' where a call to action appears. Return {\"files\": {path: code}}."
        )
        files = extract_files(await self.complete_json(CODE_SYSTEM_PROMPT, prompt, max_tokens=8000))
        await self.write_files({route: files.get(route) or next(iter(files.values()))})
        return AgentResult(output=self._output(route, [s.get("type") for s in page_copy.get("sections") or []]))

    async def page_sections(self) -> list[dict[str, Any]]:
        outputs = await self.ledger.load_completed_outputs(self.pipeline_run_id, phases.SECTION_GENERATOR)
        by_index: dict[int, dict[str, Any]] = {}
        for output in outputs:
            if output.get("pageId") == self.item.get("pageId"):
                by_index[int(output.get("sectionIndex", 0))] = output
        return [by_index[index] for index in sorted(by_index)]

    def compose(self, sections: list[dict[str, Any]]) -> str:
        page_name = pascal_case(self.item.get("pageName") or self.item.get("pageSlug") or "Home")
        imports = "\n".join(
            f"import {s['component']} from '@/{s['file'].removesuffix('.tsx')}'" for s in sections
        )
        body = "\n".join(f"      <{s['component']} />" for s in sections)
        return (
            f"{imports}\n\n"
            f"export default function {page_name}Page() {{\n"
            "  return (\n"
            "    <>\n"
            f"{body}\n"
            "    </>\n"
            "  )\n"
            "}\n"
        )

    def _output(self, route: str, sections: list[Optional[str]]) -> dict[str, Any]:
        return {
            "pageId": self.item.get("pageId"),
            "pageSlug": self.item.get("pageSlug"),
            "file": route,
            "sections": sections,
        }


# ==========================================================================
# Watchdog
# ==========================================================================

class CodeCollectorAgent(AgentTask):
    """
    Backstop over the final fan-out stage.

    Polls until every page-builder completed and then attempts the same
    one-time advance the last member attempts, so a lost completion
    dispatch cannot stall the pipeline. Fails the pipeline on a failed
    member or when the budget runs out.
    """

    name = phases.CODE_COLLECTOR
    phase = 4

    async def execute(self) -> AgentResult:
        item = self.envelope.meta.item or {}
        siblings = item.get("siblings") or [phases.PAGE_BUILDER]
        expected = self.envelope.meta.expected_sibling_count or 0
        progress = await self.services.barrier.wait_for_fan_out(self.pipeline_run_id, siblings, expected)
        return AgentResult(output={"completed": progress.completed, "expected": progress.expected})

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        triggered = await self.services.fanout.advance_past_codegen(self.envelope)
        if triggered is None:
            return ControlDirective()
        return ControlDirective(next_phase=phases.phase_of(triggered), next_agents=[triggered])


CODEGEN_AGENTS = (
    CodeRendererAgent,
    SharedComponentsAgent,
    SectionGeneratorAgent,
    PageBuilderAgent,
    CodeCollectorAgent,
)
