"""Shared test fixtures and helpers for theme-orchestrator tests."""

from typing import Any, Optional

from theme_orchestrator.files import InMemoryFileService
from theme_orchestrator.harness import ScriptedProvider
from theme_orchestrator.orchestrator.coordinator import Coordinator
from theme_orchestrator.orchestrator.models import StrategyTier
from theme_orchestrator.orchestrator.strategy import StrategySelector
from theme_orchestrator.providers import AgentSignal, Completion, ToolRequest, Usage

HEADER_LIQUID = (
	'<header class="site-header">\n'
	'  {% if section.settings.show_logo %}\n'
	'    <img src="{{ section.settings.logo | image_url }}">\n'
	'  {% endif %}\n'
	'</header>\n'
	'{% schema %}\n'
	'{"name": "Header", "settings": []}\n'
	'{% endschema %}\n'
)

THEME_FILES = {
	"snippets/a.liquid": "<p>{{ product.title }}</p>\n<span>old</span>\n",
	"sections/header.liquid": HEADER_LIQUID,
	"assets/base.css": ".site-header { color: red; }\n",
	"templates/index.json": '{"sections": {}, "order": []}',
}


def make_files(extra: Optional[dict[str, str]] = None) -> InMemoryFileService:
	"""In-memory theme with a few realistic files."""
	files = dict(THEME_FILES)
	files.update(extra or {})
	return InMemoryFileService(files)


def tool(name: str, reasoning: str = "", cost_cents: float = 0.0, input_tokens: int = 0, **input: Any) -> Completion:
	"""A completion requesting one tool."""
	return Completion(
		reasoning=reasoning,
		tool_call=ToolRequest(name=name, input=input),
		usage=Usage(input_tokens=input_tokens, cost_cents=cost_cents),
	)


def signal(kind: AgentSignal, content: str = "") -> Completion:
	"""A completion carrying only a terminal signal."""
	return Completion(content=content, signal=kind)


def done(content: str = "Done.") -> Completion:
	return signal(AgentSignal.DONE, content)


def make_coordinator(
	planner: list[Completion],
	tier: StrategyTier = StrategyTier.SIMPLE,
	files: Optional[InMemoryFileService] = None,
	scripts: Optional[dict[str, list[Completion]]] = None,
	default: Optional[Completion] = None,
	**kwargs: Any,
) -> tuple[Coordinator, ScriptedProvider, InMemoryFileService]:
	"""Coordinator wired to a scripted provider and an in-memory theme."""
	all_scripts = {"planner": planner}
	all_scripts.update(scripts or {})
	provider = ScriptedProvider(all_scripts, default=default)
	files = files if files is not None else make_files()
	strategy = StrategySelector().for_tier(tier)
	return Coordinator(provider, files, strategy, **kwargs), provider, files


def event_types(events: list) -> list[str]:
	return [event.type for event in events]
