"""
Scripted runs - a deterministic completion provider and scenario files.

A scenario is a JSON file naming the request, optional in-memory theme
files and, per agent identity, the completions that agent returns in
order:

	{
		"name": "header-color",
		"request": "Make the header background black",
		"tier": "SIMPLE",
		"files": {"sections/header.liquid": "..."},
		"scripts": {
			"planner": [
				{"tool": {"name": "read_file", "input": {"path": "sections/header.liquid"}}},
				{"signal": "done", "content": "Updated the header"}
			]
		}
	}
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .providers import AgentSignal, Completion, CompletionOptions, ProviderError, ToolRequest, Usage

logger = logging.getLogger(__name__)


def completion_from_dict(data: dict[str, Any]) -> Completion:
	"""Build a Completion from its scenario representation."""
	tool = data.get("tool")
	usage = data.get("usage") or {}
	signal = data.get("signal")
	return Completion(
		content=data.get("content", ""),
		reasoning=data.get("reasoning", ""),
		tool_call=ToolRequest(name=tool["name"], input=dict(tool.get("input") or {})) if tool else None,
		signal=AgentSignal(signal) if signal else None,
		usage=Usage(
			input_tokens=int(usage.get("input_tokens", 0)),
			output_tokens=int(usage.get("output_tokens", 0)),
			cost_cents=float(usage.get("cost_cents", 0.0)),
		),
	)


@dataclass
class ProviderCall:
	"""One recorded complete() call."""
	agent: str
	model: str
	message_count: int
	tool_names: list[str] = field(default_factory=list)
	system: str = ""


class ScriptedProvider:
	"""
	Completion provider that replays scripted completions per agent.

	Agent identities like "specialist:liquid" fall back to the "specialist"
	script when no exact script exists. When a script runs out the default
	completion is returned, or ProviderError is raised if there is none.
	"""

	def __init__(
		self,
		scripts: Optional[dict[str, list[Completion]]] = None,
		default: Optional[Completion] = None,
	):
		self._scripts: dict[str, list[Completion]] = {
			agent: list(completions) for agent, completions in (scripts or {}).items()
		}
		self.default = default
		self.calls: list[ProviderCall] = []

	def add(self, agent: str, *completions: Completion) -> "ScriptedProvider":
		self._scripts.setdefault(agent, []).extend(completions)
		return self

	def remaining(self, agent: str) -> int:
		return len(self._scripts.get(agent, []))

	async def complete(self, messages: list[dict[str, Any]], options: CompletionOptions) -> Completion:
		self.calls.append(ProviderCall(
			agent=options.agent,
			model=options.model,
			message_count=len(messages),
			tool_names=[tool["name"] for tool in options.tools],
			system=next((m["content"] for m in messages if m.get("role") == "system"), ""),
		))

		script = self._scripts.get(options.agent)
		if script is None and ":" in options.agent:
			script = self._scripts.get(options.agent.split(":", 1)[0])

		if script:
			return script.pop(0)
		if self.default is not None:
			return copy.deepcopy(self.default)
		raise ProviderError(f"No scripted completion left for agent '{options.agent}'")


@dataclass
class Scenario:
	"""A scripted, reproducible run."""
	name: str
	request: str
	scripts: dict[str, list[Completion]] = field(default_factory=dict)
	files: dict[str, str] = field(default_factory=dict)
	tier: Optional[str] = None
	plan: str = "agency"

	def provider(self) -> ScriptedProvider:
		return ScriptedProvider({agent: list(items) for agent, items in self.scripts.items()})


def load_scenario(path: str | Path) -> Scenario:
	"""
	Load a scenario file.

	Raises:
		ValueError: If the file is not a valid scenario
	"""
	path = Path(path)
	try:
		data = json.loads(path.read_text(encoding="utf-8"))
	except json.JSONDecodeError as e:
		raise ValueError(f"{path}: invalid JSON ({e.msg})") from e

	if not isinstance(data, dict) or not data.get("request"):
		raise ValueError(f"{path}: scenario must be an object with a 'request'")

	try:
		scripts = {
			agent: [completion_from_dict(item) for item in items]
			for agent, items in (data.get("scripts") or {}).items()
		}
	except (KeyError, TypeError, ValueError) as e:
		raise ValueError(f"{path}: invalid script entry ({e})") from e

	scenario = Scenario(
		name=data.get("name") or path.stem,
		request=data["request"],
		scripts=scripts,
		files=dict(data.get("files") or {}),
		tier=data.get("tier"),
		plan=data.get("plan", "agency"),
	)
	logger.debug(f"Loaded scenario {scenario.name} with scripts for {sorted(scripts)}")
	return scenario
