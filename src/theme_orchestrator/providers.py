"""
Completion provider collaborator.

A provider turns a message list into one Completion. The orchestrator
routes every call through the model router, so a provider only needs to
honor the model named in CompletionOptions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable


class ProviderError(Exception):
	"""Raised when a completion call fails."""
	pass


class AgentSignal(str, Enum):
	"""Terminal signal an agent attaches to a completion."""
	DONE = "done"
	NO_CHANGE = "no_change"
	NEEDS_INPUT = "needs_input"
	REJECT = "reject"


@dataclass
class Usage:
	"""Token and cost accounting for one completion."""
	input_tokens: int = 0
	output_tokens: int = 0
	cost_cents: float = 0.0

	def add(self, other: "Usage") -> None:
		self.input_tokens += other.input_tokens
		self.output_tokens += other.output_tokens
		self.cost_cents += other.cost_cents


@dataclass
class ToolRequest:
	"""A tool invocation requested by the model."""
	name: str
	input: dict[str, Any] = field(default_factory=dict)


@dataclass
class Completion:
	"""
	One model turn.

	A turn may carry narrative text, reasoning, at most one tool request
	and an optional terminal signal.
	"""
	content: str = ""
	reasoning: str = ""
	tool_call: Optional[ToolRequest] = None
	signal: Optional[AgentSignal] = None
	usage: Usage = field(default_factory=Usage)


@dataclass
class CompletionOptions:
	"""Per-call options chosen by the orchestrator."""
	model: str
	agent: str = "planner"
	tools: list[dict[str, Any]] = field(default_factory=list)
	max_tokens: int = 4096


@runtime_checkable
class CompletionProvider(Protocol):
	"""Interface to the external completion collaborator."""

	async def complete(self, messages: list[dict[str, Any]], options: CompletionOptions) -> Completion:
		...
