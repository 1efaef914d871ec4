"""
Run Models - Pydantic schemas for the orchestration record.

Defines runs, tool calls and results, planning decisions, reasoning,
validation issues, outcomes and derived metrics. Outcome-facing models
serialize with camelCase aliases to match the event contract.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NO_RESULT_TEXT = "(no result received)"


class StrategyTier(str, Enum):
	"""Strategy tier governing budget, delegation breadth and models."""
	SIMPLE = "SIMPLE"
	HYBRID = "HYBRID"
	GOD_MODE = "GOD_MODE"


class ToolKind(str, Enum):
	"""Classification of a tool call."""
	EDIT = "edit"
	READ = "read"
	SEARCH = "search"
	OTHER = "other"


class OutcomeStatus(str, Enum):
	"""Closed set of final run statuses."""
	APPLIED = "applied"
	NO_CHANGE = "no-change"
	BLOCKED_POLICY = "blocked-policy"
	NEEDS_INPUT = "needs-input"


class RunStatus(str, Enum):
	"""Lifecycle status of a run."""
	RUNNING = "running"
	TERMINATED = "terminated"


class LoopPhase(str, Enum):
	"""Coordinator state machine phases."""
	PLANNING = "planning"
	TOOL_EXECUTION = "tool_execution"
	OBSERVING = "observing"
	VALIDATING = "validating"
	TERMINATED = "terminated"


class CamelModel(BaseModel):
	"""Base for models that serialize with camelCase keys."""
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ToolCall(BaseModel):
	"""A request to a named tool, emitted by the planner or a sub-agent."""
	id: str = Field(description="Unique within the run")
	name: str
	input: dict[str, Any] = Field(default_factory=dict)
	kind: ToolKind = Field(default=ToolKind.OTHER)
	emitted_at_ms: int = Field(default=0, description="Milliseconds since run start")
	reasoning: Optional[str] = Field(default=None, description="Reasoning preceding the call")
	agent: str = Field(default="planner")


class ToolResult(BaseModel):
	"""Result correlated to exactly one ToolCall by id."""
	id: str
	content: str = ""
	is_error: bool = False
	elapsed_ms: int = 0


class Decision(CamelModel):
	"""A planning checkpoint (a "thinking" event)."""
	phase: str
	label: str
	detail: Optional[str] = None
	metadata: Optional[dict[str, Any]] = None
	timestamp_ms: int = 0


class ReasoningBlock(BaseModel):
	"""Free-text rationale attributed to an agent."""
	agent: str
	text: str


class ValidationIssue(CamelModel):
	"""A failing gate and whether the policy kept the associated edits."""
	gate: str
	errors: list[str] = Field(default_factory=list)
	changes_kept: bool = False


class Outcome(CamelModel):
	"""The single, final result of a run."""
	status: OutcomeStatus
	changed_files: int = 0
	change_summary: Optional[str] = None
	failure_reason: Optional[str] = None
	suggested_action: Optional[str] = None
	failed_tool: Optional[str] = None
	failed_file_path: Optional[str] = None
	validation_issues: list[ValidationIssue] = Field(default_factory=list)


class Metrics(CamelModel):
	"""Derived, read-only summary of a run."""
	total_tool_calls: int = 0
	edit_tool_calls: int = 0
	read_tool_calls: int = 0
	search_tool_calls: int = 0
	elapsed_ms: int = 0
	cost_cents: float = 0.0
	input_tokens: int = 0
	output_tokens: int = 0


@dataclass
class Run:
	"""
	One execution of the loop for a single request.

	Owned by its Coordinator for its whole lifetime.
	"""
	id: str
	tier: StrategyTier
	max_iterations: int
	iteration: int = 0
	status: RunStatus = RunStatus.RUNNING
	phase: LoopPhase = LoopPhase.PLANNING
	started_at: str = field(default_factory=lambda: datetime.now().isoformat())
	_started_monotonic: float = field(default_factory=time.monotonic, repr=False)

	def elapsed_ms(self) -> int:
		"""Milliseconds since the run started."""
		return int((time.monotonic() - self._started_monotonic) * 1000)

	@property
	def is_running(self) -> bool:
		return self.status == RunStatus.RUNNING

	def get_summary(self) -> dict:
		"""Summary used for logging and reporting."""
		return {
			"id": self.id,
			"tier": self.tier.value,
			"iteration": self.iteration,
			"max_iterations": self.max_iterations,
			"status": self.status.value,
			"phase": self.phase.value,
			"started_at": self.started_at,
		}
