"""
Transcript structuring - turns a captured event stream into an analyzable record.

structure_transcript() is a pure function of its inputs: it reads no
clock and no global state, so the same events always produce the same
transcript.
"""

from typing import Any, Iterable, Optional, Union

from pydantic import Field

from ..providers import Usage
from .events import Event, event_to_dict
from .models import (
	NO_RESULT_TEXT,
	CamelModel,
	Decision,
	Metrics,
	Outcome,
	OutcomeStatus,
	ReasoningBlock,
	ToolKind,
	ValidationIssue,
)
from .tools import classify_tool

MAX_STORED_RESULT = 2000


class TranscriptToolCall(CamelModel):
	id: str
	name: str
	kind: ToolKind = ToolKind.OTHER
	agent: str = "planner"
	input: Optional[dict[str, Any]] = None
	result: str = ""
	is_error: bool = False
	reasoning: Optional[str] = None
	emitted_at_ms: int = 0
	elapsed_ms: int = 0


class Transcript(CamelModel):
	"""Structured record of one run."""
	run_id: str
	scenario: str
	decisions: list[Decision] = Field(default_factory=list)
	tool_sequence: list[TranscriptToolCall] = Field(default_factory=list)
	reasoning_blocks: list[ReasoningBlock] = Field(default_factory=list)
	response_text: str = ""
	outcome: Outcome
	metrics: Metrics

	def to_json(self) -> str:
		return self.model_dump_json(by_alias=True, exclude_none=True)


def truncate_result(text: str, limit: int = MAX_STORED_RESULT) -> str:
	if len(text) <= limit:
		return text
	return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"


def _format_metadata(metadata: Optional[dict[str, Any]]) -> Optional[str]:
	if not metadata:
		return None
	return ", ".join(f"{key}={value}" for key, value in metadata.items())


def _as_dict(event: Union[Event, dict[str, Any]]) -> dict[str, Any]:
	if isinstance(event, dict):
		return event
	return event_to_dict(event)


def _outcome_from(data: Optional[dict[str, Any]]) -> Outcome:
	if data is None:
		return Outcome(status=OutcomeStatus.NO_CHANGE)
	raw_status = data.get("outcome", data.get("status"))
	try:
		status = OutcomeStatus(raw_status)
	except ValueError:
		status = OutcomeStatus.NO_CHANGE
	issues = [
		ValidationIssue.model_validate(issue)
		for issue in data.get("validationIssues") or []
	]
	return Outcome(
		status=status,
		changed_files=int(data.get("changedFiles", 0) or 0),
		change_summary=data.get("changeSummary"),
		failure_reason=data.get("failureReason"),
		suggested_action=data.get("suggestedAction"),
		failed_tool=data.get("failedTool"),
		failed_file_path=data.get("failedFilePath"),
		validation_issues=issues,
	)


def structure_transcript(
	events: Iterable[Union[Event, dict[str, Any]]],
	run_id: str,
	scenario: str,
	elapsed_ms: int = 0,
	usage: Optional[Usage] = None,
) -> Transcript:
	"""
	Structure a captured event stream.

	Args:
		events: Event models or their serialized dicts, in emission order
		run_id: Run identifier
		scenario: Scenario or request label
		elapsed_ms: Wall time of the run, supplied by the caller
		usage: Token and cost totals, supplied by the caller

	Returns:
		Transcript; calls without results are resolved with an errored placeholder
	"""
	decisions: list[Decision] = []
	sequence: list[TranscriptToolCall] = []
	reasoning_blocks: list[ReasoningBlock] = []
	text_parts: list[str] = []
	pending: dict[str, TranscriptToolCall] = {}
	last_reasoning: dict[str, str] = {}
	outcome_data: Optional[dict[str, Any]] = None

	for raw in events:
		event = _as_dict(raw)
		kind = event.get("type")

		if kind == "thinking":
			decisions.append(Decision(
				phase=str(event.get("phase", "")),
				label=str(event.get("label", "")),
				detail=event.get("detail") or _format_metadata(event.get("metadata")),
				timestamp_ms=int(event.get("timestamp_ms") or 0),
			))

		elif kind == "reasoning":
			text = str(event.get("text", ""))
			agent = str(event.get("agent", "planner"))
			if text:
				reasoning_blocks.append(ReasoningBlock(agent=agent, text=text))
				last_reasoning[agent] = text

		elif kind == "tool_call":
			agent = event.get("agent") or "planner"
			name = str(event.get("name", ""))
			call = TranscriptToolCall(
				id=str(event.get("id", "")),
				name=name,
				kind=classify_tool(name),
				agent=agent,
				input=event.get("input"),
				reasoning=last_reasoning.pop(agent, None),
				emitted_at_ms=int(event.get("timestamp_ms") or 0),
			)
			pending[call.id] = call
			# Calls keep emission order; results fill them in by id
			sequence.append(call)

		elif kind == "tool_result":
			call = pending.pop(str(event.get("id", "")), None)
			if call is None:
				continue
			call.result = truncate_result(str(event.get("content", "")))
			call.is_error = bool(event.get("is_error", False))
			call.elapsed_ms = int(event.get("elapsed_ms") or 0)

		elif kind == "text_chunk":
			text_parts.append(str(event.get("text", "")))

		elif kind == "execution_outcome" and outcome_data is None:
			outcome_data = event

	for call in pending.values():
		call.result = NO_RESULT_TEXT
		call.is_error = True

	usage = usage or Usage()
	metrics = Metrics(
		total_tool_calls=len(sequence),
		edit_tool_calls=sum(1 for c in sequence if c.kind == ToolKind.EDIT),
		read_tool_calls=sum(1 for c in sequence if c.kind == ToolKind.READ),
		search_tool_calls=sum(1 for c in sequence if c.kind == ToolKind.SEARCH),
		elapsed_ms=elapsed_ms,
		cost_cents=usage.cost_cents,
		input_tokens=usage.input_tokens,
		output_tokens=usage.output_tokens,
	)

	return Transcript(
		run_id=run_id,
		scenario=scenario,
		decisions=decisions,
		tool_sequence=sequence,
		reasoning_blocks=reasoning_blocks,
		response_text="".join(text_parts),
		outcome=_outcome_from(outcome_data),
		metrics=metrics,
	)
