"""
Event contract and the ordered event channel.

The coordinator publishes typed events to an EventChannel. Any number of
consumers subscribe independently; each gets its own unbounded queue so a
slow consumer never blocks the coordinator.
"""

import asyncio
import logging
from typing import Annotated, Any, AsyncIterator, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from ..providers import Usage
from .models import NO_RESULT_TEXT, CamelModel, OutcomeStatus, Run, ToolCall, ToolResult, ValidationIssue
from .tools import classify_tool

logger = logging.getLogger(__name__)


class ThinkingEvent(BaseModel):
	type: Literal["thinking"] = "thinking"
	phase: str
	label: str
	detail: Optional[str] = None
	metadata: Optional[dict[str, Any]] = None
	timestamp_ms: Optional[int] = None


class ReasoningEvent(BaseModel):
	type: Literal["reasoning"] = "reasoning"
	agent: str
	text: str


class ToolCallEvent(BaseModel):
	type: Literal["tool_call"] = "tool_call"
	id: str
	name: str
	input: Optional[dict[str, Any]] = None
	agent: Optional[str] = None
	timestamp_ms: Optional[int] = None


class ToolResultEvent(BaseModel):
	type: Literal["tool_result"] = "tool_result"
	id: str
	content: str
	is_error: bool = False
	elapsed_ms: Optional[int] = None
	agent: Optional[str] = None


class TextChunkEvent(BaseModel):
	type: Literal["text_chunk"] = "text_chunk"
	text: str


class ExecutionOutcomeEvent(CamelModel):
	type: Literal["execution_outcome"] = "execution_outcome"
	outcome: OutcomeStatus
	changed_files: int = 0
	change_summary: Optional[str] = None
	failure_reason: Optional[str] = None
	suggested_action: Optional[str] = None
	failed_tool: Optional[str] = None
	failed_file_path: Optional[str] = None
	validation_issues: Optional[list[ValidationIssue]] = Field(default=None)


Event = Union[
	ThinkingEvent,
	ReasoningEvent,
	ToolCallEvent,
	ToolResultEvent,
	TextChunkEvent,
	ExecutionOutcomeEvent,
]


def event_to_dict(event: Event) -> dict[str, Any]:
	"""Serialize an event the way consumers receive it."""
	return event.model_dump(mode="json", by_alias=True, exclude_none=True)


_EVENT_ADAPTER: TypeAdapter = TypeAdapter(Annotated[Event, Field(discriminator="type")])


def event_from_dict(data: dict[str, Any]) -> Event:
	"""Parse a serialized event (e.g. one line of a captured JSONL stream)."""
	return _EVENT_ADAPTER.validate_python(data)


class ChannelClosedError(Exception):
	"""Raised when publishing to a closed channel."""
	pass


_CLOSED = object()


class Subscription:
	"""Async iterator over one subscriber's queue."""

	def __init__(self, queue: asyncio.Queue):
		self._queue = queue

	def __aiter__(self) -> AsyncIterator[Event]:
		return self

	async def __anext__(self) -> Event:
		item = await self._queue.get()
		if item is _CLOSED:
			raise StopAsyncIteration
		return item


class EventChannel:
	"""
	Ordered, append-only event channel.

	Events are kept in emission order. Subscribers joining late are
	replayed the full history first, so every consumer sees the same
	sequence.
	"""

	def __init__(self):
		self._events: list[Event] = []
		self._queues: list[asyncio.Queue] = []
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	@property
	def events(self) -> list[Event]:
		"""All events published so far."""
		return list(self._events)

	def publish(self, event: Event) -> None:
		"""Append an event and fan it out without blocking."""
		if self._closed:
			raise ChannelClosedError(f"Cannot publish {event.type} after the channel closed")
		self._events.append(event)
		for queue in self._queues:
			queue.put_nowait(event)

	def subscribe(self, replay: bool = True) -> Subscription:
		"""Create an independent subscription."""
		queue: asyncio.Queue = asyncio.Queue()
		if replay:
			for event in self._events:
				queue.put_nowait(event)
		if self._closed:
			queue.put_nowait(_CLOSED)
		else:
			self._queues.append(queue)
		return Subscription(queue)

	def close(self) -> None:
		"""Close the channel; subscriptions end after draining."""
		if self._closed:
			return
		self._closed = True
		for queue in self._queues:
			queue.put_nowait(_CLOSED)
		self._queues.clear()

	def to_dicts(self) -> list[dict[str, Any]]:
		"""Serialize the full event record."""
		return [event_to_dict(event) for event in self._events]


class RunRecorder:
	"""
	Per-run event bookkeeping shared by the coordinator and its sub-agents.

	Owns call ids, the pending-call map and usage totals for exactly one
	run; nothing here is shared across runs.
	"""

	def __init__(self, run: Run, channel: EventChannel):
		self.run = run
		self.channel = channel
		self.pending: dict[str, ToolCall] = {}
		self.calls: list[ToolCall] = []
		self.usage = Usage()
		self._next_id = 0
		self._last_reasoning: dict[str, str] = {}

	def thinking(
		self,
		phase: str,
		label: str,
		detail: Optional[str] = None,
		metadata: Optional[dict[str, Any]] = None,
	) -> None:
		self.channel.publish(ThinkingEvent(
			phase=phase,
			label=label,
			detail=detail,
			metadata=metadata,
			timestamp_ms=self.run.elapsed_ms(),
		))

	def reasoning(self, agent: str, text: str) -> None:
		"""Publish reasoning; it is attached to the agent's next tool call."""
		self._last_reasoning[agent] = text
		self.channel.publish(ReasoningEvent(agent=agent, text=text))

	def text(self, text: str) -> None:
		self.channel.publish(TextChunkEvent(text=text))

	def tool_call(self, name: str, input: dict[str, Any], agent: str = "planner") -> ToolCall:
		"""Register and publish a new tool call."""
		self._next_id += 1
		call = ToolCall(
			id=f"call_{self._next_id}",
			name=name,
			input=input,
			kind=classify_tool(name),
			emitted_at_ms=self.run.elapsed_ms(),
			reasoning=self._last_reasoning.pop(agent, None),
			agent=agent,
		)
		self.pending[call.id] = call
		self.calls.append(call)
		self.channel.publish(ToolCallEvent(
			id=call.id,
			name=name,
			input=input,
			agent=None if agent == "planner" else agent,
			timestamp_ms=call.emitted_at_ms,
		))
		return call

	def tool_result(self, result: ToolResult, agent: str = "planner") -> None:
		"""Resolve a pending call and publish its result."""
		if self.pending.pop(result.id, None) is None:
			logger.warning(f"Result for unknown or already resolved call {result.id}")
			return
		self.channel.publish(ToolResultEvent(
			id=result.id,
			content=result.content,
			is_error=result.is_error,
			elapsed_ms=result.elapsed_ms,
			agent=None if agent == "planner" else agent,
		))

	def flush_pending(self) -> int:
		"""Resolve every unresolved call with an errored placeholder result."""
		flushed = 0
		for call in list(self.pending.values()):
			self.tool_result(
				ToolResult(
					id=call.id,
					content=NO_RESULT_TEXT,
					is_error=True,
					elapsed_ms=max(self.run.elapsed_ms() - call.emitted_at_ms, 0),
				),
				agent=call.agent,
			)
			flushed += 1
		return flushed

	def add_usage(self, usage: Usage) -> None:
		self.usage.add(usage)
