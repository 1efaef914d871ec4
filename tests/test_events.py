"""Tests for the event contract, the event channel and the run recorder."""

import asyncio

import pytest
from pydantic import ValidationError

from theme_orchestrator.orchestrator.events import (
	ChannelClosedError,
	EventChannel,
	ExecutionOutcomeEvent,
	RunRecorder,
	TextChunkEvent,
	ThinkingEvent,
	ToolCallEvent,
	event_from_dict,
	event_to_dict,
)
from theme_orchestrator.orchestrator.models import NO_RESULT_TEXT, OutcomeStatus, Run, StrategyTier, ToolKind, ToolResult, ValidationIssue
from theme_orchestrator.providers import Usage


def make_recorder():
	channel = EventChannel()
	run = Run(id="r1", tier=StrategyTier.SIMPLE, max_iterations=12)
	return RunRecorder(run, channel), channel


async def collect(subscription):
	return [event async for event in subscription]


class TestEventContract:
	def test_outcome_event_serializes_camel_case(self):
		event = ExecutionOutcomeEvent(
			outcome=OutcomeStatus.BLOCKED_POLICY,
			failed_tool="write_file",
			failed_file_path="README.md",
			validation_issues=[ValidationIssue(gate="scope-boundary", errors=["outside"])],
		)
		data = event_to_dict(event)
		assert data["type"] == "execution_outcome"
		assert data["outcome"] == "blocked-policy"
		assert data["failedFilePath"] == "README.md"
		assert data["validationIssues"] == [{"gate": "scope-boundary", "errors": ["outside"], "changesKept": False}]
		assert "changeSummary" not in data

	def test_round_trip_through_dict(self):
		event = ToolCallEvent(id="call_1", name="read_file", input={"path": "a"}, agent="specialist:css")
		assert event_from_dict(event_to_dict(event)) == event

	def test_unknown_type_rejected(self):
		with pytest.raises(ValidationError):
			event_from_dict({"type": "heartbeat"})

	def test_planner_calls_omit_agent(self):
		data = event_to_dict(ToolCallEvent(id="call_1", name="list_files"))
		assert "agent" not in data


class TestEventChannel:
	@pytest.mark.asyncio
	async def test_subscribers_see_emission_order(self):
		channel = EventChannel()
		first = channel.subscribe()
		channel.publish(TextChunkEvent(text="a"))
		second = channel.subscribe()
		channel.publish(TextChunkEvent(text="b"))
		channel.close()

		assert [e.text for e in await collect(first)] == ["a", "b"]
		assert [e.text for e in await collect(second)] == ["a", "b"]

	@pytest.mark.asyncio
	async def test_subscribe_without_replay(self):
		channel = EventChannel()
		channel.publish(TextChunkEvent(text="old"))
		live = channel.subscribe(replay=False)
		channel.publish(TextChunkEvent(text="new"))
		channel.close()
		assert [e.text for e in await collect(live)] == ["new"]

	@pytest.mark.asyncio
	async def test_subscribe_after_close_replays_and_ends(self):
		channel = EventChannel()
		channel.publish(TextChunkEvent(text="a"))
		channel.close()
		assert [e.text for e in await collect(channel.subscribe())] == ["a"]

	@pytest.mark.asyncio
	async def test_slow_consumer_does_not_block_publisher(self):
		channel = EventChannel()
		subscription = channel.subscribe()
		for i in range(100):
			channel.publish(TextChunkEvent(text=str(i)))
		channel.close()
		events = await asyncio.wait_for(collect(subscription), timeout=1)
		assert len(events) == 100

	def test_publish_after_close_raises(self):
		channel = EventChannel()
		channel.close()
		channel.close()
		assert channel.closed
		with pytest.raises(ChannelClosedError):
			channel.publish(TextChunkEvent(text="late"))

	def test_to_dicts(self):
		channel = EventChannel()
		channel.publish(ThinkingEvent(phase="planning", label="Start"))
		assert channel.to_dicts() == [{"type": "thinking", "phase": "planning", "label": "Start"}]


class TestRunRecorder:
	def test_ids_are_sequential_and_classified(self):
		recorder, channel = make_recorder()
		first = recorder.tool_call("read_file", {"path": "a"})
		second = recorder.tool_call("edit_lines", {"path": "a"}, agent="specialist:liquid")

		assert (first.id, second.id) == ("call_1", "call_2")
		assert first.kind == ToolKind.READ
		assert second.kind == ToolKind.EDIT
		assert set(recorder.pending) == {"call_1", "call_2"}
		assert [e.agent for e in channel.events] == [None, "specialist:liquid"]

	def test_reasoning_attaches_to_same_agents_next_call(self):
		recorder, _ = make_recorder()
		recorder.reasoning("planner", "Plan it")
		recorder.reasoning("specialist:css", "Style it")
		specialist_call = recorder.tool_call("search_replace", {}, agent="specialist:css")
		planner_call = recorder.tool_call("read_file", {})
		later_call = recorder.tool_call("read_file", {})

		assert specialist_call.reasoning == "Style it"
		assert planner_call.reasoning == "Plan it"
		assert later_call.reasoning is None

	def test_result_resolves_once(self):
		recorder, channel = make_recorder()
		call = recorder.tool_call("read_file", {})
		recorder.tool_result(ToolResult(id=call.id, content="ok"))
		recorder.tool_result(ToolResult(id=call.id, content="again"))

		assert recorder.pending == {}
		assert [e.type for e in channel.events] == ["tool_call", "tool_result"]

	def test_flush_pending(self):
		recorder, channel = make_recorder()
		recorder.tool_call("read_file", {})
		recorder.tool_call("grep_content", {}, agent="specialist:css")

		assert recorder.flush_pending() == 2
		assert recorder.pending == {}
		results = [e for e in channel.events if e.type == "tool_result"]
		assert [r.content for r in results] == [NO_RESULT_TEXT, NO_RESULT_TEXT]
		assert all(r.is_error for r in results)
		assert results[1].agent == "specialist:css"
		assert recorder.flush_pending() == 0

	def test_usage_accumulates(self):
		recorder, _ = make_recorder()
		recorder.add_usage(Usage(input_tokens=10, output_tokens=2, cost_cents=0.5))
		recorder.add_usage(Usage(input_tokens=5, cost_cents=0.25))
		assert recorder.usage == Usage(input_tokens=15, output_tokens=2, cost_cents=0.75)
