"""Tests for the coordinator loop: outcomes, event ordering, validation and cancellation."""

import asyncio

import pytest

from theme_orchestrator.files import InMemoryFileService
from theme_orchestrator.harness import ScriptedProvider
from theme_orchestrator.orchestrator.conversation_arc import ConversationArc, EscalationType
from theme_orchestrator.orchestrator.coordinator import (
	SUGGEST_NARROWER_SCOPE,
	SUGGEST_RETRY,
	Coordinator,
)
from theme_orchestrator.orchestrator.events import ExecutionOutcomeEvent, ToolCallEvent, ToolResultEvent
from theme_orchestrator.orchestrator.loop_guard import LoopGuard
from theme_orchestrator.orchestrator.models import NO_RESULT_TEXT, LoopPhase, OutcomeStatus, RunStatus, StrategyTier
from theme_orchestrator.orchestrator.strategy import StrategyBudgets, StrategySelector
from theme_orchestrator.providers import AgentSignal, Completion, Usage

from .helpers import done, event_types, make_coordinator, make_files, signal, tool


def assert_well_formed(events):
	"""Exactly one outcome, emitted last, and every call resolved exactly once."""
	types = event_types(events)
	assert types.count("execution_outcome") == 1
	assert types[-1] == "execution_outcome"

	call_ids = [e.id for e in events if isinstance(e, ToolCallEvent)]
	result_ids = [e.id for e in events if isinstance(e, ToolResultEvent)]
	assert sorted(call_ids) == sorted(result_ids)
	assert len(set(result_ids)) == len(result_ids)
	for call_id in call_ids:
		call_at = next(i for i, e in enumerate(events) if isinstance(e, ToolCallEvent) and e.id == call_id)
		result_at = next(i for i, e in enumerate(events) if isinstance(e, ToolResultEvent) and e.id == call_id)
		assert call_at < result_at


def outcome_event(events) -> ExecutionOutcomeEvent:
	return events[-1]


class SlowReadFiles(InMemoryFileService):
	"""Theme whose reads never finish."""

	async def read(self, path: str) -> str:
		await asyncio.Event().wait()
		return ""


class BlockingProvider:
	"""Provider whose completions never finish."""

	def __init__(self):
		self.entered = asyncio.Event()

	async def complete(self, messages, options):
		self.entered.set()
		await asyncio.Event().wait()


class BrokenListingFiles(InMemoryFileService):
	async def list_paths(self) -> list[str]:
		raise RuntimeError("listing exploded")


class StallAfterWriteFiles(InMemoryFileService):
	"""Theme whose first write lands, then never acknowledges."""

	def __init__(self, files=None):
		super().__init__(files)
		self.committed = asyncio.Event()

	async def write(self, path: str, content: str) -> None:
		await super().write(path, content)
		if self.committed.is_set():
			return
		self.committed.set()
		await asyncio.Event().wait()


class StallBeforeWriteFiles(InMemoryFileService):
	"""Theme whose writes never start."""

	def __init__(self, files=None):
		super().__init__(files)
		self.entered = asyncio.Event()

	async def write(self, path: str, content: str) -> None:
		self.entered.set()
		await asyncio.Event().wait()


class TestOutcomes:
	@pytest.mark.asyncio
	async def test_happy_path_applies_edit(self):
		coordinator, provider, files = make_coordinator([
			tool("read_file", reasoning="Look at the snippet first", path="snippets/a.liquid"),
			tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="<span>new</span>"),
			done("Replaced the span."),
		])
		result = await coordinator.run("Change the span text to new", run_id="run-1")

		assert result.outcome.status == OutcomeStatus.APPLIED
		assert result.outcome.changed_files == 1
		assert result.outcome.change_summary == "edited snippets/a.liquid"
		assert await files.read("snippets/a.liquid") == "<p>{{ product.title }}</p>\n<span>new</span>\n"

		assert result.metrics.total_tool_calls == 2
		assert result.metrics.read_tool_calls == 1
		assert result.metrics.edit_tool_calls == 1

		events = result.events
		assert_well_formed(events)
		calls = [e for e in events if isinstance(e, ToolCallEvent)]
		assert [c.id for c in calls] == ["call_1", "call_2"]
		assert all(c.agent is None for c in calls)
		assert outcome_event(events).outcome == OutcomeStatus.APPLIED
		assert outcome_event(events).validation_issues is None

		assert result.run.id == "run-1"
		assert result.run.status == RunStatus.TERMINATED
		assert result.run.phase == LoopPhase.TERMINATED
		assert len(provider.calls) == 3

	@pytest.mark.asyncio
	async def test_reasoning_attached_to_next_call(self):
		coordinator, _, _ = make_coordinator([
			tool("read_file", reasoning="Look at the snippet first", path="snippets/a.liquid"),
			done(),
		])
		result = await coordinator.run("Check the snippet")
		reasoning = [e for e in result.events if e.type == "reasoning"]
		assert reasoning[0].agent == "planner"
		assert coordinator._recorder.calls[0].reasoning == "Look at the snippet first"

	@pytest.mark.asyncio
	async def test_out_of_scope_edit_is_blocked_and_restored(self):
		arc = ConversationArc()
		coordinator, _, files = make_coordinator(
			[
				tool("create_file", path="README.md", content="# Theme"),
				done(),
			],
			arc=arc,
		)
		result = await coordinator.run("Document the theme")

		outcome = result.outcome
		assert outcome.status == OutcomeStatus.BLOCKED_POLICY
		assert outcome.failed_tool == "create_file"
		assert outcome.failed_file_path == "README.md"
		assert outcome.suggested_action == "restrict the change to theme files inside the allowed scope"
		assert [i.gate for i in outcome.validation_issues] == ["scope-boundary"]
		assert all(not i.changes_kept for i in outcome.validation_issues)
		assert not await files.exists("README.md")

		assert any(e.type == EscalationType.SCOPE_EXPANSION for e in arc.escalations)
		event = outcome_event(result.events)
		assert event.outcome == OutcomeStatus.BLOCKED_POLICY
		assert event.validation_issues[0].gate == "scope-boundary"
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	@pytest.mark.parametrize("kind", [AgentSignal.DONE, AgentSignal.NO_CHANGE])
	async def test_no_edits_is_no_change(self, kind):
		coordinator, _, _ = make_coordinator([
			tool("read_file", path="assets/base.css"),
			signal(kind, "The header is already red."),
		])
		result = await coordinator.run("Make the header red")

		assert result.outcome.status == OutcomeStatus.NO_CHANGE
		assert result.outcome.changed_files == 0
		assert result.outcome.change_summary == "The header is already red."
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	@pytest.mark.parametrize("kind", [AgentSignal.NEEDS_INPUT, AgentSignal.REJECT])
	async def test_needs_input_signals_roll_back(self, kind):
		coordinator, _, files = make_coordinator([
			tool("write_file", path="assets/base.css", content="body {}"),
			signal(kind, "Which header do you mean?"),
		])
		result = await coordinator.run("Change the header")

		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert result.outcome.failure_reason == "Which header do you mean?"
		assert result.outcome.suggested_action == SUGGEST_NARROWER_SCOPE
		assert await files.read("assets/base.css") == ".site-header { color: red; }\n"

	@pytest.mark.asyncio
	async def test_iteration_cap(self):
		strategy = StrategySelector(StrategyBudgets(simple_max_iterations=3)).for_tier(StrategyTier.SIMPLE)
		provider = ScriptedProvider(default=tool("list_files"))
		coordinator = Coordinator(provider, make_files(), strategy)
		result = await coordinator.run("Keep listing")

		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert result.outcome.suggested_action == SUGGEST_NARROWER_SCOPE
		assert "Iteration budget of 3 exhausted" in result.outcome.failure_reason
		assert len(provider.calls) == 3
		assert result.run.iteration == 3
		assert result.metrics.total_tool_calls == 3
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_provider_failure(self):
		coordinator, _, files = make_coordinator([
			tool("write_file", path="assets/base.css", content="body {}"),
		])
		result = await coordinator.run("Change the css")

		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert result.outcome.failure_reason.startswith("Completion failed: No scripted completion left")
		assert result.outcome.suggested_action == SUGGEST_RETRY
		assert await files.read("assets/base.css") == ".site-header { color: red; }\n"
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_unexpected_error_still_ends_with_outcome(self):
		coordinator, _, _ = make_coordinator([done()], files=BrokenListingFiles())
		result = await coordinator.run("Anything")

		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert result.outcome.failure_reason == "Internal error: listing exploded"
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_tool_errors_are_fed_back(self):
		coordinator, _, _ = make_coordinator([
			tool("read_file", path="snippets/missing.liquid"),
			done(),
		])
		result = await coordinator.run("Read a missing file")

		results = [e for e in result.events if isinstance(e, ToolResultEvent)]
		assert results[0].is_error
		assert "missing.liquid" in results[0].content
		assert result.outcome.status == OutcomeStatus.NO_CHANGE

	@pytest.mark.asyncio
	async def test_single_use(self):
		coordinator, _, _ = make_coordinator([done()])
		await coordinator.run("First")
		with pytest.raises(RuntimeError, match="single-use"):
			await coordinator.run("Second")

	@pytest.mark.asyncio
	async def test_result_to_dict_uses_camel_case(self):
		coordinator, _, _ = make_coordinator([
			tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="<span>x</span>"),
			done(),
		])
		result = await coordinator.run("Edit")
		data = result.to_dict()
		assert data["outcome"]["status"] == "applied"
		assert data["outcome"]["changedFiles"] == 1
		assert data["metrics"]["editToolCalls"] == 1
		assert data["strategy"]["tier"] == "SIMPLE"


class TestValidation:
	@pytest.mark.asyncio
	async def test_correctable_failure_is_retried(self):
		coordinator, provider, files = make_coordinator([
			tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="{% if x %}<span>new</span>"),
			done(),
			tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="<span>new</span>"),
			done("Fixed."),
		])
		result = await coordinator.run("Change the span")

		assert result.outcome.status == OutcomeStatus.APPLIED
		assert await files.read("snippets/a.liquid") == "<p>{{ product.title }}</p>\n<span>new</span>\n"
		labels = [e.label for e in result.events if e.type == "thinking"]
		assert "Edits rolled back for correction" in labels
		# The planner saw the rollback feedback on its retry
		assert provider.calls[2].message_count > provider.calls[1].message_count

	@pytest.mark.asyncio
	async def test_retries_exhausted_blocks(self):
		coordinator, _, files = make_coordinator(
			[
				tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="{% if x %}"),
				done(),
			],
			max_validation_retries=0,
		)
		result = await coordinator.run("Break it")

		outcome = result.outcome
		assert outcome.status == OutcomeStatus.BLOCKED_POLICY
		assert outcome.failed_tool == "edit_lines"
		assert outcome.failed_file_path == "snippets/a.liquid"
		assert "never closed" in outcome.failure_reason
		assert [i.gate for i in outcome.validation_issues] == ["syntax"]
		assert await files.read("snippets/a.liquid") == "<p>{{ product.title }}</p>\n<span>old</span>\n"

	@pytest.mark.asyncio
	async def test_giving_up_after_rollback_is_blocked(self):
		coordinator, _, files = make_coordinator([
			tool("write_file", path="templates/index.json", content="{broken"),
			done(),
			done("I could not fix it."),
		])
		result = await coordinator.run("Change the template")

		assert result.outcome.status == OutcomeStatus.BLOCKED_POLICY
		assert result.outcome.failed_file_path == "templates/index.json"
		assert await files.read("templates/index.json") == '{"sections": {}, "order": []}'


class TestGodModeReview:
	EDIT = [
		tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="<span>new</span>"),
		done(),
	]

	@pytest.mark.asyncio
	async def test_mandatory_review_is_recorded(self):
		coordinator, provider, _ = make_coordinator(
			list(self.EDIT),
			tier=StrategyTier.GOD_MODE,
			scripts={"review": [done("Looks right.")]},
		)
		result = await coordinator.run("Change the span")

		assert result.outcome.status == OutcomeStatus.APPLIED
		calls = [e for e in result.events if isinstance(e, ToolCallEvent)]
		assert [c.name for c in calls] == ["edit_lines", "run_review"]
		review_result = [e for e in result.events if isinstance(e, ToolResultEvent) and e.id == calls[1].id][0]
		assert review_result.content == "Review approved. Looks right."
		assert "review" in [c.agent for c in provider.calls]
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_rejected_review_returns_to_planner(self):
		coordinator, provider, _ = make_coordinator(
			self.EDIT + [done("Checked again.")],
			tier=StrategyTier.GOD_MODE,
			scripts={"review": [signal(AgentSignal.REJECT, "Span text is wrong"), done()]},
		)
		result = await coordinator.run("Change the span")

		assert result.outcome.status == OutcomeStatus.APPLIED
		reviews = [e for e in result.events if isinstance(e, ToolCallEvent) and e.name == "run_review"]
		assert len(reviews) == 2
		first = [e for e in result.events if isinstance(e, ToolResultEvent) and e.id == reviews[0].id][0]
		assert first.is_error
		assert "Span text is wrong" in first.content
		assert [c.agent for c in provider.calls].count("planner") == 3

	@pytest.mark.asyncio
	async def test_planner_review_counts_as_mandatory_review(self):
		coordinator, provider, _ = make_coordinator(
			[self.EDIT[0], tool("run_review", focus="span"), done()],
			tier=StrategyTier.GOD_MODE,
			scripts={"review": [done()]},
		)
		result = await coordinator.run("Change the span")

		assert result.outcome.status == OutcomeStatus.APPLIED
		assert [c.agent for c in provider.calls].count("review") == 1


class TestDelegation:
	@pytest.mark.asyncio
	async def test_hybrid_specialist_edit(self):
		coordinator, _, files = make_coordinator(
			[
				tool("run_specialist", specialist="css", task="Make header text black", affectedFiles=["assets/base.css"]),
				done(),
			],
			tier=StrategyTier.HYBRID,
			scripts={
				"specialist:css": [
					tool("search_replace", path="assets/base.css", search="color: red", replace="color: black"),
					done("Changed the color."),
				],
			},
		)
		result = await coordinator.run("Make the header text black")

		assert result.outcome.status == OutcomeStatus.APPLIED
		assert await files.read("assets/base.css") == ".site-header { color: black; }\n"
		calls = [e for e in result.events if isinstance(e, ToolCallEvent)]
		assert [(c.name, c.agent) for c in calls] == [
			("run_specialist", None),
			("search_replace", "specialist:css"),
		]
		assert [c.id for c in calls] == ["call_1", "call_2"]
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_simple_tier_is_not_offered_delegation(self):
		coordinator, provider, _ = make_coordinator([done()])
		await coordinator.run("Anything")
		assert "run_specialist" not in provider.calls[0].tool_names


class TestCancellation:
	@pytest.mark.asyncio
	async def test_cancel_during_tool_flushes_pending_call(self):
		coordinator, _, _ = make_coordinator(
			[tool("read_file", path="snippets/a.liquid"), done()],
			files=SlowReadFiles({"snippets/a.liquid": "x"}),
		)
		task = asyncio.create_task(coordinator.run("Read slowly"))
		async for event in coordinator.channel.subscribe():
			if event.type == "tool_call":
				break
		coordinator.cancel()
		coordinator.cancel()
		result = await task

		assert coordinator.cancelled
		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert result.outcome.failure_reason == "Run cancelled before completion"
		assert result.outcome.suggested_action == SUGGEST_RETRY
		flushed = [e for e in result.events if isinstance(e, ToolResultEvent)]
		assert len(flushed) == 1
		assert flushed[0].content == NO_RESULT_TEXT
		assert flushed[0].is_error
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_cancel_after_write_landed_restores_file(self):
		files = StallAfterWriteFiles({"assets/base.css": "a {}\n"})
		coordinator, _, _ = make_coordinator(
			[tool("write_file", path="assets/base.css", content="b {}\n"), done()],
			files=files,
		)
		task = asyncio.create_task(coordinator.run("Rewrite the css"))
		await files.committed.wait()
		coordinator.cancel()
		result = await task

		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert await files.read("assets/base.css") == "a {}\n"
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_cancel_before_write_started_leaves_no_file(self):
		files = StallBeforeWriteFiles({"assets/base.css": "a {}\n"})
		coordinator, _, _ = make_coordinator(
			[tool("create_file", path="snippets/new.liquid", content="<p>new</p>"), done()],
			files=files,
		)
		task = asyncio.create_task(coordinator.run("Add a snippet"))
		await files.entered.wait()
		coordinator.cancel()
		result = await task

		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert not await files.exists("snippets/new.liquid")
		assert await files.list_paths() == ["assets/base.css"]

	@pytest.mark.asyncio
	async def test_cancel_before_run(self):
		coordinator, provider, _ = make_coordinator([done()])
		coordinator.cancel()
		result = await coordinator.run("Never mind")
		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert provider.calls == []

	@pytest.mark.asyncio
	async def test_task_cancellation_emits_outcome_then_raises(self):
		provider = BlockingProvider()
		strategy = StrategySelector().for_tier(StrategyTier.SIMPLE)
		coordinator = Coordinator(provider, make_files(), strategy)
		task = asyncio.create_task(coordinator.run("Wait forever"))
		await provider.entered.wait()
		task.cancel()
		with pytest.raises(asyncio.CancelledError):
			await task

		events = coordinator.channel.events
		assert_well_formed(events)
		assert outcome_event(events).outcome == OutcomeStatus.NEEDS_INPUT
		assert coordinator.channel.closed


class TestBudgetsAndPrompt:
	@pytest.mark.asyncio
	async def test_cost_ceiling_stops_before_tool_call(self):
		coordinator, _, _ = make_coordinator(
			[tool("read_file", cost_cents=2.0, path="snippets/a.liquid"), done()],
			max_cost_cents=1.0,
		)
		result = await coordinator.run("Read")

		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert result.outcome.failure_reason == "Cost ceiling of 1.0 cents reached"
		assert not any(isinstance(e, ToolCallEvent) for e in result.events)
		assert result.metrics.cost_cents == 2.0

	@pytest.mark.asyncio
	async def test_input_token_ceiling(self):
		coordinator, _, _ = make_coordinator(
			[tool("read_file", input_tokens=500, path="snippets/a.liquid"), done()],
			max_input_tokens=100,
		)
		result = await coordinator.run("Read")
		assert result.outcome.failure_reason == "Input token ceiling of 100 reached"

	@pytest.mark.asyncio
	async def test_cost_ceiling_stops_specialist_sub_loop(self):
		coordinator, _, _ = make_coordinator(
			[
				tool("run_specialist", specialist="css", task="Recolor the header", affectedFiles=["assets/base.css"]),
				done(),
			],
			tier=StrategyTier.HYBRID,
			scripts={"specialist:css": [tool("read_file", cost_cents=5.0, path="assets/base.css")] * 6},
			max_cost_cents=1.0,
		)
		result = await coordinator.run("Recolor the header")

		calls = [e for e in result.events if isinstance(e, ToolCallEvent)]
		assert [c.name for c in calls] == ["run_specialist"]
		delegation = [e for e in result.events if isinstance(e, ToolResultEvent)][0]
		assert delegation.is_error
		assert "Cost ceiling of 1.0 cents reached" in delegation.content
		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert result.outcome.failure_reason == "Cost ceiling of 1.0 cents reached"
		assert result.metrics.cost_cents == 5.0
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_cost_ceiling_skips_mandatory_review(self):
		coordinator, provider, files = make_coordinator(
			[
				tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="<span>new</span>"),
				Completion(signal=AgentSignal.DONE, usage=Usage(cost_cents=5.0)),
			],
			tier=StrategyTier.GOD_MODE,
			scripts={"review": [done()]},
			max_cost_cents=1.0,
		)
		result = await coordinator.run("Change the span")

		assert [e.name for e in result.events if isinstance(e, ToolCallEvent)] == ["edit_lines"]
		assert "review" not in [c.agent for c in provider.calls]
		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert await files.read("snippets/a.liquid") == "<p>{{ product.title }}</p>\n<span>old</span>\n"

	@pytest.mark.asyncio
	async def test_plan_context_in_system_prompt(self):
		coordinator, provider, _ = make_coordinator([done()], plan_context="Current todo: recolor the header")
		await coordinator.run("Recolor")
		system = provider.calls[0].system
		assert "Current todo: recolor the header" in system
		assert "Strategy: SIMPLE. Iteration budget: 12." in system

	@pytest.mark.asyncio
	async def test_toolless_turn_gets_nudged(self):
		coordinator, provider, _ = make_coordinator([Completion(content="Thinking out loud"), done()])
		result = await coordinator.run("Hmm")
		assert result.outcome.status == OutcomeStatus.NO_CHANGE
		assert provider.calls[1].message_count == provider.calls[0].message_count + 2

	@pytest.mark.asyncio
	async def test_repeated_action_escalates_and_carries_over(self):
		arc = ConversationArc()
		coordinator, _, _ = make_coordinator(
			[tool("list_files"), tool("list_files"), tool("list_files"), done()],
			arc=arc,
		)
		result = await coordinator.run("List")

		labels = [e.label for e in result.events if e.type == "thinking"]
		assert "Escalation: loop_detected" in labels
		assert arc.escalation_factor() == 1.5

		follow_up, provider, _ = make_coordinator([done()], arc=arc)
		await follow_up.run("Try again")
		assert "escalation factor 1.5" in provider.calls[0].system


class TestLoopGuard:
	@pytest.mark.asyncio
	async def test_god_mode_read_gets_nudged(self):
		coordinator, provider, _ = make_coordinator(
			[tool("read_file", path="snippets/a.liquid"), done()],
			tier=StrategyTier.GOD_MODE,
		)
		result = await coordinator.run("Change the span")

		labels = [e.label for e in result.events if e.type == "thinking"]
		assert "Read-only stagnation" in labels
		# assistant turn, tool result, then the nudge
		assert provider.calls[1].message_count == provider.calls[0].message_count + 3

	@pytest.mark.asyncio
	async def test_stagnating_edits_stop_after_rethink(self):
		miss = tool("search_replace", path="snippets/a.liquid", search="absent", replace="x")
		coordinator, provider, files = make_coordinator([
			tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="<span>new</span>"),
			*[miss] * 6,
			done(),
		])
		result = await coordinator.run("Change the span")

		assert result.outcome.status == OutcomeStatus.NEEDS_INPUT
		assert result.outcome.failure_reason == "Stopped after 1 rethink attempt(s) with no net change to the theme"
		assert result.outcome.suggested_action == SUGGEST_NARROWER_SCOPE
		labels = [e.label for e in result.events if e.type == "thinking"]
		assert "Rethinking approach (1/1)" in labels
		assert "Rethink budget exhausted" in labels
		assert len(provider.calls) == 7
		assert await files.read("snippets/a.liquid") == "<p>{{ product.title }}</p>\n<span>old</span>\n"
		assert_well_formed(result.events)

	@pytest.mark.asyncio
	async def test_post_edit_soft_cap_finalizes(self):
		coordinator, provider, files = make_coordinator(
			[
				tool("edit_lines", path="snippets/a.liquid", start_line=2, end_line=2, new_content="<span>new</span>"),
				tool("read_file", path="snippets/a.liquid"),
				tool("read_file", path="assets/base.css"),
			],
			loop_guard=LoopGuard(finalize_soft_cap=2),
		)
		result = await coordinator.run("Change the span")

		assert result.outcome.status == OutcomeStatus.APPLIED
		assert await files.read("snippets/a.liquid") == "<p>{{ product.title }}</p>\n<span>new</span>\n"
		labels = [e.label for e in result.events if e.type == "thinking"]
		assert "Finalization nudge" in labels
		assert "Post-edit tool budget reached" in labels
		assert len(provider.calls) == 3
