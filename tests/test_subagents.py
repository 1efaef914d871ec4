"""Tests for specialist, review and second-opinion sub-agents."""

import pytest

from theme_orchestrator.harness import ScriptedProvider
from theme_orchestrator.orchestrator.events import EventChannel, RunRecorder, ToolCallEvent, ToolResultEvent
from theme_orchestrator.orchestrator.model_router import Models
from theme_orchestrator.orchestrator.models import Run, StrategyTier
from theme_orchestrator.orchestrator.policy import ChangeSet
from theme_orchestrator.orchestrator.strategy import StrategyBudgets, StrategySelector
from theme_orchestrator.orchestrator.subagents import SubAgentRunner
from theme_orchestrator.orchestrator.tools import DelegationFailure, ToolContext, ToolExecutor
from theme_orchestrator.providers import AgentSignal, Completion

from .helpers import done, make_files, signal, tool


def _setup(scripts, tier=StrategyTier.GOD_MODE, budgets=None):
	provider = ScriptedProvider(scripts)
	channel = EventChannel()
	strategy = StrategySelector(budgets).for_tier(tier)
	recorder = RunRecorder(Run(id="r1", tier=tier, max_iterations=strategy.max_iterations), channel)
	runner = SubAgentRunner(provider, ToolExecutor(), recorder)
	parent = ToolContext(
		file_service=make_files(),
		changes=ChangeSet(),
		strategy=strategy,
		delegate=runner,
	)
	return runner, parent, provider, channel, recorder


class TestSpecialist:
	@pytest.mark.asyncio
	async def test_budget_check_stops_before_tool_call(self):
		runner, parent, provider, channel, _ = _setup({
			"specialist:css": [tool("read_file", path="assets/base.css"), done()],
		})
		runner.budget_check = lambda: "Cost ceiling of 1.0 cents reached" if provider.calls else None

		with pytest.raises(DelegationFailure, match="specialist:css stopped: Cost ceiling of 1.0 cents reached"):
			await runner.run_specialist("css", "Recolor", ["assets/base.css"], parent)
		assert len(provider.calls) == 1
		assert not any(isinstance(e, ToolCallEvent) for e in channel.events)

	@pytest.mark.asyncio
	async def test_budget_check_blocks_second_opinion(self):
		runner, parent, provider, _, _ = _setup({"second_opinion": [done("Use a CSS variable.")]})
		runner.budget_check = lambda: "Input token ceiling of 100 reached"
		with pytest.raises(DelegationFailure, match="Input token ceiling"):
			await runner.second_opinion("Variable or hard-coded color?", parent)
		assert provider.calls == []

	@pytest.mark.asyncio
	async def test_specialist_edits_and_reports(self):
		runner, parent, provider, channel, _ = _setup({
			"specialist:css": [
				tool("read_file", reasoning="Check the header rule", path="assets/base.css"),
				tool("search_replace", path="assets/base.css", search="color: red", replace="color: black"),
				done("Header text is now black."),
			],
		})
		summary = await runner.run_specialist("css", "Make header text black", ["assets/base.css"], parent)

		assert summary.startswith("specialist:css finished. Edited: assets/base.css")
		assert "Header text is now black." in summary
		assert parent.changes.get("assets/base.css").agent == "specialist:css"
		assert await parent.file_service.read("assets/base.css") == ".site-header { color: black; }\n"

		calls = [e for e in channel.events if isinstance(e, ToolCallEvent)]
		assert [c.agent for c in calls] == ["specialist:css", "specialist:css"]
		assert provider.calls[0].model == Models.SONNET

	@pytest.mark.asyncio
	async def test_specialist_cannot_edit_outside_affected_files(self):
		runner, parent, _, _, recorder = _setup({
			"specialist:css": [
				tool("write_file", path="snippets/a.liquid", content="x"),
				done(),
			],
		})
		summary = await runner.run_specialist("css", "task", ["assets/base.css"], parent)
		assert "without edits" in summary
		assert not parent.changes
		assert recorder.pending == {}

	@pytest.mark.asyncio
	async def test_specialist_is_not_offered_delegation_tools(self):
		runner, parent, provider, _, _ = _setup({"specialist:liquid": [done()]})
		await runner.run_specialist("liquid", "task", [], parent)
		offered = set(provider.calls[0].tool_names)
		assert "run_specialist" not in offered
		assert "run_review" not in offered
		assert "get_second_opinion" not in offered
		assert "edit_lines" in offered

	@pytest.mark.asyncio
	async def test_nested_delegation_attempt_is_rejected(self):
		runner, parent, _, channel, _ = _setup({
			"specialist:liquid": [
				tool("run_specialist", specialist="css", task="nested"),
				done(),
			],
		})
		await runner.run_specialist("liquid", "task", [], parent)
		results = [e for e in channel.events if isinstance(e, ToolResultEvent)]
		assert results[0].is_error
		assert "delegation depth is limited to one level" in results[0].content

	@pytest.mark.asyncio
	async def test_budget_exhaustion_fails_delegation(self):
		budgets = StrategyBudgets(specialist_max_iterations=2)
		runner, parent, _, _, _ = _setup({
			"specialist:css": [
				tool("read_file", path="assets/base.css"),
				tool("read_file", path="assets/base.css"),
				tool("read_file", path="assets/base.css"),
			],
		}, budgets=budgets)
		with pytest.raises(DelegationFailure, match="exhausted its budget of 2"):
			await runner.run_specialist("css", "task", ["assets/base.css"], parent)

	@pytest.mark.asyncio
	async def test_provider_failure_fails_delegation(self):
		runner, parent, _, _, _ = _setup({})
		with pytest.raises(DelegationFailure, match="failed on iteration 1"):
			await runner.run_specialist("css", "task", ["assets/base.css"], parent)

	@pytest.mark.asyncio
	async def test_reject_fails_delegation(self):
		runner, parent, _, _, _ = _setup({"specialist:json": [signal(AgentSignal.REJECT, "Not a JSON change")]})
		with pytest.raises(DelegationFailure, match="Not a JSON change"):
			await runner.run_specialist("json", "task", ["templates/index.json"], parent)


class TestReview:
	@pytest.mark.asyncio
	async def test_review_approves(self):
		runner, parent, provider, _, _ = _setup({"review": [done("Looks correct.")]})
		parent.changes.record("snippets/a.liquid", "a", "b", "write_file")
		summary = await runner.run_review("", parent)
		assert summary == "Review approved. Looks correct."
		assert provider.calls[0].model == Models.OPUS

	@pytest.mark.asyncio
	async def test_review_is_read_only(self):
		runner, parent, provider, channel, _ = _setup({
			"review": [
				tool("write_file", path="snippets/a.liquid", content="hacked"),
				done(),
			],
		})
		parent.changes.record("snippets/a.liquid", "a", "b", "write_file")
		await runner.run_review("", parent)
		assert "write_file" not in provider.calls[0].tool_names
		result = [e for e in channel.events if isinstance(e, ToolResultEvent)][0]
		assert result.is_error
		assert await parent.file_service.read("snippets/a.liquid") != "hacked"

	@pytest.mark.asyncio
	async def test_review_rejection(self):
		runner, parent, _, _, _ = _setup({"review": [signal(AgentSignal.REJECT, "Missing endif")]})
		parent.changes.record("snippets/a.liquid", "a", "{% if %}", "write_file")
		with pytest.raises(DelegationFailure, match="Review rejected the changes:\nMissing endif"):
			await runner.run_review("", parent)


class TestSecondOpinion:
	@pytest.mark.asyncio
	async def test_single_toolless_completion(self):
		runner, parent, provider, _, recorder = _setup(
			{"second_opinion": [Completion(content=" Use a snippet. ", reasoning="Reuse")]},
			tier=StrategyTier.HYBRID,
		)
		answer = await runner.second_opinion("Snippet or section?", parent)
		assert answer == "Use a snippet."
		assert provider.calls[0].tool_names == []
		assert provider.calls[0].model == Models.SONNET
		assert recorder.calls == []
