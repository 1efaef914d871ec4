"""
Sub-agents - shallow, synchronously awaited delegation loops.

A specialist or review agent runs its own bounded plan/act/observe cycle
against the parent's file service and change set. Its tool calls are
published to the parent run's channel tagged with the sub-agent identity.
The parent awaits the whole sub-loop and receives one summarized result.

Sub-agents run at depth one and are never offered delegation tools.
"""

import logging
from typing import Any, Callable, Optional

from ..providers import AgentSignal, Completion, CompletionOptions, CompletionProvider
from .events import RunRecorder
from .model_router import ActionClass, route
from .models import ToolCall, ToolResult
from .tools import (
	EDIT_TOOLS,
	INSPECTION_TOOLS,
	DelegationFailure,
	ToolContext,
	ToolExecutor,
	tool_definitions,
)

logger = logging.getLogger(__name__)

SPECIALIST_TOOLS = INSPECTION_TOOLS | EDIT_TOOLS
REVIEW_TOOLS = INSPECTION_TOOLS

SPECIALIST_FOCUS = {
	"liquid": "Liquid templates, sections, snippets and their {% schema %} blocks",
	"javascript": "theme JavaScript assets",
	"css": "theme stylesheets and CSS assets",
	"json": "JSON templates, settings and locale files",
}


def assistant_turn(completion: Completion, call: Optional[ToolCall] = None) -> dict[str, Any]:
	"""Conversation entry for one model turn."""
	message: dict[str, Any] = {"role": "assistant", "content": completion.content}
	if call is not None:
		message["tool_call"] = {"id": call.id, "name": call.name, "input": call.input}
	return message


def tool_turn(call: ToolCall, result: ToolResult) -> dict[str, Any]:
	"""Conversation entry feeding a tool result back to the model."""
	return {
		"role": "tool",
		"tool_call_id": call.id,
		"name": call.name,
		"content": result.content,
		"is_error": result.is_error,
	}


class SubAgentRunner:
	"""
	Runs specialist, review and second-opinion delegations for one run.

	Args:
		provider: Completion provider
		executor: Tool executor shared with the parent
		recorder: Parent run's recorder (events, ids, usage)
		budget_check: Returns a reason once the parent run's token or cost
			ceiling is reached, None otherwise
	"""

	def __init__(
		self,
		provider: CompletionProvider,
		executor: ToolExecutor,
		recorder: RunRecorder,
		budget_check: Optional[Callable[[], Optional[str]]] = None,
	):
		self.provider = provider
		self.executor = executor
		self.recorder = recorder
		self.budget_check = budget_check

	def _check_budget(self, agent: str) -> None:
		if self.budget_check is None:
			return
		reason = self.budget_check()
		if reason:
			logger.warning(f"{agent} stopped: {reason}")
			raise DelegationFailure(f"{agent} stopped: {reason}")

	async def run_specialist(
		self,
		specialist: str,
		task: str,
		affected_files: list[str],
		parent: ToolContext,
	) -> str:
		"""
		Run a specialist sub-loop.

		Returns:
			Summary text for the parent's tool result

		Raises:
			DelegationFailure: The loop errored or exhausted its budget
		"""
		agent = f"specialist:{specialist}"
		ctx = ToolContext(
			file_service=parent.file_service,
			changes=parent.changes,
			strategy=parent.strategy,
			agent=agent,
			depth=parent.depth + 1,
			allowed_tools=SPECIALIST_TOOLS,
			editable_paths=frozenset(affected_files) if affected_files else None,
		)

		scope = ", ".join(affected_files) if affected_files else "any file the task requires"
		system = (
			f"You are the {specialist} specialist for a Shopify theme. "
			f"You work on {SPECIALIST_FOCUS.get(specialist, specialist)}. "
			f"Only edit: {scope}. Read before you edit. "
			"When the task is complete, reply with a short summary of what you changed."
		)
		signal, text = await self._loop(agent, ActionClass.SPECIALIZE, system, task, ctx,
			parent.strategy.specialist_max_iterations)

		if signal == AgentSignal.REJECT:
			raise DelegationFailure(f"{agent} could not complete the task: {text or 'no reason given'}")
		edited = sorted(set(ctx.touched_paths))
		summary = text.strip() or "Done."
		if edited:
			return f"{agent} finished. Edited: {', '.join(edited)}\n{summary}"
		return f"{agent} finished without edits.\n{summary}"

	async def run_review(self, focus: str, parent: ToolContext) -> str:
		"""
		Run the review sub-loop over the current change set.

		Raises:
			DelegationFailure: The reviewer rejected the changes, errored or ran out of budget
		"""
		agent = "review"
		ctx = ToolContext(
			file_service=parent.file_service,
			changes=parent.changes,
			strategy=parent.strategy,
			agent=agent,
			depth=parent.depth + 1,
			allowed_tools=REVIEW_TOOLS,
		)
		system = (
			"You review proposed Shopify theme changes. You cannot edit files. "
			"Finish with DONE to approve, or REJECT with the specific problems to fix."
		)
		prompt = f"Changes: {parent.changes.summary()}\n\n{parent.changes.diff_text()}"
		if focus:
			prompt = f"Focus: {focus}\n\n{prompt}"

		signal, text = await self._loop(agent, ActionClass.REVIEW, system, prompt, ctx,
			parent.strategy.review_max_iterations)

		if signal == AgentSignal.REJECT:
			raise DelegationFailure(f"Review rejected the changes:\n{text or 'no details given'}")
		return f"Review approved. {text.strip()}".strip()

	async def second_opinion(self, question: str, parent: ToolContext) -> str:
		"""One tool-less completion on the review model."""
		self._check_budget("second_opinion")
		options = CompletionOptions(
			model=route(ActionClass.REVIEW, parent.strategy.tier),
			agent="second_opinion",
			max_tokens=2048,
		)
		messages = [
			{"role": "system", "content": "Give a concise, independent second opinion on a Shopify theme question."},
			{"role": "user", "content": question},
		]
		try:
			completion = await self.provider.complete(messages, options)
		except Exception as e:
			raise DelegationFailure(f"Second opinion failed: {e}") from e
		self.recorder.add_usage(completion.usage)
		if completion.reasoning:
			self.recorder.reasoning("second_opinion", completion.reasoning)
		return completion.content.strip() or "(no opinion given)"

	async def _loop(
		self,
		agent: str,
		action: ActionClass,
		system: str,
		prompt: str,
		ctx: ToolContext,
		max_iterations: int,
	) -> tuple[Optional[AgentSignal], str]:
		"""
		Bounded sub-loop. Ends when the agent sends a signal, or replies
		without requesting a tool.
		"""
		options = CompletionOptions(
			model=route(action, ctx.strategy.tier),
			agent=agent,
			tools=tool_definitions(ctx.allowed_tools),
		)
		messages: list[dict[str, Any]] = [
			{"role": "system", "content": system},
			{"role": "user", "content": prompt},
		]
		logger.info(f"{agent} started (budget {max_iterations})")

		for iteration in range(1, max_iterations + 1):
			self._check_budget(agent)
			try:
				completion = await self.provider.complete(messages, options)
			except Exception as e:
				raise DelegationFailure(f"{agent} failed on iteration {iteration}: {e}") from e
			self.recorder.add_usage(completion.usage)

			if completion.reasoning:
				self.recorder.reasoning(agent, completion.reasoning)

			request = completion.tool_call
			if request is not None:
				self._check_budget(agent)
				call = self.recorder.tool_call(request.name, request.input, agent=agent)
				result = await self.executor.execute(call, ctx)
				self.recorder.tool_result(result, agent=agent)
				messages.append(assistant_turn(completion, call))
				messages.append(tool_turn(call, result))

			if completion.signal is not None:
				logger.info(f"{agent} finished with {completion.signal.value} after {iteration} iterations")
				return completion.signal, completion.content
			if request is None:
				return None, completion.content

		raise DelegationFailure(f"{agent} exhausted its budget of {max_iterations} iterations")
