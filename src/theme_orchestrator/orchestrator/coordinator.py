"""
Coordinator - the bounded think/act/observe loop for one request.

Phases per iteration:
1. PLANNING: one completion from the planner model
2. TOOL_EXECUTION: at most one tool call, awaited to completion
3. OBSERVING: the result is fed back and the conversation arc is checked
4. VALIDATING: once the planner signals completion and edits exist

Every run ends with exactly one execution_outcome event, emitted last.
Edits that are not finally applied are rolled back.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, TypeVar

from ..files import FileService
from ..providers import AgentSignal, Completion, CompletionOptions, CompletionProvider
from ..scout import StructuralIndex, build_scout_brief
from .conversation_arc import ConversationArc, Escalation, EscalationType
from .events import Event, EventChannel, ExecutionOutcomeEvent, RunRecorder
from .loop_guard import GuardVerdict, LoopGuard
from .model_router import ActionClass, route
from .models import (
	LoopPhase,
	Metrics,
	Outcome,
	OutcomeStatus,
	Run,
	RunStatus,
	ToolKind,
	ToolResult,
)
from .policy import ChangeSet, GateName, OrchestrationPolicy, PolicyReport, gates_for_tier
from .strategy import Strategy
from .subagents import SubAgentRunner, assistant_turn, tool_turn
from .tools import ToolContext, ToolExecutor, ToolName, planner_tools, tool_definitions

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUGGEST_NARROWER_SCOPE = "ask for clarification or narrower scope"
SUGGEST_RETRY = "retry the request"
SUGGEST_RAISE_BUDGET = "narrow the request or raise the budget"

NUDGE_NO_ACTION = (
	"Call exactly one tool, or signal done when edits are complete, "
	"no_change when nothing needs to change, or needs_input to ask the user."
)


class RunCancelled(Exception):
	"""Internal: the run observed a cancellation request."""
	pass


@dataclass
class RunResult:
	"""Everything a caller gets back from one run."""
	run: Run
	strategy: Strategy
	outcome: Outcome
	metrics: Metrics
	events: list[Event]

	def to_dict(self) -> dict[str, Any]:
		return {
			"run": self.run.get_summary(),
			"strategy": self.strategy.to_dict(),
			"outcome": self.outcome.model_dump(mode="json", by_alias=True, exclude_none=True),
			"metrics": self.metrics.model_dump(mode="json", by_alias=True),
		}


class Coordinator:
	"""
	Runs one request under a fixed strategy.

	A Coordinator is single-use: create one per run. Everything scoped to
	the run (pending calls, change set, recorder) lives and dies with it;
	only the ConversationArc may be shared across runs of a conversation.

	Args:
		provider: Completion provider
		file_service: Theme file collaborator
		strategy: Strategy record chosen for this run
		channel: Event channel (a new one by default)
		arc: Conversation arc spanning several runs
		policy: Orchestration policy (default gates and scope by default)
		executor: Tool executor
		scout_index: Structural index for the scout brief
		plan_context: Current plan/todo text injected into planning
		max_validation_retries: Correctable validation failures retried before blocking
		max_input_tokens: Input-token ceiling for the run (0 disables)
		max_cost_cents: Cost ceiling for the run (0 disables)
		loop_guard: Per-iteration progress checks (tier defaults by default)
	"""

	def __init__(
		self,
		provider: CompletionProvider,
		file_service: FileService,
		strategy: Strategy,
		channel: Optional[EventChannel] = None,
		arc: Optional[ConversationArc] = None,
		policy: Optional[OrchestrationPolicy] = None,
		executor: Optional[ToolExecutor] = None,
		scout_index: Optional[StructuralIndex] = None,
		plan_context: Optional[str] = None,
		max_validation_retries: int = 2,
		max_input_tokens: int = 0,
		max_cost_cents: float = 0,
		loop_guard: Optional[LoopGuard] = None,
	):
		self.provider = provider
		self.file_service = file_service
		self.strategy = strategy
		self.channel = channel or EventChannel()
		self.arc = arc or ConversationArc()
		self.policy = policy or OrchestrationPolicy()
		self.executor = executor or ToolExecutor()
		self.scout_index = scout_index
		self.plan_context = plan_context
		self.max_validation_retries = max_validation_retries
		self.max_input_tokens = max_input_tokens
		self.max_cost_cents = max_cost_cents
		self.loop_guard = loop_guard or LoopGuard.for_strategy(strategy)

		self._cancel_event = asyncio.Event()
		self._run: Optional[Run] = None
		self._outcome: Optional[Outcome] = None
		self._recorder: Optional[RunRecorder] = None
		self._changes = ChangeSet()
		self._validation_retries = 0
		self._last_failure: Optional[tuple[str, Optional[str]]] = None
		self._rejected: Optional[tuple[PolicyReport, Optional[str], Optional[str]]] = None

	@classmethod
	def from_config(
		cls,
		config,
		provider: CompletionProvider,
		file_service: FileService,
		strategy: Strategy,
		**kwargs,
	) -> "Coordinator":
		"""Build a coordinator with executor limits and ceilings from Config."""
		kwargs.setdefault("executor", ToolExecutor(
			max_result_chars=config.max_tool_result_chars,
			batch_concurrency=config.batch_read_concurrency,
		))
		kwargs.setdefault("max_validation_retries", config.max_validation_retries)
		kwargs.setdefault("max_input_tokens", config.max_input_tokens)
		kwargs.setdefault("max_cost_cents", config.max_cost_cents)
		return cls(provider, file_service, strategy, **kwargs)

	@property
	def run_state(self) -> Optional[Run]:
		return self._run

	@property
	def cancelled(self) -> bool:
		return self._cancel_event.is_set()

	def cancel(self) -> None:
		"""Request cancellation. Idempotent."""
		if self._cancel_event.is_set():
			return
		logger.info(f"Cancellation requested for run {self._run.id if self._run else '(not started)'}")
		self._cancel_event.set()

	# ── Run ────────────────────────────────────────────────────────────

	async def run(self, request: str, run_id: Optional[str] = None) -> RunResult:
		"""
		Execute the loop for one request.

		Returns:
			RunResult with the final outcome and metrics

		Raises:
			asyncio.CancelledError: The task running this coroutine was cancelled
				(the outcome is emitted first)
		"""
		if self._run is not None:
			raise RuntimeError("Coordinator instances are single-use; create one per run")

		run = Run(
			id=run_id or uuid.uuid4().hex[:12],
			tier=self.strategy.tier,
			max_iterations=self.strategy.max_iterations,
		)
		self._run = run
		recorder = RunRecorder(run, self.channel)
		self._recorder = recorder
		logger.info(f"Run {run.id} started: tier={run.tier.value} max_iterations={run.max_iterations}")

		try:
			outcome = await self._execute(request, run, recorder)
		except RunCancelled:
			outcome = self._cancelled_outcome()
		except asyncio.CancelledError:
			logger.warning(f"Run {run.id} task cancelled")
			await self._finalize(self._cancelled_outcome())
			raise
		except Exception as e:
			# Anything escaping the loop is a defect; the run still ends with an outcome
			logger.exception(f"Run {run.id} failed unexpectedly")
			outcome = Outcome(
				status=OutcomeStatus.NEEDS_INPUT,
				failure_reason=f"Internal error: {e}",
				suggested_action=SUGGEST_RETRY,
			)

		await self._finalize(outcome)
		return RunResult(
			run=run,
			strategy=self.strategy,
			outcome=self._outcome,
			metrics=self.metrics(),
			events=self.channel.events,
		)

	async def _execute(self, request: str, run: Run, recorder: RunRecorder) -> Outcome:
		strategy = self.strategy
		self.arc.add_turn("user")
		recorder.thinking(
			LoopPhase.PLANNING.value,
			"Strategy selected",
			detail=strategy.tier.value,
			metadata={**strategy.to_dict(), "escalationFactor": self.arc.escalation_factor()},
		)

		brief = await build_scout_brief(self.file_service, request, self.scout_index)
		recorder.thinking(
			LoopPhase.PLANNING.value,
			"Scouted theme files",
			detail=brief.reason or None,
			metadata={"candidates": len(brief.candidates), "files": len(brief.all_paths), "degraded": brief.degraded},
		)

		runner = SubAgentRunner(self.provider, self.executor, recorder, budget_check=self._ceiling_reached)
		ctx = ToolContext(
			file_service=self.file_service,
			changes=self._changes,
			strategy=strategy,
			allowed_tools=planner_tools(strategy),
			delegate=runner,
		)
		options = CompletionOptions(
			model=route(ActionClass.PLAN, strategy.tier),
			agent="planner",
			tools=tool_definitions(ctx.allowed_tools),
		)
		messages: list[dict[str, Any]] = [
			{"role": "system", "content": self._system_prompt(brief.to_prompt())},
			{"role": "user", "content": request},
		]
		gates = gates_for_tier(strategy.tier)

		while True:
			self._check_cancelled()
			if run.iteration >= run.max_iterations:
				logger.warning(f"Run {run.id} reached its iteration cap ({run.max_iterations})")
				return self._needs_input(
					f"Iteration budget of {run.max_iterations} exhausted before the change was complete",
					SUGGEST_NARROWER_SCOPE,
				)
			ceiling = self._ceiling_reached()
			if ceiling:
				return self._needs_input(ceiling, SUGGEST_RAISE_BUDGET)

			run.iteration += 1
			run.phase = LoopPhase.PLANNING
			try:
				completion: Completion = await self._race(self.provider.complete(messages, options))
			except RunCancelled:
				raise
			except Exception as e:
				logger.error(f"Planner completion failed on iteration {run.iteration}: {e}")
				return Outcome(
					status=OutcomeStatus.NEEDS_INPUT,
					failure_reason=f"Completion failed: {e}",
					suggested_action=SUGGEST_RETRY,
				)
			recorder.add_usage(completion.usage)

			if completion.reasoning:
				recorder.reasoning("planner", completion.reasoning)
			if completion.content:
				recorder.text(completion.content)

			request_call = completion.tool_call
			if request_call is not None:
				# Budget ceilings are enforced before every new tool call
				self._check_cancelled()
				ceiling = self._ceiling_reached()
				if ceiling:
					return self._needs_input(ceiling, SUGGEST_RAISE_BUDGET)

				version = self._changes.version
				run.phase = LoopPhase.TOOL_EXECUTION
				call = recorder.tool_call(request_call.name, request_call.input)
				result: ToolResult = await self._race(self.executor.execute(call, ctx))
				recorder.tool_result(result)

				run.phase = LoopPhase.OBSERVING
				messages.append(assistant_turn(completion, call))
				messages.append(tool_turn(call, result))
				if result.is_error:
					self._last_failure = (call.name, call.input.get("path"))
				self._observe(call.name, result.is_error, messages)

			signal = completion.signal
			if request_call is not None and signal is None:
				action = self.loop_guard.check(
					call.name,
					result.is_error,
					changed=self._changes.version != version,
					has_changes=bool(self._changes),
					total_tool_calls=len(recorder.calls),
					error_text=result.content if result.is_error else "",
				)
				if action.verdict == GuardVerdict.STOP:
					recorder.thinking(LoopPhase.OBSERVING.value, action.label, detail=action.message)
					return self._needs_input(action.message, SUGGEST_NARROWER_SCOPE)
				if action.verdict == GuardVerdict.NUDGE:
					recorder.thinking(LoopPhase.OBSERVING.value, action.label)
					messages.append({"role": "user", "content": action.message})
				elif action.verdict == GuardVerdict.FINALIZE:
					recorder.thinking(LoopPhase.OBSERVING.value, action.label, detail=action.message)
					signal = AgentSignal.DONE

			if signal is None:
				if request_call is None:
					messages.append(assistant_turn(completion))
					messages.append({"role": "user", "content": NUDGE_NO_ACTION})
				continue

			if signal in (AgentSignal.NEEDS_INPUT, AgentSignal.REJECT):
				return self._needs_input(
					completion.content.strip() or "The planner needs more information",
					SUGGEST_NARROWER_SCOPE,
				)

			if not self._changes:
				if self._rejected is not None:
					# Gave up after a correctable rejection; the earlier edits stay discarded
					return self._blocked_outcome(*self._rejected)
				return Outcome(
					status=OutcomeStatus.NO_CHANGE,
					change_summary=completion.content.strip() or "No changes were needed",
				)

			if strategy.review_required and ctx.review_pending:
				ceiling = self._ceiling_reached()
				if ceiling:
					return self._needs_input(ceiling, SUGGEST_RAISE_BUDGET)
				review = await self._mandatory_review(ctx, messages)
				if review.is_error:
					# Rejected: the planner has to address the review before finishing
					continue

			outcome = await self._validate(gates, messages, run, recorder)
			if outcome is not None:
				return outcome

	async def _mandatory_review(self, ctx: ToolContext, messages: list[dict[str, Any]]) -> ToolResult:
		"""Run the review pass as a recorded run_review tool call."""
		recorder = self._recorder
		recorder.thinking(LoopPhase.VALIDATING.value, "Mandatory review", detail=self._changes.summary())
		self._check_cancelled()
		self._run.phase = LoopPhase.TOOL_EXECUTION
		call = recorder.tool_call(ToolName.RUN_REVIEW.value, {"focus": "final review before validation"})
		result = await self._race(self.executor.execute(call, ctx))
		recorder.tool_result(result)
		self._run.phase = LoopPhase.OBSERVING
		messages.append(assistant_turn(Completion(), call))
		messages.append(tool_turn(call, result))
		self._observe(call.name, result.is_error, messages)
		return result

	async def _validate(
		self,
		gates: list[str],
		messages: list[dict[str, Any]],
		run: Run,
		recorder: RunRecorder,
	) -> Optional[Outcome]:
		"""
		Run the gates. Returns the final outcome, or None when the edits
		were rolled back for a correctable retry.
		"""
		run.phase = LoopPhase.VALIDATING
		report = self.policy.evaluate(self._changes, gates)
		recorder.thinking(
			LoopPhase.VALIDATING.value,
			"Validation gates",
			detail=report.summary,
			metadata={"gates": gates, "blocked": report.blocked, "failed": [r.gate for r in report.failures]},
		)

		if not report.blocked:
			kept = self._changes.paths
			logger.info(f"Run {run.id} applied {len(kept)} file(s); {report.summary}")
			return Outcome(
				status=OutcomeStatus.APPLIED,
				changed_files=len(kept),
				change_summary=self._changes.summary(),
				validation_issues=report.issues(),
			)

		self._record_scope_expansion(report)
		failed_path = report.first_failed_path
		failed_change = self._changes.get(failed_path) if failed_path else None
		failed_tool = failed_change.tool if failed_change else None

		unrestored = await self._changes.rollback(self.file_service)
		if unrestored:
			logger.error(f"Run {run.id} could not restore: {', '.join(unrestored)}")

		can_retry = (
			report.correctable
			and self._validation_retries < self.max_validation_retries
			and run.iteration < run.max_iterations
		)
		if can_retry:
			self._validation_retries += 1
			logger.info(f"Run {run.id} validation retry {self._validation_retries}/{self.max_validation_retries}")
			recorder.thinking(
				LoopPhase.VALIDATING.value,
				"Edits rolled back for correction",
				detail=f"retry {self._validation_retries} of {self.max_validation_retries}",
			)
			messages.append({"role": "user", "content": report.feedback()})
			self._rejected = (report, failed_tool, failed_path)
			return None

		return self._blocked_outcome(report, failed_tool, failed_path)

	def _blocked_outcome(
		self,
		report: PolicyReport,
		failed_tool: Optional[str],
		failed_path: Optional[str],
	) -> Outcome:
		logger.warning(f"Run {self._run.id} blocked by policy: {', '.join(r.gate for r in report.hard_failures)}")
		return Outcome(
			status=OutcomeStatus.BLOCKED_POLICY,
			failure_reason="; ".join(error for r in report.hard_failures for error in r.errors),
			suggested_action=self._blocked_suggestion(report),
			failed_tool=failed_tool,
			failed_file_path=failed_path,
			validation_issues=report.issues(),
		)

	# ── Helpers ────────────────────────────────────────────────────────

	def _system_prompt(self, brief_text: str) -> str:
		strategy = self.strategy
		parts = [
			"You are the planning agent for Shopify theme changes.",
			"Work in small steps: read before editing, call one tool per turn, and signal "
			"done once the requested change is complete, no_change if it already exists, "
			"or needs_input if you cannot proceed without the user.",
			f"Strategy: {strategy.tier.value}. Iteration budget: {strategy.max_iterations}.",
		]
		if strategy.specialist_delegation_allowed:
			parts.append(
				f"You may delegate up to {strategy.max_specialist_calls} edits with run_specialist "
				f"({', '.join(strategy.allowed_specialists)})."
			)
		if strategy.review_required:
			parts.append("A review agent checks all edits before they are validated.")
		factor = self.arc.escalation_factor()
		if factor > 1.0:
			parts.append(
				f"Earlier attempts in this conversation stalled (escalation factor {factor}). "
				"Prefer a different approach from the previous attempts."
			)
		parts.append(brief_text)
		if self.plan_context:
			parts.append(self.plan_context)
		return "\n\n".join(parts)

	def _observe(self, action: str, is_error: bool, messages: list[dict[str, Any]]) -> None:
		"""Append a planner turn to the arc and react to new escalations."""
		action_type = f"{action}:error" if is_error else action
		for escalation in self.arc.add_turn("assistant", action_type):
			self._report_escalation(escalation)
			messages.append({
				"role": "user",
				"content": f"{escalation.details}. Stop and try a different approach.",
			})

	def _report_escalation(self, escalation: Escalation) -> None:
		self._recorder.thinking(
			LoopPhase.OBSERVING.value,
			f"Escalation: {escalation.type.value}",
			detail=escalation.details,
			metadata={"turn": escalation.turn_number, "escalationFactor": self.arc.escalation_factor()},
		)

	def _record_scope_expansion(self, report: PolicyReport) -> None:
		for result in report.hard_failures:
			if result.gate != GateName.SCOPE_BOUNDARY.value:
				continue
			escalation = self.arc.record_escalation(
				EscalationType.SCOPE_EXPANSION,
				f"Edits outside the allowed scope: {', '.join(result.failed_paths)}",
			)
			if escalation:
				self._report_escalation(escalation)

	@staticmethod
	def _blocked_suggestion(report: PolicyReport) -> str:
		if any(r.gate == GateName.SCOPE_BOUNDARY.value for r in report.hard_failures):
			return "restrict the change to theme files inside the allowed scope"
		return "review the validation errors and retry with a narrower change"

	def _needs_input(self, reason: str, suggestion: str) -> Outcome:
		failed_tool, failed_path = self._last_failure or (None, None)
		return Outcome(
			status=OutcomeStatus.NEEDS_INPUT,
			failure_reason=reason,
			suggested_action=suggestion,
			failed_tool=failed_tool,
			failed_file_path=failed_path,
		)

	def _cancelled_outcome(self) -> Outcome:
		return self._needs_input("Run cancelled before completion", SUGGEST_RETRY)

	def _ceiling_reached(self) -> Optional[str]:
		usage = self._recorder.usage
		if self.max_input_tokens and usage.input_tokens >= self.max_input_tokens:
			return f"Input token ceiling of {self.max_input_tokens} reached"
		if self.max_cost_cents and usage.cost_cents >= self.max_cost_cents:
			return f"Cost ceiling of {self.max_cost_cents} cents reached"
		return None

	def _check_cancelled(self) -> None:
		if self._cancel_event.is_set():
			raise RunCancelled()

	async def _race(self, aw: Awaitable[T]) -> T:
		"""Await aw unless cancellation is requested first."""
		self._check_cancelled()
		task = asyncio.ensure_future(aw)
		waiter = asyncio.ensure_future(self._cancel_event.wait())
		try:
			done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
		finally:
			waiter.cancel()
			if not task.done():
				task.cancel()
		if task in done:
			return task.result()
		await asyncio.gather(task, return_exceptions=True)
		raise RunCancelled()

	async def _finalize(self, outcome: Outcome) -> None:
		"""Resolve pending calls, roll back unapplied edits, emit the outcome. Runs once."""
		if self._outcome is not None:
			return
		self._outcome = outcome
		run = self._run
		recorder = self._recorder

		flushed = recorder.flush_pending()
		if flushed:
			logger.info(f"Run {run.id} flushed {flushed} unresolved tool call(s)")

		if outcome.status != OutcomeStatus.APPLIED and self._changes:
			unrestored = await self._changes.rollback(self.file_service)
			if unrestored:
				logger.error(f"Run {run.id} could not restore: {', '.join(unrestored)}")

		run.status = RunStatus.TERMINATED
		run.phase = LoopPhase.TERMINATED
		self.channel.publish(ExecutionOutcomeEvent(
			outcome=outcome.status,
			changed_files=outcome.changed_files,
			change_summary=outcome.change_summary,
			failure_reason=outcome.failure_reason,
			suggested_action=outcome.suggested_action,
			failed_tool=outcome.failed_tool,
			failed_file_path=outcome.failed_file_path,
			validation_issues=outcome.validation_issues or None,
		))
		self.channel.close()
		logger.info(
			f"Run {run.id} finished: {outcome.status.value} after {run.iteration} iterations "
			f"({recorder.usage.input_tokens} in / {recorder.usage.output_tokens} out tokens)"
		)

	def metrics(self) -> Metrics:
		"""Derived metrics for the run so far."""
		recorder = self._recorder
		if recorder is None:
			return Metrics()
		calls = recorder.calls
		return Metrics(
			total_tool_calls=len(calls),
			edit_tool_calls=sum(1 for c in calls if c.kind == ToolKind.EDIT),
			read_tool_calls=sum(1 for c in calls if c.kind == ToolKind.READ),
			search_tool_calls=sum(1 for c in calls if c.kind == ToolKind.SEARCH),
			elapsed_ms=self._run.elapsed_ms(),
			cost_cents=recorder.usage.cost_cents,
			input_tokens=recorder.usage.input_tokens,
			output_tokens=recorder.usage.output_tokens,
		)

