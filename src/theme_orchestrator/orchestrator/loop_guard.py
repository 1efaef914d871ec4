"""
Loop guard - per-iteration progress checks for the planner loop.

After every planner tool call the coordinator asks the guard whether the
run is still making progress:
- read-only stagnation: several inspection-only iterations in a row get a
  nudge to start editing
- post-edit stagnation: once an edit has been attempted, iterations that
  produce no new change trigger rethink nudges, and the run stops once the
  rethink budget is spent
- finalization: with edits in place and the post-edit tool soft cap
  reached, the planner is asked to finish; the next check finalizes

The guard lives for one run.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import StrategyTier
from .tools import EDIT_TOOLS, INSPECTION_TOOLS, ToolName

logger = logging.getLogger(__name__)

READ_ONLY_LIMIT = {
	StrategyTier.SIMPLE: 3,
	StrategyTier.HYBRID: 3,
	StrategyTier.GOD_MODE: 1,
}
MAX_RETHINKS = {
	StrategyTier.SIMPLE: 1,
	StrategyTier.HYBRID: 2,
	StrategyTier.GOD_MODE: 3,
}
POST_EDIT_STAGNATION_THRESHOLD = 3
POST_EDIT_TOOL_SOFT_CAP = 20
RECENT_TOOLS_SHOWN = 8

INSPECTION_NAMES = frozenset(t.value for t in INSPECTION_TOOLS)
EDIT_ATTEMPT_NAMES = frozenset(t.value for t in EDIT_TOOLS) | {ToolName.RUN_SPECIALIST.value}

NUDGE_READ_ONLY = (
	"You have investigated for {count} iteration(s) without making changes. "
	"Make the edit now with edit_lines or search_replace{delegate}, "
	"or signal no_change or needs_input with your findings. Do not read more files."
)
NUDGE_FINALIZE = (
	"You already have edits in place. Stop exploring and finish now: make at most "
	"one final targeted fix if it is required, then signal done."
)


class GuardVerdict(str, Enum):
	CONTINUE = "continue"
	NUDGE = "nudge"
	STOP = "stop"
	FINALIZE = "finalize"


@dataclass
class GuardAction:
	verdict: GuardVerdict
	label: str = ""
	message: str = ""

	@property
	def is_continue(self) -> bool:
		return self.verdict == GuardVerdict.CONTINUE


CONTINUE = GuardAction(GuardVerdict.CONTINUE)


@dataclass
class LoopGuard:
	"""
	Progress counters for one run.

	Args:
		read_only_limit: Inspection-only iterations before a nudge
		max_rethinks: Rethink nudges before a stagnating run stops
		stagnation_threshold: Post-edit iterations without a new change per rethink
		finalize_soft_cap: Total tool calls, once edits exist, before finalizing
		delegation_allowed: Whether nudges may point at run_specialist
	"""
	read_only_limit: int = 3
	max_rethinks: int = 1
	stagnation_threshold: int = POST_EDIT_STAGNATION_THRESHOLD
	finalize_soft_cap: int = POST_EDIT_TOOL_SOFT_CAP
	delegation_allowed: bool = False

	read_only_iterations: int = 0
	edit_attempted: bool = False
	no_change_iterations: int = 0
	rethinks: int = 0
	finalization_nudged: bool = False
	tool_log: list[str] = field(default_factory=list)
	last_error: Optional[str] = None

	@classmethod
	def for_strategy(cls, strategy) -> "LoopGuard":
		return cls(
			read_only_limit=READ_ONLY_LIMIT[strategy.tier],
			max_rethinks=MAX_RETHINKS[strategy.tier],
			delegation_allowed=strategy.specialist_delegation_allowed,
		)

	def check(
		self,
		tool: str,
		is_error: bool,
		changed: bool,
		has_changes: bool,
		total_tool_calls: int,
		error_text: str = "",
	) -> GuardAction:
		"""
		Observe one planner tool iteration and decide what happens next.

		Args:
			tool: Name of the tool the planner called
			is_error: Whether its result was an error
			changed: Whether the change set grew or changed during the iteration
			has_changes: Whether the run currently holds edits
			total_tool_calls: Tool calls so far, sub-agent calls included
			error_text: Result text when is_error is set
		"""
		self.tool_log.append(f"{tool}:error" if is_error else tool)
		if is_error and tool in EDIT_ATTEMPT_NAMES:
			self.last_error = error_text.splitlines()[0] if error_text else tool

		finalize = self._check_finalization(has_changes, total_tool_calls)
		if not finalize.is_continue:
			return finalize
		read_only = self._check_read_only(tool)
		post_edit = self._check_post_edit(tool, changed)
		if not post_edit.is_continue:
			return post_edit
		return read_only

	def _check_finalization(self, has_changes: bool, total_tool_calls: int) -> GuardAction:
		if not has_changes or total_tool_calls < self.finalize_soft_cap:
			return CONTINUE
		if not self.finalization_nudged:
			self.finalization_nudged = True
			return GuardAction(GuardVerdict.NUDGE, "Finalization nudge", NUDGE_FINALIZE)
		logger.info(f"Post-edit tool budget reached ({total_tool_calls} calls); finalizing")
		return GuardAction(
			GuardVerdict.FINALIZE,
			"Post-edit tool budget reached",
			f"Finalizing after {total_tool_calls} tool calls",
		)

	def _check_read_only(self, tool: str) -> GuardAction:
		if tool not in INSPECTION_NAMES:
			self.read_only_iterations = 0
			return CONTINUE
		self.read_only_iterations += 1
		if self.read_only_iterations < self.read_only_limit:
			return CONTINUE
		count = self.read_only_iterations
		self.read_only_iterations = 0
		delegate = ", delegate with run_specialist" if self.delegation_allowed else ""
		return GuardAction(
			GuardVerdict.NUDGE,
			"Read-only stagnation",
			NUDGE_READ_ONLY.format(count=count, delegate=delegate),
		)

	def _check_post_edit(self, tool: str, changed: bool) -> GuardAction:
		if tool in EDIT_ATTEMPT_NAMES:
			self.edit_attempted = True
		if not self.edit_attempted:
			return CONTINUE
		if changed:
			self.no_change_iterations = 0
			self.rethinks = 0
			return CONTINUE

		self.no_change_iterations += 1
		if self.no_change_iterations < self.stagnation_threshold:
			return CONTINUE

		if self.rethinks < self.max_rethinks:
			self.rethinks += 1
			self.no_change_iterations = 0
			recent = ", ".join(self.tool_log[-RECENT_TOOLS_SHOWN:])
			failure = f"Last failure: {self.last_error}" if self.last_error else "Edits produced no net change"
			return GuardAction(
				GuardVerdict.NUDGE,
				f"Rethinking approach ({self.rethinks}/{self.max_rethinks})",
				(
					f"Rethink ({self.rethinks}/{self.max_rethinks}): the last {self.stagnation_threshold} "
					f"iterations produced no net change.\n"
					f"What you tried: {recent}\n"
					f"{failure}\n\n"
					"Check that the target file and line range are right, re-read the file "
					"if earlier edits changed it, and try a different approach. "
					"Do not repeat the same edit."
				),
			)

		logger.warning(f"Rethink budget of {self.max_rethinks} exhausted without a net change")
		return GuardAction(
			GuardVerdict.STOP,
			"Rethink budget exhausted",
			f"Stopped after {self.max_rethinks} rethink attempt(s) with no net change to the theme",
		)
