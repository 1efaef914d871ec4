"""
Orchestration Policy - validation gates for proposed edits.

Edits are not self-verified. Once the planner signals completion, named
gates run against the change set:
- syntax: Liquid tag balance, JSON parse, CSS/JS bracket balance
- scope-boundary: edited paths must fall inside the allowed theme scope
- schema: section schema blocks and JSON templates
- truncation: files that lost most of their content

A gate that fails with changes_kept=False is a hard failure and the run's
edits are rolled back. Soft failures (changes_kept=True) are reported as
validation issues while the edits stand.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from typing import Iterable, Optional, Protocol

from ..files import FileService, FileServiceError
from .models import StrategyTier, ValidationIssue

logger = logging.getLogger(__name__)


class GateName(str, Enum):
	SYNTAX = "syntax"
	SCOPE_BOUNDARY = "scope-boundary"
	SCHEMA = "schema"
	TRUNCATION = "truncation"


GATES_BY_TIER: dict[StrategyTier, tuple[GateName, ...]] = {
	StrategyTier.SIMPLE: (GateName.SYNTAX, GateName.SCOPE_BOUNDARY),
	StrategyTier.HYBRID: (GateName.SYNTAX, GateName.SCOPE_BOUNDARY, GateName.SCHEMA),
	StrategyTier.GOD_MODE: (GateName.SYNTAX, GateName.SCOPE_BOUNDARY, GateName.SCHEMA, GateName.TRUNCATION),
}

DEFAULT_SCOPE = (
	"layout/*",
	"templates/*",
	"sections/*",
	"snippets/*",
	"blocks/*",
	"assets/*",
	"config/*",
	"locales/*",
)


def gates_for_tier(tier: StrategyTier) -> list[str]:
	"""Gate names run for a tier, in evaluation order."""
	return [gate.value for gate in GATES_BY_TIER[tier]]


# ── Change tracking ────────────────────────────────────────────────────────

@dataclass
class FileChange:
	"""
	One file touched during a run.

	original is None when the run created the file; proposed is None when
	the run deleted it.
	"""
	path: str
	original: Optional[str]
	proposed: Optional[str]
	tool: str
	agent: str = "planner"

	@property
	def created(self) -> bool:
		return self.original is None

	@property
	def deleted(self) -> bool:
		return self.proposed is None


class ChangeSet:
	"""
	Pre-edit and current content for every path edited in a run.

	The first original for a path is kept so rollback always restores the
	pre-run content.
	"""

	def __init__(self):
		self._changes: dict[str, FileChange] = {}
		self.version = 0

	def record(
		self,
		path: str,
		original: Optional[str],
		proposed: Optional[str],
		tool: str,
		agent: str = "planner",
	) -> None:
		existing = self._changes.get(path)
		if existing is None:
			self._changes[path] = FileChange(path, original, proposed, tool, agent)
		else:
			existing.proposed = proposed
			existing.tool = tool
			existing.agent = agent
		self.version += 1

	def get(self, path: str) -> Optional[FileChange]:
		return self._changes.get(path)

	@property
	def paths(self) -> list[str]:
		return list(self._changes)

	def changes(self) -> list[FileChange]:
		return list(self._changes.values())

	def __len__(self) -> int:
		return len(self._changes)

	def __bool__(self) -> bool:
		return bool(self._changes)

	def summary(self) -> str:
		"""Short human-readable description of the change set."""
		parts = []
		for change in self._changes.values():
			if change.created:
				parts.append(f"created {change.path}")
			elif change.deleted:
				parts.append(f"deleted {change.path}")
			else:
				parts.append(f"edited {change.path}")
		return ", ".join(parts)

	def diff_text(self, max_chars: int = 6000) -> str:
		"""Before/after listing used for review prompts."""
		blocks = []
		for change in self._changes.values():
			blocks.append(f"### {change.path} ({change.tool} by {change.agent})")
			if change.deleted:
				blocks.append("(deleted)")
			else:
				blocks.append(change.proposed or "")
		text = "\n".join(blocks)
		if len(text) > max_chars:
			text = text[:max_chars] + "\n... (truncated)"
		return text

	async def rollback(self, file_service: FileService) -> list[str]:
		"""
		Restore every path to its pre-run content and clear the set.

		Returns:
			Paths that could not be restored
		"""
		failed = []
		for change in reversed(list(self._changes.values())):
			try:
				if change.created:
					if await file_service.exists(change.path):
						await file_service.delete(change.path)
				else:
					await file_service.write(change.path, change.original)
			except FileServiceError as e:
				logger.error(f"Rollback of {change.path} failed: {e}")
				failed.append(change.path)
		self._changes.clear()
		self.version += 1
		return failed


# ── Gates ──────────────────────────────────────────────────────────────────

@dataclass
class GateResult:
	"""Result of a single gate."""
	gate: str
	errors: list[str] = field(default_factory=list)
	changes_kept: bool = True
	correctable: bool = True
	failed_paths: list[str] = field(default_factory=list)

	@property
	def passed(self) -> bool:
		return not self.errors


class Gate(Protocol):
	name: str

	def check(self, changes: list[FileChange]) -> GateResult:
		...


LIQUID_TAG_PATTERN = re.compile(r"\{%-?\s*(\w+)")
LIQUID_BLOCK_TAGS = {
	"if", "unless", "for", "case", "capture", "form", "paginate", "schema", "style",
	"stylesheet", "javascript", "comment", "raw", "tablerow",
}
# Tags whose bodies are not parsed as Liquid
LIQUID_OPAQUE_TAGS = {"comment", "raw", "schema", "javascript", "stylesheet"}
LEADING_COMMENT_PATTERN = re.compile(r"^\s*/\*.*?\*/", re.DOTALL)
BRACKET_PAIRS = {")": "(", "]": "[", "}": "{"}


def _check_liquid(content: str) -> list[str]:
	errors = []
	if content.count("{%") != content.count("%}"):
		errors.append("unbalanced '{%' / '%}' delimiters")
	if content.count("{{") != content.count("}}"):
		errors.append("unbalanced '{{' / '}}' delimiters")

	stack: list[str] = []
	for match in LIQUID_TAG_PATTERN.finditer(content):
		tag = match.group(1)
		if stack and stack[-1] in LIQUID_OPAQUE_TAGS and tag != f"end{stack[-1]}":
			continue
		if tag in LIQUID_BLOCK_TAGS:
			stack.append(tag)
		elif tag.startswith("end") and tag[3:] in LIQUID_BLOCK_TAGS:
			opener = tag[3:]
			if not stack:
				errors.append(f"'{{% {tag} %}}' without matching '{{% {opener} %}}'")
			elif stack[-1] != opener:
				errors.append(f"'{{% {tag} %}}' closes '{{% {stack[-1]} %}}'")
				stack.pop()
			else:
				stack.pop()
	for tag in stack:
		errors.append(f"'{{% {tag} %}}' is never closed")
	return errors


def _check_json(content: str) -> list[str]:
	# Shopify JSON templates may start with a generated block comment
	stripped = LEADING_COMMENT_PATTERN.sub("", content, count=1)
	try:
		json.loads(stripped)
	except json.JSONDecodeError as e:
		return [f"invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})"]
	return []


def _check_brackets(content: str, line_comments: bool) -> list[str]:
	stack: list[str] = []
	i = 0
	n = len(content)
	while i < n:
		ch = content[i]
		nxt = content[i + 1] if i + 1 < n else ""
		if ch == "/" and nxt == "*":
			end = content.find("*/", i + 2)
			if end == -1:
				return ["unterminated block comment"]
			i = end + 2
			continue
		if line_comments and ch == "/" and nxt == "/":
			end = content.find("\n", i)
			i = n if end == -1 else end + 1
			continue
		if ch in "\"'`":
			i += 1
			while i < n and content[i] != ch:
				if content[i] == "\\":
					i += 1
				elif content[i] == "\n" and ch != "`":
					break
				i += 1
			i += 1
			continue
		if ch in "([{":
			stack.append(ch)
		elif ch in BRACKET_PAIRS:
			if not stack or stack[-1] != BRACKET_PAIRS[ch]:
				return [f"unexpected '{ch}' at offset {i}"]
			stack.pop()
		i += 1
	if stack:
		return [f"unclosed '{stack[-1]}'"]
	return []


class SyntaxGate:
	"""Hard, correctable gate on file syntax."""

	name = GateName.SYNTAX.value

	def check(self, changes: list[FileChange]) -> GateResult:
		result = GateResult(gate=self.name)
		for change in changes:
			if change.deleted:
				continue
			errors = self.check_content(change.path, change.proposed)
			if errors:
				result.errors.extend(f"{change.path}: {error}" for error in errors)
				result.failed_paths.append(change.path)
		if result.errors:
			result.changes_kept = False
		return result

	@staticmethod
	def check_content(path: str, content: str) -> list[str]:
		lower = path.lower()
		if lower.endswith(".liquid"):
			errors = _check_liquid(content)
			# CSS and JS assets rendered through Liquid
			if lower.endswith((".css.liquid", ".scss.liquid", ".js.liquid")) and not errors:
				errors = _check_brackets(content, line_comments=lower.endswith(".js.liquid"))
			return errors
		if lower.endswith(".json"):
			return _check_json(content)
		if lower.endswith((".css", ".scss")):
			return _check_brackets(content, line_comments=lower.endswith(".scss"))
		if lower.endswith(".js"):
			return _check_brackets(content, line_comments=True)
		return []


class ScopeBoundaryGate:
	"""Hard, non-correctable gate: edits must stay inside the allowed scope."""

	name = GateName.SCOPE_BOUNDARY.value

	def __init__(self, allowed: Optional[Iterable[str]] = None):
		self.allowed = tuple(allowed) if allowed is not None else DEFAULT_SCOPE

	def in_scope(self, path: str) -> bool:
		return any(fnmatchcase(path, pattern) for pattern in self.allowed)

	def check(self, changes: list[FileChange]) -> GateResult:
		result = GateResult(gate=self.name, correctable=False)
		for change in changes:
			if not self.in_scope(change.path):
				result.errors.append(f"{change.path} is outside the allowed scope ({', '.join(self.allowed)})")
				result.failed_paths.append(change.path)
		if result.errors:
			result.changes_kept = False
		return result


SCHEMA_BLOCK_PATTERN = re.compile(r"\{%-?\s*schema\s*-?%\}(.*?)\{%-?\s*endschema\s*-?%\}", re.DOTALL)


class SchemaGate:
	"""
	Section schema and JSON template checks.

	Invalid schema JSON is hard; a schema without a name is only a warning.
	"""

	name = GateName.SCHEMA.value

	def check(self, changes: list[FileChange]) -> GateResult:
		hard: list[str] = []
		soft: list[str] = []
		failed_paths: list[str] = []

		for change in changes:
			if change.deleted:
				continue
			path = change.path
			if path.startswith(("sections/", "blocks/")) and path.endswith(".liquid"):
				match = SCHEMA_BLOCK_PATTERN.search(change.proposed)
				if not match:
					continue
				try:
					schema = json.loads(match.group(1))
				except json.JSONDecodeError as e:
					hard.append(f"{path}: schema is not valid JSON ({e.msg})")
					failed_paths.append(path)
					continue
				if not isinstance(schema, dict):
					hard.append(f"{path}: schema must be a JSON object")
					failed_paths.append(path)
				elif path.startswith("sections/") and not schema.get("name"):
					soft.append(f"{path}: schema has no name")
					failed_paths.append(path)

			elif path.startswith("templates/") and path.endswith(".json"):
				try:
					template = json.loads(LEADING_COMMENT_PATTERN.sub("", change.proposed, count=1))
				except json.JSONDecodeError:
					# Reported by the syntax gate
					continue
				if not isinstance(template, dict) or "sections" not in template:
					hard.append(f"{path}: JSON template must be an object with 'sections'")
					failed_paths.append(path)

		return GateResult(
			gate=self.name,
			errors=hard + soft,
			changes_kept=not hard,
			failed_paths=failed_paths,
		)


class TruncationGate:
	"""Soft gate flagging files that lost most of their content."""

	name = GateName.TRUNCATION.value

	def __init__(self, min_original_chars: int = 400, min_ratio: float = 0.5):
		self.min_original_chars = min_original_chars
		self.min_ratio = min_ratio

	def check(self, changes: list[FileChange]) -> GateResult:
		result = GateResult(gate=self.name)
		for change in changes:
			if change.created or change.deleted:
				continue
			before = len(change.original)
			if before < self.min_original_chars:
				continue
			after = len(change.proposed)
			if after < before * self.min_ratio:
				result.errors.append(
					f"{change.path}: shrank from {before} to {after} chars, possible truncation"
				)
				result.failed_paths.append(change.path)
		return result


# ── Aggregation ────────────────────────────────────────────────────────────

@dataclass
class PolicyReport:
	"""Aggregated gate results for one validation pass."""
	results: list[GateResult]
	summary: str = ""

	def __post_init__(self):
		passed = sum(1 for r in self.results if r.passed)
		failed = len(self.results) - passed
		self.summary = f"{passed} passed, {failed} failed out of {len(self.results)} gates"

	@property
	def failures(self) -> list[GateResult]:
		return [r for r in self.results if not r.passed]

	@property
	def hard_failures(self) -> list[GateResult]:
		return [r for r in self.failures if not r.changes_kept]

	@property
	def blocked(self) -> bool:
		"""Any hard failure discards the run's edits."""
		return bool(self.hard_failures)

	@property
	def correctable(self) -> bool:
		"""Whether a retry could fix every hard failure."""
		return self.blocked and all(r.correctable for r in self.hard_failures)

	@property
	def first_failed_path(self) -> Optional[str]:
		for result in self.hard_failures or self.failures:
			if result.failed_paths:
				return result.failed_paths[0]
		return None

	def issues(self) -> list[ValidationIssue]:
		"""Validation issues for failing gates, as finally decided by the policy."""
		blocked = self.blocked
		return [
			ValidationIssue(gate=r.gate, errors=list(r.errors), changes_kept=r.changes_kept and not blocked)
			for r in self.failures
		]

	def feedback(self) -> str:
		"""Failure text fed back to the planner on a retry."""
		lines = [f"Validation failed ({self.summary}). Your edits were rolled back."]
		for result in self.failures:
			lines.append(f"[{result.gate}]")
			lines.extend(f"- {error}" for error in result.errors)
		lines.append("Fix these problems and apply the edits again.")
		return "\n".join(lines)


class OrchestrationPolicy:
	"""
	Runs the named gates for a tier against a change set.

	Gates never raise past evaluate(): an exception inside a gate becomes
	a hard, non-correctable failure for that gate.
	"""

	def __init__(self, scope: Optional[Iterable[str]] = None, gates: Optional[list[Gate]] = None):
		registry: list[Gate] = gates if gates is not None else [
			SyntaxGate(),
			ScopeBoundaryGate(scope),
			SchemaGate(),
			TruncationGate(),
		]
		self.gates: dict[str, Gate] = {gate.name: gate for gate in registry}

	def evaluate(self, changes: ChangeSet, gate_names: Iterable[str]) -> PolicyReport:
		"""
		Run gates in order.

		Args:
			changes: Change set for the run
			gate_names: Names of gates to run, in order

		Returns:
			PolicyReport with one result per gate
		"""
		file_changes = changes.changes()
		results = []
		for name in gate_names:
			gate = self.gates.get(name)
			if gate is None:
				logger.warning(f"Unknown gate '{name}' skipped")
				continue
			try:
				result = gate.check(file_changes)
			except Exception as e:
				logger.exception(f"Gate '{name}' raised")
				result = GateResult(
					gate=name,
					errors=[f"gate error: {e}"],
					changes_kept=False,
					correctable=False,
				)
			results.append(result)

		report = PolicyReport(results=results)
		logger.info(f"Validation: {report.summary}")
		return report
