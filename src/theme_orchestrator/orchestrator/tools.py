"""
Tool Executor - runs one tool call and returns a structured result.

Tools form a closed enum with an exhaustive handler table that is checked
when the executor is built. Errors are data: execute() never raises past
its boundary except for task cancellation.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from ..files import FileService, FileServiceError, normalize_path
from .models import StrategyTier, ToolCall, ToolKind, ToolResult
from .policy import ChangeSet
from .strategy import Strategy

if TYPE_CHECKING:
	from .subagents import SubAgentRunner

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... (truncated)"
NO_CHANGES_TO_REVIEW = "No changes to review."
MAX_BATCH_PATHS = 50
MAX_GREP_MATCHES = 100
MAX_LISTING = 500


class ToolName(str, Enum):
	"""Every tool the planner or a sub-agent can call."""
	READ_FILE = "read_file"
	READ_LINES = "read_lines"
	PARALLEL_BATCH_READ = "parallel_batch_read"
	SEARCH_FILES = "search_files"
	GREP_CONTENT = "grep_content"
	EDIT_LINES = "edit_lines"
	SEARCH_REPLACE = "search_replace"
	WRITE_FILE = "write_file"
	CREATE_FILE = "create_file"
	DELETE_FILE = "delete_file"
	LIST_FILES = "list_files"
	RUN_SPECIALIST = "run_specialist"
	RUN_REVIEW = "run_review"
	GET_SECOND_OPINION = "get_second_opinion"


TOOL_KINDS: dict[ToolName, ToolKind] = {
	ToolName.READ_FILE: ToolKind.READ,
	ToolName.READ_LINES: ToolKind.READ,
	ToolName.PARALLEL_BATCH_READ: ToolKind.READ,
	ToolName.SEARCH_FILES: ToolKind.SEARCH,
	ToolName.GREP_CONTENT: ToolKind.SEARCH,
	ToolName.EDIT_LINES: ToolKind.EDIT,
	ToolName.SEARCH_REPLACE: ToolKind.EDIT,
	ToolName.WRITE_FILE: ToolKind.EDIT,
	ToolName.CREATE_FILE: ToolKind.EDIT,
	ToolName.DELETE_FILE: ToolKind.EDIT,
	ToolName.LIST_FILES: ToolKind.OTHER,
	ToolName.RUN_SPECIALIST: ToolKind.OTHER,
	ToolName.RUN_REVIEW: ToolKind.OTHER,
	ToolName.GET_SECOND_OPINION: ToolKind.OTHER,
}

DELEGATION_TOOLS = frozenset({ToolName.RUN_SPECIALIST, ToolName.RUN_REVIEW, ToolName.GET_SECOND_OPINION})
READ_TOOLS = frozenset(name for name, kind in TOOL_KINDS.items() if kind == ToolKind.READ)
SEARCH_TOOLS = frozenset(name for name, kind in TOOL_KINDS.items() if kind == ToolKind.SEARCH)
EDIT_TOOLS = frozenset(name for name, kind in TOOL_KINDS.items() if kind == ToolKind.EDIT)
INSPECTION_TOOLS = READ_TOOLS | SEARCH_TOOLS | {ToolName.LIST_FILES}


@dataclass(frozen=True)
class ToolSpec:
	description: str
	required: tuple[str, ...]
	properties: dict[str, str]

	def to_definition(self, name: ToolName) -> dict[str, Any]:
		"""Tool definition in the shape completion providers expect."""
		return {
			"name": name.value,
			"description": self.description,
			"input_schema": {
				"type": "object",
				"properties": {key: {"type": kind} for key, kind in self.properties.items()},
				"required": list(self.required),
			},
		}


TOOL_SPECS: dict[ToolName, ToolSpec] = {
	ToolName.READ_FILE: ToolSpec("Read a theme file.", ("path",), {"path": "string"}),
	ToolName.READ_LINES: ToolSpec(
		"Read a 1-based inclusive line range of a file, with line numbers.",
		("path", "start_line", "end_line"),
		{"path": "string", "start_line": "integer", "end_line": "integer"},
	),
	ToolName.PARALLEL_BATCH_READ: ToolSpec("Read several files at once.", ("paths",), {"paths": "array"}),
	ToolName.SEARCH_FILES: ToolSpec(
		"Find files whose path contains the query or matches a glob.", ("query",), {"query": "string"},
	),
	ToolName.GREP_CONTENT: ToolSpec(
		"Search file contents with a regular expression.",
		("pattern",),
		{"pattern": "string", "path_glob": "string"},
	),
	ToolName.EDIT_LINES: ToolSpec(
		"Replace a 1-based inclusive line range with new content.",
		("path", "start_line", "end_line", "new_content"),
		{"path": "string", "start_line": "integer", "end_line": "integer", "new_content": "string"},
	),
	ToolName.SEARCH_REPLACE: ToolSpec(
		"Replace one exact, unique occurrence of text in a file.",
		("path", "search", "replace"),
		{"path": "string", "search": "string", "replace": "string"},
	),
	ToolName.WRITE_FILE: ToolSpec("Overwrite a file with new content.", ("path", "content"), {"path": "string", "content": "string"}),
	ToolName.CREATE_FILE: ToolSpec("Create a new file.", ("path", "content"), {"path": "string", "content": "string"}),
	ToolName.DELETE_FILE: ToolSpec("Delete a file.", ("path",), {"path": "string"}),
	ToolName.LIST_FILES: ToolSpec("List theme files, optionally under a directory.", (), {"directory": "string"}),
	ToolName.RUN_SPECIALIST: ToolSpec(
		"Delegate a file-scoped edit to a specialist (liquid, javascript, css, json).",
		("specialist", "task"),
		{"specialist": "string", "task": "string", "affectedFiles": "array"},
	),
	ToolName.RUN_REVIEW: ToolSpec("Ask the review agent to check the current changes.", (), {"focus": "string"}),
	ToolName.GET_SECOND_OPINION: ToolSpec("Ask a second model for an opinion.", ("question",), {"question": "string"}),
}


def classify_tool(name: str) -> ToolKind:
	"""Classify a tool name; unknown names are 'other'."""
	try:
		return TOOL_KINDS[ToolName(name)]
	except ValueError:
		return ToolKind.OTHER


def tool_definitions(names: Optional[frozenset[ToolName]] = None) -> list[dict[str, Any]]:
	"""Definitions for the given tools (all tools when None), in enum order."""
	return [
		TOOL_SPECS[name].to_definition(name)
		for name in ToolName
		if names is None or name in names
	]


def planner_tools(strategy: Strategy) -> frozenset[ToolName]:
	"""Tools offered to the planner under a strategy."""
	tools = set(ToolName)
	if not strategy.specialist_delegation_allowed:
		tools.discard(ToolName.RUN_SPECIALIST)
	if not strategy.review_allowed:
		tools.discard(ToolName.RUN_REVIEW)
		tools.discard(ToolName.GET_SECOND_OPINION)
	return frozenset(tools)


class ToolInputError(Exception):
	"""Invalid or disallowed tool input. Reported as an errored result."""
	pass


class DelegationFailure(Exception):
	"""A sub-agent loop failed or exhausted its budget."""
	pass


@dataclass
class ToolContext:
	"""
	Execution context for one agent's tool calls.

	The planner gets a depth-0 context per run. Sub-agents get depth-1
	contexts that share the same ChangeSet and file service.
	"""
	file_service: FileService
	changes: ChangeSet
	strategy: Strategy
	agent: str = "planner"
	depth: int = 0
	allowed_tools: Optional[frozenset[ToolName]] = None
	editable_paths: Optional[frozenset[str]] = None
	delegate: Optional["SubAgentRunner"] = None
	specialist_calls: int = 0
	reviewed_version: int = -1
	touched_paths: list[str] = field(default_factory=list)

	@property
	def review_pending(self) -> bool:
		"""Edits exist that no review has approved."""
		return bool(self.changes) and self.reviewed_version != self.changes.version


Handler = Callable[[dict[str, Any], ToolContext], Awaitable[str]]


def _require_str(data: dict[str, Any], key: str, allow_empty: bool = False) -> str:
	value = data.get(key)
	if not isinstance(value, str):
		raise ToolInputError(f"'{key}' must be a string")
	if not allow_empty and not value.strip():
		raise ToolInputError(f"'{key}' must not be empty")
	return value


def _require_int(data: dict[str, Any], key: str) -> int:
	value = data.get(key)
	if isinstance(value, bool):
		raise ToolInputError(f"'{key}' must be an integer")
	try:
		return int(value)
	except (TypeError, ValueError):
		raise ToolInputError(f"'{key}' must be an integer") from None


def _require_path(data: dict[str, Any], key: str = "path") -> str:
	return normalize_path(_require_str(data, key))


def _truncate(text: str, limit: int) -> str:
	if limit <= 0 or len(text) <= limit:
		return text
	return text[:limit] + TRUNCATION_MARKER


class ToolExecutor:
	"""
	Executes tool calls against their handlers.

	Args:
		max_result_chars: Cap on result text length
		batch_concurrency: Concurrent reads inside parallel_batch_read and grep_content
	"""

	def __init__(self, max_result_chars: int = 8000, batch_concurrency: int = 10):
		self.max_result_chars = max_result_chars
		self.batch_concurrency = batch_concurrency
		self._handlers: dict[ToolName, Handler] = {
			ToolName.READ_FILE: self._read_file,
			ToolName.READ_LINES: self._read_lines,
			ToolName.PARALLEL_BATCH_READ: self._parallel_batch_read,
			ToolName.SEARCH_FILES: self._search_files,
			ToolName.GREP_CONTENT: self._grep_content,
			ToolName.EDIT_LINES: self._edit_lines,
			ToolName.SEARCH_REPLACE: self._search_replace,
			ToolName.WRITE_FILE: self._write_file,
			ToolName.CREATE_FILE: self._create_file,
			ToolName.DELETE_FILE: self._delete_file,
			ToolName.LIST_FILES: self._list_files,
			ToolName.RUN_SPECIALIST: self._run_specialist,
			ToolName.RUN_REVIEW: self._run_review,
			ToolName.GET_SECOND_OPINION: self._get_second_opinion,
		}
		missing = set(ToolName) - set(self._handlers)
		if missing:
			raise RuntimeError(f"No handler for tools: {sorted(m.value for m in missing)}")

	async def execute(self, call: ToolCall, ctx: ToolContext) -> ToolResult:
		"""
		Execute one tool call.

		Returns:
			ToolResult correlated by call id; failures set is_error
		"""
		start = time.monotonic()
		is_error = False
		try:
			name = self._resolve(call.name, ctx)
			missing = [key for key in TOOL_SPECS[name].required if key not in call.input]
			if missing:
				raise ToolInputError(f"Missing required input: {', '.join(missing)}")
			content = await self._handlers[name](call.input, ctx)
		except (ToolInputError, FileServiceError, DelegationFailure) as e:
			logger.warning(f"Tool {call.name} ({ctx.agent}) failed: {e}")
			content = str(e)
			is_error = True
		except asyncio.CancelledError:
			raise
		except Exception as e:
			logger.error(f"Tool {call.name} raised unexpectedly", exc_info=True)
			content = f"Tool {call.name} failed: {e}"
			is_error = True

		return ToolResult(
			id=call.id,
			content=_truncate(content, self.max_result_chars),
			is_error=is_error,
			elapsed_ms=int((time.monotonic() - start) * 1000),
		)

	def _resolve(self, raw_name: str, ctx: ToolContext) -> ToolName:
		try:
			name = ToolName(raw_name)
		except ValueError:
			raise ToolInputError(f"Unknown tool: {raw_name}") from None
		if name in DELEGATION_TOOLS and ctx.depth >= 1:
			raise ToolInputError(f"{ctx.agent} cannot delegate: delegation depth is limited to one level")
		if ctx.allowed_tools is not None and name not in ctx.allowed_tools:
			raise ToolInputError(f"Tool {name.value} is not available to {ctx.agent}")
		return name

	# ── Read / search ──────────────────────────────────────────────────

	async def _read_file(self, data: dict[str, Any], ctx: ToolContext) -> str:
		return await ctx.file_service.read(_require_path(data))

	async def _read_lines(self, data: dict[str, Any], ctx: ToolContext) -> str:
		path = _require_path(data)
		start = _require_int(data, "start_line")
		end = _require_int(data, "end_line")
		lines = (await ctx.file_service.read(path)).splitlines()
		if start < 1 or end < start:
			raise ToolInputError(f"Invalid line range {start}-{end}")
		if start > len(lines):
			raise ToolInputError(f"{path} has only {len(lines)} lines")
		end = min(end, len(lines))
		width = len(str(end))
		return "\n".join(f"{n:>{width}}| {lines[n - 1]}" for n in range(start, end + 1))

	async def _parallel_batch_read(self, data: dict[str, Any], ctx: ToolContext) -> str:
		paths = data.get("paths")
		if not isinstance(paths, list) or not paths:
			raise ToolInputError("'paths' must be a non-empty list")
		if len(paths) > MAX_BATCH_PATHS:
			raise ToolInputError(f"At most {MAX_BATCH_PATHS} paths per batch")

		semaphore = asyncio.Semaphore(self.batch_concurrency)

		async def read_one(raw: Any) -> tuple[str, Optional[str], Optional[str]]:
			async with semaphore:
				try:
					path = normalize_path(str(raw))
					return path, await ctx.file_service.read(path), None
				except FileServiceError as e:
					return str(raw), None, str(e)

		# gather keeps input order regardless of completion order
		results = await asyncio.gather(*(read_one(raw) for raw in paths))
		if all(error is not None for _, _, error in results):
			raise ToolInputError("; ".join(error for _, _, error in results))

		blocks = []
		for path, content, error in results:
			blocks.append(f"### {path}")
			blocks.append(f"(error: {error})" if error else content)
		return "\n".join(blocks)

	async def _search_files(self, data: dict[str, Any], ctx: ToolContext) -> str:
		query = _require_str(data, "query").strip()
		paths = await ctx.file_service.list_paths()
		if any(ch in query for ch in "*?["):
			matches = [p for p in paths if fnmatchcase(p, query)]
		else:
			needle = query.lower()
			matches = [p for p in paths if needle in p.lower()]
		if not matches:
			return f"No files match '{query}'"
		return "\n".join(matches[:MAX_LISTING])

	async def _grep_content(self, data: dict[str, Any], ctx: ToolContext) -> str:
		raw_pattern = _require_str(data, "pattern")
		try:
			pattern = re.compile(raw_pattern)
		except re.error as e:
			raise ToolInputError(f"Invalid pattern: {e}") from None
		path_glob = data.get("path_glob") or "*"

		paths = [p for p in await ctx.file_service.list_paths() if fnmatchcase(p, path_glob)]
		semaphore = asyncio.Semaphore(self.batch_concurrency)

		async def scan(path: str) -> list[str]:
			async with semaphore:
				try:
					content = await ctx.file_service.read(path)
				except FileServiceError as e:
					logger.debug(f"grep skipped {path}: {e}")
					return []
			return [
				f"{path}:{n}: {line.strip()}"
				for n, line in enumerate(content.splitlines(), start=1)
				if pattern.search(line)
			]

		matches = [line for lines in await asyncio.gather(*(scan(p) for p in paths)) for line in lines]
		if not matches:
			return f"No matches for /{raw_pattern}/"
		shown = matches[:MAX_GREP_MATCHES]
		if len(matches) > len(shown):
			shown.append(f"... ({len(matches) - len(shown)} more matches)")
		return "\n".join(shown)

	async def _list_files(self, data: dict[str, Any], ctx: ToolContext) -> str:
		paths = await ctx.file_service.list_paths()
		directory = data.get("directory")
		if directory:
			prefix = normalize_path(str(directory)).rstrip("/") + "/"
			paths = [p for p in paths if p.startswith(prefix)]
		if not paths:
			return "(no files)"
		listing = paths[:MAX_LISTING]
		if len(paths) > len(listing):
			listing.append(f"... ({len(paths) - len(listing)} more)")
		return "\n".join(listing)

	# ── Edits ──────────────────────────────────────────────────────────

	def _check_editable(self, path: str, ctx: ToolContext) -> None:
		if ctx.editable_paths is not None and path not in ctx.editable_paths:
			raise ToolInputError(
				f"{ctx.agent} may only edit {', '.join(sorted(ctx.editable_paths))}; {path} was not delegated"
			)

	async def _current(self, path: str, ctx: ToolContext) -> Optional[str]:
		if not await ctx.file_service.exists(path):
			return None
		return await ctx.file_service.read(path)

	async def _apply(self, path: str, new_content: Optional[str], ctx: ToolContext, tool: ToolName) -> None:
		"""Write (or delete, when new_content is None) and record the change."""
		original = await self._current(path, ctx)
		try:
			if new_content is None:
				await ctx.file_service.delete(path)
			else:
				await ctx.file_service.write(path, new_content)
		except asyncio.CancelledError:
			# The write may have landed before the cancellation; rollback must see it
			ctx.changes.record(path, original, new_content, tool.value, ctx.agent)
			raise
		ctx.changes.record(path, original, new_content, tool.value, ctx.agent)
		ctx.touched_paths.append(path)

	async def _edit_lines(self, data: dict[str, Any], ctx: ToolContext) -> str:
		path = _require_path(data)
		self._check_editable(path, ctx)
		start = _require_int(data, "start_line")
		end = _require_int(data, "end_line")
		new_content = _require_str(data, "new_content", allow_empty=True)

		content = await ctx.file_service.read(path)
		lines = content.splitlines(keepends=True)
		if start < 1 or end < start - 1 or start > len(lines) + 1:
			raise ToolInputError(f"Invalid line range {start}-{end} for {path} ({len(lines)} lines)")
		end = min(end, len(lines))

		replacement = new_content
		# Keep the line break of the last replaced line
		keeps_break = end < len(lines) or (end >= start and lines[end - 1].endswith("\n"))
		if replacement and not replacement.endswith("\n") and keeps_break:
			replacement += "\n"
		updated = "".join(lines[: start - 1]) + replacement + "".join(lines[end:])
		await self._apply(path, updated, ctx, ToolName.EDIT_LINES)
		return f"Edited {path} lines {start}-{end}"

	async def _search_replace(self, data: dict[str, Any], ctx: ToolContext) -> str:
		path = _require_path(data)
		self._check_editable(path, ctx)
		search = _require_str(data, "search")
		replace = _require_str(data, "replace", allow_empty=True)

		content = await ctx.file_service.read(path)
		count = content.count(search)
		if count == 0:
			raise ToolInputError(f"Search text not found in {path}")
		if count > 1:
			raise ToolInputError(f"Search text occurs {count} times in {path}; include more context")
		await self._apply(path, content.replace(search, replace, 1), ctx, ToolName.SEARCH_REPLACE)
		return f"Replaced 1 occurrence in {path}"

	async def _write_file(self, data: dict[str, Any], ctx: ToolContext) -> str:
		path = _require_path(data)
		self._check_editable(path, ctx)
		content = _require_str(data, "content", allow_empty=True)
		await self._apply(path, content, ctx, ToolName.WRITE_FILE)
		return f"Wrote {len(content)} chars to {path}"

	async def _create_file(self, data: dict[str, Any], ctx: ToolContext) -> str:
		path = _require_path(data)
		self._check_editable(path, ctx)
		content = _require_str(data, "content", allow_empty=True)
		if await ctx.file_service.exists(path):
			raise ToolInputError(f"{path} already exists; use write_file or edit_lines")
		await self._apply(path, content, ctx, ToolName.CREATE_FILE)
		return f"Created {path}"

	async def _delete_file(self, data: dict[str, Any], ctx: ToolContext) -> str:
		path = _require_path(data)
		self._check_editable(path, ctx)
		if not await ctx.file_service.exists(path):
			raise ToolInputError(f"{path} does not exist")
		await self._apply(path, None, ctx, ToolName.DELETE_FILE)
		return f"Deleted {path}"

	# ── Delegation ─────────────────────────────────────────────────────

	def _require_delegate(self, ctx: ToolContext) -> "SubAgentRunner":
		if ctx.delegate is None:
			raise ToolInputError("Delegation is not available in this context")
		return ctx.delegate

	async def _run_specialist(self, data: dict[str, Any], ctx: ToolContext) -> str:
		strategy = ctx.strategy
		if not strategy.specialist_delegation_allowed:
			raise ToolInputError(f"Specialist delegation is not available under the {strategy.tier.value} strategy")

		specialist = _require_str(data, "specialist").strip().lower()
		if specialist not in strategy.allowed_specialists:
			raise ToolInputError(
				f"Unknown specialist '{specialist}'. Valid: {', '.join(strategy.allowed_specialists)}"
			)
		if ctx.specialist_calls >= strategy.max_specialist_calls:
			raise ToolInputError(
				f"Specialist call limit reached ({strategy.max_specialist_calls}); make remaining edits directly"
			)

		task = _require_str(data, "task")
		raw_files = data.get("affectedFiles") or []
		if not isinstance(raw_files, list):
			raise ToolInputError("'affectedFiles' must be a list")
		affected = [normalize_path(str(p)) for p in raw_files]
		if strategy.file_scoped_delegation and not affected:
			raise ToolInputError(f"The {strategy.tier.value} strategy requires affectedFiles for specialist calls")

		delegate = self._require_delegate(ctx)
		ctx.specialist_calls += 1
		return await delegate.run_specialist(specialist, task, affected, ctx)

	async def _run_review(self, data: dict[str, Any], ctx: ToolContext) -> str:
		if not ctx.strategy.review_allowed:
			raise ToolInputError(f"Review is not available under the {ctx.strategy.tier.value} strategy")
		if not ctx.changes:
			return NO_CHANGES_TO_REVIEW
		delegate = self._require_delegate(ctx)
		focus = data.get("focus") or ""
		summary = await delegate.run_review(str(focus), ctx)
		ctx.reviewed_version = ctx.changes.version
		return summary

	async def _get_second_opinion(self, data: dict[str, Any], ctx: ToolContext) -> str:
		if ctx.strategy.tier == StrategyTier.SIMPLE:
			raise ToolInputError("Second opinions are not available under the SIMPLE strategy")
		question = _require_str(data, "question")
		delegate = self._require_delegate(ctx)
		return await delegate.second_opinion(question, ctx)
