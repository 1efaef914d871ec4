"""
Structural scout - narrows which theme files are relevant to a request.

The scout is advisory. Any failure degrades to the full file listing.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from .files import FileService, FileServiceError

logger = logging.getLogger(__name__)

FILE_REFERENCE_PATTERN = re.compile(r"\b[\w./-]+\.(?:liquid|css|scss|js|json)\b", re.IGNORECASE)
WORD_PATTERN = re.compile(r"[a-z0-9]+")

# Words that appear in almost every request and say nothing about targets
STOP_WORDS = {
	"the", "a", "an", "to", "in", "on", "of", "and", "or", "for", "with", "it",
	"make", "change", "update", "add", "set", "please", "can", "you", "this", "that",
	"is", "be", "my", "from", "into", "under", "below", "file", "files", "theme",
}


class ScoutError(Exception):
	"""Raised by a structural index that cannot answer."""
	pass


@runtime_checkable
class StructuralIndex(Protocol):
	"""Read-only lookup used to narrow candidate files."""

	async def find_candidates(self, request: str, paths: list[str]) -> list[str]:
		...


@dataclass
class ScoutBrief:
	"""Files the planner should look at first."""
	candidates: list[str] = field(default_factory=list)
	all_paths: list[str] = field(default_factory=list)
	degraded: bool = False
	reason: str = ""

	def to_prompt(self, limit: int = 40) -> str:
		"""Render the brief for the planner's system prompt."""
		if self.degraded or not self.candidates:
			listing = self.all_paths[:limit]
			header = "## Theme files"
		else:
			listing = self.candidates[:limit]
			header = "## Likely relevant files"
		lines = [header]
		lines.extend(f"- {path}" for path in listing)
		remaining = (len(self.all_paths) if self.degraded or not self.candidates else len(self.candidates)) - len(listing)
		if remaining > 0:
			lines.append(f"- ... ({remaining} more)")
		return "\n".join(lines)


class KeywordScout:
	"""
	Keyword scout over file paths.

	Exact file references in the request rank first, then paths sharing
	words with the request.
	"""

	def __init__(self, max_candidates: int = 12):
		self.max_candidates = max_candidates

	async def find_candidates(self, request: str, paths: list[str]) -> list[str]:
		referenced = {ref.lower().rsplit("/", 1)[-1] for ref in FILE_REFERENCE_PATTERN.findall(request)}
		words = {w for w in WORD_PATTERN.findall(request.lower()) if w not in STOP_WORDS and len(w) > 2}

		scored: list[tuple[int, str]] = []
		for path in paths:
			name = path.lower().rsplit("/", 1)[-1]
			score = 0
			if name in referenced:
				score += 10
			path_words = set(WORD_PATTERN.findall(path.lower()))
			score += len(words & path_words)
			if score:
				scored.append((score, path))

		scored.sort(key=lambda item: (-item[0], item[1]))
		return [path for _, path in scored[: self.max_candidates]]


async def build_scout_brief(
	file_service: FileService,
	request: str,
	index: Optional[StructuralIndex] = None,
) -> ScoutBrief:
	"""
	Build a scout brief for a request.

	Never raises: scout problems fall back to the full listing with
	degraded=True, and a failed listing yields an empty degraded brief.
	"""
	try:
		all_paths = await file_service.list_paths()
	except FileServiceError as e:
		logger.warning(f"File listing failed, planning without a brief: {e}")
		return ScoutBrief(degraded=True, reason=str(e))

	index = index or KeywordScout()

	try:
		candidates = await index.find_candidates(request, all_paths)
	except Exception as e:
		logger.warning(f"Scout failed, falling back to full listing: {e}")
		return ScoutBrief(all_paths=all_paths, degraded=True, reason=str(e))

	known = set(all_paths)
	candidates = [path for path in candidates if path in known]
	return ScoutBrief(candidates=candidates, all_paths=all_paths)
