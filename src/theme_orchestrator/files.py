"""
File service collaborators.

The orchestrator never owns theme files. Every read and write goes through
a FileService, which is responsible for serializing concurrent writes to
the same path.
"""

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class FileServiceError(Exception):
	"""Raised when the file service cannot complete an operation."""
	pass


class FileNotFoundInThemeError(FileServiceError):
	"""Raised when a path does not exist in the theme."""
	pass


@runtime_checkable
class FileService(Protocol):
	"""Interface to the external file storage collaborator."""

	async def read(self, path: str) -> str:
		...

	async def write(self, path: str, content: str) -> None:
		...

	async def delete(self, path: str) -> None:
		...

	async def exists(self, path: str) -> bool:
		...

	async def list_paths(self) -> list[str]:
		...


def normalize_path(path: str) -> str:
	"""Normalize a theme-relative path (forward slashes, no leading ./ or /)."""
	cleaned = str(path).strip().replace("\\", "/")
	while cleaned.startswith("./"):
		cleaned = cleaned[2:]
	cleaned = cleaned.lstrip("/")
	parts = PurePosixPath(cleaned).parts
	if any(part == ".." for part in parts):
		raise FileServiceError(f"Path escapes the theme root: {path}")
	return "/".join(parts)


class InMemoryFileService:
	"""
	Dict-backed file service.

	Used by tests and scripted scenarios. Writes to a path are serialized
	with a per-path lock.
	"""

	def __init__(self, files: Optional[dict[str, str]] = None):
		self._files: dict[str, str] = {
			normalize_path(path): content for path, content in (files or {}).items()
		}
		self._locks: dict[str, asyncio.Lock] = {}

	def _lock_for(self, path: str) -> asyncio.Lock:
		if path not in self._locks:
			self._locks[path] = asyncio.Lock()
		return self._locks[path]

	async def read(self, path: str) -> str:
		key = normalize_path(path)
		if key not in self._files:
			raise FileNotFoundInThemeError(f"File not found: {key}")
		return self._files[key]

	async def write(self, path: str, content: str) -> None:
		key = normalize_path(path)
		async with self._lock_for(key):
			self._files[key] = content

	async def delete(self, path: str) -> None:
		key = normalize_path(path)
		async with self._lock_for(key):
			if key not in self._files:
				raise FileNotFoundInThemeError(f"File not found: {key}")
			del self._files[key]

	async def exists(self, path: str) -> bool:
		return normalize_path(path) in self._files

	async def list_paths(self) -> list[str]:
		return sorted(self._files)

	def snapshot(self) -> dict[str, str]:
		"""Return a copy of all file contents."""
		return dict(self._files)


async def _run_to_completion(func, *args, **kwargs):
	"""
	Run a blocking disk operation in a thread.

	A cancelled caller still waits for the thread, so the operation has
	landed (or failed) before cancellation propagates.
	"""
	future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
	try:
		return await asyncio.shield(future)
	except asyncio.CancelledError:
		await asyncio.gather(future, return_exceptions=True)
		raise


class DirectoryFileService:
	"""File service backed by a theme directory on disk."""

	def __init__(self, root: str | Path):
		self.root = Path(root).expanduser().resolve()
		if not self.root.is_dir():
			raise FileServiceError(f"Theme directory not found: {self.root}")
		self._locks: dict[str, asyncio.Lock] = {}

	def _resolve(self, path: str) -> tuple[str, Path]:
		key = normalize_path(path)
		return key, self.root / key

	def _lock_for(self, key: str) -> asyncio.Lock:
		if key not in self._locks:
			self._locks[key] = asyncio.Lock()
		return self._locks[key]

	async def read(self, path: str) -> str:
		key, full = self._resolve(path)
		if not full.is_file():
			raise FileNotFoundInThemeError(f"File not found: {key}")
		try:
			return await asyncio.to_thread(full.read_text, encoding="utf-8")
		except (OSError, UnicodeDecodeError) as e:
			raise FileServiceError(f"Failed to read {key}: {e}") from e

	async def write(self, path: str, content: str) -> None:
		key, full = self._resolve(path)
		async with self._lock_for(key):
			try:
				full.parent.mkdir(parents=True, exist_ok=True)
				await _run_to_completion(full.write_text, content, encoding="utf-8")
			except OSError as e:
				raise FileServiceError(f"Failed to write {key}: {e}") from e

	async def delete(self, path: str) -> None:
		key, full = self._resolve(path)
		async with self._lock_for(key):
			if not full.is_file():
				raise FileNotFoundInThemeError(f"File not found: {key}")
			try:
				await _run_to_completion(full.unlink)
			except OSError as e:
				raise FileServiceError(f"Failed to delete {key}: {e}") from e

	async def exists(self, path: str) -> bool:
		_, full = self._resolve(path)
		return full.is_file()

	async def list_paths(self) -> list[str]:
		def _walk() -> list[str]:
			return sorted(
				p.relative_to(self.root).as_posix()
				for p in self.root.rglob("*")
				if p.is_file() and not any(part.startswith(".") for part in p.relative_to(self.root).parts)
			)
		return await asyncio.to_thread(_walk)
