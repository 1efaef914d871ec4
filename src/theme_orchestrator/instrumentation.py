"""
Transcript recording for offline diagnosis.

A TranscriptRecorder subscribes to a run's event channel like any other
consumer; structured transcripts are persisted to SQLite and can be
queried by outcome status.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .orchestrator.events import Event, EventChannel
from .orchestrator.transcript import Transcript

logger = logging.getLogger(__name__)


@dataclass
class TranscriptRecord:
	"""Summary row for one recorded run."""
	run_id: str
	scenario: str
	tier: str
	status: str
	changed_files: int = 0
	total_tool_calls: int = 0
	edit_tool_calls: int = 0
	elapsed_ms: int = 0
	cost_cents: float = 0.0
	recorded_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class OutcomeStats:
	"""Aggregate stats per outcome status."""
	status: str
	run_count: int
	avg_tool_calls: float
	avg_elapsed_ms: float
	total_cost_cents: float
	last_recorded: str


class TranscriptStore:
	"""SQLite-backed storage for structured transcripts."""

	def __init__(self, db_path: str = ""):
		if not db_path:
			from .config import get_config
			db_path = str(get_config().transcripts_db_path)
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._ensure_table()

	def _ensure_table(self) -> None:
		"""Create the transcripts table if it doesn't exist."""
		with sqlite3.connect(str(self.db_path)) as conn:
			conn.execute("""
				CREATE TABLE IF NOT EXISTS transcripts (
					run_id TEXT PRIMARY KEY,
					scenario TEXT NOT NULL,
					tier TEXT DEFAULT '',
					status TEXT NOT NULL,
					changed_files INTEGER DEFAULT 0,
					total_tool_calls INTEGER DEFAULT 0,
					edit_tool_calls INTEGER DEFAULT 0,
					elapsed_ms INTEGER DEFAULT 0,
					cost_cents REAL DEFAULT 0.0,
					data TEXT NOT NULL,
					recorded_at TEXT NOT NULL
				)
			""")
			conn.execute("""
				CREATE INDEX IF NOT EXISTS idx_transcripts_status ON transcripts(status)
			""")
			conn.execute("""
				CREATE INDEX IF NOT EXISTS idx_transcripts_recorded ON transcripts(recorded_at)
			""")

	def _connect(self) -> sqlite3.Connection:
		conn = sqlite3.connect(str(self.db_path))
		conn.row_factory = sqlite3.Row
		return conn

	def record(self, transcript: Transcript, tier: str = "") -> TranscriptRecord:
		"""Insert or replace a transcript."""
		record = TranscriptRecord(
			run_id=transcript.run_id,
			scenario=transcript.scenario,
			tier=tier,
			status=transcript.outcome.status.value,
			changed_files=transcript.outcome.changed_files,
			total_tool_calls=transcript.metrics.total_tool_calls,
			edit_tool_calls=transcript.metrics.edit_tool_calls,
			elapsed_ms=transcript.metrics.elapsed_ms,
			cost_cents=transcript.metrics.cost_cents,
		)
		with self._connect() as conn:
			conn.execute(
				"""
				INSERT OR REPLACE INTO transcripts
				(run_id, scenario, tier, status, changed_files, total_tool_calls, edit_tool_calls,
				 elapsed_ms, cost_cents, data, recorded_at)
				VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
				""",
				(
					record.run_id,
					record.scenario,
					record.tier,
					record.status,
					record.changed_files,
					record.total_tool_calls,
					record.edit_tool_calls,
					record.elapsed_ms,
					record.cost_cents,
					transcript.to_json(),
					record.recorded_at,
				),
			)
		logger.info(f"Recorded transcript {record.run_id} ({record.status})")
		return record

	def get(self, run_id: str) -> Optional[Transcript]:
		"""Load a full transcript."""
		with self._connect() as conn:
			row = conn.execute("SELECT data FROM transcripts WHERE run_id = ?", (run_id,)).fetchone()
		if not row:
			return None
		return Transcript.model_validate_json(row["data"])

	def query(
		self,
		status: Optional[str] = None,
		scenario: Optional[str] = None,
		since: Optional[str] = None,
		limit: int = 100,
	) -> list[TranscriptRecord]:
		"""Query transcript summaries, newest first."""
		conditions: list[str] = []
		params: list[Any] = []

		if status:
			conditions.append("status = ?")
			params.append(status)
		if scenario:
			conditions.append("scenario = ?")
			params.append(scenario)
		if since:
			conditions.append("recorded_at >= ?")
			params.append(since)

		where = " AND ".join(conditions) if conditions else "1=1"

		with self._connect() as conn:
			rows = conn.execute(
				f"""
				SELECT run_id, scenario, tier, status, changed_files, total_tool_calls,
					edit_tool_calls, elapsed_ms, cost_cents, recorded_at
				FROM transcripts WHERE {where} ORDER BY recorded_at DESC LIMIT ?
				""",
				[*params, limit],
			).fetchall()

		return [TranscriptRecord(**dict(row)) for row in rows]

	def get_stats(self) -> list[OutcomeStats]:
		"""Aggregate stats per outcome status."""
		with self._connect() as conn:
			rows = conn.execute("""
				SELECT
					status,
					COUNT(*) as run_count,
					AVG(total_tool_calls) as avg_tool_calls,
					AVG(elapsed_ms) as avg_elapsed_ms,
					SUM(cost_cents) as total_cost_cents,
					MAX(recorded_at) as last_recorded
				FROM transcripts
				GROUP BY status
				ORDER BY run_count DESC
			""").fetchall()

		return [
			OutcomeStats(
				status=row["status"],
				run_count=row["run_count"],
				avg_tool_calls=row["avg_tool_calls"],
				avg_elapsed_ms=row["avg_elapsed_ms"],
				total_cost_cents=row["total_cost_cents"],
				last_recorded=row["last_recorded"],
			)
			for row in rows
		]

	def clear(self, before: Optional[str] = None) -> int:
		"""Delete transcripts, optionally only those recorded before a timestamp. Returns count deleted."""
		with self._connect() as conn:
			if before:
				cursor = conn.execute("DELETE FROM transcripts WHERE recorded_at < ?", (before,))
			else:
				cursor = conn.execute("DELETE FROM transcripts")
			return cursor.rowcount


class TranscriptRecorder:
	"""
	Event-channel consumer that captures a run's events.

	Subscribe before the run starts; capture() completes when the channel
	closes after the outcome event.
	"""

	def __init__(self, channel: EventChannel):
		self._subscription = channel.subscribe(replay=True)
		self.events: list[Event] = []

	async def capture(self) -> list[Event]:
		async for event in self._subscription:
			self.events.append(event)
		return self.events


# Global store singleton
_store: Optional[TranscriptStore] = None


def get_transcript_store(db_path: str = "") -> TranscriptStore:
	"""Get or create the global transcript store."""
	global _store
	if _store is None:
		_store = TranscriptStore(db_path)
	return _store
