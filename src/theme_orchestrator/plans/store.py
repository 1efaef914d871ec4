"""
Plan Store - SQLite-backed versioned plan/todo storage.

Features:
- One current plan per project, older versions kept as history
- Optimistic locking on updates
- Rendered plan context for the planner
"""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiosqlite

from .models import PlanStatus, ThemePlan, TodoItem, TodoStatus

logger = logging.getLogger(__name__)


class OptimisticLockError(Exception):
	"""Raised when a concurrent update conflicts."""
	pass


class PlanNotFoundError(Exception):
	"""Raised when a plan is not found."""
	pass


class PlanStore:
	"""
	SQLite-backed plan storage with versioning.

	Usage:
		store = PlanStore(config.plans_db_path)
		await store.init()

		plan_id = await store.create_plan("dawn", ThemePlan(goal="Refresh the header"))
		await store.update_todo_status(plan_id, "t1", TodoStatus.COMPLETED, expected_version=1)
		context = await store.get_plan_context("dawn")
	"""

	def __init__(self, db_path: str | Path):
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None

	async def init(self):
		"""Initialize the database schema."""
		self._db = await aiosqlite.connect(str(self.db_path))
		self._db.row_factory = aiosqlite.Row

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS theme_plans (
				id TEXT NOT NULL,
				project TEXT NOT NULL,
				version INTEGER NOT NULL,
				status TEXT NOT NULL,
				data TEXT NOT NULL,
				updated_at TEXT NOT NULL,
				is_current INTEGER DEFAULT 1,
				PRIMARY KEY (id, version)
			)
		""")
		await self._db.execute("""
			CREATE INDEX IF NOT EXISTS idx_theme_plans_project_current ON theme_plans(project, is_current)
		""")
		await self._db.commit()
		logger.info(f"Plan store initialized: {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		if self._db:
			await self._db.close()
			self._db = None

	async def _conn(self) -> aiosqlite.Connection:
		if not self._db:
			await self.init()
		return self._db

	async def _insert(self, plan: ThemePlan) -> None:
		db = await self._conn()
		await db.execute(
			"""
			INSERT INTO theme_plans (id, project, version, status, data, updated_at, is_current)
			VALUES (?, ?, ?, ?, ?, ?, 1)
			""",
			(plan.id, plan.project, plan.version, plan.status.value, plan.model_dump_json(), plan.updated_at),
		)

	async def create_plan(self, project: str, plan: ThemePlan) -> str:
		"""
		Create a plan and make it the project's current plan.

		Returns:
			Plan ID
		"""
		db = await self._conn()
		plan.id = plan.id or str(uuid.uuid4())[:12]
		plan.project = project
		plan.version = 1
		plan.parent_version = None
		plan.created_at = datetime.now().isoformat()
		plan.updated_at = plan.created_at

		await db.execute("UPDATE theme_plans SET is_current = 0 WHERE project = ?", (project,))
		await self._insert(plan)
		await db.commit()
		logger.info(f"Created plan {plan.id} for project {project}")
		return plan.id

	async def update_plan(self, plan_id: str, updates: dict, expected_version: int) -> ThemePlan:
		"""
		Store a new version of a plan.

		Raises:
			OptimisticLockError: If the current version is not expected_version
			PlanNotFoundError: If the plan does not exist
		"""
		db = await self._conn()
		async with db.execute(
			"SELECT version, data FROM theme_plans WHERE id = ? AND is_current = 1",
			(plan_id,),
		) as cursor:
			row = await cursor.fetchone()

		if not row:
			raise PlanNotFoundError(f"Plan not found: {plan_id}")
		current_version = row["version"]
		if current_version != expected_version:
			raise OptimisticLockError(
				f"Version mismatch: expected {expected_version}, got {current_version}"
			)

		data = ThemePlan.model_validate_json(row["data"]).model_dump()
		for key, value in updates.items():
			if key in ThemePlan.model_fields and key not in ("id", "project", "version"):
				data[key] = value
		plan = ThemePlan.model_validate(data)
		plan.parent_version = current_version
		plan.version = current_version + 1
		plan.updated_at = datetime.now().isoformat()

		await db.execute(
			"UPDATE theme_plans SET is_current = 0 WHERE id = ? AND version = ?",
			(plan_id, current_version),
		)
		await self._insert(plan)
		await db.commit()
		logger.info(f"Updated plan {plan_id} to version {plan.version}")
		return plan

	async def get_plan(self, plan_id: str, version: Optional[int] = None) -> Optional[ThemePlan]:
		"""Get a plan, at its current version by default."""
		db = await self._conn()
		if version:
			query = "SELECT data FROM theme_plans WHERE id = ? AND version = ?"
			params: tuple = (plan_id, version)
		else:
			query = "SELECT data FROM theme_plans WHERE id = ? AND is_current = 1"
			params = (plan_id,)
		async with db.execute(query, params) as cursor:
			row = await cursor.fetchone()
		return ThemePlan.model_validate_json(row["data"]) if row else None

	async def get_current_plan(self, project: str) -> Optional[ThemePlan]:
		db = await self._conn()
		async with db.execute(
			"SELECT data FROM theme_plans WHERE project = ? AND is_current = 1 ORDER BY updated_at DESC LIMIT 1",
			(project,),
		) as cursor:
			row = await cursor.fetchone()
		return ThemePlan.model_validate_json(row["data"]) if row else None

	async def get_plan_history(self, plan_id: str) -> list[ThemePlan]:
		"""All versions of a plan, newest first."""
		db = await self._conn()
		async with db.execute(
			"SELECT data FROM theme_plans WHERE id = ? ORDER BY version DESC",
			(plan_id,),
		) as cursor:
			rows = await cursor.fetchall()
		return [ThemePlan.model_validate_json(row["data"]) for row in rows]

	async def update_todo_status(
		self,
		plan_id: str,
		todo_id: str,
		status: TodoStatus,
		expected_version: int,
	) -> ThemePlan:
		"""
		Set a todo's status, storing a new plan version.

		The plan completes once every todo is completed or skipped.
		"""
		plan = await self.get_plan(plan_id)
		if not plan:
			raise PlanNotFoundError(f"Plan not found: {plan_id}")

		todos: list[TodoItem] = [todo.model_copy() for todo in plan.todos]
		for todo in todos:
			if todo.id == todo_id:
				todo.status = status
				todo.completed_at = datetime.now().isoformat() if status == TodoStatus.COMPLETED else None
				break
		else:
			raise ValueError(f"Todo {todo_id} not found in plan {plan_id}")

		updates: dict = {"todos": todos}
		if todos and all(t.status in (TodoStatus.COMPLETED, TodoStatus.SKIPPED) for t in todos):
			updates["status"] = PlanStatus.COMPLETED
		return await self.update_plan(plan_id, updates, expected_version)

	async def delete_plan(self, plan_id: str):
		"""Delete a plan and all its versions."""
		db = await self._conn()
		await db.execute("DELETE FROM theme_plans WHERE id = ?", (plan_id,))
		await db.commit()
		logger.info(f"Deleted plan {plan_id}")

	async def get_plan_context(self, project: str) -> Optional[str]:
		"""
		Rendered context for the planner, or None.

		Only active plans are injected.
		"""
		plan = await self.get_current_plan(project)
		if plan is None or plan.status != PlanStatus.ACTIVE:
			return None
		return plan.to_context()


# Global store instance
_store: Optional[PlanStore] = None


async def get_plan_store(db_path: str = "") -> PlanStore:
	"""Get or create the global plan store."""
	global _store
	if _store is None:
		if not db_path:
			from ..config import get_config
			db_path = str(get_config().plans_db_path)
		_store = PlanStore(db_path)
		await _store.init()
	return _store
