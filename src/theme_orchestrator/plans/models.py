"""
Plan Models - Pydantic schemas for a theme project's plan and todo list.

The current plan is read-only context for the planner: its rendered text
is injected into the planning prompt.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PlanStatus(str, Enum):
	"""Status of a plan."""
	DRAFT = "draft"
	ACTIVE = "active"
	COMPLETED = "completed"
	ARCHIVED = "archived"


class TodoStatus(str, Enum):
	"""Status of a todo item."""
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	COMPLETED = "completed"
	SKIPPED = "skipped"


TODO_MARKERS = {
	TodoStatus.PENDING: "[ ]",
	TodoStatus.IN_PROGRESS: "[~]",
	TodoStatus.COMPLETED: "[x]",
	TodoStatus.SKIPPED: "[-]",
}


class TodoItem(BaseModel):
	"""One checklist entry."""
	id: str = Field(description="Unique todo identifier")
	description: str = Field(description="What needs to be done")
	status: TodoStatus = Field(default=TodoStatus.PENDING)
	files: list[str] = Field(default_factory=list, description="Theme files involved")
	completed_at: Optional[str] = Field(default=None)


class ThemePlan(BaseModel):
	"""
	A plan for a theme project.

	Plans are versioned - each update stores a new version and keeps the
	previous ones as history.
	"""
	id: str = Field(default="", description="Unique plan identifier")
	project: str = Field(default="", description="Project (theme) this plan belongs to")
	version: int = Field(default=1)
	parent_version: Optional[int] = Field(default=None)
	status: PlanStatus = Field(default=PlanStatus.ACTIVE)

	goal: str = Field(description="What the plan achieves")
	todos: list[TodoItem] = Field(default_factory=list)
	notes: str = Field(default="")

	created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
	updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())

	def get_progress(self) -> dict:
		"""Completed vs. total todos."""
		total = len(self.todos)
		completed = sum(1 for t in self.todos if t.status == TodoStatus.COMPLETED)
		return {
			"total_todos": total,
			"completed_todos": completed,
			"percent_complete": round(completed / total * 100, 1) if total else 0,
		}

	def next_todo(self) -> Optional[TodoItem]:
		"""The in-progress todo, else the first pending one."""
		for todo in self.todos:
			if todo.status == TodoStatus.IN_PROGRESS:
				return todo
		for todo in self.todos:
			if todo.status == TodoStatus.PENDING:
				return todo
		return None

	def to_context(self) -> str:
		"""Render the plan for the planning prompt."""
		lines = [
			"## Current plan",
			f"Goal: {self.goal}",
		]
		if self.notes:
			lines.append(f"Notes: {self.notes}")
		if self.todos:
			progress = self.get_progress()
			lines.append("")
			lines.append(f"## Todo ({progress['completed_todos']}/{progress['total_todos']} done)")
			for todo in self.todos:
				line = f"- {TODO_MARKERS[todo.status]} {todo.description}"
				if todo.files:
					line += f" ({', '.join(todo.files)})"
				lines.append(line)
		return "\n".join(lines)
