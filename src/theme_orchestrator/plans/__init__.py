"""Plans module - versioned plan/todo context for planning."""

from .models import PlanStatus, ThemePlan, TodoItem, TodoStatus
from .store import OptimisticLockError, PlanNotFoundError, PlanStore

__all__ = [
	"ThemePlan",
	"TodoItem",
	"TodoStatus",
	"PlanStatus",
	"PlanStore",
	"OptimisticLockError",
	"PlanNotFoundError",
]
