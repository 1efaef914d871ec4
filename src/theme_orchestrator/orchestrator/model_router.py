"""
Model Router - maps an action class and strategy tier to a model.

A pure lookup table kept outside the coordinator so model assignment can
change without touching loop logic. Classification always routes to the
cheapest model.
"""

from enum import Enum
from typing import Mapping, Optional

from .models import StrategyTier


class ActionClass(str, Enum):
	"""Kind of work a model call performs."""
	CLASSIFY = "classify"
	PLAN = "plan"
	SPECIALIZE = "specialize"
	REVIEW = "review"


class Models:
	"""Model identifiers known to the router."""
	OPUS = "claude-opus-4-6"
	SONNET = "claude-sonnet-4-6"
	HAIKU = "claude-haiku-4-5-20251001"


CHEAPEST_MODEL = Models.HAIKU

MODEL_TABLE: dict[StrategyTier, dict[ActionClass, str]] = {
	StrategyTier.SIMPLE: {
		ActionClass.CLASSIFY: CHEAPEST_MODEL,
		ActionClass.PLAN: Models.SONNET,
		ActionClass.SPECIALIZE: Models.SONNET,
		ActionClass.REVIEW: Models.HAIKU,
	},
	StrategyTier.HYBRID: {
		ActionClass.CLASSIFY: CHEAPEST_MODEL,
		ActionClass.PLAN: Models.OPUS,
		ActionClass.SPECIALIZE: Models.SONNET,
		ActionClass.REVIEW: Models.SONNET,
	},
	StrategyTier.GOD_MODE: {
		ActionClass.CLASSIFY: CHEAPEST_MODEL,
		ActionClass.PLAN: Models.OPUS,
		ActionClass.SPECIALIZE: Models.SONNET,
		ActionClass.REVIEW: Models.OPUS,
	},
}


def route(
	action: ActionClass,
	tier: StrategyTier,
	overrides: Optional[Mapping[ActionClass, str]] = None,
) -> str:
	"""
	Resolve the model for an action under a tier.

	Overrides replace table entries for everything except CLASSIFY, which
	stays on the cheapest model.
	"""
	if action == ActionClass.CLASSIFY:
		return CHEAPEST_MODEL
	if overrides and action in overrides:
		return overrides[action]
	return MODEL_TABLE[tier][action]


def model_profile(tier: StrategyTier) -> dict[str, str]:
	"""The full action -> model assignment for a tier."""
	return {action.value: route(action, tier) for action in ActionClass}
