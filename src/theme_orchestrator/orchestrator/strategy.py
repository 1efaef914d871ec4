"""
Strategy Selector - chooses SIMPLE / HYBRID / GOD_MODE for a run.

Selection is deterministic for the same inputs. Request complexity comes
from a two-stage classifier: a zero-cost heuristic, then an optional
cheap-model classification for ambiguous requests.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from ..providers import CompletionOptions, CompletionProvider
from .model_router import ActionClass, model_profile, route
from .models import StrategyTier

if TYPE_CHECKING:
	from ..config import Config

logger = logging.getLogger(__name__)


class ComplexityTier(str, Enum):
	"""Request complexity signal."""
	TRIVIAL = "TRIVIAL"
	SIMPLE = "SIMPLE"
	COMPLEX = "COMPLEX"
	ARCHITECTURAL = "ARCHITECTURAL"


class AccountPlan(str, Enum):
	"""The caller's plan, which caps the strategy tier."""
	STARTER = "starter"
	PRO = "pro"
	AGENCY = "agency"


TIER_ORDER = [StrategyTier.SIMPLE, StrategyTier.HYBRID, StrategyTier.GOD_MODE]

PLAN_CEILING: dict[AccountPlan, StrategyTier] = {
	AccountPlan.STARTER: StrategyTier.SIMPLE,
	AccountPlan.PRO: StrategyTier.HYBRID,
	AccountPlan.AGENCY: StrategyTier.GOD_MODE,
}

COMPLEXITY_TO_STRATEGY: dict[ComplexityTier, StrategyTier] = {
	ComplexityTier.TRIVIAL: StrategyTier.SIMPLE,
	ComplexityTier.SIMPLE: StrategyTier.SIMPLE,
	ComplexityTier.COMPLEX: StrategyTier.HYBRID,
	ComplexityTier.ARCHITECTURAL: StrategyTier.GOD_MODE,
}

ALL_SPECIALISTS = ("liquid", "javascript", "css", "json")

# Escalation factor at which the next run is widened by one tier
ESCALATION_UPGRADE_THRESHOLD = 1.5


@dataclass
class StrategyBudgets:
	"""Budgets per tier. Defaults mirror Config defaults."""
	simple_max_iterations: int = 12
	hybrid_max_iterations: int = 40
	god_mode_max_iterations: int = 80
	specialist_max_iterations: int = 8
	review_max_iterations: int = 4
	hybrid_max_specialist_calls: int = 3
	god_mode_max_specialist_calls: int = 8

	@classmethod
	def from_config(cls, config: "Config") -> "StrategyBudgets":
		return cls(
			simple_max_iterations=config.simple_max_iterations,
			hybrid_max_iterations=config.hybrid_max_iterations,
			god_mode_max_iterations=config.god_mode_max_iterations,
			specialist_max_iterations=config.specialist_max_iterations,
			review_max_iterations=config.review_max_iterations,
			hybrid_max_specialist_calls=config.hybrid_max_specialist_calls,
			god_mode_max_specialist_calls=config.god_mode_max_specialist_calls,
		)


@dataclass(frozen=True)
class Strategy:
	"""Plan of record for a run."""
	tier: StrategyTier
	max_iterations: int
	specialist_delegation_allowed: bool
	model_assignment_profile: dict[str, str] = field(hash=False)
	allowed_specialists: tuple[str, ...] = ()
	max_specialist_calls: int = 0
	specialist_max_iterations: int = 8
	review_max_iterations: int = 4
	review_allowed: bool = False
	review_required: bool = False
	file_scoped_delegation: bool = True

	def to_dict(self) -> dict:
		return {
			"tier": self.tier.value,
			"maxIterations": self.max_iterations,
			"specialistDelegationAllowed": self.specialist_delegation_allowed,
			"modelAssignmentProfile": dict(self.model_assignment_profile),
			"maxSpecialistCalls": self.max_specialist_calls,
			"reviewRequired": self.review_required,
		}


# ── Heuristic patterns ─────────────────────────────────────────────────────

COSMETIC_KEYWORDS = re.compile(
	r"\b(color|colour|font|spacing|padding|margin|background|text-align|border-radius|opacity"
	r"|font-size|font-weight|line-height|gap|width|height|max-width|min-height|display|visibility|z-index)\b",
	re.IGNORECASE,
)
VALUE_CHANGE_PATTERN = re.compile(r"\b(change|set|update|make|switch)\b.*\b(to|from|into)\b", re.IGNORECASE)
COMPLEX_KEYWORDS = re.compile(
	r"\b(add section|new section|new feature|redesign|refactor|rebuild|rewrite|create.*component)\b",
	re.IGNORECASE,
)
LIQUID_OR_SNIPPET = re.compile(r"\b(liquid|snippet|template)\b|\.liquid\b", re.IGNORECASE)
STYLING_REF = re.compile(r"\b(css|style|styling)\b|\.css\b", re.IGNORECASE)
SCRIPT_REF = re.compile(r"\.js\b|\b(javascript|script)\b", re.IGNORECASE)
ARCHITECTURAL_KEYWORDS = re.compile(
	r"\b(entire theme|full refactor|migrate from|restructure|overhaul|rebuild.*theme|refactor.*entire|rewrite.*all)\b",
	re.IGNORECASE,
)
FILE_REFERENCE_PATTERN = re.compile(r"\b[\w-]+\.(liquid|css|js|json|scss)\b", re.IGNORECASE)
TIER_REPLY_PATTERN = re.compile(r"\b(TRIVIAL|SIMPLE|COMPLEX|ARCHITECTURAL)\b")


def heuristic_classify(request: str) -> Optional[ComplexityTier]:
	"""
	Zero-cost classification.

	Returns None when no pattern is confident, leaving the decision to
	the model classifier.
	"""
	word_count = len(request.split())
	file_refs = FILE_REFERENCE_PATTERN.findall(request)

	if ARCHITECTURAL_KEYWORDS.search(request):
		return ComplexityTier.ARCHITECTURAL
	if COMPLEX_KEYWORDS.search(request):
		return ComplexityTier.COMPLEX
	if LIQUID_OR_SNIPPET.search(request) and STYLING_REF.search(request) and SCRIPT_REF.search(request):
		return ComplexityTier.COMPLEX
	if len(file_refs) >= 3:
		return ComplexityTier.COMPLEX
	if word_count <= 25 and COSMETIC_KEYWORDS.search(request):
		return ComplexityTier.TRIVIAL
	if word_count <= 15 and VALUE_CHANGE_PATTERN.search(request):
		return ComplexityTier.TRIVIAL
	return None


CLASSIFIER_PROMPT = (
	"You classify Shopify theme editing requests by complexity. "
	"Reply with exactly one word: TRIVIAL, SIMPLE, COMPLEX or ARCHITECTURAL."
)


async def classify_request(
	request: str,
	provider: Optional[CompletionProvider] = None,
) -> tuple[ComplexityTier, str]:
	"""
	Classify a request.

	Returns:
		Tuple of (tier, source) where source is heuristic, classifier or default
	"""
	tier = heuristic_classify(request)
	if tier is not None:
		return tier, "heuristic"

	if provider is None:
		return ComplexityTier.SIMPLE, "default"

	options = CompletionOptions(
		# The tier is unknown here; CLASSIFY resolves to the cheapest model on every tier
		model=route(ActionClass.CLASSIFY, StrategyTier.SIMPLE),
		agent="classifier",
		max_tokens=16,
	)
	messages = [
		{"role": "system", "content": CLASSIFIER_PROMPT},
		{"role": "user", "content": request},
	]
	try:
		completion = await provider.complete(messages, options)
	except Exception as e:
		logger.warning(f"Classifier call failed, defaulting to SIMPLE: {e}")
		return ComplexityTier.SIMPLE, "default"

	match = TIER_REPLY_PATTERN.search(completion.content.upper())
	if not match:
		logger.info(f"Unparseable classifier reply, defaulting to SIMPLE: {completion.content[:80]}")
		return ComplexityTier.SIMPLE, "default"
	return ComplexityTier(match.group(1)), "classifier"


class StrategySelector:
	"""
	Chooses the strategy record for a run.

	Pure with respect to its inputs: the same complexity, plan, requested
	tier and escalation factor always produce the same strategy.
	"""

	def __init__(self, budgets: Optional[StrategyBudgets] = None):
		self.budgets = budgets or StrategyBudgets()

	def select(
		self,
		complexity: ComplexityTier,
		plan: AccountPlan = AccountPlan.AGENCY,
		requested_tier: Optional[StrategyTier] = None,
		escalation_factor: float = 1.0,
	) -> Strategy:
		"""
		Select a strategy.

		Args:
			complexity: Request complexity signal
			plan: Caller's account plan (caps the tier)
			requested_tier: Explicit tier from the caller, still capped by plan
			escalation_factor: Conversation escalation factor; >= 1.5 widens one tier

		Returns:
			Strategy record
		"""
		tier = requested_tier or COMPLEXITY_TO_STRATEGY[complexity]

		if requested_tier is None and escalation_factor >= ESCALATION_UPGRADE_THRESHOLD:
			tier = TIER_ORDER[min(TIER_ORDER.index(tier) + 1, len(TIER_ORDER) - 1)]

		ceiling = PLAN_CEILING[plan]
		if TIER_ORDER.index(tier) > TIER_ORDER.index(ceiling):
			logger.info(f"Tier {tier.value} capped to {ceiling.value} by plan {plan.value}")
			tier = ceiling

		return self.for_tier(tier)

	def for_tier(self, tier: StrategyTier) -> Strategy:
		"""Build the strategy record for a tier."""
		b = self.budgets
		common = {
			"model_assignment_profile": model_profile(tier),
			"specialist_max_iterations": b.specialist_max_iterations,
			"review_max_iterations": b.review_max_iterations,
		}

		if tier == StrategyTier.SIMPLE:
			return Strategy(
				tier=tier,
				max_iterations=b.simple_max_iterations,
				specialist_delegation_allowed=False,
				**common,
			)

		if tier == StrategyTier.HYBRID:
			return Strategy(
				tier=tier,
				max_iterations=b.hybrid_max_iterations,
				specialist_delegation_allowed=True,
				allowed_specialists=ALL_SPECIALISTS,
				max_specialist_calls=b.hybrid_max_specialist_calls,
				review_allowed=True,
				file_scoped_delegation=True,
				**common,
			)

		return Strategy(
			tier=tier,
			max_iterations=b.god_mode_max_iterations,
			specialist_delegation_allowed=True,
			allowed_specialists=ALL_SPECIALISTS,
			max_specialist_calls=b.god_mode_max_specialist_calls,
			review_allowed=True,
			review_required=True,
			file_scoped_delegation=False,
			**common,
		)
