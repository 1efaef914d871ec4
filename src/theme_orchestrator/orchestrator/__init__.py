"""Orchestrator module - coordinator loop, strategy, tools, policy and escalation."""

from .conversation_arc import ConversationArc, EscalationType
from .coordinator import Coordinator, RunResult
from .events import EventChannel
from .model_router import ActionClass, route
from .models import Outcome, OutcomeStatus, StrategyTier
from .policy import OrchestrationPolicy
from .strategy import AccountPlan, ComplexityTier, StrategySelector, classify_request
from .tools import ToolExecutor, ToolName
from .transcript import structure_transcript

__all__ = [
	"Coordinator",
	"RunResult",
	"EventChannel",
	"ConversationArc",
	"EscalationType",
	"StrategySelector",
	"ComplexityTier",
	"AccountPlan",
	"classify_request",
	"ActionClass",
	"route",
	"ToolExecutor",
	"ToolName",
	"OrchestrationPolicy",
	"Outcome",
	"OutcomeStatus",
	"StrategyTier",
	"structure_transcript",
]
