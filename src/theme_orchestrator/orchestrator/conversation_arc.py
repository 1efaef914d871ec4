"""
Conversation Arc - escalation detection across a whole conversation.

The arc is an immutable ArcState plus pure transition functions, so loop
and cascade detection can be tested without any object graph. The
ConversationArc class is a thin holder for callers that want to keep one
arc alive across several runs.

Escalations are append-only: only reset() removes them.
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

LOOP_WINDOW = 3
CASCADE_WINDOW = 4
CASCADE_THRESHOLD = 2
CASCADE_MARKERS = ("error", "fix")


class EscalationType(str, Enum):
	LOOP_DETECTED = "loop_detected"
	ERROR_CASCADE = "error_cascade"
	SCOPE_EXPANSION = "scope_expansion"


class SuggestionTier(str, Enum):
	SIMPLE = "simple"
	INTERMEDIATE = "intermediate"
	ADVANCED = "advanced"


@dataclass(frozen=True)
class Turn:
	"""One conversation turn. Numbers start at 1."""
	number: int
	role: str
	action_type: Optional[str] = None
	timestamp: float = 0.0


@dataclass(frozen=True)
class Escalation:
	type: EscalationType
	turn_number: int
	details: str
	timestamp: float = 0.0


@dataclass(frozen=True)
class ArcState:
	turns: tuple[Turn, ...] = ()
	escalations: tuple[Escalation, ...] = ()

	@property
	def turn_count(self) -> int:
		return len(self.turns)


def detect_loop(state: ArcState) -> Optional[Escalation]:
	"""Trigger when the last three turns carry the same action type."""
	if len(state.turns) < LOOP_WINDOW:
		return None
	recent = state.turns[-LOOP_WINDOW:]
	first = recent[0].action_type
	if not first or any(turn.action_type != first for turn in recent):
		return None
	last = recent[-1]
	return Escalation(
		type=EscalationType.LOOP_DETECTED,
		turn_number=last.number,
		details=f'Action "{first}" repeated {LOOP_WINDOW} times consecutively',
		timestamp=last.timestamp,
	)


def detect_error_cascade(state: ArcState) -> Optional[Escalation]:
	"""Trigger when 2+ of the last four action types mention error or fix."""
	if not state.turns:
		return None
	recent = state.turns[-CASCADE_WINDOW:]
	hits = [
		turn for turn in recent
		if turn.action_type and any(marker in turn.action_type.lower() for marker in CASCADE_MARKERS)
	]
	if len(hits) < CASCADE_THRESHOLD:
		return None
	last = recent[-1]
	return Escalation(
		type=EscalationType.ERROR_CASCADE,
		turn_number=last.number,
		details=f"{len(hits)} of the last {len(recent)} turns were errors or fixes",
		timestamp=last.timestamp,
	)


def has_escalation(state: ArcState, escalation_type: EscalationType, turn_number: int) -> bool:
	return any(
		e.type == escalation_type and e.turn_number == turn_number
		for e in state.escalations
	)


def record_escalation(state: ArcState, escalation: Escalation) -> tuple[ArcState, bool]:
	"""
	Append an escalation unless the same type is already recorded for that turn.

	Returns:
		Tuple of (new state, whether it was recorded)
	"""
	if has_escalation(state, escalation.type, escalation.turn_number):
		return state, False
	return replace(state, escalations=state.escalations + (escalation,)), True


def append_turn(
	state: ArcState,
	role: str,
	action_type: Optional[str] = None,
	timestamp: Optional[float] = None,
) -> tuple[ArcState, list[Escalation]]:
	"""
	Append a turn and run both detectors.

	Returns:
		Tuple of (new state, escalations triggered by this turn)
	"""
	turn = Turn(
		number=len(state.turns) + 1,
		role=role,
		action_type=action_type,
		timestamp=time.time() if timestamp is None else timestamp,
	)
	state = replace(state, turns=state.turns + (turn,))

	triggered: list[Escalation] = []
	for detector in (detect_loop, detect_error_cascade):
		escalation = detector(state)
		if escalation is None:
			continue
		state, recorded = record_escalation(state, escalation)
		if recorded:
			triggered.append(escalation)
	return state, triggered


def escalation_factor(state: ArcState) -> float:
	types = {e.type for e in state.escalations}
	if EscalationType.ERROR_CASCADE in types:
		return 2.0
	if EscalationType.LOOP_DETECTED in types:
		return 1.5
	return 1.0


def suggestion_tier(state: ArcState) -> SuggestionTier:
	count = len(state.turns)
	if count <= 2:
		return SuggestionTier.SIMPLE
	if count <= 4:
		return SuggestionTier.INTERMEDIATE
	return SuggestionTier.ADVANCED


class ConversationArc:
	"""
	Holds one conversation's ArcState.

	detect_loop() and detect_error_cascade() return the trigger for the
	current turn, recording it only the first time.
	"""

	def __init__(self, state: Optional[ArcState] = None):
		self._state = state or ArcState()

	@property
	def state(self) -> ArcState:
		return self._state

	@property
	def turns(self) -> tuple[Turn, ...]:
		return self._state.turns

	@property
	def escalations(self) -> tuple[Escalation, ...]:
		return self._state.escalations

	def add_turn(
		self,
		role: str,
		action_type: Optional[str] = None,
		timestamp: Optional[float] = None,
	) -> list[Escalation]:
		"""Append a turn; returns newly recorded escalations."""
		self._state, triggered = append_turn(self._state, role, action_type, timestamp)
		for escalation in triggered:
			logger.info(f"Escalation {escalation.type.value} at turn {escalation.turn_number}: {escalation.details}")
		return triggered

	def detect_loop(self) -> Optional[Escalation]:
		return self._detect(detect_loop)

	def detect_error_cascade(self) -> Optional[Escalation]:
		return self._detect(detect_error_cascade)

	def _detect(self, detector) -> Optional[Escalation]:
		escalation = detector(self._state)
		if escalation is not None:
			self._state, _ = record_escalation(self._state, escalation)
		return escalation

	def record_escalation(self, escalation_type: EscalationType, details: str) -> Optional[Escalation]:
		"""Record an externally detected escalation at the current turn."""
		escalation = Escalation(
			type=escalation_type,
			turn_number=len(self._state.turns),
			details=details,
			timestamp=time.time(),
		)
		self._state, recorded = record_escalation(self._state, escalation)
		if not recorded:
			return None
		logger.info(f"Escalation {escalation_type.value} at turn {escalation.turn_number}: {details}")
		return escalation

	def escalation_factor(self) -> float:
		return escalation_factor(self._state)

	def suggestion_tier(self) -> SuggestionTier:
		return suggestion_tier(self._state)

	def reset(self) -> None:
		"""Start a new conversation. The only way escalations shrink."""
		self._state = ArcState()
