"""Session state machine: legal edges, action guards and completion rules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from app.domain.games import models
from app.domain.games.models import GameVariant, SessionStatus
from app.domain.games.policy import Forbidden, InvalidTransition


S = SessionStatus

EDGES: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
	S.PENDING: frozenset({S.ACTIVE, S.DECLINED, S.EXPIRED, S.ABANDONED}),
	S.ACTIVE: frozenset({S.ACTIVE, S.WAITING, S.EXPIRED, S.ABANDONED}),
	S.WAITING: frozenset({S.WAITING, S.ANALYZING, S.COMPLETED, S.EXPIRED, S.ABANDONED}),
	S.ANALYZING: frozenset({S.COMPLETED, S.ABANDONED}),
	S.COMPLETED: frozenset({S.DISCUSSION}),
	S.DISCUSSION: frozenset({S.DISCUSSION}),
	S.EXPIRED: frozenset(),
	S.DECLINED: frozenset(),
	S.ABANDONED: frozenset(),
}

# Edges only one variant may take.
VARIANT_ONLY: Dict[tuple[SessionStatus, SessionStatus], GameVariant] = {
	(S.WAITING, S.COMPLETED): GameVariant.TWO_TRUTHS,
	(S.WAITING, S.ANALYZING): GameVariant.WHAT_WOULD_YOU_DO,
}


class Action(str, Enum):
	VIEW_STATE = "view_state"
	ACCEPT = "accept"
	DECLINE = "decline"
	SUBMIT_STATEMENTS = "submit_statements"
	SUBMIT_ANSWERS = "submit_answers"
	SUBMIT_VOICE_ANSWER = "submit_voice_answer"
	RETRY_TRANSCRIPTION = "retry_transcription"
	GET_QUESTION = "get_question"
	VIEW_RESULTS = "view_results"
	POST_NOTE = "post_note"
	MARK_LISTENED = "mark_listened"
	REQUEST_RESTART = "request_restart"
	ACCEPT_RESTART = "accept_restart"
	DECLINE_RESTART = "decline_restart"
	CANCEL = "cancel"
	REGENERATE_INSIGHTS = "regenerate_insights"


@dataclass(frozen=True, slots=True)
class Rule:
	statuses: FrozenSet[SessionStatus]
	invitee_only: bool = False
	variant: Optional[GameVariant] = None


_ALL = frozenset(SessionStatus)
_PLAYING = frozenset({S.ACTIVE, S.WAITING})

ACTION_RULES: Dict[Action, Rule] = {
	Action.VIEW_STATE: Rule(_ALL),
	Action.ACCEPT: Rule(frozenset({S.PENDING}), invitee_only=True),
	Action.DECLINE: Rule(frozenset({S.PENDING}), invitee_only=True),
	Action.SUBMIT_STATEMENTS: Rule(_PLAYING, variant=GameVariant.TWO_TRUTHS),
	Action.SUBMIT_ANSWERS: Rule(_PLAYING, variant=GameVariant.TWO_TRUTHS),
	Action.SUBMIT_VOICE_ANSWER: Rule(_PLAYING, variant=GameVariant.WHAT_WOULD_YOU_DO),
	Action.RETRY_TRANSCRIPTION: Rule(_ALL - models.TERMINAL_STATUSES, variant=GameVariant.WHAT_WOULD_YOU_DO),
	Action.GET_QUESTION: Rule(_PLAYING, variant=GameVariant.WHAT_WOULD_YOU_DO),
	Action.VIEW_RESULTS: Rule(models.FINISHED_STATUSES),
	Action.POST_NOTE: Rule(models.FINISHED_STATUSES),
	Action.MARK_LISTENED: Rule(models.FINISHED_STATUSES),
	Action.REQUEST_RESTART: Rule(models.FINISHED_STATUSES, variant=GameVariant.TWO_TRUTHS),
	Action.ACCEPT_RESTART: Rule(models.FINISHED_STATUSES, variant=GameVariant.TWO_TRUTHS),
	Action.DECLINE_RESTART: Rule(models.FINISHED_STATUSES, variant=GameVariant.TWO_TRUTHS),
	Action.CANCEL: Rule(models.CANCELLABLE_STATUSES),
	Action.REGENERATE_INSIGHTS: Rule(models.FINISHED_STATUSES),
}


def authorize(session: models.Session, action: Action, caller_id: str) -> models.Participant:
	"""Check caller, role and status for ``action`` in that order.

	Returns the caller's participant record.
	"""
	if not session.includes(caller_id):
		raise Forbidden("not_participant", session_id=session.session_id)
	rule = ACTION_RULES[action]
	if rule.invitee_only and caller_id != session.participant_b.user_id:
		raise Forbidden("not_invitee", session_id=session.session_id)
	if rule.variant is not None and session.variant != rule.variant:
		raise InvalidTransition("unsupported_variant", session_id=session.session_id)
	if session.status not in rule.statuses:
		raise InvalidTransition(
			"invalid_state",
			message=f"cannot {action.value} while {session.status.value}",
			session_id=session.session_id,
		)
	return session.participant(caller_id)


def can_transition(session: models.Session, target: SessionStatus) -> bool:
	if target not in EDGES[session.status]:
		return False
	only = VARIANT_ONLY.get((session.status, target))
	return only is None or only == session.variant


def transition(session: models.Session, target: SessionStatus, now: datetime) -> None:
	"""Move ``session`` to ``target`` keeping ``completed_at`` in step with the status."""
	if target == session.status and target in EDGES[session.status]:
		session.updated_at = now
		return
	if not can_transition(session, target):
		raise InvalidTransition(
			"invalid_transition",
			message=f"{session.status.value} -> {target.value}",
			session_id=session.session_id,
		)
	session.status = target
	if target in models.FINISHED_STATUSES:
		if session.completed_at is None:
			session.completed_at = now
	else:
		session.completed_at = None
	if target == S.ANALYZING:
		session.analysis_started_at = now
	session.updated_at = now


def is_participant_complete(session: models.Session, participant: models.Participant) -> bool:
	progress = participant.progress
	if isinstance(progress, models.TruthsProgress):
		return progress.statements is not None and len(progress.guesses) == models.TRUTHS_ROUNDS
	return len(progress.answers) == models.SCENARIO_QUESTIONS


def advance_after_submission(session: models.Session, participant: models.Participant, now: datetime) -> SessionStatus:
	"""Recompute completion for ``participant`` and apply the resulting status."""
	participant.last_activity_at = now
	if not participant.is_complete and is_participant_complete(session, participant):
		participant.is_complete = True
		participant.completed_at = now
	completed = sum(1 for p in session.participants() if p.is_complete)
	if completed == 2:
		target = S.COMPLETED if session.variant == GameVariant.TWO_TRUTHS else S.ANALYZING
	elif completed == 1:
		target = S.WAITING
	else:
		target = S.ACTIVE
	transition(session, target, now)
	return target
