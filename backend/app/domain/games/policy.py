"""Errors and guard helpers for couple games."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from app.domain.games import models
from app.infra.redis import redis_client
from app.settings import settings


ALLOWED_AUDIO_TYPES: frozenset[str] = frozenset(
	{
		"audio/mpeg",
		"audio/mp3",
		"audio/mp4",
		"audio/m4a",
		"audio/x-m4a",
		"audio/wav",
		"audio/webm",
		"audio/ogg",
	}
)


class GameError(RuntimeError):
	status_code = 400

	def __init__(
		self,
		code: str,
		*,
		message: str | None = None,
		session_id: str | None = None,
		status_code: int | None = None,
	) -> None:
		super().__init__(message or code)
		self.code = code
		self.detail = message or code
		self.session_id = session_id
		if status_code is not None:
			self.status_code = status_code

	def to_payload(self) -> dict:
		payload = {"code": self.code, "message": self.detail}
		if self.session_id:
			payload["session_id"] = self.session_id
		return payload


class NotFound(GameError):
	status_code = 404


class Forbidden(GameError):
	status_code = 403


class InvalidTransition(GameError):
	status_code = 409


class ValidationError(GameError):
	status_code = 422


class Conflict(GameError):
	status_code = 409


class MediaUnavailable(GameError):
	status_code = 503


class StoreUnavailable(GameError):
	status_code = 503


class RateLimited(GameError):
	status_code = 429


async def _touch_limit(key: str, ttl_seconds: int) -> int:
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, ttl_seconds)
		count, _ = await pipe.execute()
	return int(count)


async def enforce_create_limit(user_id: str, now: Optional[datetime] = None) -> None:
	bucket = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).strftime("%Y%m%d")
	key = f"rl:games:create:{user_id}:{bucket}"
	if await _touch_limit(key, 86_400) > settings.game_create_limit_per_day:
		raise RateLimited("rate_limited:create")


def validate_statements(rounds: Sequence[Sequence[tuple[str, bool]]], *, session_id: str | None = None) -> List[models.StatementRound]:
	"""Check an authored statement set and return it as domain rounds.

	Each round is a sequence of ``(text, is_lie)`` pairs. Exactly ten rounds of
	three statements are required, each with a single lie and non-empty text of
	at most 200 characters.
	"""
	if len(rounds) != models.TRUTHS_ROUNDS:
		raise ValidationError("invalid_round_count", message=f"exactly {models.TRUTHS_ROUNDS} rounds are required", session_id=session_id)
	result: List[models.StatementRound] = []
	for idx, items in enumerate(rounds, start=1):
		if len(items) != models.STATEMENTS_PER_ROUND:
			raise ValidationError(
				"invalid_statement_count",
				message=f"round {idx} must have {models.STATEMENTS_PER_ROUND} statements",
				session_id=session_id,
			)
		statements: List[models.Statement] = []
		for text, is_lie in items:
			cleaned = (text or "").strip()
			if not cleaned:
				raise ValidationError("empty_statement", message=f"round {idx} has an empty statement", session_id=session_id)
			if len(cleaned) > models.STATEMENT_MAX_LENGTH:
				raise ValidationError("statement_too_long", message=f"round {idx} has a statement over {models.STATEMENT_MAX_LENGTH} characters", session_id=session_id)
			statements.append(models.Statement(text=cleaned, is_lie=bool(is_lie)))
		if sum(1 for s in statements if s.is_lie) != 1:
			raise ValidationError("invalid_lie_count", message=f"round {idx} must contain exactly one lie", session_id=session_id)
		result.append(models.StatementRound(round_number=idx, statements=statements))
	return result


def validate_answers(answers: Iterable[tuple[int, int]], *, session_id: str | None = None) -> dict[int, int]:
	guesses: dict[int, int] = {}
	for round_number, selected_index in answers:
		if not 1 <= round_number <= models.TRUTHS_ROUNDS:
			raise ValidationError("invalid_round_number", message=f"round {round_number} is out of range", session_id=session_id)
		if selected_index not in range(models.STATEMENTS_PER_ROUND):
			raise ValidationError("invalid_choice", message=f"round {round_number} selection is out of range", session_id=session_id)
		if round_number in guesses:
			raise ValidationError("duplicate_round", message=f"round {round_number} answered twice", session_id=session_id)
		guesses[round_number] = selected_index
	if len(guesses) != models.TRUTHS_ROUNDS:
		raise ValidationError("incomplete_answers", message=f"all {models.TRUTHS_ROUNDS} rounds must be answered", session_id=session_id)
	return guesses


def validate_question_number(question_number: int, *, session_id: str | None = None) -> None:
	if not 1 <= question_number <= models.SCENARIO_QUESTIONS:
		raise ValidationError("invalid_question_number", message=f"question must be between 1 and {models.SCENARIO_QUESTIONS}", session_id=session_id)


def normalise_mime(mime_type: str | None) -> str:
	return (mime_type or "").split(";", 1)[0].strip().lower()


def validate_audio(
	mime_type: str | None,
	size: int,
	duration_seconds: float,
	*,
	max_seconds: Optional[float] = None,
	session_id: str | None = None,
) -> str:
	mime = normalise_mime(mime_type)
	if mime not in ALLOWED_AUDIO_TYPES:
		raise ValidationError("unsupported_media_type", message=f"audio type {mime or 'unknown'} is not allowed", session_id=session_id)
	if size <= 0:
		raise ValidationError("empty_audio", session_id=session_id)
	if duration_seconds <= 0:
		raise ValidationError("invalid_duration", session_id=session_id)
	if max_seconds is not None and duration_seconds > max_seconds:
		raise ValidationError("note_too_long", message=f"notes are limited to {int(max_seconds)} seconds", session_id=session_id)
	return mime
