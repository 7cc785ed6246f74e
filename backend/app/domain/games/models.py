"""Domain models for asynchronous couple games."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Union


TRUTHS_ROUNDS = 10
STATEMENTS_PER_ROUND = 3
STATEMENT_MAX_LENGTH = 200
SCENARIO_QUESTIONS = 15
DISCUSSION_NOTE_MAX_SECONDS = 60

TIE = "tie"


class GameVariant(str, Enum):
	TWO_TRUTHS = "two_truths"
	WHAT_WOULD_YOU_DO = "what_would_you_do"


class SessionStatus(str, Enum):
	PENDING = "pending"
	ACTIVE = "active"
	WAITING = "waiting"
	ANALYZING = "analyzing"
	COMPLETED = "completed"
	DISCUSSION = "discussion"
	EXPIRED = "expired"
	DECLINED = "declined"
	ABANDONED = "abandoned"


OPEN_STATUSES: FrozenSet[SessionStatus] = frozenset(
	{SessionStatus.PENDING, SessionStatus.ACTIVE, SessionStatus.WAITING}
)
CANCELLABLE_STATUSES: FrozenSet[SessionStatus] = OPEN_STATUSES | {SessionStatus.ANALYZING}
FINISHED_STATUSES: FrozenSet[SessionStatus] = frozenset(
	{SessionStatus.COMPLETED, SessionStatus.DISCUSSION}
)
TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset(
	{SessionStatus.EXPIRED, SessionStatus.DECLINED, SessionStatus.ABANDONED}
)


class TranscriptionStatus(str, Enum):
	PENDING = "pending"
	COMPLETED = "completed"
	FAILED = "failed"
	SKIPPED = "skipped"


ALIGNMENT_LEVELS: tuple[str, ...] = (
	"strong_alignment",
	"moderate_alignment",
	"different_approaches",
	"potential_conflict",
)


@dataclass(slots=True)
class Statement:
	text: str
	is_lie: bool = False


@dataclass(slots=True)
class StatementRound:
	round_number: int
	statements: List[Statement]

	@property
	def lie_index(self) -> int:
		for idx, statement in enumerate(self.statements):
			if statement.is_lie:
				return idx
		raise ValueError(f"round {self.round_number} has no lie")


@dataclass(slots=True)
class TruthsProgress:
	statements: Optional[List[StatementRound]] = None
	guesses: Dict[int, int] = field(default_factory=dict)
	statements_submitted_at: Optional[datetime] = None
	answers_submitted_at: Optional[datetime] = None


@dataclass(slots=True)
class VoiceAnswer:
	question_number: int
	media_url: str
	media_key: str
	mime_type: str
	duration_seconds: float
	answered_at: datetime
	transcription: Optional[str] = None
	transcription_status: TranscriptionStatus = TranscriptionStatus.PENDING
	transcribed_at: Optional[datetime] = None

	def has_text(self) -> bool:
		return self.transcription_status == TranscriptionStatus.COMPLETED and bool((self.transcription or "").strip())


@dataclass(slots=True)
class ScenarioProgress:
	answers: Dict[int, VoiceAnswer] = field(default_factory=dict)


Progress = Union[TruthsProgress, ScenarioProgress]


@dataclass(slots=True)
class Participant:
	user_id: str
	progress: Progress
	is_complete: bool = False
	completed_at: Optional[datetime] = None
	last_activity_at: Optional[datetime] = None


@dataclass(slots=True)
class PairAnalysis:
	question_number: int
	category: str
	alignment_score: int
	alignment_level: str
	summary_a: str
	summary_b: str
	comparison_insight: str
	discussion_prompt: str


@dataclass(slots=True)
class TruthsResults:
	scores: Dict[str, int]
	winner: str
	per_round: Dict[str, List[bool]] = field(default_factory=dict)


@dataclass(slots=True)
class ScenarioResults:
	overall_compatibility: int
	compatibility_level: str
	question_analyses: List[PairAnalysis] = field(default_factory=list)
	category_scores: Dict[str, Optional[int]] = field(default_factory=dict)
	strongest_areas: List[Dict[str, Any]] = field(default_factory=list)
	areas_to_discuss: List[Dict[str, Any]] = field(default_factory=list)
	conversation_starters: List[Dict[str, Any]] = field(default_factory=list)
	partial: bool = False


Results = Union[TruthsResults, ScenarioResults]


@dataclass(slots=True)
class Insights:
	overall_summary: str
	compatibility_analysis: str
	communication_styles: str
	values_alignment: str
	potential_challenges: str
	strengths_as_couple: str
	advice_forward: str
	generated_at: datetime


@dataclass(slots=True)
class DiscussionNote:
	note_id: str
	author_id: str
	media_url: str
	media_key: str
	mime_type: str
	duration_seconds: float
	created_at: datetime
	round_number: Optional[int] = None
	transcription: Optional[str] = None
	transcription_status: TranscriptionStatus = TranscriptionStatus.PENDING
	listened_by: Set[str] = field(default_factory=set)


@dataclass(slots=True)
class Session:
	"""Aggregate root for one game between two matched users."""

	session_id: str
	variant: GameVariant
	match_id: str
	participant_a: Participant
	participant_b: Participant
	status: SessionStatus
	created_at: datetime
	expires_at: datetime
	updated_at: datetime
	revision: int = 0
	accepted_at: Optional[datetime] = None
	completed_at: Optional[datetime] = None
	analysis_started_at: Optional[datetime] = None
	results: Optional[Results] = None
	insights: Optional[Insights] = None
	discussion: List[DiscussionNote] = field(default_factory=list)
	viewed_results_by: Set[str] = field(default_factory=set)
	restart_requested_by: Optional[str] = None
	restart_requested_at: Optional[datetime] = None
	previous_session_id: Optional[str] = None
	restart_count: int = 0
	cancelled_by: Optional[str] = None
	cancel_reason: Optional[str] = None

	def __post_init__(self) -> None:
		if self.participant_a.user_id == self.participant_b.user_id:
			raise ValueError("participants must be distinct")
		expected = TruthsProgress if self.variant == GameVariant.TWO_TRUTHS else ScenarioProgress
		for participant in self.participants():
			if not isinstance(participant.progress, expected):
				raise ValueError(f"progress does not match variant {self.variant.value}")
		if (self.completed_at is not None) != (self.status in FINISHED_STATUSES):
			raise ValueError("completed_at must be set exactly when the session is finished")

	def participants(self) -> tuple[Participant, Participant]:
		return (self.participant_a, self.participant_b)

	def user_ids(self) -> tuple[str, str]:
		return (self.participant_a.user_id, self.participant_b.user_id)

	def includes(self, user_id: str) -> bool:
		return user_id in self.user_ids()

	def participant(self, user_id: str) -> Participant:
		for participant in self.participants():
			if participant.user_id == user_id:
				return participant
		raise KeyError(user_id)

	def partner_of(self, user_id: str) -> Participant:
		if self.participant_a.user_id == user_id:
			return self.participant_b
		if self.participant_b.user_id == user_id:
			return self.participant_a
		raise KeyError(user_id)

	def is_open(self) -> bool:
		return self.status in OPEN_STATUSES

	def is_finished(self) -> bool:
		return self.status in FINISHED_STATUSES

	def is_terminal(self) -> bool:
		return self.status in TERMINAL_STATUSES

	def media_keys(self) -> List[str]:
		keys: List[str] = []
		for participant in self.participants():
			if isinstance(participant.progress, ScenarioProgress):
				keys.extend(answer.media_key for answer in participant.progress.answers.values())
		keys.extend(note.media_key for note in self.discussion)
		return [key for key in keys if key]

	def clone(self) -> "Session":
		return copy.deepcopy(self)

	def to_document(self) -> Dict[str, Any]:
		return _encode(self)

	@classmethod
	def from_document(cls, doc: Dict[str, Any]) -> "Session":
		variant = GameVariant(doc["variant"])
		results_doc = doc.get("results")
		results: Optional[Results] = None
		if results_doc:
			results = _truths_results(results_doc) if variant == GameVariant.TWO_TRUTHS else _scenario_results(results_doc)
		insights_doc = doc.get("insights")
		return cls(
			session_id=doc["session_id"],
			variant=variant,
			match_id=doc["match_id"],
			participant_a=_participant(doc["participant_a"], variant),
			participant_b=_participant(doc["participant_b"], variant),
			status=SessionStatus(doc["status"]),
			created_at=_ts(doc["created_at"]),
			expires_at=_ts(doc["expires_at"]),
			updated_at=_ts(doc["updated_at"]),
			revision=int(doc.get("revision", 0)),
			accepted_at=_ts(doc.get("accepted_at")),
			completed_at=_ts(doc.get("completed_at")),
			analysis_started_at=_ts(doc.get("analysis_started_at")),
			results=results,
			insights=_insights(insights_doc) if insights_doc else None,
			discussion=[_note(item) for item in doc.get("discussion") or []],
			viewed_results_by=set(doc.get("viewed_results_by") or []),
			restart_requested_by=doc.get("restart_requested_by"),
			restart_requested_at=_ts(doc.get("restart_requested_at")),
			previous_session_id=doc.get("previous_session_id"),
			restart_count=int(doc.get("restart_count", 0)),
			cancelled_by=doc.get("cancelled_by"),
			cancel_reason=doc.get("cancel_reason"),
		)


def _encode(value: Any) -> Any:
	if is_dataclass(value) and not isinstance(value, type):
		return {f.name: _encode(getattr(value, f.name)) for f in fields(value)}
	if isinstance(value, Enum):
		return value.value
	if isinstance(value, datetime):
		return value.isoformat()
	if isinstance(value, (set, frozenset)):
		return sorted(_encode(item) for item in value)
	if isinstance(value, dict):
		return {str(key): _encode(item) for key, item in value.items()}
	if isinstance(value, (list, tuple)):
		return [_encode(item) for item in value]
	return value


def _ts(value: Any) -> Optional[datetime]:
	if value is None or isinstance(value, datetime):
		return value
	return datetime.fromisoformat(str(value))


def _participant(doc: Dict[str, Any], variant: GameVariant) -> Participant:
	progress_doc = doc.get("progress") or {}
	progress: Progress
	if variant == GameVariant.TWO_TRUTHS:
		rounds = progress_doc.get("statements")
		progress = TruthsProgress(
			statements=[
				StatementRound(
					round_number=int(item["round_number"]),
					statements=[Statement(text=s["text"], is_lie=bool(s["is_lie"])) for s in item["statements"]],
				)
				for item in rounds
			]
			if rounds is not None
			else None,
			guesses={int(k): int(v) for k, v in (progress_doc.get("guesses") or {}).items()},
			statements_submitted_at=_ts(progress_doc.get("statements_submitted_at")),
			answers_submitted_at=_ts(progress_doc.get("answers_submitted_at")),
		)
	else:
		progress = ScenarioProgress(
			answers={int(k): _voice_answer(v) for k, v in (progress_doc.get("answers") or {}).items()}
		)
	return Participant(
		user_id=doc["user_id"],
		progress=progress,
		is_complete=bool(doc.get("is_complete")),
		completed_at=_ts(doc.get("completed_at")),
		last_activity_at=_ts(doc.get("last_activity_at")),
	)


def _voice_answer(doc: Dict[str, Any]) -> VoiceAnswer:
	return VoiceAnswer(
		question_number=int(doc["question_number"]),
		media_url=doc["media_url"],
		media_key=doc["media_key"],
		mime_type=doc["mime_type"],
		duration_seconds=float(doc["duration_seconds"]),
		answered_at=_ts(doc["answered_at"]),
		transcription=doc.get("transcription"),
		transcription_status=TranscriptionStatus(doc.get("transcription_status", "pending")),
		transcribed_at=_ts(doc.get("transcribed_at")),
	)


def _note(doc: Dict[str, Any]) -> DiscussionNote:
	return DiscussionNote(
		note_id=doc["note_id"],
		author_id=doc["author_id"],
		media_url=doc["media_url"],
		media_key=doc["media_key"],
		mime_type=doc["mime_type"],
		duration_seconds=float(doc["duration_seconds"]),
		created_at=_ts(doc["created_at"]),
		round_number=doc.get("round_number"),
		transcription=doc.get("transcription"),
		transcription_status=TranscriptionStatus(doc.get("transcription_status", "pending")),
		listened_by=set(doc.get("listened_by") or []),
	)


def _analysis(doc: Dict[str, Any]) -> PairAnalysis:
	return PairAnalysis(
		question_number=int(doc["question_number"]),
		category=doc["category"],
		alignment_score=int(doc["alignment_score"]),
		alignment_level=doc["alignment_level"],
		summary_a=doc.get("summary_a", ""),
		summary_b=doc.get("summary_b", ""),
		comparison_insight=doc.get("comparison_insight", ""),
		discussion_prompt=doc.get("discussion_prompt", ""),
	)


def _truths_results(doc: Dict[str, Any]) -> TruthsResults:
	return TruthsResults(
		scores={str(k): int(v) for k, v in doc["scores"].items()},
		winner=doc["winner"],
		per_round={str(k): [bool(x) for x in v] for k, v in (doc.get("per_round") or {}).items()},
	)


def _scenario_results(doc: Dict[str, Any]) -> ScenarioResults:
	return ScenarioResults(
		overall_compatibility=int(doc["overall_compatibility"]),
		compatibility_level=doc["compatibility_level"],
		question_analyses=[_analysis(item) for item in doc.get("question_analyses") or []],
		category_scores=dict(doc.get("category_scores") or {}),
		strongest_areas=list(doc.get("strongest_areas") or []),
		areas_to_discuss=list(doc.get("areas_to_discuss") or []),
		conversation_starters=list(doc.get("conversation_starters") or []),
		partial=bool(doc.get("partial")),
	)


def _insights(doc: Dict[str, Any]) -> Insights:
	return Insights(
		overall_summary=doc.get("overall_summary", ""),
		compatibility_analysis=doc.get("compatibility_analysis", ""),
		communication_styles=doc.get("communication_styles", ""),
		values_alignment=doc.get("values_alignment", ""),
		potential_challenges=doc.get("potential_challenges", ""),
		strengths_as_couple=doc.get("strengths_as_couple", ""),
		advice_forward=doc.get("advice_forward", ""),
		generated_at=_ts(doc["generated_at"]),
	)
