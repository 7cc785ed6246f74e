"""Pydantic request and response schemas for couple games."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

GameVariantName = Literal["two_truths", "what_would_you_do"]
SessionStatusName = Literal[
	"pending",
	"active",
	"waiting",
	"analyzing",
	"completed",
	"discussion",
	"expired",
	"declined",
	"abandoned",
]
TranscriptionStatusName = Literal["pending", "completed", "failed", "skipped"]


class CreateInvitationRequest(BaseModel):
	match_id: str = Field(min_length=1)
	variant: GameVariantName


class StatementIn(BaseModel):
	text: str
	is_lie: bool = False


class StatementRoundIn(BaseModel):
	statements: List[StatementIn]


class SubmitStatementsRequest(BaseModel):
	rounds: List[StatementRoundIn]


class AnswerIn(BaseModel):
	round_number: int
	selected_index: int


class SubmitAnswersRequest(BaseModel):
	answers: List[AnswerIn]


class CancelRequest(BaseModel):
	reason: Optional[str] = Field(default=None, max_length=280)


class StatementView(BaseModel):
	text: str
	is_lie: Optional[bool] = None


class StatementRoundView(BaseModel):
	round_number: int
	statements: List[StatementView]


class VoiceAnswerView(BaseModel):
	question_number: int
	media_url: str
	duration_seconds: float
	transcription: Optional[str] = None
	transcription_status: TranscriptionStatusName
	answered_at: datetime


class ParticipantView(BaseModel):
	user_id: str
	is_complete: bool
	completed_at: Optional[datetime] = None
	last_activity_at: Optional[datetime] = None
	statements_submitted: Optional[bool] = None
	answers_submitted: Optional[bool] = None
	answered_questions: Optional[List[int]] = None


class MyProgressView(BaseModel):
	statements: Optional[List[StatementRoundView]] = None
	guesses: Dict[int, int] = Field(default_factory=dict)
	answers: List[VoiceAnswerView] = Field(default_factory=list)
	next_question: Optional[int] = None


class SessionView(BaseModel):
	session_id: str
	variant: GameVariantName
	match_id: str
	status: SessionStatusName
	inviter_id: str
	invitee_id: str
	me: ParticipantView
	partner: ParticipantView
	my_progress: MyProgressView
	partner_statements: Optional[List[StatementRoundView]] = None
	created_at: datetime
	accepted_at: Optional[datetime] = None
	completed_at: Optional[datetime] = None
	expires_at: datetime
	restart_requested_by: Optional[str] = None
	previous_session_id: Optional[str] = None
	restart_count: int = 0
	cancelled_by: Optional[str] = None
	cancel_reason: Optional[str] = None
	results_ready: bool = False
	insights_ready: bool = False
	discussion_count: int = 0


class TruthsRoundResultView(BaseModel):
	author_id: str
	round_number: int
	statements: List[StatementView]
	lie_index: int
	guessed_index: Optional[int] = None
	correct: bool


class TruthsResultsView(BaseModel):
	scores: Dict[str, int]
	winner: str
	rounds: List[TruthsRoundResultView]


class PairAnalysisView(BaseModel):
	alignment_score: int
	alignment_level: str
	summary_a: str
	summary_b: str
	comparison_insight: str
	discussion_prompt: str


class QuestionResultView(BaseModel):
	question_number: int
	category: str
	scenario_text: str
	core_question: str
	answers: Dict[str, VoiceAnswerView] = Field(default_factory=dict)
	analysis: Optional[PairAnalysisView] = None


class ScenarioResultsView(BaseModel):
	overall_compatibility: int
	compatibility_level: str
	category_scores: Dict[str, Optional[int]]
	strongest_areas: List[Dict[str, Any]]
	areas_to_discuss: List[Dict[str, Any]]
	conversation_starters: List[Dict[str, Any]]
	partial: bool = False
	questions: List[QuestionResultView]


class InsightsView(BaseModel):
	overall_summary: str
	compatibility_analysis: str
	communication_styles: str
	values_alignment: str
	potential_challenges: str
	strengths_as_couple: str
	advice_forward: str
	generated_at: datetime


class DiscussionNoteView(BaseModel):
	note_id: str
	author_id: str
	media_url: str
	duration_seconds: float
	round_number: Optional[int] = None
	transcription: Optional[str] = None
	transcription_status: TranscriptionStatusName
	created_at: datetime
	listened_by: List[str] = Field(default_factory=list)


class ResultsView(BaseModel):
	session_id: str
	variant: GameVariantName
	status: SessionStatusName
	completed_at: Optional[datetime] = None
	truths: Optional[TruthsResultsView] = None
	scenario: Optional[ScenarioResultsView] = None
	insights: Optional[InsightsView] = None
	discussion: List[DiscussionNoteView] = Field(default_factory=list)
	viewed_by: List[str] = Field(default_factory=list)


class QuestionView(BaseModel):
	question_number: int
	category: str
	category_name: str
	scenario_text: str
	core_question: str
	intensity: int
	suggested_duration: int
	total_questions: int


class HistoryItem(BaseModel):
	session_id: str
	variant: GameVariantName
	status: SessionStatusName
	partner_id: str
	completed_at: Optional[datetime] = None
	my_score: Optional[int] = None
	partner_score: Optional[int] = None
	winner: Optional[str] = None
	overall_compatibility: Optional[int] = None
	compatibility_level: Optional[str] = None


class TruthsStatsView(BaseModel):
	total_games: int = 0
	games_won: int = 0
	games_lost: int = 0
	games_tied: int = 0
	average_score: float = 0.0
