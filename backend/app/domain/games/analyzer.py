"""Pairwise comparison of two scenario answers."""

from __future__ import annotations

import json
import logging
from typing import Optional, Protocol

import openai
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from app.domain.games import models, scoring
from app.domain.games.questions import Question
from app.settings import settings


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
	"You are a relationship compatibility analyst. Be fair, balanced and constructive. "
	"Focus on compatibility rather than judgment. Respond only with valid JSON."
)


class PairAnalysisPayload(BaseModel):
	alignment_score: float = Field(validation_alias="alignmentScore", allow_inf_nan=False)
	alignment_level: Optional[str] = Field(default=None, validation_alias="alignmentLevel")
	player1_summary: str = Field(default="", validation_alias="player1Summary")
	player2_summary: str = Field(default="", validation_alias="player2Summary")
	comparison_insight: str = Field(default="", validation_alias="comparisonInsight")
	discussion_prompt: str = Field(default="", validation_alias="discussionPrompt")


class PairAnalyzer(Protocol):
	async def analyze(
		self,
		question: Question,
		text_a: str,
		text_b: str,
		name_a: str,
		name_b: str,
	) -> models.PairAnalysis: ...


def neutral_analysis(question: Question) -> models.PairAnalysis:
	return models.PairAnalysis(
		question_number=question.question_number,
		category=question.category,
		alignment_score=50,
		alignment_level="moderate_alignment",
		summary_a="",
		summary_b="",
		comparison_insight="Analysis unavailable",
		discussion_prompt="Discuss this scenario.",
	)


def build_prompt(question: Question, text_a: str, text_b: str, name_a: str, name_b: str) -> str:
	return f"""Compare two answers to a relationship scenario.

SCENARIO: "{question.scenario_text}"
CORE QUESTION: {question.core_question}
THEMES: {", ".join(question.analysis_hints)}

{name_a.upper()} ANSWERED:
"{text_a}"

{name_b.upper()} ANSWERED:
"{text_b}"

Reply with JSON:
{{
  "alignmentScore": <0-100>,
  "alignmentLevel": "<strong_alignment|moderate_alignment|different_approaches|potential_conflict>",
  "player1Summary": "<one sentence on {name_a}'s approach>",
  "player2Summary": "<one sentence on {name_b}'s approach>",
  "comparisonInsight": "<one or two sentences comparing them>",
  "discussionPrompt": "<a question to talk about together>"
}}"""


def normalise(question: Question, payload: PairAnalysisPayload) -> models.PairAnalysis:
	score = max(0, min(100, scoring.round_half_up(payload.alignment_score)))
	level = payload.alignment_level if payload.alignment_level in models.ALIGNMENT_LEVELS else scoring.alignment_level(score)
	return models.PairAnalysis(
		question_number=question.question_number,
		category=question.category,
		alignment_score=score,
		alignment_level=level,
		summary_a=payload.player1_summary.strip(),
		summary_b=payload.player2_summary.strip(),
		comparison_insight=payload.comparison_insight.strip(),
		discussion_prompt=payload.discussion_prompt.strip(),
	)


class OpenAIPairAnalyzer:
	def __init__(self, client: Optional[openai.AsyncOpenAI] = None, *, model: str | None = None) -> None:
		self._model = model or settings.openai_analysis_model
		if client is None and settings.openai_api_key:
			client = openai.AsyncOpenAI(api_key=settings.openai_api_key)
		self._client = client

	async def analyze(
		self,
		question: Question,
		text_a: str,
		text_b: str,
		name_a: str,
		name_b: str,
	) -> models.PairAnalysis:
		if self._client is None:
			return neutral_analysis(question)
		try:
			response = await self._client.chat.completions.create(
				model=self._model,
				messages=[
					{"role": "system", "content": SYSTEM_PROMPT},
					{"role": "user", "content": build_prompt(question, text_a, text_b, name_a, name_b)},
				],
				response_format={"type": "json_object"},
				temperature=0.7,
				max_tokens=500,
			)
			content = response.choices[0].message.content or ""
			payload = PairAnalysisPayload.model_validate(json.loads(content))
		except (openai.OpenAIError, json.JSONDecodeError, PydanticValidationError, IndexError) as exc:
			logger.warning(
				"Pair analysis failed; using neutral result",
				extra={"question_number": question.question_number, "error": str(exc)},
			)
			return neutral_analysis(question)
		return normalise(question, payload)


_analyzer: Optional[PairAnalyzer] = None


def get_analyzer() -> PairAnalyzer:
	global _analyzer
	if _analyzer is None:
		_analyzer = OpenAIPairAnalyzer()
	return _analyzer


def set_analyzer(analyzer: Optional[PairAnalyzer]) -> None:
	global _analyzer
	_analyzer = analyzer
