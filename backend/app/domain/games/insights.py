"""Narrative insights written after a game's results are known."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import openai
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from app.domain.games import models, questions
from app.settings import settings


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
	"You are a warm, supportive relationship counselor. Give balanced insights that help a couple "
	"understand each other. Be encouraging but honest. Respond only with valid JSON."
)


class InsightsError(RuntimeError):
	pass


class InsightsPayload(BaseModel):
	overall_summary: str = Field(validation_alias="overallSummary")
	compatibility_analysis: str = Field(default="", validation_alias="compatibilityAnalysis")
	communication_styles: str = Field(default="", validation_alias="communicationStyles")
	values_alignment: str = Field(default="", validation_alias="valuesAlignment")
	potential_challenges: str = Field(default="", validation_alias="potentialChallenges")
	strengths_as_couple: str = Field(default="", validation_alias="strengthsAsCouple")
	advice_forward: str = Field(default="", validation_alias="adviceForward")


class InsightsGenerator(Protocol):
	async def summarize(self, rollup: Dict[str, Any]) -> models.Insights: ...


def build_rollup(session: models.Session, names: Dict[str, str]) -> Dict[str, Any]:
	"""Condense a finished session into the facts the narrative is written from."""
	name_a = names.get(session.participant_a.user_id, "Partner A")
	name_b = names.get(session.participant_b.user_id, "Partner B")
	rollup: Dict[str, Any] = {"variant": session.variant.value, "names": [name_a, name_b]}
	results = session.results
	if isinstance(results, models.ScenarioResults):
		rollup.update(
			overall_compatibility=results.overall_compatibility,
			compatibility_level=results.compatibility_level,
			category_scores={
				questions.category_name(key): score
				for key, score in results.category_scores.items()
				if score is not None
			},
			analyses=[
				f"Q{a.question_number}: {a.alignment_level} ({a.alignment_score}%) - {a.comparison_insight}"
				for a in results.question_analyses
			],
			strongest_areas=results.strongest_areas,
			areas_to_discuss=results.areas_to_discuss,
		)
	elif isinstance(results, models.TruthsResults):
		rounds = []
		for participant in session.participants():
			progress = participant.progress
			assert isinstance(progress, models.TruthsProgress)
			author = names.get(participant.user_id, participant.user_id)
			for item in progress.statements or []:
				rounds.append(
					{
						"author": author,
						"truths": [s.text for s in item.statements if not s.is_lie],
						"lie": item.statements[item.lie_index].text,
					}
				)
		rollup.update(
			scores={names.get(uid, uid): score for uid, score in results.scores.items()},
			winner=names.get(results.winner, results.winner),
			rounds=rounds,
		)
	return rollup


class OpenAIInsightsGenerator:
	def __init__(self, client: Optional[openai.AsyncOpenAI] = None, *, model: str | None = None) -> None:
		self._model = model or settings.openai_analysis_model
		if client is None and settings.openai_api_key:
			client = openai.AsyncOpenAI(api_key=settings.openai_api_key)
		self._client = client

	async def summarize(self, rollup: Dict[str, Any]) -> models.Insights:
		if self._client is None:
			raise InsightsError("insights_disabled")
		prompt = (
			"Write insights for a couple based on the game summary below. Each field should be two or "
			"three warm, constructive sentences.\n\n"
			f"SUMMARY:\n{json.dumps(rollup, indent=2)}\n\n"
			"Reply with JSON containing overallSummary, compatibilityAnalysis, communicationStyles, "
			"valuesAlignment, potentialChallenges, strengthsAsCouple and adviceForward."
		)
		try:
			response = await self._client.chat.completions.create(
				model=self._model,
				messages=[
					{"role": "system", "content": SYSTEM_PROMPT},
					{"role": "user", "content": prompt},
				],
				response_format={"type": "json_object"},
				temperature=0.7,
				max_tokens=1000,
			)
			payload = InsightsPayload.model_validate(json.loads(response.choices[0].message.content or ""))
		except (openai.OpenAIError, json.JSONDecodeError, PydanticValidationError, IndexError) as exc:
			raise InsightsError(str(exc)) from exc
		return models.Insights(**payload.model_dump(), generated_at=datetime.now(timezone.utc))


_generator: Optional[InsightsGenerator] = None


def get_insights_generator() -> InsightsGenerator:
	global _generator
	if _generator is None:
		_generator = OpenAIInsightsGenerator()
	return _generator


def set_insights_generator(generator: Optional[InsightsGenerator]) -> None:
	global _generator
	_generator = generator
