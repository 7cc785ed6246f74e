"""Scoring for Two Truths & a Lie and the compatibility rollup for scenarios."""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Optional

from app.domain.games import models, questions


STRONG_AREA_MIN = 80
DISCUSS_AREA_MAX = 60
STARTER_MAX = 70
MAX_STRONG_AREAS = 3
MAX_DISCUSS_AREAS = 5
MAX_STARTERS = 5
NEUTRAL_COMPATIBILITY = 50


def round_half_up(value: float) -> int:
	return int(math.floor(value + 0.5))


def score_truths(session: models.Session) -> models.TruthsResults:
	"""Count each player's correct lie guesses against the partner's rounds."""
	scores: Dict[str, int] = {}
	per_round: Dict[str, List[bool]] = {}
	for participant in session.participants():
		partner = session.partner_of(participant.user_id)
		guesser = participant.progress
		author = partner.progress
		assert isinstance(guesser, models.TruthsProgress) and isinstance(author, models.TruthsProgress)
		rounds = {r.round_number: r for r in author.statements or []}
		hits = [
			guesser.guesses.get(number) == rounds[number].lie_index
			for number in range(1, models.TRUTHS_ROUNDS + 1)
		]
		per_round[participant.user_id] = hits
		scores[participant.user_id] = sum(hits)
	a, b = session.user_ids()
	if scores[a] > scores[b]:
		winner = a
	elif scores[b] > scores[a]:
		winner = b
	else:
		winner = models.TIE
	return models.TruthsResults(scores=scores, winner=winner, per_round=per_round)


def compatibility_level(score: int) -> str:
	if score >= 80:
		return "highly_compatible"
	if score >= 65:
		return "compatible"
	if score >= 50:
		return "needs_discussion"
	return "significant_differences"


def alignment_level(score: int) -> str:
	if score >= 80:
		return "strong_alignment"
	if score >= 60:
		return "moderate_alignment"
	if score >= 40:
		return "different_approaches"
	return "potential_conflict"


def aggregate(analyses: Iterable[models.PairAnalysis], *, partial: bool = False) -> models.ScenarioResults:
	ordered = sorted(analyses, key=lambda a: a.question_number)
	by_category: Dict[str, List[int]] = {key: [] for key in questions.CATEGORIES}
	for analysis in ordered:
		by_category.setdefault(analysis.category, []).append(analysis.alignment_score)
	category_scores: Dict[str, Optional[int]] = {
		key: round_half_up(sum(values) / len(values)) if values else None
		for key, values in by_category.items()
	}
	if ordered:
		overall = round_half_up(sum(a.alignment_score for a in ordered) / len(ordered))
	else:
		overall = NEUTRAL_COMPATIBILITY
	strongest = [
		{"category": a.category, "insight": a.comparison_insight}
		for a in ordered
		if a.alignment_score >= STRONG_AREA_MIN
	][:MAX_STRONG_AREAS]
	to_discuss = [
		{"category": a.category, "insight": a.comparison_insight, "question_number": a.question_number}
		for a in ordered
		if a.alignment_score < DISCUSS_AREA_MAX
	][:MAX_DISCUSS_AREAS]
	starters = [
		{"question_number": a.question_number, "prompt": a.discussion_prompt}
		for a in ordered
		if a.alignment_score < STARTER_MAX and a.discussion_prompt
	][:MAX_STARTERS]
	return models.ScenarioResults(
		overall_compatibility=overall,
		compatibility_level=compatibility_level(overall),
		question_analyses=ordered,
		category_scores=category_scores,
		strongest_areas=strongest,
		areas_to_discuss=to_discuss,
		conversation_starters=starters,
		partial=partial,
	)
