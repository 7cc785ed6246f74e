"""Background analysis for scenario games and insights for finished games."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from app.domain.games import analyzer as analyzer_mod
from app.domain.games import insights as insights_mod
from app.domain.games import machine, models, outbox, questions, scoring
from app.domain.games.directory import UserDirectory
from app.domain.games.models import SessionStatus
from app.domain.games.policy import GameError
from app.domain.games.store import SessionRepository, mutate
from app.obs import metrics as obs_metrics
from app.settings import settings


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class AnalysisPipeline:
	def __init__(
		self,
		repository: SessionRepository,
		*,
		analyzer: Optional[analyzer_mod.PairAnalyzer] = None,
		insights: Optional[insights_mod.InsightsGenerator] = None,
		users: Optional[UserDirectory] = None,
		clock: Clock = _utcnow,
		sleep: Sleep = asyncio.sleep,
		backoff_ms: int | None = None,
	) -> None:
		self._repo = repository
		self._analyzer = analyzer
		self._insights = insights
		self._users = users or UserDirectory()
		self._clock = clock
		self._sleep = sleep
		self._backoff = (settings.game_analysis_backoff_ms if backoff_ms is None else backoff_ms) / 1000

	@property
	def analyzer(self) -> analyzer_mod.PairAnalyzer:
		return self._analyzer or analyzer_mod.get_analyzer()

	@property
	def insights(self) -> insights_mod.InsightsGenerator:
		return self._insights or insights_mod.get_insights_generator()

	async def run(self, session_id: str, *, regenerate: bool = False) -> Optional[models.Session]:
		"""Analyze every question both partners have transcribed and store the rollup.

		Without ``regenerate`` the job only proceeds while the session is
		``analyzing``, so duplicate or late jobs are no-ops. With it, a finished
		session's results are recomputed in place.
		"""
		session = await self._repo.get(session_id)
		if session is None:
			logger.warning("Analysis requested for unknown session", extra={"session_id": session_id})
			return None
		if session.variant != models.GameVariant.WHAT_WOULD_YOU_DO:
			return None
		expected = models.FINISHED_STATUSES if regenerate else {SessionStatus.ANALYZING}
		if session.status not in expected:
			logger.info(
				"Skipping analysis; session not in expected state",
				extra={"session_id": session_id, "status": session.status.value},
			)
			return None

		started = time.perf_counter()
		analyses, partial = await self._analyze(session)
		results = scoring.aggregate(analyses, partial=partial)
		obs_metrics.game_analysis_observe(time.perf_counter() - started, partial=partial)

		applied: List[bool] = []

		def apply(current: models.Session) -> Optional[bool]:
			applied.clear()
			if current.status not in expected:
				return False
			current.results = results
			applied.append(True)
			now = self._clock()
			if regenerate:
				current.updated_at = now
			else:
				machine.transition(current, SessionStatus.COMPLETED, now)
			return None

		try:
			stored = await mutate(self._repo, session_id, apply)
		except GameError:
			logger.exception("Failed to store analysis results", extra={"session_id": session_id})
			return None
		if not applied:
			logger.info("Session left analysis before results were stored", extra={"session_id": session_id})
			return None
		logger.info(
			"Analysis stored",
			extra={
				"session_id": session_id,
				"analyzed": len(analyses),
				"overall": results.overall_compatibility,
				"partial": partial,
			},
		)
		if not regenerate:
			obs_metrics.game_transition(stored.variant.value, SessionStatus.COMPLETED.value)
			for user_id in stored.user_ids():
				await outbox.append_game_event(
					"results_ready",
					session_id=session_id,
					variant=stored.variant.value,
					recipient_id=user_id,
				)
		return await self.generate_insights(session_id) or stored

	async def _analyze(self, session: models.Session) -> tuple[List[models.PairAnalysis], bool]:
		a = session.participant_a.progress
		b = session.participant_b.progress
		assert isinstance(a, models.ScenarioProgress) and isinstance(b, models.ScenarioProgress)
		names = await self._users.first_names(session.user_ids())
		name_a = names.get(session.participant_a.user_id, "Partner A")
		name_b = names.get(session.participant_b.user_id, "Partner B")
		analyses: List[models.PairAnalysis] = []
		try:
			for number in range(1, models.SCENARIO_QUESTIONS + 1):
				answer_a = a.answers.get(number)
				answer_b = b.answers.get(number)
				if answer_a is None or answer_b is None or not answer_a.has_text() or not answer_b.has_text():
					continue
				if analyses and self._backoff:
					await self._sleep(self._backoff)
				analyses.append(
					await self.analyzer.analyze(
						questions.get(number),
						answer_a.transcription or "",
						answer_b.transcription or "",
						name_a,
						name_b,
					)
				)
		except Exception:
			logger.exception(
				"Analysis aborted; completing with partial results",
				extra={"session_id": session.session_id, "analyzed": len(analyses)},
			)
			return analyses, True
		return analyses, False

	async def generate_insights(self, session_id: str) -> Optional[models.Session]:
		"""Write narrative insights for a finished session. Failures keep the stored insights."""
		session = await self._repo.get(session_id)
		if session is None or session.results is None or session.status not in models.FINISHED_STATUSES:
			return None
		names = await self._users.first_names(session.user_ids())
		rollup = insights_mod.build_rollup(session, names)
		try:
			generated = await self.insights.summarize(rollup)
		except Exception as exc:
			logger.warning("Insights generation failed", extra={"session_id": session_id, "error": str(exc)})
			obs_metrics.game_insights_outcome("failed")
			return None

		def apply(current: models.Session) -> Optional[bool]:
			if current.results is None or current.status not in models.FINISHED_STATUSES:
				return False
			current.insights = generated
			current.updated_at = self._clock()
			return None

		try:
			stored = await mutate(self._repo, session_id, apply)
		except GameError:
			logger.exception("Failed to store insights", extra={"session_id": session_id})
			return None
		obs_metrics.game_insights_outcome("generated")
		return stored
