"""Periodic sweep over game sessions: expiry, stuck analysis and retention."""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from app.domain.games import machine, media, models, outbox
from app.domain.games.analysis import AnalysisPipeline
from app.domain.games.models import SessionStatus
from app.domain.games.policy import MediaUnavailable
from app.domain.games.store import SessionRepository, StaleRevision
from app.domain.games.worker import BackgroundWorker, get_worker, job_key
from app.obs import metrics as obs_metrics
from app.settings import settings


logger = logging.getLogger(__name__)

JOB_NAME = "games-reaper"


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


@dataclass(slots=True)
class ReapStats:
	expired: int = 0
	rescheduled: int = 0
	purged: int = 0
	skipped: int = 0
	failed: int = 0

	def as_dict(self) -> Dict[str, int]:
		return asdict(self)


class GameReaper:
	def __init__(
		self,
		repository: SessionRepository | None = None,
		*,
		media_sink: Optional[media.MediaSink] = None,
		pipeline: Optional[AnalysisPipeline] = None,
		worker: Optional[BackgroundWorker] = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._repo = repository or SessionRepository()
		self._media = media_sink
		self._pipeline = pipeline or AnalysisPipeline(self._repo, clock=clock)
		self._worker = worker
		self._clock = clock

	@property
	def media(self) -> media.MediaSink:
		return self._media or media.get_media_sink()

	@property
	def worker(self) -> BackgroundWorker:
		return self._worker or get_worker()

	async def run_once(self) -> ReapStats:
		started = time.perf_counter()
		now = self._clock()
		stats = ReapStats()
		try:
			await self.expire_open(now, stats)
			await self.resume_stuck(now, stats)
			await self.purge_terminal(now, stats)
		except Exception:
			obs_metrics.record_job_run(JOB_NAME, result="error", duration_seconds=time.perf_counter() - started)
			logger.exception("Game reaper run failed")
			raise
		obs_metrics.record_job_run(JOB_NAME, result="ok", duration_seconds=time.perf_counter() - started)
		logger.info("Game reaper run finished", extra=stats.as_dict())
		return stats

	async def expire_open(self, now: datetime, stats: ReapStats) -> None:
		for session in await self._repo.find_expired_before(now):
			if not session.is_open() or session.expires_at >= now:
				continue
			machine.transition(session, SessionStatus.EXPIRED, now)
			try:
				await self._repo.update(session)
			except StaleRevision:
				# Picked up again on the next run if it is still open.
				stats.skipped += 1
				obs_metrics.game_reaped("expire", "conflict")
				continue
			stats.expired += 1
			obs_metrics.game_reaped("expire", "expired")
			obs_metrics.game_transition(session.variant.value, SessionStatus.EXPIRED.value)
			for user_id in session.user_ids():
				await outbox.append_game_event(
					"expired",
					session_id=session.session_id,
					variant=session.variant.value,
					recipient_id=user_id,
				)

	async def resume_stuck(self, now: datetime, stats: ReapStats) -> None:
		cutoff = now - timedelta(minutes=settings.game_analysis_stale_minutes)
		for session in await self._repo.find_stuck_analyzing(cutoff):
			self.worker.schedule(
				job_key("analysis", session.session_id),
				functools.partial(self._pipeline.run, session.session_id),
			)
			stats.rescheduled += 1
			obs_metrics.game_reaped("analysis", "rescheduled")
			logger.info("Rescheduled stuck analysis", extra={"session_id": session.session_id})

	async def purge_terminal(self, now: datetime, stats: ReapStats) -> None:
		cutoff = now - timedelta(days=settings.game_retention_days)
		for session in await self._repo.find_terminal_before(cutoff):
			if await self._delete_media(session):
				await self._repo.delete(session.session_id)
				stats.purged += 1
				obs_metrics.game_reaped("purge", "deleted")
			else:
				stats.failed += 1
				obs_metrics.game_reaped("purge", "media_failed")

	async def _delete_media(self, session: models.Session) -> bool:
		sink = self.media
		ok = True
		for key in session.media_keys():
			try:
				await sink.delete(key)
			except MediaUnavailable as exc:
				ok = False
				logger.warning(
					"Media delete failed; session kept for the next run",
					extra={"session_id": session.session_id, "code": exc.code},
				)
		return ok


_reaper: Optional[GameReaper] = None


def get_reaper() -> GameReaper:
	global _reaper
	if _reaper is None:
		_reaper = GameReaper()
	return _reaper


def set_reaper(reaper: Optional[GameReaper]) -> None:
	global _reaper
	_reaper = reaper


async def run_scheduled() -> None:
	await get_reaper().run_once()
