from datetime import timedelta

import pytest

from app.domain.games import models
from app.domain.games.models import GameVariant, SessionStatus
from app.domain.games.store import SessionRepository
from app.maintenance import reaper as reaper_mod
from app.maintenance.reaper import GameReaper

from games_fakes import FakeClock, make_session, voice_answer


def _scenario_session(status, *, session_id, now, with_notes=True):
	session = make_session(GameVariant.WHAT_WOULD_YOU_DO, status=status, session_id=session_id, now=now)
	for participant in session.participants():
		for number in range(1, 16):
			answer = voice_answer(number, text=f"{participant.user_id} thinks about {number}")
			answer.media_key = f"games/{session_id}/q{number}_{participant.user_id}.webm"
			participant.progress.answers[number] = answer
	if with_notes:
		session.discussion.append(
			models.DiscussionNote(
				note_id="note-1",
				author_id="alice",
				media_url="https://media.test/note",
				media_key=f"games/{session_id}/note-01NOTE_alice.webm",
				mime_type="audio/webm",
				duration_seconds=8.0,
				created_at=now,
			)
		)
	return session


@pytest.mark.asyncio
async def test_purge_removes_media_then_session(games_env):
	clock = FakeClock()
	repo = SessionRepository()
	old = clock.now - timedelta(days=31)
	doomed = _scenario_session(SessionStatus.EXPIRED, session_id="old-expired", now=old)
	recent = _scenario_session(SessionStatus.DECLINED, session_id="recent", now=clock.now - timedelta(days=2))
	await repo.create(doomed)
	await repo.create(recent)

	stats = await GameReaper(repo, clock=clock).run_once()
	assert stats.purged == 1
	assert stats.failed == 0
	assert await repo.get("old-expired") is None
	assert await repo.get("recent") is not None
	assert sorted(games_env.media.deleted) == sorted(doomed.media_keys())
	assert len(games_env.media.deleted) == 31


@pytest.mark.asyncio
async def test_failed_media_delete_keeps_session(games_env):
	clock = FakeClock()
	repo = SessionRepository()
	session = _scenario_session(SessionStatus.ABANDONED, session_id="stubborn", now=clock.now - timedelta(days=40))
	await repo.create(session)
	games_env.media.fail_deletes.add("games/stubborn/q7_bob.webm")

	stats = await GameReaper(repo, clock=clock).run_once()
	assert stats.purged == 0
	assert stats.failed == 1
	assert await repo.get("stubborn") is not None
	assert len(games_env.media.deleted) == 30

	games_env.media.fail_deletes.clear()
	stats = await GameReaper(repo, clock=clock).run_once()
	assert stats.purged == 1
	assert await repo.get("stubborn") is None


@pytest.mark.asyncio
async def test_finished_games_are_not_purged():
	clock = FakeClock()
	repo = SessionRepository()
	session = _scenario_session(SessionStatus.COMPLETED, session_id="keeper", now=clock.now - timedelta(days=90))
	await repo.create(session)
	stats = await GameReaper(repo, clock=clock).run_once()
	assert stats.purged == 0
	assert await repo.get("keeper") is not None


@pytest.mark.asyncio
async def test_stuck_analysis_is_rescheduled(games_env):
	clock = FakeClock()
	repo = SessionRepository()
	started = clock.now
	session = _scenario_session(SessionStatus.ANALYZING, session_id="stuck", now=started, with_notes=False)
	await repo.create(session)

	clock.advance(minutes=5)
	assert (await GameReaper(repo, clock=clock).run_once()).rescheduled == 0

	clock.advance(minutes=15)
	stats = await GameReaper(repo, clock=clock).run_once()
	assert stats.rescheduled == 1
	await games_env.worker.drain()

	stored = await repo.get("stuck")
	assert stored.status == SessionStatus.COMPLETED
	assert stored.completed_at == clock.now
	assert len(stored.results.question_analyses) == 15
	assert stored.insights is not None


@pytest.mark.asyncio
async def test_scheduled_entrypoint_uses_installed_reaper():
	calls = []

	class _Recorder(GameReaper):
		async def run_once(self):
			calls.append(True)
			return await super().run_once()

	reaper_mod.set_reaper(_Recorder(clock=FakeClock()))
	try:
		await reaper_mod.run_scheduled()
	finally:
		reaper_mod.set_reaper(None)
	assert calls == [True]
