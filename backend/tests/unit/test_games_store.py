import json
from datetime import timedelta

import pytest

from app.domain.games import directory, models, scoring, store
from app.domain.games.models import GameVariant, SessionStatus
from app.domain.games.policy import Conflict, NotFound, StoreUnavailable
from app.domain.games.store import DuplicateSession, SessionRepository, StaleRevision
from app.settings import settings

from games_fakes import LIES_A, LIES_B, make_session, truths_rounds, voice_answer


@pytest.mark.asyncio
async def test_update_is_compare_and_set():
	repo = SessionRepository()
	await repo.create(make_session())

	first = await repo.get("session-1")
	second = await repo.get("session-1")
	first.participant_a.last_activity_at = first.created_at
	await repo.update(first)
	assert first.revision == 1

	second.participant_b.last_activity_at = second.created_at
	with pytest.raises(StaleRevision):
		await repo.update(second)
	assert second.revision == 0

	stored = await repo.get("session-1")
	assert stored.revision == 1
	assert stored.participant_b.last_activity_at is None


@pytest.mark.asyncio
async def test_reads_are_isolated_copies():
	repo = SessionRepository()
	await repo.create(make_session())
	loaded = await repo.get("session-1")
	loaded.status = SessionStatus.ACTIVE
	assert (await repo.get("session-1")).status == SessionStatus.PENDING


@pytest.mark.asyncio
async def test_duplicate_create_rejected():
	repo = SessionRepository()
	await repo.create(make_session())
	with pytest.raises(DuplicateSession):
		await repo.create(make_session())


@pytest.mark.asyncio
async def test_memory_fallback_is_dev_only(monkeypatch):
	attempts = []

	async def unreachable():
		attempts.append(1)
		raise ConnectionRefusedError("postgres is down")

	monkeypatch.setattr(store, "get_pool", unreachable)
	repo = SessionRepository()
	await repo.create(make_session())
	assert await repo.get("session-1") is not None
	assert len(attempts) == 2

	monkeypatch.setattr(settings, "environment", "production")
	with pytest.raises(StoreUnavailable) as exc:
		await repo.get("session-1")
	assert exc.value.status_code == 503
	assert exc.value.code == "store_unavailable"
	with pytest.raises(StoreUnavailable):
		await directory.MatchDirectory().get_counterpart("match-1", "alice")
	assert len(attempts) == 4


@pytest.mark.asyncio
async def test_mutate_gives_up_after_repeated_conflicts():
	repo = SessionRepository()
	await repo.create(make_session())

	def change(session):
		# a competing writer lands before every attempt's write
		store._MEMORY.sessions[session.session_id].revision += 1
		session.participant_a.last_activity_at = session.created_at

	with pytest.raises(Conflict) as exc:
		await store.mutate(repo, "session-1", change, attempts=2)
	assert exc.value.code == "conflict"
	assert exc.value.session_id == "session-1"


@pytest.mark.asyncio
async def test_mutate_missing_session():
	with pytest.raises(NotFound):
		await store.mutate(SessionRepository(), "missing", lambda s: None)


@pytest.mark.asyncio
async def test_mutate_can_skip_the_write():
	repo = SessionRepository()
	await repo.create(make_session())
	result = await store.mutate(repo, "session-1", lambda s: False)
	assert result.revision == 0
	assert (await repo.get("session-1")).revision == 0


@pytest.mark.asyncio
async def test_commit_restart_writes_both_or_neither():
	repo = SessionRepository()
	old = make_session(status=SessionStatus.COMPLETED)
	old.restart_requested_by = "alice"
	await repo.create(old)

	stale = await repo.get("session-1")
	fresh_copy = await repo.get("session-1")
	fresh_copy.updated_at = fresh_copy.updated_at + timedelta(minutes=1)
	await repo.update(fresh_copy)

	stale.restart_requested_by = None
	follow_up = make_session(status=SessionStatus.ACTIVE, session_id="session-2")
	with pytest.raises(StaleRevision):
		await repo.commit_restart(stale, follow_up)
	assert await repo.get("session-2") is None

	current = await repo.get("session-1")
	current.restart_requested_by = None
	await repo.commit_restart(current, follow_up)
	assert (await repo.get("session-1")).restart_requested_by is None
	assert (await repo.get("session-2")).status == SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_queries_by_participant_and_status():
	repo = SessionRepository()
	base = make_session(status=SessionStatus.PENDING, session_id="p1")
	active = make_session(GameVariant.WHAT_WOULD_YOU_DO, status=SessionStatus.ACTIVE, session_id="a1", now=base.created_at + timedelta(hours=1))
	done = make_session(status=SessionStatus.COMPLETED, session_id="c1", user_b="carol")
	for session in (base, active, done):
		await repo.create(session)

	assert [s.session_id for s in await repo.find_pending_for("bob", base.created_at)] == ["p1"]
	assert await repo.find_pending_for("alice", base.created_at) == []
	assert (await repo.get_active_for_user("alice")).session_id == "a1"
	assert (await repo.get_active_for_user("alice", GameVariant.TWO_TRUTHS)).session_id == "p1"
	assert (await repo.find_open_between("bob", "alice", GameVariant.TWO_TRUTHS)).session_id == "p1"
	assert await repo.find_open_between("alice", "carol", GameVariant.TWO_TRUTHS) is None
	assert [s.session_id for s in await repo.list_finished_for_user("carol")] == ["c1"]
	expired = await repo.find_expired_before(base.created_at + timedelta(hours=72, seconds=1))
	assert sorted(s.session_id for s in expired) == ["p1"]


def test_document_round_trip_keeps_every_field():
	session = make_session(GameVariant.TWO_TRUTHS, status=SessionStatus.COMPLETED)
	session.participant_a.progress.statements = truths_rounds(LIES_A)
	session.participant_b.progress.statements = truths_rounds(LIES_B)
	session.participant_a.progress.guesses = {n: LIES_B[n - 1] for n in range(1, 11)}
	session.participant_b.progress.guesses = {n: 0 for n in range(1, 11)}
	session.results = scoring.score_truths(session)
	session.viewed_results_by = {"bob"}
	session.restart_requested_by = "alice"
	session.restart_requested_at = session.updated_at

	doc = json.loads(json.dumps(session.to_document()))
	restored = models.Session.from_document(doc)
	assert restored == session
	assert restored.participant_a.progress.guesses[3] == LIES_B[2]


def test_scenario_document_round_trip():
	session = make_session(GameVariant.WHAT_WOULD_YOU_DO, status=SessionStatus.DISCUSSION)
	session.participant_a.progress.answers = {1: voice_answer(1), 2: voice_answer(2, text=None, status=models.TranscriptionStatus.FAILED)}
	session.results = scoring.aggregate([], partial=True)
	session.discussion.append(
		models.DiscussionNote(
			note_id="n1",
			author_id="bob",
			media_url="https://media.test/n1",
			media_key="games/n1",
			mime_type="audio/ogg",
			duration_seconds=4.0,
			created_at=session.created_at,
			listened_by={"alice"},
		)
	)
	restored = models.Session.from_document(json.loads(json.dumps(session.to_document())))
	assert restored == session
	assert restored.results.partial is True
	assert restored.participant_a.progress.answers[2].transcription_status == models.TranscriptionStatus.FAILED
