import asyncio
from datetime import timedelta

import pytest

from app.domain.games import directory, models, schemas
from app.domain.games.policy import Forbidden, GameError, InvalidTransition, ValidationError
from app.domain.games.service import GamesService
from app.domain.games.store import SessionRepository

from games_fakes import (
	LIES_A,
	LIES_B,
	BarrierRepository,
	FakeClock,
	answers_request,
	make_session,
	statements_request,
	user,
	wrong_choices,
)

ALICE = user("alice")
BOB = user("bob")

async def _start(service: GamesService) -> str:
	await directory.register_match("match-1", "alice", "bob")
	created = await service.create_invitation(ALICE, schemas.CreateInvitationRequest(match_id="match-1", variant="two_truths"))
	await service.accept_invitation(BOB, created.session_id)
	return created.session_id

async def _play_to_completion(service: GamesService, session_id: str) -> schemas.SessionView:
	await service.submit_statements(ALICE, session_id, statements_request(LIES_A, author="alice"))
	await service.submit_statements(BOB, session_id, statements_request(LIES_B, author="bob"))
	await service.submit_answers(BOB, session_id, answers_request(LIES_A))
	return await service.submit_answers(ALICE, session_id, answers_request(wrong_choices(LIES_B)))

@pytest.mark.asyncio
async def test_full_game_scores_and_completes(games_env):
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)

	view = await _play_to_completion(service, session_id)
	assert view.status == "completed"
	assert view.results_ready is True
	assert view.completed_at is not None

	results = await service.get_results(BOB, session_id)
	assert results.truths.scores == {"alice": 0, "bob": 10}
	assert results.truths.winner == "bob"
	assert len(results.truths.rounds) == 20
	bob_guesses = [r for r in results.truths.rounds if r.author_id == "alice"]
	assert all(r.correct for r in bob_guesses)
	assert results.viewed_by == ["bob"]

	await games_env.worker.drain()
	results = await service.get_results(ALICE, session_id)
	assert results.insights is not None
	assert results.insights.overall_summary.endswith("two_truths")
	assert games_env.insights.rollups[0]["variant"] == "two_truths"
	assert results.viewed_by == ["alice", "bob"]

@pytest.mark.asyncio
async def test_partner_lies_hidden_until_finished():
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	await service.submit_statements(ALICE, session_id, statements_request(LIES_A, author="alice"))

	before_own = await service.get_session_state(BOB, session_id)
	assert before_own.partner_statements is None

	view = await service.submit_statements(BOB, session_id, statements_request(LIES_B, author="bob"))
	assert view.partner_statements is not None
	assert all(s.is_lie is None for r in view.partner_statements for s in r.statements)
	assert [s.is_lie for s in view.my_progress.statements[0].statements] == [True, False, False]
	assert view.partner.statements_submitted is True

	await service.submit_answers(BOB, session_id, answers_request(LIES_A))
	await service.submit_answers(ALICE, session_id, answers_request(LIES_B))
	finished = await service.get_session_state(BOB, session_id)
	first = finished.partner_statements[0]
	assert [s.is_lie for s in first.statements] == [False, False, True]

@pytest.mark.asyncio
async def test_waiting_after_first_player_finishes():
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	await service.submit_statements(ALICE, session_id, statements_request(LIES_A))
	await service.submit_statements(BOB, session_id, statements_request(LIES_B))
	view = await service.submit_answers(BOB, session_id, answers_request(LIES_A))
	assert view.status == "waiting"
	assert view.me.is_complete is True
	assert view.partner.is_complete is False

@pytest.mark.asyncio
async def test_resubmitting_is_rejected():
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	await service.submit_statements(ALICE, session_id, statements_request(LIES_A))
	with pytest.raises(InvalidTransition) as exc:
		await service.submit_statements(ALICE, session_id, statements_request(LIES_B))
	assert exc.value.code == "already_submitted"

	state = await service.get_session_state(ALICE, session_id)
	assert state.my_progress.statements[0].statements[2].is_lie is True

@pytest.mark.asyncio
async def test_answers_need_both_statement_sets():
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	with pytest.raises(InvalidTransition) as exc:
		await service.submit_answers(ALICE, session_id, answers_request(LIES_B))
	assert exc.value.code == "statements_required"

	await service.submit_statements(ALICE, session_id, statements_request(LIES_A))
	with pytest.raises(InvalidTransition) as exc:
		await service.submit_answers(ALICE, session_id, answers_request(LIES_B))
	assert exc.value.code == "partner_statements_pending"

@pytest.mark.asyncio
async def test_invalid_statements_leave_session_unchanged():
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	with pytest.raises(ValidationError):
		await service.submit_statements(ALICE, session_id, statements_request(LIES_A[:9]))
	state = await service.get_session_state(ALICE, session_id)
	assert state.my_progress.statements is None
	assert state.status == "active"

@pytest.mark.asyncio
async def test_concurrent_final_answers_converge(games_env):
	repo = BarrierRepository()
	service = GamesService(repo, clock=FakeClock())
	session_id = await _start(service)
	await service.submit_statements(ALICE, session_id, statements_request(LIES_A))
	await service.submit_statements(BOB, session_id, statements_request(LIES_B))

	repo.race(2)
	views = await asyncio.gather(
		service.submit_answers(ALICE, session_id, answers_request(LIES_B)),
		service.submit_answers(BOB, session_id, answers_request(LIES_A)),
	)
	# both writers read the same revision, so exactly one of them retried
	assert repo.stale_writes == 1
	assert sorted(view.status for view in views) == ["completed", "waiting"]
	stored = await repo.get(session_id)
	assert stored.status == models.SessionStatus.COMPLETED
	assert stored.results.scores == {"alice": 10, "bob": 10}
	assert stored.results.winner == models.TIE
	await games_env.worker.drain()
	assert len(games_env.insights.rollups) == 1

class _InterferingRepository(SessionRepository):
	"""Lets another writer bump the session between a read and its write."""

	def __init__(self) -> None:
		super().__init__()
		self.reads_until_interference: int | None = None
		self.interfered = False

	async def get(self, session_id):
		session = await super().get(session_id)
		if self.reads_until_interference is not None and session is not None:
			self.reads_until_interference -= 1
			if self.reads_until_interference == 0:
				self.reads_until_interference = None
				self.interfered = True
				other = await super().get(session_id)
				other.participant_b.last_activity_at = other.updated_at
				await super().update(other)
		return session

@pytest.mark.asyncio
async def test_write_conflict_is_retried():
	repo = _InterferingRepository()
	service = GamesService(repo, clock=FakeClock())
	await directory.register_match("match-1", "alice", "bob")
	created = await service.create_invitation(ALICE, schemas.CreateInvitationRequest(match_id="match-1", variant="two_truths"))
	await service.accept_invitation(BOB, created.session_id)

	# first read is the up-front check, second is the one the write is based on
	repo.reads_until_interference = 2
	view = await service.submit_statements(ALICE, created.session_id, statements_request(LIES_A))
	assert repo.interfered is True
	assert view.me.statements_submitted is True
	stored = await repo.get(created.session_id)
	assert stored.revision == 3
	assert stored.participant_b.last_activity_at is not None
	assert stored.participant_a.progress.statements is not None

@pytest.mark.asyncio
async def test_restart_creates_linked_session(games_env):
	clock = FakeClock()
	service = GamesService(clock=clock)
	session_id = await _start(service)
	await _play_to_completion(service, session_id)

	requested = await service.request_restart(ALICE, session_id)
	assert requested.restart_requested_by == "alice"
	with pytest.raises(InvalidTransition) as exc:
		await service.request_restart(BOB, session_id)
	assert exc.value.code == "restart_already_requested"
	with pytest.raises(Forbidden) as exc:
		await service.accept_restart(ALICE, session_id)
	assert exc.value.code == "own_restart_request"

	clock.advance(hours=1)
	fresh = await service.accept_restart(BOB, session_id)
	assert fresh.session_id != session_id
	assert fresh.status == "active"
	assert fresh.previous_session_id == session_id
	assert fresh.restart_count == 1
	assert fresh.inviter_id == "alice" and fresh.invitee_id == "bob"
	assert fresh.created_at == clock.now
	assert fresh.expires_at == clock.now + timedelta(hours=72)
	assert fresh.my_progress.statements is None

	old = await service.repository.get(session_id)
	assert old.restart_requested_by is None
	assert old.status == models.SessionStatus.COMPLETED
	assert old.results is not None

	active = await service.get_active_session(BOB, "two_truths")
	assert active.session_id == fresh.session_id

@pytest.mark.asyncio
async def test_declined_restart_clears_request():
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	await _play_to_completion(service, session_id)
	with pytest.raises(InvalidTransition) as exc:
		await service.decline_restart(BOB, session_id)
	assert exc.value.code == "no_restart_request"

	await service.request_restart(BOB, session_id)
	view = await service.decline_restart(ALICE, session_id)
	assert view.restart_requested_by is None
	with pytest.raises(InvalidTransition):
		await service.accept_restart(ALICE, session_id)

@pytest.mark.asyncio
async def test_restart_only_after_finish():
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	with pytest.raises(InvalidTransition) as exc:
		await service.request_restart(ALICE, session_id)
	assert exc.value.code == "invalid_state"

@pytest.mark.asyncio
async def test_history_lists_finished_games():
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	await _play_to_completion(service, session_id)
	history = await service.get_history(ALICE)
	assert [item.session_id for item in history] == [session_id]
	assert history[0].my_score == 0
	assert history[0].partner_score == 10
	assert history[0].partner_id == "bob"
	assert history[0].winner == "bob"

async def _rematch(service: GamesService) -> str:
	created = await service.create_invitation(ALICE, schemas.CreateInvitationRequest(match_id="match-1", variant="two_truths"))
	await service.accept_invitation(BOB, created.session_id)
	await service.submit_statements(ALICE, created.session_id, statements_request(LIES_A))
	await service.submit_statements(BOB, created.session_id, statements_request(LIES_B))
	return created.session_id

@pytest.mark.asyncio
async def test_stats_count_wins_losses_and_ties():
	clock = FakeClock()
	service = GamesService(clock=clock)
	assert await service.get_truths_stats(ALICE) == schemas.TruthsStatsView()

	await _play_to_completion(service, await _start(service))
	clock.advance(minutes=5)
	tied = await _rematch(service)
	await service.submit_answers(ALICE, tied, answers_request(LIES_B))
	await service.submit_answers(BOB, tied, answers_request(LIES_A))
	clock.advance(minutes=5)
	won = await _rematch(service)
	await service.submit_answers(ALICE, won, answers_request(LIES_B))
	await service.submit_answers(BOB, won, answers_request(wrong_choices(LIES_A)))
	await service.repository.create(
		make_session(models.GameVariant.WHAT_WOULD_YOU_DO, status=models.SessionStatus.COMPLETED, session_id="scenario-1")
	)

	alice = await service.get_truths_stats(ALICE)
	assert (alice.total_games, alice.games_won, alice.games_lost, alice.games_tied) == (3, 1, 1, 1)
	assert alice.average_score == 6.7
	bob = await service.get_truths_stats(BOB)
	assert (bob.games_won, bob.games_lost, bob.games_tied) == (1, 1, 1)
	assert await service.get_truths_stats(user("carol")) == schemas.TruthsStatsView()

@pytest.mark.asyncio
async def test_regenerate_rewrites_insights_only(games_env):
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	await _play_to_completion(service, session_id)
	await games_env.worker.drain()
	before = await service.repository.get(session_id)

	results = await service.regenerate_analysis(session_id)
	assert len(games_env.insights.rollups) == 2
	assert results.status == "completed"
	assert results.truths.scores == {"alice": 0, "bob": 10}
	assert results.insights is not None
	stored = await service.repository.get(session_id)
	assert stored.status == before.status
	assert stored.completed_at == before.completed_at

@pytest.mark.asyncio
async def test_participant_can_regenerate_insights(games_env):
	service = GamesService(clock=FakeClock())
	session_id = await _start(service)
	with pytest.raises(InvalidTransition) as exc:
		await service.regenerate_insights(ALICE, session_id)
	assert exc.value.code == "invalid_state"

	await _play_to_completion(service, session_id)
	await games_env.worker.drain()
	results = await service.regenerate_insights(BOB, session_id)
	assert results.insights.overall_summary.endswith("two_truths")
	assert len(games_env.insights.rollups) == 2
	with pytest.raises(Forbidden) as exc:
		await service.regenerate_insights(user("carol"), session_id)
	assert exc.value.code == "not_participant"

	games_env.insights.fail = True
	with pytest.raises(GameError) as exc:
		await service.regenerate_insights(ALICE, session_id)
	assert exc.value.code == "insights_unavailable"
	assert exc.value.status_code == 503
	stored = await service.repository.get(session_id)
	assert stored.insights is not None
