"""Service orchestration for asynchronous couple games."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import ulid

from app.domain.games import machine, media, models, outbox, policy, questions, schemas, scoring, transcriber
from app.domain.games.analysis import AnalysisPipeline
from app.domain.games.directory import MatchDirectory, UserDirectory
from app.domain.games.machine import Action
from app.domain.games.models import GameVariant, SessionStatus, TranscriptionStatus
from app.domain.games.policy import Conflict, Forbidden, GameError, InvalidTransition, NotFound
from app.domain.games.store import SessionRepository, StaleRevision, mutate
from app.domain.games.worker import BackgroundWorker, get_worker, job_key
from app.infra.auth import AuthenticatedUser
from app.obs import metrics as obs_metrics
from app.settings import settings


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _new_id() -> str:
	return str(ulid.new())


def _empty_progress(variant: GameVariant) -> models.Progress:
	if variant == GameVariant.TWO_TRUTHS:
		return models.TruthsProgress()
	return models.ScenarioProgress()


def _voice_view(answer: models.VoiceAnswer) -> schemas.VoiceAnswerView:
	return schemas.VoiceAnswerView(
		question_number=answer.question_number,
		media_url=answer.media_url,
		duration_seconds=answer.duration_seconds,
		transcription=answer.transcription,
		transcription_status=answer.transcription_status.value,
		answered_at=answer.answered_at,
	)


def _note_view(note: models.DiscussionNote) -> schemas.DiscussionNoteView:
	return schemas.DiscussionNoteView(
		note_id=note.note_id,
		author_id=note.author_id,
		media_url=note.media_url,
		duration_seconds=note.duration_seconds,
		round_number=note.round_number,
		transcription=note.transcription,
		transcription_status=note.transcription_status.value,
		created_at=note.created_at,
		listened_by=sorted(note.listened_by),
	)


def _rounds_view(rounds: List[models.StatementRound], *, reveal: bool) -> List[schemas.StatementRoundView]:
	return [
		schemas.StatementRoundView(
			round_number=item.round_number,
			statements=[
				schemas.StatementView(text=s.text, is_lie=s.is_lie if reveal else None)
				for s in item.statements
			],
		)
		for item in rounds
	]


def _participant_view(participant: models.Participant) -> schemas.ParticipantView:
	view = schemas.ParticipantView(
		user_id=participant.user_id,
		is_complete=participant.is_complete,
		completed_at=participant.completed_at,
		last_activity_at=participant.last_activity_at,
	)
	progress = participant.progress
	if isinstance(progress, models.TruthsProgress):
		view.statements_submitted = progress.statements is not None
		view.answers_submitted = bool(progress.guesses)
	else:
		view.answered_questions = sorted(progress.answers)
	return view


def _my_progress(participant: models.Participant) -> schemas.MyProgressView:
	progress = participant.progress
	if isinstance(progress, models.TruthsProgress):
		return schemas.MyProgressView(
			statements=_rounds_view(progress.statements, reveal=True) if progress.statements is not None else None,
			guesses=dict(progress.guesses),
		)
	answered = set(progress.answers)
	remaining = [n for n in range(1, models.SCENARIO_QUESTIONS + 1) if n not in answered]
	return schemas.MyProgressView(
		answers=[_voice_view(progress.answers[n]) for n in sorted(progress.answers)],
		next_question=remaining[0] if remaining else None,
	)


def session_view(session: models.Session, viewer_id: str) -> schemas.SessionView:
	"""Viewer-specific state. Partner lies stay hidden until results exist."""
	me = session.participant(viewer_id)
	partner = session.partner_of(viewer_id)
	partner_statements = None
	partner_progress = partner.progress
	if isinstance(partner_progress, models.TruthsProgress) and partner_progress.statements is not None:
		own = me.progress
		assert isinstance(own, models.TruthsProgress)
		if own.statements is not None:
			partner_statements = _rounds_view(partner_progress.statements, reveal=session.is_finished())
	return schemas.SessionView(
		session_id=session.session_id,
		variant=session.variant.value,
		match_id=session.match_id,
		status=session.status.value,
		inviter_id=session.participant_a.user_id,
		invitee_id=session.participant_b.user_id,
		me=_participant_view(me),
		partner=_participant_view(partner),
		my_progress=_my_progress(me),
		partner_statements=partner_statements,
		created_at=session.created_at,
		accepted_at=session.accepted_at,
		completed_at=session.completed_at,
		expires_at=session.expires_at,
		restart_requested_by=session.restart_requested_by,
		previous_session_id=session.previous_session_id,
		restart_count=session.restart_count,
		cancelled_by=session.cancelled_by,
		cancel_reason=session.cancel_reason,
		results_ready=session.results is not None and session.is_finished(),
		insights_ready=session.insights is not None,
		discussion_count=len(session.discussion),
	)


def _truths_results_view(session: models.Session, results: models.TruthsResults) -> schemas.TruthsResultsView:
	rounds: List[schemas.TruthsRoundResultView] = []
	for author in session.participants():
		guesser = session.partner_of(author.user_id)
		authored = author.progress
		guessed = guesser.progress
		assert isinstance(authored, models.TruthsProgress) and isinstance(guessed, models.TruthsProgress)
		for item in authored.statements or []:
			choice = guessed.guesses.get(item.round_number)
			rounds.append(
				schemas.TruthsRoundResultView(
					author_id=author.user_id,
					round_number=item.round_number,
					statements=[schemas.StatementView(text=s.text, is_lie=s.is_lie) for s in item.statements],
					lie_index=item.lie_index,
					guessed_index=choice,
					correct=choice == item.lie_index,
				)
			)
	return schemas.TruthsResultsView(scores=dict(results.scores), winner=results.winner, rounds=rounds)


def _scenario_results_view(session: models.Session, results: models.ScenarioResults) -> schemas.ScenarioResultsView:
	analyses = {a.question_number: a for a in results.question_analyses}
	rows: List[schemas.QuestionResultView] = []
	for question in questions.QUESTIONS:
		answers: Dict[str, schemas.VoiceAnswerView] = {}
		for participant in session.participants():
			progress = participant.progress
			assert isinstance(progress, models.ScenarioProgress)
			answer = progress.answers.get(question.question_number)
			if answer is not None:
				answers[participant.user_id] = _voice_view(answer)
		analysis = analyses.get(question.question_number)
		rows.append(
			schemas.QuestionResultView(
				question_number=question.question_number,
				category=question.category,
				scenario_text=question.scenario_text,
				core_question=question.core_question,
				answers=answers,
				analysis=schemas.PairAnalysisView(
					alignment_score=analysis.alignment_score,
					alignment_level=analysis.alignment_level,
					summary_a=analysis.summary_a,
					summary_b=analysis.summary_b,
					comparison_insight=analysis.comparison_insight,
					discussion_prompt=analysis.discussion_prompt,
				)
				if analysis
				else None,
			)
		)
	return schemas.ScenarioResultsView(
		overall_compatibility=results.overall_compatibility,
		compatibility_level=results.compatibility_level,
		category_scores=dict(results.category_scores),
		strongest_areas=list(results.strongest_areas),
		areas_to_discuss=list(results.areas_to_discuss),
		conversation_starters=list(results.conversation_starters),
		partial=results.partial,
		questions=rows,
	)


def results_view(session: models.Session) -> schemas.ResultsView:
	view = schemas.ResultsView(
		session_id=session.session_id,
		variant=session.variant.value,
		status=session.status.value,
		completed_at=session.completed_at,
		discussion=[_note_view(note) for note in session.discussion],
		viewed_by=sorted(session.viewed_results_by),
	)
	if isinstance(session.results, models.TruthsResults):
		view.truths = _truths_results_view(session, session.results)
	elif isinstance(session.results, models.ScenarioResults):
		view.scenario = _scenario_results_view(session, session.results)
	if session.insights is not None:
		ins = session.insights
		view.insights = schemas.InsightsView(
			overall_summary=ins.overall_summary,
			compatibility_analysis=ins.compatibility_analysis,
			communication_styles=ins.communication_styles,
			values_alignment=ins.values_alignment,
			potential_challenges=ins.potential_challenges,
			strengths_as_couple=ins.strengths_as_couple,
			advice_forward=ins.advice_forward,
			generated_at=ins.generated_at,
		)
	return view


def _history_item(session: models.Session, viewer_id: str) -> schemas.HistoryItem:
	partner_id = session.partner_of(viewer_id).user_id
	item = schemas.HistoryItem(
		session_id=session.session_id,
		variant=session.variant.value,
		status=session.status.value,
		partner_id=partner_id,
		completed_at=session.completed_at,
	)
	if isinstance(session.results, models.TruthsResults):
		item.my_score = session.results.scores.get(viewer_id)
		item.partner_score = session.results.scores.get(partner_id)
		item.winner = session.results.winner
	elif isinstance(session.results, models.ScenarioResults):
		item.overall_compatibility = session.results.overall_compatibility
		item.compatibility_level = session.results.compatibility_level
	return item


class GamesService:
	def __init__(
		self,
		repository: SessionRepository | None = None,
		*,
		media_sink: Optional[media.MediaSink] = None,
		transcriber_client: Optional[transcriber.Transcriber] = None,
		pipeline: Optional[AnalysisPipeline] = None,
		worker: Optional[BackgroundWorker] = None,
		users: Optional[UserDirectory] = None,
		matches: Optional[MatchDirectory] = None,
		clock: Clock = _utcnow,
	) -> None:
		self._repo = repository or SessionRepository()
		self._media = media_sink
		self._transcriber = transcriber_client
		self._users = users or UserDirectory()
		self._matches = matches or MatchDirectory()
		self._clock = clock
		self._pipeline = pipeline or AnalysisPipeline(self._repo, users=self._users, clock=clock)
		self._worker = worker

	@property
	def repository(self) -> SessionRepository:
		return self._repo

	@property
	def pipeline(self) -> AnalysisPipeline:
		return self._pipeline

	@property
	def media(self) -> media.MediaSink:
		return self._media or media.get_media_sink()

	@property
	def transcriber(self) -> transcriber.Transcriber:
		return self._transcriber or transcriber.get_transcriber()

	@property
	def worker(self) -> BackgroundWorker:
		return self._worker or get_worker()

	async def _require_session(self, session_id: str) -> models.Session:
		session = await self._repo.get(session_id)
		if session is None:
			raise NotFound("session_not_found", session_id=session_id)
		return session

	async def _mutate(self, session_id: str, change: Callable[[models.Session], Optional[bool]]) -> models.Session:
		return await mutate(self._repo, session_id, change)

	async def _notify(
		self,
		event: str,
		session: models.Session,
		*,
		recipient_id: Optional[str],
		actor_id: Optional[str] = None,
		meta: Dict[str, object] | None = None,
	) -> None:
		await outbox.append_game_event(
			event,
			session_id=session.session_id,
			variant=session.variant.value,
			recipient_id=recipient_id,
			actor_id=actor_id,
			meta=meta,
		)

	def _schedule_analysis(self, session_id: str) -> None:
		self.worker.schedule(job_key("analysis", session_id), lambda: self._pipeline.run(session_id))

	def _schedule_insights(self, session_id: str) -> None:
		self.worker.schedule(job_key("insights", session_id), lambda: self._pipeline.generate_insights(session_id))

	async def _transcribe(self, blob: bytes, mime_type: str, *, session_id: str) -> tuple[Optional[str], TranscriptionStatus]:
		engine = self.transcriber
		if not engine.enabled:
			obs_metrics.game_transcription_outcome(TranscriptionStatus.SKIPPED.value)
			return None, TranscriptionStatus.SKIPPED
		try:
			text = await engine.transcribe(blob, mime_type)
		except Exception as exc:
			logger.warning("Transcription failed", extra={"session_id": session_id, "error": str(exc)})
			obs_metrics.game_transcription_outcome(TranscriptionStatus.FAILED.value)
			return None, TranscriptionStatus.FAILED
		if not (text or "").strip():
			obs_metrics.game_transcription_outcome(TranscriptionStatus.FAILED.value)
			return None, TranscriptionStatus.FAILED
		obs_metrics.game_transcription_outcome(TranscriptionStatus.COMPLETED.value)
		return text.strip(), TranscriptionStatus.COMPLETED

	async def _put_media(self, blob: bytes, key: str, mime_type: str, *, session_id: str) -> media.StoredMedia:
		try:
			return await self.media.put(blob, key, mime_type)
		except policy.MediaUnavailable as exc:
			exc.session_id = session_id
			raise

	async def _discard_media(self, key: str, *, session_id: str) -> None:
		try:
			await self.media.delete(key)
		except policy.MediaUnavailable:
			logger.warning("Could not remove unreferenced media", extra={"session_id": session_id, "media_key": key})

	def _record(self, action: Action, session: models.Session, before: SessionStatus) -> None:
		obs_metrics.game_action(session.variant.value, action.value)
		if session.status != before:
			obs_metrics.game_transition(session.variant.value, session.status.value)

	# Invitations

	async def create_invitation(
		self,
		auth_user: AuthenticatedUser,
		payload: schemas.CreateInvitationRequest,
	) -> schemas.SessionView:
		variant = GameVariant(payload.variant)
		partner_id = await self._matches.get_counterpart(payload.match_id, auth_user.id)
		if partner_id is None or not await self._matches.is_mutual_match(payload.match_id, auth_user.id, partner_id):
			raise Forbidden("not_matched")
		existing = await self._repo.find_open_between(auth_user.id, partner_id, variant)
		if existing is not None:
			raise Conflict("game_already_open", session_id=existing.session_id)
		now = self._clock()
		await policy.enforce_create_limit(auth_user.id, now)
		session = models.Session(
			session_id=_new_id(),
			variant=variant,
			match_id=payload.match_id,
			participant_a=models.Participant(user_id=auth_user.id, progress=_empty_progress(variant)),
			participant_b=models.Participant(user_id=partner_id, progress=_empty_progress(variant)),
			status=SessionStatus.PENDING,
			created_at=now,
			expires_at=now + timedelta(hours=settings.game_invite_ttl_hours),
			updated_at=now,
		)
		await self._repo.create(session)
		obs_metrics.game_transition(variant.value, SessionStatus.PENDING.value)
		logger.info("Game invitation created", extra={"session_id": session.session_id, "variant": variant.value})
		await self._notify("invited", session, recipient_id=partner_id, actor_id=auth_user.id)
		return session_view(session, auth_user.id)

	async def accept_invitation(self, auth_user: AuthenticatedUser, session_id: str) -> schemas.SessionView:
		lapsed: List[bool] = []

		def change(session: models.Session) -> None:
			lapsed.clear()
			machine.authorize(session, Action.ACCEPT, auth_user.id)
			now = self._clock()
			if now >= session.expires_at:
				machine.transition(session, SessionStatus.EXPIRED, now)
				lapsed.append(True)
				return
			machine.transition(session, SessionStatus.ACTIVE, now)
			session.accepted_at = now

		session = await self._mutate(session_id, change)
		self._record(Action.ACCEPT, session, SessionStatus.PENDING)
		if lapsed:
			raise InvalidTransition("invitation_expired", session_id=session_id)
		await self._notify("accepted", session, recipient_id=session.participant_a.user_id, actor_id=auth_user.id)
		return session_view(session, auth_user.id)

	async def decline_invitation(self, auth_user: AuthenticatedUser, session_id: str) -> schemas.SessionView:
		def change(session: models.Session) -> None:
			machine.authorize(session, Action.DECLINE, auth_user.id)
			machine.transition(session, SessionStatus.DECLINED, self._clock())

		session = await self._mutate(session_id, change)
		self._record(Action.DECLINE, session, SessionStatus.PENDING)
		await self._notify("declined", session, recipient_id=session.participant_a.user_id, actor_id=auth_user.id)
		return session_view(session, auth_user.id)

	async def get_pending_invitations(self, auth_user: AuthenticatedUser) -> List[schemas.SessionView]:
		sessions = await self._repo.find_pending_for(auth_user.id, self._clock())
		return [session_view(session, auth_user.id) for session in sessions]

	async def get_active_session(
		self,
		auth_user: AuthenticatedUser,
		variant: Optional[str] = None,
	) -> Optional[schemas.SessionView]:
		session = await self._repo.get_active_for_user(auth_user.id, GameVariant(variant) if variant else None)
		return session_view(session, auth_user.id) if session else None

	async def get_history(self, auth_user: AuthenticatedUser, *, limit: int = 20) -> List[schemas.HistoryItem]:
		sessions = await self._repo.list_finished_for_user(auth_user.id, limit=limit)
		return [_history_item(session, auth_user.id) for session in sessions]

	async def get_truths_stats(self, auth_user: AuthenticatedUser) -> schemas.TruthsStatsView:
		"""Win/loss record and average score over the caller's finished Two Truths games."""
		sessions = await self._repo.list_finished_for_user(auth_user.id, limit=None, variant=GameVariant.TWO_TRUTHS)
		stats = schemas.TruthsStatsView()
		total = 0
		for session in sessions:
			results = session.results
			if not isinstance(results, models.TruthsResults):
				continue
			mine = results.scores.get(auth_user.id, 0)
			theirs = results.scores.get(session.partner_of(auth_user.id).user_id, 0)
			stats.total_games += 1
			total += mine
			if mine > theirs:
				stats.games_won += 1
			elif mine < theirs:
				stats.games_lost += 1
			else:
				stats.games_tied += 1
		if stats.total_games:
			stats.average_score = scoring.round_half_up(total * 10 / stats.total_games) / 10
		return stats

	async def get_session_state(self, auth_user: AuthenticatedUser, session_id: str) -> schemas.SessionView:
		session = await self._require_session(session_id)
		machine.authorize(session, Action.VIEW_STATE, auth_user.id)
		return session_view(session, auth_user.id)

	# Two Truths & a Lie

	async def submit_statements(
		self,
		auth_user: AuthenticatedUser,
		session_id: str,
		payload: schemas.SubmitStatementsRequest,
	) -> schemas.SessionView:
		session = await self._require_session(session_id)
		machine.authorize(session, Action.SUBMIT_STATEMENTS, auth_user.id)
		rounds = policy.validate_statements(
			[[(s.text, s.is_lie) for s in item.statements] for item in payload.rounds],
			session_id=session_id,
		)
		before: List[SessionStatus] = []

		def change(current: models.Session) -> None:
			participant = machine.authorize(current, Action.SUBMIT_STATEMENTS, auth_user.id)
			progress = participant.progress
			assert isinstance(progress, models.TruthsProgress)
			if progress.statements is not None:
				raise InvalidTransition("already_submitted", session_id=session_id)
			before[:] = [current.status]
			now = self._clock()
			progress.statements = rounds
			progress.statements_submitted_at = now
			machine.advance_after_submission(current, participant, now)

		session = await self._mutate(session_id, change)
		self._record(Action.SUBMIT_STATEMENTS, session, before[0])
		partner_id = session.partner_of(auth_user.id).user_id
		await self._notify("partner_progress", session, recipient_id=partner_id, actor_id=auth_user.id, meta={"step": "statements"})
		return session_view(session, auth_user.id)

	async def submit_answers(
		self,
		auth_user: AuthenticatedUser,
		session_id: str,
		payload: schemas.SubmitAnswersRequest,
	) -> schemas.SessionView:
		session = await self._require_session(session_id)
		machine.authorize(session, Action.SUBMIT_ANSWERS, auth_user.id)
		guesses = policy.validate_answers(
			[(item.round_number, item.selected_index) for item in payload.answers],
			session_id=session_id,
		)
		before: List[SessionStatus] = []

		def change(current: models.Session) -> None:
			participant = machine.authorize(current, Action.SUBMIT_ANSWERS, auth_user.id)
			progress = participant.progress
			partner_progress = current.partner_of(auth_user.id).progress
			assert isinstance(progress, models.TruthsProgress) and isinstance(partner_progress, models.TruthsProgress)
			if progress.guesses:
				raise InvalidTransition("already_submitted", session_id=session_id)
			if progress.statements is None:
				raise InvalidTransition("statements_required", session_id=session_id)
			if partner_progress.statements is None:
				raise InvalidTransition("partner_statements_pending", session_id=session_id)
			before[:] = [current.status]
			now = self._clock()
			progress.guesses = dict(guesses)
			progress.answers_submitted_at = now
			if machine.advance_after_submission(current, participant, now) == SessionStatus.COMPLETED:
				current.results = scoring.score_truths(current)

		session = await self._mutate(session_id, change)
		self._record(Action.SUBMIT_ANSWERS, session, before[0])
		partner_id = session.partner_of(auth_user.id).user_id
		if session.status == SessionStatus.COMPLETED and before[0] != SessionStatus.COMPLETED:
			logger.info("Two truths game completed", extra={"session_id": session_id})
			for user_id in session.user_ids():
				await self._notify("results_ready", session, recipient_id=user_id)
			self._schedule_insights(session_id)
		else:
			await self._notify("partner_progress", session, recipient_id=partner_id, actor_id=auth_user.id, meta={"step": "answers"})
		return session_view(session, auth_user.id)

	# What Would You Do

	async def get_question(self, auth_user: AuthenticatedUser, session_id: str, question_number: int) -> schemas.QuestionView:
		session = await self._require_session(session_id)
		participant = machine.authorize(session, Action.GET_QUESTION, auth_user.id)
		policy.validate_question_number(question_number, session_id=session_id)
		progress = participant.progress
		assert isinstance(progress, models.ScenarioProgress)
		if question_number in progress.answers:
			raise InvalidTransition("already_submitted", session_id=session_id)
		question = questions.get(question_number)
		return schemas.QuestionView(
			question_number=question.question_number,
			category=question.category,
			category_name=questions.category_name(question.category),
			scenario_text=question.scenario_text,
			core_question=question.core_question,
			intensity=question.intensity,
			suggested_duration=question.suggested_duration,
			total_questions=models.SCENARIO_QUESTIONS,
		)

	async def submit_voice_answer(
		self,
		auth_user: AuthenticatedUser,
		session_id: str,
		question_number: int,
		blob: bytes,
		mime_type: str,
		duration_seconds: float,
	) -> schemas.SessionView:
		session = await self._require_session(session_id)
		participant = machine.authorize(session, Action.SUBMIT_VOICE_ANSWER, auth_user.id)
		policy.validate_question_number(question_number, session_id=session_id)
		mime = policy.validate_audio(mime_type, len(blob), duration_seconds, session_id=session_id)
		progress = participant.progress
		assert isinstance(progress, models.ScenarioProgress)
		if question_number in progress.answers:
			raise InvalidTransition("already_submitted", session_id=session_id)

		stored = await self._put_media(
			blob,
			media.answer_key(session, question_number, auth_user.id, mime),
			mime,
			session_id=session_id,
		)
		text, status = await self._transcribe(blob, mime, session_id=session_id)
		before: List[SessionStatus] = []

		def change(current: models.Session) -> None:
			me = machine.authorize(current, Action.SUBMIT_VOICE_ANSWER, auth_user.id)
			answers = me.progress
			assert isinstance(answers, models.ScenarioProgress)
			if question_number in answers.answers:
				raise InvalidTransition("already_submitted", session_id=session_id)
			before[:] = [current.status]
			now = self._clock()
			answers.answers[question_number] = models.VoiceAnswer(
				question_number=question_number,
				media_url=stored.url,
				media_key=stored.key,
				mime_type=mime,
				duration_seconds=duration_seconds,
				answered_at=now,
				transcription=text,
				transcription_status=status,
				transcribed_at=now if status == TranscriptionStatus.COMPLETED else None,
			)
			machine.advance_after_submission(current, me, now)

		session = await self._mutate(session_id, change)
		self._record(Action.SUBMIT_VOICE_ANSWER, session, before[0])
		partner_id = session.partner_of(auth_user.id).user_id
		if session.status == SessionStatus.ANALYZING and before[0] != SessionStatus.ANALYZING:
			logger.info("Scenario game ready for analysis", extra={"session_id": session_id})
			self._schedule_analysis(session_id)
		elif session.participant(auth_user.id).is_complete and before[0] == SessionStatus.ACTIVE:
			await self._notify("partner_progress", session, recipient_id=partner_id, actor_id=auth_user.id, meta={"step": "answers"})
		return session_view(session, auth_user.id)

	async def retry_transcription(
		self,
		auth_user: AuthenticatedUser,
		session_id: str,
		question_number: int,
	) -> schemas.VoiceAnswerView:
		session = await self._require_session(session_id)
		participant = machine.authorize(session, Action.RETRY_TRANSCRIPTION, auth_user.id)
		policy.validate_question_number(question_number, session_id=session_id)
		progress = participant.progress
		assert isinstance(progress, models.ScenarioProgress)
		answer = progress.answers.get(question_number)
		if answer is None:
			raise NotFound("answer_not_found", session_id=session_id)
		if answer.has_text():
			return _voice_view(answer)
		if not self.transcriber.enabled:
			raise GameError("transcription_unavailable", status_code=503, session_id=session_id)
		try:
			blob = await self.media.get(answer.media_key)
		except policy.MediaUnavailable as exc:
			exc.session_id = session_id
			raise
		text, status = await self._transcribe(blob, answer.mime_type, session_id=session_id)

		def change(current: models.Session) -> None:
			me = machine.authorize(current, Action.RETRY_TRANSCRIPTION, auth_user.id)
			answers = me.progress
			assert isinstance(answers, models.ScenarioProgress)
			slot = answers.answers.get(question_number)
			if slot is None:
				raise NotFound("answer_not_found", session_id=session_id)
			if slot.has_text():
				return False
			now = self._clock()
			slot.transcription = text
			slot.transcription_status = status
			slot.transcribed_at = now if status == TranscriptionStatus.COMPLETED else None
			current.updated_at = now
			return None

		session = await self._mutate(session_id, change)
		obs_metrics.game_action(session.variant.value, Action.RETRY_TRANSCRIPTION.value)
		slot = session.participant(auth_user.id).progress
		assert isinstance(slot, models.ScenarioProgress)
		return _voice_view(slot.answers[question_number])

	# Results & discussion

	async def get_results(self, auth_user: AuthenticatedUser, session_id: str) -> schemas.ResultsView:
		session = await self._require_session(session_id)
		machine.authorize(session, Action.VIEW_RESULTS, auth_user.id)
		if auth_user.id not in session.viewed_results_by:

			def change(current: models.Session) -> Optional[bool]:
				if auth_user.id in current.viewed_results_by:
					return False
				current.viewed_results_by.add(auth_user.id)
				return None

			try:
				session = await self._mutate(session_id, change)
			except Conflict:
				logger.info("Could not record results view", extra={"session_id": session_id})
		return results_view(session)

	async def post_discussion_note(
		self,
		auth_user: AuthenticatedUser,
		session_id: str,
		blob: bytes,
		mime_type: str,
		duration_seconds: float,
		*,
		round_number: Optional[int] = None,
	) -> schemas.DiscussionNoteView:
		session = await self._require_session(session_id)
		machine.authorize(session, Action.POST_NOTE, auth_user.id)
		mime = policy.validate_audio(
			mime_type,
			len(blob),
			duration_seconds,
			max_seconds=models.DISCUSSION_NOTE_MAX_SECONDS,
			session_id=session_id,
		)
		if round_number is not None:
			limit = models.TRUTHS_ROUNDS if session.variant == GameVariant.TWO_TRUTHS else models.SCENARIO_QUESTIONS
			if not 1 <= round_number <= limit:
				raise policy.ValidationError("invalid_round_number", session_id=session_id)
		note_id = _new_id()
		stored = await self._put_media(
			blob,
			media.note_key(session, note_id, auth_user.id, mime),
			mime,
			session_id=session_id,
		)
		text, status = await self._transcribe(blob, mime, session_id=session_id)
		note = models.DiscussionNote(
			note_id=note_id,
			author_id=auth_user.id,
			media_url=stored.url,
			media_key=stored.key,
			mime_type=mime,
			duration_seconds=duration_seconds,
			created_at=self._clock(),
			round_number=round_number,
			transcription=text,
			transcription_status=status,
		)
		before: List[SessionStatus] = []

		def change(current: models.Session) -> None:
			machine.authorize(current, Action.POST_NOTE, auth_user.id)
			before[:] = [current.status]
			current.discussion.append(note)
			machine.transition(current, SessionStatus.DISCUSSION, self._clock())

		try:
			session = await self._mutate(session_id, change)
		except GameError:
			await self._discard_media(stored.key, session_id=session_id)
			raise
		self._record(Action.POST_NOTE, session, before[0])
		partner_id = session.partner_of(auth_user.id).user_id
		await self._notify("discussion_note", session, recipient_id=partner_id, actor_id=auth_user.id, meta={"note_id": note.note_id})
		return _note_view(note)

	async def mark_discussion_note_listened(
		self,
		auth_user: AuthenticatedUser,
		session_id: str,
		note_id: str,
	) -> schemas.DiscussionNoteView:
		found: List[models.DiscussionNote] = []

		def change(current: models.Session) -> Optional[bool]:
			found.clear()
			machine.authorize(current, Action.MARK_LISTENED, auth_user.id)
			note = next((item for item in current.discussion if item.note_id == note_id), None)
			if note is None:
				raise NotFound("note_not_found", session_id=session_id)
			if note.author_id == auth_user.id:
				raise Forbidden("own_note", session_id=session_id)
			found.append(note)
			if auth_user.id in note.listened_by:
				return False
			note.listened_by.add(auth_user.id)
			return None

		await self._mutate(session_id, change)
		return _note_view(found[0])

	# Restart (Two Truths only)

	async def request_restart(self, auth_user: AuthenticatedUser, session_id: str) -> schemas.SessionView:
		def change(current: models.Session) -> None:
			machine.authorize(current, Action.REQUEST_RESTART, auth_user.id)
			if current.restart_requested_by is not None:
				raise InvalidTransition("restart_already_requested", session_id=session_id)
			now = self._clock()
			current.restart_requested_by = auth_user.id
			current.restart_requested_at = now
			current.updated_at = now

		session = await self._mutate(session_id, change)
		obs_metrics.game_action(session.variant.value, Action.REQUEST_RESTART.value)
		partner_id = session.partner_of(auth_user.id).user_id
		await self._notify("restart_requested", session, recipient_id=partner_id, actor_id=auth_user.id)
		return session_view(session, auth_user.id)

	async def accept_restart(self, auth_user: AuthenticatedUser, session_id: str) -> schemas.SessionView:
		attempts = settings.game_store_retry_attempts
		for attempt in range(1, attempts + 1):
			old = await self._require_session(session_id)
			machine.authorize(old, Action.ACCEPT_RESTART, auth_user.id)
			if old.restart_requested_by is None:
				raise InvalidTransition("no_restart_request", session_id=session_id)
			if old.restart_requested_by == auth_user.id:
				raise Forbidden("own_restart_request", session_id=session_id)
			now = self._clock()
			new = models.Session(
				session_id=_new_id(),
				variant=old.variant,
				match_id=old.match_id,
				participant_a=models.Participant(user_id=old.participant_a.user_id, progress=_empty_progress(old.variant)),
				participant_b=models.Participant(user_id=old.participant_b.user_id, progress=_empty_progress(old.variant)),
				status=SessionStatus.ACTIVE,
				created_at=now,
				accepted_at=now,
				expires_at=now + timedelta(hours=settings.game_invite_ttl_hours),
				updated_at=now,
				previous_session_id=old.session_id,
				restart_count=old.restart_count + 1,
			)
			old.restart_requested_by = None
			old.restart_requested_at = None
			old.updated_at = now
			try:
				await self._repo.commit_restart(old, new)
			except StaleRevision:
				logger.info("Restart conflict", extra={"session_id": session_id, "attempt": attempt})
				continue
			obs_metrics.game_action(old.variant.value, Action.ACCEPT_RESTART.value)
			obs_metrics.game_transition(new.variant.value, SessionStatus.ACTIVE.value)
			logger.info(
				"Game restarted",
				extra={"session_id": new.session_id, "previous_session_id": old.session_id, "restart_count": new.restart_count},
			)
			partner_id = old.partner_of(auth_user.id).user_id
			await self._notify(
				"restart_accepted",
				new,
				recipient_id=partner_id,
				actor_id=auth_user.id,
				meta={"previous_session_id": old.session_id},
			)
			return session_view(new, auth_user.id)
		raise Conflict("conflict", message="session was modified concurrently", session_id=session_id)

	async def decline_restart(self, auth_user: AuthenticatedUser, session_id: str) -> schemas.SessionView:
		def change(current: models.Session) -> None:
			machine.authorize(current, Action.DECLINE_RESTART, auth_user.id)
			if current.restart_requested_by is None:
				raise InvalidTransition("no_restart_request", session_id=session_id)
			current.restart_requested_by = None
			current.restart_requested_at = None
			current.updated_at = self._clock()

		session = await self._mutate(session_id, change)
		obs_metrics.game_action(session.variant.value, Action.DECLINE_RESTART.value)
		return session_view(session, auth_user.id)

	# Cancel

	async def cancel(
		self,
		auth_user: AuthenticatedUser,
		session_id: str,
		reason: Optional[str] = None,
	) -> schemas.SessionView:
		before: List[SessionStatus] = []

		def change(current: models.Session) -> None:
			machine.authorize(current, Action.CANCEL, auth_user.id)
			before[:] = [current.status]
			machine.transition(current, SessionStatus.ABANDONED, self._clock())
			current.cancelled_by = auth_user.id
			current.cancel_reason = (reason or "").strip() or None

		session = await self._mutate(session_id, change)
		self._record(Action.CANCEL, session, before[0])
		partner_id = session.partner_of(auth_user.id).user_id
		await self._notify("cancelled", session, recipient_id=partner_id, actor_id=auth_user.id, meta={"reason": session.cancel_reason})
		return session_view(session, auth_user.id)

	# Operator tools

	async def _regenerate_insights(self, session_id: str) -> None:
		if await self._pipeline.generate_insights(session_id) is None:
			raise GameError(
				"insights_unavailable",
				message="insights could not be generated",
				status_code=503,
				session_id=session_id,
			)

	async def regenerate_insights(self, auth_user: AuthenticatedUser, session_id: str) -> schemas.ResultsView:
		session = await self._require_session(session_id)
		machine.authorize(session, Action.REGENERATE_INSIGHTS, auth_user.id)
		await self._regenerate_insights(session_id)
		obs_metrics.game_action(session.variant.value, Action.REGENERATE_INSIGHTS.value)
		logger.info("Insights regenerated", extra={"session_id": session_id, "user_id": auth_user.id})
		return results_view(await self._require_session(session_id))

	async def regenerate_analysis(self, session_id: str) -> schemas.ResultsView:
		"""Recompute results and insights for a finished session, keeping its status.

		Scenario games are re-analyzed question by question. Two Truths scores are
		final, so only the insights are rewritten.
		"""
		session = await self._require_session(session_id)
		if not session.is_finished():
			raise InvalidTransition("invalid_state", message="only finished games can be re-analyzed", session_id=session_id)
		if session.variant == GameVariant.WHAT_WOULD_YOU_DO:
			await self._pipeline.run(session_id, regenerate=True)
		else:
			await self._regenerate_insights(session_id)
		return results_view(await self._require_session(session_id))
