"""FastAPI routes for couple games."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status

from app.domain.games import policy, schemas
from app.domain.games.service import GamesService
from app.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/games", tags=["games"])

_service = GamesService()


def get_service() -> GamesService:
	return _service


def _as_http_error(exc: Exception) -> HTTPException:
	if isinstance(exc, policy.GameError):
		return HTTPException(status_code=exc.status_code, detail=exc.to_payload())
	return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


async def _read_audio(audio: UploadFile) -> tuple[bytes, str]:
	blob = await audio.read()
	return blob, audio.content_type or ""


@router.post("/invitations", response_model=schemas.SessionView, status_code=status.HTTP_201_CREATED)
async def create_invitation_endpoint(
	payload: schemas.CreateInvitationRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.create_invitation(auth_user, payload)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.get("/invitations/pending", response_model=List[schemas.SessionView])
async def pending_invitations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.SessionView]:
	return await _service.get_pending_invitations(auth_user)


@router.get("/active", response_model=Optional[schemas.SessionView])
async def active_session_endpoint(
	variant: Optional[schemas.GameVariantName] = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> Optional[schemas.SessionView]:
	return await _service.get_active_session(auth_user, variant)


@router.get("/history", response_model=List[schemas.HistoryItem])
async def history_endpoint(
	limit: int = Query(default=20, ge=1, le=100),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.HistoryItem]:
	return await _service.get_history(auth_user, limit=limit)


@router.get("/stats/two-truths", response_model=schemas.TruthsStatsView)
async def truths_stats_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.TruthsStatsView:
	return await _service.get_truths_stats(auth_user)


@router.get("/{session_id}", response_model=schemas.SessionView)
async def session_state_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.get_session_state(auth_user, session_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/accept", response_model=schemas.SessionView)
async def accept_invitation_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.accept_invitation(auth_user, session_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/decline", response_model=schemas.SessionView)
async def decline_invitation_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.decline_invitation(auth_user, session_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/statements", response_model=schemas.SessionView)
async def submit_statements_endpoint(
	session_id: str,
	payload: schemas.SubmitStatementsRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.submit_statements(auth_user, session_id, payload)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/answers", response_model=schemas.SessionView)
async def submit_answers_endpoint(
	session_id: str,
	payload: schemas.SubmitAnswersRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.submit_answers(auth_user, session_id, payload)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.get("/{session_id}/questions/{question_number}", response_model=schemas.QuestionView)
async def question_endpoint(
	session_id: str,
	question_number: int,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.QuestionView:
	try:
		return await _service.get_question(auth_user, session_id, question_number)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/questions/{question_number}/answer", response_model=schemas.SessionView)
async def submit_voice_answer_endpoint(
	session_id: str,
	question_number: int,
	audio: UploadFile = File(...),
	duration_seconds: float = Form(...),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	blob, mime_type = await _read_audio(audio)
	try:
		return await _service.submit_voice_answer(auth_user, session_id, question_number, blob, mime_type, duration_seconds)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/questions/{question_number}/transcription", response_model=schemas.VoiceAnswerView)
async def retry_transcription_endpoint(
	session_id: str,
	question_number: int,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.VoiceAnswerView:
	try:
		return await _service.retry_transcription(auth_user, session_id, question_number)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.get("/{session_id}/results", response_model=schemas.ResultsView)
async def results_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ResultsView:
	try:
		return await _service.get_results(auth_user, session_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/insights/regenerate", response_model=schemas.ResultsView)
async def regenerate_insights_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ResultsView:
	try:
		return await _service.regenerate_insights(auth_user, session_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post(
	"/{session_id}/discussion",
	response_model=schemas.DiscussionNoteView,
	status_code=status.HTTP_201_CREATED,
)
async def post_discussion_note_endpoint(
	session_id: str,
	audio: UploadFile = File(...),
	duration_seconds: float = Form(...),
	round_number: Optional[int] = Form(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.DiscussionNoteView:
	blob, mime_type = await _read_audio(audio)
	try:
		return await _service.post_discussion_note(
			auth_user,
			session_id,
			blob,
			mime_type,
			duration_seconds,
			round_number=round_number,
		)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/discussion/{note_id}/listened", response_model=schemas.DiscussionNoteView)
async def mark_note_listened_endpoint(
	session_id: str,
	note_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.DiscussionNoteView:
	try:
		return await _service.mark_discussion_note_listened(auth_user, session_id, note_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/restart", response_model=schemas.SessionView)
async def request_restart_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.request_restart(auth_user, session_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/restart/accept", response_model=schemas.SessionView)
async def accept_restart_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.accept_restart(auth_user, session_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/restart/decline", response_model=schemas.SessionView)
async def decline_restart_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		return await _service.decline_restart(auth_user, session_id)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{session_id}/cancel", response_model=schemas.SessionView)
async def cancel_endpoint(
	session_id: str,
	payload: schemas.CancelRequest | None = None,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.SessionView:
	try:
		reason = payload.reason if payload else None
		return await _service.cancel(auth_user, session_id, reason)
	except policy.GameError as exc:
		raise _as_http_error(exc) from exc
