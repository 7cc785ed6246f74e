import pytest

from app.domain.games import policy
from app.settings import settings


def _rounds(count=10, per_round=3, lie=0, text="statement"):
	return [[(f"{text} {r}.{i}", i == lie) for i in range(per_round)] for r in range(count)]


def test_valid_statements_become_numbered_rounds():
	rounds = policy.validate_statements(_rounds(lie=2))
	assert [r.round_number for r in rounds] == list(range(1, 11))
	assert all(r.lie_index == 2 for r in rounds)


def test_statement_text_is_trimmed():
	raw = _rounds()
	raw[0][1] = ("   padded   ", False)
	rounds = policy.validate_statements(raw)
	assert rounds[0].statements[1].text == "padded"


@pytest.mark.parametrize(
	"raw,code",
	[
		(_rounds(count=9), "invalid_round_count"),
		(_rounds(per_round=2), "invalid_statement_count"),
		(_rounds(text="x" * 201), "statement_too_long"),
		(_rounds(lie=5), "invalid_lie_count"),
	],
)
def test_invalid_statement_sets(raw, code):
	with pytest.raises(policy.ValidationError) as exc:
		policy.validate_statements(raw)
	assert exc.value.code == code
	assert exc.value.status_code == 422


def test_blank_statement_rejected():
	raw = _rounds()
	raw[3][0] = ("   ", True)
	with pytest.raises(policy.ValidationError) as exc:
		policy.validate_statements(raw)
	assert exc.value.code == "empty_statement"


def test_two_lies_in_a_round_rejected():
	raw = _rounds()
	raw[4][1] = (raw[4][1][0], True)
	with pytest.raises(policy.ValidationError) as exc:
		policy.validate_statements(raw)
	assert exc.value.code == "invalid_lie_count"


def test_answers_cover_every_round_once():
	guesses = policy.validate_answers([(n, n % 3) for n in range(1, 11)])
	assert guesses[1] == 1 and guesses[10] == 1


@pytest.mark.parametrize(
	"answers,code",
	[
		([(n, 0) for n in range(1, 10)], "incomplete_answers"),
		([(n, 0) for n in range(1, 11)] + [(3, 1)], "duplicate_round"),
		([(0, 0)], "invalid_round_number"),
		([(1, 3)], "invalid_choice"),
	],
)
def test_invalid_answers(answers, code):
	with pytest.raises(policy.ValidationError) as exc:
		policy.validate_answers(answers)
	assert exc.value.code == code


@pytest.mark.parametrize("number", [0, 16, -1])
def test_question_number_bounds(number):
	with pytest.raises(policy.ValidationError) as exc:
		policy.validate_question_number(number)
	assert exc.value.code == "invalid_question_number"


def test_mime_parameters_are_stripped():
	assert policy.normalise_mime("Audio/WebM; codecs=opus") == "audio/webm"
	assert policy.validate_audio("audio/webm;codecs=opus", 10, 3.0) == "audio/webm"


@pytest.mark.parametrize(
	"mime,size,duration,code",
	[
		("video/mp4", 10, 3.0, "unsupported_media_type"),
		(None, 10, 3.0, "unsupported_media_type"),
		("audio/ogg", 0, 3.0, "empty_audio"),
		("audio/ogg", 10, 0, "invalid_duration"),
	],
)
def test_invalid_audio(mime, size, duration, code):
	with pytest.raises(policy.ValidationError) as exc:
		policy.validate_audio(mime, size, duration)
	assert exc.value.code == code


def test_note_length_is_capped():
	with pytest.raises(policy.ValidationError) as exc:
		policy.validate_audio("audio/mpeg", 10, 61, max_seconds=60)
	assert exc.value.code == "note_too_long"
	assert policy.validate_audio("audio/mpeg", 10, 60, max_seconds=60) == "audio/mpeg"


def test_error_payload_carries_session():
	err = policy.Conflict("already_submitted", session_id="s-1")
	assert err.status_code == 409
	assert err.to_payload() == {"code": "already_submitted", "message": "already_submitted", "session_id": "s-1"}
	assert "session_id" not in policy.NotFound("session_not_found").to_payload()


@pytest.mark.asyncio
async def test_create_limit_per_user(monkeypatch):
	monkeypatch.setattr(settings, "game_create_limit_per_day", 2)
	await policy.enforce_create_limit("alice")
	await policy.enforce_create_limit("alice")
	with pytest.raises(policy.RateLimited) as exc:
		await policy.enforce_create_limit("alice")
	assert exc.value.status_code == 429
	await policy.enforce_create_limit("bob")
