import pytest

from app.domain.games import directory
from app.settings import settings

from games_fakes import LIES_A, LIES_B, wrong_choices


ALICE = {"X-User-Id": "alice", "X-Campus-Id": "campus-1"}
BOB = {"X-User-Id": "bob", "X-Campus-Id": "campus-1"}


def _statements(lies):
    return {
        "rounds": [
            {"statements": [{"text": f"round {n} fact {i}", "is_lie": i == lie} for i in range(3)]}
            for n, lie in enumerate(lies, start=1)
        ]
    }


def _answers(choices):
    return {"answers": [{"round_number": n, "selected_index": c} for n, c in enumerate(choices, start=1)]}


async def _create(api_client, variant="two_truths"):
    await directory.register_match("match-1", "alice", "bob")
    response = await api_client.post(
        "/games/invitations",
        json={"match_id": "match-1", "variant": variant},
        headers=ALICE,
    )
    assert response.status_code == 201
    return response.json()["session_id"]


@pytest.mark.asyncio
async def test_two_truths_game_over_http(api_client, games_env):
    session_id = await _create(api_client)

    pending = await api_client.get("/games/invitations/pending", headers=BOB)
    assert [item["session_id"] for item in pending.json()] == [session_id]

    accepted = await api_client.post(f"/games/{session_id}/accept", headers=BOB)
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "active"

    assert (await api_client.post(f"/games/{session_id}/statements", json=_statements(LIES_A), headers=ALICE)).status_code == 200
    bob_view = await api_client.post(f"/games/{session_id}/statements", json=_statements(LIES_B), headers=BOB)
    partner_rounds = bob_view.json()["partner_statements"]
    assert len(partner_rounds) == 10
    assert all(s["is_lie"] is None for s in partner_rounds[0]["statements"])

    await api_client.post(f"/games/{session_id}/answers", json=_answers(LIES_A), headers=BOB)
    done = await api_client.post(f"/games/{session_id}/answers", json=_answers(LIES_B), headers=ALICE)
    assert done.json()["status"] == "completed"

    await games_env.worker.drain()
    results = await api_client.get(f"/games/{session_id}/results", headers=ALICE)
    assert results.status_code == 200
    body = results.json()
    assert body["truths"]["scores"] == {"alice": 10, "bob": 10}
    assert body["truths"]["winner"] == "tie"
    assert body["insights"]["advice_forward"] == "advice"

    history = await api_client.get("/games/history", headers=BOB)
    assert history.json()[0]["session_id"] == session_id


@pytest.mark.asyncio
async def test_stats_and_insights_regeneration(api_client, games_env):
    empty = await api_client.get("/games/stats/two-truths", headers=ALICE)
    assert empty.status_code == 200
    assert empty.json() == {"total_games": 0, "games_won": 0, "games_lost": 0, "games_tied": 0, "average_score": 0.0}

    session_id = await _create(api_client)
    await api_client.post(f"/games/{session_id}/accept", headers=BOB)
    await api_client.post(f"/games/{session_id}/statements", json=_statements(LIES_A), headers=ALICE)
    await api_client.post(f"/games/{session_id}/statements", json=_statements(LIES_B), headers=BOB)
    await api_client.post(f"/games/{session_id}/answers", json=_answers(LIES_A), headers=BOB)
    await api_client.post(f"/games/{session_id}/answers", json=_answers(wrong_choices(LIES_B)), headers=ALICE)
    await games_env.worker.drain()

    stats = (await api_client.get("/games/stats/two-truths", headers=BOB)).json()
    assert stats["total_games"] == 1
    assert stats["games_won"] == 1
    assert stats["average_score"] == 10.0
    assert (await api_client.get("/games/stats/two-truths", headers=ALICE)).json()["games_lost"] == 1

    regenerated = await api_client.post(f"/games/{session_id}/insights/regenerate", headers=BOB)
    assert regenerated.status_code == 200
    assert regenerated.json()["insights"]["advice_forward"] == "advice"
    assert len(games_env.insights.rollups) == 2

    outsider = await api_client.post(
        f"/games/{session_id}/insights/regenerate",
        headers={"X-User-Id": "carol", "X-Campus-Id": "campus-1"},
    )
    assert outsider.status_code == 403

    games_env.insights.fail = True
    failed = await api_client.post(f"/games/{session_id}/insights/regenerate", headers=ALICE)
    assert failed.status_code == 503
    assert failed.json()["detail"]["code"] == "insights_unavailable"


@pytest.mark.asyncio
async def test_game_errors_carry_code_and_request_id(api_client):
    session_id = await _create(api_client)
    response = await api_client.post(
        f"/games/{session_id}/accept",
        headers={**ALICE, "X-Request-Id": "req-123"},
    )
    assert response.status_code == 403
    body = response.json()
    assert body["detail"]["code"] == "not_invitee"
    assert body["detail"]["session_id"] == session_id
    assert body["request_id"] == "req-123"
    assert response.headers["X-Request-Id"] == "req-123"

    again = await api_client.post(
        "/games/invitations",
        json={"match_id": "match-1", "variant": "two_truths"},
        headers=BOB,
    )
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "game_already_open"

    missing = await api_client.get("/games/nope", headers=ALICE)
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "session_not_found"


@pytest.mark.asyncio
async def test_invalid_payloads_are_rejected(api_client):
    session_id = await _create(api_client)
    await api_client.post(f"/games/{session_id}/accept", headers=BOB)

    bad_variant = await api_client.post(
        "/games/invitations",
        json={"match_id": "match-1", "variant": "poker"},
        headers=ALICE,
    )
    assert bad_variant.status_code == 422
    assert bad_variant.json()["detail"] == "validation_error"

    short = await api_client.post(f"/games/{session_id}/statements", json=_statements(LIES_A[:3]), headers=ALICE)
    assert short.status_code == 422
    assert short.json()["detail"]["code"] == "invalid_round_count"


@pytest.mark.asyncio
async def test_voice_answer_upload(api_client, games_env):
    session_id = await _create(api_client, "what_would_you_do")
    await api_client.post(f"/games/{session_id}/accept", headers=BOB)

    question = await api_client.get(f"/games/{session_id}/questions/1", headers=ALICE)
    assert question.status_code == 200
    assert question.json()["total_questions"] == 15

    response = await api_client.post(
        f"/games/{session_id}/questions/1/answer",
        files={"audio": ("answer.webm", b"I would talk to them first", "audio/webm")},
        data={"duration_seconds": "14.5"},
        headers=ALICE,
    )
    assert response.status_code == 200
    answer = response.json()["my_progress"]["answers"][0]
    assert answer["transcription"] == "I would talk to them first"
    assert answer["duration_seconds"] == 14.5
    assert len(games_env.media.blobs) == 1

    repeat = await api_client.get(f"/games/{session_id}/questions/1", headers=ALICE)
    assert repeat.status_code == 409
    assert repeat.json()["detail"]["code"] == "already_submitted"

    wrong_type = await api_client.post(
        f"/games/{session_id}/questions/2/answer",
        files={"audio": ("answer.png", b"not audio", "image/png")},
        data={"duration_seconds": "3"},
        headers=ALICE,
    )
    assert wrong_type.status_code == 422
    assert wrong_type.json()["detail"]["code"] == "unsupported_media_type"


@pytest.mark.asyncio
async def test_cancel_with_reason(api_client):
    session_id = await _create(api_client)
    response = await api_client.post(f"/games/{session_id}/cancel", json={"reason": "changed my mind"}, headers=ALICE)
    assert response.status_code == 200
    assert response.json()["status"] == "abandoned"
    assert response.json()["cancel_reason"] == "changed my mind"

    active = await api_client.get("/games/active", headers=ALICE)
    assert active.status_code == 200
    assert active.json() is None


@pytest.mark.asyncio
async def test_requests_without_identity_are_rejected(api_client):
    response = await api_client.get("/games/active")
    assert response.status_code == 401
    assert response.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_health_live(api_client):
    response = await api_client.get("/health/live")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_metrics_require_admin_token(api_client, monkeypatch):
    monkeypatch.setattr(settings, "obs_metrics_public", False)
    monkeypatch.setattr(settings, "obs_admin_token", "ops-secret")

    denied = await api_client.get("/metrics")
    assert denied.status_code == 403

    allowed = await api_client.get("/metrics", headers={"X-Admin-Token": "ops-secret"})
    assert allowed.status_code == 200
    assert "text/plain" in allowed.headers["content-type"]


@pytest.mark.asyncio
async def test_admin_regenerate(api_client, monkeypatch):
    monkeypatch.setattr(settings, "obs_admin_token", None)
    unconfigured = await api_client.post("/ops/games/anything/regenerate-analysis")
    assert unconfigured.status_code == 403
    assert unconfigured.json()["detail"] == "admin_token_not_configured"

    monkeypatch.setattr(settings, "obs_admin_token", "ops-secret")
    missing = await api_client.post(
        "/ops/games/anything/regenerate-analysis",
        headers={"Authorization": "Bearer ops-secret"},
    )
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "session_not_found"
