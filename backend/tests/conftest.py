import os
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Settings are read at import time, so test defaults go in before the app loads
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="velora-uploads-"))
os.environ.setdefault("GAME_ANALYSIS_BACKOFF_MS", "0")
os.environ.setdefault("GAME_REAPER_ENABLED", "false")
os.environ["OPENAI_API_KEY"] = ""

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from app.domain.games import analyzer, directory, insights, media, store, transcriber, worker
from app.infra import postgres
from app.main import app
from app.settings import settings

from games_fakes import GamesEnv


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from app.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate via X-User-Id headers, which are only accepted in dev mode."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest_asyncio.fixture(autouse=True)
async def games_env(fake_redis):
	await store.reset_memory_state()
	await directory.reset_memory_state()
	env = GamesEnv()
	media.set_media_sink(env.media)
	transcriber.set_transcriber(env.transcriber)
	analyzer.set_analyzer(env.analyzer)
	insights.set_insights_generator(env.insights)
	worker.set_worker(env.worker)
	try:
		yield env
	finally:
		await env.worker.drain(timeout=5)
		media.set_media_sink(None)
		transcriber.set_transcriber(None)
		analyzer.set_analyzer(None)
		insights.set_insights_generator(None)
		worker.set_worker(None)


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
