"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.staticfiles import StaticFiles

from app.api import games, ops
from app.api.errors import install_error_handlers
from app.api.middleware_request_id import RequestIdMiddleware
from app.domain.games.worker import get_worker
from app.infra import postgres
from app.infra.scheduler import JobScheduler
from app.maintenance import reaper
from app.obs import init as obs_init
from app.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	try:
		await postgres.init_pool()
	except Exception:
		if not settings.is_dev():
			raise
		# Dev only: sessions use the in-process store until Postgres is reachable.
		logger.warning("Postgres pool unavailable at startup", exc_info=True)
	scheduler: JobScheduler | None = None
	if settings.game_reaper_enabled:
		scheduler = JobScheduler()
		scheduler.start()
		scheduler.schedule_every("games-reaper", reaper.run_scheduled, seconds=settings.game_reaper_interval_seconds)
		app.state.games_scheduler = scheduler
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()
		await get_worker().drain(timeout=30)
		await postgres.close_pool()


app = FastAPI(title="Velora Games", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else ["https://app.velora.example"]

# Starlette disallows wildcard '*' with allow_credentials=True. Replace '*' with explicit origins.
if "*" in allow_origins:
	if settings.is_dev():
		allow_origins = [
			"http://localhost:3000",
			"http://127.0.0.1:3000",
			"http://localhost:5173",
			"http://127.0.0.1:5173",
		]
	else:
		allow_origins = ["https://app.velora.example"]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Voice notes stored on disk are served back in dev
if settings.media_backend == "local" and settings.is_dev():
	upload_root = Path(settings.upload_dir).resolve()
	upload_root.mkdir(parents=True, exist_ok=True)
	app.mount("/uploads", StaticFiles(directory=str(upload_root), check_dir=True), name="uploads")

obs_init(app)

# Ensure every request carries an X-Request-Id and make it available on request.state
app.add_middleware(RequestIdMiddleware)

app.include_router(games.router)
app.include_router(ops.router)
