"""Prometheus metrics for the games backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Summary


REQUEST_COUNTER = Counter(
	"velora_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"velora_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

GAME_ACTIONS = Counter(
	"velora_game_actions_total",
	"Accepted player actions on game sessions",
	["variant", "action"],
)

GAME_TRANSITIONS = Counter(
	"velora_game_transitions_total",
	"Game sessions entering a status",
	["variant", "status"],
)

GAME_STORE_CONFLICTS = Counter(
	"velora_game_store_conflicts_total",
	"Session writes rejected because the revision moved",
)

GAME_MEDIA_FAILURES = Counter(
	"velora_game_media_failures_total",
	"Media sink operations that failed",
	["op"],
)

GAME_TRANSCRIPTIONS = Counter(
	"velora_game_transcriptions_total",
	"Transcription attempts by outcome",
	["status"],
)

GAME_ANALYSIS_DURATION = Histogram(
	"velora_game_analysis_duration_seconds",
	"Wall time of a scenario analysis run",
	["partial"],
	buckets=(1.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0, 300.0),
)

GAME_INSIGHTS = Counter(
	"velora_game_insights_total",
	"Insights generation outcomes",
	["outcome"],
)

GAME_REAPED = Counter(
	"velora_game_reaper_sessions_total",
	"Sessions touched by the reaper per pass",
	["pass_name", "result"],
)

REDIS_UP = Gauge("velora_redis_up", "Redis availability (1=up,0=down)")
REDIS_LATENCY = Summary("velora_redis_latency_seconds", "Redis ping latency (seconds)")

POSTGRES_UP = Gauge("velora_postgres_up", "Postgres availability (1=up,0=down)")
POSTGRES_LATENCY = Summary("velora_postgres_latency_seconds", "Postgres ping latency (seconds)")

BACKGROUND_RUNS = Counter(
	"velora_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"velora_jobs_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0, 60.0),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def game_action(variant: str, action: str) -> None:
	GAME_ACTIONS.labels(variant=variant, action=action).inc()


def game_transition(variant: str, status: str) -> None:
	GAME_TRANSITIONS.labels(variant=variant, status=status).inc()


def game_store_conflict() -> None:
	GAME_STORE_CONFLICTS.inc()


def game_media_failure(op: str) -> None:
	GAME_MEDIA_FAILURES.labels(op=op).inc()


def game_transcription_outcome(status: str) -> None:
	GAME_TRANSCRIPTIONS.labels(status=status).inc()


def game_analysis_observe(seconds: float, *, partial: bool) -> None:
	GAME_ANALYSIS_DURATION.labels(partial="true" if partial else "false").observe(seconds)


def game_insights_outcome(outcome: str) -> None:
	GAME_INSIGHTS.labels(outcome=outcome).inc()


def game_reaped(pass_name: str, result: str, count: int = 1) -> None:
	if count:
		GAME_REAPED.labels(pass_name=pass_name, result=result).inc(count)


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
