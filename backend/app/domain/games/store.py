"""Persistence for game sessions.

Sessions are stored as a JSONB document alongside the columns the queries
filter on. Every write is a compare-and-set on ``revision``; a mismatch raises
:class:`StaleRevision` and the caller reloads and retries. When no Postgres pool
is available (local dev, tests) an in-process store with the same semantics is
used instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import asyncpg

from app.domain.games import models
from app.domain.games.models import GameVariant, SessionStatus
from app.domain.games.policy import Conflict, NotFound, StoreUnavailable
from app.infra.postgres import get_pool
from app.obs import metrics as obs_metrics
from app.settings import settings


logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = tuple(s.value for s in models.CANCELLABLE_STATUSES)
_OPEN_STATUSES = tuple(s.value for s in models.OPEN_STATUSES)
_FINISHED_STATUSES = tuple(s.value for s in models.FINISHED_STATUSES)
_TERMINAL_STATUSES = tuple(s.value for s in models.TERMINAL_STATUSES)


class StaleRevision(RuntimeError):
	def __init__(self, session_id: str, expected: int) -> None:
		super().__init__(f"session {session_id} changed since revision {expected}")
		self.session_id = session_id
		self.expected = expected


class DuplicateSession(RuntimeError):
	pass


class _MemoryStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.sessions: Dict[str, models.Session] = {}

	async def reset(self) -> None:
		async with self._lock:
			self.sessions.clear()

	async def insert(self, session: models.Session) -> None:
		async with self._lock:
			if session.session_id in self.sessions:
				raise DuplicateSession(session.session_id)
			self.sessions[session.session_id] = session.clone()

	async def get(self, session_id: str) -> Optional[models.Session]:
		async with self._lock:
			found = self.sessions.get(session_id)
			return found.clone() if found else None

	async def compare_and_set(self, session: models.Session, expected: int) -> None:
		async with self._lock:
			self._check_revision(session.session_id, expected)
			self.sessions[session.session_id] = session.clone()

	async def swap(self, old: models.Session, expected: int, new: models.Session) -> None:
		async with self._lock:
			self._check_revision(old.session_id, expected)
			if new.session_id in self.sessions:
				raise DuplicateSession(new.session_id)
			self.sessions[old.session_id] = old.clone()
			self.sessions[new.session_id] = new.clone()

	def _check_revision(self, session_id: str, expected: int) -> None:
		current = self.sessions.get(session_id)
		if current is None or current.revision != expected:
			raise StaleRevision(session_id, expected)

	async def delete(self, session_id: str) -> bool:
		async with self._lock:
			return self.sessions.pop(session_id, None) is not None

	async def select(self, predicate) -> List[models.Session]:
		async with self._lock:
			return [s.clone() for s in self.sessions.values() if predicate(s)]


_MEMORY = _MemoryStore()


async def reset_memory_state() -> None:
	await _MEMORY.reset()


def _newest_first(sessions: Iterable[models.Session]) -> List[models.Session]:
	return sorted(sessions, key=lambda s: s.created_at, reverse=True)


async def resolve_pool() -> Optional[asyncpg.Pool]:
	"""The shared Postgres pool, or ``None`` when a dev process runs on the in-process store.

	Outside development an unreachable database is an error. Failures are not
	remembered, so the next call tries to connect again.
	"""
	try:
		return await get_pool()
	except Exception as exc:
		if not settings.is_dev():
			logger.error("Postgres unavailable for game sessions", exc_info=True)
			raise StoreUnavailable("store_unavailable", message="game storage is unavailable") from exc
		if not isinstance(exc, AssertionError):
			logger.warning("Postgres unavailable; game sessions kept in memory")
		return None


class SessionRepository:
	async def _pool_or_none(self) -> Optional[asyncpg.Pool]:
		return await resolve_pool()

	async def create(self, session: models.Session) -> models.Session:
		pool = await self._pool_or_none()
		if pool is None:
			await _MEMORY.insert(session)
			return session
		async with pool.acquire() as conn:
			await _insert(conn, session)
		return session

	async def get(self, session_id: str) -> Optional[models.Session]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get(session_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT doc, revision FROM game_sessions WHERE session_id=$1", session_id)
		return _row_to_session(row) if row else None

	async def update(self, session: models.Session) -> models.Session:
		"""Persist ``session`` if nobody else wrote since it was loaded.

		On success ``session.revision`` is bumped in place.
		"""
		expected = session.revision
		session.revision = expected + 1
		pool = await self._pool_or_none()
		try:
			if pool is None:
				await _MEMORY.compare_and_set(session, expected)
			else:
				async with pool.acquire() as conn:
					await _compare_and_set(conn, session, expected)
		except StaleRevision:
			session.revision = expected
			obs_metrics.game_store_conflict()
			raise
		return session

	async def commit_restart(self, old: models.Session, new: models.Session) -> models.Session:
		"""Write the cleared restart request and the follow-up session together."""
		expected = old.revision
		old.revision = expected + 1
		pool = await self._pool_or_none()
		try:
			if pool is None:
				await _MEMORY.swap(old, expected, new)
			else:
				async with pool.acquire() as conn:
					async with conn.transaction():
						await _compare_and_set(conn, old, expected)
						await _insert(conn, new)
		except StaleRevision:
			old.revision = expected
			obs_metrics.game_store_conflict()
			raise
		return new

	async def delete(self, session_id: str) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.delete(session_id)
		async with pool.acquire() as conn:
			result = await conn.execute("DELETE FROM game_sessions WHERE session_id=$1", session_id)
		return result.endswith(" 1")

	async def get_active_for_user(self, user_id: str, variant: GameVariant | None = None) -> Optional[models.Session]:
		pool = await self._pool_or_none()
		if pool is None:
			found = await _MEMORY.select(
				lambda s: s.includes(user_id)
				and s.status in models.CANCELLABLE_STATUSES
				and (variant is None or s.variant == variant)
			)
			ordered = _newest_first(found)
			return ordered[0] if ordered else None
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT doc, revision FROM game_sessions
				WHERE (participant_a=$1 OR participant_b=$1)
				  AND status = ANY($2::text[])
				  AND ($3::text IS NULL OR variant=$3)
				ORDER BY created_at DESC
				LIMIT 1
				""",
				user_id,
				list(_ACTIVE_STATUSES),
				variant.value if variant else None,
			)
		return _row_to_session(row) if row else None

	async def find_pending_for(self, user_id: str, now: datetime) -> List[models.Session]:
		pool = await self._pool_or_none()
		if pool is None:
			return _newest_first(
				await _MEMORY.select(
					lambda s: s.participant_b.user_id == user_id
					and s.status == SessionStatus.PENDING
					and s.expires_at > now
				)
			)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT doc, revision FROM game_sessions
				WHERE participant_b=$1 AND status='pending' AND expires_at > $2
				ORDER BY created_at DESC
				""",
				user_id,
				now,
			)
		return [_row_to_session(row) for row in rows]

	async def find_open_between(self, user_a: str, user_b: str, variant: GameVariant) -> Optional[models.Session]:
		pair = {user_a, user_b}
		pool = await self._pool_or_none()
		if pool is None:
			found = await _MEMORY.select(
				lambda s: set(s.user_ids()) == pair
				and s.variant == variant
				and s.status in models.CANCELLABLE_STATUSES
			)
			return found[0] if found else None
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT doc, revision FROM game_sessions
				WHERE ((participant_a=$1 AND participant_b=$2) OR (participant_a=$2 AND participant_b=$1))
				  AND variant=$3 AND status = ANY($4::text[])
				LIMIT 1
				""",
				user_a,
				user_b,
				variant.value,
				list(_ACTIVE_STATUSES),
			)
		return _row_to_session(row) if row else None

	async def find_expired_before(self, instant: datetime) -> List[models.Session]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.select(lambda s: s.status in models.OPEN_STATUSES and s.expires_at < instant)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT doc, revision FROM game_sessions
				WHERE status = ANY($1::text[]) AND expires_at < $2
				""",
				list(_OPEN_STATUSES),
				instant,
			)
		return [_row_to_session(row) for row in rows]

	async def find_stuck_analyzing(self, before: datetime) -> List[models.Session]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.select(lambda s: s.status == SessionStatus.ANALYZING and s.updated_at < before)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT doc, revision FROM game_sessions WHERE status='analyzing' AND updated_at < $1",
				before,
			)
		return [_row_to_session(row) for row in rows]

	async def find_terminal_before(self, instant: datetime) -> List[models.Session]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.select(lambda s: s.status in models.TERMINAL_STATUSES and s.updated_at < instant)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT doc, revision FROM game_sessions
				WHERE status = ANY($1::text[]) AND updated_at < $2
				""",
				list(_TERMINAL_STATUSES),
				instant,
			)
		return [_row_to_session(row) for row in rows]

	async def list_finished_for_user(
		self,
		user_id: str,
		*,
		limit: Optional[int] = 20,
		variant: GameVariant | None = None,
	) -> List[models.Session]:
		"""Finished games for ``user_id``, newest first. ``limit=None`` returns all of them."""
		pool = await self._pool_or_none()
		if pool is None:
			found = await _MEMORY.select(
				lambda s: s.includes(user_id)
				and s.status in models.FINISHED_STATUSES
				and (variant is None or s.variant == variant)
			)
			ordered = sorted(found, key=lambda s: s.completed_at, reverse=True)
			return ordered if limit is None else ordered[:limit]
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT doc, revision FROM game_sessions
				WHERE (participant_a=$1 OR participant_b=$1) AND status = ANY($2::text[])
				  AND ($4::text IS NULL OR variant=$4)
				ORDER BY completed_at DESC
				LIMIT $3
				""",
				user_id,
				list(_FINISHED_STATUSES),
				limit,
				variant.value if variant else None,
			)
		return [_row_to_session(row) for row in rows]


async def _insert(conn: asyncpg.Connection, session: models.Session) -> None:
	try:
		await conn.execute(
			"""
			INSERT INTO game_sessions (
				session_id, variant, match_id, participant_a, participant_b, status,
				created_at, updated_at, expires_at, completed_at, revision, doc
			)
			VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12::jsonb)
			""",
			session.session_id,
			session.variant.value,
			session.match_id,
			session.participant_a.user_id,
			session.participant_b.user_id,
			session.status.value,
			session.created_at,
			session.updated_at,
			session.expires_at,
			session.completed_at,
			session.revision,
			json.dumps(session.to_document()),
		)
	except asyncpg.UniqueViolationError as exc:
		raise DuplicateSession(session.session_id) from exc


async def _compare_and_set(conn: asyncpg.Connection, session: models.Session, expected: int) -> None:
	result = await conn.execute(
		"""
		UPDATE game_sessions
		SET status=$3, updated_at=$4, expires_at=$5, completed_at=$6, revision=$7, doc=$8::jsonb
		WHERE session_id=$1 AND revision=$2
		""",
		session.session_id,
		expected,
		session.status.value,
		session.updated_at,
		session.expires_at,
		session.completed_at,
		session.revision,
		json.dumps(session.to_document()),
	)
	if not result.endswith(" 1"):
		raise StaleRevision(session.session_id, expected)


def _row_to_session(row: asyncpg.Record) -> models.Session:
	doc_value = row["doc"]
	doc = json.loads(doc_value) if isinstance(doc_value, str) else dict(doc_value)
	doc["revision"] = row["revision"]
	return models.Session.from_document(doc)


async def mutate(
	repository: SessionRepository,
	session_id: str,
	change: Callable[[models.Session], Optional[bool]],
	*,
	attempts: int | None = None,
) -> models.Session:
	"""Load, change and write a session, retrying when another writer got there first.

	``change`` may raise a game error to abort, or return ``False`` to leave the
	stored session untouched.
	"""
	attempts = attempts or settings.game_store_retry_attempts
	for attempt in range(1, attempts + 1):
		session = await repository.get(session_id)
		if session is None:
			raise NotFound("session_not_found", session_id=session_id)
		if change(session) is False:
			return session
		try:
			return await repository.update(session)
		except StaleRevision:
			logger.info("Session write conflict", extra={"session_id": session_id, "attempt": attempt})
	raise Conflict("conflict", message="session was modified concurrently", session_id=session_id)
