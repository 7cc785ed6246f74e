"""Lookups against the user and match tables owned by the rest of the app."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from app.domain.games.store import resolve_pool


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DisplayName:
	first_name: str
	last_name: Optional[str] = None
	photo: Optional[str] = None


@dataclass(slots=True)
class MatchRecord:
	match_id: str
	user_a: str
	user_b: str
	mutual: bool = True

	def includes(self, user_id: str) -> bool:
		return user_id in (self.user_a, self.user_b)


class _MemoryDirectory:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.users: Dict[str, DisplayName] = {}
		self.matches: Dict[str, MatchRecord] = {}

	async def reset(self) -> None:
		async with self._lock:
			self.users.clear()
			self.matches.clear()


_MEMORY = _MemoryDirectory()


async def register_user(user_id: str, first_name: str, last_name: str | None = None, photo: str | None = None) -> None:
	async with _MEMORY._lock:
		_MEMORY.users[user_id] = DisplayName(first_name=first_name, last_name=last_name, photo=photo)


async def register_match(match_id: str, user_a: str, user_b: str, *, mutual: bool = True) -> None:
	async with _MEMORY._lock:
		_MEMORY.matches[match_id] = MatchRecord(match_id=match_id, user_a=user_a, user_b=user_b, mutual=mutual)


async def reset_memory_state() -> None:
	await _MEMORY.reset()


class UserDirectory:
	async def get_display_name(self, user_id: str) -> DisplayName:
		pool = await resolve_pool()
		if pool is None:
			return _MEMORY.users.get(user_id) or DisplayName(first_name=user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT first_name, last_name, photo_url FROM users WHERE id::text=$1",
				user_id,
			)
		if not row:
			return DisplayName(first_name=user_id)
		return DisplayName(
			first_name=row.get("first_name") or user_id,
			last_name=row.get("last_name"),
			photo=row.get("photo_url"),
		)

	async def first_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
		names: Dict[str, str] = {}
		for user_id in user_ids:
			names[user_id] = (await self.get_display_name(user_id)).first_name
		return names


class MatchDirectory:
	async def _get(self, match_id: str) -> Optional[MatchRecord]:
		pool = await resolve_pool()
		if pool is None:
			return _MEMORY.matches.get(match_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT id::text AS match_id, user_a::text AS user_a, user_b::text AS user_b, status FROM matches WHERE id::text=$1",
				match_id,
			)
		if not row:
			return None
		return MatchRecord(
			match_id=row["match_id"],
			user_a=row["user_a"],
			user_b=row["user_b"],
			mutual=row["status"] == "mutual",
		)

	async def get_counterpart(self, match_id: str, user_id: str) -> Optional[str]:
		match = await self._get(match_id)
		if match is None or not match.includes(user_id):
			return None
		return match.user_b if match.user_a == user_id else match.user_a

	async def is_mutual_match(self, match_id: str, user_a: str, user_b: str) -> bool:
		match = await self._get(match_id)
		if match is None:
			return False
		return match.mutual and match.includes(user_a) and match.includes(user_b) and user_a != user_b
