"""Redis Stream outbox for game notifications."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from app.infra.redis import redis_client


logger = logging.getLogger(__name__)

GAME_EVENT_STREAM = "x:games.events"
GAME_EVENT_MAXLEN = 10_000


def _stringify_fields(fields: Mapping[str, Any]) -> dict[str, str]:
	return {key: str(value) for key, value in fields.items() if value is not None}


async def append_game_event(
	event: str,
	*,
	session_id: str,
	variant: str,
	recipient_id: Optional[str] = None,
	actor_id: Optional[str] = None,
	meta: Mapping[str, Any] | None = None,
) -> None:
	"""Publish a notification for the push service. Failures are logged, never raised."""
	fields: dict[str, Any] = {
		"event": event,
		"session_id": session_id,
		"variant": variant,
		"recipient_id": recipient_id,
		"actor_id": actor_id,
	}
	if meta:
		for key, value in meta.items():
			fields[f"meta_{key}"] = value
	try:
		await redis_client.xadd_capped(GAME_EVENT_STREAM, _stringify_fields(fields), maxlen=GAME_EVENT_MAXLEN)
	except Exception:
		logger.warning("Failed to publish game event", extra={"event": event, "session_id": session_id}, exc_info=True)
