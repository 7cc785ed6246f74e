"""Audio storage for game answers and discussion notes.

Two sinks are provided: ``S3MediaSink`` for deployed environments and
``LocalMediaSink`` which writes under the upload directory served by the dev
static route. Both expose the same ``put``/``get``/``delete`` surface and raise
:class:`MediaUnavailable` on storage failures.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.domain.games import models
from app.domain.games.policy import MediaUnavailable
from app.obs import metrics as obs_metrics
from app.settings import settings


logger = logging.getLogger(__name__)

_EXTENSIONS = {
	"audio/mpeg": "mp3",
	"audio/mp3": "mp3",
	"audio/mp4": "m4a",
	"audio/m4a": "m4a",
	"audio/x-m4a": "m4a",
	"audio/wav": "wav",
	"audio/webm": "webm",
	"audio/ogg": "ogg",
}


@dataclass(slots=True)
class StoredMedia:
	url: str
	key: str
	size: int


class MediaSink(Protocol):
	async def put(self, blob: bytes, key: str, mime_type: str) -> StoredMedia: ...

	async def get(self, key: str) -> bytes: ...

	async def delete(self, key: str) -> None: ...


def extension_for(mime_type: str) -> str:
	return _EXTENSIONS.get(mime_type.lower(), "bin")


def answer_key(session: models.Session, question_number: int, participant_id: str, mime_type: str) -> str:
	return _key(session, f"q{question_number}", participant_id, mime_type)


def note_key(session: models.Session, note_id: str, participant_id: str, mime_type: str) -> str:
	return _key(session, f"note-{note_id}", participant_id, mime_type)


def _key(session: models.Session, slot: str, participant_id: str, mime_type: str) -> str:
	return f"games/{session.variant.value}/{session.session_id}/{slot}_{participant_id}.{extension_for(mime_type)}"


class S3MediaSink:
	def __init__(self, bucket: str, *, region: str, client=None) -> None:
		self._bucket = bucket
		self._region = region
		self._client = client or boto3.client("s3", region_name=region)

	def url_for(self, key: str) -> str:
		return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"

	async def put(self, blob: bytes, key: str, mime_type: str) -> StoredMedia:
		try:
			await asyncio.to_thread(
				self._client.put_object,
				Bucket=self._bucket,
				Key=key,
				Body=blob,
				ContentType=mime_type,
			)
		except (BotoCoreError, ClientError) as exc:
			obs_metrics.game_media_failure("put")
			raise MediaUnavailable("media_upload_failed", message=str(exc)) from exc
		return StoredMedia(url=self.url_for(key), key=key, size=len(blob))

	async def get(self, key: str) -> bytes:
		try:
			response = await asyncio.to_thread(self._client.get_object, Bucket=self._bucket, Key=key)
			return await asyncio.to_thread(response["Body"].read)
		except (BotoCoreError, ClientError) as exc:
			obs_metrics.game_media_failure("get")
			raise MediaUnavailable("media_read_failed", message=str(exc)) from exc

	async def delete(self, key: str) -> None:
		# S3 treats deleting a missing key as success.
		try:
			await asyncio.to_thread(self._client.delete_object, Bucket=self._bucket, Key=key)
		except (BotoCoreError, ClientError) as exc:
			obs_metrics.game_media_failure("delete")
			raise MediaUnavailable("media_delete_failed", message=str(exc)) from exc


class LocalMediaSink:
	def __init__(self, root: Path | str, *, base_url: str) -> None:
		self._root = Path(root).resolve()
		self._base_url = base_url.rstrip("/")

	def _path(self, key: str) -> Path:
		target = (self._root / key).resolve()
		if not target.is_relative_to(self._root):
			raise MediaUnavailable("invalid_media_key")
		return target

	async def put(self, blob: bytes, key: str, mime_type: str) -> StoredMedia:
		target = self._path(key)
		try:
			await asyncio.to_thread(_write_bytes, target, blob)
		except OSError as exc:
			obs_metrics.game_media_failure("put")
			raise MediaUnavailable("media_upload_failed", message=str(exc)) from exc
		return StoredMedia(url=f"{self._base_url}/{key}", key=key, size=len(blob))

	async def get(self, key: str) -> bytes:
		try:
			return await asyncio.to_thread(self._path(key).read_bytes)
		except OSError as exc:
			obs_metrics.game_media_failure("get")
			raise MediaUnavailable("media_read_failed", message=str(exc)) from exc

	async def delete(self, key: str) -> None:
		try:
			await asyncio.to_thread(self._path(key).unlink, missing_ok=True)
		except OSError as exc:
			obs_metrics.game_media_failure("delete")
			raise MediaUnavailable("media_delete_failed", message=str(exc)) from exc


def _write_bytes(target: Path, blob: bytes) -> None:
	target.parent.mkdir(parents=True, exist_ok=True)
	target.write_bytes(blob)


_sink: Optional[MediaSink] = None


def get_media_sink() -> MediaSink:
	global _sink
	if _sink is None:
		if settings.media_backend == "s3":
			if not settings.s3_bucket_name:
				raise MediaUnavailable("media_not_configured", message="S3_BUCKET_NAME is required for the s3 backend")
			_sink = S3MediaSink(settings.s3_bucket_name, region=settings.aws_region)
		else:
			_sink = LocalMediaSink(settings.upload_dir, base_url=settings.upload_base_url)
		logger.info("Media sink ready", extra={"backend": settings.media_backend})
	return _sink


def set_media_sink(sink: Optional[MediaSink]) -> None:
	global _sink
	_sink = sink
