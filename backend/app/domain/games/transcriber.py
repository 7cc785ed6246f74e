"""Speech-to-text for voice answers."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import openai

from app.domain.games import media
from app.settings import settings


logger = logging.getLogger(__name__)


class TranscriptionError(RuntimeError):
	pass


class Transcriber(Protocol):
	enabled: bool

	async def transcribe(self, blob: bytes, mime_type: str) -> str: ...


class WhisperTranscriber:
	"""OpenAI Whisper transcription. Disabled when no API key is configured."""

	def __init__(self, client: Optional[openai.AsyncOpenAI] = None, *, model: str | None = None) -> None:
		self._model = model or settings.openai_transcription_model
		if client is None and settings.openai_api_key:
			client = openai.AsyncOpenAI(api_key=settings.openai_api_key)
		self._client = client
		self.enabled = client is not None

	async def transcribe(self, blob: bytes, mime_type: str) -> str:
		if self._client is None:
			raise TranscriptionError("transcriber_disabled")
		filename = f"answer.{media.extension_for(mime_type)}"
		try:
			text = await self._client.audio.transcriptions.create(
				model=self._model,
				file=(filename, blob, mime_type),
				response_format="text",
			)
		except openai.OpenAIError as exc:
			raise TranscriptionError(str(exc)) from exc
		# response_format="text" yields a plain string; older clients wrap it.
		value = text if isinstance(text, str) else getattr(text, "text", "")
		value = (value or "").strip()
		if not value:
			raise TranscriptionError("empty_transcription")
		return value


_transcriber: Optional[Transcriber] = None


def get_transcriber() -> Transcriber:
	global _transcriber
	if _transcriber is None:
		_transcriber = WhisperTranscriber()
		if not _transcriber.enabled:
			logger.warning("OPENAI_API_KEY not set; voice answers will not be transcribed")
	return _transcriber


def set_transcriber(transcriber: Optional[Transcriber]) -> None:
	global _transcriber
	_transcriber = transcriber
