"""In-process background jobs for analysis and insights."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from app.settings import settings


logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[None]]


def job_key(kind: str, session_id: str) -> str:
	return f"{kind}:{session_id}"


class BackgroundWorker:
	"""Runs coroutines off the request path with a concurrency bound.

	Jobs are keyed; scheduling a key that is already in flight returns the
	existing task instead of starting a second one.
	"""

	def __init__(self, concurrency: int | None = None) -> None:
		self._semaphore = asyncio.Semaphore(concurrency or settings.game_worker_concurrency)
		self._inflight: Dict[str, asyncio.Task] = {}

	def schedule(self, key: str, factory: JobFactory) -> asyncio.Task:
		task = self._inflight.get(key)
		if task is not None and not task.done():
			return task
		task = asyncio.create_task(self._run(key, factory), name=f"games:{key}")
		self._inflight[key] = task
		task.add_done_callback(lambda t, k=key: self._forget(k, t))
		return task

	def _forget(self, key: str, task: asyncio.Task) -> None:
		if self._inflight.get(key) is task:
			self._inflight.pop(key, None)

	async def _run(self, key: str, factory: JobFactory) -> None:
		async with self._semaphore:
			try:
				await factory()
			except asyncio.CancelledError:
				raise
			except Exception:
				logger.exception("Background job failed", extra={"job": key})

	def pending(self) -> int:
		return sum(1 for task in self._inflight.values() if not task.done())

	async def drain(self, timeout: Optional[float] = None) -> None:
		"""Wait for in-flight jobs, including any they schedule while running."""
		while True:
			tasks = [task for task in self._inflight.values() if not task.done()]
			if not tasks:
				return
			done, still_running = await asyncio.wait(tasks, timeout=timeout)
			if still_running:
				logger.warning("Background jobs still running at drain timeout", extra={"count": len(still_running)})
				for task in still_running:
					task.cancel()
				return


_worker: Optional[BackgroundWorker] = None


def get_worker() -> BackgroundWorker:
	global _worker
	if _worker is None:
		_worker = BackgroundWorker()
	return _worker


def set_worker(worker: Optional[BackgroundWorker]) -> None:
	global _worker
	_worker = worker
