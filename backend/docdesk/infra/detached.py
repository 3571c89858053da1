"""Fire-and-forget task runner for best-effort side effects.

A detached operation never reports back to the code that spawned it: its
result is dropped and any exception is logged and discarded. Callers keep
their own success/failure path independent of it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class DetachedRunner:
	"""Owns the strong references to spawned tasks until they finish."""

	def __init__(
		self,
		*,
		on_failure: Optional[Callable[[str, BaseException], None]] = None,
	) -> None:
		self._tasks: Set[asyncio.Task] = set()
		self._on_failure = on_failure

	def spawn(self, operation: Awaitable[object], *, name: str) -> asyncio.Task:
		task = asyncio.ensure_future(operation)
		task.set_name(name)
		self._tasks.add(task)
		task.add_done_callback(self._finalise)
		return task

	def _finalise(self, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is None:
			return
		logger.error(
			"detached operation failed",
			exc_info=(type(exc), exc, exc.__traceback__),
			extra={"operation": task.get_name()},
		)
		if self._on_failure is not None:
			self._on_failure(task.get_name(), exc)

	@property
	def pending(self) -> int:
		return len(self._tasks)

	async def drain(self) -> None:
		"""Wait for every in-flight operation; failures stay swallowed."""
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)

	async def shutdown(self) -> None:
		for task in list(self._tasks):
			task.cancel()
		await self.drain()
