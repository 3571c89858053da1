"""Object storage client used for chat attachments."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import ulid

from docdesk.settings import settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UploadedFile:
	"""A file received from a client, fully buffered in memory."""

	filename: str
	content_type: Optional[str]
	data: bytes

	@property
	def size(self) -> int:
		return len(self.data)


@dataclass(slots=True)
class StoredObject:
	key: str
	url: str


class UploadError(RuntimeError):
	"""Raised when the object store rejects or fails an upload."""


class ObjectStorage(Protocol):
	async def upload(self, file: UploadedFile, *, prefix: str) -> StoredObject:
		...


def _extension(filename: str) -> str:
	if "." not in filename:
		return ""
	ext = filename.rsplit(".", 1)[1].lower()
	return f".{ext}" if ext.isalnum() and len(ext) <= 8 else ""


class HttpObjectStorage:
	"""PUT uploads to an HTTP object store (S3-compatible presigned base or the dev sink)."""

	def __init__(
		self,
		*,
		base_url: str | None = None,
		timeout: float | None = None,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self._base_url = (base_url or settings.upload_base_url).rstrip("/")
		self._timeout = timeout if timeout is not None else settings.upload_timeout_seconds
		self._transport = transport

	async def upload(self, file: UploadedFile, *, prefix: str) -> StoredObject:
		key = f"{prefix.strip('/')}/{ulid.new()}{_extension(file.filename)}"
		url = f"{self._base_url}/{key}"
		headers = {"Content-Type": file.content_type or "application/octet-stream"}
		try:
			async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
				response = await client.put(url, content=file.data, headers=headers)
				response.raise_for_status()
		except httpx.HTTPError as exc:
			logger.warning("object upload failed", extra={"key": key, "error": str(exc)})
			raise UploadError(str(exc)) from exc
		return StoredObject(key=key, url=url)
