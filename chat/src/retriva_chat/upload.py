from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from .models import ATTACHMENT_FILE, ATTACHMENT_IMAGE


class UploadFailed(Exception):
    pass


def attachment_kind(content_type: str | None) -> str:
    if content_type and content_type.lower().startswith("image/"):
        return ATTACHMENT_IMAGE
    return ATTACHMENT_FILE


def _error_message(body: Any, status: int) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return f"upload failed with status {status}"


class HttpMediaUploader:
    """Uploads attachments as multipart form data and returns the hosted URL.

    The endpoint is expected to answer with JSON carrying ``secure_url`` (or
    ``url``), the shape used by unsigned-preset image hosts.
    """

    def __init__(
        self,
        url: str,
        *,
        upload_preset: str | None = None,
        timeout_s: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._upload_preset = upload_preset
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session

    async def upload(self, filename: str, payload: bytes, content_type: str | None) -> str:
        form = aiohttp.FormData()
        form.add_field(
            "file",
            payload,
            filename=filename or "upload",
            content_type=content_type or "application/octet-stream",
        )
        if self._upload_preset:
            form.add_field("upload_preset", self._upload_preset)

        session = self._session or aiohttp.ClientSession(timeout=self._timeout)
        try:
            async with session.post(self._url, data=form) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                if response.status >= 400 or not isinstance(body, dict):
                    raise UploadFailed(_error_message(body, response.status))
                hosted = body.get("secure_url") or body.get("url")
                if not isinstance(hosted, str) or not hosted:
                    raise UploadFailed("upload response did not include a url")
                return hosted
        except aiohttp.ClientError as exc:
            raise UploadFailed(str(exc) or "upload request failed") from exc
        except asyncio.TimeoutError as exc:
            raise UploadFailed("upload timed out") from exc
        finally:
            if self._session is None:
                await session.close()
