"""Audio artifact storage backends."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, Optional

import httpx

from ..errors import TransientStageError, ValidationError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    cleaned = _UNSAFE_FILENAME.sub("-", filename).strip(".-")
    if not cleaned:
        raise ValidationError("Audio filename is empty after sanitization", stage="upload")
    return cleaned


class LocalAudioStorage:
    """Writes audio files under a directory and returns ``file://`` URIs."""

    def __init__(self, root: Path) -> None:
        self._root = root.expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    async def store(self, audio: bytes, *, filename: str, content_type: str) -> str:
        if not audio:
            raise ValidationError("Refusing to store empty audio", stage="upload")
        target = self._root / sanitize_filename(filename)
        await asyncio.to_thread(self._write, target, audio)
        logger.debug(
            "Stored audio artifact",
            extra={"storage_path": str(target), "size_bytes": len(audio)},
        )
        return target.as_uri()

    @staticmethod
    def _write(target: Path, audio: bytes) -> None:
        tmp = target.with_suffix(target.suffix + ".part")
        tmp.write_bytes(audio)
        tmp.replace(target)


class HttpAudioStorage:
    """Uploads audio with an HTTP ``PUT`` to a blob-style endpoint.

    The upload URL is ``{base_url}/{filename}``. When the endpoint responds
    with JSON containing ``url`` that value is returned, otherwise the upload
    URL itself (or ``public_base_url/filename`` when configured).
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        public_base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.timeout = timeout
        self._token = token
        self._client = client

    async def store(self, audio: bytes, *, filename: str, content_type: str) -> str:
        if not audio:
            raise ValidationError("Refusing to upload empty audio", stage="upload")
        name = sanitize_filename(filename)
        upload_url = f"{self.base_url}/{name}"
        headers: Dict[str, str] = {"Content-Type": content_type}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            if self._client is not None:
                response = await self._client.put(upload_url, content=audio, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.put(upload_url, content=audio, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(
                "Audio upload rejected",
                extra={"upload_url": upload_url, "status_code": status},
            )
            if status >= 500 or status == 429:
                raise TransientStageError(
                    f"Upload failed with HTTP {status}",
                    stage="upload",
                    details={"status_code": status},
                ) from e
            raise ValidationError(
                f"Upload rejected with HTTP {status}",
                stage="upload",
                details={"status_code": status},
            ) from e
        except httpx.TransportError as e:
            raise TransientStageError(f"Upload transport error: {e}", stage="upload") from e

        return self._resolve_url(response, name, upload_url)

    def _resolve_url(self, response: httpx.Response, name: str, upload_url: str) -> str:
        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict) and isinstance(payload.get("url"), str):
                return payload["url"]
        if self.public_base_url:
            return f"{self.public_base_url}/{name}"
        return upload_url
