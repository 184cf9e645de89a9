"""Session Router – Media Store.

Persists inbound media bytes under ``{media_dir}/{tenant}/{sha256}.{ext}`` and
returns the public URL the CRM can fetch them from. Content addressing makes
a re-delivered message land on the same file.
"""

from __future__ import annotations

import asyncio
import hashlib
import mimetypes
import os

import structlog

from app.integrations.normalizer import MediaContent
from app.integrations.whatsapp.transport import PayloadKind
from config.settings import Settings, get_settings

logger = structlog.get_logger()

DEFAULT_EXTENSIONS: dict[PayloadKind, str] = {
    PayloadKind.IMAGE: "jpg",
    PayloadKind.VIDEO: "mp4",
    PayloadKind.AUDIO: "ogg",
    PayloadKind.DOCUMENT: "bin",
}


def extension_for(media: MediaContent) -> str:
    if media.file_name and "." in media.file_name:
        return media.file_name.rsplit(".", 1)[-1].lower()
    if media.mimetype:
        guessed = mimetypes.guess_extension(media.mimetype.split(";", 1)[0].strip())
        if guessed:
            return guessed.lstrip(".")
    return DEFAULT_EXTENSIONS.get(media.kind, "bin")


class MediaStore:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _write(self, path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if os.path.exists(path):
            return
        with open(path, "wb") as f:
            f.write(data)

    async def save(self, tenant_id: str, media: MediaContent, data: bytes) -> str:
        """Write ``data`` and return its public URL."""
        name = f"{hashlib.sha256(data).hexdigest()}.{extension_for(media)}"
        path = os.path.join(self._settings.media_dir, tenant_id, name)
        await asyncio.to_thread(self._write, path, data)
        logger.info("media.saved", tenant_id=tenant_id, file=name, size=len(data))
        return f"{self._settings.media_base_url.rstrip('/')}/{tenant_id}/{name}"
