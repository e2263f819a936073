# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Resolution of attachment references into bytes.

An attachment either carries its content inline or references it through
``path``: an ``http(s)://`` URL downloaded with aiohttp, or a local file
read off the event loop. References that cannot be resolved are skipped
with a warning so the message itself still goes out.

Example:
    Resolving the attachments of a message::

        resolver = AttachmentResolver(timeout=30)
        files = await resolver.resolve_all(params.attachments or [])
        for name, content, (maintype, subtype) in files:
            msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=name)
"""

from __future__ import annotations

import asyncio
import mimetypes
from pathlib import Path

import aiohttp

from .logger import get_logger
from .models import EmailAttachment

ResolvedAttachment = tuple[str, bytes, tuple[str, str]]

logger = get_logger("AttachmentResolver")


class AttachmentResolver:
    """Turns :class:`EmailAttachment` references into ``(filename, bytes, mime)``."""

    def __init__(self, timeout: float = 30.0, base_dir: str | None = None):
        self._timeout = timeout
        self._base_dir = Path(base_dir).resolve() if base_dir else None

    @staticmethod
    def guess_mime(filename: str, content_type: str | None = None) -> tuple[str, str]:
        """Split an explicit or guessed content type into ``(maintype, subtype)``."""
        mt = content_type
        if not mt:
            mt, _ = mimetypes.guess_type(filename)
        if not mt or "/" not in mt:
            return ("application", "octet-stream")
        maintype, subtype = mt.split("/", 1)
        return maintype, subtype

    async def fetch(self, att: EmailAttachment) -> bytes | None:
        """Return the attachment bytes, or None when there is nothing to read."""
        if att.content is not None:
            if isinstance(att.content, str):
                return att.content.encode("utf-8")
            return att.content
        if not att.path:
            return None
        if att.path.startswith(("http://", "https://")):
            return await self._fetch_url(att.path)
        return await asyncio.to_thread(self._resolve_path(att.path).read_bytes)

    async def _fetch_url(self, url: str) -> bytes:
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.read()

    def _resolve_path(self, path: str) -> Path:
        path_obj = Path(path)
        if not path_obj.is_absolute() and self._base_dir:
            path_obj = self._base_dir / path_obj
        resolved = path_obj.resolve()
        if self._base_dir:
            try:
                resolved.relative_to(self._base_dir)
            except ValueError:
                raise ValueError(
                    f"Path traversal detected: '{path}' resolves outside base directory"
                ) from None
        if not resolved.is_file():
            raise FileNotFoundError(f"File not found: {resolved}")
        return resolved

    async def resolve_all(self, attachments: list[EmailAttachment]) -> list[ResolvedAttachment]:
        """Resolve every reference, dropping the ones that fail."""
        resolved: list[ResolvedAttachment] = []
        for att in attachments:
            try:
                content = await self.fetch(att)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
                logger.warning("Skipping attachment %s: %s", att.filename, exc)
                continue
            if content is None:
                logger.warning("Attachment %s has no content or path", att.filename)
                continue
            resolved.append((att.filename, content, self.guess_mime(att.filename, att.content_type)))
        return resolved
