from __future__ import annotations

import asyncio
import base64
import mimetypes
from pathlib import Path
from typing import Awaitable, Callable
from urllib.parse import urlparse
from urllib.request import url2pathname

import aiohttp

from bottles.content import MediaSpan
from bottles.content import media_spans
from bottles.content import parse
from bottles.content import serialize
from bottles.delivery import RetryPolicy
from bottles.delivery import describe_error
from bottles.errors import AssetFetchFailure


ASSET_MODES = ("remote", "inline", "local")

Fetch = Callable[[str], Awaitable[tuple[bytes, str]]]


def local_path(src: str) -> Path:
    return Path(url2pathname(urlparse(src).path))


def split_data_uri(src: str) -> tuple[str, bytes]:
    header, _, payload = src.partition(",")
    mime = header[len("data:"):].split(";", 1)[0].strip() or "application/octet-stream"
    return mime, base64.b64decode(payload)


def extension_for(mime: str) -> str:
    return mimetypes.guess_extension((mime or "").split(";", 1)[0].strip()) or ".bin"


class AssetExternalizer:
    """Rewrites media locators in stored content into the configured representation."""

    def __init__(
        self,
        *,
        mode: str,
        directory: str,
        policy: RetryPolicy,
        fetch: Fetch | None = None,
        sleep: Callable[[float], Awaitable[object]] | None = None,
    ) -> None:
        mode = (mode or "remote").strip().lower()
        if mode not in ASSET_MODES:
            raise ValueError(f"Unknown asset mode: {mode}")
        self.mode = mode
        self.directory = Path(directory)
        self.policy = policy
        self._fetch = fetch or self._http_fetch
        self._sleep = sleep or asyncio.sleep
        self._session: aiohttp.ClientSession | None = None

    async def _http_fetch(self, url: str) -> tuple[bytes, str]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=60))
        async with self._session.get(url) as resp:
            resp.raise_for_status()
            return await resp.read(), resp.content_type

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _load(self, span: MediaSpan) -> tuple[bytes, str]:
        rep = span.representation
        if rep == "inline":
            mime, data = split_data_uri(span.src)
            return data, mime
        if rep == "local":
            path = local_path(span.src)
            data = await asyncio.to_thread(path.read_bytes)
            mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            return data, mime
        return await self._fetch(span.src)

    async def _to_local(self, span: MediaSpan, stem: str) -> str:
        data, mime = await self._load(span)
        path = self.directory / f"{stem}{extension_for(mime)}"

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        return path.resolve().as_uri()

    async def _to_inline(self, span: MediaSpan) -> str:
        data, mime = await self._load(span)
        mime = (mime or "application/octet-stream").split(";", 1)[0].strip()
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"

    async def _convert_once(self, owner_kind: str, owner_id: int, content: str, target: str) -> tuple[str, int]:
        spans = parse(content)
        converted = 0
        for ordinal, (idx, span) in enumerate(media_spans(spans)):
            if span.representation == target:
                continue
            if target == "local":
                src = await self._to_local(span, f"{owner_kind}-{owner_id}-{ordinal}")
            else:
                src = await self._to_inline(span)
            spans[idx] = MediaSpan(span.kind, src)
            converted += 1
        if not converted:
            return content, 0
        return serialize(spans), converted

    async def externalize(
        self,
        owner_kind: str,
        owner_id: int,
        content: str,
        target: str | None = None,
    ) -> tuple[str, int]:
        """Returns (new_content, converted_count). Remote target never touches the content."""
        target = (target or self.mode).strip().lower()
        if target not in ASSET_MODES:
            raise ValueError(f"Unknown asset mode: {target}")
        if target == "remote" or not media_spans(parse(content)):
            return content, 0

        label = f"{owner_kind} {owner_id}"
        max_retry = max(0, int(self.policy.max_retry))
        retry = 0
        while True:
            try:
                return await self._convert_once(owner_kind, owner_id, content, target)
            except Exception as e:
                retry += 1
                if retry > max_retry:
                    print(
                        f"[Assets] storing media for {label} failed (retried {max_retry}/{max_retry} times): "
                        f"{describe_error(e, self.policy.debug)}"
                    )
                    raise AssetFetchFailure(label, max_retry, e) from e
                print(
                    f"[Assets] storing media for {label} failed (retried {retry - 1}/{max_retry}, "
                    f"next attempt in {self.policy.interval_ms}ms): {describe_error(e, self.policy.debug)}"
                )
                await self._sleep(self.policy.interval_seconds)

    def local_files(self, content: str) -> list[Path]:
        return [local_path(span.src) for _, span in media_spans(parse(content)) if span.representation == "local"]

    def unlink_local_files(self, content: str) -> int:
        removed = 0
        for path in self.local_files(content):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                print(f"[Assets] local file already gone: {path}")
        return removed
