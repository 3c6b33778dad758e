"""Image reference scanning and the local image cache.

Generated scenes reference images through a templated URL:

    <endpoint><url-encoded prompt>?width=W&height=H

Two references that differ only in their requested size are the same
image, so the cache key is the URL with `width`/`height` stripped. Files
are named by the SHA-256 of that key. Downloads run as background asyncio
tasks; a per-key ticket keeps a second fetch for the same key from starting
while one is in flight. Failed downloads leave nothing behind and are
retried the next time the same markup is scanned.
"""

from __future__ import annotations

import asyncio
import hashlib
import html
import logging
import os
import re
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from scenecast.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://image.pollinations.ai/prompt/"

_IMG_SRC = re.compile(r"""<img\b[^>]*?\bsrc\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)
_SIZE_PARAMS = {"width", "height"}
_SIZE_SEGMENT = re.compile(r"/(?:width|height)/\d+", re.IGNORECASE)


class DownloadFailure(RuntimeError):
    """A single image could not be fetched. Never leaves the cache."""


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------

def normalize_image_url(url: str) -> str:
    """Strip the caller-variable size parameters from an image URL.

    Takes a plain URL, not an HTML attribute value; entity decoding belongs
    to the markup scanner. Other query arguments are kept as written and in
    order; fragments are dropped. Normalizing an already normalized key
    returns it unchanged.
    """
    parts = urlsplit(url.strip())
    path = _SIZE_SEGMENT.sub("", parts.path)
    kept = [
        p for p in parts.query.split("&")
        if p and p.split("=", 1)[0].lower() not in _SIZE_PARAMS
    ]
    return urlunsplit((parts.scheme, parts.netloc, path, "&".join(kept), ""))


def scan_image_references(markup: str, endpoint: str = DEFAULT_ENDPOINT) -> list[str]:
    """Return the normalized keys of every templated image in the markup.

    Order of first appearance is kept; duplicates are dropped.
    """
    keys: list[str] = []
    seen: set[str] = set()
    for match in _IMG_SRC.finditer(markup):
        src = _templated_src(match.group(2), endpoint)
        if src is None:
            continue
        key = normalize_image_url(src)
        if key not in seen:
            seen.add(key)
            keys.append(key)
    return keys


def rewrite_image_sources(markup: str, endpoint: str = DEFAULT_ENDPOINT,
                          route: str = "/api/images") -> str:
    """Point every templated image at the local cache route.

    The route serves the cached file, or redirects to the original URL on a
    miss. Other images are left alone.
    """
    def _swap(match: re.Match) -> str:
        src = _templated_src(match.group(2), endpoint)
        if src is None:
            return match.group(0)
        start, end = match.span(2)
        offset = match.start(0)
        local = f"{route}?url={quote(src, safe='')}"
        whole = match.group(0)
        return whole[:start - offset] + local + whole[end - offset:]

    return _IMG_SRC.sub(_swap, markup)


def _templated_src(raw: str, endpoint: str) -> str | None:
    """Decode an attribute value once; None unless it uses the image endpoint."""
    src = html.unescape(raw).strip()
    if not src.lower().startswith(endpoint.lower()):
        return None
    return src


def is_templated_url(url: str, endpoint: str = DEFAULT_ENDPOINT) -> bool:
    return url.strip().lower().startswith(endpoint.lower())


def cache_filename(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest() + ".jpg"


def build_fetch_url(key: str, width: int, height: int) -> str:
    sep = "&" if urlsplit(key).query else "?"
    return f"{key}{sep}width={width}&height={height}"


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class ImageCache:
    """Maps normalized image keys to files under `cache_dir`.

    Args:
        cache_dir:        Directory holding the cached files.
        storage:          Where the key → filename map is persisted.
        endpoint:         Image URL prefix the scanner looks for.
        width, height:    Canonical size re-added to every fetch.
        connect_timeout:  Seconds to wait for the connection.
        read_timeout:     Seconds to wait between body chunks.
        transport:        Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        cache_dir: Path,
        storage: Storage,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        width: int = 368,
        height: int = 448,
        connect_timeout: float = 15.0,
        read_timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._dir = cache_dir
        self._dir.mkdir(parents=True, exist_ok=True)
        self._storage = storage
        self._endpoint = endpoint
        self._width = width
        self._height = height
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._transport = transport

        self._map: dict[str, str] = storage.get_image_map()
        self._tickets: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        # Bumped by reset(); downloads started before a reset discard their result.
        self._generation = 0

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def mapping(self) -> dict[str, str]:
        return dict(self._map)

    @property
    def pending(self) -> set[str]:
        return set(self._tickets)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve(self, key: str) -> Path | None:
        """Return the cached file for a reference, or None on a miss.

        A mapping whose file is gone or empty counts as a miss.
        """
        filename = self._map.get(normalize_image_url(key))
        if filename is None:
            return None
        path = self._dir / filename
        if path.is_file() and path.stat().st_size > 0:
            return path
        return None

    # ------------------------------------------------------------------
    # Scan + download
    # ------------------------------------------------------------------

    def scan_and_ensure(self, markup: str) -> list[asyncio.Task]:
        """Start a background download for every uncached image in the markup.

        Must be called from a running event loop. Returns the tasks that were
        started; callers normally ignore them.
        """
        started: list[asyncio.Task] = []
        for key in scan_image_references(markup, self._endpoint):
            if self.resolve(key) is not None:
                continue
            if key in self._tickets:
                logger.debug("Download already in flight: %s", key)
                continue
            self._tickets.add(key)
            task = asyncio.get_running_loop().create_task(self._download(key))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        if started:
            logger.info("Scheduled %d image download(s)", len(started))
        return started

    async def drain(self) -> None:
        """Wait for every download currently in flight."""
        if not self._tasks:
            return
        results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Image download task failed: %r", result)

    async def _download(self, key: str) -> Path | None:
        generation = self._generation
        filename = cache_filename(key)
        final = self._dir / filename
        # One scratch file per generation so a download abandoned by reset()
        # never shares it with the download that replaces it.
        part = final.with_name(f"{filename}.{generation}.part")
        try:
            if final.is_file() and final.stat().st_size > 0:
                # Left over from an earlier run whose map was lost.
                self._insert(key, filename)
                return final

            url = build_fetch_url(key, self._width, self._height)
            logger.debug("Downloading image %s", url)
            await self._fetch(url, part)
            if generation != self._generation:
                part.unlink(missing_ok=True)
                logger.debug("Discarding download finished after reset: %s", key)
                return None
            os.replace(part, final)
            self._insert(key, filename)
            logger.debug("Image cached: %s -> %s", key, filename)
            return final
        except (DownloadFailure, httpx.HTTPError, OSError) as e:
            part.unlink(missing_ok=True)
            logger.warning("Failed to download image %s: %s", key, e)
            return None
        finally:
            if generation == self._generation:
                self._tickets.discard(key)

    async def _fetch(self, url: str, dest: Path) -> None:
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=True,
        ) as client:
            async with client.stream("GET", url) as resp:
                if resp.status_code != 200:
                    raise DownloadFailure(f"HTTP {resp.status_code}")
                written = 0
                with dest.open("wb") as fh:
                    async for chunk in resp.aiter_bytes():
                        fh.write(chunk)
                        written += len(chunk)
        if written == 0:
            raise DownloadFailure("empty response body")

    def _insert(self, key: str, filename: str) -> None:
        # Persist first; the in-memory map only changes once the write succeeded.
        updated = {**self._map, key: filename}
        self._storage.set_image_map(updated)
        self._map = updated

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Delete every cached file and forget all mappings and tickets."""
        self._generation += 1
        for filename in self._map.values():
            try:
                (self._dir / filename).unlink(missing_ok=True)
            except OSError as e:
                logger.error("Error deleting cached image file %s: %s", filename, e)
        removed = len(self._map)
        self._map.clear()
        self._tickets.clear()
        self._storage.set_image_map(self._map)
        logger.info("Image cache reset, %d file(s) removed", removed)
