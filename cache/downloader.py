"""
Local disk cache for the two static schedule artifacts.

  SNAPSHOT → prebuilt SQLite index of the GTFS feed   (fresh for 24h)
  ARCHIVE  → raw GTFS zip of delimited text tables    (fresh for 6h)

Each URL maps to exactly one file under CACHE_DIR, named from a 12-char
SHA-1 of the URL plus a kind-specific prefix, so repeated calls for the
same URL always target the same file.

Transfers stream into "<file>.part" and resume from its current size with
a ranged request.  The part file is renamed over the final path only once
complete, so readers never see a half-written artifact.  Nothing is ever
held fully in memory.
"""

import asyncio
import enum
import hashlib
import logging
import os
import time
from datetime import timedelta
from pathlib import Path

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import (
    AGENCY_KEY,
    ARCHIVE_TTL_HOURS,
    CACHE_DIR,
    DOWNLOAD_BACKOFF_BASE_SECONDS,
    DOWNLOAD_BACKOFF_MAX_SECONDS,
    DOWNLOAD_MAX_ATTEMPTS,
    DOWNLOAD_TIMEOUT_SECONDS,
    SNAPSHOT_TTL_HOURS,
)
from errors import ConfigurationError, NetworkError

logger = logging.getLogger(__name__)


class ArtifactKind(enum.Enum):
    SNAPSHOT = ("snapshot", ".sqlite")
    ARCHIVE = ("gtfs", ".zip")

    def __init__(self, prefix: str, suffix: str) -> None:
        self.prefix = prefix
        self.suffix = suffix


DEFAULT_TTLS: dict[ArtifactKind, timedelta] = {
    ArtifactKind.SNAPSHOT: timedelta(hours=SNAPSHOT_TTL_HOURS),
    ArtifactKind.ARCHIVE: timedelta(hours=ARCHIVE_TTL_HOURS),
}


class IncompleteDownloadError(Exception):
    """The stream ended before the expected number of bytes arrived."""


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        # 4xx means the URL or our request is wrong, so retrying won't help
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TransportError, IncompleteDownloadError))


def content_range_total(header: str | None) -> int | None:
    """Total size from a Content-Range header, e.g. "bytes 0-0/905793536"."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


class DownloadManager:
    """Owns creation, freshness and replacement of cached artifacts."""

    def __init__(
        self,
        cache_dir: Path | str = CACHE_DIR,
        *,
        prefix: str = AGENCY_KEY,
        ttls: dict[ArtifactKind, timedelta] | None = None,
        max_attempts: int = DOWNLOAD_MAX_ATTEMPTS,
        backoff_base: float = DOWNLOAD_BACKOFF_BASE_SECONDS,
        backoff_max: float = DOWNLOAD_BACKOFF_MAX_SECONDS,
        timeout_seconds: float = DOWNLOAD_TIMEOUT_SECONDS,
        chunk_size: int = 1 << 16,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.prefix = prefix
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout_seconds = timeout_seconds
        self.chunk_size = chunk_size
        self._inflight: dict[Path, asyncio.Task] = {}
        self._refreshes: dict[Path, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Paths + freshness
    # ------------------------------------------------------------------

    def local_path(self, url: str, kind: ArtifactKind) -> Path:
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
        return self.cache_dir / f"{self.prefix}-{kind.prefix}-{digest}{kind.suffix}"

    @staticmethod
    def part_path(path: Path) -> Path:
        return path.with_name(path.name + ".part")

    def is_fresh(self, path: Path, kind: ArtifactKind) -> bool:
        try:
            st = path.stat()
        except FileNotFoundError:
            return False
        age = time.time() - st.st_mtime
        return st.st_size > 0 and age < self.ttls[kind].total_seconds()

    def has_copy(self, url: str, kind: ArtifactKind) -> bool:
        """True if any non-empty local copy exists, fresh or stale."""
        if not url:
            return False
        path = self.local_path(url, kind)
        return path.exists() and path.stat().st_size > 0

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def ensure_local(self, url: str, kind: ArtifactKind) -> Path:
        """
        Return the local path of a fresh copy of url, downloading if needed.

        Concurrent callers for the same path share one in-flight download.

        Raises:
            ConfigurationError: url is empty.
            NetworkError: the download failed after max_attempts attempts.
        """
        if not url:
            raise ConfigurationError(
                f"No source URL configured for the {kind.name.lower()} artifact."
            )
        path = self.local_path(url, kind)
        if self.is_fresh(path, kind):
            return path

        task = self._inflight.get(path)
        if task is None:
            task = asyncio.create_task(self._download(url, kind, path))
            self._inflight[path] = task
            task.add_done_callback(lambda _: self._inflight.pop(path, None))
        # A cancelled caller must not cancel the download other callers share
        return await asyncio.shield(task)

    async def _download(self, url: str, kind: ArtifactKind, path: Path) -> Path:
        logger.info("Downloading %s artifact from %s", kind.name.lower(), url)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, follow_redirects=True,
            ) as client:
                remote_size = await self._probe_remote_size(client, url)
                async for attempt in self._retrying():
                    with attempt:
                        await self._fetch_remaining(client, url, path, remote_size)
        except (httpx.HTTPError, IncompleteDownloadError) as exc:
            # The .part file stays behind so the next call resumes from it
            raise NetworkError(f"Download of {url} failed: {exc}") from exc

        os.replace(self.part_path(path), path)
        logger.info("Saved %s (%d bytes)", path, path.stat().st_size)
        return path

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state) -> None:
        logger.warning(
            "Download attempt %d failed: %s. Retrying in %.0fs",
            retry_state.attempt_number,
            retry_state.outcome.exception(),
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    async def _probe_remote_size(self, client: httpx.AsyncClient, url: str) -> int | None:
        """
        Ask for the first byte only; a 206 answer carries the total size in
        Content-Range.  Falls back to HEAD + Content-Length.  None if unknown.
        """
        try:
            async with client.stream("GET", url, headers={"Range": "bytes=0-0"}) as response:
                if response.status_code == 206:
                    total = content_range_total(response.headers.get("content-range"))
                    if total is not None:
                        return total
            response = await client.head(url)
            length = response.headers.get("content-length", "")
            return int(length) if length.isdigit() else None
        except httpx.HTTPError as exc:
            logger.warning("Size probe failed for %s: %s", url, exc)
            return None

    async def _fetch_remaining(
        self,
        client: httpx.AsyncClient,
        url: str,
        path: Path,
        remote_size: int | None,
    ) -> None:
        """One attempt: append whatever the part file is still missing."""
        part = self.part_path(path)
        part.parent.mkdir(parents=True, exist_ok=True)
        offset = part.stat().st_size if part.exists() else 0

        if remote_size is not None and offset > remote_size:
            part.unlink()
            offset = 0
        if remote_size is not None and offset == remote_size and offset > 0:
            return

        headers = {"Range": f"bytes={offset}-"} if offset else {}
        async with client.stream("GET", url, headers=headers) as response:
            if response.status_code == 416:
                part.unlink(missing_ok=True)
                raise IncompleteDownloadError("range not satisfiable; restarting from zero")
            response.raise_for_status()
            if offset and response.status_code == 200:
                logger.warning("Server ignored range request for %s; restarting from zero.", url)
                offset = 0
            with open(part, "ab" if offset else "wb") as fh:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    fh.write(chunk)

        if remote_size is not None:
            written = part.stat().st_size
            if written < remote_size:
                raise IncompleteDownloadError(f"received {written} of {remote_size} bytes")

    # ------------------------------------------------------------------
    # Non-blocking refresh
    # ------------------------------------------------------------------

    def refresh_in_background(self, url: str, kind: ArtifactKind) -> asyncio.Task:
        """Start (or join) a refresh of url without blocking the caller."""
        path = self.local_path(url, kind)
        task = self._refreshes.get(path)
        if task is None or task.done():
            task = asyncio.create_task(self._refresh(url, kind))
            self._refreshes[path] = task
        return task

    async def _refresh(self, url: str, kind: ArtifactKind) -> None:
        try:
            await self.ensure_local(url, kind)
        except (ConfigurationError, NetworkError) as exc:
            logger.error("Background refresh of %s failed: %s", url, exc)
