"""Concurrent release downloads.

One task per release file, no concurrency cap (releases have a handful of
files). The whole fan-out runs as the invoking user inside a single
``PrivilegeGuard.dropped()`` scope. The first failure cancels the remaining
downloads and is raised; there is no partial result.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from pathlib import Path
from typing import Iterable

import aiohttp

from ubuntu_emu.domain import ImageFile
from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage.exceptions import DownloadError
from ubuntu_emu.storage.privileges import PrivilegeGuard

log = LoggerFactory.for_download()

CHUNK_SIZE = 1024 * 1024


def sha256sum(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_cached(path: Path, file: ImageFile) -> bool:
    """A cached copy is reused only when its size and checksum match."""
    if not path.is_file():
        return False
    if file.size is not None and path.stat().st_size != file.size:
        return False
    if file.checksum:
        return sha256sum(path) == file.checksum.lower()
    return file.size is not None


class DownloadManager:
    """Fetches every file of a release into the cache directory."""

    def __init__(
        self,
        server: str,
        cache_dir: Path,
        privileges: PrivilegeGuard,
        timeout_seconds: float = 3600,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.server = server
        self.cache_dir = Path(cache_dir)
        self.privileges = privileges
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.chunk_size = chunk_size

    def download(self, files: Iterable[ImageFile]) -> list[Path]:
        """Download ``files`` and return one local path per file.

        Raises:
            DownloadError: On the first failed download
        """
        files = list(files)
        with self.privileges.dropped():
            return asyncio.run(self.download_all(files))

    async def download_all(self, files: list[ImageFile]) -> list[Path]:
        paths: list[Path] = []
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            tasks = [asyncio.create_task(self._download_one(session, file)) for file in files]
            try:
                for completed in asyncio.as_completed(tasks):
                    paths.append(await completed)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        log.info(f"Downloaded {len(paths)} file(s) into {self.cache_dir}")
        return paths

    async def _download_one(self, session: aiohttp.ClientSession, file: ImageFile) -> Path:
        try:
            file = file.relative_to_server(self.server)
            target = self.cache_dir / file.relative_path
            if await asyncio.to_thread(is_cached, target, file):
                log.debug(f"Cache hit for {file.name}")
                return target
            target.parent.mkdir(parents=True, exist_ok=True)
            await self._fetch(session, file, target)
        except DownloadError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            raise DownloadError(file.path, str(e) or type(e).__name__) from e
        log.info(f"Downloaded {file.name}")
        return target

    async def _fetch(self, session: aiohttp.ClientSession, file: ImageFile, target: Path) -> None:
        partial = target.with_name(target.name + ".partial")
        digest = hashlib.sha256()
        written = 0
        try:
            async with session.get(file.url) as resp:
                if resp.status != 200:
                    raise DownloadError(file.path, f"server returned status {resp.status}")
                with open(partial, "wb") as out:
                    async for chunk in resp.content.iter_chunked(self.chunk_size):
                        out.write(chunk)
                        digest.update(chunk)
                        written += len(chunk)
                        log.trace(f"{file.name}: chunk of {len(chunk)} bytes")
            if file.size is not None and written != file.size:
                raise DownloadError(file.path, f"expected {file.size} bytes, got {written}")
            if file.checksum and digest.hexdigest() != file.checksum.lower():
                raise DownloadError(file.path, "checksum mismatch")
            os.replace(partial, target)
        finally:
            if partial.exists():
                partial.unlink()
