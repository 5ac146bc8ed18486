"""System-image server lookups.

The server publishes ``channels.json`` (channel -> device -> index path) and
one ``index.json`` per channel/device listing the available images. Only
full images are considered; deltas are never used to build an instance.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import aiohttp

from ubuntu_emu.domain import Release
from ubuntu_emu.logging import get_logger
from ubuntu_emu.storage.exceptions import CatalogError

log = get_logger(source="catalog", tags=["catalog", "net"])


class Catalog(Protocol):
    def get_release(self, channel: str, device: str, revision: int = 0) -> Release:
        ...


def select_image(images: list[dict[str, Any]], revision: int) -> dict[str, Any]:
    """Pick a full image by revision.

    A positive revision selects that exact version. Zero selects the latest
    full image and a negative revision counts back from it (-1 is the one
    before latest).

    Raises:
        CatalogError: If no matching image exists
    """
    full = sorted(
        (image for image in images if image.get("type") == "full"),
        key=lambda image: int(image["version"]),
    )
    if not full:
        raise CatalogError("No full images published")
    if revision > 0:
        for image in full:
            if int(image["version"]) == revision:
                return image
        raise CatalogError(f"Revision {revision} not found")
    index = len(full) - 1 + revision
    if index < 0:
        raise CatalogError(
            f"Relative revision {revision} is out of range ({len(full)} full images)"
        )
    return full[index]


class SystemImageCatalog:
    """Catalog backed by a system-image HTTP server."""

    def __init__(self, server: str, timeout_seconds: int = 60):
        self.server = server.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _fetch_json(self, session: aiohttp.ClientSession, path: str) -> Any:
        url = f"{self.server}/{path.lstrip('/')}"
        try:
            async with session.get(url) as resp:
                if resp.status == 404:
                    raise CatalogError(f"{url} not found")
                if resp.status != 200:
                    raise CatalogError(f"{url} returned status {resp.status}")
                return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise CatalogError(f"Network error fetching {url}: {e}") from e

    async def fetch_release(self, channel: str, device: str, revision: int = 0) -> Release:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            channels = await self._fetch_json(session, "channels.json")
            if channel not in channels:
                raise CatalogError(f"Channel {channel} not found", channel=channel)
            devices = channels[channel].get("devices", {})
            if device not in devices:
                raise CatalogError(
                    f"Device {device} not found on channel {channel}",
                    channel=channel,
                    device=device,
                )
            index_path = devices[device].get("index") or f"{channel}/{device}/index.json"
            index = await self._fetch_json(session, index_path)

        image = select_image(index.get("images", []), revision)
        release = Release.from_index_dict(image, channel=channel, device=device)
        log.info(f"Resolved {channel}/{device} to version {release.version}")
        return release

    def get_release(self, channel: str, device: str, revision: int = 0) -> Release:
        return asyncio.run(self.fetch_release(channel, device, revision))
