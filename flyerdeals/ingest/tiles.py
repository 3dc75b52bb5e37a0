"""CDN tile grid discovery, quality tiers and batched tile downloads."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass

import httpx

from flyerdeals.config import Settings
from flyerdeals.ingest.models import NATIVE_ZOOM, FlyerSource, Tile, TileBatch, TileFetchError, TileGrid

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 3.0
PAGE_PROBE_TIMEOUT = 5.0
TILE_TIMEOUT = 15.0

MAX_PROBE_COLS = 20
MAX_PROBE_ROWS = 15
MAX_PAGE_PROBES = 30
MAX_PAGES = 20

FULL_TILE_LIMIT = 120
MEDIUM_TILE_LIMIT = 300
MEDIUM_ZOOM = 4
PAGE_ZOOM = 0


def tile_url(base_url: str, path: str, zoom: int, col: int, row: int) -> str:
    return f"{base_url}/{path}{zoom}_{col}_{row}.jpg"


async def head_ok(session: httpx.AsyncClient, url: str, timeout: float) -> bool:
    try:
        response = await session.head(url, timeout=timeout)
    except httpx.HTTPError:
        return False
    return response.status_code == 200


class QualityTier(enum.Enum):
    FULL = "full"
    MEDIUM = "med"
    LOW_MEMORY = "lowres"


def select_tier(total_tiles: int) -> QualityTier:
    """Pick how a flyer is rendered from its tile count at the native zoom."""
    if total_tiles <= FULL_TILE_LIMIT:
        return QualityTier.FULL
    if total_tiles <= MEDIUM_TILE_LIMIT:
        return QualityTier.MEDIUM
    return QualityTier.LOW_MEMORY


@dataclass(slots=True)
class TierPlan:
    tier: QualityTier
    grid: TileGrid
    batch_size: int = 0
    batch_delay: float = 0.0

    @property
    def label(self) -> str:
        return self.tier.value


def plan_tier(grid: TileGrid, settings: Settings) -> TierPlan:
    tier = select_tier(grid.total)
    if tier is QualityTier.FULL:
        return TierPlan(tier, grid, batch_size=30, batch_delay=settings.full_batch_delay)
    if tier is QualityTier.MEDIUM:
        return TierPlan(tier, grid.halved(MEDIUM_ZOOM), batch_size=20, batch_delay=settings.medium_batch_delay)
    return TierPlan(tier, TileGrid(cols=1, rows=1, zoom=PAGE_ZOOM))


class TileGridResolver:
    def __init__(self, settings: Settings, session: httpx.AsyncClient) -> None:
        self.settings = settings
        self.session = session

    async def resolve(self, source: FlyerSource) -> TileGrid:
        if source.has_dimensions:
            grid = TileGrid.from_dimensions(source.width, source.height)
            logger.info(
                "Using declared dimensions %sx%s for %s (%sx%s tiles)",
                source.width,
                source.height,
                source.merchant,
                grid.cols,
                grid.rows,
            )
            return grid
        if not source.path:
            logger.warning("No flyer path for %s", source.merchant)
            return TileGrid(cols=0, rows=0)
        logger.info("No declared dimensions for %s, probing", source.merchant)
        return await self.probe(source.path)

    async def probe(self, path: str) -> TileGrid:
        base = self.settings.cdn_base_url
        cols = await self._count(lambda i: tile_url(base, path, NATIVE_ZOOM, i, 0), MAX_PROBE_COLS)
        rows = await self._count(lambda i: tile_url(base, path, NATIVE_ZOOM, 0, i), MAX_PROBE_ROWS)
        logger.info("Probed grid %sx%s for %s", cols, rows, path)
        return TileGrid(cols=cols, rows=rows)

    async def _count(self, url_for, limit: int) -> int:
        found = 0
        for index in range(limit):
            if not await head_ok(self.session, url_for(index), PROBE_TIMEOUT):
                break
            found = index + 1
        return found


class TileBatchFetcher:
    def __init__(self, settings: Settings, session: httpx.AsyncClient) -> None:
        self.settings = settings
        self.session = session

    async def fetch(self, path: str, grid: TileGrid, *, batch_size: int, delay: float = 0.0) -> TileBatch:
        coords = [(idx % grid.cols, idx // grid.cols) for idx in range(grid.total)]
        chunks = [coords[i : i + batch_size] for i in range(0, len(coords), batch_size)]
        batch = TileBatch(grid=grid)
        logger.info("Downloading %s tiles (%sx%s) at zoom %s", grid.total, grid.cols, grid.rows, grid.zoom)
        for number, chunk in enumerate(chunks):
            results = await asyncio.gather(*(self._fetch_tile(path, grid.zoom, col, row) for col, row in chunk))
            for result in results:
                if isinstance(result, Tile):
                    batch.tiles.append(result)
                else:
                    batch.failures.append(result)
            if delay and number < len(chunks) - 1:
                await asyncio.sleep(delay)
        logger.info("Downloaded %s/%s tiles at zoom %s", batch.fetched, grid.total, grid.zoom)
        for failure in batch.failures:
            logger.debug("Tile %s_%s missing: %s", failure.col, failure.row, failure.reason)
        return batch

    async def _fetch_tile(self, path: str, zoom: int, col: int, row: int) -> Tile | TileFetchError:
        url = tile_url(self.settings.cdn_base_url, path, zoom, col, row)
        try:
            response = await self.session.get(url, timeout=TILE_TIMEOUT)
        except httpx.HTTPError as exc:
            return TileFetchError(col=col, row=row, url=url, reason=str(exc) or exc.__class__.__name__)
        if response.status_code != 200:
            return TileFetchError(col=col, row=row, url=url, reason=f"HTTP {response.status_code}")
        return Tile(col=col, row=row, data=response.content)

    async def page_tile_urls(self, path: str) -> list[str]:
        """URLs of the zoom-0 tiles, one per already-rendered page."""
        urls: list[str] = []
        for page in range(MAX_PAGE_PROBES):
            url = tile_url(self.settings.cdn_base_url, path, PAGE_ZOOM, 0, page)
            if not await head_ok(self.session, url, PAGE_PROBE_TIMEOUT):
                break
            urls.append(url)
        logger.info("Probed %s pages for %s", len(urls), path)
        return urls[:MAX_PAGES]
