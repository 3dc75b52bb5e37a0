"""Tile stitching and page splitting with Pillow."""

from __future__ import annotations

import asyncio
import logging
import math
from io import BytesIO

from PIL import Image

from flyerdeals.ingest.models import TILE_SIZE, CompositeImage, TileBatch

logger = logging.getLogger(__name__)

COMPOSITE_QUALITY = 85
PAGE_QUALITY = 90
SPLIT_ASPECT_RATIO = 2.0
PAGE_ASPECT_RATIO = 0.75

STITCH_ERRORS = (OSError, ValueError, MemoryError, Image.DecompressionBombError)


def tile_offset(col: int, row: int, rows: int) -> tuple[int, int]:
    # CDN row 0 is the bottom of the flyer
    return col * TILE_SIZE, (rows - 1 - row) * TILE_SIZE


def compose(batch: TileBatch, *, quality: int = COMPOSITE_QUALITY) -> CompositeImage:
    width, height = batch.grid.pixel_size
    canvas = Image.new("RGB", (width, height), color="white")
    for tile in batch.tiles:
        try:
            with Image.open(BytesIO(tile.data)) as img:
                canvas.paste(img.convert("RGB"), tile_offset(tile.col, tile.row, batch.grid.rows))
        except OSError as exc:
            logger.warning("Skipping undecodable tile %s_%s: %s", tile.col, tile.row, exc)
    composite = CompositeImage(data=_encode(canvas, quality), width=width, height=height)
    canvas.close()
    logger.info("Stitched flyer %sx%s from %s tiles", width, height, batch.fetched)
    return composite


def split_pages(
    composite: CompositeImage,
    *,
    page_ratio: float = PAGE_ASPECT_RATIO,
    quality: int = PAGE_QUALITY,
) -> list[bytes]:
    """Cut a very wide composite into portrait pages; other composites stay whole."""
    if composite.aspect_ratio <= SPLIT_ASPECT_RATIO:
        return [composite.data]
    page_width = max(round(composite.height * page_ratio), 1)
    count = math.ceil(composite.width / page_width)
    logger.info(
        "Splitting %sx%s image into %s pages (%spx wide)", composite.width, composite.height, count, page_width
    )
    pages = []
    with Image.open(BytesIO(composite.data)) as image:
        for index in range(count):
            left = index * page_width
            right = min(left + page_width, composite.width)
            with image.crop((left, 0, right, composite.height)) as page:
                pages.append(_encode(page, quality))
    return pages


async def stitch(batch: TileBatch) -> CompositeImage:
    return await asyncio.get_running_loop().run_in_executor(None, compose, batch)


async def paginate(composite: CompositeImage) -> list[bytes]:
    return await asyncio.get_running_loop().run_in_executor(None, split_pages, composite)


def _encode(image: Image.Image, quality: int) -> bytes:
    buffer = BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()
