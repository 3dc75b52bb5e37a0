"""Ingestion data models."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Mapping

logger = logging.getLogger(__name__)

TILE_SIZE = 256
NATIVE_ZOOM = 5


@dataclass(slots=True)
class FlyerSource:
    """One flyer descriptor as returned by the metadata endpoint."""

    merchant: str
    merchant_slug: str
    flyer_run_id: int
    name: str
    postal_code: str
    valid_from: Any = None
    valid_to: Any = None
    merchant_id: Any = None
    path: str | None = None
    width: int = 0
    height: int = 0

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "FlyerSource":
        raw_run_id = data.get("flyer_run_id")
        try:
            run_id = int(raw_run_id)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ValueError(f"flyer has no usable flyer_run_id: {raw_run_id!r}") from None
        sui = _parse_sui(data.get("sui"))
        return cls(
            merchant=str(data.get("merchant") or ""),
            merchant_slug=str(data.get("merchant_slug") or ""),
            flyer_run_id=run_id,
            name=str(data.get("name") or ""),
            postal_code=str(data.get("postal_code") or ""),
            valid_from=data.get("valid_from"),
            valid_to=data.get("valid_to"),
            merchant_id=data.get("merchant_id"),
            path=sui.get("fl1_path") or None,
            width=_as_int(sui.get("fl1_width")),
            height=_as_int(sui.get("fl1_height")),
        )

    @property
    def has_dimensions(self) -> bool:
        return self.width > 0 and self.height > 0


@dataclass(slots=True)
class TileGrid:
    cols: int
    rows: int
    zoom: int = NATIVE_ZOOM

    @property
    def total(self) -> int:
        return self.cols * self.rows

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    @property
    def pixel_size(self) -> tuple[int, int]:
        return self.cols * TILE_SIZE, self.rows * TILE_SIZE

    @classmethod
    def from_dimensions(cls, width: int, height: int, zoom: int = NATIVE_ZOOM) -> "TileGrid":
        return cls(cols=math.ceil(width / TILE_SIZE), rows=math.ceil(height / TILE_SIZE), zoom=zoom)

    def halved(self, zoom: int) -> "TileGrid":
        """The same flyer one zoom level down: half the columns and rows."""
        return TileGrid(cols=math.ceil(self.cols / 2), rows=math.ceil(self.rows / 2), zoom=zoom)


@dataclass(slots=True)
class Tile:
    col: int
    row: int
    data: bytes


@dataclass(slots=True)
class TileFetchError:
    col: int
    row: int
    url: str
    reason: str


@dataclass(slots=True)
class TileBatch:
    """Outcome of fetching every tile of one grid."""

    grid: TileGrid
    tiles: list[Tile] = field(default_factory=list)
    failures: list[TileFetchError] = field(default_factory=list)

    @property
    def fetched(self) -> int:
        return len(self.tiles)


@dataclass(slots=True)
class CompositeImage:
    data: bytes
    width: int
    height: int

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0


@dataclass(slots=True)
class PageImage:
    """A page ready for hosting.

    ``data`` is ``None`` for pages that only exist on the CDN; those are
    uploaded from ``source_url``, which is also the fallback when hosting fails.
    """

    index: int
    label: str
    source_url: str
    data: bytes | None = None


def _parse_sui(raw: Any) -> dict[str, Any]:
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Unparseable sui payload: %.80s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _as_int(value: Any) -> int:
    try:
        return max(int(float(value)), 0)
    except (TypeError, ValueError, OverflowError):
        return 0
