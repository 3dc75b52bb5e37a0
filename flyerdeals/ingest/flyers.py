"""Flyer metadata client."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

import httpx

from flyerdeals.config import Settings
from flyerdeals.ingest import load_grocery_slugs
from flyerdeals.ingest.models import FlyerSource
from flyerdeals.utils.retry import retry_async

logger = logging.getLogger(__name__)

METADATA_TIMEOUT = 10.0


class FlyerFetchError(RuntimeError):
    """Metadata for a postal code could not be retrieved."""


class WeeklyAdsClient:
    def __init__(
        self,
        settings: Settings,
        *,
        session: httpx.AsyncClient | None = None,
        grocery_slugs: Iterable[str] | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or httpx.AsyncClient(headers={"User-Agent": settings.user_agent})
        self.grocery_slugs = frozenset(grocery_slugs) if grocery_slugs is not None else load_grocery_slugs()

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch_flyers(self, zip_code: str) -> list[dict[str, Any]]:
        logger.info("Fetching flyers for ZIP %s", zip_code)
        try:
            response = await retry_async(self.session.get, attempts=2, base_delay=0.5)(
                self.settings.flyer_api_url,
                params={"zip": zip_code},
                headers={"User-Agent": self.settings.user_agent},
                timeout=METADATA_TIMEOUT,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise FlyerFetchError(f"Failed to fetch flyers: {exc}") from exc
        flyers = data.get("flyers") if isinstance(data, dict) else None
        if not flyers:
            logger.info("No flyers found for ZIP %s", zip_code)
            return []
        logger.info("Found %s flyers for ZIP %s", len(flyers), zip_code)
        return list(flyers)

    def filter_grocery(self, flyers: Iterable[dict[str, Any]]) -> list[FlyerSource]:
        sources = []
        for item in flyers:
            if not isinstance(item, Mapping):
                logger.warning("Skipping malformed flyer entry: %r", item)
                continue
            slug = item.get("merchant_slug")
            if not isinstance(slug, str) or slug not in self.grocery_slugs:
                continue
            try:
                sources.append(FlyerSource.from_api(item))
            except ValueError as exc:
                logger.warning("Skipping flyer for %s: %s", item.get("merchant"), exc)
        logger.info("Filtered to %s grocery store flyers", len(sources))
        return sources

    async def grocery_flyers(self, zip_code: str) -> list[FlyerSource]:
        return self.filter_grocery(await self.fetch_flyers(zip_code))
