"""Product images from OpenFoodFacts."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from flyerdeals.config import Settings
from flyerdeals.ingest.ocr import ExtractedDeal
from flyerdeals.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

SEARCH_TIMEOUT = 8.0
MIN_QUERY_LENGTH = 3
IMAGE_FIELDS = ("image_front_url", "image_url", "image_small_url")

FILLER_RE = re.compile(r"\b(sale|bogo|off|save|coupon|deal|each|lb|oz|pack|ct|count)\b", re.IGNORECASE)
PRICE_RE = re.compile(r"\$[\d.]+")
MULTI_BUY_RE = re.compile(r"\d+\s*for\s*\$?\d+", re.IGNORECASE)


def build_query(product_name: str, brand: str | None = None) -> str | None:
    query = f"{brand} {product_name}" if brand else product_name
    query = FILLER_RE.sub("", query)
    query = PRICE_RE.sub("", query)
    query = MULTI_BUY_RE.sub("", query)
    query = " ".join(query.split())
    if len(query) < MIN_QUERY_LENGTH:
        return None
    return query


class ImageEnricher:
    def __init__(
        self,
        settings: Settings,
        *,
        session: httpx.AsyncClient,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.session = session
        self.rate_limiter = rate_limiter or RateLimiter.every(settings.enrich_interval)

    async def enrich(self, deals: list[ExtractedDeal]) -> list[ExtractedDeal]:
        if not deals:
            return deals
        logger.info("Enriching %s deals with product images", len(deals))
        enriched = []
        for deal in deals:
            image_url = await self.search_image(deal.product_name, deal.product_brand)
            enriched.append(deal.model_copy(update={"image_url": image_url}))
        found = sum(1 for deal in enriched if deal.image_url)
        logger.info("Found images for %s/%s deals", found, len(deals))
        return enriched

    async def search_image(self, product_name: str, brand: str | None = None) -> str | None:
        query = build_query(product_name, brand)
        if not query:
            return None
        await self.rate_limiter.wait("openfoodfacts")
        try:
            response = await self.session.get(
                f"{self.settings.off_api_url}/cgi/search.pl",
                params={
                    "search_terms": query,
                    "search_simple": 1,
                    "action": "process",
                    "json": 1,
                    "page_size": 5,
                    "fields": "product_name,brands,image_url,image_front_url,image_small_url",
                },
                headers={"User-Agent": self.settings.user_agent},
                timeout=SEARCH_TIMEOUT,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Image search error for %r: %s", product_name, exc)
            return None
        image_url = _first_image(data)
        if image_url:
            logger.debug("Found image for %r: %.60s", query, image_url)
        else:
            logger.debug("No image found for %r", query)
        return image_url


def _first_image(data: Any) -> str | None:
    products = data.get("products") if isinstance(data, dict) else None
    for product in products or []:
        if not isinstance(product, dict):
            continue
        for field in IMAGE_FIELDS:
            if product.get(field):
                return str(product[field])
    return None
