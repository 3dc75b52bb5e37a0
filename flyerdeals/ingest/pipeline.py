"""Per-ZIP flyer ingestion pipeline."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.engine import Engine

from flyerdeals.config import Settings
from flyerdeals.ingest.enrich import ImageEnricher
from flyerdeals.ingest.flyers import FlyerFetchError, WeeklyAdsClient
from flyerdeals.ingest.imaging import STITCH_ERRORS, paginate, stitch
from flyerdeals.ingest.models import FlyerSource, PageImage
from flyerdeals.ingest.ocr import OcrExtractor
from flyerdeals.ingest.persist import FlyerPersister
from flyerdeals.ingest.tiles import (
    QualityTier,
    TierPlan,
    TileBatchFetcher,
    TileGridResolver,
    plan_tier,
    tile_url,
)
from flyerdeals.ingest.uploads import ImageUploader

logger = logging.getLogger(__name__)

NO_FLYERS_MESSAGE = "No grocery flyers available for this ZIP code"


@dataclass(slots=True)
class FlyerOutcome:
    created: bool
    deals: int = 0
    skipped: bool = False


@dataclass(slots=True)
class ZipRunSummary:
    zip_code: str
    success: bool = True
    flyers_found: int = 0
    flyers_processed: int = 0
    new_flyers: int = 0
    total_deals: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    message: str = ""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "zipCode": self.zip_code,
            "flyersFound": self.flyers_found,
            "flyersProcessed": self.flyers_processed,
            "newFlyers": self.new_flyers,
            "totalDeals": self.total_deals,
            "message": self.message,
        }
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


class FlyerPipeline:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        *,
        session: httpx.AsyncClient | None = None,
        flyers: WeeklyAdsClient | None = None,
        resolver: TileGridResolver | None = None,
        fetcher: TileBatchFetcher | None = None,
        uploader: ImageUploader | None = None,
        ocr: OcrExtractor | None = None,
        enricher: ImageEnricher | None = None,
        persister: FlyerPersister | None = None,
        semaphore: asyncio.Semaphore | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or httpx.AsyncClient(headers={"User-Agent": settings.user_agent})
        self.flyers = flyers or WeeklyAdsClient(settings, session=self.session)
        self.resolver = resolver or TileGridResolver(settings, self.session)
        self.fetcher = fetcher or TileBatchFetcher(settings, self.session)
        self.uploader = uploader or ImageUploader(settings, session=self.session)
        self.ocr = ocr or OcrExtractor(settings)
        self.enricher = enricher or ImageEnricher(settings, session=self.session)
        self.persister = persister or FlyerPersister(engine, settings)
        self._semaphore = semaphore or asyncio.Semaphore(settings.zip_concurrency)

    async def close(self) -> None:
        await self.session.aclose()

    async def process_zip_code(self, zip_code: str) -> ZipRunSummary:
        async with self._semaphore:
            try:
                return await self._process_zip(zip_code)
            except Exception as exc:  # zip boundary
                logger.exception("Error processing ZIP code %s", zip_code)
                return ZipRunSummary(zip_code=zip_code, success=False, message=str(exc))

    async def _process_zip(self, zip_code: str) -> ZipRunSummary:
        summary = ZipRunSummary(zip_code=zip_code)
        logger.info("Processing ZIP code %s", zip_code)
        try:
            sources = await self.flyers.grocery_flyers(zip_code)
        except FlyerFetchError as exc:
            logger.error("Error processing ZIP code %s: %s", zip_code, exc)
            summary.success = False
            summary.message = str(exc)
            return summary
        if not sources:
            summary.message = NO_FLYERS_MESSAGE
            return summary

        summary.flyers_found = len(sources)
        for source in sources:
            try:
                if await self.persister.reconcile_existing(source.flyer_run_id, source.postal_code):
                    summary.flyers_processed += 1
                    continue
                outcome = await self.process_flyer(source)
            except Exception as exc:  # flyer boundary
                logger.exception("Error processing flyer %s for %s", source.flyer_run_id, source.merchant)
                summary.errors.append(_flyer_error(source, exc))
                continue
            summary.flyers_processed += 1
            if outcome.created:
                summary.new_flyers += 1
                summary.total_deals += outcome.deals
            if not outcome.skipped and self.settings.flyer_delay:
                await asyncio.sleep(self.settings.flyer_delay)

        summary.message = (
            f"Successfully processed {summary.flyers_processed} flyers "
            f"({summary.new_flyers} new) with {summary.total_deals} deals"
        )
        logger.info(
            "Completed ZIP %s: %s flyers, %s new, %s deals",
            zip_code,
            summary.flyers_processed,
            summary.new_flyers,
            summary.total_deals,
        )
        return summary

    async def process_flyer(self, source: FlyerSource, *, zip_override: str | None = None) -> FlyerOutcome:
        """Render, host, read and store one flyer."""
        pages = await self.render_pages(source)
        if not pages:
            logger.warning("No renderable pages for %s (%s), skipping", source.merchant, source.flyer_run_id)
            return FlyerOutcome(created=False, skipped=True)
        delay = self.settings.low_memory_page_delay if pages[0].label == QualityTier.LOW_MEMORY.value else None
        image_urls = await self.uploader.upload_pages(source.flyer_run_id, pages, delay=delay)
        deals = await self.ocr.extract(image_urls)
        deals = await self.enricher.enrich(deals)
        result = await self.persister.save(source, image_urls, deals, zip_override=zip_override)
        return FlyerOutcome(created=result.created, deals=len(deals) if result.created else 0)

    async def render_pages(self, source: FlyerSource) -> list[PageImage]:
        if not source.path:
            logger.warning("No flyer path for %s", source.merchant)
            return []
        grid = await self.resolver.resolve(source)
        if grid.is_empty:
            logger.warning("No tiles found for %s", source.merchant)
            return []
        plan = plan_tier(grid, self.settings)
        logger.info(
            "Processing %s: %sx%s tiles (%s total), %s tier",
            source.merchant,
            grid.cols,
            grid.rows,
            grid.total,
            plan.tier.name,
        )
        if plan.tier is QualityTier.LOW_MEMORY:
            return await self._page_tiles(source.path)
        return await self._stitched_pages(source.path, plan)

    async def _stitched_pages(self, path: str, plan: TierPlan) -> list[PageImage]:
        fallback = tile_url(self.settings.cdn_base_url, path, plan.grid.zoom, 0, 0)
        batch = await self.fetcher.fetch(path, plan.grid, batch_size=plan.batch_size, delay=plan.batch_delay)
        if not batch.tiles:
            logger.warning("No tiles downloaded for %s, using %s", path, fallback)
            return [PageImage(index=0, label=plan.label, source_url=fallback)]
        try:
            composite = await stitch(batch)
            buffers = await paginate(composite)
        except STITCH_ERRORS as exc:
            logger.error("Stitching failed for %s, switching to page tiles: %s", path, exc)
            return await self._page_tiles(path)
        if len(buffers) > 1:
            logger.info("Split wide flyer into %s pages", len(buffers))
        return [
            PageImage(index=index, label=plan.label, source_url=fallback, data=data)
            for index, data in enumerate(buffers)
        ]

    async def _page_tiles(self, path: str) -> list[PageImage]:
        urls = await self.fetcher.page_tile_urls(path)
        if not urls:
            logger.warning("No pages found for %s", path)
        return [
            PageImage(index=index, label=QualityTier.LOW_MEMORY.value, source_url=url)
            for index, url in enumerate(urls)
        ]

    async def complete_missing(self, zip_code: str) -> dict[str, Any]:
        """Process only flyers the API lists that are not yet stored for this ZIP."""
        async with self._semaphore:
            logger.info("Checking for missing flyers in ZIP %s", zip_code)
            try:
                sources = await self.flyers.grocery_flyers(zip_code)
            except FlyerFetchError as exc:
                logger.error("Error checking flyers for ZIP %s: %s", zip_code, exc)
                return _completion(zip_code, success=False, message=str(exc))
            if not sources:
                return _completion(zip_code, message=NO_FLYERS_MESSAGE)

            stored = await self.persister.stored_run_ids(zip_code)
            missing = [source for source in sources if source.flyer_run_id not in stored]
            logger.info(
                "ZIP %s: API has %s, DB has %s, missing %s", zip_code, len(sources), len(stored), len(missing)
            )
            if not missing:
                return _completion(
                    zip_code, available=len(sources), stored=len(stored), message="All flyers are up to date"
                )

            new_flyers = 0
            new_deals = 0
            errors: list[dict[str, Any]] = []
            for source in missing:
                try:
                    if await self.persister.reconcile_existing(source.flyer_run_id, zip_code):
                        continue
                    outcome = await self.process_flyer(source, zip_override=zip_code)
                except Exception as exc:  # flyer boundary
                    logger.exception("Error processing missing flyer %s", source.merchant)
                    errors.append(_flyer_error(source, exc))
                    continue
                if outcome.created:
                    new_flyers += 1
                    new_deals += outcome.deals
                if not outcome.skipped and self.settings.flyer_delay:
                    await asyncio.sleep(self.settings.flyer_delay)

            report = _completion(
                zip_code,
                available=len(sources),
                stored=len(stored) + new_flyers,
                missing=len(missing),
                message=f"Completed {new_flyers}/{len(missing)} missing flyers with {new_deals} deals",
            )
            report["newFlyersProcessed"] = new_flyers
            report["newDeals"] = new_deals
            if errors:
                report["errors"] = errors
            return report

    async def flyer_status(self, zip_code: str) -> dict[str, Any]:
        try:
            sources = await self.flyers.grocery_flyers(zip_code)
        except FlyerFetchError as exc:
            logger.error("Error getting flyer status for ZIP %s: %s", zip_code, exc)
            return {
                "zipCode": zip_code,
                "availableFromApi": 0,
                "storedInDb": 0,
                "missingCount": 0,
                "isComplete": True,
                "error": str(exc),
            }
        stored = await self.persister.count_for_zip(zip_code)
        missing = max(0, len(sources) - stored)
        return {
            "zipCode": zip_code,
            "availableFromApi": len(sources),
            "storedInDb": stored,
            "missingCount": missing,
            "isComplete": missing == 0,
            "stores": [source.merchant for source in sources],
        }


def _flyer_error(source: FlyerSource, exc: Exception) -> dict[str, Any]:
    return {"store": source.merchant, "flyerRunId": source.flyer_run_id, "error": str(exc)}


def _completion(
    zip_code: str,
    *,
    success: bool = True,
    available: int = 0,
    stored: int = 0,
    missing: int = 0,
    message: str = "",
) -> dict[str, Any]:
    return {
        "success": success,
        "zipCode": zip_code,
        "availableFromApi": available,
        "storedInDb": stored,
        "missingCount": missing,
        "message": message,
    }
