"""Weekly flyer refresh job."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Iterable

from dotenv import load_dotenv
from sqlalchemy import bindparam
from sqlalchemy.engine import Engine
from sqlalchemy.sql import text

from flyerdeals.config import Settings
from flyerdeals.db.session import create_engine_from_env
from flyerdeals.ingest.pipeline import FlyerPipeline
from flyerdeals.utils.dates import format_date, now_in_tz, to_utc, utc_now

logger = logging.getLogger(__name__)

JOB_HISTORY_LIMIT = 100
REFRESH_HORIZON = timedelta(hours=24)


class JobTracker:
    """In-memory view of running ZIP jobs and recent results."""

    def __init__(self, history: int = JOB_HISTORY_LIMIT) -> None:
        self._active: dict[str, datetime] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=history)

    def start(self, zip_code: str) -> bool:
        if zip_code in self._active:
            return False
        self._active[zip_code] = utc_now()
        return True

    def finish(self, zip_code: str, result: dict[str, Any] | None) -> None:
        started = self._active.pop(zip_code, None)
        self._history.append(
            {
                "zipCode": zip_code,
                "startedAt": started,
                "finishedAt": utc_now(),
                "result": result,
            }
        )

    def is_running(self, zip_code: str) -> bool:
        return zip_code in self._active

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._active)

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        items = list(self._history)[::-1]
        return items[:limit] if limit else items


def refresh_zip_codes() -> list[str]:
    raw = os.environ.get("REFRESH_ZIP_CODES", "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def zips_needing_refresh(engine: Engine, zip_codes: Iterable[str], *, now: datetime | None = None) -> list[str]:
    """ZIPs with no completed flyer still valid past the next 24 hours."""
    zips = list(dict.fromkeys(zip_codes))
    if not zips:
        return []
    horizon = to_utc(now or utc_now()) + REFRESH_HORIZON
    query = text(
        """
        SELECT DISTINCT zip_code
        FROM flyers
        WHERE status = 'completed' AND valid_to > :horizon AND zip_code IN :zips
        """
    ).bindparams(bindparam("zips", expanding=True))
    with engine.connect() as conn:
        fresh = {row[0] for row in conn.execute(query, {"horizon": horizon, "zips": zips})}
    return [zip_code for zip_code in zips if zip_code not in fresh]


async def run_refresh(
    zip_codes: Iterable[str] | None = None,
    *,
    stale_only: bool = False,
    engine: Engine | None = None,
    pipeline: FlyerPipeline | None = None,
    tracker: JobTracker | None = None,
) -> list[dict[str, Any]]:
    load_dotenv()
    settings = Settings.from_env()
    engine = engine or create_engine_from_env()
    tracker = tracker or JobTracker()
    owns_pipeline = pipeline is None
    pipeline = pipeline or FlyerPipeline(settings, engine)
    zips = list(zip_codes or refresh_zip_codes())
    loop = asyncio.get_running_loop()
    try:
        await pipeline.persister.delete_expired()
        if stale_only:
            zips = await loop.run_in_executor(None, zips_needing_refresh, engine, zips)
        logger.info("Refreshing %s ZIP codes for %s", len(zips), format_date(now_in_tz()))
        results = await asyncio.gather(*(_run_tracked(pipeline, tracker, zip_code) for zip_code in zips))
    finally:
        if owns_pipeline:
            await pipeline.close()
    new_flyers = sum(result.get("newFlyers", 0) for result in results)
    total_deals = sum(result.get("totalDeals", 0) for result in results)
    failed = [result["zipCode"] for result in results if not result.get("success")]
    logger.info(
        "Refresh finished: %s ZIPs, %s new flyers, %s deals, failed: %s",
        len(results),
        new_flyers,
        total_deals,
        ", ".join(failed) or "none",
    )
    return results


async def _run_tracked(pipeline: FlyerPipeline, tracker: JobTracker, zip_code: str) -> dict[str, Any]:
    if not tracker.start(zip_code):
        logger.info("ZIP %s is already being processed", zip_code)
        return {"success": False, "zipCode": zip_code, "message": "Already processing"}
    payload = None
    try:
        summary = await pipeline.process_zip_code(zip_code)
        payload = summary.to_payload()
    finally:
        tracker.finish(zip_code, payload)
    return payload


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Refresh grocery flyers for ZIP codes.")
    parser.add_argument("zip_codes", nargs="*", help="ZIP codes (defaults to REFRESH_ZIP_CODES)")
    parser.add_argument("--stale-only", action="store_true", help="skip ZIPs that already have valid flyers")
    args = parser.parse_args(argv)
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_refresh(args.zip_codes, stale_only=args.stale_only))


if __name__ == "__main__":
    main()
