"""Transactional persistence of flyers and their deals."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import text

from flyerdeals.config import Settings
from flyerdeals.db.session import transaction_scope
from flyerdeals.ingest.models import FlyerSource
from flyerdeals.ingest.ocr import ExtractedDeal
from flyerdeals.utils.dates import to_utc, utc_now, validity_window

logger = logging.getLogger(__name__)

PLACEHOLDER_ZIP = "00000"
MAX_MERCHANT_LENGTH = 100
MAX_ZIP_LENGTH = 10
ZIP_RE = re.compile(r"^\d{5}$")

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"


class FlyerPersistError(RuntimeError):
    """Saving a flyer failed and its transaction was rolled back."""


@dataclass(slots=True)
class PersistResult:
    flyer_id: str | None
    created: bool = False
    zip_corrected: bool = False


def sanitize_merchant(value: str | None) -> str:
    return (value or "").strip()[:MAX_MERCHANT_LENGTH]


def sanitize_zip(value: str | None) -> str:
    return re.sub(r"[^0-9]", "", (value or "").strip())[:MAX_ZIP_LENGTH]


def is_valid_zip(value: str) -> bool:
    return bool(ZIP_RE.match(value))


class FlyerPersister:
    def __init__(self, engine: Engine, settings: Settings) -> None:
        self.engine = engine
        self.settings = settings

    async def reconcile_existing(self, flyer_run_id: int, zip_code: str | None) -> bool:
        """True when the run id is already stored; corrects its ZIP if needed."""
        return await self._run(self._reconcile_sync, flyer_run_id, zip_code)

    async def save(
        self,
        source: FlyerSource,
        image_urls: list[str],
        deals: list[ExtractedDeal],
        *,
        zip_override: str | None = None,
    ) -> PersistResult:
        return await self._run(self._save_sync, source, image_urls, deals, zip_override)

    async def stored_run_ids(self, zip_code: str) -> set[int]:
        return await self._run(self._stored_run_ids_sync, zip_code)

    async def count_for_zip(self, zip_code: str) -> int:
        return await self._run(self._count_sync, zip_code)

    async def delete_expired(self, now: datetime | None = None) -> tuple[int, int]:
        """Remove flyers past their validity window; returns (flyers, deals) deleted."""
        return await self._run(self._delete_expired_sync, now)

    async def _run(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, functools.partial(func, *args))

    def _reconcile_sync(self, flyer_run_id: int, zip_code: str | None) -> bool:
        observed = sanitize_zip(zip_code)
        with transaction_scope(self.engine) as (conn, control):
            existing = self._reconcile(conn, flyer_run_id, observed)
            if existing is None:
                return False
            if existing.zip_corrected:
                control.commit()
            return True

    def _reconcile(self, conn: Connection, flyer_run_id: int, observed_zip: str) -> PersistResult | None:
        row = conn.execute(
            text("SELECT id, zip_code FROM flyers WHERE flyer_run_id = :run_id"),
            {"run_id": flyer_run_id},
        ).first()
        if row is None:
            return None
        flyer_id, current_zip = row
        if is_valid_zip(observed_zip) and current_zip != observed_zip:
            conn.execute(
                text("UPDATE flyers SET zip_code = :zip_code, updated_at = :now WHERE id = :id"),
                {"zip_code": observed_zip, "now": utc_now(), "id": flyer_id},
            )
            logger.info("Updated flyer %s ZIP from %s to %s", flyer_run_id, current_zip, observed_zip)
            return PersistResult(str(flyer_id), zip_corrected=True)
        logger.info("Flyer %s already exists - skipping", flyer_run_id)
        return PersistResult(str(flyer_id))

    def _save_sync(
        self,
        source: FlyerSource,
        image_urls: list[str],
        deals: list[ExtractedDeal],
        zip_override: str | None,
    ) -> PersistResult:
        observed_zip = sanitize_zip(zip_override if zip_override is not None else source.postal_code)
        try:
            with transaction_scope(self.engine) as (conn, control):
                existing = self._reconcile(conn, source.flyer_run_id, observed_zip)
                if existing is not None:
                    if existing.zip_corrected:
                        control.commit()
                    return existing

                merchant = sanitize_merchant(source.merchant)
                store_id = None
                if is_valid_zip(observed_zip):
                    zip_code = observed_zip
                    store_id = self._match_store(conn, merchant, zip_code)
                else:
                    logger.warning("Invalid ZIP code format for flyer %s: %r", source.flyer_run_id, source.postal_code)
                    zip_code = observed_zip or PLACEHOLDER_ZIP

                now = utc_now()
                valid_from, valid_to = validity_window(
                    source.valid_from,
                    source.valid_to,
                    fallback_days=self.settings.validity_fallback_days,
                    now=now,
                )
                flyer_id = self._insert_flyer(
                    conn,
                    source=source,
                    merchant=merchant,
                    zip_code=zip_code,
                    store_id=store_id,
                    image_urls=image_urls,
                    valid_from=valid_from,
                    valid_to=valid_to,
                    has_deals=bool(deals),
                    now=now,
                )
                if flyer_id is None:
                    logger.info("Flyer %s was stored by another writer - skipping", source.flyer_run_id)
                    return PersistResult(None)
                if deals:
                    self._insert_deals(conn, flyer_id, merchant, zip_code, valid_from, valid_to, deals, now)
                control.commit()
        except SQLAlchemyError as exc:
            logger.error("Error saving flyer %s: %s", source.flyer_run_id, exc)
            raise FlyerPersistError("Failed to save flyer data") from exc
        logger.info("Saved flyer %s for %s with %s deals", flyer_id, merchant, len(deals))
        return PersistResult(flyer_id, created=True)

    def _match_store(self, conn: Connection, merchant: str, zip_code: str) -> str | None:
        if not merchant:
            return None
        pattern = f"%{_escape_like(merchant.lower())}%"
        store_id = conn.execute(
            text(
                """
                SELECT store_id FROM stores
                WHERE (LOWER(chain_name) LIKE :pattern ESCAPE '\\' OR LOWER(store_name) LIKE :pattern ESCAPE '\\')
                  AND zip_code = :zip_code
                LIMIT 1
                """
            ),
            {"pattern": pattern, "zip_code": zip_code},
        ).scalar_one_or_none()
        return str(store_id) if store_id is not None else None

    def _insert_flyer(
        self,
        conn: Connection,
        *,
        source: FlyerSource,
        merchant: str,
        zip_code: str,
        store_id: str | None,
        image_urls: list[str],
        valid_from: datetime,
        valid_to: datetime,
        has_deals: bool,
        now: datetime,
    ) -> str | None:
        urls_param = ":image_urls" if conn.dialect.name == "sqlite" else "CAST(:image_urls AS JSONB)"
        row = conn.execute(
            text(
                f"""
                INSERT INTO flyers (
                  id, store_id, store_name, store_slug, flyer_run_id, flyer_name, zip_code,
                  image_urls, flyer_path, valid_from, valid_to, status, processed_at, created_at, updated_at
                )
                VALUES (
                  :id, :store_id, :store_name, :store_slug, :flyer_run_id, :flyer_name, :zip_code,
                  {urls_param}, :flyer_path, :valid_from, :valid_to, :status, :processed_at, :now, :now
                )
                ON CONFLICT (flyer_run_id) DO NOTHING
                RETURNING id
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "store_id": store_id,
                "store_name": merchant,
                "store_slug": source.merchant_slug,
                "flyer_run_id": source.flyer_run_id,
                "flyer_name": source.name,
                "zip_code": zip_code,
                "image_urls": json.dumps(image_urls),
                "flyer_path": source.path,
                "valid_from": valid_from,
                "valid_to": valid_to,
                "status": STATUS_COMPLETED if has_deals else STATUS_PENDING,
                "processed_at": now if has_deals else None,
                "now": now,
            },
        ).first()
        return str(row[0]) if row else None

    def _insert_deals(
        self,
        conn: Connection,
        flyer_id: str,
        merchant: str,
        zip_code: str,
        valid_from: datetime,
        valid_to: datetime,
        deals: Iterable[ExtractedDeal],
        now: datetime,
    ) -> None:
        conn.execute(
            text(
                """
                INSERT INTO deals (
                  id, flyer_id, store_name, zip_code, product_name, product_brand, product_category,
                  sale_price, regular_price, unit, deal_type, quantity, valid_from, valid_to,
                  confidence, raw_text, image_url, created_at
                )
                VALUES (
                  :id, :flyer_id, :store_name, :zip_code, :product_name, :product_brand, :product_category,
                  :sale_price, :regular_price, :unit, :deal_type, :quantity, :valid_from, :valid_to,
                  :confidence, :raw_text, :image_url, :created_at
                )
                """
            ),
            [
                {
                    "id": str(uuid.uuid4()),
                    "flyer_id": flyer_id,
                    "store_name": merchant,
                    "zip_code": zip_code,
                    "product_name": deal.product_name,
                    "product_brand": deal.product_brand,
                    "product_category": deal.product_category,
                    "sale_price": deal.sale_price,
                    "regular_price": deal.regular_price,
                    "unit": deal.unit or "each",
                    "deal_type": deal.deal_type or "sale",
                    "quantity": deal.quantity,
                    "valid_from": valid_from,
                    "valid_to": valid_to,
                    "confidence": deal.confidence,
                    "raw_text": deal.raw_text,
                    "image_url": deal.image_url[:500] if deal.image_url else None,
                    "created_at": now,
                }
                for deal in deals
            ],
        )

    def _stored_run_ids_sync(self, zip_code: str) -> set[int]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT flyer_run_id FROM flyers WHERE zip_code = :zip_code"), {"zip_code": zip_code}
            )
            return {int(row[0]) for row in rows}

    def _count_sync(self, zip_code: str) -> int:
        with self.engine.connect() as conn:
            return int(
                conn.execute(
                    text("SELECT COUNT(*) FROM flyers WHERE zip_code = :zip_code"), {"zip_code": zip_code}
                ).scalar_one()
            )

    def _delete_expired_sync(self, now: datetime | None) -> tuple[int, int]:
        cutoff = to_utc(now) if now else utc_now()
        with self.engine.begin() as conn:
            deals = conn.execute(
                text("DELETE FROM deals WHERE flyer_id IN (SELECT id FROM flyers WHERE valid_to < :cutoff)"),
                {"cutoff": cutoff},
            ).rowcount
            flyers = conn.execute(text("DELETE FROM flyers WHERE valid_to < :cutoff"), {"cutoff": cutoff}).rowcount
        logger.info("Deleted %s expired flyers and %s deals", flyers, deals)
        return flyers, deals


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
