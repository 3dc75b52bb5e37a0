"""Deal extraction from flyer pages with a vision model."""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Iterable

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from flyerdeals.config import Settings
from flyerdeals.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

OCR_TIMEOUT = 30.0
MAX_TOKENS = 4096
MAX_SALE_PRICE = 10000
NOMINAL_CONFIDENCE = 0.9
RAW_TEXT_LIMIT = 500
MAX_UNIT_LENGTH = 20

DEAL_TYPES = frozenset({"sale", "bogo", "multi_buy", "coupon", "clearance"})

ARRAY_RE = re.compile(r"\[[\s\S]*\]")
MULTI_BUY_RE = re.compile(r"(\d+)\s*for\s*\$?([\d.]+)", re.IGNORECASE)
PRICE_RE = re.compile(r"\$?([\d.]+)")

OCR_PROMPT = """Analyze this grocery store flyer image and extract all deals.
For each deal, provide a JSON object with:
- product_name (required): The product name
- brand (optional): Brand name if visible
- sale_price (required): The sale price as a number
- regular_price (optional): Regular price if shown
- unit (optional): "each", "lb", "oz", etc.
- deal_type: "sale", "bogo", "multi_buy", or "coupon"
- quantity (optional): e.g., "2 for $5", "Buy 1 Get 1"
- category (optional): "produce", "dairy", "meat", "bakery", "frozen", "beverages", "snacks", "pantry", "household", "personal_care"

Return ONLY a JSON array of deals. If no deals found, return [].
Example: [{"product_name": "Whole Milk", "brand": "Horizon", "sale_price": 3.99, "regular_price": 5.49, "unit": "gallon", "deal_type": "sale", "category": "dairy"}]"""


class DealDecodeError(ValueError):
    """Model output carried an array that is not valid JSON."""


class ExtractedDeal(BaseModel):
    product_name: str
    product_brand: str | None = None
    product_category: str | None = None
    sale_price: float = Field(..., gt=0, le=MAX_SALE_PRICE)
    regular_price: float | None = None
    unit: str = Field("each", max_length=MAX_UNIT_LENGTH)
    deal_type: str = "sale"
    quantity: str | None = None
    confidence: float = Field(0.0, ge=0, le=1)
    raw_text: str | None = None
    image_url: str | None = None


def decode_deal_array(content: str) -> list[Any]:
    """Pull the JSON array out of free-form model output.

    No array at all means no deals. An array that does not decode raises
    ``DealDecodeError``.
    """
    match = ARRAY_RE.search(content or "")
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise DealDecodeError(f"invalid deal JSON: {exc.msg}") from exc
    if not isinstance(parsed, list):
        raise DealDecodeError("deal payload is not an array")
    return parsed


def sanitize_deal(item: Any, raw_text: str | None = None) -> ExtractedDeal | None:
    if not isinstance(item, dict):
        logger.warning("Skipping non-object deal: %r", item)
        return None
    raw_sale = item.get("sale_price")
    deal_type = _as_text(item.get("deal_type"))
    quantity = _as_text(item.get("quantity"))
    sale_price = _number(raw_sale)
    if sale_price is None and quantity:
        match = MULTI_BUY_RE.search(quantity)
        if match:
            count = int(match.group(1))
            total = _to_float(match.group(2))
            if count > 0 and total and total > 0:
                sale_price = total / count
                deal_type = "multi_buy"
                logger.debug("Parsed multi-buy %s -> %.2f each", quantity, sale_price)
    if sale_price is None and isinstance(raw_sale, str):
        sale_price = _parse_price(raw_sale)

    name = _as_text(item.get("product_name"))
    if not name or sale_price is None:
        logger.warning("Skipping invalid deal: %s", item)
        return None
    if not 0 < sale_price <= MAX_SALE_PRICE:
        logger.warning("Invalid price %s for %s", sale_price, name)
        return None
    sale_price = round(sale_price, 2)

    regular_price = _number(item.get("regular_price"))
    if regular_price is None and isinstance(item.get("regular_price"), str):
        regular_price = _parse_price(item["regular_price"])
    if regular_price is not None:
        regular_price = round(regular_price, 2) or None
    if regular_price is not None and regular_price <= sale_price:
        logger.warning("Regular price %s not above sale price %s for %s", regular_price, sale_price, name)
        return None

    if deal_type:
        deal_type = deal_type.lower()
    try:
        return ExtractedDeal(
            product_name=name,
            product_brand=_as_text(item.get("brand")),
            product_category=_as_text(item.get("category")),
            sale_price=sale_price,
            regular_price=regular_price,
            unit=(_as_text(item.get("unit")) or "each")[:MAX_UNIT_LENGTH].rstrip(),
            deal_type=deal_type if deal_type in DEAL_TYPES else "sale",
            quantity=quantity,
            confidence=NOMINAL_CONFIDENCE,
            raw_text=raw_text,
        )
    except ValidationError as exc:
        logger.warning("Rejected deal %s: %s", name, exc)
        return None


def parse_deals(content: str) -> list[ExtractedDeal]:
    try:
        items = decode_deal_array(content)
    except DealDecodeError as exc:
        logger.warning("Failed to parse OCR response: %s", exc)
        return []
    raw_text = (content or "")[:RAW_TEXT_LIMIT]
    deals = [deal for deal in (sanitize_deal(item, raw_text) for item in items) if deal is not None]
    logger.info("Extracted %s deals from image", len(deals))
    return deals


class OcrExtractor:
    def __init__(
        self,
        settings: Settings,
        *,
        client: Any | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.settings = settings
        if client is None and settings.openai_api_key:
            client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=OCR_TIMEOUT)
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter.every(settings.ocr_interval)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def extract(self, image_urls: Iterable[str]) -> list[ExtractedDeal]:
        urls = list(image_urls)
        if not self.enabled:
            logger.info("OCR not configured, skipping %s images", len(urls))
            return []
        deals: list[ExtractedDeal] = []
        for url in urls:
            deals.extend(await self.extract_page(url))
        logger.info("Total deals extracted: %s", len(deals))
        return deals

    async def extract_page(self, image_url: str) -> list[ExtractedDeal]:
        await self.rate_limiter.wait("ocr")
        try:
            response = await self.client.chat.completions.create(
                model=self.settings.ocr_model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": OCR_PROMPT},
                            {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                        ],
                    }
                ],
                max_tokens=MAX_TOKENS,
            )
        except OpenAIError as exc:
            logger.warning("OCR failed for %s: %s", image_url, exc)
            return []
        if not response.choices:
            return []
        return parse_deals(response.choices[0].message.content or "")


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _parse_price(value: str) -> float | None:
    match = PRICE_RE.search(value)
    if not match:
        return None
    return _to_float(match.group(1))


def _to_float(value: str) -> float | None:
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None
