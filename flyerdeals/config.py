"""Runtime configuration for the ingestion pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_FLYER_API_URL = "https://www.weeklyads2.com/wp-content/themes/wead/modules/flyers/flyer.php"
DEFAULT_CDN_BASE_URL = "https://weadflipp-957b.kxcdn.com"
DEFAULT_OFF_API_URL = "https://world.openfoodfacts.org"
DEFAULT_USER_AGENT = "FlyerDealsBot/1.0 (+https://github.com/flyer-deals)"


@dataclass(slots=True)
class Settings:
    flyer_api_url: str = DEFAULT_FLYER_API_URL
    cdn_base_url: str = DEFAULT_CDN_BASE_URL
    off_api_url: str = DEFAULT_OFF_API_URL
    user_agent: str = DEFAULT_USER_AGENT

    openai_api_key: str | None = None
    ocr_model: str = "gpt-4o-mini"
    ocr_interval: float = 0.6

    s3_bucket: str | None = None
    s3_endpoint: str | None = None
    s3_public_url: str | None = None

    enrich_interval: float = 0.15
    upload_retries: int = 2
    upload_backoff: float = 1.0
    upload_delay: float = 0.1
    full_batch_delay: float = 0.15
    medium_batch_delay: float = 0.2
    low_memory_page_delay: float = 0.2

    flyer_delay: float = 1.0
    zip_concurrency: int = 2
    validity_fallback_days: int = 7

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            flyer_api_url=env.get("FLYER_API_URL", DEFAULT_FLYER_API_URL),
            cdn_base_url=env.get("CDN_BASE_URL", DEFAULT_CDN_BASE_URL).rstrip("/"),
            off_api_url=env.get("OFF_API_URL", DEFAULT_OFF_API_URL).rstrip("/"),
            user_agent=env.get("USER_AGENT", DEFAULT_USER_AGENT),
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            ocr_model=env.get("OCR_MODEL", "gpt-4o-mini"),
            s3_bucket=env.get("S3_BUCKET") or None,
            s3_endpoint=env.get("S3_ENDPOINT") or None,
            s3_public_url=(env.get("S3_PUBLIC_URL") or "").rstrip("/") or None,
            flyer_delay=float(env.get("FLYER_DELAY_SECONDS", 1.0)),
            zip_concurrency=int(env.get("ZIP_CONCURRENCY", 2)),
            validity_fallback_days=int(env.get("VALIDITY_FALLBACK_DAYS", 7)),
        )
