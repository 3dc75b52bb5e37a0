"""Durable hosting for flyer pages on S3-compatible storage."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from typing import Any

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from flyerdeals.config import Settings
from flyerdeals.ingest.models import PageImage
from flyerdeals.utils.retry import retry_async

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30.0
UPLOAD_EXCEPTIONS = (BotoCoreError, ClientError, httpx.HTTPError, OSError)


def create_s3_client(settings: Settings) -> Any:
    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
    )


def object_key(flyer_run_id: int, page: PageImage) -> str:
    return f"flyers/{flyer_run_id}/page_{page.index + 1}_{page.label}.jpg"


class ImageUploader:
    def __init__(self, settings: Settings, *, session: httpx.AsyncClient, client: Any | None = None) -> None:
        self.settings = settings
        self.session = session
        if client is None and settings.s3_bucket:
            client = create_s3_client(settings)
        self.client = client

    @property
    def enabled(self) -> bool:
        return bool(self.settings.s3_bucket) and self.client is not None

    def public_url(self, key: str) -> str:
        if self.settings.s3_public_url:
            return f"{self.settings.s3_public_url}/{key}"
        return f"https://{self.settings.s3_bucket}.s3.amazonaws.com/{key}"

    async def upload_pages(
        self, flyer_run_id: int, pages: list[PageImage], *, delay: float | None = None
    ) -> list[str]:
        if not self.enabled:
            logger.info("Hosting not configured, keeping %s CDN URLs", len(pages))
            return [page.source_url for page in pages]
        delay = self.settings.upload_delay if delay is None else delay
        urls = []
        for position, page in enumerate(pages):
            urls.append(await self.upload_page(flyer_run_id, page))
            if delay and position < len(pages) - 1:
                await asyncio.sleep(delay)
        logger.info("Uploaded %s pages for flyer %s", len(urls), flyer_run_id)
        return urls

    async def upload_page(self, flyer_run_id: int, page: PageImage) -> str:
        """Host one page, falling back to its CDN URL once retries run out."""
        key = object_key(flyer_run_id, page)
        store = retry_async(
            self._store,
            attempts=self.settings.upload_retries + 1,
            base_delay=self.settings.upload_backoff,
            linear=True,
            exceptions=UPLOAD_EXCEPTIONS,
        )
        try:
            return await store(key, page)
        except UPLOAD_EXCEPTIONS as exc:
            logger.warning("Upload failed for %s, using CDN fallback: %s", key, exc)
            return page.source_url

    async def _store(self, key: str, page: PageImage) -> str:
        data = page.data
        if data is None:
            response = await self.session.get(page.source_url, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
            data = response.content
        put = functools.partial(
            self.client.put_object,
            Bucket=self.settings.s3_bucket,
            Key=key,
            Body=data,
            ContentType="image/jpeg",
        )
        await asyncio.get_running_loop().run_in_executor(None, put)
        return self.public_url(key)
