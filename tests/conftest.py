from io import BytesIO
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError
from PIL import Image
from sqlalchemy import BigInteger, Column, DateTime, Float, ForeignKey, JSON, MetaData, Numeric, String, Table, Text, create_engine
from sqlalchemy.pool import StaticPool

from flyerdeals.config import Settings

metadata = MetaData()

stores = Table(
    "stores",
    metadata,
    Column("store_id", Text, primary_key=True),
    Column("chain_name", Text, nullable=False),
    Column("store_name", Text, nullable=False),
    Column("zip_code", String(10), nullable=False),
)

flyers = Table(
    "flyers",
    metadata,
    Column("id", Text, primary_key=True),
    Column("store_id", Text, ForeignKey("stores.store_id")),
    Column("store_name", Text, nullable=False),
    Column("store_slug", Text, nullable=False),
    Column("flyer_run_id", BigInteger, nullable=False, unique=True),
    Column("flyer_name", Text, nullable=False),
    Column("zip_code", String(10), nullable=False),
    Column("image_urls", JSON),
    Column("flyer_path", Text),
    Column("valid_from", DateTime(timezone=True), nullable=False),
    Column("valid_to", DateTime(timezone=True), nullable=False),
    Column("status", Text, nullable=False),
    Column("processed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

deals = Table(
    "deals",
    metadata,
    Column("id", Text, primary_key=True),
    Column("flyer_id", Text, ForeignKey("flyers.id"), nullable=False),
    Column("store_name", Text, nullable=False),
    Column("zip_code", String(10), nullable=False),
    Column("product_name", Text, nullable=False),
    Column("product_brand", Text),
    Column("product_category", Text),
    Column("sale_price", Numeric(10, 2), nullable=False),
    Column("regular_price", Numeric(10, 2)),
    Column("unit", String(20)),
    Column("deal_type", Text),
    Column("quantity", Text),
    Column("valid_from", DateTime(timezone=True)),
    Column("valid_to", DateTime(timezone=True)),
    Column("confidence", Float),
    Column("raw_text", Text),
    Column("image_url", String(500)),
    Column("created_at", DateTime(timezone=True)),
)


@pytest.fixture()
def engine():
    # persistence runs on executor threads, so every thread shares one connection
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def settings():
    return Settings(
        flyer_api_url="https://flyers.test/flyer.php",
        cdn_base_url="https://cdn.test",
        off_api_url="https://off.test",
        ocr_interval=0,
        enrich_interval=0,
        upload_backoff=0,
        upload_delay=0,
        full_batch_delay=0,
        medium_batch_delay=0,
        low_memory_page_delay=0,
        flyer_delay=0,
    )


@pytest.fixture()
def tile_bytes():
    def make(color=(255, 0, 0), size=(256, 256), fmt="PNG"):
        buffer = BytesIO()
        Image.new("RGB", size, color=color).save(buffer, format=fmt)
        return buffer.getvalue()

    return make


class FakeCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if self.replies else "[]"
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


class FakeOpenAI:
    def __init__(self, replies=()):
        self.chat = SimpleNamespace(completions=FakeCompletions(replies))

    @property
    def calls(self):
        return self.chat.completions.calls


class FakeS3:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0
        self.objects = {}

    def put_object(self, *, Bucket, Key, Body, ContentType=None):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ClientError({"Error": {"Code": "503", "Message": "Slow Down"}}, "PutObject")
        self.objects[Key] = Body
        return {"ETag": '"abc"'}


@pytest.fixture()
def fake_openai():
    return FakeOpenAI


@pytest.fixture()
def fake_s3():
    return FakeS3
