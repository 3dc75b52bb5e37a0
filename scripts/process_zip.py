"""Run the flyer pipeline for one ZIP code and print the summary."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv

from flyerdeals.config import Settings
from flyerdeals.db.session import create_engine_from_env
from flyerdeals.ingest.pipeline import FlyerPipeline


async def main() -> None:
    load_dotenv()
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
    if len(sys.argv) < 2:
        raise SystemExit("usage: process_zip.py ZIP [--status|--complete]")
    zip_code = sys.argv[1]
    mode = sys.argv[2] if len(sys.argv) > 2 else ""
    pipeline = FlyerPipeline(Settings.from_env(), create_engine_from_env())
    try:
        if mode == "--status":
            result = await pipeline.flyer_status(zip_code)
        elif mode == "--complete":
            result = await pipeline.complete_missing(zip_code)
        else:
            result = (await pipeline.process_zip_code(zip_code)).to_payload()
    finally:
        await pipeline.close()
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
