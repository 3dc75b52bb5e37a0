"""Flyer ingestion helpers."""

from __future__ import annotations

import pathlib

import yaml

CHAINS_PATH = pathlib.Path(__file__).with_name("chains.yml")


def load_grocery_slugs(path: pathlib.Path = CHAINS_PATH) -> frozenset[str]:
    data = yaml.safe_load(path.read_text()) or []
    return frozenset(str(slug).strip().lower() for slug in data if slug)
