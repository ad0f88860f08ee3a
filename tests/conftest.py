from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from lubebot.catalog import CatalogCache, CatalogProvider, snapshot_from_records
from lubebot.errors import UpstreamUnavailableError
from lubebot.knowledge.knowledge_store import KnowledgeStore

SHIPPED_KNOWLEDGE = Path(__file__).resolve().parents[1] / "lubebot" / "data" / "knowledge"

CATALOG_URL = "https://catalog.test/_functions/products"

SAMPLE_RECORDS: List[Dict[str, Any]] = [
    {
        "id": "m1",
        "title": "Motorbike 4T Synth 10W-40 Street Race",
        "partno": "LM1502",
        "size": "1L",
        "sort": "【摩托車】機油",
        "cert": "JASO MA2, API SN",
        "word1": "Motorbike",
        "word2": "10W-40",
        "price": "NT$520",
        "content": "Fully synthetic oil for geared motorcycles with wet clutch.",
    },
    {
        "id": "m2",
        "title": "Motorbike 4T Synth 10W-40 Street Race",
        "partno": "LM1503",
        "size": "4L",
        "sort": "【摩托車】機油",
        "cert": "JASO MA2, API SN",
        "word1": "Motorbike",
        "word2": "10W-40",
        "content": "Fully synthetic oil for geared motorcycles with wet clutch.",
    },
    {
        "id": "s1",
        "title": "Motorbike 4T 10W-40 Scooter",
        "partno": "LM1618",
        "size": "1L",
        "sort": "【摩托車】機油",
        "cert": "JASO MB, API SL",
        "word1": "Motorbike",
        "word2": "10W-40",
        "content": "Oil for scooters with dry clutch and CVT.",
    },
    {
        "id": "s2",
        "title": "Motorbike 4T Mineral 10W-30 Scooter",
        "partno": "LM2521",
        "size": "1L",
        "sort": "【摩托車】機油",
        "cert": "JASO MB",
        "word1": "Motorbike",
        "word2": "10W-30",
    },
    {
        "id": "c1",
        "title": "Top Tec 4200 5W-30",
        "partno": "LM3707",
        "size": "1L",
        "sort": "【汽車】機油",
        "cert": "VW 504.00/507.00, MB 229.51, BMW LL-04",
        "word1": "Top Tec",
        "word2": "5W-30",
    },
    {
        "id": "a1",
        "title": "Oil Additive MoS2 Shooter",
        "partno": "LM21723",
        "size": "80ml",
        "sort": "【汽車】添加劑",
        "word1": "Shooter",
    },
]


@pytest.fixture
def sample_records() -> List[Dict[str, Any]]:
    return [dict(record) for record in SAMPLE_RECORDS]


@pytest.fixture
def sample_snapshot(sample_records):
    return snapshot_from_records(sample_records)


@pytest.fixture
def knowledge_dir(tmp_path: Path) -> Path:
    target = tmp_path / "knowledge"
    shutil.copytree(SHIPPED_KNOWLEDGE, target)
    return target


@pytest.fixture
def store(knowledge_dir: Path) -> KnowledgeStore:
    return KnowledgeStore(knowledge_dir, ttl_sec=3600)


class FakeClassifier:
    """Returns a canned payload, or raises the configured error."""

    def __init__(self, payload: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.payload = payload
        self.error = error
        self.calls: List[str] = []

    async def classify(self, message: str, history: List[dict]) -> Dict[str, Any]:
        self.calls.append(message)
        if self.error is not None:
            raise self.error
        return self.payload


class FakeGemini:
    """Stands in for GeminiClient; records the contents it was asked to extend."""

    def __init__(self, reply: str = "", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    async def generate_content(self, contents, model=None, system_instruction=None, **_kwargs) -> str:
        self.calls.append({"contents": contents, "system_instruction": system_instruction})
        if self.fail:
            raise UpstreamUnavailableError("generation down")
        return self.reply


class FlakyCatalogHandler:
    """httpx MockTransport handler that fails `failures` times before succeeding."""

    def __init__(self, records: List[Dict[str, Any]], failures: int = 0, status: int = 500):
        self.records = records
        self.failures = failures
        self.status = status
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.requests <= self.failures:
            return httpx.Response(self.status, json={"success": False})
        return httpx.Response(200, json={"success": True, "products": self.records})


@pytest.fixture
def fake_classifier_factory():
    return FakeClassifier


@pytest.fixture
def catalog_handler(sample_records) -> FlakyCatalogHandler:
    return FlakyCatalogHandler(sample_records)


@pytest.fixture
def catalog_cache(catalog_handler) -> CatalogCache:
    provider = CatalogProvider(
        CATALOG_URL,
        timeout=1.0,
        attempts=3,
        backoff=0,
        transport=httpx.MockTransport(catalog_handler),
    )
    return CatalogCache(provider, ttl_sec=1800)
