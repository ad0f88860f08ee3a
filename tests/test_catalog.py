import asyncio

import httpx
import pytest

from lubebot.catalog import (
    CatalogCache,
    CatalogEntry,
    CatalogProvider,
    parse_catalog_payload,
)
from lubebot.errors import CatalogUnavailableError

from .conftest import CATALOG_URL, FlakyCatalogHandler


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _provider(handler, attempts=3):
    return CatalogProvider(
        CATALOG_URL, timeout=1.0, attempts=attempts, backoff=0, transport=httpx.MockTransport(handler)
    )


class TestCatalogEntry:
    def test_field_synonyms(self):
        entry = CatalogEntry.from_record(
            {"name": "Special Tec AA 0W-20", "sku": "lm20891", "category": "【汽車】機油", "description": "x"}
        )
        assert entry.title == "Special Tec AA 0W-20"
        assert entry.part_number == "LM20891"
        assert entry.id == "LM20891"
        assert entry.category == "【汽車】機油"
        assert entry.description == "x"

    def test_field_value_accepts_provider_names(self):
        entry = CatalogEntry.from_record({"title": "T", "partno": "LM1", "word2": "5W-30", "cert": "API SP"})
        assert entry.field_value("word2") == "5W-30"
        assert entry.field_value("viscosity_text") == "5W-30"
        assert entry.field_value("cert") == "API SP"

    def test_url_is_lowercased(self):
        entry = CatalogEntry.from_record({"title": "T", "partno": "LM3707"})
        assert entry.url("https://shop.test/products/") == "https://shop.test/products/lm3707"


class TestParsePayload:
    def test_success_false_raises(self):
        with pytest.raises(CatalogUnavailableError):
            parse_catalog_payload({"success": False, "products": []})

    def test_missing_products_list_raises(self):
        with pytest.raises(CatalogUnavailableError):
            parse_catalog_payload({"success": True, "products": "nope"})

    def test_skips_empty_records(self, sample_records):
        entries = parse_catalog_payload({"success": True, "products": [*sample_records, {}, "junk"]})
        assert len(entries) == len(sample_records)


class TestCatalogProvider:
    def test_retries_then_succeeds(self, sample_records):
        handler = FlakyCatalogHandler(sample_records, failures=2)
        entries = asyncio.run(_provider(handler).fetch())
        assert handler.requests == 3
        assert len(entries) == len(sample_records)

    def test_exhausted_retries_raise_unavailable(self, sample_records):
        handler = FlakyCatalogHandler(sample_records, failures=5)
        with pytest.raises(CatalogUnavailableError):
            asyncio.run(_provider(handler).fetch())
        assert handler.requests == 3

    def test_transport_error_becomes_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(CatalogUnavailableError):
            asyncio.run(_provider(handler, attempts=2).fetch())


class TestCatalogCache:
    def test_hit_within_ttl(self, sample_records):
        handler = FlakyCatalogHandler(sample_records)
        clock = FakeClock()
        cache = CatalogCache(_provider(handler), ttl_sec=1800, clock=clock)
        first = asyncio.run(cache.get())
        clock.now = 1799
        second = asyncio.run(cache.get())
        assert first is second
        assert cache.fetch_count == 1
        assert handler.requests == 1

    def test_refill_after_ttl(self, sample_records):
        handler = FlakyCatalogHandler(sample_records)
        clock = FakeClock()
        cache = CatalogCache(_provider(handler), ttl_sec=1800, clock=clock)
        first = asyncio.run(cache.get())
        clock.now = 1800
        second = asyncio.run(cache.get())
        assert first is not second
        assert cache.fetch_count == 2

    def test_failed_refill_does_not_serve_stale(self, sample_records):
        handler = FlakyCatalogHandler(sample_records)
        clock = FakeClock()
        cache = CatalogCache(_provider(handler), ttl_sec=10, clock=clock)
        asyncio.run(cache.get())
        handler.failures = 100
        clock.now = 11
        with pytest.raises(CatalogUnavailableError):
            asyncio.run(cache.get())

    def test_invalidate_forces_refill(self, catalog_cache):
        asyncio.run(catalog_cache.get())
        catalog_cache.invalidate()
        assert not catalog_cache.is_fresh()
        asyncio.run(catalog_cache.get())
        assert catalog_cache.fetch_count == 2

    def test_snapshot_part_numbers(self, sample_snapshot):
        assert "LM1502" in sample_snapshot.part_numbers
        assert len(sample_snapshot) == 6
