"""Catalog records, the HTTP catalog provider, and the TTL-bounded catalog cache.

Provider records are loosely shaped, so each CatalogEntry field is resolved
through a list of key synonyms before anything downstream touches it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from .errors import CatalogUnavailableError
from .retry import async_retry
from .utils import normalize_key

logger = logging.getLogger("lubebot.catalog")

ID_KEYS = ["id", "_id", "product_id"]
TITLE_KEYS = ["title", "name", "product name"]
PART_NUMBER_KEYS = ["partno", "part number", "partNumber", "sku", "code"]
SIZE_KEYS = ["size", "volume", "package"]
CATEGORY_KEYS = ["sort", "category", "product category"]
CERT_KEYS = ["cert", "certification", "certificationText", "approvals"]
VISCOSITY_KEYS = ["word2", "viscosity", "viscosityText"]
SERIES_KEYS = ["word1", "series"]
PRICE_KEYS = ["price"]
DESC_KEYS = ["content", "description", "desc"]

# SearchTask field names -> CatalogEntry attributes.
FIELD_ALIASES = {
    "title": "title",
    "name": "title",
    "partno": "part_number",
    "partnumber": "part_number",
    "sku": "part_number",
    "size": "size",
    "sort": "category",
    "category": "category",
    "cert": "certification_text",
    "certification": "certification_text",
    "word1": "series",
    "series": "series",
    "word2": "viscosity_text",
    "viscosity": "viscosity_text",
    "content": "description",
    "description": "description",
    "price": "price",
    "id": "id",
    "certificationtext": "certification_text",
    "viscositytext": "viscosity_text",
}


@dataclass(frozen=True)
class CatalogEntry:
    """Normalized, read-only view of one provider product record."""
    id: str
    title: str
    part_number: str
    size: str = ""
    category: str = ""
    certification_text: str = ""
    viscosity_text: str = ""
    series: str = ""
    price: str = ""
    description: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CatalogEntry":
        part_number = _text(_get_first_value(record, PART_NUMBER_KEYS)).upper()
        entry_id = _text(_get_first_value(record, ID_KEYS)) or part_number
        return cls(
            id=entry_id,
            title=_text(_get_first_value(record, TITLE_KEYS)),
            part_number=part_number,
            size=_text(_get_first_value(record, SIZE_KEYS)),
            category=_text(_get_first_value(record, CATEGORY_KEYS)),
            certification_text=_text(_get_first_value(record, CERT_KEYS)),
            viscosity_text=_text(_get_first_value(record, VISCOSITY_KEYS)),
            series=_text(_get_first_value(record, SERIES_KEYS)),
            price=_text(_get_first_value(record, PRICE_KEYS)),
            description=_text(_get_first_value(record, DESC_KEYS)),
            raw=dict(record),
        )

    def field_value(self, name: str) -> str:
        """Return the entry text addressed by a provider or attribute field name."""
        attribute = FIELD_ALIASES.get(normalize_key(name).replace("_", ""))
        if attribute is None:
            return _text(self.raw.get(name))
        return getattr(self, attribute)

    def url(self, base_url: str) -> str:
        if not self.part_number:
            return ""
        return f"{base_url}{self.part_number.lower()}"


@dataclass(frozen=True)
class CatalogSnapshot:
    """Whole-catalog snapshot; replaced wholesale on refill, never patched."""
    entries: Tuple[CatalogEntry, ...]
    fetched_at: float

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def part_numbers(self) -> frozenset:
        return frozenset(entry.part_number for entry in self.entries if entry.part_number)


def parse_catalog_payload(payload: Any) -> List[CatalogEntry]:
    """Purpose: Turn a provider payload into normalized CatalogEntry records.
    Inputs/Outputs: Input is the decoded JSON body; output is a list of entries.
    Side Effects / State: None.
    Dependencies: Uses CatalogEntry.from_record.
    Failure Modes: Raises CatalogUnavailableError when success is false or the
        payload is not an object with a products list.
    If Removed: CatalogProvider cannot hand entries to the cache.
    Testing Notes: Feed {"success": false} and a record using "sku"/"category" keys.
    """
    # Validate the envelope before touching records.
    if not isinstance(payload, dict) or not payload.get("success"):
        raise CatalogUnavailableError("catalog provider reported failure")
    products = payload.get("products")
    if not isinstance(products, list):
        raise CatalogUnavailableError("catalog payload has no products list")
    entries: List[CatalogEntry] = []
    for record in products:
        if not isinstance(record, dict):
            continue
        entry = CatalogEntry.from_record(record)
        if entry.title or entry.part_number:
            entries.append(entry)
    return entries


class CatalogProvider:
    """Fetches the product catalog over HTTP with timeout and fixed-backoff retries."""

    def __init__(
        self,
        url: str,
        timeout: float = 15.0,
        attempts: int = 3,
        backoff: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._attempts = attempts
        self._backoff = backoff
        self._transport = transport

    async def fetch(self) -> List[CatalogEntry]:
        """Purpose: Download and normalize the full catalog.
        Inputs/Outputs: No inputs; returns a list of CatalogEntry.
        Side Effects / State: One HTTP GET per attempt.
        Dependencies: httpx.AsyncClient, async_retry, parse_catalog_payload.
        Failure Modes: Raises CatalogUnavailableError once every attempt failed.
        If Removed: CatalogCache has nothing to refill from.
        Testing Notes: Use httpx.MockTransport returning 500 twice, then 200.
        """
        # Each attempt opens a short-lived client; reads are idempotent.
        async def attempt() -> List[CatalogEntry]:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(self._url)
                response.raise_for_status()
                return parse_catalog_payload(response.json())

        try:
            entries = await async_retry(
                attempt,
                attempts=self._attempts,
                backoff=self._backoff,
                retry_on=(httpx.HTTPStatusError, httpx.RequestError, ValueError, CatalogUnavailableError),
                label="catalog",
            )
        except CatalogUnavailableError:
            raise
        except (httpx.HTTPStatusError, httpx.RequestError, ValueError) as exc:
            raise CatalogUnavailableError(f"catalog fetch failed: {exc}") from exc
        logger.info("catalog fetched url=%s entries=%s", self._url, len(entries))
        return entries


class CatalogCache:
    """Process-lifetime catalog cache guarded by check-and-refill.

    Concurrent refills are harmless: each one overwrites the whole snapshot.
    """

    def __init__(
        self,
        provider: CatalogProvider,
        ttl_sec: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ttl_sec = ttl_sec
        self._clock = clock
        self.snapshot: Optional[CatalogSnapshot] = None
        self.expires_at: float = 0.0
        self.fetch_count = 0

    def is_fresh(self) -> bool:
        return self.snapshot is not None and self._clock() < self.expires_at

    async def get(self) -> CatalogSnapshot:
        """Purpose: Return the current catalog snapshot, refilling it when expired.
        Inputs/Outputs: No inputs; returns a CatalogSnapshot.
        Side Effects / State: On miss, fetches and replaces snapshot/expires_at.
        Dependencies: CatalogProvider.fetch.
        Failure Modes: Propagates CatalogUnavailableError; a stale snapshot is not served.
        If Removed: Every request re-downloads the catalog.
        Testing Notes: Two calls within TTL must leave fetch_count at 1.
        """
        # Serve the fresh snapshot, otherwise refill wholesale.
        if self.is_fresh():
            logger.debug("catalog cache hit entries=%s", len(self.snapshot))
            return self.snapshot
        self.fetch_count += 1
        entries = await self._provider.fetch()
        now = self._clock()
        self.snapshot = CatalogSnapshot(entries=tuple(entries), fetched_at=now)
        self.expires_at = now + self._ttl_sec
        logger.info("catalog cache refilled entries=%s ttl=%s", len(entries), self._ttl_sec)
        return self.snapshot

    def invalidate(self) -> None:
        self.snapshot = None
        self.expires_at = 0.0


def snapshot_from_records(records: Sequence[Dict[str, Any]], fetched_at: float = 0.0) -> CatalogSnapshot:
    """Build a snapshot directly from provider-shaped records."""
    entries = parse_catalog_payload({"success": True, "products": list(records)})
    return CatalogSnapshot(entries=tuple(entries), fetched_at=fetched_at)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(part).strip() for part in value if _has_value(part))
    return str(value).strip()


def _get_first_value(item: Dict[str, Any], keys: List[str]) -> Optional[Any]:
    """Purpose: Find the first matching field in a dict by key synonyms.
    Inputs/Outputs: Input is a raw dict and a list of candidate keys; returns value or None.
    Side Effects / State: None.
    Dependencies: Uses normalize_key and _has_value.
    Failure Modes: Returns None when no keys match or values are empty.
    If Removed: Records using alternate field names lose part numbers and titles.
    Testing Notes: Verify "partNumber", "partno", and "SKU" all resolve.
    """
    # Exact synonym match only; partial matches would confuse word1/word2.
    normalized_map = {normalize_key(str(k)).replace("_", ""): k for k in item.keys()}
    for key in keys:
        normalized = normalize_key(key).replace("_", "")
        if normalized in normalized_map:
            value = item.get(normalized_map[normalized])
            if _has_value(value):
                return value
    return None


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return True
