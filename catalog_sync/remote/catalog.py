"""
Remote catalog API client (WooCommerce-style REST).

Every request goes through the shared Dispatcher, so throttling and
retry policy are applied uniformly. Non-2xx responses become
CatalogAPIError carrying the status and Retry-After header, which is
what the dispatcher's classifier inspects.

Endpoints used:
    GET  products?search=<part>&per_page=<n>&page=<p>   (X-WP-Total header)
    GET  products/<id>
    POST products/batch   {"update": [...]}
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from catalog_sync.core.config import Settings
from catalog_sync.core.errors import CatalogAPIError, ConfigurationError, DispatchFailedError
from catalog_sync.remote.dispatcher import Dispatcher
from catalog_sync.remote.manufacturers import normalize_manufacturer_name

logger = logging.getLogger(__name__)


def _meta_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


@dataclass(frozen=True)
class CatalogRecord:
    """Read-only snapshot of a remote product's writable fields."""

    id: int
    name: str = ""
    sku: str = ""
    description: str = ""
    meta: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "CatalogRecord":
        meta: dict[str, str] = {}
        for entry in data.get("meta_data") or []:
            if isinstance(entry, dict) and entry.get("key"):
                meta[str(entry["key"])] = _meta_value(entry.get("value"))
        return cls(
            id=int(data["id"]),
            name=_meta_value(data.get("name")),
            sku=_meta_value(data.get("sku")),
            description=_meta_value(data.get("description")),
            meta=meta,
        )

    def get_meta(self, key: str) -> str:
        """Meta value by key, case-insensitive on the key."""
        if key in self.meta:
            return self.meta[key]
        lowered = key.lower()
        for k, v in self.meta.items():
            if k.lower() == lowered:
                return v
        return ""


@dataclass
class BulkWriteResult:
    written_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def rejected_count(self) -> int:
        return len(self.errors)


class LookupCache:
    """In-process TTL map for (identifier, manufacturer) -> product id."""

    def __init__(
        self,
        ttl_seconds: float = 86400,
        max_entries: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, int]] = {}

    @staticmethod
    def key(identifier: str, manufacturer: str) -> tuple[str, str]:
        return identifier.strip(), manufacturer.strip().lower()

    def get(self, identifier: str, manufacturer: str) -> Optional[int]:
        key = self.key(identifier, manufacturer)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, product_id = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return product_id

    def set(self, identifier: str, manufacturer: str, product_id: int) -> None:
        if len(self._entries) >= self.max_entries:
            # Oldest insertion goes first
            self._entries.pop(next(iter(self._entries)))
        self._entries[self.key(identifier, manufacturer)] = (self._clock() + self.ttl_seconds, product_id)

    def __len__(self) -> int:
        return len(self._entries)


class CatalogClient:
    """Async client for the remote catalog, throttled through a Dispatcher."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_secret: str,
        dispatcher: Dispatcher,
        *,
        cache: Optional[LookupCache] = None,
        page_size: int = 10,
        max_pages: int = 50,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise ConfigurationError("CATALOG_API_URL")
        self.base_url = base_url.rstrip("/") + "/"
        self.dispatcher = dispatcher
        self.cache = cache if cache is not None else LookupCache()
        self.page_size = page_size
        self.max_pages = max_pages
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(api_key, api_secret),
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings, dispatcher: Dispatcher) -> "CatalogClient":
        return cls(
            settings.CATALOG_API_URL,
            settings.CATALOG_API_KEY,
            settings.CATALOG_API_SECRET,
            dispatcher,
            cache=LookupCache(ttl_seconds=settings.LOOKUP_CACHE_TTL_SECONDS),
            page_size=settings.LOOKUP_PAGE_SIZE,
            max_pages=settings.LOOKUP_MAX_PAGES,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CatalogClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # =========================================================================
    # Transport
    # =========================================================================

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        response = await self._client.request(method, path, params=params, json=json)
        if response.is_success:
            return response
        try:
            body = response.json()
        except ValueError:
            body = None
        detail = body.get("message", "") if isinstance(body, dict) else response.text[:200]
        raise CatalogAPIError(
            f"{method} {path} returned HTTP {response.status_code}: {detail}",
            status_code=response.status_code,
            retry_after=response.headers.get("retry-after"),
            path=path,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        task_id: str,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        context: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        return await self.dispatcher.schedule(
            lambda: self._send(method, path, params=params, json=json),
            task_id=task_id,
            context=context,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    async def lookup_id_by_identifier(self, identifier: str, manufacturer: str) -> Optional[int]:
        """
        Find the product id whose manufacturer meta matches, paging through
        search results until the server-reported total is exhausted.

        Raises:
            DispatchFailedError: If a search page cannot be fetched
        """
        wanted = normalize_manufacturer_name(manufacturer).lower()
        cached = self.cache.get(identifier, wanted)
        if cached is not None:
            logger.debug("Lookup cache hit: %s -> %d", identifier, cached)
            return cached

        total: Optional[int] = None
        checked = 0
        page = 1
        while page <= self.max_pages:
            response = await self._request(
                "GET",
                "products",
                params={"search": identifier, "per_page": self.page_size, "page": page},
                task_id=f"lookup:{identifier}:p{page}",
                context={"part_number": identifier},
            )
            if total is None:
                total = int(response.headers.get("x-wp-total") or 0)
                if total == 0:
                    logger.info("No products found for %s", identifier)
                    return None

            products = response.json() or []
            if not products:
                break

            for product in products:
                checked += 1
                record = CatalogRecord.from_api(product)
                if record.get_meta("manufacturer").strip().lower() == wanted:
                    self.cache.set(identifier, wanted, record.id)
                    logger.info("Matched %s (%s) -> product %d", identifier, manufacturer, record.id)
                    return record.id

            if checked >= total:
                break
            page += 1
        else:
            logger.warning(
                "Lookup for %s stopped at page cap %d (%d/%s checked)",
                identifier,
                self.max_pages,
                checked,
                total,
            )

        logger.info("No manufacturer match for %s (%s); checked %d", identifier, manufacturer, checked)
        return None

    async def fetch_by_id(self, product_id: int) -> Optional[CatalogRecord]:
        """Current record, or None when the product no longer exists."""
        try:
            response = await self._request(
                "GET",
                f"products/{product_id}",
                task_id=f"fetch:{product_id}",
            )
        except DispatchFailedError as e:
            if e.status_code == 404:
                logger.warning("Product %d not found", product_id)
                return None
            raise
        return CatalogRecord.from_api(response.json())

    async def bulk_write(self, payloads: list[dict[str, Any]], *, task_id: str = "bulk") -> BulkWriteResult:
        """
        Submit updates in one batch request.

        Items the server returns with an "error" entry count as rejected.

        Raises:
            DispatchFailedError: If the request fails permanently or exhausts retries
        """
        if not payloads:
            return BulkWriteResult()
        response = await self._request(
            "POST",
            "products/batch",
            json={"update": payloads},
            task_id=task_id,
            context={"count": len(payloads)},
        )
        body = response.json() or {}
        result = BulkWriteResult()
        for item in body.get("update") or []:
            if isinstance(item, dict) and item.get("error"):
                result.errors.append({"id": item.get("id"), "error": item["error"]})
            else:
                result.written_count += 1
        return result

    async def create_product(self, payload: dict[str, Any], *, task_id: str = "create") -> CatalogRecord:
        """
        Create one product.

        Raises:
            DispatchFailedError: If the request fails permanently or exhausts retries
        """
        response = await self._request("POST", "products", json=payload, task_id=task_id)
        return CatalogRecord.from_api(response.json() or {})
