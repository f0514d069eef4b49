"""HTTP client that reads through the registry's API namespaces."""

import asyncio
import hashlib
import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..core.registry import NamespaceRegistry
from ..models.cache import CacheNamespace, get_namespace_policy

logger = logging.getLogger(__name__)

API_NAMESPACES = (
    CacheNamespace.OPENAI_API,
    CacheNamespace.GOOGLE_MAPS_API,
    CacheNamespace.TRIPADVISOR_API,
    CacheNamespace.RECOMMENDATIONS_API,
    CacheNamespace.GENERAL_API,
)

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})
BODY_METHODS = ("POST", "PUT")


class ApiError(Exception):
    """Raised when an upstream API call fails."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        url: str = "",
        is_retryable: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.url = url
        self.is_retryable = is_retryable


class CachedApiClient:
    """Cached, de-duplicated and retried JSON requests.

    Responses are stored in the API namespace passed to :meth:`request`, so
    that namespace's TTL, stale window and compression apply.
    """

    def __init__(
        self,
        registry: NamespaceRegistry,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
        timeout: float = 30.0,
    ):
        self.registry = registry
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._pending: Dict[str, asyncio.Task] = {}

        for namespace in API_NAMESPACES:
            if not registry.is_registered(namespace):
                registry.register_cache(get_namespace_policy(namespace))

    def create_key(self, method: str, url: str, body: Any = None) -> str:
        """Cache key from method, URL and a hash of any request body."""
        parts = [method.upper(), url]
        if body is not None and method.upper() in BODY_METHODS:
            body_str = json.dumps(body, sort_keys=True, default=str)
            parts.append(f"body:{hashlib.sha256(body_str.encode()).hexdigest()[:16]}")
        return ":".join(parts)

    async def request(
        self,
        namespace: CacheNamespace,
        url: str,
        method: str = "GET",
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        cache_key: Optional[str] = None,
        use_cache: bool = True,
        force_fresh: bool = False,
    ) -> Any:
        """Perform a request, served from cache when possible.

        Identical requests in flight at the same time share one call.

        Raises:
            ApiError: If the request fails and nothing usable is cached.
        """
        namespace = CacheNamespace(namespace)
        method = method.upper()
        key = cache_key or self.create_key(method, url, json)
        dedupe_key = f"{namespace.value}:{key}"

        existing = self._pending.get(dedupe_key)
        if existing is not None:
            logger.debug(f"Joining in-flight request {dedupe_key}")
            return await asyncio.shield(existing)

        async def fetch() -> Any:
            return await self._fetch_with_retry(method, url, json, headers)

        async def perform() -> Any:
            if not use_cache:
                return await fetch()
            return await self.registry.get_or_fetch(namespace, key, fetch, force_refresh=force_fresh)

        task = asyncio.get_running_loop().create_task(perform())
        self._pending[dedupe_key] = task
        task.add_done_callback(lambda _: self._pending.pop(dedupe_key, None))
        return await asyncio.shield(task)

    async def _fetch_with_retry(
        self,
        method: str,
        url: str,
        body: Any,
        headers: Optional[Dict[str, str]],
    ) -> Any:
        delay = self.initial_delay
        for attempt in range(self.max_retries + 1):
            try:
                return await self._send(method, url, body, headers)
            except ApiError as e:
                if not e.is_retryable or attempt >= self.max_retries:
                    raise
                logger.warning(
                    f"Request to {url} failed ({e}), retry {attempt + 1}/{self.max_retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_delay)

    async def _send(
        self,
        method: str,
        url: str,
        body: Any,
        headers: Optional[Dict[str, str]],
    ) -> Any:
        try:
            response = await self.client.request(
                method,
                url,
                json=body if method in BODY_METHODS else None,
                headers={"Content-Type": "application/json", **(headers or {})},
            )
        except httpx.TransportError as e:
            raise ApiError(f"Network error calling {url}: {e}", url=url, is_retryable=True) from e

        if response.is_error:
            raise ApiError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status=response.status_code,
                url=url,
                is_retryable=response.status_code in RETRYABLE_STATUSES,
            )

        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return response.text

    def clear_namespace(self, namespace: CacheNamespace) -> None:
        self.registry.clear(namespace)

    def clear_all(self) -> None:
        for namespace in API_NAMESPACES:
            self.registry.clear(namespace)

    def get_stats(self) -> Dict[str, Any]:
        stats = self.registry.get_debug_info()["stats"]
        return {
            "namespaces": {ns.value: stats.get(ns.value) for ns in API_NAMESPACES},
            "pending_requests": len(self._pending),
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
