"""Unit tests for the cached API client."""

import asyncio
import json

import httpx
import pytest

from tests.fixtures import create_registry
from tripflow.core.registry import NamespaceRegistry
from tripflow.models.cache import CacheNamespace
from tripflow.services.api_cache import API_NAMESPACES, ApiError, CachedApiClient
from tripflow.storage import MemoryStore

PLACES_URL = "https://maps.example.com/places?q=ramen"


class Upstream:
    """Scripted upstream that records every request."""

    def __init__(self, *responses, delay: float = 0):
        self.responses = list(responses)
        self.delay = delay
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        # A response object can only be sent once
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


def _client(upstream, registry=None, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    kwargs.setdefault("initial_delay", 0)
    return CachedApiClient(registry or create_registry(), client=http, **kwargs)


class TestCreateKey:
    """Test request cache keys."""

    def test_get_key(self):
        """Test that GET keys are method plus URL."""
        client = CachedApiClient(create_registry(), client=httpx.AsyncClient())
        assert client.create_key("get", PLACES_URL) == f"GET:{PLACES_URL}"

    def test_body_hash(self):
        """Test that POST bodies are part of the key, independent of field order."""
        client = CachedApiClient(create_registry(), client=httpx.AsyncClient())
        key1 = client.create_key("POST", "https://api.example.com/chat", {"a": 1, "b": 2})
        key2 = client.create_key("POST", "https://api.example.com/chat", {"b": 2, "a": 1})
        key3 = client.create_key("POST", "https://api.example.com/chat", {"a": 2})
        assert key1 == key2
        assert key1 != key3
        assert key1.startswith("POST:https://api.example.com/chat:body:")


class TestCachedApiClient:
    """Test suite for CachedApiClient."""

    def test_registers_missing_namespaces(self):
        """Test that API namespaces are registered on demand."""
        registry = NamespaceRegistry(MemoryStore())
        CachedApiClient(registry, client=httpx.AsyncClient())
        for namespace in API_NAMESPACES:
            assert registry.is_registered(namespace)

    @pytest.mark.asyncio
    async def test_response_is_cached(self):
        """Test that a second identical request is served from cache."""
        upstream = Upstream(httpx.Response(200, json={"places": ["Ichiran"]}))
        client = _client(upstream)

        first = await client.request(CacheNamespace.GOOGLE_MAPS_API, PLACES_URL)
        second = await client.request(CacheNamespace.GOOGLE_MAPS_API, PLACES_URL)

        assert first == second == {"places": ["Ichiran"]}
        assert len(upstream.requests) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_text_response(self):
        """Test that non-JSON bodies come back as text."""
        client = _client(Upstream(httpx.Response(200, text="plain")))
        assert await client.request(CacheNamespace.GENERAL_API, "https://example.com/") == "plain"

    @pytest.mark.asyncio
    async def test_bypass_and_force_fresh(self):
        """Test skipping and refreshing the cache."""
        upstream = Upstream(httpx.Response(200, json={"n": 1}))
        client = _client(upstream)

        await client.request(CacheNamespace.GENERAL_API, PLACES_URL)
        await client.request(CacheNamespace.GENERAL_API, PLACES_URL, use_cache=False)
        await client.request(CacheNamespace.GENERAL_API, PLACES_URL, force_fresh=True)
        assert len(upstream.requests) == 3

    @pytest.mark.asyncio
    async def test_post_body_is_sent(self):
        """Test that POST requests carry their JSON body."""
        upstream = Upstream(httpx.Response(200, json={"reply": "hi"}))
        client = _client(upstream)
        await client.request(
            CacheNamespace.OPENAI_API,
            "https://api.example.com/chat",
            method="POST",
            json={"prompt": "hello"},
            headers={"Authorization": "Bearer test"},
        )
        request = upstream.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"prompt": "hello"}
        assert request.headers["Authorization"] == "Bearer test"

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_call(self):
        """Test in-flight de-duplication."""
        upstream = Upstream(httpx.Response(200, json={"ok": True}), delay=0.02)
        client = _client(upstream)

        results = await asyncio.gather(
            client.request(CacheNamespace.GENERAL_API, PLACES_URL, use_cache=False),
            client.request(CacheNamespace.GENERAL_API, PLACES_URL, use_cache=False),
        )
        assert results == [{"ok": True}, {"ok": True}]
        assert len(upstream.requests) == 1
        assert client.get_stats()["pending_requests"] == 0

    @pytest.mark.asyncio
    async def test_retries_transient_status(self):
        """Test that 503 responses are retried."""
        upstream = Upstream(
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(200, json={"ok": True}),
        )
        client = _client(upstream)
        assert await client.request(CacheNamespace.GENERAL_API, PLACES_URL) == {"ok": True}
        assert len(upstream.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """Test the error after the last retry."""
        upstream = Upstream(httpx.Response(429))
        client = _client(upstream, max_retries=2)
        with pytest.raises(ApiError) as exc_info:
            await client.request(CacheNamespace.GENERAL_API, PLACES_URL)
        assert exc_info.value.status == 429
        assert exc_info.value.is_retryable is True
        assert len(upstream.requests) == 3

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """Test that a 404 fails immediately."""
        upstream = Upstream(httpx.Response(404))
        client = _client(upstream)
        with pytest.raises(ApiError) as exc_info:
            await client.request(CacheNamespace.GENERAL_API, PLACES_URL)
        assert exc_info.value.status == 404
        assert exc_info.value.is_retryable is False
        assert exc_info.value.url == PLACES_URL
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self):
        """Test that transport failures are retryable."""
        upstream = Upstream(httpx.ConnectError("connection refused"), httpx.Response(200, json=[1]))
        client = _client(upstream)
        assert await client.request(CacheNamespace.GENERAL_API, PLACES_URL) == [1]
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        """Test that an error leaves nothing in the cache."""
        upstream = Upstream(httpx.Response(404), httpx.Response(200, json={"ok": True}))
        client = _client(upstream)
        with pytest.raises(ApiError):
            await client.request(CacheNamespace.GENERAL_API, PLACES_URL)
        assert await client.request(CacheNamespace.GENERAL_API, PLACES_URL) == {"ok": True}

    @pytest.mark.asyncio
    async def test_responses_are_user_scoped(self):
        """Test that two users don't share cached responses."""
        registry = create_registry(user_id="alice")
        upstream = Upstream(httpx.Response(200, json={"ok": True}))
        client = _client(upstream, registry)
        await client.request(CacheNamespace.GENERAL_API, PLACES_URL)
        registry.set_current_user("bob")
        await client.request(CacheNamespace.GENERAL_API, PLACES_URL)
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_clear_and_stats(self):
        """Test clearing API namespaces and reading their stats."""
        upstream = Upstream(httpx.Response(200, json={"ok": True}))
        client = _client(upstream)
        await client.request(CacheNamespace.GOOGLE_MAPS_API, PLACES_URL)
        await client.request(CacheNamespace.TRIPADVISOR_API, PLACES_URL)
        assert client.get_stats()["namespaces"]["google-maps-api"]["size"] == 1

        client.clear_namespace(CacheNamespace.GOOGLE_MAPS_API)
        assert client.get_stats()["namespaces"]["google-maps-api"]["size"] == 0
        assert client.get_stats()["namespaces"]["tripadvisor-api"]["size"] == 1

        client.clear_all()
        assert client.get_stats()["namespaces"]["tripadvisor-api"]["size"] == 0

    @pytest.mark.asyncio
    async def test_aclose_only_closes_owned_client(self):
        """Test that a caller-supplied client stays open."""
        http = httpx.AsyncClient(transport=httpx.MockTransport(Upstream(httpx.Response(200))))
        await CachedApiClient(create_registry(), client=http).aclose()
        assert not http.is_closed
        await http.aclose()

        owned = CachedApiClient(create_registry())
        await owned.aclose()
        assert owned.client.is_closed
