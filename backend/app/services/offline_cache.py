"""
Offline cache dispatcher.

Intercepts outgoing GET requests for the landing page and resolves them
against a set of named cache stores or the network, one strategy per request.
The lifecycle mirrors a service worker's:

    installing -> installed -> activating -> activated   (redundant on failed install)

install()   pre-caches STATIC_ASSETS into the version store, all or nothing.
activate()  deletes every store that is neither the current version store
            nor the runtime store, then takes control of every open client.

Request classification (first match wins):

    not cacheable (non-GET, Range, Authorization, /admin/, non-http)  network only
    /api/*                                                            network-first
    images (jpg jpeg png gif webp svg)                                cache-first
    fonts (woff woff2 ttf eot)                                        cache-first
    css / js                                                          cache-first
    navigation, .html or extension-less path                          stale-while-revalidate
    anything else                                                     network-first

Only 2xx responses are ever stored. When a strategy fails on the network the
dispatcher falls back to any cached copy, then to the cached offline page for
navigations, then to a synthesized 503 JSON response.

Store names are versioned by CACHE_VERSION, a constant bumped by hand on each
release (override with the CACHE_VERSION env var). Forgetting the bump keeps
serving the previous release's assets; manifest_version_tag() derives a tag
from asset contents for deployers who want to remove that step.
"""

import asyncio
import hashlib
import logging
import os
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import httpx

from app.models.offline import CacheStrategy, SyncTag, WorkerState
from app.services.offline_queue import OfflineQueue

logger = logging.getLogger(__name__)

CACHE_VERSION = os.getenv("CACHE_VERSION", "1.0.0")
STATIC_CACHE_PREFIX = "high-leverage-humans-v"
RUNTIME_CACHE = "runtime-cache-v1"
OFFLINE_PAGE = "/offline.html"
DEFAULT_ORIGIN = "https://highleveragehumans.com"

SUBMIT_ENDPOINT = "/api/submit"
ANALYTICS_ENDPOINT = "/api/analytics"

STATIC_ASSETS = [
    "/",
    "/index.html",
    "/assets/css/main.css",
    "/assets/css/components.css",
    "/assets/css/animations.css",
    "/assets/css/responsive.css",
    "/assets/js/main.js",
    "/assets/js/forms.js",
    "/assets/js/animations.js",
    "/assets/js/performance.js",
    "/high-leverage-humans-logo.svg",
    "/high-leverage-humans-icon.svg",
]

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "svg"})
FONT_EXTENSIONS = frozenset({"woff", "woff2", "ttf", "eot"})
STATIC_EXTENSIONS = frozenset({"css", "js"})

OFFLINE_BODY = {
    "error": "Network unavailable",
    "message": "This feature requires an internet connection",
}

# Headers describing the wire encoding, not the stored body
_HOP_HEADERS = ("content-encoding", "content-length", "transfer-encoding")


class CacheInstallError(Exception):
    """Raised when the static manifest could not be cached."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def static_cache_name(version: str = CACHE_VERSION) -> str:
    return f"{STATIC_CACHE_PREFIX}{version}"


def manifest_version_tag(contents: Mapping[str, bytes]) -> str:
    """Content-hash version tag for a manifest (path -> body bytes)."""
    digest = hashlib.sha256()
    for path in sorted(contents):
        digest.update(path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(contents[path])
    return digest.hexdigest()[:12]


def cache_key(url: httpx.URL | str) -> str:
    """Normalized cache key: absolute URL without fragment."""
    return str(httpx.URL(str(url)).copy_with(fragment=None))


def path_extension(path: str) -> str:
    """Lower-cased extension of the last path segment ("" when there is none)."""
    segment = path.rsplit("/", 1)[-1]
    if "." not in segment:
        return ""
    return segment.rsplit(".", 1)[-1].lower()


def is_navigation(request: httpx.Request) -> bool:
    return request.headers.get("sec-fetch-mode", "").lower() == "navigate"


def is_cacheable(request: httpx.Request) -> bool:
    if request.url.scheme not in ("http", "https"):
        return False
    if request.method != "GET":
        return False
    if "range" in request.headers or "authorization" in request.headers:
        return False
    if request.url.path.startswith("/admin/"):
        return False
    return True


def classify_request(request: httpx.Request) -> CacheStrategy:
    """Pick the caching strategy for a request by path prefix and extension."""
    if not is_cacheable(request):
        return CacheStrategy.NETWORK_ONLY

    path = request.url.path
    extension = path_extension(path)

    if path.startswith("/api/"):
        return CacheStrategy.NETWORK_FIRST
    if extension in IMAGE_EXTENSIONS:
        return CacheStrategy.CACHE_FIRST
    if extension in FONT_EXTENSIONS:
        return CacheStrategy.CACHE_FIRST
    if extension in STATIC_EXTENSIONS:
        return CacheStrategy.CACHE_FIRST
    if is_navigation(request) or extension == "html" or not extension:
        return CacheStrategy.STALE_WHILE_REVALIDATE
    return CacheStrategy.NETWORK_FIRST


def clone_response(response: httpx.Response) -> httpx.Response:
    """
    Independent copy of a fully-read response.

    The body is already decoded, so wire-encoding headers are dropped and
    httpx recomputes Content-Length for the copy.
    """
    headers = [
        (name, value)
        for name, value in response.headers.multi_items()
        if name.lower() not in _HOP_HEADERS
    ]
    try:
        request = response.request
    except RuntimeError:
        request = None
    return httpx.Response(
        status_code=response.status_code,
        headers=headers,
        content=response.content,
        request=request,
    )


# ---------------------------------------------------------------------------
# Cache storage
# ---------------------------------------------------------------------------

class CacheStore:
    """One named store: cache key -> stored response."""

    def __init__(self, name: str):
        self.name = name
        self._entries: Dict[str, httpx.Response] = {}

    async def match(self, url: httpx.URL | str) -> Optional[httpx.Response]:
        stored = self._entries.get(cache_key(url))
        if stored is None:
            return None
        return clone_response(stored)

    async def put(self, url: httpx.URL | str, response: httpx.Response) -> None:
        self._entries[cache_key(url)] = clone_response(response)

    async def delete(self, url: httpx.URL | str) -> bool:
        return self._entries.pop(cache_key(url), None) is not None

    def keys(self) -> List[str]:
        return list(self._entries)

    def byte_size(self) -> int:
        total = 0
        for response in self._entries.values():
            length = response.headers.get("content-length")
            total += int(length) if length and length.isdigit() else len(response.content)
        return total

    def __len__(self) -> int:
        return len(self._entries)


class CacheStorage:
    """Named stores, searched in creation order by match()."""

    def __init__(self):
        self._stores: Dict[str, CacheStore] = {}

    async def open(self, name: str) -> CacheStore:
        if name not in self._stores:
            self._stores[name] = CacheStore(name)
        return self._stores[name]

    async def has(self, name: str) -> bool:
        return name in self._stores

    async def delete(self, name: str) -> bool:
        return self._stores.pop(name, None) is not None

    async def keys(self) -> List[str]:
        return list(self._stores)

    async def match(self, url: httpx.URL | str) -> Optional[httpx.Response]:
        for store in list(self._stores.values()):
            response = await store.match(url)
            if response is not None:
                return response
        return None


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class OfflineCacheDispatcher:
    """
    Cache-aware fetch handler with a service-worker style lifecycle.

    Args:
        client:            httpx.AsyncClient used for every network fetch.
                           Created (and owned) by the dispatcher when omitted.
        storage:           Cache storage shared with the page; fresh when omitted.
        origin:            Origin that relative manifest paths resolve against.
        version:           Static store version tag.
        manifest:          Paths pre-cached on install.
        submission_queue:  Flushed on the "form-submission" sync tag.
        analytics_queue:   Flushed on the "analytics-data" sync tag.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        storage: Optional[CacheStorage] = None,
        origin: str = DEFAULT_ORIGIN,
        version: str = CACHE_VERSION,
        manifest: Iterable[str] = STATIC_ASSETS,
        submission_queue: Optional[OfflineQueue] = None,
        analytics_queue: Optional[OfflineQueue] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self.storage = storage or CacheStorage()
        self.origin = origin
        self.cache_name = static_cache_name(version)
        self.manifest = list(manifest)
        self.submission_queue = submission_queue
        self.analytics_queue = analytics_queue

        self.state = WorkerState.PARSED
        self.clients: set[str] = set()
        self.controlled_clients: set[str] = set()
        self._skip_waiting = False
        self._background: set[asyncio.Task] = set()

    # -- requests ----------------------------------------------------------

    def url_for(self, path: str) -> str:
        return str(httpx.URL(self.origin).join(path))

    def build_request(
        self,
        path: str,
        navigate: bool = False,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Request:
        """Build a GET request for ``path`` on the dispatcher's origin."""
        request_headers = dict(headers or {})
        if navigate:
            request_headers["Sec-Fetch-Mode"] = "navigate"
        return httpx.Request("GET", self.url_for(path), headers=request_headers)

    async def _fetch(self, request: httpx.Request) -> httpx.Response:
        return await self._client.send(request)

    # -- lifecycle ---------------------------------------------------------

    async def install(self) -> None:
        """
        Pre-cache the static manifest into the version store.

        All assets are fetched before any is stored; a single failure leaves
        the store untouched, marks the dispatcher redundant and raises.
        """
        self.state = WorkerState.INSTALLING
        logger.info(f"Installing offline cache {self.cache_name}")

        requests = [self.build_request(path) for path in self.manifest]
        try:
            responses = await asyncio.gather(*(self._fetch(r) for r in requests))
        except httpx.TransportError as e:
            self.state = WorkerState.REDUNDANT
            logger.error(f"Offline cache installation failed: {e}")
            raise CacheInstallError(f"Failed to fetch static assets: {e}") from e

        failed = [str(r.url) for r, resp in zip(requests, responses) if not resp.is_success]
        if failed:
            self.state = WorkerState.REDUNDANT
            logger.error(f"Offline cache installation failed for {failed}")
            raise CacheInstallError(f"Static assets unavailable: {', '.join(failed)}")

        store = await self.storage.open(self.cache_name)
        for request, response in zip(requests, responses):
            await store.put(request.url, response)

        self.state = WorkerState.INSTALLED
        logger.info(f"Cached {len(requests)} static assets")

        if self._skip_waiting:
            await self.activate()

    async def activate(self) -> List[str]:
        """Evict stale stores and claim all clients. Returns deleted store names."""
        if self.state not in (WorkerState.INSTALLED, WorkerState.ACTIVATED):
            raise RuntimeError(f"Cannot activate from state '{self.state.value}'")
        if self.state is WorkerState.ACTIVATED:
            return []

        self.state = WorkerState.ACTIVATING
        deleted = await self.cleanup_old_caches()
        self.claim_clients()
        self.state = WorkerState.ACTIVATED
        logger.info("Offline cache activated")
        return deleted

    async def skip_waiting(self) -> None:
        """Activate as soon as installed, without waiting for page reloads."""
        self._skip_waiting = True
        if self.state is WorkerState.INSTALLED:
            await self.activate()

    async def cleanup_old_caches(self) -> List[str]:
        keep = {self.cache_name, RUNTIME_CACHE}
        stale = [name for name in await self.storage.keys() if name not in keep]
        for name in stale:
            logger.info(f"Deleting old cache: {name}")
            await self.storage.delete(name)
        return stale

    def register_client(self, client_id: str) -> None:
        """Track an open page. Pages opened after activation are controlled at once."""
        self.clients.add(client_id)
        if self.state is WorkerState.ACTIVATED:
            self.controlled_clients.add(client_id)

    def unregister_client(self, client_id: str) -> None:
        self.clients.discard(client_id)
        self.controlled_clients.discard(client_id)

    def claim_clients(self) -> None:
        self.controlled_clients = set(self.clients)

    # -- fetch handling ----------------------------------------------------

    async def handle_fetch(self, request: httpx.Request) -> httpx.Response:
        """Resolve a request through its strategy, with offline fallbacks."""
        strategy = classify_request(request)
        if strategy is CacheStrategy.NETWORK_ONLY:
            return await self._fetch(request)

        try:
            if strategy is CacheStrategy.CACHE_FIRST:
                return await self.cache_first(request)
            if strategy is CacheStrategy.STALE_WHILE_REVALIDATE:
                return await self.stale_while_revalidate(request)
            return await self.network_first(request)
        except httpx.TransportError as e:
            logger.warning(f"Fetch failed for {request.url}: {e}")
            return await self.handle_fetch_error(request)

    async def cache_first(self, request: httpx.Request) -> httpx.Response:
        cached = await self.storage.match(request.url)
        if cached is not None:
            return cached

        response = await self._fetch(request)
        if response.is_success:
            store = await self.storage.open(RUNTIME_CACHE)
            await store.put(request.url, response)
        return response

    async def network_first(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._fetch(request)
        except httpx.TransportError:
            cached = await self.storage.match(request.url)
            if cached is not None:
                return cached
            raise

        if response.is_success:
            store = await self.storage.open(RUNTIME_CACHE)
            await store.put(request.url, response)
        return response

    async def stale_while_revalidate(self, request: httpx.Request) -> httpx.Response:
        cached = await self.storage.match(request.url)
        if cached is not None:
            self._spawn(self._revalidate_in_background(request))
            return cached
        return await self._revalidate(request)

    async def _revalidate(self, request: httpx.Request) -> httpx.Response:
        response = await self._fetch(request)
        if response.is_success:
            store = await self.storage.open(RUNTIME_CACHE)
            await store.put(request.url, response)
        return response

    async def _revalidate_in_background(self, request: httpx.Request) -> None:
        try:
            await self._revalidate(request)
        except httpx.TransportError as e:
            logger.info(f"Background revalidation failed for {request.url}: {e}")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for every pending background revalidation."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending)

    async def handle_fetch_error(self, request: httpx.Request) -> httpx.Response:
        cached = await self.storage.match(request.url)
        if cached is not None:
            return cached

        if is_navigation(request):
            offline_page = await self.storage.match(self.url_for(OFFLINE_PAGE))
            if offline_page is not None:
                return offline_page

        return httpx.Response(503, json=OFFLINE_BODY, request=request)

    # -- control messages --------------------------------------------------

    async def handle_message(
        self,
        message: Dict[str, Any],
        reply: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Handle a control message from a page.

        Supported types: SKIP_WAITING, CACHE_URLS {urls}, CLEAR_CACHE
        {cacheName}, GET_CACHE_SIZE. GET_CACHE_SIZE answers through ``reply``
        and also returns the answer.
        """
        msg_type = message.get("type")
        payload = message.get("payload") or {}

        if msg_type == "SKIP_WAITING":
            await self.skip_waiting()
        elif msg_type == "CACHE_URLS":
            await self.cache_urls(payload.get("urls") or [])
        elif msg_type == "CLEAR_CACHE":
            await self.clear_cache(payload.get("cacheName"))
        elif msg_type == "GET_CACHE_SIZE":
            answer = {"type": "CACHE_SIZE", "size": await self.cache_size()}
            if reply is not None:
                reply(answer)
            return answer
        else:
            logger.warning(f"Ignoring unknown control message type: {msg_type!r}")
        return None

    async def cache_urls(self, urls: Iterable[str]) -> int:
        """Best-effort pre-fetch into the runtime store. Returns how many were cached."""
        store = await self.storage.open(RUNTIME_CACHE)

        async def cache_one(url: str) -> bool:
            request = self.build_request(url)
            try:
                response = await self._fetch(request)
            except httpx.TransportError as e:
                logger.warning(f"Failed to cache {url}: {e}")
                return False
            if not response.is_success:
                return False
            await store.put(request.url, response)
            return True

        results = await asyncio.gather(*(cache_one(url) for url in urls))
        return sum(results)

    async def clear_cache(self, cache_name: Optional[str] = None) -> bool:
        name = cache_name or RUNTIME_CACHE
        deleted = await self.storage.delete(name)
        logger.info(f"Cache cleared: {name} ({deleted})")
        return deleted

    async def cache_size(self) -> int:
        """Total stored body size across every store, in bytes."""
        total = 0
        for name in await self.storage.keys():
            store = await self.storage.open(name)
            total += store.byte_size()
        return total

    async def cache_stats(self) -> Dict[str, int]:
        stats = {}
        for name in await self.storage.keys():
            stats[name] = len(await self.storage.open(name))
        return stats

    # -- background sync ---------------------------------------------------

    async def sync(self, tag: str) -> int:
        """
        Flush a local queue for a background-sync tag.

        Returns the number of items acknowledged (and removed).
        """
        if tag == SyncTag.FORM_SUBMISSION.value:
            return await self._flush_queue(self.submission_queue, SUBMIT_ENDPOINT)
        if tag == SyncTag.ANALYTICS_DATA.value:
            return await self._flush_queue(self.analytics_queue, ANALYTICS_ENDPOINT)
        logger.warning(f"Ignoring unknown sync tag: {tag!r}")
        return 0

    async def _flush_queue(self, queue: Optional[OfflineQueue], endpoint: str) -> int:
        if queue is None or not len(queue):
            return 0

        delivered = 0
        for item in queue.items():
            queue.mark_attempt(item.id)
            try:
                response = await self._client.post(self.url_for(endpoint), json=item.data)
            except httpx.TransportError as e:
                logger.warning(f"Failed to sync {queue.name} item {item.id}: {e}")
                continue

            if response.is_success:
                queue.remove(item.id)
                delivered += 1
            else:
                logger.warning(
                    f"Sync of {queue.name} item {item.id} rejected with HTTP {response.status_code}"
                )

        logger.info(f"Synced {delivered} {queue.name} item(s)")
        return delivered

    async def close(self) -> None:
        await self.drain()
        if self._owns_client:
            await self._client.aclose()
