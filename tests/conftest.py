"""Shared fixtures: an in-memory site and fake fetchers. No network access."""

from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from site_snapshot import (
    AssetFailure,
    AssetFetcher,
    EmptyPageError,
    FetchedAsset,
    FetchedPage,
    FetcherUnavailable,
    NavigationError,
    PageFetcher,
    RawNetworkResource,
)

SEED = "https://example.com/"

HOME_HTML = """
<html><head>
  <title>Example Home</title>
  <meta name="description" content="An example site">
  <link rel="stylesheet" href="/css/site.css">
  <link rel="preload" as="font" href="/fonts/body.woff2">
  <script src="/js/app.js"></script>
  <style>
    body { background: url('/img/bg.jpg'); }
    .dot { background: url(data:image/png;base64,iVBORw0KGgo=); }
  </style>
</head><body>
  <a href="#top">Top</a>
  <a href="/about">About</a>
  <a href="/blog/">Blog</a>
  <a href="https://other.org/x">Elsewhere</a>
  <a href="mailto:hello@example.com">Mail</a>
  <a href="/about#team">About again</a>
  <img src="/img/logo.png">
</body></html>
"""

ABOUT_HTML = """
<html><head><title>About</title></head><body>
  <a href="/">Home</a>
  <a href="/team">Team</a>
  <img src="/img/logo.png">
</body></html>
"""

BLOG_HTML = """
<html><head><title>Blog</title></head><body>
  <a href="/blog/post-1">First post</a>
</body></html>
"""

TEAM_HTML = "<html><body><h1>Team</h1></body></html>"
POST_HTML = "<html><head><title>Post 1</title></head><body><p>Hi</p></body></html>"

SITE_PAGES = {
    "https://example.com/": HOME_HTML,
    "https://example.com/about": ABOUT_HTML,
    "https://example.com/blog/": BLOG_HTML,
    "https://example.com/team": TEAM_HTML,
    "https://example.com/blog/post-1": POST_HTML,
}

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 16

SITE_ASSETS = {
    "https://example.com/css/site.css": (b"body{color:red}", "text/css"),
    "https://example.com/js/app.js": (b"console.log('hi')", "application/javascript"),
    "https://example.com/img/logo.png": (PNG_BYTES, "image/png"),
    "https://example.com/img/bg.jpg": (JPEG_BYTES, "image/jpeg"),
    "https://example.com/fonts/body.woff2": (b"wOF2fontdata", "font/woff2"),
}


class FakePageFetcher(PageFetcher):
    def __init__(
        self,
        pages: Dict[str, str],
        resources: Optional[Dict[str, Iterable[RawNetworkResource]]] = None,
        failures: Optional[Dict[str, str]] = None,
        fail_open: bool = False,
        open_error: Optional[Exception] = None,
        on_fetch: Optional[Callable[[str], None]] = None,
    ):
        self.pages = pages
        self.resources = resources or {}
        self.failures = failures or {}
        self.fail_open = fail_open
        self.open_error = open_error
        self.on_fetch = on_fetch
        self.fetched: List[str] = []
        self.opened = False
        self.closed = False

    def open(self) -> None:
        if self.fail_open:
            raise FetcherUnavailable("no working browser configuration")
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def fetch(self, url: str) -> FetchedPage:
        self.fetched.append(url)
        if self.on_fetch is not None:
            self.on_fetch(url)
        if url in self.failures:
            raise NavigationError(self.failures[url])
        if url not in self.pages:
            raise NavigationError(f"HTTP 404 for {url}")
        html = self.pages[url]
        if not html.strip():
            raise EmptyPageError(f"empty page: {url}")
        return FetchedPage(
            url=url,
            final_url=url,
            html=html,
            resources=tuple(self.resources.get(url, ())),
        )

    def close(self) -> None:
        self.closed = True


class FakeAssetFetcher(AssetFetcher):
    def __init__(
        self,
        assets: Dict[str, Tuple[bytes, str]],
        failing: Iterable[str] = (),
        errors: Optional[Dict[str, Exception]] = None,
    ):
        self.assets = assets
        self.failing = set(failing)
        self.errors = errors or {}
        self.calls: List[str] = []
        self._lock = Lock()

    def fetch_bytes(self, url: str) -> FetchedAsset:
        with self._lock:
            self.calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url in self.failing:
            raise AssetFailure(f"connection reset: {url}")
        if url not in self.assets:
            raise AssetFailure(f"HTTP 404 for {url}")
        body, content_type = self.assets[url]
        return FetchedAsset(url=url, content=body, content_type=content_type)


@pytest.fixture
def seed_url() -> str:
    return SEED


@pytest.fixture
def site_pages() -> Dict[str, str]:
    return dict(SITE_PAGES)


@pytest.fixture
def site_assets() -> Dict[str, Tuple[bytes, str]]:
    return dict(SITE_ASSETS)


@pytest.fixture
def make_page_fetcher() -> Callable[..., FakePageFetcher]:
    """Factory for page fetchers serving the example site by default."""

    def _make(pages: Optional[Dict[str, str]] = None, **kwargs) -> FakePageFetcher:
        return FakePageFetcher(dict(SITE_PAGES) if pages is None else pages, **kwargs)

    return _make


@pytest.fixture
def make_asset_fetcher() -> Callable[..., FakeAssetFetcher]:
    def _make(
        assets: Optional[Dict[str, Tuple[bytes, str]]] = None,
        failing: Iterable[str] = (),
        errors: Optional[Dict[str, Exception]] = None,
    ) -> FakeAssetFetcher:
        return FakeAssetFetcher(
            dict(SITE_ASSETS) if assets is None else assets, failing, errors
        )

    return _make


@pytest.fixture
def page_fetcher(make_page_fetcher) -> FakePageFetcher:
    return make_page_fetcher()


@pytest.fixture
def asset_fetcher(make_asset_fetcher) -> FakeAssetFetcher:
    return make_asset_fetcher()
