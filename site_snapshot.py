#!/usr/bin/env python3
import argparse
import base64
import hashlib
import json
import logging
import os
import random
import re
import sys
import threading
import uuid
import zipfile
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from io import BytesIO
from pathlib import Path
from threading import Lock
from typing import (
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
    Union,
)
from urllib.parse import unquote, urldefrag, urljoin, urlparse

import cssbeautifier
import jsbeautifier
import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
INVALID_PATH_CHARS_RE = re.compile(r"[:\\=*\"'?~|<>]|\.$")
DOT_BEFORE_SLASH_RE = re.compile(r"(\s|\.)/")
DOT_AFTER_SLASH_RE = re.compile(r"/(\s|\.)")
NON_ASCII_RE = re.compile(r"[^\x00-\x7F]")
DATA_URI_INFO_RE = re.compile(r"[^A-Za-z0-9]")
UNSAFE_ZIPNAME_RE = re.compile(r"[^A-Za-z0-9.]")

DATA_URI_DIR = "_DataURI/"
DEFAULT_FILENAME = "index.html"
ARCHIVE_ASSETS_DIR = "assets/"
METADATA_NAME = "metadata.json"
ZIP_COMPRESSLEVEL = 6
BEAUTIFY_EXTS = {"js", "json", "html", "css", "xml"}
SKIPPED_CONTENT_TYPES = (
    "application/octet-stream",
    "application/x-shockwave-flash",
    "application/x-msdownload",
    "application/x-executable",
)

# First character of the base64 form of an image body. Approximate: a
# leading "P" is really any body starting with bytes 0x3C-0x3F.
IMAGE_SNIFF_EXT = {"/": ".jpg", "R": ".gif", "i": ".png", "U": ".webp", "P": ".png"}
IMAGE_SUBTYPE_EXT = {
    "png": ".png",
    "jpeg": ".jpg",
    "jpg": ".jpg",
    "pjpeg": ".jpg",
    "gif": ".gif",
    "webp": ".webp",
    "avif": ".avif",
    "bmp": ".bmp",
    "x-icon": ".ico",
    "vnd.microsoft.icon": ".ico",
}

PROBE_URL = "data:text/html,<html><body>ok</body></html>"
BROWSER_LAUNCH_STRATEGIES: List[Tuple[str, Dict[str, object]]] = [
    (
        "hardened configuration",
        {
            "headless": True,
            "args": [
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-dev-shm-usage",
                "--disable-gpu",
                "--no-zygote",
                "--no-first-run",
            ],
        },
    ),
    (
        "minimal configuration",
        {
            "headless": True,
            "args": [
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-dev-shm-usage",
            ],
        },
    ),
    (
        "no sandbox configuration",
        {"headless": True, "args": ["--no-sandbox", "--disable-setuid-sandbox"]},
    ),
    ("basic configuration", {"headless": True}),
]

# -------------------- Settings --------------------


@dataclass(frozen=True)
class CloneOptions:
    max_pages: int = 10
    include_assets: bool = True


@dataclass(frozen=True)
class ArchiveOptions:
    beautify: bool = False
    ignore_empty: bool = False


@dataclass
class Settings:
    timeout: float = 30.0
    asset_timeout: float = 10.0
    workers: int = 8
    max_bytes: int = 50_000_000
    user_agent: Optional[str] = None

    # Crawl
    max_pages: int = 10
    include_assets: bool = True

    # Rendering
    render_js: bool = False
    render_timeout_ms: int = 30000
    wait_until: str = "networkidle"

    # Archive
    beautify: bool = False
    ignore_empty: bool = False

    def clone_options(self) -> CloneOptions:
        return CloneOptions(
            max_pages=self.max_pages, include_assets=self.include_assets
        )

    def archive_options(self) -> ArchiveOptions:
        return ArchiveOptions(beautify=self.beautify, ignore_empty=self.ignore_empty)


# -------------------- Errors --------------------


class SnapshotError(Exception):
    pass


class InvalidInput(SnapshotError, ValueError):
    pass


class FetchFailure(SnapshotError):
    pass


class NavigationError(FetchFailure):
    pass


class EmptyPageError(FetchFailure):
    pass


class AssetFailure(SnapshotError):
    pass


class FetcherUnavailable(SnapshotError):
    pass


class ArchiveNotReady(SnapshotError):
    pass


class JobNotFound(SnapshotError, KeyError):
    def __str__(self) -> str:
        return f"job not found: {self.args[0] if self.args else ''}"


class JobStateError(SnapshotError):
    pass


# -------------------- Utils --------------------


def utc_now_iso() -> str:
    # RFC3339 UTC timestamp without microseconds
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def _with_root_path(u: str) -> str:
    p = urlparse(u)
    if p.netloc and not p.path:
        return p._replace(path="/").geturl()
    return u


def normalize_link(base: str, href: str) -> str:
    return _with_root_path(urldefrag(urljoin(base, href.strip()))[0])


def validate_seed_url(url: str) -> str:
    if not isinstance(url, str) or not url.strip():
        raise InvalidInput("URL is required")
    candidate = url.strip()
    p = urlparse(candidate)
    if p.scheme not in ("http", "https") or not p.hostname:
        raise InvalidInput(f"invalid URL {url!r}: use http:// or https://")
    return _with_root_path(urldefrag(candidate)[0])


def is_text_like(content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    return (
        ct.startswith("text/") or "json" in ct or "javascript" in ct or "xml" in ct
    )


def decode_body(body: bytes, content_type: Optional[str]) -> Union[bytes, str]:
    if is_text_like(content_type):
        return body.decode("utf-8", errors="replace")
    return body


def progress_percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, int(done * 100 / total + 0.5))


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def build_session(user_agent: Optional[str] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=5,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=64, pool_maxsize=64)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    if user_agent:
        s.headers["User-Agent"] = user_agent
    return s


# -------------------- Data model --------------------

Content = Union[bytes, str]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class ResourceSource(str, Enum):
    NETWORK = "NETWORK"
    STATIC = "STATIC"


@dataclass(frozen=True)
class SavePath:
    path: str
    name: str
    is_data_uri: bool = False


@dataclass(frozen=True)
class Resource:
    url: str
    content_type: Optional[str]
    content: Optional[Content]
    size: int
    source: ResourceSource
    save_path: str
    save_name: str
    timestamp: str

    @property
    def has_content(self) -> bool:
        return bool(self.content)


@dataclass(frozen=True)
class Page:
    url: str
    title: str
    description: str
    html: str
    links: Tuple[str, ...] = ()
    images: Tuple[str, ...] = ()
    css_files: Tuple[str, ...] = ()
    js_files: Tuple[str, ...] = ()
    font_files: Tuple[str, ...] = ()
    style_urls: Tuple[str, ...] = ()
    timestamp: str = ""


@dataclass(frozen=True)
class RawNetworkResource:
    url: str
    content_type: Optional[str]
    body: bytes
    status: int


@dataclass(frozen=True)
class FetchedPage:
    url: str
    final_url: str
    html: str
    resources: Tuple[RawNetworkResource, ...] = ()


@dataclass(frozen=True)
class FetchedAsset:
    url: str
    content: bytes
    content_type: Optional[str]


@dataclass(frozen=True)
class CollectedPage:
    page: Page
    resources: Tuple[Resource, ...] = ()


@dataclass
class Job:
    id: str
    seed_url: str
    max_pages: int = 10
    include_assets: bool = True
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total_pages: int = 0
    completed_pages: int = 0
    pages: List[Page] = field(default_factory=list)
    assets: List[Resource] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    finished_at: Optional[str] = None
    cancel_requested: bool = False

    def snapshot(self) -> "Job":
        return replace(
            self,
            pages=list(self.pages),
            assets=list(self.assets),
            errors=[dict(e) for e in self.errors],
        )

    def _transition(self, status: JobStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise JobStateError(
                f"job {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def start(self) -> None:
        self._transition(JobStatus.RUNNING)
        self.total_pages = 1

    def record_page(self, page: Page, discovered: int) -> None:
        self.pages.append(page)
        self.completed_pages += 1
        self.total_pages = max(self.total_pages, min(discovered, self.max_pages))
        self.progress = max(
            self.progress, progress_percent(self.completed_pages, self.max_pages)
        )

    def record_error(self, url: str, error: str) -> None:
        self.errors.append({"url": url, "error": error})

    def complete(self, assets: Iterable[Resource]) -> None:
        self._transition(JobStatus.COMPLETED)
        self.assets = list(assets)
        self.progress = 100
        self.finished_at = utc_now_iso()

    def fail(self, error: str) -> None:
        self._transition(JobStatus.FAILED)
        self.error = error
        self.finished_at = utc_now_iso()

    def summary(self) -> Dict[str, object]:
        return {
            "jobId": self.id,
            "seedUrl": self.seed_url,
            "status": self.status.value,
            "progress": self.progress,
            "totalPages": self.total_pages,
            "completedPages": self.completed_pages,
            "totalAssets": len(self.assets),
            "errors": [dict(e) for e in self.errors],
            "error": self.error,
            "createdAt": self.created_at,
            "finishedAt": self.finished_at,
        }


# -------------------- Path resolution --------------------


def _data_uri_suffix(url: str, rng: Optional[random.Random]) -> str:
    if rng is not None:
        return format(rng.getrandbits(52), "x")
    return short_h(url)


def _sniff_image_ext(content_type: str, sample: Optional[Content]) -> str:
    if sample:
        if isinstance(sample, bytes):
            lead = base64.b64encode(sample[:3]).decode("ascii")[:1]
        else:
            lead = sample[:1]
        return IMAGE_SNIFF_EXT.get(lead, ".jpg")
    subtype = content_type.split(";")[0].split("/")[-1].strip()
    return IMAGE_SUBTYPE_EXT.get(subtype, ".jpg")


def infer_extension(content_type: Optional[str], sample: Optional[Content]) -> str:
    ct = (content_type or "").lower()
    if not ct:
        return ".html"
    if "svg" in ct:
        return ".svg"
    if "image" in ct:
        return _sniff_image_ext(ct, sample)
    if "stylesheet" in ct or "css" in ct:
        return ".css"
    if "json" in ct:
        return ".json"
    if "javascript" in ct or "ecmascript" in ct or "js" in ct:
        return ".js"
    if "html" in ct or "xml" in ct:
        return ".html"
    if "font" in ct or "woff" in ct or "ttf" in ct or "otf" in ct:
        for ext in ("woff2", "woff", "ttf", "otf"):
            if ext in ct:
                return "." + ext
        return ".font"
    return ".html"


def _has_extension(name: str) -> bool:
    return len(os.path.splitext(name)[1]) > 1


def _strip_invalid(value: str) -> str:
    value = INVALID_PATH_CHARS_RE.sub("", value)
    return NON_ASCII_RE.sub("_", value)


def _percent_decode(value: str) -> str:
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        logging.debug("could not decode %s, keeping it encoded", value)
        return value


def _sanitize_path(path: str) -> str:
    path = _strip_invalid(path)
    path = path.replace("//", "/")
    path = DOT_BEFORE_SLASH_RE.sub("/", path)
    path = DOT_AFTER_SLASH_RE.sub("/", path)
    if "%" in path:
        path = _strip_invalid(_percent_decode(path))
    return "/".join(seg for seg in path.split("/") if seg not in ("", ".", ".."))


def resolve_url_to_path(
    url: str,
    content_type: Optional[str] = None,
    content_sample: Optional[Content] = None,
    rng: Optional[random.Random] = None,
) -> SavePath:
    """Map a resource URL to its relative location inside an archive.

    Data URIs go under ``_DataURI/`` with a suffix taken from ``rng`` when
    given, otherwise from a hash of the URI so repeated calls agree.
    """
    found = url.find("://")
    if found == -1 or found >= 10:
        is_data_uri = True
        suffix = _data_uri_suffix(url, rng)
        if url.startswith("data:"):
            info = DATA_URI_INFO_RE.sub(".", url.split(";")[0].split(",")[0][:30])
            name = f"{info}.{suffix}.txt"
        else:
            name = f"data.{suffix}.txt"
        path = DATA_URI_DIR + name
    else:
        is_data_uri = False
        scheme, rest = url.split("://", 1)
        if "http" in scheme.lower():
            path = rest.split("#")[0].split("?")[0]
        else:
            path = url.replace("://", "---", 1).split("#")[0].split("?")[0]
        if "/" not in path:
            path += "/"
        if path.endswith("/"):
            path += DEFAULT_FILENAME
        name = path[path.rfind("/") + 1 :]

    name = name.split(";")[0].rstrip(". ") or DEFAULT_FILENAME
    path = path[: path.rfind("/") + 1] + name
    if not _has_extension(name):
        ext = infer_extension(content_type, content_sample)
        name += ext
        path += ext

    path = _sanitize_path(path) or DEFAULT_FILENAME
    head, _, name = path.rpartition("/")
    name = name.rstrip(". ")
    if not _has_extension(name):
        name = f"{name}.html" if name else DEFAULT_FILENAME
    path = f"{head}/{name}" if head else name
    return SavePath(path=path, name=name, is_data_uri=is_data_uri)


def make_resource(
    url: str, content_type: Optional[str], body: bytes, source: ResourceSource
) -> Resource:
    content = decode_body(body, content_type)
    save = resolve_url_to_path(url, content_type, content)
    return Resource(
        url=url,
        content_type=content_type,
        content=content,
        size=len(body),
        source=source,
        save_path=save.path,
        save_name=save.name,
        timestamp=utc_now_iso(),
    )


# -------------------- Deduplication --------------------


def _insert_counter(value: str, k: int) -> str:
    dot = value.rfind(".")
    if dot <= value.rfind("/"):
        return f"{value} ({k})"
    return f"{value[:dot]} ({k}){value[dot:]}"


def dedupe_resources(resources: Iterable[Resource]) -> List[Resource]:
    by_url: Dict[str, Resource] = {}
    for res in resources:
        current = by_url.get(res.url)
        if current is None or (not current.has_content and res.has_content):
            by_url[res.url] = res

    groups: Dict[str, List[Resource]] = {}
    for res in by_url.values():
        if res.save_path and res.save_name:
            groups.setdefault(res.save_path, []).append(res)

    taken: Set[str] = set(groups)
    result: List[Resource] = []
    for key in sorted(groups):
        group = groups[key]
        result.append(group[0])
        for k, res in enumerate(group[1:], start=1):
            n = k
            path = _insert_counter(res.save_path, n)
            while path in taken:
                n += 1
                path = _insert_counter(res.save_path, n)
            taken.add(path)
            result.append(
                replace(
                    res, save_path=path, save_name=_insert_counter(res.save_name, n)
                )
            )
    # Sorting by final path keeps dedupe idempotent; a renamed duplicate
    # can land away from its group (e.g. "s (1).css" < "s 2.css" < "s.css").
    result.sort(key=lambda r: r.save_path)
    return result


# -------------------- Fetchers --------------------

T = TypeVar("T")
R = TypeVar("R")


def first_working(
    strategies: Sequence[Tuple[str, T]], attempt: Callable[[str, T], R]
) -> R:
    last_error: Optional[Exception] = None
    for name, option in strategies:
        try:
            result = attempt(name, option)
        except Exception as e:
            logging.warning("%s failed: %s", name, e)
            last_error = e
            continue
        logging.info("initialized with %s", name)
        return result
    raise FetcherUnavailable(
        f"initialization failed after {len(strategies)} attempts; last error: {last_error}"
    )


class PageFetcher:
    def open(self) -> None:
        pass

    def fetch(self, url: str) -> FetchedPage:
        raise NotImplementedError

    def close(self) -> None:
        pass


class AssetFetcher:
    def fetch_bytes(self, url: str) -> FetchedAsset:
        raise NotImplementedError


class RequestsPageFetcher(PageFetcher):
    def __init__(self, session: requests.Session, timeout: float):
        self.session = session
        self.timeout = timeout

    def fetch(self, url: str) -> FetchedPage:
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise NavigationError(f"navigation failed for {url}: {e}") from e
        if r.status_code >= 400:
            raise NavigationError(f"HTTP {r.status_code} for {url}")
        ct = (r.headers.get("Content-Type") or "").lower()
        if "text/html" not in ct and "application/xhtml+xml" not in ct:
            raise NavigationError(f"not an HTML document ({ct or 'no type'}): {url}")
        if not r.encoding:
            r.encoding = r.apparent_encoding or "utf-8"
        html = r.text
        if not html.strip():
            raise EmptyPageError(f"empty page: {url}")
        return FetchedPage(url=url, final_url=r.url or url, html=html)


class PlaywrightPageFetcher(PageFetcher):
    def __init__(
        self,
        wait_until: str = "networkidle",
        timeout_ms: int = 30000,
        user_agent: Optional[str] = None,
        strategies: Optional[List[Tuple[str, Dict[str, object]]]] = None,
    ):
        self.wait_until = wait_until
        self.timeout_ms = timeout_ms
        self.user_agent = user_agent
        self.strategies = strategies or BROWSER_LAUNCH_STRATEGIES
        self._pl = None
        self._browser = None

    def open(self) -> None:
        if self._browser is not None:
            return
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise FetcherUnavailable(
                "Playwright not installed. Run: pip install playwright && playwright install"
            ) from e
        try:
            self._pl = sync_playwright().start()
        except Exception as e:
            raise FetcherUnavailable(f"could not start Playwright: {e}") from e
        try:
            self._browser = first_working(self.strategies, self._launch)
        except FetcherUnavailable:
            self._pl.stop()
            self._pl = None
            raise

    def _launch(self, name: str, options: Dict[str, object]):
        logging.debug("launching browser with %s", name)
        browser = self._pl.chromium.launch(timeout=self.timeout_ms, **options)
        try:
            probe = browser.new_page()
            probe.goto(PROBE_URL, timeout=10000)
            probe.close()
        except Exception:
            browser.close()
            raise
        return browser

    def _navigate(self, page, url: str) -> None:
        try:
            resp = page.goto(url, wait_until=self.wait_until, timeout=self.timeout_ms)
        except Exception as first:
            logging.warning("navigation failed for %s (%s), retrying", url, first)
            try:
                resp = page.goto(
                    url, wait_until="domcontentloaded", timeout=self.timeout_ms
                )
            except Exception as second:
                raise NavigationError(
                    f"navigation failed: {first}. fallback also failed: {second}"
                ) from second
        if resp is not None and resp.status >= 400:
            raise NavigationError(f"HTTP {resp.status} for {url}")

    def fetch(self, url: str) -> FetchedPage:
        self.open()
        context = self._browser.new_context(user_agent=self.user_agent)
        responses = []
        try:
            page = context.new_page()
            page.on("response", responses.append)
            self._navigate(page, url)
            html = page.content()
            final_url = page.url
            captured: List[RawNetworkResource] = []
            for resp in responses:
                try:
                    body = resp.body()
                except Exception as e:
                    logging.debug("no body for %s: %s", resp.url, e)
                    continue
                captured.append(
                    RawNetworkResource(
                        url=resp.url,
                        content_type=resp.headers.get("content-type"),
                        body=body,
                        status=resp.status,
                    )
                )
        except FetchFailure:
            raise
        except Exception as e:
            raise NavigationError(f"render failed for {url}: {e}") from e
        finally:
            try:
                context.close()
            except Exception as e:
                logging.debug("closing browser context failed: %s", e)
        if not html.strip():
            raise EmptyPageError(f"empty page: {url}")
        return FetchedPage(
            url=url, final_url=final_url, html=html, resources=tuple(captured)
        )

    def close(self) -> None:
        try:
            if self._browser:
                self._browser.close()
        except Exception as e:
            logging.debug("closing browser failed: %s", e)
        try:
            if self._pl:
                self._pl.stop()
        except Exception as e:
            logging.debug("stopping playwright failed: %s", e)
        self._browser = None
        self._pl = None


class RequestsAssetFetcher(AssetFetcher):
    def __init__(self, session: requests.Session, timeout: float, max_bytes: int):
        self.session = session
        self.timeout = timeout
        self.max_bytes = max_bytes

    def fetch_bytes(self, url: str) -> FetchedAsset:
        try:
            resp = self.session.get(url, timeout=self.timeout, stream=True)
        except requests.RequestException as e:
            raise AssetFailure(f"error downloading {url}: {e}") from e
        with resp:
            if resp.status_code >= 400:
                raise AssetFailure(f"HTTP {resp.status_code} for {url}")
            cl = resp.headers.get("Content-Length")
            if cl and cl.isdigit() and int(cl) > self.max_bytes:
                raise AssetFailure(f"skip large file {url} ({cl} bytes)")
            buf = BytesIO()
            try:
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    if not chunk:
                        continue
                    if buf.tell() + len(chunk) > self.max_bytes:
                        raise AssetFailure(f"{url} exceeds {self.max_bytes} bytes")
                    buf.write(chunk)
            except requests.RequestException as e:
                raise AssetFailure(f"error downloading {url}: {e}") from e
            content_type = resp.headers.get("Content-Type")
        if not buf.tell():
            raise AssetFailure(f"empty response {url}")
        return FetchedAsset(url=url, content=buf.getvalue(), content_type=content_type)


def get_page_fetcher(settings: Settings, session: requests.Session) -> PageFetcher:
    if settings.render_js:
        return PlaywrightPageFetcher(
            settings.wait_until,
            settings.render_timeout_ms,
            user_agent=session.headers.get("User-Agent"),
        )
    return RequestsPageFetcher(session, settings.timeout)


def get_asset_fetcher(settings: Settings, session: requests.Session) -> AssetFetcher:
    return RequestsAssetFetcher(session, settings.asset_timeout, settings.max_bytes)


def fetch_assets(
    asset_fetcher: AssetFetcher, urls: Iterable[str], workers: int
) -> List[Resource]:
    url_list = list(dict.fromkeys(urls))
    if not url_list:
        return []
    fetched: Dict[str, Resource] = {}
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        future_map = {pool.submit(asset_fetcher.fetch_bytes, u): u for u in url_list}
        for fut in as_completed(future_map):
            u = future_map[fut]
            try:
                asset = fut.result()
            except Exception as e:
                logging.warning("skipping asset %s: %s", u, e)
                continue
            fetched[u] = make_resource(
                u, asset.content_type, asset.content, ResourceSource.STATIC
            )
            logging.debug("downloaded asset: %s -> %s", u, fetched[u].save_path)
    return [fetched[u] for u in url_list if u in fetched]


# -------------------- Extraction --------------------


def _absolute_urls(base: str, values: Iterable[Optional[str]]) -> Tuple[str, ...]:
    urls: List[str] = []
    for v in values:
        if not can_fetch_url(v):
            continue
        u = normalize_link(base, v)
        if urlparse(u).scheme in ("http", "https"):
            urls.append(u)
    return tuple(dict.fromkeys(urls))


def _rels(tag) -> Set[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return {r.lower() for r in rel}


def parse_page(html: str, page_url: str, base_url: Optional[str] = None) -> Page:
    soup = bs4_parse(html)
    base = effective_base_url(soup, base_url or page_url)

    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    meta = soup.find("meta", attrs={"name": "description"})
    description = (meta.get("content") or "") if meta else ""

    stylesheets: List[str] = []
    fonts: List[str] = []
    for link in soup.select("link[href]"):
        rels = _rels(link)
        if "stylesheet" in rels:
            stylesheets.append(link.get("href"))
        elif "preload" in rels and (link.get("as") or "").lower() == "font":
            fonts.append(link.get("href"))

    inline_refs: List[str] = []
    for style in soup.find_all("style"):
        text = style.string or style.get_text() or ""
        for m in CSS_URL_RE.finditer(text):
            inline_refs.append(m.group(2).strip())

    return Page(
        url=page_url,
        title=title or "No title",
        description=description,
        html=html,
        links=_absolute_urls(base, (a.get("href") for a in soup.select("a[href]"))),
        images=_absolute_urls(base, (i.get("src") for i in soup.select("img[src]"))),
        css_files=_absolute_urls(base, stylesheets),
        js_files=_absolute_urls(base, (s.get("src") for s in soup.select("script[src]"))),
        font_files=_absolute_urls(base, fonts),
        style_urls=_absolute_urls(base, inline_refs),
        timestamp=utc_now_iso(),
    )


def page_asset_urls(page: Page) -> List[str]:
    return list(
        dict.fromkeys(
            [
                *page.images,
                *page.css_files,
                *page.js_files,
                *page.font_files,
                *page.style_urls,
            ]
        )
    )


def keep_network_response(raw: RawNetworkResource, page_urls: Set[str]) -> bool:
    if 300 <= raw.status < 400:
        return False
    if raw.url.startswith(("data:", "blob:")):
        return False
    ct = (raw.content_type or "").lower()
    if "text/html" in ct and raw.url not in page_urls:
        return False
    return not any(t in ct for t in SKIPPED_CONTENT_TYPES)


def collect_page(
    page_url: str,
    page_fetcher: PageFetcher,
    asset_fetcher: Optional[AssetFetcher] = None,
    workers: int = 4,
) -> CollectedPage:
    """Fetch one page and capture the resources it references.

    Responses seen while the page loaded become NETWORK resources. With an
    ``asset_fetcher``, referenced assets that were not seen are downloaded
    afterwards as STATIC resources; failed downloads are skipped.
    """
    fetched = page_fetcher.fetch(page_url)
    page = parse_page(fetched.html, page_url, base_url=fetched.final_url)

    own = {page_url, fetched.final_url}
    resources: List[Resource] = []
    seen: Set[str] = set()
    for raw in fetched.resources:
        if not keep_network_response(raw, own):
            logging.debug("dropping response %s (%s)", raw.url, raw.status)
            continue
        resources.append(
            make_resource(raw.url, raw.content_type, raw.body, ResourceSource.NETWORK)
        )
        seen.add(raw.url)

    if asset_fetcher is not None:
        missing = [u for u in page_asset_urls(page) if u not in seen]
        resources.extend(fetch_assets(asset_fetcher, missing, workers))

    logging.debug("collected %s: %d resources", page_url, len(resources))
    return CollectedPage(page=page, resources=tuple(resources))


# -------------------- Job store --------------------


class JobStore:
    """Process-wide job registry. Readers always receive snapshots."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = Lock()

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def put(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise JobStateError(f"job {job.id} already exists")
            self._jobs[job.id] = job.snapshot()

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._require(job_id).snapshot()

    def update(self, job_id: str, mutate: Callable[..., None], *args) -> Job:
        with self._lock:
            job = self._require(job_id)
            mutate(job, *args)
            return job.snapshot()

    def request_cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._require(job_id)
            if job.status.terminal:
                return False
            job.cancel_requested = True
            return True

    def cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            return self._require(job_id).cancel_requested

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


# -------------------- Scheduler --------------------


def _close_quietly(fetcher: PageFetcher) -> None:
    try:
        fetcher.close()
    except Exception as e:
        logging.debug("closing page fetcher failed: %s", e)


class CrawlScheduler:
    def __init__(
        self,
        store: JobStore,
        page_fetcher: PageFetcher,
        asset_fetcher: Optional[AssetFetcher] = None,
        workers: int = 8,
    ):
        self.store = store
        self.page_fetcher = page_fetcher
        self.asset_fetcher = asset_fetcher
        self.workers = workers

    def run(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        try:
            try:
                self.page_fetcher.open()
            except Exception as e:
                logging.error("page fetcher unavailable for job %s: %s", job_id, e)
                return self.store.update(job_id, Job.fail, str(e))
            return self._crawl(job)
        except Exception as e:
            logging.exception("job %s failed", job_id)
            if not self.store.get(job_id).status.terminal:
                self.store.update(job_id, Job.fail, str(e))
            raise
        finally:
            _close_quietly(self.page_fetcher)

    def _cancel(self, job_id: str) -> Job:
        logging.warning("job %s cancelled", job_id)
        return self.store.update(job_id, Job.fail, "cancelled")

    def _crawl(self, job: Job) -> Job:
        seed_host = urlparse(job.seed_url).hostname
        frontier: Deque[str] = deque([job.seed_url])
        queued: Set[str] = {job.seed_url}
        visited: Set[str] = set()
        pages: List[Page] = []
        captured: Dict[str, Resource] = {}

        self.store.update(job.id, Job.start)
        while frontier and len(pages) < job.max_pages:
            if self.store.cancel_requested(job.id):
                return self._cancel(job.id)
            url = frontier.popleft()
            if url in visited:
                continue
            visited.add(url)

            logging.info("fetch page [%d/%d]: %s", len(pages) + 1, job.max_pages, url)
            try:
                collected = collect_page(url, self.page_fetcher)
            except FetchFailure as e:
                logging.warning("page failed %s: %s", url, e)
                self.store.update(job.id, Job.record_error, url, str(e))
                continue

            page = collected.page
            pages.append(page)
            for link in page.links:
                if len(frontier) >= job.max_pages:
                    break
                if link in queued or link in visited:
                    continue
                if urlparse(link).hostname != seed_host:
                    continue
                frontier.append(link)
                queued.add(link)

            if job.include_assets:
                for res in collected.resources:
                    if res.url in queued or "text/html" in (res.content_type or ""):
                        continue
                    current = captured.get(res.url)
                    if current is None or (not current.has_content and res.has_content):
                        captured[res.url] = res

            self.store.update(
                job.id, Job.record_page, page, len(visited) + len(frontier)
            )

        assets: List[Resource] = []
        if job.include_assets:
            if self.store.cancel_requested(job.id):
                return self._cancel(job.id)
            wanted = list(dict.fromkeys(u for p in pages for u in page_asset_urls(p)))
            pending = [u for u in wanted if u not in captured]
            logging.info(
                "downloading %d assets (%d captured during page loads)",
                len(pending),
                len(captured),
            )
            fetched: List[Resource] = []
            if self.asset_fetcher is not None:
                fetched = fetch_assets(self.asset_fetcher, pending, self.workers)
            assets = [*captured.values(), *fetched]

        done = self.store.update(job.id, Job.complete, assets)
        logging.info(
            "job %s completed: %d pages, %d assets, %d errors",
            job.id,
            len(done.pages),
            len(done.assets),
            len(done.errors),
        )
        return done


# -------------------- Archive --------------------


def beautify_content(content: str, ext: str) -> str:
    try:
        if ext == "html":
            return BeautifulSoup(content, "lxml").prettify()
        if ext == "xml":
            return BeautifulSoup(content, "xml").prettify()
        if ext == "json":
            return json.dumps(json.loads(content), indent=2, ensure_ascii=False) + "\n"
        if ext == "js":
            return jsbeautifier.beautify(content)
        if ext == "css":
            return cssbeautifier.beautify(content)
    except Exception as e:
        logging.warning("beautify failed for .%s content: %s", ext, e)
    return content


def _ext_of(name: str) -> str:
    return os.path.splitext(name)[1].lstrip(".").lower()


def page_resources(job: Job) -> List[Resource]:
    out: List[Resource] = []
    for idx, page in enumerate(job.pages):
        name = DEFAULT_FILENAME if idx == 0 else f"page-{idx}.html"
        out.append(
            Resource(
                url=page.url,
                content_type="text/html",
                content=page.html,
                size=len(page.html.encode("utf-8")),
                source=ResourceSource.NETWORK,
                save_path=name,
                save_name=name,
                timestamp=page.timestamp,
            )
        )
    return out


def archive_entries(job: Job) -> List[Resource]:
    assets = [
        replace(r, save_path=ARCHIVE_ASSETS_DIR + r.save_path)
        for r in dedupe_resources(job.assets)
    ]
    return page_resources(job) + assets


def build_archive(job: Job, options: Optional[ArchiveOptions] = None) -> bytes:
    if job.status is not JobStatus.COMPLETED:
        raise ArchiveNotReady(f"job {job.id} is {job.status.value}, not completed")
    options = options or ArchiveOptions()

    buf = BytesIO()
    written = 0
    with zipfile.ZipFile(
        buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=ZIP_COMPRESSLEVEL
    ) as zf:
        for res in archive_entries(job):
            content = res.content
            ext = _ext_of(res.save_name)
            if options.beautify and isinstance(content, str) and ext in BEAUTIFY_EXTS:
                content = beautify_content(content, ext)
            if not content:
                if options.ignore_empty:
                    logging.debug("skipping %s: no content", res.url)
                    continue
                content = b""
            data = content.encode("utf-8") if isinstance(content, str) else content
            zf.writestr(res.save_path, data)
            written += 1

        metadata = {
            "jobId": job.id,
            "baseUrl": job.pages[0].url if job.pages else job.seed_url,
            "totalPages": len(job.pages),
            "totalAssets": len(job.assets),
            "timestamp": utc_now_iso(),
        }
        zf.writestr(METADATA_NAME, json.dumps(metadata, indent=2))

    logging.info("archive for job %s: %d entries", job.id, written + 1)
    return buf.getvalue()


def archive_filename(job: Job) -> str:
    url = job.pages[0].url if job.pages else job.seed_url
    host = urlparse(url).hostname if url else None
    if not host:
        return "website.zip"
    return UNSAFE_ZIPNAME_RE.sub("_", host) + ".zip"


def describe_archive(data: bytes) -> Dict[str, object]:
    try:
        with zipfile.ZipFile(BytesIO(data)) as zf:
            files = [
                {
                    "name": info.filename,
                    "size": info.file_size,
                    "compressedSize": info.compress_size,
                    "isDirectory": info.is_dir(),
                }
                for info in zf.infolist()
            ]
    except zipfile.BadZipFile as e:
        raise SnapshotError(f"failed to read archive: {e}") from e
    return {
        "fileCount": len(files),
        "totalSize": sum(f["size"] for f in files),
        "compressedSize": len(data),
        "files": files,
    }


# -------------------- API --------------------


class CrawlAPI:
    """Entry points used by outer layers: start jobs, poll them, download."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[JobStore] = None,
        page_fetcher_factory: Optional[Callable[[], PageFetcher]] = None,
        asset_fetcher_factory: Optional[Callable[[], AssetFetcher]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.settings = settings or Settings()
        self.store = store if store is not None else JobStore()
        self._page_fetcher_factory = page_fetcher_factory or self._default_page_fetcher
        self._asset_fetcher_factory = (
            asset_fetcher_factory or self._default_asset_fetcher
        )
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self._session: Optional[requests.Session] = None
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = Lock()

    def _get_session(self) -> requests.Session:
        with self._lock:
            if self._session is None:
                self._session = build_session(self.settings.user_agent)
            return self._session

    def _default_page_fetcher(self) -> PageFetcher:
        return get_page_fetcher(self.settings, self._get_session())

    def _default_asset_fetcher(self) -> AssetFetcher:
        return get_asset_fetcher(self.settings, self._get_session())

    def start_clone(
        self, seed_url: str, options: Optional[CloneOptions] = None, wait: bool = False
    ) -> str:
        options = options or self.settings.clone_options()
        seed = validate_seed_url(seed_url)
        if options.max_pages < 1:
            raise InvalidInput("max_pages must be at least 1")
        job = Job(
            id=self._new_id(),
            seed_url=seed,
            max_pages=options.max_pages,
            include_assets=options.include_assets,
        )
        self.store.put(job)
        logging.info("job %s queued for %s", job.id, seed)

        scheduler = CrawlScheduler(
            self.store,
            self._page_fetcher_factory(),
            self._asset_fetcher_factory() if options.include_assets else None,
            workers=self.settings.workers,
        )
        if wait:
            scheduler.run(job.id)
        else:
            t = threading.Thread(
                target=self._run_in_background,
                args=(scheduler, job.id),
                name=f"crawl-{job.id}",
                daemon=True,
            )
            with self._lock:
                self._threads[job.id] = t
            t.start()
        return job.id

    def _run_in_background(self, scheduler: CrawlScheduler, job_id: str) -> None:
        try:
            scheduler.run(job_id)
        finally:
            with self._lock:
                self._threads.pop(job_id, None)

    def running_jobs(self) -> List[str]:
        with self._lock:
            return list(self._threads)

    def scrape_page(self, url: str) -> str:
        seed = validate_seed_url(url)
        job = Job(id=self._new_id(), seed_url=seed, max_pages=1)
        self.store.put(job)
        fetcher = self._page_fetcher_factory()
        try:
            try:
                fetcher.open()
            except Exception as e:
                logging.error("page fetcher unavailable for job %s: %s", job.id, e)
                self.store.update(job.id, Job.fail, str(e))
                return job.id
            self.store.update(job.id, Job.start)
            try:
                collected = collect_page(
                    seed, fetcher, self._asset_fetcher_factory(), self.settings.workers
                )
            except FetchFailure as e:
                self.store.update(job.id, Job.record_error, seed, str(e))
                self.store.update(job.id, Job.fail, str(e))
                return job.id
            self.store.update(job.id, Job.record_page, collected.page, 1)
            assets = [
                r for r in collected.resources if r.url not in (seed, collected.page.url)
            ]
            self.store.update(job.id, Job.complete, assets)
        except Exception as e:
            logging.exception("job %s failed", job.id)
            if not self.store.get(job.id).status.terminal:
                self.store.update(job.id, Job.fail, str(e))
            raise
        finally:
            _close_quietly(fetcher)
        return job.id

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        with self._lock:
            t = self._threads.get(job_id)
        if t is not None:
            t.join(timeout)
            if not t.is_alive():
                with self._lock:
                    self._threads.pop(job_id, None)
        return self.store.get(job_id)

    def cancel(self, job_id: str) -> bool:
        return self.store.request_cancel(job_id)

    def build_archive(
        self, job_id: str, options: Optional[ArchiveOptions] = None
    ) -> bytes:
        return build_archive(
            self.store.get(job_id), options or self.settings.archive_options()
        )


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise RuntimeError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Crawl a site and package pages and assets into a ZIP snapshot.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) seed URL")
    p.add_argument(
        "output", nargs="?", default=None, help="ZIP path (default: <host>.zip)"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # crawl
    p.add_argument("--max-pages", type=int, default=10, help="max HTML pages")
    p.add_argument(
        "--no-assets", action="store_true", help="do not download images/css/js"
    )
    p.add_argument("--timeout", type=float, default=30.0, help="page timeout seconds")
    p.add_argument(
        "--asset-timeout", type=float, default=10.0, help="asset timeout seconds"
    )
    p.add_argument("--workers", type=int, default=8, help="concurrent asset downloads")
    p.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per asset"
    )
    p.add_argument("--user-agent", type=str, default=None, help="User-Agent header")

    # render
    p.add_argument(
        "--render-js", action="store_true", help="render with Playwright if installed"
    )
    p.add_argument(
        "--render-timeout-ms", type=int, default=30000, help="Playwright timeout ms"
    )
    p.add_argument(
        "--wait-until", type=str, default="networkidle", help="Playwright wait_until"
    )

    # archive
    p.add_argument(
        "--beautify", action="store_true", help="reformat html/css/js/json/xml"
    )
    p.add_argument(
        "--ignore-empty", action="store_true", help="leave out files with no content"
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("crawl", "render", "archive", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        timeout=max(1.0, args.timeout),
        asset_timeout=max(1.0, args.asset_timeout),
        workers=max(1, args.workers),
        max_bytes=max(1024, args.max_bytes),
        user_agent=args.user_agent,
        max_pages=max(1, args.max_pages),
        include_assets=not args.no_assets,
        render_js=args.render_js,
        render_timeout_ms=max(1000, args.render_timeout_ms),
        wait_until=args.wait_until,
        beautify=args.beautify,
        ignore_empty=args.ignore_empty,
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)
    api = CrawlAPI(settings)

    print("Reminder: only archive content you own or have permission to copy.")
    try:
        job_id = api.start_clone(args.url, settings.clone_options(), wait=True)
    except InvalidInput as e:
        print(f"Invalid URL: {e}")
        sys.exit(1)

    job = api.get_job(job_id)
    if job.status is JobStatus.FAILED:
        print(f"Critical error: {job.error}")
        sys.exit(1)
    for err in job.errors:
        logging.warning("page error %s: %s", err["url"], err["error"])

    data = api.build_archive(job_id, settings.archive_options())
    out = Path(args.output) if args.output else Path(archive_filename(job))
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(data)
    info = describe_archive(data)

    print("Snapshot complete")
    print(f"Pages saved: {len(job.pages)}")
    print(f"Assets saved: {len(job.assets)}")
    print(f"Saved to: {out} ({info['fileCount']} files, {info['compressedSize']} bytes)")


if __name__ == "__main__":
    main()
