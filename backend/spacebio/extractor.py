import asyncio
import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from bs4 import BeautifulSoup, Tag
from trafilatura import extract

from .resources import Resource
from .utils import html_to_text, make_snippet, truncate_bytes

logger = logging.getLogger(__name__)

USER_AGENT = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
              "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36")
FETCH_TIMEOUT_SEC = 10.0
MAX_CONTENT_BYTES = 1_000_000

NOISE_TAGS = ("script", "style", "noscript", "header", "footer", "nav", "iframe")
# (attribute, substring) pairs; any element whose attribute contains the substring is dropped
NOISE_ATTRS: Sequence[Tuple[str, str]] = (
    ("class", "header"), ("class", "footer"), ("class", "navbar"), ("class", "menu"),
    ("class", "sidebar"), ("class", "ad-"), ("class", "banner"), ("class", "cookie"),
    ("id", "header"), ("id", "footer"), ("id", "navbar"), ("id", "menu"),
    ("id", "sidebar"), ("id", "ad-"), ("id", "banner"), ("id", "cookie"),
    ("role", "banner"), ("role", "navigation"), ("role", "complementary"),
)
# tried in order, first match wins; ("tag", name) or (attribute, substring)
MAIN_SELECTORS: Sequence[Tuple[str, str]] = (
    ("tag", "article"), ("tag", "main"),
    ("class", "content"), ("class", "main"), ("class", "post"), ("class", "entry"),
    ("class", "article"),
    ("id", "content"), ("id", "main"), ("id", "post"), ("id", "entry"), ("id", "article"),
    ("role", "main"), ("itemprop", "articleBody"),
)
LEFTOVER_RE = re.compile(
    r"<(script|style|noscript|header|footer|nav)\b[^>]*>.*?</\1\s*>", re.I | re.S)

LINK_STYLE = "color: #1a73e8; text-decoration: underline;"
IMG_STYLE = "max-width: 100%; height: auto; margin: 10px 0;"
IMG_ALT = "Resource image"
TABLE_STYLE = "width: 100%; border-collapse: collapse; margin: 15px 0;"
TD_STYLE = "border: 1px solid #ddd; padding: 8px;"
TH_STYLE = "border: 1px solid #ddd; padding: 8px; background-color: #f2f2f2;"


class FetchError(Exception):
    def __init__(self, message: str, resource_id: Optional[int] = None,
                 url: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.resource_id = resource_id
        self.url = url
        self.status = status


def _attr_text(el: Tag, attr: str) -> str:
    val = el.get(attr)
    if val is None:
        return ""
    if isinstance(val, (list, tuple)):
        return " ".join(val)
    return str(val)


def _matches(el: Tag, attr: str, needle: str) -> bool:
    return needle in _attr_text(el, attr)


def strip_noise(soup: BeautifulSoup):
    for tag in soup(list(NOISE_TAGS)):
        tag.decompose()
    doomed: List[Tag] = []
    for el in soup.find_all(True):
        if el.name in ("html", "body"):
            continue
        if any(_matches(el, attr, needle) for attr, needle in NOISE_ATTRS):
            doomed.append(el)
    for el in doomed:
        # a parent earlier in the list may already have taken this one with it
        if not el.decomposed:
            el.decompose()


def select_main(soup: BeautifulSoup) -> Tag:
    for kind, value in MAIN_SELECTORS:
        if kind == "tag":
            found = soup.find(value)
        else:
            found = soup.find(lambda el, a=kind, v=value: isinstance(el, Tag) and _matches(el, a, v))
        if found is not None:
            return found
    return soup.body or soup


def restyle(main: Tag):
    for a in main.find_all("a"):
        href = (a.get("href") or "").strip()
        if not href:
            continue
        a["style"] = LINK_STYLE
        if not href.startswith("http") and not href.startswith("//"):
            a["target"] = "_blank"
    for img in main.find_all("img"):
        img["style"] = IMG_STYLE
        if not img.get("alt"):
            img["alt"] = IMG_ALT
    for table in main.find_all("table"):
        table["style"] = TABLE_STYLE
        table["border"] = "1"
        for td in table.find_all("td"):
            td["style"] = TD_STYLE
        for th in table.find_all("th"):
            th["style"] = TH_STYLE


def sanitize_html(raw_html: str, max_bytes: int = MAX_CONTENT_BYTES) -> str:
    """Main content region of ``raw_html`` as display-safe HTML.

    Boilerplate is removed, the first main-content candidate is kept,
    links/images/tables are restyled and the result is capped at
    ``max_bytes`` of UTF-8.
    """
    if not raw_html or not raw_html.strip():
        return ""
    soup = BeautifulSoup(raw_html, "lxml")
    strip_noise(soup)
    main = select_main(soup)
    restyle(main)
    out = LEFTOVER_RE.sub("", str(main))
    return truncate_bytes(out, max_bytes)


def plain_text(html: str, limit: Optional[int] = None) -> str:
    """Markup-free text of sanitized content, for prompt grounding."""
    if not html:
        return ""
    text = extract(html, include_comments=False, include_tables=True,
                   favor_recall=True) or ""
    if len(text) < 50:
        text = html_to_text(html)
    if limit is None:
        return " ".join(text.split())
    return make_snippet(text, max_len=limit)


def fallback_content(resource: Resource) -> str:
    return ("Sorry, the content of this resource could not be loaded. "
            f"You can read it directly at: {resource.url}")


def empty_content(resource: Resource) -> str:
    return (f"Content of the resource '{resource.title}'. "
            f"For more information, see: {resource.url}")


class ContentExtractor:
    """Fetches and memoizes the main content of resources.

    At most one network fetch per resource id is in flight; once content
    is set it is served from memory until ``invalidate`` is called.
    """

    def __init__(self, timeout: float = FETCH_TIMEOUT_SEC,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sanitizer: Callable[[str], str] = sanitize_html):
        self.timeout = timeout
        self.transport = transport
        self.sanitizer = sanitizer
        self._locks: Dict[int, asyncio.Lock] = {}
        self.fetch_count = 0

    def _lock_for(self, resource_id: int) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[resource_id] = lock
        return lock

    def invalidate(self, resource: Resource):
        resource.content = ""

    def _client(self) -> httpx.AsyncClient:
        # content is read-only display material, TLS verification is off for this fetch
        return httpx.AsyncClient(
            timeout=self.timeout,
            verify=False,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=self.transport,
        )

    async def _download(self, resource: Resource) -> str:
        try:
            async with self._client() as client:
                r = await client.get(resource.url)
        except httpx.TimeoutException as e:
            raise FetchError(f"timeout fetching {resource.url}",
                             resource_id=resource.id, url=resource.url) from e
        except httpx.HTTPError as e:
            raise FetchError(f"network error fetching {resource.url}: {e}",
                             resource_id=resource.id, url=resource.url) from e
        if r.status_code != 200:
            raise FetchError(f"HTTP {r.status_code} fetching {resource.url}",
                             resource_id=resource.id, url=resource.url, status=r.status_code)
        return r.text

    async def fetch(self, resource: Resource) -> Resource:
        if resource.content:
            return resource
        async with self._lock_for(resource.id):
            if resource.content:
                return resource
            logger.info("fetching resource id=%s url=%s", resource.id, resource.url)
            self.fetch_count += 1
            try:
                html = await self._download(resource)
                content = self.sanitizer(html)
            except FetchError as e:
                logger.error("resource fetch failed id=%s status=%s err=%s",
                             resource.id, e.status, e)
                resource.content = fallback_content(resource)
                raise
            except Exception as e:
                logger.exception("resource extraction failed id=%s", resource.id)
                resource.content = fallback_content(resource)
                raise FetchError(f"extraction failed for {resource.url}: {e}",
                                 resource_id=resource.id, url=resource.url) from e
            if not content.strip():
                content = empty_content(resource)
            resource.content = content
            logger.info("resource loaded id=%s bytes=%d", resource.id, len(content))
        return resource
