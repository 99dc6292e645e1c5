import asyncio
import json
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from spacebio.cache import ResponseCache
from spacebio.conversation import ConversationEngine, SessionStore
from spacebio.extractor import ContentExtractor
from spacebio.gemini import GeminiClient
from spacebio.resources import ResourceStore
from spacebio.settings import Settings

ARTICLE_HTML = """<html><head><title>Bone loss</title><script>var x=1;</script></head>
<body><nav><a href="/home">Home</a></nav><div class="site-header">Header</div>
<article><h1>Bone loss in microgravity</h1>
<p>Mice flown for fifteen days aboard the station lost a measurable amount of pelvic bone,
and the loss was concentrated in trabecular regions that carry load on the ground.</p>
<a href="/ref">ref</a><img src="fig.png"></article>
<footer>Footer</footer></body></html>"""


def gemini_body(*texts: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": t} for t in texts], "role": "model"}}]}


def sse_body(*texts: str) -> bytes:
    return "".join(f"data: {json.dumps(gemini_body(t))}\r\n\r\n" for t in texts).encode()


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Optional[dict] = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; replies are consumed in order."""

    def __init__(self, replies: List):
        self.replies = list(replies)
        self.calls: List[dict] = []

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        reply = self.replies.pop(0) if self.replies else FakeResponse(500, text="exhausted")
        if isinstance(reply, Exception):
            raise reply
        return reply


class PageServer:
    """Serves canned HTML to the content extractor and counts hits per url."""

    def __init__(self):
        self.pages: Dict[str, Tuple[int, str]] = {}
        self.hits: Dict[str, int] = {}
        self.delay = 0.0

    def add(self, url: str, html: str, status: int = 200):
        self.pages[url] = (status, html)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.hits[url] = self.hits.get(url, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)
        status, html = self.pages.get(url, (404, "missing"))
        return httpx.Response(status, text=html, headers={"content-type": "text/html"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_settings(**overrides) -> Settings:
    base = dict(api_key="test-key", model="gemini-test", fast_model="gemini-fast",
                base_url="https://gemini.test", resources_file="/nonexistent/resources.json")
    base.update(overrides)
    return Settings(**base)


def _no_stream(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, text="no stream configured")


def make_client(replies=(), stream_handler=None, **overrides) -> GeminiClient:
    return GeminiClient(make_settings(**overrides), session=FakeSession(list(replies)),
                        transport=httpx.MockTransport(stream_handler or _no_stream))


def make_engine(store, extractor, client, cache=None) -> ConversationEngine:
    return ConversationEngine(store, extractor, client, cache or ResponseCache(), SessionStore())


@pytest.fixture
def server():
    srv = PageServer()
    srv.add("https://example.org/mars-rover", ARTICLE_HTML)
    return srv


@pytest.fixture
def extractor(server):
    return ContentExtractor(transport=server.transport())


@pytest.fixture
def store():
    return ResourceStore.from_entries([
        {"title": "Mars rover mission", "url": "https://example.org/mars-rover"},
        {"title": "Lunar lander update", "url": "https://example.org/lunar"},
        {"title": "Mars and Venus comparison", "url": "https://example.org/mars-venus"},
    ])
