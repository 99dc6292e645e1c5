import asyncio

import httpx
import pytest

from spacebio.extractor import (IMG_ALT, LINK_STYLE, TD_STYLE, ContentExtractor, FetchError,
                                fallback_content, plain_text, sanitize_html)
from spacebio.resources import Resource

from conftest import ARTICLE_HTML


def test_sanitize_keeps_main_region_only():
    out = sanitize_html(ARTICLE_HTML)
    assert out.startswith("<article>")
    assert "pelvic bone" in out
    for noise in ("var x", "Home", "Header", "Footer"):
        assert noise not in out


def test_sanitize_restyles_links_and_images():
    out = sanitize_html(ARTICLE_HTML)
    assert LINK_STYLE in out
    assert 'target="_blank"' in out
    assert f'alt="{IMG_ALT}"' in out


def test_sanitize_falls_back_through_selectors():
    html = """<html><body><div class="sidebar">links</div>
    <div id="content"><table><tr><td>cell</td></tr></table></div></body></html>"""
    out = sanitize_html(html)
    assert "links" not in out
    assert 'id="content"' in out
    assert TD_STYLE in out
    assert 'border="1"' in out


def test_sanitize_caps_utf8_bytes():
    html = "<article>" + "é" * 1000 + "</article>"
    out = sanitize_html(html, max_bytes=101)
    assert len(out.encode("utf-8")) <= 101
    assert sanitize_html("   ") == ""


def test_plain_text_for_grounding():
    text = plain_text(sanitize_html(ARTICLE_HTML), limit=40)
    assert "<" not in text
    assert text.endswith("...")
    assert "pelvic" in plain_text(sanitize_html(ARTICLE_HTML))


@pytest.mark.asyncio
async def test_fetch_is_memoized(extractor, server):
    res = Resource(id=1, title="Mars rover mission", url="https://example.org/mars-rover")
    await extractor.fetch(res)
    first = res.content
    await extractor.fetch(res)
    assert res.content == first
    assert "pelvic bone" in first
    assert server.hits["https://example.org/mars-rover"] == 1
    assert extractor.fetch_count == 1


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_download(extractor, server):
    res = Resource(id=1, title="Mars rover mission", url="https://example.org/mars-rover")
    await asyncio.gather(*(extractor.fetch(res) for _ in range(5)))
    assert server.hits["https://example.org/mars-rover"] == 1


@pytest.mark.asyncio
async def test_invalidate_forces_refetch(extractor, server):
    res = Resource(id=1, title="Mars rover mission", url="https://example.org/mars-rover")
    await extractor.fetch(res)
    extractor.invalidate(res)
    await extractor.fetch(res)
    assert server.hits["https://example.org/mars-rover"] == 2


@pytest.mark.asyncio
async def test_failed_fetch_memoizes_fallback(extractor, server):
    res = Resource(id=2, title="Lunar lander update", url="https://example.org/lunar")
    with pytest.raises(FetchError) as exc:
        await extractor.fetch(res)
    assert exc.value.status == 404
    assert exc.value.resource_id == 2
    assert res.content == fallback_content(res)
    assert res.url in res.content

    await extractor.fetch(res)
    assert server.hits["https://example.org/lunar"] == 1


def test_sanitize_tolerates_broken_markup():
    out = sanitize_html("<div><p>unclosed <b>bold</div></span><<>> <table><td>x")
    assert "unclosed" in out
    assert "bold" in out


def test_sanitize_drops_aria_noise_and_uses_role_main():
    html = """<html><body><div role="navigation">nav links</div>
    <aside role="complementary">side notes</aside>
    <div role="main"><p>study body</p></div></body></html>"""
    out = sanitize_html(html)
    assert out.startswith('<div role="main">')
    assert "study body" in out
    assert "nav links" not in out
    assert "side notes" not in out


def test_sanitize_uses_article_body_itemprop():
    html = """<html><body><div>site chrome</div>
    <div itemprop="articleBody"><p>story text</p></div></body></html>"""
    out = sanitize_html(html)
    assert out.startswith('<div itemprop="articleBody">')
    assert "site chrome" not in out


def test_absolute_links_keep_same_target():
    html = ('<article><a href="https://x.org/a">a</a><a href="//cdn.x.org/b">b</a>'
            '<a href="/c">c</a><a>no href</a></article>')
    out = sanitize_html(html)
    assert out.count(LINK_STYLE) == 3
    assert out.count('target="_blank"') == 1


def test_page_level_noise_classes_do_not_wipe_document():
    assert sanitize_html(
        '<html class="cookie-consent"><body><article>kept</article></body></html>'
    ) == "<article>kept</article>"
    out = sanitize_html('<html><body class="has-sidebar menu-open"><p>plain page</p></body></html>')
    assert "plain page" in out


@pytest.mark.asyncio
async def test_timeout_raises_fetch_error_and_memoizes_fallback():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    extractor = ContentExtractor(transport=httpx.MockTransport(handler))
    res = Resource(id=7, title="Slow page", url="https://slow.example.org/")
    with pytest.raises(FetchError) as exc:
        await extractor.fetch(res)
    assert "timeout" in str(exc.value)
    assert exc.value.status is None
    assert res.content == fallback_content(res)
