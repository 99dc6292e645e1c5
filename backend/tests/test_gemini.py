import httpx
import pytest
import requests

from spacebio.gemini import (GENERATION_CONFIG, MESSAGES, UpstreamError, build_payload,
                             decode_stream_line, iter_stream_text)

from conftest import FakeResponse, gemini_body, make_client, sse_body


def _payload():
    return build_payload("system text", [{"role": "user", "content": "hi"},
                                         {"role": "assistant", "content": "hello"},
                                         {"role": "user", "content": "  "}], "question")


def test_payload_shape():
    p = _payload()
    roles = [c["role"] for c in p["contents"]]
    assert roles == ["user", "user", "model", "user"]
    assert p["contents"][0]["parts"][0]["text"] == "system text"
    assert p["contents"][-1]["parts"][0]["text"] == "question"
    assert p["generationConfig"] == GENERATION_CONFIG
    assert {s["threshold"] for s in p["safetySettings"]} == {"BLOCK_NONE"}
    assert len(p["safetySettings"]) == 4


def test_decode_stream_lines_skips_malformed():
    lines = [
        'data: {"candidates":[{"content":{"parts":[{"text":"Hel"}]}}]}',
        "data: {broken",
        "",
        '[{"candidates":[{"content":{"parts":[{"text":"lo"}]}}]}',
        ',{"candidates":[]}',
        ']',
    ]
    assert list(iter_stream_text(lines)) == ["Hel", "lo"]
    assert decode_stream_line("data: [DONE]") == []


def test_generate_posts_to_model():
    client = make_client([FakeResponse(200, gemini_body("Bone ", "loss"))])
    assert client.generate(_payload()) == "Bone loss"
    call = client.session.calls[0]
    assert call["url"] == "https://gemini.test/v1/models/gemini-test:generateContent"
    assert call["headers"]["x-goog-api-key"] == "test-key"
    assert call["timeout"] == (10.0, 60.0)
    assert call["verify"] is True


def test_generate_fast_mode_and_proxy():
    client = make_client([FakeResponse(200, gemini_body("ok"))], proxy="http://proxy:3128",
                         ssl_verify=False)
    client.generate(_payload(), fast_mode=True)
    call = client.session.calls[0]
    assert "gemini-fast:generateContent" in call["url"]
    assert call["proxies"] == {"http": "http://proxy:3128", "https": "http://proxy:3128"}
    assert call["verify"] is False


def test_generate_error_kinds():
    client = make_client([FakeResponse(429, text="slow down"),
                          FakeResponse(200, {"candidates": []}),
                          requests.ConnectionError("refused")])
    with pytest.raises(UpstreamError) as e1:
        client.generate(_payload())
    assert e1.value.kind == "rate_limit" and e1.value.status == 429
    with pytest.raises(UpstreamError) as e2:
        client.generate(_payload())
    assert e2.value.kind == "empty"
    with pytest.raises(UpstreamError) as e3:
        client.generate(_payload())
    assert e3.value.kind == "connection"


def test_complete_retries_once():
    client = make_client([FakeResponse(500, text="boom"), FakeResponse(200, gemini_body("fine"))])
    assert client.complete(_payload()) == ("fine", True)
    assert len(client.session.calls) == 2


def test_complete_localized_failure():
    client = make_client([FakeResponse(503), FakeResponse(503)])
    text, from_model = client.complete(_payload(), language="fr")
    assert text == MESSAGES["fr"]["apology"]
    assert from_model is False


def test_missing_key_returns_configuration_message():
    client = make_client(api_key="")
    assert not client.configured
    assert client.answer(_payload()) == MESSAGES["en"]["config"]
    assert client.session.calls == []


@pytest.mark.asyncio
async def test_answer_stream_yields_deltas_and_reports_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=sse_body("Micro", "gravity"))

    client = make_client(stream_handler=handler)
    done = []
    out = [d async for d in client.answer_stream(_payload(), on_success=done.append)]
    assert out == ["Micro", "gravity"]
    assert done == ["Microgravity"]
    assert seen[0].endswith("/v1/models/gemini-test:streamGenerateContent?alt=sse")


@pytest.mark.asyncio
async def test_answer_stream_falls_back_to_blocking_call():
    def handler(request):
        return httpx.Response(500, text="stream down")

    client = make_client([FakeResponse(200, gemini_body("from fallback"))], stream_handler=handler)
    done = []
    out = [d async for d in client.answer_stream(_payload(), on_success=done.append)]
    assert out == ["from fallback"]
    assert done == ["from fallback"]


@pytest.mark.asyncio
async def test_answer_stream_apologizes_when_everything_fails():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = make_client([FakeResponse(500, text="also down")], stream_handler=handler)
    done = []
    out = [d async for d in client.answer_stream(_payload(), language="fr",
                                                 on_success=done.append)]
    assert out == [MESSAGES["fr"]["apology"]]
    assert done == []


@pytest.mark.asyncio
async def test_answer_stream_empty_stream_uses_fallback():
    def handler(request):
        return httpx.Response(200, content=b'data: {"candidates":[]}\r\n\r\n')

    client = make_client([FakeResponse(200, gemini_body("second try"))], stream_handler=handler)
    out = [d async for d in client.answer_stream(_payload())]
    assert out == ["second try"]
