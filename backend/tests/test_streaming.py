import asyncio

import pytest

from spacebio.streaming import (KEEPALIVE, TIMEOUT_MESSAGE, IncompleteStreamError, StreamError,
                                event_stream, parse_sse, sse_data, sse_done)


class Upstream:
    """Async iterator over fixed deltas that records whether it was closed."""

    def __init__(self, deltas, delay=0.0):
        self.deltas = list(deltas)
        self.delay = delay
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.deltas:
            raise StopAsyncIteration
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.deltas.pop(0)

    async def aclose(self):
        self.closed = True


async def collect(agen):
    return [frame async for frame in agen]


@pytest.mark.asyncio
async def test_three_deltas_three_frames_then_done():
    up = Upstream(["Mi", "cro", "gravity"])
    frames = await collect(event_stream(up))
    assert frames == [KEEPALIVE, sse_data("Mi"), sse_data("cro"), sse_data("gravity"), sse_done()]
    assert parse_sse("".join(frames)) == ["Mi", "cro", "gravity"]
    assert up.closed


@pytest.mark.asyncio
async def test_empty_deltas_are_not_framed():
    frames = await collect(event_stream(Upstream(["", "a", ""])))
    assert frames == [KEEPALIVE, sse_data("a"), sse_done()]


@pytest.mark.asyncio
async def test_non_ascii_kept_verbatim():
    frames = await collect(event_stream(Upstream(["résumé"])))
    assert 'data: {"delta": "résumé"}\n\n' in frames


@pytest.mark.asyncio
async def test_timeout_sends_error_then_done():
    up = Upstream(["first", "never"], delay=0.2)
    frames = await collect(event_stream(up, timeout=0.05, language="fr"))
    assert frames[0] == KEEPALIVE
    assert frames[-1] == sse_done()
    assert TIMEOUT_MESSAGE["fr"] in frames[-2]
    assert frames[-2].startswith("event: error\n")
    assert up.closed
    with pytest.raises(StreamError):
        parse_sse("".join(frames))


@pytest.mark.asyncio
async def test_disconnect_stops_without_done():
    up = Upstream(["a", "b", "c"])
    calls = {"n": 0}

    async def is_disconnected():
        calls["n"] += 1
        return calls["n"] > 1

    frames = await collect(event_stream(up, is_disconnected=is_disconnected))
    assert frames == [KEEPALIVE, sse_data("a")]
    assert up.closed


def test_parse_sse_requires_done_event():
    body = KEEPALIVE + sse_data("partial")
    with pytest.raises(IncompleteStreamError):
        parse_sse(body)
    assert parse_sse(body + sse_done()) == ["partial"]
