import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

KEEPALIVE = ": ping\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
TIMEOUT_MESSAGE = {
    "en": "The answer took too long and was stopped. Please try again.",
    "fr": "La réponse a pris trop de temps et a été interrompue. Veuillez réessayer.",
}


class StreamError(Exception):
    pass


class IncompleteStreamError(StreamError):
    """Connection closed before the done event."""


def sse_data(delta: str) -> str:
    return f"data: {json.dumps({'delta': delta}, ensure_ascii=False)}\n\n"


def sse_done() -> str:
    return "event: done\ndata: {}\n\n"


def sse_error(message: str) -> str:
    return f"event: error\ndata: {json.dumps({'message': message}, ensure_ascii=False)}\n\n"


async def event_stream(
    deltas: AsyncIterator[str],
    timeout: float = 60.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    language: str = "en",
) -> AsyncIterator[str]:
    """Frame text deltas as server-sent events.

    Emits a keep-alive comment first, one ``data`` frame per non-empty
    delta, then the ``done`` event. Past ``timeout`` seconds the upstream
    iterator is closed and an ``error`` event precedes ``done``. If the
    client goes away the upstream iterator is closed and nothing more is
    written.
    """
    yield KEEPALIVE
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    it = deltas.__aiter__()
    try:
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.info("client disconnected, abandoning stream")
                return
            try:
                async with asyncio.timeout_at(deadline):
                    delta = await it.__anext__()
            except StopAsyncIteration:
                break
            except TimeoutError:
                logger.warning("stream timed out after %.1fs", timeout)
                yield sse_error(TIMEOUT_MESSAGE.get(language, TIMEOUT_MESSAGE["en"]))
                yield sse_done()
                return
            if delta:
                yield sse_data(delta)
        yield sse_done()
    finally:
        aclose = getattr(it, "aclose", None)
        if aclose is not None:
            await aclose()


def parse_sse(text: str) -> List[str]:
    """Client-side decoding of an event stream body into its deltas."""
    deltas: List[str] = []
    done = False
    for frame in text.split("\n\n"):
        event, data = "message", []
        for line in frame.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            value = value[1:] if value.startswith(" ") else value
            if field == "event":
                event = value
            elif field == "data":
                data.append(value)
        if not data:
            continue
        payload = json.loads("\n".join(data))
        if event == "done":
            done = True
        elif event == "error":
            raise StreamError(payload.get("message", "stream error"))
        elif "delta" in payload:
            deltas.append(payload["delta"])
    if not done:
        raise IncompleteStreamError("stream closed without a done event")
    return deltas
