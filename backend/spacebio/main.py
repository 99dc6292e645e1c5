import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__
from .assist import SUMMARY_UNAVAILABLE, AssistService
from .cache import ResponseCache
from .conversation import ConversationEngine, SessionStore
from .extractor import ContentExtractor, FetchError
from .gemini import GeminiClient
from .models import (ChatRequest, ChatResponse, EnrichedList, RelatedList, ResourceDetail,
                     ResourceList, SuggestionRequest)
from .resources import ResourceStore
from .settings import Settings, get_settings
from .streaming import SSE_HEADERS, event_stream

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s"
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: ResourceStore
    extractor: ContentExtractor
    client: GeminiClient
    cache: ResponseCache
    engine: ConversationEngine
    assist: AssistService


def build_services(settings: Optional[Settings] = None, client: Optional[GeminiClient] = None,
                   extractor: Optional[ContentExtractor] = None,
                   store: Optional[ResourceStore] = None) -> Services:
    settings = settings or get_settings()
    if store is None:
        store = ResourceStore(settings.resources_file)
        store.load()
    extractor = extractor or ContentExtractor()
    client = client or GeminiClient(settings)
    cache = ResponseCache(disabled=settings.cache_disabled)
    engine = ConversationEngine(store, extractor, client, cache, SessionStore())
    assist = AssistService(store, extractor, client)
    return Services(settings=settings, store=store, extractor=extractor, client=client,
                    cache=cache, engine=engine, assist=assist)


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "Resource not found"})


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Space Bio Assistant", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], allow_methods=["*"], allow_headers=["*"],
        expose_headers=["X-Session-Id"],
    )
    app.state.services = services or build_services()

    def svc(request: Request) -> Services:
        return request.app.state.services

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors: dict = {}
        for err in exc.errors():
            loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
            errors.setdefault(".".join(loc) or "request", []).append(err.get("msg", "invalid"))
        return JSONResponse(status_code=422, content={
            "success": False, "message": "Validation error", "errors": errors,
            "timestamp": _now()})

    @app.get("/health")
    def health(request: Request):
        return {"ok": True, "resources": len(svc(request).store)}

    @app.get("/stats")
    def stats(request: Request):
        s = svc(request)
        return {"resources": len(s.store), "cache": s.cache.stats(),
                "sessions": len(s.engine.sessions), "fetches": s.extractor.fetch_count}

    @app.post("/chat", response_model=ChatResponse)
    async def chat(body: ChatRequest, request: Request):
        s = svc(request)
        try:
            turn = await s.engine.respond(
                body.message, session_id=body.session_id, language=body.language,
                context=body.context_items(), resource_id=body.resource_id, stream=False)
            text = await turn.text()
            if not text:
                raise RuntimeError("empty answer")
        except Exception as e:
            logger.exception("/chat failed resource=%s", body.resource_id)
            return JSONResponse(status_code=500, content={
                "success": False,
                "message": "An error occurred while processing your request.",
                "error": str(e) if s.settings.debug else None,
                "timestamp": _now()})
        return ChatResponse(response=text, cached=turn.cached, timestamp=_now(),
                            session_id=turn.session_id, is_frequent=turn.is_frequent)

    @app.post("/chat/stream")
    async def chat_stream(body: ChatRequest, request: Request):
        s = svc(request)
        try:
            turn = await s.engine.respond(
                body.message, session_id=body.session_id, language=body.language,
                context=body.context_items(), resource_id=body.resource_id, stream=True)
        except Exception as e:
            logger.exception("/chat/stream failed resource=%s", body.resource_id)
            return JSONResponse(status_code=500, content={
                "success": False,
                "message": "An error occurred while processing your request.",
                "error": str(e) if s.settings.debug else None})
        frames = event_stream(turn.deltas, timeout=s.settings.stream_timeout,
                              is_disconnected=request.is_disconnected, language=turn.language)
        headers = dict(SSE_HEADERS)
        headers["X-Session-Id"] = turn.session_id
        return StreamingResponse(frames, media_type="text/event-stream", headers=headers)

    @app.post("/chat/suggestions")
    async def chat_suggestions(body: SuggestionRequest, request: Request):
        try:
            questions = await svc(request).assist.suggested_questions(body.message)
        except Exception:
            logger.exception("/chat/suggestions failed")
            questions = []
        return {"questions": questions}

    @app.get("/resources", response_model=ResourceList)
    def list_resources(request: Request, search: Optional[str] = Query(None, max_length=200)):
        store = svc(request).store
        items = store.search(search) if search else store.all()
        return {"data": [r.summary() for r in items]}

    @app.get("/resources-enriched", response_model=EnrichedList)
    def enriched_resources(request: Request):
        return {"data": svc(request).store.enriched()}

    @app.get("/resources/{resource_id}", response_model=ResourceDetail)
    async def get_resource(resource_id: int, request: Request):
        s = svc(request)
        res = s.store.get(resource_id)
        if res is None:
            return _not_found()
        try:
            await s.extractor.fetch(res)
        except FetchError as e:
            # fallback content is already memoized on the resource
            logger.warning("serving fallback content id=%s status=%s", resource_id, e.status)
        return {"data": res.detail()}

    @app.get("/resources/{resource_id}/summary")
    async def resource_summary(resource_id: int, request: Request):
        s = svc(request)
        res = s.store.get(resource_id)
        if res is None:
            return _not_found()
        try:
            summary = await s.assist.summary(res)
        except Exception:
            logger.exception("summary failed id=%s", resource_id)
            summary = SUMMARY_UNAVAILABLE
        return {"summary": summary}

    @app.get("/resources/{resource_id}/keywords")
    async def resource_keywords(resource_id: int, request: Request):
        s = svc(request)
        res = s.store.get(resource_id)
        if res is None:
            return _not_found()
        try:
            keywords = await s.assist.keywords(res)
        except Exception:
            logger.exception("keywords failed id=%s", resource_id)
            keywords = []
        return {"keywords": keywords}

    @app.get("/resources/{resource_id}/related", response_model=RelatedList)
    def resource_related(resource_id: int, request: Request):
        s = svc(request)
        res = s.store.get(resource_id)
        if res is None:
            return _not_found()
        return {"related": s.assist.related(res)}

    return app


app = create_app()
