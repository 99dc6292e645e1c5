import asyncio
import json
import logging
import re
from typing import Dict, List, Optional

from .cache import TTLCache
from .extractor import ContentExtractor, FetchError, plain_text
from .gemini import GeminiClient, UpstreamError, build_payload
from .resources import Resource, ResourceStore

logger = logging.getLogger(__name__)

ASSIST_TTL_SEC = 12 * 3600
SUMMARY_UNAVAILABLE = "Summary unavailable."

SUMMARY_SYSTEM = ("You are an AI assistant specialized in space biosciences. Produce a concise, "
                  "structured summary in HTML (short headings, bullet lists). Quote elements "
                  "of the content when relevant.")
SUMMARY_REQUEST = "Summarize the following resource in 5 to 8 sentences at most."
KEYWORDS_SYSTEM = ("You are an AI assistant. Extract 5 to 10 short keywords (one to three words). "
                   "Return only a JSON list of strings, with no additional text.")
SUGGEST_SYSTEM = "Generate only follow-up questions, without explanations."
SUGGEST_REQUEST = ("As a space biosciences expert, propose 3 relevant, short and precise "
                   "follow-up questions, as a bullet list, for this question: \"{q}\"")

_bullet_re = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s*")
_fence_re = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)


def parse_keywords(text: str) -> List[str]:
    s = _fence_re.sub("", text.strip())
    try:
        tags = json.loads(s)
    except ValueError:
        tags = None
    if isinstance(tags, list):
        return [str(t).strip() for t in tags if str(t).strip()]
    return [p.strip().strip('"') for p in s.split(",") if p.strip().strip('"')]


def parse_questions(text: str, limit: int = 3) -> List[str]:
    out = []
    for line in text.splitlines():
        q = _bullet_re.sub("", line).strip()
        if len(q) > 5:
            out.append(q)
    return out[:limit]


class AssistService:
    """Per-resource summary, keywords and related list, cached for 12 hours."""

    def __init__(self, store: ResourceStore, extractor: ContentExtractor, client: GeminiClient,
                 ttl_sec: int = ASSIST_TTL_SEC):
        self.store = store
        self.extractor = extractor
        self.client = client
        self.cache = TTLCache(ttl_sec=ttl_sec)

    async def _source_text(self, resource: Resource, limit: int) -> str:
        try:
            await self.extractor.fetch(resource)
        except FetchError as e:
            logger.warning("assist using title only id=%s err=%s", resource.id, e)
            return f"{resource.title} {resource.url}"
        text = await asyncio.to_thread(plain_text, resource.content, limit)
        return text or f"{resource.title} {resource.url}"

    async def _ask(self, system: str, request: str, temperature: float) -> Optional[str]:
        if not self.client.configured:
            return None
        payload = build_payload(system, [], request, generation_config={"temperature": temperature})
        try:
            return await asyncio.to_thread(self.client.generate, payload)
        except UpstreamError as e:
            logger.error("assist generation failed status=%s err=%s", e.status, e)
            return None

    async def summary(self, resource: Resource) -> str:
        key = f"summary:{resource.id}"
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        text = await self._source_text(resource, 8000)
        out = await self._ask(SUMMARY_SYSTEM, f"{SUMMARY_REQUEST}\n\n{text}", 0.5)
        if not out:
            return SUMMARY_UNAVAILABLE
        self.cache.set(key, out)
        return out

    async def keywords(self, resource: Resource) -> List[str]:
        key = f"keywords:{resource.id}"
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        text = await self._source_text(resource, 6000)
        out = await self._ask(KEYWORDS_SYSTEM, text, 0.3)
        if not out:
            return []
        tags = parse_keywords(out)
        self.cache.set(key, tags)
        return tags

    def related(self, resource: Resource) -> List[Dict]:
        key = f"related:{resource.id}"
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        out = [{"id": r.id, "title": r.title, "url": r.url}
               for r in self.store.related(resource.id)]
        self.cache.set(key, out)
        return out

    async def suggested_questions(self, question: str) -> List[str]:
        out = await self._ask(SUGGEST_SYSTEM, SUGGEST_REQUEST.format(q=question), 0.7)
        if not out:
            return []
        return parse_questions(out)
