import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple, Union

from . import intents
from .cache import ResponseCache, TTLCache, cache_key
from .extractor import ContentExtractor, FetchError, plain_text
from .gemini import GeminiClient, build_payload
from .resources import Resource, ResourceStore
from .utils import strip_tags

logger = logging.getLogger(__name__)

GROUNDING_CHARS = 6000
SESSION_TTL_SEC = 86400

SYSTEM_PROMPT = {
    "en": (
        "You are an AI assistant specialized in space biosciences.\n"
        "If a resource is provided, prioritize using its content in your response.\n"
        "Otherwise, respond using your general knowledge of space biosciences.\n"
        "Responses should be: concise, factual, with precise references to the resource when relevant.\n"
        "If the question is outside the domain of space biosciences, "
        "politely explain that you specialize in this field."
    ),
    "fr": (
        "Vous êtes un assistant d'IA expert en biosciences spatiales.\n"
        "Si une ressource est fournie, répondez PRIORITAIREMENT en vous appuyant sur son contenu.\n"
        "Sinon, répondez avec vos connaissances générales en biosciences spatiales.\n"
        "Réponses : concises, factuelles, et avec références précises à la ressource quand pertinent.\n"
        "Si la question sort du domaine des biosciences spatiales, "
        "répondez poliment que vous êtes spécialisé dans ce domaine."
    ),
}

TEXT = {
    "en": {
        "greeting": "Great! How can I assist you today?",
        "list_header": "Here is the list of resources available on the platform ({n}):\n",
        "found": "I found {n} publications you might be interested in:\n",
        "ask_summary": "\n\nWould you like a brief summary of these publications? (Yes/No)",
        "not_found": "I couldn't find any publications matching your search in our database. "
                     "Here is what I can tell you from general knowledge:\n\n",
        "summary_header": "Here's a brief summary of relevant publications:\n\n",
        "no_publications": "No relevant publications are selected at the moment. "
                           "Feel free to ask another question!",
        "ask_detail": "\n\nWould you like a more detailed explanation? (Yes/No)",
        "detail_header": "Here's a more detailed explanation:\n\n",
        "detail_request": "Give a detailed explanation of the following publications "
                          "and how they relate to each other:\n{items}",
        "closing": "Very well. Feel free to ask if you have any other questions!",
        "active_resource": "ACTIVE RESOURCE: [Resource: {title}]({url})",
        "resource_content": 'CONTENT OF THE RESOURCE "{title}" (use it to answer):\n{content}',
        "resource_missing": "WARNING: the requested resource could not be loaded. "
                            "Answer from your general knowledge.",
        "untitled": "Untitled",
    },
    "fr": {
        "greeting": "Parfait ! En quoi puis-je vous aider aujourd'hui ?",
        "list_header": "Voici la liste des ressources disponibles sur la plateforme ({n}) :\n",
        "found": "J'ai trouvé {n} publications qui pourraient vous intéresser :\n",
        "ask_summary": "\n\nSouhaitez-vous un bref résumé de ces publications ? (Oui/Non)",
        "not_found": "Je n'ai pas trouvé de publications correspondant à votre recherche dans "
                     "notre base de données. Voici ce que je peux vous dire d'après mes "
                     "connaissances générales :\n\n",
        "summary_header": "Voici un bref résumé des publications pertinentes :\n\n",
        "no_publications": "Aucune publication pertinente n'est sélectionnée pour le moment. "
                           "N'hésitez pas à poser une autre question !",
        "ask_detail": "\n\nSouhaitez-vous une explication plus détaillée ? (Oui/Non)",
        "detail_header": "Voici une explication plus détaillée :\n\n",
        "detail_request": "Donnez une explication détaillée des publications suivantes "
                          "et de leurs liens :\n{items}",
        "closing": "Très bien. N'hésitez pas si vous avez d'autres questions !",
        "active_resource": "RESSOURCE ACTIVE : [Ressource : {title}]({url})",
        "resource_content": 'CONTENU DE LA RESSOURCE "{title}" (à utiliser pour répondre) :\n{content}',
        "resource_missing": "ATTENTION : la ressource demandée n'a pas pu être chargée. "
                            "Répondez en vous basant sur vos connaissances générales.",
        "untitled": "Sans titre",
    },
}
LANGUAGE_PROMPT = "In which language would you like to communicate? (English/Français)"


def t(language: str, key: str, **kwargs) -> str:
    text = TEXT.get(language, TEXT["en"])[key]
    return text.format(**kwargs) if kwargs else text


@dataclass
class ConversationState:
    language: str = "en"
    awaiting_question: bool = True
    language_prompted: bool = False
    awaiting_summary_confirmation: bool = False
    awaiting_detail_confirmation: bool = False
    current_publications: List[dict] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return not (self.awaiting_question or self.awaiting_summary_confirmation
                    or self.awaiting_detail_confirmation)

    def reset(self):
        """Back to Ready; the chosen language is kept."""
        self.awaiting_question = False
        self.awaiting_summary_confirmation = False
        self.awaiting_detail_confirmation = False
        self.current_publications = []


class SessionStore:
    """Conversation state per session id, expiring after a day of inactivity."""

    def __init__(self, ttl_sec: int = SESSION_TTL_SEC):
        self._states = TTLCache(ttl_sec=ttl_sec)
        self._lock = threading.Lock()

    def get(self, session_id: Optional[str] = None) -> Tuple[str, ConversationState]:
        sid = session_id or uuid.uuid4().hex
        with self._lock:
            state = self._states.get(sid)
            if state is None:
                state = ConversationState()
            self._states.set(sid, state)
        return sid, state

    def drop(self, session_id: str):
        self._states.delete(session_id)

    def __len__(self) -> int:
        return len(self._states)


ContextItem = Union[Dict, str]


@dataclass
class Turn:
    session_id: str
    kind: str
    deltas: AsyncIterator[str]
    cached: bool = False
    is_frequent: bool = False
    language: str = "en"

    async def text(self) -> str:
        return "".join([d async for d in self.deltas])


async def _emit(*texts: str) -> AsyncIterator[str]:
    for text in texts:
        if text:
            yield text


async def _chain(*streams: AsyncIterator[str]) -> AsyncIterator[str]:
    try:
        for stream in streams:
            async for delta in stream:
                yield delta
    finally:
        for stream in streams:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()


def split_context(context: Sequence[ContextItem]) -> Tuple[List[Dict], List[str]]:
    """History turns ``{role, content}`` and free-text notes from a request context."""
    history, notes = [], []
    for item in context or ():
        if isinstance(item, dict):
            content = item.get("content")
            if isinstance(content, str) and content.strip():
                role = "user" if item.get("role") == "user" else "model"
                history.append({"role": role, "content": strip_tags(content)})
        elif isinstance(item, str) and item.strip():
            notes.append(item.strip())
    return history, notes


class ConversationEngine:
    def __init__(self, store: ResourceStore, extractor: ContentExtractor, client: GeminiClient,
                 cache: ResponseCache, sessions: Optional[SessionStore] = None):
        self.store = store
        self.extractor = extractor
        self.client = client
        self.cache = cache
        self.sessions = sessions or SessionStore()

    async def respond(self, message: str, session_id: Optional[str] = None,
                      language: Optional[str] = None, context: Sequence[ContextItem] = (),
                      resource_id: Optional[int] = None, stream: bool = True) -> Turn:
        sid, state = self.sessions.get(session_id)
        if language in TEXT:
            state.language = language
            state.awaiting_question = False
        text = message.strip()
        key = cache_key(text, state.language, resource_id)
        frequent = self.cache.is_frequent(key)
        self.cache.increment_frequency(key)

        def turn(kind: str, deltas: AsyncIterator[str], cached: bool = False) -> Turn:
            logger.info("turn session=%s kind=%s lang=%s resource=%s cached=%s frequent=%s",
                        sid[:8], kind, state.language, resource_id, cached, frequent)
            return Turn(session_id=sid, kind=kind, deltas=deltas, cached=cached,
                        is_frequent=frequent, language=state.language)

        if state.awaiting_question:
            if not state.language_prompted and not context:
                state.language_prompted = True
                return turn("language_prompt", _emit(LANGUAGE_PROMPT))
            state.awaiting_question = False
            chosen = intents.detect_language(text)
            if chosen:
                state.language = chosen
                return turn("greeting", _emit(t(chosen, "greeting")))
            # no language named: keep the default and treat the message as a question

        lang = state.language

        if state.awaiting_summary_confirmation:
            if intents.is_affirmative(text):
                state.awaiting_summary_confirmation = False
                state.awaiting_detail_confirmation = True
                return turn("summary", _emit(self._summary(state), t(lang, "ask_detail")))
            state.reset()
            return turn("closing", _emit(t(lang, "closing")))

        if state.awaiting_detail_confirmation:
            if intents.is_affirmative(text):
                publications = list(state.current_publications)
                state.reset()
                deltas = self._detail(publications, lang, context, resource_id, stream)
                return turn("detail", deltas)
            state.reset()
            return turn("closing", _emit(t(lang, "closing")))

        if intents.wants_resource_list(text):
            return turn("resource_list", _emit(*self._resource_list(lang)))

        if intents.is_substantive(text) and resource_id is None:
            found = self.store.search(text)
            state.current_publications = [
                {"id": r.id, "title": r.title, "url": r.url} for r in found]
            if found:
                state.awaiting_summary_confirmation = True
                lines = "".join(f"- {r.title or t(lang, 'untitled')}\n" for r in found)
                return turn("recommendations", _emit(
                    t(lang, "found", n=len(found)) + lines + t(lang, "ask_summary")))
            cached = self.cache.get(key)
            if cached is not None:
                return turn("answer", _emit(t(lang, "not_found"), cached), cached=True)
            deltas = self._answer(text, lang, context, None, stream, frequent, key)
            return turn("answer", _chain(_emit(t(lang, "not_found")), deltas))

        cache_this = intents.is_substantive(text)
        if cache_this:
            cached = self.cache.get(key)
            if cached is not None:
                return turn("answer", _emit(cached), cached=True)
        deltas = self._answer(text, lang, context, resource_id, stream, frequent,
                              key if cache_this else None)
        return turn("answer", deltas)

    def _resource_list(self, lang: str) -> List[str]:
        resources = self.store.all()
        lines = [t(lang, "list_header", n=len(resources))]
        for res in resources:
            lines.append(f"- {res.title} (/resources/{res.id}) — source: {res.url}\n")
        return lines

    def _summary(self, state: ConversationState) -> str:
        lang = state.language
        if not state.current_publications:
            return t(lang, "no_publications")
        out = t(lang, "summary_header")
        for pub in state.current_publications:
            out += "- " + (pub.get("title") or t(lang, "untitled")) + "\n"
            if pub.get("url"):
                out += "  " + pub["url"] + "\n"
            out += "\n"
        return out

    async def _grounding(self, resource_id: Optional[int], lang: str) -> Tuple[str, List[str]]:
        """Extra system text and context notes for an optional resource."""
        if resource_id is None:
            return "", []
        resource: Optional[Resource] = self.store.get(resource_id)
        if resource is None:
            logger.warning("grounding skipped: unknown resource id=%s", resource_id)
            return "", [t(lang, "resource_missing")]
        try:
            await self.extractor.fetch(resource)
        except FetchError as e:
            logger.warning("grounding degraded id=%s status=%s err=%s", resource_id, e.status, e)
            return "", [t(lang, "resource_missing")]
        excerpt = await asyncio.to_thread(plain_text, resource.content, GROUNDING_CHARS)
        system = t(lang, "active_resource", title=resource.title, url=resource.url)
        return system, [t(lang, "resource_content", title=resource.title, content=excerpt)]

    async def _payload(self, text: str, lang: str, context: Sequence[ContextItem],
                       resource_id: Optional[int]) -> Dict:
        history, notes = split_context(context)
        extra_system, grounding = await self._grounding(resource_id, lang)
        system = SYSTEM_PROMPT[lang]
        if extra_system:
            system += "\n\n" + extra_system + "\n"
        # free-text notes and resource content travel as user turns ahead of the history
        turns = [{"role": "user", "content": n} for n in notes + grounding] + history
        return build_payload(system, turns, text)

    def _generate(self, payload: Dict, lang: str, stream: bool, fast_mode: bool,
                  on_success: Optional[Callable[[str], None]]) -> AsyncIterator[str]:
        if stream:
            return self.client.answer_stream(payload, lang, fast_mode=fast_mode,
                                             on_success=on_success)
        return self._blocking(payload, lang, fast_mode, on_success)

    async def _blocking(self, payload: Dict, lang: str, fast_mode: bool,
                        on_success: Optional[Callable[[str], None]]) -> AsyncIterator[str]:
        text, from_model = await asyncio.to_thread(self.client.complete, payload, lang, fast_mode)
        if from_model and on_success is not None:
            on_success(text)
        yield text

    async def _answer(self, text: str, lang: str, context: Sequence[ContextItem],
                      resource_id: Optional[int], stream: bool, fast_mode: bool,
                      key: Optional[str]) -> AsyncIterator[str]:
        # grounding fetch happens on first iteration, inside the caller's stream deadline
        payload = await self._payload(text, lang, context, resource_id)
        on_success = None
        if key is not None:
            on_success = partial(self.cache.put, key)
        deltas = self._generate(payload, lang, stream, fast_mode, on_success)
        try:
            async for delta in deltas:
                yield delta
        finally:
            await deltas.aclose()

    async def _detail(self, publications: List[dict], lang: str, context: Sequence[ContextItem],
                      resource_id: Optional[int], stream: bool) -> AsyncIterator[str]:
        if not publications:
            yield t(lang, "no_publications")
            return
        yield t(lang, "detail_header")
        items = "\n".join(f"- {p.get('title') or t(lang, 'untitled')} ({p.get('url') or ''})"
                          for p in publications)
        request = t(lang, "detail_request", items=items)
        grounded = resource_id if resource_id is not None else publications[0].get("id")
        payload = await self._payload(request, lang, context, grounded)
        deltas = self._generate(payload, lang, stream, False, None)
        try:
            async for delta in deltas:
                yield delta
        finally:
            await deltas.aclose()
