import asyncio
import json
import logging
import os
from typing import AsyncIterator, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx
import requests

from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

GENERATION_CONFIG = {"temperature": 0.7, "topP": 0.9, "topK": 40, "maxOutputTokens": 2048}
SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

MESSAGES = {
    "en": {
        "apology": "Sorry, I couldn't retrieve an answer right now. Please try again later.",
        "rate_limit": "Sorry, the request limit has been reached for now. "
                      "Please wait a minute before trying again.",
        "connection": "Unable to reach the Gemini API. Check your internet connection and the API key.",
        "config": "[Configuration] GEMINI_API_KEY is missing. "
                  "Add GEMINI_API_KEY to your environment and restart the application.",
        "empty": "Sorry, I couldn't generate an answer.",
        "interrupted": "\n\n[The answer was interrupted. Please try again.]",
    },
    "fr": {
        "apology": "Désolé, je n'ai pas pu récupérer de réponse pour le moment. "
                   "Veuillez réessayer plus tard.",
        "rate_limit": "Désolé, nous avons atteint la limite de requêtes pour le moment. "
                      "Veuillez patienter une minute avant de réessayer.",
        "connection": "Impossible de se connecter à l'API Gemini. "
                      "Vérifiez votre connexion internet et la clé API.",
        "config": "[Configuration] GEMINI_API_KEY manquant. "
                  "Ajoutez GEMINI_API_KEY à votre environnement et redémarrez l'application.",
        "empty": "Désolé, je n'ai pas pu générer de réponse.",
        "interrupted": "\n\n[La réponse a été interrompue. Veuillez réessayer.]",
    },
}


def message_for(key: str, language: str) -> str:
    return MESSAGES.get(language, MESSAGES["en"])[key]


class UpstreamError(Exception):
    """Model API unreachable, non-200 or unusable payload."""

    def __init__(self, message: str, status: Optional[int] = None, kind: str = "apology"):
        super().__init__(message)
        self.status = status
        self.kind = kind


def _role(role: str) -> str:
    return "user" if role == "user" else "model"


def build_contents(system: str, history: Sequence[Dict], message: str) -> List[Dict]:
    contents = []
    if system:
        contents.append({"role": "user", "parts": [{"text": system}]})
    for turn in history:
        text = str(turn.get("content") or "").strip()
        if text:
            contents.append({"role": _role(turn.get("role", "")), "parts": [{"text": text}]})
    contents.append({"role": "user", "parts": [{"text": message}]})
    return contents


def build_payload(system: str, history: Sequence[Dict], message: str,
                  generation_config: Optional[Dict] = None) -> Dict:
    return {
        "contents": build_contents(system, history, message),
        "generationConfig": dict(generation_config or GENERATION_CONFIG),
        # permissive on purpose, biology/space content trips the default filters
        "safetySettings": [{"category": c, "threshold": "BLOCK_NONE"} for c in SAFETY_CATEGORIES],
    }


def candidate_text(data: object) -> List[str]:
    if not isinstance(data, dict):
        return []
    candidates = data.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return []
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return [str(p.get("text") or "") for p in parts if isinstance(p, dict) and p.get("text")]


def decode_stream_line(line: str) -> List[str]:
    s = line.strip()
    if s.startswith("data:"):
        s = s[5:].strip()
    s = s.lstrip("[,").rstrip("],").strip()
    if not s:
        return []
    try:
        data = json.loads(s)
    except ValueError:
        return []
    return candidate_text(data)


def iter_stream_text(lines: Iterable[str]) -> Iterator[str]:
    for line in lines:
        yield from decode_stream_line(line)


class GeminiClient:
    def __init__(self, settings: Optional[Settings] = None,
                 session: Optional[requests.Session] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.session = session or requests.Session()
        self.transport = transport
        if not self.settings.api_key:
            logger.warning("GEMINI_API_KEY is not set; chat answers will be disabled")

    @property
    def configured(self) -> bool:
        return bool(self.settings.api_key)

    def _verify(self):
        s = self.settings
        if not s.ssl_verify:
            return False
        if s.ca_bundle:
            if os.path.isfile(s.ca_bundle) and os.access(s.ca_bundle, os.R_OK):
                return s.ca_bundle
            logger.warning("GEMINI_CA_BUNDLE not found or unreadable: %s; using verify=True",
                           s.ca_bundle)
        return True

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-goog-api-key": self.settings.api_key,
        }

    def _url(self, model: str, stream: bool) -> str:
        method = "streamGenerateContent?alt=sse" if stream else "generateContent"
        return f"{self.settings.base_url}/v1/models/{quote(model, safe='')}:{method}"

    def generate(self, payload: Dict, fast_mode: bool = False) -> str:
        model = self.settings.fast_model if fast_mode else self.settings.model
        proxies = None
        if self.settings.proxy:
            proxies = {"http": self.settings.proxy, "https": self.settings.proxy}
        try:
            r = self.session.post(
                self._url(model, stream=False),
                json=payload,
                headers=self._headers(),
                timeout=(self.settings.connect_timeout, self.settings.timeout),
                verify=self._verify(),
                proxies=proxies,
            )
        except requests.ConnectionError as e:
            raise UpstreamError(f"connection error: {e}", kind="connection") from e
        except requests.RequestException as e:
            raise UpstreamError(f"request failed: {e}") from e
        if r.status_code != 200:
            kind = "rate_limit" if r.status_code == 429 else "apology"
            raise UpstreamError(f"Gemini HTTP {r.status_code}: {r.text[:300]}",
                                status=r.status_code, kind=kind)
        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError("Gemini returned malformed JSON", status=r.status_code) from e
        text = "".join(candidate_text(data)).strip()
        if not text:
            raise UpstreamError("Gemini returned no text", status=r.status_code, kind="empty")
        return text

    def _async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.timeout, connect=self.settings.connect_timeout),
            verify=self._verify(),
            proxy=self.settings.proxy,
            transport=self.transport,
        )

    async def stream(self, payload: Dict, fast_mode: bool = False) -> AsyncIterator[str]:
        model = self.settings.fast_model if fast_mode else self.settings.model
        url = self._url(model, stream=True)
        try:
            async with self._async_client() as client:
                async with client.stream("POST", url, json=payload, headers=self._headers()) as r:
                    if r.status_code != 200:
                        body = await r.aread()
                        kind = "rate_limit" if r.status_code == 429 else "apology"
                        raise UpstreamError(
                            f"Gemini stream HTTP {r.status_code}: {body[:300]!r}",
                            status=r.status_code, kind=kind)
                    async for line in r.aiter_lines():
                        for text in decode_stream_line(line):
                            yield text
        except httpx.ConnectError as e:
            raise UpstreamError(f"connection error: {e}", kind="connection") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"stream failed: {e}") from e

    def complete(self, payload: Dict, language: str = "en",
                 fast_mode: bool = False) -> Tuple[str, bool]:
        """Blocking answer with one retry; returns (text, from_model) and never raises."""
        if not self.configured:
            return message_for("config", language), False
        last: Optional[UpstreamError] = None
        for attempt in (1, 2):
            try:
                return self.generate(payload, fast_mode=fast_mode), True
            except UpstreamError as e:
                last = e
                logger.error("gemini generate failed attempt=%d status=%s err=%s",
                             attempt, e.status, e)
        return message_for(last.kind if last else "apology", language), False

    def answer(self, payload: Dict, language: str = "en", fast_mode: bool = False) -> str:
        return self.complete(payload, language, fast_mode)[0]

    async def answer_stream(self, payload: Dict, language: str = "en", fast_mode: bool = False,
                            on_success: Optional[Callable[[str], None]] = None
                            ) -> AsyncIterator[str]:
        """Stream deltas, falling back to one blocking call on failure; never raises.

        ``on_success`` receives the full text only when it came from the model.
        """
        if not self.configured:
            yield message_for("config", language)
            return
        parts: List[str] = []
        try:
            async for delta in self.stream(payload, fast_mode=fast_mode):
                parts.append(delta)
                yield delta
            if parts:
                if on_success is not None:
                    on_success("".join(parts))
                return
            logger.warning("gemini stream produced no text, retrying without streaming")
        except UpstreamError as e:
            logger.error("gemini stream failed status=%s err=%s", e.status, e)
            if parts:
                yield message_for("interrupted", language)
                return
        try:
            text = await asyncio.to_thread(self.generate, payload, fast_mode)
        except UpstreamError as e:
            logger.error("gemini fallback failed status=%s err=%s", e.status, e)
            yield message_for("apology", language)
            return
        if on_success is not None:
            on_success(text)
        yield text
