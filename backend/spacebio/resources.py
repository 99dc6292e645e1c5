import json
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse

import tldextract

from .utils import query_keywords, title_words

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 5
# bundled public-suffix snapshot only, no network lookup at runtime
_tld = tldextract.TLDExtract(suffix_list_urls=())
_year_re = re.compile(r"\b(19\d{2}|20\d{2})\b")
_in_progress_re = re.compile(r"in progress|ongoing|prépublication|preprint", re.I)


@dataclass
class Resource:
    id: int
    title: str
    url: str
    content: str = ""

    @property
    def description(self) -> str:
        return self.title

    def summary(self) -> dict:
        return {"id": self.id, "title": self.title,
                "description": self.description, "url": self.url}

    def detail(self) -> dict:
        return {"id": self.id, "title": self.title, "url": self.url, "content": self.content}


def domain_of(url: str) -> str:
    ex = _tld(url)
    return ".".join(p for p in [ex.domain, ex.suffix] if p)


def _resource_type(url: str) -> str:
    pu = urlparse(url)
    host = (pu.hostname or "").lower()
    path = (pu.path or "").lower()
    if path.endswith(".pdf"):
        return "pdf"
    if re.search(r"youtube\.com|youtu\.be", host):
        return "video"
    if "github.com" in host:
        return "code"
    if re.search(r"zenodo\.org|figshare\.com", host):
        return "dataset"
    if "arxiv.org" in host:
        return "preprint"
    if "doi.org" in host:
        return "doi"
    return "document"


class ResourceStore:
    """Static list of (title, url) resources loaded from a JSON manifest."""

    def __init__(self, path: str):
        self.path = path
        self._by_id: Dict[int, Resource] = {}

    def load(self) -> List[Resource]:
        self._by_id = {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            logger.error("resources file not found: %s", self.path)
            return []
        except (OSError, ValueError) as e:
            logger.error("resources file unreadable path=%s err=%s", self.path, e)
            return []
        if not isinstance(raw, list):
            logger.error("resources file is not a JSON array: %s", self.path)
            return []
        for i, item in enumerate(raw, start=1):
            if not isinstance(item, dict):
                logger.warning("skipping resource #%d: not an object", i)
                continue
            self._by_id[i] = Resource(
                id=i,
                title=str(item.get("title") or "Untitled"),
                url=str(item.get("url") or ""),
            )
        logger.info("loaded %d resources from %s", len(self._by_id), self.path)
        return self.all()

    @classmethod
    def from_entries(cls, entries: List[dict]) -> "ResourceStore":
        store = cls(path="<memory>")
        for i, item in enumerate(entries, start=1):
            store._by_id[i] = Resource(id=i, title=item.get("title") or "Untitled",
                                       url=item.get("url") or "")
        return store

    def get(self, resource_id: int) -> Optional[Resource]:
        return self._by_id.get(resource_id)

    def all(self) -> List[Resource]:
        return [self._by_id[k] for k in sorted(self._by_id)]

    def __len__(self) -> int:
        return len(self._by_id)

    def search(self, query: str, limit: int = SEARCH_LIMIT) -> List[Resource]:
        keywords = query_keywords(query)
        if not keywords:
            return []
        scored = []
        for res in self.all():
            title = res.title.lower()
            score = sum(1 for k in keywords if k in title)
            if score > 0:
                scored.append((score, res))
        # sorted() is stable, equal scores keep manifest order
        scored = sorted(scored, key=lambda t: t[0], reverse=True)
        return [res for _, res in scored[:limit]]

    def related(self, resource_id: int, limit: int = SEARCH_LIMIT) -> List[Resource]:
        current = self.get(resource_id)
        if current is None:
            return []
        words = [w for w in title_words(current.title) if len(w) > 2]
        scored = []
        for res in self.all():
            if res.id == resource_id:
                continue
            t = res.title.lower()
            count = sum(1 for w in words if w in t)
            if count > 0:
                scored.append((count, res))
        scored = sorted(scored, key=lambda t: t[0], reverse=True)
        return [res for _, res in scored[:limit]]

    def enriched(self) -> List[dict]:
        out = []
        for res in self.all():
            host = (urlparse(res.url).hostname or "").lower()
            if host.startswith("www."):
                host = host[4:]
            m = _year_re.search(res.title)
            out.append({
                "id": res.id,
                "title": res.title,
                "url": res.url,
                "organization": host,
                "domain": domain_of(res.url) if res.url else "",
                "year": m.group(1) if m else "",
                "status": "In progress" if _in_progress_re.search(res.title) else "Completed",
                "type": _resource_type(res.url),
            })
        return out
