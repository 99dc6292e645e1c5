import re
from typing import List

from bs4 import BeautifulSoup

_word_re = re.compile(r"[^\W_]+", re.UNICODE)


def title_words(text: str) -> List[str]:
    """Unique lowercased alphanumeric runs of ``text``, in first-seen order."""
    seen, out = set(), []
    for w in _word_re.findall(text.lower()):
        if w not in seen:
            seen.add(w)
            out.append(w)
    return out


def query_keywords(q: str, min_len: int = 3) -> List[str]:
    return [w for w in q.strip().lower().split() if len(w) >= min_len]


def html_to_text(html: str) -> str:
    """Readable text of an HTML fragment, scripts and styles dropped."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return soup.get_text(separator=" ", strip=True)


def make_snippet(text: str, max_len: int = 220, ellipsis: str = "...") -> str:
    s = " ".join(text.split())
    if len(s) <= max_len:
        return s
    return s[:max_len] + ellipsis


def truncate_bytes(text: str, max_bytes: int) -> str:
    raw = text.encode("utf-8")
    if len(raw) <= max_bytes:
        return text
    return raw[:max_bytes].decode("utf-8", errors="ignore")


def strip_tags(text: str) -> str:
    if "<" not in text:
        return text.strip()
    return html_to_text(text)
