import hashlib
import threading
import time
from collections import OrderedDict
from typing import Any, Optional

ANSWER_TTL_SEC = 86400
FREQUENCY_TTL_SEC = 7 * 86400
FREQUENT_THRESHOLD = 3
FREQUENCY_PREFIX = "frequent_question:"


class TTLCache:
    """Process-local key/value store with per-entry expiry.

    With ``capacity=None`` entries only leave through TTL expiry.
    """

    def __init__(self, ttl_sec: int = ANSWER_TTL_SEC, capacity: Optional[int] = None):
        self.ttl = ttl_sec
        self.capacity = capacity
        self.data: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        now = time.time()
        with self._lock:
            if key in self.data:
                expires_at, val = self.data[key]
                if now < expires_at:
                    self.data.move_to_end(key)
                    return val
                del self.data[key]
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        expires_at = time.time() + (self.ttl if ttl is None else ttl)
        with self._lock:
            if key in self.data:
                self.data.move_to_end(key)
            self.data[key] = (expires_at, value)
            if self.capacity is not None and len(self.data) > self.capacity:
                self.data.popitem(last=False)

    def delete(self, key: str):
        with self._lock:
            self.data.pop(key, None)

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        # the expiry is fixed by the first increment, later ones keep it
        now = time.time()
        with self._lock:
            entry = self.data.get(key)
            if entry is not None and now < entry[0]:
                count = int(entry[1]) + 1
                self.data[key] = (entry[0], count)
                return count
            self.data[key] = (now + (self.ttl if ttl is None else ttl), 1)
            return 1

    def purge_expired(self) -> int:
        now = time.time()
        with self._lock:
            stale = [k for k, (exp, _) in self.data.items() if now >= exp]
            for k in stale:
                del self.data[k]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self.data)


def normalize_query(q: str) -> str:
    return " ".join(q.lower().split())


def cache_key(message: str, language: str, resource_id: Optional[int] = None) -> str:
    raw = "|".join([normalize_query(message), language or "",
                    "" if resource_id is None else str(resource_id)])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ResponseCache:
    def __init__(self, answer_ttl: int = ANSWER_TTL_SEC,
                 frequency_ttl: int = FREQUENCY_TTL_SEC, disabled: bool = False):
        self.answers = TTLCache(ttl_sec=answer_ttl)
        self.counters = TTLCache(ttl_sec=frequency_ttl)
        self.disabled = disabled

    def get(self, key: str) -> Optional[str]:
        if self.disabled:
            return None
        return self.answers.get(key)

    def put(self, key: str, value: str, ttl: Optional[int] = None):
        if self.disabled or not value:
            return
        self.answers.set(key, value, ttl)

    def increment_frequency(self, key: str) -> int:
        return self.counters.incr(FREQUENCY_PREFIX + key)

    def frequency(self, key: str) -> int:
        return int(self.counters.get(FREQUENCY_PREFIX + key) or 0)

    def is_frequent(self, key: str) -> bool:
        return self.frequency(key) > FREQUENT_THRESHOLD

    def stats(self) -> dict:
        return {"answers": len(self.answers), "counters": len(self.counters)}
