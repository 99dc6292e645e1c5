import os
from dataclasses import dataclass
from functools import lru_cache

BASE = os.path.dirname(__file__)
DEFAULT_RESOURCES_FILE = os.path.join(BASE, "..", "data", "resources.json")


def _bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class Settings:
    api_key: str = ""
    model: str = "gemini-2.5-flash"
    fast_model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com"
    timeout: float = 60.0
    connect_timeout: float = 10.0
    ssl_verify: bool = True
    ca_bundle: str | None = None
    proxy: str | None = None
    resources_file: str = DEFAULT_RESOURCES_FILE
    stream_timeout: float = 60.0
    cache_disabled: bool = False
    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        model = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")
        return cls(
            api_key=os.environ.get("GEMINI_API_KEY", "").strip(),
            model=model,
            fast_model=os.environ.get("GEMINI_FAST_MODEL", model),
            base_url=os.environ.get(
                "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com").rstrip("/"),
            timeout=float(os.environ.get("GEMINI_TIMEOUT", "60")),
            connect_timeout=float(os.environ.get("GEMINI_CONNECT_TIMEOUT", "10")),
            ssl_verify=_bool("GEMINI_SSL_VERIFY", True),
            ca_bundle=os.environ.get("GEMINI_CA_BUNDLE") or None,
            proxy=os.environ.get("GEMINI_HTTP_PROXY") or None,
            resources_file=os.environ.get(
                "SPACEBIO_RESOURCES_FILE", DEFAULT_RESOURCES_FILE),
            stream_timeout=float(os.environ.get("SPACEBIO_STREAM_TIMEOUT", "60")),
            cache_disabled=_bool("SPACEBIO_CACHE_DISABLED", False),
            debug=_bool("SPACEBIO_DEBUG", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
