from typing import Dict, Iterable, Optional, Set
from urllib.parse import urlparse

ALLOWED_DEBUG_HOSTS = {
    "localhost",
    "127.0.0.1",
}


def parse_allowed_origins(allowed_domains: str) -> Set[str]:
    return {value.strip().rstrip("/") for value in allowed_domains.split(",") if value.strip()}


def get_cors_headers(
    origin_value: Optional[str], allowed_origins: Iterable[str], debug: bool
) -> Dict[str, str]:
    """Return appropriate CORS headers for the request origin."""
    headers = {
        "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": (
            "Keep-Alive, User-Agent, X-Requested-With, "
            "If-Modified-Since, Cache-Control, Content-Type, Authorization"
        ),
        "Access-Control-Expose-Headers": "Authorization",
        "Vary": "Origin",
    }

    if not origin_value:
        return headers

    parsed = urlparse(origin_value)
    base = (
        f"{parsed.scheme}://{parsed.netloc}"
        if parsed.scheme and parsed.netloc
        else origin_value
    )

    if base in set(allowed_origins):
        headers["Access-Control-Allow-Origin"] = origin_value
    elif debug and parsed.hostname in ALLOWED_DEBUG_HOSTS:
        headers["Access-Control-Allow-Origin"] = origin_value

    return headers
