"""URL -> host / origin / coarse resource category. Pure functions, no state."""

from __future__ import annotations

from urllib.parse import urlsplit

RESOURCE_CATEGORIES = ("document", "script", "stylesheet", "image", "font", "xhr", "fetch", "media", "other")

# CDP Network.ResourceType -> category
_CDP_TYPE_MAP: dict[str, str] = {
    "document": "document",
    "script": "script",
    "stylesheet": "stylesheet",
    "image": "image",
    "font": "font",
    "xhr": "xhr",
    "fetch": "fetch",
    "eventsource": "fetch",
    "websocket": "fetch",
    "media": "media",
    "texttrack": "media",
}

# PerformanceResourceTiming.initiatorType -> category
_INITIATOR_MAP: dict[str, str] = {
    "navigation": "document",
    "iframe": "document",
    "script": "script",
    "link": "stylesheet",
    "css": "stylesheet",
    "img": "image",
    "image": "image",
    "xmlhttprequest": "xhr",
    "fetch": "fetch",
    "beacon": "fetch",
    "audio": "media",
    "video": "media",
}

_EXTENSION_MAP: dict[str, str] = {
    ".js": "script",
    ".mjs": "script",
    ".css": "stylesheet",
    ".png": "image",
    ".jpg": "image",
    ".jpeg": "image",
    ".gif": "image",
    ".webp": "image",
    ".avif": "image",
    ".svg": "image",
    ".ico": "image",
    ".woff": "font",
    ".woff2": "font",
    ".ttf": "font",
    ".otf": "font",
    ".mp4": "media",
    ".webm": "media",
    ".mp3": "media",
    ".html": "document",
    ".htm": "document",
    ".json": "fetch",
}

_PROTECTED_PREFIXES = (
    "chrome://",
    "chrome-extension://",
    "chrome-search://",
    "chrome-untrusted://",
    "devtools://",
    "edge://",
    "view-source:",
    "https://chrome.google.com/webstore",
    "https://chromewebstore.google.com",
)


def domain_of(url: str | None) -> str | None:
    if not isinstance(url, str) or not url:
        return None
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def origin_of(url: str | None) -> str:
    if not isinstance(url, str) or not url:
        return ""
    try:
        u = urlsplit(url)
        host = u.hostname
        port = u.port
    except ValueError:
        return ""
    if not u.scheme or not host:
        return ""
    netloc = f"{host}:{port}" if port else host
    return f"{u.scheme}://{netloc}"


def _category_from_mime(mime_type: str) -> str | None:
    mt = mime_type.split(";", 1)[0].strip().lower()
    if not mt:
        return None
    if mt in {"text/html", "application/xhtml+xml"}:
        return "document"
    if "javascript" in mt or mt == "application/ecmascript":
        return "script"
    if mt == "text/css":
        return "stylesheet"
    if mt.startswith("image/"):
        return "image"
    if mt.startswith("font/") or "font" in mt:
        return "font"
    if mt.startswith("video/") or mt.startswith("audio/"):
        return "media"
    return None


def _category_from_path(url: str) -> str | None:
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return None
    dot = path.rfind(".")
    if dot < 0 or "/" in path[dot:]:
        return None
    return _EXTENSION_MAP.get(path[dot:])


def resource_category(
    url: str | None,
    *,
    initiator_type: str | None = None,
    resource_type_hint: str | None = None,
    mime_type: str | None = None,
) -> str:
    """Best-effort coarse category. Strongest signal wins: CDP type, mime, extension, initiator."""
    if isinstance(resource_type_hint, str) and resource_type_hint:
        cat = _CDP_TYPE_MAP.get(resource_type_hint.strip().lower())
        if cat:
            return cat
    if isinstance(mime_type, str) and mime_type:
        cat = _category_from_mime(mime_type)
        if cat:
            return cat
    if isinstance(url, str) and url:
        cat = _category_from_path(url)
        if cat:
            return cat
    if isinstance(initiator_type, str) and initiator_type:
        cat = _INITIATOR_MAP.get(initiator_type.strip().lower())
        if cat:
            return cat
    return "other"


def is_protected_url(url: str | None) -> bool:
    if not isinstance(url, str):
        return False
    u = url.strip().lower()
    if u.startswith("about:") and u not in {"about:blank"}:
        return True
    return any(u.startswith(p) for p in _PROTECTED_PREFIXES)


def is_third_party(domain: str | None, page_host: str | None) -> bool:
    if not domain or not page_host:
        return False
    return domain.lower() != page_host.lower()


__all__ = [
    "RESOURCE_CATEGORIES",
    "domain_of",
    "is_protected_url",
    "is_third_party",
    "origin_of",
    "resource_category",
]
