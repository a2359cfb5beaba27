"""Pattern-based scraping of authentication artifacts from captured page traffic.

The provider inlines its configuration as script text (``window.appConf = {...}``)
with no stable schema, so everything here works on strings and returns ``None``
or an empty mapping when a field is missing instead of raising.
"""
import base64
import binascii
import re
from typing import Dict, Iterable, Optional
from urllib.parse import parse_qs, urlsplit
from canvas_zoom_archiver.models.recording import host_in_domain

APP_CONF_MARKER = "window.appConf"
APP_CONF_WINDOW = 2000

_SCID_RE = re.compile(r"""scid\s*:\s*['"]([^'"]+)['"]""")
_MANIFEST_RE = re.compile(r"""ajaxHeaders\s*:\s*\[(.*?)\]""", re.DOTALL)
_MANIFEST_ENTRY_RE = re.compile(
    r"""\{\s*key\s*:\s*['"]([^'"]+)['"]\s*,\s*value\s*:\s*['"]([^'"]+)['"]\s*\}"""
)
_XSRF_RE = re.compile(r"""['"]?x-xsrf-token['"]?\s*:\s*['"]([^'"]+)['"]""", re.IGNORECASE)

# Never replayed from a captured request: set by the HTTP stack or tied to the connection
_HOP_BY_HOP_HEADERS = {
    "content-length",
    "accept-encoding",
    "transfer-encoding",
    "connection",
    "upgrade",
    "cookie",
    "host",
}


def decode_body(body: str, base64_encoded: bool = False) -> str:
    """Return the response body as text, unwrapping base64 when flagged."""
    if not base64_encoded:
        return body
    try:
        return base64.b64decode(body).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return body


def app_conf_chunk(text: str) -> Optional[str]:
    """Slice of the page starting at the inlined config object, or None."""
    idx = text.find(APP_CONF_MARKER)
    if idx < 0:
        return None
    return text[idx:idx + APP_CONF_WINDOW]


def extract_correlation_token(text: str) -> Optional[str]:
    chunk = app_conf_chunk(text)
    if chunk is None:
        return None
    match = _SCID_RE.search(chunk)
    return match.group(1) if match else None


def _wanted(name: str, prefixes: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(lowered.startswith(prefix.lower()) for prefix in prefixes)


def extract_header_manifest(text: str, prefixes: Iterable[str]) -> Dict[str, str]:
    """Headers from the ``ajaxHeaders: [{key, value}, ...]`` array whose name matches a prefix."""
    chunk = app_conf_chunk(text)
    if chunk is None:
        return {}
    match = _MANIFEST_RE.search(chunk)
    if not match:
        return {}

    prefixes = list(prefixes)
    return {
        key: value
        for key, value in _MANIFEST_ENTRY_RE.findall(match.group(1))
        if _wanted(key, prefixes)
    }


def extract_xsrf_token(text: str) -> Optional[str]:
    chunk = app_conf_chunk(text)
    if chunk is None:
        return None
    match = _XSRF_RE.search(chunk)
    return match.group(1) if match else None


def extract_app_conf(text: str, prefixes: Iterable[str]):
    """Correlation token and filtered header manifest from one bootstrap response.

    The dedicated CSRF pattern only fills ``x-xsrf-token`` when the manifest did
    not already carry it, in any letter case.
    """
    token = extract_correlation_token(text)
    headers = extract_header_manifest(text, prefixes)
    if not any(name.lower() == "x-xsrf-token" for name in headers):
        xsrf = extract_xsrf_token(text)
        if xsrf:
            headers["x-xsrf-token"] = xsrf
    return token, headers


def extract_scid_from_url(url: str) -> Optional[str]:
    values = parse_qs(urlsplit(url).query).get("lti_scid")
    return values[0] if values and values[0] else None


def is_replay_asset(url: str, host_suffixes: Iterable[str]) -> bool:
    """True for provider media requests: an .mp4/.m3u8 asset on a provider or CDN host."""
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if not host or not any(host_in_domain(host, suffix) for suffix in host_suffixes):
        return False

    path = parts.path.lower()
    query = parts.query.lower()
    return (
        path.endswith(".mp4")
        or path.endswith(".m3u8")
        or "playlist.m3u8" in path
        or ".mp4" in query
        or ".m3u8" in query
    )


def clean_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Drop pseudo headers and hop-by-hop headers from a captured request."""
    return {
        name: value
        for name, value in headers.items()
        if not name.startswith(":") and name.lower() not in _HOP_BY_HOP_HEADERS
    }
