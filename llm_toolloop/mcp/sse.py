"""
Server-Sent Events framing for the HTTP+SSE transport.

Covers line-level SSE decoding, unwrapping of gateway envelopes around
JSON-RPC payloads, and discovery of the per-connection session endpoint.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional
from urllib.parse import parse_qs, urlencode, urljoin, urlparse, urlunparse

from ..constants import ENVELOPE_KEYS, MAX_ENVELOPE_DEPTH, SSE_DONE_MARKER

logger = logging.getLogger(__name__)

ENDPOINT_EVENT = "endpoint"
DEFAULT_EVENT = "message"

_SESSION_MARKERS = ("sessionid=", "sessionId=", "session_id=")
_SESSION_RE = re.compile(r"[?&]?(sessionid|sessionId|session_id)=([^&#\s\"']+)")


@dataclass
class SSEEvent:
    """One dispatched SSE event."""
    event: str
    data: str


def has_session_marker(text: str) -> bool:
    return any(marker in text for marker in _SESSION_MARKERS)


class SSEDecoder:
    """
    Incremental SSE decoder fed one line at a time.

    ``event:`` sets the event name, ``data:`` lines accumulate and a blank
    line dispatches. Bare lines carrying a session id are surfaced as
    ``endpoint`` events right away since some gateways send them outside
    of any event frame.
    """

    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[SSEEvent]:
        """
        Consume one line (without its terminator).

        Returns:
            A complete event when this line finishes one, else None
        """
        line = line.rstrip("\r\n")
        if not line.strip():
            return self.flush()

        if line.startswith(":"):
            return None
        if line.startswith("event:"):
            self._event = line[6:].strip()
            return None
        if line.startswith("data:"):
            data = line[5:]
            if data.startswith(" "):
                data = data[1:]
            self._data.append(data)
            return None
        if line.startswith("id:") or line.startswith("retry:"):
            return None

        bare = line.strip()
        if has_session_marker(bare):
            return SSEEvent(event=ENDPOINT_EVENT, data=bare)

        logger.debug("Ignoring unrecognized SSE line: %s", bare[:200])
        return None

    def flush(self) -> Optional[SSEEvent]:
        """Dispatch whatever has been accumulated, if anything."""
        if not self._data:
            self._event = ""
            return None
        event = SSEEvent(event=self._event or DEFAULT_EVENT, data="\n".join(self._data))
        self._event = ""
        self._data = []
        return event


def _is_rpc_message(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    if "jsonrpc" in value:
        return True
    return "method" in value or ("id" in value and ("result" in value or "error" in value))


def _decode_json_text(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped == SSE_DONE_MARKER or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def unwrap_envelope(value: Any, max_depth: int = MAX_ENVELOPE_DEPTH) -> List[dict]:
    """
    Collect the JSON-RPC messages inside a possibly wrapped payload.

    Mappings nested under ``data``/``message``/``payload`` are unwrapped,
    JSON-encoded strings are decoded and batch arrays are flattened. The
    walk is total and stops at ``max_depth``.

    Args:
        value: Decoded JSON value
        max_depth: Maximum nesting to descend through

    Returns:
        JSON-RPC message objects in order of appearance
    """
    messages: List[dict] = []
    _collect(value, 0, max_depth, messages)
    return messages


def _collect(value: Any, depth: int, max_depth: int, out: List[dict]) -> None:
    if depth > max_depth:
        return
    if _is_rpc_message(value):
        out.append(value)
    elif isinstance(value, list):
        for item in value:
            _collect(item, depth + 1, max_depth, out)
    elif isinstance(value, dict):
        for key in ENVELOPE_KEYS:
            if key in value:
                before = len(out)
                _collect(value[key], depth + 1, max_depth, out)
                if len(out) > before:
                    return
    elif isinstance(value, str):
        decoded = _decode_json_text(value)
        if decoded is not None:
            _collect(decoded, depth + 1, max_depth, out)


def extract_messages(data: str) -> List[dict]:
    """Decode the data of one SSE event into zero or more JSON-RPC messages."""
    decoded = _decode_json_text(data)
    if decoded is None:
        return []
    return unwrap_envelope(decoded)


@dataclass
class SessionEndpoints:
    """POST targets derived from a session announcement."""
    session_id: str
    preferred: str
    canonical: Optional[str] = None

    def targets(self) -> List[str]:
        return [url for url in (self.preferred, self.canonical) if url]


def _origin_url(base_url: str, path: str, query: dict) -> str:
    parsed = urlparse(base_url)
    return urlunparse((parsed.scheme, parsed.netloc, path, "", urlencode(query), ""))


def parse_session_endpoint(data: str, base_url: str) -> Optional[SessionEndpoints]:
    """
    Derive session POST endpoints from an ``endpoint`` event or bare line.

    Accepts ``?sessionid=X``, ``/sse?sessionid=X``, ``/message?sessionId=X``,
    full URLs and JSON objects carrying an ``endpoint``/``uri``/``url`` field.
    A ``session_id`` path is used verbatim; a ``/message`` or ``sessionId``
    shape prefers ``/message?sessionId=X``; otherwise the canonical
    ``/sse?sessionid=X`` form is the preferred one.

    Returns:
        The endpoints, or None if no session id was found
    """
    text = (data or "").strip()
    if not text:
        return None

    decoded = _decode_json_text(text)
    if isinstance(decoded, dict):
        for key in ("endpoint", "uri", "url", "path"):
            if isinstance(decoded.get(key), str):
                text = decoded[key].strip()
                break

    if text.startswith(("http://", "https://")):
        query = urlparse(text).query
    elif text.startswith(("/", "?")):
        query = urlparse("http://placeholder" + text).query
    else:
        query = text

    params = parse_qs(query)
    session_id = None
    for key in ("sessionid", "sessionId", "session_id"):
        if params.get(key):
            session_id = params[key][0]
            break
    if not session_id:
        match = _SESSION_RE.search(text)
        if match:
            session_id = match.group(2)
    if not session_id:
        return None

    canonical = _origin_url(base_url, "/sse", {"sessionid": session_id})

    if "session_id=" in text and text.startswith(("/", "http://", "https://")):
        preferred = urljoin(base_url, text)
    elif "/message" in text or "sessionId=" in text:
        preferred = _origin_url(base_url, "/message", {"sessionId": session_id})
    else:
        preferred = canonical

    return SessionEndpoints(
        session_id=session_id,
        preferred=preferred,
        canonical=None if canonical == preferred else canonical,
    )
