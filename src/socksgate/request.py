from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, List, Optional, Tuple, TypeVar

from .exceptions import BadRequest

__all__ = [
    "ClientReader",
    "RequestHead",
    "ResponseHead",
    "read_request_head",
    "read_response_head",
    "iter_body",
    "iter_response_body",
    "response_framing",
    "wants_close",
    "build_response",
    "CONNECT_ESTABLISHED",
    "CONNECT_FAILED",
]

T = TypeVar("T")

CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
CONNECT_FAILED = b"HTTP/1.1 500 Connection Error\r\n\r\n"

BODYLESS_STATUSES = (204, 304)


async def _within(aw: Awaitable[T], timeout: float) -> T:
    if timeout > 0:
        return await asyncio.wait_for(aw, timeout=timeout)
    return await aw


class ClientReader:
    """
    The client side of one gateway connection. Reads go to the underlying
    StreamReader, except for bytes handed back with ``unread()``, which are
    served first. Lets the gateway peek at a kept-alive client without
    losing the start of its next request.
    """

    def __init__(self, reader: asyncio.StreamReader) -> None:
        self._reader = reader
        self._pending = bytearray()

    def unread(self, data: bytes) -> None:
        self._pending[:0] = data

    async def read(self, n: int) -> bytes:
        if self._pending:
            data = bytes(self._pending[:n])
            del self._pending[:n]
            return data
        return await self._reader.read(n)

    async def readline(self) -> bytes:
        if not self._pending:
            return await self._reader.readline()
        i = self._pending.find(b"\n")
        if i >= 0:
            line = bytes(self._pending[:i + 1])
            del self._pending[:i + 1]
            return line
        partial = bytes(self._pending)
        self._pending.clear()
        return partial + await self._reader.readline()


def _header(headers: List[Tuple[str, str]], name: str, default: Optional[str]) -> Optional[str]:
    key = name.lower()
    for k, v in headers:
        if k.lower() == key:
            return v
    return default


@dataclass
class RequestHead:
    method: str
    target: str
    version: str
    # (name, value) in arrival order; name casing and value text as sent
    headers: List[Tuple[str, str]] = field(default_factory=list)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return _header(self.headers, name, default)


@dataclass
class ResponseHead:
    version: str
    status: int
    reason: str
    headers: List[Tuple[str, str]] = field(default_factory=list)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return _header(self.headers, name, default)


def _parse_header_line(line: str) -> Optional[Tuple[str, str]]:
    if ":" not in line:
        return None
    k, v = line.split(":", 1)
    k = k.strip()
    if not k:
        return None
    return k, v.strip()


async def _read_header_block(reader, first_len: int, max_header_bytes: int, timeout: float) -> Tuple[List[Tuple[str, str]], bytes]:
    # Header lines up to and including the blank line; raw bytes kept for pass-through
    headers: List[Tuple[str, str]] = []
    raw = bytearray()
    total = first_len
    while True:
        h = await _within(reader.readline(), timeout)
        if not h:
            break
        raw += h
        total += len(h)
        if total > max_header_bytes:
            raise BadRequest(431, "Request Header Fields Too Large")
        if h in (b"\r\n", b"\n"):
            break
        parsed = _parse_header_line(h.decode("latin1", "replace").rstrip("\r\n"))
        if parsed:
            headers.append(parsed)
    return headers, bytes(raw)


async def read_request_head(
    reader,
    max_line_bytes: int = 8192,
    max_header_bytes: int = 64 * 1024,
    timeout: float = 30.0,
) -> Optional[RequestHead]:
    """
    Read the request line and header block. Returns None when the client
    closed before sending anything. Raises BadRequest for anything the
    gateway refuses; asyncio.TimeoutError if the client stalls.
    """
    line = await _within(reader.readline(), timeout)
    if not line:
        return None
    if len(line) > max_line_bytes:
        raise BadRequest(414, "Request-URI Too Long")
    req_line = line.decode("latin1", "replace").rstrip("\r\n")
    parts = req_line.split(" ")
    if len(parts) < 3:
        raise BadRequest(400, "Bad Request", f"bad request line {req_line[:256]!r}")
    method, target, version = parts[0].upper(), parts[1], parts[2]

    headers, _ = await _read_header_block(reader, len(line), max_header_bytes, timeout)
    head = RequestHead(method=method, target=target, version=version, headers=headers)

    # HTTP/2 preface or h2c upgrade: we only speak HTTP/1.x
    if version.upper().startswith("HTTP/2"):
        raise BadRequest(505, "HTTP Version Not Supported")
    if "h2c" in (head.get("upgrade") or "").lower() or head.get("http2-settings") is not None:
        raise BadRequest(505, "HTTP Version Not Supported")
    return head


async def read_response_head(
    reader: asyncio.StreamReader,
    max_header_bytes: int = 64 * 1024,
    timeout: float = 30.0,
) -> Tuple[Optional[ResponseHead], bytes]:
    """
    Read one upstream status line and header block. Returns the parsed head
    (None if the status line is not HTTP) and the raw bytes to pass on.
    """
    line = await _within(reader.readline(), timeout)
    if not line:
        raise asyncio.IncompleteReadError(b"", None)
    parts = line.decode("latin1", "replace").rstrip("\r\n").split(" ", 2)
    if len(parts) < 2 or not parts[0].upper().startswith("HTTP/") or not parts[1].isdigit():
        return None, line
    headers, raw = await _read_header_block(reader, len(line), max_header_bytes, timeout)
    reason = parts[2] if len(parts) > 2 else ""
    return ResponseHead(version=parts[0], status=int(parts[1]), reason=reason, headers=headers), line + raw


def wants_close(version: str, connection: Optional[str]) -> bool:
    """True if a message with this version and Connection header ends its connection."""
    tokens = {t.strip().lower() for t in (connection or "").split(",")}
    if "close" in tokens:
        return True
    if version.upper() == "HTTP/1.0":
        return "keep-alive" not in tokens
    return False


async def _iter_chunked(reader, bufsize: int, timeout: float) -> AsyncIterator[bytes]:
    # Pass chunked framing through untouched; only parse it to know where it ends
    while True:
        size_line = await _within(reader.readline(), timeout)
        if not size_line.endswith(b"\n"):
            raise asyncio.IncompleteReadError(size_line, None)
        yield size_line
        try:
            size = int(size_line.split(b";", 1)[0].strip(), 16)
        except ValueError as e:
            raise BadRequest(400, "Bad Request", "malformed chunk size") from e
        if size == 0:
            while True:
                trailer = await _within(reader.readline(), timeout)
                if not trailer.endswith(b"\n"):
                    raise asyncio.IncompleteReadError(trailer, None)
                yield trailer
                if trailer in (b"\r\n", b"\n"):
                    return
        async for chunk in _iter_sized(reader, size + 2, bufsize, timeout):  # data + CRLF
            yield chunk


async def _iter_sized(reader, length: int, bufsize: int, timeout: float) -> AsyncIterator[bytes]:
    remaining = length
    while remaining > 0:
        chunk = await _within(reader.read(min(bufsize, remaining)), timeout)
        if not chunk:
            raise asyncio.IncompleteReadError(b"", remaining)
        remaining -= len(chunk)
        yield chunk


async def _iter_until_eof(reader, bufsize: int, timeout: float) -> AsyncIterator[bytes]:
    while True:
        chunk = await _within(reader.read(bufsize), timeout)
        if not chunk:
            return
        yield chunk


def _content_length(value: Optional[str]) -> int:
    if not value:
        return 0
    try:
        length = int(value)
    except ValueError as e:
        raise BadRequest(400, "Bad Request", f"invalid Content-Length {value!r}") from e
    if length < 0:
        raise BadRequest(400, "Bad Request", f"invalid Content-Length {value!r}")
    return length


async def _client_body(body: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    try:
        async for chunk in body:
            yield chunk
    except asyncio.TimeoutError as e:
        raise BadRequest(408, "Request Timeout", "request body stalled") from e
    except asyncio.IncompleteReadError as e:
        raise BadRequest(400, "Bad Request", "request body ended early") from e


def iter_body(reader, head: RequestHead, bufsize: int = 65536, timeout: float = 0.0) -> AsyncIterator[bytes]:
    """
    Request body as raw bytes, framed by Transfer-Encoding or Content-Length.
    Each read waits at most ``timeout`` seconds (0: no limit); a stalled or
    truncated body raises BadRequest (408 / 400).
    """
    te = (head.get("transfer-encoding") or "").lower()
    if "chunked" in te:
        return _client_body(_iter_chunked(reader, bufsize, timeout))
    length = _content_length(head.get("content-length"))
    return _client_body(_iter_sized(reader, length, bufsize, timeout))


def response_framing(resp: Optional[ResponseHead], request_method: str) -> str:
    """How the response body ends: "none", "chunked", "sized" or "close"."""
    if resp is None:
        # Not HTTP; pass through until the upstream closes
        return "close"
    if request_method == "HEAD" or resp.status < 200 or resp.status in BODYLESS_STATUSES:
        return "none"
    if "chunked" in (resp.get("transfer-encoding") or "").lower():
        return "chunked"
    if resp.get("content-length") is not None:
        return "sized"
    return "close"


def iter_response_body(
    reader: asyncio.StreamReader,
    resp: Optional[ResponseHead],
    request_method: str,
    bufsize: int = 65536,
    timeout: float = 0.0,
) -> AsyncIterator[bytes]:
    """
    Upstream response body as raw bytes. Raises asyncio.TimeoutError when the
    upstream idles longer than ``timeout`` and IncompleteReadError when it
    closes inside a framed body.
    """
    framing = response_framing(resp, request_method)
    if framing == "none":
        return _iter_sized(reader, 0, bufsize, timeout)
    if framing == "chunked":
        return _iter_chunked(reader, bufsize, timeout)
    if framing == "sized":
        return _iter_sized(reader, _content_length(resp.get("content-length")), bufsize, timeout)
    return _iter_until_eof(reader, bufsize, timeout)


def build_response(code: int, reason: str, text: str = "") -> bytes:
    body = text.encode("utf-8")
    return (
        f"HTTP/1.1 {code} {reason}\r\n"
        "Proxy-Agent: socksgate\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    ).encode("latin1") + body
