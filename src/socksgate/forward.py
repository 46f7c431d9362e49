from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Tuple
from urllib.parse import urlsplit

from .config import GatewayConfig
from .exceptions import BadRequest, SocksError, UnsupportedProxyType
from .relay import close_writer, pipe_bidirectional
from .request import (
    ClientReader,
    RequestHead,
    build_response,
    iter_body,
    iter_response_body,
    read_response_head,
    response_framing,
    wants_close,
)
from .socks_client import SocksClient
from .status import Stats

logger = logging.getLogger("socksgate.forward")

__all__ = ["ForwardTarget", "UpstreamRequest", "ForwardHandler", "resolve_target"]

NO_BODY_METHODS = ("GET", "HEAD")
READ_CHUNK = 65536


@dataclass(frozen=True)
class ForwardTarget:
    scheme: str
    host: str
    port: int
    path: str
    # True when the client sent no scheme and https was guessed
    assumed_https: bool = False

    def as_http(self) -> "ForwardTarget":
        return ForwardTarget(scheme="http", host=self.host, port=80, path=self.path, assumed_https=False)

    def label(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"


def resolve_target(head: RequestHead) -> ForwardTarget:
    target = head.target
    assumed = False
    if target.startswith("http://") or target.startswith("https://"):
        abs_uri = target
    else:
        host = head.get("host", "")
        if not host:
            raise BadRequest(400, "Bad Request", "Missing Host header")
        abs_uri = f"https://{host}{target}"
        assumed = True

    u = urlsplit(abs_uri)
    scheme = u.scheme.lower()
    dst_host = u.hostname or ""
    if not dst_host:
        raise BadRequest(400, "Bad Request", f"no host in {abs_uri!r}")
    try:
        port = u.port or (443 if scheme == "https" else 80)
    except ValueError as e:
        raise BadRequest(400, "Bad Request", f"invalid port in {abs_uri!r}") from e
    path = u.path or "/"
    if u.query:
        path = f"{path}?{u.query}"
    return ForwardTarget(scheme=scheme, host=dst_host, port=int(port), path=path, assumed_https=assumed)


def _declares_body(head: RequestHead) -> bool:
    return head.get("transfer-encoding") is not None or (head.get("content-length") or "0").strip() != "0"


@dataclass
class UpstreamRequest:
    method: str
    path: str
    headers: List[Tuple[str, str]]
    body: Optional[AsyncIterator[bytes]] = None

    def head_bytes(self) -> bytes:
        lines = [f"{self.method} {self.path} HTTP/1.1"]
        lines.extend(f"{k}: {v}" for k, v in self.headers)
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin1", "replace")


class ForwardHandler:
    """
    Plain (non-CONNECT) requests: re-issue them over a SOCKS connection to the
    origin and stream the raw response back. When no scheme was given, https
    is tried first and plain http on port 80 exactly once after that.

    Every request gets its own SOCKS connection. The response is copied as
    framed by its own headers, so a kept-alive client can send the next
    request on the same connection.
    """

    def __init__(self, config: GatewayConfig, stats: Optional[Stats] = None, client: Optional[SocksClient] = None) -> None:
        self.config = config
        self.stats = stats
        self.client = client or SocksClient(config.socks, config.dial_timeout, config.handshake_timeout)

    def build_request(self, head: RequestHead, target: ForwardTarget, reader) -> UpstreamRequest:
        body = None
        if head.method not in NO_BODY_METHODS:
            body = iter_body(reader, head, timeout=self.config.io_timeout)
        return UpstreamRequest(method=head.method, path=target.path, headers=list(head.headers), body=body)

    async def _connect(self, target: ForwardTarget, cid: str):
        return await self.client.connect(target.host, target.port, cid=cid)

    async def handle(
        self,
        head: RequestHead,
        client_r: ClientReader,
        client_w: asyncio.StreamWriter,
        cid: Optional[str] = None,
    ) -> bool:
        """Serve one request. Returns True if the client connection can carry another."""
        cid = cid or "-"
        try:
            target = resolve_target(head)
        except BadRequest as e:
            logger.info("forward[%s]: reject %s", cid, e)
            await self._respond(client_w, build_response(e.status, e.reason, str(e)))
            return False

        if self.stats:
            self.stats.session_started("http")
        up, down = 0, 0
        try:
            streams = None
            try:
                streams = await self._connect(target, cid)
            except UnsupportedProxyType as e:
                await self._fail(client_w, cid, target, e)
                return False
            except SocksError as e:
                if not target.assumed_https:
                    await self._fail(client_w, cid, target, e)
                    return False
                retry = target.as_http()
                logger.info(
                    "forward[%s]: %s failed (%s), retrying as %s",
                    cid, target.label(), e.kind, retry.label(),
                )
                if self.stats:
                    self.stats.record_fallback()
                target = retry
                try:
                    streams = await self._connect(target, cid)
                except SocksError as e2:
                    await self._fail(client_w, cid, target, e2)
                    return False

            up_r, up_w = streams
            up, down, reusable = await self._exchange(head, target, client_r, client_w, up_r, up_w, cid)
            return reusable
        finally:
            if self.stats:
                self.stats.session_finished(up, down)

    async def _exchange(
        self,
        head: RequestHead,
        target: ForwardTarget,
        client_r: ClientReader,
        client_w: asyncio.StreamWriter,
        up_r: asyncio.StreamReader,
        up_w: asyncio.StreamWriter,
        cid: str,
    ) -> Tuple[int, int, bool]:
        sent = 0
        try:
            req = self.build_request(head, target, client_r)
            data = req.head_bytes()
            up_w.write(data)
            sent += len(data)
            await self._drain(up_w)
            if req.body is not None:
                async for chunk in req.body:
                    up_w.write(chunk)
                    sent += len(chunk)
                    await self._drain(up_w)
        except BadRequest as e:
            # Client-side body problem: stalled, truncated or badly framed
            logger.info("forward[%s]: request body for %s rejected: %s", cid, target.label(), e)
            await close_writer(up_w)
            await self._respond(client_w, build_response(e.status, e.reason, str(e)))
            return sent, 0, False
        except (OSError, asyncio.TimeoutError) as e:
            # Nothing has reached the client yet; a status line is still possible
            logger.warning("forward[%s]: sending request to %s failed: %s", cid, target.label(), e)
            if self.stats:
                self.stats.record_failure(f"send {type(e).__name__}")
            await close_writer(up_w)
            await self._respond(client_w, build_response(502, "Bad Gateway", "Upstream send error"))
            return sent, 0, False

        t0 = time.monotonic()
        try:
            received, end = await self._relay_response(head, target, client_r, client_w, up_r, up_w, cid)
        finally:
            await close_writer(up_w)
        reusable = end == "keep-alive" and not wants_close(head.version, head.get("connection"))
        if head.method in NO_BODY_METHODS and _declares_body(head):
            # The unsent body is still on the client stream
            reusable = False
        logger.info(
            "forward[%s]: %s %s done sent=%d received=%d end=%s dur_ms=%.0f",
            cid, head.method, target.label(), sent, received, end,
            (time.monotonic() - t0) * 1000.0,
        )
        return sent, received, reusable

    async def _relay_response(
        self,
        head: RequestHead,
        target: ForwardTarget,
        client_r: ClientReader,
        client_w: asyncio.StreamWriter,
        up_r: asyncio.StreamReader,
        up_w: asyncio.StreamWriter,
        cid: str,
    ) -> Tuple[int, str]:
        """
        Copy the response while watching the client. A client close cancels
        the copy; bytes the client sends early (its next request) are put
        back unread. Returns (bytes to client, end) where end is one of
        keep-alive, close, upgrade, client-closed or error.
        """
        progress = [0]
        copy = asyncio.create_task(self._copy_response(head.method, up_r, client_w, progress))
        watch = asyncio.create_task(client_r.read(READ_CHUNK))
        try:
            await asyncio.wait({copy, watch}, return_when=asyncio.FIRST_COMPLETED)
            if not watch.done():
                watch.cancel()
            (early,) = await asyncio.gather(watch, return_exceptions=True)
            if isinstance(early, bytes) and early:
                client_r.unread(early)
            elif not isinstance(early, asyncio.CancelledError):
                copy.cancel()
                await asyncio.gather(copy, return_exceptions=True)
                return progress[0], "client-closed"
            end = await copy
        except asyncio.CancelledError:
            copy.cancel()
            watch.cancel()
            await asyncio.gather(copy, watch, return_exceptions=True)
            raise
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, asyncio.LimitOverrunError, BadRequest, ValueError) as e:
            logger.info("forward[%s]: response from %s cut short: %s", cid, target.label(), e or type(e).__name__)
            if progress[0] == 0:
                await self._respond(client_w, build_response(502, "Bad Gateway", "Upstream response error"))
            return progress[0], "error"

        if end == "upgrade":
            _, down, _, _ = await pipe_bidirectional(
                client_r,
                client_w,
                up_r,
                up_w,
                idle_timeout=self.config.tunnel_idle_timeout,
                cid=cid,
                label=f"upgrade {target.label()}",
            )
            return progress[0] + down, end
        return progress[0], end

    async def _copy_response(
        self, method: str, up_r: asyncio.StreamReader, client_w: asyncio.StreamWriter, progress: List[int]
    ) -> str:
        timeout = self.config.io_timeout
        while True:
            resp, raw = await read_response_head(up_r, self.config.max_header_bytes, timeout)
            await self._send(client_w, raw, progress)
            if resp is not None and resp.status == 101:
                return "upgrade"
            if resp is not None and resp.status < 200:
                # Interim response; the final one follows on the same stream
                continue
            async for chunk in iter_response_body(up_r, resp, method, READ_CHUNK, timeout):
                await self._send(client_w, chunk, progress)
            if resp is None or response_framing(resp, method) == "close":
                return "close"
            if wants_close(resp.version, resp.get("connection")):
                return "close"
            return "keep-alive"

    async def _send(self, w: asyncio.StreamWriter, data: bytes, progress: List[int]) -> None:
        w.write(data)
        progress[0] += len(data)
        await self._drain(w)

    async def _drain(self, w: asyncio.StreamWriter) -> None:
        if self.config.io_timeout > 0:
            await asyncio.wait_for(w.drain(), timeout=self.config.io_timeout)
        else:
            await w.drain()

    async def _fail(self, client_w: asyncio.StreamWriter, cid: str, target: ForwardTarget, err: SocksError) -> None:
        logger.warning("forward[%s]: %s via %s failed kind=%s err=%s", cid, target.label(), self.config.socks.label(), err.kind, err)
        if self.stats:
            self.stats.record_failure(err.kind)
        await self._respond(client_w, build_response(502, "Bad Gateway", f"SOCKS connection failed: {err}"))

    async def _respond(self, w: asyncio.StreamWriter, data: bytes) -> None:
        try:
            w.write(data)
            await self._drain(w)
        except Exception:
            pass
