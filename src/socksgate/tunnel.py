from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Tuple

from .config import GatewayConfig
from .exceptions import BadRequest, SocksError
from .relay import close_writer, pipe_bidirectional
from .request import CONNECT_ESTABLISHED, CONNECT_FAILED, ClientReader
from .socks_client import SocksClient
from .status import Stats

logger = logging.getLogger("socksgate.tunnel")

__all__ = ["TunnelHandler", "split_host_port"]

DEFAULT_CONNECT_PORT = 443


def split_host_port(hp: str) -> Tuple[str, int]:
    s = (hp or "").strip()
    if not s:
        raise BadRequest(400, "Bad Request", "empty CONNECT target")
    if ":" not in s:
        return s, DEFAULT_CONNECT_PORT
    host, port_s = s.rsplit(":", 1)
    host = host.strip()
    if not host:
        raise BadRequest(400, "Bad Request", f"bad CONNECT target {hp!r}")
    port_s = port_s.strip()
    if not port_s:
        return host, DEFAULT_CONNECT_PORT
    try:
        port = int(port_s)
    except ValueError as e:
        raise BadRequest(400, "Bad Request", f"bad CONNECT port {port_s!r}") from e
    if not (0 < port < 65536):
        raise BadRequest(400, "Bad Request", f"bad CONNECT port {port_s!r}")
    return host, port


class TunnelHandler:
    """CONNECT: open the SOCKS tunnel, answer 200/500, then relay opaque bytes."""

    def __init__(self, config: GatewayConfig, stats: Optional[Stats] = None, client: Optional[SocksClient] = None) -> None:
        self.config = config
        self.stats = stats
        self.client = client or SocksClient(config.socks, config.dial_timeout, config.handshake_timeout)

    async def handle(
        self,
        target: str,
        client_r: ClientReader,
        client_w: asyncio.StreamWriter,
        head: bytes = b"",
        cid: Optional[str] = None,
    ) -> None:
        cid = cid or "-"
        host, port = split_host_port(target)
        if self.stats:
            self.stats.session_started("tunnel")
        up, down = 0, 0
        try:
            try:
                up_r, up_w = await self.client.connect(host, port, cid=cid)
            except SocksError as e:
                logger.warning(
                    "tunnel[%s]: CONNECT %s:%d via %s failed kind=%s err=%s",
                    cid, host, port, self.config.socks.label(), e.kind, e,
                )
                if self.stats:
                    self.stats.record_failure(e.kind)
                # No retry for CONNECT; if even this write fails the close below is all we do
                try:
                    client_w.write(CONNECT_FAILED)
                    await asyncio.wait_for(client_w.drain(), timeout=1.0)
                except Exception:
                    pass
                await close_writer(client_w)
                return

            try:
                client_w.write(CONNECT_ESTABLISHED)
                await client_w.drain()
                if head:
                    up_w.write(head)
                    await up_w.drain()
            except OSError as e:
                logger.info("tunnel[%s]: client gone before relay: %s", cid, e)
                await asyncio.gather(close_writer(up_w), close_writer(client_w))
                return

            logger.info("tunnel[%s]: CONNECT established %s:%d", cid, host, port)
            t0 = time.monotonic()
            up, down, end_c, end_u = await pipe_bidirectional(
                client_r,
                client_w,
                up_r,
                up_w,
                idle_timeout=self.config.tunnel_idle_timeout,
                cid=cid,
                label=f"CONNECT {host}:{port}",
            )
            up += len(head)
            logger.info(
                "tunnel[%s]: CONNECT closed %s:%d up=%d down=%d end=%s|%s dur_ms=%.0f",
                cid, host, port, up, down, end_c, end_u, (time.monotonic() - t0) * 1000.0,
            )
        finally:
            if self.stats:
                self.stats.session_finished(up, down)
