from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from typing import Optional, Set

from .config import GatewayConfig
from .exceptions import BadRequest
from .forward import ForwardHandler
from .relay import close_writer
from .request import ClientReader, build_response, read_request_head
from .socks_client import SocksClient
from .status import Stats
from .tunnel import TunnelHandler

# Inbound HTTP proxy: every request leaves through the configured SOCKS endpoint.
# - CONNECT is tunneled without TLS interception.
# - Anything else is forwarded as plain HTTP/1.1 (absolute-form or Host header).

logger = logging.getLogger("socksgate.server")

__all__ = ["GatewayServer", "run_gateway"]


def _new_cid() -> str:
    n = time.time_ns() ^ os.getpid() ^ threading.get_ident()
    return f"{n & 0xFFFFFFFFFFFF:012x}"


class GatewayServer:
    def __init__(self, config: GatewayConfig, stats: Optional[Stats] = None) -> None:
        self.config = config
        self.stats = stats if stats is not None else Stats()
        client = SocksClient(config.socks, config.dial_timeout, config.handshake_timeout)
        self.forward = ForwardHandler(config, self.stats, client)
        self.tunnel = TunnelHandler(config, self.stats, client)
        self._server: Optional[asyncio.AbstractServer] = None
        # Active client handler tasks, cancelled on stop()
        self._client_tasks: Set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        """Bound port (useful when listening on port 0)."""
        if self._server and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self.config.listen_port

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_client,
            self.config.listen_host,
            self.config.listen_port,
            limit=max(self.config.max_header_bytes, 64 * 1024),
        )
        addrs = ", ".join(str(s.getsockname()) for s in (self._server.sockets or []))
        logger.info("gateway: listening on %s upstream=%s", addrs, self.config.socks.label())

    async def stop(self) -> None:
        srv = self._server
        self._server = None
        if srv:
            srv.close()
        # Handlers first: wait_closed() also waits for open client connections
        tasks = list(self._client_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if srv:
            try:
                await asyncio.wait_for(srv.wait_closed(), timeout=1.0)
            except Exception:
                pass

    async def serve_until(self, stop_evt: threading.Event) -> None:
        await self.start()
        while not stop_evt.is_set():
            await asyncio.sleep(0.2)
        await self.stop()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        cid = _new_cid()
        cur = asyncio.current_task()
        if cur is not None:
            self._client_tasks.add(cur)
        client = ClientReader(reader)
        served = 0
        try:
            while True:
                head = await read_request_head(
                    client,
                    max_line_bytes=self.config.max_line_bytes,
                    max_header_bytes=self.config.max_header_bytes,
                    timeout=self.config.io_timeout,
                )
                if head is None:
                    return
                logger.debug("gateway[%s]: accept peer=%s %s %s %s", cid, peer, head.method, head.target, head.version)
                if head.method == "CONNECT":
                    await self.tunnel.handle(head.target, client, writer, cid=cid)
                    return
                served += 1
                # Keep-alive: the next request on this connection gets its own upstream
                if not await self.forward.handle(head, client, writer, cid=cid):
                    return
        except BadRequest as e:
            logger.info("gateway[%s]: reject peer=%s status=%d %s", cid, peer, e.status, e)
            await self._respond(writer, build_response(e.status, e.reason, str(e)))
        except asyncio.TimeoutError:
            if served:
                logger.debug("gateway[%s]: idle keep-alive closed peer=%s served=%d", cid, peer, served)
                return
            logger.info("gateway[%s]: client_timeout peer=%s", cid, peer)
            await self._respond(writer, build_response(408, "Request Timeout"))
        except (ValueError, asyncio.LimitOverrunError) as e:
            # StreamReader.readline() past the buffer limit
            logger.info("gateway[%s]: reject peer=%s err=%s", cid, peer, e)
            await self._respond(writer, build_response(431, "Request Header Fields Too Large"))
        except ConnectionError as e:
            logger.debug("gateway[%s]: client error peer=%s err=%s", cid, peer, e)
        finally:
            await close_writer(writer)
            if cur is not None:
                self._client_tasks.discard(cur)

    async def _respond(self, w: asyncio.StreamWriter, data: bytes) -> None:
        try:
            w.write(data)
            await asyncio.wait_for(w.drain(), timeout=self.config.io_timeout or None)
        except Exception:
            pass


def run_gateway(stop_event: threading.Event, config: GatewayConfig, stats: Optional[Stats] = None) -> None:
    """
    Blocking entry-point: runs the asyncio gateway until stop_event is set.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    server = GatewayServer(config, stats)

    try:
        loop.run_until_complete(server.serve_until(stop_event))
    finally:
        pending = asyncio.all_tasks(loop)
        for t in pending:
            t.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
