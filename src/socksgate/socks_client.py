from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Optional, Tuple, TypeVar

from .config import SUPPORTED_VARIANTS, SocksConfig
from .exceptions import (
    AuthFailed,
    AuthMethodRejected,
    ConnectFailed,
    HandshakeFormatError,
    HandshakeTimeout,
    NetworkError,
    SocksError,
    UnsupportedProxyType,
)

# SOCKS client: opens one connection to the configured endpoint per call and
# runs the version-specific handshake to completion before handing the raw
# streams back. Every reply is read by its declared length, never by "one read".

logger = logging.getLogger("socksgate.socks")

__all__ = [
    "SessionState",
    "ProxySession",
    "SocksClient",
    "open_socks_connection",
    "build_socks5_greeting",
    "build_socks5_userpass",
    "build_socks5_connect",
    "build_socks4_connect",
]

T = TypeVar("T")

SOCKS4_VERSION = 0x04
SOCKS5_VERSION = 0x05
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04
AUTH_NONE = 0x00
AUTH_USERPASS = 0x02
USERPASS_VERSION = 0x01
SOCKS4_GRANTED = 0x5A


class SessionState(enum.Enum):
    CONNECTING = 0
    NEGOTIATING_AUTH = 1
    AUTHENTICATING = 2
    REQUESTING_CONNECT = 3
    ESTABLISHED = 4
    FAILED = 5


_TERMINAL = (SessionState.ESTABLISHED, SessionState.FAILED)


def _encode_host(host: str) -> bytes:
    try:
        host_b = host.encode("idna")
    except UnicodeError:
        host_b = host.encode("utf-8")
    if not host_b or len(host_b) > 255:
        raise HandshakeFormatError(f"target host must be 1..255 bytes, got {len(host_b)}")
    return host_b


def _port_bytes(port: int) -> bytes:
    if not (0 <= int(port) <= 0xFFFF):
        raise HandshakeFormatError(f"target port out of range: {port}")
    return bytes([(port >> 8) & 0xFF, port & 0xFF])


def build_socks5_greeting(config: SocksConfig) -> bytes:
    methods = [AUTH_NONE]
    if config.has_credentials:
        methods = [AUTH_NONE, AUTH_USERPASS]
    return bytes([SOCKS5_VERSION, len(methods), *methods])


def build_socks5_userpass(config: SocksConfig) -> bytes:
    uname = (config.username or "").encode("utf-8")
    pwd = (config.password or "").encode("utf-8")
    return bytes([USERPASS_VERSION, len(uname)]) + uname + bytes([len(pwd)]) + pwd


def build_socks5_connect(host: str, port: int) -> bytes:
    host_b = _encode_host(host)
    req = bytearray()
    req += bytes([SOCKS5_VERSION, CMD_CONNECT, 0x00])  # VER, CMD=CONNECT, RSV
    req += bytes([ATYP_DOMAIN, len(host_b)]) + host_b  # always domain: resolve at the endpoint
    req += _port_bytes(port)
    return bytes(req)


def build_socks4_connect(host: str, port: int) -> bytes:
    # DSTIP 0.0.0.0, empty USERID, then host + NUL
    host_b = _encode_host(host)
    req = bytearray()
    req += bytes([SOCKS4_VERSION, CMD_CONNECT])
    req += _port_bytes(port)
    req += b"\x00\x00\x00\x00"
    req += b"\x00"
    req += host_b + b"\x00"
    return bytes(req)


class ProxySession:
    """
    One upstream connection attempt through the SOCKS endpoint.

    States only ever move forward (Connecting -> NegotiatingAuth ->
    Authenticating -> RequestingConnect -> Established); any step may jump
    to Failed. Each step writes its request and fully reads and validates
    the reply before the next one starts.
    """

    def __init__(
        self,
        config: SocksConfig,
        host: str,
        port: int,
        dial_timeout: float = 5.0,
        step_timeout: float = 10.0,
        cid: Optional[str] = None,
    ) -> None:
        self.config = config
        self.host = host
        self.port = int(port)
        self.dial_timeout = float(dial_timeout)
        self.step_timeout = float(step_timeout)
        self.cid = cid or "-"
        self.state = SessionState.CONNECTING
        self._writer: Optional[asyncio.StreamWriter] = None

    def _enter(self, state: SessionState) -> None:
        cur = self.state
        if cur in _TERMINAL:
            raise RuntimeError(f"session already {cur.name}, cannot enter {state.name}")
        if state is not SessionState.FAILED and state.value <= cur.value:
            raise RuntimeError(f"session cannot move back from {cur.name} to {state.name}")
        self.state = state
        logger.debug("socks[%s]: %s -> %s", self.cid, cur.name, state.name)

    async def _bounded(self, aw: Awaitable[T], timeout: float, phase: str) -> T:
        try:
            if timeout > 0:
                return await asyncio.wait_for(aw, timeout=timeout)
            return await aw
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout(phase, timeout) from e

    async def _send(self, w: asyncio.StreamWriter, data: bytes, phase: str) -> None:
        try:
            w.write(data)
            await self._bounded(w.drain(), self.step_timeout, phase)
        except OSError as e:
            raise NetworkError(f"{phase}: send failed: {e}") from e

    async def _recv(self, r: asyncio.StreamReader, n: int, phase: str) -> bytes:
        try:
            return await self._bounded(r.readexactly(n), self.step_timeout, phase)
        except asyncio.IncompleteReadError as e:
            raise HandshakeFormatError(f"{phase}: short reply ({len(e.partial)} of {n} bytes)") from e
        except OSError as e:
            raise NetworkError(f"{phase}: receive failed: {e}") from e

    async def run(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        variant = self.config.variant
        if variant not in SUPPORTED_VARIANTS:
            self._enter(SessionState.FAILED)
            raise UnsupportedProxyType(variant)

        logger.debug(
            "socks[%s]: dialing %s for %s:%d",
            self.cid, self.config.label(), self.host, self.port,
        )
        try:
            r, w = await self._bounded(
                asyncio.open_connection(host=self.config.host, port=self.config.port),
                self.dial_timeout,
                "dial",
            )
        except HandshakeTimeout:
            self._enter(SessionState.FAILED)
            raise
        except OSError as e:
            self._enter(SessionState.FAILED)
            raise NetworkError(f"dial {self.config.host}:{self.config.port} failed: {e}") from e

        self._writer = w
        try:
            if variant == "socks5":
                await self._socks5(r, w)
            else:
                await self._socks4(r, w)
        except BaseException:
            self._enter(SessionState.FAILED)
            await self._discard()
            raise
        self._enter(SessionState.ESTABLISHED)
        return r, w

    async def _discard(self) -> None:
        w = self._writer
        self._writer = None
        if w is None:
            return
        try:
            w.close()
            await asyncio.wait_for(w.wait_closed(), timeout=1.0)
        except Exception:
            pass

    async def _socks5(self, r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        self._enter(SessionState.NEGOTIATING_AUTH)
        greeting = build_socks5_greeting(self.config)
        offered = set(greeting[2:])
        await self._send(w, greeting, "greeting")
        data = await self._recv(r, 2, "greeting")
        if data[0] != SOCKS5_VERSION:
            raise HandshakeFormatError(f"greeting: bad version byte 0x{data[0]:02x}")
        method = data[1]
        if method not in offered:
            raise AuthMethodRejected(method)

        if method == AUTH_USERPASS:
            self._enter(SessionState.AUTHENTICATING)
            await self._send(w, build_socks5_userpass(self.config), "auth")
            a = await self._recv(r, 2, "auth")
            if a[0] != USERPASS_VERSION:
                raise HandshakeFormatError(f"auth: bad version byte 0x{a[0]:02x}")
            if a[1] != 0x00:
                raise AuthFailed(a[1])

        self._enter(SessionState.REQUESTING_CONNECT)
        await self._send(w, build_socks5_connect(self.host, self.port), "connect")
        # Reply: VER, REP, RSV, ATYP, BND.ADDR, BND.PORT
        hdr = await self._recv(r, 4, "connect")
        if hdr[0] != SOCKS5_VERSION:
            raise HandshakeFormatError(f"connect: bad version byte 0x{hdr[0]:02x}")
        if hdr[1] != 0x00:
            raise ConnectFailed(hdr[1], "socks5")
        atyp = hdr[3]
        if atyp == ATYP_IPV4:
            await self._recv(r, 4, "connect")
        elif atyp == ATYP_DOMAIN:
            ln = await self._recv(r, 1, "connect")
            await self._recv(r, ln[0], "connect")
        elif atyp == ATYP_IPV6:
            await self._recv(r, 16, "connect")
        else:
            raise HandshakeFormatError(f"connect: unknown bound address type 0x{atyp:02x}")
        await self._recv(r, 2, "connect")  # port

    async def _socks4(self, r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        self._enter(SessionState.REQUESTING_CONNECT)
        await self._send(w, build_socks4_connect(self.host, self.port), "connect")
        # Reply: VN(0x00), CD, DSTPORT(2), DSTIP(4)
        rep = await self._recv(r, 8, "connect")
        if rep[0] != 0x00:
            raise HandshakeFormatError(f"connect: bad reply version byte 0x{rep[0]:02x}")
        if rep[1] != SOCKS4_GRANTED:
            raise ConnectFailed(rep[1], "socks4")


class SocksClient:
    """Opens established SOCKS connections with the same config and deadlines."""

    def __init__(self, config: SocksConfig, dial_timeout: float = 5.0, handshake_timeout: float = 10.0) -> None:
        self.config = config
        self.dial_timeout = float(dial_timeout)
        self.handshake_timeout = float(handshake_timeout)

    async def connect(
        self, host: str, port: int, cid: Optional[str] = None
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        session = ProxySession(
            self.config,
            host,
            port,
            dial_timeout=self.dial_timeout,
            step_timeout=self.handshake_timeout,
            cid=cid,
        )
        try:
            streams = await session.run()
        except SocksError as e:
            logger.debug("socks[%s]: %s:%d failed kind=%s err=%s", cid or "-", host, port, e.kind, e)
            raise
        logger.debug("socks[%s]: established %s:%d via %s", cid or "-", host, port, self.config.label())
        return streams


async def open_socks_connection(
    host: str,
    port: int,
    config: SocksConfig,
    dial_timeout: float = 5.0,
    handshake_timeout: float = 10.0,
    cid: Optional[str] = None,
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await SocksClient(config, dial_timeout, handshake_timeout).connect(host, port, cid=cid)
