from __future__ import annotations

from typing import Optional

__all__ = [
    "SocksError",
    "UnsupportedProxyType",
    "HandshakeFormatError",
    "AuthMethodRejected",
    "AuthFailed",
    "ConnectFailed",
    "NetworkError",
    "HandshakeTimeout",
    "BadRequest",
    "SOCKS5_REPLY_REASONS",
    "SOCKS4_REPLY_REASONS",
]


# SOCKS5 REP field -> stable reason identifier
SOCKS5_REPLY_REASONS = {
    0x01: "general-failure",
    0x02: "rule-denied",
    0x03: "network-unreachable",
    0x04: "host-unreachable",
    0x05: "connection-refused",
    0x06: "ttl-expired",
    0x07: "command-unsupported",
    0x08: "address-type-unsupported",
}

# SOCKS4 CD field (reply) -> stable reason identifier
SOCKS4_REPLY_REASONS = {
    0x5B: "request-rejected",
    0x5C: "identd-unreachable",
    0x5D: "identd-mismatch",
}


class SocksError(Exception):
    """Base class for everything that can abort a SOCKS session."""

    kind = "socks-error"


class UnsupportedProxyType(SocksError):
    kind = "unsupported-proxy-type"

    def __init__(self, variant: str) -> None:
        super().__init__(f"unsupported proxy type {variant!r}")
        self.variant = variant


class HandshakeFormatError(SocksError):
    kind = "handshake-format"


class AuthMethodRejected(SocksError):
    kind = "auth-method-rejected"

    def __init__(self, method: int) -> None:
        super().__init__(f"endpoint selected auth method 0x{method:02x} which was not offered")
        self.method = method


class AuthFailed(SocksError):
    kind = "auth-failed"

    def __init__(self, status: int) -> None:
        super().__init__(f"username/password rejected (status=0x{status:02x})")
        self.status = status


class ConnectFailed(SocksError):
    """The endpoint refused to connect to the target; ``code`` is the raw reply byte."""

    kind = "connect-failed"

    def __init__(self, code: int, variant: str = "socks5") -> None:
        table = SOCKS4_REPLY_REASONS if variant == "socks4" else SOCKS5_REPLY_REASONS
        self.code = code
        self.variant = variant
        self.reason = table.get(code, "unknown")
        super().__init__(f"{variant} connect failed: {self.reason} (code=0x{code:02x})")


class NetworkError(SocksError):
    kind = "network"


class HandshakeTimeout(SocksError):
    kind = "handshake-timeout"

    def __init__(self, phase: str, timeout: float) -> None:
        super().__init__(f"no reply during {phase} within {timeout:.1f}s")
        self.phase = phase
        self.timeout = timeout


class BadRequest(Exception):
    """A client request the gateway refuses before any upstream work."""

    def __init__(self, status: int, reason: str, detail: Optional[str] = None) -> None:
        super().__init__(detail or reason)
        self.status = status
        self.reason = reason
