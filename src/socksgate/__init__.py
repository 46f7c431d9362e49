from .config import GatewayConfig, SocksConfig, load_config_from_env, parse_socks_uri
from .exceptions import (
    AuthFailed,
    AuthMethodRejected,
    BadRequest,
    ConnectFailed,
    HandshakeFormatError,
    HandshakeTimeout,
    NetworkError,
    SocksError,
    UnsupportedProxyType,
)
from .forward import ForwardHandler
from .relay import pipe_bidirectional
from .server import GatewayServer, run_gateway
from .socks_client import ProxySession, SessionState, SocksClient, open_socks_connection
from .tunnel import TunnelHandler

__version__ = "0.1.0"

__all__ = [
    "GatewayConfig",
    "SocksConfig",
    "load_config_from_env",
    "parse_socks_uri",
    "SocksError",
    "UnsupportedProxyType",
    "HandshakeFormatError",
    "AuthMethodRejected",
    "AuthFailed",
    "ConnectFailed",
    "NetworkError",
    "HandshakeTimeout",
    "BadRequest",
    "ForwardHandler",
    "TunnelHandler",
    "pipe_bidirectional",
    "GatewayServer",
    "run_gateway",
    "ProxySession",
    "SessionState",
    "SocksClient",
    "open_socks_connection",
]
