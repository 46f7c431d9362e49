import asyncio

import pytest

from socksgate.config import SocksConfig
from socksgate.exceptions import (
    SOCKS5_REPLY_REASONS,
    AuthFailed,
    AuthMethodRejected,
    ConnectFailed,
    HandshakeFormatError,
    HandshakeTimeout,
    NetworkError,
    UnsupportedProxyType,
)
from socksgate.relay import close_writer
from socksgate.socks_client import (
    ProxySession,
    SessionState,
    SocksClient,
    build_socks4_connect,
    build_socks5_connect,
    build_socks5_greeting,
    build_socks5_userpass,
    open_socks_connection,
)

from .stubs import SilentStub, Socks4Stub, Socks5Stub, closed_port, echo


def socks5(port, **kw):
    return SocksConfig("127.0.0.1", port, "socks5", **kw)


class TestWireFormat:

    def test_greeting_without_credentials(self) -> None:
        assert build_socks5_greeting(socks5(1080)) == b"\x05\x01\x00"

    def test_greeting_with_credentials(self) -> None:
        cfg = socks5(1080, username="user", password="pass")
        assert build_socks5_greeting(cfg) == b"\x05\x02\x00\x02"

    def test_greeting_needs_both_credentials(self) -> None:
        assert build_socks5_greeting(socks5(1080, username="user")) == b"\x05\x01\x00"
        assert build_socks5_greeting(socks5(1080, password="pass")) == b"\x05\x01\x00"

    def test_userpass(self) -> None:
        cfg = socks5(1080, username="bob", password="s3cret")
        assert build_socks5_userpass(cfg) == b"\x01\x03bob\x06s3cret"

    def test_connect_uses_domain_addressing(self) -> None:
        assert build_socks5_connect("example.com", 443) == b"\x05\x01\x00\x03\x0bexample.com\x01\xbb"

    def test_connect_ip_literal_still_domain(self) -> None:
        assert build_socks5_connect("10.0.0.1", 80) == b"\x05\x01\x00\x03\x0810.0.0.1\x00\x50"

    def test_socks4_request(self) -> None:
        assert build_socks4_connect("example.com", 80) == (
            b"\x04\x01\x00\x50" + b"\x00\x00\x00\x00" + b"\x00" + b"example.com" + b"\x00"
        )

    def test_host_too_long(self) -> None:
        with pytest.raises(HandshakeFormatError):
            build_socks5_connect("a" * 256, 80)


class TestSessionState:

    def test_states_only_move_forward(self) -> None:
        s = ProxySession(socks5(1080), "example.com", 80)
        s._enter(SessionState.NEGOTIATING_AUTH)
        s._enter(SessionState.REQUESTING_CONNECT)
        with pytest.raises(RuntimeError):
            s._enter(SessionState.NEGOTIATING_AUTH)

    def test_terminal_state_is_final(self) -> None:
        s = ProxySession(socks5(1080), "example.com", 80)
        s._enter(SessionState.FAILED)
        with pytest.raises(RuntimeError):
            s._enter(SessionState.ESTABLISHED)


class TestSocks5:

    @pytest.mark.asyncio
    async def test_no_auth_established(self) -> None:
        async with Socks5Stub(after=echo) as stub:
            session = ProxySession(socks5(stub.port), "example.com", 443)
            r, w = await session.run()
            assert session.state is SessionState.ESTABLISHED
            assert stub.messages == [
                b"\x05\x01\x00",
                b"\x05\x01\x00\x03\x0bexample.com\x01\xbb",
            ]
            # Established stream is transparent
            w.write(b"ping")
            await w.drain()
            assert await asyncio.wait_for(r.readexactly(4), 2) == b"ping"
            await close_writer(w)

    @pytest.mark.asyncio
    async def test_userpass_established(self) -> None:
        async with Socks5Stub(method=0x02, after=echo) as stub:
            cfg = socks5(stub.port, username="user", password="pass")
            r, w = await open_socks_connection("example.com", 80, cfg)
            assert stub.messages == [
                b"\x05\x02\x00\x02",
                b"\x01\x04user\x04pass",
                b"\x05\x01\x00\x03\x0bexample.com\x00\x50",
            ]
            await close_writer(w)

    @pytest.mark.asyncio
    async def test_server_may_pick_no_auth_when_credentials_offered(self) -> None:
        async with Socks5Stub(method=0x00) as stub:
            cfg = socks5(stub.port, username="user", password="pass")
            r, w = await open_socks_connection("example.com", 80, cfg)
            assert stub.messages[0] == b"\x05\x02\x00\x02"
            assert len(stub.messages) == 2
            await close_writer(w)

    @pytest.mark.asyncio
    async def test_unoffered_method_rejected(self) -> None:
        async with Socks5Stub(method=0x02) as stub:
            with pytest.raises(AuthMethodRejected) as exc:
                await open_socks_connection("example.com", 80, socks5(stub.port))
            assert exc.value.method == 0x02

    @pytest.mark.asyncio
    async def test_no_acceptable_methods(self) -> None:
        async with Socks5Stub(method=0xFF) as stub:
            with pytest.raises(AuthMethodRejected):
                await open_socks_connection("example.com", 80, socks5(stub.port))

    @pytest.mark.asyncio
    async def test_bad_greeting_version(self) -> None:
        async with Socks5Stub(greeting_reply=b"\x04\x00") as stub:
            with pytest.raises(HandshakeFormatError):
                await open_socks_connection("example.com", 80, socks5(stub.port))

    @pytest.mark.asyncio
    async def test_short_greeting_reply(self) -> None:
        async with Socks5Stub(greeting_reply=b"\x05") as stub:
            with pytest.raises(HandshakeFormatError):
                await open_socks_connection("example.com", 80, socks5(stub.port))

    @pytest.mark.asyncio
    async def test_auth_failed(self) -> None:
        async with Socks5Stub(method=0x02, auth_status=0x01) as stub:
            cfg = socks5(stub.port, username="user", password="wrong")
            with pytest.raises(AuthFailed):
                await open_socks_connection("example.com", 80, cfg)
            # Connect request never sent after a failed auth
            assert len(stub.messages) == 2

    @pytest.mark.asyncio
    async def test_bad_auth_reply_version(self) -> None:
        async with Socks5Stub(method=0x02, auth_reply=b"\x05\x00") as stub:
            cfg = socks5(stub.port, username="user", password="pass")
            with pytest.raises(HandshakeFormatError):
                await open_socks_connection("example.com", 80, cfg)
            assert len(stub.messages) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", sorted(SOCKS5_REPLY_REASONS))
    async def test_reply_codes(self, code: int) -> None:
        async with Socks5Stub(reply=code) as stub:
            with pytest.raises(ConnectFailed) as exc:
                await open_socks_connection("example.com", 80, socks5(stub.port))
            assert exc.value.code == code
            assert exc.value.reason == SOCKS5_REPLY_REASONS[code]

    def test_reply_reasons_are_distinct(self) -> None:
        reasons = [ConnectFailed(code).reason for code in range(0x01, 0x09)]
        assert len(set(reasons)) == 8
        assert "unknown" not in reasons

    @pytest.mark.asyncio
    async def test_fragmented_replies(self) -> None:
        bound = b"\x03\x09localhost\x04\x38"
        async with Socks5Stub(method=0x02, bound=bound, split=True, after=echo) as stub:
            cfg = socks5(stub.port, username="u", password="p")
            r, w = await open_socks_connection("example.com", 80, cfg)
            # The whole bound address was consumed; the next bytes are relayed payload
            w.write(b"after-handshake")
            await w.drain()
            assert await asyncio.wait_for(r.readexactly(15), 2) == b"after-handshake"
            await close_writer(w)

    @pytest.mark.asyncio
    async def test_ipv6_bound_address_consumed(self) -> None:
        bound = b"\x04" + b"\x00" * 16 + b"\x00\x00"
        async with Socks5Stub(bound=bound, after=echo) as stub:
            r, w = await open_socks_connection("example.com", 80, socks5(stub.port))
            w.write(b"x")
            await w.drain()
            assert await asyncio.wait_for(r.readexactly(1), 2) == b"x"
            await close_writer(w)

    @pytest.mark.asyncio
    async def test_unknown_bound_address_type(self) -> None:
        async with Socks5Stub(bound=b"\x09\x00\x00") as stub:
            with pytest.raises(HandshakeFormatError):
                await open_socks_connection("example.com", 80, socks5(stub.port))

    @pytest.mark.asyncio
    async def test_bad_connect_reply_version(self) -> None:
        async with Socks5Stub(connect_reply=b"\x04\x00\x00\x01" + b"\x00" * 6) as stub:
            with pytest.raises(HandshakeFormatError):
                await open_socks_connection("example.com", 80, socks5(stub.port))
            assert stub.targets == [("example.com", 80)]

    @pytest.mark.asyncio
    async def test_truncated_connect_reply(self) -> None:
        async with Socks5Stub(connect_reply=b"\x05\x00\x00\x01\x7f") as stub:
            with pytest.raises(HandshakeFormatError):
                await open_socks_connection("example.com", 80, socks5(stub.port))

    @pytest.mark.asyncio
    async def test_ip_literal_target(self) -> None:
        async with Socks5Stub() as stub:
            r, w = await open_socks_connection("192.168.1.10", 8080, socks5(stub.port))
            assert stub.messages[1][3] == 0x03
            assert stub.targets == [("192.168.1.10", 8080)]
            await close_writer(w)


class TestSocks4:

    @pytest.mark.asyncio
    async def test_established(self) -> None:
        async with Socks4Stub(after=echo) as stub:
            cfg = SocksConfig("127.0.0.1", stub.port, "socks4")
            session = ProxySession(cfg, "example.com", 80)
            r, w = await session.run()
            assert session.state is SessionState.ESTABLISHED
            assert stub.messages == [b"\x04\x01\x00\x50\x00\x00\x00\x00\x00example.com\x00"]
            w.write(b"hello")
            await w.drain()
            assert await asyncio.wait_for(r.readexactly(5), 2) == b"hello"
            await close_writer(w)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [0x5B, 0x5C, 0x5D, 0x00, 0x01])
    async def test_rejected(self, code: int) -> None:
        async with Socks4Stub(reply=bytes([0x00, code]) + b"\x00" * 6) as stub:
            cfg = SocksConfig("127.0.0.1", stub.port, "socks4")
            with pytest.raises(ConnectFailed) as exc:
                await open_socks_connection("example.com", 80, cfg)
            assert exc.value.code == code

    @pytest.mark.asyncio
    async def test_short_reply(self) -> None:
        async with Socks4Stub(reply=b"\x00\x5a\x00\x00") as stub:
            cfg = SocksConfig("127.0.0.1", stub.port, "socks4")
            with pytest.raises(HandshakeFormatError):
                await open_socks_connection("example.com", 80, cfg)

    @pytest.mark.asyncio
    async def test_bad_leading_byte(self) -> None:
        async with Socks4Stub(reply=b"\x04\x5a" + b"\x00" * 6) as stub:
            cfg = SocksConfig("127.0.0.1", stub.port, "socks4")
            with pytest.raises(HandshakeFormatError):
                await open_socks_connection("example.com", 80, cfg)


class TestFailures:

    @pytest.mark.asyncio
    async def test_unsupported_variant_never_connects(self) -> None:
        async with Socks5Stub() as stub:
            cfg = SocksConfig("127.0.0.1", stub.port, "http")
            session = ProxySession(cfg, "example.com", 80)
            with pytest.raises(UnsupportedProxyType):
                await session.run()
            assert session.state is SessionState.FAILED
            await asyncio.sleep(0.05)
            assert stub.connections == 0

    @pytest.mark.asyncio
    async def test_endpoint_refused(self) -> None:
        port = await closed_port()
        with pytest.raises(NetworkError):
            await open_socks_connection("example.com", 80, socks5(port))

    @pytest.mark.asyncio
    async def test_silent_endpoint_times_out(self) -> None:
        async with SilentStub() as stub:
            client = SocksClient(socks5(stub.port), dial_timeout=1.0, handshake_timeout=0.2)
            with pytest.raises(HandshakeTimeout) as exc:
                await client.connect("example.com", 80)
            assert exc.value.phase == "greeting"

    @pytest.mark.asyncio
    async def test_failed_session_closes_endpoint_connection(self) -> None:
        async with Socks5Stub(reply=0x05) as stub:
            session = ProxySession(socks5(stub.port), "example.com", 80)
            with pytest.raises(ConnectFailed):
                await session.run()
            assert session.state is SessionState.FAILED
            assert session._writer is None

    @pytest.mark.asyncio
    async def test_endpoint_reset_during_connect(self) -> None:
        async with Socks5Stub(abort_on_connect=True) as stub:
            session = ProxySession(socks5(stub.port), "example.com", 80)
            with pytest.raises((NetworkError, HandshakeFormatError)):
                await session.run()
            assert session.state is SessionState.FAILED
            assert session._writer is None

    @pytest.mark.asyncio
    async def test_endpoint_closes_after_greeting(self) -> None:
        async with Socks5Stub(method=0x02, auth_reply=b"") as stub:
            session = ProxySession(socks5(stub.port, username="u", password="p"), "example.com", 80)
            with pytest.raises((NetworkError, HandshakeFormatError)):
                await session.run()
            assert session.state is SessionState.FAILED
            assert session._writer is None
