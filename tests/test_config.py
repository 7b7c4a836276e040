"""Tests for ClientConfig defaults, address parsing and builders."""

import dataclasses
import ssl

import pytest

from tempdb_client.config import (
    DEFAULT_ADDRESS,
    DEFAULT_POOL_CAPACITY,
    ClientConfig,
    CommandPrefix,
)
from tempdb_client.protocol import DEFAULT_PORT


class TestDefaults:
    def test_defaults(self):
        cfg = ClientConfig()
        assert cfg.address == DEFAULT_ADDRESS == "127.0.0.1:8081"
        assert cfg.namespace == ""
        assert cfg.use_tls is False
        assert cfg.connect_timeout_s == 5.0
        assert cfg.handshake is True
        assert cfg.command_prefix is CommandPrefix.NAMESPACE
        assert DEFAULT_POOL_CAPACITY == 10

    def test_frozen(self):
        cfg = ClientConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.address = "elsewhere:1"

    def test_hashable_and_equal(self):
        a = ClientConfig(address="db:9000", namespace="tempdb://x")
        b = ClientConfig(address="db:9000", namespace="tempdb://x")
        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1


class TestAddress:
    """Test host/port splitting."""

    @pytest.mark.parametrize(
        "address, host, port",
        [
            ("127.0.0.1:8081", "127.0.0.1", 8081),
            ("db.internal:9000", "db.internal", 9000),
            ("db.internal", "db.internal", DEFAULT_PORT),
        ],
    )
    def test_host_port(self, address, host, port):
        cfg = ClientConfig(address=address)
        assert cfg.host == host
        assert cfg.port == port


class TestValidation:
    def test_session_prefix_requires_handshake(self):
        with pytest.raises(ValueError, match="handshake"):
            ClientConfig(handshake=False, command_prefix=CommandPrefix.SESSION)

    @pytest.mark.parametrize("timeout", [0, -1.0])
    def test_timeout_must_be_positive(self, timeout):
        with pytest.raises(ValueError):
            ClientConfig(connect_timeout_s=timeout)


class TestBuilders:
    """Builders return modified copies and leave the original untouched."""

    def test_with_address(self):
        base = ClientConfig()
        cfg = base.with_address("db:1")
        assert cfg.address == "db:1"
        assert base.address == DEFAULT_ADDRESS

    def test_with_namespace(self):
        cfg = ClientConfig().with_namespace("tempdb://u:p@w:1/c")
        assert cfg.namespace == "tempdb://u:p@w:1/c"

    def test_with_connect_timeout(self):
        assert ClientConfig().with_connect_timeout(0.5).connect_timeout_s == 0.5

    def test_with_session_prefix(self):
        cfg = ClientConfig().without_handshake().with_session_prefix()
        assert cfg.handshake is True
        assert cfg.command_prefix is CommandPrefix.SESSION

    def test_without_handshake_resets_prefix(self):
        cfg = ClientConfig().with_session_prefix().without_handshake()
        assert cfg.handshake is False
        assert cfg.command_prefix is CommandPrefix.NAMESPACE


class TestTLS:
    def test_plain_tcp_has_no_context(self):
        assert ClientConfig().tls_context() is None

    def test_with_ssl_default_context(self):
        cfg = ClientConfig().with_ssl()
        assert cfg.use_tls is True
        assert isinstance(cfg.tls_context(), ssl.SSLContext)

    def test_with_ssl_custom_context(self):
        ctx = ssl.create_default_context()
        assert ClientConfig().with_ssl(ctx).tls_context() is ctx
